"""
Hybrid memory test fixtures.
Shared fakes for the LLM collaborator plus temporary storage.
"""
import os
import re
import tempfile

import pytest

from hybrid_memory.config import MemoryConfig
from hybrid_memory.embedding import HashingEmbedder
from hybrid_memory.exceptions import GenerationError
from hybrid_memory.models import GenerationResult
from hybrid_memory.storage.sqlite_store import SQLiteStore
from hybrid_memory.token_counter import TokenCounter

CODE_PATTERN = re.compile(r"\b(?=[A-Za-z]*\d)(?=\d*[A-Za-z])[A-Za-z0-9]{4,}\b")


class ScriptedLLM:
    """Fake LLM collaborator that routes on the kind of prompt it receives.

    - summary prompts: a short digest that keeps identifiers
    - profile prompts: ``profile_reply``
    - everything else: a chat reply; questions about an account ID are
      answered from whatever the context contains
    """

    def __init__(self, profile_reply: str = "[]"):
        self.calls: list[list[dict]] = []
        self.profile_reply = profile_reply
        self.fail_generation = False
        self.generation_attempts = 0

    async def generate(
        self, messages, model_name=None, max_output_tokens=None, temperature=None
    ):
        self.calls.append(messages)
        system = messages[0]["content"] if messages and messages[0]["role"] == "system" else ""

        if system.startswith("You compress chat history"):
            excerpt = messages[-1]["content"]
            codes = sorted(set(CODE_PATTERN.findall(excerpt)))
            digest = "Earlier small talk."
            if codes:
                digest += f" Identifiers: {', '.join(codes)}."
            return GenerationResult(content=digest)

        if system.startswith("You maintain a profile"):
            return GenerationResult(content=self.profile_reply)

        self.generation_attempts += 1
        if self.fail_generation:
            raise GenerationError("provider unavailable", transient=True)

        last = messages[-1]["content"]
        if "account id" in last.lower() and "?" in last:
            context = "\n".join(m["content"] for m in messages[:-1])
            match = re.search(r"\b[A-Z]{3}\d{3}\b", context)
            if match:
                return GenerationResult(content=f"Your account ID is {match.group(0)}.")
            return GenerationResult(content="I don't know your account ID.")
        return GenerationResult(content="Okay.", input_tokens=10, output_tokens=1)


@pytest.fixture
def scripted_llm():
    return ScriptedLLM()


@pytest.fixture
def token_counter():
    """Character-estimate counter so tests never need tokenizer downloads."""
    return TokenCounter("estimate")


@pytest.fixture
def embedder():
    return HashingEmbedder(dimension=256)


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield os.path.join(tmpdir, "memory.db")


@pytest.fixture
async def store(db_path):
    s = SQLiteStore(db_path=db_path)
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def memory_config(db_path):
    """Config tuned for fast, deterministic tests."""
    config = MemoryConfig()
    config.llm.model = "estimate"
    config.retry.base_delay_seconds = 0.0
    config.embedding.provider = "hashing"
    config.embedding.dimension = 256
    config.storage.sqlite_db_path = db_path
    return config
