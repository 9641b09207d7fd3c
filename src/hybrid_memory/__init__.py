"""Hybrid conversational memory manager.

Layers, from the live exchange outward:

1. Verbatim rolling window of recent turns
2. Hierarchical rolling summary of evicted turns
3. Long-term semantic memory retrieved per user
4. Deduplicated user profile facts

``MemoryOrchestrator`` combines them into a bounded prompt per turn.
"""

from .config import MemoryConfig, load_config
from .context_assembler import AssembledContext, ContextAssembler
from .embedding import HashingEmbedder, SentenceTransformerEmbedder, create_embedder
from .exceptions import (
    ConfigError,
    EmbeddingError,
    GenerationError,
    MemorySystemError,
    SessionNotFoundError,
    StorageError,
    TransientExternalFailure,
    UnsupportedModelError,
)
from .importance import HeuristicImportanceScorer, LLMImportanceScorer
from .log import configure_logging
from .long_term import LongTermMemoryIndex
from .models import (
    ConsolidationConflict,
    Diagnostics,
    MemoryEntry,
    ProfileFact,
    Role,
    SummaryLevel,
    Turn,
    UserProfile,
)
from .orchestrator import MemoryOrchestrator
from .profile_store import UserProfileStore
from .pruner import PruneResult, SelectivePruner
from .rolling_window import RollingWindow, WindowState
from .session import ConversationSession, SessionRegistry
from .storage.sqlite_store import SQLiteStore
from .summarizer import SummaryCompressor
from .summary_store import HierarchicalSummaryStore
from .token_counter import TokenCounter

__all__ = [
    "AssembledContext",
    "ConfigError",
    "ConsolidationConflict",
    "ContextAssembler",
    "ConversationSession",
    "Diagnostics",
    "EmbeddingError",
    "GenerationError",
    "HashingEmbedder",
    "HeuristicImportanceScorer",
    "HierarchicalSummaryStore",
    "LLMImportanceScorer",
    "LongTermMemoryIndex",
    "MemoryConfig",
    "MemoryEntry",
    "MemoryOrchestrator",
    "MemorySystemError",
    "ProfileFact",
    "PruneResult",
    "Role",
    "RollingWindow",
    "SQLiteStore",
    "SelectivePruner",
    "SentenceTransformerEmbedder",
    "SessionNotFoundError",
    "SessionRegistry",
    "StorageError",
    "SummaryCompressor",
    "SummaryLevel",
    "TokenCounter",
    "TransientExternalFailure",
    "Turn",
    "UnsupportedModelError",
    "UserProfile",
    "UserProfileStore",
    "WindowState",
    "configure_logging",
    "create_embedder",
    "load_config",
]
