"""Tests for UserProfileStore extraction, deduplication and erasure."""

import json

import pytest

from hybrid_memory.config import ProfileConfig, RetryConfig
from hybrid_memory.models import Fallback, Parsed, ProfileFact, Role, Turn, UserProfile
from hybrid_memory.profile_store import (
    UserProfileStore,
    normalize_attribute,
    normalize_statement,
    parse_facts,
)

NO_RETRY = RetryConfig(attempts=2, base_delay_seconds=0.0)

TURNS = [
    Turn(role=Role.USER, content="I moved to Seoul last year", seq=1),
    Turn(role=Role.ASSISTANT, content="How are you finding it?", seq=2),
]


def _reply(*facts: tuple[str | None, str]) -> str:
    items = []
    for attribute, fact in facts:
        item = {"fact": fact}
        if attribute:
            item["attribute"] = attribute
        items.append(item)
    return json.dumps(items)


@pytest.fixture
def profiles(store, scripted_llm, embedder):
    return UserProfileStore(store, scripted_llm, embedder, retry=NO_RETRY)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class TestParseFacts:
    def test_valid_array(self):
        outcome = parse_facts('[{"attribute": "Home City", "fact": "Lives in Seoul"}]')
        assert isinstance(outcome, Parsed)
        assert outcome.value == [("home_city", "Lives in Seoul")]

    def test_code_fence_stripped(self):
        raw = '```json\n[{"fact": "Has a dog"}]\n```'
        outcome = parse_facts(raw)
        assert isinstance(outcome, Parsed)
        assert outcome.value == [(None, "Has a dog")]

    def test_items_without_fact_skipped(self):
        outcome = parse_facts('[{"attribute": "x"}, {"fact": "  "}, "loose", {"fact": "ok"}]')
        assert isinstance(outcome, Parsed)
        assert outcome.value == [(None, "ok")]

    @pytest.mark.parametrize(
        "raw",
        ["", "not json at all", '{"fact": "object not array"}', "[unterminated"],
    )
    def test_malformed_is_fallback(self, raw):
        assert isinstance(parse_facts(raw), Fallback)

    def test_normalizers(self):
        assert normalize_statement("The user lives in Seoul.") == "the user lives in seoul"
        assert normalize_attribute("  Favorite-Color ") == "favorite_color"
        assert normalize_attribute(42) is None
        assert normalize_attribute("!!!") is None


# ---------------------------------------------------------------------------
# Extraction and merge
# ---------------------------------------------------------------------------


class TestExtractAndMerge:
    @pytest.mark.asyncio
    async def test_near_duplicate_kept_once(self, profiles, scripted_llm):
        scripted_llm.profile_reply = _reply((None, "User lives in Seoul"))
        first = await profiles.extract_and_merge("alice", TURNS)

        scripted_llm.profile_reply = _reply((None, "The user lives in Seoul."))
        second = await profiles.extract_and_merge("alice", TURNS)

        profile = await profiles.get_profile("alice")
        assert first.added == 1
        assert second.duplicates == 1
        assert second.added == 0
        assert len(profile.facts) == 1

    @pytest.mark.asyncio
    async def test_same_attribute_new_value_supersedes(self, profiles, scripted_llm):
        scripted_llm.profile_reply = _reply(("favorite_color", "Favorite color is blue"))
        await profiles.extract_and_merge("bob", TURNS)

        scripted_llm.profile_reply = _reply(("favorite_color", "Favorite color is green"))
        report = await profiles.extract_and_merge("bob", TURNS)

        profile = await profiles.get_profile("bob")
        assert [f.statement for f in profile.facts] == ["Favorite color is green"]
        assert report.superseded == 1
        assert report.conflicts[0].superseded == "Favorite color is blue"
        assert report.conflicts[0].replacement == "Favorite color is green"

    @pytest.mark.asyncio
    async def test_same_attribute_same_claim_is_duplicate(self, profiles, scripted_llm):
        scripted_llm.profile_reply = _reply(("home_city", "Lives in Seoul"))
        await profiles.extract_and_merge("carol", TURNS)

        scripted_llm.profile_reply = _reply(("home_city", "lives in seoul!"))
        report = await profiles.extract_and_merge("carol", TURNS)

        assert report.duplicates == 1
        assert report.conflicts == []

    @pytest.mark.asyncio
    async def test_same_attribute_rephrasing_is_duplicate(self, profiles, scripted_llm):
        scripted_llm.profile_reply = _reply(("home_city", "User lives in Seoul"))
        await profiles.extract_and_merge("carol", TURNS)

        scripted_llm.profile_reply = _reply(("home_city", "The user lives in Seoul."))
        report = await profiles.extract_and_merge("carol", TURNS)

        profile = await profiles.get_profile("carol")
        assert [f.statement for f in profile.facts] == ["User lives in Seoul"]
        assert report.duplicates == 1
        assert report.superseded == 0
        assert report.conflicts == []

    def test_similar_wording_with_new_value_supersedes(self, profiles):
        profile = UserProfile(user_id="bob")
        profile.facts.append(
            ProfileFact(attribute="home_city", statement="The user lives in Seoul")
        )

        report = profiles.merge(
            profile, [ProfileFact(attribute="home_city", statement="The user lives in Busan")]
        )

        assert report.superseded == 1
        assert report.conflicts[0].replacement == "The user lives in Busan"

    @pytest.mark.asyncio
    async def test_malformed_reply_changes_nothing(self, profiles, scripted_llm):
        scripted_llm.profile_reply = "Sure! Here are the facts: the user likes tea"
        report = await profiles.extract_and_merge("dave", TURNS)

        assert report.added == 0
        assert report.dropped == 0
        assert await profiles.get_profile("dave") is None
        assert await profiles.get("dave") == ""

    @pytest.mark.asyncio
    async def test_no_turns_skips_llm(self, profiles, scripted_llm):
        report = await profiles.extract_and_merge("erin", [])
        assert report.added == 0
        assert scripted_llm.calls == []

    @pytest.mark.asyncio
    async def test_without_llm_is_noop(self, store):
        profiles = UserProfileStore(store, None, retry=NO_RETRY)
        report = await profiles.extract_and_merge("erin", TURNS)
        assert report.added == 0

    @pytest.mark.asyncio
    async def test_get_formats_bullets(self, profiles, scripted_llm):
        scripted_llm.profile_reply = _reply(
            ("home_city", "Lives in Seoul"), ("pet", "Owns a dog named Rex")
        )
        await profiles.extract_and_merge("frank", TURNS)

        assert await profiles.get("frank") == "- Lives in Seoul\n- Owns a dog named Rex"

    @pytest.mark.asyncio
    async def test_partitions_are_isolated(self, profiles, scripted_llm):
        scripted_llm.profile_reply = _reply(("pet", "Owns a cat"))
        await profiles.extract_and_merge("gina", TURNS)

        assert await profiles.get("hank") == ""


# ---------------------------------------------------------------------------
# Merge rules
# ---------------------------------------------------------------------------


class TestMerge:
    def test_cap_keeps_max_facts(self, store):
        profiles = UserProfileStore(store, None, config=ProfileConfig(max_facts=2))
        profile = UserProfile(user_id="ivy")
        candidates = [
            ProfileFact(statement="Owns a dog named Rex"),
            ProfileFact(statement="Works as a nurse in Busan"),
            ProfileFact(statement="Plays tennis on weekends"),
        ]

        report = profiles.merge(profile, candidates)

        assert len(profile.facts) == 2
        assert report.added == 3
        assert report.dropped == 1

    def test_embedding_similarity_counts_as_duplicate(self, store):
        profiles = UserProfileStore(store, None, config=ProfileConfig(dedup_threshold=0.9))
        a = ProfileFact(statement="Enjoys hiking", embedding=[1.0, 0.0, 0.0])
        b = ProfileFact(statement="Likes going on mountain walks", embedding=[0.99, 0.05, 0.0])
        assert profiles.is_duplicate(a, b) is True

    def test_distinct_facts_are_not_duplicates(self, store):
        profiles = UserProfileStore(store, None)
        a = ProfileFact(statement="Owns a dog named Rex")
        b = ProfileFact(statement="Works as a nurse in Busan")
        assert profiles.is_duplicate(a, b) is False


# ---------------------------------------------------------------------------
# Erasure
# ---------------------------------------------------------------------------


class TestErase:
    @pytest.mark.asyncio
    async def test_erase_is_idempotent(self, profiles, scripted_llm):
        scripted_llm.profile_reply = _reply(("pet", "Owns a dog"))
        await profiles.extract_and_merge("jack", TURNS)

        assert await profiles.erase("jack") is True
        assert await profiles.erase("jack") is False
        assert await profiles.get("jack") == ""
