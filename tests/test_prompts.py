"""Tests for prompt assembly and few-shot example selection."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from notetriage.classifier.few_shot import (
    SECTION_HEADER,
    FewShotCache,
    FewShotExample,
    FewShotSelector,
)
from notetriage.classifier.prompts import (
    SYSTEM_PROMPT,
    TRUNCATION_MARKER,
    build_inference_prompt,
    is_content_truncated,
)
from notetriage.core.errors import DatabaseError

# =============================================================================
# Prompts
# =============================================================================


class TestBuildInferencePrompt:
    """Tests for build_inference_prompt."""

    def test_contains_system_prompt_title_and_body(self) -> None:
        prompt, truncated = build_inference_prompt("Storage", "We decided on SQLite.")
        assert prompt.startswith(SYSTEM_PROMPT)
        assert "### Title\nStorage" in prompt
        assert "### Body\nWe decided on SQLite." in prompt
        assert truncated is False

    def test_long_content_truncated_with_marker(self) -> None:
        content = "x" * 250
        prompt, truncated = build_inference_prompt("T", content, context_limit=200)
        assert truncated is True
        assert "x" * 200 + TRUNCATION_MARKER in prompt
        assert "x" * 201 not in prompt

    def test_content_at_limit_not_truncated(self) -> None:
        assert is_content_truncated("x" * 200, 200) is False
        assert is_content_truncated("x" * 201, 200) is True

    def test_few_shot_section_between_system_and_note(self) -> None:
        section = "## Reference examples\nExample block\n"
        prompt, _ = build_inference_prompt("T", "body", few_shot_section=section)
        system_end = prompt.index(SYSTEM_PROMPT) + len(SYSTEM_PROMPT)
        assert system_end < prompt.index("## Reference examples") < prompt.index("## Note")

    def test_no_few_shot_section(self) -> None:
        prompt, _ = build_inference_prompt("T", "body")
        assert "Reference examples" not in prompt


# =============================================================================
# Few-shot cache
# =============================================================================


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestFewShotCache:
    """Tests for the TTL cache."""

    @pytest.mark.asyncio
    async def test_value_reused_within_ttl(self) -> None:
        clock = FakeClock()
        cache = FewShotCache(ttl_seconds=60, clock=clock)
        factory = AsyncMock(side_effect=["first", "second"])

        assert await cache.get_or_compute(factory) == "first"
        clock.now = 59
        assert await cache.get_or_compute(factory) == "first"
        assert factory.await_count == 1

    @pytest.mark.asyncio
    async def test_value_recomputed_after_ttl(self) -> None:
        clock = FakeClock()
        cache = FewShotCache(ttl_seconds=60, clock=clock)
        factory = AsyncMock(side_effect=["first", "second"])

        await cache.get_or_compute(factory)
        clock.now = 60
        assert await cache.get_or_compute(factory) == "second"

    @pytest.mark.asyncio
    async def test_invalidate_forces_recompute(self) -> None:
        cache = FewShotCache(ttl_seconds=60, clock=FakeClock())
        factory = AsyncMock(side_effect=["first", "second"])

        await cache.get_or_compute(factory)
        cache.invalidate()
        assert cache.is_fresh is False
        assert await cache.get_or_compute(factory) == "second"

    @pytest.mark.asyncio
    async def test_empty_section_is_cached(self) -> None:
        cache = FewShotCache(ttl_seconds=60, clock=FakeClock())
        factory = AsyncMock(return_value="")

        await cache.get_or_compute(factory)
        await cache.get_or_compute(factory)
        assert factory.await_count == 1


# =============================================================================
# Few-shot selector
# =============================================================================


def _store_with_rows(rows_by_type: dict[str, list[dict]]) -> MagicMock:
    store = MagicMock()
    store.get_few_shot_candidates = AsyncMock(
        side_effect=lambda note_type, min_conf, limit: rows_by_type.get(note_type, [])[:limit]
    )
    return store


class TestFewShotSelector:
    """Tests for FewShotSelector."""

    @pytest.mark.asyncio
    async def test_fetches_every_type_with_settings(self) -> None:
        store = _store_with_rows({})
        selector = FewShotSelector(store, max_per_type=3, min_confidence=0.9)

        await selector.fetch_examples()

        called_types = [c.args[0] for c in store.get_few_shot_candidates.await_args_list]
        assert called_types == ["decision", "learning", "emotion", "log", "scratch"]
        assert all(c.args[1:] == (0.9, 3) for c in store.get_few_shot_candidates.await_args_list)

    @pytest.mark.asyncio
    async def test_content_truncated(self) -> None:
        store = _store_with_rows(
            {"decision": [{"title": "T", "content": "y" * 50, "reasoning": "r"}]}
        )
        selector = FewShotSelector(store, max_content_length=20)

        examples = await selector.fetch_examples()

        assert examples[0].content == "y" * 20 + "..."

    @pytest.mark.asyncio
    async def test_database_error_yields_no_examples(self) -> None:
        store = MagicMock()
        store.get_few_shot_candidates = AsyncMock(side_effect=DatabaseError("locked"))
        selector = FewShotSelector(store)

        assert await selector.fetch_examples() == []
        assert await selector.get_prompt_section() == ""

    def test_format_examples(self) -> None:
        section = FewShotSelector.format_examples(
            [
                FewShotExample("decision", "Storage", "We adopted SQLite", "Clear choice"),
                FewShotExample("learning", "Threads", "A thread is ...", "Definition"),
            ]
        )
        assert section.startswith(SECTION_HEADER)
        assert "### Example 1 (decision)" in section
        assert "### Example 2 (learning)" in section
        assert "-> Classification: learning" in section
        assert section.rstrip().endswith("---")

    def test_format_no_examples(self) -> None:
        assert FewShotSelector.format_examples([]) == ""

    @pytest.mark.asyncio
    async def test_prompt_section_cached_until_invalidated(self) -> None:
        store = _store_with_rows(
            {"decision": [{"title": "T", "content": "c", "reasoning": "r"}]}
        )
        selector = FewShotSelector(store, cache=FewShotCache(clock=FakeClock()))

        first = await selector.get_prompt_section()
        await selector.get_prompt_section()
        assert store.get_few_shot_candidates.await_count == 5

        selector.invalidate()
        second = await selector.get_prompt_section()
        assert store.get_few_shot_candidates.await_count == 10
        assert first == second
