"""Tests for candidate selection."""

import pytest

from notetriage.classifier.taxonomy import InferenceResult
from notetriage.db import DatabaseStore, Note
from notetriage.engine.candidates import CandidateSelector


def _result(note_type: str, confidence: float) -> InferenceResult:
    return InferenceResult(note_type=note_type, intent="unknown", confidence=confidence)


async def _note(
    store: DatabaseStore,
    note_id: str,
    baseline: tuple[str, float] | None = None,
    llm_status: str | None = None,
) -> None:
    await store.save_note(Note(id=note_id, title=f"Title {note_id}", content=f"Body {note_id}"))
    if baseline is not None:
        await store.insert_inference(note_id, _result(*baseline), "rule-v1")
    if llm_status is not None:
        await store.insert_llm_result(note_id, _result("log", 0.5), "qwen2.5:3b", llm_status)


@pytest.fixture
async def seeded_store(store: DatabaseStore) -> DatabaseStore:
    await _note(store, "fresh")                                                 # pool 1
    await _note(store, "fresh_scratch", ("scratch", 0.4))                       # pool 1
    await _note(store, "retry_low", ("log", 0.3), "error")                      # pool 2
    await _note(store, "retry_scratch", ("scratch", 0.6), "error")              # pool 3
    await _note(store, "retry_both", ("scratch", 0.2), "error")                 # pools 2 + 3
    await _note(store, "retry_confident", ("decision", 0.9), "error")           # no pool
    await _note(store, "approved_low", ("log", 0.3), "approved")                # handled
    await _note(store, "auto_scratch", ("scratch", 0.2), "auto_applied")        # handled
    await _note(store, "waiting", ("scratch", 0.2), "pending")                  # handled
    await _note(store, "notified", ("log", 0.1), "auto_applied_notified")       # handled
    return store


class TestCandidateSelector:
    """Tests for CandidateSelector.select()."""

    @pytest.mark.asyncio
    async def test_pool_order_and_reasons(self, seeded_store: DatabaseStore) -> None:
        selector = CandidateSelector(seeded_store, default_limit=20, default_threshold=0.5)

        candidates = await selector.select()

        reasons = {c.note_id: c.reason for c in candidates}
        assert reasons == {
            "fresh": "no_llm_result",
            "fresh_scratch": "no_llm_result",
            "retry_both": "low_confidence",
            "retry_low": "low_confidence",
            "retry_scratch": "scratch",
        }
        ids = [c.note_id for c in candidates]
        # pool 2 is ordered by confidence, lowest first
        assert ids.index("retry_both") < ids.index("retry_low") < ids.index("retry_scratch")
        assert ids.index("fresh") < ids.index("retry_both")
        assert ids.index("fresh_scratch") < ids.index("retry_both")

    @pytest.mark.asyncio
    async def test_handled_notes_never_reselected(self, seeded_store: DatabaseStore) -> None:
        candidates = await CandidateSelector(seeded_store).select(confidence_threshold=1.0)
        ids = {c.note_id for c in candidates}
        assert ids.isdisjoint({"approved_low", "auto_scratch", "waiting", "notified"})
        # a confident note is retried after an error only if a pool still wants it
        assert "retry_confident" in ids

    @pytest.mark.asyncio
    async def test_overridden_note_not_reselected(self, store: DatabaseStore) -> None:
        await _note(store, "n1", ("log", 0.4))
        result_id = await store.insert_llm_result(
            "n1",
            _result("decision", 0.75),
            "qwen2.5:3b",
            "auto_applied_notified",
            apply_to_baseline=True,
        )
        await store.override_llm_result(result_id, "scratch", "just a jotting")

        selector = CandidateSelector(store)

        assert await selector.select() == []
        assert await selector.count() == 0

    @pytest.mark.asyncio
    async def test_error_only_note_with_confident_baseline_skipped(
        self, store: DatabaseStore
    ) -> None:
        await _note(store, "n1", ("decision", 0.9), "error")
        assert await CandidateSelector(store).select() == []

    @pytest.mark.asyncio
    async def test_each_note_at_most_once(self, seeded_store: DatabaseStore) -> None:
        candidates = await CandidateSelector(seeded_store).select(limit=20)
        ids = [c.note_id for c in candidates]
        assert len(ids) == len(set(ids))

    @pytest.mark.asyncio
    async def test_limit_respected(self, seeded_store: DatabaseStore) -> None:
        candidates = await CandidateSelector(seeded_store).select(limit=3)
        assert len(candidates) == 3
        assert {c.reason for c in candidates[:2]} == {"no_llm_result"}
        assert candidates[2].note_id == "retry_both"

    @pytest.mark.asyncio
    async def test_zero_limit(self, seeded_store: DatabaseStore) -> None:
        assert await CandidateSelector(seeded_store).select(limit=0) == []

    @pytest.mark.asyncio
    async def test_threshold_override(self, seeded_store: DatabaseStore) -> None:
        candidates = await CandidateSelector(seeded_store).select(confidence_threshold=0.25)
        reasons = {c.note_id: c.reason for c in candidates}
        assert reasons["retry_both"] == "low_confidence"
        assert "retry_low" not in reasons

    @pytest.mark.asyncio
    async def test_candidate_carries_baseline(self, seeded_store: DatabaseStore) -> None:
        candidates = await CandidateSelector(seeded_store).select()
        by_id = {c.note_id: c for c in candidates}

        assert by_id["retry_low"].current_type == "log"
        assert by_id["retry_low"].current_confidence == 0.3
        assert by_id["retry_low"].content == "Body retry_low"
        assert by_id["fresh"].current_type is None

    @pytest.mark.asyncio
    async def test_count(self, seeded_store: DatabaseStore) -> None:
        selector = CandidateSelector(seeded_store, default_threshold=0.5)
        assert await selector.count() == 5
        assert await selector.count(limit=2) == 2
        assert await selector.count(confidence_threshold=1.0) == 6

    @pytest.mark.asyncio
    async def test_empty_store(self, store: DatabaseStore) -> None:
        selector = CandidateSelector(store)
        assert await selector.select() == []
        assert await selector.count() == 0


class TestForNotes:
    """Tests for explicit note selection."""

    @pytest.mark.asyncio
    async def test_requested_order_and_unknown_skipped(self, seeded_store: DatabaseStore) -> None:
        selector = CandidateSelector(seeded_store)

        candidates = await selector.for_notes(["retry_confident", "missing", "fresh"])

        assert [c.note_id for c in candidates] == ["retry_confident", "fresh"]
        assert {c.reason for c in candidates} == {"requested"}
        assert candidates[0].current_type == "decision"

    @pytest.mark.asyncio
    async def test_handled_notes_can_be_requested(self, seeded_store: DatabaseStore) -> None:
        candidates = await CandidateSelector(seeded_store).for_notes(["approved_low"])
        assert [c.note_id for c in candidates] == ["approved_low"]

    @pytest.mark.asyncio
    async def test_limit(self, seeded_store: DatabaseStore) -> None:
        candidates = await CandidateSelector(seeded_store).for_notes(
            ["retry_confident", "fresh", "retry_low"], limit=1
        )
        assert [c.note_id for c in candidates] == ["retry_confident"]
