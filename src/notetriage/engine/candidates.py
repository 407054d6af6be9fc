"""Candidate selection for LLM re-classification.

Builds the worklist for a re-classification batch from three pools, filled
in priority order and deduplicated across pools:
1. Notes the LLM has never been asked about, newest first
2. Notes whose baseline confidence is below the threshold, lowest first
3. Notes whose baseline type is scratch, newest first

Once a note has any LLM result other than error it is never selected again,
whatever its review status. Pools 2 and 3 therefore only retry notes whose
previous LLM attempts all failed.

Usage:
    from notetriage.engine.candidates import CandidateSelector

    selector = CandidateSelector(store, default_limit=20, default_threshold=0.5)
    candidates = await selector.select()
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal

from notetriage.core.logging import get_logger

if TYPE_CHECKING:
    from notetriage.classifier.taxonomy import NoteType
    from notetriage.db.store import DatabaseStore

logger = get_logger(__name__)

CandidateReason = Literal["no_llm_result", "low_confidence", "scratch", "requested"]

DEFAULT_LIMIT = 20
DEFAULT_THRESHOLD = 0.5


@dataclass(frozen=True, slots=True)
class Candidate:
    """A note selected for LLM re-classification."""

    note_id: str
    title: str
    content: str
    current_type: NoteType | None
    current_confidence: float | None
    reason: CandidateReason

    def to_dict(self) -> dict[str, Any]:
        return {
            "note_id": self.note_id,
            "title": self.title,
            "current_type": self.current_type,
            "current_confidence": self.current_confidence,
            "reason": self.reason,
        }


def _to_candidate(row: dict[str, Any], reason: CandidateReason) -> Candidate:
    return Candidate(
        note_id=row["note_id"],
        title=row["title"] or "",
        content=row["content"] or "",
        current_type=row["current_type"],
        current_confidence=row["current_confidence"],
        reason=reason,
    )


class CandidateSelector:
    """Selects notes worth sending to the LLM."""

    def __init__(
        self,
        store: DatabaseStore,
        default_limit: int = DEFAULT_LIMIT,
        default_threshold: float = DEFAULT_THRESHOLD,
    ):
        self._store = store
        self.default_limit = default_limit
        self.default_threshold = default_threshold

    async def select(
        self,
        limit: int | None = None,
        confidence_threshold: float | None = None,
    ) -> list[Candidate]:
        """Build the worklist.

        Args:
            limit: Maximum candidates (default: configured max_candidates)
            confidence_threshold: Pool 2 cutoff (default: configured threshold)

        Returns:
            Candidates in pool order, each note at most once
        """
        limit = self.default_limit if limit is None else limit
        threshold = self.default_threshold if confidence_threshold is None else confidence_threshold
        if limit <= 0:
            return []

        selected: list[Candidate] = []
        seen: set[str] = set()

        pools: list[tuple[CandidateReason, Callable[[int], Awaitable[list[dict[str, Any]]]]]] = [
            ("no_llm_result", self._store.get_notes_without_llm_result),
            ("low_confidence", lambda n: self._store.get_low_confidence_notes(threshold, n)),
            ("scratch", self._store.get_scratch_notes),
        ]

        for reason, fetch in pools:
            remaining = limit - len(selected)
            if remaining <= 0:
                break
            # Over-fetch by the number already taken so dedup cannot starve the pool
            for row in await fetch(remaining + len(seen)):
                if row["note_id"] in seen:
                    continue
                seen.add(row["note_id"])
                selected.append(_to_candidate(row, reason))
                if len(selected) >= limit:
                    break

        logger.info(
            "candidates_selected",
            count=len(selected),
            limit=limit,
            threshold=threshold,
        )
        return selected

    async def for_notes(self, note_ids: list[str], limit: int | None = None) -> list[Candidate]:
        """Explicit candidates for the given note IDs. Unknown IDs are skipped."""
        rows = await self._store.get_notes_with_baseline(note_ids)
        if len(rows) < len(set(note_ids)):
            logger.warning(
                "requested_notes_missing",
                requested=len(set(note_ids)),
                found=len(rows),
            )
        candidates = [_to_candidate(row, "requested") for row in rows]
        return candidates[:limit] if limit is not None else candidates

    async def count(
        self,
        limit: int | None = None,
        confidence_threshold: float | None = None,
    ) -> int:
        """Size of the worklist select() would return."""
        limit = self.default_limit if limit is None else limit
        threshold = self.default_threshold if confidence_threshold is None else confidence_threshold
        total = await self._store.count_candidates(threshold)
        return min(total, max(limit, 0))
