"""Few-shot examples drawn from human-approved classifications.

Approved LLM results are the strongest signal of how this user wants notes
classified. The selector pulls the most recent high-confidence approvals
per type and formats them as a prompt section, so every re-classification
is nudged toward the user's own past choices.

The formatted section is cached for a short TTL in a FewShotCache owned by
the caller; approve/override actions invalidate it so the next prompt sees
the new preference immediately.

Usage:
    from notetriage.classifier.few_shot import FewShotCache, FewShotSelector

    selector = FewShotSelector(store, FewShotCache(ttl_seconds=60))
    section = await selector.get_prompt_section()
    ...
    selector.invalidate()  # after approve / override
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from notetriage.classifier.taxonomy import NOTE_TYPES, NoteType
from notetriage.core.errors import DatabaseError
from notetriage.core.logging import get_logger

if TYPE_CHECKING:
    from notetriage.config_schema import FewShotConfig
    from notetriage.db.store import DatabaseStore

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 60.0
DEFAULT_MAX_PER_TYPE = 2
DEFAULT_MIN_CONFIDENCE = 0.85
DEFAULT_MAX_CONTENT_LENGTH = 200

SECTION_HEADER = """## Reference examples (approved by the user)

The following are classifications this user has approved in the past. \
Use them to follow the user's classification tendencies."""

SECTION_SEPARATOR = "---"


class FewShotCache:
    """Single-value TTL cache with explicit invalidation.

    Reads are optimistic: two concurrent misses may both compute, and the
    last writer wins. No lock is held across the factory await.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._value: str | None = None
        self._fetched_at: float | None = None

    @property
    def is_fresh(self) -> bool:
        if self._value is None or self._fetched_at is None:
            return False
        return (self._clock() - self._fetched_at) < self.ttl_seconds

    async def get_or_compute(self, factory: Callable[[], Awaitable[str]]) -> str:
        """Return the cached value, recomputing it when stale or invalidated."""
        cached = self._value
        if cached is not None and self.is_fresh:
            return cached

        value = await factory()
        self._value = value
        self._fetched_at = self._clock()
        return value

    def invalidate(self) -> None:
        self._value = None
        self._fetched_at = None


@dataclass
class FewShotExample:
    """One approved classification used as a prompt example."""

    note_type: NoteType
    title: str
    content: str
    reasoning: str


class FewShotSelector:
    """Selects and formats approved classifications for the prompt.

    Attributes:
        store: Database store
        cache: TTL cache for the formatted section
        max_per_type: Examples fetched per note type
        min_confidence: Confidence floor for an approval to qualify
        max_content_length: Example bodies are cut to this many characters
    """

    def __init__(
        self,
        store: DatabaseStore,
        cache: FewShotCache | None = None,
        max_per_type: int = DEFAULT_MAX_PER_TYPE,
        min_confidence: float = DEFAULT_MIN_CONFIDENCE,
        max_content_length: int = DEFAULT_MAX_CONTENT_LENGTH,
    ):
        self._store = store
        self.cache = cache or FewShotCache()
        self.max_per_type = max_per_type
        self.min_confidence = min_confidence
        self.max_content_length = max_content_length

    def apply_config(self, config: FewShotConfig) -> None:
        """Adopt reloaded settings and drop the cached section."""
        self.cache.ttl_seconds = config.cache_ttl_seconds
        self.max_per_type = config.max_examples_per_type
        self.min_confidence = config.min_confidence
        self.max_content_length = config.max_content_length
        self.cache.invalidate()

    def _truncate(self, content: str) -> str:
        if len(content) > self.max_content_length:
            return content[: self.max_content_length] + "..."
        return content

    async def fetch_examples(self) -> list[FewShotExample]:
        """Fetch recent approved examples for every note type.

        Store failures degrade to no examples rather than failing the
        classification that asked for them.
        """
        examples: list[FewShotExample] = []
        try:
            for note_type in NOTE_TYPES:
                rows = await self._store.get_few_shot_candidates(
                    note_type, self.min_confidence, self.max_per_type
                )
                for row in rows:
                    examples.append(
                        FewShotExample(
                            note_type=note_type,
                            title=row["title"] or "",
                            content=self._truncate(row["content"] or ""),
                            reasoning=row["reasoning"] or "",
                        )
                    )
        except DatabaseError as e:
            logger.warning("few_shot_fetch_failed", error=str(e))
            return []

        logger.debug("few_shot_examples_fetched", count=len(examples))
        return examples

    @staticmethod
    def format_examples(examples: list[FewShotExample]) -> str:
        if not examples:
            return ""

        blocks = [
            f"### Example {i} ({ex.note_type})\n"
            f"Title: {ex.title}\n"
            f"Body: {ex.content}\n"
            f"-> Classification: {ex.note_type}\n"
            f"Reason: {ex.reasoning}"
            for i, ex in enumerate(examples, start=1)
        ]
        return "\n\n".join([SECTION_HEADER, *blocks, SECTION_SEPARATOR]) + "\n"

    async def get_prompt_section(self) -> str:
        """Formatted few-shot section, served from the cache when fresh."""

        async def _compute() -> str:
            return self.format_examples(await self.fetch_examples())

        return await self.cache.get_or_compute(_compute)

    def invalidate(self) -> None:
        self.cache.invalidate()
