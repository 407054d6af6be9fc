"""Re-classification orchestrator for LLM refinement of baselines.

Runs batches of candidate notes through the local LLM, gates each result
by confidence into auto-apply or human review, and serves the review
actions and weekly summary.

Per-candidate pipeline:
1. Classify with the LLM, or with the rule classifier when the service is
   unavailable (at batch start or on a per-call connection failure)
2. Determine the status from the confidence thresholds
3. Persist the LLM row; auto-apply statuses also append a baseline row
4. Any other failure becomes an 'error' item (and a best-effort error row)

Batches run in fixed-size windows of concurrent calls with a pause between
windows so a local model server is not overwhelmed. Items are returned in
input order and one failing note never fails the batch.

Usage:
    from notetriage.engine.reclassify import ReclassifyEngine

    engine = ReclassifyEngine(store, client, candidates, few_shot, config)
    batch = await engine.run_batch(limit=10)
    page = await engine.list_pending()
    await engine.approve(page.items[0].id)
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Any, cast

from notetriage.classifier.llm_client import INFERENCE_VERSION
from notetriage.classifier.prompts import is_content_truncated
from notetriage.classifier.rules import RULE_MODEL_NAME, RuleClassifier
from notetriage.classifier.taxonomy import NOTE_TYPES, InferenceResult
from notetriage.config_schema import AppConfig
from notetriage.core.concurrency import settle_all, windows
from notetriage.core.errors import (
    DatabaseError,
    InferenceTimeoutError,
    InferenceUnavailableError,
    InvalidActionError,
    OutputParseError,
)
from notetriage.core.logging import batch_scope, get_logger
from notetriage.db.store import AUTO_APPLY_STATUSES, DELETED_NOTE_TITLE

if TYPE_CHECKING:
    from notetriage.classifier.few_shot import FewShotSelector
    from notetriage.classifier.llm_client import OllamaClient
    from notetriage.classifier.taxonomy import NoteType
    from notetriage.db.store import DatabaseStore, LLMResultRecord, LLMResultStatus
    from notetriage.engine.candidates import Candidate, CandidateSelector

logger = get_logger(__name__)

ERROR_OUTPUT_PARSE_FAILED = "LLM_OUTPUT_PARSE_FAILED"
ERROR_TIMEOUT = "LLM_TIMEOUT"
ERROR_INFERENCE_FAILED = "LLM_INFERENCE_FAILED"

FALLBACK_PREFIX = "[fallback] "
LAST_RUN_STATE_KEY = "last_reclassify_run"

# Rough local-model throughput used for run estimates
ESTIMATED_SECONDS_PER_NOTE = 3

WEEKLY_LIST_LIMIT = 10


def determine_status(
    confidence: float, high: float = 0.85, mid: float = 0.7
) -> LLMResultStatus:
    """Map a confidence to a review status. Monotone non-decreasing in confidence."""
    if confidence >= high:
        return "auto_applied"
    if confidence >= mid:
        return "auto_applied_notified"
    return "pending"


def error_code_for(error: BaseException) -> str:
    if isinstance(error, OutputParseError):
        return ERROR_OUTPUT_PARSE_FAILED
    if isinstance(error, InferenceTimeoutError):
        return ERROR_TIMEOUT
    return ERROR_INFERENCE_FAILED


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass
class ReclassifyItem:
    """Outcome for one candidate in a batch."""

    note_id: str
    note_type: NoteType
    confidence: float
    status: LLMResultStatus
    reasoning: str
    result_id: int | None = None
    fallback_used: bool = False
    error_code: str | None = None
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = data.pop("note_type")
        return data


@dataclass
class ReclassifyBatchResult:
    """Result of a single re-classification batch."""

    batch_id: str
    dry_run: bool = False
    inference_available: bool = False
    duration_ms: int = 0
    items: list[ReclassifyItem] = field(default_factory=list)

    @property
    def executed(self) -> int:
        return len(self.items)

    def count(self, status: str) -> int:
        return sum(1 for item in self.items if item.status == status)

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "dry_run": self.dry_run,
            "inference_available": self.inference_available,
            "duration_ms": self.duration_ms,
            "executed": self.executed,
            "results": [item.to_dict() for item in self.items],
        }


@dataclass
class ReviewItem:
    """An LLM result as shown in a review list."""

    id: int
    note_id: str
    title: str
    current_type: NoteType | None
    suggested_type: NoteType
    confidence: float
    reasoning: str
    status: LLMResultStatus
    created_at: datetime | None = None

    @classmethod
    def from_record(cls, record: LLMResultRecord) -> ReviewItem:
        return cls(
            id=record.id,
            note_id=record.note_id,
            title=record.note_title or DELETED_NOTE_TITLE,
            current_type=record.current_type,
            suggested_type=record.result.note_type,
            confidence=record.result.confidence,
            reasoning=record.result.reasoning,
            status=record.status,
            created_at=record.created_at,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat() if self.created_at else None
        return data


@dataclass
class ReviewPage:
    count: int
    items: list[ReviewItem] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"count": self.count, "items": [item.to_dict() for item in self.items]}


@dataclass
class WeeklySummary:
    """LLM activity for one Sunday-to-Saturday week."""

    week_start: date
    week_end: date
    auto_applied_high: int = 0
    auto_applied_mid: int = 0
    pending: int = 0
    approved: int = 0
    overridden: int = 0
    error: int = 0
    recent_auto_applied: list[ReviewItem] = field(default_factory=list)
    pending_items: list[ReviewItem] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "week_start": self.week_start.isoformat(),
            "week_end": self.week_end.isoformat(),
            "stats": {
                "auto_applied_high": self.auto_applied_high,
                "auto_applied_mid": self.auto_applied_mid,
                "pending": self.pending,
                "approved": self.approved,
                "overridden": self.overridden,
                "error": self.error,
            },
            "recent_auto_applied": [item.to_dict() for item in self.recent_auto_applied],
            "pending_items": [item.to_dict() for item in self.pending_items],
        }


def week_bounds(now: datetime) -> tuple[datetime, datetime]:
    """Sunday 00:00 of now's week and the following Sunday 00:00."""
    days_since_sunday = (now.weekday() + 1) % 7
    start = (now - timedelta(days=days_since_sunday)).replace(
        hour=0, minute=0, second=0, microsecond=0
    )
    return start, start + timedelta(days=7)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ReclassifyEngine:
    """Batch LLM re-classification with confidence-gated review.

    Each batch generates a UUID4 batch_id for log correlation.

    Attributes:
        _store: DatabaseStore for persistence
        _client: OllamaClient for LLM calls
        _candidates: CandidateSelector building the worklist
        _few_shot: FewShotSelector for prompt examples (invalidated on review)
        _rules: RuleClassifier used as the fallback path
        _config: Application configuration
    """

    def __init__(
        self,
        store: DatabaseStore,
        client: OllamaClient,
        candidates: CandidateSelector,
        few_shot: FewShotSelector,
        config: AppConfig | None = None,
        rule_classifier: RuleClassifier | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._store = store
        self._client = client
        self._candidates = candidates
        self._few_shot = few_shot
        self._config = config or AppConfig()
        self._rules = rule_classifier or RuleClassifier(self._config.rules.confidence_ceiling)
        self._sleep = sleep

    def update_config(self, config: AppConfig) -> None:
        """Apply a reloaded configuration to subsequent batches.

        Covers the inference client, few-shot selection, rules and candidate
        defaults. Database and logging settings still need a restart.
        """
        self._config = config
        self._rules = RuleClassifier(config.rules.confidence_ceiling)
        self._candidates.default_limit = config.batch.max_candidates
        self._candidates.default_threshold = config.batch.low_confidence_threshold
        self._client.apply_config(config.ollama)
        self._few_shot.apply_config(config.few_shot)
        logger.info(
            "engine_config_applied", model=config.ollama.model, base_url=config.ollama.base_url
        )

    # -------------------------------------------------------------------------
    # Batch execution
    # -------------------------------------------------------------------------

    async def estimate(self, limit: int | None = None) -> dict[str, Any]:
        """Worklist size and expected duration of a run."""
        count = await self._candidates.count(limit=limit)
        return {
            "count": count,
            "estimated_cost": 0,
            "estimated_time_seconds": count * ESTIMATED_SECONDS_PER_NOTE,
        }

    async def run_batch(
        self,
        note_ids: list[str] | None = None,
        limit: int | None = None,
        dry_run: bool = False,
        model: str | None = None,
        seed: int | None = None,
    ) -> ReclassifyBatchResult:
        """Re-classify a batch of notes.

        Args:
            note_ids: Explicit notes to process (default: candidate pools). An
                empty list processes nothing.
            limit: Maximum notes (default: configured max_candidates)
            dry_run: Classify without persisting anything
            model: Model override for this batch
            seed: Sampling seed (default: configured default_seed)

        Returns:
            ReclassifyBatchResult with one item per candidate, in order
        """
        batch_id = str(uuid.uuid4())
        seed = self._config.ollama.default_seed if seed is None else seed
        result = ReclassifyBatchResult(batch_id=batch_id, dry_run=dry_run)

        with batch_scope(batch_id):
            start_time = time.monotonic()
            try:
                await self._execute(result, note_ids, limit, model, seed)
                if not dry_run:
                    await self._store.set_state(LAST_RUN_STATE_KEY, datetime.now().isoformat())
            finally:
                result.duration_ms = int((time.monotonic() - start_time) * 1000)
                logger.info(
                    "reclassify_batch_complete",
                    duration_ms=result.duration_ms,
                    executed=result.executed,
                    auto_applied=result.count("auto_applied"),
                    auto_applied_notified=result.count("auto_applied_notified"),
                    pending=result.count("pending"),
                    errors=result.count("error"),
                )

        return result

    async def _execute(
        self,
        result: ReclassifyBatchResult,
        note_ids: list[str] | None,
        limit: int | None,
        model: str | None,
        seed: int,
    ) -> None:
        batch_config = self._config.batch
        dry_run = result.dry_run

        result.inference_available = await self._client.is_available()
        if not result.inference_available:
            logger.warning("inference_unavailable_using_fallback")

        if note_ids is not None:
            candidates = await self._candidates.for_notes(note_ids, limit)
        else:
            candidates = await self._candidates.select(limit=limit)

        few_shot_section = ""
        if result.inference_available and candidates:
            few_shot_section = await self._few_shot.get_prompt_section()

        logger.info(
            "reclassify_batch_start",
            candidates=len(candidates),
            inference_available=result.inference_available,
            dry_run=dry_run,
            model=model or self._client.model,
            seed=seed,
        )

        batches = list(windows(candidates, batch_config.max_concurrent))
        for index, window in enumerate(batches):
            settled = await settle_all(
                [
                    self._process_candidate(
                        candidate,
                        result.inference_available,
                        few_shot_section,
                        model,
                        seed,
                        dry_run,
                    )
                    for candidate in window
                ]
            )
            for candidate, outcome in zip(window, settled, strict=True):
                if outcome.error is not None:
                    result.items.append(
                        await self._record_failure(candidate, outcome.error, model, seed, dry_run)
                    )
                else:
                    result.items.append(cast(ReclassifyItem, outcome.value))

            if index < len(batches) - 1 and batch_config.inter_batch_delay_ms > 0:
                await self._sleep(batch_config.inter_batch_delay_ms / 1000)

    def _fallback_result(self, content: str) -> InferenceResult:
        rule = self._rules.classify(content)
        return InferenceResult(
            note_type=rule.note_type,
            intent=rule.intent,
            confidence=rule.confidence,
            confidence_detail=rule.confidence_detail,
            decay_profile=rule.decay_profile,
            reasoning=FALLBACK_PREFIX + rule.reasoning,
        )

    async def _process_candidate(
        self,
        candidate: Candidate,
        inference_available: bool,
        few_shot_section: str,
        model: str | None,
        seed: int,
        dry_run: bool,
    ) -> ReclassifyItem:
        classification = None
        if inference_available:
            try:
                classification = await self._client.classify(
                    candidate.title,
                    candidate.content,
                    few_shot_section,
                    model=model,
                    seed=seed,
                )
            except InferenceUnavailableError as e:
                logger.warning(
                    "inference_unavailable_using_fallback",
                    note_id=candidate.note_id,
                    error=str(e),
                )

        if classification is not None:
            inference = classification.result
            model_name = classification.model
            prompt_tokens = classification.prompt_tokens
            completion_tokens = classification.completion_tokens
            context_truncated = classification.context_truncated
            fallback_used = False
        else:
            inference = self._fallback_result(candidate.content)
            model_name = RULE_MODEL_NAME
            prompt_tokens = completion_tokens = 0
            context_truncated = is_content_truncated(
                candidate.content, self._config.ollama.context_limit
            )
            fallback_used = True

        thresholds = self._config.thresholds
        status = determine_status(
            inference.confidence, thresholds.auto_apply_high, thresholds.auto_apply_mid
        )

        result_id = None
        if not dry_run:
            result_id = await self._store.insert_llm_result(
                note_id=candidate.note_id,
                result=inference,
                model=model_name,
                status=status,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                context_truncated=context_truncated,
                fallback_used=fallback_used,
                inference_version=INFERENCE_VERSION,
                seed=seed,
                apply_to_baseline=status in AUTO_APPLY_STATUSES,
            )

        logger.info(
            "candidate_classified",
            note_id=candidate.note_id,
            note_type=inference.note_type,
            confidence=inference.confidence,
            status=status,
            fallback_used=fallback_used,
        )

        return ReclassifyItem(
            note_id=candidate.note_id,
            note_type=inference.note_type,
            confidence=inference.confidence,
            status=status,
            reasoning=inference.reasoning,
            result_id=result_id,
            fallback_used=fallback_used,
        )

    async def _record_failure(
        self,
        candidate: Candidate,
        error: BaseException,
        model: str | None,
        seed: int,
        dry_run: bool,
    ) -> ReclassifyItem:
        code = error_code_for(error)
        message = str(error) or type(error).__name__
        reasoning = f"Inference failed: {message}"

        logger.error(
            "candidate_failed",
            note_id=candidate.note_id,
            error_code=code,
            error=message,
            error_type=type(error).__name__,
        )

        result_id = None
        if not dry_run:
            try:
                result_id = await self._store.insert_llm_result(
                    note_id=candidate.note_id,
                    result=InferenceResult(
                        note_type="scratch",
                        intent="unknown",
                        confidence=0.0,
                        reasoning=reasoning,
                    ),
                    model=model or self._client.model,
                    status="error",
                    inference_version=INFERENCE_VERSION,
                    seed=seed,
                    error_code=code,
                    error_message=message,
                )
            except DatabaseError as e:
                logger.warning(
                    "error_row_persist_failed", note_id=candidate.note_id, error=str(e)
                )

        return ReclassifyItem(
            note_id=candidate.note_id,
            note_type="scratch",
            confidence=0.0,
            status="error",
            reasoning=reasoning,
            result_id=result_id,
            error_code=code,
            error_message=message,
        )

    # -------------------------------------------------------------------------
    # Review actions
    # -------------------------------------------------------------------------

    async def approve(self, result_id: int) -> LLMResultRecord:
        """Approve a pending or auto_applied_notified result.

        Raises:
            ResultNotFoundError: If no such result exists
            InvalidActionError: If the result is not awaiting review
        """
        record = await self._store.approve_llm_result(result_id)
        self._few_shot.invalidate()
        return record

    async def override(
        self, result_id: int, note_type: str, reason: str | None = None
    ) -> LLMResultRecord:
        """Replace a result's type with the user's choice.

        Raises:
            ResultNotFoundError: If no such result exists
            InvalidActionError: If the type is invalid or the result is not
                awaiting review
        """
        if note_type not in NOTE_TYPES:
            raise InvalidActionError(
                f"Invalid note type '{note_type}'. Valid: {', '.join(NOTE_TYPES)}",
                target_id=result_id,
            )
        record = await self._store.override_llm_result(result_id, note_type, reason)
        self._few_shot.invalidate()
        return record

    # -------------------------------------------------------------------------
    # Listings
    # -------------------------------------------------------------------------

    async def list_pending(self, limit: int = 20, offset: int = 0) -> ReviewPage:
        """Pending results, oldest first."""
        count = await self._store.count_llm_results_by_status("pending")
        records = await self._store.get_llm_results_by_status(
            "pending", limit=limit, offset=offset, oldest_first=True
        )
        return ReviewPage(count=count, items=[ReviewItem.from_record(r) for r in records])

    async def list_auto_applied_notified(self, limit: int = 20, offset: int = 0) -> ReviewPage:
        """Auto-applied results flagged for confirmation, newest first."""
        count = await self._store.count_llm_results_by_status("auto_applied_notified")
        records = await self._store.get_llm_results_by_status(
            "auto_applied_notified", limit=limit, offset=offset
        )
        return ReviewPage(count=count, items=[ReviewItem.from_record(r) for r in records])

    async def weekly_summary(self, now: datetime | None = None) -> WeeklySummary:
        """Summarize LLM activity for the week containing now."""
        start, end = week_bounds(now or datetime.now())
        counts = await self._store.get_llm_status_counts(start, end)

        recent = await self._store.get_llm_results_by_status(
            "auto_applied_notified", limit=WEEKLY_LIST_LIMIT, since=start, until=end
        )
        pending = await self.list_pending(limit=WEEKLY_LIST_LIMIT)

        return WeeklySummary(
            week_start=start.date(),
            week_end=(end - timedelta(days=1)).date(),
            auto_applied_high=counts.get("auto_applied", 0),
            auto_applied_mid=counts.get("auto_applied_notified", 0),
            pending=counts.get("pending", 0),
            approved=counts.get("approved", 0),
            overridden=counts.get("overridden", 0),
            error=counts.get("error", 0),
            recent_auto_applied=[ReviewItem.from_record(r) for r in recent],
            pending_items=pending.items,
        )
