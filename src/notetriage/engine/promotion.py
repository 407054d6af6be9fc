"""Promotion detection for scratch notes.

Watches scratch notes whose confidence has climbed toward a real type and
suggests promoting them. Detection only suggests; promotion is always a
human decision.

Detection flow:
1. check() decides, purely, whether the new baseline warrants a suggestion
2. detect() stores it, at most one pending notification per (note, trigger)
3. The user dismisses or accepts it via dismiss() / accept()

Usage:
    from notetriage.engine.promotion import PromotionDetector

    detector = PromotionDetector(store, near_threshold=0.55)
    notification_id = await detector.detect(note_id, current, previous)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from notetriage.classifier.rules import DECISION_LABEL, LEARNING_LABEL
from notetriage.core.errors import InvalidActionError, NotificationNotFoundError
from notetriage.core.logging import get_logger
from notetriage.engine.events import PromotionCheckRequested

if TYPE_CHECKING:
    from notetriage.classifier.taxonomy import InferenceResult, NoteType
    from notetriage.db.store import DatabaseStore, PromotionNotificationRecord, PromotionSource

logger = get_logger(__name__)

TRIGGER_CONFIDENCE_RISE = "confidence_rise"
DEFAULT_NEAR_THRESHOLD = 0.55
SHARP_RISE_DELTA = 0.1
ASSERTIVE_STRUCTURAL = 0.3

_DECISION_INTENTS = frozenset({"architecture", "design"})
_LEARNING_INTENTS = frozenset({"implementation", "review"})


@dataclass(frozen=True, slots=True)
class PromotionCheck:
    """Outcome of a positive promotion check."""

    suggested_type: NoteType
    reason: str
    confidence: float
    trigger_type: str = TRIGGER_CONFIDENCE_RISE
    reason_detail: dict[str, Any] = field(default_factory=dict)


def suggest_type(current: InferenceResult) -> NoteType:
    """Pick the type a scratch note looks closest to."""
    if DECISION_LABEL in current.reasoning or current.intent in _DECISION_INTENTS:
        return "decision"
    if LEARNING_LABEL in current.reasoning or current.intent in _LEARNING_INTENTS:
        return "learning"
    # learning is the lower bar of the two
    return "learning"


def build_reason(current: InferenceResult, suggested_type: NoteType, delta: float) -> str:
    label = "a decision note" if suggested_type == "decision" else "a learning note"
    if delta > SHARP_RISE_DELTA:
        return f"Confidence rose sharply (+{round(delta * 100)}%). This could become {label}."
    if current.confidence_detail.structural >= ASSERTIVE_STRUCTURAL:
        return f"The phrasing has become more assertive. This could become {label}."
    return f"The content has become more organized. This could become {label}."


class PromotionDetector:
    """Detects and manages promotion suggestions.

    Attributes:
        near_threshold: Minimum scratch confidence that triggers a suggestion
        pending_list_limit: Default size of the pending list
    """

    def __init__(
        self,
        store: DatabaseStore,
        near_threshold: float = DEFAULT_NEAR_THRESHOLD,
        pending_list_limit: int = 20,
    ):
        self._store = store
        self.near_threshold = near_threshold
        self.pending_list_limit = pending_list_limit

    def check(
        self, current: InferenceResult, previous: InferenceResult | None
    ) -> PromotionCheck | None:
        """Decide whether a new baseline warrants a promotion suggestion.

        Fires only for scratch notes at or above the near threshold.
        """
        if current.note_type != "scratch":
            return None
        if current.confidence < self.near_threshold:
            return None

        delta = round(current.confidence - previous.confidence, 2) if previous else 0.0
        suggested = suggest_type(current)

        return PromotionCheck(
            suggested_type=suggested,
            reason=build_reason(current, suggested, delta),
            confidence=current.confidence,
            reason_detail={
                "confidence_delta": delta,
                "previous_confidence": previous.confidence if previous else None,
                "structural": current.confidence_detail.structural,
            },
        )

    async def detect(
        self,
        note_id: str,
        current: InferenceResult,
        previous: InferenceResult | None,
        source: PromotionSource = "realtime",
    ) -> int | None:
        """Run check() and store a notification if it fires.

        Returns:
            The new notification ID, or None if the check did not fire or a
            pending notification for the note already exists
        """
        result = self.check(current, previous)
        if result is None:
            return None

        notification_id = await self._store.create_promotion_notification(
            note_id=note_id,
            trigger_type=result.trigger_type,
            source=source,
            suggested_type=result.suggested_type,
            reason=result.reason,
            reason_detail=result.reason_detail,
            confidence=result.confidence,
        )

        if notification_id is None:
            logger.debug("promotion_notification_deduplicated", note_id=note_id)
            return None

        logger.info(
            "promotion_notification_created",
            notification_id=notification_id,
            note_id=note_id,
            suggested_type=result.suggested_type,
            source=source,
        )
        return notification_id

    async def handle_check_requested(self, message: PromotionCheckRequested) -> None:
        """Dispatcher handler for PromotionCheckRequested.

        A note that is no longer scratch has nothing left to promote, so its
        pending suggestions are dismissed.
        """
        if message.current.note_type != "scratch":
            await self.clear_pending(message.note_id)
            return
        await self.detect(message.note_id, message.current, message.previous, message.source)

    async def scan_batch(self, limit: int | None = None) -> list[int]:
        """Check every note's baseline against its predecessor.

        Args:
            limit: Maximum notes to scan (default: all)

        Returns:
            IDs of the notifications created
        """
        baselines = await self._store.get_all_baselines()
        if limit is not None:
            baselines = baselines[:limit]

        created: list[int] = []
        for baseline in baselines:
            if self.check(baseline.result, None) is None:
                continue
            history = await self._store.get_inference_history(baseline.note_id, limit=2)
            previous = history[1].result if len(history) > 1 else None
            notification_id = await self.detect(
                baseline.note_id, baseline.result, previous, source="batch"
            )
            if notification_id is not None:
                created.append(notification_id)

        logger.info("promotion_scan_complete", scanned=len(baselines), created=len(created))
        return created

    # -------------------------------------------------------------------------
    # Notification actions
    # -------------------------------------------------------------------------

    async def list_pending(self, limit: int | None = None) -> list[PromotionNotificationRecord]:
        return await self._store.get_pending_promotions(limit or self.pending_list_limit)

    async def _resolve(self, notification_id: int, status: str) -> PromotionNotificationRecord:
        record = await self._store.resolve_promotion_notification(notification_id, status)
        if record is not None:
            return record

        existing = await self._store.get_promotion_notification(notification_id)
        if existing is None:
            raise NotificationNotFoundError(
                f"Promotion notification {notification_id} not found",
                target_id=notification_id,
            )
        raise InvalidActionError(
            f"Promotion notification {notification_id} is already {existing.status}",
            target_id=notification_id,
        )

    async def dismiss(self, notification_id: int) -> None:
        """Dismiss a pending notification.

        Raises:
            NotificationNotFoundError: If no such notification exists
            InvalidActionError: If it is no longer pending
        """
        record = await self._resolve(notification_id, "dismissed")
        logger.info("promotion_dismissed", notification_id=notification_id, note_id=record.note_id)

    async def accept(self, notification_id: int) -> tuple[str, NoteType]:
        """Accept a pending notification.

        Only the notification changes; the caller applies the new type.

        Returns:
            Tuple of (note_id, suggested_type)

        Raises:
            NotificationNotFoundError: If no such notification exists
            InvalidActionError: If it is no longer pending
        """
        record = await self._resolve(notification_id, "promoted")
        logger.info(
            "promotion_accepted",
            notification_id=notification_id,
            note_id=record.note_id,
            suggested_type=record.suggested_type,
        )
        return record.note_id, record.suggested_type

    async def clear_pending(self, note_id: str) -> int:
        """Dismiss all pending notifications for a note."""
        count = await self._store.dismiss_pending_promotions(note_id)
        if count:
            logger.info("promotion_pending_cleared", note_id=note_id, count=count)
        return count
