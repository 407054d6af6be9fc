"""Rule-path baseline classification and baseline queries.

infer_and_save() is what the host application calls whenever a note is
saved: it runs the rule classifier, appends a baseline row and emits a
promotion check as a one-way message. The promotion check runs in the
background and cannot fail or delay the save.

Usage:
    from notetriage.engine.baseline import BaselineService

    service = BaselineService(store, dispatcher, classifier, detector)
    result = await service.infer_and_save(note_id, content)
    final = await service.get_classification(note_id)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from notetriage.classifier.policy import FinalClassification, classify, needs_reinference
from notetriage.classifier.rules import RULE_MODEL_NAME, RuleClassifier
from notetriage.core.logging import get_logger
from notetriage.engine.events import BackgroundDispatcher, PromotionCheckRequested

if TYPE_CHECKING:
    from notetriage.classifier.taxonomy import InferenceResult
    from notetriage.db.store import DatabaseStore, NoteInferenceRecord
    from notetriage.engine.promotion import PromotionDetector

logger = get_logger(__name__)


class BaselineService:
    """Rule-path saves and read access to the baseline lineage."""

    def __init__(
        self,
        store: DatabaseStore,
        dispatcher: BackgroundDispatcher,
        classifier: RuleClassifier | None = None,
        detector: PromotionDetector | None = None,
    ):
        """Initialize the service.

        Args:
            store: Database store
            dispatcher: Background dispatcher for promotion checks
            classifier: Rule classifier (default ceiling when omitted)
            detector: When given, registered as the promotion check handler
        """
        self._store = store
        self._dispatcher = dispatcher
        self._classifier = classifier or RuleClassifier()
        if detector is not None:
            dispatcher.register(PromotionCheckRequested, detector.handle_check_requested)

    async def infer_and_save(self, note_id: str, content: str) -> InferenceResult:
        """Classify a note with the rule classifier and append a baseline row.

        Args:
            note_id: Note ID (must exist in the notes table)
            content: Note text to classify

        Returns:
            The new baseline classification
        """
        previous = await self._store.get_latest_inference(note_id)
        result = self._classifier.classify(content)
        await self._store.insert_inference(note_id, result, RULE_MODEL_NAME)

        self._dispatcher.emit(
            PromotionCheckRequested(
                note_id=note_id,
                current=result,
                previous=previous.result if previous else None,
            )
        )

        logger.info(
            "baseline_saved",
            note_id=note_id,
            note_type=result.note_type,
            confidence=result.confidence,
        )
        return result

    async def get_latest(self, note_id: str) -> NoteInferenceRecord | None:
        return await self._store.get_latest_inference(note_id)

    async def get_classification(self, note_id: str) -> FinalClassification | None:
        """Derived classification of the note's current baseline."""
        latest = await self._store.get_latest_inference(note_id)
        return classify(latest.result) if latest else None

    async def get_history(self, note_id: str, limit: int = 20) -> list[NoteInferenceRecord]:
        return await self._store.get_inference_history(note_id, limit=limit)

    async def note_ids_needing_reinference(self) -> list[str]:
        """Notes whose baseline is low-confidence or a mid-reliability decision."""
        baselines = await self._store.get_all_baselines()
        return [b.note_id for b in baselines if needs_reinference(b.result)]
