"""JSON API routes for the notetriage review API.

All routes live on api_router under the /api prefix and use FastAPI
dependency injection to access shared state.

Error mapping:
- Unknown result or notification: 404
- Action not valid in the current state: 409
- Request validation: 422 (FastAPI)
- Inference server unavailable or service not initialized: 503
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from notetriage.classifier.policy import classify, needs_reinference, search_priority
from notetriage.classifier.taxonomy import NoteType
from notetriage.core.errors import (
    InferenceUnavailableError,
    InvalidActionError,
    NotificationNotFoundError,
    ResultNotFoundError,
)
from notetriage.core.logging import get_logger
from notetriage.db.store import DatabaseStore, Note, PromotionNotificationRecord
from notetriage.engine.baseline import BaselineService
from notetriage.engine.candidates import CandidateSelector
from notetriage.engine.promotion import PromotionDetector
from notetriage.engine.reclassify import LAST_RUN_STATE_KEY, ReclassifyEngine
from notetriage.web.dependencies import (
    get_baseline_service,
    get_candidate_selector,
    get_engine,
    get_promotion_detector,
    get_store,
)

logger = get_logger(__name__)

api_router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Pydantic models for API input validation
# ---------------------------------------------------------------------------


class RunRequest(BaseModel):
    """Request body for a re-classification run."""

    note_ids: list[str] | None = None
    stale: bool = False
    limit: int | None = Field(default=None, ge=1, le=500)
    dry_run: bool = False
    model: str | None = None
    seed: int | None = Field(default=None, ge=0)


class OverrideRequest(BaseModel):
    """Request body for overriding an LLM result."""

    type: NoteType
    reason: str | None = Field(default=None, max_length=500)


class InferRequest(BaseModel):
    """Request body for saving a note and running the rule classifier."""

    title: str = ""
    content: str


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _promotion_to_dict(record: PromotionNotificationRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "note_id": record.note_id,
        "note_title": record.note_title,
        "trigger_type": record.trigger_type,
        "source": record.source,
        "suggested_type": record.suggested_type,
        "reason": record.reason,
        "reason_detail": record.reason_detail,
        "confidence": record.confidence,
        "status": record.status,
        "created_at": record.created_at.isoformat() if record.created_at else None,
    }


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@api_router.get("/health")
async def health_check(request: Request):
    """Health check: database, inference server and pending review count."""
    store: DatabaseStore | None = getattr(request.app.state, "store", None)
    client = getattr(request.app.state, "client", None)
    if store is None or client is None:
        return {"status": "unconfigured", "version": "0.1.0"}

    inference = await client.check_health()
    last_run = await store.get_state(LAST_RUN_STATE_KEY)
    pending = await store.count_llm_results_by_status("pending")

    return {
        "status": "healthy" if inference.available and inference.model_loaded else "degraded",
        "inference": inference.to_dict(),
        "last_reclassify_run": last_run,
        "pending_results": pending,
        "version": "0.1.0",
    }


# ---------------------------------------------------------------------------
# LLM re-classification
# ---------------------------------------------------------------------------


@api_router.get("/llm-inference/candidates")
async def list_candidates(
    limit: int | None = Query(default=None, ge=1, le=500),
    threshold: float | None = Query(default=None, ge=0.0, le=1.0),
    candidates: CandidateSelector = Depends(get_candidate_selector),  # noqa: B008
):
    """Notes that the next run would send to the model."""
    selected = await candidates.select(limit=limit, confidence_threshold=threshold)
    return {"count": len(selected), "candidates": [c.to_dict() for c in selected]}


@api_router.get("/llm-inference/estimate")
async def estimate_run(
    limit: int | None = Query(default=None, ge=1, le=500),
    engine: ReclassifyEngine = Depends(get_engine),  # noqa: B008
):
    """Worklist size and expected duration of a run."""
    return await engine.estimate(limit)


@api_router.post("/llm-inference/run")
async def run_reclassify(
    body: RunRequest,
    engine: ReclassifyEngine = Depends(get_engine),  # noqa: B008
    baseline: BaselineService = Depends(get_baseline_service),  # noqa: B008
):
    """Run one re-classification batch and return the per-note outcomes.

    With stale=true the batch covers the notes whose baseline needs
    re-inference instead of the candidate pools.
    """
    note_ids = body.note_ids
    if body.stale:
        if note_ids is not None:
            raise HTTPException(status_code=422, detail="Pass either note_ids or stale, not both")
        note_ids = await baseline.note_ids_needing_reinference()

    try:
        result = await engine.run_batch(
            note_ids=note_ids,
            limit=body.limit,
            dry_run=body.dry_run,
            model=body.model,
            seed=body.seed,
        )
    except InferenceUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e)) from None

    return result.to_dict()


@api_router.get("/llm-inference/pending")
async def list_pending(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    engine: ReclassifyEngine = Depends(get_engine),  # noqa: B008
):
    """Results awaiting review, oldest first."""
    page = await engine.list_pending(limit=limit, offset=offset)
    return page.to_dict()


@api_router.get("/llm-inference/notified")
async def list_notified(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    engine: ReclassifyEngine = Depends(get_engine),  # noqa: B008
):
    """Auto-applied results flagged for confirmation."""
    page = await engine.list_auto_applied_notified(limit=limit, offset=offset)
    return page.to_dict()


@api_router.post("/llm-inference/results/{result_id}/approve")
async def approve_result(
    result_id: int,
    engine: ReclassifyEngine = Depends(get_engine),  # noqa: B008
):
    """Approve a pending or auto_applied_notified result."""
    try:
        record = await engine.approve(result_id)
    except ResultNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from None
    except InvalidActionError as e:
        raise HTTPException(status_code=409, detail=str(e)) from None

    return {
        "status": "approved",
        "result_id": result_id,
        "note_id": record.note_id,
        "type": record.result.note_type,
    }


@api_router.post("/llm-inference/results/{result_id}/override")
async def override_result(
    result_id: int,
    body: OverrideRequest,
    engine: ReclassifyEngine = Depends(get_engine),  # noqa: B008
):
    """Replace a result's type with the user's choice."""
    try:
        record = await engine.override(result_id, body.type, body.reason)
    except ResultNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from None
    except InvalidActionError as e:
        raise HTTPException(status_code=409, detail=str(e)) from None

    return {
        "status": "overridden",
        "result_id": result_id,
        "note_id": record.note_id,
        "type": body.type,
        "previous_type": record.result.note_type,
    }


@api_router.get("/llm-inference/weekly-summary")
async def weekly_summary(engine: ReclassifyEngine = Depends(get_engine)):  # noqa: B008
    """LLM activity for the current Sunday-to-Saturday week."""
    summary = await engine.weekly_summary()
    return summary.to_dict()


# ---------------------------------------------------------------------------
# Notes
# ---------------------------------------------------------------------------


@api_router.post("/notes/{note_id}/infer")
async def infer_note(
    note_id: str,
    body: InferRequest,
    store: DatabaseStore = Depends(get_store),  # noqa: B008
    baseline: BaselineService = Depends(get_baseline_service),  # noqa: B008
):
    """Save a note and classify it with the rule classifier."""
    await store.save_note(Note(id=note_id, title=body.title, content=body.content))
    result = await baseline.infer_and_save(note_id, body.content)
    final = classify(result)

    return {
        "note_id": note_id,
        "inference": result.to_dict(),
        "classification": final.to_dict(),
        "search_priority": search_priority(final),
    }


@api_router.get("/notes/{note_id}/classification")
async def get_classification(
    note_id: str,
    baseline: BaselineService = Depends(get_baseline_service),  # noqa: B008
):
    """Current baseline of a note and its derived classification."""
    latest = await baseline.get_latest(note_id)
    if latest is None:
        raise HTTPException(status_code=404, detail="No classification for this note")

    final = classify(latest.result)
    return {
        "note_id": note_id,
        "model": latest.model,
        "inference": latest.result.to_dict(),
        "classification": final.to_dict(),
        "search_priority": search_priority(final),
        "needs_reinference": needs_reinference(latest.result, final),
        "created_at": latest.created_at.isoformat() if latest.created_at else None,
    }


# ---------------------------------------------------------------------------
# Promotions
# ---------------------------------------------------------------------------


@api_router.get("/promotions")
async def list_promotions(
    limit: int | None = Query(default=None, ge=1, le=500),
    detector: PromotionDetector = Depends(get_promotion_detector),  # noqa: B008
):
    """Pending promotion suggestions."""
    records = await detector.list_pending(limit)
    return {"count": len(records), "items": [_promotion_to_dict(r) for r in records]}


@api_router.post("/promotions/scan")
async def scan_promotions(
    limit: int | None = Query(default=None, ge=1, le=10000),
    detector: PromotionDetector = Depends(get_promotion_detector),  # noqa: B008
):
    """Check every note's current baseline and store new suggestions."""
    created = await detector.scan_batch(limit)
    return {"created": len(created), "notification_ids": created}


@api_router.post("/promotions/{notification_id}/dismiss")
async def dismiss_promotion(
    notification_id: int,
    detector: PromotionDetector = Depends(get_promotion_detector),  # noqa: B008
):
    """Dismiss a pending promotion suggestion."""
    try:
        await detector.dismiss(notification_id)
    except NotificationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from None
    except InvalidActionError as e:
        raise HTTPException(status_code=409, detail=str(e)) from None

    return {"status": "dismissed", "notification_id": notification_id}


@api_router.post("/promotions/{notification_id}/accept")
async def accept_promotion(
    notification_id: int,
    detector: PromotionDetector = Depends(get_promotion_detector),  # noqa: B008
):
    """Accept a promotion suggestion. The host applies the new type."""
    try:
        note_id, suggested_type = await detector.accept(notification_id)
    except NotificationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from None
    except InvalidActionError as e:
        raise HTTPException(status_code=409, detail=str(e)) from None

    logger.info("promotion_accepted_via_api", notification_id=notification_id)
    return {
        "status": "promoted",
        "notification_id": notification_id,
        "note_id": note_id,
        "suggested_type": suggested_type,
    }
