"""FastAPI dependency injection helpers.

Extracts shared dependencies from app.state for use in route handlers.
All dependencies are initialized during the FastAPI lifespan and stored
on app.state for concurrent access by the web routes and the scheduled
re-classification job.

Usage:
    from notetriage.web.dependencies import get_engine

    @router.get("/llm-inference/pending")
    async def pending(engine: ReclassifyEngine = Depends(get_engine)):
        page = await engine.list_pending()
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import HTTPException, Request

if TYPE_CHECKING:
    from notetriage.classifier.llm_client import OllamaClient
    from notetriage.config_schema import AppConfig
    from notetriage.db.store import DatabaseStore
    from notetriage.engine.baseline import BaselineService
    from notetriage.engine.candidates import CandidateSelector
    from notetriage.engine.promotion import PromotionDetector
    from notetriage.engine.reclassify import ReclassifyEngine


def _require(request: Request, name: str) -> Any:
    """Return app.state.<name>, or 503 if startup left it unset."""
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(status_code=503, detail=f"Service not initialized: {name}")
    return value


def get_store(request: Request) -> DatabaseStore:
    """Get the shared DatabaseStore from app state."""
    return _require(request, "store")


def get_config(request: Request) -> AppConfig:
    """Get the current AppConfig from app state."""
    return _require(request, "config")


def get_client(request: Request) -> OllamaClient:
    """Get the OllamaClient from app state."""
    return _require(request, "client")


def get_engine(request: Request) -> ReclassifyEngine:
    """Get the ReclassifyEngine from app state."""
    return _require(request, "engine")


def get_candidate_selector(request: Request) -> CandidateSelector:
    return _require(request, "candidates")


def get_baseline_service(request: Request) -> BaselineService:
    return _require(request, "baseline")


def get_promotion_detector(request: Request) -> PromotionDetector:
    return _require(request, "detector")
