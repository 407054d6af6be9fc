"""Wiring of the shared runtime objects.

Both the CLI and the web lifespan need the same graph of objects: store,
inference client, dispatcher, promotion detector, baseline service,
candidate selector, few-shot selector and re-classification engine.
build_services() constructs them from an AppConfig in dependency order.

Usage:
    from notetriage.services import build_services

    services = await build_services(get_config())
    try:
        result = await services.engine.run_batch(limit=10)
    finally:
        await services.aclose()
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from notetriage.classifier.few_shot import FewShotCache, FewShotSelector
from notetriage.classifier.llm_client import OllamaClient
from notetriage.classifier.rules import RuleClassifier
from notetriage.db.store import DatabaseStore
from notetriage.engine.baseline import BaselineService
from notetriage.engine.candidates import CandidateSelector
from notetriage.engine.events import BackgroundDispatcher
from notetriage.engine.promotion import PromotionDetector
from notetriage.engine.reclassify import ReclassifyEngine

if TYPE_CHECKING:
    import httpx

    from notetriage.config_schema import AppConfig


@dataclass(frozen=True, slots=True)
class Services:
    """Shared dependencies initialized by build_services()."""

    config: AppConfig
    store: DatabaseStore
    client: OllamaClient
    dispatcher: BackgroundDispatcher
    detector: PromotionDetector
    baseline: BaselineService
    candidates: CandidateSelector
    few_shot: FewShotSelector
    engine: ReclassifyEngine

    async def aclose(self) -> None:
        """Flush pending background messages and close the HTTP client."""
        await self.dispatcher.drain()
        await self.dispatcher.aclose()
        await self.client.aclose()


async def build_services(
    config: AppConfig, http_client: httpx.AsyncClient | None = None
) -> Services:
    """Initialize the database and construct every shared object.

    Args:
        config: Validated application configuration
        http_client: Optional pre-built client for the inference server

    Raises:
        DatabaseError: If the database cannot be initialized
    """
    db_path = Path(config.database.path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = DatabaseStore(db_path)
    await store.initialize()

    client = OllamaClient.from_config(config.ollama, http_client=http_client)
    rules = RuleClassifier(config.rules.confidence_ceiling)

    dispatcher = BackgroundDispatcher()
    detector = PromotionDetector(
        store,
        near_threshold=config.promotion.near_threshold,
        pending_list_limit=config.promotion.pending_list_limit,
    )
    baseline = BaselineService(store, dispatcher, classifier=rules, detector=detector)

    candidates = CandidateSelector(
        store,
        default_limit=config.batch.max_candidates,
        default_threshold=config.batch.low_confidence_threshold,
    )
    few_shot = FewShotSelector(
        store,
        cache=FewShotCache(ttl_seconds=config.few_shot.cache_ttl_seconds),
        max_per_type=config.few_shot.max_examples_per_type,
        min_confidence=config.few_shot.min_confidence,
        max_content_length=config.few_shot.max_content_length,
    )
    engine = ReclassifyEngine(
        store,
        client,
        candidates,
        few_shot,
        config=config,
        rule_classifier=rules,
    )

    return Services(
        config=config,
        store=store,
        client=client,
        dispatcher=dispatcher,
        detector=detector,
        baseline=baseline,
        candidates=candidates,
        few_shot=few_shot,
        engine=engine,
    )
