"""
Request surface: recommendations and feedback.

Per request: analyze the session, adapt weights, rank candidates, hydrate them
from the catalog, log what was served, and build the response. The service
never raises on a recommendation-subsystem failure; the worst case is an empty
list with ``total: 0``. Only cancellation propagates, and a cancelled request
writes nothing to the feedback loop.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .aggregator import Aggregator, RankedResult
from .analytics import FeedbackAction, FeedbackLoop, RecommendationFeedback, ServedRecommendation
from .behavior import BehaviorStore
from .catalog import CatalogItem, CatalogStore, HttpCatalog, SqliteCatalog
from .config import CATALOG_URL, CONTENT_TYPES, DEFAULT_LIMIT, DESCRIPTION_MAX_CHARS, MAX_LIMIT
from .database import Database
from .generators import Candidate, RequestContext, default_generators
from .profile import PreferenceAnalyzer, PreferenceProfile
from .session_index import DisabledSessionIndex, SessionIndex, SqliteSessionIndex
from .utils import now_ms
from .weights import WeightAdapter, WeightVector, load_default_weights

logger = logging.getLogger(__name__)

CONTEXT_TYPES = ("general", "item_detail", "search_result")
CONTEXT_ALIASES = {"movie_detail": "item_detail"}


def _truncate(text: str | None, limit: int = DESCRIPTION_MAX_CHARS) -> str | None:
    if not text:
        return None
    return text if len(text) <= limit else text[:limit].rstrip() + "..."


def _subtitle(item: CatalogItem) -> str | None:
    if item.subtitle:
        return item.subtitle
    if item.content_type == "movie" and item.year:
        return f"{item.year} • {item.director or 'Unknown director'}"
    return None


@dataclass
class HydratedRecommendation:
    recommendation_id: str
    candidate: Candidate
    item: CatalogItem
    position: int

    def to_dict(self) -> dict[str, Any]:
        payload = {
            "id": self.item.content_id,
            "type": self.item.content_type,
            "title": self.item.title,
            "url": self.item.url or f"/{self.item.content_type}s/{self.item.content_id}",
            "score": round(self.candidate.score, 4),
            "algorithm": self.candidate.algorithm,
            "reasons": [r.to_dict() for r in self.candidate.reasons],
            "metadata": {"recommendationId": self.recommendation_id, "position": self.position,
                         **self.candidate.aux},
        }
        optional = {
            "subtitle": _subtitle(self.item),
            "description": _truncate(self.item.description),
            "imageUrl": self.item.image_url,
        }
        payload.update({k: v for k, v in optional.items() if v is not None})
        return payload


class RecommendationService:
    """Composes the recommender; every collaborator is injected."""

    def __init__(
        self,
        store: BehaviorStore,
        catalog: CatalogStore,
        aggregator: Aggregator,
        feedback: FeedbackLoop,
        analyzer: PreferenceAnalyzer | None = None,
        adapter: WeightAdapter | None = None,
        session_index: SessionIndex | None = None,
    ):
        self.store = store
        self.catalog = catalog
        self.aggregator = aggregator
        self.feedback = feedback
        self.analyzer = analyzer or PreferenceAnalyzer(store)
        self.adapter = adapter or WeightAdapter()
        self.session_index = session_index or DisabledSessionIndex()

    @staticmethod
    def normalize_request(
        limit: int | None,
        types: list[str] | None,
        context_type: str | None,
    ) -> tuple[int, tuple[str, ...], str]:
        try:
            limit = int(limit) if limit is not None else DEFAULT_LIMIT
        except (TypeError, ValueError):
            limit = DEFAULT_LIMIT
        limit = max(1, min(MAX_LIMIT, limit))

        requested = [t for t in (types or []) if t in CONTENT_TYPES]
        if types and len(requested) != len(types):
            logger.debug(f"Ignoring unknown content types: {sorted(set(types) - set(CONTENT_TYPES))}")
        # Preserve the canonical order so output does not depend on argument order
        normalized_types = tuple(t for t in CONTENT_TYPES if t in requested) or CONTENT_TYPES

        context_type = CONTEXT_ALIASES.get(context_type or "general", context_type or "general")
        if context_type not in CONTEXT_TYPES:
            logger.debug(f"Unknown context type {context_type!r}; treating as general")
            context_type = "general"
        return limit, normalized_types, context_type

    def _hydrate(self, candidates: list[Candidate]) -> list[HydratedRecommendation]:
        hydrated = []
        for candidate in candidates:
            try:
                item = self.catalog.get(candidate.content_type, candidate.content_id)
            except Exception as e:
                logger.warning(f"Catalog lookup failed for {candidate.key}; dropping candidate: {e}")
                continue
            if item is None:
                logger.debug(f"Candidate {candidate.key} not found in catalog; dropping")
                continue
            hydrated.append(HydratedRecommendation(uuid.uuid4().hex, candidate, item, len(hydrated) + 1))
        return hydrated

    def _publish(self, profile: PreferenceProfile) -> None:
        try:
            self.session_index.publish(profile)
        except Exception as e:
            logger.warning(f"Could not publish aggregate for session {profile.session_id}: {e}")

    def _response(
        self,
        context: RequestContext,
        weights: WeightVector,
        recommendations: list[HydratedRecommendation],
        ranked: RankedResult | None,
        profile: PreferenceProfile | None,
        error: str | None = None,
    ) -> dict[str, Any]:
        metadata: dict[str, Any] = {
            "generatedAt": now_ms(),
            "profile": profile.summary() if profile else None,
            "strategies": ranked.strategy_report() if ranked else {},
        }
        if error:
            metadata["error"] = error
        return {
            "recommendations": [r.to_dict() for r in recommendations],
            "total": len(recommendations),
            "context": {
                "sessionId": context.session_id,
                "contextType": context.context_type,
                "contextId": context.context_id,
                "weights": weights.to_response(),
            },
            "metadata": metadata,
        }

    async def recommend_async(
        self,
        limit: int | None = DEFAULT_LIMIT,
        types: list[str] | None = None,
        context_type: str = "general",
        context_id: str | None = None,
        session_id: str | None = None,
        context_item_type: str | None = None,
    ) -> dict[str, Any]:
        limit, types, context_type = self.normalize_request(limit, types, context_type)
        context = RequestContext(
            session_id=session_id,
            context_type=context_type,
            context_id=context_id,
            context_item_type=context_item_type,
            types=types,
        )
        weights = self.adapter.defaults
        profile = None
        ranked = None

        try:
            profile = await asyncio.to_thread(self.analyzer.analyze, session_id)
            context.profile = profile
            weights = self.adapter.adapt(profile)
            if profile is not None:
                await asyncio.to_thread(self._publish, profile)

            ranked = await self.aggregator.rank_async(context, weights, limit)
            recommendations = await asyncio.to_thread(self._hydrate, ranked.candidates)
        except asyncio.CancelledError:
            logger.info(f"Recommendation request for session {session_id} cancelled")
            raise
        except Exception as e:
            logger.exception(f"Recommendation request failed for session {session_id}")
            return self._response(context, weights, [], ranked, profile, error=str(e))

        served = [
            ServedRecommendation(
                recommendation_id=r.recommendation_id,
                content_id=r.item.content_id,
                content_type=r.item.content_type,
                position=r.position,
                score=r.candidate.score,
                algorithm=r.candidate.algorithm,
                strategies=tuple(r.candidate.aux.get("strategies", [r.candidate.strategy.value])),
                session_id=session_id,
            )
            for r in recommendations
        ]
        self.feedback.log_served(served)
        logger.info(
            f"Served {len(recommendations)} recommendations (session={session_id}, "
            f"context={context_type}, failed={[s.value for s in ranked.failed]})"
        )
        return self._response(context, weights, recommendations, ranked, profile)

    def recommend(self, **kwargs) -> dict[str, Any]:
        """Blocking wrapper around ``recommend_async``; same keyword arguments."""
        return asyncio.run(self.recommend_async(**kwargs))

    def record_feedback(
        self,
        recommendation_id: str,
        content_id: str,
        content_type: str,
        position: int,
        action: str,
        dwell_time: int | None = None,
        session_id: str | None = None,
    ) -> bool:
        """Fire-and-forget feedback; invalid input or storage errors are logged, never raised."""
        try:
            feedback = RecommendationFeedback(
                recommendation_id=recommendation_id,
                content_id=content_id,
                content_type=content_type,
                position=int(position),
                action=FeedbackAction(action),
                session_id=session_id,
                dwell_time=int(dwell_time) if dwell_time is not None else None,
            )
        except (TypeError, ValueError) as e:
            logger.warning(f"Rejected feedback for {recommendation_id}: {e}")
            return False
        return self.feedback.record(feedback)

    def publish_session(self, session_id: str) -> bool:
        profile = self.analyzer.analyze(session_id)
        if profile is None:
            return False
        return bool(self.session_index.publish(profile))

    def close(self) -> None:
        self.aggregator.close()
        close_catalog = getattr(self.catalog, "close", None)
        if close_catalog is not None:
            close_catalog()


def build_service(
    db: Database | None = None,
    catalog: CatalogStore | None = None,
    weights_path: str | Path | None = None,
    collaborative: bool = True,
) -> RecommendationService:
    """Wire the default components around one Database."""
    db = db or Database()
    db.init_schema()
    if catalog is None:
        catalog = HttpCatalog(CATALOG_URL) if CATALOG_URL else SqliteCatalog(db)

    store = BehaviorStore(db)
    analyzer = PreferenceAnalyzer(store)
    index: SessionIndex = SqliteSessionIndex(db) if collaborative else DisabledSessionIndex()
    generators = default_generators(catalog, analyzer, index)
    return RecommendationService(
        store=store,
        catalog=catalog,
        aggregator=Aggregator(generators),
        feedback=FeedbackLoop(db),
        analyzer=analyzer,
        adapter=WeightAdapter(load_default_weights(weights_path)),
        session_index=index,
    )
