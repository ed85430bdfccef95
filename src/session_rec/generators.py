"""
Candidate generators.

Four independent strategies produce scored, explained candidates for one
request: content-based similarity to a focal item, collaborative filtering
over similar sessions, global popularity, and recency. Every generator returns
a GeneratorResult and never raises, so the aggregator can tell "nothing to
offer" apart from "broke" without any strategy taking the others down with it.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from .catalog import CatalogItem, CatalogStore
from .config import (
    COLLAB_TRENDING_FACTOR,
    COLLAB_TRENDING_LIMIT,
    COLLAB_TRENDING_VIEWS,
    CONTENT_DURATION_RANGE,
    CONTENT_FEATURE_WEIGHTS,
    CONTENT_MIN_SCORE,
    CONTENT_RATING_RANGE,
    CONTENT_TYPES,
    CONTENT_YEAR_TOLERANCE,
    MAX_SIMILAR_SESSIONS,
    POPULARITY_DEFAULT_SCORE,
    POPULARITY_SCORES,
    RECENCY_DEFAULT_SCORE,
    RECENCY_SCORES,
    SIMILARITY_THRESHOLD,
    TAG_CATEGORY_WEIGHTS,
)
from .profile import PreferenceAnalyzer, PreferenceProfile, content_key
from .session_index import SessionIndex

logger = logging.getLogger(__name__)


class Strategy(str, Enum):
    CONTENT_BASED = "content_based"
    COLLABORATIVE = "collaborative"
    POPULARITY = "popularity"
    RECENCY = "recency"


# Output labels; recency shares the "popular" label with popularity
ALGORITHM_LABELS = {
    Strategy.CONTENT_BASED: "content",
    Strategy.COLLABORATIVE: "collaborative",
    Strategy.POPULARITY: "popular",
    Strategy.RECENCY: "popular",
}
HYBRID_LABEL = "hybrid"


@dataclass(frozen=True)
class Reason:
    type: str
    description: str
    confidence: float

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "description": self.description, "confidence": round(self.confidence, 4)}


@dataclass
class Candidate:
    content_type: str
    content_id: str
    score: float
    strategy: Strategy
    reasons: list[Reason] = field(default_factory=list)
    algorithm: str = ""
    aux: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.score = max(0.0, min(1.0, float(self.score)))
        if not self.algorithm:
            self.algorithm = ALGORITHM_LABELS[self.strategy]

    @property
    def key(self) -> str:
        return content_key(self.content_type, self.content_id)


@dataclass
class RequestContext:
    """What the caller is looking at, plus the session's profile once known."""
    session_id: str | None = None
    context_type: str = "general"
    context_id: str | None = None
    context_item_type: str | None = None
    types: tuple[str, ...] = CONTENT_TYPES
    profile: PreferenceProfile | None = None

    @property
    def focal_key(self) -> str | None:
        if self.context_type == "item_detail" and self.context_id:
            return content_key(self.context_item_type or "movie", self.context_id)
        return None


class GeneratorError(Exception):
    """Why a generator produced nothing: ``failure``, ``timeout`` or ``cancelled``."""

    def __init__(self, strategy: Strategy, kind: str, message: str = ""):
        super().__init__(message or kind)
        self.strategy = strategy
        self.kind = kind


@dataclass
class GeneratorResult:
    strategy: Strategy
    candidates: list[Candidate] = field(default_factory=list)
    error: GeneratorError | None = None
    elapsed_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def status(self) -> str:
        if self.error is not None:
            return self.error.kind
        return "ok" if self.candidates else "empty"

    def describe(self) -> dict[str, Any]:
        info = {"status": self.status, "count": len(self.candidates), "elapsedMs": round(self.elapsed_ms, 2)}
        if self.error is not None:
            info["error"] = str(self.error)
        return info


class CandidateGenerator:
    """
    Base class: subclasses implement ``_generate``.

    ``generate`` applies the shared contract: any exception becomes a failed
    result, output is restricted to the requested content types and
    truncated to ``limit``.
    """

    strategy: Strategy

    def generate(self, context: RequestContext, limit: int) -> GeneratorResult:
        start = time.perf_counter()
        if limit <= 0:
            return GeneratorResult(self.strategy)
        try:
            candidates = self._generate(context, limit)
        except Exception as e:
            elapsed = (time.perf_counter() - start) * 1000
            logger.warning(f"{self.strategy.value} generator failed: {e}", exc_info=logger.isEnabledFor(logging.DEBUG))
            return GeneratorResult(self.strategy, [], GeneratorError(self.strategy, "failure", str(e)), elapsed)

        allowed = set(context.types)
        candidates = [c for c in candidates if c.content_type in allowed][:limit]
        elapsed = (time.perf_counter() - start) * 1000
        logger.debug(f"{self.strategy.value} produced {len(candidates)} candidates in {elapsed:.1f}ms")
        return GeneratorResult(self.strategy, candidates, None, elapsed)

    def _generate(self, context: RequestContext, limit: int) -> list[Candidate]:
        raise NotImplementedError


# -- content-based ------------------------------------------------------------

FeatureRule = Callable[[CatalogItem, CatalogItem], tuple[float, str]]


def _genre_reason(focal: CatalogItem, other: CatalogItem) -> Reason | None:
    """Explains a genre overlap; the overlap itself is scored by the tag rule."""
    shared = focal.genres & other.genres
    if not shared:
        return None
    sim = len(shared) / len(focal.genres | other.genres)
    return Reason("genre", f"Shares genres: {', '.join(sorted(shared))}", sim)


def _director_similarity(focal: CatalogItem, other: CatalogItem) -> tuple[float, str]:
    if focal.director and other.director and focal.director.strip().lower() == other.director.strip().lower():
        return 1.0, f"Same director: {other.director}"
    return 0.0, ""


def _era_similarity(focal: CatalogItem, other: CatalogItem) -> tuple[float, str]:
    if not focal.year or not other.year:
        return 0.0, ""
    diff = abs(focal.year - other.year)
    if diff > CONTENT_YEAR_TOLERANCE:
        return 0.0, ""
    sim = 1 - diff / CONTENT_YEAR_TOLERANCE
    return sim, f"From a similar era ({other.year})"


def _tag_weight(category: str) -> float:
    return TAG_CATEGORY_WEIGHTS.get(category, TAG_CATEGORY_WEIGHTS["other"])


def _tag_similarity(focal: CatalogItem, other: CatalogItem) -> tuple[float, str]:
    focal_tags = {t.name.lower(): t for t in focal.tags}
    other_tags = {t.name.lower(): t for t in other.tags}
    common = sorted(set(focal_tags) & set(other_tags))
    if not common:
        return 0.0, ""
    common_weight = sum(_tag_weight(focal_tags[name].category) for name in common)
    total = max(
        sum(_tag_weight(t.category) for t in focal_tags.values()),
        sum(_tag_weight(t.category) for t in other_tags.values()),
    )
    names = ", ".join(other_tags[name].name for name in common[:3])
    return common_weight / total, f"Shared tags: {names}"


def _rating_similarity(focal: CatalogItem, other: CatalogItem) -> tuple[float, str]:
    if focal.vote_average is None or other.vote_average is None:
        return 0.0, ""
    sim = max(0.0, 1 - abs(focal.vote_average - other.vote_average) / CONTENT_RATING_RANGE)
    return sim, f"Similar rating ({other.vote_average:.1f}/10)"


def _duration_similarity(focal: CatalogItem, other: CatalogItem) -> tuple[float, str]:
    if not focal.duration or not other.duration:
        return 0.0, ""
    sim = max(0.0, 1 - abs(focal.duration - other.duration) / CONTENT_DURATION_RANGE)
    return sim, f"Similar runtime ({other.duration} min)"


FEATURE_RULES: dict[str, FeatureRule] = {
    "director": _director_similarity,
    "era": _era_similarity,
    "tag": _tag_similarity,
    "rating": _rating_similarity,
    "duration": _duration_similarity,
}


class ContentBasedGenerator(CandidateGenerator):
    """Items sharing attributes with the focal item of an item-detail page."""

    strategy = Strategy.CONTENT_BASED

    def __init__(
        self,
        catalog: CatalogStore,
        feature_weights: dict[str, float] | None = None,
        min_score: float = CONTENT_MIN_SCORE,
    ):
        self.catalog = catalog
        self.feature_weights = {**CONTENT_FEATURE_WEIGHTS, **(feature_weights or {})}
        self.min_score = min_score

    def score_pair(self, focal: CatalogItem, other: CatalogItem) -> tuple[float, list[Reason]]:
        """Weighted attribute similarity, capped at 1, with reasons ordered by contribution."""
        total = 0.0
        matched: list[tuple[float, int, Reason]] = []
        for order, (feature, rule) in enumerate(FEATURE_RULES.items()):
            weight = self.feature_weights.get(feature, 0.0)
            if weight <= 0:
                continue
            sim, description = rule(focal, other)
            if sim <= 0:
                continue
            contribution = weight * sim
            total += contribution
            if feature == "tag":
                # stable sort keeps the genre reason just ahead of its tag reason
                genre = _genre_reason(focal, other)
                if genre is not None:
                    matched.append((contribution, order, genre))
            matched.append((contribution, order, Reason(feature, description, sim)))

        matched.sort(key=lambda m: (-m[0], m[1]))
        return min(1.0, total), [reason for _, _, reason in matched]

    def _generate(self, context: RequestContext, limit: int) -> list[Candidate]:
        if context.focal_key is None:
            return []

        focal_type = context.context_item_type or "movie"
        focal = self.catalog.get(focal_type, context.context_id)
        if focal is None:
            logger.debug(f"Focal item {context.focal_key} not in catalog")
            return []

        candidates = []
        for item in self.catalog.list_items([focal_type]):
            if item.key == focal.key:
                continue
            score, reasons = self.score_pair(focal, item)
            if score < self.min_score or not reasons:
                continue
            candidates.append(Candidate(
                content_type=item.content_type,
                content_id=item.content_id,
                score=score,
                strategy=self.strategy,
                reasons=reasons,
                aux={"similarTo": context.focal_key},
            ))

        candidates.sort(key=lambda c: (-c.score, c.content_id))
        return candidates[:limit]


# -- collaborative ------------------------------------------------------------

def _split_key(key: str) -> tuple[str, str]:
    content_type, _, content_id = key.partition(":")
    return content_type, content_id


class CollaborativeGenerator(CandidateGenerator):
    """
    Items liked by sessions with similar behavior.

    Similar sessions come from the injected SessionIndex. When they yield
    nothing, unseen trending items are offered at a reduced weight instead.
    """

    strategy = Strategy.COLLABORATIVE

    def __init__(
        self,
        analyzer: PreferenceAnalyzer,
        index: SessionIndex,
        catalog: CatalogStore,
        threshold: float = SIMILARITY_THRESHOLD,
        max_sessions: int = MAX_SIMILAR_SESSIONS,
    ):
        self.analyzer = analyzer
        self.index = index
        self.catalog = catalog
        self.threshold = threshold
        self.max_sessions = max_sessions

    def _generate(self, context: RequestContext, limit: int) -> list[Candidate]:
        profile = context.profile or self.analyzer.analyze(context.session_id)
        if profile is None:
            return []

        seen = set(profile.liked_items)
        allowed = set(context.types)
        similar = self.index.find_similar_sessions(profile, threshold=self.threshold, limit=self.max_sessions)

        scores: dict[str, float] = defaultdict(float)
        supporters: dict[str, int] = defaultdict(int)
        for other in similar:
            for key, pref_score in other.liked_items.items():
                if key in seen or _split_key(key)[0] not in allowed:
                    continue
                scores[key] += min(1.0, pref_score / 100) * other.similarity
                supporters[key] += 1

        candidates = []
        for key in sorted(scores, key=lambda k: (-scores[k], k)):
            content_type, content_id = _split_key(key)
            count = supporters[key]
            candidates.append(Candidate(
                content_type=content_type,
                content_id=content_id,
                score=scores[key],
                strategy=self.strategy,
                reasons=[Reason(
                    "similar_users",
                    f"Liked by {count} visitor{'s' if count != 1 else ''} with similar interests",
                    min(1.0, scores[key]),
                )],
                aux={"userCount": count},
            ))

        if not candidates:
            candidates = self._trending(seen, context.types, limit)
        return candidates[:limit]

    def _trending(self, seen: set[str], types: tuple[str, ...], limit: int) -> list[Candidate]:
        items = [i for i in self.catalog.list_items(types) if i.key not in seen and i.view_count > 0]
        items.sort(key=lambda i: (-i.view_count, -i.favorite_count, i.content_type, i.content_id))
        return [
            Candidate(
                content_type=item.content_type,
                content_id=item.content_id,
                score=min(1.0, item.view_count / COLLAB_TRENDING_VIEWS) * COLLAB_TRENDING_FACTOR,
                strategy=self.strategy,
                reasons=[Reason("trending", "Trending with other visitors", COLLAB_TRENDING_FACTOR)],
                aux={"fallback": True},
            )
            for item in items[:min(limit, COLLAB_TRENDING_LIMIT)]
        ]


# -- popularity and recency ---------------------------------------------------

class PopularityGenerator(CandidateGenerator):
    """Most viewed items; the fallback every request can rely on."""

    strategy = Strategy.POPULARITY

    def __init__(self, catalog: CatalogStore, scores: dict[str, float] | None = None):
        self.catalog = catalog
        self.scores = scores or POPULARITY_SCORES

    def _generate(self, context: RequestContext, limit: int) -> list[Candidate]:
        items = sorted(
            self.catalog.list_items(context.types),
            key=lambda i: (-i.view_count, -(i.vote_average or 0.0), i.content_type, i.content_id),
        )
        return [
            Candidate(
                content_type=item.content_type,
                content_id=item.content_id,
                score=self.scores.get(item.content_type, POPULARITY_DEFAULT_SCORE),
                strategy=self.strategy,
                reasons=[Reason("popularity", f"Popular right now ({item.view_count} views)", 0.8)],
                aux={"viewCount": item.view_count},
            )
            for item in items[:limit]
        ]


class RecencyGenerator(CandidateGenerator):
    strategy = Strategy.RECENCY

    def __init__(self, catalog: CatalogStore, scores: dict[str, float] | None = None):
        self.catalog = catalog
        self.scores = scores or RECENCY_SCORES

    def _generate(self, context: RequestContext, limit: int) -> list[Candidate]:
        items = [i for i in self.catalog.list_items(context.types) if i.freshness]
        items.sort(key=lambda i: (-i.freshness, -(i.vote_average or 0.0), i.content_type, i.content_id))
        return [
            Candidate(
                content_type=item.content_type,
                content_id=item.content_id,
                score=self.scores.get(item.content_type, RECENCY_DEFAULT_SCORE),
                strategy=self.strategy,
                reasons=[Reason("recency", f"Recently updated {item.content_type}", 0.6)],
                aux={"updatedAt": item.freshness},
            )
            for item in items[:limit]
        ]


def default_generators(
    catalog: CatalogStore,
    analyzer: PreferenceAnalyzer,
    index: SessionIndex,
    feature_weights: Optional[dict[str, float]] = None,
) -> dict[Strategy, CandidateGenerator]:
    return {
        Strategy.CONTENT_BASED: ContentBasedGenerator(catalog, feature_weights),
        Strategy.COLLABORATIVE: CollaborativeGenerator(analyzer, index, catalog),
        Strategy.POPULARITY: PopularityGenerator(catalog),
        Strategy.RECENCY: RecencyGenerator(catalog),
    }
