"""
Feedback and analytics loop.

Feedback rows (view / click / dismiss against a served recommendation) are
append-only. Metrics are computed over a rolling window, and suggestions are a
pure function of those metrics. Suggestions are advisory: nothing here ever
changes the default strategy weights.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Iterable

import numpy as np

from .config import (
    ANALYTICS_WINDOW_DAYS,
    CONVERSION_CTR_WEIGHT,
    CONVERSION_ENGAGEMENT_WEIGHT,
    DAY_MS,
    DWELL_PREFERENCE_MS,
    METRICS_RETENTION_DAYS,
    RETENTION_DAYS,
    SUGGESTION_MIN_CONVERSION,
    SUGGESTION_MIN_DIVERSITY,
    SUGGESTION_MIN_POSITION_CTR,
    SUGGESTION_MIN_TYPE_SPREAD,
    SUGGESTION_RECENT_CTR_RATIO,
    SUGGESTION_RECENT_POINTS,
    TREND_CHANGE_THRESHOLD,
)
from .database import Database, load_json
from .generators import HYBRID_LABEL
from .utils import ms_to_date_key, now_ms

logger = logging.getLogger(__name__)


class FeedbackAction(str, Enum):
    VIEW = "view"
    CLICK = "click"
    DISMISS = "dismiss"


@dataclass(frozen=True)
class RecommendationFeedback:
    recommendation_id: str
    content_id: str
    content_type: str
    position: int
    action: FeedbackAction
    session_id: str | None = None
    timestamp: int = field(default_factory=now_ms)
    dwell_time: int | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.action, FeedbackAction):
            object.__setattr__(self, "action", FeedbackAction(self.action))


@dataclass(frozen=True)
class ServedRecommendation:
    """One recommendation actually returned to a caller."""
    recommendation_id: str
    content_id: str
    content_type: str
    position: int
    score: float
    algorithm: str
    strategies: tuple[str, ...] = ()
    session_id: str | None = None
    served_at: int = field(default_factory=now_ms)

    @property
    def attributed_strategy(self) -> str:
        """Strategy credited with the outcome; merged items count as hybrid."""
        if len(self.strategies) == 1:
            return self.strategies[0]
        return HYBRID_LABEL


@dataclass
class StrategyPerformance:
    impressions: int = 0
    clicks: int = 0
    views: int = 0
    click_through_rate: float = 0.0
    engagement_rate: float = 0.0
    conversion_score: float = 0.0


@dataclass
class PositionStats:
    impressions: int = 0
    clicks: int = 0
    click_through_rate: float = 0.0
    average_score: float = 0.0


@dataclass
class ContentTypeStats:
    impressions: int = 0
    clicks: int = 0
    click_through_rate: float = 0.0
    average_dwell_time: float = 0.0
    user_preference: float = 0.0


@dataclass
class RecommendationStats:
    impressions: int = 0
    clicks: int = 0
    click_through_rate: float = 0.0


@dataclass
class DailyPoint:
    date: str
    total: int
    clicks: int
    click_through_rate: float


@dataclass
class RecommendationMetrics:
    window_days: int
    total: int = 0
    clicks: int = 0
    views: int = 0
    dismissals: int = 0
    click_through_rate: float = 0.0
    view_through_rate: float = 0.0
    engagement_rate: float = 0.0
    diversity_score: float = 0.0
    per_recommendation: dict[str, RecommendationStats] = field(default_factory=dict)
    algorithm_performance: dict[str, StrategyPerformance] = field(default_factory=dict)
    position_analysis: dict[int, PositionStats] = field(default_factory=dict)
    content_type_analysis: dict[str, ContentTypeStats] = field(default_factory=dict)
    time_series: list[DailyPoint] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        # per-recommendation detail is large and only useful programmatically
        data.pop("per_recommendation")
        data["position_analysis"] = {str(k): v for k, v in data["position_analysis"].items()}
        return data


@dataclass(frozen=True)
class Suggestion:
    type: str
    priority: str
    description: str
    expected_improvement: float  # percent
    target: str | None = None


@dataclass
class MetricsSnapshot:
    recorded_at: int
    metrics: dict[str, Any]


@dataclass(frozen=True)
class Trend:
    metric: str
    previous: float
    current: float
    change: float
    direction: str


def _rate(numerator: int | float, denominator: int | float) -> float:
    return numerator / denominator if denominator else 0.0


def compute_metrics(
    feedback: Iterable[RecommendationFeedback],
    served: dict[str, ServedRecommendation] | None = None,
    window_days: int = ANALYTICS_WINDOW_DAYS,
) -> RecommendationMetrics:
    """
    Effectiveness metrics for a batch of feedback records.

    Each record counts as one impression of its recommendation. ``served``
    maps recommendation ids to what was served, which attributes outcomes to
    strategies and positions to scores; unknown ids are credited to hybrid.
    """
    records = list(feedback)
    served = served or {}
    metrics = RecommendationMetrics(window_days=window_days, total=len(records))
    if not records:
        return metrics

    metrics.clicks = sum(1 for r in records if r.action is FeedbackAction.CLICK)
    metrics.views = sum(1 for r in records if r.action is FeedbackAction.VIEW)
    metrics.dismissals = sum(1 for r in records if r.action is FeedbackAction.DISMISS)
    metrics.click_through_rate = _rate(metrics.clicks, metrics.total)
    metrics.view_through_rate = _rate(metrics.views, metrics.total)
    metrics.engagement_rate = _rate(metrics.clicks + metrics.views, metrics.total)
    metrics.diversity_score = _rate(len({r.content_id for r in records}), metrics.total)

    per_rec: dict[str, RecommendationStats] = defaultdict(RecommendationStats)
    per_strategy: dict[str, StrategyPerformance] = defaultdict(StrategyPerformance)
    per_position: dict[int, PositionStats] = defaultdict(PositionStats)
    position_scores: dict[int, list[float]] = defaultdict(list)
    per_type: dict[str, ContentTypeStats] = defaultdict(ContentTypeStats)
    type_dwell: dict[str, int] = defaultdict(int)
    daily: dict[str, list[int]] = defaultdict(lambda: [0, 0])

    for r in records:
        clicked = r.action is FeedbackAction.CLICK
        origin = served.get(r.recommendation_id)

        rec = per_rec[r.recommendation_id]
        rec.impressions += 1
        rec.clicks += clicked

        perf = per_strategy[origin.attributed_strategy if origin else HYBRID_LABEL]
        perf.impressions += 1
        perf.clicks += clicked
        perf.views += r.action is FeedbackAction.VIEW

        pos = per_position[r.position]
        pos.impressions += 1
        pos.clicks += clicked
        if origin is not None:
            position_scores[r.position].append(origin.score)

        ctype = per_type[r.content_type]
        ctype.impressions += 1
        ctype.clicks += clicked
        type_dwell[r.content_type] += r.dwell_time or 0

        day = daily[ms_to_date_key(r.timestamp)]
        day[0] += 1
        day[1] += clicked

    for rec in per_rec.values():
        rec.click_through_rate = _rate(rec.clicks, rec.impressions)

    for perf in per_strategy.values():
        perf.click_through_rate = _rate(perf.clicks, perf.impressions)
        perf.engagement_rate = _rate(perf.clicks + perf.views, perf.impressions)
        perf.conversion_score = (
            CONVERSION_CTR_WEIGHT * perf.click_through_rate
            + CONVERSION_ENGAGEMENT_WEIGHT * perf.engagement_rate
        )

    for position, pos in per_position.items():
        pos.click_through_rate = _rate(pos.clicks, pos.impressions)
        if position_scores[position]:
            pos.average_score = float(np.mean(position_scores[position]))

    for content_type, ctype in per_type.items():
        ctype.click_through_rate = _rate(ctype.clicks, ctype.impressions)
        ctype.average_dwell_time = _rate(type_dwell[content_type], ctype.clicks)
        ctype.user_preference = min(
            1.0,
            ctype.click_through_rate * 2 + min(1.0, ctype.average_dwell_time / DWELL_PREFERENCE_MS) * 0.5,
        )

    metrics.per_recommendation = dict(per_rec)
    metrics.algorithm_performance = dict(sorted(per_strategy.items()))
    metrics.position_analysis = dict(sorted(per_position.items()))
    metrics.content_type_analysis = dict(sorted(per_type.items()))
    metrics.time_series = [
        DailyPoint(date=d, total=t, clicks=c, click_through_rate=_rate(c, t))
        for d, (t, c) in sorted(daily.items())
    ]
    return metrics


PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}


def generate_suggestions(metrics: RecommendationMetrics) -> list[Suggestion]:
    """Advisory tuning suggestions derived from fixed thresholds, highest priority first."""
    suggestions: list[Suggestion] = []

    if metrics.algorithm_performance:
        name, best = max(
            metrics.algorithm_performance.items(), key=lambda kv: (kv[1].conversion_score, kv[0])
        )
        if best.conversion_score > SUGGESTION_MIN_CONVERSION:
            suggestions.append(Suggestion(
                "algorithm_weight", "high",
                f"Increase the weight of the {name} strategy (conversion {best.conversion_score:.2f})",
                15.0, target=name,
            ))

    if metrics.position_analysis:
        position, best_pos = max(
            metrics.position_analysis.items(), key=lambda kv: (kv[1].click_through_rate, -kv[0])
        )
        if best_pos.click_through_rate > SUGGESTION_MIN_POSITION_CTR:
            suggestions.append(Suggestion(
                "position", "medium",
                f"Position {position} converts best (CTR {best_pos.click_through_rate:.1%}); "
                f"place the strongest candidates there",
                8.0, target=str(position),
            ))

    if len(metrics.content_type_analysis) >= 2:
        ranked = sorted(
            metrics.content_type_analysis.items(), key=lambda kv: (-kv[1].click_through_rate, kv[0])
        )
        (best_type, best_stats), (worst_type, worst_stats) = ranked[0], ranked[-1]
        if best_stats.click_through_rate - worst_stats.click_through_rate > SUGGESTION_MIN_TYPE_SPREAD:
            suggestions.append(Suggestion(
                "content_type", "medium",
                f"Recommend more {best_type} items and fewer {worst_type} items",
                12.0, target=best_type,
            ))

    if metrics.total and metrics.diversity_score < SUGGESTION_MIN_DIVERSITY:
        suggestions.append(Suggestion(
            "diversity", "high",
            f"Increase recommendation diversity (currently {metrics.diversity_score:.2f})",
            20.0,
        ))

    if metrics.time_series and metrics.click_through_rate > 0:
        recent = metrics.time_series[-SUGGESTION_RECENT_POINTS:]
        recent_ctr = float(np.mean([p.click_through_rate for p in recent]))
        if recent_ctr < SUGGESTION_RECENT_CTR_RATIO * metrics.click_through_rate:
            suggestions.append(Suggestion(
                "timing", "medium",
                f"Recent CTR ({recent_ctr:.1%}) trails the window average "
                f"({metrics.click_through_rate:.1%}); review recommendation timing",
                10.0,
            ))

    suggestions.sort(key=lambda s: PRIORITY_ORDER.get(s.priority, len(PRIORITY_ORDER)))
    return suggestions


TREND_METRICS = {
    "click_through_rate": "click_through_rate",
    "engagement_rate": "engagement_rate",
    "diversity_score": "diversity_score",
}


def calculate_trends(history: list[MetricsSnapshot]) -> dict[str, Trend]:
    """Compare the oldest and newest snapshot of each headline metric."""
    if len(history) < 2:
        return {}
    ordered = sorted(history, key=lambda s: s.recorded_at)
    first, last = ordered[0].metrics, ordered[-1].metrics

    trends = {}
    for name, key in TREND_METRICS.items():
        previous = float(first.get(key, 0.0) or 0.0)
        current = float(last.get(key, 0.0) or 0.0)
        if previous:
            change = (current - previous) / previous
        else:
            change = 1.0 if current > 0 else 0.0
        if change > TREND_CHANGE_THRESHOLD:
            direction = "improving"
        elif change < -TREND_CHANGE_THRESHOLD:
            direction = "declining"
        else:
            direction = "stable"
        trends[name] = Trend(name, previous, current, change, direction)
    return trends


class FeedbackLoop:
    """Stores feedback and served recommendations, and computes metrics over them."""

    def __init__(
        self,
        db: Database,
        retention_days: int = RETENTION_DAYS["feedback"],
        metrics_retention_days: int = METRICS_RETENTION_DAYS,
    ):
        self.db = db
        self.retention_days = retention_days
        self.metrics_retention_days = metrics_retention_days

    def record(self, feedback: RecommendationFeedback) -> bool:
        """Append one feedback record; logs and returns False instead of raising."""
        try:
            with self.db.connect() as conn:
                conn.execute(
                    """INSERT INTO recommendation_feedback
                       (recommendation_id, session_id, content_id, content_type, position, action,
                        timestamp, dwell_time)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (feedback.recommendation_id, feedback.session_id, feedback.content_id,
                     feedback.content_type, feedback.position, feedback.action.value,
                     feedback.timestamp, feedback.dwell_time),
                )
        except (sqlite3.Error, TypeError, ValueError) as e:
            logger.warning(f"Dropped feedback for {feedback.recommendation_id}: {e}")
            return False
        self.evict()
        return True

    def log_served(self, served: Iterable[ServedRecommendation]) -> bool:
        rows = [
            (s.recommendation_id, s.session_id, s.content_id, s.content_type, s.position, s.score,
             s.algorithm, json.dumps(list(s.strategies)), s.served_at)
            for s in served
        ]
        if not rows:
            return True
        try:
            with self.db.connect() as conn:
                conn.executemany(
                    """INSERT OR REPLACE INTO served_recommendations
                       (recommendation_id, session_id, content_id, content_type, position, score,
                        algorithm, strategies, served_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    rows,
                )
        except sqlite3.Error as e:
            logger.warning(f"Failed to log {len(rows)} served recommendations: {e}")
            return False
        return True

    def evict(self, now: int | None = None) -> int:
        now = now if now is not None else now_ms()
        cutoff = now - self.retention_days * DAY_MS
        metrics_cutoff = now - self.metrics_retention_days * DAY_MS
        try:
            with self.db.connect() as conn:
                deleted = conn.execute(
                    "DELETE FROM recommendation_feedback WHERE timestamp < ?", (cutoff,)
                ).rowcount
                deleted += conn.execute(
                    "DELETE FROM served_recommendations WHERE served_at < ?", (cutoff,)
                ).rowcount
                deleted += conn.execute(
                    "DELETE FROM metrics_snapshots WHERE recorded_at < ?", (metrics_cutoff,)
                ).rowcount
        except sqlite3.Error as e:
            logger.warning(f"Eviction of feedback data failed: {e}")
            return 0
        return deleted

    def _load_feedback(self, since: int) -> list[RecommendationFeedback]:
        with self.db.connect(read_only=True) as conn:
            rows = conn.execute(
                "SELECT * FROM recommendation_feedback WHERE timestamp >= ? ORDER BY timestamp, id",
                (since,),
            ).fetchall()
        return [
            RecommendationFeedback(
                recommendation_id=r["recommendation_id"], content_id=r["content_id"],
                content_type=r["content_type"], position=r["position"], action=r["action"],
                session_id=r["session_id"], timestamp=r["timestamp"], dwell_time=r["dwell_time"],
            )
            for r in rows
        ]

    def _load_served(self, since: int) -> dict[str, ServedRecommendation]:
        with self.db.connect(read_only=True) as conn:
            rows = conn.execute(
                "SELECT * FROM served_recommendations WHERE served_at >= ?", (since,)
            ).fetchall()
        return {
            r["recommendation_id"]: ServedRecommendation(
                recommendation_id=r["recommendation_id"], content_id=r["content_id"],
                content_type=r["content_type"], position=r["position"], score=r["score"],
                algorithm=r["algorithm"], strategies=tuple(load_json(r["strategies"])),
                session_id=r["session_id"], served_at=r["served_at"],
            )
            for r in rows
        }

    def analyze(self, window_days: int = ANALYTICS_WINDOW_DAYS, now: int | None = None) -> RecommendationMetrics:
        since = (now if now is not None else now_ms()) - window_days * DAY_MS
        feedback = self._load_feedback(since)
        # Recommendations may have been served slightly before the window opened
        served = self._load_served(since - DAY_MS)
        metrics = compute_metrics(feedback, served, window_days)
        logger.info(
            f"Analyzed {metrics.total} feedback records over {window_days} days "
            f"(CTR {metrics.click_through_rate:.3f})"
        )
        return metrics

    def record_snapshot(self, metrics: RecommendationMetrics, now: int | None = None) -> bool:
        try:
            with self.db.connect() as conn:
                conn.execute(
                    "INSERT INTO metrics_snapshots (recorded_at, metrics) VALUES (?, ?)",
                    (now if now is not None else now_ms(), json.dumps(metrics.to_dict())),
                )
        except (sqlite3.Error, TypeError, ValueError) as e:
            logger.warning(f"Failed to store metrics snapshot: {e}")
            return False
        return True

    def historical(self, days: int = 30, now: int | None = None) -> list[MetricsSnapshot]:
        since = (now if now is not None else now_ms()) - days * DAY_MS
        with self.db.connect(read_only=True) as conn:
            rows = conn.execute(
                "SELECT recorded_at, metrics FROM metrics_snapshots WHERE recorded_at >= ? ORDER BY recorded_at",
                (since,),
            ).fetchall()
        return [MetricsSnapshot(r["recorded_at"], load_json(r["metrics"], default={})) for r in rows]
