"""
Preference analysis: turn one session's raw events into a PreferenceProfile.

The profile is derived on demand and never stored as a source of truth. It
depends only on the events themselves (no wall-clock input), so analyzing the
same event set twice gives an equal profile.
"""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field

from .behavior import BehaviorStore, EventKind, InteractionEvent, PageView, SearchEvent
from .config import (
    ENGAGEMENT_DWELL_POINTS,
    ENGAGEMENT_INTERACTION_POINTS,
    ENGAGEMENT_SCROLL_POINTS,
    INTERACTION_WEIGHTS,
    MIN_ITEM_INTERACTIONS,
    MIN_PROFILE_EVENTS,
    PAGE_SCORE_CAP,
    TOP_ACTIVE_DAYS,
    TOP_ACTIVE_HOURS,
)
from .utils import ms_to_datetime

logger = logging.getLogger(__name__)


def content_key(content_type: str, content_id: str) -> str:
    """Stable key for a catalog item across strategies and sessions."""
    return f"{content_type}:{content_id}"


@dataclass
class ContentPreference:
    content_type: str
    content_id: str
    score: float
    interactions: int
    last_interaction: int

    @property
    def key(self) -> str:
        return content_key(self.content_type, self.content_id)


@dataclass
class TypeAffinity:
    content_type: str
    score: float  # 0-100
    view_count: int
    average_dwell_time: float


@dataclass
class SearchPattern:
    query: str
    keywords: list[str]
    frequency: int
    success_rate: float
    categories: list[str]
    last_used: int


@dataclass
class PreferenceProfile:
    """Weighted summary of one session's behavior."""
    session_id: str
    content_preferences: list[ContentPreference] = field(default_factory=list)
    content_type_affinity: dict[str, TypeAffinity] = field(default_factory=dict)
    search_patterns: list[SearchPattern] = field(default_factory=list)
    hourly_activity: list[int] = field(default_factory=lambda: [0] * 24)
    daily_activity: list[int] = field(default_factory=lambda: [0] * 7)
    preferred_hours: list[int] = field(default_factory=list)
    preferred_days: list[int] = field(default_factory=list)
    engagement_level: float = 0.0
    average_dwell_time: float = 0.0
    page_view_count: int = 0
    interaction_count: int = 0
    search_count: int = 0
    last_activity: int = 0

    @property
    def liked_items(self) -> dict[str, float]:
        """Content key -> preference score, in preference order."""
        return {p.key: p.score for p in self.content_preferences}

    @property
    def search_keywords(self) -> set[str]:
        return {kw for pattern in self.search_patterns for kw in pattern.keywords}

    @property
    def total_events(self) -> int:
        return self.page_view_count + self.interaction_count + self.search_count

    def summary(self) -> dict:
        """Compact view used in responses and the CLI."""
        return {
            "engagementLevel": round(self.engagement_level, 2),
            "topContentTypes": [
                t for t, _ in sorted(
                    self.content_type_affinity.items(), key=lambda kv: (-kv[1].score, kv[0])
                )[:3]
            ],
            "topContent": [p.key for p in self.content_preferences[:5]],
            "searchKeywords": sorted(self.search_keywords)[:10],
            "preferredHours": self.preferred_hours,
            "events": self.total_events,
        }


@dataclass
class BehaviorSummary:
    """Per-session activity report for operators."""
    session_id: str
    page_views: int
    searches: int
    interactions: int
    average_dwell_time: float
    most_viewed: list[tuple[str, int]]
    most_searched: list[tuple[str, int]]
    hourly: list[int]
    daily: list[int]
    monthly: list[int]


def _top_indices(counts: list[int], n: int) -> list[int]:
    ranked = sorted(range(len(counts)), key=lambda i: (-counts[i], i))
    return [i for i in ranked[:n] if counts[i] > 0]


def page_interest_score(view: PageView) -> float:
    return min(PAGE_SCORE_CAP, view.dwell_time / 1000 + view.scroll_depth / 10)


class PreferenceAnalyzer:
    """Builds PreferenceProfiles from a BehaviorStore."""

    def __init__(
        self,
        store: BehaviorStore,
        min_events: int = MIN_PROFILE_EVENTS,
        min_item_interactions: int = MIN_ITEM_INTERACTIONS,
    ):
        self.store = store
        self.min_events = min_events
        self.min_item_interactions = min_item_interactions

    def _load(self, session_id: str) -> tuple[list[PageView], list[SearchEvent], list[InteractionEvent]]:
        return (
            self.store.query(session_id, EventKind.PAGE_VIEW),
            self.store.query(session_id, EventKind.SEARCH),
            self.store.query(session_id, EventKind.INTERACTION),
        )

    def analyze(self, session_id: str | None) -> PreferenceProfile | None:
        """
        Build the session's profile.

        Returns None when the session has fewer than ``min_events`` events,
        since there is no reliable signal to act on.
        """
        if not session_id:
            return None

        page_views, searches, interactions = self._load(session_id)
        total = len(page_views) + len(searches) + len(interactions)
        if total < self.min_events:
            logger.debug(f"Session {session_id} has {total} events; below minimum {self.min_events}")
            return None

        profile = PreferenceProfile(
            session_id=session_id,
            page_view_count=len(page_views),
            interaction_count=len(interactions),
            search_count=len(searches),
        )
        profile.content_preferences = self._content_preferences(page_views, interactions)
        profile.content_type_affinity = self._type_affinity(page_views, interactions)
        profile.search_patterns = self._search_patterns(searches)
        self._time_patterns(profile, page_views, searches, interactions)

        if page_views:
            profile.average_dwell_time = sum(v.dwell_time for v in page_views) / len(page_views)
        profile.engagement_level = self._engagement(page_views, interactions)
        return profile

    def _content_preferences(
        self, page_views: list[PageView], interactions: list[InteractionEvent]
    ) -> list[ContentPreference]:
        page_scores: dict[tuple[str, str], float] = {}
        interaction_scores: dict[tuple[str, str], float] = defaultdict(float)
        touches: Counter = Counter()
        last_seen: dict[tuple[str, str], int] = {}

        for view in page_views:
            if not view.entity_id:
                continue
            key = (view.page_type, view.entity_id)
            page_scores[key] = max(page_scores.get(key, 0.0), page_interest_score(view))
            touches[key] += 1
            last_seen[key] = max(last_seen.get(key, 0), view.timestamp)

        for event in interactions:
            key = (event.content_type, event.content_id)
            interaction_scores[key] += INTERACTION_WEIGHTS.get(event.interaction_type.value, 0)
            touches[key] += 1
            last_seen[key] = max(last_seen.get(key, 0), event.timestamp)

        prefs = [
            ContentPreference(
                content_type=ctype,
                content_id=cid,
                score=page_scores.get((ctype, cid), 0.0) + interaction_scores.get((ctype, cid), 0.0),
                interactions=touches[(ctype, cid)],
                last_interaction=last_seen[(ctype, cid)],
            )
            for (ctype, cid) in touches
            if touches[(ctype, cid)] >= self.min_item_interactions
        ]
        prefs.sort(key=lambda p: (-p.score, p.key))
        return prefs

    def _type_affinity(
        self, page_views: list[PageView], interactions: list[InteractionEvent]
    ) -> dict[str, TypeAffinity]:
        views: Counter = Counter(v.page_type for v in page_views)
        engagements: Counter = Counter(e.content_type for e in interactions)
        dwell: dict[str, int] = defaultdict(int)
        for v in page_views:
            dwell[v.page_type] += v.dwell_time

        denominator = max(1, len(page_views))
        affinity = {}
        for ctype in sorted(set(views) | set(engagements)):
            raw = (views[ctype] * 10 + engagements[ctype] * 20) / denominator * 100
            affinity[ctype] = TypeAffinity(
                content_type=ctype,
                score=min(100.0, raw),
                view_count=views[ctype],
                average_dwell_time=dwell[ctype] / views[ctype] if views[ctype] else 0.0,
            )
        return affinity

    def _search_patterns(self, searches: list[SearchEvent]) -> list[SearchPattern]:
        grouped: dict[str, list[SearchEvent]] = defaultdict(list)
        for search in searches:
            normalized = search.query.strip().lower()
            if normalized:
                grouped[normalized].append(search)

        patterns = []
        for query, events in grouped.items():
            clicked = sum(1 for e in events if e.clicked_results)
            categories = sorted({e.category for e in events if e.category})
            patterns.append(SearchPattern(
                query=query,
                keywords=query.split(),
                frequency=len(events),
                success_rate=clicked / len(events),
                categories=categories,
                last_used=max(e.timestamp for e in events),
            ))
        patterns.sort(key=lambda p: (-p.frequency, -p.last_used, p.query))
        return patterns

    def _time_patterns(self, profile: PreferenceProfile, *event_lists) -> None:
        for events in event_lists:
            for event in events:
                dt = ms_to_datetime(event.timestamp)
                profile.hourly_activity[dt.hour] += 1
                profile.daily_activity[dt.weekday()] += 1
                profile.last_activity = max(profile.last_activity, event.timestamp)
        profile.preferred_hours = _top_indices(profile.hourly_activity, TOP_ACTIVE_HOURS)
        profile.preferred_days = _top_indices(profile.daily_activity, TOP_ACTIVE_DAYS)

    def _engagement(self, page_views: list[PageView], interactions: list[InteractionEvent]) -> float:
        if not page_views and not interactions:
            return 0.0
        n_views = len(page_views)
        avg_dwell = sum(v.dwell_time for v in page_views) / n_views if n_views else 0.0
        avg_scroll = sum(v.scroll_depth for v in page_views) / n_views if n_views else 0.0
        interaction_rate = len(interactions) / max(1, n_views)

        score = (
            min(ENGAGEMENT_DWELL_POINTS, avg_dwell / 1000)
            + min(ENGAGEMENT_SCROLL_POINTS, avg_scroll * 0.3)
            + min(ENGAGEMENT_INTERACTION_POINTS, interaction_rate * 20)
        )
        return min(100.0, score)

    def summarize(self, session_id: str, top_n: int = 10) -> BehaviorSummary:
        """Activity report for one session (counts, top content and terms, heatmaps)."""
        page_views, searches, interactions = self._load(session_id)

        viewed: Counter = Counter(
            f"{v.page_type}:{v.entity_id}" for v in page_views if v.entity_id
        )
        searched: Counter = Counter(s.query.strip().lower() for s in searches if s.query.strip())
        hourly, daily, monthly = [0] * 24, [0] * 7, [0] * 12
        for events in (page_views, searches, interactions):
            for event in events:
                dt = ms_to_datetime(event.timestamp)
                hourly[dt.hour] += 1
                daily[dt.weekday()] += 1
                monthly[dt.month - 1] += 1

        def _ranked(counter: Counter) -> list[tuple[str, int]]:
            return sorted(counter.items(), key=lambda kv: (-kv[1], kv[0]))[:top_n]

        return BehaviorSummary(
            session_id=session_id,
            page_views=len(page_views),
            searches=len(searches),
            interactions=len(interactions),
            average_dwell_time=(
                sum(v.dwell_time for v in page_views) / len(page_views) if page_views else 0.0
            ),
            most_viewed=_ranked(viewed),
            most_searched=_ranked(searched),
            hourly=hourly,
            daily=daily,
            monthly=monthly,
        )
