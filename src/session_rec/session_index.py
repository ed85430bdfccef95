"""
Cross-session similarity lookup.

This is the only place where one session's recommendations may draw on other
sessions. It is deliberately narrow: sessions publish an anonymized aggregate
(liked content keys with scores, search keywords, active hours and an
interaction count) keyed by a salted hash of the session id, and the index
answers ``find_similar_sessions``. Raw events and raw session ids never leave
the behavior store. The capability can be switched off entirely by
injecting ``DisabledSessionIndex``.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Protocol

import numpy as np
from scipy.sparse import csr_matrix

from .config import (
    DAY_MS,
    MAX_SIMILAR_SESSIONS,
    MIN_SESSION_INTERACTIONS,
    RETENTION_DAYS,
    SESSION_INDEX_SALT,
    SIMILARITY_THRESHOLD,
    SIMILARITY_WEIGHTS,
)
from .database import Database, load_json
from .profile import PreferenceProfile
from .utils import now_ms

logger = logging.getLogger(__name__)


def session_key(session_id: str, salt: str = SESSION_INDEX_SALT) -> str:
    """Opaque, salted key under which a session's aggregate is stored."""
    return hashlib.sha256(f"{salt}:{session_id}".encode("utf-8")).hexdigest()[:32]


@dataclass
class SessionAggregate:
    session_key: str
    liked_items: dict[str, float] = field(default_factory=dict)
    keywords: list[str] = field(default_factory=list)
    hours: list[int] = field(default_factory=list)
    interaction_count: int = 0
    updated_at: int = 0

    @classmethod
    def from_profile(
        cls, profile: PreferenceProfile, now: int | None = None, salt: str = SESSION_INDEX_SALT
    ) -> "SessionAggregate":
        return cls(
            session_key=session_key(profile.session_id, salt),
            liked_items=profile.liked_items,
            keywords=sorted(profile.search_keywords),
            hours=list(profile.preferred_hours),
            interaction_count=profile.page_view_count + profile.interaction_count,
            updated_at=now if now is not None else now_ms(),
        )


@dataclass
class SimilarSession:
    session_key: str
    similarity: float
    liked_items: dict[str, float]
    common_interests: list[str] = field(default_factory=list)


def jaccard(a: set, b: set) -> float:
    """Jaccard overlap; two empty sets have no overlap."""
    union = len(a | b)
    return len(a & b) / union if union else 0.0


def blended_similarity(a: SessionAggregate, b: SessionAggregate) -> float:
    """Weighted blend of liked-content, keyword and active-hour overlap."""
    return (
        SIMILARITY_WEIGHTS["content"] * jaccard(set(a.liked_items), set(b.liked_items))
        + SIMILARITY_WEIGHTS["keywords"] * jaccard(set(a.keywords), set(b.keywords))
        + SIMILARITY_WEIGHTS["hours"] * jaccard(set(a.hours), set(b.hours))
    )


def _jaccard_against(query: set, rows: list[set]) -> np.ndarray:
    """
    Jaccard of ``query`` against every set in ``rows`` using one sparse product.

    Rows are encoded as a binary sessions x vocabulary CSR matrix; the
    intersection sizes fall out of ``matrix @ query_vector``.
    """
    vocab: dict = {}
    for s in rows:
        for token in s:
            vocab.setdefault(token, len(vocab))
    for token in query:
        vocab.setdefault(token, len(vocab))

    if not vocab:
        return np.zeros(len(rows), dtype=np.float64)

    indptr = [0]
    indices: list[int] = []
    for s in rows:
        indices.extend(vocab[t] for t in s)
        indptr.append(len(indices))
    matrix = csr_matrix(
        (np.ones(len(indices), dtype=np.float64), indices, indptr),
        shape=(len(rows), len(vocab)),
    )

    q = np.zeros(len(vocab), dtype=np.float64)
    q[[vocab[t] for t in query]] = 1.0

    intersections = matrix @ q
    union = np.diff(matrix.indptr) + len(query) - intersections
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.where(union > 0, intersections / union, 0.0)


class SessionIndex(Protocol):
    def publish(self, profile: PreferenceProfile) -> bool: ...

    def find_similar_sessions(
        self,
        profile: PreferenceProfile,
        threshold: float = SIMILARITY_THRESHOLD,
        limit: int = MAX_SIMILAR_SESSIONS,
    ) -> list[SimilarSession]: ...


class DisabledSessionIndex:
    """Index that never finds anyone; collaborative filtering falls back to trending."""

    def publish(self, profile: PreferenceProfile) -> bool:
        return False

    def find_similar_sessions(self, profile, threshold=SIMILARITY_THRESHOLD, limit=MAX_SIMILAR_SESSIONS):
        return []


class SqliteSessionIndex:
    """Similarity index over the ``session_aggregates`` table."""

    def __init__(
        self,
        db: Database,
        min_interactions: int = MIN_SESSION_INTERACTIONS,
        retention_days: int = RETENTION_DAYS["preferences"],
        salt: str = SESSION_INDEX_SALT,
    ):
        self.db = db
        self.salt = salt
        self.min_interactions = min_interactions
        self.retention_days = retention_days

    def publish(self, profile: PreferenceProfile, now: int | None = None) -> bool:
        """Store (or refresh) the anonymized aggregate for a session."""
        agg = SessionAggregate.from_profile(profile, now, self.salt)
        try:
            with self.db.connect() as conn:
                conn.execute(
                    """INSERT OR REPLACE INTO session_aggregates
                       (session_key, liked_items, keywords, hours, interaction_count, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    (agg.session_key, json.dumps(agg.liked_items), json.dumps(agg.keywords),
                     json.dumps(agg.hours), agg.interaction_count, agg.updated_at),
                )
        except (sqlite3.Error, TypeError, ValueError) as e:
            logger.warning(f"Failed to publish aggregate for session {profile.session_id}: {e}")
            return False
        self.evict(now=agg.updated_at)
        return True

    def evict(self, now: int | None = None) -> int:
        cutoff = (now if now is not None else now_ms()) - self.retention_days * DAY_MS
        try:
            with self.db.connect() as conn:
                return conn.execute("DELETE FROM session_aggregates WHERE updated_at < ?", (cutoff,)).rowcount
        except sqlite3.Error as e:
            logger.warning(f"Eviction of session aggregates failed: {e}")
            return 0

    def _candidates(self, exclude_key: str) -> list[SessionAggregate]:
        with self.db.connect(read_only=True) as conn:
            rows = conn.execute(
                """SELECT * FROM session_aggregates
                   WHERE session_key != ? AND interaction_count >= ?
                   ORDER BY session_key""",
                (exclude_key, self.min_interactions),
            ).fetchall()
        return [
            SessionAggregate(
                session_key=r["session_key"],
                liked_items=load_json(r["liked_items"], default={}),
                keywords=load_json(r["keywords"]),
                hours=load_json(r["hours"]),
                interaction_count=r["interaction_count"],
                updated_at=r["updated_at"],
            )
            for r in rows
        ]

    def find_similar_sessions(
        self,
        profile: PreferenceProfile,
        threshold: float = SIMILARITY_THRESHOLD,
        limit: int = MAX_SIMILAR_SESSIONS,
    ) -> list[SimilarSession]:
        """
        Sessions whose blended similarity to ``profile`` exceeds ``threshold``.

        Sessions with too few interactions are never considered, and the
        querying session is excluded. Results are ordered by similarity, then
        session key.
        """
        query = SessionAggregate.from_profile(profile, salt=self.salt)
        others = self._candidates(query.session_key)
        if not others:
            return []

        similarity = (
            SIMILARITY_WEIGHTS["content"] * _jaccard_against(
                set(query.liked_items), [set(o.liked_items) for o in others])
            + SIMILARITY_WEIGHTS["keywords"] * _jaccard_against(
                set(query.keywords), [set(o.keywords) for o in others])
            + SIMILARITY_WEIGHTS["hours"] * _jaccard_against(
                set(query.hours), [set(o.hours) for o in others])
        )

        matches = []
        for other, sim in zip(others, similarity):
            if sim > threshold:
                common = sorted(set(query.liked_items) & set(other.liked_items))
                matches.append(SimilarSession(
                    session_key=other.session_key,
                    similarity=float(sim),
                    liked_items=other.liked_items,
                    common_interests=common[:5],
                ))

        matches.sort(key=lambda m: (-m.similarity, m.session_key))
        logger.debug(f"Found {len(matches)} similar sessions (of {len(others)}) for {profile.session_id}")
        return matches[:limit]
