"""
Session-scoped behavior store.

Captures page views, searches and content interactions as immutable events,
one table per kind. Every kind has its own retention window and is evicted
right after each append. Writes never raise: instrumentation must not break
the page that emits it.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar

from .config import DAY_MS, RETENTION_DAYS, SESSION_TIMEOUT_MS
from .database import Database, load_json
from .utils import now_ms

logger = logging.getLogger(__name__)


def _new_id() -> str:
    return uuid.uuid4().hex


class EventKind(str, Enum):
    PAGE_VIEW = "page_view"
    SEARCH = "search"
    INTERACTION = "interaction"


class InteractionType(str, Enum):
    VIEW = "view"
    LIKE = "like"
    SHARE = "share"
    FAVORITE = "favorite"
    COMMENT = "comment"
    TAG_CLICK = "tag_click"


_TABLES = {
    EventKind.PAGE_VIEW: "page_views",
    EventKind.SEARCH: "search_events",
    EventKind.INTERACTION: "content_interactions",
}


def detect_device_type(user_agent: str | None) -> str:
    """Coarse device class from a user agent string."""
    ua = (user_agent or "").lower()
    if "ipad" in ua or "tablet" in ua:
        return "tablet"
    if "mobi" in ua or "android" in ua or "iphone" in ua:
        return "mobile"
    return "desktop"


@dataclass
class Session:
    session_id: str
    started_at: int
    last_seen_at: int
    device_type: str = "desktop"
    referrer: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class PageView:
    session_id: str
    page_type: str
    entity_id: str | None = None
    url: str = ""
    title: str = ""
    dwell_time: int = 0  # milliseconds
    scroll_depth: float = 0.0  # percent, 0-100
    click_count: int = 0
    exit_type: str | None = None
    timestamp: int = field(default_factory=now_ms)
    event_id: str = field(default_factory=_new_id)

    kind: ClassVar[EventKind] = EventKind.PAGE_VIEW


@dataclass(frozen=True)
class SearchClick:
    result_id: str
    result_type: str
    position: int
    timestamp: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class SearchEvent:
    session_id: str
    query: str
    results_count: int = 0
    category: str | None = None
    clicked_results: tuple[SearchClick, ...] = ()
    timestamp: int = field(default_factory=now_ms)
    event_id: str = field(default_factory=_new_id)

    kind: ClassVar[EventKind] = EventKind.SEARCH


@dataclass(frozen=True)
class InteractionEvent:
    session_id: str
    content_type: str
    content_id: str
    interaction_type: InteractionType
    metadata: dict = field(default_factory=dict)
    timestamp: int = field(default_factory=now_ms)
    event_id: str = field(default_factory=_new_id)

    kind: ClassVar[EventKind] = EventKind.INTERACTION

    def __post_init__(self) -> None:
        if not isinstance(self.interaction_type, InteractionType):
            object.__setattr__(self, "interaction_type", InteractionType(self.interaction_type))


Event = PageView | SearchEvent | InteractionEvent


class BehaviorStore:
    """Append-only event log scoped to one session per read."""

    def __init__(
        self,
        db: Database,
        retention_days: dict[str, int] | None = None,
        session_timeout_ms: int = SESSION_TIMEOUT_MS,
    ):
        self.db = db
        self.retention_days = {**RETENTION_DAYS, **(retention_days or {})}
        self.session_timeout_ms = session_timeout_ms

    # -- sessions -----------------------------------------------------------

    def start_session(
        self,
        session_id: str | None = None,
        device_type: str | None = None,
        referrer: str | None = None,
        user_agent: str | None = None,
        now: int | None = None,
    ) -> Session:
        """
        Resume a session seen within the inactivity timeout, or start a new one.

        A known session that has been idle for longer than the timeout is not
        resumed; a fresh id is issued instead.
        """
        now = now if now is not None else now_ms()
        if session_id:
            existing = self.get_session(session_id)
            if existing and now - existing.last_seen_at <= self.session_timeout_ms:
                self.touch(existing.session_id, now)
                existing.last_seen_at = now
                return existing
            if existing:
                logger.debug(f"Session {session_id} expired after inactivity; starting a new one")

        session = Session(
            session_id=_new_id(),
            started_at=now,
            last_seen_at=now,
            device_type=device_type or detect_device_type(user_agent),
            referrer=referrer,
            user_agent=user_agent,
        )
        try:
            with self.db.connect() as conn:
                conn.execute(
                    """INSERT INTO sessions (session_id, started_at, last_seen_at, device_type, referrer, user_agent)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    (session.session_id, session.started_at, session.last_seen_at,
                     session.device_type, session.referrer, session.user_agent),
                )
        except sqlite3.Error as e:
            logger.warning(f"Failed to persist session {session.session_id}: {e}")
        return session

    def get_session(self, session_id: str) -> Session | None:
        try:
            with self.db.connect(read_only=True) as conn:
                row = conn.execute("SELECT * FROM sessions WHERE session_id = ?", (session_id,)).fetchone()
        except sqlite3.Error as e:
            logger.warning(f"Failed to load session {session_id}: {e}")
            return None
        return Session(**dict(row)) if row else None

    def touch(self, session_id: str, now: int | None = None) -> None:
        try:
            with self.db.connect() as conn:
                conn.execute(
                    "UPDATE sessions SET last_seen_at = MAX(last_seen_at, ?) WHERE session_id = ?",
                    (now if now is not None else now_ms(), session_id),
                )
        except sqlite3.Error as e:
            logger.warning(f"Failed to touch session {session_id}: {e}")

    # -- writes -------------------------------------------------------------

    def append(self, event: Event) -> bool:
        """
        Store one event and evict expired events of the same kind.

        Returns False (after logging) when the write fails; never raises.
        """
        try:
            with self.db.connect() as conn:
                if isinstance(event, PageView):
                    conn.execute(
                        """INSERT INTO page_views (event_id, session_id, timestamp, page_type, entity_id, url,
                               title, dwell_time, scroll_depth, click_count, exit_type)
                           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                        (event.event_id, event.session_id, event.timestamp, event.page_type, event.entity_id,
                         event.url, event.title, event.dwell_time, event.scroll_depth, event.click_count,
                         event.exit_type),
                    )
                elif isinstance(event, SearchEvent):
                    conn.execute(
                        """INSERT INTO search_events (event_id, session_id, timestamp, query, results_count, category)
                           VALUES (?, ?, ?, ?, ?, ?)""",
                        (event.event_id, event.session_id, event.timestamp, event.query,
                         event.results_count, event.category),
                    )
                    conn.executemany(
                        """INSERT INTO search_clicks (search_id, result_id, result_type, position, timestamp)
                           VALUES (?, ?, ?, ?, ?)""",
                        [(event.event_id, c.result_id, c.result_type, c.position, c.timestamp)
                         for c in event.clicked_results],
                    )
                elif isinstance(event, InteractionEvent):
                    conn.execute(
                        """INSERT INTO content_interactions (event_id, session_id, timestamp, content_type,
                               content_id, interaction_type, metadata)
                           VALUES (?, ?, ?, ?, ?, ?, ?)""",
                        (event.event_id, event.session_id, event.timestamp, event.content_type,
                         event.content_id, event.interaction_type.value, json.dumps(event.metadata)),
                    )
                else:
                    raise TypeError(f"Unsupported event type: {type(event).__name__}")

                conn.execute(
                    "UPDATE sessions SET last_seen_at = MAX(last_seen_at, ?) WHERE session_id = ?",
                    (event.timestamp, event.session_id),
                )
        except (sqlite3.Error, TypeError, ValueError) as e:
            logger.warning(f"Dropped {type(event).__name__} for session {getattr(event, 'session_id', '?')}: {e}")
            return False

        self.evict(event.kind)
        return True

    def record_search_click(
        self,
        search_id: str,
        result_id: str,
        result_type: str,
        position: int,
        now: int | None = None,
    ) -> bool:
        """Attach a clicked result to an earlier search without rewriting the search row."""
        try:
            with self.db.connect() as conn:
                conn.execute(
                    """INSERT INTO search_clicks (search_id, result_id, result_type, position, timestamp)
                       VALUES (?, ?, ?, ?, ?)""",
                    (search_id, result_id, result_type, position, now if now is not None else now_ms()),
                )
        except sqlite3.Error as e:
            logger.warning(f"Dropped search click for {search_id}: {e}")
            return False
        return True

    # -- reads --------------------------------------------------------------

    def query(self, session_id: str, kind: EventKind | str, limit: int | None = None) -> list[Event]:
        """
        Events of one kind for one session.

        With a limit the newest events come first; without one the full log is
        returned in chronological order.
        """
        kind = EventKind(kind)
        table = _TABLES[kind]
        order = "DESC" if limit is not None else "ASC"
        sql = f"SELECT * FROM {table} WHERE session_id = ? ORDER BY timestamp {order}, rowid {order}"
        params: tuple = (session_id,)
        if limit is not None:
            sql += " LIMIT ?"
            params += (max(0, int(limit)),)

        try:
            with self.db.connect(read_only=True) as conn:
                rows = conn.execute(sql, params).fetchall()
                clicks: dict[str, list[SearchClick]] = {}
                if kind is EventKind.SEARCH and rows:
                    ids = [r["event_id"] for r in rows]
                    placeholders = ",".join("?" * len(ids))
                    for c in conn.execute(
                        f"""SELECT * FROM search_clicks WHERE search_id IN ({placeholders})
                            ORDER BY timestamp, id""",
                        ids,
                    ):
                        clicks.setdefault(c["search_id"], []).append(
                            SearchClick(c["result_id"], c["result_type"], c["position"], c["timestamp"])
                        )
        except sqlite3.Error as e:
            logger.warning(f"Failed to read {kind.value} events for session {session_id}: {e}")
            return []

        if kind is EventKind.PAGE_VIEW:
            return [
                PageView(
                    session_id=r["session_id"], page_type=r["page_type"], entity_id=r["entity_id"],
                    url=r["url"] or "", title=r["title"] or "", dwell_time=r["dwell_time"] or 0,
                    scroll_depth=r["scroll_depth"] or 0.0, click_count=r["click_count"] or 0,
                    exit_type=r["exit_type"], timestamp=r["timestamp"], event_id=r["event_id"],
                )
                for r in rows
            ]
        if kind is EventKind.SEARCH:
            return [
                SearchEvent(
                    session_id=r["session_id"], query=r["query"], results_count=r["results_count"] or 0,
                    category=r["category"], clicked_results=tuple(clicks.get(r["event_id"], ())),
                    timestamp=r["timestamp"], event_id=r["event_id"],
                )
                for r in rows
            ]
        return [
            InteractionEvent(
                session_id=r["session_id"], content_type=r["content_type"], content_id=r["content_id"],
                interaction_type=r["interaction_type"], metadata=load_json(r["metadata"], default={}),
                timestamp=r["timestamp"], event_id=r["event_id"],
            )
            for r in rows
        ]

    def count_events(self, session_id: str) -> int:
        """Total events of every kind recorded for a session."""
        try:
            with self.db.connect(read_only=True) as conn:
                return sum(
                    conn.execute(f"SELECT COUNT(*) FROM {table} WHERE session_id = ?", (session_id,)).fetchone()[0]
                    for table in _TABLES.values()
                )
        except sqlite3.Error as e:
            logger.warning(f"Failed to count events for session {session_id}: {e}")
            return 0

    # -- retention ----------------------------------------------------------

    def evict(self, kind: EventKind | str, max_age_ms: int | None = None, now: int | None = None) -> int:
        """
        Delete events of one kind older than ``max_age_ms``.

        Defaults to the kind's configured retention window. Returns the number
        of deleted events.
        """
        kind = EventKind(kind)
        if max_age_ms is None:
            max_age_ms = self.retention_days[kind.value] * DAY_MS
        cutoff = (now if now is not None else now_ms()) - max_age_ms
        table = _TABLES[kind]

        try:
            with self.db.connect() as conn:
                deleted = conn.execute(f"DELETE FROM {table} WHERE timestamp < ?", (cutoff,)).rowcount
                if kind is EventKind.SEARCH and deleted:
                    conn.execute(
                        "DELETE FROM search_clicks WHERE search_id NOT IN (SELECT event_id FROM search_events)"
                    )
        except sqlite3.Error as e:
            logger.warning(f"Eviction of {kind.value} events failed: {e}")
            return 0

        if deleted:
            logger.debug(f"Evicted {deleted} {kind.value} events older than {cutoff}")
        return deleted
