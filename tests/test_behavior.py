import sqlite3

import pytest

from session_rec.behavior import (
    BehaviorStore,
    EventKind,
    InteractionEvent,
    InteractionType,
    PageView,
    SearchClick,
    SearchEvent,
    detect_device_type,
)
from session_rec.config import DAY_MS

MINUTE_MS = 60 * 1000


@pytest.fixture
def store(db):
    return BehaviorStore(db)


def test_new_session_is_created_then_resumed_within_timeout(store, now):
    session = store.start_session(user_agent="Mozilla/5.0 (iPhone; CPU iPhone OS 17_0)", now=now)
    assert session.device_type == "mobile"

    resumed = store.start_session(session.session_id, now=now + 29 * MINUTE_MS)
    assert resumed.session_id == session.session_id
    assert resumed.last_seen_at == now + 29 * MINUTE_MS


def test_session_expires_after_inactivity_gap(store, now):
    session = store.start_session(now=now)

    later = store.start_session(session.session_id, now=now + 31 * MINUTE_MS)
    assert later.session_id != session.session_id


def test_appending_events_keeps_session_alive(store, now):
    session = store.start_session(now=now)
    store.append(PageView(session.session_id, "movie", "ponyo", timestamp=now + 25 * MINUTE_MS))

    resumed = store.start_session(session.session_id, now=now + 50 * MINUTE_MS)
    assert resumed.session_id == session.session_id


def test_query_returns_only_the_requested_session(store, now):
    store.append(PageView("s1", "movie", "ponyo", timestamp=now))
    store.append(PageView("s2", "movie", "totoro", timestamp=now))

    events = store.query("s1", EventKind.PAGE_VIEW)
    assert [e.entity_id for e in events] == ["ponyo"]


def test_query_is_newest_first_only_when_limited(store, now):
    for i, entity in enumerate(["a", "b", "c"]):
        store.append(PageView("s1", "movie", entity, timestamp=now - (3 - i) * MINUTE_MS))

    assert [e.entity_id for e in store.query("s1", "page_view")] == ["a", "b", "c"]
    assert [e.entity_id for e in store.query("s1", "page_view", limit=2)] == ["c", "b"]


def test_events_round_trip_with_their_fields(store, now):
    store.append(InteractionEvent("s1", "movie", "ponyo", "favorite", metadata={"source": "card"}, timestamp=now))
    store.append(SearchEvent(
        "s1", "ghibli fantasy", results_count=12, category="movie",
        clicked_results=(SearchClick("ponyo", "movie", 1, now),), timestamp=now,
    ))

    interaction = store.query("s1", EventKind.INTERACTION)[0]
    assert interaction.interaction_type is InteractionType.FAVORITE
    assert interaction.metadata == {"source": "card"}

    search = store.query("s1", EventKind.SEARCH)[0]
    assert search.results_count == 12
    assert [c.result_id for c in search.clicked_results] == ["ponyo"]


def test_search_clicks_recorded_later_are_attached(store, now):
    search = SearchEvent("s1", "totoro", results_count=3, timestamp=now)
    store.append(search)

    assert store.record_search_click(search.event_id, "totoro", "character", 1, now=now + 1000)

    stored = store.query("s1", EventKind.SEARCH)[0]
    assert stored.clicked_results == (SearchClick("totoro", "character", 1, now + 1000),)


def test_append_evicts_expired_events_of_the_same_kind(store, now):
    store.append(PageView("s1", "movie", "old", timestamp=now - 31 * DAY_MS))
    store.append(InteractionEvent("s1", "movie", "kept", "like", timestamp=now - 31 * DAY_MS))
    store.append(PageView("s1", "movie", "fresh", timestamp=now))

    assert [e.entity_id for e in store.query("s1", EventKind.PAGE_VIEW)] == ["fresh"]
    # Interactions have a longer retention window
    assert [e.content_id for e in store.query("s1", EventKind.INTERACTION)] == ["kept"]


def test_evict_with_explicit_max_age(store, now):
    store.append(InteractionEvent("s1", "movie", "a", "like", timestamp=now - 2 * DAY_MS))
    store.append(InteractionEvent("s1", "movie", "b", "like", timestamp=now))

    removed = store.evict(EventKind.INTERACTION, max_age_ms=DAY_MS, now=now)

    assert removed == 1
    assert [e.content_id for e in store.query("s1", EventKind.INTERACTION)] == ["b"]


def test_evicting_searches_drops_their_clicks(store, db, now):
    search = SearchEvent("s1", "old query", timestamp=now - 61 * DAY_MS,
                         clicked_results=(SearchClick("x", "movie", 1, now),))
    store.append(search)

    with db.connect(read_only=True) as conn:
        assert conn.execute("SELECT COUNT(*) FROM search_clicks").fetchone()[0] == 0


def test_append_swallows_serialization_errors(store, caplog):
    event = InteractionEvent("s1", "movie", "ponyo", "like", metadata={"bad": object()})

    assert store.append(event) is False
    assert store.query("s1", EventKind.INTERACTION) == []
    assert "Dropped InteractionEvent" in caplog.text


def test_append_swallows_storage_errors(store, monkeypatch):
    def _broken(*args, **kwargs):
        raise sqlite3.OperationalError("database or disk is full")

    monkeypatch.setattr(store.db, "connect", _broken)

    assert store.append(PageView("s1", "movie", "ponyo")) is False
    assert store.query("s1", EventKind.PAGE_VIEW) == []


def test_unknown_interaction_type_is_rejected():
    with pytest.raises(ValueError):
        InteractionEvent("s1", "movie", "ponyo", "teleport")


def test_count_events_spans_all_kinds(store, now):
    store.append(PageView("s1", "movie", "a", timestamp=now))
    store.append(SearchEvent("s1", "query", timestamp=now))
    store.append(InteractionEvent("s1", "movie", "a", "like", timestamp=now))

    assert store.count_events("s1") == 3
    assert store.count_events("other") == 0


@pytest.mark.parametrize(
    "user_agent,expected",
    [
        ("Mozilla/5.0 (iPad; CPU OS 16_0)", "tablet"),
        ("Mozilla/5.0 (Linux; Android 14) Mobile", "mobile"),
        ("Mozilla/5.0 (X11; Linux x86_64)", "desktop"),
        (None, "desktop"),
    ],
)
def test_detect_device_type(user_agent, expected):
    assert detect_device_type(user_agent) == expected
