import asyncio

import pytest

from session_rec.behavior import InteractionEvent, PageView
from session_rec.catalog import CatalogItem
from session_rec.generators import Candidate, Reason, Strategy
from session_rec.service import HydratedRecommendation, RecommendationService, build_service
from session_rec.session_index import session_key
from session_rec.weights import WeightVector


@pytest.fixture
def service(db, catalog, tmp_path):
    svc = build_service(db, catalog=catalog, weights_path=tmp_path / "weights.json")
    yield svc
    svc.close()


def _served_count(db):
    with db.connect(read_only=True) as conn:
        return conn.execute("SELECT COUNT(*) FROM served_recommendations").fetchone()[0]


class RaisingAggregator:
    def __init__(self, exc):
        self.exc = exc

    async def rank_async(self, context, weights, limit):
        raise self.exc

    def close(self):
        pass


class FlakyCatalog:
    """Delegates to a real catalog but fails or misses for chosen ids."""

    def __init__(self, inner, broken=(), missing=()):
        self.inner = inner
        self.broken = set(broken)
        self.missing = set(missing)

    def get(self, content_type, content_id):
        if content_id in self.broken:
            raise ConnectionError("catalog timeout")
        if content_id in self.missing:
            return None
        return self.inner.get(content_type, content_id)

    def list_items(self, types):
        return self.inner.list_items(types)


def test_empty_session_gets_default_weights_and_popular_items(service):
    response = service.recommend(limit=5)

    assert response["context"]["weights"] == WeightVector().to_response()
    assert response["metadata"]["profile"] is None
    recs = response["recommendations"]
    assert response["total"] == len(recs) > 0
    assert recs[0]["id"] == "spirited-away"
    assert recs[0]["score"] == pytest.approx(0.8)
    assert recs[0]["algorithm"] == "popular"
    assert response["metadata"]["strategies"]["content_based"]["status"] == "empty"


def test_recommendations_are_logged_as_served(service, db):
    response = service.recommend(limit=5, session_id="anon")

    assert _served_count(db) == response["total"]
    ids = [r["metadata"]["recommendationId"] for r in response["recommendations"]]
    assert len(set(ids)) == len(ids)
    assert [r["metadata"]["position"] for r in response["recommendations"]] == list(
        range(1, response["total"] + 1)
    )


def test_item_detail_excludes_focal_item(service):
    response = service.recommend(limit=10, context_type="movie_detail", context_id="spirited-away")

    assert response["context"]["contextType"] == "item_detail"
    ids = [r["id"] for r in response["recommendations"]]
    assert "spirited-away" not in ids
    assert "howls-moving-castle" in ids


def test_engaged_session_is_profiled_and_published(service, db, now):
    for movie_id in ("spirited-away", "ponyo"):
        service.store.append(PageView("s1", "movie", movie_id, dwell_time=120000, scroll_depth=90, timestamp=now))
        service.store.append(InteractionEvent("s1", "movie", movie_id, "favorite", timestamp=now))

    response = service.recommend(limit=5, session_id="s1")

    assert response["metadata"]["profile"] is not None
    with db.connect(read_only=True) as conn:
        row = conn.execute(
            "SELECT * FROM session_aggregates WHERE session_key = ?", (session_key("s1"),)
        ).fetchone()
    assert row is not None
    # no similar sessions yet, so collaborative falls back to trending items
    assert response["metadata"]["strategies"]["collaborative"]["status"] == "ok"


def test_unresolvable_candidates_are_dropped(db, catalog, tmp_path):
    flaky = FlakyCatalog(catalog, broken={"spirited-away"}, missing={"totoro"})
    svc = build_service(db, catalog=flaky, weights_path=tmp_path / "weights.json")

    response = svc.recommend(limit=5)
    ids = [r["id"] for r in response["recommendations"]]

    assert "spirited-away" not in ids
    assert "totoro" not in ids
    assert response["total"] == len(ids)
    svc.close()


def test_subsystem_failure_returns_empty_response(service, db):
    service.aggregator = RaisingAggregator(RuntimeError("index offline"))

    response = service.recommend(limit=5, session_id="s2")

    assert response["recommendations"] == []
    assert response["total"] == 0
    assert "index offline" in response["metadata"]["error"]
    assert _served_count(db) == 0


def test_cancellation_propagates_without_logging(service, db):
    service.aggregator = RaisingAggregator(asyncio.CancelledError())

    with pytest.raises(asyncio.CancelledError):
        service.recommend(limit=5)
    assert _served_count(db) == 0


@pytest.mark.parametrize(
    "limit, types, context_type, expected",
    [
        (None, None, None, (10, ("movie", "character", "review", "guide"), "general")),
        (100, ["guide", "movie", "bogus"], "movie_detail", (50, ("movie", "guide"), "item_detail")),
        (0, ["bogus"], "search_result", (1, ("movie", "character", "review", "guide"), "search_result")),
        ("abc", ["review"], "weird", (10, ("review",), "general")),
    ],
)
def test_normalize_request(limit, types, context_type, expected):
    assert RecommendationService.normalize_request(limit, types, context_type) == expected


def test_type_filter_applies_to_output(service):
    response = service.recommend(limit=10, types=["character"])
    assert {r["type"] for r in response["recommendations"]} == {"character"}


def test_record_feedback_is_fire_and_forget(service, db):
    assert service.record_feedback("rec-1", "ponyo", "movie", 2, "click", dwell_time=4000, session_id="s1")
    assert not service.record_feedback("rec-1", "ponyo", "movie", 2, "purchase")
    assert not service.record_feedback("rec-1", "ponyo", "movie", "second", "click")

    with db.connect(read_only=True) as conn:
        rows = conn.execute("SELECT action, dwell_time FROM recommendation_feedback").fetchall()
    assert [(r["action"], r["dwell_time"]) for r in rows] == [("click", 4000)]


def test_feedback_flows_into_analytics(service):
    response = service.recommend(limit=3)
    first = response["recommendations"][0]
    service.record_feedback(first["metadata"]["recommendationId"], first["id"], first["type"], 1, "click")

    metrics = service.feedback.analyze()
    assert metrics.clicks == 1
    strategy = first["metadata"]["strategies"][0]
    assert metrics.algorithm_performance[strategy].clicks == 1


def test_publish_session_requires_profile(service, now):
    assert not service.publish_session("nobody")
    service.store.append(PageView("s3", "movie", "ponyo", dwell_time=60000, timestamp=now))
    service.store.append(InteractionEvent("s3", "movie", "ponyo", "like", timestamp=now))
    assert service.publish_session("s3")


def test_hydrated_payload_shape():
    item = CatalogItem(
        "movie", "ponyo", "Ponyo", director="Hayao Miyazaki", year=2008,
        description="x" * 200, image_url="/img/ponyo.jpg",
    )
    candidate = Candidate("movie", "ponyo", 0.61234, Strategy.CONTENT_BASED,
                          [Reason("director", "Same director", 1.0)], aux={"similarTo": "movie:spirited-away"})

    payload = HydratedRecommendation("rid", candidate, item, 1).to_dict()

    assert payload["url"] == "/movies/ponyo"
    assert payload["subtitle"] == "2008 • Hayao Miyazaki"
    assert payload["description"] == "x" * 150 + "..."
    assert payload["score"] == 0.6123
    assert payload["algorithm"] == "content"
    assert payload["reasons"] == [{"type": "director", "description": "Same director", "confidence": 1.0}]
    assert payload["metadata"] == {"recommendationId": "rid", "position": 1, "similarTo": "movie:spirited-away"}
    assert payload["imageUrl"] == "/img/ponyo.jpg"


def test_optional_fields_are_omitted():
    item = CatalogItem("guide", "watch-order", "Where to start")
    payload = HydratedRecommendation("rid", Candidate("guide", "watch-order", 0.5, Strategy.RECENCY), item, 2).to_dict()

    assert "subtitle" not in payload
    assert "description" not in payload
    assert payload["url"] == "/guides/watch-order"
