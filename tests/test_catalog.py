import httpx
import pytest

from session_rec.catalog import CatalogError, CatalogItem, HttpCatalog, SqliteCatalog, Tag


def _client(handler):
    return httpx.Client(base_url="http://catalog.test", transport=httpx.MockTransport(handler))


PONYO = {
    "type": "movie",
    "id": "ponyo",
    "title": "Ponyo",
    "director": "Hayao Miyazaki",
    "releaseYear": 2008,
    "voteAverage": 7.7,
    "viewCount": 700,
    "tags": ["Family", {"name": "Fantasy", "category": "Genre"}],
}


def test_from_dict_accepts_camel_case():
    item = CatalogItem.from_dict(PONYO)

    assert item.key == "movie:ponyo"
    assert item.year == 2008
    assert item.vote_average == 7.7
    assert item.view_count == 700
    assert item.tags == [Tag("Family", "other"), Tag("Fantasy", "genre")]
    assert item.genres == {"fantasy"}


def test_from_dict_requires_type_and_id():
    with pytest.raises(ValueError):
        CatalogItem.from_dict({"title": "Nameless"})


def test_freshness_prefers_update_time():
    assert CatalogItem("guide", "g", "G", published_at=10, updated_at=20).freshness == 20
    assert CatalogItem("guide", "g", "G", published_at=10).freshness == 10
    assert CatalogItem("guide", "g", "G").freshness == 0


def test_sqlite_catalog_round_trip(db, catalog_items):
    store = SqliteCatalog(db)
    assert store.upsert(catalog_items) == len(catalog_items)

    item = store.get("movie", "spirited-away")
    assert item == catalog_items[0]
    assert store.get("movie", "missing") is None


def test_sqlite_catalog_lists_by_type_in_stable_order(catalog):
    movies = catalog.list_items(["movie"])
    assert [m.content_id for m in movies] == ["howls-moving-castle", "only-yesterday", "ponyo", "spirited-away"]

    mixed = catalog.list_items(["guide", "character"])
    assert [i.key for i in mixed] == ["character:totoro", "guide:watch-order"]
    assert catalog.list_items([]) == []


def test_upsert_replaces_existing_rows(db):
    store = SqliteCatalog(db)
    store.upsert([CatalogItem("movie", "ponyo", "Ponyo", view_count=1)])
    store.upsert([CatalogItem("movie", "ponyo", "Ponyo", view_count=5)])

    assert store.get("movie", "ponyo").view_count == 5
    assert len(store.list_items(["movie"])) == 1


def test_http_catalog_get():
    def handler(request):
        if request.url.path == "/items/movie/ponyo":
            return httpx.Response(200, json=PONYO)
        return httpx.Response(404)

    catalog = HttpCatalog(client=_client(handler), retry_delay=0)

    assert catalog.get("movie", "ponyo").title == "Ponyo"
    assert catalog.get("movie", "unknown") is None


def test_http_catalog_list_items_sends_types_and_skips_bad_rows():
    seen = {}

    def handler(request):
        seen["types"] = request.url.params.get_list("type")
        return httpx.Response(200, json={"items": [PONYO, {"title": "no id"}]})

    catalog = HttpCatalog(client=_client(handler), retry_delay=0)
    items = catalog.list_items(["movie", "guide"])

    assert seen["types"] == ["movie", "guide"]
    assert [i.content_id for i in items] == ["ponyo"]


def test_http_catalog_retries_server_errors():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) < 3:
            return httpx.Response(503)
        return httpx.Response(200, json=PONYO)

    catalog = HttpCatalog(client=_client(handler), max_retries=3, retry_delay=0)

    assert catalog.get("movie", "ponyo").content_id == "ponyo"
    assert len(calls) == 3


def test_http_catalog_gives_up_with_catalog_error():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("refused", request=request)

    catalog = HttpCatalog(client=_client(handler), max_retries=2, retry_delay=0)

    with pytest.raises(CatalogError):
        catalog.get("movie", "ponyo")
    assert len(calls) == 2


def test_http_catalog_client_errors_are_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(403)

    catalog = HttpCatalog(client=_client(handler), retry_delay=0)

    with pytest.raises(CatalogError):
        catalog.list_items(["movie"])
    assert len(calls) == 1


def test_http_catalog_rejects_malformed_json():
    catalog = HttpCatalog(client=_client(lambda request: httpx.Response(200, text="<html>")), retry_delay=0)

    with pytest.raises(CatalogError):
        catalog.get("movie", "ponyo")


def test_http_catalog_needs_a_url(monkeypatch):
    import session_rec.catalog as catalog_module

    monkeypatch.setattr(catalog_module, "CATALOG_URL", None)
    with pytest.raises(ValueError):
        HttpCatalog()
