import importlib
import sys
from pathlib import Path

import pytest

# Ensure the package under test is importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from session_rec.catalog import CatalogItem, SqliteCatalog, Tag  # noqa: E402
from session_rec.database import Database  # noqa: E402
from session_rec.utils import now_ms  # noqa: E402

HOUR_MS = 60 * 60 * 1000


@pytest.fixture
def fresh_config(monkeypatch, tmp_path):
    """
    Reload config with a temporary database path; restore the real config afterwards.
    """
    monkeypatch.setenv("SESSION_REC_DB", str(tmp_path / "test.db"))
    import session_rec.config as config

    importlib.reload(config)
    yield config
    monkeypatch.undo()
    importlib.reload(config)


@pytest.fixture
def db(tmp_path):
    """Initialized database in a temp dir; the pool is closed after the test."""
    database = Database(tmp_path / "test.db")
    database.init_schema()
    yield database
    database.close()


@pytest.fixture
def now():
    return now_ms()


@pytest.fixture
def catalog_items(now):
    return [
        CatalogItem(
            content_type="movie", content_id="spirited-away", title="Spirited Away",
            description="A girl wanders into a world of spirits.", director="Hayao Miyazaki",
            year=2001, duration=125, vote_average=8.5, view_count=950,
            updated_at=now - 10 * HOUR_MS,
            tags=[Tag("Fantasy", "genre"), Tag("Adventure", "genre"), Tag("Coming of age", "theme"),
                  Tag("Whimsical", "mood")],
        ),
        CatalogItem(
            content_type="movie", content_id="howls-moving-castle", title="Howl's Moving Castle",
            director="Hayao Miyazaki", year=2004, duration=119, vote_average=8.2, view_count=700,
            updated_at=now - 20 * HOUR_MS,
            tags=[Tag("Fantasy", "genre"), Tag("Romance", "genre"), Tag("Whimsical", "mood")],
        ),
        CatalogItem(
            content_type="movie", content_id="only-yesterday", title="Only Yesterday",
            director="Isao Takahata", year=1991, duration=118, vote_average=7.7, view_count=120,
            updated_at=now - 30 * HOUR_MS,
            tags=[Tag("Drama", "genre"), Tag("Coming of age", "theme")],
        ),
        CatalogItem(
            content_type="movie", content_id="ponyo", title="Ponyo",
            director="Hayao Miyazaki", year=2008, duration=101, vote_average=7.7, view_count=700,
            updated_at=now - 40 * HOUR_MS,
            tags=[Tag("Fantasy", "genre"), Tag("Family", "audience")],
        ),
        CatalogItem(
            content_type="character", content_id="totoro", title="Totoro",
            description="A forest spirit.", view_count=800, updated_at=now - 5 * HOUR_MS,
        ),
        CatalogItem(
            content_type="review", content_id="review-1", title="Why Spirited Away endures",
            view_count=40, updated_at=now - HOUR_MS,
        ),
        CatalogItem(
            content_type="guide", content_id="watch-order", title="Where to start",
            view_count=300, published_at=now - 2 * HOUR_MS,
        ),
    ]


@pytest.fixture
def catalog(db, catalog_items):
    store = SqliteCatalog(db)
    store.upsert(catalog_items)
    return store
