"""
Content catalog access.

The recommender treats the catalog as an opaque collaborator that returns item
attributes by id and lists items for the non-personalized strategies. Two
implementations are provided: a SQLite-backed catalog (populated with
``session-rec import-catalog``) and an HTTP client for a remote catalog
service.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, Protocol

import httpx

from .config import CATALOG_URL, HTTP_TIMEOUT, MAX_HTTP_RETRIES
from .database import Database, load_json
from .utils import retry_with_backoff

logger = logging.getLogger(__name__)


class CatalogError(Exception):
    """Raised when the catalog cannot answer a lookup."""


@dataclass(frozen=True)
class Tag:
    name: str
    category: str = "other"


@dataclass
class CatalogItem:
    content_type: str
    content_id: str
    title: str
    subtitle: str | None = None
    description: str | None = None
    image_url: str | None = None
    url: str | None = None
    director: str | None = None
    year: int | None = None
    duration: int | None = None  # minutes
    vote_average: float | None = None
    view_count: int = 0
    favorite_count: int = 0
    published_at: int | None = None
    updated_at: int | None = None
    tags: list[Tag] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.content_type}:{self.content_id}"

    @property
    def genres(self) -> set[str]:
        return {t.name.lower() for t in self.tags if t.category == "genre"}

    @property
    def freshness(self) -> int:
        """Timestamp used for recency ordering."""
        return self.updated_at or self.published_at or 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "CatalogItem":
        """Build an item from catalog JSON (accepts snake_case or camelCase keys)."""
        def _get(*names, default=None):
            for name in names:
                if payload.get(name) is not None:
                    return payload[name]
            return default

        raw_tags = _get("tags", default=[]) or []
        tags = []
        for tag in raw_tags:
            if isinstance(tag, str):
                tags.append(Tag(tag))
            elif isinstance(tag, dict) and tag.get("name"):
                tags.append(Tag(str(tag["name"]), str(tag.get("category") or "other").lower()))

        content_type = _get("content_type", "contentType", "type")
        content_id = _get("content_id", "contentId", "id")
        if not content_type or content_id is None:
            raise ValueError(f"Catalog item missing type or id: {payload!r:.80}")

        return cls(
            content_type=str(content_type),
            content_id=str(content_id),
            title=str(_get("title", "name", default="")),
            subtitle=_get("subtitle"),
            description=_get("description", "overview", "content"),
            image_url=_get("image_url", "imageUrl", "posterPath"),
            url=_get("url"),
            director=_get("director"),
            year=_get("year", "releaseYear"),
            duration=_get("duration"),
            vote_average=_get("vote_average", "voteAverage", "rating"),
            view_count=int(_get("view_count", "viewCount", default=0)),
            favorite_count=int(_get("favorite_count", "favoriteCount", default=0)),
            published_at=_get("published_at", "publishedAt", "createdAt"),
            updated_at=_get("updated_at", "updatedAt"),
            tags=tags,
            metadata=_get("metadata", default={}) or {},
        )


class CatalogStore(Protocol):
    def get(self, content_type: str, content_id: str) -> CatalogItem | None: ...

    def list_items(self, types: Iterable[str]) -> list[CatalogItem]: ...


class SqliteCatalog:
    """Catalog backed by the local ``catalog_items`` table."""

    def __init__(self, db: Database):
        self.db = db

    @staticmethod
    def _from_row(row) -> CatalogItem:
        data = dict(row)
        data["tags"] = [Tag(t["name"], t.get("category", "other")) for t in load_json(data.get("tags"))]
        data["metadata"] = load_json(data.get("metadata"), default={})
        return CatalogItem(**data)

    def get(self, content_type: str, content_id: str) -> CatalogItem | None:
        with self.db.connect(read_only=True) as conn:
            row = conn.execute(
                "SELECT * FROM catalog_items WHERE content_type = ? AND content_id = ?",
                (content_type, content_id),
            ).fetchone()
        return self._from_row(row) if row else None

    def list_items(self, types: Iterable[str]) -> list[CatalogItem]:
        types = list(types)
        if not types:
            return []
        placeholders = ",".join("?" * len(types))
        with self.db.connect(read_only=True) as conn:
            rows = conn.execute(
                f"""SELECT * FROM catalog_items WHERE content_type IN ({placeholders})
                    ORDER BY content_type, content_id""",
                types,
            ).fetchall()
        return [self._from_row(r) for r in rows]

    def upsert(self, items: Iterable[CatalogItem]) -> int:
        rows = [
            (
                i.content_type, i.content_id, i.title, i.subtitle, i.description, i.image_url, i.url,
                i.director, i.year, i.duration, i.vote_average, i.view_count, i.favorite_count,
                i.published_at, i.updated_at,
                json.dumps([{"name": t.name, "category": t.category} for t in i.tags]),
                json.dumps(i.metadata),
            )
            for i in items
        ]
        with self.db.connect() as conn:
            conn.executemany(
                """INSERT OR REPLACE INTO catalog_items
                   (content_type, content_id, title, subtitle, description, image_url, url, director, year,
                    duration, vote_average, view_count, favorite_count, published_at, updated_at, tags, metadata)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                rows,
            )
        return len(rows)


class _RetryableStatus(CatalogError):
    pass


class HttpCatalog:
    """
    Client for a remote catalog service.

    Expects ``GET /items/{type}/{id}`` returning one item and
    ``GET /items?type=...`` returning ``{"items": [...]}``. Transport errors
    and 5xx responses are retried with backoff; anything still failing
    surfaces as CatalogError.
    """

    def __init__(
        self,
        base_url: str | None = None,
        client: httpx.Client | None = None,
        timeout: float = HTTP_TIMEOUT,
        max_retries: int = MAX_HTTP_RETRIES,
        retry_delay: float = 0.5,
    ):
        base_url = base_url or CATALOG_URL
        if client is None and not base_url:
            raise ValueError("HttpCatalog needs a base URL (set SESSION_REC_CATALOG_URL)")
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout)
        retry = retry_with_backoff(
            max_retries=max_retries,
            initial_delay=retry_delay,
            exceptions=(httpx.TransportError, _RetryableStatus),
        )
        self._get = retry(self._get_once)

    def _get_once(self, path: str, params=None) -> httpx.Response:
        response = self._client.get(path, params=params)
        if response.status_code >= 500:
            raise _RetryableStatus(f"{path} returned {response.status_code}")
        return response

    def _fetch(self, path: str, params=None) -> httpx.Response | None:
        try:
            response = self._get(path, params=params)
        except (httpx.TransportError, _RetryableStatus) as e:
            raise CatalogError(f"Catalog request {path} failed: {e}") from e
        if response.status_code == 404:
            return None
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise CatalogError(f"Catalog request {path} failed: {e}") from e
        return response

    def get(self, content_type: str, content_id: str) -> CatalogItem | None:
        response = self._fetch(f"/items/{content_type}/{content_id}")
        if response is None:
            return None
        try:
            return CatalogItem.from_dict(response.json())
        except ValueError as e:
            raise CatalogError(f"Malformed catalog item {content_type}:{content_id}: {e}") from e

    def list_items(self, types: Iterable[str]) -> list[CatalogItem]:
        types = list(types)
        if not types:
            return []
        response = self._fetch("/items", params=[("type", t) for t in types])
        if response is None:
            return []
        try:
            payloads = response.json().get("items", [])
        except ValueError as e:
            raise CatalogError(f"Malformed catalog listing: {e}") from e

        items = []
        for payload in payloads:
            try:
                items.append(CatalogItem.from_dict(payload))
            except ValueError as e:
                logger.warning(f"Skipping malformed catalog item: {e}")
        return items

    def close(self) -> None:
        self._client.close()
