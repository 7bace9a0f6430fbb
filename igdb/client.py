"""IGDB client and query helpers."""

from __future__ import annotations

import json
import logging
import numbers
import time
from typing import Any, Callable, Iterable
from urllib.error import URLError

import pandas as pd

from http_utils import HttpResponse, Opener, RequestFactory, build_request, send_request
from igdb.auth import AccessToken, TwitchTokenProvider
from igdb.models import CatalogRecord, TimeToBeatStub

logger = logging.getLogger(__name__)


__all__ = [
    "CatalogError",
    "DETAIL_FIELDS",
    "GAME_LIST_FIELDS",
    "IGDBClient",
    "TAXONOMY_FIELDS",
    "build_query",
    "coerce_igdb_id",
    "resolve_igdb_page_size",
]


GAME_LIST_FIELDS: tuple[str, ...] = (
    "id",
    "name",
    "slug",
    "url",
    "summary",
    "storyline",
    "first_release_date",
    "category",
    "rating",
    "rating_count",
    "aggregated_rating",
    "aggregated_rating_count",
    "genres.id",
    "genres.name",
    "platforms.id",
    "platforms.name",
    "platforms.abbreviation",
    "screenshots.id",
    "screenshots.image_id",
    "cover.id",
    "cover.image_id",
    "websites.category",
    "websites.url",
    "involved_companies.company.id",
    "involved_companies.company.name",
    "involved_companies.developer",
    "involved_companies.publisher",
    "updated_at",
)

DETAIL_FIELDS: tuple[str, ...] = (
    "id",
    "name",
    "slug",
    "url",
    "summary",
    "storyline",
    "first_release_date",
    "category",
    "rating",
    "rating_count",
    "aggregated_rating",
    "aggregated_rating_count",
    "genres.id",
    "genres.name",
    "themes.id",
    "themes.name",
    "game_modes.id",
    "game_modes.name",
    "player_perspectives.id",
    "player_perspectives.name",
    "platforms.id",
    "platforms.name",
    "platforms.abbreviation",
    "keywords.id",
    "keywords.name",
    "involved_companies.company.id",
    "involved_companies.company.name",
    "involved_companies.developer",
    "involved_companies.publisher",
    "websites.id",
    "websites.category",
    "websites.url",
    "screenshots.id",
    "screenshots.image_id",
    "screenshots.width",
    "screenshots.height",
    "artworks.id",
    "artworks.image_id",
    "artworks.width",
    "artworks.height",
    "videos.id",
    "videos.name",
    "videos.video_id",
    "cover.id",
    "cover.image_id",
    "cover.width",
    "cover.height",
    "updated_at",
)

TAXONOMY_FIELDS: dict[str, tuple[str, ...]] = {
    "genres": ("id", "name"),
    "themes": ("id", "name"),
    "game_modes": ("id", "name"),
    "player_perspectives": ("id", "name"),
    "platforms": ("id", "name", "abbreviation"),
}

TIME_TO_BEAT_FIELDS: tuple[str, ...] = (
    "id",
    "game_id",
    "hastily",
    "normally",
    "completely",
    "count",
)

RECENT_WINDOW_SECONDS = 30 * 24 * 60 * 60
DEFAULT_USER_AGENT = "game-metadata-importer/0.1"
MAX_RETRY_DELAY_SECONDS = 30.0


class CatalogError(RuntimeError):
    """Raised when an IGDB request fails or returns an unusable payload."""

    def __init__(
        self,
        message: str,
        *,
        query: str | None = None,
        response_body: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.query = query
        self.response_body = response_body
        self.status_code = status_code


def resolve_igdb_page_size(batch_size: Any, *, max_page_size: int = 500) -> int:
    """Return a sanitized IGDB page size respecting API constraints."""

    try:
        size = int(batch_size)
    except (TypeError, ValueError):
        return max_page_size
    if size <= 0:
        return max_page_size
    return min(size, max_page_size)


def coerce_igdb_id(value: Any) -> str:
    """Normalize potential IGDB identifiers to a canonical string."""

    if value is None:
        return ""
    if isinstance(value, bool):
        return ""
    try:
        if pd.isna(value):
            return ""
    except (TypeError, ValueError):
        pass
    if isinstance(value, str):
        text = value.strip()
        if not text or text.lower() == "nan":
            return ""
        if text.endswith(".0") and text[:-2].isdigit():
            return text[:-2]
        return text
    if isinstance(value, numbers.Integral):
        return str(int(value))
    if isinstance(value, numbers.Real):
        if float(value).is_integer():
            return str(int(value))
        return str(value)
    text = str(value).strip()
    if not text or text.lower() == "nan":
        return ""
    return text


def _escape_search_term(term: str) -> str:
    return term.replace("\\", "\\\\").replace('"', '\\"')


def build_query(
    *,
    fields: Iterable[str] | str,
    search: str | None = None,
    where: str | None = None,
    sort: str | None = None,
    limit: int | None = None,
    offset: int | None = None,
) -> str:
    """Return an Apicalypse query such as ``fields id, name; limit 10;``."""

    if isinstance(fields, str):
        projection = fields.strip()
    else:
        projection = ", ".join(str(name).strip() for name in fields if str(name).strip())
    if not projection:
        raise ValueError("a query needs at least one field")

    clauses: list[str] = []
    if search is not None and search.strip():
        clauses.append(f'search "{_escape_search_term(search.strip())}";')
    clauses.append(f"fields {projection};")
    if where:
        clauses.append(f"where {where.strip().rstrip(';')};")
    if sort:
        clauses.append(f"sort {sort.strip().rstrip(';')};")
    if limit is not None:
        clauses.append(f"limit {resolve_igdb_page_size(limit)};")
    if offset:
        clauses.append(f"offset {max(0, int(offset))};")
    return " ".join(clauses)


class IGDBClient:
    """Authenticated IGDB client that composes headers for every request."""

    BASE_URL = "https://api.igdb.com/v4"

    def __init__(
        self,
        token_provider: TwitchTokenProvider,
        *,
        client_id: str | None = None,
        base_url: str | None = None,
        user_agent: str | None = None,
        timeout: float = 8.0,
        max_retries: int = 3,
        retry_backoff: float = 0.5,
        max_retry_delay: float = MAX_RETRY_DELAY_SECONDS,
        request_factory: RequestFactory | None = None,
        opener: Opener | None = None,
        sleep: Callable[[float], None] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._token_provider = token_provider
        self._client_id = (client_id or getattr(token_provider, "client_id", "") or "").strip()
        self._base_url = (base_url or self.BASE_URL).rstrip("/")
        self._user_agent = (user_agent or "").strip()
        self._timeout = timeout if timeout and timeout > 0 else 8.0
        self._max_retries = max(1, int(max_retries))
        self._retry_backoff = retry_backoff if retry_backoff and retry_backoff > 0 else 0.5
        self._max_retry_delay = max(0.0, float(max_retry_delay))
        self._request_factory = request_factory
        self._opener = opener
        self._sleep = sleep or time.sleep
        self._clock = clock or time.time

    @property
    def user_agent(self) -> str:
        return self._user_agent or DEFAULT_USER_AGENT

    def search_by_title(self, term: str, limit: int = 10) -> list[CatalogRecord]:
        text = (term or "").strip()
        if not text:
            return []
        query = build_query(fields=GAME_LIST_FIELDS, search=text, limit=limit)
        return self._query_records("games", query)

    def get_by_id(self, game_id: int | str) -> CatalogRecord | None:
        numeric = self._require_id(game_id)
        query = build_query(fields=DETAIL_FIELDS, where=f"id = {numeric}", limit=1)
        records = self._query_records("games", query)
        return records[0] if records else None

    def get_popular(self, limit: int = 20) -> list[CatalogRecord]:
        query = build_query(
            fields=GAME_LIST_FIELDS,
            where="aggregated_rating_count > 10 & aggregated_rating > 75",
            sort="aggregated_rating desc",
            limit=limit,
        )
        return self._query_records("games", query)

    def get_recent(self, limit: int = 20) -> list[CatalogRecord]:
        now = int(self._clock())
        since = now - RECENT_WINDOW_SECONDS
        query = build_query(
            fields=GAME_LIST_FIELDS,
            where=f"first_release_date >= {since} & first_release_date <= {now}",
            sort="first_release_date desc",
            limit=limit,
        )
        return self._query_records("games", query)

    def get_by_genre(self, genre_id: int | str, limit: int = 20) -> list[CatalogRecord]:
        numeric = self._require_id(genre_id)
        query = build_query(
            fields=GAME_LIST_FIELDS,
            where=f"genres = [{numeric}]",
            sort="aggregated_rating desc",
            limit=limit,
        )
        return self._query_records("games", query)

    def get_by_platform(
        self, platform_id: int | str, limit: int = 20
    ) -> list[CatalogRecord]:
        numeric = self._require_id(platform_id)
        query = build_query(
            fields=GAME_LIST_FIELDS,
            where=f"platforms = [{numeric}]",
            sort="aggregated_rating desc",
            limit=limit,
        )
        return self._query_records("games", query)

    def get_taxonomy_list(self, kind: str) -> str:
        """Return the raw JSON list of ``kind`` entries (at most 500)."""

        resource = str(getattr(kind, "value", kind) or "").strip()
        fields = TAXONOMY_FIELDS.get(resource)
        if fields is None:
            raise ValueError(f"unsupported taxonomy list: {kind!r}")
        return self._post(resource, build_query(fields=fields, limit=500))

    def get_time_to_beat(self, game_id: int | str) -> TimeToBeatStub | None:
        """Return the advisory completion times for ``game_id`` or ``None``.

        Every failure is logged and swallowed; callers treat the result as
        optional enrichment.
        """

        query = ""
        try:
            numeric = self._require_id(game_id)
            query = build_query(
                fields=TIME_TO_BEAT_FIELDS, where=f"game_id = {numeric}", limit=1
            )
            payload = self._decode_list(self._post("game_time_to_beats", query), query)
        except Exception:
            logger.exception("Error getting time to beat for IGDB game %s", game_id)
            return None
        for item in payload:
            stub = TimeToBeatStub.from_payload(item)
            if stub is not None:
                return stub
        return None

    def _query_records(self, resource: str, query: str) -> list[CatalogRecord]:
        payload = self._decode_list(self._post(resource, query), query)
        records: list[CatalogRecord] = []
        for item in payload:
            record = CatalogRecord.from_payload(item)
            if record is None:
                logger.warning("Skipping IGDB entry with invalid id: %s", item)
                continue
            records.append(record)
        return records

    @staticmethod
    def _decode_list(body: str, query: str) -> list[Any]:
        try:
            payload = json.loads(body) if body.strip() else []
        except json.JSONDecodeError as exc:
            raise CatalogError(
                "invalid JSON response from IGDB", query=query, response_body=body
            ) from exc
        if not isinstance(payload, list):
            raise CatalogError(
                "unexpected IGDB payload; expected a JSON array",
                query=query,
                response_body=body,
            )
        return payload

    def _post(self, resource: str, query: str) -> str:
        url = f"{self._base_url}/{resource}"
        attempt = 0
        refreshed_after_401 = False
        while True:
            token = self._token_provider.get_access_token()
            request = build_request(
                url,
                method="POST",
                data=query.encode("utf-8"),
                headers=self._headers(token),
                request_factory=self._request_factory,
            )
            logger.debug("IGDB query on %s: %s", resource, query)
            try:
                response = send_request(request, opener=self._opener, timeout=self._timeout)
            except (URLError, OSError) as exc:
                if attempt + 1 < self._max_retries:
                    delay = self._backoff_delay(attempt)
                    logger.warning(
                        "IGDB request to %s failed (%s); retrying in %.2fs",
                        resource,
                        exc,
                        delay,
                    )
                    self._sleep(delay)
                    attempt += 1
                    continue
                logger.error("IGDB request to %s failed: %s; query: %s", resource, exc, query)
                raise CatalogError(f"IGDB request failed: {exc}", query=query) from exc

            if response.status == 401 and not refreshed_after_401:
                logger.warning("IGDB rejected the access token; requesting a new one")
                self._token_provider.invalidate()
                refreshed_after_401 = True
                continue

            if _is_transient(response) and attempt + 1 < self._max_retries:
                delay = self._retry_delay(response, attempt)
                logger.warning(
                    "IGDB request to %s returned %s; retrying in %.2fs",
                    resource,
                    response.status,
                    delay,
                )
                if delay > 0:
                    self._sleep(delay)
                attempt += 1
                continue

            if not response.ok:
                logger.error(
                    "IGDB request failed. Status: %s, Response: %s, Query: %s",
                    response.status,
                    response.body,
                    query,
                )
                raise CatalogError(
                    _format_http_error("IGDB request failed", response),
                    query=query,
                    response_body=response.body,
                    status_code=response.status,
                )
            return response.body

    def _headers(self, token: AccessToken) -> dict[str, str]:
        return {
            "Client-ID": self._client_id,
            "Authorization": token.authorization,
            "Accept": "application/json",
            "Content-Type": "text/plain",
            "User-Agent": self.user_agent,
        }

    def _backoff_delay(self, attempt: int) -> float:
        return min(self._retry_backoff * (2 ** attempt), self._max_retry_delay)

    def _retry_delay(self, response: HttpResponse, attempt: int) -> float:
        delay = self._advertised_delay(response)
        if delay is None:
            delay = self._backoff_delay(attempt)
        return min(delay, self._max_retry_delay)

    def _advertised_delay(self, response: HttpResponse) -> float | None:
        value = response.header("Retry-After")
        if value:
            try:
                delay = float(value)
                if delay > 0:
                    return delay
            except (TypeError, ValueError):
                pass
        value = response.header("X-RateLimit-Reset")
        if value:
            try:
                delay = float(value) - self._clock()
                if delay > 0:
                    return delay
            except (TypeError, ValueError):
                pass
        return None

    @staticmethod
    def _require_id(value: Any) -> int:
        text = coerce_igdb_id(value)
        try:
            return int(text)
        except (TypeError, ValueError):
            raise ValueError(f"invalid IGDB id: {value!r}") from None


def _is_transient(response: HttpResponse) -> bool:
    return response.status == 429 or response.status >= 500


def _format_http_error(prefix: str, response: HttpResponse) -> str:
    message = f"{prefix}: {response.status}"
    body = response.body.strip()
    if body:
        message = f"{message} {body}"
    return message
