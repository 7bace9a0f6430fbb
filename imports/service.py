"""Import IGDB games, with their taxonomies and snapshots, into the local store."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, ContextManager, Iterable

from db.models import (
    Game,
    GameBeatTime,
    GameCompany,
    GameMedia,
    GameRating,
    GameWebsite,
    MediaType,
    TaxonomyKind,
    WebsiteType,
)
from db.repository import GameRepository, PersistenceError
from db.utils import db_lock
from helpers import _coerce_int, ensure_unique_slug, generate_slug, utcnow
from hltb.client import HowLongToBeatClient, PlaytimeRecord, TimeData
from igdb.auth import AuthError
from igdb.client import CatalogError, IGDBClient
from igdb.models import CatalogRecord, CatalogRef
from imports.health import DataHealthReport, GameHealth, check_game_health, summarize_health
from imports.pipeline import (
    ImportCancelledError,
    ImportPipeline,
    ImportState,
    Step,
    StepPolicy,
    raise_if_cancelled,
)
from imports.resolver import ResolutionPolicy, policy_for, resolve

logger = logging.getLogger(__name__)


WEBSITE_TYPES: dict[int, WebsiteType] = {
    1: WebsiteType.OFFICIAL,
    2: WebsiteType.WIKIA,
    3: WebsiteType.WIKIPEDIA,
    4: WebsiteType.FACEBOOK,
    5: WebsiteType.TWITTER,
    6: WebsiteType.TWITCH,
    8: WebsiteType.INSTAGRAM,
    9: WebsiteType.YOUTUBE,
    10: WebsiteType.IPHONE,
    11: WebsiteType.IPAD,
    12: WebsiteType.ANDROID,
    13: WebsiteType.STEAM,
    14: WebsiteType.REDDIT,
    15: WebsiteType.ITCH,
    16: WebsiteType.EPIC_GAMES,
    17: WebsiteType.GOG,
    18: WebsiteType.DISCORD,
}

COVER_SIZE = "t_cover_big"
SCREENSHOT_SIZE = "t_screenshot_med"
ARTWORK_SIZE = "t_1080p"


class NotFoundError(RuntimeError):
    """Raised when a game is missing from the catalog or the local store."""


@dataclass
class ImportSummary:
    imported: list[int] = field(default_factory=list)
    synced: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)


@dataclass
class ImportContext:
    external_id: int
    repository: GameRepository
    record: CatalogRecord | None = None
    game: Game | None = None
    cancel_event: threading.Event | None = None
    playtime: Future | None = None
    playtime_result: PlaytimeRecord | None = None


def _require_external_id(value: Any) -> int:
    numeric = _coerce_int(value)
    if numeric is None or numeric <= 0:
        raise ValueError(f"invalid IGDB id: {value!r}")
    return numeric


def _text_or_none(value: str | None) -> str | None:
    text = (value or "").strip()
    return text or None


def apply_catalog_fields(game: Game, record: CatalogRecord, now: datetime) -> Game:
    """Copy the catalog's descriptive fields onto ``game`` (the slug is kept)."""

    game.name = record.name or game.name or f"IGDB {record.id}"
    game.summary = _text_or_none(record.summary)
    game.storyline = _text_or_none(record.storyline)
    game.release_date = record.first_release_date
    game.external_id = record.id
    game.external_slug = _text_or_none(record.slug)
    game.external_url = _text_or_none(record.url)
    game.external_updated_at = record.updated_at
    game.last_synced_at = now
    if record.cover is not None:
        game.cover_image_id = record.cover.image_id or None
        game.cover_image_url = record.cover.sized_url(COVER_SIZE) or None
    game.is_data_complete = True
    game.updated_at = now
    return game


def apply_rating_snapshot(game: Game, record: CatalogRecord, now: datetime) -> GameRating:
    """Overwrite the rating snapshot of ``game`` from ``record``."""

    rating = game.rating
    if rating is None:
        rating = GameRating()
        game.rating = rating
    rating.user_rating = record.rating
    rating.user_rating_count = record.rating_count
    rating.critic_rating = record.aggregated_rating
    rating.critic_rating_count = record.aggregated_rating_count
    rating.last_synced_at = now
    return rating


def _seconds(data: TimeData | None) -> tuple[int | None, int | None]:
    if data is None:
        return None, None
    return data.avg_seconds, data.polled_count


def build_beat_time(result: PlaytimeRecord, now: datetime) -> GameBeatTime | None:
    beat = result.beat_time
    if beat is None:
        return None
    main_seconds, main_count = _seconds(beat.main)
    extra_seconds, extra_count = _seconds(beat.extra)
    complete_seconds, complete_count = _seconds(beat.completionist)
    all_seconds, all_count = _seconds(beat.all_styles)
    return GameBeatTime(
        main_avg_seconds=main_seconds,
        main_polled_count=main_count,
        extra_avg_seconds=extra_seconds,
        extra_polled_count=extra_count,
        completionist_avg_seconds=complete_seconds,
        completionist_polled_count=complete_count,
        all_avg_seconds=all_seconds,
        all_polled_count=all_count,
        hltb_game_name=result.game_name or None,
        hltb_game_id=result.game_id,
        last_updated=now,
    )


class GameImportService:
    """Import games by IGDB id.

    Imports of one id are collapsed through an in-flight registry: later
    callers wait for the first call and share its result. The catalog fetch
    and the wait for the playtime lookup run unlocked; reconciling and
    committing run under ``write_lock`` so resolve-then-create never races
    between imports.
    """

    def __init__(
        self,
        catalog: IGDBClient,
        playtime: HowLongToBeatClient | None,
        repository_factory: Callable[[], GameRepository],
        *,
        write_lock: ContextManager[Any] | None = None,
        executor: ThreadPoolExecutor | None = None,
        playtime_timeout: float = 20.0,
        poll_interval: float = 0.1,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._catalog = catalog
        self._playtime = playtime
        self._repository_factory = repository_factory
        self._write_lock = write_lock if write_lock is not None else db_lock
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=4, thread_name_prefix="hltb-lookup"
        )
        self._playtime_timeout = playtime_timeout
        self._poll_interval = poll_interval
        self._clock = clock or utcnow
        self._sleep = sleep or time.sleep
        self._inflight: dict[int, Future] = {}
        self._inflight_lock = threading.Lock()
        self._steps = (
            Step("fetch", self._fetch, ImportState.FETCHING, StepPolicy.FATAL),
            Step("playtime_lookup", self._await_playtime, ImportState.FETCHING),
            Step(
                "base",
                self._map_base,
                ImportState.FETCHING,
                StepPolicy.FATAL,
                exclusive=True,
            ),
            Step("companies", self._link_companies, ImportState.RECONCILING),
            Step("platforms", self._link_platforms, ImportState.RECONCILING),
            Step("genres", self._link_genres, ImportState.RECONCILING),
            Step("player_perspectives", self._link_perspectives, ImportState.RECONCILING),
            Step("game_modes", self._link_game_modes, ImportState.RECONCILING),
            Step("themes", self._link_themes, ImportState.RECONCILING),
            Step("keywords", self._link_keywords, ImportState.RECONCILING),
            Step("websites", self._link_websites, ImportState.RECONCILING),
            Step("media", self._add_media, ImportState.RECONCILING),
            Step("playtime", self._attach_playtime, ImportState.RECONCILING),
            Step("rating", self._attach_rating, ImportState.RECONCILING),
            Step(
                "commit",
                self._commit,
                ImportState.PERSISTING,
                StepPolicy.FATAL,
                exclusive=True,
            ),
        )

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "GameImportService":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # Public operations -----------------------------------------------------

    def import_by_external_id(
        self,
        external_id: int | str,
        *,
        cancel_event: threading.Event | None = None,
    ) -> Game:
        """Import the IGDB game ``external_id`` and return the stored game.

        A game that is already stored is returned unchanged; use
        :meth:`sync_game` to refresh it.

        Raises :class:`NotFoundError`, :class:`CatalogError`,
        :class:`AuthError`, :class:`PersistenceError` or
        :class:`ImportCancelledError`.
        """

        numeric = _require_external_id(external_id)
        while True:
            raise_if_cancelled(cancel_event, f"IGDB {numeric}")
            with self._inflight_lock:
                pending = self._inflight.get(numeric)
                if pending is None:
                    future: Future = Future()
                    self._inflight[numeric] = future
            if pending is None:
                break
            logger.info("Import of IGDB game %s already running; waiting for it", numeric)
            try:
                return self._wait_for(pending, numeric, cancel_event)
            except ImportCancelledError:
                if cancel_event is not None and cancel_event.is_set():
                    raise
                # The first caller was cancelled; run the import ourselves.
                continue

        try:
            game = self._run_import(numeric, cancel_event)
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(game)
            return game
        finally:
            with self._inflight_lock:
                self._inflight.pop(numeric, None)

    def import_by_title(
        self, title: str, *, cancel_event: threading.Event | None = None
    ) -> Game:
        """Import the best catalog match for ``title``."""

        text = (title or "").strip()
        if not text:
            raise ValueError("a title is required")
        results = self._catalog.search_by_title(text, limit=1)
        if not results:
            raise NotFoundError(f"no IGDB game matches {text!r}")
        return self.import_by_external_id(results[0].id, cancel_event=cancel_event)

    def import_popular(
        self, limit: int = 50, *, cancel_event: threading.Event | None = None
    ) -> ImportSummary:
        """Import the catalog's popular games that are not stored yet."""

        summary = ImportSummary()
        for record in self._catalog.get_popular(limit):
            raise_if_cancelled(cancel_event, "popular games")
            try:
                if self._game_exists(record.id):
                    logger.info("Skipping IGDB game %s (%s); already imported", record.id, record.name)
                    summary.skipped.append(record.id)
                    continue
                self.import_by_external_id(record.id, cancel_event=cancel_event)
            except (NotFoundError, CatalogError, AuthError, PersistenceError) as exc:
                logger.error("Failed to import IGDB game %s (%s): %s", record.id, record.name, exc)
                summary.failed.append(record.id)
                continue
            summary.imported.append(record.id)
        logger.info(
            "Popular import finished: %s imported, %s skipped, %s failed",
            len(summary.imported),
            len(summary.skipped),
            len(summary.failed),
        )
        return summary

    def sync_game(self, external_id: int | str) -> Game:
        """Refresh the descriptive fields and rating snapshot of a stored game."""

        numeric = _require_external_id(external_id)
        if not self._game_exists(numeric):
            raise NotFoundError(f"IGDB game {numeric} has not been imported")
        record = self._catalog.get_by_id(numeric)
        if record is None:
            raise NotFoundError(f"IGDB game {numeric} not found in the catalog")
        repository = self._repository_factory()
        try:
            with self._write_lock:
                try:
                    game = repository.find_game_by_external_id(numeric)
                    if game is None:
                        raise NotFoundError(f"IGDB game {numeric} has not been imported")
                    now = self._clock()
                    apply_catalog_fields(game, record, now)
                    apply_rating_snapshot(game, record, now)
                    repository.commit()
                except Exception:
                    repository.rollback()
                    raise
            logger.info("Synced IGDB game %s (%s)", numeric, game.slug)
            return game
        finally:
            repository.close()

    def sync_all_games(
        self, *, pause: float = 0.25, cancel_event: threading.Event | None = None
    ) -> ImportSummary:
        """Sync every stored game that has an IGDB id.

        Calls are spaced by ``pause`` seconds. Games missing from the catalog
        are skipped and per-game failures are logged; neither stops the run.
        """

        external_ids = self._stored_external_ids()
        logger.info("Starting sync for %s games with IGDB ids", len(external_ids))
        summary = ImportSummary()
        for index, numeric in enumerate(external_ids):
            raise_if_cancelled(cancel_event, "game sync")
            if index and pause > 0:
                self._sleep(pause)
            try:
                self.sync_game(numeric)
            except NotFoundError as exc:
                logger.warning("Skipping sync of IGDB game %s: %s", numeric, exc)
                summary.skipped.append(numeric)
            except (CatalogError, AuthError, PersistenceError) as exc:
                logger.error("Failed to sync IGDB game %s: %s", numeric, exc)
                summary.failed.append(numeric)
            else:
                summary.synced.append(numeric)
        logger.info(
            "Game sync finished: %s synced, %s skipped, %s failed",
            len(summary.synced),
            len(summary.skipped),
            len(summary.failed),
        )
        return summary

    def game_health(self, external_id: int | str) -> GameHealth:
        """Report missing data and sync staleness for one stored game."""

        numeric = _require_external_id(external_id)
        repository = self._repository_factory()
        try:
            game = repository.find_game_by_external_id(numeric)
            if game is None:
                raise NotFoundError(f"IGDB game {numeric} has not been imported")
            return check_game_health(game, self._clock())
        finally:
            repository.close()

    def data_health(self) -> DataHealthReport:
        repository = self._repository_factory()
        try:
            return summarize_health(repository.list_games(), self._clock())
        finally:
            repository.close()

    # Import internals ------------------------------------------------------

    def _wait_for(
        self, future: Future, numeric: int, cancel_event: threading.Event | None
    ) -> Game:
        while True:
            raise_if_cancelled(cancel_event, f"IGDB {numeric}")
            try:
                return future.result(timeout=self._poll_interval)
            except FutureTimeoutError:
                continue

    def _game_exists(self, numeric: int) -> bool:
        repository = self._repository_factory()
        try:
            return repository.find_game_by_external_id(numeric) is not None
        finally:
            repository.close()

    def _stored_external_ids(self) -> list[int]:
        repository = self._repository_factory()
        try:
            return repository.list_game_external_ids()
        finally:
            repository.close()

    def _run_import(self, numeric: int, cancel_event: threading.Event | None) -> Game:
        label = f"IGDB {numeric}"
        repository = self._repository_factory()
        context = ImportContext(
            external_id=numeric, repository=repository, cancel_event=cancel_event
        )
        try:
            existing = repository.find_game_by_external_id(numeric)
            if existing is not None:
                logger.info(
                    "IGDB game %s is already stored as %r; returning it without "
                    "re-importing (call sync_game to refresh it)",
                    numeric,
                    existing.slug,
                )
                return existing
            # End the read transaction; the fetch below runs unlocked.
            repository.rollback()

            pipeline = ImportPipeline(
                self._steps, lock=self._write_lock, on_abort=repository.rollback
            )
            run = pipeline.run(context, label=label, cancel_event=cancel_event)
            if run.soft_failures:
                logger.warning(
                    "Imported %s with degraded data; failed steps: %s",
                    label,
                    ", ".join(run.soft_failures),
                )
            logger.info("Imported %s as %r", label, context.game.slug)
            return context.game
        finally:
            if context.playtime is not None and not context.playtime.done():
                context.playtime.cancel()
            repository.close()

    def _fetch(self, ctx: ImportContext) -> None:
        record = self._catalog.get_by_id(ctx.external_id)
        if record is None:
            raise NotFoundError(f"IGDB game {ctx.external_id} not found in the catalog")
        ctx.record = record
        if self._playtime is not None and record.name:
            ctx.playtime = self._executor.submit(self._playtime.lookup, record.name)

    def _map_base(self, ctx: ImportContext) -> None:
        record = ctx.record
        now = self._clock()
        slug = ensure_unique_slug(generate_slug(record.name), ctx.repository.slug_exists)
        game = Game(slug=slug, created_at=now)
        ctx.game = apply_catalog_fields(game, record, now)

    def _link_companies(self, ctx: ImportContext) -> None:
        record, game = ctx.record, ctx.game
        links: dict[int, GameCompany] = {}
        for involved in record.involved_companies:
            ref = involved.company
            company = self._resolve_entry(ctx, TaxonomyKind.COMPANY, ref)
            if company is None:
                continue
            link = links.get(company.id)
            if link is None:
                link = GameCompany(company=company, is_developer=False, is_publisher=False)
                links[company.id] = link
                game.company_links.append(link)
            link.is_developer = link.is_developer or involved.developer
            link.is_publisher = link.is_publisher or involved.publisher

        developers = record.developers
        publishers = record.publishers
        game.developer = _text_or_none(developers[0].company.name) if developers else None
        game.publisher = _text_or_none(publishers[0].company.name) if publishers else None

    def _link_platforms(self, ctx: ImportContext) -> None:
        self._link_refs(ctx, TaxonomyKind.PLATFORM, ctx.record.platforms)

    def _link_genres(self, ctx: ImportContext) -> None:
        self._link_refs(ctx, TaxonomyKind.GENRE, ctx.record.genres)

    def _link_perspectives(self, ctx: ImportContext) -> None:
        self._link_refs(ctx, TaxonomyKind.PLAYER_PERSPECTIVE, ctx.record.player_perspectives)

    def _link_game_modes(self, ctx: ImportContext) -> None:
        self._link_refs(ctx, TaxonomyKind.GAME_MODE, ctx.record.game_modes)

    def _link_themes(self, ctx: ImportContext) -> None:
        self._link_refs(ctx, TaxonomyKind.THEME, ctx.record.themes)

    def _link_keywords(self, ctx: ImportContext) -> None:
        self._link_refs(ctx, TaxonomyKind.KEYWORD, ctx.record.keywords)

    def _link_refs(
        self, ctx: ImportContext, kind: TaxonomyKind, refs: Iterable[CatalogRef]
    ) -> None:
        collection = ctx.game.taxonomy(kind)
        linked = {entry.id for entry in collection}
        for ref in refs:
            entry = self._resolve_entry(ctx, kind, ref)
            if entry is None or entry.id in linked:
                continue
            linked.add(entry.id)
            collection.append(entry)

    def _resolve_entry(self, ctx: ImportContext, kind: TaxonomyKind, ref: CatalogRef) -> Any | None:
        attributes: dict[str, Any] = {}
        if kind is TaxonomyKind.PLATFORM:
            attributes["abbreviation"] = ref.abbreviation or None
        try:
            entry = resolve(ctx.repository, kind, ref.id, ref.name, **attributes)
        except Exception as exc:
            logger.warning(
                "Skipping %s %s (%r) for IGDB game %s: %s",
                kind.value,
                ref.id,
                ref.name,
                ctx.external_id,
                exc,
            )
            return None
        if entry is None and policy_for(kind) is ResolutionPolicy.MATCH_ONLY:
            logger.warning(
                "No local %s with IGDB id %s (%r); not linking it to IGDB game %s",
                kind.value,
                ref.id,
                ref.name,
                ctx.external_id,
            )
        return entry

    def _link_websites(self, ctx: ImportContext) -> None:
        seen: set[tuple[WebsiteType, str]] = set()
        for site in ctx.record.websites:
            website_type = WEBSITE_TYPES.get(site.category)
            if website_type is None:
                logger.debug(
                    "Dropping website %s with unmapped category %s", site.url, site.category
                )
                continue
            key = (website_type, site.url)
            if key in seen:
                continue
            seen.add(key)
            ctx.game.websites.append(
                GameWebsite(website_type=website_type, url=site.url, external_id=site.id)
            )

    def _add_media(self, ctx: ImportContext) -> None:
        record, game = ctx.record, ctx.game
        cover = record.cover
        if cover is not None:
            game.media.append(
                GameMedia(
                    media_type=MediaType.COVER,
                    url=cover.sized_url(COVER_SIZE),
                    thumbnail_url=cover.thumb_url,
                    title="Cover Image",
                    external_id=cover.id,
                    width=cover.width,
                    height=cover.height,
                    is_primary=True,
                )
            )
        for media_type, images, size, title in (
            (MediaType.SCREENSHOT, record.screenshots, SCREENSHOT_SIZE, "Screenshot"),
            (MediaType.ARTWORK, record.artworks, ARTWORK_SIZE, "Artwork"),
        ):
            for image in images:
                game.media.append(
                    GameMedia(
                        media_type=media_type,
                        url=image.sized_url(size),
                        thumbnail_url=image.thumb_url,
                        title=title,
                        external_id=image.id,
                        width=image.width,
                        height=image.height,
                        is_primary=False,
                    )
                )
        for video in record.videos:
            game.media.append(
                GameMedia(
                    media_type=MediaType.VIDEO,
                    url=video.url,
                    thumbnail_url=video.thumbnail_url,
                    title=video.name or "Game Video",
                    description=video.name or None,
                    external_id=video.id,
                    is_primary=False,
                )
            )

    def _await_playtime(self, ctx: ImportContext) -> None:
        future = ctx.playtime
        if future is None:
            return
        deadline = time.monotonic() + self._playtime_timeout
        while True:
            raise_if_cancelled(ctx.cancel_event, f"IGDB {ctx.external_id}")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                future.cancel()
                logger.warning("Timed out waiting for HLTB data for %r", ctx.record.name)
                return
            try:
                ctx.playtime_result = future.result(
                    timeout=min(self._poll_interval, remaining)
                )
                return
            except FutureTimeoutError:
                continue

    def _attach_playtime(self, ctx: ImportContext) -> None:
        if ctx.playtime is None:
            return
        result = ctx.playtime_result
        if result is None:
            logger.info("No HLTB data attached to %r", ctx.record.name)
            return
        beat_time = build_beat_time(result, self._clock())
        if beat_time is None:
            logger.info("HLTB match %r has no beat times", result.game_name)
            return
        ctx.game.beat_time = beat_time

    def _attach_rating(self, ctx: ImportContext) -> None:
        apply_rating_snapshot(ctx.game, ctx.record, self._clock())

    def _commit(self, ctx: ImportContext) -> None:
        ctx.repository.add_game(ctx.game)
        ctx.repository.commit()


__all__ = [
    "DataHealthReport",
    "GameHealth",
    "GameImportService",
    "ImportCancelledError",
    "ImportSummary",
    "NotFoundError",
    "WEBSITE_TYPES",
    "apply_catalog_fields",
    "apply_rating_snapshot",
    "build_beat_time",
]
