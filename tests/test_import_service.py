"""Integration tests for importing IGDB games into the local store."""
from __future__ import annotations

import re
import threading
import time
from datetime import datetime, timezone
from typing import Any

import pytest

from db.models import (
    Company,
    Game,
    Genre,
    Keyword,
    MediaType,
    Platform,
    TaxonomyKind,
    WebsiteType,
)
from db.repository import PersistenceError, SqlAlchemyGameRepository
from hltb.client import HowLongToBeatClient
from igdb.auth import TwitchTokenProvider
from igdb.client import CatalogError, IGDBClient
from imports.service import GameImportService, ImportCancelledError, NotFoundError

from tests.http_fakes import FakeRequest, FakeResponse, RecordingOpener, token_response

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

_ID_CLAUSE = re.compile(r'where id = (\d+);')
_SEARCH_CLAUSE = re.compile(r'^search "([^"]*)";')


def hollow_knight(game_id: int = 1942, name: str = 'Hollow Knight') -> dict[str, Any]:
    return {
        'id': game_id,
        'name': name,
        'slug': 'hollow-knight',
        'url': 'https://www.igdb.com/games/hollow-knight',
        'summary': 'Forge your own path in Hollow Knight!',
        'storyline': 'Hallownest lies beneath Dirtmouth.',
        'first_release_date': 1_488_412_800,
        'updated_at': 1_700_000_000,
        'rating': 91.4,
        'rating_count': 1543,
        'aggregated_rating': 87.0,
        'aggregated_rating_count': 22,
        'genres': [{'id': 31, 'name': 'Adventure'}, {'id': 999, 'name': 'Mystery'}],
        'themes': [{'id': 1, 'name': 'Action'}],
        'game_modes': [{'id': 1, 'name': 'Single player'}],
        'player_perspectives': [{'id': 4, 'name': 'Side view'}],
        'platforms': [
            {'id': 6, 'name': 'PC (Microsoft Windows)', 'abbreviation': 'PC'},
            {'id': 130, 'name': 'Nintendo Switch', 'abbreviation': 'Switch'},
        ],
        'keywords': [{'id': 270, 'name': 'metroidvania'}],
        'involved_companies': [
            {'company': {'id': 9, 'name': 'Team Cherry'}, 'developer': True, 'publisher': False},
            {'company': {'id': 9, 'name': 'Team Cherry'}, 'developer': False, 'publisher': True},
        ],
        'websites': [
            {'id': 11, 'category': 1, 'url': 'https://hollowknight.com'},
            {'id': 12, 'category': 13, 'url': 'https://store.steampowered.com/app/367520'},
            {'id': 13, 'category': 7, 'url': 'https://gone.example.com'},
        ],
        'cover': {'id': 5, 'image_id': 'co1rgi', 'width': 264, 'height': 352},
        'screenshots': [{'id': 21, 'image_id': 'sc6k7j', 'width': 1920, 'height': 1080}],
        'artworks': [{'id': 31, 'image_id': 'ar5lt', 'width': 3840, 'height': 2160}],
        'videos': [{'id': 41, 'video_id': 'UAO2urG23S4', 'name': 'Trailer'}],
    }


def hltb_entry(name: str = 'Hollow Knight') -> dict[str, Any]:
    return {
        'gameName': name,
        'gameId': 26286,
        'type': 'game',
        'beatTime': {
            'main': {'avgSeconds': 97_200, 'polledCount': 1500},
            'extra': {'avgSeconds': 144_000, 'polledCount': 900},
            'completionist': {'avgSeconds': 237_600, 'polledCount': 400},
            'all': {'avgSeconds': 151_200, 'polledCount': 2800},
        },
    }


class FakeUpstream:
    """Route token, IGDB and HLTB requests to in-memory payloads."""

    def __init__(self):
        self.games: dict[int, dict[str, Any]] = {}
        self.popular: list[int] = []
        self.search_results: dict[str, list[int]] = {}
        self.hltb: dict[str, Any] = {}
        self.game_status: int | None = None
        self.on_game_request = None
        self.on_hltb_request = None
        self.game_requests: list[int] = []
        self.opener = RecordingOpener(self.handle)

    def handle(self, request: FakeRequest) -> FakeResponse:
        url = request.full_url
        if url.startswith('https://id.test/'):
            return token_response()
        if url.startswith('https://hltb.test/'):
            if self.on_hltb_request is not None:
                self.on_hltb_request(request)
            title = url.split('title=', 1)[1].replace('+', ' ')
            return FakeResponse(200, self.hltb.get(title, []))
        if url == 'https://igdb.test/v4/games':
            return self._games(request.body)
        return FakeResponse(404, 'unknown endpoint')

    def _games(self, body: str) -> FakeResponse:
        match = _ID_CLAUSE.search(body)
        if match:
            game_id = int(match.group(1))
            self.game_requests.append(game_id)
            if self.on_game_request is not None:
                self.on_game_request(game_id)
            if self.game_status is not None:
                return FakeResponse(self.game_status, 'upstream rejected the query')
            payload = self.games.get(game_id)
            return FakeResponse(200, [payload] if payload else [])
        match = _SEARCH_CLAUSE.search(body)
        if match:
            ids = self.search_results.get(match.group(1), [])
            return FakeResponse(200, [self.games[game_id] for game_id in ids])
        return FakeResponse(200, [self.games[game_id] for game_id in self.popular])


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def make_service(upstream, repository_factory):
    services: list[GameImportService] = []

    def factory(**kwargs) -> GameImportService:
        provider = TwitchTokenProvider(
            'client',
            'secret',
            token_url='https://id.test/token',
            request_factory=FakeRequest,
            opener=upstream.opener,
        )
        catalog = IGDBClient(
            provider,
            base_url='https://igdb.test/v4',
            request_factory=FakeRequest,
            opener=upstream.opener,
            sleep=lambda _delay: None,
        )
        playtime = HowLongToBeatClient(
            base_url='https://hltb.test/v1',
            request_factory=FakeRequest,
            opener=upstream.opener,
        )
        service = GameImportService(
            catalog,
            playtime,
            kwargs.pop('repository_factory', repository_factory),
            write_lock=threading.Lock(),
            clock=lambda: NOW,
            poll_interval=0.01,
            **kwargs,
        )
        services.append(service)
        return service

    yield factory
    for service in services:
        service.close()


@pytest.fixture
def seeded_genre(repository):
    repository.create(TaxonomyKind.GENRE, Genre(name='Adventure', external_id=31))
    repository.commit()


def _stored(repository_factory, external_id: int) -> Game | None:
    repo = repository_factory()
    try:
        return repo.find_game_by_external_id(external_id)
    finally:
        repo.close()


def _count(repository_factory, model) -> int:
    repo = repository_factory()
    try:
        return repo.session.query(model).count()
    finally:
        repo.close()


def test_import_builds_full_aggregate(upstream, make_service, repository_factory, seeded_genre):
    upstream.games[1942] = hollow_knight()
    upstream.hltb['Hollow Knight'] = [hltb_entry()]

    game = make_service().import_by_external_id(1942)

    assert game.slug == 'hollow-knight'
    stored = _stored(repository_factory, 1942)
    assert stored.id == game.id
    assert stored.name == 'Hollow Knight'
    assert stored.summary == 'Forge your own path in Hollow Knight!'
    assert stored.external_slug == 'hollow-knight'
    assert stored.release_date.year == 2017
    assert stored.is_data_complete is True
    assert stored.developer == 'Team Cherry'
    assert stored.publisher == 'Team Cherry'
    assert stored.cover_image_url.endswith('/t_cover_big/co1rgi.jpg')

    assert [genre.external_id for genre in stored.genres] == [31]
    assert sorted(platform.abbreviation for platform in stored.platforms) == ['PC', 'Switch']
    assert [theme.name for theme in stored.themes] == ['Action']
    assert [mode.name for mode in stored.game_modes] == ['Single player']
    assert [view.name for view in stored.player_perspectives] == ['Side view']
    assert [keyword.name for keyword in stored.keywords] == ['metroidvania']

    assert len(stored.company_links) == 1
    link = stored.company_links[0]
    assert link.company.name == 'Team Cherry'
    assert link.is_developer and link.is_publisher

    assert {(site.website_type, site.url) for site in stored.websites} == {
        (WebsiteType.OFFICIAL, 'https://hollowknight.com'),
        (WebsiteType.STEAM, 'https://store.steampowered.com/app/367520'),
    }

    media_types = [item.media_type for item in stored.media]
    assert media_types == [
        MediaType.COVER,
        MediaType.SCREENSHOT,
        MediaType.ARTWORK,
        MediaType.VIDEO,
    ]
    cover = stored.media[0]
    assert cover.is_primary is True
    assert cover.thumbnail_url.endswith('/t_thumb/co1rgi.jpg')
    video = stored.media[3]
    assert video.url == 'https://www.youtube.com/watch?v=UAO2urG23S4'

    assert stored.rating.user_rating == pytest.approx(91.4)
    assert stored.rating.critic_rating_count == 22
    assert stored.rating.user_rating_display == 9.1

    beat = stored.beat_time
    assert beat.hltb_game_name == 'Hollow Knight'
    assert beat.main_avg_seconds == 97_200
    assert beat.main_hours == 27.0
    assert beat.extra_hours == 40.0
    assert beat.all_hours == 42.0
    assert beat.completionist_polled_count == 400


def test_scenario_slug_collision_gets_numeric_suffix(upstream, make_service, seeded_genre):
    upstream.games[1942] = hollow_knight(1942)
    upstream.games[1943] = hollow_knight(1943)
    service = make_service()

    first = service.import_by_external_id(1942)
    second = service.import_by_external_id(1943)

    assert first.slug == 'hollow-knight'
    assert second.slug == 'hollow-knight-2'


def test_scenario_empty_playtime_result_imports_without_beat_time(
    upstream, make_service, repository_factory
):
    upstream.games[1942] = hollow_knight()
    upstream.hltb['Hollow Knight'] = []

    make_service().import_by_external_id(1942)

    stored = _stored(repository_factory, 1942)
    assert stored is not None
    assert stored.beat_time is None


def test_scenario_unknown_genre_is_skipped_with_warning(
    upstream, make_service, repository_factory, seeded_genre, caplog
):
    upstream.games[1942] = hollow_knight()

    make_service().import_by_external_id(1942)

    stored = _stored(repository_factory, 1942)
    assert [genre.external_id for genre in stored.genres] == [31]
    assert _count(repository_factory, Genre) == 1
    assert 'No local genres with IGDB id 999' in caplog.text


def test_scenario_catalog_error_commits_nothing(upstream, make_service, repository_factory):
    upstream.games[1942] = hollow_knight()
    upstream.game_status = 400

    with pytest.raises(CatalogError) as excinfo:
        make_service().import_by_external_id(1942)

    assert excinfo.value.status_code == 400
    assert _stored(repository_factory, 1942) is None
    assert _count(repository_factory, Platform) == 0


def test_transient_catalog_failure_is_retried(upstream, make_service, repository_factory):
    upstream.games[1942] = hollow_knight()
    upstream.game_status = 503

    def recover(_game_id):
        if len(upstream.game_requests) >= 2:
            upstream.game_status = None

    upstream.on_game_request = recover

    make_service().import_by_external_id(1942)

    assert upstream.game_requests == [1942, 1942]
    assert _stored(repository_factory, 1942) is not None


def test_missing_catalog_game_raises_not_found(make_service, repository_factory):
    with pytest.raises(NotFoundError):
        make_service().import_by_external_id(5)
    assert _stored(repository_factory, 5) is None


def test_invalid_external_id_is_rejected(make_service):
    with pytest.raises(ValueError):
        make_service().import_by_external_id('abc')
    with pytest.raises(ValueError):
        make_service().import_by_external_id(0)


def test_existing_game_is_returned_without_refetch(upstream, make_service):
    upstream.games[1942] = hollow_knight()
    service = make_service()
    first = service.import_by_external_id(1942)
    upstream.games[1942] = hollow_knight(name='Hollow Knight (renamed)')

    again = service.import_by_external_id('1942')

    assert again.id == first.id
    assert again.name == 'Hollow Knight'
    assert upstream.game_requests == [1942]


def test_concurrent_imports_of_one_id_share_a_single_run(
    upstream, make_service, repository_factory
):
    upstream.games[1942] = hollow_knight()
    upstream.on_game_request = lambda _game_id: time.sleep(0.2)
    service = make_service()
    barrier = threading.Barrier(4)
    results: list[Any] = []
    errors: list[Exception] = []
    results_lock = threading.Lock()

    def worker():
        barrier.wait()
        try:
            game = service.import_by_external_id(1942)
        except Exception as exc:
            with results_lock:
                errors.append(exc)
            return
        with results_lock:
            results.append(game.id)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert errors == []
    assert len(results) == 4
    assert len(set(results)) == 1
    assert upstream.game_requests == [1942]
    assert _count(repository_factory, Game) == 1


def test_cancel_during_fetch_persists_nothing(upstream, make_service, repository_factory):
    upstream.games[1942] = hollow_knight()
    cancel = threading.Event()
    upstream.on_game_request = lambda _game_id: cancel.set()

    with pytest.raises(ImportCancelledError):
        make_service().import_by_external_id(1942, cancel_event=cancel)

    assert _count(repository_factory, Game) == 0


def test_cancel_while_waiting_for_playtime_persists_nothing(
    upstream, make_service, repository_factory
):
    upstream.games[1942] = hollow_knight()
    upstream.hltb['Hollow Knight'] = [hltb_entry()]
    cancel = threading.Event()
    upstream.on_hltb_request = lambda _request: cancel.set()

    with pytest.raises(ImportCancelledError):
        make_service().import_by_external_id(1942, cancel_event=cancel)

    assert _count(repository_factory, Game) == 0
    assert _count(repository_factory, Platform) == 0


def test_cancel_before_start_skips_catalog(upstream, make_service):
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(ImportCancelledError):
        make_service().import_by_external_id(1942, cancel_event=cancel)

    assert upstream.game_requests == []


class FailingCompanyRepository(SqlAlchemyGameRepository):
    def create(self, kind, entity):
        if kind is TaxonomyKind.COMPANY:
            raise PersistenceError('companies table is locked')
        return super().create(kind, entity)


def test_reconcile_failures_degrade_without_failing_import(
    upstream, make_service, database, caplog
):
    upstream.games[1942] = hollow_knight()
    service = make_service(
        repository_factory=lambda: FailingCompanyRepository(database.new_session())
    )

    game = service.import_by_external_id(1942)

    assert game.company_links == []
    assert game.developer == 'Team Cherry'
    assert len(game.platforms) == 2
    assert 'Skipping companies 9' in caplog.text


def test_rejected_taxonomy_insert_skips_only_that_entry(
    upstream, make_service, repository_factory, database, caplog
):
    with database.engine.begin() as connection:
        connection.exec_driver_sql(
            "CREATE TRIGGER keywords_read_only BEFORE INSERT ON keywords "
            "BEGIN SELECT RAISE(ABORT, 'keywords are read-only'); END"
        )
    upstream.games[1942] = hollow_knight()

    game = make_service().import_by_external_id(1942)

    stored = _stored(repository_factory, 1942)
    assert stored.id == game.id
    assert stored.keywords == []
    assert len(stored.platforms) == 2
    assert [theme.name for theme in stored.themes] == ['Action']
    assert stored.company_links[0].company.name == 'Team Cherry'
    assert _count(repository_factory, Keyword) == 0
    assert 'Skipping keywords 270' in caplog.text


class FlakyCommitRepository(SqlAlchemyGameRepository):
    def __init__(self, session, should_fail):
        super().__init__(session)
        self._should_fail = should_fail

    def commit(self):
        if self._should_fail():
            raise PersistenceError('failed to commit: disk I/O error')
        super().commit()


def test_commit_failure_rolls_back_and_allows_retry(
    upstream, make_service, repository_factory, database
):
    upstream.games[1942] = hollow_knight()
    failing = [True]
    service = make_service(
        repository_factory=lambda: FlakyCommitRepository(
            database.new_session(), lambda: failing[0]
        )
    )

    with pytest.raises(PersistenceError, match='disk I/O error'):
        service.import_by_external_id(1942)

    assert _count(repository_factory, Game) == 0
    assert _count(repository_factory, Platform) == 0
    assert _count(repository_factory, Company) == 0

    failing[0] = False
    game = service.import_by_external_id(1942)

    assert game.slug == 'hollow-knight'
    assert upstream.game_requests == [1942, 1942]
    assert _count(repository_factory, Game) == 1


def test_slow_playtime_lookup_does_not_block_other_imports(
    upstream, make_service, repository_factory
):
    upstream.games[1942] = hollow_knight()
    upstream.games[7] = hollow_knight(7, 'Celeste')
    upstream.hltb['Hollow Knight'] = [hltb_entry()]
    stalled = threading.Event()
    release = threading.Event()

    def stall(request):
        if 'Hollow' in request.full_url:
            stalled.set()
            release.wait(timeout=5)

    upstream.on_hltb_request = stall
    service = make_service()
    slow = threading.Thread(target=service.import_by_external_id, args=(1942,))
    slow.start()
    try:
        assert stalled.wait(timeout=5)

        celeste = service.import_by_external_id(7)

        assert celeste.slug == 'celeste'
        assert slow.is_alive()
        assert _stored(repository_factory, 1942) is None
    finally:
        release.set()
        slow.join(timeout=10)

    stored = _stored(repository_factory, 1942)
    assert stored.beat_time.hltb_game_name == 'Hollow Knight'
    assert len(stored.platforms) == 2
    assert _count(repository_factory, Platform) == 2


def test_import_by_title_imports_best_match(upstream, make_service, repository_factory):
    upstream.games[1942] = hollow_knight()
    upstream.search_results['Hollow Knight'] = [1942]
    service = make_service()

    game = service.import_by_title('  Hollow Knight ')

    assert game.external_id == 1942
    with pytest.raises(NotFoundError):
        service.import_by_title('Nothing Matches')
    with pytest.raises(ValueError):
        service.import_by_title('  ')


def test_import_popular_reports_each_outcome(upstream, make_service):
    upstream.games[1942] = hollow_knight()
    upstream.games[1943] = hollow_knight(1943, 'Hollow Knight: Silksong')
    upstream.games[77] = hollow_knight(77, 'Vanishing Game')
    upstream.popular = [1942, 1943, 77]
    service = make_service()
    service.import_by_external_id(1943)

    def vanish(game_id):
        if game_id == 77:
            upstream.games.pop(77, None)

    upstream.on_game_request = vanish

    summary = service.import_popular(limit=3)

    assert summary.imported == [1942]
    assert summary.skipped == [1943]
    assert summary.failed == [77]


def test_sync_game_refreshes_fields_and_rating(upstream, make_service, repository_factory):
    upstream.games[1942] = hollow_knight()
    service = make_service()
    original = service.import_by_external_id(1942)
    refreshed = hollow_knight()
    refreshed['summary'] = 'Now with Godmaster.'
    refreshed['rating'] = 93.0
    refreshed['rating_count'] = 2000
    upstream.games[1942] = refreshed

    synced = service.sync_game(1942)

    assert synced.slug == original.slug
    stored = _stored(repository_factory, 1942)
    assert stored.summary == 'Now with Godmaster.'
    assert stored.rating.user_rating == pytest.approx(93.0)
    assert stored.rating.user_rating_count == 2000
    assert _count(repository_factory, Game) == 1


def test_sync_game_requires_stored_game(make_service):
    with pytest.raises(NotFoundError):
        make_service().sync_game(1942)


def test_sync_all_games_continues_past_failures(upstream, make_service, repository):
    upstream.games[1942] = hollow_knight()
    upstream.games[7] = hollow_knight(7, 'Celeste')
    pauses: list[float] = []
    service = make_service(sleep=pauses.append)
    service.import_by_external_id(1942)
    service.import_by_external_id(7)
    repository.add_game(Game(name='Delisted', slug='delisted', external_id=404))
    repository.add_game(Game(name='Hand Entered', slug='hand-entered'))
    repository.commit()
    upstream.games[1942]['summary'] = 'Now with Godmaster.'

    def reject_celeste(game_id):
        upstream.game_status = 400 if game_id == 7 else None

    upstream.on_game_request = reject_celeste

    summary = service.sync_all_games()

    assert summary.synced == [1942]
    assert summary.failed == [7]
    assert summary.skipped == [404]
    assert summary.imported == []
    assert pauses == [0.25, 0.25]
    assert upstream.game_requests[-3:] == [1942, 7, 404]
    assert service.game_health(1942).healthy


def test_data_health_reports_missing_fields_and_stale_games(
    upstream, make_service, repository, caplog
):
    upstream.games[1942] = hollow_knight()
    service = make_service()
    service.import_by_external_id(1942)
    repository.add_game(
        Game(
            name='Old Import',
            slug='old-import',
            external_id=55,
            last_synced_at=datetime(2024, 1, 2, tzinfo=timezone.utc),
        )
    )
    repository.add_game(Game(name='Hand Entered', slug='hand-entered', summary='Typed in.'))
    repository.commit()

    report = service.data_health()

    assert report.total_games == 3
    assert report.with_external_data == 2
    assert report.needing_sync == 1
    health = {entry.name: entry for entry in report.games}
    assert health['Hollow Knight'].healthy
    assert health['Old Import'].missing == ['description', 'release date', 'cover image']
    assert health['Old Import'].needs_sync
    assert health['Hand Entered'].missing == ['IGDB data', 'release date', 'cover image']
    assert not health['Hand Entered'].needs_sync
    assert [entry.name for entry in report.issues] == ['Old Import', 'Hand Entered']
    assert report.recommendations == [
        '1 games need an IGDB sync',
        '1 games have no IGDB data',
    ]
    assert "'Old Import') is missing description" in caplog.text

    assert service.game_health(55).needs_sync
    with pytest.raises(NotFoundError):
        service.game_health(999)


def test_playtime_timeout_imports_without_beat_time(
    upstream, make_service, repository_factory, caplog
):
    upstream.games[1942] = hollow_knight()
    upstream.hltb['Hollow Knight'] = [hltb_entry()]
    release = threading.Event()
    upstream.on_hltb_request = lambda _request: release.wait(timeout=5)

    try:
        make_service(playtime_timeout=0.05).import_by_external_id(1942)
    finally:
        release.set()

    assert _stored(repository_factory, 1942).beat_time is None
    assert "Timed out waiting for HLTB data for 'Hollow Knight'" in caplog.text
