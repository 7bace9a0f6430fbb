"""Importer startup orchestration helpers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

import config
from db import utils as db_utils
from db.repository import SqlAlchemyGameRepository
from hltb.client import HowLongToBeatClient
from http_utils import Opener, RequestFactory
from igdb.auth import TwitchTokenProvider
from igdb.client import IGDBClient
from imports.service import GameImportService
from logging_setup import configure_logging

logger = logging.getLogger(__name__)


@dataclass
class ImporterServices:
    database: db_utils.DatabaseEngine
    token_provider: TwitchTokenProvider
    catalog: IGDBClient
    playtime: HowLongToBeatClient
    importer: GameImportService
    catalog_enabled: bool = True

    def repository(self) -> SqlAlchemyGameRepository:
        return SqlAlchemyGameRepository(self.database.new_session())

    def close(self) -> None:
        self.importer.close()
        self.database.dispose()


def initialize_importer(
    *,
    dsn: str | None = None,
    setup_logging: bool = True,
    create_schema: bool = True,
    request_factory: RequestFactory | None = None,
    opener: Opener | None = None,
    sleep: Callable[[float], None] | None = None,
) -> ImporterServices:
    """Build the importer object graph from :mod:`config`.

    Credentials are checked up front; a missing client id or secret is
    logged here and surfaces as ``AuthError`` on the first catalog call.
    """

    if setup_logging:
        configure_logging()

    catalog_enabled = config.validate_igdb_credentials()

    database = db_utils.build_engine_from_dsn(
        dsn or config.DB_DSN, timeout=config.DB_CONNECT_TIMEOUT_SECONDS
    )
    if create_schema:
        database.create_schema()

    token_provider = TwitchTokenProvider(
        config.IGDB_CLIENT_ID,
        config.IGDB_CLIENT_SECRET,
        token_url=config.TWITCH_TOKEN_URL,
        validate_url=config.TWITCH_VALIDATE_URL,
        timeout=config.HTTP_TIMEOUT_SECONDS,
        request_factory=request_factory,
        opener=opener,
    )
    catalog = IGDBClient(
        token_provider,
        base_url=config.IGDB_BASE_URL,
        user_agent=config.IGDB_USER_AGENT,
        timeout=config.HTTP_TIMEOUT_SECONDS,
        max_retries=config.IGDB_MAX_RETRIES,
        retry_backoff=config.IGDB_RETRY_BACKOFF_SECONDS,
        request_factory=request_factory,
        opener=opener,
        sleep=sleep,
    )
    playtime = HowLongToBeatClient(
        base_url=config.HLTB_BASE_URL,
        timeout=config.HTTP_TIMEOUT_SECONDS,
        request_factory=request_factory,
        opener=opener,
    )
    importer = GameImportService(
        catalog,
        playtime,
        lambda: SqlAlchemyGameRepository(database.new_session()),
        write_lock=db_utils.db_lock,
    )
    if catalog_enabled:
        logger.info(
            "Importer ready (IGDB %s, HLTB %s)", config.IGDB_BASE_URL, config.HLTB_BASE_URL
        )
    else:
        logger.warning("Importer ready without IGDB credentials; catalog calls will fail")
    return ImporterServices(
        database=database,
        token_provider=token_provider,
        catalog=catalog,
        playtime=playtime,
        importer=importer,
        catalog_enabled=catalog_enabled,
    )


__all__ = ["ImporterServices", "initialize_importer"]
