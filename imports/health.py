"""Data health checks for stored games."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable

from db.models import Game

logger = logging.getLogger(__name__)

STALE_AFTER = timedelta(days=30)


@dataclass
class GameHealth:
    game_id: int | None
    name: str | None
    external_id: int | None
    last_synced_at: datetime | None
    missing: list[str] = field(default_factory=list)
    needs_sync: bool = False

    @property
    def healthy(self) -> bool:
        return not self.missing and not self.needs_sync


@dataclass
class DataHealthReport:
    total_games: int = 0
    with_external_data: int = 0
    needing_sync: int = 0
    games: list[GameHealth] = field(default_factory=list)

    @property
    def issues(self) -> list[GameHealth]:
        return [health for health in self.games if health.missing]

    @property
    def recommendations(self) -> list[str]:
        notes: list[str] = []
        if self.needing_sync:
            notes.append(f"{self.needing_sync} games need an IGDB sync")
        unlinked = self.total_games - self.with_external_data
        if unlinked:
            notes.append(f"{unlinked} games have no IGDB data")
        return notes


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands timestamps back without a timezone.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def check_game_health(
    game: Game, now: datetime, *, stale_after: timedelta = STALE_AFTER
) -> GameHealth:
    """Return the fields ``game`` lacks and whether its IGDB data is stale."""

    health = GameHealth(
        game_id=game.id,
        name=game.name,
        external_id=game.external_id,
        last_synced_at=game.last_synced_at,
    )
    checks = (
        ("name", bool((game.name or "").strip())),
        ("IGDB data", game.external_id is not None),
        ("description", bool((game.summary or "").strip())),
        ("release date", game.release_date is not None),
        ("cover image", bool((game.cover_image_url or "").strip())),
    )
    health.missing = [label for label, present in checks if not present]
    if game.external_id is not None:
        synced = _as_utc(game.last_synced_at)
        health.needs_sync = synced is None or synced < _as_utc(now) - stale_after
    return health


def summarize_health(
    games: Iterable[Game], now: datetime, *, stale_after: timedelta = STALE_AFTER
) -> DataHealthReport:
    report = DataHealthReport()
    for game in games:
        health = check_game_health(game, now, stale_after=stale_after)
        report.total_games += 1
        if game.external_id is not None:
            report.with_external_data += 1
        if health.needs_sync:
            report.needing_sync += 1
        report.games.append(health)

    issues = report.issues
    if issues:
        logger.warning("Found %s games with missing data", len(issues))
        for health in issues:
            logger.warning(
                "Game %s (%r) is missing %s",
                health.game_id,
                health.name,
                ", ".join(health.missing),
            )
    else:
        logger.info("No missing data found in %s games", report.total_games)
    return report


__all__ = [
    "DataHealthReport",
    "GameHealth",
    "STALE_AFTER",
    "check_game_health",
    "summarize_health",
]
