"""Best-effort HowLongToBeat lookups through the public proxy."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Mapping
from urllib.parse import quote_plus

from helpers import _coerce_int, seconds_to_hours
from http_utils import Opener, RequestFactory, build_request, send_request

logger = logging.getLogger(__name__)


BASE_URL = "https://hltb-proxy.fly.dev/v1"


@dataclass(frozen=True)
class TimeData:
    avg_seconds: int = 0
    polled_count: int = 0

    @classmethod
    def from_payload(cls, payload: Any) -> "TimeData | None":
        if not isinstance(payload, Mapping):
            return None
        return cls(
            avg_seconds=_coerce_int(payload.get("avgSeconds")) or 0,
            polled_count=_coerce_int(payload.get("polledCount")) or 0,
        )

    @property
    def hours(self) -> float | None:
        return seconds_to_hours(self.avg_seconds)


@dataclass(frozen=True)
class BeatTime:
    main: TimeData | None = None
    extra: TimeData | None = None
    completionist: TimeData | None = None
    all_styles: TimeData | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> "BeatTime | None":
        if not isinstance(payload, Mapping):
            return None
        return cls(
            main=TimeData.from_payload(payload.get("main")),
            extra=TimeData.from_payload(payload.get("extra")),
            completionist=TimeData.from_payload(payload.get("completionist")),
            all_styles=TimeData.from_payload(payload.get("all")),
        )


@dataclass(frozen=True)
class PlaytimeRecord:
    """One result row from the proxy's ``/query`` endpoint."""

    game_name: str
    game_id: int | None = None
    game_type: str = ""
    game_image: str = ""
    release_year: int | None = None
    beat_time: BeatTime | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> "PlaytimeRecord | None":
        if not isinstance(payload, Mapping):
            return None
        name = payload.get("gameName")
        return cls(
            game_name=name.strip() if isinstance(name, str) else "",
            game_id=_coerce_int(payload.get("gameId")),
            game_type=str(payload.get("type") or ""),
            game_image=str(payload.get("gameImage") or ""),
            release_year=_coerce_int(payload.get("releaseYear")),
            beat_time=BeatTime.from_payload(payload.get("beatTime")),
        )

    def _hours(self, attribute: str) -> float | None:
        if self.beat_time is None:
            return None
        data = getattr(self.beat_time, attribute)
        return data.hours if data is not None else None

    @property
    def main_story_hours(self) -> float | None:
        return self._hours("main")

    @property
    def main_plus_extras_hours(self) -> float | None:
        return self._hours("extra")

    @property
    def completionist_hours(self) -> float | None:
        return self._hours("completionist")

    @property
    def all_styles_hours(self) -> float | None:
        return self._hours("all_styles")


class HowLongToBeatClient:
    """Look up completion times by title; every failure yields ``None``."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        timeout: float = 8.0,
        request_factory: RequestFactory | None = None,
        opener: Opener | None = None,
    ) -> None:
        self._base_url = (base_url or BASE_URL).rstrip("/")
        self._timeout = timeout if timeout and timeout > 0 else 8.0
        self._request_factory = request_factory
        self._opener = opener

    def lookup(self, title: str | None) -> PlaytimeRecord | None:
        if not isinstance(title, str) or not title.strip():
            return None
        clean_title = title.strip()
        url = f"{self._base_url}/query?title={quote_plus(clean_title)}"
        logger.info("Fetching HLTB data for game: %s", clean_title)

        try:
            request = build_request(
                url,
                method="GET",
                headers={"Accept": "application/json"},
                request_factory=self._request_factory,
            )
            response = send_request(request, opener=self._opener, timeout=self._timeout)
            if not response.ok:
                logger.warning(
                    "HLTB request failed for game %s. Status: %s",
                    clean_title,
                    response.status,
                )
                return None

            body = response.body.strip()
            if not body or body == "[]":
                logger.info("No HLTB data found for game: %s", clean_title)
                return None

            payload = json.loads(body)
            if not isinstance(payload, list):
                logger.warning(
                    "Unexpected HLTB payload for game %s: %s", clean_title, body[:200]
                )
                return None

            records = [
                record
                for record in (PlaytimeRecord.from_payload(item) for item in payload)
                if record is not None
            ]
            if not records:
                logger.info("No HLTB results found for game: %s", clean_title)
                return None

            folded = clean_title.casefold()
            for record in records:
                if record.game_name.casefold() == folded:
                    logger.info(
                        "Found exact HLTB match for %s: main=%sh, completionist=%sh",
                        clean_title,
                        record.main_story_hours,
                        record.completionist_hours,
                    )
                    return record

            first = records[0]
            logger.info(
                "Found approximate HLTB match for %s: %s, main=%sh, completionist=%sh",
                clean_title,
                first.game_name,
                first.main_story_hours,
                first.completionist_hours,
            )
            return first
        except Exception:
            logger.exception("Error fetching HLTB data for game: %s", clean_title)
            return None


__all__ = [
    "BASE_URL",
    "BeatTime",
    "HowLongToBeatClient",
    "PlaytimeRecord",
    "TimeData",
]
