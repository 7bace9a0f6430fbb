"""Typed views over IGDB JSON payloads."""

from __future__ import annotations

import numbers
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping

from helpers import _coerce_int, _normalize_lookup_name, _parse_timestamp

IMAGE_BASE_URL = "https://images.igdb.com/igdb/image/upload"
VIDEO_BASE_URL = "https://www.youtube.com/watch?v="
VIDEO_THUMBNAIL_URL = "https://img.youtube.com/vi/{video_id}/maxresdefault.jpg"


def image_url(image_id: Any, size: str = "t_cover_big") -> str:
    """Return the IGDB image URL for ``image_id`` at ``size``."""

    text = _normalize_lookup_name(image_id)
    if not text:
        return ""
    size_key = str(size or "").strip() or "t_cover_big"
    return f"{IMAGE_BASE_URL}/{size_key}/{text}.jpg"


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _rating(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, numbers.Real):
        return float(value)
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return None


def _mappings(value: Any) -> Iterable[Mapping[str, Any]]:
    if not isinstance(value, list):
        return ()
    return (item for item in value if isinstance(item, Mapping))


@dataclass(frozen=True)
class CatalogRef:
    """Identifier and display name of a taxonomy entry on a catalog record."""

    id: int
    name: str
    abbreviation: str = ""

    @classmethod
    def from_payload(cls, payload: Any) -> "CatalogRef | None":
        if isinstance(payload, Mapping):
            ref_id = _coerce_int(payload.get("id"))
            if ref_id is None:
                return None
            return cls(
                id=ref_id,
                name=_text(payload.get("name")),
                abbreviation=_text(payload.get("abbreviation")),
            )
        # Unexpanded references arrive as bare ids.
        ref_id = _coerce_int(payload)
        if ref_id is None:
            return None
        return cls(id=ref_id, name="")


@dataclass(frozen=True)
class InvolvedCompany:
    company: CatalogRef
    developer: bool = False
    publisher: bool = False

    @classmethod
    def from_payload(cls, payload: Any) -> "InvolvedCompany | None":
        if not isinstance(payload, Mapping):
            return None
        company = CatalogRef.from_payload(payload.get("company"))
        if company is None:
            return None
        return cls(
            company=company,
            developer=bool(payload.get("developer")),
            publisher=bool(payload.get("publisher")),
        )


@dataclass(frozen=True)
class CatalogImage:
    """Cover, screenshot or artwork reference."""

    id: int | None
    image_id: str
    url: str = ""
    width: int | None = None
    height: int | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> "CatalogImage | None":
        if not isinstance(payload, Mapping):
            return None
        image_id = _normalize_lookup_name(payload.get("image_id"))
        url = _text(payload.get("url"))
        if not image_id and not url:
            return None
        return cls(
            id=_coerce_int(payload.get("id")),
            image_id=image_id,
            url=url,
            width=_coerce_int(payload.get("width")),
            height=_coerce_int(payload.get("height")),
        )

    def sized_url(self, size: str) -> str:
        if self.image_id:
            return image_url(self.image_id, size)
        return self.url

    @property
    def thumb_url(self) -> str:
        return self.sized_url("t_thumb")


@dataclass(frozen=True)
class CatalogVideo:
    id: int | None
    video_id: str
    name: str = ""

    @classmethod
    def from_payload(cls, payload: Any) -> "CatalogVideo | None":
        if not isinstance(payload, Mapping):
            return None
        video_id = _normalize_lookup_name(payload.get("video_id"))
        if not video_id:
            return None
        return cls(
            id=_coerce_int(payload.get("id")),
            video_id=video_id,
            name=_text(payload.get("name")),
        )

    @property
    def url(self) -> str:
        return f"{VIDEO_BASE_URL}{self.video_id}"

    @property
    def thumbnail_url(self) -> str:
        return VIDEO_THUMBNAIL_URL.format(video_id=self.video_id)


@dataclass(frozen=True)
class CatalogWebsite:
    id: int | None
    category: int | None
    url: str

    @classmethod
    def from_payload(cls, payload: Any) -> "CatalogWebsite | None":
        if not isinstance(payload, Mapping):
            return None
        url = _text(payload.get("url"))
        if not url:
            return None
        category = payload.get("category")
        if category is None:
            category = payload.get("type")
        return cls(
            id=_coerce_int(payload.get("id")),
            category=_coerce_int(category),
            url=url,
        )


@dataclass(frozen=True)
class TimeToBeatStub:
    """Advisory completion times (in seconds) from ``game_time_to_beats``."""

    id: int | None
    game_id: int | None
    hastily: int | None = None
    normally: int | None = None
    completely: int | None = None
    count: int | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> "TimeToBeatStub | None":
        if not isinstance(payload, Mapping):
            return None
        game = payload.get("game_id")
        if game is None:
            game = payload.get("game")
        return cls(
            id=_coerce_int(payload.get("id")),
            game_id=_coerce_int(game),
            hastily=_coerce_int(payload.get("hastily")),
            normally=_coerce_int(payload.get("normally")),
            completely=_coerce_int(payload.get("completely")),
            count=_coerce_int(payload.get("count")),
        )


@dataclass
class CatalogRecord:
    """A game as returned by the IGDB ``games`` endpoint."""

    id: int
    name: str
    slug: str = ""
    url: str = ""
    summary: str = ""
    storyline: str = ""
    category: int | None = None
    first_release_date: datetime | None = None
    updated_at: datetime | None = None
    rating: float | None = None
    rating_count: int | None = None
    aggregated_rating: float | None = None
    aggregated_rating_count: int | None = None
    cover: CatalogImage | None = None
    screenshots: list[CatalogImage] = field(default_factory=list)
    artworks: list[CatalogImage] = field(default_factory=list)
    videos: list[CatalogVideo] = field(default_factory=list)
    genres: list[CatalogRef] = field(default_factory=list)
    themes: list[CatalogRef] = field(default_factory=list)
    game_modes: list[CatalogRef] = field(default_factory=list)
    player_perspectives: list[CatalogRef] = field(default_factory=list)
    platforms: list[CatalogRef] = field(default_factory=list)
    keywords: list[CatalogRef] = field(default_factory=list)
    involved_companies: list[InvolvedCompany] = field(default_factory=list)
    websites: list[CatalogWebsite] = field(default_factory=list)

    @classmethod
    def from_payload(cls, item: Any) -> "CatalogRecord | None":
        """Return a record for ``item`` or ``None`` when it has no usable id."""

        if not isinstance(item, Mapping):
            return None
        record_id = _coerce_int(item.get("id"))
        if record_id is None:
            return None

        def refs(key: str) -> list[CatalogRef]:
            values = item.get(key)
            if not isinstance(values, list):
                return []
            return [ref for ref in map(CatalogRef.from_payload, values) if ref]

        def collect(key: str, factory) -> list[Any]:
            return [
                parsed
                for parsed in (factory(entry) for entry in _mappings(item.get(key)))
                if parsed is not None
            ]

        return cls(
            id=record_id,
            name=_text(item.get("name")),
            slug=_text(item.get("slug")),
            url=_text(item.get("url")),
            summary=_text(item.get("summary")),
            storyline=_text(item.get("storyline")),
            category=_coerce_int(item.get("category")),
            first_release_date=_parse_timestamp(item.get("first_release_date")),
            updated_at=_parse_timestamp(item.get("updated_at")),
            rating=_rating(item.get("rating")),
            rating_count=_coerce_int(item.get("rating_count")),
            aggregated_rating=_rating(item.get("aggregated_rating")),
            aggregated_rating_count=_coerce_int(item.get("aggregated_rating_count")),
            cover=CatalogImage.from_payload(item.get("cover")),
            screenshots=collect("screenshots", CatalogImage.from_payload),
            artworks=collect("artworks", CatalogImage.from_payload),
            videos=collect("videos", CatalogVideo.from_payload),
            genres=refs("genres"),
            themes=refs("themes"),
            game_modes=refs("game_modes"),
            player_perspectives=refs("player_perspectives"),
            platforms=refs("platforms"),
            keywords=refs("keywords"),
            involved_companies=collect("involved_companies", InvolvedCompany.from_payload),
            websites=collect("websites", CatalogWebsite.from_payload),
        )

    @property
    def developers(self) -> list[InvolvedCompany]:
        return [entry for entry in self.involved_companies if entry.developer]

    @property
    def publishers(self) -> list[InvolvedCompany]:
        return [entry for entry in self.involved_companies if entry.publisher]


__all__ = [
    "CatalogImage",
    "CatalogRecord",
    "CatalogRef",
    "CatalogVideo",
    "CatalogWebsite",
    "IMAGE_BASE_URL",
    "InvolvedCompany",
    "TimeToBeatStub",
    "image_url",
]
