"""ORM entities for imported games and their taxonomies."""

from __future__ import annotations

import enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship

from helpers import seconds_to_hours, utcnow

Base = declarative_base()


class TaxonomyKind(str, enum.Enum):
    """Controlled vocabularies linked to games many-to-many."""

    GENRE = "genres"
    PLATFORM = "platforms"
    COMPANY = "companies"
    THEME = "themes"
    KEYWORD = "keywords"
    PLAYER_PERSPECTIVE = "player_perspectives"
    GAME_MODE = "game_modes"


class WebsiteType(str, enum.Enum):
    OFFICIAL = "official"
    WIKIA = "wikia"
    WIKIPEDIA = "wikipedia"
    FACEBOOK = "facebook"
    TWITTER = "twitter"
    TWITCH = "twitch"
    INSTAGRAM = "instagram"
    YOUTUBE = "youtube"
    IPHONE = "iphone"
    IPAD = "ipad"
    ANDROID = "android"
    STEAM = "steam"
    REDDIT = "reddit"
    ITCH = "itch"
    EPIC_GAMES = "epic_games"
    GOG = "gog"
    DISCORD = "discord"


class MediaType(str, enum.Enum):
    COVER = "cover"
    SCREENSHOT = "screenshot"
    ARTWORK = "artwork"
    VIDEO = "video"


def _taxonomy_columns():
    return (
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("name", String(255), nullable=False, index=True),
        Column("external_id", Integer, nullable=True, unique=True),
        Column("external_name", String(255), nullable=True),
        Column("created_at", DateTime(timezone=True), nullable=False, default=utcnow),
    )


class _TaxonomyEntry:
    """Shared behaviour of the taxonomy tables."""

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(id={self.id!r}, name={self.name!r}, "
            f"external_id={self.external_id!r})"
        )


class Genre(_TaxonomyEntry, Base):
    __table__ = Table("genres", Base.metadata, *_taxonomy_columns())
    kind = TaxonomyKind.GENRE


class Platform(_TaxonomyEntry, Base):
    __table__ = Table(
        "platforms",
        Base.metadata,
        *_taxonomy_columns(),
        Column("abbreviation", String(64), nullable=True),
    )
    kind = TaxonomyKind.PLATFORM


class Company(_TaxonomyEntry, Base):
    __table__ = Table("companies", Base.metadata, *_taxonomy_columns())
    kind = TaxonomyKind.COMPANY


class Theme(_TaxonomyEntry, Base):
    __table__ = Table("themes", Base.metadata, *_taxonomy_columns())
    kind = TaxonomyKind.THEME


class Keyword(_TaxonomyEntry, Base):
    __table__ = Table("keywords", Base.metadata, *_taxonomy_columns())
    kind = TaxonomyKind.KEYWORD


class PlayerPerspective(_TaxonomyEntry, Base):
    __table__ = Table("player_perspectives", Base.metadata, *_taxonomy_columns())
    kind = TaxonomyKind.PLAYER_PERSPECTIVE


class GameMode(_TaxonomyEntry, Base):
    __table__ = Table("game_modes", Base.metadata, *_taxonomy_columns())
    kind = TaxonomyKind.GAME_MODE


TAXONOMY_MODELS: dict[TaxonomyKind, type] = {
    TaxonomyKind.GENRE: Genre,
    TaxonomyKind.PLATFORM: Platform,
    TaxonomyKind.COMPANY: Company,
    TaxonomyKind.THEME: Theme,
    TaxonomyKind.KEYWORD: Keyword,
    TaxonomyKind.PLAYER_PERSPECTIVE: PlayerPerspective,
    TaxonomyKind.GAME_MODE: GameMode,
}


def model_for(kind: TaxonomyKind | str) -> type:
    """Return the ORM class backing ``kind``."""

    return TAXONOMY_MODELS[TaxonomyKind(kind)]


def _link_table(kind: TaxonomyKind, column: str) -> Table:
    return Table(
        f"game_{kind.value}",
        Base.metadata,
        Column("game_id", ForeignKey("games.id", ondelete="CASCADE"), primary_key=True),
        Column(
            column,
            ForeignKey(f"{kind.value}.id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )


game_genres = _link_table(TaxonomyKind.GENRE, "genre_id")
game_platforms = _link_table(TaxonomyKind.PLATFORM, "platform_id")
game_themes = _link_table(TaxonomyKind.THEME, "theme_id")
game_keywords = _link_table(TaxonomyKind.KEYWORD, "keyword_id")
game_player_perspectives = _link_table(
    TaxonomyKind.PLAYER_PERSPECTIVE, "player_perspective_id"
)
game_game_modes = _link_table(TaxonomyKind.GAME_MODE, "game_mode_id")


class Game(Base):
    __tablename__ = "games"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(100), nullable=False, unique=True)
    summary = Column(Text, nullable=True)
    storyline = Column(Text, nullable=True)
    release_date = Column(DateTime(timezone=True), nullable=True)
    external_id = Column(Integer, nullable=True, unique=True)
    external_slug = Column(String(255), nullable=True)
    external_url = Column(String(512), nullable=True)
    external_updated_at = Column(DateTime(timezone=True), nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    cover_image_id = Column(String(64), nullable=True)
    cover_image_url = Column(String(512), nullable=True)
    is_data_complete = Column(Boolean, nullable=False, default=False)
    developer = Column(String(255), nullable=True)
    publisher = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    genres = relationship(Genre, secondary=game_genres, lazy="selectin")
    platforms = relationship(Platform, secondary=game_platforms, lazy="selectin")
    themes = relationship(Theme, secondary=game_themes, lazy="selectin")
    keywords = relationship(Keyword, secondary=game_keywords, lazy="selectin")
    player_perspectives = relationship(
        PlayerPerspective, secondary=game_player_perspectives, lazy="selectin"
    )
    game_modes = relationship(GameMode, secondary=game_game_modes, lazy="selectin")
    company_links = relationship(
        "GameCompany",
        back_populates="game",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    websites = relationship(
        "GameWebsite",
        back_populates="game",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    media = relationship(
        "GameMedia",
        back_populates="game",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="GameMedia.id",
    )
    rating = relationship(
        "GameRating",
        back_populates="game",
        cascade="all, delete-orphan",
        uselist=False,
        lazy="selectin",
    )
    beat_time = relationship(
        "GameBeatTime",
        back_populates="game",
        cascade="all, delete-orphan",
        uselist=False,
        lazy="selectin",
    )

    def taxonomy(self, kind: TaxonomyKind | str) -> list:
        """Return the linked entries of ``kind`` (companies through their links)."""

        kind = TaxonomyKind(kind)
        if kind is TaxonomyKind.COMPANY:
            return [link.company for link in self.company_links]
        return getattr(self, kind.value)

    def __repr__(self) -> str:
        return f"Game(id={self.id!r}, slug={self.slug!r}, external_id={self.external_id!r})"


class GameCompany(Base):
    __tablename__ = "game_companies"

    game_id = Column(ForeignKey("games.id", ondelete="CASCADE"), primary_key=True)
    company_id = Column(ForeignKey("companies.id", ondelete="CASCADE"), primary_key=True)
    is_developer = Column(Boolean, nullable=False, default=False)
    is_publisher = Column(Boolean, nullable=False, default=False)

    game = relationship(Game, back_populates="company_links")
    company = relationship(Company, lazy="joined")


class GameWebsite(Base):
    __tablename__ = "game_websites"

    id = Column(Integer, primary_key=True, autoincrement=True)
    game_id = Column(ForeignKey("games.id", ondelete="CASCADE"), nullable=False)
    website_type = Column(
        Enum(WebsiteType, native_enum=False, length=32), nullable=False
    )
    url = Column(String(1024), nullable=False)
    external_id = Column(Integer, nullable=True)

    game = relationship(Game, back_populates="websites")


class GameMedia(Base):
    __tablename__ = "game_media"

    id = Column(Integer, primary_key=True, autoincrement=True)
    game_id = Column(ForeignKey("games.id", ondelete="CASCADE"), nullable=False)
    media_type = Column(Enum(MediaType, native_enum=False, length=16), nullable=False)
    url = Column(String(1024), nullable=False)
    thumbnail_url = Column(String(1024), nullable=True)
    title = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    external_id = Column(Integer, nullable=True)
    width = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)
    is_primary = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    game = relationship(Game, back_populates="media")

    __table_args__ = (Index("idx_game_media_game_type", "game_id", "media_type"),)


def _rating_display(value: float | None) -> float | None:
    if value is None:
        return None
    return round(value / 10.0, 1)


class GameRating(Base):
    __tablename__ = "game_ratings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    game_id = Column(
        ForeignKey("games.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    user_rating = Column(Float, nullable=True)
    user_rating_count = Column(Integer, nullable=True)
    critic_rating = Column(Float, nullable=True)
    critic_rating_count = Column(Integer, nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)

    game = relationship(Game, back_populates="rating")

    @property
    def user_rating_display(self) -> float | None:
        return _rating_display(self.user_rating)

    @property
    def critic_rating_display(self) -> float | None:
        return _rating_display(self.critic_rating)


class GameBeatTime(Base):
    __tablename__ = "game_beat_times"

    id = Column(Integer, primary_key=True, autoincrement=True)
    game_id = Column(
        ForeignKey("games.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    main_avg_seconds = Column(Integer, nullable=True)
    main_polled_count = Column(Integer, nullable=True)
    extra_avg_seconds = Column(Integer, nullable=True)
    extra_polled_count = Column(Integer, nullable=True)
    completionist_avg_seconds = Column(Integer, nullable=True)
    completionist_polled_count = Column(Integer, nullable=True)
    all_avg_seconds = Column(Integer, nullable=True)
    all_polled_count = Column(Integer, nullable=True)
    hltb_game_name = Column(String(255), nullable=True)
    hltb_game_id = Column(Integer, nullable=True)
    last_updated = Column(DateTime(timezone=True), nullable=True)

    game = relationship(Game, back_populates="beat_time")

    @property
    def main_hours(self) -> float | None:
        return seconds_to_hours(self.main_avg_seconds)

    @property
    def extra_hours(self) -> float | None:
        return seconds_to_hours(self.extra_avg_seconds)

    @property
    def completionist_hours(self) -> float | None:
        return seconds_to_hours(self.completionist_avg_seconds)

    @property
    def all_hours(self) -> float | None:
        return seconds_to_hours(self.all_avg_seconds)


__all__ = [
    "Base",
    "Company",
    "Game",
    "GameBeatTime",
    "GameCompany",
    "GameMedia",
    "GameMode",
    "GameRating",
    "GameWebsite",
    "Genre",
    "Keyword",
    "MediaType",
    "Platform",
    "PlayerPerspective",
    "TAXONOMY_MODELS",
    "TaxonomyKind",
    "Theme",
    "WebsiteType",
    "model_for",
]
