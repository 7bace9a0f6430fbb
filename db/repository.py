"""Persistence collaborator used by the import pipeline."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Protocol

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from db.models import Game, TaxonomyKind, model_for

logger = logging.getLogger(__name__)


class PersistenceError(RuntimeError):
    """Raised when the games database rejects a read or write."""


class GameRepository(Protocol):
    """Lookups and writes the importer needs from the local store."""

    def find_by_external_id(self, kind: TaxonomyKind, external_id: int) -> Any | None:
        ...

    def find_by_name(self, kind: TaxonomyKind, name: str) -> Any | None:
        ...

    def create(self, kind: TaxonomyKind, entity: Any) -> Any:
        ...

    def list_external_ids(self, kind: TaxonomyKind) -> set[int]:
        ...

    def find_game_by_slug(self, slug: str) -> Game | None:
        ...

    def slug_exists(self, slug: str) -> bool:
        ...

    def find_game_by_external_id(self, external_id: int) -> Game | None:
        ...

    def list_games(self) -> list[Game]:
        ...

    def list_game_external_ids(self) -> list[int]:
        ...

    def add_game(self, game: Game) -> Game:
        ...

    def commit(self) -> None:
        ...

    def rollback(self) -> None:
        ...

    def close(self) -> None:
        ...


@contextmanager
def _wrap_errors(action: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error("Database error while trying to %s: %s", action, exc)
        raise PersistenceError(f"failed to {action}: {exc}") from exc


class SqlAlchemyGameRepository:
    """:class:`GameRepository` backed by a single SQLAlchemy session.

    A repository is not thread-safe; create one per import.
    """

    def __init__(self, session: Session):
        self._session = session

    @property
    def session(self) -> Session:
        return self._session

    def find_by_external_id(self, kind: TaxonomyKind, external_id: int) -> Any | None:
        model = model_for(kind)
        with _wrap_errors(f"look up {TaxonomyKind(kind).value} {external_id}"):
            return self._session.scalars(
                select(model).where(model.external_id == int(external_id)).limit(1)
            ).first()

    def find_by_name(self, kind: TaxonomyKind, name: str) -> Any | None:
        text = (name or "").strip()
        if not text:
            return None
        model = model_for(kind)
        with _wrap_errors(f"look up {TaxonomyKind(kind).value} named {text!r}"):
            return self._session.scalars(
                select(model)
                .where(func.lower(model.name) == text.lower())
                .order_by(model.id)
                .limit(1)
            ).first()

    def create(self, kind: TaxonomyKind, entity: Any) -> Any:
        """Insert a taxonomy entry inside a SAVEPOINT.

        A rejected insert rolls back only that entry and leaves the session usable.
        """

        model = model_for(kind)
        if not isinstance(entity, model):
            raise TypeError(f"expected {model.__name__}, got {type(entity).__name__}")
        with _wrap_errors(f"create {TaxonomyKind(kind).value} {entity.name!r}"):
            with self._session.begin_nested():
                self._session.add(entity)
        return entity

    def list_external_ids(self, kind: TaxonomyKind) -> set[int]:
        model = model_for(kind)
        with _wrap_errors(f"list {TaxonomyKind(kind).value} external ids"):
            rows = self._session.scalars(
                select(model.external_id).where(model.external_id.is_not(None))
            )
            return {int(value) for value in rows}

    def find_game_by_slug(self, slug: str) -> Game | None:
        with _wrap_errors(f"look up game slug {slug!r}"):
            return self._session.scalars(
                select(Game).where(Game.slug == slug).limit(1)
            ).first()

    def slug_exists(self, slug: str) -> bool:
        return self.find_game_by_slug(slug) is not None

    def find_game_by_external_id(self, external_id: int) -> Game | None:
        with _wrap_errors(f"look up game {external_id}"):
            return self._session.scalars(
                select(Game).where(Game.external_id == int(external_id)).limit(1)
            ).first()

    def list_games(self) -> list[Game]:
        with _wrap_errors("list games"):
            return list(self._session.scalars(select(Game).order_by(Game.id)))

    def list_game_external_ids(self) -> list[int]:
        with _wrap_errors("list game external ids"):
            rows = self._session.scalars(
                select(Game.external_id)
                .where(Game.external_id.is_not(None))
                .order_by(Game.id)
            )
            return [int(value) for value in rows]

    def add_game(self, game: Game) -> Game:
        with _wrap_errors(f"add game {game.slug!r}"):
            self._session.add(game)
        return game

    def commit(self) -> None:
        with _wrap_errors("commit"):
            try:
                self._session.commit()
            except SQLAlchemyError:
                self._session.rollback()
                raise

    def rollback(self) -> None:
        with _wrap_errors("roll back"):
            self._session.rollback()

    def close(self) -> None:
        self._session.close()


__all__ = ["GameRepository", "PersistenceError", "SqlAlchemyGameRepository"]
