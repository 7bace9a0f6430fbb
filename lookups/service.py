"""Establish the local taxonomy canon from IGDB lists and reviewed workbooks."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, ContextManager, Iterable, Mapping

import pandas as pd

from db.models import TaxonomyKind, model_for
from db.repository import GameRepository
from db.utils import db_lock
from helpers import _coerce_int, _normalize_lookup_name
from igdb.client import IGDBClient, coerce_igdb_id

logger = logging.getLogger(__name__)


STATIC_KINDS: tuple[TaxonomyKind, ...] = (
    TaxonomyKind.GENRE,
    TaxonomyKind.THEME,
    TaxonomyKind.GAME_MODE,
    TaxonomyKind.PLAYER_PERSPECTIVE,
    TaxonomyKind.PLATFORM,
)


class LookupServiceError(RuntimeError):
    """Raised when taxonomy seed data cannot be read."""


def _parse_taxonomy_payload(raw: str, kind: TaxonomyKind) -> list[Mapping[str, Any]]:
    try:
        payload = json.loads(raw) if raw and raw.strip() else []
    except json.JSONDecodeError as exc:
        raise LookupServiceError(f"invalid JSON in IGDB {kind.value} list") from exc
    if not isinstance(payload, list):
        raise LookupServiceError(f"unexpected IGDB {kind.value} payload")
    return [item for item in payload if isinstance(item, Mapping)]


def _new_entry(
    kind: TaxonomyKind,
    name: str,
    external_id: int | None,
    abbreviation: str | None = None,
) -> Any:
    values: dict[str, Any] = {
        "name": name,
        "external_id": external_id,
        "external_name": name if external_id is not None else None,
    }
    if kind is TaxonomyKind.PLATFORM and abbreviation:
        values["abbreviation"] = abbreviation
    return model_for(kind)(**values)


def populate_static_data(
    client: IGDBClient,
    repository: GameRepository,
    *,
    kinds: Iterable[TaxonomyKind] = STATIC_KINDS,
    lock: ContextManager[Any] | None = None,
) -> dict[TaxonomyKind, int]:
    """Add IGDB taxonomy entries whose external id is not stored yet.

    Each kind is committed on its own. Returns the number of entries added
    per kind.
    """

    write_lock = lock if lock is not None else db_lock
    counts: dict[TaxonomyKind, int] = {}
    for kind in kinds:
        kind = TaxonomyKind(kind)
        entries = _parse_taxonomy_payload(client.get_taxonomy_list(kind.value), kind)
        added = 0
        with write_lock:
            try:
                known = repository.list_external_ids(kind)
                for item in entries:
                    external_id = _coerce_int(item.get("id"))
                    name = _normalize_lookup_name(item.get("name"))
                    if external_id is None or not name:
                        logger.warning("Skipping malformed IGDB %s entry: %s", kind.value, item)
                        continue
                    if external_id in known:
                        continue
                    abbreviation = _normalize_lookup_name(item.get("abbreviation"))
                    repository.create(
                        kind, _new_entry(kind, name, external_id, abbreviation or None)
                    )
                    known.add(external_id)
                    added += 1
                repository.commit()
            except Exception:
                repository.rollback()
                raise
        logger.info(
            "Synced IGDB %s: %s new of %s listed", kind.value, added, len(entries)
        )
        counts[kind] = added
    return counts


def _read_workbook(path: Path) -> pd.DataFrame:
    suffix = path.suffix.lower()
    if suffix in {".xlsx", ".xls"}:
        return pd.read_excel(path)
    if suffix == ".csv":
        return pd.read_csv(path)
    raise LookupServiceError(f"Unsupported seed file type: {path.name}")


def load_taxonomy_seed(
    path: str | os.PathLike[str],
    kind: TaxonomyKind,
    repository: GameRepository,
    *,
    lock: ContextManager[Any] | None = None,
) -> int:
    """Add reviewed taxonomy rows from a CSV/XLSX workbook.

    The workbook needs a ``name`` column and may carry ``external_id`` (and
    ``abbreviation`` for platforms). Rows matching an existing entry by
    external id or name are skipped. Returns the number of entries added.
    """

    kind = TaxonomyKind(kind)
    seed_path = Path(path)
    if not seed_path.exists():
        raise LookupServiceError(f"Seed workbook {seed_path} does not exist")

    try:
        df = _read_workbook(seed_path)
    except LookupServiceError:
        raise
    except (OSError, ValueError) as exc:
        logger.exception("Failed to load seed workbook %s", seed_path)
        raise LookupServiceError(f"Failed to load seed workbook {seed_path}") from exc

    columns = {str(column).strip().casefold(): column for column in df.columns}
    name_column = columns.get("name")
    if name_column is None:
        raise LookupServiceError(f"Workbook {seed_path} missing expected column name")
    id_column = columns.get("external_id")
    abbreviation_column = columns.get("abbreviation")

    write_lock = lock if lock is not None else db_lock
    added = 0
    with write_lock:
        try:
            for _, row in df.iterrows():
                name = _normalize_lookup_name(row[name_column])
                if not name:
                    continue
                raw_id = coerce_igdb_id(row[id_column]) if id_column is not None else ""
                external_id = int(raw_id) if raw_id.isdigit() else None
                if (
                    external_id is not None
                    and repository.find_by_external_id(kind, external_id) is not None
                ):
                    continue
                existing = repository.find_by_name(kind, name)
                if existing is not None:
                    if existing.external_id is None and external_id is not None:
                        existing.external_id = external_id
                        existing.external_name = name
                    continue
                abbreviation = (
                    _normalize_lookup_name(row[abbreviation_column])
                    if abbreviation_column is not None
                    else ""
                )
                repository.create(
                    kind, _new_entry(kind, name, external_id, abbreviation or None)
                )
                added += 1
            repository.commit()
        except Exception:
            repository.rollback()
            raise

    logger.info("Loaded %s new %s from %s", added, kind.value, seed_path)
    return added


__all__ = [
    "LookupServiceError",
    "STATIC_KINDS",
    "load_taxonomy_seed",
    "populate_static_data",
]
