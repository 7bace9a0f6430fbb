"""Resolve catalog taxonomy references against the local store."""

from __future__ import annotations

import enum
import logging
from typing import Any, Mapping

from db.models import TaxonomyKind, model_for
from db.repository import GameRepository
from helpers import _coerce_int, _normalize_lookup_name

logger = logging.getLogger(__name__)


class ResolutionPolicy(enum.Enum):
    MATCH_ONLY = "match_only"
    MATCH_THEN_CREATE = "match_then_create"


# Genres form a reviewed canon; imports may only link to existing entries.
DEFAULT_POLICIES: Mapping[TaxonomyKind, ResolutionPolicy] = {
    TaxonomyKind.GENRE: ResolutionPolicy.MATCH_ONLY,
}


def policy_for(
    kind: TaxonomyKind,
    policies: Mapping[TaxonomyKind, ResolutionPolicy] | None = None,
) -> ResolutionPolicy:
    table = DEFAULT_POLICIES if policies is None else policies
    return table.get(TaxonomyKind(kind), ResolutionPolicy.MATCH_THEN_CREATE)


def resolve(
    repository: GameRepository,
    kind: TaxonomyKind,
    external_id: Any,
    name: Any,
    *,
    policy: ResolutionPolicy | None = None,
    **attributes: Any,
) -> Any | None:
    """Return the local entry for a catalog reference, or ``None``.

    Lookup is by external id first. ``MATCH_ONLY`` kinds stop there; the
    other kinds fall back to a case-insensitive name match and finally create
    a new entry carrying ``attributes`` (e.g. a platform abbreviation).
    """

    kind = TaxonomyKind(kind)
    effective_policy = policy or policy_for(kind)
    numeric_id = _coerce_int(external_id)
    clean_name = _normalize_lookup_name(name)

    if numeric_id is not None:
        entry = repository.find_by_external_id(kind, numeric_id)
        if entry is not None:
            if clean_name and entry.external_name != clean_name:
                logger.info(
                    "Refreshing external name of %s %s: %r -> %r",
                    kind.value,
                    numeric_id,
                    entry.external_name,
                    clean_name,
                )
                entry.external_name = clean_name
            return entry

    if effective_policy is ResolutionPolicy.MATCH_ONLY:
        return None

    if not clean_name:
        logger.warning(
            "Cannot resolve %s %s without a name; skipping", kind.value, numeric_id
        )
        return None

    entry = repository.find_by_name(kind, clean_name)
    if entry is not None:
        if entry.external_id is None and numeric_id is not None:
            entry.external_id = numeric_id
            entry.external_name = clean_name
        return entry

    model = model_for(kind)
    values = {key: value for key, value in attributes.items() if value not in (None, "")}
    entry = model(
        name=clean_name,
        external_id=numeric_id,
        external_name=clean_name,
        **values,
    )
    repository.create(kind, entry)
    logger.info("Created %s %r (IGDB id %s)", kind.value, clean_name, numeric_id)
    return entry


__all__ = ["DEFAULT_POLICIES", "ResolutionPolicy", "policy_for", "resolve"]
