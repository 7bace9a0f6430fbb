"""Tests for taxonomy resolution against the SQLAlchemy repository."""
from __future__ import annotations

import pytest

from db.models import Company, Genre, Platform, TaxonomyKind, Theme
from db.repository import PersistenceError
from imports.resolver import ResolutionPolicy, policy_for, resolve


def test_policy_defaults():
    assert policy_for(TaxonomyKind.GENRE) is ResolutionPolicy.MATCH_ONLY
    for kind in TaxonomyKind:
        if kind is not TaxonomyKind.GENRE:
            assert policy_for(kind) is ResolutionPolicy.MATCH_THEN_CREATE


def test_genre_matches_by_external_id_only(repository):
    repository.create(TaxonomyKind.GENRE, Genre(name='Adventure', external_id=31))
    repository.create(TaxonomyKind.GENRE, Genre(name='Platform'))

    assert resolve(repository, TaxonomyKind.GENRE, 31, 'Adventure').name == 'Adventure'
    assert resolve(repository, TaxonomyKind.GENRE, 8, 'Platform') is None
    assert resolve(repository, TaxonomyKind.GENRE, 999, 'Mystery') is None
    assert repository.find_by_name(TaxonomyKind.GENRE, 'Mystery') is None


def test_external_id_match_refreshes_external_name(repository):
    repository.create(
        TaxonomyKind.GENRE,
        Genre(name='Adventure', external_id=31, external_name='Adventure (old)'),
    )

    entry = resolve(repository, TaxonomyKind.GENRE, 31, 'Adventure')

    assert entry.external_name == 'Adventure'
    assert entry.name == 'Adventure'


def test_name_match_adopts_external_id(repository):
    repository.create(TaxonomyKind.COMPANY, Company(name='Team Cherry'))

    entry = resolve(repository, TaxonomyKind.COMPANY, 9, 'team cherry')

    assert entry.name == 'Team Cherry'
    assert entry.external_id == 9
    assert entry.external_name == 'team cherry'


def test_name_match_keeps_existing_external_id(repository):
    repository.create(TaxonomyKind.COMPANY, Company(name='Team Cherry', external_id=100))

    entry = resolve(repository, TaxonomyKind.COMPANY, 9, 'Team Cherry')

    assert entry.external_id == 100


def test_creates_missing_entry_with_attributes(repository):
    entry = resolve(
        repository,
        TaxonomyKind.PLATFORM,
        6,
        ' PC (Microsoft Windows) ',
        abbreviation='PC',
    )
    repository.commit()

    assert isinstance(entry, Platform)
    assert entry.id is not None
    stored = repository.find_by_external_id(TaxonomyKind.PLATFORM, 6)
    assert stored.name == 'PC (Microsoft Windows)'
    assert stored.abbreviation == 'PC'
    assert stored.external_name == 'PC (Microsoft Windows)'


def test_second_resolution_reuses_created_entry(repository):
    first = resolve(repository, TaxonomyKind.KEYWORD, 270, 'metroidvania')
    second = resolve(repository, TaxonomyKind.KEYWORD, 270, 'metroidvania')

    assert first is second
    assert repository.list_external_ids(TaxonomyKind.KEYWORD) == {270}


def test_blank_name_is_skipped(repository, caplog):
    assert resolve(repository, TaxonomyKind.THEME, 17, '   ') is None
    assert 'without a name' in caplog.text


def test_explicit_policy_overrides_default(repository):
    assert (
        resolve(
            repository,
            TaxonomyKind.THEME,
            1,
            'Action',
            policy=ResolutionPolicy.MATCH_ONLY,
        )
        is None
    )


def test_repository_create_rejects_wrong_model(repository):
    with pytest.raises(TypeError):
        repository.create(TaxonomyKind.GENRE, Company(name='Wrong'))


def test_repository_wraps_database_errors(repository):
    repository.create(TaxonomyKind.THEME, Theme(name='Horror', external_id=19))

    with pytest.raises(PersistenceError):
        repository.create(TaxonomyKind.THEME, Theme(name='Survival horror', external_id=19))

    assert repository.find_by_external_id(TaxonomyKind.THEME, 19).name == 'Horror'
    repository.create(TaxonomyKind.THEME, Theme(name='Comedy', external_id=27))
    repository.commit()
    assert repository.list_external_ids(TaxonomyKind.THEME) == {19, 27}
