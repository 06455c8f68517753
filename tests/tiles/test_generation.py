"""Tests for dataset-generation invalidation."""

import os

import pytest

from tiles.generation import DatasetGeneration
from tiles.keys import CacheKey


@pytest.fixture
def dataset(tmp_path):
    path = tmp_path / 'java-latest.osrm'
    path.write_bytes(b'graph')
    os.utime(path, (1_700_000_000, 1_700_000_000))
    return path


@pytest.fixture
def generation(store):
    return DatasetGeneration(store, store.root / '.dataset-generation')


def _fill(store, n=3):
    for i in range(n):
        store.write(
            CacheKey.for_tile(4, i, 2), b'a' * 150, source_identity='u', download_source='osm'
        )


class TestDatasetGeneration:
    """Tests for DatasetGeneration.check."""

    def test_first_run_records_marker(self, store, generation, dataset):
        """Without a marker nothing is purged and the mtime is recorded."""
        _fill(store)
        check = generation.check(dataset)
        assert not check.purged
        assert check.previous is None
        assert check.current == 1_700_000_000_000
        assert generation.read_marker() == 1_700_000_000_000
        assert len(list(store.iter_entries())) == 3

    def test_unchanged_dataset_keeps_entries(self, store, generation, dataset):
        generation.check(dataset)
        _fill(store)
        check = generation.check(dataset)
        assert not check.purged
        assert len(list(store.iter_entries())) == 3

    def test_newer_dataset_purges(self, store, generation, dataset):
        """A rebuilt dataset should empty the store and advance the marker."""
        generation.check(dataset)
        _fill(store)
        os.utime(dataset, (1_700_000_100, 1_700_000_100))

        check = generation.check(dataset)

        assert check.purged
        assert check.previous == 1_700_000_000_000
        assert check.current == 1_700_000_100_000
        assert check.removed_count == 3
        assert check.freed_bytes == 450
        assert list(store.iter_entries()) == []
        assert generation.read_marker() == 1_700_000_100_000

    def test_missing_dataset_is_skipped(self, store, generation, tmp_path):
        _fill(store)
        check = generation.check(tmp_path / 'missing.osrm')
        assert not check.dataset_found
        assert not check.purged
        assert generation.read_marker() is None
        assert len(list(store.iter_entries())) == 3

    def test_unreadable_marker_counts_as_stale(self, store, generation, dataset):
        generation.marker_path.write_text('garbage', encoding='utf-8')
        _fill(store)
        check = generation.check(dataset)
        assert check.purged
        assert generation.read_marker() == 1_700_000_000_000
