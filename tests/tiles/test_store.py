"""Tests for tiles.store module."""

import json

import pytest

from tiles.errors import IntegrityError
from tiles.keys import CacheKey
from tiles.store import CacheEntry, KeyedStore

SOURCE = 'https://tile.example.test/12/3263/2112.png'


def _write(store, key, data):
    return store.write(key, data, source_identity=SOURCE, download_source='osm')


class TestKeyedStoreLayout:
    """Tests for on-disk layout of KeyedStore."""

    def test_creates_trees(self, tmp_path):
        """Payload and metadata trees should exist after init."""
        store = KeyedStore(tmp_path)
        assert (tmp_path / 'tiles').is_dir()
        assert (tmp_path / 'metadata').is_dir()
        assert store.root == tmp_path

    def test_paths_are_sharded(self, store, key):
        """Payload and sidecar should live under the key's shard."""
        payload, sidecar = store.path(key)
        assert payload.parent.name == key.shard
        assert sidecar.parent.name == key.shard
        assert payload.name == f'{key.name}.png'
        assert sidecar.name == f'{key.name}.json'
        assert payload.parent.is_dir()

    def test_custom_suffix(self, tmp_path, key):
        store = KeyedStore(tmp_path, payload_suffix='.jpg')
        payload, _ = store.path(key)
        assert payload.suffix == '.jpg'


class TestKeyedStoreWrite:
    """Tests for writing and reading complete entries."""

    def test_write_then_read(self, store, key):
        """A written entry should be readable and marked complete."""
        entry = _write(store, key, b'x' * 300)
        assert entry.completed
        assert entry.byte_size == 300
        assert entry.zoom == 12
        assert entry.download_source == 'osm'
        assert store.exists(key)
        assert store.read(key) == b'x' * 300

    def test_sidecar_is_json(self, store, key):
        """Sidecar should be readable JSON with snake_case fields."""
        _write(store, key, b'abc')
        _, sidecar = store.path(key)
        text = sidecar.read_text(encoding='utf-8')
        raw = json.loads(text)
        assert text.startswith('{\n  "source_identity"')
        assert raw['byte_size'] == 3
        assert raw['completed'] is True
        assert raw['source_identity'] == SOURCE

    def test_missing_entry(self, store, key):
        assert not store.exists(key)
        assert store.read(key) is None
        assert store.load_entry(key) is None

    def test_size_mismatch_is_integrity_error(self, store, key):
        """Payload longer than the sidecar declares should not be served."""
        _write(store, key, b'a' * 200)
        payload, _ = store.path(key)
        payload.write_bytes(b'a' * 250)
        assert not store.exists(key)
        with pytest.raises(IntegrityError):
            store.read(key)

    def test_malformed_sidecar(self, store, key):
        """A sidecar that is not a valid entry should raise IntegrityError."""
        _write(store, key, b'a' * 200)
        _, sidecar = store.path(key)
        sidecar.write_text('{"byte_size": "lots"}', encoding='utf-8')
        with pytest.raises(IntegrityError):
            store.load_entry(key)
        assert not store.exists(key)

    def test_no_temp_files_left(self, store, key):
        _write(store, key, b'a' * 10)
        _, sidecar = store.path(key)
        assert not list(sidecar.parent.glob('*.tmp'))


class TestKeyedStorePartial:
    """Tests for in-progress downloads."""

    def test_begin_records_incomplete_entry(self, store, key):
        entry = store.begin(key, source_identity=SOURCE, download_source='osm')
        assert not entry.completed
        assert entry.byte_size == 0
        assert not store.exists(key)
        assert store.read(key) is None

    def test_begin_keeps_existing_incomplete_entry(self, store, key):
        """Repeated begin should keep the original created_at."""
        first = store.begin(key, source_identity=SOURCE, download_source='osm')
        second = store.begin(key, source_identity=SOURCE, download_source='osm')
        assert first.created_at == second.created_at

    def test_partial_size_counts_bytes(self, store, key):
        store.begin(key, source_identity=SOURCE, download_source='osm')
        store.append_partial(key, b'a' * 40)
        store.append_partial(key, b'b' * 60)
        assert store.partial_size(key) == 100
        assert store.payload_size(key) == 100

    def test_partial_size_of_complete_entry(self, store, key):
        _write(store, key, b'a' * 120)
        assert store.partial_size(key) == 120

    def test_partial_size_discards_invalid_commit(self, store, key):
        """A committed entry with a mismatched payload should be dropped."""
        _write(store, key, b'a' * 120)
        store.append_partial(key, b'extra')
        assert store.partial_size(key) == 0
        assert store.load_entry(key) is None
        assert store.payload_size(key) == 0

    def test_reset_partial(self, store, key):
        store.begin(key, source_identity=SOURCE, download_source='osm')
        store.append_partial(key, b'a' * 40)
        store.reset_partial(key)
        assert store.payload_size(key) == 0
        assert store.load_entry(key) is not None

    def test_commit_uses_size_on_disk(self, store, key):
        """Commit should record the stat size, keeping created_at."""
        started = store.begin(key, source_identity=SOURCE, download_source='osm')
        store.append_partial(key, b'a' * 70)
        entry = store.commit(key, source_identity=SOURCE, download_source='osm')
        assert entry.completed
        assert entry.byte_size == 70
        assert entry.created_at == started.created_at
        assert entry.completed_at is not None


class TestKeyedStoreRemoval:
    """Tests for delete, purge and walking."""

    def test_delete_is_idempotent(self, store, key):
        _write(store, key, b'a' * 50)
        assert store.delete(key) == 50
        assert store.delete(key) == 0
        assert not store.exists(key)

    def test_purge_all(self, store):
        keys = [CacheKey.for_tile(5, i, 1) for i in range(3)]
        for k in keys:
            _write(store, k, b'a' * 10)
        removed, freed = store.purge_all()
        assert removed == 3
        assert freed == 30
        assert list(store.iter_entries()) == []
        assert store.payload_root.is_dir()

    def test_iter_entries(self, store):
        keys = [CacheKey.for_tile(5, i, 1) for i in range(4)]
        for k in keys:
            _write(store, k, b'a' * 10)
        names = sorted(item.name for item in store.iter_entries())
        assert names == sorted(k.name for k in keys)
        item = next(iter(store.iter_entries()))
        entry = store.load_item_entry(item)
        assert isinstance(entry, CacheEntry)
        assert item.size == 10

    def test_iter_orphan_sidecars(self, store, key):
        """Sidecars without a payload should be reported."""
        _write(store, key, b'a' * 10)
        payload, sidecar = store.path(key)
        payload.unlink()
        assert list(store.iter_orphan_sidecars()) == [sidecar]

    def test_delete_item(self, store, key):
        _write(store, key, b'a' * 25)
        item = next(iter(store.iter_entries()))
        assert store.delete_item(item) == 25
        assert store.load_entry(key) is None
