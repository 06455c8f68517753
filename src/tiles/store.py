"""File-based keyed store with JSON sidecars.

Layout under the cache root::

    tiles/<shard>/<name><suffix>      payload bytes
    metadata/<shard>/<name>.json      CacheEntry sidecar

The payload is always written before the sidecar; a sidecar declaring
``completed=true`` is the commit point of an entry.
"""

from __future__ import annotations

import contextlib
import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, ValidationError, field_validator

from shared.constants import (
    METADATA_DIRNAME,
    PAYLOAD_DIRNAME,
    PAYLOAD_SUFFIX,
    SIDECAR_SUFFIX,
)
from tiles.errors import IntegrityError, StorageError

if TYPE_CHECKING:
    from collections.abc import Iterator

    from tiles.keys import CacheKey

logger = logging.getLogger(__name__)


class CacheEntry(BaseModel):
    """Sidecar record of one cached item."""

    source_identity: str
    byte_size: int
    completed: bool
    created_at: float
    completed_at: float | None = None
    download_source: str
    zoom: int | None = None
    x: int | None = None
    y: int | None = None

    @field_validator('byte_size')
    @classmethod
    def validate_size(cls, v):
        if v < 0:
            msg = 'byte_size must not be negative'
            raise ValueError(msg)
        return v


@dataclass
class StoredItem:
    """A payload file found while walking the store."""

    name: str
    shard: str
    payload_path: Path
    sidecar_path: Path
    size: int
    mtime: float


class KeyedStore:
    """Sharded on-disk store of payloads and their sidecars.

    Usage:
        store = KeyedStore('/var/cache/tiles')
        store.write(key, data, source_identity=url, download_source='osm')
        if store.exists(key):
            data = store.read(key)
    """

    def __init__(
        self,
        root: str | Path,
        payload_suffix: str = PAYLOAD_SUFFIX,
    ) -> None:
        self.root = Path(root)
        self.payload_suffix = payload_suffix
        self.payload_root = self.root / PAYLOAD_DIRNAME
        self.metadata_root = self.root / METADATA_DIRNAME
        try:
            self.payload_root.mkdir(parents=True, exist_ok=True)
            self.metadata_root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            msg = f'Cannot create cache directories under {self.root}: {e}'
            raise StorageError(msg) from e
        logger.info('KeyedStore initialized at %s', self.root)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def _locate(self, key: CacheKey) -> tuple[Path, Path]:
        payload = self.payload_root / key.shard / f'{key.name}{self.payload_suffix}'
        sidecar = self.metadata_root / key.shard / f'{key.name}{SIDECAR_SUFFIX}'
        return payload, sidecar

    def path(self, key: CacheKey) -> tuple[Path, Path]:
        """Payload and sidecar paths for ``key``; creates shard dirs lazily."""
        payload, sidecar = self._locate(key)
        try:
            payload.parent.mkdir(parents=True, exist_ok=True)
            sidecar.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            msg = f'Cannot create shard directory for {key}: {e}'
            raise StorageError(msg) from e
        return payload, sidecar

    # ------------------------------------------------------------------
    # Sidecars
    # ------------------------------------------------------------------

    def load_entry(self, key: CacheKey) -> CacheEntry | None:
        """Read and validate the sidecar of ``key``.

        Returns:
            The entry, or None when no sidecar exists.

        Raises:
            IntegrityError: the sidecar is not a valid CacheEntry.
        """
        _, sidecar = self._locate(key)
        return self._load_sidecar(sidecar)

    def _load_sidecar(self, sidecar: Path) -> CacheEntry | None:
        try:
            raw = sidecar.read_text(encoding='utf-8')
        except FileNotFoundError:
            return None
        except OSError as e:
            msg = f'Cannot read sidecar {sidecar}: {e}'
            raise StorageError(msg) from e
        try:
            return CacheEntry.model_validate_json(raw)
        except ValidationError as e:
            msg = f'Malformed sidecar {sidecar}: {e.error_count()} error(s)'
            raise IntegrityError(msg) from e

    def _write_sidecar(self, sidecar: Path, entry: CacheEntry) -> None:
        payload = entry.model_dump_json(indent=2)
        tmp_name = None
        try:
            with tempfile.NamedTemporaryFile(
                'w',
                encoding='utf-8',
                dir=sidecar.parent,
                prefix=f'.{sidecar.stem}.',
                suffix='.tmp',
                delete=False,
            ) as fh:
                tmp_name = fh.name
                fh.write(payload)
            os.replace(tmp_name, sidecar)
        except OSError as e:
            if tmp_name is not None:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_name)
            msg = f'Cannot write sidecar {sidecar}: {e}'
            raise StorageError(msg) from e

    def _new_entry(
        self,
        key: CacheKey,
        *,
        source_identity: str,
        download_source: str,
        byte_size: int,
        completed: bool,
        created_at: float | None = None,
    ) -> CacheEntry:
        now = time.time()
        return CacheEntry(
            source_identity=source_identity,
            byte_size=byte_size,
            completed=completed,
            created_at=created_at if created_at is not None else now,
            completed_at=now if completed else None,
            download_source=download_source,
            zoom=key.zoom,
            x=key.x,
            y=key.y,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def exists(self, key: CacheKey) -> bool:
        """True only for a committed entry whose sidecar matches the payload."""
        payload, _ = self._locate(key)
        try:
            entry = self.load_entry(key)
        except IntegrityError as e:
            logger.warning('Entry %s has a bad sidecar: %s', key, e)
            return False
        if entry is None or not entry.completed:
            return False
        try:
            size = payload.stat().st_size
        except FileNotFoundError:
            return False
        except OSError as e:
            msg = f'Cannot stat {payload}: {e}'
            raise StorageError(msg) from e
        return size == entry.byte_size

    def read(self, key: CacheKey) -> bytes | None:
        """Payload of a committed entry, or None when absent or incomplete.

        Raises:
            IntegrityError: malformed sidecar or size mismatch.
        """
        payload, _ = self._locate(key)
        entry = self.load_entry(key)
        if entry is None or not entry.completed:
            return None
        try:
            data = payload.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            msg = f'Cannot read {payload}: {e}'
            raise StorageError(msg) from e
        if len(data) != entry.byte_size:
            msg = (
                f'Size mismatch for {key}: sidecar says {entry.byte_size} bytes, '
                f'payload has {len(data)}'
            )
            raise IntegrityError(msg)
        return data

    def partial_size(self, key: CacheKey) -> int:
        """Bytes of an incomplete download already on disk.

        A committed-but-invalid entry (bad sidecar or size mismatch) is
        deleted and reported as 0 so the next download starts fresh.
        """
        payload, _ = self._locate(key)
        try:
            entry = self.load_entry(key)
        except IntegrityError as e:
            logger.warning('Discarding %s with bad sidecar: %s', key, e)
            self.delete(key)
            return 0
        try:
            size = payload.stat().st_size
        except FileNotFoundError:
            return 0
        except OSError as e:
            msg = f'Cannot stat {payload}: {e}'
            raise StorageError(msg) from e
        if entry is not None and entry.completed:
            if size == entry.byte_size:
                return size
            logger.warning(
                'Discarding %s: sidecar says %d bytes, payload has %d',
                key,
                entry.byte_size,
                size,
            )
            self.delete(key)
            return 0
        return size

    def payload_size(self, key: CacheKey) -> int:
        payload, _ = self._locate(key)
        try:
            return payload.stat().st_size
        except FileNotFoundError:
            return 0
        except OSError as e:
            msg = f'Cannot stat {payload}: {e}'
            raise StorageError(msg) from e

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def write(
        self,
        key: CacheKey,
        data: bytes,
        *,
        source_identity: str,
        download_source: str,
    ) -> CacheEntry:
        """Write a complete entry: payload first, then the sidecar."""
        self.write_partial(key, data)
        return self.commit(
            key,
            source_identity=source_identity,
            download_source=download_source,
        )

    def begin(
        self,
        key: CacheKey,
        *,
        source_identity: str,
        download_source: str,
    ) -> CacheEntry:
        """Record an in-progress download unless one is already recorded."""
        _, sidecar = self.path(key)
        entry = self.load_entry(key)
        if entry is not None and not entry.completed:
            return entry
        entry = self._new_entry(
            key,
            source_identity=source_identity,
            download_source=download_source,
            byte_size=0,
            completed=False,
        )
        self._write_sidecar(sidecar, entry)
        return entry

    def write_partial(self, key: CacheKey, data: bytes) -> None:
        """Replace the payload bytes of an uncommitted entry."""
        self._write_payload(key, data, mode='wb')

    def append_partial(self, key: CacheKey, data: bytes) -> None:
        """Append bytes to the payload of an uncommitted entry."""
        self._write_payload(key, data, mode='ab')

    def reset_partial(self, key: CacheKey) -> None:
        """Drop partial payload bytes, keeping the in-progress sidecar."""
        payload, _ = self._locate(key)
        try:
            payload.unlink(missing_ok=True)
        except OSError as e:
            msg = f'Cannot remove {payload}: {e}'
            raise StorageError(msg) from e

    def _write_payload(self, key: CacheKey, data: bytes, *, mode: str) -> None:
        payload, _ = self.path(key)
        try:
            with payload.open(mode) as fh:
                fh.write(data)
        except OSError as e:
            msg = f'Cannot write {payload}: {e}'
            raise StorageError(msg) from e

    def commit(
        self,
        key: CacheKey,
        *,
        source_identity: str,
        download_source: str,
    ) -> CacheEntry:
        """Mark the payload on disk as complete.

        The recorded size comes from stat, never from response headers.
        """
        payload, sidecar = self.path(key)
        try:
            size = payload.stat().st_size
        except OSError as e:
            msg = f'Cannot stat {payload} for commit: {e}'
            raise StorageError(msg) from e
        created_at = None
        try:
            previous = self.load_entry(key)
        except IntegrityError:
            previous = None
        if previous is not None and not previous.completed:
            created_at = previous.created_at
        entry = self._new_entry(
            key,
            source_identity=source_identity,
            download_source=download_source,
            byte_size=size,
            completed=True,
            created_at=created_at,
        )
        self._write_sidecar(sidecar, entry)
        return entry

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    def delete(self, key: CacheKey) -> int:
        """Remove payload and sidecar. Idempotent.

        Returns:
            Number of payload bytes freed.
        """
        payload, sidecar = self._locate(key)
        return self._remove_pair(payload, sidecar)

    def delete_item(self, item: StoredItem) -> int:
        return self._remove_pair(item.payload_path, item.sidecar_path)

    def _remove_pair(self, payload: Path, sidecar: Path) -> int:
        freed = 0
        try:
            freed = payload.stat().st_size
            payload.unlink()
        except FileNotFoundError:
            freed = 0
        except OSError as e:
            msg = f'Cannot remove {payload}: {e}'
            raise StorageError(msg) from e
        try:
            sidecar.unlink(missing_ok=True)
        except OSError as e:
            msg = f'Cannot remove {sidecar}: {e}'
            raise StorageError(msg) from e
        return freed

    def purge_all(self) -> tuple[int, int]:
        """Recursively clear payload and metadata trees.

        Returns:
            (removed payload count, freed bytes).
        """
        count = 0
        freed = 0
        for item in self.iter_entries():
            count += 1
            freed += item.size
        try:
            for tree in (self.payload_root, self.metadata_root):
                if tree.exists():
                    shutil.rmtree(tree)
                tree.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            msg = f'Cannot purge cache under {self.root}: {e}'
            raise StorageError(msg) from e
        logger.info('Purged cache: %d items, %.1f MB', count, freed / 1024 / 1024)
        return count, freed

    # ------------------------------------------------------------------
    # Walking
    # ------------------------------------------------------------------

    def iter_entries(self) -> Iterator[StoredItem]:
        """Yield every payload file in the store (complete or not)."""
        if not self.payload_root.exists():
            return
        for shard_dir in sorted(self.payload_root.iterdir()):
            if not shard_dir.is_dir():
                continue
            with os.scandir(shard_dir) as it:
                for de in it:
                    if not de.is_file() or not de.name.endswith(self.payload_suffix):
                        continue
                    try:
                        st = de.stat()
                    except FileNotFoundError:
                        continue
                    name = de.name[: -len(self.payload_suffix)]
                    yield StoredItem(
                        name=name,
                        shard=shard_dir.name,
                        payload_path=Path(de.path),
                        sidecar_path=self.metadata_root
                        / shard_dir.name
                        / f'{name}{SIDECAR_SUFFIX}',
                        size=st.st_size,
                        mtime=st.st_mtime,
                    )

    def iter_orphan_sidecars(self) -> Iterator[Path]:
        """Yield sidecars (and stale temp files) without a payload file."""
        if not self.metadata_root.exists():
            return
        for shard_dir in sorted(self.metadata_root.iterdir()):
            if not shard_dir.is_dir():
                continue
            for sidecar in shard_dir.iterdir():
                if sidecar.suffix == '.tmp':
                    yield sidecar
                    continue
                if sidecar.suffix != SIDECAR_SUFFIX:
                    continue
                payload = (
                    self.payload_root / shard_dir.name / f'{sidecar.stem}{self.payload_suffix}'
                )
                if not payload.exists():
                    yield sidecar

    def load_item_entry(self, item: StoredItem) -> CacheEntry | None:
        """Sidecar of a walked item; raises IntegrityError when malformed."""
        return self._load_sidecar(item.sidecar_path)
