"""Dataset-generation invalidation.

Cached tiles are derived from an upstream dataset (e.g. a routing-graph
build). A marker file in the cache root remembers the dataset's mtime
(milliseconds); when the dataset on disk is newer, the whole store is
purged before any entry is trusted again.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from tiles.errors import StorageError

if TYPE_CHECKING:
    from tiles.store import KeyedStore

logger = logging.getLogger(__name__)


@dataclass
class GenerationCheck:
    """Outcome of one comparison between the dataset and the marker."""

    purged: bool = False
    previous: int | None = None
    current: int | None = None
    removed_count: int = 0
    freed_bytes: int = 0
    dataset_found: bool = True


class DatasetGeneration:
    def __init__(self, store: KeyedStore, marker_path: str | Path) -> None:
        self.store = store
        self.marker_path = Path(marker_path)

    def read_marker(self) -> int | None:
        try:
            raw = self.marker_path.read_text(encoding='utf-8').strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            msg = f'Cannot read generation marker {self.marker_path}: {e}'
            raise StorageError(msg) from e
        try:
            return int(raw)
        except ValueError:
            logger.warning('Generation marker %s is unreadable: %r', self.marker_path, raw)
            return None

    def write_marker(self, value: int) -> None:
        tmp = self.marker_path.with_name(self.marker_path.name + '.tmp')
        try:
            self.marker_path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(str(value), encoding='utf-8')
            os.replace(tmp, self.marker_path)
        except OSError as e:
            msg = f'Cannot write generation marker {self.marker_path}: {e}'
            raise StorageError(msg) from e

    def check(self, dataset_path: str | Path) -> GenerationCheck:
        """Purge the store when ``dataset_path`` is newer than the marker.

        A missing dataset file is logged and skipped. Without a marker the
        current mtime is recorded and nothing is purged. An unreadable
        marker counts as stale.
        """
        path = Path(dataset_path)
        try:
            current = int(path.stat().st_mtime * 1000)
        except FileNotFoundError:
            logger.warning('Dataset file %s not found, skipping cache validation', path)
            return GenerationCheck(dataset_found=False)
        except OSError as e:
            msg = f'Cannot stat dataset file {path}: {e}'
            raise StorageError(msg) from e

        marker_exists = self.marker_path.exists()
        previous = self.read_marker()
        if not marker_exists:
            self.write_marker(current)
            logger.info('Dataset generation recorded: %d', current)
            return GenerationCheck(previous=None, current=current)

        if previous is not None and current <= previous:
            logger.info('Tile cache is up to date with dataset generation %d', previous)
            return GenerationCheck(previous=previous, current=previous)

        logger.info('Dataset has been rebuilt (%s -> %d), clearing tile cache', previous, current)
        removed, freed = self.store.purge_all()
        self.write_marker(current)
        return GenerationCheck(
            purged=True,
            previous=previous,
            current=current,
            removed_count=removed,
            freed_bytes=freed,
        )
