"""Cache keys: deterministic, sharded identifiers for tiles and URLs."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field

from shared.constants import MAX_KEY_ZOOM, MIN_ZOOM, SHARD_PREFIX_LEN

URL_PARTITION = 'url'


@dataclass(frozen=True)
class CacheKey:
    """Identity of one cached item.

    Built either from tile coordinates or from an arbitrary source URL.
    ``digest`` is the SHA-256 of a canonical string, so the same logical
    input always yields the same key. ``shard`` is the leading hex of the
    digest and becomes a subdirectory on disk.
    """

    zoom: int | None = None
    x: int | None = None
    y: int | None = None
    url: str | None = None
    digest: str = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        is_tile = self.zoom is not None or self.x is not None or self.y is not None
        if is_tile == (self.url is not None):
            msg = 'CacheKey needs either (zoom, x, y) or url'
            raise ValueError(msg)
        if is_tile:
            _validate_tile(self.zoom, self.x, self.y)
            canonical = f'tile:{self.zoom}/{self.x}/{self.y}'
        else:
            if not self.url:
                msg = 'CacheKey url must not be empty'
                raise ValueError(msg)
            canonical = self.url
        digest = hashlib.sha256(canonical.encode('utf-8')).hexdigest()
        object.__setattr__(self, 'digest', digest)

    @classmethod
    def for_tile(cls, zoom: int, x: int, y: int) -> CacheKey:
        return cls(zoom=int(zoom), x=int(x), y=int(y))

    @classmethod
    def for_url(cls, url: str) -> CacheKey:
        return cls(url=url)

    @property
    def is_tile(self) -> bool:
        return self.url is None

    @property
    def shard(self) -> str:
        return self.digest[:SHARD_PREFIX_LEN]

    @property
    def name(self) -> str:
        """Filesystem-safe file stem."""
        if self.is_tile:
            return f'{self.zoom}-{self.x}-{self.y}'
        return self.digest

    @property
    def partition(self) -> str:
        return str(self.zoom) if self.is_tile else URL_PARTITION

    def __str__(self) -> str:
        if self.is_tile:
            return f'{self.zoom}/{self.x}/{self.y}'
        return self.url or ''


def _validate_tile(zoom: int | None, x: int | None, y: int | None) -> None:
    if zoom is None or x is None or y is None:
        msg = 'tile keys need zoom, x and y'
        raise ValueError(msg)
    if not (MIN_ZOOM <= zoom <= MAX_KEY_ZOOM):
        msg = f'zoom {zoom} outside [{MIN_ZOOM}, {MAX_KEY_ZOOM}]'
        raise ValueError(msg)
    limit = 2**zoom
    if not (0 <= x < limit and 0 <= y < limit):
        msg = f'tile {zoom}/{x}/{y} outside the tile grid'
        raise ValueError(msg)


def partition_from_name(name: str) -> str:
    """Recover the partition of a stored item from its file stem."""
    head, sep, _ = name.partition('-')
    if sep and head.isdigit():
        return head
    return URL_PARTITION
