"""Tile cache settings: pydantic models loaded from a TOML file."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import tomlkit
from pydantic import BaseModel, Field, field_validator, model_validator

from shared.constants import (
    DEFAULT_BOUNDS,
    DEFAULT_PRELOAD_ZOOMS,
    DOWNLOAD_CONCURRENCY,
    DOWNLOAD_SOURCE,
    HTTP_BACKOFF_BASE,
    HTTP_RETRIES_DEFAULT,
    HTTP_TIMEOUT_DEFAULT,
    MAX_PRELOAD_ZOOM,
    MEMORY_CEILING_MB,
    MEMORY_CHECK_INTERVAL_S,
    MEMORY_CRITICAL_PERCENT,
    MEMORY_HISTORY_CAPACITY,
    MEMORY_LEAK_THRESHOLD_MB_PER_MIN,
    MEMORY_LEAK_WINDOW,
    MEMORY_WARNING_PERCENT,
    MIN_TILE_BYTES,
    MIN_ZOOM,
    PAYLOAD_SUFFIX,
    PLACEHOLDER_MARKERS,
    PLACEHOLDER_SCAN_LIMIT,
    PLACEHOLDER_SCAN_WINDOW,
    RATE_LIMIT_FIXED,
    RATE_LIMIT_TIER_QUOTAS,
    RATE_LIMIT_WINDOW_S,
    TILE_CACHE_CLEAN_INTERVAL_S,
    TILE_CACHE_DIR,
    TILE_CACHE_DIR_ENV,
    TILE_CACHE_MAX_AGE_DAYS,
    TILE_CACHE_MAX_SIZE_MB,
    TILE_URL_SUBDOMAINS,
    TILE_URL_TEMPLATE,
    USER_AGENT,
)

logger = logging.getLogger(__name__)


class FetchSettings(BaseModel):
    """Remote origin and download behaviour."""

    url_template: str = TILE_URL_TEMPLATE
    subdomains: list[str] = Field(default_factory=lambda: list(TILE_URL_SUBDOMAINS))
    user_agent: str = USER_AGENT
    download_source: str = DOWNLOAD_SOURCE
    # Таймаут одной попытки (секунды)
    timeout_s: float = HTTP_TIMEOUT_DEFAULT
    max_retries: int = HTTP_RETRIES_DEFAULT
    # Задержка перед повтором: backoff_base * номер попытки
    backoff_base: float = HTTP_BACKOFF_BASE
    # Размер волны пакетной загрузки
    concurrency: int = DOWNLOAD_CONCURRENCY

    @field_validator('timeout_s', 'backoff_base')
    @classmethod
    def validate_non_negative(cls, v):
        v = float(v)
        if v < 0:
            msg = 'value must not be negative'
            raise ValueError(msg)
        return v

    @field_validator('max_retries')
    @classmethod
    def validate_retries(cls, v):
        v = int(v)
        if v < 0:
            msg = 'max_retries must not be negative'
            raise ValueError(msg)
        return v

    @field_validator('concurrency')
    @classmethod
    def validate_concurrency(cls, v):
        v = int(v)
        if v < 1:
            msg = 'concurrency must be at least 1'
            raise ValueError(msg)
        return v

    @field_validator('url_template')
    @classmethod
    def validate_template(cls, v):
        for placeholder in ('{z}', '{x}', '{y}'):
            if placeholder not in v:
                msg = f'url_template must contain {placeholder}'
                raise ValueError(msg)
        return v


class ValidationSettings(BaseModel):
    """Heuristics for detecting corrupted or placeholder payloads."""

    min_bytes: int = MIN_TILE_BYTES
    placeholder_markers: list[str] = Field(
        default_factory=lambda: list(PLACEHOLDER_MARKERS)
    )
    # Маркеры ищутся только в маленьких тайлах и только в начале файла
    scan_limit: int = PLACEHOLDER_SCAN_LIMIT
    scan_window: int = PLACEHOLDER_SCAN_WINDOW
    # SHA-256 известных заглушек (hex)
    placeholder_digests: list[str] = Field(default_factory=list)
    verify_image_decode: bool = False

    @field_validator('min_bytes', 'scan_limit', 'scan_window')
    @classmethod
    def validate_sizes(cls, v):
        v = int(v)
        if v < 0:
            msg = 'size thresholds must not be negative'
            raise ValueError(msg)
        return v


class CoverageSettings(BaseModel):
    """Region served by the cache and zoom levels for preload."""

    min_lon: float = DEFAULT_BOUNDS[0]
    min_lat: float = DEFAULT_BOUNDS[1]
    max_lon: float = DEFAULT_BOUNDS[2]
    max_lat: float = DEFAULT_BOUNDS[3]
    zooms: list[int] = Field(default_factory=lambda: list(DEFAULT_PRELOAD_ZOOMS))
    serve_placeholder_outside_coverage: bool = False

    @field_validator('zooms')
    @classmethod
    def validate_zooms(cls, v):
        out = sorted({int(z) for z in v})
        for z in out:
            if not (MIN_ZOOM <= z <= MAX_PRELOAD_ZOOM):
                msg = f'zoom {z} outside [{MIN_ZOOM}, {MAX_PRELOAD_ZOOM}]'
                raise ValueError(msg)
        return out

    @model_validator(mode='after')
    def validate_bounds(self):
        if self.min_lon >= self.max_lon or self.min_lat >= self.max_lat:
            msg = 'coverage bounds are inverted or empty'
            raise ValueError(msg)
        if not (-180.0 <= self.min_lon and self.max_lon <= 180.0):
            msg = 'longitude must be within [-180, 180]'
            raise ValueError(msg)
        if not (-90.0 <= self.min_lat and self.max_lat <= 90.0):
            msg = 'latitude must be within [-90, 90]'
            raise ValueError(msg)
        return self

    @property
    def bounds(self) -> tuple[float, float, float, float]:
        return self.min_lon, self.min_lat, self.max_lon, self.max_lat


class GovernorSettings(BaseModel):
    """Memory sampling and tier thresholds."""

    enabled: bool = True
    interval_s: float = MEMORY_CHECK_INTERVAL_S
    # 0 = взять объём памяти хоста через psutil
    memory_ceiling_mb: int = MEMORY_CEILING_MB
    warning_percent: float = MEMORY_WARNING_PERCENT
    critical_percent: float = MEMORY_CRITICAL_PERCENT
    history_capacity: int = MEMORY_HISTORY_CAPACITY
    leak_window: int = MEMORY_LEAK_WINDOW
    leak_threshold_mb_per_min: float = MEMORY_LEAK_THRESHOLD_MB_PER_MIN

    @field_validator('interval_s')
    @classmethod
    def validate_interval(cls, v):
        v = float(v)
        if v <= 0:
            msg = 'interval_s must be positive'
            raise ValueError(msg)
        return v

    @field_validator('history_capacity', 'leak_window')
    @classmethod
    def validate_counts(cls, v):
        v = int(v)
        if v < 2:
            msg = 'history sizes must be at least 2'
            raise ValueError(msg)
        return v

    @model_validator(mode='after')
    def validate_thresholds(self):
        if not (0 < self.warning_percent < self.critical_percent <= 100):
            msg = 'expected 0 < warning_percent < critical_percent <= 100'
            raise ValueError(msg)
        if self.memory_ceiling_mb < 0:
            msg = 'memory_ceiling_mb must not be negative'
            raise ValueError(msg)
        return self


def _default_tier_quotas() -> dict[str, dict[str, int]]:
    return {tier.value: dict(q) for tier, q in RATE_LIMIT_TIER_QUOTAS.items()}


def _default_fixed_limits() -> dict[str, tuple[int, int]]:
    return dict(RATE_LIMIT_FIXED)


class RateLimitSettings(BaseModel):
    """Per-endpoint quotas derived from the memory tier."""

    window_s: int = RATE_LIMIT_WINDOW_S
    tier_quotas: dict[str, dict[str, int]] = Field(default_factory=_default_tier_quotas)
    fixed: dict[str, tuple[int, int]] = Field(default_factory=_default_fixed_limits)

    @field_validator('tier_quotas')
    @classmethod
    def validate_tiers(cls, v):
        missing = {'normal', 'warning', 'critical'} - set(v)
        if missing:
            msg = f'tier_quotas is missing tiers: {sorted(missing)}'
            raise ValueError(msg)
        return v


class CacheSettings(BaseModel):
    """Top-level settings for the tile cache service."""

    cache_dir: str = TILE_CACHE_DIR
    payload_suffix: str = PAYLOAD_SUFFIX
    max_cache_size_mb: int = TILE_CACHE_MAX_SIZE_MB
    max_age_days: float = TILE_CACHE_MAX_AGE_DAYS
    # Фоновая очистка stale; 0 = только по запросу
    clean_interval_s: float = TILE_CACHE_CLEAN_INTERVAL_S
    # Файл-маркер сборки маршрутизатора; None = проверка отключена
    dataset_path: str | None = None

    fetch: FetchSettings = Field(default_factory=FetchSettings)
    validation: ValidationSettings = Field(default_factory=ValidationSettings)
    coverage: CoverageSettings = Field(default_factory=CoverageSettings)
    governor: GovernorSettings = Field(default_factory=GovernorSettings)
    rate_limits: RateLimitSettings = Field(default_factory=RateLimitSettings)

    @field_validator('max_cache_size_mb')
    @classmethod
    def validate_max_size(cls, v):
        v = int(v)
        if v < 0:
            msg = 'max_cache_size_mb must not be negative'
            raise ValueError(msg)
        return v

    @field_validator('clean_interval_s')
    @classmethod
    def validate_clean_interval(cls, v):
        if v < 0:
            msg = 'clean_interval_s must not be negative'
            raise ValueError(msg)
        return v

    @field_validator('payload_suffix')
    @classmethod
    def validate_suffix(cls, v):
        if not v.startswith('.') or '/' in v or '\\' in v:
            msg = "payload_suffix must look like '.png'"
            raise ValueError(msg)
        return v

    @property
    def cache_path(self) -> Path:
        return Path(self.cache_dir)


def load_settings(path: str | Path | None = None) -> CacheSettings:
    """
    Load and validate settings from a TOML file.

    A missing or unspecified file yields defaults. The TILECACHE_DIR
    environment variable overrides ``cache_dir``.
    """
    data: dict[str, Any] = {}
    if path is not None:
        p = Path(path)
        if p.exists():
            text = p.read_text(encoding='utf-8')
            data = tomlkit.parse(text).unwrap()
            logger.info('Settings loaded from %s', p)
        else:
            logger.warning('Settings file %s not found, using defaults', p)

    env_dir = os.getenv(TILE_CACHE_DIR_ENV)
    if env_dir:
        data['cache_dir'] = env_dir

    return CacheSettings.model_validate(data)


def save_settings(path: str | Path, settings: CacheSettings) -> None:
    """Write settings to a TOML file, creating parent directories."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    data = settings.model_dump(mode='json', exclude_none=True)
    p.write_text(tomlkit.dumps(data), encoding='utf-8')
