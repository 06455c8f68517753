"""Resumable tile cache and download engine.

This module provides:
- KeyedStore: filesystem payload store with JSON sidecars
- ResumableFetcher: HTTP fetcher resuming partial downloads with Range
- BatchOrchestrator: bounded-concurrency batch downloads in waves
- TileValidator / DatasetGeneration: payload checks and dataset invalidation
- TileCacheService: get, preload, stats and clean facade
- PeriodicCleaner: background stale-clean timer
"""

from tiles.errors import (
    ExhaustedRetriesError,
    FetchError,
    IntegrityError,
    NetworkFailure,
    RemoteRejection,
    StorageError,
    TileCacheError,
)
from tiles.executor import BatchOrchestrator, BatchResult, ItemStatus, WorkItem
from tiles.fetcher import FetchResult, FetchStatus, ResumableFetcher
from tiles.generation import DatasetGeneration, GenerationCheck
from tiles.keys import CacheKey
from tiles.maintenance import PeriodicCleaner
from tiles.service import (
    CacheStats,
    CleanMode,
    CleanResult,
    TileCacheService,
    TileResult,
    TileSource,
)
from tiles.store import CacheEntry, KeyedStore
from tiles.validation import TileValidator

__all__ = [
    'BatchOrchestrator',
    'BatchResult',
    'CacheEntry',
    'CacheKey',
    'CacheStats',
    'CleanMode',
    'CleanResult',
    'DatasetGeneration',
    'ExhaustedRetriesError',
    'FetchError',
    'FetchResult',
    'FetchStatus',
    'GenerationCheck',
    'IntegrityError',
    'ItemStatus',
    'KeyedStore',
    'NetworkFailure',
    'PeriodicCleaner',
    'RemoteRejection',
    'ResumableFetcher',
    'StorageError',
    'TileCacheError',
    'TileCacheService',
    'TileResult',
    'TileSource',
    'TileValidator',
    'WorkItem',
]
