"""Default values for the tile cache, fetcher and memory governor."""

from enum import Enum

# Корневой каталог кэша (переопределяется переменной окружения TILECACHE_DIR)
TILE_CACHE_DIR = '.cache/tilecache'
TILE_CACHE_DIR_ENV = 'TILECACHE_DIR'

# Подкаталоги хранилища
PAYLOAD_DIRNAME = 'tiles'
METADATA_DIRNAME = 'metadata'
PAYLOAD_SUFFIX = '.png'
SIDECAR_SUFFIX = '.json'
DATASET_MARKER_FILENAME = '.dataset-generation'

# Длина префикса шарда (hex-символы дайджеста ключа)
SHARD_PREFIX_LEN = 2

# Допустимый диапазон зумов для ключей тайлов
MIN_ZOOM = 0
MAX_KEY_ZOOM = 30
MAX_PRELOAD_ZOOM = 22

# Лимит размера кэша (МБ) для режима очистки stale
TILE_CACHE_MAX_SIZE_MB = 1000

# Удалять записи старше N дней при очистке stale (0 = не удалять по возрасту)
TILE_CACHE_MAX_AGE_DAYS = 0

# Период фоновой очистки stale, секунды (0 = отключено; 6 * 3600 = каждые 6 часов)
TILE_CACHE_CLEAN_INTERVAL_S = 0

# Источник тайлов
TILE_URL_TEMPLATE = 'https://tile.openstreetmap.org/{z}/{x}/{y}.png'
TILE_URL_SUBDOMAINS = ('a', 'b', 'c')
USER_AGENT = 'TileCache-Service/1.0'
DOWNLOAD_SOURCE = 'osm'

# HTTP
HTTP_OK = 200
HTTP_PARTIAL_CONTENT = 206
HTTP_RANGE_NOT_SATISFIABLE = 416
HTTP_TIMEOUT_DEFAULT = 20.0
HTTP_RETRIES_DEFAULT = 3
HTTP_BACKOFF_BASE = 1.0
HTTP_CONNECTION_LIMIT = 64

# Параллелизм пакетной загрузки (размер волны)
DOWNLOAD_CONCURRENCY = 10

# Логировать память каждые N тайлов при предзагрузке
PRELOAD_LOG_MEMORY_EVERY_TILES = 500

# Валидация полезной нагрузки
MIN_TILE_BYTES = 100
PLACEHOLDER_SCAN_LIMIT = 1000
PLACEHOLDER_SCAN_WINDOW = 500
PLACEHOLDER_MARKER = 'tilecache:placeholder'
PLACEHOLDER_MARKERS = (PLACEHOLDER_MARKER, 'Outside', 'Java Island')

# Заглушка для тайлов вне зоны покрытия
PLACEHOLDER_TILE_SIZE = 256
PLACEHOLDER_TEXT = 'Outside coverage'
PLACEHOLDER_BG_COLOR = (242, 239, 233)
PLACEHOLDER_TEXT_COLOR = (120, 120, 120)

# Зона покрытия по умолчанию (о. Ява) и зумы предзагрузки
DEFAULT_BOUNDS = (105.0, -8.8, 114.0, -5.9)  # min_lon, min_lat, max_lon, max_lat
DEFAULT_PRELOAD_ZOOMS = (10, 11, 12)

# Web Mercator
MERCATOR_MAX_LAT_DEG = 85.05112878

# Мониторинг памяти
MEMORY_CHECK_INTERVAL_S = 30.0
MEMORY_CEILING_MB = 0  # 0 = взять объём памяти хоста
MEMORY_WARNING_PERCENT = 80.0
MEMORY_CRITICAL_PERCENT = 90.0
MEMORY_HISTORY_CAPACITY = 100
MEMORY_STATS_HISTORY = 20
MEMORY_LEAK_WINDOW = 10
MEMORY_LEAK_THRESHOLD_MB_PER_MIN = 5.0

PSUTIL_AVAILABLE = True


class MemoryTier(str, Enum):
    """Уровень нагрузки по памяти."""

    NORMAL = 'normal'
    WARNING = 'warning'
    CRITICAL = 'critical'


# Квоты запросов в минуту по уровню нагрузки
RATE_LIMIT_WINDOW_S = 60
RATE_LIMIT_TIER_QUOTAS = {
    MemoryTier.NORMAL: {'route': 100, 'tile': 600, 'global': 500},
    MemoryTier.WARNING: {'route': 60, 'tile': 400, 'global': 300},
    MemoryTier.CRITICAL: {'route': 10, 'tile': 50, 'global': 75},
}
# Фиксированные лимиты: (запросов, окно в секундах)
RATE_LIMIT_FIXED = {
    'cache': (5, 5 * 60),
    'preload': (1, 15 * 60),
}
