"""Constantes compartidas de HA Realty"""

DOMAIN = "ha_realty"

# --- Persistencia ---
STORAGE_VERSION = 1
GEOCODE_CACHE_KEY = "ha_realty.geocode_cache_v1"

# --- hass.data ---
DATA_CONFIG = "config"
DATA_VERSION = "version"
DATA_QUEUE = "geocode_queue"
DATA_BOARD = "overlay_board"
DATA_RECONCILER = "overlay_reconciler"
DATA_STOP_LISTENER = "stop_listener"
DATA_TRANSACTIONS = "transactions"

# --- Eventos ---
EVENT_POSITIONS_CHANGED = f"{DOMAIN}_positions_changed"

# --- Opciones ---
CONF_API_KEY = "kakao_rest_api_key"
CONF_CONCURRENCY = "concurrency"
CONF_MIN_DELAY_MS = "min_delay_ms"
CONF_MAX_RETRIES = "max_retries"
CONF_BASE_RETRY_DELAY_MS = "base_retry_delay_ms"
CONF_AUTO_FIT_BOUNDS = "auto_fit_bounds"
CONF_ONLY_ADMIN = "only_admin"
CONF_ENABLE_DEBUG = "enable_debug"
