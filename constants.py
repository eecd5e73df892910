#!/usr/bin/env python3
from typing import Dict, Tuple

# --- ANSI Color Codes ---
C_GREEN = '\033[92m'
C_RED = '\033[91m'
C_YELLOW = '\033[93m'
C_BLUE = '\033[94m'
C_RESET = '\033[0m'

# --- Environment Variable Names ---
TELEGRAM_BOT_TOKEN_ENV_VAR = 'TELEGRAM_BOT_TOKEN'
TELEGRAM_CHAT_ID_ENV_VAR = 'TELEGRAM_CHAT_ID'
ENGINE_BASE_URL_ENV_VAR = 'ENGINE_BASE_URL'
ENGINE_BACKEND_WALLET_ADDRESS_ENV_VAR = 'ENGINE_BACKEND_WALLET_ADDRESS'
ENGINE_AUTH_TOKEN_ENV_VAR = 'ENGINE_AUTH_TOKEN'
SLACK_WEBHOOK_URL_ENV_VAR = 'SLACK_WEBHOOK_URL'
CMA_BATCH_SIZE_ENV_VAR = 'CMA_BATCH_SIZE'
CMA_PAGINATION_LIMIT_ENV_VAR = 'CMA_PAGINATION_LIMIT'
CMA_MAX_RETRIES_ENV_VAR = 'CMA_MAX_RETRIES'
CMA_RETRY_DELAY_ENV_VAR = 'CMA_RETRY_DELAY'
CMA_PROCESSING_TIMEOUT_ENV_VAR = 'CMA_PROCESSING_TIMEOUT'
CMA_AUTOMATION_ENABLED_ENV_VAR = 'CMA_AUTOMATION_ENABLED'
POLLING_INTERVAL_ENV_VAR = 'STATE_FETCHER_POLLING_INTERVAL'

# --- Scheduling ---
DEFAULT_POLLING_CRON = '*/1 * * * *'

# --- Automation Defaults (ms for delays/timeouts, as configured) ---
DEFAULT_BATCH_SIZE = 50
DEFAULT_PAGINATION_LIMIT = 30
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_MS = 1000
DEFAULT_PROCESSING_TIMEOUT_MS = 30000

# Inclusive (min, max) bounds for each automation setting.
AUTOMATION_LIMITS: Dict[str, Tuple[int, int]] = {
    'batch_size': (1, 100),
    'pagination_limit': (1, 100),
    'max_retries': (0, 10),
    'retry_delay': (100, 60000),
    'processing_timeout': (5000, 300000),
}

# camelCase names used in blockchain settings
AUTOMATION_SETTING_ALIASES: Dict[str, str] = {
    'batchSize': 'batch_size',
    'paginationLimit': 'pagination_limit',
    'maxRetries': 'max_retries',
    'retryDelay': 'retry_delay',
    'processingTimeout': 'processing_timeout',
}

# --- Automation Contract Mirror ---
CACHE_THRESHOLD_PCT = 98  # bid above the minimum only once the cache is this full
HORIZON_SECONDS = 30 * 24 * 60 * 60
BID_INCREMENT = 1
DEFAULT_DECAY_RATE = 11574  # ~1 gwei per day
DEFAULT_EVICTION_MARGIN_BPS = 1000

# --- Alert Thresholds ---
BID_SAFETY_BASE_PERCENTAGE = 10000  # 100% in basis points
MIN_BID_SAFETY_VALUE = 1  # percent
MAX_BID_SAFETY_VALUE = 100  # percent
ALERT_COOLDOWN_MINUTES = 5
MAX_TRIGGERED_COUNT = 1000

# --- Queue Topics ---
QUEUE_ALERTS = 'alerts'
QUEUE_ALERT_PROCESSING = 'alert-processing'
QUEUE_NOTIFICATIONS = 'notifications'

# --- Domain Event Names ---
EVENT_ALERT_TRIGGERED = 'alert.triggered'
EVENT_ALERT_CREATED = 'alert.created'
EVENT_ALERT_UPDATED = 'alert.updated'
EVENT_ALERT_DELETED = 'alert.deleted'
EVENT_MONITORING_ERROR = 'alert.monitoring.error'

# --- Cache Manager Event Names ---
EVENT_INSERT_BID = 'InsertBid'
EVENT_DELETE_BID = 'DeleteBid'
EVENT_PAUSE = 'Pause'
EVENT_UNPAUSE = 'Unpause'
EVENT_SET_CACHE_SIZE = 'SetCacheSize'
EVENT_SET_DECAY_RATE = 'SetDecayRate'

CACHE_MANAGER_EVENTS = (
    EVENT_INSERT_BID,
    EVENT_DELETE_BID,
    EVENT_PAUSE,
    EVENT_UNPAUSE,
    EVENT_SET_CACHE_SIZE,
    EVENT_SET_DECAY_RATE,
)

# --- Notification Channels ---
NOTIFICATION_CHANNELS = ('email', 'slack', 'telegram', 'webhook')

# --- Misc ---
ZERO_ADDRESS = '0x0000000000000000000000000000000000000000'
