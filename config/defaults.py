from __future__ import annotations

CLASH_API_BASE_URL = "https://api.clashroyale.com/v1"
CLASH_API_TIMEOUT_SECONDS = 15

DEFAULT_SQLITE_PATH = "bot.sqlite"
DEFAULT_SETTINGS_PATH = "config/clansync.yml"

DEFAULT_ROLE_SYNC_INTERVAL_SECONDS = 60
DEFAULT_WAR_POLL_INTERVAL_SECONDS = 60
MIN_JOB_INTERVAL_SECONDS = 10

# role settling
ROLE_SETTLE_THRESHOLD = 2
ROLE_SETTLE_CAP = 5

# period inference
DECKS_PER_DAY = 4
MAX_WAR_DAY_INDEX = 5
FALLBACK_PERIOD_TYPES = frozenset({"colosseum"})

# history
MAX_HISTORY = 50
HISTORY_MAX_DRIFT_SECONDS = 36 * 60 * 60

# checkpoint keys
CHECKPOINT_ROLE_PENDING_PREFIX = "role_sync:pending:"
CHECKPOINT_PERIOD_LAST_IDENTITY = "period:last_identity"
CHECKPOINT_PERIOD_LAST_CAPTURE = "period:last_capture"
CHECKPOINT_PERIOD_LAST_EMITTED_KEY = "period:last_emitted_key"
CHECKPOINT_PERIOD_HISTORY = "period:history"
CHECKPOINT_SINK_POSTED_KEY = "period:sink_posted_key"
CHECKPOINT_PERIOD_LAST_TYPE = "period:last_period_type"

SUMMARY_MAX_CHUNK_CHARS = 1900
SUMMARY_MAX_NO_BATTLE_NAMES = 40

WAR_DAY_STARTED_MESSAGE = "@everyone War day started, do your battles."
