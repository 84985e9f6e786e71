import os

# -------------------------
# Configuration (env-based)
# -------------------------
TELEGRAM_BOT_TOKEN = os.environ.get("TELEGRAM_BOT_TOKEN", "")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

# Persistence settings
DATA_DIR = os.environ.get("DATA_DIR", "./data")
SUBSCRIPTIONS_FILE = os.path.join(DATA_DIR, "subscriptions.json")
VOTES_FILE = os.path.join(DATA_DIR, "votes.json")
USAGE_FILE = os.path.join(DATA_DIR, "usage.json")
HISTORIES_FILE = os.path.join(DATA_DIR, "chatHistories.json")
QUOTA_FILE = os.path.join(DATA_DIR, "usageQuota.json")

# Current-number feed
NUMBER_FEED_URL = os.environ.get(
    "NUMBER_FEED_URL",
    "https://dxc.tagfans.com/mighty?_field%5B%5D=*&%24gid=10265&%24description=anouncingNumbers",
)
NUMBER_FEED_KEY = os.environ.get("NUMBER_FEED_KEY", "目前號碼")
NUMBER_CACHE_TTL_SECS = float(os.environ.get("NUMBER_CACHE_TTL_SECS", "60"))
NUMBER_FEED_TIMEOUT_SECS = float(os.environ.get("NUMBER_FEED_TIMEOUT_SECS", "10"))

# Subscriptions
MIN_NUMBER = int(os.environ.get("MIN_NUMBER", "1001"))
MAX_NUMBER = int(os.environ.get("MAX_NUMBER", "1200"))
CHECK_INTERVAL_SECS = float(os.environ.get("CHECK_INTERVAL_SECS", "60"))
SUBSCRIPTION_EXPIRY_SECS = float(os.environ.get("SUBSCRIPTION_EXPIRY_SECS", str(5 * 60 * 60)))

# LLM (Open WebUI, OpenAI-compatible)
OPENWEBUI_BASE_URL = os.environ.get("OPENWEBUI_BASE_URL", "http://localhost:3000/api")
OPENWEBUI_API_KEY = os.environ.get("OPENWEBUI_API_KEY", "")
OPENWEBUI_MODEL = os.environ.get("OPENWEBUI_MODEL", "openai/gpt-oss-20b")
LLM_TIMEOUT_SECS = int(os.environ.get("LLM_TIMEOUT_SECS", "120"))
HISTORY_MAX_MESSAGES = int(os.environ.get("HISTORY_MAX_MESSAGES", "20"))

# Daily quotas
QUOTA_PER_USER = int(os.environ.get("QUOTA_PER_USER", "30"))
QUOTA_PER_GROUP = int(os.environ.get("QUOTA_PER_GROUP", "50"))
QUOTA_GLOBAL = int(os.environ.get("QUOTA_GLOBAL", "1000"))
QUOTA_RETENTION_DAYS = int(os.environ.get("QUOTA_RETENTION_DAYS", "7"))

TELEGRAM_MAX_LEN = 4096
