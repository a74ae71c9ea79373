# ----------------------------
# Config & Constants
# ----------------------------
import os

DATABASE_URL = os.environ.get("DATABASE_URL", None)

# 'midtrans' | 'mock'
PAYMENT_GATEWAY = os.environ.get("PAYMENT_GATEWAY", "mock").lower()

MIDTRANS_SERVER_KEY = os.environ.get("MIDTRANS_SERVER_KEY", "")
MIDTRANS_IS_PRODUCTION = (
    os.environ.get("MIDTRANS_IS_PRODUCTION", "0").lower() in ("1", "true")
)

MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    "http://localhost:8000/payments/notification"
)

EVENT_TIMEZONE = os.environ.get("EVENT_TIMEZONE", "Asia/Jakarta")

# one ticket per registrant
MAX_TICKETS_PER_ORDER = int(os.environ.get("MAX_TICKETS_PER_ORDER", "1"))
# form field that identifies a registrant; empty disables the check
UNIQUE_FORM_FIELD = os.environ.get("UNIQUE_FORM_FIELD", "nik")

# 'sql' | 'redis'
NOTIFY_BACKEND = os.environ.get("NOTIFY_BACKEND", "sql").lower()
REDIS_URL = os.environ.get("REDIS_URL", "redis://127.0.0.1:6379")
REDIS_MAX_CONN = int(os.environ.get("REDIS_MAX_CONN", "64"))

SEED_ON_STARTUP = os.environ.get("SEED_ON_STARTUP", "0") == "1"

# shared secret for /api/admin/* and mark-paid; empty leaves them open
ADMIN_TOKEN = os.environ.get("ADMIN_TOKEN", "")
