import os
import logging
from datetime import datetime, timezone
from dotenv import load_dotenv

# Load .env from project root
try:
    load_dotenv(dotenv_path=os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".env")))
except Exception:
    try:
        load_dotenv()
    except Exception:
        pass


def _int_env(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


APP_NAME = os.getenv("APP_NAME", "SchoolPix")

# Family portal base URL (links look like {PORTAL_BASE_URL}/f/{token})
_front = (os.getenv("FRONTEND_ORIGIN", "").split(",")[0].strip() or "")
PORTAL_BASE_URL = (os.getenv("PORTAL_BASE_URL", "") or _front or "http://localhost:3000").strip().strip('"').strip("'").rstrip("/")

# Access tokens
TOKEN_MIN_LENGTH = max(20, _int_env("TOKEN_MIN_LENGTH", 20))
TOKEN_DEFAULT_EXPIRY_DAYS = _int_env("TOKEN_DEFAULT_EXPIRY_DAYS", 30)
TOKEN_ROTATION_THRESHOLD_DAYS = _int_env("TOKEN_ROTATION_THRESHOLD_DAYS", 7)
TOKEN_MAX_GENERATION_ATTEMPTS = _int_env("TOKEN_MAX_GENERATION_ATTEMPTS", 10)
TOKEN_MAX_DEVICES_STUDENT = _int_env("TOKEN_MAX_DEVICES_STUDENT", 3)
TOKEN_MAX_DEVICES_FAMILY = _int_env("TOKEN_MAX_DEVICES_FAMILY", 5)
USAGE_QUEUE_SIZE = _int_env("USAGE_QUEUE_SIZE", 10000)

# Email
MAIL_FROM = os.getenv("MAIL_FROM", "SchoolPix <no-reply@your-domain.com>")
SMTP_HOST = os.getenv("SMTP_HOST", "")
SMTP_PORT = _int_env("SMTP_PORT", 587)
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASS = os.getenv("SMTP_PASS", "")

# Twilio SMS / WhatsApp
TWILIO_ACCOUNT_SID = (os.getenv("TWILIO_ACCOUNT_SID") or "").strip()
TWILIO_AUTH_TOKEN = (os.getenv("TWILIO_AUTH_TOKEN") or "").strip()
TWILIO_PHONE_NUMBER = (os.getenv("TWILIO_PHONE_NUMBER") or "").strip()
TWILIO_WHATSAPP_NUMBER = (os.getenv("TWILIO_WHATSAPP_NUMBER") or "").strip()

# Admin API auth
ADMIN_API_TOKEN = (os.getenv("ADMIN_API_TOKEN") or "").strip()
ADMIN_API_TOKEN_SHA256 = [h.strip().lower() for h in (os.getenv("ADMIN_API_TOKEN_SHA256", "").split(",") if os.getenv("ADMIN_API_TOKEN_SHA256") else []) if h.strip()]

# Logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(message)s")
logger = logging.getLogger("schoolpix")

# Templates dir helper
TEMPLATES_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "templates"))


def utcnow() -> datetime:
    """Naive UTC timestamp; the database stores naive UTC datetimes."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
