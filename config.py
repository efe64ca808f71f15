import os

from dotenv import load_dotenv

load_dotenv()

# Environment / Auth settings
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change-me")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_DAYS = int(os.getenv("ACCESS_TOKEN_EXPIRE_DAYS", "30"))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))
ADMIN_SECRET_KEY = os.getenv("ADMIN_SECRET_KEY")
COOKIE_SECURE = os.getenv("COOKIE_SECURE", "false").lower() in ("1", "true", "yes")

# Pricing: every amount the API stores or returns is in CURRENCY
CURRENCY = os.getenv("CURRENCY", "INR")
DELIVERY_CHARGE = float(os.getenv("DELIVERY_CHARGE", "40"))
DEFAULT_LOW_STOCK_THRESHOLD = 10
# Ceiling for stock and order quantities
MAX_QUANTITY = 1_000_000

FRONTEND_URL = os.getenv("FRONTEND_URL", "*")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def allowed_origins():
    return [o.strip() for o in FRONTEND_URL.split(",") if o.strip()] or ["*"]
