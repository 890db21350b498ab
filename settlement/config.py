import os
from decimal import Decimal
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)

DATABASE_URL = os.getenv("DATABASE_URL")

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
STRIPE_TIMEOUT_SECONDS = float(os.getenv("STRIPE_TIMEOUT_SECONDS", "30"))

JWT_SECRET = os.getenv("JWT_SECRET", "")
JWT_ALGORITHM = "HS256"

# Roles allowed to drive the payout back-office, loaded once at startup
BACK_OFFICE_ROLES = frozenset(
    role.strip() for role in os.getenv("BACK_OFFICE_ROLES", "admin").split(",") if role.strip()
)

CURRENCY = os.getenv("SETTLEMENT_CURRENCY", "usd").lower()
PLATFORM_FEE_PERCENT = Decimal(os.getenv("PLATFORM_FEE_PERCENT", "7.9"))
MAX_PLATFORM_FEE_PERCENT = Decimal(os.getenv("MAX_PLATFORM_FEE_PERCENT", "30"))

# Processor minimum chargeable amount, in major units
MINIMUM_CHARGE = Decimal(os.getenv("MINIMUM_CHARGE", "0.50"))

FLAT_SHIPPING = Decimal(os.getenv("FLAT_SHIPPING", "15.00"))
FREE_SHIPPING_THRESHOLD = Decimal(os.getenv("FREE_SHIPPING_THRESHOLD", "100.00"))
TAX_RATE = Decimal(os.getenv("TAX_RATE", "0.12"))

# Seller countries whose payouts default to processor transfers
STRIPE_PAYOUT_COUNTRIES = frozenset(
    c.strip().upper() for c in os.getenv("STRIPE_PAYOUT_COUNTRIES", "US").split(",") if c.strip()
)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv("LOG_FORMAT", "%(asctime)s %(levelname)-7s %(name)s: %(message)s")
STRIPE_LOG_LEVEL = os.getenv("STRIPE_LOG_LEVEL", "WARNING").upper()
