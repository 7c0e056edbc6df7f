import os
from dotenv import load_dotenv

load_dotenv()

# =====================================================
# ENV
# =====================================================
ENV = os.getenv("ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# =====================================================
# DATABASE
# =====================================================
MONGO_URI = os.getenv("MONGO_URI") or os.getenv("MONGODB_URI")
STORE_BACKEND = os.getenv("STORE_BACKEND", "mongo").strip().lower()

# =====================================================
# JWT
# =====================================================
JWT_SECRET = os.getenv("JWT_SECRET")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_MINUTES = int(os.getenv("ACCESS_TOKEN_MINUTES", 60))

# =====================================================
# PAYMENT GATEWAY
# =====================================================
PAYMONGO_SECRET_KEY = os.getenv("PAYMONGO_SECRET_KEY")
PAYMONGO_API_BASE = os.getenv("PAYMONGO_API_BASE", "https://api.paymongo.com/v1")
PAYMONGO_TIMEOUT_SECONDS = int(os.getenv("PAYMONGO_TIMEOUT_SECONDS", 15))
CURRENCY = os.getenv("CURRENCY", "PHP")

# =====================================================
# ORDER LIFECYCLE
# =====================================================
PAYMENT_INTENT_TIMEOUT_MINUTES = int(os.getenv("PAYMENT_INTENT_TIMEOUT_MINUTES", 15))
UNPAID_ORDER_TIMEOUT_HOURS = int(os.getenv("UNPAID_ORDER_TIMEOUT_HOURS", 0))
REFUND_RECOVERY_MINUTES = int(os.getenv("REFUND_RECOVERY_MINUTES", 10))
ORDER_LOCK_TTL_SECONDS = int(os.getenv("ORDER_LOCK_TTL_SECONDS", 60 * 10))

# =====================================================
# CORS
# =====================================================
CORS_ALLOWED_ORIGINS = os.getenv("CORS_ALLOWED_ORIGINS", "").split(",")


def validate_production_env() -> None:
    if (ENV or "").lower() != "production":
        return

    required = {
        "JWT_SECRET": JWT_SECRET,
        "PAYMONGO_SECRET_KEY": PAYMONGO_SECRET_KEY,
        "MONGODB_URI": MONGO_URI,
    }

    invalid = []
    for key, value in required.items():
        val = (value or "").strip()
        if not val or val.startswith("CHANGE_THIS"):
            invalid.append(key)

    if STORE_BACKEND != "mongo":
        invalid.append("STORE_BACKEND")

    if invalid:
        raise RuntimeError(f"Production env misconfigured. Invalid keys: {', '.join(sorted(invalid))}")
