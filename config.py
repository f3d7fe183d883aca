"""
Storefront configuration, read from the environment once at import.
"""

import os


def _flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


STORE_NAME = os.getenv("STORE_NAME", "Storefront")
PRIMARY_CURRENCY = os.getenv("PRIMARY_CURRENCY", "USD")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "*").split(",")

# Pricing
TAX_RATE = float(os.getenv("TAX_RATE", "0.08"))
SHIPPING_FLAT = float(os.getenv("SHIPPING_FLAT", "10.0"))
FREE_SHIPPING_THRESHOLD = float(os.getenv("FREE_SHIPPING_THRESHOLD", "50.0"))
LOW_STOCK_THRESHOLD = int(os.getenv("LOW_STOCK_THRESHOLD", "10"))

# Security
JWT_SECRET = os.getenv("JWT_SECRET", "devsecret_change_me")
JWT_EXP_MIN = int(os.getenv("JWT_EXP_MIN", "60"))
ADMIN_ROLES = ("admin", "staff")

# Payments
STRIPE_SECRET = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
ENABLE_DUMMY_PAYMENTS = _flag("ENABLE_DUMMY_PAYMENTS")

# Development
ENABLE_DEV_SEED = _flag("ENABLE_DEV_SEED")
SEED_ADMIN_EMAIL = os.getenv("SEED_ADMIN_EMAIL", "admin@storefront.local")
SEED_ADMIN_PASSWORD = os.getenv("SEED_ADMIN_PASSWORD", "admin12345")
