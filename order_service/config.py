"""
config.py — Runtime Configuration for the Order Service

All settings are read once from environment variables at import time.
Defaults are suitable for local development (SQLite database, manual payment flow).

Groups:
    • Persistence and payment flow selection
    • Delivery fee schedule (kept as configuration, deployments differ)
    • Paystack gateway and Telegram notification credentials
    • Manual-flow bank transfer instructions
"""

import os
from dataclasses import dataclass
from enum import Enum


class PaymentFlow(str, Enum):
    """Settlement variant active for this deployment. Never both for one order."""
    MANUAL = "manual"
    GATEWAY = "gateway"


@dataclass(frozen=True)
class FeeSchedule:
    """
    Tiered delivery pricing.

    Attributes:
        base_fee (int): Flat fee covering every distance up to `base_km` (inclusive).
        base_km (float): Distance threshold covered by the base fee.
        rate_per_km (int): Price of each started kilometer beyond the threshold.
    """
    base_fee: int = 400
    base_km: float = 2
    rate_per_km: int = 200


# Persistence
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./orders.db")

# Order assembly
PAYMENT_FLOW = PaymentFlow(os.environ.get("PAYMENT_FLOW", PaymentFlow.MANUAL.value))
BRAND_PREFIX = os.environ.get("BRAND_PREFIX", "ATMOS")
PICKUP_LOCATION = os.environ.get("PICKUP_LOCATION", "PICKUP @ ATMOS KITCHEN")

FEE_SCHEDULE = FeeSchedule(
    base_fee=int(os.environ.get("DELIVERY_BASE_FEE", "400")),
    base_km=float(os.environ.get("DELIVERY_BASE_KM", "2")),
    rate_per_km=int(os.environ.get("DELIVERY_RATE_PER_KM", "200")),
)

# Paystack (gateway flow)
PAYSTACK_SECRET_KEY = os.environ.get("PAYSTACK_SECRET_KEY", "")
PAYSTACK_BASE_URL = os.environ.get("PAYSTACK_BASE_URL", "https://api.paystack.co")
FRONTEND_URL = os.environ.get("FRONTEND_URL", "http://localhost:3000")

# Telegram operator channel
TELEGRAM_BOT_TOKEN = os.environ.get("TELEGRAM_BOT_TOKEN", "")
TELEGRAM_ADMIN_CHAT_ID = os.environ.get("TELEGRAM_ADMIN_CHAT_ID", "")
TELEGRAM_API_URL = os.environ.get("TELEGRAM_API_URL", "https://api.telegram.org")

# Notification queue
RABBITMQ_HOST = os.environ.get("RABBITMQ_HOST", "localhost")
RABBITMQ_USER = os.environ.get("RABBITMQ_USER", "guest")
RABBITMQ_PASSWORD = os.environ.get("RABBITMQ_PASSWORD", "guest")
NOTIFICATION_MAX_ATTEMPTS = int(os.environ.get("NOTIFICATION_MAX_ATTEMPTS", "3"))
NOTIFICATION_RETRY_BASE_DELAY = float(os.environ.get("NOTIFICATION_RETRY_BASE_DELAY", "1.0"))

# Staff endpoints
ADMIN_API_KEY = os.environ.get("ADMIN_API_KEY", "")

# Manual-flow payment instructions
BANK_NAME = os.environ.get("BANK_NAME", "Moniepoint")
BANK_ACCOUNT_NUMBER = os.environ.get("BANK_ACCOUNT_NUMBER", "5228829625")
BANK_ACCOUNT_NAME = os.environ.get("BANK_ACCOUNT_NAME", "ATMOS FOOD NG")
WHATSAPP_NUMBER = os.environ.get("WHATSAPP_NUMBER", "08075389127")

# Logging
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
LOG_FILE = os.environ.get("LOG_FILE", "order_service.log")
