"""Configuration management for the escrow release service"""

import os
import logging
from decimal import Decimal, InvalidOperation

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _validate_percentage(env_var: str, default: str, min_val: float, max_val: float) -> Decimal:
    """Parse a percentage setting, falling back to the default when out of range"""
    value_str = os.getenv(env_var, default)
    try:
        value = Decimal(value_str)
    except (InvalidOperation, TypeError):
        logger.warning(f"⚠️ CONFIG_INVALID: {env_var}={value_str!r} is not a number, using {default}")
        return Decimal(default)

    if value < Decimal(str(min_val)) or value > Decimal(str(max_val)):
        logger.warning(
            f"⚠️ CONFIG_OUT_OF_RANGE: {env_var}={value} outside [{min_val}, {max_val}], using {default}"
        )
        return Decimal(default)
    return value


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./escrow_release.db")
    DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"

    # Fees (percent of subtotal)
    SELLER_FEE_PERCENTAGE = _validate_percentage("SELLER_FEE_PERCENTAGE", "5.0", 0.0, 50.0)
    BUYER_FEE_PERCENTAGE = _validate_percentage("BUYER_FEE_PERCENTAGE", "0", 0.0, 50.0)
    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "USD")

    # Payment gateway
    PAYMENT_GATEWAY_BASE_URL = os.getenv("PAYMENT_GATEWAY_BASE_URL", "")
    PAYMENT_GATEWAY_API_KEY = os.getenv("PAYMENT_GATEWAY_API_KEY", "")
    GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "30"))

    # Milestones and auto-release
    DEFAULT_REVIEW_WINDOW_DAYS = int(os.getenv("DEFAULT_REVIEW_WINDOW_DAYS", "3"))
    DEFAULT_REVISION_LIMIT = int(os.getenv("DEFAULT_REVISION_LIMIT", "1"))
    AUTO_RELEASE_CHECK_INTERVAL_SECONDS = int(os.getenv("AUTO_RELEASE_CHECK_INTERVAL_SECONDS", "300"))
    AUTO_RELEASE_BATCH_SIZE = int(os.getenv("AUTO_RELEASE_BATCH_SIZE", "50"))

    # Reconciliation of releases stuck mid-flight
    RELEASE_STUCK_THRESHOLD_MINUTES = int(os.getenv("RELEASE_STUCK_THRESHOLD_MINUTES", "15"))
    RELEASE_RECONCILIATION_INTERVAL_SECONDS = int(
        os.getenv("RELEASE_RECONCILIATION_INTERVAL_SECONDS", "600")
    )

    # Audit trail (JSON lines on the 'audit' logger, optionally mirrored to a file)
    AUDIT_LOG_FILE = os.getenv("AUDIT_LOG_FILE")

    # Webhook/API server
    SERVER_HOST = os.getenv("SERVER_HOST", "0.0.0.0")
    SERVER_PORT = int(os.getenv("SERVER_PORT", "8000"))
    SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "true").lower() == "true"
    ADMIN_IDS = [
        admin_id.strip() for admin_id in os.getenv("ADMIN_IDS", "").split(",") if admin_id.strip()
    ]

    @classmethod
    def is_admin(cls, user_id: str) -> bool:
        return str(user_id) in cls.ADMIN_IDS
