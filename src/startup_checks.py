"""Startup validation: catch misconfigurations before the app serves traffic."""
from __future__ import annotations

import logging
import sys

from config.settings import settings

logger = logging.getLogger(__name__)

_DEFAULT_JWT_SECRET = "reelvault-dev-secret-change-in-prod"
_DEFAULT_VIDEO_SECRET = "reelvault-dev-video-key-change-in-prod"


def validate_settings() -> list[str]:
    """Validate configuration. Returns list of warnings (empty = all good).

    Raises SystemExit for critical misconfigurations in production.
    """
    warnings: list[str] = []
    is_prod = settings.is_production

    if is_prod and settings.JWT_SECRET == _DEFAULT_JWT_SECRET:
        logger.critical("JWT_SECRET is still the default! Set a real secret for production.")
        sys.exit(1)

    if is_prod and settings.VIDEO_TOKEN_SECRET == _DEFAULT_VIDEO_SECRET:
        logger.critical("VIDEO_TOKEN_SECRET is still the default! Video tokens would be forgeable.")
        sys.exit(1)

    if is_prod and "*" in settings.CORS_ORIGINS:
        warnings.append("CORS_ORIGINS is set to *: restrict in production")

    has_profile = bool(settings.RAKSMEYPAY_PROFILE_ID and settings.RAKSMEYPAY_PROFILE_KEY)
    if not has_profile:
        if is_prod:
            warnings.append("RaksmeyPay credentials not set: running the MOCK payment provider")
    elif not settings.BAKONG_ACCOUNT_ID:
        logger.critical("RaksmeyPay credentials set but BAKONG_ACCOUNT_ID missing: cannot build KHQR payloads")
        sys.exit(1)

    if not settings.BASE_URL or "localhost" in settings.BASE_URL:
        warnings.append("BASE_URL points at localhost: provider return URLs will not reach this server")

    if not settings.ADMIN_API_KEY:
        warnings.append("ADMIN_API_KEY not set: admin payment confirmation disabled")

    for w in warnings:
        logger.warning("⚠️  %s", w)

    if not warnings:
        logger.info("✅ All startup checks passed")

    return warnings
