"""
Sentry integration for error tracking.
"""

import logging
from typing import Any, Optional

import sentry_sdk
from sentry_sdk.integrations.celery import CeleryIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.httpx import HttpxIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from courier_dispatch.core.config import settings

logger = logging.getLogger(__name__)

# Client errors that are part of normal dispatch traffic
_IGNORED_ERROR_CODES = {
    "INVALID_TRANSITION",
    "ASSIGNMENT_NOT_FOUND",
    "DUPLICATE_ASSIGNMENT",
    "NO_CANDIDATES",
}


def init_sentry() -> bool:
    """
    Initialize Sentry SDK.

    Call this once during application startup.

    Returns:
        True if Sentry was initialized, False otherwise.
    """
    if not settings.SENTRY_DSN:
        logger.info("SENTRY_DSN not configured, error tracking disabled")
        return False

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        release=f"{settings.APP_NAME}@{settings.APP_VERSION}",
        traces_sample_rate=0.1 if settings.ENVIRONMENT == "production" else 1.0,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            RedisIntegration(),
            CeleryIntegration(),
            HttpxIntegration(),
            LoggingIntegration(
                level=logging.INFO,
                event_level=logging.ERROR,
            ),
        ],
        send_default_pii=False,
        before_send=_before_send,
    )
    logger.info(f"Sentry initialized for environment: {settings.ENVIRONMENT}")
    return True


def _before_send(event: dict[str, Any], hint: dict[str, Any]) -> Optional[dict[str, Any]]:
    """Drop expected state-machine rejections before they reach Sentry."""
    exc_info = hint.get("exc_info")
    if exc_info:
        error_code = getattr(exc_info[1], "error_code", None)
        if error_code in _IGNORED_ERROR_CODES:
            return None
    return event
