"""
Lodge Identity Core - Sentry Integration

Error tracking with Sentry. Enabled only when ``SENTRY_DSN`` is set;
credentials, password hashes and tokens are scrubbed before sending.
"""

import os
import logging
from typing import Optional, Dict, Any

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

logger = logging.getLogger(__name__)

SENSITIVE_KEYS = (
    "password", "hash", "token", "secret", "authorization",
    "jwt", "cookie",
)

_initialized = False


def init_sentry(
    dsn: Optional[str] = None,
    environment: str = "development",
    release: Optional[str] = None,
    sample_rate: float = 1.0,
    traces_sample_rate: float = 0.1,
) -> bool:
    """
    Initialize Sentry error tracking.

    Args:
        dsn: Sentry DSN (from environment if not provided)
        environment: Environment name (production, staging, development)
        release: Release version
        sample_rate: Error sampling rate (0.0 to 1.0)
        traces_sample_rate: Performance tracing sample rate

    Returns:
        True if Sentry was initialized, False otherwise
    """
    global _initialized

    dsn = dsn or os.environ.get("SENTRY_DSN", "")
    if not dsn:
        logger.info("Sentry DSN not configured. Error tracking disabled.")
        return False

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        release=release or os.environ.get("GIT_SHA", "unknown"),
        sample_rate=sample_rate,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            LoggingIntegration(
                level=logging.INFO,
                event_level=logging.ERROR
            ),
        ],
        send_default_pii=False,
        before_send=filter_sensitive_data,
    )
    _initialized = True
    logger.info(f"Sentry initialized for environment: {environment}")
    return True


def redact(value: Any) -> Any:
    """Replace the value of every sensitive key, recursively."""
    if isinstance(value, dict):
        return {
            key: "[REDACTED]" if any(s in str(key).lower() for s in SENSITIVE_KEYS) else redact(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [redact(item) for item in value]
    return value


def filter_sensitive_data(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Filter sensitive data from Sentry events.
    """
    request = event.get("request")
    if request:
        for key in ("headers", "data", "cookies"):
            if key in request:
                request[key] = redact(request[key])

    if "extra" in event:
        event["extra"] = redact(event["extra"])

    return event


def capture_exception(exception: Exception, **kwargs) -> Optional[str]:
    """
    Capture an exception to Sentry with extra context.

    Returns:
        Event ID if captured, None when Sentry is not initialized
    """
    if not _initialized:
        return None

    with sentry_sdk.new_scope() as scope:
        for key, value in kwargs.items():
            scope.set_extra(key, value)
        return sentry_sdk.capture_exception(exception)


def set_user(user_id: str, role: Optional[str] = None):
    """Set user context for Sentry (id and role only)."""
    if _initialized:
        sentry_sdk.set_user({"id": user_id, "role": role})


def set_tag(key: str, value: str):
    """Set a tag for Sentry."""
    if _initialized:
        sentry_sdk.set_tag(key, value)
