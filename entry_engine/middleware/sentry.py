"""Sentry error tracking integration.

Features:
- Automatic error capture
- Performance monitoring
- Expected reservation errors are not reported
"""

import logging

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from entry_engine import __version__

# Business outcomes that are answered with a 4xx and need no alert
EXPECTED_ERRORS = frozenset(
    {
        "ValidationError",
        "AdminAuthError",
        "TournamentNotFoundError",
        "EntryNotFoundError",
        "WaitlistRowNotFoundError",
        "GatewayAuthenticityError",
        "ReconciliationConflict",
    }
)


def init_sentry(
    dsn: str | None = None,
    environment: str = "development",
    traces_sample_rate: float = 0.05,
) -> bool:
    """Initialize Sentry SDK.

    Returns:
        True if Sentry was initialized, False when no DSN is configured
    """
    if not dsn:
        return False

    logging_integration = LoggingIntegration(
        level=logging.INFO,  # Breadcrumbs
        event_level=logging.ERROR,  # Events
    )

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        release=__version__,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            RedisIntegration(),
            logging_integration,
        ],
        traces_sample_rate=traces_sample_rate,
        send_default_pii=False,
        before_send=_before_send,
        before_send_transaction=_before_send_transaction,
    )
    return True


def _before_send(event: dict, hint: dict) -> dict | None:
    if "exc_info" in hint:
        exc_type, _, _ = hint["exc_info"]
        if exc_type.__name__ in EXPECTED_ERRORS:
            return None
    return event


def _before_send_transaction(event: dict, hint: dict) -> dict | None:
    if "/health" in event.get("transaction", ""):
        return None
    return event
