"""Pydantic Logfire setup for the sync layer.

Components log through logging.getLogger(__name__); once configure_logfire()
has run, those records are forwarded to Logfire. Remote calls and refresh
cycles are wrapped in span() so their timing shows up next to the logs, and
log_with_context() attaches task IDs, range keys and mutation sequences as
structured fields:

    log_with_context(logger, "info", "Range loaded", range_key="2024-01-01_2024-01-31")
"""

import logging

import logfire

from calsync.core.config import Settings, settings


def configure_logfire(config: Settings | None = None) -> None:
    """Configure Pydantic Logfire with token from environment.

    Standard logging records are routed through Logfire's handler so every
    component logger is captured.
    """
    config = config or settings
    logfire.configure(
        token=config.logfire_token,
        service_name="calsync",
        service_version="0.1.0",
        environment=config.environment,
        send_to_logfire="if-token-present",
    )
    logging.basicConfig(handlers=[logfire.LogfireLoggingHandler()], level=logging.INFO)

    logger = logging.getLogger(__name__)
    logger.info("Logfire configured successfully")


def instrument_httpx() -> None:
    """Add Logfire instrumentation to every httpx client."""
    logfire.instrument_httpx()
    logger = logging.getLogger(__name__)
    logger.info("httpx instrumentation configured")


def span(name: str, **attributes: object) -> logfire.LogfireSpan:
    """Create a custom span around a remote call or refresh cycle.

    Usage:
        with span("loader.fetch_range", range_key=key):
            # Your logic here
            pass
    """
    return logfire.span(name, **attributes)


def log_with_context(
    logger: logging.Logger,
    level: str,
    message: str,
    **context: object,
) -> None:
    """Log a message with structured context fields.

    Args:
        logger: Logger instance to use
        level: Log level ("debug", "info", "warning", "error", "critical")
        message: Log message
        **context: Additional context fields (task_id, range_key, sequence, etc.)

    Usage:
        log_with_context(logger, "info", "Mutation confirmed", task_id="123", sequence=4)
    """
    log_method = getattr(logger, level.lower())
    log_method(message, extra=context)
