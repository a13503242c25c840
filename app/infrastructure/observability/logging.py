"""
Structured logging setup for the CRM ingestion engine.
Provides JSON-formatted logs with consistent fields for job and request tracing.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging with JSON output.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            _drop_secrets,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Suppress noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


_SECRET_KEYS = {"access_token", "refresh_token", "authorization", "api_key"}


def _drop_secrets(logger, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Mask credential-bearing fields that slipped into a log call."""
    for key in _SECRET_KEYS.intersection(event_dict):
        event_dict[key] = "[redacted]"
    return event_dict


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


def bind_job_context(job_id: str, user_id: str, kind: str) -> None:
    """Attach job identifiers to every log line emitted while the job runs."""
    structlog.contextvars.bind_contextvars(job_id=job_id, user_id=user_id, kind=kind)


def clear_job_context() -> None:
    structlog.contextvars.unbind_contextvars("job_id", "user_id", "kind")


def log_job_transition(
    job_id: str, user_id: str, kind: str, outcome: str, attempts: int, error: str = None
):
    """Log job state transitions with consistent fields."""
    logger = get_logger("jobs")

    log_data = {
        "job_id": job_id,
        "user_id": user_id,
        "kind": kind,
        "outcome": outcome,
        "attempts": attempts,
    }

    if error:
        log_data["error"] = error

    if outcome == "done":
        logger.info("Job completed", **log_data)
    elif outcome == "retry":
        logger.warning("Job failed, scheduled for retry", **log_data)
    elif outcome == "deferred":
        logger.info("Job deferred until the quota window resets", **log_data)
    else:
        logger.error("Job failed permanently", **log_data)


def log_health_check(service: str, healthy: bool, latency_ms: float, error: str = None):
    """Log health check results with consistent fields."""
    logger = get_logger("health")

    log_data = {
        "service": service,
        "healthy": healthy,
        "latency_ms": latency_ms,
    }

    if error:
        log_data["error"] = error

    if healthy:
        logger.info("Health check passed", **log_data)
    else:
        logger.error("Health check failed", **log_data)
