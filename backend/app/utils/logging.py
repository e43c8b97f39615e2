"""
Production logging utility for structured JSON logging.

Provides event-specific logging functions with mandatory fields:
- timestamp (ISO8601)
- level
- service
- event

Optional fields (included when applicable):
- task_id
- job_id
- user_id
- duration_ms

Usage:
    from app.utils.logging import configure_logging, log_job_created

    configure_logging('vr-api', 'INFO')
    log_job_created(logger, task_id='veo_task_...', user_id='456')
"""
import logging
import sys
from typing import Optional, Dict, Any
from pythonjsonlogger import jsonlogger


class StructuredLogger:
    """Structured JSON logger with mandatory fields."""

    _service_name = None
    _configured = False

    @classmethod
    def configure(cls, service_name: str, log_level: str = "INFO"):
        """
        Configure structured JSON logging for the application.

        Args:
            service_name: Service identifier (vr-api or vr-worker)
            log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        """
        if cls._configured:
            return  # Already configured

        cls._service_name = service_name

        # Remove default handlers
        root_logger = logging.getLogger()
        root_logger.handlers = []

        formatter = jsonlogger.JsonFormatter(
            '%(timestamp)s %(level)s %(name)s %(message)s',
            timestamp=True,
            json_ensure_ascii=False
        )

        # Console handler (for docker logs)
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(formatter)

        root_logger.addHandler(handler)
        root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

        # Add service name to all log records via filter
        class ServiceFilter(logging.Filter):
            def filter(self, record):
                record.service = cls._service_name
                return True

        handler.addFilter(ServiceFilter())
        cls._configured = True


def _build_log_extra(
    event: str,
    task_id: Optional[str] = None,
    job_id: Optional[str] = None,
    user_id: Optional[str] = None,
    duration_ms: Optional[float] = None,
    **kwargs
) -> Dict[str, Any]:
    """
    Build extra fields for structured logging.

    Args:
        event: Event name (mandatory)
        task_id: Optional provider task ID
        job_id: Optional internal job ID
        user_id: Optional user ID
        duration_ms: Optional duration in milliseconds
        **kwargs: Additional fields

    Returns:
        Dictionary of extra fields
    """
    extra = {
        "event": event,
        **kwargs
    }

    if task_id:
        extra["task_id"] = task_id
    if job_id:
        extra["job_id"] = job_id
    if user_id:
        extra["user_id"] = user_id
    if duration_ms is not None:
        extra["duration_ms"] = round(duration_ms, 2)

    return extra


# Job event functions

def log_job_created(
    logger: logging.Logger,
    task_id: str,
    user_id: Optional[str],
    job_id: Optional[str] = None,
    **kwargs
):
    """Log creation of a Job + Video pair (placeholder id)."""
    extra = _build_log_extra(
        event="job_created",
        task_id=task_id,
        job_id=job_id,
        user_id=user_id,
        **kwargs
    )
    logger.info(f"Job created: {task_id}", extra=extra)


def log_job_submitted(
    logger: logging.Logger,
    placeholder_id: str,
    task_id: str,
    user_id: Optional[str] = None,
    duration_ms: Optional[float] = None,
    **kwargs
):
    """
    Log a successful provider submission and rekey.

    Args:
        logger: Logger instance
        placeholder_id: Locally generated task id (required)
        task_id: Provider task id now keying the job (required)
        user_id: Optional user ID
        duration_ms: Optional submit latency
        **kwargs: Additional fields
    """
    extra = _build_log_extra(
        event="job_submitted",
        task_id=task_id,
        user_id=user_id,
        duration_ms=duration_ms,
        placeholder_id=placeholder_id,
        **kwargs
    )
    logger.info(f"Job submitted: {placeholder_id} -> {task_id}", extra=extra)


def log_job_transition(
    logger: logging.Logger,
    task_id: str,
    status: str,
    source: str,
    applied: bool,
    error: Optional[str] = None,
    **kwargs
):
    """
    Log a status write attempt on a job.

    Args:
        logger: Logger instance
        task_id: Provider task id (required)
        status: Target status (required)
        source: Writer of the transition: webhook, poller, sweep, submit
        applied: False when the compare-and-set lost (job already terminal)
        error: Optional failure reason
        **kwargs: Additional fields
    """
    extra = _build_log_extra(
        event="job_transition",
        task_id=task_id,
        status=status,
        source=source,
        applied=applied,
        **kwargs
    )
    if error:
        extra["error"] = str(error)

    message = f"Job {task_id} -> {status} via {source}"
    if not applied:
        message += " (ignored, already terminal)"

    if applied and status == "FAILED":
        logger.warning(message, extra=extra)
    else:
        logger.info(message, extra=extra)


def log_poll_attempt(
    logger: logging.Logger,
    task_id: str,
    attempt: int,
    max_attempts: int,
    ready: Optional[bool] = None,
    **kwargs
):
    """Log one fallback polling tick."""
    extra = _build_log_extra(
        event="poll_attempt",
        task_id=task_id,
        attempt=attempt,
        max_attempts=max_attempts,
        **kwargs
    )
    if ready is not None:
        extra["ready"] = ready

    logger.debug(f"Poll {attempt}/{max_attempts} for {task_id}", extra=extra)


# Provider event functions

def log_provider_failure(
    logger: logging.Logger,
    provider: str,
    operation: str,
    error: str,
    duration_ms: Optional[float] = None,
    task_id: Optional[str] = None,
    include_traceback: bool = False,
    **kwargs
):
    """
    Log provider failure event.

    Args:
        logger: Logger instance
        provider: Provider name (required)
        operation: Operation name (submit, record_info) (required)
        error: Error message (required)
        duration_ms: Optional duration in milliseconds
        task_id: Optional provider task ID
        include_traceback: Whether to include stack trace (default: False for provider failures)
        **kwargs: Additional fields
    """
    extra = _build_log_extra(
        event="provider_failure",
        task_id=task_id,
        duration_ms=duration_ms,
        provider=provider,
        operation=operation,
        error=str(error),
        **kwargs
    )

    message = f"Provider failure: {provider}.{operation} - {error}"

    if include_traceback:
        exc_info = sys.exc_info()
        if exc_info[0] is not None:
            logger.error(message, extra=extra, exc_info=exc_info)
        else:
            logger.error(message, extra=extra)
    else:
        logger.error(message, extra=extra)


# Payment event functions

def log_stripe_event(
    logger: logging.Logger,
    event_id: str,
    event_type: str,
    outcome: str,
    user_id: Optional[str] = None,
    **kwargs
):
    """
    Log the outcome of one Stripe webhook event.

    Args:
        logger: Logger instance
        event_id: Stripe event id (required)
        event_type: Stripe event type (required)
        outcome: processed, duplicate, already_processed, skipped or ignored
        user_id: Optional resolved user ID
        **kwargs: Additional fields
    """
    extra = _build_log_extra(
        event="stripe_event",
        user_id=user_id,
        stripe_event_id=event_id,
        stripe_event_type=event_type,
        outcome=outcome,
        **kwargs
    )
    logger.info(f"Stripe event {event_type} ({event_id}): {outcome}", extra=extra)


def configure_logging(service_name: str, log_level: str = "INFO"):
    """Configure logging (alias for StructuredLogger.configure)."""
    StructuredLogger.configure(service_name, log_level)
