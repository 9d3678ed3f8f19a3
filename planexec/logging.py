from __future__ import annotations

import logging
import os
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

import structlog

# Execution ID of the run currently driven by this task
execution_id_var: ContextVar[Optional[str]] = ContextVar("execution_id", default=None)


def get_execution_id() -> Optional[str]:
    """Get the execution ID bound to the current context."""
    return execution_id_var.get()


def bind_execution_id(execution_id: Optional[str]) -> Any:
    """Bind an execution ID to the current context; returns the reset token."""
    return execution_id_var.set(execution_id)


def unbind_execution_id(token: Any) -> None:
    execution_id_var.reset(token)


def _add_execution_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to add execution_id to all log entries."""
    eid = get_execution_id()
    if eid and "execution_id" not in event_dict:
        event_dict["execution_id"] = eid
    return event_dict


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to redact credentials that leak into tool params or errors."""
    secret_keys = {"password", "secret", "token", "api_key", "authorization"}
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        if any(s in lower_key for s in secret_keys):
            if isinstance(event_dict[key], str) and len(event_dict[key]) > 4:
                # Keep first/last 2 chars for debugging
                event_dict[key] = event_dict[key][:2] + "***" + event_dict[key][-2:]
    return event_dict


_TRUTHY = {"1", "true", "yes", "on"}


def configure_logging(level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    """(Re)configure structlog; arguments default to LOG_LEVEL and LOG_JSON."""
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = os.getenv("LOG_JSON", "true").lower() in _TRUTHY

    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_execution_id,
        _redact_secrets,
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level, logging.INFO)),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger; entries carry the bound execution ID."""
    return structlog.get_logger(name)


def log_execution_summary(summary: dict, logger: Optional[Any] = None) -> None:
    """Log the end-of-run step counts for an execution."""
    log = logger or get_logger("execution")
    log.info("execution_summary", **summary)


def truncate_error_message(error: Any, *, limit: int = 500) -> str:
    """Render an exception or message for persistence, bounded in length."""
    if error is None:
        return "Unknown error"
    text = str(error) if not isinstance(error, str) else error
    if not text:
        text = type(error).__name__ if not isinstance(error, str) else "Unknown error"
    if len(text) > limit:
        text = text[: limit - 3] + "..."
    return text
