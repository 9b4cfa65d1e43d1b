"""Structured logging for cincout, built on structlog over the stdlib logging tree."""

import logging

import structlog

# Loggers owned by the ASGI server, rerouted through the root handler
_SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


def _select_renderer(level: str, fmt: str | None) -> structlog.types.Processor:
    # Console output by default when debugging, JSON lines otherwise
    if fmt is None:
        fmt = "console" if level == "DEBUG" else "json"
    if fmt == "console":
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def setup_logging(level: str = "INFO", fmt: str | None = None) -> None:
    """Configure structlog and the stdlib root logger.

    Every record, including uvicorn's own, goes to stderr so stdout stays free
    for the MCP stdio transport.

    Args:
        level: Log level string (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        fmt: "json" or "console"; derived from the level when omitted.
    """
    level = level.upper()
    numeric_level = getattr(logging, level, logging.INFO)

    pre_chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _select_renderer(level, fmt),
            ],
        )
    )
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(numeric_level)

    for name in _SERVER_LOGGERS:
        server_logger = logging.getLogger(name)
        server_logger.handlers.clear()
        server_logger.propagate = True


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a named structlog logger.

    Args:
        name: Logger name, normally the module's ``__name__``.
    """
    return structlog.get_logger(name)


def bind_job_context(**identifiers: str | None) -> None:
    """Attach session/job identifiers to every log line emitted by the current task.

    Args:
        **identifiers: Keyword identifiers such as session_id or job_id. None values are skipped.
    """
    structlog.contextvars.bind_contextvars(**{k: v for k, v in identifiers.items() if v is not None})


def clear_job_context(*keys: str) -> None:
    """Drop identifiers bound by bind_job_context.

    Args:
        *keys: Names to unbind. With no names, the whole context is cleared.
    """
    if keys:
        structlog.contextvars.unbind_contextvars(*keys)
    else:
        structlog.contextvars.clear_contextvars()
