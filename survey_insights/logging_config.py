"""
Structured logging configuration with structlog.

Configures structlog on top of stdlib logging so that pipeline events and
third-party library logs (celery, httpx, openai, uvicorn) share one output:

    1. Console output (colored, human readable) or JSON lines
    2. Optional JSONL file with daily rotation

Context propagation:
    `bind_job()` binds job_id / questionnaire_id into structlog contextvars,
    so every event emitted while a worker processes a job carries them.

Usage:
    from survey_insights.logging_config import configure_logging, bind_job
    configure_logging("INFO")
    bind_job("job_123", questionnaire_id="q_1")

JSONL format:
    {"event": "analysis.type.completed", "job_id": "...", "analysis_type": "thematic", "timestamp": "..."}
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional

import structlog

LOG_FILENAME = "pipeline.jsonl"
BACKUP_COUNT = 30


def configure_logging(
    log_level: str = "INFO",
    *,
    json_logs: bool = False,
    log_dir: Optional[str | Path] = None,
) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        log_level: Root level name ("DEBUG", "INFO", ...)
        json_logs: Render console output as JSON instead of colored text
        log_dir: When given, also write JSONL to log_dir/pipeline.jsonl (rotated daily)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    console_renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=True)
    )
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        processor=console_renderer,
    ))

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.addHandler(console_handler)

    if log_dir:
        directory = Path(log_dir)
        directory.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.TimedRotatingFileHandler(
            filename=directory / LOG_FILENAME,
            when="midnight",
            interval=1,
            backupCount=BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setFormatter(structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
        ))
        root_logger.addHandler(file_handler)

    # Silence noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    structlog.get_logger().info("logging_configured", level=log_level, log_dir=str(log_dir) if log_dir else None)


def bind_job(job_id: str, **extra) -> None:
    """Bind job context for downstream logging."""
    structlog.contextvars.bind_contextvars(job_id=job_id, **extra)


def clear_context(keys: Optional[list[str]] = None) -> None:
    """Clear selected context keys (or all if none provided)."""
    if keys:
        structlog.contextvars.unbind_contextvars(*keys)
    else:
        structlog.contextvars.clear_contextvars()
