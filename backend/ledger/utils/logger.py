"""
Logging Setup — colorized console + rotating file, with request trace ids.

Format: time [LEVEL] [trace_id] module.func:line - message

Usage:
    from ledger.utils.logger import get_logger, log_event
    logger = get_logger(__name__)
    log_event(logger, "order.create", order_no=order.order_no, amount=order.amount)
    # -> event=order.create | order_no=ORD2024... | amount=600
"""
import logging
import logging.handlers
import os
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Generator, Optional

import colorlog

from ledger.config import get_settings

_trace_id_var: ContextVar[str] = ContextVar("trace_id", default="-")


def set_trace_id(tid: Optional[str] = None) -> str:
    """Bind a trace id to the current context; generates one when missing."""
    tid = str(tid or "").strip()[:16] or uuid.uuid4().hex[:8]
    _trace_id_var.set(tid)
    return tid


@contextmanager
def trace_ctx(trace_id: Optional[str] = None) -> Generator[str, None, None]:
    """Trace context for background jobs; resets on exit."""
    token = _trace_id_var.set(str(trace_id or "").strip()[:16] or uuid.uuid4().hex[:8])
    try:
        yield _trace_id_var.get()
    finally:
        _trace_id_var.reset(token)


_FMT = "%(asctime)s [%(levelname)-5s] [%(trace_id)s] %(name)s.%(funcName)s:%(lineno)d - %(message)s"
_DATE_FMT = "%Y-%m-%d %H:%M:%S"
_HANDLER_MARKER = "_is_ledger_handler"


class _TraceIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = _trace_id_var.get()
        return True


def setup_logging(level: Optional[str] = None, log_dir: Optional[str] = None) -> None:
    """Attach console and file handlers to the root logger (idempotent)."""
    root = logging.getLogger()
    if any(getattr(h, _HANDLER_MARKER, False) for h in root.handlers):
        return

    settings = get_settings()
    level_value = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)
    root.setLevel(level_value)
    trace_filter = _TraceIdFilter()

    console = colorlog.StreamHandler(stream=sys.stdout)
    console.setFormatter(
        colorlog.ColoredFormatter(
            "%(log_color)s" + _FMT,
            datefmt=_DATE_FMT,
            log_colors={
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "red,bg_white",
            },
        )
    )
    console.setLevel(level_value)
    console.addFilter(trace_filter)
    setattr(console, _HANDLER_MARKER, True)
    root.addHandler(console)

    target_dir = log_dir if log_dir is not None else settings.LOG_DIR
    if target_dir:
        os.makedirs(target_dir, exist_ok=True)
        fh = logging.handlers.RotatingFileHandler(
            os.path.join(target_dir, "ledger.log"),
            maxBytes=5 * 1024 * 1024,
            backupCount=7,
            encoding="utf-8",
        )
        fh.setLevel(level_value)
        fh.setFormatter(logging.Formatter(_FMT, datefmt=_DATE_FMT))
        fh.addFilter(trace_filter)
        setattr(fh, _HANDLER_MARKER, True)
        root.addHandler(fh)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, **fields: Any) -> None:
    """Emit a grep-friendly ``event=... | key=value`` line."""
    parts = [f"event={event}"]
    parts.extend(f"{k}={v}" for k, v in fields.items())
    logger.log(level, " | ".join(parts), stacklevel=2)
