"""
Persisted system log used by the admin logs dashboard.

Rows are written on a dedicated session so a failed request transaction never
takes the log entry down with it.
"""
from __future__ import annotations

import logging

from flask import current_app, g, has_request_context

from app.central.constants import LOG_LEVELS
from app.central.models import SystemLog

logger = logging.getLogger(__name__)

_PY_LEVELS = {"ERROR": logging.ERROR, "WARN": logging.WARNING, "INFO": logging.INFO}


def log_event(
    level: str,
    message: str,
    source: str | None = None,
    stack_trace: str | None = None,
) -> SystemLog | None:
    level = (level or "INFO").strip().upper()
    if level == "WARNING":
        level = "WARN"
    if level not in LOG_LEVELS:
        level = "INFO"

    logger.log(_PY_LEVELS[level], "%s [%s]", message, source or "-")

    request_id = None
    user_id = None
    if has_request_context():
        request_id = getattr(g, "request_id", None)
        user = getattr(g, "current_user", None)
        user_id = user.id if user else None

    sm = current_app.extensions.get("sqlalchemy_sessionmaker")
    if sm is None:
        return None
    s = sm()
    try:
        row = SystemLog(
            level=level,
            message=(message or "")[:10000],
            source=(source or None) and source[:255],
            stack_trace=stack_trace,
            request_id=request_id,
            user_id=user_id,
        )
        s.add(row)
        s.commit()
        return row
    except Exception:
        s.rollback()
        # The caller is usually already handling an error; never raise from here.
        logger.exception("Failed to persist system log entry")
        return None
    finally:
        s.close()


def log_error(message: str, source: str | None = None, stack_trace: str | None = None) -> SystemLog | None:
    return log_event("ERROR", message, source, stack_trace)
