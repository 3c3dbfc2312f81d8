from __future__ import annotations

import json
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from flask import request
from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB

# JSONB on Postgres, plain JSON elsewhere (SQLite in dev/tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class ValidationError(ValueError):
    """Raised by service functions; routes turn it into a 400."""

    def __init__(self, errors: list[str] | str):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = errors
        super().__init__("; ".join(errors))


def request_payload() -> dict[str, Any]:
    """JSON body when present, otherwise form fields (the client posts both)."""
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def clean_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return clean_str(value).lower() in ("1", "true", "yes", "on")


def parse_date(s: str | None) -> date | None:
    s = (s or "").strip()
    if not s:
        return None
    try:
        return date.fromisoformat(s)
    except ValueError:
        return None


def parse_datetime(s: str | None) -> datetime | None:
    s = (s or "").strip()
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None
    # Stored naive, in UTC
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def day_start(d: date) -> datetime:
    return datetime.combine(d, time.min)


def day_after(d: date) -> datetime:
    # inclusive end-date (treat as whole day)
    return datetime.combine(d + timedelta(days=1), time.min)


def parse_int(value: Any, default: int, *, minimum: int | None = None, maximum: int | None = None) -> int:
    try:
        n = int(clean_str(value))
    except ValueError:
        return default
    if minimum is not None and n < minimum:
        n = minimum
    if maximum is not None and n > maximum:
        n = maximum
    return n


def parse_str_list(value: Any) -> list[str]:
    """Accepts a JSON list, a JSON-encoded list string or a comma-separated string."""
    if value is None:
        return []
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return []
        if raw.startswith("["):
            try:
                value = json.loads(raw)
            except json.JSONDecodeError as e:
                raise ValidationError(f"Invalid list JSON: {e}") from e
        else:
            value = raw.split(",")
    if not isinstance(value, (list, tuple)):
        raise ValidationError("Expected a list.")
    out: list[str] = []
    for item in value:
        item = clean_str(item)
        if item and item not in out:
            out.append(item)
    return out


def parse_json_object(value: Any) -> dict | None:
    """Parse a JSON object from a dict or a JSON string."""
    if value is None or value == "":
        return None
    if isinstance(value, dict):
        return value
    try:
        parsed = json.loads(str(value))
    except json.JSONDecodeError as e:
        raise ValidationError(f"Config JSON is invalid: {e}") from e
    if not isinstance(parsed, dict):
        raise ValidationError("Config must be a JSON object.")
    return parsed


def isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
