"""Shared request-parsing helpers.

parse_date:      ISO / DD.MM.YYYY date parsing (None on bad input)
parse_date_input: same, but raises ValidationError for API payloads
parse_id_list:   list of integer ids from a JSON body field
"""
from datetime import date, datetime

from taskflow.core.exceptions import ValidationError


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (ISO format)
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
    - DD.MM.YYYY (European format)
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d.%m.%Y").date()
    except (ValueError, TypeError):
        return None


def parse_date_input(value, field):
    """Parse a required date field, raising ValidationError on bad input."""
    if value in (None, ""):
        raise ValidationError(f"{field} is required", {field: "required"})
    parsed = parse_date(value)
    if parsed is None:
        raise ValidationError(f"{field} must be a date (YYYY-MM-DD)", {field: "invalid date"})
    return parsed


def parse_id_list(data, field="task_ids"):
    """Return ``data[field]`` as a list of ints, raising ValidationError otherwise."""
    raw = data.get(field)
    if not isinstance(raw, list) or not raw:
        raise ValidationError(f"{field} must be a non-empty list", {field: "required"})
    try:
        return [int(v) for v in raw]
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must contain integers", {field: "invalid"})
