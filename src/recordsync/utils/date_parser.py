from datetime import datetime, timezone
from typing import Any, Optional


DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y-%m-%d %H:%M:%S",
    "%d/%m/%Y",
    "%d.%m.%Y",
)


def parse_timestamp(value: str) -> Optional[datetime]:
    """
    Parse a timestamp string coming from a source system.

    Supported formats:
    - ISO 8601 with or without offset ("2025-09-16T10:00:00Z")
    - "YYYY-MM-DD" and "YYYY-MM-DD HH:MM:SS"
    - "DD/MM/YYYY" and "DD.MM.YYYY"

    Naive values are taken to be UTC.

    Args:
        value: Timestamp string

    Returns:
        Timezone-aware datetime, or None when the value cannot be parsed
    """
    value = value.strip()
    if not value:
        return None

    # fromisoformat() only accepts a trailing "Z" from Python 3.11 on
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"

    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        parsed = None
        for fmt in DATE_FORMATS:
            try:
                parsed = datetime.strptime(value, fmt)
                break
            except ValueError:
                continue

    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_date(value: Any) -> Any:
    """
    Convert a date value to an ISO 8601 string.

    Args:
        value: String or datetime

    Returns:
        ISO 8601 string, or the original value if it cannot be parsed
    """
    if isinstance(value, datetime):
        parsed: Optional[datetime] = value
        if value.tzinfo is None:
            parsed = value.replace(tzinfo=timezone.utc)
    elif isinstance(value, str):
        parsed = parse_timestamp(value)
    else:
        return value

    if parsed is None:
        return value
    return parsed.isoformat()
