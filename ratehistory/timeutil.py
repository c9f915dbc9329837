"""Timestamp helpers shared by the history files and the archive client."""

from datetime import datetime, timezone


def parse_iso(value: str) -> datetime:
    """Parse an ISO 8601 timestamp; a trailing Z and naive values mean UTC."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_iso(moment: datetime) -> str:
    """Format as `YYYY-MM-DDTHH:MM:SS(.fff)Z` in UTC."""
    moment = moment.astimezone(timezone.utc)
    if moment.microsecond:
        text = moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}"
    else:
        text = moment.strftime("%Y-%m-%dT%H:%M:%S")
    return text + "Z"


def now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))
