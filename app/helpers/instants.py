from datetime import UTC, datetime, timedelta, tzinfo


def utc_now() -> datetime:
    return datetime.now(UTC)


def ensure_aware(value: datetime) -> datetime:
    """
    Returns the instant in UTC.

    Raises a `ValueError` if the datetime has no timezone, as it could be read in any of them.
    """
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError(f"Datetime {value.isoformat()} has no timezone")
    return value.astimezone(UTC)


def to_instant(value: datetime, timezone_offset: int | None = None) -> datetime:
    """
    Convert a user input to an UTC instant.

    A datetime with a timezone is used as is. A naive datetime is a local time, and requires `timezone_offset`: the minutes to add to the local time to get UTC, as returned by JavaScript `Date.getTimezoneOffset()` (-330 for India, 60 for Azores in winter).
    """
    if value.tzinfo is not None and value.utcoffset() is not None:
        return value.astimezone(UTC)
    if timezone_offset is None:
        raise ValueError(
            f"Datetime {value.isoformat()} has no timezone, either add an offset or send the timezone_offset"
        )
    return (value + timedelta(minutes=timezone_offset)).replace(tzinfo=UTC)


def duration_min(start: datetime, end: datetime) -> int:
    """
    Duration between two instants, rounded to the minute.
    """
    return round((end - start).total_seconds() / 60)


def format_time(value: datetime, tz: tzinfo) -> str:
    """
    Format the time of day, like "9:05 PM".
    """
    local = value.astimezone(tz)
    hour = local.hour % 12 or 12
    return f"{hour}:{local.minute:02d} {'PM' if local.hour >= 12 else 'AM'}"


def format_date_time(value: datetime, tz: tzinfo) -> str:
    """
    Format a full date and time, like "Tuesday, January 16th, 2024 at 9:05 PM".
    """
    local = value.astimezone(tz)
    return f"{local.strftime('%A, %B')} {_ordinal(local.day)}, {local.year} at {format_time(value, tz)}"


def _ordinal(day: int) -> str:
    if 11 <= day % 100 <= 13:
        return f"{day}th"
    return f"{day}{({1: 'st', 2: 'nd', 3: 'rd'}).get(day % 10, 'th')}"
