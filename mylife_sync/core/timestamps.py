"""Timestamp parsing for pump-reported date strings.

Pump clocks are local wall time and firmware versions disagree on the
format, so parsing tries a fixed list of layouts before giving up.
"""

from datetime import UTC, datetime, tzinfo

_DEVICE_FORMATS = (
    "%d.%m.%Y %H:%M:%S",
    "%d.%m.%Y %H:%M",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%m/%d/%Y %I:%M:%S %p",
    "%m/%d/%Y %I:%M %p",
)


def parse_device_timestamp(value: str, device_tz: tzinfo) -> datetime:
    """Parse a pump timestamp into naive pump-local time.

    Offset-aware ISO values are converted into the pump's zone first.

    Raises:
        ValueError: If no known format matches
    """
    text = (value or "").strip()
    if not text:
        raise ValueError("Empty device timestamp")

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        parsed = None

    if parsed is None:
        for fmt in _DEVICE_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue

    if parsed is None:
        raise ValueError(f"Invalid device timestamp: {text!r}")

    if parsed.tzinfo is not None:
        try:
            parsed = parsed.astimezone(device_tz).replace(tzinfo=None)
        except OverflowError as e:
            raise ValueError(f"Device timestamp out of range: {text!r}") from e
    return parsed


def device_time_to_utc(value: datetime, device_tz: tzinfo) -> datetime:
    """Attach the pump's zone to a naive pump timestamp and convert to UTC.

    Raises:
        ValueError: If the UTC instant falls outside the supported years
    """
    try:
        return value.replace(tzinfo=device_tz).astimezone(UTC)
    except OverflowError as e:
        raise ValueError(f"Device timestamp out of range: {value.isoformat()}") from e
