"""Wall-clock <-> UTC conversions for meetings held in the office time zone.

The server clock is never assumed to match the business zone. A wall-clock
``(date, time)`` is converted by treating it as UTC, rendering that
provisional instant in the target zone, and subtracting the difference
between the rendered and the requested wall-clock. The rendering is done for
the specific calendar date, so DST rules in force on that day apply.

Wall-clock values inside a spring-forward gap or a fall-back overlap resolve
with the zone's standard-time offset.
"""

import re
from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from lawcrm.services.errors import ValidationFailed

_EXPLICIT_OFFSET_PATTERN = re.compile(r"(Z|[+-]\d{2}:?\d{2})$", re.IGNORECASE)
_TIME_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")


def resolve_zone(zone_name: str) -> ZoneInfo:
    cleaned = (zone_name or "").strip()
    if not cleaned:
        raise ValidationFailed("Time zone name is required.")
    if cleaned.upper() in {"UTC", "GMT", "Z"}:
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(cleaned)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationFailed(f"Unknown time zone: {cleaned}") from exc


def parse_date(raw_date: str | date) -> date:
    if isinstance(raw_date, date):
        return raw_date
    try:
        return date.fromisoformat(raw_date.strip())
    except ValueError as exc:
        raise ValidationFailed(f"Meeting date is not a valid ISO date: {raw_date}") from exc


def parse_time(raw_time: str | time) -> time:
    if isinstance(raw_time, time):
        return raw_time.replace(microsecond=0, tzinfo=None)
    match = _TIME_PATTERN.match(raw_time.strip())
    if not match:
        raise ValidationFailed(f"Meeting time must use HH:MM format: {raw_time}")
    hours, minutes, seconds = match.group(1), match.group(2), match.group(3) or "0"
    try:
        return time(hour=int(hours), minute=int(minutes), second=int(seconds))
    except ValueError as exc:
        raise ValidationFailed(f"Meeting time is out of range: {raw_time}") from exc


def to_utc_instant(raw_date: str | date, raw_time: str | time, zone_name: str) -> datetime:
    zone = resolve_zone(zone_name)
    requested = datetime.combine(parse_date(raw_date), parse_time(raw_time))

    provisional = requested.replace(tzinfo=UTC)
    displayed = provisional.astimezone(zone).replace(tzinfo=None)
    corrected = provisional - (displayed - requested)

    if _is_transition_wall_clock(requested, zone):
        return _resolve_with_standard_offset(requested, zone)
    if corrected.astimezone(zone).replace(tzinfo=None) != requested:
        # The provisional instant fell on the other side of a DST change.
        return _resolve_with_standard_offset(requested, zone)
    return corrected


def to_wall_clock(instant: datetime, zone_name: str) -> tuple[str, str]:
    zone = resolve_zone(zone_name)
    local = _ensure_aware(instant).astimezone(zone)
    return local.date().isoformat(), local.strftime("%H:%M")


def parse_instant(raw_value: str, zone_name: str) -> datetime:
    cleaned = (raw_value or "").strip()
    if not cleaned:
        raise ValidationFailed("Date-time value is required.")
    if _EXPLICIT_OFFSET_PATTERN.search(cleaned):
        normalized = re.sub(r"[zZ]$", "+00:00", cleaned)
        try:
            return datetime.fromisoformat(normalized).astimezone(UTC)
        except ValueError as exc:
            raise ValidationFailed(f"Date-time value is not valid ISO format: {raw_value}") from exc

    if "T" in cleaned:
        date_part, _, time_part = cleaned.partition("T")
    else:
        date_part, _, time_part = cleaned.partition(" ")
    return to_utc_instant(date_part, time_part or "00:00:00", zone_name)


def format_ics_timestamp(instant: datetime) -> str:
    return _ensure_aware(instant).astimezone(UTC).strftime("%Y%m%dT%H%M%SZ")


def zone_offset_minutes(instant: datetime, zone_name: str) -> int:
    zone = resolve_zone(zone_name)
    offset = _ensure_aware(instant).astimezone(zone).utcoffset() or timedelta(0)
    return int(offset.total_seconds() // 60)


def format_utc_offset(offset_minutes: int, *, separator: str = "") -> str:
    sign = "+" if offset_minutes >= 0 else "-"
    hours, minutes = divmod(abs(offset_minutes), 60)
    return f"{sign}{hours:02d}{separator}{minutes:02d}"


def _ensure_aware(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        return instant.replace(tzinfo=UTC)
    return instant


def _is_transition_wall_clock(requested: datetime, zone: ZoneInfo) -> bool:
    first = requested.replace(tzinfo=zone, fold=0)
    second = requested.replace(tzinfo=zone, fold=1)
    return first.utcoffset() != second.utcoffset()


def _resolve_with_standard_offset(requested: datetime, zone: ZoneInfo) -> datetime:
    candidates = [requested.replace(tzinfo=zone, fold=fold) for fold in (0, 1)]
    for candidate in candidates:
        if not candidate.dst():
            return candidate.astimezone(UTC)
    return candidates[0].astimezone(UTC)
