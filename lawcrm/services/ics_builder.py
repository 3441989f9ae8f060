from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
import secrets

from lawcrm.services.timezone_utils import (
    format_ics_timestamp,
    format_utc_offset,
    to_utc_instant,
    zone_offset_minutes,
)

_PRODID = "-//Law Office CRM//Meeting Invitation//EN"
_UID_DOMAIN = "lawoffice-crm"


@dataclass
class CalendarInvitation:
    subject: str
    start: datetime
    end: datetime
    location: str
    attendee_email: str
    attendee_name: str | None = None
    description: str = ""
    organizer_email: str = "noreply@lawoffice.org.il"
    organizer_name: str = "Law Office"
    join_url: str | None = None
    zone_name: str = "Asia/Jerusalem"


def meeting_window(
    raw_date: str,
    raw_time: str,
    *,
    duration_minutes: int,
    zone_name: str,
) -> tuple[datetime, datetime]:
    start = to_utc_instant(raw_date, raw_time, zone_name)
    return start, start + timedelta(minutes=duration_minutes)


def build_ics(invitation: CalendarInvitation, *, now: datetime | None = None, uid: str | None = None) -> str:
    stamp = format_ics_timestamp(now or datetime.now(UTC))
    event_uid = uid or _generate_uid(now)

    description = invitation.description or ""
    if invitation.join_url:
        separator = "\n\n" if description else ""
        description = f"{description}{separator}Join Teams Meeting: {invitation.join_url}"

    offset = format_utc_offset(zone_offset_minutes(invitation.start, invitation.zone_name))
    attendee_label = invitation.attendee_name or invitation.attendee_email

    lines = [
        "BEGIN:VCALENDAR",
        f"PRODID:{_PRODID}",
        "VERSION:2.0",
        "CALSCALE:GREGORIAN",
        "METHOD:REQUEST",
        f"X-WR-TIMEZONE:{invitation.zone_name}",
        f"X-LAWCRM-UTC-OFFSET:{offset}",
        "BEGIN:VEVENT",
        f"UID:{event_uid}",
        f"DTSTAMP:{stamp}",
        f"DTSTART:{format_ics_timestamp(invitation.start)}",
        f"DTEND:{format_ics_timestamp(invitation.end)}",
        f"SUMMARY:{escape_ics_text(invitation.subject)}",
        f"LOCATION:{escape_ics_text(invitation.location)}",
    ]
    if description:
        lines.append(f"DESCRIPTION:{escape_ics_text(description)}")
    lines.extend(
        [
            f'ORGANIZER;CN="{escape_ics_text(invitation.organizer_name)}":MAILTO:{invitation.organizer_email}',
            f'ATTENDEE;CN="{escape_ics_text(attendee_label)}";RSVP=TRUE:MAILTO:{invitation.attendee_email}',
            "STATUS:CONFIRMED",
            "SEQUENCE:0",
        ],
    )
    if invitation.join_url:
        lines.append(f"URL:{invitation.join_url}")
        lines.append(f"X-MICROSOFT-SKYPETEAMSMEETINGURL:{invitation.join_url}")
    lines.extend(["END:VEVENT", "END:VCALENDAR"])
    return "\r\n".join(lines) + "\r\n"


def escape_ics_text(value: str) -> str:
    return (
        (value or "")
        .replace("\\", "\\\\")
        .replace(";", "\\;")
        .replace(",", "\\,")
        .replace("\r", "")
        .replace("\n", "\\n")
    )


def _generate_uid(now: datetime | None) -> str:
    timestamp = int((now or datetime.now(UTC)).timestamp() * 1000)
    return f"meeting-{timestamp}-{secrets.token_hex(4)}@{_UID_DOMAIN}"
