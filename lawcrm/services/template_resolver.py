"""Placeholder substitution for email templates and ordered chat parameters.

Email bodies use ``{token}`` placeholders matched case-insensitively. Chat
templates declare an ordered ``param_mapping`` of parameter types; when no
mapping is stored the generic order is name, meeting date-time, location and
link.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time
import logging
import re
from typing import Any

from lawcrm.core.config import Settings
from lawcrm.schemas.meeting import MeetingStatus
from lawcrm.schemas.notification import Recipient
from lawcrm.services.lead_resolver import CanonicalLead, LegacyLead, language_code_for_lead
from lawcrm.services.meeting_store import MeetingStore

logger = logging.getLogger(__name__)

MEETING_PLACEHOLDER_TEXT = "your scheduled appointment"
DEFAULT_RECIPIENT_NAME = "Client"

_NAME_PARAMETER_TYPES = {"name", "contact_name", "client_name"}
_GENERIC_PARAMETER_ORDER = ("name", "meeting_datetime", "meeting_location", "meeting_link")


@dataclass
class TemplateContext:
    lead_key: str
    lead_type: str
    client_name: str | None = None
    contact_name: str | None = None
    lead_number: str | None = None
    topic: str | None = None
    phone: str | None = None
    mobile: str | None = None
    email: str | None = None
    meeting_date: str | None = None
    meeting_time: str | None = None
    meeting_location: str | None = None
    meeting_link: str | None = None
    previous_date: str | None = None
    previous_time: str | None = None
    previous_location: str | None = None

    @property
    def name(self) -> str:
        return self.contact_name or self.client_name or DEFAULT_RECIPIENT_NAME


class TemplateParameterResolver:
    def __init__(self, settings: Settings, *, meeting_store: MeetingStore) -> None:
        self.settings = settings
        self.meeting_store = meeting_store

    def build_context(
        self,
        lead: CanonicalLead,
        *,
        meeting: dict[str, Any] | None = None,
        recipient: Recipient | None = None,
        extra: dict[str, Any] | None = None,
    ) -> TemplateContext:
        lead_record = self.meeting_store.get_lead(
            table=lead.schema.leads_table,
            lead_key=lead.record_key,
        ) or {}
        if meeting is None:
            meeting = self.find_latest_meeting(lead, lead_record=lead_record)

        context = TemplateContext(
            lead_key=lead.canonical_key,
            lead_type=lead.kind,
            client_name=_clean(lead_record.get("name")),
            lead_number=_clean(lead_record.get("lead_number")),
            topic=_clean(lead_record.get("topic")),
            phone=_clean(lead_record.get("phone")),
            mobile=_clean(lead_record.get("mobile")),
            email=_clean(lead_record.get("email")),
        )
        if recipient is not None:
            context.contact_name = _clean(recipient.name)
            context.email = _clean(recipient.email) or context.email
            context.phone = _clean(recipient.phone) or context.phone

        if meeting:
            context.meeting_date = _clean(meeting.get("date"))
            context.meeting_time = _format_short_time(meeting.get("time"))
            context.meeting_location = _clean(meeting.get("location"))
            context.meeting_link = self.resolve_meeting_link(meeting)

        for key, value in (extra or {}).items():
            if hasattr(context, key) and value is not None:
                setattr(context, key, str(value))
        return context

    def lead_language(self, lead: CanonicalLead) -> str | None:
        lead_record = self.meeting_store.get_lead(
            table=lead.schema.leads_table,
            lead_key=lead.record_key,
        )
        return language_code_for_lead(lead, lead_record)

    def find_latest_meeting(
        self,
        lead: CanonicalLead,
        *,
        lead_record: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        meetings = [
            record
            for record in self.meeting_store.list_meetings_for_lead(
                lead_column=lead.schema.meeting_lead_column,
                lead_key=lead.record_key,
            )
            if record.get("status") != MeetingStatus.canceled
        ]
        if meetings:
            return max(meetings, key=lambda record: (str(record.get("date", "")), str(record.get("time", ""))))

        if isinstance(lead, LegacyLead) and lead_record and lead_record.get("meeting_date"):
            return {
                "date": str(lead_record.get("meeting_date")),
                "time": str(lead_record.get("meeting_time") or ""),
                "location": lead_record.get("meeting_location"),
            }
        return None

    def resolve_meeting_link(self, meeting: dict[str, Any]) -> str | None:
        location_name = _clean(meeting.get("location"))
        if location_name:
            location = self.meeting_store.get_meeting_location(location_name) or {}
            default_link = _clean(location.get("default_link"))
            if default_link:
                return default_link
        return _clean(meeting.get("join_url"))

    def render_email(self, content: str | None, context: TemplateContext) -> str:
        if not content:
            return ""
        replacements = {
            "name": context.name,
            "client_name": context.name,
            "lead_number": context.lead_number or "",
            "topic": context.topic or "",
            "lead_type": context.lead_type or "",
            "date": context.meeting_date or "",
            "time": context.meeting_time or "",
            "location": context.meeting_location or "",
            "link": context.meeting_link or "",
            "previous_date": context.previous_date or "",
            "previous_time": context.previous_time or "",
            "previous_location": context.previous_location or "",
        }
        result = content
        for token, value in replacements.items():
            result = re.sub(
                r"\{" + re.escape(token) + r"\}",
                lambda _match, value=value: value,
                result,
                flags=re.IGNORECASE,
            )
        return result

    def chat_parameters(
        self,
        *,
        param_count: int,
        param_mapping: list[dict[str, Any]] | None,
        context: TemplateContext,
    ) -> list[str]:
        definitions = [
            definition
            for definition in (param_mapping or [])
            if isinstance(definition, dict) and definition.get("type")
        ]
        if not definitions:
            definitions = [{"type": parameter_type} for parameter_type in _GENERIC_PARAMETER_ORDER]

        values = [self._parameter_value(definition, context) for definition in definitions[:param_count]]
        if len(values) < param_count:
            values.extend([""] * (param_count - len(values)))
        return values

    def _parameter_value(self, definition: dict[str, Any], context: TemplateContext) -> str:
        parameter_type = str(definition.get("type", "")).strip().lower()
        if parameter_type in _NAME_PARAMETER_TYPES:
            return context.name
        if parameter_type == "phone_number":
            return context.phone or context.mobile or ""
        if parameter_type == "mobile_number":
            return context.mobile or context.phone or ""
        if parameter_type == "email":
            return context.email or ""
        if parameter_type == "meeting_datetime":
            return format_meeting_datetime(context.meeting_date, context.meeting_time) or MEETING_PLACEHOLDER_TEXT
        if parameter_type == "meeting_date":
            formatted = format_meeting_datetime(context.meeting_date, context.meeting_time)
            return formatted.split(" at ")[0] if formatted else MEETING_PLACEHOLDER_TEXT
        if parameter_type == "meeting_time":
            formatted = format_meeting_datetime(context.meeting_date, context.meeting_time)
            parts = formatted.split(" at ") if formatted else []
            return parts[1] if len(parts) > 1 else MEETING_PLACEHOLDER_TEXT
        if parameter_type == "meeting_location":
            return context.meeting_location or ""
        if parameter_type == "meeting_link":
            return context.meeting_link or ""
        if parameter_type == "custom":
            return str(definition.get("value") or "")
        logger.info("Unknown chat parameter type=%s", parameter_type)
        return ""


def format_meeting_datetime(raw_date: str | None, raw_time: str | None) -> str:
    if not raw_date:
        return ""
    try:
        meeting_date = date.fromisoformat(raw_date.strip()[:10])
    except ValueError:
        return raw_date
    date_text = f"{meeting_date.strftime('%B')} {meeting_date.day}, {meeting_date.year}"
    meeting_time = _parse_clock(raw_time)
    if meeting_time is None:
        return date_text
    hour = meeting_time.hour % 12 or 12
    suffix = "AM" if meeting_time.hour < 12 else "PM"
    return f"{date_text} at {hour}:{meeting_time.minute:02d} {suffix}"


def _parse_clock(raw_time: str | None) -> time | None:
    if not raw_time:
        return None
    try:
        return datetime.strptime(raw_time.strip()[:5], "%H:%M").time()
    except ValueError:
        return None


def _format_short_time(raw_time: Any) -> str | None:
    cleaned = _clean(raw_time)
    if not cleaned:
        return None
    return cleaned[:5]


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None
