from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
import logging
from typing import Any

from lawcrm.core.config import Settings, get_settings
from lawcrm.schemas.lead import LeadKind, LeadReference
from lawcrm.schemas.meeting import (
    Meeting,
    MeetingDetails,
    MeetingOperationResult,
    MeetingPatch,
    MeetingState,
    MeetingStatus,
    OperationWarning,
    WarningCode,
)
from lawcrm.schemas.notification import (
    Channel,
    DispatchResult,
    EventKind,
    NotificationEvent,
    Recipient,
)
from lawcrm.services.errors import (
    AlreadyCanceled,
    MeetingNotFound,
    ValidationFailed,
)
from lawcrm.services.graph_mail_client import GraphMailClient
from lawcrm.services.ics_builder import meeting_window
from lawcrm.services.lead_resolver import (
    CanonicalLead,
    LeadIdentityResolver,
    currency_value_for_schema,
    language_code_for_lead,
    normalize_currency_code,
    normalize_language_code,
)
from lawcrm.services.meeting_store import MeetingStore, create_meeting_store
from lawcrm.services.notification_dispatcher import NotificationDispatcher
from lawcrm.services.notification_store import NotificationStore, create_notification_store
from lawcrm.services.outlook_calendar_client import OutlookCalendarClient, OutlookCalendarError
from lawcrm.services.template_resolver import TemplateParameterResolver
from lawcrm.services.timezone_utils import parse_date, parse_time, to_utc_instant
from lawcrm.services.whatsapp_client import WhatsAppClient

logger = logging.getLogger(__name__)

ROLE_FIELDS = ("manager", "scheduler", "helper", "expert")


def _is_venue_b_with_parking(location_name: str, location_record: dict[str, Any]) -> bool:
    if location_record.get("is_tlv_with_parking"):
        return True
    return "parking" in location_name and _is_venue_b(location_name, location_record)


def _is_venue_b(location_name: str, location_record: dict[str, Any]) -> bool:
    return any(marker in location_name for marker in ("tel aviv", "tlv", "venue-b", "venue b"))


def _is_venue_a(location_name: str, location_record: dict[str, Any]) -> bool:
    return any(marker in location_name for marker in ("jerusalem", "venue-a", "venue a"))


# First match wins.
INVITATION_VARIANTS: tuple[tuple[Callable[[str, dict[str, Any]], bool], EventKind], ...] = (
    (_is_venue_b_with_parking, EventKind.invitation_venue_b_parking),
    (_is_venue_b, EventKind.invitation_venue_b),
    (_is_venue_a, EventKind.invitation_venue_a),
)


def select_invitation_variant(
    location: str | None,
    location_record: dict[str, Any] | None = None,
) -> EventKind:
    location_name = " ".join((location or "").split()).lower()
    if not location_name:
        return EventKind.invitation_default
    for predicate, event_kind in INVITATION_VARIANTS:
        if predicate(location_name, location_record or {}):
            return event_kind
    return EventKind.invitation_default


class MeetingLifecycleService:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        meeting_store: MeetingStore | None = None,
        notification_store: NotificationStore | None = None,
        calendar_client: OutlookCalendarClient | None = None,
        mail_client: GraphMailClient | None = None,
        chat_client: WhatsAppClient | None = None,
        lead_resolver: LeadIdentityResolver | None = None,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.meeting_store = meeting_store or create_meeting_store(self.settings)
        self.notification_store = notification_store or create_notification_store(self.settings)
        self.calendar_client = calendar_client or OutlookCalendarClient.from_settings(self.settings)
        self.lead_resolver = lead_resolver or LeadIdentityResolver()
        self._now = now_provider or (lambda: datetime.now(UTC))
        self.template_resolver = TemplateParameterResolver(
            self.settings,
            meeting_store=self.meeting_store,
        )
        self.dispatcher = NotificationDispatcher(
            self.settings,
            notification_store=self.notification_store,
            template_resolver=self.template_resolver,
            calendar_client=self.calendar_client,
            mail_client=mail_client or GraphMailClient.from_settings(self.settings),
            chat_client=chat_client or WhatsAppClient.from_settings(self.settings),
            meeting_store=self.meeting_store,
        )

    def schedule(
        self,
        lead_ref: LeadReference | str,
        details: MeetingDetails,
        *,
        actor: str,
    ) -> MeetingOperationResult:
        lead = self.lead_resolver.resolve(lead_ref)
        record, warnings = self._create_meeting(lead, details, actor=actor)
        event_kind = self._invitation_variant(record.get("location"))
        notifications = self._notify(record, event_kind, lead, details)
        logger.info(
            "Meeting scheduled meeting_id=%s lead=%s event_kind=%s warnings=%s",
            record.get("_id"),
            lead.canonical_key,
            event_kind,
            len(warnings),
        )
        return MeetingOperationResult(
            meeting=self._to_meeting(record),
            warnings=warnings,
            notifications=notifications,
        )

    def reschedule(
        self,
        lead_ref: LeadReference | str,
        details: MeetingDetails,
        *,
        actor: str,
    ) -> MeetingOperationResult:
        lead = self.lead_resolver.resolve(lead_ref)
        self._require_date_and_time(details.date, details.time)
        new_start = to_utc_instant(details.date, details.time, self.settings.business_timezone)
        if new_start <= self._now():
            raise ValidationFailed("A rescheduled meeting must be in the future.")

        # Not transactional: the cancellation and the new insert are separate writes.
        active_meetings = sorted(self._active_meetings(lead), key=_meeting_sort_key)
        previous = None
        cancel_warnings: list[OperationWarning] = []
        for index, active_meeting in enumerate(active_meetings):
            canceled, warning = self._mark_canceled(active_meeting, actor=actor)
            if warning:
                cancel_warnings.append(warning)
            if index == 0:
                previous = canceled

        record, warnings = self._create_meeting(lead, details, actor=actor)
        warnings = [*cancel_warnings, *warnings]
        if previous is not None:
            event_kind = EventKind.rescheduled
            context = {
                "previous_date": previous.get("date"),
                "previous_time": previous.get("time"),
                "previous_location": previous.get("location"),
            }
        else:
            event_kind = self._invitation_variant(record.get("location"))
            context = None
        notifications = self._notify(record, event_kind, lead, details, context=context)
        logger.info(
            "Meeting rescheduled meeting_id=%s lead=%s canceled_meetings=%s",
            record.get("_id"),
            lead.canonical_key,
            len(active_meetings),
        )
        return MeetingOperationResult(
            meeting=self._to_meeting(record),
            canceled_meeting=self._to_meeting(previous) if previous else None,
            warnings=warnings,
            notifications=notifications,
        )

    def cancel(
        self,
        meeting_id: str,
        *,
        actor: str,
        recipients: list[Recipient] | None = None,
        notify: bool = True,
    ) -> MeetingOperationResult:
        record = self._get_meeting_record(meeting_id)
        if record.get("status") == MeetingStatus.canceled:
            raise AlreadyCanceled(meeting_id)

        canceled, warning = self._mark_canceled(record, actor=actor)
        lead = self._lead_for_record(canceled)
        notifications: list[DispatchResult] = []
        if notify:
            notifications = self.dispatcher.dispatch(
                canceled,
                EventKind.cancellation,
                recipients if recipients is not None else self.default_recipients(lead),
                lead=lead,
            )
        logger.info("Meeting canceled meeting_id=%s actor=%s", meeting_id, actor)
        return MeetingOperationResult(
            meeting=self._to_meeting(canceled),
            warnings=[warning] if warning else [],
            notifications=notifications,
        )

    def edit(self, meeting_id: str, patch: MeetingPatch, *, actor: str) -> MeetingOperationResult:
        record = self._get_meeting_record(meeting_id)
        if record.get("status") == MeetingStatus.canceled:
            raise AlreadyCanceled(meeting_id)

        changes = patch.model_dump(exclude_unset=True, exclude_none=True)
        if "date" in changes:
            changes["date"] = parse_date(changes["date"]).isoformat()
        if "time" in changes:
            changes["time"] = parse_time(changes["time"]).strftime("%H:%M")
        if "currency" in changes:
            changes["currency"] = normalize_currency_code(changes["currency"])

        merged = {**record, **changes}
        warnings: list[OperationWarning] = []
        window_changed = any(
            key in changes and changes[key] != record.get(key)
            for key in ("date", "time")
        )
        location_changed = "location" in changes and changes["location"] != record.get("location")

        if location_changed and self._is_virtual_location(merged.get("location")) and not record.get(
            "external_event_id",
        ):
            lead = self._lead_for_record(record)
            lead_record = self._get_lead_record(lead)
            event_id, join_url, warning = self._provision_calendar_event(lead, lead_record, merged)
            changes["external_event_id"] = event_id
            changes["join_url"] = join_url
            if warning:
                warnings.append(warning)
        elif window_changed and record.get("external_event_id"):
            warning = self._patch_calendar_event(record["external_event_id"], merged)
            if warning:
                warnings.append(warning)

        changes["last_edited_at"] = self._now()
        changes["last_edited_by"] = actor
        updated = self.meeting_store.update_meeting(meeting_id, changes)
        if not updated:
            raise MeetingNotFound(f"Meeting {meeting_id} was not found.")

        if any(field in changes for field in (*ROLE_FIELDS, "amount", "currency", "date", "time")):
            lead = self._lead_for_record(updated)
            self._denormalize_onto_lead(lead, self._get_lead_record(lead), updated)
        logger.info("Meeting edited meeting_id=%s fields=%s", meeting_id, sorted(changes))
        return MeetingOperationResult(meeting=self._to_meeting(updated), warnings=warnings)

    def send_reminder(
        self,
        meeting_id: str,
        *,
        recipients: list[Recipient] | None = None,
        context: dict[str, Any] | None = None,
    ) -> list[DispatchResult]:
        record = self._get_meeting_record(meeting_id)
        if record.get("status") == MeetingStatus.canceled:
            raise AlreadyCanceled(meeting_id)
        lead = self._lead_for_record(record)
        return self.dispatcher.dispatch(
            record,
            EventKind.reminder,
            recipients if recipients else self.default_recipients(lead),
            lead=lead,
            context=context,
        )

    def list_meetings(self, lead_ref: LeadReference | str) -> list[Meeting]:
        lead = self.lead_resolver.resolve(lead_ref)
        records = self.meeting_store.list_meetings_for_lead(
            lead_column=lead.schema.meeting_lead_column,
            lead_key=lead.record_key,
        )
        records.sort(key=_meeting_sort_key, reverse=True)
        return [self._to_meeting(record) for record in records]

    def get_meeting(self, meeting_id: str) -> Meeting:
        return self._to_meeting(self._get_meeting_record(meeting_id))

    def list_notifications(self, meeting_id: str) -> list[NotificationEvent]:
        self._get_meeting_record(meeting_id)
        return [
            NotificationEvent(
                id=str(event.get("_id", "")),
                meeting_id=str(event.get("meeting_id", "")),
                event_kind=event["event_kind"],
                channel=event.get("channel"),
                template_id=event.get("template_id"),
                rendered_content=event.get("rendered_content"),
                recipient_address=event.get("recipient_address"),
                outcome=event["outcome"],
                failure_reason=event.get("failure_reason"),
                created_at=event.get("created_at") or self._now(),
            )
            for event in self.notification_store.list_events_for_meeting(meeting_id)
        ]

    def default_recipients(self, lead: CanonicalLead) -> list[Recipient]:
        contacts = self.meeting_store.list_lead_contacts(lead.canonical_key)
        contacts.sort(key=lambda contact: not contact.get("is_main"))
        recipients = [
            Recipient(
                name=contact.get("name"),
                email=contact.get("email"),
                phone=contact.get("mobile") or contact.get("phone"),
                language=normalize_language_code(contact.get("language")),
                preferred_channel=_preferred_channel(contact.get("preferred_channel")),
            )
            for contact in contacts
        ]
        if recipients:
            return recipients

        lead_record = self._get_lead_record(lead)
        if not lead_record:
            return []
        return [
            Recipient(
                name=lead_record.get("name"),
                email=lead_record.get("email"),
                phone=lead_record.get("mobile") or lead_record.get("phone"),
                language=language_code_for_lead(lead, lead_record),
            ),
        ]

    def _create_meeting(
        self,
        lead: CanonicalLead,
        details: MeetingDetails,
        *,
        actor: str,
    ) -> tuple[dict[str, Any], list[OperationWarning]]:
        self._require_date_and_time(details.date, details.time)
        meeting_date = parse_date(details.date).isoformat()
        meeting_time = parse_time(details.time).strftime("%H:%M")
        to_utc_instant(meeting_date, meeting_time, self.settings.business_timezone)

        now = self._now()
        payload: dict[str, Any] = {
            lead.schema.meeting_lead_column: lead.record_key,
            "lead_key": lead.canonical_key,
            "lead_kind": lead.kind,
            "date": meeting_date,
            "time": meeting_time,
            "location": (details.location or "").strip() or None,
            "manager": details.manager,
            "scheduler": details.scheduler,
            "helper": details.helper,
            "expert": details.expert,
            "amount": details.amount,
            "currency": normalize_currency_code(details.currency),
            "brief": details.brief,
            "external_event_id": None,
            "join_url": None,
            "status": str(MeetingStatus.scheduled),
            "created_at": now,
            "last_edited_at": now,
            "last_edited_by": actor,
        }

        warnings: list[OperationWarning] = []
        lead_record = self._get_lead_record(lead)
        if self._is_virtual_location(payload["location"]):
            event_id, join_url, warning = self._provision_calendar_event(lead, lead_record, payload)
            payload["external_event_id"] = event_id
            payload["join_url"] = join_url
            if warning:
                warnings.append(warning)

        record = self.meeting_store.create_meeting(payload)
        self._denormalize_onto_lead(lead, lead_record, record)
        return record, warnings

    def _require_date_and_time(self, raw_date: str | None, raw_time: str | None) -> None:
        missing = [
            field_name
            for field_name, value in (("date", raw_date), ("time", raw_time))
            if not (value or "").strip()
        ]
        if missing:
            raise ValidationFailed(f"Meeting {' and '.join(missing)} required.")

    def _provision_calendar_event(
        self,
        lead: CanonicalLead,
        lead_record: dict[str, Any] | None,
        meeting: dict[str, Any],
    ) -> tuple[str | None, str | None, OperationWarning | None]:
        if self.calendar_client is None:
            return None, None, OperationWarning(
                code=WarningCode.calendar_provisioning_failed,
                detail="Calendar provider is not configured.",
            )
        start, end = self._window(meeting)
        try:
            event = self.calendar_client.create_event(
                subject=self._event_subject(lead, lead_record, meeting),
                start=start,
                end=end,
                location=meeting.get("location"),
            )
        except OutlookCalendarError as exc:
            logger.warning(
                "Calendar provisioning failed lead=%s status_code=%s error=%s",
                lead.canonical_key,
                exc.status_code,
                exc,
            )
            return None, None, OperationWarning(
                code=WarningCode.calendar_provisioning_failed,
                detail=str(exc),
            )
        return event.event_id, event.join_url, None

    def _patch_calendar_event(self, event_id: str, meeting: dict[str, Any]) -> OperationWarning | None:
        if self.calendar_client is None:
            return OperationWarning(
                code=WarningCode.calendar_patch_failed,
                detail="Calendar provider is not configured.",
            )
        start, end = self._window(meeting)
        try:
            self.calendar_client.patch_event(event_id, start=start, end=end)
        except OutlookCalendarError as exc:
            logger.warning(
                "Calendar patch failed event_id=%s status_code=%s error=%s",
                event_id,
                exc.status_code,
                exc,
            )
            return OperationWarning(code=WarningCode.calendar_patch_failed, detail=str(exc))
        return None

    def _cancel_calendar_event(self, event_id: str) -> OperationWarning | None:
        if self.calendar_client is None:
            return OperationWarning(
                code=WarningCode.calendar_cancel_failed,
                detail="Calendar provider is not configured.",
            )
        try:
            self.calendar_client.cancel_event(event_id, comment="This meeting has been canceled.")
        except OutlookCalendarError as exc:
            logger.warning(
                "Calendar cancel failed event_id=%s status_code=%s error=%s",
                event_id,
                exc.status_code,
                exc,
            )
            return OperationWarning(code=WarningCode.calendar_cancel_failed, detail=str(exc))
        return None

    def _event_subject(
        self,
        lead: CanonicalLead,
        lead_record: dict[str, Any] | None,
        meeting: dict[str, Any],
    ) -> str:
        lead_record = lead_record or {}
        identifier = str(lead_record.get("lead_number") or lead.canonical_key)
        label = meeting.get("brief") or lead_record.get("name") or "Meeting"
        return f"[{identifier}] - {label}"

    def _denormalize_onto_lead(
        self,
        lead: CanonicalLead,
        lead_record: dict[str, Any] | None,
        meeting: dict[str, Any],
    ) -> None:
        if not lead_record:
            logger.info("Lead record missing, skipping denormalization lead=%s", lead.canonical_key)
            return

        schema = lead.schema
        changes: dict[str, Any] = {}
        for role, column in schema.role_columns.items():
            display_name = (meeting.get(role) or "").strip()
            if not display_name:
                continue
            if schema.employee_reference == "display_name":
                changes[column] = display_name
                continue
            employee = self.meeting_store.find_employee_by_display_name(display_name)
            if not employee or employee.get("id") is None:
                logger.info(
                    "Employee not found, role not denormalized lead=%s role=%s name=%s",
                    lead.canonical_key,
                    role,
                    display_name,
                )
                continue
            changes[column] = employee["id"]

        if meeting.get("amount") is not None:
            changes[schema.amount_column] = meeting["amount"]
        currency_value = currency_value_for_schema(meeting.get("currency"), schema)
        if currency_value is not None:
            changes[schema.currency_column] = currency_value
        if lead.kind == LeadKind.legacy:
            changes["meeting_date"] = meeting.get("date")
            changes["meeting_time"] = meeting.get("time")

        if changes:
            self.meeting_store.update_lead(
                table=schema.leads_table,
                lead_key=lead.record_key,
                changes=changes,
            )

    def _notify(
        self,
        record: dict[str, Any],
        event_kind: EventKind,
        lead: CanonicalLead,
        details: MeetingDetails,
        *,
        context: dict[str, Any] | None = None,
    ) -> list[DispatchResult]:
        if not details.notify:
            return []
        recipients = details.recipients if details.recipients is not None else self.default_recipients(lead)
        return self.dispatcher.dispatch(record, event_kind, recipients, lead=lead, context=context)

    def _mark_canceled(
        self,
        record: dict[str, Any],
        *,
        actor: str,
    ) -> tuple[dict[str, Any], OperationWarning | None]:
        meeting_id = str(record.get("_id", ""))
        updated = self.meeting_store.update_meeting(
            meeting_id,
            {
                "status": str(MeetingStatus.canceled),
                "last_edited_at": self._now(),
                "last_edited_by": actor,
            },
        )
        if not updated:
            raise MeetingNotFound(f"Meeting {meeting_id} was not found.")
        warning = None
        if updated.get("external_event_id"):
            warning = self._cancel_calendar_event(updated["external_event_id"])
        return updated, warning

    def _active_meetings(self, lead: CanonicalLead) -> list[dict[str, Any]]:
        return [
            record
            for record in self.meeting_store.list_meetings_for_lead(
                lead_column=lead.schema.meeting_lead_column,
                lead_key=lead.record_key,
            )
            if self._derive_state(record) == MeetingState.scheduled
        ]

    def _get_meeting_record(self, meeting_id: str) -> dict[str, Any]:
        record = self.meeting_store.get_meeting(meeting_id)
        if not record:
            raise MeetingNotFound(f"Meeting {meeting_id} was not found.")
        return record

    def _get_lead_record(self, lead: CanonicalLead) -> dict[str, Any] | None:
        return self.meeting_store.get_lead(table=lead.schema.leads_table, lead_key=lead.record_key)

    def _lead_for_record(self, record: dict[str, Any]) -> CanonicalLead:
        return self.lead_resolver.resolve(
            LeadReference(lead_id=str(record.get("lead_key", "")), kind=record.get("lead_kind")),
        )

    def _invitation_variant(self, location: str | None) -> EventKind:
        location_record = self.meeting_store.get_meeting_location(location) if location else None
        return select_invitation_variant(location, location_record)

    def _is_virtual_location(self, location: str | None) -> bool:
        cleaned = (location or "").strip().lower()
        if not cleaned:
            return False
        return cleaned in {venue.strip().lower() for venue in self.settings.virtual_meeting_locations}

    def _window(self, meeting: dict[str, Any]) -> tuple[datetime, datetime]:
        return meeting_window(
            str(meeting.get("date")),
            str(meeting.get("time")),
            duration_minutes=self.settings.meeting_duration_minutes,
            zone_name=self.settings.business_timezone,
        )

    def _derive_state(self, record: dict[str, Any]) -> MeetingState:
        if record.get("status") == MeetingStatus.canceled:
            return MeetingState.canceled
        try:
            start = to_utc_instant(
                str(record.get("date", "")),
                str(record.get("time") or "00:00"),
                self.settings.business_timezone,
            )
        except ValidationFailed:
            return MeetingState.scheduled
        if start < self._now():
            return MeetingState.past
        return MeetingState.scheduled

    def _to_meeting(self, record: dict[str, Any]) -> Meeting:
        return Meeting(
            id=str(record.get("_id", "")),
            lead_id=str(record.get("lead_key", "")),
            lead_kind=record.get("lead_kind") or LeadKind.modern,
            date=str(record.get("date", "")),
            time=str(record.get("time", "")),
            location=record.get("location"),
            manager=record.get("manager"),
            scheduler=record.get("scheduler"),
            helper=record.get("helper"),
            expert=record.get("expert"),
            amount=record.get("amount"),
            currency=record.get("currency"),
            brief=record.get("brief"),
            external_event_id=record.get("external_event_id"),
            join_url=record.get("join_url"),
            status=record.get("status") or MeetingStatus.scheduled,
            state=self._derive_state(record),
            last_edited_at=record.get("last_edited_at"),
            last_edited_by=record.get("last_edited_by"),
            created_at=record.get("created_at") or self._now(),
        )


def _preferred_channel(raw_value: Any) -> Channel | None:
    if raw_value in {Channel.email, Channel.chat}:
        return Channel(raw_value)
    return None


def _meeting_sort_key(record: dict[str, Any]) -> tuple[str, str]:
    return str(record.get("date", "")), str(record.get("time", ""))
