from __future__ import annotations

from datetime import UTC, datetime
import logging
from typing import Any

from lawcrm.core.config import Settings
from lawcrm.schemas.notification import (
    Channel,
    DispatchOutcome,
    DispatchResult,
    EventKind,
    FailureReason,
    Recipient,
)
from lawcrm.services.errors import PersistenceFailure
from lawcrm.services.graph_mail_client import (
    GraphMailAuthenticationError,
    GraphMailClient,
    GraphMailError,
    MailAttachment,
)
from lawcrm.services.ics_builder import CalendarInvitation, build_ics, meeting_window
from lawcrm.services.lead_resolver import CanonicalLead
from lawcrm.services.meeting_store import MeetingStore
from lawcrm.services.notification_store import NotificationStore
from lawcrm.services.outlook_calendar_client import CalendarEvent, OutlookCalendarClient, OutlookCalendarError
from lawcrm.services.template_resolver import TemplateContext, TemplateParameterResolver
from lawcrm.services.whatsapp_client import (
    AUTHENTICATION_REQUIRED,
    RE_ENGAGEMENT_REQUIRED,
    WhatsAppClient,
    WhatsAppError,
)

logger = logging.getLogger(__name__)

_NATIVE_INVITE_EVENT_KINDS = frozenset(
    {
        EventKind.invitation_venue_a,
        EventKind.invitation_venue_b,
        EventKind.invitation_venue_b_parking,
        EventKind.invitation_default,
        EventKind.rescheduled,
    },
)
# Reminders carry an ICS attachment but never create provider events.
_ATTACHMENT_EVENT_KINDS = _NATIVE_INVITE_EVENT_KINDS | {EventKind.reminder}


class NotificationDispatcher:
    def __init__(
        self,
        settings: Settings,
        *,
        notification_store: NotificationStore,
        template_resolver: TemplateParameterResolver,
        calendar_client: OutlookCalendarClient | None = None,
        mail_client: GraphMailClient | None = None,
        chat_client: WhatsAppClient | None = None,
        meeting_store: MeetingStore | None = None,
    ) -> None:
        self.settings = settings
        self.notification_store = notification_store
        self.template_resolver = template_resolver
        self.calendar_client = calendar_client
        self.mail_client = mail_client
        self.chat_client = chat_client
        self.meeting_store = meeting_store

    def dispatch(
        self,
        meeting: dict[str, Any],
        event_kind: EventKind,
        recipients: list[Recipient],
        *,
        lead: CanonicalLead,
        context: dict[str, Any] | None = None,
    ) -> list[DispatchResult]:
        results: list[DispatchResult] = []
        lead_language = None
        if event_kind == EventKind.rescheduled:
            try:
                lead_language = self.template_resolver.lead_language(lead)
            except PersistenceFailure as exc:
                logger.warning("Lead language unavailable lead=%s error=%s", lead.canonical_key, exc)

        for recipient in recipients:
            language = self._select_language(event_kind, recipient, lead_language)
            channel = select_channel(recipient)
            if channel is None:
                result = DispatchResult(
                    recipient=recipient.name,
                    outcome=DispatchOutcome.failed,
                    reason=FailureReason.no_channel,
                    detail="Recipient has no email address or phone number.",
                )
                self._record(meeting, event_kind, result, rendered_content=None)
                results.append(result)
                continue

            try:
                template_context = self.template_resolver.build_context(
                    lead,
                    meeting=meeting,
                    recipient=recipient,
                    extra=context,
                )
                if channel == Channel.email:
                    result, rendered = self._dispatch_email(meeting, event_kind, recipient, language, template_context)
                else:
                    result, rendered = self._dispatch_chat(event_kind, recipient, language, template_context)
            except PersistenceFailure as exc:
                logger.warning("Notification lookup failed recipient=%s error=%s", recipient.name, exc)
                address = recipient.email if channel == Channel.email else recipient.phone
                result = self._failed(address, channel, FailureReason.persistence_failed, detail=str(exc))
                rendered = None
            self._record(meeting, event_kind, result, rendered_content=rendered)
            results.append(result)

        logger.info(
            "Notification dispatch finished meeting_id=%s event_kind=%s recipients=%s sent=%s",
            meeting.get("_id"),
            event_kind,
            len(results),
            sum(1 for result in results if result.outcome == DispatchOutcome.sent),
        )
        return results

    def _select_language(
        self,
        event_kind: EventKind,
        recipient: Recipient,
        lead_language: str | None,
    ) -> str:
        if event_kind == EventKind.rescheduled and lead_language:
            return lead_language
        explicit_language = (recipient.language or "").strip().lower()
        return explicit_language or self.settings.default_notification_language

    def _dispatch_email(
        self,
        meeting: dict[str, Any],
        event_kind: EventKind,
        recipient: Recipient,
        language: str,
        context: TemplateContext,
    ) -> tuple[DispatchResult, str | None]:
        address = (recipient.email or "").strip()
        template = self.notification_store.find_email_template(event_kind=str(event_kind), language=language)
        if not template:
            return self._failed(address, Channel.email, FailureReason.template_not_found, language=language), None

        template_id = str(template.get("_id") or "") or None
        subject = self.template_resolver.render_email(template.get("subject"), context)
        body = self.template_resolver.render_email(template.get("body"), context)

        if event_kind in _NATIVE_INVITE_EVENT_KINDS and self._is_managed_domain(address):
            return self._send_native_invite(meeting, address, subject, body, template_id), body

        if self.mail_client is None:
            return (
                self._failed(
                    address,
                    Channel.email,
                    FailureReason.transport_failed,
                    detail="Email transport is not configured.",
                    template_id=template_id,
                ),
                body,
            )

        attachments = None
        if event_kind in _ATTACHMENT_EVENT_KINDS:
            attachments = [
                MailAttachment(
                    name="meeting.ics",
                    content=self._build_attachment(meeting, recipient, subject, context),
                ),
            ]
        try:
            self.mail_client.send(to=[address], subject=subject, html_body=body, attachments=attachments)
        except GraphMailAuthenticationError as exc:
            return (
                self._failed(
                    address,
                    Channel.email,
                    FailureReason.authentication_required,
                    detail=str(exc),
                    template_id=template_id,
                ),
                body,
            )
        except GraphMailError as exc:
            logger.warning("Email dispatch failed recipient=%s error=%s", address, exc)
            return (
                self._failed(
                    address,
                    Channel.email,
                    FailureReason.transport_failed,
                    detail=str(exc),
                    template_id=template_id,
                ),
                body,
            )
        return (
            DispatchResult(
                recipient=address,
                channel=Channel.email,
                outcome=DispatchOutcome.sent,
                template_id=template_id,
            ),
            body,
        )

    def _send_native_invite(
        self,
        meeting: dict[str, Any],
        address: str,
        subject: str,
        body: str,
        template_id: str | None,
    ) -> DispatchResult:
        if self.calendar_client is None:
            return self._failed(
                address,
                Channel.email,
                FailureReason.transport_failed,
                detail="Calendar provider is not configured.",
                template_id=template_id,
            )
        event_id = str(meeting.get("external_event_id") or "").strip()
        try:
            if event_id:
                self.calendar_client.add_attendee(event_id, address)
            else:
                start, end = self._window(meeting)
                event = self.calendar_client.create_event(
                    subject=subject,
                    start=start,
                    end=end,
                    location=meeting.get("location"),
                    attendee_email=address,
                    body=body,
                )
                self._link_calendar_event(meeting, event)
        except OutlookCalendarError as exc:
            logger.warning(
                "Calendar invite dispatch failed recipient=%s status_code=%s",
                address,
                exc.status_code,
            )
            reason = FailureReason.authentication_required if exc.status_code == 401 else FailureReason.transport_failed
            return self._failed(address, Channel.email, reason, detail=str(exc), template_id=template_id)
        return DispatchResult(
            recipient=address,
            channel=Channel.email,
            outcome=DispatchOutcome.sent,
            template_id=template_id,
            via_calendar_invite=True,
        )

    def _link_calendar_event(self, meeting: dict[str, Any], event: CalendarEvent) -> None:
        changes: dict[str, Any] = {"external_event_id": event.event_id}
        if event.join_url and not meeting.get("join_url"):
            changes["join_url"] = event.join_url
        meeting.update(changes)
        if self.meeting_store is None or not meeting.get("_id"):
            return
        try:
            self.meeting_store.update_meeting(str(meeting["_id"]), changes)
        except PersistenceFailure as exc:
            logger.warning(
                "Calendar event link not stored meeting_id=%s event_id=%s error=%s",
                meeting.get("_id"),
                event.event_id,
                exc,
            )

    def _dispatch_chat(
        self,
        event_kind: EventKind,
        recipient: Recipient,
        language: str,
        context: TemplateContext,
    ) -> tuple[DispatchResult, str | None]:
        address = (recipient.phone or "").strip()
        template = self.notification_store.find_chat_template(event_kind=str(event_kind), language=language)
        if not template:
            return self._failed(address, Channel.chat, FailureReason.template_not_found, language=language), None

        template_id = str(template.get("_id") or "") or None
        param_count = _declared_param_count(template.get("param_count"))
        if param_count is None:
            return (
                self._failed(
                    address,
                    Channel.chat,
                    FailureReason.template_misconfigured,
                    detail="Chat template does not declare param_count.",
                    template_id=template_id,
                ),
                None,
            )

        parameters = self.template_resolver.chat_parameters(
            param_count=param_count,
            param_mapping=template.get("param_mapping"),
            context=context,
        )
        template_name = str(template.get("name") or "")
        rendered = f"{template_name}: " + " | ".join(parameters)
        if self.chat_client is None:
            return (
                self._failed(
                    address,
                    Channel.chat,
                    FailureReason.transport_failed,
                    detail="Chat transport is not configured.",
                    template_id=template_id,
                ),
                rendered,
            )

        try:
            delivery = self.chat_client.send_template(
                recipient_address=address,
                template_name=template_name,
                language=str(template.get("language_code") or language),
                parameters=parameters,
            )
        except WhatsAppError as exc:
            logger.warning("Chat dispatch failed recipient=%s error=%s", address, exc)
            return (
                self._failed(
                    address,
                    Channel.chat,
                    FailureReason.transport_failed,
                    detail=str(exc),
                    template_id=template_id,
                ),
                rendered,
            )

        if delivery.delivered:
            return (
                DispatchResult(
                    recipient=address,
                    channel=Channel.chat,
                    outcome=DispatchOutcome.sent,
                    template_id=template_id,
                ),
                rendered,
            )
        reason = FailureReason.transport_failed
        if delivery.code == RE_ENGAGEMENT_REQUIRED:
            reason = FailureReason.re_engagement_required
        elif delivery.code == AUTHENTICATION_REQUIRED:
            reason = FailureReason.authentication_required
        return (
            self._failed(address, Channel.chat, reason, detail=delivery.detail, template_id=template_id),
            rendered,
        )

    def _build_attachment(
        self,
        meeting: dict[str, Any],
        recipient: Recipient,
        subject: str,
        context: TemplateContext,
    ) -> str:
        start, end = self._window(meeting)
        return build_ics(
            CalendarInvitation(
                subject=subject,
                start=start,
                end=end,
                location=str(meeting.get("location") or ""),
                attendee_email=(recipient.email or "").strip(),
                attendee_name=recipient.name,
                description=str(meeting.get("brief") or ""),
                organizer_email=self.settings.organizer_email,
                organizer_name=self.settings.organizer_name,
                join_url=context.meeting_link,
                zone_name=self.settings.business_timezone,
            ),
        )

    def _window(self, meeting: dict[str, Any]) -> tuple[datetime, datetime]:
        return meeting_window(
            str(meeting.get("date")),
            str(meeting.get("time")),
            duration_minutes=self.settings.meeting_duration_minutes,
            zone_name=self.settings.business_timezone,
        )

    def _is_managed_domain(self, address: str) -> bool:
        _, _, domain = address.strip().lower().rpartition("@")
        return bool(domain) and domain in self.settings.managed_calendar_domains

    def _failed(
        self,
        address: str | None,
        channel: Channel,
        reason: FailureReason,
        *,
        detail: str | None = None,
        template_id: str | None = None,
        language: str | None = None,
    ) -> DispatchResult:
        if reason == FailureReason.template_not_found and detail is None:
            detail = f"No {channel} template for language {language}."
        return DispatchResult(
            recipient=address or None,
            channel=channel,
            outcome=DispatchOutcome.failed,
            reason=reason,
            detail=detail,
            template_id=template_id,
        )

    def _record(
        self,
        meeting: dict[str, Any],
        event_kind: EventKind,
        result: DispatchResult,
        *,
        rendered_content: str | None,
    ) -> None:
        try:
            self.notification_store.append_event(
                {
                    "meeting_id": str(meeting.get("_id", "")),
                    "event_kind": str(event_kind),
                    "channel": str(result.channel) if result.channel else None,
                    "template_id": result.template_id,
                    "rendered_content": rendered_content,
                    "recipient_address": result.recipient,
                    "outcome": str(result.outcome),
                    "failure_reason": str(result.reason) if result.reason else None,
                    "created_at": datetime.now(UTC),
                },
            )
        except PersistenceFailure as exc:
            logger.warning(
                "Notification event not recorded meeting_id=%s recipient=%s error=%s",
                meeting.get("_id"),
                result.recipient,
                exc,
            )
            result.recorded = False


def select_channel(recipient: Recipient) -> Channel | None:
    has_email = bool((recipient.email or "").strip())
    has_phone = bool((recipient.phone or "").strip())
    if recipient.preferred_channel == Channel.chat and has_phone:
        return Channel.chat
    if recipient.preferred_channel == Channel.email and has_email:
        return Channel.email
    if has_email:
        return Channel.email
    if has_phone:
        return Channel.chat
    return None


def _declared_param_count(raw_value: Any) -> int | None:
    if isinstance(raw_value, bool) or raw_value is None:
        return None
    try:
        parsed_value = int(raw_value)
    except (TypeError, ValueError):
        return None
    if parsed_value < 0:
        return None
    return parsed_value
