from datetime import datetime

from lawcrm.core.config import Settings
from lawcrm.schemas.notification import (
    Channel,
    DispatchOutcome,
    EventKind,
    FailureReason,
    Recipient,
)
from lawcrm.services.errors import PersistenceFailure
from lawcrm.services.graph_mail_client import GraphMailAuthenticationError, MailAttachment
from lawcrm.services.lead_resolver import ModernLead
from lawcrm.services.meeting_store import InMemoryMeetingStore
from lawcrm.services.notification_dispatcher import NotificationDispatcher, select_channel
from lawcrm.services.notification_store import InMemoryNotificationStore
from lawcrm.services.outlook_calendar_client import CalendarEvent
from lawcrm.services.template_resolver import TemplateParameterResolver
from lawcrm.services.whatsapp_client import RE_ENGAGEMENT_REQUIRED, ChatDelivery

MODERN_ID = "3f2b8c1e-9a4d-4e7b-8c2a-1d5e6f7a8b9c"


class _FakeMailClient:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.sent: list[dict[str, object]] = []

    def send(
        self,
        *,
        to: list[str],
        subject: str,
        html_body: str,
        attachments: list[MailAttachment] | None = None,
    ) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append({"to": to, "subject": subject, "body": html_body, "attachments": attachments})


class _FakeCalendarClient:
    def __init__(self) -> None:
        self.created: list[dict[str, object]] = []
        self.attendees_added: list[tuple[str, str]] = []

    def create_event(self, **kwargs: object) -> CalendarEvent:
        self.created.append(kwargs)
        return CalendarEvent(event_id=f"event-{len(self.created)}")

    def add_attendee(self, event_id: str, attendee_email: str) -> None:
        self.attendees_added.append((event_id, attendee_email))


class _FakeChatClient:
    def __init__(self, delivery: ChatDelivery) -> None:
        self.delivery = delivery
        self.sent: list[dict[str, object]] = []

    def send_template(self, **kwargs: object) -> ChatDelivery:
        self.sent.append(kwargs)
        return self.delivery


def _build(
    *,
    mail_client: _FakeMailClient | None = None,
    calendar_client: _FakeCalendarClient | None = None,
    chat_client: _FakeChatClient | None = None,
    notification_store: InMemoryNotificationStore | None = None,
) -> tuple[NotificationDispatcher, InMemoryNotificationStore, InMemoryMeetingStore]:
    settings = Settings(crm_data_store="memory", managed_calendar_domains=["lawoffice.org.il"])
    meeting_store = InMemoryMeetingStore()
    meeting_store.add_lead("leads", {"id": MODERN_ID, "name": "Acme Holdings", "language": "he"})
    notification_store = notification_store or InMemoryNotificationStore()
    dispatcher = NotificationDispatcher(
        settings,
        notification_store=notification_store,
        template_resolver=TemplateParameterResolver(settings, meeting_store=meeting_store),
        calendar_client=calendar_client,  # type: ignore[arg-type]
        mail_client=mail_client,  # type: ignore[arg-type]
        chat_client=chat_client,  # type: ignore[arg-type]
        meeting_store=meeting_store,
    )
    return dispatcher, notification_store, meeting_store


def _meeting(meeting_store: InMemoryMeetingStore) -> dict[str, object]:
    return meeting_store.create_meeting(
        {
            "client_id": MODERN_ID,
            "lead_key": MODERN_ID,
            "lead_kind": "modern",
            "date": "2025-01-15",
            "time": "10:00",
            "location": "Tel Aviv Office",
            "status": "scheduled",
            "created_at": datetime(2025, 1, 1),
        },
    )


def test_dispatch_returns_one_result_per_recipient_and_records_each() -> None:
    mail_client = _FakeMailClient()
    dispatcher, notification_store, meeting_store = _build(mail_client=mail_client)
    notification_store.add_email_template(
        {
            "event_kind": "invitation_venue_b",
            "language": "en",
            "subject": "Meeting with {name}",
            "body": "See you on {date} at {time}",
        },
    )
    meeting = _meeting(meeting_store)
    recipients = [
        Recipient(name="Dana", email="dana@example.com"),
        Recipient(name="Pierre", email="pierre@example.com", language="fr"),
        Recipient(name="Avi", email="avi@example.com", language="EN"),
    ]

    results = dispatcher.dispatch(
        meeting,
        EventKind.invitation_venue_b,
        recipients,
        lead=ModernLead(lead_id=MODERN_ID),
    )

    assert [result.outcome for result in results] == [
        DispatchOutcome.sent,
        DispatchOutcome.failed,
        DispatchOutcome.sent,
    ]
    assert results[1].reason == FailureReason.template_not_found
    assert results[1].recipient == "pierre@example.com"
    assert [message["to"] for message in mail_client.sent] == [["dana@example.com"], ["avi@example.com"]]
    assert mail_client.sent[0]["subject"] == "Meeting with Dana"

    events = notification_store.list_events_for_meeting(str(meeting["_id"]))
    assert len(events) == 3
    assert [event["outcome"] for event in events] == ["sent", "failed", "sent"]
    assert events[0]["rendered_content"] == "See you on 2025-01-15 at 10:00"
    assert events[1]["failure_reason"] == "template_not_found"


def test_calendar_kinds_attach_ics_for_external_addresses() -> None:
    mail_client = _FakeMailClient()
    dispatcher, notification_store, meeting_store = _build(mail_client=mail_client)
    notification_store.add_email_template(
        {"event_kind": "reminder", "language": "en", "subject": "Reminder", "body": "Tomorrow"},
    )
    notification_store.add_email_template(
        {"event_kind": "cancellation", "language": "en", "subject": "Canceled", "body": "Canceled"},
    )
    meeting = _meeting(meeting_store)
    lead = ModernLead(lead_id=MODERN_ID)
    recipient = Recipient(name="Dana", email="dana@example.com")

    dispatcher.dispatch(meeting, EventKind.reminder, [recipient], lead=lead)
    dispatcher.dispatch(meeting, EventKind.cancellation, [recipient], lead=lead)

    reminder_attachments = mail_client.sent[0]["attachments"]
    assert isinstance(reminder_attachments, list)
    assert reminder_attachments[0].name == "meeting.ics"
    assert "DTSTART:20250115T080000Z" in reminder_attachments[0].content
    assert "ATTENDEE;CN=\"Dana\";RSVP=TRUE:MAILTO:dana@example.com" in reminder_attachments[0].content
    assert mail_client.sent[1]["attachments"] is None


def test_managed_domain_receives_native_calendar_invite() -> None:
    mail_client = _FakeMailClient()
    calendar_client = _FakeCalendarClient()
    dispatcher, notification_store, meeting_store = _build(
        mail_client=mail_client,
        calendar_client=calendar_client,
    )
    notification_store.add_email_template(
        {"event_kind": "invitation_default", "language": "en", "subject": "Invite", "body": "Body"},
    )
    meeting = _meeting(meeting_store)

    results = dispatcher.dispatch(
        meeting,
        EventKind.invitation_default,
        [Recipient(name="Partner", email="partner@LawOffice.org.il")],
        lead=ModernLead(lead_id=MODERN_ID),
    )

    assert results[0].outcome == DispatchOutcome.sent
    assert results[0].via_calendar_invite is True
    assert mail_client.sent == []
    assert calendar_client.created[0]["attendee_email"] == "partner@LawOffice.org.il"
    assert meeting["external_event_id"] == "event-1"
    stored = meeting_store.get_meeting(str(meeting["_id"]))
    assert stored is not None
    assert stored["external_event_id"] == "event-1"


def test_email_authentication_failure_is_reported() -> None:
    mail_client = _FakeMailClient(error=GraphMailAuthenticationError("expired", status_code=401))
    dispatcher, notification_store, meeting_store = _build(mail_client=mail_client)
    notification_store.add_email_template(
        {"event_kind": "reminder", "language": "en", "subject": "Reminder", "body": "Tomorrow"},
    )

    results = dispatcher.dispatch(
        _meeting(meeting_store),
        EventKind.reminder,
        [Recipient(name="Dana", email="dana@example.com")],
        lead=ModernLead(lead_id=MODERN_ID),
    )

    assert results[0].reason == FailureReason.authentication_required


def test_recipient_without_address_fails_with_no_channel() -> None:
    dispatcher, notification_store, meeting_store = _build(mail_client=_FakeMailClient())
    meeting = _meeting(meeting_store)

    results = dispatcher.dispatch(
        meeting,
        EventKind.reminder,
        [Recipient(name="Nobody")],
        lead=ModernLead(lead_id=MODERN_ID),
    )

    assert results[0].reason == FailureReason.no_channel
    assert notification_store.list_events_for_meeting(str(meeting["_id"]))[0]["failure_reason"] == "no_channel"


def test_chat_template_without_param_count_is_misconfigured() -> None:
    chat_client = _FakeChatClient(ChatDelivery(delivered=True, message_id="wamid.1"))
    dispatcher, notification_store, meeting_store = _build(chat_client=chat_client)
    notification_store.add_chat_template({"event_kind": "reminder", "language": "en", "name": "reminder_v1"})

    results = dispatcher.dispatch(
        _meeting(meeting_store),
        EventKind.reminder,
        [Recipient(name="Dana", phone="0541234567")],
        lead=ModernLead(lead_id=MODERN_ID),
    )

    assert results[0].channel == Channel.chat
    assert results[0].reason == FailureReason.template_misconfigured
    assert chat_client.sent == []


def test_chat_parameters_are_padded_to_declared_count() -> None:
    chat_client = _FakeChatClient(ChatDelivery(delivered=True, message_id="wamid.1"))
    dispatcher, notification_store, meeting_store = _build(chat_client=chat_client)
    notification_store.add_chat_template(
        {
            "event_kind": "reminder",
            "language": "en",
            "name": "reminder_v1",
            "language_code": "en_US",
            "param_count": 5,
        },
    )

    results = dispatcher.dispatch(
        _meeting(meeting_store),
        EventKind.reminder,
        [Recipient(name="Dana", phone="0541234567", preferred_channel=Channel.chat, email="dana@example.com")],
        lead=ModernLead(lead_id=MODERN_ID),
    )

    assert results[0].outcome == DispatchOutcome.sent
    sent = chat_client.sent[0]
    assert sent["language"] == "en_US"
    assert sent["parameters"] == ["Dana", "January 15, 2025 at 10:00 AM", "Tel Aviv Office", "", ""]


def test_chat_re_engagement_window_is_reported() -> None:
    chat_client = _FakeChatClient(ChatDelivery(delivered=False, code=RE_ENGAGEMENT_REQUIRED, detail="window"))
    dispatcher, notification_store, meeting_store = _build(chat_client=chat_client)
    notification_store.add_chat_template(
        {"event_kind": "reminder", "language": "en", "name": "reminder_v1", "param_count": 1},
    )

    results = dispatcher.dispatch(
        _meeting(meeting_store),
        EventKind.reminder,
        [Recipient(name="Dana", phone="0541234567")],
        lead=ModernLead(lead_id=MODERN_ID),
    )

    assert results[0].reason == FailureReason.re_engagement_required


def test_rescheduled_notices_use_lead_language() -> None:
    mail_client = _FakeMailClient()
    dispatcher, notification_store, meeting_store = _build(mail_client=mail_client)
    notification_store.add_email_template(
        {
            "event_kind": "rescheduled",
            "language": "he",
            "subject": "Moved",
            "body": "From {previous_date} {previous_time} to {date} {time}",
        },
    )

    results = dispatcher.dispatch(
        _meeting(meeting_store),
        EventKind.rescheduled,
        [Recipient(name="Dana", email="dana@example.com", language="en")],
        lead=ModernLead(lead_id=MODERN_ID),
        context={"previous_date": "2025-01-10", "previous_time": "09:00"},
    )

    assert results[0].outcome == DispatchOutcome.sent
    assert mail_client.sent[0]["body"] == "From 2025-01-10 09:00 to 2025-01-15 10:00"


def test_select_channel_honours_preference_only_with_address() -> None:
    assert select_channel(Recipient(email="a@example.com", phone="054", preferred_channel=Channel.chat)) == Channel.chat
    assert select_channel(Recipient(email="a@example.com", preferred_channel=Channel.chat)) == Channel.email
    assert select_channel(Recipient(phone="054")) == Channel.chat
    assert select_channel(Recipient()) is None


def test_managed_domain_joins_existing_event_and_reminders_create_none() -> None:
    mail_client = _FakeMailClient()
    calendar_client = _FakeCalendarClient()
    dispatcher, notification_store, meeting_store = _build(
        mail_client=mail_client,
        calendar_client=calendar_client,
    )
    notification_store.add_email_template(
        {"event_kind": "rescheduled", "language": "he", "subject": "Moved", "body": "Body"},
    )
    notification_store.add_email_template(
        {"event_kind": "reminder", "language": "en", "subject": "Reminder", "body": "Tomorrow"},
    )
    meeting = _meeting(meeting_store)
    meeting["external_event_id"] = "event-existing"
    lead = ModernLead(lead_id=MODERN_ID)
    partner = Recipient(name="Partner", email="partner@lawoffice.org.il")

    rescheduled = dispatcher.dispatch(meeting, EventKind.rescheduled, [partner], lead=lead)
    reminded = dispatcher.dispatch(meeting, EventKind.reminder, [partner], lead=lead)

    assert rescheduled[0].via_calendar_invite is True
    assert calendar_client.attendees_added == [("event-existing", "partner@lawoffice.org.il")]
    assert calendar_client.created == []
    assert reminded[0].outcome == DispatchOutcome.sent
    assert reminded[0].via_calendar_invite is False
    assert mail_client.sent[0]["to"] == ["partner@lawoffice.org.il"]
    assert mail_client.sent[0]["attachments"] is not None


class _UnavailableNotificationStore(InMemoryNotificationStore):
    def __init__(self, *, fail_append: bool = False, fail_lookup_for: str | None = None) -> None:
        super().__init__()
        self.fail_append = fail_append
        self.fail_lookup_for = fail_lookup_for

    def append_event(self, payload: dict[str, object]) -> dict[str, object]:
        if self.fail_append:
            raise PersistenceFailure("notification_events insert failed")
        return super().append_event(payload)

    def find_email_template(self, *, event_kind: str, language: str) -> dict[str, object] | None:
        if self.fail_lookup_for == language:
            raise PersistenceFailure("email_templates lookup failed")
        return super().find_email_template(event_kind=event_kind, language=language)


def test_unrecorded_outcomes_are_still_returned() -> None:
    mail_client = _FakeMailClient()
    store = _UnavailableNotificationStore(fail_append=True)
    store.add_email_template({"event_kind": "reminder", "language": "en", "subject": "Reminder", "body": "Tomorrow"})
    dispatcher, _, meeting_store = _build(mail_client=mail_client, notification_store=store)

    results = dispatcher.dispatch(
        _meeting(meeting_store),
        EventKind.reminder,
        [Recipient(name="Dana", email="dana@example.com"), Recipient(name="Avi", email="avi@example.com")],
        lead=ModernLead(lead_id=MODERN_ID),
    )

    assert [result.outcome for result in results] == [DispatchOutcome.sent, DispatchOutcome.sent]
    assert [result.recorded for result in results] == [False, False]
    assert len(mail_client.sent) == 2


def test_template_lookup_failure_only_fails_that_recipient() -> None:
    mail_client = _FakeMailClient()
    store = _UnavailableNotificationStore(fail_lookup_for="fr")
    store.add_email_template({"event_kind": "reminder", "language": "en", "subject": "Reminder", "body": "Tomorrow"})
    dispatcher, _, meeting_store = _build(mail_client=mail_client, notification_store=store)
    meeting = _meeting(meeting_store)

    results = dispatcher.dispatch(
        meeting,
        EventKind.reminder,
        [
            Recipient(name="Pierre", email="pierre@example.com", language="fr"),
            Recipient(name="Dana", email="dana@example.com"),
        ],
        lead=ModernLead(lead_id=MODERN_ID),
    )

    assert results[0].reason == FailureReason.persistence_failed
    assert results[0].recipient == "pierre@example.com"
    assert results[1].outcome == DispatchOutcome.sent
    events = store.list_events_for_meeting(str(meeting["_id"]))
    assert [event["failure_reason"] for event in events] == ["persistence_failed", None]
