from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class Channel(StrEnum):
    email = "email"
    chat = "chat"


class EventKind(StrEnum):
    invitation_venue_a = "invitation_venue_a"
    invitation_venue_b = "invitation_venue_b"
    invitation_venue_b_parking = "invitation_venue_b_parking"
    invitation_default = "invitation_default"
    reminder = "reminder"
    cancellation = "cancellation"
    rescheduled = "rescheduled"


class DispatchOutcome(StrEnum):
    sent = "sent"
    failed = "failed"


class FailureReason(StrEnum):
    template_not_found = "template_not_found"
    re_engagement_required = "re_engagement_required"
    authentication_required = "authentication_required"
    template_misconfigured = "template_misconfigured"
    no_channel = "no_channel"
    transport_failed = "transport_failed"
    persistence_failed = "persistence_failed"


class Recipient(BaseModel):
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    language: str | None = None
    preferred_channel: Channel | None = None


class DispatchResult(BaseModel):
    recipient: str | None = None
    channel: Channel | None = None
    outcome: DispatchOutcome
    reason: FailureReason | None = None
    detail: str | None = None
    template_id: str | None = None
    via_calendar_invite: bool = False
    recorded: bool = True


class NotificationEvent(BaseModel):
    id: str
    meeting_id: str
    event_kind: EventKind
    channel: Channel | None = None
    template_id: str | None = None
    rendered_content: str | None = None
    recipient_address: str | None = None
    outcome: DispatchOutcome
    failure_reason: FailureReason | None = None
    created_at: datetime


class NotificationEventsResponse(BaseModel):
    meeting_id: str
    items: list[NotificationEvent] = Field(default_factory=list)


class ReminderRequest(BaseModel):
    recipients: list[Recipient] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)
