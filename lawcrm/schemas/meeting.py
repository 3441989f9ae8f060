from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from lawcrm.schemas.lead import LeadKind
from lawcrm.schemas.notification import DispatchResult, Recipient


class MeetingStatus(StrEnum):
    scheduled = "scheduled"
    canceled = "canceled"


class MeetingState(StrEnum):
    scheduled = "scheduled"
    past = "past"
    canceled = "canceled"


class WarningCode(StrEnum):
    calendar_provisioning_failed = "calendar_provisioning_failed"
    calendar_patch_failed = "calendar_patch_failed"
    calendar_cancel_failed = "calendar_cancel_failed"


class OperationWarning(BaseModel):
    code: WarningCode
    detail: str | None = None


class MeetingDetails(BaseModel):
    date: str | None = None
    time: str | None = None
    location: str | None = None
    manager: str | None = None
    scheduler: str | None = None
    helper: str | None = None
    expert: str | None = None
    amount: float | None = None
    currency: str | None = None
    brief: str | None = None
    recipients: list[Recipient] | None = None
    notify: bool = True


class MeetingPatch(BaseModel):
    date: str | None = None
    time: str | None = None
    location: str | None = None
    manager: str | None = None
    scheduler: str | None = None
    helper: str | None = None
    expert: str | None = None
    amount: float | None = None
    currency: str | None = None
    brief: str | None = None


class Meeting(BaseModel):
    id: str
    lead_id: str
    lead_kind: LeadKind
    date: str
    time: str
    location: str | None = None
    manager: str | None = None
    scheduler: str | None = None
    helper: str | None = None
    expert: str | None = None
    amount: float | None = None
    currency: str | None = None
    brief: str | None = None
    external_event_id: str | None = None
    join_url: str | None = None
    status: MeetingStatus = MeetingStatus.scheduled
    state: MeetingState = MeetingState.scheduled
    last_edited_at: datetime | None = None
    last_edited_by: str | None = None
    created_at: datetime


class MeetingOperationResult(BaseModel):
    meeting: Meeting
    canceled_meeting: Meeting | None = None
    warnings: list[OperationWarning] = Field(default_factory=list)
    notifications: list[DispatchResult] = Field(default_factory=list)


class MeetingListResponse(BaseModel):
    lead_id: str
    items: list[Meeting] = Field(default_factory=list)


class MeetingCancelRequest(BaseModel):
    recipients: list[Recipient] | None = None
    notify: bool = True


class CalendarAccessResponse(BaseModel):
    resource_id: str
    accessible: bool
