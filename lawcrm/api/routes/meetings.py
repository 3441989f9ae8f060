from fastapi import APIRouter, Header, Query, status

from lawcrm.api.errors import to_http_exception
from lawcrm.schemas.lead import LeadKind, LeadReference
from lawcrm.schemas.meeting import (
    Meeting,
    MeetingCancelRequest,
    MeetingDetails,
    MeetingListResponse,
    MeetingOperationResult,
    MeetingPatch,
)
from lawcrm.schemas.notification import (
    DispatchResult,
    NotificationEventsResponse,
    ReminderRequest,
)
from lawcrm.services.errors import CrmError
from lawcrm.services.meeting_lifecycle_service import MeetingLifecycleService

router = APIRouter(tags=["meetings"])

_DEFAULT_ACTOR = "system"


@router.get("/leads/{lead_id}/meetings", response_model=MeetingListResponse)
def list_lead_meetings(
    lead_id: str,
    kind: LeadKind | None = Query(default=None),
) -> MeetingListResponse:
    service = MeetingLifecycleService()
    try:
        meetings = service.list_meetings(LeadReference(lead_id=lead_id, kind=kind))
    except CrmError as exc:
        raise to_http_exception(exc) from exc
    return MeetingListResponse(lead_id=lead_id, items=meetings)


@router.post(
    "/leads/{lead_id}/meetings",
    response_model=MeetingOperationResult,
    status_code=status.HTTP_201_CREATED,
)
def schedule_meeting(
    lead_id: str,
    payload: MeetingDetails,
    kind: LeadKind | None = Query(default=None),
    actor: str = Header(default=_DEFAULT_ACTOR, alias="X-Actor-Name"),
) -> MeetingOperationResult:
    service = MeetingLifecycleService()
    try:
        return service.schedule(LeadReference(lead_id=lead_id, kind=kind), payload, actor=actor)
    except CrmError as exc:
        raise to_http_exception(exc) from exc


@router.post(
    "/leads/{lead_id}/meetings/reschedule",
    response_model=MeetingOperationResult,
    status_code=status.HTTP_201_CREATED,
)
def reschedule_meeting(
    lead_id: str,
    payload: MeetingDetails,
    kind: LeadKind | None = Query(default=None),
    actor: str = Header(default=_DEFAULT_ACTOR, alias="X-Actor-Name"),
) -> MeetingOperationResult:
    service = MeetingLifecycleService()
    try:
        return service.reschedule(LeadReference(lead_id=lead_id, kind=kind), payload, actor=actor)
    except CrmError as exc:
        raise to_http_exception(exc) from exc


@router.get("/meetings/{meeting_id}", response_model=Meeting)
def get_meeting(meeting_id: str) -> Meeting:
    service = MeetingLifecycleService()
    try:
        return service.get_meeting(meeting_id)
    except CrmError as exc:
        raise to_http_exception(exc) from exc


@router.patch("/meetings/{meeting_id}", response_model=MeetingOperationResult)
def edit_meeting(
    meeting_id: str,
    payload: MeetingPatch,
    actor: str = Header(default=_DEFAULT_ACTOR, alias="X-Actor-Name"),
) -> MeetingOperationResult:
    service = MeetingLifecycleService()
    try:
        return service.edit(meeting_id, payload, actor=actor)
    except CrmError as exc:
        raise to_http_exception(exc) from exc


@router.post("/meetings/{meeting_id}/cancel", response_model=MeetingOperationResult)
def cancel_meeting(
    meeting_id: str,
    payload: MeetingCancelRequest | None = None,
    actor: str = Header(default=_DEFAULT_ACTOR, alias="X-Actor-Name"),
) -> MeetingOperationResult:
    request_payload = payload or MeetingCancelRequest()
    service = MeetingLifecycleService()
    try:
        return service.cancel(
            meeting_id,
            actor=actor,
            recipients=request_payload.recipients,
            notify=request_payload.notify,
        )
    except CrmError as exc:
        raise to_http_exception(exc) from exc


@router.post("/meetings/{meeting_id}/reminders", response_model=list[DispatchResult])
def send_meeting_reminder(
    meeting_id: str,
    payload: ReminderRequest | None = None,
) -> list[DispatchResult]:
    request_payload = payload or ReminderRequest()
    service = MeetingLifecycleService()
    try:
        return service.send_reminder(
            meeting_id,
            recipients=request_payload.recipients,
            context=request_payload.context,
        )
    except CrmError as exc:
        raise to_http_exception(exc) from exc


@router.get("/meetings/{meeting_id}/notifications", response_model=NotificationEventsResponse)
def list_meeting_notifications(meeting_id: str) -> NotificationEventsResponse:
    service = MeetingLifecycleService()
    try:
        events = service.list_notifications(meeting_id)
    except CrmError as exc:
        raise to_http_exception(exc) from exc
    return NotificationEventsResponse(meeting_id=meeting_id, items=events)
