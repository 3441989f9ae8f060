from fastapi import APIRouter, Query

from lawcrm.api.errors import to_http_exception
from lawcrm.schemas.history import SchedulingHistoryResponse
from lawcrm.schemas.lead import LeadKind, LeadReference
from lawcrm.services.errors import CrmError
from lawcrm.services.scheduling_history_service import SchedulingHistoryService

router = APIRouter(tags=["scheduling-history"])


@router.get("/leads/{lead_id}/scheduling-history", response_model=SchedulingHistoryResponse)
def get_scheduling_history(
    lead_id: str,
    kind: LeadKind | None = Query(default=None),
) -> SchedulingHistoryResponse:
    service = SchedulingHistoryService()
    try:
        entries = service.get_history(LeadReference(lead_id=lead_id, kind=kind))
    except CrmError as exc:
        raise to_http_exception(exc) from exc
    return SchedulingHistoryResponse(lead_id=lead_id, items=entries)
