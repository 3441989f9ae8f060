from fastapi import APIRouter, HTTPException, status

from lawcrm.core.config import get_settings
from lawcrm.schemas.meeting import CalendarAccessResponse
from lawcrm.services.outlook_calendar_client import OutlookCalendarClient

router = APIRouter(prefix="/calendar", tags=["calendar"])


@router.get("/access/{resource_id}", response_model=CalendarAccessResponse)
def check_calendar_access(resource_id: str) -> CalendarAccessResponse:
    client = OutlookCalendarClient.from_settings(get_settings())
    if client is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Calendar provider is not configured.",
        )
    return CalendarAccessResponse(resource_id=resource_id, accessible=client.test_access(resource_id))
