from fastapi import APIRouter

from lawcrm.core.config import get_settings
from lawcrm.schemas.health import HealthResponse
from lawcrm.services.health_service import HealthService

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
def healthcheck() -> HealthResponse:
    settings = get_settings()
    service = HealthService(settings)
    return service.get_status()
