from datetime import UTC, datetime

from lawcrm.core.config import Settings
from lawcrm.schemas.health import HealthResponse


class HealthService:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def get_status(self) -> HealthResponse:
        return HealthResponse(
            status="ok",
            service=self.settings.app_name,
            data_store=self.settings.crm_data_store,
            business_timezone=self.settings.business_timezone,
            timestamp=datetime.now(UTC),
        )
