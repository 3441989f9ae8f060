from datetime import datetime

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str
    data_store: str
    business_timezone: str
    timestamp: datetime
