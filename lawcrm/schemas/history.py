from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field


class HistorySource(StrEnum):
    scheduling_note = "scheduling_note"
    follow_up = "follow_up"
    note = "note"


class SchedulingHistoryEntry(BaseModel):
    timestamp: datetime | None = None
    actor: str | None = None
    note: str = ""
    next_followup: datetime | None = None
    source: HistorySource


class SchedulingHistoryResponse(BaseModel):
    lead_id: str
    items: list[SchedulingHistoryEntry] = Field(default_factory=list)
