from enum import StrEnum

from pydantic import BaseModel


class LeadKind(StrEnum):
    legacy = "legacy"
    modern = "modern"


class LeadReference(BaseModel):
    lead_id: str
    kind: LeadKind | None = None
