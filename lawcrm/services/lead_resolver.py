from __future__ import annotations

from dataclasses import dataclass, field
import re
from typing import Literal

from lawcrm.schemas.lead import LeadKind, LeadReference
from lawcrm.services.errors import UnresolvableReference

LEGACY_PREFIX = "legacy_"
_UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

CURRENCY_CODE_BY_ID: dict[int, str] = {
    1: "NIS",
    2: "USD",
    3: "EUR",
    4: "GBP",
}
CURRENCY_ID_BY_CODE: dict[str, int] = {
    code: currency_id for currency_id, code in CURRENCY_CODE_BY_ID.items()
}
_CURRENCY_ALIASES = {"ILS": "NIS", "₪": "NIS", "$": "USD", "€": "EUR", "£": "GBP"}

LEGACY_LANGUAGE_CODE_BY_ID: dict[int, str] = {
    1: "en",
    2: "he",
    3: "de",
    4: "ru",
    5: "fr",
}
_LANGUAGE_CODE_BY_NAME = {
    "english": "en",
    "hebrew": "he",
    "german": "de",
    "russian": "ru",
    "french": "fr",
}


@dataclass(frozen=True)
class LeadSchemaMapping:
    leads_table: str
    meeting_lead_column: str
    follow_up_lead_column: str
    employee_reference: Literal["id", "display_name"]
    role_columns: dict[str, str] = field(default_factory=dict)
    amount_column: str = "meeting_amount"
    currency_column: str = "meeting_currency"
    currency_encoding: Literal["id", "code"] = "code"
    language_column: str = "language"


LEGACY_SCHEMA = LeadSchemaMapping(
    leads_table="leads_lead",
    meeting_lead_column="legacy_lead_id",
    follow_up_lead_column="lead_id",
    employee_reference="id",
    role_columns={
        "manager": "meeting_manager_id",
        "scheduler": "meeting_scheduler_id",
        "helper": "meeting_lawyer_id",
        "expert": "expert_id",
    },
    amount_column="meeting_total",
    currency_column="meeting_total_currency_id",
    currency_encoding="id",
    language_column="language_id",
)

MODERN_SCHEMA = LeadSchemaMapping(
    leads_table="leads",
    meeting_lead_column="client_id",
    follow_up_lead_column="new_lead_id",
    employee_reference="display_name",
    role_columns={
        "manager": "manager",
        "scheduler": "scheduler",
        "helper": "helper",
        "expert": "expert",
    },
)


@dataclass(frozen=True)
class LegacyLead:
    legacy_id: int
    kind: Literal["legacy"] = "legacy"

    @property
    def canonical_key(self) -> str:
        return f"{LEGACY_PREFIX}{self.legacy_id}"

    @property
    def record_key(self) -> int:
        return self.legacy_id

    @property
    def schema(self) -> LeadSchemaMapping:
        return LEGACY_SCHEMA


@dataclass(frozen=True)
class ModernLead:
    lead_id: str
    kind: Literal["modern"] = "modern"

    @property
    def canonical_key(self) -> str:
        return self.lead_id

    @property
    def record_key(self) -> str:
        return self.lead_id

    @property
    def schema(self) -> LeadSchemaMapping:
        return MODERN_SCHEMA


CanonicalLead = LegacyLead | ModernLead


class LeadIdentityResolver:
    """Resolves an opaque lead reference to exactly one schema.

    A reference belongs to the legacy schema when it carries ``kind=legacy``
    or the ``legacy_`` prefix; its key must then be a positive integer. A
    modern reference must be a UUID. Bare integers without an explicit legacy
    tag are rejected because chat message ids share that shape.
    """

    def resolve(self, reference: LeadReference | str) -> CanonicalLead:
        if isinstance(reference, str):
            reference = LeadReference(lead_id=reference)

        raw_id = str(reference.lead_id).strip()
        if not raw_id:
            raise UnresolvableReference("Lead reference is empty.")

        has_legacy_prefix = raw_id.lower().startswith(LEGACY_PREFIX)
        if reference.kind == LeadKind.legacy or has_legacy_prefix:
            if reference.kind == LeadKind.modern:
                raise UnresolvableReference(
                    f"Lead reference {raw_id} carries a legacy prefix but is tagged modern.",
                )
            return self._resolve_legacy(raw_id[len(LEGACY_PREFIX) :] if has_legacy_prefix else raw_id)

        if _UUID_PATTERN.match(raw_id):
            return ModernLead(lead_id=raw_id.lower())

        raise UnresolvableReference(f"Lead reference {raw_id} matches neither lead schema.")

    def _resolve_legacy(self, raw_key: str) -> LegacyLead:
        cleaned = raw_key.strip()
        if not cleaned.isdigit():
            raise UnresolvableReference(f"Legacy lead key must be numeric: {raw_key}")
        legacy_id = int(cleaned)
        if legacy_id <= 0:
            raise UnresolvableReference(f"Legacy lead key must be positive: {raw_key}")
        return LegacyLead(legacy_id=legacy_id)


def normalize_currency_code(raw_currency: str | int | None) -> str | None:
    if raw_currency is None:
        return None
    if isinstance(raw_currency, int):
        return CURRENCY_CODE_BY_ID.get(raw_currency)
    cleaned = raw_currency.strip()
    if not cleaned:
        return None
    if cleaned.isdigit():
        return CURRENCY_CODE_BY_ID.get(int(cleaned))
    upper = cleaned.upper()
    return _CURRENCY_ALIASES.get(cleaned, _CURRENCY_ALIASES.get(upper, upper))


def currency_value_for_schema(currency_code: str | None, schema: LeadSchemaMapping) -> str | int | None:
    normalized = normalize_currency_code(currency_code)
    if normalized is None:
        return None
    if schema.currency_encoding == "id":
        return CURRENCY_ID_BY_CODE.get(normalized)
    return normalized


def language_code_for_lead(lead: CanonicalLead, lead_record: dict | None) -> str | None:
    if not lead_record:
        return None
    raw_language = lead_record.get(lead.schema.language_column)
    if raw_language is None or raw_language == "":
        return None
    if isinstance(lead, LegacyLead):
        try:
            return LEGACY_LANGUAGE_CODE_BY_ID.get(int(raw_language))
        except (TypeError, ValueError):
            return None
    return normalize_language_code(raw_language)


def normalize_language_code(raw_language: str | None) -> str | None:
    cleaned = str(raw_language or "").strip().lower()
    if not cleaned:
        return None
    if len(cleaned) == 2:
        return cleaned
    return _LANGUAGE_CODE_BY_NAME.get(cleaned)
