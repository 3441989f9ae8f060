from __future__ import annotations

from datetime import UTC, date, datetime, time
import logging
from typing import Any

from lawcrm.core.config import Settings, get_settings
from lawcrm.schemas.history import HistorySource, SchedulingHistoryEntry
from lawcrm.schemas.lead import LeadReference
from lawcrm.services.history_store import HistoryStore, create_history_store
from lawcrm.services.lead_resolver import LeadIdentityResolver

logger = logging.getLogger(__name__)

_TIMESTAMP_FIELDS = ("created_at", "updated_at")


class SchedulingHistoryService:
    """Read-only merge of scheduling notes, follow-ups and general lead notes.

    Entries from different sources are never deduplicated, even when their
    timestamps coincide.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        history_store: HistoryStore | None = None,
        lead_resolver: LeadIdentityResolver | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.history_store = history_store or create_history_store(self.settings)
        self.lead_resolver = lead_resolver or LeadIdentityResolver()

    def get_history(self, lead_ref: LeadReference | str) -> list[SchedulingHistoryEntry]:
        lead = self.lead_resolver.resolve(lead_ref)
        entries: list[SchedulingHistoryEntry] = []

        for record in self.history_store.list_scheduling_notes(lead.canonical_key):
            entry = self._map_entry(
                record,
                source=HistorySource.scheduling_note,
                note=record.get("note"),
                next_followup=record.get("next_followup"),
            )
            entries.append(entry)

        for record in self.history_store.list_follow_ups(
            lead_column=lead.schema.follow_up_lead_column,
            lead_key=lead.record_key,
        ):
            entry = self._map_entry(
                record,
                source=HistorySource.follow_up,
                note=record.get("note") or "Follow-up scheduled",
                next_followup=record.get("date"),
            )
            entries.append(entry)

        for record in self.history_store.list_lead_notes(lead.canonical_key):
            entry = self._map_entry(
                record,
                source=HistorySource.note,
                note=record.get("content") or record.get("note"),
                next_followup=None,
            )
            entries.append(entry)

        entries.sort(key=_history_sort_key, reverse=True)
        return entries

    def _map_entry(
        self,
        record: dict[str, Any],
        *,
        source: HistorySource,
        note: Any,
        next_followup: Any,
    ) -> SchedulingHistoryEntry:
        timestamp = next(
            (
                parsed
                for parsed in (_to_datetime(record.get(field_name)) for field_name in _TIMESTAMP_FIELDS)
                if parsed is not None
            ),
            None,
        )
        if timestamp is None:
            logger.info("History record without timestamp source=%s id=%s", source, record.get("_id"))
        actor = record.get("created_by") or record.get("user_name") or record.get("user_id")
        return SchedulingHistoryEntry(
            timestamp=timestamp,
            actor=str(actor) if actor is not None else None,
            note=str(note or ""),
            next_followup=_to_datetime(next_followup),
            source=source,
        )


def _history_sort_key(entry: SchedulingHistoryEntry) -> tuple[bool, datetime]:
    # Undated entries sort after every dated one.
    return entry.timestamp is not None, entry.timestamp or datetime.min.replace(tzinfo=UTC)


def _to_datetime(raw_value: Any) -> datetime | None:
    if raw_value is None or raw_value == "":
        return None
    if isinstance(raw_value, datetime):
        parsed = raw_value
    elif isinstance(raw_value, date):
        parsed = datetime.combine(raw_value, time.min)
    else:
        cleaned = str(raw_value).strip().replace("Z", "+00:00")
        try:
            parsed = datetime.fromisoformat(cleaned)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed
