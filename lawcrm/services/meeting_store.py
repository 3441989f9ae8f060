from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import UTC, datetime
from functools import lru_cache
import logging
from typing import Any, Iterator

from lawcrm.core.config import Settings
from lawcrm.services.errors import PersistenceFailure

logger = logging.getLogger(__name__)


class MeetingStore(ABC):
    @abstractmethod
    def create_meeting(self, payload: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def get_meeting(self, meeting_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def update_meeting(self, meeting_id: str, changes: dict[str, Any]) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def list_meetings_for_lead(self, *, lead_column: str, lead_key: str | int) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def get_lead(self, *, table: str, lead_key: str | int) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def update_lead(
        self,
        *,
        table: str,
        lead_key: str | int,
        changes: dict[str, Any],
    ) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def list_lead_contacts(self, lead_key: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def find_employee_by_display_name(self, display_name: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def get_meeting_location(self, name: str) -> dict[str, Any] | None:
        raise NotImplementedError


class InMemoryMeetingStore(MeetingStore):
    def __init__(self) -> None:
        self._next_meeting_id = 1
        self._meetings_by_id: dict[str, dict[str, Any]] = {}
        self._leads_by_table: dict[str, dict[str, dict[str, Any]]] = {}
        self._contacts: list[dict[str, Any]] = []
        self._employees: list[dict[str, Any]] = []
        self._locations: list[dict[str, Any]] = []

    def create_meeting(self, payload: dict[str, Any]) -> dict[str, Any]:
        meeting_id = str(self._next_meeting_id)
        self._next_meeting_id += 1
        record = {**payload, "_id": meeting_id}
        record.setdefault("created_at", datetime.now(UTC))
        self._meetings_by_id[meeting_id] = record
        return dict(record)

    def get_meeting(self, meeting_id: str) -> dict[str, Any] | None:
        record = self._meetings_by_id.get(meeting_id)
        if not record:
            return None
        return dict(record)

    def update_meeting(self, meeting_id: str, changes: dict[str, Any]) -> dict[str, Any] | None:
        record = self._meetings_by_id.get(meeting_id)
        if not record:
            return None
        record.update(changes)
        return dict(record)

    def list_meetings_for_lead(self, *, lead_column: str, lead_key: str | int) -> list[dict[str, Any]]:
        return [
            dict(record)
            for record in self._meetings_by_id.values()
            if record.get(lead_column) == lead_key
        ]

    def get_lead(self, *, table: str, lead_key: str | int) -> dict[str, Any] | None:
        record = self._leads_by_table.get(table, {}).get(str(lead_key))
        if not record:
            return None
        return dict(record)

    def update_lead(
        self,
        *,
        table: str,
        lead_key: str | int,
        changes: dict[str, Any],
    ) -> dict[str, Any] | None:
        record = self._leads_by_table.get(table, {}).get(str(lead_key))
        if not record:
            return None
        record.update(changes)
        return dict(record)

    def list_lead_contacts(self, lead_key: str) -> list[dict[str, Any]]:
        return [dict(contact) for contact in self._contacts if contact.get("lead_id") == lead_key]

    def find_employee_by_display_name(self, display_name: str) -> dict[str, Any] | None:
        normalized_name = _normalize_name(display_name)
        if not normalized_name:
            return None
        for employee in self._employees:
            if _normalize_name(employee.get("display_name")) == normalized_name:
                return dict(employee)
        return None

    def get_meeting_location(self, name: str) -> dict[str, Any] | None:
        normalized_name = _normalize_name(name)
        if not normalized_name:
            return None
        for location in self._locations:
            if _normalize_name(location.get("name")) == normalized_name:
                return dict(location)
        return None

    def add_lead(self, table: str, record: dict[str, Any]) -> None:
        self._leads_by_table.setdefault(table, {})[str(record["id"])] = dict(record)

    def add_contact(self, record: dict[str, Any]) -> None:
        self._contacts.append(dict(record))

    def add_employee(self, record: dict[str, Any]) -> None:
        self._employees.append(dict(record))

    def add_location(self, record: dict[str, Any]) -> None:
        self._locations.append(dict(record))


class MongoMeetingStore(MeetingStore):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        meetings_collection_name: str,
        leads_collection_name: str,
        legacy_leads_collection_name: str,
        contacts_collection_name: str,
        employees_collection_name: str,
        locations_collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import MongoClient

        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
        )
        self._database = self._client[db_name]
        self._lead_collections = {
            "leads": self._database[leads_collection_name],
            "leads_lead": self._database[legacy_leads_collection_name],
        }
        self._meetings = self._database[meetings_collection_name]
        self._contacts = self._database[contacts_collection_name]
        self._employees = self._database[employees_collection_name]
        self._locations = self._database[locations_collection_name]

        with _persistence_errors("create_indexes"):
            self._meetings.create_index("client_id")
            self._meetings.create_index("legacy_lead_id")
            self._contacts.create_index("lead_id")
            self._employees.create_index("display_name")
            self._locations.create_index("name")

    def create_meeting(self, payload: dict[str, Any]) -> dict[str, Any]:
        document = dict(payload)
        document.setdefault("created_at", datetime.now(UTC))
        with _persistence_errors("create_meeting"):
            insert_result = self._meetings.insert_one(document)
        created = self.get_meeting(str(insert_result.inserted_id))
        if not created:
            raise PersistenceFailure("Unable to read created meeting.")
        return created

    def get_meeting(self, meeting_id: str) -> dict[str, Any] | None:
        object_id = _to_object_id(meeting_id)
        if not object_id:
            return None
        with _persistence_errors("get_meeting"):
            record = self._meetings.find_one({"_id": object_id})
        return _serialize_record(record)

    def update_meeting(self, meeting_id: str, changes: dict[str, Any]) -> dict[str, Any] | None:
        object_id = _to_object_id(meeting_id)
        if not object_id:
            return None
        with _persistence_errors("update_meeting"):
            self._meetings.update_one({"_id": object_id}, {"$set": dict(changes)})
        return self.get_meeting(meeting_id)

    def list_meetings_for_lead(self, *, lead_column: str, lead_key: str | int) -> list[dict[str, Any]]:
        with _persistence_errors("list_meetings_for_lead"):
            records = list(self._meetings.find({lead_column: lead_key}))
        return [_serialize_record(record) or {} for record in records]

    def get_lead(self, *, table: str, lead_key: str | int) -> dict[str, Any] | None:
        with _persistence_errors("get_lead"):
            record = self._lead_collection(table).find_one({"id": lead_key})
        return _serialize_record(record)

    def update_lead(
        self,
        *,
        table: str,
        lead_key: str | int,
        changes: dict[str, Any],
    ) -> dict[str, Any] | None:
        with _persistence_errors("update_lead"):
            self._lead_collection(table).update_one({"id": lead_key}, {"$set": dict(changes)})
        return self.get_lead(table=table, lead_key=lead_key)

    def _lead_collection(self, table: str) -> Any:
        collection = self._lead_collections.get(table)
        if collection is None:
            raise PersistenceFailure(f"Unknown lead table: {table}")
        return collection

    def list_lead_contacts(self, lead_key: str) -> list[dict[str, Any]]:
        with _persistence_errors("list_lead_contacts"):
            records = list(self._contacts.find({"lead_id": lead_key}))
        return [_serialize_record(record) or {} for record in records]

    def find_employee_by_display_name(self, display_name: str) -> dict[str, Any] | None:
        cleaned = (display_name or "").strip()
        if not cleaned:
            return None
        with _persistence_errors("find_employee_by_display_name"):
            record = self._employees.find_one({"display_name": cleaned})
        return _serialize_record(record)

    def get_meeting_location(self, name: str) -> dict[str, Any] | None:
        cleaned = (name or "").strip()
        if not cleaned:
            return None
        with _persistence_errors("get_meeting_location"):
            record = self._locations.find_one({"name": cleaned})
        return _serialize_record(record)


@contextmanager
def _persistence_errors(operation: str) -> Iterator[None]:
    from pymongo.errors import PyMongoError

    try:
        yield
    except PyMongoError as exc:
        logger.warning("Meeting store operation failed operation=%s error=%s", operation, exc)
        raise PersistenceFailure(f"Meeting store operation {operation} failed.") from exc


def _to_object_id(record_id: str) -> Any | None:
    from bson import ObjectId
    from bson.errors import InvalidId

    try:
        return ObjectId(record_id)
    except (InvalidId, TypeError):
        return None


def _serialize_record(record: Any) -> dict[str, Any] | None:
    if not record:
        return None
    payload = dict(record)
    payload["_id"] = str(record.get("_id", ""))
    return payload


def _normalize_name(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return " ".join(value.split()).lower()


def create_meeting_store(settings: Settings) -> MeetingStore:
    return _create_meeting_store_cached(
        crm_data_store=settings.crm_data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_meetings_collection=settings.mongodb_meetings_collection,
        mongodb_leads_collection=settings.mongodb_leads_collection,
        mongodb_legacy_leads_collection=settings.mongodb_legacy_leads_collection,
        mongodb_contacts_collection=settings.mongodb_contacts_collection,
        mongodb_employees_collection=settings.mongodb_employees_collection,
        mongodb_locations_collection=settings.mongodb_locations_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_meeting_store_cached(
    *,
    crm_data_store: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_meetings_collection: str,
    mongodb_leads_collection: str,
    mongodb_legacy_leads_collection: str,
    mongodb_contacts_collection: str,
    mongodb_employees_collection: str,
    mongodb_locations_collection: str,
    mongodb_connect_timeout_ms: int,
) -> MeetingStore:
    if crm_data_store == "memory":
        return InMemoryMeetingStore()

    if crm_data_store == "mongodb":
        return MongoMeetingStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            meetings_collection_name=mongodb_meetings_collection,
            leads_collection_name=mongodb_leads_collection,
            legacy_leads_collection_name=mongodb_legacy_leads_collection,
            contacts_collection_name=mongodb_contacts_collection,
            employees_collection_name=mongodb_employees_collection,
            locations_collection_name=mongodb_locations_collection,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return InMemoryMeetingStore()


def clear_meeting_store_cache() -> None:
    _create_meeting_store_cached.cache_clear()
