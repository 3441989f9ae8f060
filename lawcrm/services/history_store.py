from __future__ import annotations

from abc import ABC, abstractmethod
from functools import lru_cache
import logging
from typing import Any

from lawcrm.core.config import Settings
from lawcrm.services.errors import PersistenceFailure

logger = logging.getLogger(__name__)


class HistoryStore(ABC):
    @abstractmethod
    def list_scheduling_notes(self, lead_key: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def list_follow_ups(self, *, lead_column: str, lead_key: str | int) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def list_lead_notes(self, lead_key: str) -> list[dict[str, Any]]:
        raise NotImplementedError


class InMemoryHistoryStore(HistoryStore):
    def __init__(self) -> None:
        self._scheduling_notes: list[dict[str, Any]] = []
        self._follow_ups: list[dict[str, Any]] = []
        self._lead_notes: list[dict[str, Any]] = []

    def list_scheduling_notes(self, lead_key: str) -> list[dict[str, Any]]:
        return [dict(note) for note in self._scheduling_notes if note.get("lead_id") == lead_key]

    def list_follow_ups(self, *, lead_column: str, lead_key: str | int) -> list[dict[str, Any]]:
        return [dict(entry) for entry in self._follow_ups if entry.get(lead_column) == lead_key]

    def list_lead_notes(self, lead_key: str) -> list[dict[str, Any]]:
        return [dict(note) for note in self._lead_notes if note.get("lead_id") == lead_key]

    def add_scheduling_note(self, record: dict[str, Any]) -> None:
        self._scheduling_notes.append(dict(record))

    def add_follow_up(self, record: dict[str, Any]) -> None:
        self._follow_ups.append(dict(record))

    def add_lead_note(self, record: dict[str, Any]) -> None:
        self._lead_notes.append(dict(record))


class MongoHistoryStore(HistoryStore):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        scheduling_notes_collection_name: str,
        follow_ups_collection_name: str,
        lead_notes_collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import MongoClient

        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
        )
        database = self._client[db_name]
        self._scheduling_notes = database[scheduling_notes_collection_name]
        self._follow_ups = database[follow_ups_collection_name]
        self._lead_notes = database[lead_notes_collection_name]

    def list_scheduling_notes(self, lead_key: str) -> list[dict[str, Any]]:
        return self._find(self._scheduling_notes, {"lead_id": lead_key}, "list_scheduling_notes")

    def list_follow_ups(self, *, lead_column: str, lead_key: str | int) -> list[dict[str, Any]]:
        return self._find(self._follow_ups, {lead_column: lead_key}, "list_follow_ups")

    def list_lead_notes(self, lead_key: str) -> list[dict[str, Any]]:
        return self._find(self._lead_notes, {"lead_id": lead_key}, "list_lead_notes")

    def _find(self, collection: Any, query: dict[str, Any], operation: str) -> list[dict[str, Any]]:
        from pymongo.errors import PyMongoError

        try:
            records = list(collection.find(query))
        except PyMongoError as exc:
            logger.warning("History store operation failed operation=%s error=%s", operation, exc)
            raise PersistenceFailure(f"History store operation {operation} failed.") from exc
        serialized: list[dict[str, Any]] = []
        for record in records:
            payload = dict(record)
            payload["_id"] = str(record.get("_id", ""))
            serialized.append(payload)
        return serialized


def create_history_store(settings: Settings) -> HistoryStore:
    return _create_history_store_cached(
        crm_data_store=settings.crm_data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_scheduling_notes_collection=settings.mongodb_scheduling_notes_collection,
        mongodb_follow_ups_collection=settings.mongodb_follow_ups_collection,
        mongodb_lead_notes_collection=settings.mongodb_lead_notes_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_history_store_cached(
    *,
    crm_data_store: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_scheduling_notes_collection: str,
    mongodb_follow_ups_collection: str,
    mongodb_lead_notes_collection: str,
    mongodb_connect_timeout_ms: int,
) -> HistoryStore:
    if crm_data_store == "mongodb":
        return MongoHistoryStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            scheduling_notes_collection_name=mongodb_scheduling_notes_collection,
            follow_ups_collection_name=mongodb_follow_ups_collection,
            lead_notes_collection_name=mongodb_lead_notes_collection,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return InMemoryHistoryStore()


def clear_history_store_cache() -> None:
    _create_history_store_cached.cache_clear()
