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


class NotificationStore(ABC):
    """Append-only notification audit trail plus the template catalogue."""

    @abstractmethod
    def append_event(self, payload: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def list_events_for_meeting(self, meeting_id: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def find_email_template(self, *, event_kind: str, language: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def find_chat_template(self, *, event_kind: str, language: str) -> dict[str, Any] | None:
        raise NotImplementedError


class InMemoryNotificationStore(NotificationStore):
    def __init__(self) -> None:
        self._next_event_id = 1
        self._events: list[dict[str, Any]] = []
        self._email_templates: list[dict[str, Any]] = []
        self._chat_templates: list[dict[str, Any]] = []

    def append_event(self, payload: dict[str, Any]) -> dict[str, Any]:
        event_id = str(self._next_event_id)
        self._next_event_id += 1
        record = {**payload, "_id": event_id}
        record.setdefault("created_at", datetime.now(UTC))
        self._events.append(record)
        return dict(record)

    def list_events_for_meeting(self, meeting_id: str) -> list[dict[str, Any]]:
        return [dict(event) for event in self._events if event.get("meeting_id") == meeting_id]

    def find_email_template(self, *, event_kind: str, language: str) -> dict[str, Any] | None:
        return _match_template(self._email_templates, event_kind=event_kind, language=language)

    def find_chat_template(self, *, event_kind: str, language: str) -> dict[str, Any] | None:
        return _match_template(self._chat_templates, event_kind=event_kind, language=language)

    def add_email_template(self, record: dict[str, Any]) -> dict[str, Any]:
        template = {"_id": f"email-{len(self._email_templates) + 1}", **record}
        self._email_templates.append(template)
        return dict(template)

    def add_chat_template(self, record: dict[str, Any]) -> dict[str, Any]:
        template = {"_id": f"chat-{len(self._chat_templates) + 1}", **record}
        self._chat_templates.append(template)
        return dict(template)


class MongoNotificationStore(NotificationStore):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        events_collection_name: str,
        email_templates_collection_name: str,
        chat_templates_collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import MongoClient

        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
        )
        database = self._client[db_name]
        self._events = database[events_collection_name]
        self._email_templates = database[email_templates_collection_name]
        self._chat_templates = database[chat_templates_collection_name]

        with _persistence_errors("create_indexes"):
            self._events.create_index([("meeting_id", 1), ("created_at", 1)])
            self._email_templates.create_index([("event_kind", 1), ("language", 1)])
            self._chat_templates.create_index([("event_kind", 1), ("language", 1)])

    def append_event(self, payload: dict[str, Any]) -> dict[str, Any]:
        document = dict(payload)
        document.setdefault("created_at", datetime.now(UTC))
        with _persistence_errors("append_event"):
            insert_result = self._events.insert_one(document)
        document["_id"] = str(insert_result.inserted_id)
        return document

    def list_events_for_meeting(self, meeting_id: str) -> list[dict[str, Any]]:
        with _persistence_errors("list_events_for_meeting"):
            records = list(self._events.find({"meeting_id": meeting_id}).sort("created_at", 1))
        return [_serialize_record(record) or {} for record in records]

    def find_email_template(self, *, event_kind: str, language: str) -> dict[str, Any] | None:
        with _persistence_errors("find_email_template"):
            record = self._email_templates.find_one(
                {"event_kind": event_kind, "language": language.strip().lower()},
            )
        return _serialize_record(record)

    def find_chat_template(self, *, event_kind: str, language: str) -> dict[str, Any] | None:
        with _persistence_errors("find_chat_template"):
            record = self._chat_templates.find_one(
                {"event_kind": event_kind, "language": language.strip().lower()},
            )
        return _serialize_record(record)


def _match_template(
    templates: list[dict[str, Any]],
    *,
    event_kind: str,
    language: str,
) -> dict[str, Any] | None:
    normalized_language = (language or "").strip().lower()
    for template in templates:
        if template.get("event_kind") != event_kind:
            continue
        if str(template.get("language", "")).strip().lower() != normalized_language:
            continue
        return dict(template)
    return None


@contextmanager
def _persistence_errors(operation: str) -> Iterator[None]:
    from pymongo.errors import PyMongoError

    try:
        yield
    except PyMongoError as exc:
        logger.warning("Notification store operation failed operation=%s error=%s", operation, exc)
        raise PersistenceFailure(f"Notification store operation {operation} failed.") from exc


def _serialize_record(record: Any) -> dict[str, Any] | None:
    if not record:
        return None
    payload = dict(record)
    payload["_id"] = str(record.get("_id", ""))
    return payload


def create_notification_store(settings: Settings) -> NotificationStore:
    return _create_notification_store_cached(
        crm_data_store=settings.crm_data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_notification_events_collection=settings.mongodb_notification_events_collection,
        mongodb_email_templates_collection=settings.mongodb_email_templates_collection,
        mongodb_chat_templates_collection=settings.mongodb_chat_templates_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_notification_store_cached(
    *,
    crm_data_store: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_notification_events_collection: str,
    mongodb_email_templates_collection: str,
    mongodb_chat_templates_collection: str,
    mongodb_connect_timeout_ms: int,
) -> NotificationStore:
    if crm_data_store == "mongodb":
        return MongoNotificationStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            events_collection_name=mongodb_notification_events_collection,
            email_templates_collection_name=mongodb_email_templates_collection,
            chat_templates_collection_name=mongodb_chat_templates_collection,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return InMemoryNotificationStore()


def clear_notification_store_cache() -> None:
    _create_notification_store_cached.cache_clear()
