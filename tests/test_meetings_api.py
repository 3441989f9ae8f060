import pytest
from fastapi.testclient import TestClient

from lawcrm.core.config import get_settings
from lawcrm.main import app
from lawcrm.services.history_store import clear_history_store_cache, create_history_store
from lawcrm.services.meeting_store import clear_meeting_store_cache, create_meeting_store
from lawcrm.services.notification_store import clear_notification_store_cache, create_notification_store

MODERN_ID = "3f2b8c1e-9a4d-4e7b-8c2a-1d5e6f7a8b9c"


@pytest.fixture(autouse=True)
def reset_crm_state(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CRM_DATA_STORE", "memory")
    monkeypatch.setenv("OUTLOOK_CALENDAR_API_TOKEN", "")
    monkeypatch.setenv("OUTLOOK_CALENDAR_REFRESH_TOKEN", "")
    monkeypatch.setenv("GRAPH_MAIL_API_TOKEN", "")
    monkeypatch.setenv("GRAPH_MAIL_REFRESH_TOKEN", "")
    monkeypatch.setenv("WHATSAPP_API_TOKEN", "")

    clear_meeting_store_cache()
    clear_notification_store_cache()
    clear_history_store_cache()
    get_settings.cache_clear()
    yield
    clear_meeting_store_cache()
    clear_notification_store_cache()
    clear_history_store_cache()
    get_settings.cache_clear()


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


def _seed_lead() -> None:
    store = create_meeting_store(get_settings())
    store.add_lead("leads", {"id": MODERN_ID, "name": "Acme Holdings", "email": "office@acme.example"})  # type: ignore[attr-defined]


def _schedule(client: TestClient, **overrides: object) -> dict[str, object]:
    payload: dict[str, object] = {"date": "2030-03-10", "time": "09:00", "location": "Jerusalem Office"}
    payload.update(overrides)
    response = client.post(
        f"/api/v1/leads/{MODERN_ID}/meetings",
        json=payload,
        headers={"X-Actor-Name": "Noa"},
    )
    assert response.status_code == 201
    return response.json()


def test_schedule_and_list_meetings(client: TestClient) -> None:
    _seed_lead()

    data = _schedule(client, location="Virtual")

    meeting = data["meeting"]
    assert meeting["status"] == "scheduled"
    assert meeting["external_event_id"] is None
    assert meeting["last_edited_by"] == "Noa"
    assert [warning["code"] for warning in data["warnings"]] == ["calendar_provisioning_failed"]
    assert data["notifications"][0]["reason"] == "template_not_found"

    listing = client.get(f"/api/leads/{MODERN_ID}/meetings")
    assert listing.status_code == 200
    assert [item["id"] for item in listing.json()["items"]] == [meeting["id"]]


def test_schedule_rejects_unresolvable_lead(client: TestClient) -> None:
    response = client.post("/api/v1/leads/98765/meetings", json={"date": "2030-03-10", "time": "09:00"})

    assert response.status_code == 422


def test_schedule_accepts_numeric_lead_tagged_legacy(client: TestClient) -> None:
    response = client.post(
        "/api/v1/leads/98765/meetings?kind=legacy",
        json={"date": "2030-03-10", "time": "09:00", "notify": False},
    )

    assert response.status_code == 201
    assert response.json()["meeting"]["lead_id"] == "legacy_98765"


def test_schedule_rejects_invalid_time(client: TestClient) -> None:
    response = client.post(f"/api/v1/leads/{MODERN_ID}/meetings", json={"date": "2030-03-10", "time": "25:99"})

    assert response.status_code == 422


def test_cancel_twice_returns_conflict(client: TestClient) -> None:
    _seed_lead()
    meeting_id = _schedule(client, notify=False)["meeting"]["id"]

    first = client.post(f"/api/v1/meetings/{meeting_id}/cancel", json={"notify": False})
    second = client.post(f"/api/v1/meetings/{meeting_id}/cancel", json={"notify": False})

    assert first.status_code == 200
    assert first.json()["meeting"]["state"] == "canceled"
    assert second.status_code == 409


def test_reschedule_returns_previous_meeting(client: TestClient) -> None:
    _seed_lead()
    original_id = _schedule(client, notify=False)["meeting"]["id"]

    response = client.post(
        f"/api/v1/leads/{MODERN_ID}/meetings/reschedule",
        json={"date": "2030-04-01", "time": "10:30", "location": "Tel Aviv Office", "notify": False},
    )

    assert response.status_code == 201
    data = response.json()
    assert data["canceled_meeting"]["id"] == original_id
    assert data["meeting"]["date"] == "2030-04-01"


def test_edit_meeting_updates_fields(client: TestClient) -> None:
    _seed_lead()
    meeting_id = _schedule(client, notify=False)["meeting"]["id"]

    response = client.patch(
        f"/api/v1/meetings/{meeting_id}",
        json={"brief": "Bring the signed contract", "amount": 750, "currency": "EUR"},
        headers={"X-Actor-Name": "Avi"},
    )

    assert response.status_code == 200
    meeting = response.json()["meeting"]
    assert meeting["brief"] == "Bring the signed contract"
    assert meeting["currency"] == "EUR"
    assert meeting["last_edited_by"] == "Avi"


def test_unknown_meeting_returns_not_found(client: TestClient) -> None:
    assert client.get("/api/v1/meetings/404").status_code == 404


def test_reminder_records_notification_events(client: TestClient) -> None:
    _seed_lead()
    create_notification_store(get_settings()).add_email_template(  # type: ignore[attr-defined]
        {"event_kind": "reminder", "language": "en", "subject": "Reminder", "body": "See you {date}"},
    )
    meeting_id = _schedule(client, notify=False)["meeting"]["id"]

    reminder = client.post(
        f"/api/v1/meetings/{meeting_id}/reminders",
        json={"recipients": [{"name": "Dana", "email": "dana@example.com"}]},
    )
    events = client.get(f"/api/v1/meetings/{meeting_id}/notifications")

    assert reminder.status_code == 200
    assert reminder.json()[0]["reason"] == "transport_failed"
    assert events.status_code == 200
    items = events.json()["items"]
    assert len(items) == 1
    assert items[0]["event_kind"] == "reminder"
    assert items[0]["rendered_content"] == "See you 2030-03-10"


def test_scheduling_history_endpoint(client: TestClient) -> None:
    history_store = create_history_store(get_settings())
    history_store.add_lead_note(  # type: ignore[attr-defined]
        {"lead_id": MODERN_ID, "content": "First call", "created_at": "2025-01-05T10:00:00Z"},
    )

    response = client.get(f"/api/leads/{MODERN_ID}/scheduling-history")

    assert response.status_code == 200
    assert response.json()["items"][0]["note"] == "First call"


def test_calendar_access_requires_configured_provider(client: TestClient) -> None:
    response = client.get("/api/v1/calendar/access/partner@lawoffice.org.il")

    assert response.status_code == 503
