from lawcrm.core.config import Settings
from lawcrm.schemas.notification import Recipient
from lawcrm.services.lead_resolver import LegacyLead, ModernLead
from lawcrm.services.meeting_store import InMemoryMeetingStore
from lawcrm.services.template_resolver import (
    MEETING_PLACEHOLDER_TEXT,
    TemplateContext,
    TemplateParameterResolver,
    format_meeting_datetime,
)

MODERN_ID = "3f2b8c1e-9a4d-4e7b-8c2a-1d5e6f7a8b9c"


def _resolver() -> tuple[TemplateParameterResolver, InMemoryMeetingStore]:
    store = InMemoryMeetingStore()
    store.add_lead(
        "leads",
        {"id": MODERN_ID, "name": "Acme Holdings", "lead_number": "L-100", "topic": "Contract review"},
    )
    return TemplateParameterResolver(Settings(crm_data_store="memory"), meeting_store=store), store


def test_render_email_replaces_placeholders_case_insensitively() -> None:
    resolver, _ = _resolver()
    context = TemplateContext(
        lead_key=MODERN_ID,
        lead_type="modern",
        client_name="Acme Holdings",
        meeting_date="2025-01-15",
        meeting_time="10:00",
        meeting_location="Tel Aviv Office",
    )

    rendered = resolver.render_email("Dear {NAME}, see you on {Date} at {time} ({Location}).", context)

    assert rendered == "Dear Acme Holdings, see you on 2025-01-15 at 10:00 (Tel Aviv Office)."


def test_render_email_keeps_unknown_tokens_and_blanks_missing_values() -> None:
    resolver, _ = _resolver()
    context = TemplateContext(lead_key=MODERN_ID, lead_type="modern")

    rendered = resolver.render_email("{name} {link}|{unknown}", context)

    assert rendered == "Client |{unknown}"


def test_build_context_prefers_recipient_name_and_latest_active_meeting() -> None:
    resolver, store = _resolver()
    store.create_meeting(
        {"client_id": MODERN_ID, "date": "2025-01-10", "time": "09:00", "location": "Jerusalem", "status": "scheduled"},
    )
    store.create_meeting(
        {"client_id": MODERN_ID, "date": "2025-03-01", "time": "09:00", "location": "Teams", "status": "canceled"},
    )
    store.create_meeting(
        {
            "client_id": MODERN_ID,
            "date": "2025-02-01",
            "time": "11:30:00",
            "location": "Teams",
            "status": "scheduled",
            "join_url": "https://teams.example/join/9",
        },
    )

    context = resolver.build_context(
        ModernLead(lead_id=MODERN_ID),
        recipient=Recipient(name="Dana Levi", email="dana@example.com"),
    )

    assert context.name == "Dana Levi"
    assert context.client_name == "Acme Holdings"
    assert context.lead_number == "L-100"
    assert context.meeting_date == "2025-02-01"
    assert context.meeting_time == "11:30"
    assert context.meeting_link == "https://teams.example/join/9"


def test_location_default_link_overrides_join_url() -> None:
    resolver, store = _resolver()
    store.add_location({"name": "Teams", "default_link": "https://teams.example/office-room"})

    link = resolver.resolve_meeting_link({"location": " teams ", "join_url": "https://teams.example/join/9"})

    assert link == "https://teams.example/office-room"


def test_legacy_lead_falls_back_to_denormalized_meeting_fields() -> None:
    resolver, store = _resolver()
    store.add_lead("leads_lead", {"id": 42, "name": "Yossi Cohen", "meeting_date": "2025-04-02", "meeting_time": "14:00"})

    context = resolver.build_context(LegacyLead(legacy_id=42))

    assert context.lead_key == "legacy_42"
    assert context.meeting_date == "2025-04-02"
    assert context.meeting_time == "14:00"


def test_chat_parameters_use_generic_order_and_pad_to_declared_count() -> None:
    resolver, _ = _resolver()
    context = TemplateContext(
        lead_key=MODERN_ID,
        lead_type="modern",
        client_name="Acme Holdings",
        meeting_date="2025-01-15",
        meeting_time="10:00",
        meeting_location="Tel Aviv Office",
    )

    parameters = resolver.chat_parameters(param_count=6, param_mapping=None, context=context)

    assert parameters == [
        "Acme Holdings",
        "January 15, 2025 at 10:00 AM",
        "Tel Aviv Office",
        "",
        "",
        "",
    ]


def test_chat_parameters_follow_stored_mapping_and_truncate() -> None:
    resolver, _ = _resolver()
    context = TemplateContext(lead_key=MODERN_ID, lead_type="modern", phone="0541234567")
    mapping = [
        {"type": "meeting_time"},
        {"type": "phone_number"},
        {"type": "custom", "value": "Bring ID"},
    ]

    parameters = resolver.chat_parameters(param_count=2, param_mapping=mapping, context=context)

    assert parameters == [MEETING_PLACEHOLDER_TEXT, "0541234567"]


def test_format_meeting_datetime_uses_twelve_hour_clock() -> None:
    assert format_meeting_datetime("2025-01-15", "14:05") == "January 15, 2025 at 2:05 PM"
    assert format_meeting_datetime("2025-01-15", "00:30") == "January 15, 2025 at 12:30 AM"
    assert format_meeting_datetime("2025-01-15", None) == "January 15, 2025"
    assert format_meeting_datetime(None, "10:00") == ""
