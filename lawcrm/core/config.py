from functools import lru_cache
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

ALLOWED_ENV_FIELD_NAMES = frozenset(
    {
        "app_name",
        "app_env",
        "app_version",
        "api_prefix",
        "allowed_origins",
        "crm_data_store",
        "mongodb_uri",
        "mongodb_db_name",
        "mongodb_meetings_collection",
        "mongodb_leads_collection",
        "mongodb_legacy_leads_collection",
        "mongodb_contacts_collection",
        "mongodb_employees_collection",
        "mongodb_locations_collection",
        "mongodb_email_templates_collection",
        "mongodb_chat_templates_collection",
        "mongodb_notification_events_collection",
        "mongodb_scheduling_notes_collection",
        "mongodb_follow_ups_collection",
        "mongodb_lead_notes_collection",
        "mongodb_connect_timeout_ms",
        "business_timezone",
        "meeting_duration_minutes",
        "virtual_meeting_locations",
        "managed_calendar_domains",
        "default_notification_language",
        "organizer_name",
        "organizer_email",
        "outlook_client_id",
        "outlook_client_secret",
        "outlook_tenant_id",
        "outlook_calendar_api_token",
        "outlook_calendar_refresh_token",
        "outlook_calendar_mailbox",
        "outlook_api_timeout_seconds",
        "graph_mail_api_token",
        "graph_mail_refresh_token",
        "graph_mail_sender",
        "whatsapp_api_token",
        "whatsapp_phone_number_id",
        "whatsapp_api_version",
        "whatsapp_api_timeout_seconds",
    },
)


class Settings(BaseSettings):
    app_name: str = "Law Office CRM Meetings API"
    app_env: str = "development"
    app_version: str = "0.1.0"
    api_prefix: str = "/api"
    allowed_origins: Annotated[list[str], NoDecode] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    crm_data_store: str = "mongodb"
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db_name: str = "lawoffice_crm"
    mongodb_meetings_collection: str = "meetings"
    mongodb_leads_collection: str = "leads"
    mongodb_legacy_leads_collection: str = "leads_lead"
    mongodb_contacts_collection: str = "lead_contacts"
    mongodb_employees_collection: str = "tenants_employee"
    mongodb_locations_collection: str = "tenants_meetinglocation"
    mongodb_email_templates_collection: str = "email_templates"
    mongodb_chat_templates_collection: str = "whatsapp_templates"
    mongodb_notification_events_collection: str = "notification_events"
    mongodb_scheduling_notes_collection: str = "scheduling_notes"
    mongodb_follow_ups_collection: str = "follow_ups"
    mongodb_lead_notes_collection: str = "lead_notes"
    mongodb_connect_timeout_ms: int = 2000
    business_timezone: str = "Asia/Jerusalem"
    meeting_duration_minutes: int = 60
    virtual_meeting_locations: Annotated[list[str], NoDecode] = ["Teams", "Virtual", "Online"]
    managed_calendar_domains: Annotated[list[str], NoDecode] = ["lawoffice.org.il"]
    default_notification_language: str = "en"
    organizer_name: str = "Law Office"
    organizer_email: str = "noreply@lawoffice.org.il"
    outlook_client_id: str = ""
    outlook_client_secret: str = ""
    outlook_tenant_id: str = "common"
    outlook_calendar_api_token: str = ""
    outlook_calendar_refresh_token: str = ""
    outlook_calendar_mailbox: str = "shared-potentialclients@lawoffice.org.il"
    outlook_api_timeout_seconds: float = 10.0
    graph_mail_api_token: str = ""
    graph_mail_refresh_token: str = ""
    graph_mail_sender: str = ""
    whatsapp_api_token: str = ""
    whatsapp_phone_number_id: str = ""
    whatsapp_api_version: str = "v19.0"
    whatsapp_api_timeout_seconds: float = 10.0

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        def _filter_allowed_env_fields(source):
            return {
                field_name: raw_value
                for field_name, raw_value in source().items()
                if field_name in ALLOWED_ENV_FIELD_NAMES
            }

        return (
            init_settings,
            lambda: _filter_allowed_env_fields(env_settings),
            lambda: _filter_allowed_env_fields(dotenv_settings),
            file_secret_settings,
        )

    @field_validator(
        "allowed_origins",
        "virtual_meeting_locations",
        "managed_calendar_domains",
        mode="before",
    )
    @classmethod
    def parse_comma_separated(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("managed_calendar_domains", mode="after")
    @classmethod
    def normalize_managed_domains(cls, value: list[str]) -> list[str]:
        return [domain.strip().lower().lstrip("@") for domain in value if domain.strip()]

    @field_validator("crm_data_store", mode="before")
    @classmethod
    def normalize_crm_data_store(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("default_notification_language", mode="before")
    @classmethod
    def normalize_default_language(cls, value: str) -> str:
        normalized = value.strip().lower()
        return normalized or "en"

    @field_validator("meeting_duration_minutes", mode="before")
    @classmethod
    def normalize_meeting_duration(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 60
        return parsed_value

    @field_validator("outlook_api_timeout_seconds", mode="before")
    @classmethod
    def normalize_outlook_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 10.0
        return parsed_value

    @field_validator("whatsapp_api_timeout_seconds", mode="before")
    @classmethod
    def normalize_whatsapp_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 10.0
        return parsed_value


@lru_cache
def get_settings() -> Settings:
    return Settings()
