from dataclasses import dataclass
from datetime import UTC, datetime
from http.client import HTTPException, RemoteDisconnected
import json
import logging
from typing import Any
from urllib import error, parse, request

from lawcrm.core.config import Settings

logger = logging.getLogger(__name__)

_OUTLOOK_GRAPH_SCOPES = (
    "offline_access "
    "https://graph.microsoft.com/Calendars.ReadWrite.Shared "
    "https://graph.microsoft.com/OnlineMeetings.ReadWrite"
)


class OutlookCalendarError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class CalendarEvent:
    event_id: str
    join_url: str | None = None


class OutlookCalendarClient:
    """Microsoft Graph calendar client bound to the shared scheduling mailbox.

    Events are created as Teams online meetings so the join URL can be stored
    on the meeting and reused in notifications.
    """

    def __init__(
        self,
        *,
        access_token: str,
        mailbox: str,
        refresh_token: str = "",
        client_id: str = "",
        client_secret: str = "",
        tenant_id: str = "common",
        timeout_seconds: float = 10.0,
        api_base_url: str = "https://graph.microsoft.com/v1.0",
        oauth_token_url_template: str = (
            "https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token"
        ),
    ) -> None:
        self.access_token = _normalize_access_token(access_token)
        self.mailbox = mailbox.strip()
        self.refresh_token = refresh_token.strip().strip('"').strip("'")
        self.client_id = client_id.strip()
        self.client_secret = client_secret.strip()
        self.tenant_id = tenant_id.strip() or "common"
        self.timeout_seconds = timeout_seconds
        self.api_base_url = api_base_url.rstrip("/")
        self.oauth_token_url_template = oauth_token_url_template

    @classmethod
    def from_settings(cls, settings: Settings) -> "OutlookCalendarClient | None":
        if not settings.outlook_calendar_api_token and not settings.outlook_calendar_refresh_token:
            return None
        return cls(
            access_token=settings.outlook_calendar_api_token,
            mailbox=settings.outlook_calendar_mailbox,
            refresh_token=settings.outlook_calendar_refresh_token,
            client_id=settings.outlook_client_id,
            client_secret=settings.outlook_client_secret,
            tenant_id=settings.outlook_tenant_id,
            timeout_seconds=settings.outlook_api_timeout_seconds,
        )

    def create_event(
        self,
        *,
        subject: str,
        start: datetime,
        end: datetime,
        location: str | None = None,
        attendee_email: str | None = None,
        body: str | None = None,
    ) -> CalendarEvent:
        payload: dict[str, Any] = {
            "subject": _truncate(subject, 255),
            "start": _graph_datetime(start),
            "end": _graph_datetime(end),
            "isOnlineMeeting": True,
            "onlineMeetingProvider": "teamsForBusiness",
        }
        if location:
            payload["location"] = {"displayName": location}
        if body:
            payload["body"] = {"contentType": "HTML", "content": body}
        cleaned_attendee = (attendee_email or "").strip().lower()
        if cleaned_attendee and "@" in cleaned_attendee:
            payload["attendees"] = [
                {
                    "emailAddress": {"address": cleaned_attendee},
                    "type": "required",
                },
            ]

        response_payload = self._request_json("POST", f"{self._calendar_path()}/events", payload=payload)
        event_id = response_payload.get("id")
        if not isinstance(event_id, str) or not event_id.strip():
            raise OutlookCalendarError("Outlook Calendar create event response missing id.")
        return CalendarEvent(
            event_id=event_id,
            join_url=_extract_teams_join_url(response_payload),
        )

    def patch_event(self, event_id: str, *, start: datetime, end: datetime) -> None:
        self._request_json(
            "PATCH",
            self._event_path(event_id),
            payload={"start": _graph_datetime(start), "end": _graph_datetime(end)},
        )

    def add_attendee(self, event_id: str, attendee_email: str) -> None:
        """Adds a required attendee to an existing event; the provider sends the invite."""
        event_path = self._event_path(event_id)
        cleaned_attendee = attendee_email.strip().lower()
        if not cleaned_attendee or "@" not in cleaned_attendee:
            raise OutlookCalendarError("Outlook Calendar attendee email is invalid.")

        current = self._request_json("GET", f"{event_path}?$select=attendees")
        attendees = [
            attendee
            for attendee in current.get("attendees") or []
            if isinstance(attendee, dict)
        ]
        known_addresses = {
            str((attendee.get("emailAddress") or {}).get("address") or "").strip().lower()
            for attendee in attendees
        }
        if cleaned_attendee in known_addresses:
            return
        attendees.append(
            {
                "emailAddress": {"address": cleaned_attendee},
                "type": "required",
            },
        )
        self._request_json("PATCH", event_path, payload={"attendees": attendees})

    def cancel_event(self, event_id: str, *, comment: str = "") -> None:
        payload = {"comment": comment} if comment else {}
        self._request_json("POST", f"{self._event_path(event_id)}/cancel", payload=payload)

    def test_access(self, resource_id: str) -> bool:
        cleaned = resource_id.strip()
        if not cleaned:
            return False
        try:
            self._request_json(
                "GET",
                f"/users/{parse.quote(cleaned, safe='@')}/calendar/events?$top=1",
            )
        except OutlookCalendarError as exc:
            logger.info(
                "Calendar access check failed resource_id=%s status_code=%s",
                cleaned,
                exc.status_code,
            )
            return False
        return True

    def _calendar_path(self) -> str:
        if not self.mailbox:
            return "/me/calendar"
        return f"/users/{parse.quote(self.mailbox, safe='@')}/calendar"

    def _event_path(self, event_id: str) -> str:
        cleaned_event_id = event_id.strip()
        if not cleaned_event_id:
            raise OutlookCalendarError("Outlook Calendar event id is required.")
        return f"{self._calendar_path()}/events/{parse.quote(cleaned_event_id, safe='')}"

    def _request_json(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
        *,
        allow_refresh_retry: bool = True,
    ) -> dict[str, Any]:
        if not self.access_token:
            if self._can_refresh_access_token():
                self._refresh_access_token()
            else:
                raise OutlookCalendarError("OUTLOOK_CALENDAR_API_TOKEN is missing.", status_code=401)
        target = f"{self.api_base_url}{path}"
        raw_payload: bytes | None = None
        if payload is not None:
            raw_payload = json.dumps(payload).encode("utf-8")

        req = request.Request(
            target,
            data=raw_payload,
            method=method,
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Content-Type": "application/json",
            },
        )
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                response_body = response.read()
        except TimeoutError as exc:
            raise OutlookCalendarError("Outlook Calendar API request timed out.") from exc
        except error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="ignore")
            if exc.code == 401 and allow_refresh_retry and self._can_refresh_access_token():
                try:
                    self._refresh_access_token()
                except OutlookCalendarError:
                    logger.warning("Outlook token refresh failed after HTTP 401")
                else:
                    return self._request_json(
                        method,
                        path,
                        payload=payload,
                        allow_refresh_retry=False,
                    )
            raise OutlookCalendarError(
                f"Outlook Calendar API HTTP {exc.code}: {body or 'empty response body'}",
                status_code=exc.code,
            ) from exc
        except error.URLError as exc:
            raise OutlookCalendarError(
                f"Outlook Calendar API connection error: {exc.reason}",
            ) from exc
        except RemoteDisconnected as exc:
            raise OutlookCalendarError(
                "Outlook Calendar API connection was closed before sending a response.",
            ) from exc
        except (HTTPException, OSError) as exc:
            raise OutlookCalendarError(f"Outlook Calendar API connection error: {exc}") from exc

        if not response_body:
            return {}
        try:
            parsed_body = json.loads(response_body.decode("utf-8"))
        except json.JSONDecodeError as exc:
            raise OutlookCalendarError("Outlook Calendar API returned invalid JSON.") from exc
        if not isinstance(parsed_body, dict):
            raise OutlookCalendarError("Outlook Calendar API response is not a JSON object.")
        return parsed_body

    def _can_refresh_access_token(self) -> bool:
        return bool(
            self.refresh_token
            and self.client_id
            and self.client_secret
        )

    def _refresh_access_token(self) -> None:
        token_url = self.oauth_token_url_template.format(tenant_id=self.tenant_id)
        body = parse.urlencode(
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": self.refresh_token,
                "grant_type": "refresh_token",
                "scope": _OUTLOOK_GRAPH_SCOPES,
            },
        ).encode("utf-8")
        req = request.Request(
            token_url,
            data=body,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            method="POST",
        )
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                response_body = response.read()
        except TimeoutError as exc:
            raise OutlookCalendarError("Outlook OAuth refresh request timed out.") from exc
        except error.HTTPError as exc:
            body_text = exc.read().decode("utf-8", errors="ignore")
            raise OutlookCalendarError(
                f"Outlook OAuth refresh HTTP {exc.code}: {body_text or 'empty response body'}",
                status_code=exc.code,
            ) from exc
        except error.URLError as exc:
            raise OutlookCalendarError(
                f"Outlook OAuth refresh connection error: {exc.reason}",
            ) from exc
        except (HTTPException, OSError) as exc:
            raise OutlookCalendarError(f"Outlook OAuth refresh connection error: {exc}") from exc

        try:
            payload = json.loads(response_body.decode("utf-8"))
        except json.JSONDecodeError as exc:
            raise OutlookCalendarError("Outlook OAuth refresh returned invalid JSON.") from exc
        new_access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(new_access_token, str) or not new_access_token.strip():
            raise OutlookCalendarError("Outlook OAuth refresh did not include access_token.")
        self.access_token = _normalize_access_token(new_access_token)
        refreshed_refresh_token = payload.get("refresh_token")
        if isinstance(refreshed_refresh_token, str) and refreshed_refresh_token.strip():
            self.refresh_token = refreshed_refresh_token.strip()


def _graph_datetime(value: datetime) -> dict[str, str]:
    if value.tzinfo is not None:
        value = value.astimezone(UTC)
    return {
        "dateTime": value.replace(tzinfo=None, microsecond=0).isoformat(),
        "timeZone": "UTC",
    }


def _extract_teams_join_url(payload: dict[str, Any]) -> str | None:
    online_meeting = payload.get("onlineMeeting")
    if isinstance(online_meeting, dict):
        join_url = online_meeting.get("joinUrl")
        if isinstance(join_url, str) and join_url.strip():
            return join_url.strip()
    online_meeting_url = payload.get("onlineMeetingUrl")
    if isinstance(online_meeting_url, str) and online_meeting_url.strip():
        return online_meeting_url.strip()
    return None


def _normalize_access_token(raw_token: str) -> str:
    normalized = (raw_token or "").strip().strip('"').strip("'")
    if normalized.lower().startswith("bearer "):
        normalized = normalized.split(" ", maxsplit=1)[1].strip()
    return normalized


def _truncate(value: str, limit: int) -> str:
    if len(value) <= limit:
        return value
    return value[: limit - 3] + "..."
