import base64
from dataclasses import dataclass
from http.client import HTTPException, RemoteDisconnected
import json
import logging
from typing import Any
from urllib import error, parse, request

from lawcrm.core.config import Settings

logger = logging.getLogger(__name__)

_GRAPH_MAIL_SCOPES = "offline_access https://graph.microsoft.com/Mail.Send"


class GraphMailError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GraphMailAuthenticationError(GraphMailError):
    pass


@dataclass(frozen=True)
class MailAttachment:
    name: str
    content: str
    content_type: str = "text/calendar; method=REQUEST"


class GraphMailClient:
    def __init__(
        self,
        *,
        access_token: str,
        sender: str,
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
        self.access_token = (access_token or "").strip()
        self.sender = sender.strip()
        self.refresh_token = refresh_token.strip()
        self.client_id = client_id.strip()
        self.client_secret = client_secret.strip()
        self.tenant_id = tenant_id.strip() or "common"
        self.timeout_seconds = timeout_seconds
        self.api_base_url = api_base_url.rstrip("/")
        self.oauth_token_url_template = oauth_token_url_template

    @classmethod
    def from_settings(cls, settings: Settings) -> "GraphMailClient | None":
        if not settings.graph_mail_api_token and not settings.graph_mail_refresh_token:
            return None
        return cls(
            access_token=settings.graph_mail_api_token,
            sender=settings.graph_mail_sender or settings.organizer_email,
            refresh_token=settings.graph_mail_refresh_token,
            client_id=settings.outlook_client_id,
            client_secret=settings.outlook_client_secret,
            tenant_id=settings.outlook_tenant_id,
            timeout_seconds=settings.outlook_api_timeout_seconds,
        )

    def send(
        self,
        *,
        to: list[str],
        subject: str,
        html_body: str,
        attachments: list[MailAttachment] | None = None,
    ) -> None:
        addresses = [address.strip() for address in to if address and address.strip()]
        if not addresses:
            raise GraphMailError("Graph sendMail requires at least one recipient.")
        message: dict[str, Any] = {
            "subject": subject,
            "body": {"contentType": "HTML", "content": html_body},
            "toRecipients": [{"emailAddress": {"address": address}} for address in addresses],
        }
        if attachments:
            message["attachments"] = [
                {
                    "@odata.type": "#microsoft.graph.fileAttachment",
                    "name": attachment.name,
                    "contentType": attachment.content_type,
                    "contentBytes": base64.b64encode(attachment.content.encode("utf-8")).decode("ascii"),
                }
                for attachment in attachments
            ]
        sender_path = f"/users/{parse.quote(self.sender, safe='@')}" if self.sender else "/me"
        self._request(
            "POST",
            f"{sender_path}/sendMail",
            payload={"message": message, "saveToSentItems": True},
        )

    def _request(
        self,
        method: str,
        path: str,
        payload: dict[str, Any],
        *,
        allow_refresh_retry: bool = True,
    ) -> None:
        if not self.access_token:
            if not self._can_refresh_access_token():
                raise GraphMailAuthenticationError("Graph mail access token is missing.", status_code=401)
            self._refresh_access_token()

        req = request.Request(
            f"{self.api_base_url}{path}",
            data=json.dumps(payload).encode("utf-8"),
            method=method,
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Content-Type": "application/json",
            },
        )
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                response.read()
        except TimeoutError as exc:
            raise GraphMailError("Graph sendMail request timed out.") from exc
        except error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="ignore")
            if exc.code == 401:
                if allow_refresh_retry and self._can_refresh_access_token():
                    self._refresh_access_token()
                    return self._request(method, path, payload, allow_refresh_retry=False)
                raise GraphMailAuthenticationError(
                    f"Graph mail credentials were rejected: {body or 'empty response body'}",
                    status_code=401,
                ) from exc
            raise GraphMailError(
                f"Graph sendMail HTTP {exc.code}: {body or 'empty response body'}",
                status_code=exc.code,
            ) from exc
        except error.URLError as exc:
            raise GraphMailError(f"Graph sendMail connection error: {exc.reason}") from exc
        except RemoteDisconnected as exc:
            raise GraphMailError("Graph sendMail connection was closed before sending a response.") from exc
        except (HTTPException, OSError) as exc:
            raise GraphMailError(f"Graph sendMail connection error: {exc}") from exc

    def _can_refresh_access_token(self) -> bool:
        return bool(self.refresh_token and self.client_id and self.client_secret)

    def _refresh_access_token(self) -> None:
        body = parse.urlencode(
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": self.refresh_token,
                "grant_type": "refresh_token",
                "scope": _GRAPH_MAIL_SCOPES,
            },
        ).encode("utf-8")
        req = request.Request(
            self.oauth_token_url_template.format(tenant_id=self.tenant_id),
            data=body,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            method="POST",
        )
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                response_body = response.read()
        except error.HTTPError as exc:
            body_text = exc.read().decode("utf-8", errors="ignore")
            raise GraphMailAuthenticationError(
                f"Graph mail token refresh HTTP {exc.code}: {body_text or 'empty response body'}",
                status_code=exc.code,
            ) from exc
        except (HTTPException, OSError) as exc:
            raise GraphMailError("Graph mail token refresh failed.") from exc

        try:
            token_payload = json.loads(response_body.decode("utf-8"))
        except json.JSONDecodeError as exc:
            raise GraphMailAuthenticationError("Graph mail token refresh returned invalid JSON.") from exc
        new_access_token = token_payload.get("access_token") if isinstance(token_payload, dict) else None
        if not isinstance(new_access_token, str) or not new_access_token.strip():
            raise GraphMailAuthenticationError("Graph mail token refresh did not include access_token.")
        logger.info("Graph mail access token refreshed sender=%s", self.sender)
        self.access_token = new_access_token.strip()
        refreshed_refresh_token = token_payload.get("refresh_token")
        if isinstance(refreshed_refresh_token, str) and refreshed_refresh_token.strip():
            self.refresh_token = refreshed_refresh_token.strip()
