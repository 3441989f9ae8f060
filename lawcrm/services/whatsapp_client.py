from dataclasses import dataclass
from http.client import HTTPException, RemoteDisconnected
import json
import logging
import re
from typing import Any
from urllib import error, parse, request

from lawcrm.core.config import Settings

logger = logging.getLogger(__name__)

RE_ENGAGEMENT_REQUIRED = "RE_ENGAGEMENT_REQUIRED"
AUTHENTICATION_REQUIRED = "AUTHENTICATION_REQUIRED"

# Outside the 24h customer-service window only approved templates may be sent.
_RE_ENGAGEMENT_ERROR_CODE = 131047
_OAUTH_ERROR_CODE = 190
_DEFAULT_COUNTRY_PREFIX = "972"


class WhatsAppError(Exception):
    pass


@dataclass(frozen=True)
class ChatDelivery:
    delivered: bool
    code: str | None = None
    message_id: str | None = None
    detail: str | None = None


class WhatsAppClient:
    def __init__(
        self,
        *,
        access_token: str,
        phone_number_id: str,
        api_version: str = "v19.0",
        timeout_seconds: float = 10.0,
        api_base_url: str = "https://graph.facebook.com",
    ) -> None:
        self.access_token = access_token.strip()
        self.phone_number_id = phone_number_id.strip()
        self.api_version = api_version.strip() or "v19.0"
        self.timeout_seconds = timeout_seconds
        self.api_base_url = api_base_url.rstrip("/")

    @classmethod
    def from_settings(cls, settings: Settings) -> "WhatsAppClient | None":
        if not settings.whatsapp_api_token or not settings.whatsapp_phone_number_id:
            return None
        return cls(
            access_token=settings.whatsapp_api_token,
            phone_number_id=settings.whatsapp_phone_number_id,
            api_version=settings.whatsapp_api_version,
            timeout_seconds=settings.whatsapp_api_timeout_seconds,
        )

    def send_template(
        self,
        *,
        recipient_address: str,
        template_name: str,
        language: str,
        parameters: list[str],
    ) -> ChatDelivery:
        template: dict[str, Any] = {
            "name": template_name,
            "language": {"code": language},
        }
        if parameters:
            template["components"] = [
                {
                    "type": "body",
                    "parameters": [{"type": "text", "text": value} for value in parameters],
                },
            ]
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": normalize_phone_number(recipient_address),
            "type": "template",
            "template": template,
        }
        target = (
            f"{self.api_base_url}/{self.api_version}/"
            f"{parse.quote(self.phone_number_id, safe='')}/messages"
        )
        req = request.Request(
            target,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Content-Type": "application/json",
            },
        )
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                response_body = response.read()
        except TimeoutError as exc:
            raise WhatsAppError("WhatsApp API request timed out.") from exc
        except error.HTTPError as exc:
            return self._delivery_from_error(exc)
        except error.URLError as exc:
            raise WhatsAppError(f"WhatsApp API connection error: {exc.reason}") from exc
        except RemoteDisconnected as exc:
            raise WhatsAppError("WhatsApp API connection was closed before sending a response.") from exc
        except (HTTPException, OSError) as exc:
            raise WhatsAppError(f"WhatsApp API connection error: {exc}") from exc

        try:
            parsed_body = json.loads(response_body.decode("utf-8"))
        except json.JSONDecodeError as exc:
            raise WhatsAppError("WhatsApp API returned invalid JSON.") from exc
        message_id = None
        messages = parsed_body.get("messages") if isinstance(parsed_body, dict) else None
        if isinstance(messages, list) and messages and isinstance(messages[0], dict):
            message_id = messages[0].get("id")
        return ChatDelivery(delivered=True, message_id=message_id)

    def _delivery_from_error(self, exc: error.HTTPError) -> ChatDelivery:
        body = exc.read().decode("utf-8", errors="ignore")
        error_payload: dict[str, Any] = {}
        try:
            parsed_body = json.loads(body) if body else {}
        except json.JSONDecodeError:
            parsed_body = {}
        if isinstance(parsed_body, dict) and isinstance(parsed_body.get("error"), dict):
            error_payload = parsed_body["error"]

        error_code = error_payload.get("code")
        detail = str(error_payload.get("message") or body or f"HTTP {exc.code}")
        logger.warning(
            "WhatsApp template send failed status=%s error_code=%s detail=%s",
            exc.code,
            error_code,
            detail,
        )
        if error_code == _RE_ENGAGEMENT_ERROR_CODE:
            return ChatDelivery(delivered=False, code=RE_ENGAGEMENT_REQUIRED, detail=detail)
        if exc.code == 401 or error_code == _OAUTH_ERROR_CODE:
            return ChatDelivery(delivered=False, code=AUTHENTICATION_REQUIRED, detail=detail)
        return ChatDelivery(
            delivered=False,
            code=str(error_code) if error_code is not None else f"HTTP_{exc.code}",
            detail=detail,
        )


def normalize_phone_number(raw_phone: str) -> str:
    digits = re.sub(r"\D", "", raw_phone or "")
    if digits.startswith("00"):
        return digits[2:]
    if digits.startswith("0"):
        return f"{_DEFAULT_COUNTRY_PREFIX}{digits[1:]}"
    return digits
