import logging
import os
from collections.abc import Mapping
from typing import Optional, Protocol

import httpx

from app.core.normalizer import InboundMessage, normalize_phone, parse_incoming

logger = logging.getLogger("uvicorn.error")

TWILIO_API_BASE = os.getenv("TWILIO_API_BASE", "https://api.twilio.com/2010-04-01")
TWILIO_TIMEOUT_SECONDS = float(os.getenv("TWILIO_TIMEOUT_SECONDS", "10"))


class MessagingGateway(Protocol):
    def parse_incoming(self, payload: Mapping[str, object]) -> InboundMessage:
        ...

    def send(self, to_handle: str, text: str) -> Optional[str]:
        ...


def whatsapp_address(handle: str) -> str:
    return f"whatsapp:{normalize_phone(handle)}"


class TwilioGateway:
    """WhatsApp delivery through the Twilio Messages REST endpoint."""

    def __init__(
        self,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        whatsapp_number: Optional[str] = None,
    ) -> None:
        self.account_sid = account_sid if account_sid is not None else os.getenv("TWILIO_ACCOUNT_SID", "")
        self.auth_token = auth_token if auth_token is not None else os.getenv("TWILIO_AUTH_TOKEN", "")
        self.whatsapp_number = (
            whatsapp_number if whatsapp_number is not None else os.getenv("TWILIO_WHATSAPP_NUMBER", "")
        )

    def parse_incoming(self, payload: Mapping[str, object]) -> InboundMessage:
        return parse_incoming(payload)

    def _from_address(self) -> str:
        if self.whatsapp_number.startswith("whatsapp:"):
            return self.whatsapp_number
        return whatsapp_address(self.whatsapp_number)

    def send(self, to_handle: str, text: str) -> Optional[str]:
        if not self.account_sid or not self.auth_token or not self.whatsapp_number:
            logger.warning("Twilio credentials must be set; message to %s not sent", normalize_phone(to_handle))
            return None
        url = f"{TWILIO_API_BASE}/Accounts/{self.account_sid}/Messages.json"
        try:
            response = httpx.post(
                url,
                data={"From": self._from_address(), "To": whatsapp_address(to_handle), "Body": text},
                auth=(self.account_sid, self.auth_token),
                timeout=TWILIO_TIMEOUT_SECONDS,
            )
            response.raise_for_status()
            message_sid = response.json().get("sid")
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "Twilio send failed (status=%s): %s",
                exc.response.status_code,
                (exc.response.text or "").strip()[:220],
            )
            return None
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Error sending WhatsApp message: %s", exc)
            return None
        if not message_sid:
            logger.warning("Twilio send returned no message sid")
            return None
        logger.info("Message sent successfully: %s", message_sid)
        return str(message_sid)


def get_messaging_gateway() -> MessagingGateway:
    return TwilioGateway()
