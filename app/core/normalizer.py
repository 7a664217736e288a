import re
from collections.abc import Mapping
from typing import Optional

from pydantic import BaseModel

_TRANSPORT_PREFIX = re.compile(r"whatsapp:", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")


class InboundMessage(BaseModel):
    from_: str = ""
    body: str = ""
    message_id: str = ""
    display_name: str = ""
    wa_id: str = ""


def normalize_phone(raw: Optional[str]) -> str:
    """Canonical user handle: no transport prefix, no whitespace, leading ``+``.

    Applying it to an already normalized value returns that value unchanged.
    """
    clean = _WHITESPACE.sub("", str(raw or ""))
    # Removing one prefix can expose another ("whatswhatsapp:app:").
    while _TRANSPORT_PREFIX.search(clean):
        clean = _TRANSPORT_PREFIX.sub("", clean)
    if not clean.startswith("+"):
        clean = f"+{clean}"
    return clean


def parse_incoming(payload: Optional[Mapping[str, object]]) -> InboundMessage:
    data = payload or {}

    def _field(name: str) -> str:
        value = data.get(name)
        return "" if value is None else str(value)

    return InboundMessage(
        from_=_field("From"),
        body=_field("Body"),
        message_id=_field("MessageSid"),
        display_name=_field("ProfileName"),
        wa_id=_field("WaId"),
    )


def is_valid_inbound(message: InboundMessage) -> bool:
    return bool(message.from_.strip()) and bool(message.body.strip())
