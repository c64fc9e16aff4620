from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from models.schemas import DeliveryStatus, DeliveryUpdate, InboundMessage, MediaKind

MESSAGE = "message"
STATUS_UPDATE = "status_update"
PRESENCE = "presence"
IGNORED = "ignored"

STATUS_EVENTS = {"messages.update", "MESSAGES_UPDATE"}
PRESENCE_EVENTS = {"presence.update", "PRESENCE_UPDATE"}

NUMERIC_STATUS = {
    1: DeliveryStatus.PENDING,
    2: DeliveryStatus.SENT,
    3: DeliveryStatus.DELIVERED,
    4: DeliveryStatus.READ,
    5: DeliveryStatus.READ,
}
SYMBOLIC_STATUS = {
    "PENDING": DeliveryStatus.PENDING,
    "SERVER_ACK": DeliveryStatus.SENT,
    "DELIVERY_ACK": DeliveryStatus.DELIVERED,
    "READ": DeliveryStatus.READ,
    "PLAYED": DeliveryStatus.READ,
    "ERROR": DeliveryStatus.FAILED,
}

JID_SUFFIX = "@s.whatsapp.net"


@dataclass
class NormalizedEvent:
    kind: str
    message: Optional[InboundMessage] = None
    update: Optional[DeliveryUpdate] = None
    reason: str = ""


def map_delivery_status(raw: Any) -> Optional[DeliveryStatus]:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return NUMERIC_STATUS.get(raw)
    text = str(raw or "").strip()
    if text.isdigit():
        return NUMERIC_STATUS.get(int(text))
    return SYMBOLIC_STATUS.get(text.upper())


def _extract_media(message: Dict[str, Any]) -> Tuple[Optional[MediaKind], Dict[str, Any]]:
    if isinstance(message.get("audioMessage"), dict):
        return MediaKind.AUDIO, message["audioMessage"]
    if isinstance(message.get("imageMessage"), dict):
        return MediaKind.IMAGE, message["imageMessage"]
    if isinstance(message.get("documentMessage"), dict):
        return MediaKind.DOCUMENT, message["documentMessage"]
    wrapped = ((message.get("documentWithCaptionMessage") or {}).get("message") or {}).get("documentMessage")
    if isinstance(wrapped, dict):
        return MediaKind.DOCUMENT, wrapped
    return None, {}


def normalize_event(payload: Dict[str, Any]) -> NormalizedEvent:
    """Classify one gateway webhook payload and pull out the canonical fields."""
    event = str(payload.get("event") or "")
    instance = str(payload.get("instance") or "")
    data = payload.get("data") or {}
    if not isinstance(data, dict):
        return NormalizedEvent(kind=IGNORED, reason="malformed")

    if event in PRESENCE_EVENTS:
        return NormalizedEvent(kind=PRESENCE)

    message = data.get("message")
    raw_status = data.get("status")
    if raw_status is None and isinstance(data.get("update"), dict):
        raw_status = data["update"].get("status")
    if event in STATUS_EVENTS or (raw_status is not None and not isinstance(message, dict)):
        key = data.get("key") or {}
        external_id = str(data.get("keyId") or key.get("id") or data.get("messageId") or "")
        status = map_delivery_status(raw_status)
        if not external_id or status is None:
            return NormalizedEvent(kind=IGNORED, reason="unmapped_status")
        return NormalizedEvent(
            kind=STATUS_UPDATE,
            update=DeliveryUpdate(instance=instance, external_message_id=external_id, status=status),
        )

    key = data.get("key") or {}
    if key.get("fromMe"):
        return NormalizedEvent(kind=IGNORED, reason="from_me")
    message = message if isinstance(message, dict) else {}
    text = str(message.get("conversation") or (message.get("extendedTextMessage") or {}).get("text") or "").strip()
    media_kind, media = _extract_media(message)
    if not text and media_kind is None:
        return NormalizedEvent(kind=IGNORED, reason="no_content")

    remote_jid = str(key.get("remoteJid") or "")
    phone = remote_jid.replace(JID_SUFFIX, "")
    if not phone:
        return NormalizedEvent(kind=IGNORED, reason="no_sender")

    return NormalizedEvent(
        kind=MESSAGE,
        message=InboundMessage(
            instance=instance,
            phone=phone,
            client_name=str(data.get("pushName") or "Client"),
            text=text,
            external_message_id=key.get("id"),
            media_kind=media_kind,
            media_mimetype=media.get("mimetype"),
            media_filename=media.get("fileName"),
            media_caption=media.get("caption"),
            raw_key=key,
            raw_message=message,
        ),
    )
