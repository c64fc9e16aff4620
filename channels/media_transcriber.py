from __future__ import annotations

import base64
import binascii
import logging

from agents.llm_runtime import LLMRuntime
from channels.whatsapp_dispatcher import ChannelClient
from models.schemas import InboundMessage, MediaKind

logger = logging.getLogger(__name__)

AUDIO_MARKER = "🎤 [Audio transcription]: "
IMAGE_MARKER = "📷 [Image description]: "
DOCUMENT_MARKER = "📄 [Text extracted from {name}]: "

PLACEHOLDERS = {
    MediaKind.AUDIO: "[Audio received - could not process]",
    MediaKind.IMAGE: "[Image received - could not process]",
    MediaKind.DOCUMENT: "[Document received - could not process]",
}
PROCESSING_ERROR = "[Media received - processing error]"

IMAGE_INSTRUCTION = (
    "Describe this image sent by a client of a law firm. If it contains text, transcribe the text literally. "
    "Otherwise describe what it shows in detail, focusing on anything relevant to a legal matter."
)
DOCUMENT_INSTRUCTION = (
    "Extract all the text of this document literally, keeping its structure. "
    "If no text can be read, describe the document in detail."
)


class MediaTranscriber:
    """Turns inbound media into marker-prefixed text; failures become placeholders."""

    def __init__(self, llm: LLMRuntime | None = None) -> None:
        self.llm = llm or LLMRuntime()

    async def transcribe(self, message: InboundMessage, client: ChannelClient) -> str:
        kind = message.media_kind
        if kind is None:
            return message.text
        placeholder = PLACEHOLDERS[kind]
        try:
            encoded = await client.download_media_base64(message.raw_key, message.raw_message)
        except Exception as exc:
            logger.warning("media_download_failed", extra={"kind": kind.value, "error": repr(exc)})
            return placeholder
        if not encoded:
            return placeholder
        try:
            return await self._convert(kind, encoded, message) or placeholder
        except (binascii.Error, ValueError) as exc:
            logger.warning("media_decode_failed", extra={"kind": kind.value, "error": repr(exc)})
            return placeholder
        except Exception:
            logger.exception("media_transcription_failed", extra={"kind": kind.value})
            return PROCESSING_ERROR

    async def _convert(self, kind: MediaKind, encoded: str, message: InboundMessage) -> str:
        caption = (message.media_caption or "").strip()
        if kind == MediaKind.AUDIO:
            audio = base64.b64decode(encoded, validate=False)
            text = await self.llm.transcribe_audio(audio, message.media_mimetype or "audio/ogg")
            return f"{AUDIO_MARKER}{text}" if text else ""

        default_mime = "image/jpeg" if kind == MediaKind.IMAGE else "application/pdf"
        data_url = f"data:{message.media_mimetype or default_mime};base64,{encoded}"
        instruction = IMAGE_INSTRUCTION if kind == MediaKind.IMAGE else DOCUMENT_INSTRUCTION
        if caption:
            instruction += f"\nThe client wrote this caption: {caption}"
        text = await self.llm.describe_media(data_url, instruction)
        if not text:
            return ""
        if kind == MediaKind.IMAGE:
            return f"{IMAGE_MARKER}{text}"
        return DOCUMENT_MARKER.format(name=message.media_filename or "document") + text
