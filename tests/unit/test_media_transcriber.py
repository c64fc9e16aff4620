from __future__ import annotations

import asyncio

import httpx

from agents.llm_runtime import LLMRuntime, OpenAIProvider
from channels.media_transcriber import AUDIO_MARKER, IMAGE_MARKER, PLACEHOLDERS, PROCESSING_ERROR, MediaTranscriber
from fakes import NO_RETRY, RecordingChannelClient, ScriptedProvider
from models.schemas import InboundMessage, MediaKind


def _message(kind: MediaKind, **kwargs) -> InboundMessage:
    return InboundMessage(instance="office-1", phone="5511999990000", media_kind=kind, **kwargs)


def test_download_failure_becomes_placeholder():
    async def _run():
        transcriber = MediaTranscriber(LLMRuntime(providers=[ScriptedProvider()], retry_policy=NO_RETRY))
        text = await transcriber.transcribe(_message(MediaKind.DOCUMENT), RecordingChannelClient(media=None))
        assert text == PLACEHOLDERS[MediaKind.DOCUMENT]
        empty = await transcriber.transcribe(_message(MediaKind.IMAGE), RecordingChannelClient(media=""))
        assert empty == PLACEHOLDERS[MediaKind.IMAGE]

    asyncio.run(_run())


def test_image_description_is_marked_and_uses_caption():
    async def _run():
        provider = ScriptedProvider(default="A payslip showing R$ 3.000,00.")
        transcriber = MediaTranscriber(LLMRuntime(providers=[provider], retry_policy=NO_RETRY))
        message = _message(MediaKind.IMAGE, media_mimetype="image/png", media_caption="my last payslip")
        text = await transcriber.transcribe(message, RecordingChannelClient(media="aGVsbG8="))

        assert text == f"{IMAGE_MARKER}A payslip showing R$ 3.000,00."
        parts = provider.bodies[0]["messages"][0]["content"]
        assert parts[1]["image_url"]["url"] == "data:image/png;base64,aGVsbG8="
        assert "my last payslip" in parts[0]["text"]

    asyncio.run(_run())


def test_audio_goes_through_transcription_endpoint():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        return httpx.Response(200, json={"text": " I was fired last week. "})

    async def _run():
        provider = OpenAIProvider(api_key="k", base_url="http://openai.local/v1", transport=httpx.MockTransport(handler))
        transcriber = MediaTranscriber(LLMRuntime(providers=[provider], retry_policy=NO_RETRY))
        message = _message(MediaKind.AUDIO, media_mimetype="audio/ogg; codecs=opus")
        text = await transcriber.transcribe(message, RecordingChannelClient(media="aGVsbG8="))
        assert text == f"{AUDIO_MARKER}I was fired last week."
        assert seen == ["/v1/audio/transcriptions"]

    asyncio.run(_run())


def test_audio_without_transcription_provider_is_a_processing_error():
    async def _run():
        transcriber = MediaTranscriber(LLMRuntime(providers=[ScriptedProvider()], retry_policy=NO_RETRY))
        text = await transcriber.transcribe(_message(MediaKind.AUDIO), RecordingChannelClient(media="aGVsbG8="))
        assert text == PROCESSING_ERROR

    asyncio.run(_run())
