from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from settings import SETTINGS
from tools.retry import RetryPolicy, is_retryable, with_retry

logger = logging.getLogger(__name__)


class ProviderUnavailableError(RuntimeError):
    pass


class ProvidersExhaustedError(RuntimeError):
    def __init__(self, errors: List[str]) -> None:
        super().__init__("all chat providers failed: " + "; ".join(errors))
        self.errors = errors


@dataclass
class ToolInvocation:
    id: str
    name: str
    arguments: Dict[str, Any]
    raw_arguments: str = ""


@dataclass
class LLMResult:
    text: str
    provider: str
    model: str
    raw: Dict[str, Any]
    tool_calls: List[ToolInvocation] = field(default_factory=list)

    def assistant_message(self) -> Dict[str, Any]:
        """The assistant turn as it must be echoed back on a second pass."""
        choices = self.raw.get("choices") or []
        message = choices[0].get("message") if choices and isinstance(choices[0], dict) else None
        if isinstance(message, dict):
            return {k: v for k, v in message.items() if k in {"role", "content", "tool_calls"}}
        return {"role": "assistant", "content": self.text}


class ChatCompletionProvider(ABC):
    name = "provider"

    def __init__(self, api_key: str, base_url: str, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.api_key = api_key
        self.base_url = base_url
        self.transport = transport

    def available(self) -> bool:
        return bool(self.api_key)

    @abstractmethod
    def translate_model(self, model: str) -> str:
        raise NotImplementedError

    def client(self, timeout: float | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout or SETTINGS.llm_timeout_seconds, transport=self.transport)

    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def complete(self, body: Dict[str, Any]) -> Dict[str, Any]:
        async with self.client() as client:
            resp = await client.post(f"{self.base_url.rstrip('/')}/chat/completions", headers=self.headers(), json=body)
            resp.raise_for_status()
            return resp.json()


class OpenAIProvider(ChatCompletionProvider):
    name = "openai"

    def __init__(self, api_key: str | None = None, base_url: str | None = None, transport: httpx.AsyncBaseTransport | None = None) -> None:
        super().__init__(
            api_key if api_key is not None else SETTINGS.openai_api_key,
            base_url or SETTINGS.openai_base_url,
            transport,
        )

    def translate_model(self, model: str) -> str:
        return model

    async def embed(self, text: str) -> List[float]:
        async with self.client() as client:
            resp = await client.post(
                f"{self.base_url.rstrip('/')}/embeddings",
                headers=self.headers(),
                json={
                    "model": SETTINGS.embedding_model,
                    "input": text[:8000],
                    "dimensions": SETTINGS.embedding_dimensions,
                },
            )
            resp.raise_for_status()
            data = resp.json()
        rows = data.get("data") or []
        return list(rows[0].get("embedding") or []) if rows else []

    async def transcribe(self, audio: bytes, mime_type: str, filename: str, language: str) -> str:
        form = {
            "model": (None, SETTINGS.transcription_model),
            "language": (None, language),
        }
        files = {"file": (filename, audio, mime_type or "application/octet-stream")}
        async with self.client(timeout=max(SETTINGS.llm_timeout_seconds, 45)) as client:
            resp = await client.post(
                f"{self.base_url.rstrip('/')}/audio/transcriptions",
                headers=self.headers(),
                files={**form, **files},
            )
            resp.raise_for_status()
            data = resp.json()
        return str(data.get("text", "") or "").strip()


class GatewayProvider(ChatCompletionProvider):
    name = "gateway"

    MODEL_MAP = {
        "gpt-4o-mini": "google/gemini-2.5-flash",
        "gpt-4o": "google/gemini-2.5-flash",
    }

    def __init__(self, api_key: str | None = None, base_url: str | None = None, transport: httpx.AsyncBaseTransport | None = None) -> None:
        super().__init__(
            api_key if api_key is not None else SETTINGS.gateway_api_key,
            base_url or SETTINGS.gateway_base_url,
            transport,
        )

    def translate_model(self, model: str) -> str:
        if "/" in model:
            return model
        return self.MODEL_MAP.get(model, SETTINGS.gateway_default_model)


class LLMRuntime:
    """Chat, embedding and transcription calls with retry and provider fallback."""

    def __init__(
        self,
        providers: List[ChatCompletionProvider] | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.providers = providers if providers is not None else [OpenAIProvider(), GatewayProvider()]
        self.retry_policy = retry_policy

    def available(self) -> bool:
        return any(p.available() for p in self.providers)

    def _primary(self) -> Optional[OpenAIProvider]:
        for provider in self.providers:
            if isinstance(provider, OpenAIProvider) and provider.available():
                return provider
        return None

    def embeddings_available(self) -> bool:
        return self._primary() is not None

    async def chat(self, body: Dict[str, Any]) -> LLMResult:
        errors: List[str] = []
        for provider in self.providers:
            if not provider.available():
                continue
            payload = {**body, "model": provider.translate_model(str(body.get("model") or SETTINGS.chat_model))}
            try:
                data = await with_retry(
                    lambda: provider.complete(payload),
                    label=f"{provider.name}_chat",
                    policy=self.retry_policy,
                )
            except Exception as exc:
                if not is_retryable(exc):
                    raise
                errors.append(f"{provider.name}: {exc!r}")
                logger.warning("llm_provider_failed", extra={"provider": provider.name, "error": repr(exc)})
                continue
            return LLMResult(
                text=self._extract_chat_completion_text(data),
                provider=provider.name,
                model=payload["model"],
                raw=data,
                tool_calls=self._extract_tool_calls(data),
            )
        if not errors:
            raise ProviderUnavailableError("no chat provider configured")
        raise ProvidersExhaustedError(errors)

    async def complete_text(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.2,
        max_tokens: int = 500,
        model: str | None = None,
    ) -> str:
        result = await self.chat(
            {
                "model": model or SETTINGS.chat_model,
                "messages": [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                "temperature": temperature,
                "max_tokens": max_tokens,
            }
        )
        return result.text

    async def embed(self, text: str) -> Optional[List[float]]:
        primary = self._primary()
        if primary is None or not text.strip():
            return None
        vector = await with_retry(lambda: primary.embed(text), label="openai_embed", policy=self.retry_policy)
        if not vector:
            return None
        if len(vector) != SETTINGS.embedding_dimensions:
            logger.warning(
                "embedding_dimension_mismatch", extra={"expected": SETTINGS.embedding_dimensions, "received": len(vector)}
            )
            return None
        return vector

    async def transcribe_audio(self, audio: bytes, mime_type: str = "audio/ogg", language: str | None = None) -> str:
        primary = self._primary()
        if primary is None:
            raise ProviderUnavailableError("transcription requires the primary provider")
        filename = "audio.ogg"
        if "mp4" in mime_type or "m4a" in mime_type:
            filename = "audio.m4a"
        elif "mpeg" in mime_type or "mp3" in mime_type:
            filename = "audio.mp3"
        elif "wav" in mime_type:
            filename = "audio.wav"
        return await with_retry(
            lambda: primary.transcribe(audio, mime_type, filename, language or SETTINGS.transcription_language),
            label="openai_transcribe",
            policy=self.retry_policy,
        )

    async def describe_media(self, data_url: str, instruction: str) -> str:
        result = await self.chat(
            {
                "model": SETTINGS.vision_model,
                "messages": [
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": instruction},
                            {"type": "image_url", "image_url": {"url": data_url}},
                        ],
                    }
                ],
                "temperature": 0.1,
                "max_tokens": 4000,
            }
        )
        return result.text

    def _extract_chat_completion_text(self, data: Dict[str, Any]) -> str:
        choices = data.get("choices") or []
        if not choices:
            return ""
        message = choices[0].get("message") if isinstance(choices[0], dict) else {}
        content = message.get("content", "") if isinstance(message, dict) else ""
        if content is None:
            return ""
        if isinstance(content, str):
            return content.strip()
        if isinstance(content, list):
            out: List[str] = []
            for part in content:
                if isinstance(part, dict) and "text" in part:
                    out.append(str(part.get("text", "")))
            return "\n".join(t for t in out if t).strip()
        return str(content).strip()

    def _extract_tool_calls(self, data: Dict[str, Any]) -> List[ToolInvocation]:
        choices = data.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            return []
        message = choices[0].get("message") or {}
        calls: List[ToolInvocation] = []
        for raw in message.get("tool_calls") or []:
            fn = raw.get("function") or {}
            raw_args = str(fn.get("arguments") or "")
            try:
                args = json.loads(raw_args) if raw_args else {}
            except json.JSONDecodeError:
                logger.warning("tool_call_arguments_unparseable", extra={"tool": fn.get("name"), "raw": raw_args[:200]})
                args = {}
            calls.append(
                ToolInvocation(
                    id=str(raw.get("id") or ""),
                    name=str(fn.get("name") or ""),
                    arguments=args if isinstance(args, dict) else {},
                    raw_arguments=raw_args,
                )
            )
        return calls
