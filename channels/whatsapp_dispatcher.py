from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from memory.case_repository import CaseRepository
from models.schemas import Case, MessageRole, TenantInstance
from settings import SETTINGS
from tools.retry import RetryPolicy, with_retry

logger = logging.getLogger(__name__)


class ChannelClient(ABC):
    @abstractmethod
    async def send_text(self, phone: str, text: str) -> Optional[str]:
        raise NotImplementedError

    @abstractmethod
    async def send_presence(self, phone: str, delay_ms: int) -> None:
        raise NotImplementedError

    @abstractmethod
    async def download_media_base64(self, key: Dict[str, Any], message: Dict[str, Any]) -> str:
        raise NotImplementedError


class EvolutionClient(ChannelClient):
    """HTTP client for one Evolution gateway instance."""

    def __init__(
        self,
        instance: TenantInstance,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.instance = instance
        self.transport = transport
        self.retry_policy = retry_policy

    def _url(self, path: str) -> str:
        return f"{self.instance.api_url.rstrip('/')}/{path}/{self.instance.instance_name}"

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=SETTINGS.channel_timeout_seconds, transport=self.transport) as client:
            resp = await client.post(self._url(path), headers={"apikey": self.instance.api_key}, json=body)
            resp.raise_for_status()
            return resp.json() if resp.content else {}

    async def send_text(self, phone: str, text: str) -> Optional[str]:
        data = await with_retry(
            lambda: self._post("message/sendText", {"number": phone, "text": text}),
            label="evolution_send_text",
            policy=self.retry_policy,
        )
        key = data.get("key") or {}
        return key.get("id")

    async def send_presence(self, phone: str, delay_ms: int) -> None:
        await self._post("chat/sendPresence", {"number": phone, "presence": "composing", "delay": delay_ms})

    async def download_media_base64(self, key: Dict[str, Any], message: Dict[str, Any]) -> str:
        policy = self.retry_policy or RetryPolicy(max_retries=2)
        data = await with_retry(
            lambda: self._post(
                "chat/getBase64FromMediaMessage",
                {"message": {"key": key, "message": message}, "convertToMp4": False},
            ),
            label="evolution_download_media",
            policy=policy,
        )
        return str(data.get("base64") or (data.get("data") or {}).get("base64") or "")


class OutboundDispatcher:
    """Typing simulation, send, and the assistant-side history entry."""

    def __init__(
        self,
        repository: CaseRepository,
        client_factory: Callable[[TenantInstance], ChannelClient] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.repository = repository
        self.client_factory = client_factory or EvolutionClient
        self.sleep = sleep

    def client(self, instance: TenantInstance) -> ChannelClient:
        return self.client_factory(instance)

    @staticmethod
    def typing_seconds(text: str) -> float:
        raw = len(text or "") * SETTINGS.typing_ms_per_char / 1000.0
        return max(SETTINGS.typing_min_seconds, min(raw, SETTINGS.typing_max_seconds))

    async def send(self, instance: TenantInstance, case: Case, text: str, record: bool = True) -> Optional[str]:
        client = self.client(instance)
        typing = self.typing_seconds(text)
        try:
            await client.send_presence(case.client_phone, int(typing * 1000))
        except (httpx.HTTPError, asyncio.TimeoutError) as exc:
            logger.warning("typing_indicator_failed", extra={"case_id": case.id, "error": repr(exc)})
        await self.sleep(typing)
        message_id = await client.send_text(case.client_phone, text)
        if record:
            await self.repository.add_entry(case.id, MessageRole.ASSISTANT, text, external_message_id=message_id)
        logger.info("outbound_sent", extra={"case_id": case.id, "message_id": message_id, "chars": len(text)})
        return message_id

    async def send_to_number(self, instance: TenantInstance, phone: str, text: str) -> Optional[str]:
        return await self.client(instance).send_text(phone, text)
