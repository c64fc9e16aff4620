from __future__ import annotations

import logging
import re
from typing import Any, Dict, List

import httpx

from models.schemas import SignatureSettings
from settings import SETTINGS
from tools.retry import RetryPolicy, with_retry

logger = logging.getLogger(__name__)


class SignatureProviderError(RuntimeError):
    pass


class ZapSignTools:
    """Document dispatch for e-signature through ZapSign templates."""

    def __init__(
        self,
        settings: SignatureSettings,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.settings = settings
        self.transport = transport
        self.retry_policy = retry_policy

    @property
    def base_url(self) -> str:
        return SETTINGS.zapsign_sandbox_url if self.settings.sandbox else SETTINGS.zapsign_production_url

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=SETTINGS.llm_timeout_seconds,
            transport=self.transport,
            headers={"Authorization": f"Bearer {self.settings.api_token}"},
        )

    async def list_templates(self) -> List[Dict[str, Any]]:
        async def _get() -> Any:
            async with self._client() as client:
                resp = await client.get(f"{self.base_url}/templates/")
                resp.raise_for_status()
                return resp.json()

        data = await with_retry(_get, label="zapsign_templates", policy=self.retry_policy)
        if isinstance(data, dict):
            data = data.get("results") or []
        return [t for t in data if isinstance(t, dict)]

    async def resolve_template(self, template_id: str) -> str:
        if template_id and template_id != "default":
            return template_id
        templates = await self.list_templates()
        if not templates or not templates[0].get("token"):
            raise SignatureProviderError("no signature template available")
        return str(templates[0]["token"])

    async def create_document(
        self,
        template_id: str,
        signer_name: str,
        signer_phone: str,
        signer_email: str | None = None,
        fields: Dict[str, str] | None = None,
    ) -> Dict[str, Any]:
        template = await self.resolve_template(template_id)
        digits = re.sub(r"\D", "", signer_phone)
        if digits.startswith("55") and len(digits) > 11:
            digits = digits[2:]
        signer: Dict[str, Any] = {
            "name": signer_name,
            "phone_country": "55",
            "phone_number": digits,
            "auth_mode": "assinaturaTela",
            "send_automatic_whatsapp": True,
        }
        if signer_email:
            signer["email"] = signer_email
        data = [{"de": "{{nome}}", "para": signer_name}]
        data.extend({"de": "{{" + key + "}}", "para": value} for key, value in (fields or {}).items())
        body = {"template_id": template, "signer_name": signer_name, "signers": [signer], "data": data}

        async def _post() -> Dict[str, Any]:
            async with self._client() as client:
                resp = await client.post(f"{self.base_url}/models/create-doc/", json=body)
                resp.raise_for_status()
                return resp.json()

        document = await with_retry(_post, label="zapsign_create_doc", policy=self.retry_policy)
        logger.info("signature_document_created", extra={"doc_token": document.get("token"), "template": template})
        return document
