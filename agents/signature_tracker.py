from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict

from agents.base import BaseAgent
from agents.case_state import CaseStateMachine
from compliance.audit_logger import AuditLogger
from memory.case_repository import CaseRepository
from models.schemas import FunnelStatus
from tenants.registry import TenantRegistry

logger = logging.getLogger(__name__)

SIGNATURE_STATUS = {
    "signed": "signed",
    "doc_signed": "signed",
    "closed": "signed",
    "refused": "refused",
    "doc_refused": "refused",
    "link_opened": "opened",
    "signer_link_opened": "opened",
}


class SignatureTracker(BaseAgent):
    """Applies e-signature provider callbacks to tracked documents and their cases."""

    def __init__(
        self,
        repository: CaseRepository,
        registry: TenantRegistry,
        state_machine: CaseStateMachine,
        audit_logger: AuditLogger,
    ) -> None:
        super().__init__("signature_tracker", audit_logger)
        self.repository = repository
        self.registry = registry
        self.state_machine = state_machine

    async def handle(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        token = payload.get("token") or payload.get("doc_token")
        if not token:
            return {"status": "ignored", "reason": "no_token"}
        raw = str(payload.get("status") or payload.get("event_type") or "").strip().lower()
        status = SIGNATURE_STATUS.get(raw)
        if status is None:
            return {"status": "ignored", "reason": "unmapped_status"}

        values: Dict[str, Any] = {"status": status}
        if status == "signed":
            values["signed_at"] = datetime.utcnow().isoformat()
        rows = await self.repository.store.update("signed_documents", {"doc_token": token}, values)
        if not rows:
            logger.warning("signature_document_unknown", extra={"doc_token": token})
            return {"status": "unknown_document"}
        document = rows[0]
        logger.info("signature_status_updated", extra={"doc_token": token, "status": status})
        if status != "signed" or not document.get("case_id"):
            return {"status": "document_updated", "document_status": status}

        case = await self.repository.get_case(str(document["case_id"]))
        if case is None:
            return {"status": "document_updated", "document_status": status}
        await self.record_event(case, "contract_signed", metadata={"doc_token": token})
        instance = await self.registry.instance_for_user(case.user_id)
        if instance is None:
            logger.warning("signature_case_without_instance", extra={"case_id": case.id})
            return {"status": "document_updated", "document_status": status, "case_status": case.status.value}
        updated = await self.state_machine.transition(instance, case, FunnelStatus.CONVERTED, "contract_signed")
        return {"status": "document_updated", "document_status": status, "case_status": updated.status.value}
