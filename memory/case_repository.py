from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from memory.record_store import RecordStore
from models.schemas import (
    FAQ,
    Agent,
    AgentRules,
    Case,
    CaseFields,
    ConversationEntry,
    DeliveryStatus,
    FunnelStatus,
    HandoffRecord,
    MessageRole,
    ScriptStep,
)


class CaseRepository:
    """Typed access to cases, agents, scripts and conversation history."""

    def __init__(self, store: RecordStore) -> None:
        self.store = store

    # cases

    async def get_case(self, case_id: str) -> Optional[Case]:
        row = await self.store.select_one("cases", {"id": case_id})
        return Case.model_validate(row) if row else None

    async def find_case(self, user_id: str, client_phone: str) -> Optional[Case]:
        row = await self.store.select_one("cases", {"user_id": user_id, "client_phone": client_phone})
        return Case.model_validate(row) if row else None

    async def create_case(self, case: Case) -> Case:
        row = await self.store.insert("cases", case.model_dump(mode="json"))
        return Case.model_validate(row)

    async def update_case(self, case_id: str, values: Dict[str, Any]) -> Optional[Case]:
        payload = {k: (v.value if isinstance(v, FunnelStatus) else v) for k, v in values.items()}
        payload["updated_at"] = datetime.utcnow().isoformat()
        rows = await self.store.update("cases", {"id": case_id}, payload)
        return Case.model_validate(rows[0]) if rows else None

    # agents and scripts

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        row = await self.store.select_one("agents", {"id": agent_id})
        return Agent.model_validate(row) if row else None

    async def active_agents(self, user_id: str) -> List[Agent]:
        rows = await self.store.select("agents", {"user_id": user_id, "is_active": True})
        return [Agent.model_validate(r) for r in rows]

    async def stage_assignment(self, user_id: str, stage: FunnelStatus) -> Optional[str]:
        row = await self.store.select_one("funnel_agent_assignments", {"user_id": user_id, "stage_name": stage.value})
        return str(row["agent_id"]) if row and row.get("agent_id") else None

    async def script_steps(self, agent_id: str) -> List[ScriptStep]:
        rows = await self.store.select("agent_script_steps", {"agent_id": agent_id}, order_by="step_order")
        return [ScriptStep.model_validate(r) for r in rows]

    async def first_step(self, agent_id: str) -> Optional[ScriptStep]:
        steps = await self.script_steps(agent_id)
        return steps[0] if steps else None

    async def rules(self, agent_id: str) -> Optional[AgentRules]:
        row = await self.store.select_one("agent_rules", {"agent_id": agent_id})
        return AgentRules.model_validate(row) if row else None

    async def faqs(self, agent_id: str) -> List[FAQ]:
        rows = await self.store.select("agent_faqs", {"agent_id": agent_id})
        return [FAQ.model_validate(r) for r in rows]

    # conversation history

    async def history(self, case_id: str, limit: int = 50) -> List[ConversationEntry]:
        rows = await self.store.select(
            "conversation_history", {"case_id": case_id}, order_by="created_at", descending=True, limit=limit
        )
        return [ConversationEntry.model_validate(r) for r in reversed(rows)]

    async def add_entry(
        self,
        case_id: str,
        role: MessageRole,
        content: str,
        external_message_id: str | None = None,
        media_url: str | None = None,
        media_type: str | None = None,
        status: DeliveryStatus = DeliveryStatus.SENT,
    ) -> ConversationEntry:
        row = await self.store.insert(
            "conversation_history",
            {
                "case_id": case_id,
                "role": role.value,
                "content": content,
                "external_message_id": external_message_id,
                "media_url": media_url,
                "media_type": media_type,
                "message_status": status.value,
                "created_at": datetime.utcnow().isoformat(),
            },
        )
        return ConversationEntry.model_validate(row)

    async def has_external_message(self, external_message_id: str) -> bool:
        row = await self.store.select_one("conversation_history", {"external_message_id": external_message_id})
        return row is not None

    async def set_delivery_status(self, external_message_id: str, status: DeliveryStatus) -> int:
        rows = await self.store.update(
            "conversation_history", {"external_message_id": external_message_id}, {"message_status": status.value}
        )
        return len(rows)

    # structured state

    async def case_fields(self, case_id: str) -> Optional[CaseFields]:
        row = await self.store.select_one("case_fields", {"case_id": case_id})
        return CaseFields.model_validate(row) if row else None

    async def latest_handoff(self, case_id: str) -> Optional[HandoffRecord]:
        row = await self.store.select_one("case_handoffs", {"case_id": case_id}, order_by="created_at", descending=True)
        return HandoffRecord.model_validate(row) if row else None

    async def record_handoff(self, record: HandoffRecord) -> HandoffRecord:
        row = await self.store.insert("case_handoffs", record.model_dump(mode="json"))
        return HandoffRecord.model_validate(row)

    # contacts

    async def ensure_contact(self, user_id: str, phone: str, name: str) -> dict:
        existing = await self.store.select_one("contacts", {"user_id": user_id, "phone": phone})
        if existing:
            return existing
        return await self.store.insert(
            "contacts",
            {"user_id": user_id, "phone": phone, "name": name, "source": "WhatsApp", "tags": ["Lead"]},
        )

    async def set_contact_email(self, user_id: str, phone: str, email: str) -> None:
        await self.store.update("contacts", {"user_id": user_id, "phone": phone}, {"email": email})
