from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Optional

from pydantic import ValidationError

from agents.base import BaseAgent
from agents.case_state import CaseStateMachine
from agents.funnel_engine import transcript
from agents.llm_runtime import LLMRuntime
from channels.whatsapp_dispatcher import OutboundDispatcher
from compliance.audit_logger import AuditLogger
from memory.case_repository import CaseRepository
from models.schemas import Agent, Case, FunnelStatus, HandoffArtifact, HandoffRecord, TenantInstance
from settings import SETTINGS
from tasks.delayed_greeting import DelayedGreeting, GreetingScheduler

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)

ARTIFACT_INSTRUCTION = (
    "You prepare handoff notes between agents of a law firm. Respond with JSON ONLY, no prose, with exactly these keys: "
    '{"summary": string, "facts": [string], "collected_fields": {string: string}, "open_questions": [string], '
    '"next_best_action": string, "risk_flags": [string], "confidence": "low" | "medium" | "high"}'
)


def parse_handoff_artifact(raw: str) -> Optional[HandoffArtifact]:
    """Parse a model reply into an artifact; fenced or bare JSON. ``None`` when unusable."""
    text = (raw or "").strip()
    fenced = _FENCE.search(text)
    if fenced:
        text = fenced.group(1).strip()
    else:
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            return None
        text = text[start : end + 1]
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    try:
        return HandoffArtifact.model_validate(data)
    except ValidationError:
        return None


def first_name(name: str) -> str:
    parts = (name or "").split()
    return parts[0] if parts else ""


class HandoffManager(BaseAgent):
    def __init__(
        self,
        repository: CaseRepository,
        dispatcher: OutboundDispatcher,
        state_machine: CaseStateMachine,
        scheduler: GreetingScheduler,
        audit_logger: AuditLogger,
        llm: LLMRuntime | None = None,
    ) -> None:
        super().__init__("handoff_manager", audit_logger)
        self.repository = repository
        self.dispatcher = dispatcher
        self.state_machine = state_machine
        self.scheduler = scheduler
        self.llm = llm or LLMRuntime()

    async def build_artifact(self, case: Case, to_agent: Agent, reason: str) -> Optional[HandoffArtifact]:
        history = await self.repository.history(case.id, limit=30)
        content = (
            f"Client: {case.client_name}\nTarget agent: {to_agent.name}\nReason: {reason}\n\n"
            f"Conversation:\n{transcript(history)}"
        )
        try:
            raw = await self.llm.complete_text(ARTIFACT_INSTRUCTION, content, temperature=0.2, max_tokens=350)
        except Exception as exc:
            logger.warning("handoff_artifact_failed", extra={"case_id": case.id, "error": repr(exc)})
            return None
        artifact = parse_handoff_artifact(raw)
        if artifact is None:
            logger.warning("handoff_artifact_unparseable", extra={"case_id": case.id, "raw": (raw or "")[:200]})
        return artifact

    async def switch_agent(
        self,
        instance: TenantInstance,
        case: Case,
        to_agent: Agent,
        reason: str,
        target_status: FunnelStatus | None = None,
    ) -> Case:
        """Hand the case to ``to_agent`` with a context artifact and a delayed greeting."""
        artifact = await self.build_artifact(case, to_agent, reason)
        await self.repository.record_handoff(
            HandoffRecord(
                case_id=case.id,
                user_id=case.user_id,
                from_agent_id=case.active_agent_id,
                to_agent_id=to_agent.id,
                reason=reason,
                artifact=artifact.model_dump() if artifact else {},
            )
        )

        name = first_name(case.client_name)
        await self.dispatcher.send(
            instance, case, f"Perfect, {name}. I'll forward you now to {to_agent.name} to continue, all right?"
        )

        first = await self.repository.first_step(to_agent.id)
        values: Dict[str, Any] = {
            "active_agent_id": to_agent.id,
            "is_paused": False,
            "current_step_id": first.id if first else None,
        }
        if target_status is not None and target_status != case.status:
            values["status"] = target_status
        updated = await self.repository.update_case(case.id, values) or case.model_copy(update=values)
        await self.record_event(
            updated,
            "agent_handoff",
            from_status=case.status.value,
            to_status=updated.status.value,
            from_agent_id=case.active_agent_id,
            to_agent_id=to_agent.id,
            metadata={"reason": reason, "artifact": bool(artifact)},
        )
        if updated.status != case.status:
            await self.state_machine.after_stage_change(instance, updated)

        greeting = await self.state_machine.opening_message(to_agent.id, case.client_name)
        if greeting:
            try:
                await self.scheduler.schedule(
                    DelayedGreeting(
                        case_id=case.id,
                        user_id=case.user_id,
                        instance_name=instance.instance_name,
                        text=greeting,
                    ),
                    SETTINGS.delayed_greeting_seconds,
                )
            except Exception:
                logger.exception("delayed_greeting_schedule_failed", extra={"case_id": case.id})
        logger.info(
            "agent_switched",
            extra={"case_id": case.id, "from_agent": case.active_agent_id, "to_agent": to_agent.id, "reason": reason},
        )
        return updated
