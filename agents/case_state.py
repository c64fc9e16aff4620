from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Dict, Optional

from agents.base import BaseAgent
from agents.funnel_engine import FunnelEngine
from agents.script_context import personalize
from channels.whatsapp_dispatcher import OutboundDispatcher
from compliance.audit_logger import AuditLogger
from memory.case_repository import CaseRepository
from models.schemas import Agent, Case, FunnelStatus, InboundMessage, MessageRole, TenantInstance
from tasks.background import BackgroundRunner
from tools.notification_tools import StatusNotifier

logger = logging.getLogger(__name__)

PROGRESSION: Dict[FunnelStatus, FunnelStatus] = {
    FunnelStatus.NEW_CONTACT: FunnelStatus.IN_PROGRESS,
    FunnelStatus.IN_PROGRESS: FunnelStatus.QUALIFIED,
    FunnelStatus.QUALIFIED: FunnelStatus.CONVERTED,
}

STAGE_RANK: Dict[FunnelStatus, int] = {
    FunnelStatus.NEW_CONTACT: 0,
    FunnelStatus.IN_PROGRESS: 1,
    FunnelStatus.QUALIFIED: 2,
    FunnelStatus.CONVERTED: 3,
    FunnelStatus.NOT_QUALIFIED: 3,
    FunnelStatus.ARCHIVED: 4,
}

TERMINAL = {FunnelStatus.ARCHIVED, FunnelStatus.NOT_QUALIFIED}
DESCRIBED_STAGES = {FunnelStatus.QUALIFIED, FunnelStatus.CONVERTED}


def next_stage(status: FunnelStatus) -> Optional[FunnelStatus]:
    return PROGRESSION.get(status)


def can_advance(current: FunnelStatus, target: FunnelStatus) -> bool:
    if current in TERMINAL:
        return False
    return STAGE_RANK[target] > STAGE_RANK[current]


class CaseStateMachine(BaseAgent):
    """Case creation, monotonic stage transitions and their side effects."""

    def __init__(
        self,
        repository: CaseRepository,
        dispatcher: OutboundDispatcher,
        notifier: StatusNotifier,
        funnel: FunnelEngine,
        runner: BackgroundRunner,
        audit_logger: AuditLogger,
    ) -> None:
        super().__init__("case_state", audit_logger)
        self.repository = repository
        self.dispatcher = dispatcher
        self.notifier = notifier
        self.funnel = funnel
        self.runner = runner

    async def resolve_initial_agent(self, user_id: str) -> Optional[Agent]:
        active = await self.repository.active_agents(user_id)
        if not active:
            return None
        override = await self.repository.stage_assignment(user_id, FunnelStatus.NEW_CONTACT)
        if override:
            match = next((a for a in active if a.id == override), None)
            if match is not None:
                return match
        default = next((a for a in active if a.is_default), None)
        return default or active[0]

    async def open_case(self, instance: TenantInstance, message: InboundMessage, content: str) -> Optional[Case]:
        agent = await self.resolve_initial_agent(instance.user_id)
        if agent is None:
            logger.warning("no_active_agents", extra={"user_id": instance.user_id})
            return None
        first = await self.repository.first_step(agent.id)
        case = await self.repository.create_case(
            Case(
                id=str(uuid.uuid4()),
                user_id=instance.user_id,
                client_phone=message.phone,
                client_name=message.client_name,
                status=FunnelStatus.NEW_CONTACT,
                active_agent_id=agent.id,
                current_step_id=first.id if first else None,
                unread_count=1,
                last_message=content,
                last_message_at=datetime.utcnow(),
            )
        )
        await self.repository.ensure_contact(instance.user_id, message.phone, message.client_name)
        await self.repository.add_entry(
            case.id,
            MessageRole.CLIENT,
            content,
            external_message_id=message.external_message_id,
            media_type=message.media_kind.value if message.media_kind else None,
        )
        await self.record_event(case, "case_created", to_status=case.status.value, to_agent_id=agent.id)
        await self.notifier.notify(instance, case, FunnelStatus.NEW_CONTACT)

        greeting = await self.opening_message(agent.id, case.client_name)
        if greeting:
            await self.dispatcher.send(instance, case, greeting)
        logger.info("case_opened", extra={"case_id": case.id, "agent_id": agent.id, "greeted": bool(greeting)})
        return case

    async def opening_message(self, agent_id: str, client_name: str) -> str:
        """First script step, else the welcome message, personalized; never both."""
        first = await self.repository.first_step(agent_id)
        if first and first.message_to_send:
            return personalize(first.message_to_send, client_name)
        rules = await self.repository.rules(agent_id)
        return personalize(rules.welcome_message, client_name) if rules else ""

    async def transition(self, instance: TenantInstance, case: Case, target: FunnelStatus, reason: str = "") -> Case:
        if not can_advance(case.status, target):
            logger.info(
                "status_transition_rejected",
                extra={"case_id": case.id, "from": case.status.value, "to": target.value, "reason": reason},
            )
            return case
        previous = case.status
        updated = await self.repository.update_case(case.id, {"status": target}) or case.model_copy(update={"status": target})
        await self.record_event(
            updated, "status_changed", from_status=previous.value, to_status=target.value, metadata={"reason": reason}
        )
        await self.after_stage_change(instance, updated)
        return updated

    async def after_stage_change(self, instance: TenantInstance, case: Case) -> None:
        await self.notifier.notify(instance, case, case.status)
        if case.status in DESCRIBED_STAGES:
            self.runner.spawn(self.funnel.generate_description(case), "case_description")
