from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from agents.base import BaseAgent
from agents.case_state import CaseStateMachine, next_stage
from agents.funnel_engine import FunnelEngine, transcript
from agents.handoff_manager import HandoffManager
from agents.llm_runtime import ProvidersExhaustedError, ProviderUnavailableError
from agents.orchestrator import AIOrchestrator, TurnContext, TurnResult
from agents.script_context import personalize, resolve_script_state
from channels.event_normalizer import IGNORED, PRESENCE, STATUS_UPDATE, normalize_event
from channels.media_transcriber import MediaTranscriber
from channels.whatsapp_dispatcher import OutboundDispatcher
from compliance.audit_logger import AuditLogger
from memory.case_lock import CaseLockRegistry
from memory.case_repository import CaseRepository
from memory.retrieval import RetrievalEngine
from models.schemas import (
    AIResponse,
    Agent,
    Case,
    ConversationEntry,
    FunnelStatus,
    InboundMessage,
    MessageRole,
    TenantInstance,
    TurnAction,
)
from settings import SETTINGS
from tasks.background import BackgroundRunner
from tenants.registry import TenantRegistry

logger = logging.getLogger(__name__)


class ConversationRouter(BaseAgent):
    """Routes one gateway event from normalization to the outbound reply."""

    def __init__(
        self,
        repository: CaseRepository,
        registry: TenantRegistry,
        dispatcher: OutboundDispatcher,
        transcriber: MediaTranscriber,
        state_machine: CaseStateMachine,
        funnel: FunnelEngine,
        handoff: HandoffManager,
        orchestrator: AIOrchestrator,
        retrieval: RetrievalEngine,
        runner: BackgroundRunner,
        locks: CaseLockRegistry,
        audit_logger: AuditLogger,
    ) -> None:
        super().__init__("conversation_router", audit_logger)
        self.repository = repository
        self.registry = registry
        self.dispatcher = dispatcher
        self.transcriber = transcriber
        self.state_machine = state_machine
        self.funnel = funnel
        self.handoff = handoff
        self.orchestrator = orchestrator
        self.retrieval = retrieval
        self.runner = runner
        self.locks = locks

    async def route_event(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        event = normalize_event(payload)
        if event.kind == IGNORED:
            logger.debug("event_ignored", extra={"reason": event.reason})
            return {"status": "ignored", "reason": event.reason}
        if event.kind == PRESENCE:
            logger.info("presence_event", extra={"instance": payload.get("instance")})
            return {"status": "presence_handled"}
        if event.kind == STATUS_UPDATE:
            update = event.update
            updated = await self.repository.set_delivery_status(update.external_message_id, update.status)
            return {"status": "status_updated", "message_status": update.status.value, "updated": updated}

        message = event.message
        instance = await self.registry.resolve_instance(message.instance)
        if instance is None:
            logger.warning("instance_without_owner", extra={"instance": message.instance})
            return {"status": "no_owner"}

        async with self.locks.hold(CaseLockRegistry.key(instance.user_id, message.phone)):
            return await self._process(instance, message)

    async def _process(self, instance: TenantInstance, message: InboundMessage) -> Dict[str, Any]:
        if message.external_message_id and await self.repository.has_external_message(message.external_message_id):
            logger.info("duplicate_message", extra={"external_message_id": message.external_message_id})
            return {"status": "duplicate"}

        if message.media_kind is not None:
            content = await self.transcriber.transcribe(message, self.dispatcher.client(instance))
        else:
            content = message.text

        case = await self.repository.find_case(instance.user_id, message.phone)
        if case is None:
            created = await self.state_machine.open_case(instance, message, content)
            if created is None:
                return {"status": "no_agents"}
            return {"status": "new_case_created", "case_id": created.id}

        inbound = await self.repository.add_entry(
            case.id,
            MessageRole.CLIENT,
            content,
            external_message_id=message.external_message_id,
            media_type=message.media_kind.value if message.media_kind else None,
        )
        case = await self.repository.update_case(
            case.id,
            {
                "unread_count": case.unread_count + 1,
                "last_message": content,
                "last_message_at": datetime.utcnow().isoformat(),
            },
        ) or case

        if case.is_paused or not case.active_agent_id:
            reason = "agent_paused" if case.is_paused else "no_active_agent"
            logger.info("manual_mode_skip", extra={"case_id": case.id, "reason": reason})
            return {"status": "manual_mode", "case_id": case.id, "reason": reason}

        if case.status == FunnelStatus.NEW_CONTACT:
            case = await self.state_machine.transition(instance, case, FunnelStatus.IN_PROGRESS, "client_replied")

        agent = await self._active_agent(case)
        if agent is None:
            return {"status": "no_agents", "case_id": case.id}
        if agent.id != case.active_agent_id:
            case = await self.repository.update_case(case.id, {"active_agent_id": agent.id}) or case

        faqs = await self.repository.faqs(agent.id)
        if faqs:
            answer = await self.funnel.match_faq(content, faqs)
            if answer:
                await self.dispatcher.send(instance, case, answer)
                logger.info("faq_answered", extra={"case_id": case.id, "agent_id": agent.id})
                return {"status": "faq_answered", "case_id": case.id}

        history = [e for e in await self.repository.history(case.id, limit=50) if e.id != inbound.id]
        script = resolve_script_state(await self.repository.script_steps(agent.id), case.current_step_id)
        if script.completed:
            detected = await self.funnel.detect_category(case, history + [inbound])
            if detected is not None and detected.id != agent.id:
                await self.handoff.switch_agent(instance, case, detected, f"category:{detected.category}")
                logger.info("category_switch_after_script", extra={"case_id": case.id, "to_agent_id": detected.id})
                return {"status": "agent_switched_with_handoff", "case_id": case.id}

        ctx = TurnContext(
            instance=instance,
            case=case,
            agent=agent,
            rules=await self.repository.rules(agent.id),
            script=script,
            history=history,
            message=content,
            calendar_connected=await self.registry.calendar_connected(case.user_id),
            signature=await self.registry.signature_settings(case.user_id),
        )
        try:
            result = await self.orchestrator.run_turn(ctx)
        except (ProvidersExhaustedError, ProviderUnavailableError) as exc:
            logger.error("reply_dropped", extra={"case_id": case.id, "error": str(exc)})
            return {"status": "dropped", "case_id": case.id}

        response = result.response
        outcome = await self._apply_turn(instance, case, agent, result, history + [inbound])
        self._maybe_save_memory(case, agent, history + [inbound])
        logger.info(
            "turn_processed",
            extra={
                "case_id": case.id,
                "action": response.action.value,
                "tool": result.tool_used,
                "provider": result.provider,
                "outcome": outcome,
            },
        )
        if outcome == "agent_switched_with_handoff":
            return {"status": "agent_switched_with_handoff", "case_id": case.id}
        return {"status": "processed", "case_id": case.id, "action": response.action.value}

    async def _active_agent(self, case: Case) -> Optional[Agent]:
        agent = await self.repository.get_agent(case.active_agent_id)
        if agent is not None and agent.is_active:
            return agent
        logger.info("inactive_agent_replaced", extra={"case_id": case.id, "agent_id": case.active_agent_id})
        return await self.state_machine.resolve_initial_agent(case.user_id)

    async def _apply_turn(
        self,
        instance: TenantInstance,
        case: Case,
        agent: Agent,
        result: TurnResult,
        history: List[ConversationEntry],
    ) -> str:
        response, script = result.response, result.script
        proceed = response.action == TurnAction.PROCEED
        reply = response.response_text
        cursor: Dict[str, Any] = {}
        if proceed and script.next_step is not None:
            cursor["current_step_id"] = script.next_step.id
            # tool results (free slots, booking, contract) stay in the model's words
            if result.tool_used in (None, "send_response"):
                reply = personalize(script.next_step.message_to_send, case.client_name)
        elif proceed and script.active:
            cursor["current_step_id"] = None
        elif script.current_step is not None and script.current_step.id != case.current_step_id:
            cursor["current_step_id"] = script.current_step.id

        await self.dispatcher.send(instance, case, reply)
        cursor.update({"last_message": reply, "last_message_at": datetime.utcnow().isoformat()})
        case = await self.repository.update_case(case.id, cursor) or case

        if proceed and script.next_step is None and not script.completed:
            return await self._finalize(instance, case, agent, response, history)
        if response.new_status is not None and response.new_status != case.status:
            await self.state_machine.transition(instance, case, response.new_status, "ai_status")
            return "status_changed"
        return "step_advanced" if "current_step_id" in cursor else "stayed"

    async def _finalize(
        self,
        instance: TenantInstance,
        case: Case,
        agent: Agent,
        response: AIResponse,
        history: List[ConversationEntry],
    ) -> str:
        """Script completed: route to the next agent, or advance the stage in place."""
        target_status = response.new_status or next_stage(case.status)
        to_agent: Optional[Agent] = None
        reason = "script_completed"
        detected = await self.funnel.detect_category(case, history)
        if detected is not None and detected.id != agent.id:
            to_agent, reason = detected, f"category:{detected.category}"
        if to_agent is None and target_status is not None:
            assigned_id = await self.repository.stage_assignment(case.user_id, target_status)
            if assigned_id and assigned_id != agent.id:
                assigned = await self.repository.get_agent(assigned_id)
                if assigned is not None and assigned.is_active:
                    to_agent, reason = assigned, f"stage_assignment:{target_status.value}"

        if to_agent is not None:
            await self.handoff.switch_agent(instance, case, to_agent, reason, target_status=target_status)
            return "agent_switched_with_handoff"
        if target_status is not None and target_status != case.status:
            await self.state_machine.transition(instance, case, target_status, "script_completed")
            return "status_changed"
        return "completed"

    def _maybe_save_memory(self, case: Case, agent: Agent, history: List[ConversationEntry]) -> None:
        client_turns = sum(1 for e in history if e.role == MessageRole.CLIENT)
        if client_turns == 0 or client_turns % SETTINGS.memory_save_every:
            return
        self.runner.spawn(
            self.retrieval.save_contact_memory(case.user_id, case.client_phone, agent.id, transcript(history[-10:])),
            "contact_memory",
        )
