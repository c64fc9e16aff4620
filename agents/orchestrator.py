from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx
from pydantic import ValidationError

from agents.base import BaseAgent
from agents.calendar_booking import CalendarAutoBooker, slots_presented
from agents.llm_runtime import LLMResult, LLMRuntime, ToolInvocation
from agents.script_context import (
    EMAIL_RE,
    ScriptState,
    auto_advance,
    extract_collected_data,
    is_scheduling_agent,
    script_guidance,
)
from compliance.audit_logger import AuditLogger
from memory.case_repository import CaseRepository
from memory.retrieval import RetrievalEngine
from models.schemas import (
    AIResponse,
    Agent,
    AgentRules,
    Case,
    CheckCalendarAvailability,
    ConversationEntry,
    CreateCalendarEvent,
    FunnelStatus,
    MessageRole,
    NextIntent,
    SendResponse,
    SendSignatureDocument,
    SignatureSettings,
    TenantInstance,
    TurnAction,
    parse_tool_call,
)
from settings import SETTINGS
from tenants.registry import TenantRegistry
from tools.calendar_tools import WEEKDAYS, CalendarNotConnectedError, GoogleCalendarTools, format_slots, local_tz
from tools.signature_tools import SignatureProviderError, ZapSignTools

logger = logging.getLogger(__name__)

EMPTY_REPLY = "Thanks for the information! To continue, can you tell me more about your situation?"

FINALIZATION_RE = re.compile(
    r"encaminh|transferindo|roteiro conclu|resumo do seu caso|forward(ing)? you|transferring|script (is )?completed|summary of your case",
    re.IGNORECASE,
)
PROCEED_MARKER_RE = re.compile(r"\baction\s*[:=]\s*\"?proceed\b", re.IGNORECASE)
STATUS_MARKER_RE = re.compile(r"\b(?:new_)?status\s*[:=]\s*\"?(not qualified|qualified|converted)\b", re.IGNORECASE)
NOT_QUALIFIED_RE = re.compile(r"n[aã]o qualificad|not qualified", re.IGNORECASE)
MARKER_LINE_RE = re.compile(r"^\s*(action|new_status|status|next_intent)\s*[:=].*$", re.IGNORECASE | re.MULTILINE)
FENCED_JSON_RE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)
DATE_FORMAT_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
TIME_FORMAT_RE = re.compile(r"^\d{2}:\d{2}$")

TOOL_PRIORITY = {
    "check_calendar_availability": 0,
    "create_calendar_event": 1,
    "send_signature_document": 2,
    "send_response": 10,
}
CALENDAR_TOOLS = {"check_calendar_availability", "create_calendar_event"}

STATUS_VALUES = [s.value for s in FunnelStatus]


def _function(name: str, description: str, properties: Dict[str, Any], required: List[str]) -> Dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {"type": "object", "properties": properties, "required": required},
        },
    }


SEND_RESPONSE_TOOL = _function(
    "send_response",
    "Send the reply to the client and tell the system whether the conversation moves on.",
    {
        "response_text": {"type": "string", "description": "The message sent to the client."},
        "action": {"type": "string", "enum": ["PROCEED", "STAY"]},
        "new_status": {"type": "string", "enum": STATUS_VALUES},
        "next_intent": {"type": "string", "enum": [i.value for i in NextIntent]},
    },
    ["response_text", "action"],
)
CHECK_AVAILABILITY_TOOL = _function(
    "check_calendar_availability",
    "List free consultation times from the firm's calendar.",
    {"days_ahead": {"type": "integer", "description": "How many days ahead to search (default 7)."}},
    [],
)
CREATE_EVENT_TOOL = _function(
    "create_calendar_event",
    "Book a consultation on a time the client chose from the listed availability.",
    {
        "date": {"type": "string", "description": "YYYY-MM-DD"},
        "time": {"type": "string", "description": "HH:MM, 24h"},
        "summary": {"type": "string"},
        "duration_minutes": {"type": "integer"},
        "client_email": {"type": "string", "description": "Client e-mail for the invitation."},
    },
    ["date", "time", "client_email"],
)
SIGNATURE_TOOL = _function(
    "send_signature_document",
    "Send the engagement contract to the client for electronic signature.",
    {
        "template_id": {"type": "string", "description": "Template token, or 'default'."},
        "signer_name": {"type": "string", "description": "Client's full name."},
        "signer_email": {"type": "string"},
        "signer_phone": {"type": "string"},
        "fields": {"type": "object", "additionalProperties": {"type": "string"}},
    },
    ["signer_name"],
)


@dataclass
class TurnContext:
    instance: TenantInstance
    case: Case
    agent: Agent
    rules: Optional[AgentRules]
    script: ScriptState
    history: List[ConversationEntry]
    message: str
    calendar_connected: bool = False
    signature: Optional[SignatureSettings] = None


@dataclass
class TurnResult:
    response: AIResponse
    script: ScriptState
    tool_used: Optional[str] = None
    provider: str = ""


@dataclass
class ToolOutcome:
    content: str = ""
    reply: Optional[AIResponse] = None
    overrides: Dict[str, Any] = field(default_factory=dict)


def strip_markers(text: str) -> str:
    return MARKER_LINE_RE.sub("", text).strip()


def fallback_parse(content: str) -> AIResponse:
    """Read a reply that did not come through ``send_response``."""
    text = (content or "").strip()
    if not text:
        return AIResponse(response_text=EMPTY_REPLY, action=TurnAction.STAY)
    fenced = FENCED_JSON_RE.search(text)
    if fenced:
        try:
            data = json.loads(fenced.group(1))
            if isinstance(data, dict) and data.get("response_text"):
                return AIResponse.model_validate(data)
        except (json.JSONDecodeError, ValidationError):
            logger.info("fallback_json_unusable")

    marker = bool(PROCEED_MARKER_RE.search(text))
    finalization = bool(FINALIZATION_RE.search(text))
    new_status: Optional[FunnelStatus] = None
    status_marker = STATUS_MARKER_RE.search(text)
    if status_marker:
        label = status_marker.group(1).lower()
        new_status = {
            "not qualified": FunnelStatus.NOT_QUALIFIED,
            "qualified": FunnelStatus.QUALIFIED,
            "converted": FunnelStatus.CONVERTED,
        }[label]
    elif NOT_QUALIFIED_RE.search(text):
        new_status = FunnelStatus.NOT_QUALIFIED

    lowered = text.lower()
    if re.search(r"contrat|contract|assinatura|signature", lowered):
        intent = NextIntent.DIRECT_CONTRACT
    elif re.search(r"agend|schedul|consulta|consultation|appointment", lowered):
        intent = NextIntent.SCHEDULE_CONSULT
    else:
        intent = NextIntent.CONTINUE

    reply = strip_markers(text) or EMPTY_REPLY
    return AIResponse(
        response_text=reply,
        action=TurnAction.PROCEED if marker or finalization else TurnAction.STAY,
        new_status=new_status,
        next_intent=intent,
        finalization_forced=finalization and not marker,
    )


def from_send_response(call: SendResponse) -> AIResponse:
    text = strip_markers(call.response_text or "")
    if not text:
        return AIResponse(response_text=EMPTY_REPLY, action=TurnAction.STAY)
    return AIResponse(response_text=text, action=call.action, new_status=call.new_status, next_intent=call.next_intent)


class AIOrchestrator(BaseAgent):
    """One reply turn: context assembly, model call, tool execution and second pass."""

    def __init__(
        self,
        repository: CaseRepository,
        registry: TenantRegistry,
        retrieval: RetrievalEngine,
        calendar: GoogleCalendarTools,
        audit_logger: AuditLogger,
        llm: LLMRuntime | None = None,
        signature_factory: Callable[[SignatureSettings], ZapSignTools] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        super().__init__("ai_orchestrator", audit_logger)
        self.repository = repository
        self.registry = registry
        self.retrieval = retrieval
        self.calendar = calendar
        self.llm = llm or LLMRuntime()
        self.signature_factory = signature_factory or ZapSignTools
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.booker = CalendarAutoBooker(calendar, registry, repository, audit_logger, clock=self.clock)

    async def collected_fields(self, case: Case, history: List[ConversationEntry], message: str) -> Dict[str, Any]:
        current = ConversationEntry(id="current", case_id=case.id, role=MessageRole.CLIENT, content=message)
        collected: Dict[str, Any] = dict(extract_collected_data(history + [current]))
        stored = await self.repository.case_fields(case.id)
        if stored:
            collected.update({k: v for k, v in stored.fields.items() if v not in (None, "")})
        return collected

    async def run_turn(self, ctx: TurnContext) -> TurnResult:
        collected = await self.collected_fields(ctx.case, ctx.history, ctx.message)
        script = auto_advance(ctx.script, collected)
        allow_calendar = ctx.calendar_connected and (not script.active or is_scheduling_agent(script.steps))

        if ctx.calendar_connected and not script.active:
            booked = await self.booker.try_book(ctx.case, ctx.message, ctx.history, collected.get("email"))
            if booked is not None:
                logger.info("turn_resolved_by_auto_booking", extra={"case_id": ctx.case.id})
                return TurnResult(response=booked, script=script, tool_used="auto_booking")

        system_prompt = await self.build_system_prompt(ctx, script, collected, allow_calendar)
        messages: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        for entry in ctx.history[-SETTINGS.history_window :]:
            messages.append({"role": "user" if entry.role == MessageRole.CLIENT else "assistant", "content": entry.content})
        messages.append({"role": "user", "content": ctx.message})
        tools = self.tool_specs(ctx, allow_calendar)

        first = await self.llm.chat(
            {
                "model": SETTINGS.chat_model,
                "messages": messages,
                "tools": tools,
                "tool_choice": "auto",
                "temperature": 0.7,
                "max_tokens": 500,
            }
        )
        if not first.tool_calls:
            return TurnResult(response=fallback_parse(first.text), script=script, provider=first.provider)

        chosen, parsed = self._choose_tool(first.tool_calls)
        if chosen is None:
            return TurnResult(response=fallback_parse(first.text), script=script, provider=first.provider)
        if isinstance(parsed, SendResponse):
            return TurnResult(response=from_send_response(parsed), script=script, tool_used="send_response", provider=first.provider)

        outcome = await self.execute_tool(ctx, parsed, collected)
        if outcome.reply is not None:
            return TurnResult(response=outcome.reply, script=script, tool_used=chosen.name, provider=first.provider)

        second = await self._second_pass(messages, tools, first, chosen, outcome.content)
        response = self._second_pass_response(second)
        if outcome.overrides:
            updates = {k: v for k, v in outcome.overrides.items() if k != "new_status" or response.new_status is None}
            response = response.model_copy(update=updates)
        return TurnResult(response=response, script=script, tool_used=chosen.name, provider=second.provider)

    def tool_specs(self, ctx: TurnContext, allow_calendar: bool) -> List[Dict[str, Any]]:
        tools = [SEND_RESPONSE_TOOL]
        if allow_calendar:
            if not slots_presented(ctx.history[-10:]):
                tools.append(CHECK_AVAILABILITY_TOOL)
            tools.append(CREATE_EVENT_TOOL)
        if ctx.signature is not None:
            tools.append(SIGNATURE_TOOL)
        return tools

    def _choose_tool(self, calls: List[ToolInvocation]):
        has_calendar = any(c.name in CALENDAR_TOOLS for c in calls)
        ranked = sorted(calls, key=lambda c: TOOL_PRIORITY.get(c.name, 5))
        for call in ranked:
            if call.name == "send_response" and has_calendar:
                continue
            try:
                return call, parse_tool_call(call.name, call.arguments)
            except ValidationError as exc:
                logger.warning("tool_call_rejected", extra={"tool": call.name, "errors": exc.errors()[:3]})
        return None, None

    async def _second_pass(
        self,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
        first: LLMResult,
        chosen: ToolInvocation,
        content: str,
    ) -> LLMResult:
        followup = list(messages)
        followup.append(first.assistant_message())
        for call in first.tool_calls:
            followup.append(
                {
                    "role": "tool",
                    "tool_call_id": call.id,
                    "content": content if call is chosen else "Not executed.",
                }
            )
        return await self.llm.chat(
            {
                "model": SETTINGS.chat_model,
                "messages": followup,
                "tools": tools,
                "tool_choice": {"type": "function", "function": {"name": "send_response"}},
                "temperature": 0.7,
                "max_tokens": 500,
            }
        )

    @staticmethod
    def _second_pass_response(result: LLMResult) -> AIResponse:
        for call in result.tool_calls:
            if call.name != "send_response":
                continue
            try:
                parsed = parse_tool_call(call.name, call.arguments)
            except ValidationError as exc:
                logger.warning("tool_call_rejected", extra={"tool": call.name, "errors": exc.errors()[:3]})
                continue
            return from_send_response(parsed)
        return fallback_parse(result.text)

    async def build_system_prompt(
        self,
        ctx: TurnContext,
        script: ScriptState,
        collected: Dict[str, Any],
        allow_calendar: bool,
    ) -> str:
        now_local = self.clock().astimezone(local_tz())
        sections: List[str] = []

        rules = ctx.rules
        agent_lines = [f"You are {ctx.agent.name}, an assistant of a law firm talking to {ctx.case.client_name} on WhatsApp."]
        if rules and rules.system_prompt:
            agent_lines.append(rules.system_prompt)
        if rules and rules.forbidden_actions:
            agent_lines.append(f"FORBIDDEN: {rules.forbidden_actions}")
        if rules and rules.allowed_behaviors:
            agent_lines.append(f"ALLOWED: {rules.allowed_behaviors}")
        agent_lines.append(f"Now: {WEEKDAYS[now_local.weekday()]}, {now_local.strftime('%d/%m/%Y %H:%M')}.")
        sections.append("\n".join(agent_lines))

        sections.append(script_guidance(script, ctx.case.client_name))

        if collected:
            listing = "\n".join(f"- {k}: {v}" for k, v in sorted(collected.items()))
            sections.append(
                "COLLECTED INFORMATION (source of truth, never ask for it again):\n" + listing
            )

        context = await self.retrieval.search_context(
            ctx.message, ctx.case.user_id, agent_id=ctx.agent.id, phone=ctx.case.client_phone
        )
        if context:
            sections.append("REFERENCE CONTEXT:\n" + context)

        handoff = await self.repository.latest_handoff(ctx.case.id)
        if handoff is not None:
            artifact = handoff.artifact or {}
            lines = [f"HANDOFF CONTEXT (reason: {handoff.reason})"]
            if artifact.get("summary"):
                lines.append(f"Summary: {artifact['summary']}")
            if artifact.get("facts"):
                lines.append("Facts: " + "; ".join(str(f) for f in artifact["facts"]))
            if artifact.get("open_questions"):
                lines.append("Open questions: " + "; ".join(str(q) for q in artifact["open_questions"]))
            if artifact.get("next_best_action"):
                lines.append(f"Next best action: {artifact['next_best_action']}")
            if artifact.get("risk_flags"):
                lines.append("Risk flags: " + "; ".join(str(r) for r in artifact["risk_flags"]))
            sections.append("\n".join(lines))

        if allow_calendar:
            sections.append(
                "CALENDAR: you can schedule consultations. Use check_calendar_availability to list free times and "
                "present them grouped by day exactly as returned. Before create_calendar_event you need the chosen "
                "date, time and the client's e-mail. Never invent times."
            )

        sections.append(
            "RESPONSE: always reply through send_response. Keep messages short and friendly, one question at a time. "
            f"Use new_status only when the case changes stage ({', '.join(STATUS_VALUES)})."
        )
        return "\n\n".join(sections)

    async def execute_tool(self, ctx: TurnContext, call: Any, collected: Dict[str, Any]) -> ToolOutcome:
        if isinstance(call, CheckCalendarAvailability):
            return await self._check_availability(ctx, call)
        if isinstance(call, CreateCalendarEvent):
            return await self._create_event(ctx, call, collected)
        if isinstance(call, SendSignatureDocument):
            return await self._send_signature(ctx, call)
        return ToolOutcome(content="Unknown tool.")

    async def _check_availability(self, ctx: TurnContext, call: CheckCalendarAvailability) -> ToolOutcome:
        overrides = {"action": TurnAction.STAY, "next_intent": NextIntent.SCHEDULE_CONSULT}
        try:
            slots = await self.calendar.get_availability(ctx.case.user_id, days_ahead=call.days_ahead)
        except (CalendarNotConnectedError, httpx.HTTPError) as exc:
            logger.warning("calendar_availability_failed", extra={"case_id": ctx.case.id, "error": repr(exc)})
            return ToolOutcome(
                content="The calendar is unavailable right now. Apologize and offer to confirm a time later.",
                overrides=overrides,
            )
        today = self.clock().astimezone(local_tz())
        if not slots:
            return ToolOutcome(
                content=f"Today is {today.strftime('%d/%m/%Y')}. There are no free times in the next {call.days_ahead} days.",
                overrides=overrides,
            )
        return ToolOutcome(
            content=(
                f"Today is {WEEKDAYS[today.weekday()]}, {today.strftime('%d/%m/%Y')}. Available times:\n"
                f"{format_slots(slots)}\n"
                "Show these times to the client in this same format and ask which one they prefer and their e-mail."
            ),
            overrides=overrides,
        )

    async def _create_event(self, ctx: TurnContext, call: CreateCalendarEvent, collected: Dict[str, Any]) -> ToolOutcome:
        email = (call.client_email or collected.get("email") or "").strip()
        if not EMAIL_RE.fullmatch(email):
            return ToolOutcome(
                reply=AIResponse(
                    response_text="To send you the invitation, could you tell me your e-mail address?",
                    action=TurnAction.STAY,
                    next_intent=NextIntent.SCHEDULE_CONSULT,
                )
            )
        if not DATE_FORMAT_RE.match(call.date) or not TIME_FORMAT_RE.match(call.time):
            return ToolOutcome(
                reply=AIResponse(
                    response_text="Could you confirm the day and time you prefer from the options I sent?",
                    action=TurnAction.STAY,
                    next_intent=NextIntent.SCHEDULE_CONSULT,
                )
            )
        try:
            start = self.calendar.parse_local(call.date, call.time)
        except ValueError:
            start = None
        if start is None or start < self.clock() - timedelta(seconds=60):
            return ToolOutcome(
                reply=AIResponse(
                    response_text="That time has already passed. Could you choose one of the upcoming times?",
                    action=TurnAction.STAY,
                    next_intent=NextIntent.SCHEDULE_CONSULT,
                )
            )
        settings = await self.registry.schedule_settings(ctx.case.user_id)
        duration = call.duration_minutes or settings.appointment_duration_minutes or 60
        summary = call.summary if call.summary and call.summary != "Consultation" else f"Consultation - {ctx.case.client_name}"
        try:
            event = await self.calendar.create_event(ctx.case.user_id, call.date, call.time, summary, duration, email)
        except (CalendarNotConnectedError, httpx.HTTPError) as exc:
            logger.warning("calendar_create_failed", extra={"case_id": ctx.case.id, "error": repr(exc)})
            return ToolOutcome(
                reply=AIResponse(
                    response_text="Sorry, I couldn't book that time right now. Could we try another one?",
                    action=TurnAction.STAY,
                    next_intent=NextIntent.SCHEDULE_CONSULT,
                )
            )
        await self.repository.set_contact_email(ctx.case.user_id, ctx.case.client_phone, email)
        await self.record_event(
            ctx.case,
            "calendar_event_created",
            metadata={"event_id": event.get("id"), "start": start.isoformat(), "email": email},
        )
        return ToolOutcome(
            content=(
                f"Consultation booked on {start.strftime('%d/%m/%Y')} at {start.strftime('%H:%M')} "
                f"for {duration} minutes. The invitation was sent to {email}. Confirm this to the client."
            ),
            overrides={"new_status": FunnelStatus.QUALIFIED, "next_intent": NextIntent.SCHEDULE_CONSULT},
        )

    async def _send_signature(self, ctx: TurnContext, call: SendSignatureDocument) -> ToolOutcome:
        if ctx.signature is None:
            return ToolOutcome(content="Electronic signature is not enabled for this office.")
        name = call.signer_name.strip()
        if len(name.split()) < 2:
            return ToolOutcome(
                reply=AIResponse(
                    response_text="To prepare your contract, could you send me your full name?",
                    action=TurnAction.STAY,
                    next_intent=NextIntent.DIRECT_CONTRACT,
                )
            )
        provider = self.signature_factory(ctx.signature)
        phone = call.signer_phone or ctx.case.client_phone
        try:
            document = await provider.create_document(call.template_id, name, phone, call.signer_email, call.fields)
        except (SignatureProviderError, httpx.HTTPError) as exc:
            logger.warning("signature_dispatch_failed", extra={"case_id": ctx.case.id, "error": repr(exc)})
            return ToolOutcome(
                reply=AIResponse(
                    response_text="Sorry, I couldn't send the contract right now. Our team will send it to you shortly.",
                    action=TurnAction.STAY,
                    next_intent=NextIntent.DIRECT_CONTRACT,
                )
            )
        await self.repository.store.insert(
            "signed_documents",
            {
                "user_id": ctx.case.user_id,
                "case_id": ctx.case.id,
                "client_phone": ctx.case.client_phone,
                "client_name": name,
                "doc_token": document.get("token"),
                "template_name": document.get("name") or call.template_id,
                "status": "pending",
                "zapsign_data": document,
            },
        )
        await self.record_event(ctx.case, "contract_sent", metadata={"doc_token": document.get("token")})
        return ToolOutcome(
            content=(
                f"The contract was sent to {name} for electronic signature; a signing link will arrive on WhatsApp. "
                "Tell the client and explain the next step."
            ),
            overrides={"next_intent": NextIntent.DIRECT_CONTRACT},
        )
