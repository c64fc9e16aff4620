from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone

import httpx

from agents.llm_runtime import LLMRuntime
from agents.orchestrator import EMPTY_REPLY, AIOrchestrator, TurnContext, fallback_parse
from agents.script_context import resolve_script_state
from compliance.audit_logger import AuditLogger
from fakes import CLIENT_PHONE, INSTANCE, NO_RETRY, USER_ID, ScriptedProvider, seed_office, system_prompt, tool_reply
from memory.case_repository import CaseRepository
from memory.record_store import JsonRecordStore
from memory.retrieval import RetrievalEngine
from models.schemas import (
    Agent,
    AgentRules,
    Case,
    FunnelStatus,
    HandoffRecord,
    NextIntent,
    ScriptStep,
    SignatureSettings,
    TenantInstance,
    TurnAction,
)
from tenants.registry import TenantRegistry
from tools.calendar_tools import GoogleCalendarTools
from tools.signature_tools import ZapSignTools

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)  # Monday 09:00 local
FORCED = {"type": "function", "function": {"name": "send_response"}}


def make_orchestrator(handler, signature_transport=None):
    store = JsonRecordStore(path="")
    seed_office(store)
    store.seed(
        "google_calendar_tokens",
        [{"user_id": USER_ID, "access_token": "tok", "expires_at": "2030-01-01T00:00:00+00:00"}],
    )
    store.seed("contacts", [{"user_id": USER_ID, "phone": CLIENT_PHONE, "name": "Maria Silva"}])
    google_requests = []

    def google(request: httpx.Request) -> httpx.Response:
        google_requests.append(request)
        if request.url.path.endswith("/freeBusy"):
            return httpx.Response(200, json={"calendars": {"primary": {"busy": []}}})
        return httpx.Response(200, json={"id": "evt-1"})

    provider = ScriptedProvider(handler=handler)
    llm = LLMRuntime(providers=[provider], retry_policy=NO_RETRY)
    registry = TenantRegistry(store)
    calendar = GoogleCalendarTools(registry, transport=httpx.MockTransport(google), retry_policy=NO_RETRY, clock=lambda: NOW)
    signature_factory = None
    if signature_transport is not None:
        signature_factory = lambda settings: ZapSignTools(settings, transport=signature_transport, retry_policy=NO_RETRY)
    orchestrator = AIOrchestrator(
        CaseRepository(store),
        registry,
        RetrievalEngine(store, llm),
        calendar,
        AuditLogger(store, path=""),
        llm=llm,
        signature_factory=signature_factory,
        clock=lambda: NOW,
    )
    return orchestrator, provider, store, google_requests


def make_context(message, script=None, signature=None, calendar=True, history=None):
    return TurnContext(
        instance=TenantInstance(instance_name=INSTANCE, user_id=USER_ID, api_url="http://evolution.local", api_key="k"),
        case=Case(
            id="case-1",
            user_id=USER_ID,
            client_phone=CLIENT_PHONE,
            client_name="Maria Silva",
            status=FunnelStatus.IN_PROGRESS,
            active_agent_id="agent-intake",
        ),
        agent=Agent(id="agent-intake", user_id=USER_ID, name="Ana"),
        rules=AgentRules(agent_id="agent-intake", system_prompt="Be cordial and brief."),
        script=script or resolve_script_state([], None),
        history=history or [],
        message=message,
        calendar_connected=calendar,
        signature=signature,
    )


def test_availability_tool_runs_then_second_pass_is_forced():
    def handler(body):
        if body.get("tool_choice") == "auto":
            return tool_reply("check_calendar_availability", {"days_ahead": 2})
        return tool_reply("send_response", {"response_text": "These are the free times.", "action": "PROCEED"})

    async def _run():
        orchestrator, provider, _, google_requests = make_orchestrator(handler)
        result = await orchestrator.run_turn(make_context("I want to book a consultation"))

        assert result.tool_used == "check_calendar_availability"
        assert result.response.response_text == "These are the free times."
        assert result.response.action == TurnAction.STAY
        assert result.response.next_intent == NextIntent.SCHEDULE_CONSULT

        first, second = provider.bodies
        assert [t["function"]["name"] for t in first["tools"]] == [
            "send_response",
            "check_calendar_availability",
            "create_calendar_event",
        ]
        assert first["temperature"] == 0.7 and first["max_tokens"] == 500
        assert second["tool_choice"] == FORCED
        tool_message = second["messages"][-1]
        assert tool_message["role"] == "tool" and tool_message["tool_call_id"] == "call_1"
        assert "📆 Monday, 19/10/2026 (2026-10-19):\n   Times: 10:00" in tool_message["content"]
        assert second["messages"][-2]["tool_calls"][0]["function"]["name"] == "check_calendar_availability"
        assert len(google_requests) == 1

    asyncio.run(_run())


def test_event_creation_marks_case_qualified():
    def handler(body):
        if body.get("tool_choice") == "auto":
            return tool_reply(
                "create_calendar_event",
                {"date": "2026-10-20", "time": "10:00", "client_email": "maria@example.com"},
            )
        return tool_reply("send_response", {"response_text": "Booked for Tuesday at 10:00!", "action": "STAY"})

    async def _run():
        orchestrator, _, store, google_requests = make_orchestrator(handler)
        result = await orchestrator.run_turn(make_context("Tuesday 10:00 please, maria@example.com"))

        assert result.response.new_status == FunnelStatus.QUALIFIED
        assert result.response.response_text == "Booked for Tuesday at 10:00!"
        event_body = json.loads(google_requests[-1].content)
        assert event_body["summary"] == "Consultation - Maria Silva"
        assert event_body["attendees"] == [{"email": "maria@example.com"}]
        assert store.rows("contacts")[0]["email"] == "maria@example.com"
        assert [e["event_type"] for e in store.rows("workflow_events")] == ["calendar_event_created"]

    asyncio.run(_run())


def test_event_guardrails_answer_without_second_pass():
    async def _run():
        for arguments, expected in [
            ({"date": "2026-10-20", "time": "10:00", "client_email": "not-an-email"}, "e-mail"),
            ({"date": "20/10/2026", "time": "10:00", "client_email": "maria@example.com"}, "confirm the day"),
            ({"date": "2026-10-19", "time": "08:00", "client_email": "maria@example.com"}, "already passed"),
        ]:
            orchestrator, provider, store, google_requests = make_orchestrator(
                lambda body, args=arguments: tool_reply("create_calendar_event", args)
            )
            result = await orchestrator.run_turn(make_context("book it"))
            assert expected in result.response.response_text
            assert result.response.action == TurnAction.STAY
            assert len(provider.bodies) == 1
            assert google_requests == []
            assert store.rows("workflow_events") == []

    asyncio.run(_run())


def test_send_response_is_skipped_when_calendar_tool_present():
    both = {
        "choices": [
            {
                "message": {
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [
                        {
                            "id": "call_a",
                            "type": "function",
                            "function": {"name": "send_response", "arguments": json.dumps({"response_text": "hi"})},
                        },
                        {
                            "id": "call_b",
                            "type": "function",
                            "function": {"name": "check_calendar_availability", "arguments": "{}"},
                        },
                    ],
                }
            }
        ]
    }

    def handler(body):
        if body.get("tool_choice") == "auto":
            return both
        return tool_reply("send_response", {"response_text": "Times listed.", "action": "STAY"})

    async def _run():
        orchestrator, provider, _, _ = make_orchestrator(handler)
        result = await orchestrator.run_turn(make_context("when can we meet?"))
        assert result.tool_used == "check_calendar_availability"
        tool_messages = [m for m in provider.bodies[1]["messages"] if m.get("role") == "tool"]
        assert [(m["tool_call_id"], m["content"] == "Not executed.") for m in tool_messages] == [
            ("call_a", True),
            ("call_b", False),
        ]

    asyncio.run(_run())


def test_invalid_tool_arguments_fall_back_to_text():
    async def _run():
        orchestrator, provider, _, google_requests = make_orchestrator(
            lambda body: tool_reply("check_calendar_availability", {"days_ahead": 99})
        )
        result = await orchestrator.run_turn(make_context("any times?"))
        assert result.response.response_text == EMPTY_REPLY
        assert google_requests == []
        assert len(provider.bodies) == 1

    asyncio.run(_run())


def test_calendar_tools_hidden_while_script_runs_for_non_scheduling_agent():
    steps = [
        ScriptStep(id="s1", agent_id="agent-intake", step_order=1, message_to_send="What is your full name?"),
        ScriptStep(id="s2", agent_id="agent-intake", step_order=2, message_to_send="What happened?"),
    ]

    async def _run():
        orchestrator, provider, _, _ = make_orchestrator(
            lambda body: tool_reply("send_response", {"response_text": "Thanks! What happened?", "action": "PROCEED"})
        )
        result = await orchestrator.run_turn(make_context("Maria Silva", script=resolve_script_state(steps, "s1")))
        assert result.response.action == TurnAction.PROCEED
        assert result.script.next_step.id == "s2"
        body = provider.bodies[0]
        assert [t["function"]["name"] for t in body["tools"]] == ["send_response"]
        assert "CALENDAR:" not in system_prompt(body)

    asyncio.run(_run())


def test_system_prompt_sections_follow_fixed_order():
    async def _run():
        orchestrator, provider, store, _ = make_orchestrator(
            lambda body: tool_reply("send_response", {"response_text": "ok", "action": "STAY"})
        )
        store.seed("knowledge_chunks", [{"user_id": USER_ID, "content": "Severance must be paid within ten days."}])
        store.seed("case_fields", [{"case_id": "case-1", "fields": {"employer": "ACME"}}])
        await orchestrator.repository.record_handoff(
            HandoffRecord(
                case_id="case-1",
                user_id=USER_ID,
                from_agent_id="agent-front",
                to_agent_id="agent-intake",
                reason="category:Labor",
                artifact={"summary": "Dismissed last month.", "open_questions": ["exact date"]},
            )
        )
        await orchestrator.run_turn(make_context("When is the severance paid?"))
        prompt = system_prompt(provider.bodies[0])
        markers = [
            "Be cordial and brief.",
            "There is no script",
            "COLLECTED INFORMATION",
            "REFERENCE CONTEXT:\nKnowledge base:\n[Doc 1] Severance",
            "HANDOFF CONTEXT (reason: category:Labor)",
            "CALENDAR:",
        ]
        positions = [prompt.index(m) for m in markers]
        assert positions == sorted(positions)
        assert "- employer: ACME" in prompt
        assert "Open questions: exact date" in prompt

    asyncio.run(_run())


def test_signature_dispatch_tracks_document():
    zapsign_requests = []

    def zapsign(request: httpx.Request) -> httpx.Response:
        zapsign_requests.append(request)
        if request.url.path.endswith("/templates/"):
            return httpx.Response(200, json=[{"token": "tpl-1", "name": "Engagement"}])
        return httpx.Response(200, json={"token": "doc-1", "name": "Engagement - Maria"})

    def handler(body):
        if body.get("tool_choice") == "auto":
            return tool_reply("send_signature_document", {"signer_name": "Maria Silva", "signer_email": "maria@example.com"})
        return tool_reply("send_response", {"response_text": "I've sent the contract to your WhatsApp.", "action": "STAY"})

    async def _run():
        orchestrator, _, store, _ = make_orchestrator(handler, signature_transport=httpx.MockTransport(zapsign))
        signature = SignatureSettings(user_id=USER_ID, api_token="zs", is_enabled=True)
        result = await orchestrator.run_turn(make_context("send me the contract", signature=signature))

        assert result.response.next_intent == NextIntent.DIRECT_CONTRACT
        create_body = json.loads(zapsign_requests[-1].content)
        assert create_body["template_id"] == "tpl-1"
        assert create_body["signers"][0]["phone_number"] == "11999990000"
        document = store.rows("signed_documents")[0]
        assert document["doc_token"] == "doc-1" and document["status"] == "pending"
        assert [e["event_type"] for e in store.rows("workflow_events")] == ["contract_sent"]

    asyncio.run(_run())


def test_signature_requires_full_name():
    async def _run():
        orchestrator, provider, store, _ = make_orchestrator(
            lambda body: tool_reply("send_signature_document", {"signer_name": "Maria"}),
            signature_transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )
        signature = SignatureSettings(user_id=USER_ID, api_token="zs", is_enabled=True)
        result = await orchestrator.run_turn(make_context("contract please", signature=signature))
        assert "full name" in result.response.response_text
        assert store.rows("signed_documents") == []
        assert len(provider.bodies) == 1

    asyncio.run(_run())


def test_fallback_parse_plain_text_rules():
    assert fallback_parse("").response_text == EMPTY_REPLY

    forced = fallback_parse("Perfect! I'm forwarding you to our specialist now.")
    assert forced.action == TurnAction.PROCEED and forced.finalization_forced

    marked = fallback_parse("Thanks for the details.\naction: PROCEED\nstatus: Qualified")
    assert marked.action == TurnAction.PROCEED and not marked.finalization_forced
    assert marked.new_status == FunnelStatus.QUALIFIED
    assert marked.response_text == "Thanks for the details."

    declined = fallback_parse("Unfortunately your case is not qualified for our services.")
    assert declined.new_status == FunnelStatus.NOT_QUALIFIED

    fenced = fallback_parse('```json\n{"response_text": "Hi!", "action": "STAY", "next_intent": "CONTINUE"}\n```')
    assert fenced.response_text == "Hi!" and fenced.next_intent == NextIntent.CONTINUE

    scheduling = fallback_parse("Would you like to schedule a consultation?")
    assert scheduling.next_intent == NextIntent.SCHEDULE_CONSULT and scheduling.action == TurnAction.STAY
