from __future__ import annotations

import asyncio
import json

from agents.handoff_manager import first_name, parse_handoff_artifact
from fakes import CLIENT_PHONE, INSTANCE, USER_ID, RecordingScheduler, build_test_engine, seed_office
from memory.record_store import JsonRecordStore
from models.schemas import Case, FunnelStatus, MessageRole

ARTIFACT = {
    "summary": "Client dismissed without severance.",
    "facts": ["worked 3 years", "no severance paid"],
    "collected_fields": {"employer": "ACME"},
    "open_questions": ["dismissal date"],
    "next_best_action": "Ask for the dismissal date.",
    "risk_flags": [],
    "confidence": "high",
}


def test_artifact_parsing():
    fenced = parse_handoff_artifact("```json\n" + json.dumps(ARTIFACT) + "\n```")
    assert fenced is not None
    assert set(fenced.model_dump()) == set(ARTIFACT)
    assert fenced.collected_fields == {"employer": "ACME"}

    bare = parse_handoff_artifact('Here you go: {"summary": "short"} thanks')
    assert bare is not None and bare.summary == "short" and bare.confidence == "low"

    assert parse_handoff_artifact("no json here") is None
    assert parse_handoff_artifact("{not valid}") is None
    assert parse_handoff_artifact('{"confidence": "absolute"}') is None
    assert first_name("  Maria  Silva ") == "Maria"


def test_switch_agent_without_usable_artifact_still_hands_off():
    async def _run():
        store = JsonRecordStore(path="")
        seed_office(store)
        scheduler = RecordingScheduler()
        engine, _, client, _ = build_test_engine(replies=["I cannot produce JSON."], store=store, scheduler=scheduler)
        case = await engine.repository.create_case(
            Case(
                id="case-1",
                user_id=USER_ID,
                client_phone=CLIENT_PHONE,
                client_name="Maria Silva",
                status=FunnelStatus.IN_PROGRESS,
                active_agent_id="agent-intake",
                current_step_id="step-2",
            )
        )
        await engine.repository.add_entry(case.id, MessageRole.CLIENT, "I was fired last week.")
        instance = await engine.registry.resolve_instance(INSTANCE)
        labor = await engine.repository.get_agent("agent-labor")

        updated = await engine.handoff.switch_agent(instance, case, labor, "category:Labor")

        assert updated.active_agent_id == "agent-labor"
        assert updated.current_step_id == "labor-1"
        assert updated.status == FunnelStatus.IN_PROGRESS
        handoff = store.rows("case_handoffs")[0]
        assert handoff["artifact"] == {} and handoff["from_agent_id"] == "agent-intake"
        assert client.texts_to(CLIENT_PHONE) == [
            "Perfect, Maria. I'll forward you now to Bruno to continue, all right?"
        ]
        greeting, delay = scheduler.scheduled[0]
        assert delay == 60
        assert greeting.text == "Hi Maria Silva, I'm Bruno, the labor specialist. When did you leave the company?"
        events = [e["event_type"] for e in store.rows("workflow_events")]
        assert events == ["agent_handoff"]

    asyncio.run(_run())
