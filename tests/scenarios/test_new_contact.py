from __future__ import annotations

import asyncio

from fakes import CLIENT_PHONE, OPERATOR_PHONE, build_test_engine, inbound_payload, seed_office
from memory.record_store import JsonRecordStore


def test_first_message_opens_case_with_default_agent_and_first_step():
    async def _run():
        store = JsonRecordStore(path="")
        seed_office(store)
        engine, provider, client, _ = build_test_engine(store=store)

        result = await engine.router.route_event(inbound_payload("Olá", "MSG-1"))
        assert result["status"] == "new_case_created"

        cases = store.rows("cases")
        assert len(cases) == 1
        case = cases[0]
        assert case["status"] == "New Contact"
        assert case["active_agent_id"] == "agent-intake"
        assert case["current_step_id"] == "step-1"
        assert case["client_phone"] == CLIENT_PHONE
        assert case["unread_count"] == 1

        # first script step only, never the welcome message as well
        assert client.texts_to(CLIENT_PHONE) == ["Hello Maria Silva! I'm Ana from the office. What is your full name?"]

        history = await engine.repository.history(case["id"])
        assert [(e.role.value, e.content) for e in history] == [
            ("client", "Olá"),
            ("assistant", "Hello Maria Silva! I'm Ana from the office. What is your full name?"),
        ]
        assert history[0].external_message_id == "MSG-1"

        operator = client.texts_to(OPERATOR_PHONE)
        assert len(operator) == 1 and operator[0].startswith("🆕 New Lead")
        assert [e["event_type"] for e in store.rows("workflow_events")] == ["case_created"]
        assert store.rows("contacts")[0]["tags"] == ["Lead"]
        assert provider.bodies == []

    asyncio.run(_run())


def test_stage_override_and_welcome_message_when_agent_has_no_script():
    async def _run():
        store = JsonRecordStore(path="")
        seed_office(store)
        store.seed("agents", [{"id": "agent-front", "user_id": "user-1", "name": "Clara", "is_active": True}])
        store.seed("agent_rules", [{"agent_id": "agent-front", "welcome_message": "Hi {name}, this is Clara."}])
        store.seed(
            "funnel_agent_assignments",
            [{"user_id": "user-1", "stage_name": "New Contact", "agent_id": "agent-front"}],
        )
        engine, _, client, _ = build_test_engine(store=store)

        result = await engine.router.route_event(inbound_payload("Olá", "MSG-1", name="João"))
        assert result["status"] == "new_case_created"
        assert store.rows("cases")[0]["active_agent_id"] == "agent-front"
        assert store.rows("cases")[0]["current_step_id"] is None
        assert client.texts_to(CLIENT_PHONE) == ["Hi João, this is Clara."]

    asyncio.run(_run())


def test_duplicate_and_unknown_instance_are_not_processed():
    async def _run():
        store = JsonRecordStore(path="")
        seed_office(store)
        engine, _, client, _ = build_test_engine(store=store)

        assert (await engine.router.route_event(inbound_payload("Olá", "MSG-1")))["status"] == "new_case_created"
        assert (await engine.router.route_event(inbound_payload("Olá", "MSG-1")))["status"] == "duplicate"

        foreign = inbound_payload("Olá", "MSG-2")
        foreign["instance"] = "unknown-instance"
        assert (await engine.router.route_event(foreign))["status"] == "no_owner"
        assert len(store.rows("cases")) == 1
        assert len(client.texts_to(CLIENT_PHONE)) == 1

    asyncio.run(_run())


def test_tenant_without_active_agents_gets_no_agents():
    async def _run():
        store = JsonRecordStore(path="")
        store.seed("evolution_api_settings", [{"instance_name": "office-1", "user_id": "user-1"}])
        engine, _, client, _ = build_test_engine(store=store)

        result = await engine.router.route_event(inbound_payload("Olá", "MSG-1"))
        assert result == {"status": "no_agents"}
        assert store.rows("cases") == []
        assert client.sent == []

    asyncio.run(_run())
