from __future__ import annotations

import asyncio

import httpx

from fakes import (
    CLIENT_PHONE,
    RecordingChannelClient,
    build_test_engine,
    inbound_payload,
    seed_office,
    system_prompt,
    tool_reply,
)
from memory.record_store import JsonRecordStore
from models.schemas import FunnelStatus, MessageRole


async def _open_case(engine):
    result = await engine.router.route_event(inbound_payload("Olá", "MSG-1"))
    assert result["status"] == "new_case_created"
    return result["case_id"]


def test_faq_exact_match_short_circuits_turn():
    async def _run():
        store = JsonRecordStore(path="")
        seed_office(store, with_faq=True)
        engine, provider, client, _ = build_test_engine(store=store)
        case_id = await _open_case(engine)

        result = await engine.router.route_event(inbound_payload("Where is the office?", "MSG-2"))

        assert result == {"status": "faq_answered", "case_id": case_id}
        assert client.texts_to(CLIENT_PHONE)[-1] == "Av. Paulista, 1000."
        assert provider.bodies == []
        case = await engine.repository.get_case(case_id)
        assert case.current_step_id == "step-1"
        assert case.unread_count == 2
        assert case.status == FunnelStatus.IN_PROGRESS

    asyncio.run(_run())


def test_paused_case_records_message_without_reply():
    async def _run():
        store = JsonRecordStore(path="")
        seed_office(store)
        engine, provider, client, _ = build_test_engine(store=store)
        case_id = await _open_case(engine)
        await engine.repository.update_case(case_id, {"is_paused": True})
        sent_before = len(client.sent)

        result = await engine.router.route_event(inbound_payload("Maria Silva", "MSG-2"))

        assert result == {"status": "manual_mode", "case_id": case_id, "reason": "agent_paused"}
        assert len(client.sent) == sent_before
        assert provider.bodies == []
        history = await engine.repository.history(case_id)
        assert (history[-1].role, history[-1].content) == (MessageRole.CLIENT, "Maria Silva")
        assert (await engine.repository.get_case(case_id)).last_message == "Maria Silva"

    asyncio.run(_run())


def test_reply_is_dropped_when_every_provider_fails():
    async def _run():
        store = JsonRecordStore(path="")
        seed_office(store)
        engine, provider, client, _ = build_test_engine(store=store, replies=[httpx.ConnectError("down")])
        case_id = await _open_case(engine)
        replies_before = len(client.texts_to(CLIENT_PHONE))

        result = await engine.router.route_event(inbound_payload("Maria Silva", "MSG-2"))

        assert result == {"status": "dropped", "case_id": case_id}
        assert len(client.texts_to(CLIENT_PHONE)) == replies_before
        case = await engine.repository.get_case(case_id)
        assert case.current_step_id == "step-1"
        assert case.status.value == "In Progress"

    asyncio.run(_run())


def test_delivery_status_updates_outbound_entry():
    async def _run():
        store = JsonRecordStore(path="")
        seed_office(store)
        engine, _, _, _ = build_test_engine(store=store)
        case_id = await _open_case(engine)
        greeting = (await engine.repository.history(case_id))[-1]

        result = await engine.router.route_event(
            {"instance": "office-1", "event": "messages.update", "data": {"keyId": greeting.external_message_id, "status": 4}}
        )

        assert result == {"status": "status_updated", "message_status": "read", "updated": 1}
        assert (await engine.repository.history(case_id))[-1].message_status.value == "read"

    asyncio.run(_run())


def test_presence_own_messages_and_unknown_instances():
    async def _run():
        store = JsonRecordStore(path="")
        seed_office(store)
        engine, _, client, _ = build_test_engine(store=store)

        presence = await engine.router.route_event({"instance": "office-1", "event": "presence.update", "data": {}})
        assert presence == {"status": "presence_handled"}

        own = inbound_payload("sent from the phone", "MSG-9")
        own["data"]["key"]["fromMe"] = True
        assert (await engine.router.route_event(own))["reason"] == "from_me"

        stranger = inbound_payload("hello", "MSG-10")
        stranger["instance"] = "unknown-office"
        assert await engine.router.route_event(stranger) == {"status": "no_owner"}
        assert client.sent == []
        assert store.rows("cases") == []

    asyncio.run(_run())


def test_audio_message_opens_case_with_placeholder_when_download_fails():
    async def _run():
        store = JsonRecordStore(path="")
        seed_office(store)
        engine, _, _, _ = build_test_engine(store=store, client=RecordingChannelClient(media=None))
        payload = inbound_payload("", "MSG-1")
        payload["data"]["message"] = {"audioMessage": {"mimetype": "audio/ogg"}}

        result = await engine.router.route_event(payload)

        assert result["status"] == "new_case_created"
        history = await engine.repository.history(result["case_id"])
        assert history[0].content == "[Audio received - could not process]"
        assert history[0].media_type == "audio"

    asyncio.run(_run())


def scripted_office(category: str, text: str = "Sure, anything else?"):
    def handler(body):
        prompt = system_prompt(body)
        if "Classify the legal matter" in prompt:
            return category
        if body.get("tools"):
            return tool_reply("send_response", {"response_text": text, "action": "PROCEED"})
        return None

    return handler


async def _finish_script(engine, case_id):
    await engine.repository.update_case(case_id, {"current_step_id": None, "status": FunnelStatus.IN_PROGRESS})


def test_proceed_sends_next_step_as_written():
    async def _run():
        store = JsonRecordStore(path="")
        seed_office(store)
        engine, _, client, _ = build_test_engine(handler=scripted_office("NONE"), store=store)
        case_id = await _open_case(engine)

        result = await engine.router.route_event(inbound_payload("Maria Silva", "MSG-2"))

        assert result["status"] == "processed"
        assert client.texts_to(CLIENT_PHONE)[-1] == "Tell me briefly what happened."
        case = await engine.repository.get_case(case_id)
        assert case.current_step_id == "step-2"
        assert (await engine.repository.history(case_id))[-1].content == "Tell me briefly what happened."

    asyncio.run(_run())


def test_completed_script_does_not_keep_advancing_the_funnel():
    async def _run():
        store = JsonRecordStore(path="")
        seed_office(store)
        engine, _, client, _ = build_test_engine(handler=scripted_office("NONE", "Glad to help."), store=store)
        case_id = await _open_case(engine)
        await _finish_script(engine, case_id)

        statuses = []
        for message_id in ("MSG-2", "MSG-3"):
            result = await engine.router.route_event(inbound_payload("Any news about my case?", message_id))
            assert result["status"] == "processed"
            statuses.append((await engine.repository.get_case(case_id)).status)

        assert statuses == [FunnelStatus.IN_PROGRESS, FunnelStatus.IN_PROGRESS]
        assert client.texts_to(CLIENT_PHONE)[-2:] == ["Glad to help.", "Glad to help."]
        assert store.rows("case_handoffs") == []

    asyncio.run(_run())


def test_completed_script_switches_to_matching_specialist_before_reply():
    async def _run():
        store = JsonRecordStore(path="")
        seed_office(store)
        engine, provider, client, scheduler = build_test_engine(handler=scripted_office("Labor"), store=store)
        case_id = await _open_case(engine)
        await _finish_script(engine, case_id)

        result = await engine.router.route_event(inbound_payload("Actually I was fired last week", "MSG-2"))

        assert result == {"status": "agent_switched_with_handoff", "case_id": case_id}
        case = await engine.repository.get_case(case_id)
        assert case.active_agent_id == "agent-labor"
        assert case.current_step_id == "labor-1"
        assert case.status == FunnelStatus.IN_PROGRESS
        assert store.rows("case_handoffs")[0]["reason"] == "category:Labor"
        assert not [b for b in provider.bodies if b.get("tools")]
        assert len(scheduler.scheduled) == 1

    asyncio.run(_run())


def _office_with_stage_agent() -> JsonRecordStore:
    store = JsonRecordStore(path="")
    seed_office(store)
    store.seed("agents", [{"id": "agent-closer", "user_id": "user-1", "name": "Carla", "is_active": True}])
    store.seed("funnel_agent_assignments", [{"user_id": "user-1", "stage_name": "Qualified", "agent_id": "agent-closer"}])
    return store


def test_finalization_prefers_category_agent_over_stage_assignment():
    async def _run():
        for category, expected_agent, expected_reason in (
            ("Labor", "agent-labor", "category:Labor"),
            ("NONE", "agent-closer", "stage_assignment:Qualified"),
        ):
            store = _office_with_stage_agent()
            engine, _, _, _ = build_test_engine(handler=scripted_office(category), store=store)
            case_id = await _open_case(engine)
            await engine.repository.update_case(case_id, {"current_step_id": "step-2"})

            result = await engine.router.route_event(inbound_payload("I was fired without notice", "MSG-2"))

            assert result["status"] == "agent_switched_with_handoff"
            case = await engine.repository.get_case(case_id)
            assert case.active_agent_id == expected_agent
            assert case.status == FunnelStatus.QUALIFIED
            assert store.rows("case_handoffs")[0]["reason"] == expected_reason

    asyncio.run(_run())


def test_case_without_active_agent_is_manual():
    async def _run():
        store = JsonRecordStore(path="")
        seed_office(store)
        engine, provider, client, _ = build_test_engine(store=store)
        case_id = await _open_case(engine)
        await engine.repository.update_case(case_id, {"active_agent_id": None})
        replies_before = len(client.texts_to(CLIENT_PHONE))

        result = await engine.router.route_event(inbound_payload("Hello?", "MSG-2"))

        assert result == {"status": "manual_mode", "case_id": case_id, "reason": "no_active_agent"}
        assert len(client.texts_to(CLIENT_PHONE)) == replies_before
        assert provider.bodies == []
        assert (await engine.repository.get_case(case_id)).active_agent_id is None

    asyncio.run(_run())


class CountingChannelClient(RecordingChannelClient):
    def __init__(self) -> None:
        super().__init__(media="T2dnUw==")
        self.downloads = 0

    async def download_media_base64(self, key, message):
        self.downloads += 1
        return await super().download_media_base64(key, message)


def test_redelivered_media_is_not_transcribed_again():
    async def _run():
        store = JsonRecordStore(path="")
        seed_office(store)
        client = CountingChannelClient()
        engine, _, _, _ = build_test_engine(store=store, client=client)
        payload = inbound_payload("", "MSG-1")
        payload["data"]["message"] = {"audioMessage": {"mimetype": "audio/ogg"}}

        assert (await engine.router.route_event(payload))["status"] == "new_case_created"
        assert (await engine.router.route_event(payload))["status"] == "duplicate"
        assert client.downloads == 1

    asyncio.run(_run())
