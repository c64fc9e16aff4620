from __future__ import annotations

import asyncio

import httpx

from agents.llm_runtime import LLMRuntime, OpenAIProvider
from fakes import NO_RETRY, USER_ID, ScriptedProvider
from memory.record_store import JsonRecordStore
from memory.retrieval import RetrievalEngine, chunk_text, format_context, lexical_terms
from settings import SETTINGS


def _vector(*head):
    return list(head) + [0.0] * (SETTINGS.embedding_dimensions - len(head))


def _embedding_llm(vector):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": [{"embedding": vector}]})

    provider = OpenAIProvider(api_key="k", base_url="http://openai.local/v1", transport=httpx.MockTransport(handler))
    return LLMRuntime(providers=[provider], retry_policy=NO_RETRY)


def test_chunking_overlaps_words():
    words = [f"w{i}" for i in range(1200)]
    chunks = chunk_text(" ".join(words))
    assert len(chunks) == 3
    assert chunks[0].split()[-50:] == chunks[1].split()[:50]
    assert chunks[-1].split()[-1] == "w1199"
    assert chunk_text("   ") == []


def test_lexical_terms_and_context_format():
    assert lexical_terms("When is the severance paid, severance?") == ["when", "severance", "paid"]
    context = format_context([{"content": "A"}, {"content": "B"}], [{"content": "M"}])
    assert context == "Knowledge base:\n[Doc 1] A\n\n[Doc 2] B\n\n---\n\nContact memories:\n[Mem 1] M"
    assert format_context([], []) == ""


def test_lexical_fallback_without_embeddings():
    async def _run():
        store = JsonRecordStore(path="")
        store.seed(
            "knowledge_chunks",
            [
                {"user_id": USER_ID, "content": "Severance must be paid within ten days."},
                {"user_id": "other", "content": "Severance rules for another office."},
            ],
        )
        store.seed("contact_memories", [{"user_id": USER_ID, "contact_phone": "551100", "content": "Client mentioned severance delay."}])
        llm = LLMRuntime(providers=[ScriptedProvider()], retry_policy=NO_RETRY)
        engine = RetrievalEngine(store, llm)

        context = await engine.search_context("severance?", USER_ID, phone="551100")
        assert "[Doc 1] Severance must be paid" in context
        assert "another office" not in context
        assert "[Mem 1] Client mentioned severance delay." in context
        assert await engine.search_context("hi", USER_ID) == ""

    asyncio.run(_run())


def test_vector_search_widens_threshold_before_lexical():
    async def _run():
        store = JsonRecordStore(path="")
        # cosine with the query vector is 0.4: below the first threshold, above the widened one
        store.seed(
            "knowledge_chunks",
            [{"user_id": USER_ID, "agent_id": None, "content": "Vacation pay rules.", "embedding": _vector(0.4, 0.9165151)}],
        )
        engine = RetrievalEngine(store, _embedding_llm(_vector(1.0)))
        context = await engine.search_context("zzzz", USER_ID, agent_id="agent-intake")
        assert context == "Knowledge base:\n[Doc 1] Vacation pay rules."

    asyncio.run(_run())


def test_ingest_stores_embedded_chunks():
    async def _run():
        store = JsonRecordStore(path="")
        engine = RetrievalEngine(store, _embedding_llm(_vector(0.1, 0.2)))
        count = await engine.ingest_document(USER_ID, "word " * 600, agent_id="agent-intake", title="Guide")
        rows = store.rows("knowledge_chunks")
        assert count == 2 and len(rows) == 2
        assert rows[1]["metadata"] == {"title": "Guide", "chunk_index": 1}
        assert rows[0]["embedding"] == _vector(0.1, 0.2)

    asyncio.run(_run())
