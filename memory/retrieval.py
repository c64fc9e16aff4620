from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from agents.llm_runtime import LLMRuntime
from memory.record_store import RecordStore
from settings import SETTINGS

logger = logging.getLogger(__name__)

SECTION_SEPARATOR = "\n\n---\n\n"
_TOKEN = re.compile(r"\w+", re.UNICODE)


def lexical_terms(query: str, min_length: int = 4, max_terms: int = 5) -> List[str]:
    seen: List[str] = []
    for token in _TOKEN.findall((query or "").lower()):
        if len(token) >= min_length and token not in seen:
            seen.append(token)
        if len(seen) >= max_terms:
            break
    return seen


def chunk_text(text: str, chunk_words: int = 500, overlap_words: int = 50) -> List[str]:
    words = (text or "").split()
    if not words:
        return []
    step = max(1, chunk_words - overlap_words)
    chunks: List[str] = []
    for start in range(0, len(words), step):
        chunks.append(" ".join(words[start : start + chunk_words]))
        if start + chunk_words >= len(words):
            break
    return chunks


def format_context(knowledge: List[dict], memories: List[dict]) -> str:
    sections: List[str] = []
    if knowledge:
        docs = "\n\n".join(f"[Doc {i}] {row.get('content', '')}" for i, row in enumerate(knowledge, start=1))
        sections.append(f"Knowledge base:\n{docs}")
    if memories:
        mems = "\n".join(f"[Mem {i}] {row.get('content', '')}" for i, row in enumerate(memories, start=1))
        sections.append(f"Contact memories:\n{mems}")
    return SECTION_SEPARATOR.join(sections)


class RetrievalEngine:
    def __init__(self, store: RecordStore, llm: LLMRuntime | None = None) -> None:
        self.store = store
        self.llm = llm or LLMRuntime()

    async def _vector_search(
        self,
        embedding: List[float],
        user_id: str,
        agent_id: Optional[str],
        phone: Optional[str],
        threshold: float,
        count: int,
    ) -> tuple[List[dict], List[dict]]:
        knowledge_call = self.store.rpc(
            "match_knowledge_chunks",
            {
                "query_embedding": embedding,
                "match_user_id": user_id,
                "match_agent_id": agent_id,
                "match_threshold": threshold,
                "match_count": count,
            },
        )
        if not phone:
            return await knowledge_call, []
        memory_call = self.store.rpc(
            "match_contact_memories",
            {
                "query_embedding": embedding,
                "match_user_id": user_id,
                "match_phone": phone,
                "match_threshold": threshold,
                "match_count": count,
            },
        )
        knowledge, memories = await asyncio.gather(knowledge_call, memory_call)
        return knowledge, memories

    async def _lexical_search(self, query: str, user_id: str, phone: Optional[str]) -> tuple[List[dict], List[dict]]:
        terms = lexical_terms(query)
        if not terms:
            return [], []
        limit = SETTINGS.rag_lexical_limit
        knowledge = await self.store.search_text("knowledge_chunks", "content", terms, {"user_id": user_id}, limit=limit)
        memories: List[dict] = []
        if phone:
            memories = await self.store.search_text(
                "contact_memories", "content", terms, {"user_id": user_id, "contact_phone": phone}, limit=limit
            )
        return knowledge, memories

    async def search_context(self, query: str, user_id: str, agent_id: str | None = None, phone: str | None = None) -> str:
        """Knowledge and contact-memory context for a prompt, or ``""``."""
        try:
            knowledge: List[dict] = []
            memories: List[dict] = []
            embedding = None
            try:
                embedding = await self.llm.embed(query)
            except Exception as exc:
                logger.warning("rag_embedding_failed", extra={"error": repr(exc)})
            if embedding:
                knowledge, memories = await self._vector_search(
                    embedding, user_id, agent_id, phone, SETTINGS.rag_match_threshold, SETTINGS.rag_match_count
                )
                if not knowledge and not memories:
                    knowledge, memories = await self._vector_search(
                        embedding, user_id, agent_id, phone, SETTINGS.rag_widened_threshold, SETTINGS.rag_widened_count
                    )
            if not knowledge and not memories:
                knowledge, memories = await self._lexical_search(query, user_id, phone)
            return format_context(knowledge, memories)
        except Exception:
            logger.exception("rag_search_failed", extra={"user_id": user_id, "agent_id": agent_id})
            return ""

    async def save_contact_memory(
        self,
        user_id: str,
        phone: str,
        agent_id: str | None,
        exchange: str,
    ) -> Optional[dict]:
        summary = (
            await self.llm.complete_text(
                "Summarize the key information of this conversation excerpt in 1-2 short sentences. "
                "Keep only facts about the client and their legal matter.",
                exchange,
                temperature=0.2,
                max_tokens=200,
            )
        ).strip()
        if not summary:
            return None
        row: Dict[str, Any] = {
            "user_id": user_id,
            "contact_phone": phone,
            "agent_id": agent_id,
            "memory_type": "conversation_summary",
            "content": summary,
            "metadata": {"created_from": "conversation", "timestamp": datetime.utcnow().isoformat()},
        }
        embedding = await self.llm.embed(summary)
        if embedding:
            row["embedding"] = embedding
        return await self.store.insert("contact_memories", row)

    async def ingest_document(self, user_id: str, content: str, agent_id: str | None = None, title: str = "") -> int:
        count = 0
        for index, chunk in enumerate(chunk_text(content)):
            row: Dict[str, Any] = {
                "user_id": user_id,
                "agent_id": agent_id,
                "content": chunk,
                "metadata": {"title": title, "chunk_index": index},
            }
            embedding = await self.llm.embed(chunk)
            if embedding:
                row["embedding"] = embedding
            await self.store.insert("knowledge_chunks", row)
            count += 1
        logger.info("knowledge_ingested", extra={"user_id": user_id, "agent_id": agent_id, "chunks": count})
        return count
