from __future__ import annotations

import logging
import re
from typing import List, Optional

from agents.base import BaseAgent
from agents.llm_runtime import LLMRuntime
from compliance.audit_logger import AuditLogger
from memory.case_repository import CaseRepository
from models.schemas import FAQ, Agent, Case, ConversationEntry, MessageRole

logger = logging.getLogger(__name__)

NO_CATEGORY = "NONE"


def _normalize(text: str) -> str:
    return re.sub(r"[^\w\s]", "", (text or "").lower()).strip()


def transcript(history: List[ConversationEntry], client_label: str = "Client", assistant_label: str = "Assistant") -> str:
    return "\n".join(
        f"{client_label if e.role == MessageRole.CLIENT else assistant_label}: {e.content}" for e in history
    )


def three_paragraphs(text: str) -> str:
    paragraphs = [p.strip() for p in re.split(r"\n\s*\n", text or "") if p.strip()]
    if len(paragraphs) > 3:
        paragraphs = paragraphs[:2] + [" ".join(paragraphs[2:])]
    return "\n\n".join(paragraphs)


class FunnelEngine(BaseAgent):
    """FAQ shortcut, specialist-category routing and the case description."""

    def __init__(self, repository: CaseRepository, audit_logger: AuditLogger, llm: LLMRuntime | None = None) -> None:
        super().__init__("funnel_engine", audit_logger)
        self.repository = repository
        self.llm = llm or LLMRuntime()

    async def match_faq(self, message: str, faqs: List[FAQ]) -> Optional[str]:
        if not faqs or not message.strip():
            return None
        wanted = _normalize(message)
        for faq in faqs:
            if _normalize(faq.question) == wanted:
                return faq.answer
        listing = "\n".join(f"{i}. {faq.question}" for i, faq in enumerate(faqs, start=1))
        try:
            raw = await self.llm.complete_text(
                "You match client messages to frequently asked questions. "
                "Answer ONLY with the number of the FAQ that the message is asking, or 0 if none applies.",
                f"FAQs:\n{listing}\n\nClient message: {message}",
                temperature=0.1,
                max_tokens=10,
            )
        except Exception as exc:
            logger.warning("faq_match_failed", extra={"error": repr(exc)})
            return None
        found = re.search(r"\d+", raw or "")
        index = int(found.group(0)) if found else 0
        if 1 <= index <= len(faqs):
            return faqs[index - 1].answer
        return None

    async def detect_category(self, case: Case, history: List[ConversationEntry]) -> Optional[Agent]:
        candidates = [a for a in await self.repository.active_agents(case.user_id) if a.id != case.active_agent_id]
        categories: List[str] = []
        for agent in candidates:
            label = (agent.category or "").strip()
            if label and label.lower() not in {c.lower() for c in categories}:
                categories.append(label)
        if not categories:
            return None
        try:
            raw = await self.llm.complete_text(
                "Classify the legal matter of this conversation. Answer with EXACTLY one of these categories, "
                f"copied literally: {', '.join(categories)}. If none applies, answer {NO_CATEGORY}.",
                transcript(history[-20:]),
                temperature=0.1,
                max_tokens=20,
            )
        except Exception as exc:
            logger.warning("category_detection_failed", extra={"case_id": case.id, "error": repr(exc)})
            return None
        label = (raw or "").strip().strip(".\"'").lower()
        if not label or label == NO_CATEGORY.lower():
            return None
        for agent in candidates:
            if (agent.category or "").strip().lower() == label:
                logger.info("category_detected", extra={"case_id": case.id, "category": label, "agent_id": agent.id})
                return agent
        return None

    async def generate_description(self, case: Case) -> Optional[str]:
        history = await self.repository.history(case.id, limit=30)
        if not history:
            return None
        raw = await self.llm.complete_text(
            "You write case descriptions for a law firm. Using the conversation, write EXACTLY three paragraphs "
            "separated by a blank line: 1) the client's demand; 2) the key facts; 3) the current status and next steps. "
            "No titles, no lists.",
            f"Client: {case.client_name}\n\n{transcript(history)}",
            temperature=0.3,
            max_tokens=600,
        )
        description = three_paragraphs(raw)
        if not description:
            return None
        await self.repository.update_case(case.id, {"case_description": description})
        await self.record_event(case, "case_description_generated", to_status=case.status.value)
        return description
