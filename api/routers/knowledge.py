from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from api.middleware.auth import require_webhook_token
from models.schemas import KnowledgeIngestRequest

router = APIRouter(prefix="/knowledge", tags=["knowledge"])


@router.post("/ingest")
async def ingest_knowledge(payload: KnowledgeIngestRequest, request: Request, _auth: None = Depends(require_webhook_token)):
    if not payload.content.strip():
        raise HTTPException(status_code=400, detail="empty_content")
    engine = request.app.state.engine
    chunks = await engine.retrieval.ingest_document(
        payload.user_id, payload.content, agent_id=payload.agent_id, title=payload.title
    )
    return {"ok": True, "chunks": chunks, "embeddings": engine.llm.embeddings_available()}
