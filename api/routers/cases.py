from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from api.middleware.auth import require_webhook_token
from models.schemas import HandoffRequest

router = APIRouter(prefix="/cases", tags=["cases"])


@router.post("/{case_id}/handoff")
async def handoff_case(case_id: str, payload: HandoffRequest, request: Request, _auth: None = Depends(require_webhook_token)):
    engine = request.app.state.engine
    case = await engine.repository.get_case(case_id)
    if case is None:
        raise HTTPException(status_code=404, detail="case_not_found")
    agent = await engine.repository.get_agent(payload.to_agent_id)
    if agent is None or agent.user_id != case.user_id or not agent.is_active:
        raise HTTPException(status_code=404, detail="agent_not_found")
    instance = await engine.registry.instance_for_user(case.user_id)
    if instance is None:
        raise HTTPException(status_code=409, detail="no_channel_instance")
    updated = await engine.handoff.switch_agent(
        instance, case, agent, payload.reason, target_status=payload.target_status
    )
    return {
        "ok": True,
        "case_id": updated.id,
        "active_agent_id": updated.active_agent_id,
        "status": updated.status.value,
    }
