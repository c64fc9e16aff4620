from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.middleware.auth import require_webhook_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"], dependencies=[Depends(require_webhook_token)])


@router.post("/evolution")
async def evolution_webhook(request: Request):
    try:
        payload = await request.json()
    except ValueError:
        return JSONResponse({"status": "ignored", "reason": "malformed"}, status_code=400)
    if not isinstance(payload, dict):
        return JSONResponse({"status": "ignored", "reason": "malformed"}, status_code=400)
    engine = request.app.state.engine
    try:
        return await engine.router.route_event(payload)
    except Exception as exc:
        logger.exception("webhook_processing_failed", extra={"instance": payload.get("instance")})
        return JSONResponse({"error": str(exc)}, status_code=500)


@router.post("/signature")
async def signature_webhook(request: Request):
    try:
        payload = await request.json()
    except ValueError:
        return JSONResponse({"status": "ignored", "reason": "malformed"}, status_code=400)
    if not isinstance(payload, dict):
        return JSONResponse({"status": "ignored", "reason": "malformed"}, status_code=400)
    engine = request.app.state.engine
    try:
        return await engine.signatures.handle(payload)
    except Exception as exc:
        logger.exception("signature_webhook_failed", extra={"doc_token": payload.get("token")})
        return JSONResponse({"error": str(exc)}, status_code=500)
