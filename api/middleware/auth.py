from __future__ import annotations

import hmac

from fastapi import HTTPException, Request

from settings import SETTINGS


def get_token_from_request(request: Request) -> str:
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return request.headers.get("X-Webhook-Token") or request.query_params.get("token") or ""


async def require_webhook_token(request: Request) -> None:
    """Shared-secret check for gateway and operator calls; open when no token is configured."""
    expected = SETTINGS.webhook_token
    if not expected:
        return
    if not hmac.compare_digest(get_token_from_request(request), expected):
        raise HTTPException(status_code=401, detail="invalid_token")
