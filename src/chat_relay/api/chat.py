"""Chat relay endpoints."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from ..billing.tiers import can_access_model, model_display_name
from ..models.chat import ModelId
from ..providers.factory import resolve_vendor
from ..relay.orchestrator import RelayOrchestrator
from .dependencies import AppServices, get_orchestrator, get_services
from .middleware.auth import Caller, get_current_user_optional, require_auth
from .middleware.rate_limit import client_identifier

router = APIRouter(tags=["chat"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@router.post("/chat")
async def chat(
    request: Request,
    caller: Optional[Caller] = Depends(get_current_user_optional),
    orchestrator: RelayOrchestrator = Depends(get_orchestrator),
):
    """
    Relay a conversation to the model's provider.

    The body is read raw so that authentication and rate/quota checks run before
    it is parsed. Refusals are plain JSON errors; once admitted the response is an
    event stream of ``token`` events ending in one ``done`` or ``error`` event.
    With ``"stream": false`` the completed message is returned as one JSON body.
    """
    body = await request.body()
    session = await orchestrator.admit(caller.id if caller else None, client_identifier(request), body)

    if not session.request.stream:
        result = await orchestrator.complete(session)
        return {"content": result.content, "usage": result.usage.model_dump()}

    return StreamingResponse(
        orchestrator.relay(session, request.is_disconnected),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.get("/models")
async def list_models(
    caller: Caller = Depends(require_auth),
    services: AppServices = Depends(get_services),
) -> Dict[str, Any]:
    """List every model with its vendor and whether the caller's tier includes it."""
    tier = await services.profiles.get_tier(caller.id)

    return {
        "tier": tier.value,
        "models": [
            {
                "id": model.value,
                "name": model_display_name(model),
                "vendor": resolve_vendor(model.value).value,
                "available": can_access_model(tier, model),
            }
            for model in ModelId
        ],
    }
