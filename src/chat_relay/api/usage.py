"""Usage API."""

from typing import Any, Dict

from fastapi import APIRouter, Depends

from ..billing.quota import summarize_usage
from .dependencies import AppServices, get_services
from .middleware.auth import Caller, require_auth

router = APIRouter(tags=["usage"])


@router.get("/usage")
async def get_my_usage(
    caller: Caller = Depends(require_auth),
    services: AppServices = Depends(get_services),
) -> Dict[str, Any]:
    """Get the current user's usage for this billing period."""
    tier = await services.profiles.get_tier(caller.id)
    record = await services.ledger.get_usage(caller.id)

    return summarize_usage(tier, record).model_dump(mode="json")
