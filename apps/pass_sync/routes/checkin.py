from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from apps.pass_sync.routes.deps import get_services
from apps.pass_sync.services.registry import PassServices
from apps.pass_sync.utils.envelope import ok
from apps.pass_sync.utils.pass_auth import enforce_internal_token

router = APIRouter(tags=["access"])


# ===== Pydantic models =====
class CheckInBody(BaseModel):
    account: str = Field(min_length=1)
    eventId: str = Field(min_length=1)
    operator: str = Field(min_length=1)


# ===== Endpoints =====
@router.get("/access/{account}/{event_id}")
async def access_state(account: str, event_id: str, services: PassServices = Depends(get_services)):
    state = await services.access.derive_access_state(account, event_id)
    return ok(state.to_dict())


@router.post("/checkin")
async def check_in(body: CheckInBody, request: Request, services: PassServices = Depends(get_services)):
    enforce_internal_token(request, services.settings.internal_token)
    result = await services.access.attempt_check_in(body.account, body.eventId, body.operator)
    return ok(result.to_dict())
