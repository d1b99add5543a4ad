"""
Tier upgrade routes. The caller identity comes from the trusted header; the
amount always comes from the server price table.
"""
from fastapi import APIRouter, Depends, Query, Request, Response, status

from stkpay.api.deps import get_caller_id, get_initiator, get_reconciler, get_status_resolver, require_caller_id
from stkpay.api.routes.mpesa import error_response, handle_callback
from stkpay.schemas.payments import InitiateOut, StatusOut, UpgradeIn
from stkpay.services.entitlements.tiers import clamp_tier
from stkpay.services.payments.errors import GatewayError, IntentNotFoundError, PaymentValidationError
from stkpay.services.payments.initiator import IntentInitiator
from stkpay.services.payments.reconciler import CallbackReconciler
from stkpay.services.payments.status import StatusResolver


router = APIRouter(prefix="/billing/upgrade", tags=["billing"])


@router.post("", response_model=InitiateOut)
def start_upgrade(
    body: UpgradeIn,
    user_id: str = Depends(require_caller_id),
    initiator: IntentInitiator = Depends(get_initiator),
):
    tier = clamp_tier(body.tier)
    try:
        result = initiator.initiate_upgrade(tier, body.phone, user_id=user_id, mode=body.mode)
    except PaymentValidationError as e:
        return error_response(status.HTTP_400_BAD_REQUEST, str(e))
    except GatewayError as e:
        return error_response(status.HTTP_502_BAD_GATEWAY, str(e), intent_id=e.intent_id)
    return InitiateOut(**result.__dict__)


@router.get("/status", response_model=StatusOut)
def upgrade_status(
    id: str | None = Query(default=None),
    caller_id: str | None = Depends(get_caller_id),
    resolver: StatusResolver = Depends(get_status_resolver),
):
    intent_id = (id or "").strip()
    if not intent_id:
        return error_response(status.HTTP_400_BAD_REQUEST, "Missing id")
    try:
        view = resolver.resolve(intent_id, caller_user_id=caller_id)
    except IntentNotFoundError:
        return error_response(status.HTTP_404_NOT_FOUND, "Not found")
    return StatusOut(**view.__dict__)


@router.post("/callback")
async def upgrade_callback(request: Request, reconciler: CallbackReconciler = Depends(get_reconciler)):
    return await handle_callback(request, reconciler)


@router.get("/callback")
def upgrade_callback_ping() -> dict:
    return {"ok": True}


@router.head("/callback")
def upgrade_callback_head() -> Response:
    return Response(status_code=status.HTTP_204_NO_CONTENT)
