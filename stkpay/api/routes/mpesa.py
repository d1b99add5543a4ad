"""
M-Pesa routes: generic STK push initiate and the Daraja callback endpoint.
"""
import json
import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response

from stkpay.api.deps import get_caller_id, get_initiator, get_reconciler
from stkpay.schemas.payments import InitiateOut, StkPushIn
from stkpay.services.payments.errors import CallbackPayloadError, GatewayError, PaymentValidationError
from stkpay.services.payments.initiator import IntentInitiator, Linkage
from stkpay.services.payments.reconciler import CallbackReconciler


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/mpesa", tags=["mpesa"])

CALLBACK_TOKEN_HEADERS = ("x-callback-token", "x-callback-secret")


def error_response(status_code: int, message: str, **fields) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"ok": False, "error": message, **fields})


@router.post("/stk", response_model=InitiateOut)
def stk_push(
    body: StkPushIn,
    caller_id: str | None = Depends(get_caller_id),
    initiator: IntentInitiator = Depends(get_initiator),
):
    try:
        result = initiator.initiate(
            amount=body.amount,
            phone=body.phone,
            linkage=Linkage(user_id=caller_id, product_id=body.product_id),
            account_ref=body.account_ref,
            description=body.description,
            mode=body.mode,
        )
    except PaymentValidationError as e:
        return error_response(status.HTTP_400_BAD_REQUEST, str(e))
    except GatewayError as e:
        return error_response(status.HTTP_502_BAD_GATEWAY, str(e), intent_id=e.intent_id)
    return InitiateOut(**result.__dict__)


async def handle_callback(request: Request, reconciler: CallbackReconciler) -> JSONResponse:
    """Shared by /mpesa/callback and /billing/upgrade/callback."""
    presented = next(
        (request.headers.get(h) for h in CALLBACK_TOKEN_HEADERS if request.headers.get(h)),
        None,
    )
    if not reconciler.verify_token(presented):
        reconciler.telemetry.callback("forbidden")
        logger.warning("payment_callback_forbidden", extra={"path": request.url.path})
        return error_response(status.HTTP_403_FORBIDDEN, "Forbidden")

    raw = await request.body()
    try:
        payload = json.loads(raw or b"null")
    except ValueError:
        reconciler.telemetry.callback("malformed")
        return error_response(status.HTTP_400_BAD_REQUEST, "Invalid JSON")

    try:
        result = await run_in_threadpool(reconciler.reconcile, payload)
    except CallbackPayloadError as e:
        return error_response(status.HTTP_400_BAD_REQUEST, str(e))
    return JSONResponse(content=result.ack)


@router.post("/callback")
async def mpesa_callback(request: Request, reconciler: CallbackReconciler = Depends(get_reconciler)):
    return await handle_callback(request, reconciler)


@router.get("/callback")
def mpesa_callback_ping() -> dict:
    """Liveness check for the callback URL registered with Daraja."""
    return {"ok": True}


@router.head("/callback")
def mpesa_callback_head() -> Response:
    return Response(status_code=status.HTTP_204_NO_CONTENT)
