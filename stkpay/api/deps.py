"""
FastAPI dependencies. Settings, the Daraja client and the optional callback
simulator are built once in create_app() and kept on app.state.
"""
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from stkpay.core.config import GatewayConfig, Settings
from stkpay.db.session import get_db
from stkpay.services.entitlements.service import EntitlementGrantor
from stkpay.services.payments.initiator import IntentInitiator, StkGateway
from stkpay.services.payments.reconciler import CallbackReconciler
from stkpay.services.payments.simulator import CallbackSimulator
from stkpay.services.payments.status import StatusResolver
from stkpay.services.payments.telemetry import PaymentTelemetry


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_gateway_config(request: Request) -> GatewayConfig:
    return request.app.state.gateway_config


def get_gateway(request: Request) -> StkGateway:
    return request.app.state.mpesa_client


def get_simulator(request: Request) -> CallbackSimulator | None:
    return getattr(request.app.state, "simulator", None)


def get_caller_id(request: Request, settings: Settings = Depends(get_app_settings)) -> str | None:
    """User id asserted by the upstream auth layer, if any."""
    value = (request.headers.get(settings.caller_id_header) or "").strip()
    return value or None


def require_caller_id(caller_id: str | None = Depends(get_caller_id)) -> str:
    if not caller_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return caller_id


def get_initiator(
    db: Session = Depends(get_db),
    gateway: StkGateway = Depends(get_gateway),
    settings: Settings = Depends(get_app_settings),
) -> IntentInitiator:
    return IntentInitiator(db, gateway, settings, telemetry=PaymentTelemetry(db))


def get_reconciler(
    db: Session = Depends(get_db),
    config: GatewayConfig = Depends(get_gateway_config),
) -> CallbackReconciler:
    telemetry = PaymentTelemetry(db)
    return CallbackReconciler(
        db,
        config,
        grantor=EntitlementGrantor(db, telemetry=telemetry),
        telemetry=telemetry,
    )


def get_status_resolver(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    config: GatewayConfig = Depends(get_gateway_config),
    simulator: CallbackSimulator | None = Depends(get_simulator),
) -> StatusResolver:
    # the reconciler only backs simulated confirmations
    reconciler = get_reconciler(db, config) if simulator is not None else None
    return StatusResolver(
        db,
        processing_after_seconds=settings.status_processing_after_seconds,
        reconciler=reconciler,
        simulator=simulator,
    )
