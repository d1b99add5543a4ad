"""
Main FastAPI application for the STK push payment service.
Serves initiate, status, gateway callback, health and metrics.
"""
import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from stkpay.api.routes import billing, health, mpesa
from stkpay.core.config import GatewayConfig, Settings, get_settings
from stkpay.core.logging import configure_logging
from stkpay.db.base import Base
from stkpay.db.session import engine
from stkpay.models import audit_log, payment_intent, user  # noqa: F401  (register tables)
from stkpay.services.circuit_breaker import get_circuit_breaker
from stkpay.services.mpesa.client import MpesaClient
from stkpay.services.payments.simulator import CallbackSimulator
from stkpay.utils.metrics import http_request_duration_seconds, router as metrics_router


logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    gateway_config = GatewayConfig.from_settings(settings)
    mpesa_client = MpesaClient(gateway_config, breaker=get_circuit_breaker("mpesa", settings))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.db_create_all:
            Base.metadata.create_all(bind=engine)
        logger.info(
            "app_started",
            extra={"mode": gateway_config.mode, "operation": "simulate" if settings.callbacks_simulated else "live"},
        )
        yield
        mpesa_client.close()

    app = FastAPI(
        title="STK Pay API",
        description="M-Pesa STK push payment intents, callback reconciliation and tier upgrades",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.gateway_config = gateway_config
    app.state.mpesa_client = mpesa_client
    app.state.simulator = (
        CallbackSimulator(settings.simulate_callback_after_seconds) if settings.callbacks_simulated else None
    )
    if app.state.simulator is not None:
        logger.warning("payment_callback_simulation_enabled")

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get(settings.request_id_header) or uuid.uuid4().hex
        start = time.time()
        response = await call_next(request)
        latency = time.time() - start
        route = request.scope.get("route")
        path = getattr(route, "path", request.url.path)
        http_request_duration_seconds.labels(method=request.method, path=path).observe(latency)
        response.headers[settings.request_id_header] = request_id
        logger.info(
            "http_request",
            extra={
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": response.status_code,
                "latency_ms": round(latency * 1000, 1),
            },
        )
        return response

    # Routers
    app.include_router(health.router, tags=["health"])
    app.include_router(mpesa.router)
    app.include_router(billing.router)
    app.include_router(metrics_router)
    return app


app = create_app()
