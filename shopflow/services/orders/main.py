"""HTTP surface for orders, payments, promo codes and background sweeps.

Controllers stay thin: they translate HTTP into service calls, and domain
errors into status codes carrying only the customer-safe message.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from dataclasses import dataclass
from time import perf_counter
from typing import Any
from urllib.parse import parse_qsl
from uuid import uuid4

from fastapi import Depends, FastAPI, File, Header, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse

from shopflow.common.config import settings
from shopflow.common.db import SessionLocal
from shopflow.common.errors import (
    AlreadyPaid,
    GatewayError,
    NotFound,
    OrderError,
    StaleStatusError,
    ValidationError,
)
from shopflow.common.logging import configure_logging, logger, trace_id_ctx
from shopflow.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from shopflow.common.startup import log_startup_config
from shopflow.common.state_machine import STATUS_VOCABULARY_VERSION
from shopflow.common.tracing import instrument_app, setup_tracing
from shopflow.services.notification.channels import (
    GoogleAnalyticsChannel,
    HttpEmailChannel,
    PixelConversionChannel,
    TelegramChatChannel,
)
from shopflow.services.notification.service import NotificationFanout
from shopflow.services.orders.lifecycle import OrderLifecycle
from shopflow.services.orders.schemas import (
    OrderCreateRequest,
    OrderListResponse,
    OrderResponse,
    OrderSnapshot,
    PromoCodeCreateRequest,
    PromoCodeResponse,
    PromoCodeValidateRequest,
    StatusUpdateRequest,
    TrackingUpdateRequest,
    TrackOrderRequest,
)
from shopflow.services.orders.service import OrderService
from shopflow.services.orders.sweeps import SweepRunner
from shopflow.services.payments.ampay import AmPayGateway
from shopflow.services.payments.bank_transfer import default_bank_transfers
from shopflow.services.payments.cointopay import CointopayGateway
from shopflow.services.payments.gateways import GatewayRegistry
from shopflow.services.payments.plisio import PlisioGateway
from shopflow.services.payments.reconciliation import ReconciliationEngine
from shopflow.services.payments.service import PaymentService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    [
        "service_name",
        "postgres_dsn",
        "storefront_url",
        "cointopay_proxy_url",
        "plisio_api_key",
        "ampay_webhook_secret",
        "telegram_bot_token",
        "email_api_key",
        "ga_measurement_id",
        "pixel_id",
        "sweeps_enabled",
    ],
)


@dataclass
class Container:
    """Process-wide service graph, built once and shared by every request."""

    fanout: NotificationFanout
    gateways: GatewayRegistry
    lifecycle: OrderLifecycle
    reconciliation: ReconciliationEngine
    orders: OrderService
    payments: PaymentService
    sweeps: SweepRunner


def build_fanout() -> NotificationFanout:
    """Channels whose credentials are unset are left out."""

    chat = None
    if settings.telegram_bot_token and settings.telegram_chat_ids:
        chat = TelegramChatChannel(settings.telegram_bot_token, settings.telegram_chat_ids)
    email = None
    if settings.email_api_key:
        email = HttpEmailChannel(settings.email_api_key, settings.email_from, settings.email_from_name)
    analytics = []
    if settings.ga_measurement_id and settings.ga_api_secret:
        analytics.append(GoogleAnalyticsChannel(settings.ga_measurement_id, settings.ga_api_secret))
    if settings.pixel_id and settings.pixel_access_token:
        analytics.append(PixelConversionChannel(settings.pixel_id, settings.pixel_access_token))
    return NotificationFanout(chat=chat, email=email, analytics=analytics, service_name=settings.service_name)


def build_gateways() -> GatewayRegistry:
    return GatewayRegistry([CointopayGateway(), AmPayGateway(), PlisioGateway(), *default_bank_transfers()])


def build_container(session_factory=SessionLocal, fanout=None, gateways=None, clock=None) -> Container:
    fanout = fanout or build_fanout()
    gateways = gateways or build_gateways()
    lifecycle = OrderLifecycle(session_factory, fanout, service_name=settings.service_name)
    reconciliation = ReconciliationEngine(
        session_factory, lifecycle, gateways, fanout, service_name=settings.service_name
    )
    sweep_kwargs = {"clock": clock} if clock is not None else {}
    return Container(
        fanout=fanout,
        gateways=gateways,
        lifecycle=lifecycle,
        reconciliation=reconciliation,
        orders=OrderService(session_factory, lifecycle, fanout, service_name=settings.service_name),
        payments=PaymentService(session_factory, gateways, fanout),
        sweeps=SweepRunner(
            session_factory,
            lifecycle,
            reconciliation,
            fanout,
            service_name=settings.service_name,
            **sweep_kwargs,
        ),
    )


ERROR_STATUS = (
    (ValidationError, 400),
    (NotFound, 404),
    (AlreadyPaid, 409),
    (StaleStatusError, 409),
    (GatewayError, 502),
)


def require_operator(x_api_key: str | None = Header(default=None)) -> None:
    """Reject requests that do not provide the configured operator API key."""

    if not settings.api_key or x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def order_response(order: OrderSnapshot, access_token: str | None = None) -> OrderResponse:
    return OrderResponse(**order.model_dump(), access_token=access_token, status=order.current_status)


def create_app(container: Container | None = None, run_sweeps: bool | None = None) -> FastAPI:
    container = container or build_container()
    run_sweeps = settings.sweeps_enabled if run_sweeps is None else run_sweeps

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        """Start channels and sweep loops with the app; stop them on shutdown."""

        await container.fanout.start()
        tasks = []
        if run_sweeps:
            for name, interval in container.sweeps.intervals().items():
                tasks.append(asyncio.create_task(container.sweeps.run_forever(name, interval)))
        yield
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await container.fanout.close()

    app = FastAPI(title="Shopflow Orders", lifespan=lifespan)
    app.state.container = container
    instrument_app(app)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency, and bind the correlation id."""

        trace_id_ctx.set(request.headers.get("x-correlation-id") or str(uuid4()))
        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(
                service=settings.service_name, route=route, method=method
            ).observe(elapsed)
            http_requests_total.labels(
                service=settings.service_name, route=route, method=method, status_code=str(status_code)
            ).inc()

    @app.exception_handler(OrderError)
    async def order_error_handler(request: Request, exc: OrderError):
        status_code = next((code for kind, code in ERROR_STATUS if isinstance(exc, kind)), 500)
        log = logger.error if status_code >= 500 else logger.warning
        log(
            "request_failed route=%s status_code=%s error_type=%s error=%s",
            request.url.path,
            status_code,
            type(exc).__name__,
            exc,
        )
        return JSONResponse(status_code=status_code, content={"detail": exc.public_message})

    operator = [Depends(require_operator)]

    @app.post("/orders", response_model=OrderResponse, status_code=201)
    async def create_order(req: OrderCreateRequest):
        """Place an order; the response carries the customer access token."""

        order, access_token = await container.orders.create_order(req)
        return order_response(order, access_token)

    @app.get("/orders", response_model=OrderListResponse, dependencies=operator)
    def list_orders(page: int = 1, limit: int = 20):
        orders, total = container.orders.list_orders(page, limit)
        return OrderListResponse(
            orders=[order_response(order) for order in orders], total=total, page=page, limit=limit
        )

    @app.post("/orders/track", response_model=OrderResponse)
    def track_order(req: TrackOrderRequest):
        return order_response(container.orders.track_order(req.order_id, req.email))

    @app.get("/orders/token/{access_token}", response_model=OrderResponse)
    def get_order_by_token(access_token: str):
        order = container.orders.get_order_by_token(access_token)
        if order is None:
            raise NotFound("unknown access token")
        return order_response(order)

    @app.get("/orders/{order_id}", response_model=OrderResponse, dependencies=operator)
    def get_order(order_id: str):
        order = container.orders.get_order(order_id)
        if order is None:
            raise NotFound(f"order {order_id} not found")
        return order_response(order)

    @app.patch("/orders/{order_id}/status", response_model=OrderResponse, dependencies=operator)
    async def update_status(order_id: str, req: StatusUpdateRequest):
        order = await container.orders.transition_status(order_id, req.status, req.location, req.notes)
        return order_response(order)

    @app.patch("/orders/{order_id}/tracking", response_model=OrderResponse, dependencies=operator)
    async def update_tracking(order_id: str, req: TrackingUpdateRequest):
        order = await container.orders.update_tracking(
            order_id, req.courier, req.tracking_number, req.tracking_url
        )
        return order_response(order)

    @app.post("/orders/{order_id}/reconcile", dependencies=operator)
    async def reconcile_order(order_id: str):
        """Operator "check payment now"."""

        result = await container.reconciliation.reconcile_order(order_id)
        return result.__dict__

    @app.get("/payments/gateways")
    def list_gateways():
        return container.payments.list_gateways()

    @app.post("/payments/{gateway}/create")
    async def create_payment(gateway: str, body: dict[str, Any]):
        order_id = body.get("order_id")
        if not isinstance(order_id, str) or not order_id:
            raise ValidationError("order_id is required", public_message="Order ID is required")
        options = {key: value for key, value in body.items() if key != "order_id"}
        attempt = await container.payments.create_payment(order_id, gateway, options)
        return {
            "order_id": order_id,
            "gateway_payment_id": attempt.gateway_payment_id,
            "payment_url": attempt.redirect_url,
            "details": attempt.details,
        }

    @app.post("/payments/{gateway}/proof/{order_id}")
    async def submit_proof(gateway: str, order_id: str, file: UploadFile = File(...)):
        content = await file.read()
        stored = await container.payments.submit_payment_proof(
            order_id, gateway, file.filename or "", content, file.content_type
        )
        return {"success": True, "file": stored}

    @app.post("/payments/{gateway}/callback")
    async def payment_callback(gateway: str, request: Request):
        """Provider webhook. Unverified or malformed payloads get a 400."""

        raw_body = await request.body()
        payload: Any = None
        if "json" in request.headers.get("content-type", "") or request.query_params.get("json"):
            try:
                payload = json.loads(raw_body or b"null")
            except ValueError:
                payload = None
        else:
            payload = dict(parse_qsl(raw_body.decode("utf-8", errors="replace")))
        result = await container.reconciliation.handle_callback(
            gateway, payload, raw_body, dict(request.headers)
        )
        status_code = 400 if result.action == "rejected" else 200
        return JSONResponse(status_code=status_code, content={"ok": status_code == 200, "action": result.action})

    @app.post("/promo-codes/validate", response_model=PromoCodeResponse)
    def validate_promo_code(req: PromoCodeValidateRequest):
        return container.orders.validate_promo_code(req.code)

    @app.get("/promo-codes", response_model=list[PromoCodeResponse], dependencies=operator)
    def list_promo_codes():
        return container.orders.list_active_promo_codes()

    @app.post("/promo-codes", response_model=PromoCodeResponse, status_code=201, dependencies=operator)
    def create_promo_code(req: PromoCodeCreateRequest):
        return container.orders.create_promo_code(req.code, req.discount, req.manager_name)

    @app.delete("/promo-codes/{code}", response_model=PromoCodeResponse, dependencies=operator)
    def deactivate_promo_code(code: str):
        return container.orders.deactivate_promo_code(code)

    @app.post("/sweeps/{name}", dependencies=operator)
    async def run_sweep(name: str):
        """Run one sweep now, outside its schedule."""

        sweep = container.sweeps.sweeps().get(name)
        if sweep is None:
            raise NotFound(f"unknown sweep {name}", public_message="Unknown sweep")
        report = await sweep()
        return report.__dict__

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health probe endpoint."""

        return {"ok": True, "status_vocabulary": STATUS_VOCABULARY_VERSION}

    return app


app = create_app()
