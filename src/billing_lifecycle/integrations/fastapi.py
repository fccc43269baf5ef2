"""FastAPI integration helpers for the billing lifecycle engine.

Usage::

    from billing_lifecycle.integrations.fastapi import (
        create_billing_router,
        create_webhook_router,
    )

    app = FastAPI()
    app.include_router(create_webhook_router(engine.reconciler, secret="whsec_..."))
    app.include_router(create_billing_router(engine, prefix="/billing"))

Requires the ``fastapi`` extra::

    pip install billing-lifecycle[fastapi]
"""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any

try:
    from fastapi import APIRouter, HTTPException, Request
    from fastapi.responses import JSONResponse
    from pydantic import BaseModel as _FaBaseModel
except ImportError as _err:  # pragma: no cover
    raise ImportError(
        "FastAPI is required for billing_lifecycle.integrations.fastapi. "
        "Install it with: pip install billing-lifecycle[fastapi]"
    ) from _err

import structlog
from pydantic import AwareDatetime

from billing_lifecycle.core.engine import BillingEngine
from billing_lifecycle.core.exceptions import (
    BillingLifecycleError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from billing_lifecycle.reconciliation.models import parse_processor_event
from billing_lifecycle.reconciliation.reconciler import EventReconciler

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "X-Billing-Signature"


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class _UsageRequest(_FaBaseModel):
    feature_id: str
    quantity: float
    timestamp: AwareDatetime | None = None


class _PauseRequest(_FaBaseModel):
    days: int = 30


class _CancelRequest(_FaBaseModel):
    at_period_end: bool = False


class _InstrumentRequest(_FaBaseModel):
    instrument_ref: str


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def compute_signature(payload_bytes: bytes, secret: str) -> str:
    """Compute the HMAC-SHA256 hex digest the processor sends with each event."""
    return hmac.new(secret.encode("utf-8"), payload_bytes, hashlib.sha256).hexdigest()


def _http_error(exc: BillingLifecycleError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        status = 404
    elif isinstance(exc, ValidationError):
        status = 422
    elif isinstance(exc, StateConflictError):
        status = 409
    elif exc.is_retryable:
        status = 503
    else:
        status = 500
    return HTTPException(status_code=status, detail={"code": exc.code, "message": str(exc)})


# ---------------------------------------------------------------------------
# Router factories
# ---------------------------------------------------------------------------


def create_webhook_router(
    reconciler: EventReconciler,
    secret: str | None = None,
    prefix: str = "/webhooks",
) -> APIRouter:
    """Return an :class:`APIRouter` that receives processor events.

    Endpoints:
        - ``POST {prefix}/processor`` verifies ``X-Billing-Signature`` (when
          *secret* is set) over the raw body and applies the event.

    Redeliveries answer 200 with the recorded result. Transient failures
    answer 503 so the processor redelivers later.
    """
    router = APIRouter(prefix=prefix, tags=["webhooks"])

    @router.post("/processor")
    async def receive_processor_event(request: Request) -> JSONResponse:
        body = await request.body()
        if secret:
            expected = compute_signature(body, secret)
            received = request.headers.get(SIGNATURE_HEADER, "")
            if not hmac.compare_digest(expected, received):
                logger.warning("webhook_signature_invalid")
                raise HTTPException(status_code=401, detail="Invalid signature")
        try:
            raw = json.loads(body)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Body is not valid JSON") from exc
        if not isinstance(raw, dict):
            raise HTTPException(status_code=400, detail="Body must be a JSON object")

        try:
            event = parse_processor_event(raw)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        try:
            result = await reconciler.apply_external_event(event)
        except BillingLifecycleError as exc:
            raise _http_error(exc) from exc
        return JSONResponse(content=result.model_dump(mode="json"))

    return router


def create_billing_router(
    engine: BillingEngine,
    prefix: str = "/billing",
) -> APIRouter:
    """Return an :class:`APIRouter` exposing subscription, usage and dunning reads
    plus the customer-facing lifecycle requests.

    Endpoints:
        - ``GET  {prefix}/subscriptions/{id}``
        - ``GET  {prefix}/subscriptions/{id}/usage``
        - ``POST {prefix}/subscriptions/{id}/usage``
        - ``GET  {prefix}/subscriptions/{id}/invoices``
        - ``POST {prefix}/subscriptions/{id}/pause``
        - ``POST {prefix}/subscriptions/{id}/resume``
        - ``POST {prefix}/subscriptions/{id}/cancel``
        - ``POST {prefix}/subscriptions/{id}/payment-instrument``
        - ``GET  {prefix}/invoices/{invoice_id}``
        - ``GET  {prefix}/invoices/{invoice_id}/dunning``
    """
    router = APIRouter(prefix=prefix, tags=["billing"])

    async def _run(coro: Any) -> JSONResponse:
        try:
            result = await coro
        except BillingLifecycleError as exc:
            raise _http_error(exc) from exc
        if isinstance(result, list):
            return JSONResponse(content=[item.model_dump(mode="json") for item in result])
        return JSONResponse(content=result.model_dump(mode="json"))

    @router.get("/subscriptions/{subscription_id}")
    async def get_subscription(subscription_id: str) -> JSONResponse:
        return await _run(engine.get_subscription(subscription_id))

    @router.get("/subscriptions/{subscription_id}/usage")
    async def get_usage(subscription_id: str) -> JSONResponse:
        return await _run(engine.usage_summary(subscription_id))

    @router.post("/subscriptions/{subscription_id}/usage", status_code=201)
    async def record_usage(subscription_id: str, body: _UsageRequest) -> JSONResponse:
        response = await _run(
            engine.record_usage(
                subscription_id, body.feature_id, body.quantity, timestamp=body.timestamp
            )
        )
        response.status_code = 201
        return response

    @router.get("/subscriptions/{subscription_id}/invoices")
    async def list_invoices(subscription_id: str) -> JSONResponse:
        return await _run(engine.list_invoices(subscription_id))

    @router.post("/subscriptions/{subscription_id}/pause")
    async def pause(subscription_id: str, body: _PauseRequest) -> JSONResponse:
        return await _run(engine.pause(subscription_id, body.days))

    @router.post("/subscriptions/{subscription_id}/resume")
    async def resume(subscription_id: str) -> JSONResponse:
        return await _run(engine.resume(subscription_id))

    @router.post("/subscriptions/{subscription_id}/cancel")
    async def cancel(subscription_id: str, body: _CancelRequest) -> JSONResponse:
        return await _run(engine.cancel(subscription_id, at_period_end=body.at_period_end))

    @router.post("/subscriptions/{subscription_id}/payment-instrument")
    async def update_instrument(subscription_id: str, body: _InstrumentRequest) -> JSONResponse:
        return await _run(engine.update_payment_instrument(subscription_id, body.instrument_ref))

    @router.get("/invoices/{invoice_id}")
    async def get_invoice(invoice_id: str) -> JSONResponse:
        return await _run(engine.get_invoice(invoice_id))

    @router.get("/invoices/{invoice_id}/dunning")
    async def get_dunning_state(invoice_id: str) -> JSONResponse:
        return await _run(engine.dunning_state(invoice_id))

    return router
