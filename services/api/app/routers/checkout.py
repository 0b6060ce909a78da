from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException

from packages.shared.schemas.checkout import CheckoutStatusV1, PaymentOutcomeV1
from packages.shared.schemas.order import OrderV1, ShippingAddressV1
from services.api.app.checkout.audit import CheckoutAuditLog
from services.api.app.checkout.errors import (
    CheckoutError,
    ConcurrentIntentError,
    GatewayError,
    NetworkError,
    NoShippingAvailableError,
    OrderTerminalError,
    OutOfSequenceError,
    PaymentReconciliationError,
    StaleSelectionError,
    StateConflictError,
    ValidationError,
)
from services.api.app.checkout.orchestrator import CheckoutOrchestrator, lookup_order
from services.api.app.checkout.session import CheckoutSession
from services.api.app.models.checkout import (
    CheckoutSessionCreateRequest,
    FinalizeResponse,
    PaymentConfirmRequest,
    PaymentIntentResponse,
    PaymentResumeRequest,
    ShippingMethodSelectRequest,
    ShippingMethodsResponse,
)
from services.api.app.services.gateway_base import PaymentGatewayError
from services.api.app.services.gateway_factory import get_payment_gateway
from services.api.app.services.order_base import OrderSessionContext
from services.api.app.services.order_factory import get_order_service
from services.api.app.services.store import store

logger = logging.getLogger(__name__)

router = APIRouter()


def _raise_checkout_http_error(e: CheckoutError) -> None:
    detail = e.to_failure().model_dump(mode="json")

    if isinstance(e, (ValidationError, NoShippingAvailableError)):
        raise HTTPException(status_code=422, detail=detail) from e

    if isinstance(
        e,
        (
            OutOfSequenceError,
            StaleSelectionError,
            ConcurrentIntentError,
            StateConflictError,
            OrderTerminalError,
        ),
    ):
        raise HTTPException(status_code=409, detail=detail) from e

    if isinstance(e, NetworkError):
        raise HTTPException(status_code=503, detail=detail) from e

    if isinstance(e, GatewayError):
        raise HTTPException(status_code=402, detail=detail) from e

    if isinstance(e, PaymentReconciliationError):
        raise HTTPException(status_code=502, detail=detail) from e

    raise HTTPException(status_code=500, detail=detail) from e


def _get_orchestrator(session_id: str) -> CheckoutOrchestrator:
    orchestrator = store.get(session_id)
    if orchestrator is None:
        raise HTTPException(status_code=404, detail="Checkout session not found")
    return orchestrator


@router.post("/v1/checkout/sessions", response_model=CheckoutStatusV1)
def create_checkout_session(payload: CheckoutSessionCreateRequest) -> CheckoutStatusV1:
    try:
        order_service = get_order_service()
        gateway = get_payment_gateway()
    except (ValueError, PaymentGatewayError) as e:
        raise HTTPException(status_code=500, detail=str(e)) from e

    session = CheckoutSession(
        ctx=OrderSessionContext(token=payload.order_token, auth_token=payload.auth_token)
    )
    orchestrator = CheckoutOrchestrator(session, order_service, gateway, audit=CheckoutAuditLog())

    try:
        orchestrator.start()
    except CheckoutError as e:
        _raise_checkout_http_error(e)

    store.save(orchestrator)
    logger.info("Checkout session %s opened on %s/%s", session.session_id, order_service.vendor, gateway.vendor)
    return orchestrator.status()


@router.get("/v1/checkout/sessions/{session_id}", response_model=CheckoutStatusV1)
def get_checkout_session(session_id: str) -> CheckoutStatusV1:
    return _get_orchestrator(session_id).status()


@router.delete("/v1/checkout/sessions/{session_id}", status_code=204)
def abandon_checkout_session(session_id: str) -> None:
    _get_orchestrator(session_id)
    store.discard(session_id)


@router.post("/v1/checkout/sessions/{session_id}/address", response_model=ShippingMethodsResponse)
def submit_address(session_id: str, payload: ShippingAddressV1) -> ShippingMethodsResponse:
    orchestrator = _get_orchestrator(session_id)
    try:
        methods = orchestrator.submit_shipping_address(payload)
    except CheckoutError as e:
        _raise_checkout_http_error(e)

    return ShippingMethodsResponse(
        session_id=session_id,
        address_revision=orchestrator.session.address_revision,
        methods=methods,
    )


@router.get("/v1/checkout/sessions/{session_id}/shipping-methods", response_model=ShippingMethodsResponse)
def get_shipping_methods(session_id: str) -> ShippingMethodsResponse:
    orchestrator = _get_orchestrator(session_id)
    try:
        methods = orchestrator.fetch_eligible_shipping_methods()
    except CheckoutError as e:
        _raise_checkout_http_error(e)

    return ShippingMethodsResponse(
        session_id=session_id,
        address_revision=orchestrator.session.address_revision,
        methods=methods,
    )


@router.post("/v1/checkout/sessions/{session_id}/shipping-method", response_model=CheckoutStatusV1)
def select_shipping_method(session_id: str, payload: ShippingMethodSelectRequest) -> CheckoutStatusV1:
    orchestrator = _get_orchestrator(session_id)
    try:
        orchestrator.select_shipping_method(payload.method_id)
    except CheckoutError as e:
        _raise_checkout_http_error(e)

    return orchestrator.status()


@router.post("/v1/checkout/sessions/{session_id}/arrange-payment", response_model=CheckoutStatusV1)
def arrange_payment(session_id: str) -> CheckoutStatusV1:
    orchestrator = _get_orchestrator(session_id)
    try:
        orchestrator.transition_to_arranging_payment()
    except CheckoutError as e:
        _raise_checkout_http_error(e)

    return orchestrator.status()


@router.post("/v1/checkout/sessions/{session_id}/payment-intent", response_model=PaymentIntentResponse)
def create_payment_intent(session_id: str) -> PaymentIntentResponse:
    orchestrator = _get_orchestrator(session_id)
    try:
        intent = orchestrator.create_payment_intent()
    except CheckoutError as e:
        _raise_checkout_http_error(e)

    return PaymentIntentResponse.from_intent(session_id, intent)


@router.post("/v1/checkout/sessions/{session_id}/payment/confirm", response_model=PaymentOutcomeV1)
def confirm_payment(session_id: str, payload: PaymentConfirmRequest) -> PaymentOutcomeV1:
    orchestrator = _get_orchestrator(session_id)
    try:
        return orchestrator.confirm_payment(payload.client_secret, payload.payment_method)
    except CheckoutError as e:
        _raise_checkout_http_error(e)


@router.post("/v1/checkout/sessions/{session_id}/payment/resume", response_model=PaymentOutcomeV1)
def resume_payment(session_id: str, payload: PaymentResumeRequest) -> PaymentOutcomeV1:
    orchestrator = _get_orchestrator(session_id)
    try:
        return orchestrator.resume_payment(payload.client_secret)
    except CheckoutError as e:
        _raise_checkout_http_error(e)


@router.post("/v1/checkout/sessions/{session_id}/finalize", response_model=FinalizeResponse)
def finalize_checkout(session_id: str) -> FinalizeResponse:
    orchestrator = _get_orchestrator(session_id)
    try:
        order = orchestrator.finalize()
    except CheckoutError as e:
        _raise_checkout_http_error(e)

    return FinalizeResponse(
        session_id=session_id,
        order_code=order.code,
        order=order,
        status=orchestrator.status(),
    )


@router.post("/v1/checkout/sessions/{session_id}/reset", response_model=CheckoutStatusV1)
def reset_checkout(session_id: str) -> CheckoutStatusV1:
    orchestrator = _get_orchestrator(session_id)
    try:
        return orchestrator.reset()
    except CheckoutError as e:
        _raise_checkout_http_error(e)


@router.get("/v1/orders/{code}", response_model=OrderV1)
def get_order_confirmation(code: str, session_id: str | None = None) -> OrderV1:
    """Read-only confirmation lookup, as shown on /pedido/confirmacion."""

    if session_id is not None:
        orchestrator = _get_orchestrator(session_id)
        try:
            order = orchestrator.lookup_order(code)
        except CheckoutError as e:
            _raise_checkout_http_error(e)
    else:
        try:
            order_service = get_order_service()
        except ValueError as e:
            raise HTTPException(status_code=500, detail=str(e)) from e

        try:
            order = lookup_order(order_service, OrderSessionContext(), code)
        except CheckoutError as e:
            _raise_checkout_http_error(e)

    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    return order
