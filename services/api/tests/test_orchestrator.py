from __future__ import annotations

import pytest

from packages.shared.schemas.checkout import (
    CheckoutErrorKindV1,
    CheckoutStepV1,
    PaymentOutcomeStatusV1,
)
from packages.shared.schemas.order import (
    OrderStateV1,
    PaymentStateV1,
    ShippingAddressV1,
)
from services.api.app.checkout.errors import (
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
from services.api.app.checkout.orchestrator import CheckoutOrchestrator
from services.api.app.checkout.session import CheckoutSession
from services.api.app.services.gateway_base import GatewayResult, PaymentGatewayUnavailableError
from services.api.app.services.gateway_mock import MockPaymentGateway
from services.api.app.services.order_base import OrderServiceProtocolError, OrderSessionContext
from services.api.app.services.order_mock import InMemoryOrderService

ANA = ShippingAddressV1(
    full_name="Ana Pérez",
    street_line1="Calle Mayor 1",
    city="Madrid",
    postal_code="28001",
    country_code="ES",
)
LISBOA = ShippingAddressV1(
    full_name="Ana Pérez",
    street_line1="Rua Augusta 10",
    city="Lisboa",
    postal_code="1100-048",
    country_code="PT",
)
NEW_YORK = ShippingAddressV1(
    full_name="Ana Pérez",
    street_line1="5th Avenue 1",
    city="New York",
    postal_code="10001",
    country_code="US",
)


@pytest.fixture(autouse=True)
def _fast_retries(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("UNICLIMA_RETRY_WAIT_SECONDS", "0")
    monkeypatch.setenv("UNICLIMA_STOREFRONT_URL", "https://tienda.test")


@pytest.fixture()
def orders() -> InMemoryOrderService:
    return InMemoryOrderService()


@pytest.fixture()
def gateway() -> MockPaymentGateway:
    return MockPaymentGateway()


@pytest.fixture()
def checkout(orders: InMemoryOrderService, gateway: MockPaymentGateway) -> CheckoutOrchestrator:
    ctx = OrderSessionContext()
    orders.start_cart(ctx)
    orchestrator = CheckoutOrchestrator(CheckoutSession(ctx=ctx), orders, gateway)
    orchestrator.start()
    return orchestrator


def _ready_to_pay(checkout: CheckoutOrchestrator) -> None:
    checkout.submit_shipping_address(ANA)
    checkout.select_shipping_method("sm1")
    checkout.transition_to_arranging_payment()


def test_happy_path(checkout: CheckoutOrchestrator) -> None:
    methods = checkout.submit_shipping_address(ANA)
    assert [(m.id, m.price) for m in methods] == [("sm1", 500)]
    assert checkout.session.tracker.current == CheckoutStepV1.SHIPPING

    order = checkout.select_shipping_method("sm1")
    assert order.shipping_method is not None and order.shipping_method.id == "sm1"
    assert checkout.session.tracker.current == CheckoutStepV1.PAYMENT

    order = checkout.transition_to_arranging_payment()
    assert order.state == OrderStateV1.ARRANGING_PAYMENT

    intent = checkout.create_payment_intent()
    assert intent.client_secret == "cs_test_1"
    assert intent.amount == order.total_with_tax

    outcome = checkout.confirm_payment("cs_test_1", "pm_card_visa")
    assert outcome.status == PaymentOutcomeStatusV1.SUCCEEDED
    assert outcome.order is not None
    assert outcome.order.state == OrderStateV1.PAYMENT_SETTLED

    final = checkout.finalize()
    assert final.code == order.code
    assert checkout.session.tracker.current == CheckoutStepV1.CONFIRMATION
    assert checkout.cart.peek() is None


def test_confirmation_lookup_after_finalize(checkout: CheckoutOrchestrator) -> None:
    _ready_to_pay(checkout)
    intent = checkout.create_payment_intent()
    checkout.confirm_payment(intent.client_secret, "pm_card_visa")
    code = checkout.finalize().code

    order = checkout.lookup_order(code)

    assert order is not None
    assert order.state in (OrderStateV1.PAYMENT_SETTLED, OrderStateV1.PAYMENT_AUTHORIZED)
    assert len(order.payments) == 1
    assert order.payments[0].transaction_id


def test_authorized_payments_also_complete(
    checkout: CheckoutOrchestrator, orders: InMemoryOrderService
) -> None:
    orders.authorize_only = True
    _ready_to_pay(checkout)
    intent = checkout.create_payment_intent()

    outcome = checkout.confirm_payment(intent.client_secret, "pm_card_visa")

    assert outcome.order is not None
    assert outcome.order.state == OrderStateV1.PAYMENT_AUTHORIZED
    assert checkout.finalize().state == OrderStateV1.PAYMENT_AUTHORIZED


def test_decline_then_retry_uses_a_new_intent(
    checkout: CheckoutOrchestrator, gateway: MockPaymentGateway
) -> None:
    _ready_to_pay(checkout)
    first = checkout.create_payment_intent()

    declined = checkout.confirm_payment(first.client_secret, "pm_card_chargeDeclined")

    assert declined.status == PaymentOutcomeStatusV1.DECLINED
    assert declined.failure is not None
    assert declined.failure.code == "card_declined"
    assert declined.failure.retryable is True
    assert declined.failure.message == "Tu tarjeta ha sido rechazada. Por favor, usa otra tarjeta."
    assert checkout.session.tracker.current == CheckoutStepV1.PAYMENT
    assert [p.state for p in checkout.session.failed_payments] == [PaymentStateV1.DECLINED]
    status = checkout.status()
    assert status.last_failure == declined.failure
    assert [p.state for p in status.failed_payments] == [PaymentStateV1.DECLINED]

    with pytest.raises(StaleSelectionError):
        checkout.confirm_payment(first.client_secret, "pm_card_visa")

    second = checkout.create_payment_intent()
    assert second.client_secret == "cs_test_2"
    assert second.client_secret != first.client_secret

    outcome = checkout.confirm_payment(second.client_secret, "pm_card_visa")
    assert outcome.status == PaymentOutcomeStatusV1.SUCCEEDED
    assert checkout.finalize().state == OrderStateV1.PAYMENT_SETTLED
    assert [secret for secret, _ in gateway.confirmations] == ["cs_test_1", "cs_test_2"]


def test_configuration_errors_are_not_retryable(checkout: CheckoutOrchestrator) -> None:
    _ready_to_pay(checkout)
    intent = checkout.create_payment_intent()

    with pytest.raises(GatewayError) as exc_info:
        checkout.confirm_payment(intent.client_secret, "pm_does_not_exist")

    assert exc_info.value.retryable is False
    assert exc_info.value.code == "payment_method_not_available"
    assert [p.state for p in checkout.session.failed_payments] == [PaymentStateV1.ERROR]
    assert checkout.session.tracker.current == CheckoutStepV1.PAYMENT


def test_empty_eligible_set_blocks_shipping(checkout: CheckoutOrchestrator) -> None:
    with pytest.raises(NoShippingAvailableError) as exc_info:
        checkout.submit_shipping_address(NEW_YORK)

    failure = exc_info.value.to_failure()
    assert failure.retryable is False
    assert failure.kind == CheckoutErrorKindV1.NO_SHIPPING_AVAILABLE
    assert checkout.session.tracker.current == CheckoutStepV1.ADDRESS
    assert checkout.status().last_failure == failure

    with pytest.raises(StaleSelectionError):
        checkout.select_shipping_method("sm1")


def test_eligible_set_follows_the_latest_address(checkout: CheckoutOrchestrator) -> None:
    assert [m.id for m in checkout.submit_shipping_address(ANA)] == ["sm1"]
    assert [m.id for m in checkout.submit_shipping_address(LISBOA)] == ["sm2"]
    assert [m.id for m in checkout.fetch_eligible_shipping_methods()] == ["sm2"]


def test_select_before_address_never_reaches_the_network(
    checkout: CheckoutOrchestrator, orders: InMemoryOrderService
) -> None:
    calls_before = list(orders.calls)

    with pytest.raises(OutOfSequenceError):
        checkout.select_shipping_method("sm1")

    assert orders.calls == calls_before


def test_stale_selection_after_address_change(checkout: CheckoutOrchestrator) -> None:
    checkout.submit_shipping_address(ANA)
    checkout.submit_shipping_address(LISBOA)

    with pytest.raises(StaleSelectionError):
        checkout.select_shipping_method("sm1")

    assert checkout.select_shipping_method("sm2").shipping_method.id == "sm2"


def test_changing_address_clears_shipping_and_payment(checkout: CheckoutOrchestrator) -> None:
    _ready_to_pay(checkout)
    checkout.create_payment_intent()

    checkout.submit_shipping_address(LISBOA)

    session = checkout.session
    assert session.tracker.current == CheckoutStepV1.SHIPPING
    assert session.tracker.satisfied == [CheckoutStepV1.ADDRESS]
    assert session.intent is None
    assert session.arranging_payment is False


def test_intent_is_requested_again_after_total_changes(checkout: CheckoutOrchestrator) -> None:
    _ready_to_pay(checkout)
    first = checkout.create_payment_intent()

    checkout.submit_shipping_address(LISBOA)
    checkout.select_shipping_method("sm2")
    checkout.transition_to_arranging_payment()
    second = checkout.create_payment_intent()

    assert second.client_secret != first.client_secret
    assert second.amount != first.amount


def test_server_validation_error_is_shown_verbatim(checkout: CheckoutOrchestrator) -> None:
    address = ANA.model_copy(update={"country_code": "XX"})

    with pytest.raises(ValidationError) as exc_info:
        checkout.submit_shipping_address(address)

    assert exc_info.value.message == 'The countryCode "XX" was not recognized'
    assert not checkout.session.tracker.is_satisfied(CheckoutStepV1.ADDRESS)


def test_local_validation_makes_no_network_call(
    checkout: CheckoutOrchestrator, orders: InMemoryOrderService
) -> None:
    calls_before = list(orders.calls)

    with pytest.raises(ValidationError) as exc_info:
        checkout.submit_shipping_address(ANA.model_copy(update={"postal_code": "280"}))

    assert "postal_code" in exc_info.value.field_errors
    assert orders.calls == calls_before


def test_network_errors_on_idempotent_steps_are_retried(
    checkout: CheckoutOrchestrator, orders: InMemoryOrderService
) -> None:
    orders.fail_next("set_shipping_address", times=2)

    assert [m.id for m in checkout.submit_shipping_address(ANA)] == ["sm1"]
    assert orders.calls.count("set_shipping_address") == 3


def test_network_error_surfaces_after_retries(
    checkout: CheckoutOrchestrator, orders: InMemoryOrderService
) -> None:
    orders.fail_next("set_shipping_address", times=3)

    with pytest.raises(NetworkError) as exc_info:
        checkout.submit_shipping_address(ANA)

    assert exc_info.value.retryable is True
    assert not checkout.session.tracker.is_satisfied(CheckoutStepV1.ADDRESS)
    assert [m.id for m in checkout.submit_shipping_address(ANA)] == ["sm1"]


def test_protocol_errors_are_not_retried(
    checkout: CheckoutOrchestrator, orders: InMemoryOrderService
) -> None:
    orders.fail_next("set_shipping_address", OrderServiceProtocolError("bad json"))

    with pytest.raises(NetworkError) as exc_info:
        checkout.submit_shipping_address(ANA)

    assert exc_info.value.retryable is False
    assert orders.calls.count("set_shipping_address") == 1


def test_intent_creation_is_idempotent(
    checkout: CheckoutOrchestrator, orders: InMemoryOrderService
) -> None:
    _ready_to_pay(checkout)

    first = checkout.create_payment_intent()
    second = checkout.create_payment_intent()

    assert first.client_secret == second.client_secret
    assert orders.intents_created == 1


def test_second_intent_request_while_one_is_pending_is_rejected(checkout: CheckoutOrchestrator) -> None:
    _ready_to_pay(checkout)
    checkout.session.intent_lock.acquire()
    try:
        with pytest.raises(ConcurrentIntentError):
            checkout.create_payment_intent()
    finally:
        checkout.session.intent_lock.release()


def test_concurrent_mutations_are_rejected(checkout: CheckoutOrchestrator) -> None:
    checkout.session.lock.acquire()
    try:
        with pytest.raises(OutOfSequenceError):
            checkout.submit_shipping_address(ANA)
    finally:
        checkout.session.lock.release()


def test_intent_requires_arranging_payment(checkout: CheckoutOrchestrator) -> None:
    checkout.submit_shipping_address(ANA)
    checkout.select_shipping_method("sm1")

    with pytest.raises(OutOfSequenceError):
        checkout.create_payment_intent()


def test_transition_is_only_done_once(checkout: CheckoutOrchestrator) -> None:
    _ready_to_pay(checkout)

    with pytest.raises(OutOfSequenceError):
        checkout.transition_to_arranging_payment()


def test_transition_with_lost_response_is_accepted_once_applied(
    checkout: CheckoutOrchestrator, orders: InMemoryOrderService
) -> None:
    checkout.submit_shipping_address(ANA)
    checkout.select_shipping_method("sm1")
    # The server applies the transition but the answer never arrives.
    orders.force_state(checkout.session.ctx, OrderStateV1.ARRANGING_PAYMENT)
    orders.fail_next("transition_order_to_state")

    with pytest.raises(NetworkError):
        checkout.transition_to_arranging_payment()
    assert checkout.session.transition_outcome_unknown is True

    order = checkout.transition_to_arranging_payment()

    assert order.state == OrderStateV1.ARRANGING_PAYMENT
    assert checkout.session.attempt == 1
    assert checkout.session.transition_outcome_unknown is False
    assert checkout.create_payment_intent().client_secret == "cs_test_1"


def test_transition_done_by_another_tab_resets_the_attempt(
    checkout: CheckoutOrchestrator, orders: InMemoryOrderService
) -> None:
    checkout.submit_shipping_address(ANA)
    checkout.select_shipping_method("sm1")
    ctx = checkout.session.ctx
    orders.set_shipping_address(ctx, LISBOA)
    orders.set_shipping_method(ctx, "sm2")
    orders.transition_order_to_state(ctx, OrderStateV1.ARRANGING_PAYMENT)

    with pytest.raises(StateConflictError) as exc_info:
        checkout.transition_to_arranging_payment()

    assert exc_info.value.code == "CONCURRENT_TRANSITION"
    assert checkout.session.attempt == 2
    assert checkout.session.tracker.current == CheckoutStepV1.ADDRESS
    assert checkout.session.order is None
    assert "create_payment_intent" not in orders.calls


def test_lost_transition_response_does_not_cover_another_tabs_changes(
    checkout: CheckoutOrchestrator, orders: InMemoryOrderService
) -> None:
    checkout.submit_shipping_address(ANA)
    checkout.select_shipping_method("sm1")
    orders.fail_next("transition_order_to_state")
    with pytest.raises(NetworkError):
        checkout.transition_to_arranging_payment()

    ctx = checkout.session.ctx
    orders.set_shipping_address(ctx, LISBOA)
    orders.set_shipping_method(ctx, "sm2")
    orders.transition_order_to_state(ctx, OrderStateV1.ARRANGING_PAYMENT)

    with pytest.raises(StateConflictError) as exc_info:
        checkout.transition_to_arranging_payment()

    assert exc_info.value.code == "CONCURRENT_TRANSITION"
    assert checkout.session.attempt == 2
    assert checkout.session.transition_outcome_unknown is False


def test_transition_conflict_resets_the_attempt(
    checkout: CheckoutOrchestrator, orders: InMemoryOrderService
) -> None:
    checkout.submit_shipping_address(ANA)
    checkout.select_shipping_method("sm1")
    orders.force_state(checkout.session.ctx, OrderStateV1.PAYMENT_SETTLED)

    with pytest.raises(StateConflictError):
        checkout.transition_to_arranging_payment()

    session = checkout.session
    assert session.attempt == 2
    assert session.tracker.current == CheckoutStepV1.ADDRESS
    assert session.tracker.satisfied == []
    assert session.order is None


def test_modification_conflict_resets_the_attempt(
    checkout: CheckoutOrchestrator, orders: InMemoryOrderService
) -> None:
    checkout.submit_shipping_address(ANA)
    orders.force_state(checkout.session.ctx, OrderStateV1.PAYMENT_AUTHORIZED)

    with pytest.raises(StateConflictError):
        checkout.select_shipping_method("sm1")

    assert checkout.session.attempt == 2
    assert checkout.session.tracker.current == CheckoutStepV1.ADDRESS


def test_requires_action_suspends_until_resumed(
    checkout: CheckoutOrchestrator, gateway: MockPaymentGateway, orders: InMemoryOrderService
) -> None:
    _ready_to_pay(checkout)
    intent = checkout.create_payment_intent()

    outcome = checkout.confirm_payment(intent.client_secret, "pm_card_threeDSecure2Required")

    assert outcome.status == PaymentOutcomeStatusV1.REQUIRES_ACTION
    assert outcome.redirect_url is not None
    assert "https://tienda.test/pedido/confirmacion" in outcome.redirect_url
    assert checkout.status().pending_action is True
    assert "add_payment_to_order" not in orders.calls

    with pytest.raises(OutOfSequenceError):
        checkout.confirm_payment(intent.client_secret, "pm_card_visa")

    still_waiting = checkout.resume_payment(intent.client_secret)
    assert still_waiting.status == PaymentOutcomeStatusV1.REQUIRES_ACTION

    gateway.complete_action(intent.client_secret)
    resumed = checkout.resume_payment(intent.client_secret)

    assert resumed.status == PaymentOutcomeStatusV1.SUCCEEDED
    assert checkout.status().pending_action is False
    assert checkout.finalize().state == OrderStateV1.PAYMENT_SETTLED


def test_failed_authentication_is_a_retryable_decline(
    checkout: CheckoutOrchestrator, gateway: MockPaymentGateway
) -> None:
    _ready_to_pay(checkout)
    intent = checkout.create_payment_intent()
    checkout.confirm_payment(intent.client_secret, "pm_card_authenticationRequired")
    gateway.complete_action(intent.client_secret, approve=False)

    outcome = checkout.resume_payment(intent.client_secret)

    assert outcome.status == PaymentOutcomeStatusV1.DECLINED
    assert outcome.failure is not None and outcome.failure.retryable is True
    assert checkout.session.intent is None


def test_resume_without_pending_action_is_out_of_sequence(checkout: CheckoutOrchestrator) -> None:
    _ready_to_pay(checkout)
    intent = checkout.create_payment_intent()

    with pytest.raises(OutOfSequenceError):
        checkout.resume_payment(intent.client_secret)


def test_attach_failure_is_a_reconciliation_error(
    checkout: CheckoutOrchestrator, orders: InMemoryOrderService
) -> None:
    _ready_to_pay(checkout)
    intent = checkout.create_payment_intent()
    code = checkout.session.order.code
    orders.fail_next("add_payment_to_order")

    with pytest.raises(PaymentReconciliationError) as exc_info:
        checkout.confirm_payment(intent.client_secret, "pm_card_visa")

    assert code in exc_info.value.message
    assert orders.calls.count("add_payment_to_order") == 1

    with pytest.raises(PaymentReconciliationError):
        checkout.create_payment_intent()
    with pytest.raises(OutOfSequenceError):
        checkout.finalize()


def test_attach_error_variant_is_a_reconciliation_error(
    checkout: CheckoutOrchestrator, orders: InMemoryOrderService
) -> None:
    _ready_to_pay(checkout)
    intent = checkout.create_payment_intent()
    # Total moves after the intent was created; the server rejects the payment.
    orders.add_line(checkout.session.ctx, "var-extra", 1, 100)

    with pytest.raises(PaymentReconciliationError) as exc_info:
        checkout.confirm_payment(intent.client_secret, "pm_card_visa")

    assert exc_info.value.code == "PAYMENT_FAILED_ERROR"


class _LostResponseGateway(MockPaymentGateway):
    """Charges the card but loses the response once."""

    def __init__(self) -> None:
        super().__init__()
        self.drop_next = True

    def confirm_payment(
        self, client_secret: str, payment_method: str, *, return_url: str | None = None
    ) -> GatewayResult:
        result = super().confirm_payment(client_secret, payment_method, return_url=return_url)
        if self.drop_next:
            self.drop_next = False
            raise PaymentGatewayUnavailableError("read timeout")
        return result


def test_lost_confirm_response_is_recovered_without_a_second_charge(orders: InMemoryOrderService) -> None:
    gateway = _LostResponseGateway()
    ctx = OrderSessionContext()
    orders.start_cart(ctx)
    checkout = CheckoutOrchestrator(CheckoutSession(ctx=ctx), orders, gateway)
    checkout.start()
    _ready_to_pay(checkout)
    intent = checkout.create_payment_intent()

    with pytest.raises(NetworkError):
        checkout.confirm_payment(intent.client_secret, "pm_card_visa")
    assert checkout.session.confirm_outcome_unknown is True

    outcome = checkout.confirm_payment(intent.client_secret, "pm_card_visa")

    assert outcome.status == PaymentOutcomeStatusV1.SUCCEEDED
    assert len(gateway.confirmations) == 1


def test_terminal_order_refuses_further_steps(checkout: CheckoutOrchestrator) -> None:
    _ready_to_pay(checkout)
    intent = checkout.create_payment_intent()
    checkout.confirm_payment(intent.client_secret, "pm_card_visa")

    with pytest.raises(OrderTerminalError):
        checkout.confirm_payment(intent.client_secret, "pm_card_visa")
    with pytest.raises(OrderTerminalError):
        checkout.submit_shipping_address(ANA)

    assert checkout.finalize().state == OrderStateV1.PAYMENT_SETTLED
    with pytest.raises(OutOfSequenceError):
        checkout.finalize()


def test_finalize_requires_confirmed_payment(checkout: CheckoutOrchestrator) -> None:
    _ready_to_pay(checkout)
    checkout.create_payment_intent()

    with pytest.raises(OutOfSequenceError):
        checkout.finalize()


def test_reset_starts_a_new_attempt_with_a_fresh_secret(
    checkout: CheckoutOrchestrator, orders: InMemoryOrderService
) -> None:
    _ready_to_pay(checkout)
    first = checkout.create_payment_intent()
    calls_before = len(orders.calls)

    status = checkout.reset()

    assert len(orders.calls) == calls_before
    assert status.attempt == 2
    assert status.current_step == CheckoutStepV1.ADDRESS

    _ready_to_pay(checkout)
    second = checkout.create_payment_intent()
    assert second.client_secret != first.client_secret
    assert second.attempt == 2


def test_status_snapshot(checkout: CheckoutOrchestrator) -> None:
    checkout.submit_shipping_address(ANA)

    status = checkout.status()

    assert status.session_id == checkout.session.session_id
    assert status.current_step == CheckoutStepV1.SHIPPING
    assert status.satisfied_steps == [CheckoutStepV1.ADDRESS]
    assert [m.id for m in status.eligible_shipping_methods] == ["sm1"]
    assert status.order is not None
    assert status.last_failure is None


def test_start_without_active_order_is_a_conflict(
    orders: InMemoryOrderService, gateway: MockPaymentGateway
) -> None:
    checkout = CheckoutOrchestrator(CheckoutSession(ctx=OrderSessionContext(token="nope")), orders, gateway)

    with pytest.raises(StateConflictError) as exc_info:
        checkout.start()

    assert exc_info.value.code == "NO_ACTIVE_ORDER_ERROR"


def test_status_refetches_the_cart_after_a_mutation(
    checkout: CheckoutOrchestrator, orders: InMemoryOrderService
) -> None:
    checkout.submit_shipping_address(ANA)
    checkout.select_shipping_method("sm1")
    orders.add_line(checkout.session.ctx, "var-filtro-extra", 1, 100)

    status = checkout.status()

    assert status.order is not None
    assert status.order.total_with_tax == 14605
    assert checkout.cart.is_valid


def test_status_shows_last_snapshot_when_refetch_fails(
    checkout: CheckoutOrchestrator, orders: InMemoryOrderService
) -> None:
    checkout.submit_shipping_address(ANA)
    checkout.select_shipping_method("sm1")
    orders.fail_next("active_order", times=3)

    status = checkout.status()

    assert status.order is not None
    assert status.order.total_with_tax == 14505
    assert not checkout.cart.is_valid


class _OvertakenOrderService:
    """In-memory order service where a newer response is applied while a call is in flight."""

    def __init__(self, inner: InMemoryOrderService, session: CheckoutSession) -> None:
        self._inner = inner
        self._session = session
        self.overtake_next = False

    def __getattr__(self, name: str):
        return getattr(self._inner, name)

    def set_shipping_address(self, ctx: OrderSessionContext, address: ShippingAddressV1):
        result = self._inner.set_shipping_address(ctx, address)
        if self.overtake_next:
            self.overtake_next = False
            self._session.applied_seq += 10
        return result


def test_out_of_order_response_is_discarded_and_cart_resynced(
    orders: InMemoryOrderService, gateway: MockPaymentGateway
) -> None:
    ctx = OrderSessionContext()
    orders.start_cart(ctx)
    session = CheckoutSession(ctx=ctx)
    service = _OvertakenOrderService(orders, session)
    checkout = CheckoutOrchestrator(session, service, gateway)
    checkout.start()
    before = session.order
    fetches = orders.calls.count("active_order")
    service.overtake_next = True

    with pytest.raises(StaleSelectionError) as exc_info:
        checkout.submit_shipping_address(ANA)

    assert exc_info.value.code == "STALE_RESPONSE"
    assert session.order is before
    assert session.address_revision == 0
    assert not session.tracker.is_satisfied(CheckoutStepV1.ADDRESS)
    assert orders.calls.count("active_order") == fetches + 1
    assert checkout.cart.is_valid
    cart = checkout.cart.peek()
    assert cart is not None and cart.shipping_address is not None
    assert cart.shipping_address.country_code == "ES"
