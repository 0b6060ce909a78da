"""Shared checkout schema (v1).

The storefront renders these payloads: the step indicator, inline errors and the
full-flow interstitials all come from here.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field

from packages.shared.schemas.order import OrderV1, PaymentV1, ShippingMethodV1


class CheckoutStepV1(str, Enum):
    ADDRESS = "ADDRESS"
    SHIPPING = "SHIPPING"
    PAYMENT = "PAYMENT"
    CONFIRMATION = "CONFIRMATION"

    @property
    def index(self) -> int:
        return CHECKOUT_STEP_ORDER.index(self)


CHECKOUT_STEP_ORDER: tuple[CheckoutStepV1, ...] = (
    CheckoutStepV1.ADDRESS,
    CheckoutStepV1.SHIPPING,
    CheckoutStepV1.PAYMENT,
    CheckoutStepV1.CONFIRMATION,
)


class CheckoutErrorKindV1(str, Enum):
    VALIDATION = "VALIDATION"
    NETWORK = "NETWORK"
    STATE_CONFLICT = "STATE_CONFLICT"
    GATEWAY = "GATEWAY"
    RECONCILIATION = "RECONCILIATION"
    OUT_OF_SEQUENCE = "OUT_OF_SEQUENCE"
    STALE_SELECTION = "STALE_SELECTION"
    CONCURRENT_INTENT = "CONCURRENT_INTENT"
    NO_SHIPPING_AVAILABLE = "NO_SHIPPING_AVAILABLE"
    ORDER_TERMINAL = "ORDER_TERMINAL"


class PresentationV1(str, Enum):
    # Rendered next to the step that failed.
    INLINE = "INLINE"
    # Replaces the whole flow with a restart action.
    INTERSTITIAL = "INTERSTITIAL"
    # Offers a button that re-issues the identical last request.
    RETRY = "RETRY"


class CheckoutFailureV1(BaseModel):
    kind: CheckoutErrorKindV1
    message: str
    retryable: bool = False
    presentation: PresentationV1 = PresentationV1.INLINE
    code: str | None = None
    field_errors: dict[str, str] = Field(default_factory=dict)


class PaymentOutcomeStatusV1(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    REQUIRES_ACTION = "REQUIRES_ACTION"
    DECLINED = "DECLINED"


class PaymentOutcomeV1(BaseModel):
    """Result of a payment confirmation.

    Exactly one of the three branches applies:
    - SUCCEEDED: `order` is the reconciled, paid order.
    - REQUIRES_ACTION: the customer must finish a gateway challenge at `redirect_url`.
    - DECLINED: `failure` explains why; `failure.retryable` says whether a new attempt
      with another instrument makes sense.
    """

    status: PaymentOutcomeStatusV1
    order: OrderV1 | None = None
    failure: CheckoutFailureV1 | None = None
    redirect_url: str | None = None


class CheckoutStatusV1(BaseModel):
    session_id: str
    attempt: int
    current_step: CheckoutStepV1
    satisfied_steps: list[CheckoutStepV1] = Field(default_factory=list)

    # Possibly stale mirror of the server order, for display only.
    order: OrderV1 | None = None
    eligible_shipping_methods: list[ShippingMethodV1] = Field(default_factory=list)

    pending_action: bool = False
    # Declined or errored payments of this session, oldest first.
    failed_payments: list[PaymentV1] = Field(default_factory=list)
    last_failure: CheckoutFailureV1 | None = None
