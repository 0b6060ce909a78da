"""Shared order schema (v1).

Mirrors the parts of the commerce backend's Order that the checkout flow reads.
All money fields are integer minor units (cents of EUR).
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class OrderStateV1(str, Enum):
    ADDING_ITEMS = "AddingItems"
    ARRANGING_PAYMENT = "ArrangingPayment"
    PAYMENT_AUTHORIZED = "PaymentAuthorized"
    PAYMENT_SETTLED = "PaymentSettled"
    PARTIALLY_SHIPPED = "PartiallyShipped"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


COMPLETED_ORDER_STATES = frozenset(
    {
        OrderStateV1.PAYMENT_AUTHORIZED,
        OrderStateV1.PAYMENT_SETTLED,
        OrderStateV1.PARTIALLY_SHIPPED,
        OrderStateV1.SHIPPED,
        OrderStateV1.DELIVERED,
    }
)
PAID_ORDER_STATES = frozenset({OrderStateV1.PAYMENT_AUTHORIZED, OrderStateV1.PAYMENT_SETTLED})


class PaymentStateV1(str, Enum):
    CREATED = "Created"
    AUTHORIZED = "Authorized"
    SETTLED = "Settled"
    DECLINED = "Declined"
    ERROR = "Error"
    CANCELLED = "Cancelled"


class ShippingAddressV1(BaseModel):
    full_name: str = ""
    company: str | None = None
    street_line1: str = ""
    street_line2: str | None = None
    city: str = ""
    province: str | None = None
    postal_code: str = ""
    country_code: str = ""
    phone_number: str | None = None


class OrderLineV1(BaseModel):
    id: str
    variant_id: str
    name: str = ""
    sku: str | None = None
    quantity: int = Field(..., ge=1)
    line_total: int


class ShippingMethodV1(BaseModel):
    id: str
    name: str
    description: str = ""
    price: int
    price_with_tax: int
    eligible: bool = True


class PaymentV1(BaseModel):
    id: str
    method: str
    amount: int
    state: PaymentStateV1
    transaction_id: str | None = None
    error_message: str | None = None

    @property
    def successful(self) -> bool:
        return self.state in (PaymentStateV1.AUTHORIZED, PaymentStateV1.SETTLED)


class OrderV1(BaseModel):
    id: str
    code: str
    state: OrderStateV1
    active: bool = True
    currency_code: str = "EUR"

    sub_total: int = 0
    shipping: int = 0
    total_with_tax: int = 0

    lines: list[OrderLineV1] = Field(default_factory=list)
    payments: list[PaymentV1] = Field(default_factory=list)
    shipping_address: ShippingAddressV1 | None = None
    shipping_method: ShippingMethodV1 | None = None

    @property
    def is_completed(self) -> bool:
        return self.state in COMPLETED_ORDER_STATES

    @property
    def is_terminal(self) -> bool:
        return self.is_completed or self.state == OrderStateV1.CANCELLED

    @property
    def is_paid(self) -> bool:
        return self.state in PAID_ORDER_STATES

    def successful_payments(self) -> list[PaymentV1]:
        return [p for p in self.payments if p.successful]


class PaymentIntentV1(BaseModel):
    """A gateway client secret scoped to one order total and one checkout attempt."""

    client_secret: str
    order_code: str
    amount: int
    attempt: int

    @property
    def intent_id(self) -> str:
        # Stripe secrets look like pi_123_secret_abc.
        return self.client_secret.split("_secret_", 1)[0]
