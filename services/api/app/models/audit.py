from __future__ import annotations

from pydantic import BaseModel, Field


class PaymentAttemptOut(BaseModel):
    id: str
    payment_reference: str
    amount: int
    state: str
    gateway_code: str | None = None
    error_message: str | None = None
    created_at: str


class CheckoutAttemptOut(BaseModel):
    attempt_id: str
    session_id: str
    attempt: int
    order_code: str | None = None

    order_service: str
    payment_gateway: str

    status: str
    started_at: str
    finished_at: str | None = None
    error_message: str | None = None

    payments: list[PaymentAttemptOut] = Field(default_factory=list)
