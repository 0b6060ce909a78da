"""Shared event schema (v1).

The checkout service stores an append-only event log per checkout attempt. Support staff
use it to reconcile payments the storefront could not observe.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class EntityTypeV1(str, Enum):
    CHECKOUT_ATTEMPT = "CheckoutAttempt"
    PAYMENT_ATTEMPT = "PaymentAttempt"


class EventTypeV1(str, Enum):
    ATTEMPT_STARTED = "ATTEMPT_STARTED"
    ADDRESS_SUBMITTED = "ADDRESS_SUBMITTED"
    SHIPPING_METHODS_FETCHED = "SHIPPING_METHODS_FETCHED"
    SHIPPING_METHOD_SELECTED = "SHIPPING_METHOD_SELECTED"
    ORDER_TRANSITIONED = "ORDER_TRANSITIONED"
    PAYMENT_INTENT_CREATED = "PAYMENT_INTENT_CREATED"
    PAYMENT_REQUIRES_ACTION = "PAYMENT_REQUIRES_ACTION"
    PAYMENT_DECLINED = "PAYMENT_DECLINED"
    PAYMENT_ATTACHED = "PAYMENT_ATTACHED"
    RECONCILIATION_FAILED = "RECONCILIATION_FAILED"
    CHECKOUT_FINALIZED = "CHECKOUT_FINALIZED"
    CHECKOUT_RESET = "CHECKOUT_RESET"


class EventV1(BaseModel):
    id: str
    session_id: str
    attempt: int

    entity_type: EntityTypeV1
    entity_id: str

    event_type: EventTypeV1
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: str
