from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass, field
from uuid import uuid4

from packages.shared.schemas.checkout import CheckoutFailureV1
from packages.shared.schemas.order import (
    OrderV1,
    PaymentIntentV1,
    PaymentV1,
    ShippingAddressV1,
    ShippingMethodV1,
)
from services.api.app.checkout.steps import StepTracker
from services.api.app.services.order_base import OrderSessionContext


@dataclass
class CheckoutSession:
    """Everything one browser tab's checkout knows.

    The order service context is per session and is replaced, never shared, when the
    customer starts over with a different cart.
    """

    ctx: OrderSessionContext
    session_id: str = field(default_factory=lambda: uuid4().hex)
    attempt: int = 1
    tracker: StepTracker = field(default_factory=StepTracker)

    # Last order returned by the server; the only input to step decisions.
    order: OrderV1 | None = None

    address_revision: int = 0
    eligible_methods: list[ShippingMethodV1] = field(default_factory=list)
    eligible_revision: int | None = None
    # What this session last applied; a transition it cannot vouch for is checked against these.
    applied_address: ShippingAddressV1 | None = None
    applied_method_id: str | None = None

    arranging_payment: bool = False
    transition_outcome_unknown: bool = False
    intent: PaymentIntentV1 | None = None
    # Bumped after every failed payment so the next intent gets a fresh idempotency key.
    payment_round: int = 0
    pending_action_secret: str | None = None
    confirm_outcome_unknown: bool = False
    reconciliation_failed_for: str | None = None

    failed_payments: list[PaymentV1] = field(default_factory=list)
    last_failure: CheckoutFailureV1 | None = None

    _seq: itertools.count = field(default_factory=lambda: itertools.count(1), init=False, repr=False)
    applied_seq: int = 0

    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    intent_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def next_seq(self) -> int:
        return next(self._seq)

    def start_new_attempt(self) -> None:
        self.attempt += 1
        self.tracker.reset()
        self.address_revision = 0
        self.eligible_methods = []
        self.eligible_revision = None
        self.applied_address = None
        self.applied_method_id = None
        self.arranging_payment = False
        self.transition_outcome_unknown = False
        self.intent = None
        self.payment_round = 0
        self.pending_action_secret = None
        self.confirm_outcome_unknown = False
