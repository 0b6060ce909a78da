from __future__ import annotations

from packages.shared.schemas.checkout import CHECKOUT_STEP_ORDER, CheckoutStepV1
from services.api.app.checkout.errors import OutOfSequenceError


class StepTracker:
    """Which checkout step the customer may be on.

    A step's postcondition is recorded only from a successful server response:
    ADDRESS means an address is attached, SHIPPING a method is applied, PAYMENT the
    order is paid. A step can be entered once every earlier postcondition holds.
    """

    def __init__(self) -> None:
        self._current = CheckoutStepV1.ADDRESS
        self._satisfied: set[CheckoutStepV1] = set()

    @property
    def current(self) -> CheckoutStepV1:
        return self._current

    @property
    def satisfied(self) -> list[CheckoutStepV1]:
        return [s for s in CHECKOUT_STEP_ORDER if s in self._satisfied]

    def is_satisfied(self, step: CheckoutStepV1) -> bool:
        return step in self._satisfied

    def can_enter(self, step: CheckoutStepV1) -> bool:
        return all(prior in self._satisfied for prior in CHECKOUT_STEP_ORDER[: step.index])

    def mark_satisfied(self, step: CheckoutStepV1) -> None:
        if step == CheckoutStepV1.CONFIRMATION:
            raise OutOfSequenceError("Confirmation has no postcondition to record")
        if not self.can_enter(step):
            raise OutOfSequenceError(f"Cannot complete {step.value} before the earlier steps")
        self._satisfied.add(step)

    def clear_from(self, step: CheckoutStepV1) -> None:
        """Forget the postconditions of `step` and every later step.

        The current step moves back if it is no longer reachable.
        """

        for later in CHECKOUT_STEP_ORDER[step.index :]:
            self._satisfied.discard(later)
        if self._current.index > step.index:
            self._current = step

    def advance(self, step: CheckoutStepV1) -> CheckoutStepV1:
        if self._current == CheckoutStepV1.CONFIRMATION:
            raise OutOfSequenceError("Checkout is already confirmed")
        if step.index != self._current.index + 1:
            raise OutOfSequenceError(
                f"Cannot move from {self._current.value} to {step.value}; steps advance one at a time"
            )
        if not self.can_enter(step):
            raise OutOfSequenceError(f"Cannot enter {step.value} before the earlier steps are complete")

        self._current = step
        return self._current

    def reset(self) -> None:
        self._current = CheckoutStepV1.ADDRESS
        self._satisfied.clear()
