from __future__ import annotations

import argparse
import os
import sys

from packages.shared.schemas.checkout import PaymentOutcomeStatusV1
from packages.shared.schemas.order import ShippingAddressV1
from services.api.app.checkout.errors import CheckoutError
from services.api.app.checkout.orchestrator import CheckoutOrchestrator
from services.api.app.checkout.session import CheckoutSession
from services.api.app.logging_config import configure_logging
from services.api.app.services.gateway_factory import get_payment_gateway
from services.api.app.services.order_base import OrderSessionContext
from services.api.app.services.order_factory import get_order_service


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Drive one Uniclima checkout end to end against the configured backends"
    )
    parser.add_argument(
        "--order-token",
        default=os.getenv("UNICLIMA_ORDER_TOKEN"),
        help="Existing cart session token (vendure-token); a new cart is used when omitted",
    )
    parser.add_argument("--full-name", default="Ana Pérez")
    parser.add_argument("--street", default="Calle Mayor 1")
    parser.add_argument("--city", default="Madrid")
    parser.add_argument("--postal-code", default="28001")
    parser.add_argument("--country", default="ES")
    parser.add_argument("--phone", default=None)
    parser.add_argument(
        "--shipping-method",
        default=None,
        help="Shipping method id (default: first eligible method)",
    )
    parser.add_argument(
        "--payment-method",
        default="pm_card_visa",
        help="Gateway payment method id (default: pm_card_visa)",
    )

    args = parser.parse_args()
    configure_logging()

    session = CheckoutSession(ctx=OrderSessionContext(token=args.order_token))
    orchestrator = CheckoutOrchestrator(session, get_order_service(), get_payment_gateway())

    address = ShippingAddressV1(
        full_name=args.full_name,
        street_line1=args.street,
        city=args.city,
        postal_code=args.postal_code,
        country_code=args.country,
        phone_number=args.phone,
    )

    try:
        order = orchestrator.start()
        print(f"Order {order.code}: {len(order.lines)} lines, total {order.total_with_tax}")

        methods = orchestrator.submit_shipping_address(address)
        for m in methods:
            print(f"  shipping {m.id}: {m.name} ({m.price_with_tax})")

        method_id = args.shipping_method or methods[0].id
        orchestrator.select_shipping_method(method_id)
        orchestrator.transition_to_arranging_payment()

        intent = orchestrator.create_payment_intent()
        print(f"Payment intent {intent.intent_id} for {intent.amount}")

        outcome = orchestrator.confirm_payment(intent.client_secret, args.payment_method)
        if outcome.status == PaymentOutcomeStatusV1.REQUIRES_ACTION:
            print(f"Customer action required: {outcome.redirect_url}")
            return 2
        if outcome.status == PaymentOutcomeStatusV1.DECLINED:
            message = outcome.failure.message if outcome.failure else ""
            print(f"Payment declined: {message}")
            return 1

        final = orchestrator.finalize()
    except CheckoutError as e:
        print(f"{e.kind.value}: {e.message}", file=sys.stderr)
        return 1

    print(f"Order {final.code} is {final.state.value}")
    print(orchestrator.return_url())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
