from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from packages.shared.schemas.events import EntityTypeV1, EventTypeV1
from services.api.app.checkout.session import CheckoutSession
from services.api.app.db.database import db_session
from services.api.app.db.models import CheckoutAttempt, EventLog, PaymentAttempt

logger = logging.getLogger(__name__)


def attempt_id(session: CheckoutSession) -> str:
    return f"{session.session_id}-{session.attempt}"


class CheckoutAuditLog:
    """Append-only record of checkout attempts, payment attempts and step events.

    Writes are best effort: a failed write is logged and the checkout carries on.
    """

    def __init__(self, session_factory: Callable[[], Session] = db_session) -> None:
        self._session_factory = session_factory

    def start_attempt(
        self,
        session: CheckoutSession,
        *,
        order_code: str | None,
        order_service: str,
        payment_gateway: str,
    ) -> None:
        self._write(
            CheckoutAttempt(
                id=attempt_id(session),
                session_id=session.session_id,
                attempt=session.attempt,
                order_code=order_code,
                order_service=order_service,
                payment_gateway=payment_gateway,
                status="IN_PROGRESS",
                started_at=datetime.now(timezone.utc),
            )
        )

    def finish_attempt(
        self, session: CheckoutSession, status: str, *, error_message: str | None = None
    ) -> None:
        with self._session_factory() as db:
            try:
                row = db.get(CheckoutAttempt, attempt_id(session))
                if row is None:
                    return
                row.status = status
                row.finished_at = datetime.now(timezone.utc)
                row.error_message = error_message
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                logger.exception("Could not close checkout attempt %s", attempt_id(session))

    def set_order_code(self, session: CheckoutSession, order_code: str) -> None:
        with self._session_factory() as db:
            try:
                row = db.get(CheckoutAttempt, attempt_id(session))
                if row is not None and row.order_code != order_code:
                    row.order_code = order_code
                    db.commit()
            except SQLAlchemyError:
                db.rollback()
                logger.exception("Could not update checkout attempt %s", attempt_id(session))

    def record_payment(
        self,
        session: CheckoutSession,
        *,
        payment_reference: str,
        amount: int,
        state: str,
        gateway_code: str | None = None,
        error_message: str | None = None,
    ) -> str:
        payment_id = uuid4().hex
        self._write(
            PaymentAttempt(
                id=payment_id,
                checkout_attempt_id=attempt_id(session),
                payment_reference=payment_reference,
                amount=amount,
                state=state,
                gateway_code=gateway_code,
                error_message=error_message,
                created_at=datetime.now(timezone.utc),
            )
        )
        return payment_id

    def record_event(
        self,
        session: CheckoutSession,
        event_type: EventTypeV1,
        payload: dict[str, Any],
        *,
        entity_type: EntityTypeV1 = EntityTypeV1.CHECKOUT_ATTEMPT,
        entity_id: str | None = None,
    ) -> None:
        self._write(
            EventLog(
                id=uuid4().hex,
                checkout_attempt_id=attempt_id(session),
                session_id=session.session_id,
                entity_type=entity_type.value,
                entity_id=entity_id or attempt_id(session),
                event_type=event_type.value,
                event_payload_json=payload,
                created_at=datetime.now(timezone.utc),
            )
        )

    def _write(self, row: object) -> None:
        with self._session_factory() as db:
            try:
                db.add(row)
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                logger.exception("Could not write %s to the checkout audit log", type(row).__name__)
