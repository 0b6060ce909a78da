from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from packages.shared.schemas.events import EntityTypeV1, EventTypeV1, EventV1
from services.api.app.db.deps import get_db
from services.api.app.db.models import CheckoutAttempt, EventLog, PaymentAttempt
from services.api.app.models.audit import CheckoutAttemptOut, PaymentAttemptOut

router = APIRouter()


@router.get("/v1/checkout/attempts", response_model=list[CheckoutAttemptOut])
def list_checkout_attempts(order_code: str, db: Session = Depends(get_db)) -> list[CheckoutAttemptOut]:
    attempts = (
        db.query(CheckoutAttempt)
        .filter(CheckoutAttempt.order_code == order_code)
        .order_by(CheckoutAttempt.started_at.desc())
        .limit(200)
        .all()
    )

    out: list[CheckoutAttemptOut] = []
    for attempt in attempts:
        payments = (
            db.query(PaymentAttempt)
            .filter(PaymentAttempt.checkout_attempt_id == attempt.id)
            .order_by(PaymentAttempt.created_at.asc())
            .all()
        )
        out.append(
            CheckoutAttemptOut(
                attempt_id=attempt.id,
                session_id=attempt.session_id,
                attempt=attempt.attempt,
                order_code=attempt.order_code,
                order_service=attempt.order_service,
                payment_gateway=attempt.payment_gateway,
                status=attempt.status,
                started_at=attempt.started_at.isoformat(),
                finished_at=attempt.finished_at.isoformat() if attempt.finished_at else None,
                error_message=attempt.error_message,
                payments=[
                    PaymentAttemptOut(
                        id=p.id,
                        payment_reference=p.payment_reference,
                        amount=p.amount,
                        state=p.state,
                        gateway_code=p.gateway_code,
                        error_message=p.error_message,
                        created_at=p.created_at.isoformat(),
                    )
                    for p in payments
                ],
            )
        )

    return out


@router.get("/v1/checkout/sessions/{session_id}/events", response_model=list[EventV1])
def list_session_events(session_id: str, db: Session = Depends(get_db)) -> list[EventV1]:
    rows = (
        db.query(EventLog, CheckoutAttempt)
        .join(CheckoutAttempt, CheckoutAttempt.id == EventLog.checkout_attempt_id)
        .filter(EventLog.session_id == session_id)
        .order_by(EventLog.created_at.asc())
        .all()
    )

    if not rows:
        raise HTTPException(status_code=404, detail="No events for this checkout session")

    return [
        EventV1(
            id=event.id,
            session_id=event.session_id,
            attempt=attempt.attempt,
            entity_type=EntityTypeV1(event.entity_type),
            entity_id=event.entity_id,
            event_type=EventTypeV1(event.event_type),
            payload=event.event_payload_json,
            created_at=event.created_at.isoformat(),
        )
        for event, attempt in rows
    ]
