from typing import Any
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from cadence.models.payment import Payment


class PaymentRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, tenant_id: UUID, payment_id: UUID) -> Payment | None:
        return (
            self.db.query(Payment)
            .filter(Payment.id == payment_id, Payment.tenant_id == tenant_id)
            .first()
        )

    def next_payment_number(self, tenant_id: UUID, prefix: str, start: int) -> str:
        result = (
            self.db.query(Payment.payment_number)
            .filter(Payment.tenant_id == tenant_id, Payment.payment_number.like(f"{prefix}-%"))
            .order_by(func.length(Payment.payment_number).desc(), Payment.payment_number.desc())
            .first()
        )
        new_num = start
        if result:
            try:
                new_num = int(result[0].split("-")[-1]) + 1
            except (ValueError, IndexError):
                new_num = start
        return f"{prefix}-{new_num:06d}"

    def create(self, **fields: Any) -> Payment:
        payment = Payment(**fields)
        self.db.add(payment)
        self.db.flush()
        return payment
