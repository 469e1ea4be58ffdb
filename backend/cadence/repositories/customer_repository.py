from uuid import UUID

from sqlalchemy.orm import Session

from cadence.models.customer import Customer, CustomerStatus


class CustomerRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, tenant_id: UUID, customer_id: UUID) -> Customer | None:
        return (
            self.db.query(Customer)
            .filter(Customer.id == customer_id, Customer.tenant_id == tenant_id)
            .first()
        )

    def get_active_by_id(self, tenant_id: UUID, customer_id: UUID) -> Customer | None:
        return (
            self.db.query(Customer)
            .filter(
                Customer.id == customer_id,
                Customer.tenant_id == tenant_id,
                Customer.status == CustomerStatus.ACTIVE.value,
            )
            .first()
        )
