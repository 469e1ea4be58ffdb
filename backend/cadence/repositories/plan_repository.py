from uuid import UUID

from sqlalchemy.orm import Session

from cadence.models.plan import Plan


class PlanRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, tenant_id: UUID, plan_id: UUID) -> Plan | None:
        return self.db.query(Plan).filter(Plan.id == plan_id, Plan.tenant_id == tenant_id).first()

    def get_active_by_id(self, tenant_id: UUID, plan_id: UUID) -> Plan | None:
        return (
            self.db.query(Plan)
            .filter(Plan.id == plan_id, Plan.tenant_id == tenant_id, Plan.is_active.is_(True))
            .first()
        )
