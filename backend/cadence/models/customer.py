from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint, func

from cadence.core.config import settings
from cadence.core.database import Base
from cadence.models.shared import UUIDType, generate_uuid


class CustomerStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class Customer(Base):
    __tablename__ = "customers"
    __table_args__ = (
        UniqueConstraint("tenant_id", "external_id", name="uq_customers_tenant_external_id"),
    )

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    tenant_id = Column(
        UUIDType,
        ForeignKey("tenants.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    external_id = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    company_name = Column(String(255), nullable=True)
    # GST state code used to choose intra-state vs inter-state tax
    state_code = Column(String(10), nullable=True)
    currency = Column(String(3), nullable=False, default=settings.DEFAULT_CURRENCY)
    payment_terms = Column(Integer, nullable=True)
    status = Column(String(20), nullable=False, default=CustomerStatus.ACTIVE.value)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
