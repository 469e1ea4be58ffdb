from sqlalchemy import Column, DateTime, Integer, String, func

from cadence.core.config import settings
from cadence.core.database import Base
from cadence.models.shared import UUIDType, generate_uuid


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    # GST state code of the tenant's place of business
    state_code = Column(String(10), nullable=True)
    gstin = Column(String(15), nullable=True)
    default_currency = Column(String(3), nullable=False, default=settings.DEFAULT_CURRENCY)
    invoice_prefix = Column(String(20), nullable=True)
    net_payment_term = Column(Integer, nullable=False, default=settings.DEFAULT_PAYMENT_TERMS_DAYS)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
