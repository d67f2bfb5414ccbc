"""
Payment transactions and the entitlements granted once they are verified
"""

from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, Float
from sqlalchemy.sql import func
from fulfillment.database import Base
from fulfillment.models.order import new_id


class Transaction(Base):
    """Manually verified payment for an order, consultation, article or subscription"""
    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, default=new_id)
    payer_id = Column(String(64), index=True, nullable=False)
    recipient_id = Column(String(64), index=True, nullable=True)
    amount = Column(Float, nullable=False)
    currency = Column(String(3), nullable=False)
    item_type = Column(String(20), index=True, nullable=False)
    item_id = Column(String(64), index=True, nullable=True)
    payment_method = Column(String(50), nullable=True)
    reference_number = Column(String(100), nullable=True)
    status = Column(String(30), default="PENDING_VERIFICATION", index=True, nullable=False)
    verified_by = Column(String(64), nullable=True)
    verified_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<Transaction(id={self.id}, item_type='{self.item_type}', status='{self.status}')>"


class Entitlement(Base):
    """Effect granted by a verified transaction; effect_key makes each grant unique"""
    __tablename__ = "entitlements"

    id = Column(Integer, primary_key=True, index=True)
    effect_key = Column(String(255), unique=True, nullable=False)
    kind = Column(String(40), nullable=False)
    user_id = Column(String(64), index=True, nullable=False)
    resource_id = Column(String(64), nullable=True)
    granted_by = Column(String(64), nullable=True)
    transaction_id = Column(String(36), index=True, nullable=False)
    granted_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<Entitlement(kind='{self.kind}', user_id={self.user_id}, resource_id={self.resource_id})>"
