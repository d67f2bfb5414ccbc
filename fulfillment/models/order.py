"""
Order models for pharmacy orders and their line items
"""

import uuid
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, Text, Float, ForeignKey, Index, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from fulfillment.database import Base


def new_id() -> str:
    return str(uuid.uuid4())


class Order(Base):
    """Pharmacy order moving from checkout to delivery"""
    __tablename__ = "orders"
    __table_args__ = (
        # One courier carries at most one dispatched order
        Index(
            "uq_orders_active_courier",
            "courier_id",
            unique=True,
            sqlite_where=text("status = 'DISPATCHED'"),
            postgresql_where=text("status = 'DISPATCHED'"),
        ),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    display_code = Column(String(8), index=True, nullable=False)
    patient_id = Column(String(64), index=True, nullable=False)
    patient_name = Column(String(200), nullable=True)
    pharmacy_id = Column(String(64), index=True, nullable=False)
    pharmacy_name = Column(String(200), nullable=True)
    pharmacy_branch = Column(String(200), nullable=True)
    pharmacy_location = Column(String(255), nullable=True)
    total = Column(Float, nullable=False)
    delivery_address = Column(Text, nullable=False)
    payment_method = Column(String(50), nullable=False)
    status = Column(String(20), default="PENDING", index=True, nullable=False)
    payment_status = Column(String(20), default="PENDING", index=True, nullable=False)
    transaction_id = Column(String(36), nullable=True)
    courier_id = Column(String(64), index=True, nullable=True)
    courier_name = Column(String(200), nullable=True)
    cancel_reason = Column(Text, nullable=True)
    placed_at = Column(DateTime, nullable=False)
    processing_at = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    dispatched_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    items = relationship(
        "OrderItem",
        back_populates="order",
        order_by="OrderItem.position",
        cascade="all, delete-orphan",
    )

    def __repr__(self):
        return f"<Order(id={self.id}, code='{self.display_code}', status='{self.status}', payment='{self.payment_status}')>"


class OrderItem(Base):
    """Line item of an order; price is the unit price at checkout"""
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(36), ForeignKey("orders.id"), index=True, nullable=False)
    position = Column(Integer, nullable=False)
    item_id = Column(String(64), nullable=False)
    name = Column(String(200), nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Float, nullable=False)

    order = relationship("Order", back_populates="items")

    def __repr__(self):
        return f"<OrderItem(order_id={self.order_id}, name='{self.name}', quantity={self.quantity})>"
