"""
Courier directory model
"""

from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, Float
from sqlalchemy.sql import func
from fulfillment.database import Base
from fulfillment.models.order import new_id


class Courier(Base):
    """Delivery courier; status is a hint, assignment exclusivity lives on orders"""
    __tablename__ = "couriers"

    id = Column(String(64), primary_key=True, default=new_id)
    name = Column(String(200), nullable=False)
    vehicle = Column(String(30), nullable=False)  # Motorcycle, Bicycle, Van
    status = Column(String(20), default="Offline", index=True, nullable=False)
    current_location = Column(String(255), nullable=True)
    rating = Column(Float, default=0.0, nullable=False)
    orders_delivered = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<Courier(id={self.id}, name='{self.name}', status='{self.status}')>"
