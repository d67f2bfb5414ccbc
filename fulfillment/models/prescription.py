"""
Prescription models
"""

from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from fulfillment.database import Base
from fulfillment.models.order import new_id


class Prescription(Base):
    """Prescription issued by a doctor or uploaded by a patient"""
    __tablename__ = "prescriptions"

    id = Column(String(36), primary_key=True, default=new_id)
    lookup_code = Column(String(64), unique=True, index=True, nullable=True)
    patient_id = Column(String(64), index=True, nullable=False)
    patient_name = Column(String(200), nullable=True)
    doctor_id = Column(String(64), index=True, nullable=True)
    doctor_name = Column(String(200), nullable=True)
    appointment_id = Column(String(64), nullable=True)
    status = Column(String(30), default="ISSUED", index=True, nullable=False)
    pharmacy_id = Column(String(64), index=True, nullable=True)
    pharmacy_name = Column(String(200), nullable=True)
    notes = Column(Text, nullable=True)
    cancel_reason = Column(Text, nullable=True)
    is_external = Column(Boolean, default=False, nullable=False)
    external_file_url = Column(String(500), nullable=True)
    issued_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=True)
    locked_at = Column(DateTime, nullable=True)
    dispensed_at = Column(DateTime, nullable=True)
    expired_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    items = relationship(
        "PrescriptionItem",
        back_populates="prescription",
        order_by="PrescriptionItem.position",
        cascade="all, delete-orphan",
    )

    def __repr__(self):
        return f"<Prescription(id={self.id}, status='{self.status}', pharmacy_id={self.pharmacy_id})>"


class PrescriptionItem(Base):
    __tablename__ = "prescription_items"

    id = Column(Integer, primary_key=True, index=True)
    prescription_id = Column(String(36), ForeignKey("prescriptions.id"), index=True, nullable=False)
    position = Column(Integer, nullable=False)
    medication = Column(String(200), nullable=False)
    dosage = Column(String(100), nullable=False)
    frequency = Column(String(100), nullable=False)
    duration = Column(String(100), nullable=False)
    instructions = Column(Text, nullable=True)
    quantity = Column(Integer, nullable=True)

    prescription = relationship("Prescription", back_populates="items")
