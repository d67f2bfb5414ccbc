"""
Pydantic schemas for Prescription operations
"""

from pydantic import BaseModel, Field, validator
from typing import Optional
from datetime import datetime


class PrescriptionItemIn(BaseModel):
    medication: str = Field(..., min_length=1, max_length=200)
    dosage: str = Field(..., min_length=1, max_length=100, description="e.g. 500mg")
    frequency: str = Field(..., min_length=1, max_length=100, description="e.g. Twice daily")
    duration: str = Field(..., min_length=1, max_length=100, description="e.g. 7 days")
    instructions: Optional[str] = Field(None, description="Additional instructions")
    quantity: Optional[int] = Field(None, gt=0)


class PrescriptionCreate(BaseModel):
    """Schema for a doctor issuing a prescription"""
    patient_id: str = Field(..., min_length=1, max_length=64)
    patient_name: Optional[str] = Field(None, max_length=200)
    appointment_id: Optional[str] = Field(None, max_length=64)
    items: list[PrescriptionItemIn] = Field(..., min_length=1)
    notes: Optional[str] = Field(None)
    lookup_code: Optional[str] = Field(None, min_length=4, max_length=64, description="QR code printed on paper prescriptions")


class ExternalPrescriptionUpload(BaseModel):
    """Schema for a patient uploading a prescription from outside the platform"""
    file_url: str = Field(..., min_length=1, max_length=500)
    items: list[PrescriptionItemIn] = Field(default_factory=list)

    @validator('file_url')
    def validate_file_url(cls, v):
        if not v.startswith(('http://', 'https://')):
            raise ValueError('File URL must be an http(s) link')
        return v


class PrescriptionLock(BaseModel):
    pharmacy_name: Optional[str] = Field(None, max_length=200, description="Defaults to the name on the token")


class PrescriptionCancel(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class PrescriptionItemResponse(BaseModel):
    medication: str
    dosage: str
    frequency: str
    duration: str
    instructions: Optional[str]
    quantity: Optional[int]

    class Config:
        from_attributes = True


class PrescriptionResponse(BaseModel):
    """Schema for prescription responses"""
    id: str
    lookup_code: Optional[str]
    patient_id: str
    patient_name: Optional[str]
    doctor_id: Optional[str]
    doctor_name: Optional[str]
    appointment_id: Optional[str]
    items: list[PrescriptionItemResponse]
    status: str
    pharmacy_id: Optional[str]
    pharmacy_name: Optional[str]
    notes: Optional[str]
    cancel_reason: Optional[str]
    is_external: bool
    external_file_url: Optional[str]
    issued_at: datetime
    expires_at: Optional[datetime]
    locked_at: Optional[datetime]
    dispensed_at: Optional[datetime]
    expired_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    updated_at: datetime

    class Config:
        from_attributes = True


class PrescriptionLookupResponse(BaseModel):
    """Read-only lookup result shown to a pharmacist before locking"""
    prescription: PrescriptionResponse
    is_expired: bool
    can_lock: bool


class ExpirySweepResponse(BaseModel):
    expired: int
