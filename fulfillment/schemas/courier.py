"""
Pydantic schemas for the courier directory
"""

from pydantic import BaseModel, Field, validator
from typing import Optional

COURIER_STATUSES = ['Available', 'Busy', 'Offline']


class CourierCreate(BaseModel):
    """Schema for registering a courier"""
    id: Optional[str] = Field(None, max_length=64, description="Courier's user id, generated when omitted")
    name: str = Field(..., min_length=1, max_length=200)
    vehicle: str = Field(..., description="Motorcycle, Bicycle or Van")
    current_location: Optional[str] = Field(None, max_length=255)


class CourierStatusUpdate(BaseModel):
    status: str = Field(..., description="Available, Busy or Offline")
    current_location: Optional[str] = Field(None, max_length=255)

    @validator('status')
    def validate_status(cls, v):
        v = v.capitalize()
        if v not in COURIER_STATUSES:
            raise ValueError(f'Status must be one of: {", ".join(COURIER_STATUSES)}')
        return v


class CourierResponse(BaseModel):
    id: str
    name: str
    vehicle: str
    status: str
    current_location: Optional[str]
    rating: float
    orders_delivered: int

    class Config:
        from_attributes = True
