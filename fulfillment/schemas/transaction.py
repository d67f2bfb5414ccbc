"""
Pydantic schemas for payment transactions
"""

from pydantic import BaseModel, Field, validator
from typing import Optional
from datetime import datetime

ITEM_TYPES = ['order', 'consultation', 'appointment', 'article', 'subscription']


class TransactionCreate(BaseModel):
    """Schema for recording a payment that awaits manual verification"""
    amount: float = Field(..., gt=0, description="Amount paid")
    currency: Optional[str] = Field(None, min_length=3, max_length=3, description="ISO currency code")
    item_type: str = Field(..., description="What the payment is for")
    item_id: Optional[str] = Field(None, max_length=64, description="Order, appointment or article paid for")
    recipient_id: Optional[str] = Field(None, max_length=64, description="Pharmacy or doctor receiving the money")
    reference_number: Optional[str] = Field(None, max_length=100, description="Mobile money or bank reference")
    payment_method: Optional[str] = Field(None, max_length=50)

    @validator('item_type')
    def validate_item_type(cls, v):
        v = v.lower()
        if v not in ITEM_TYPES:
            raise ValueError(f'Item type must be one of: {", ".join(ITEM_TYPES)}')
        return v


class TransactionVerification(BaseModel):
    outcome: str = Field(..., description="VERIFIED or REJECTED")

    @validator('outcome')
    def validate_outcome(cls, v):
        v = v.upper()
        if v not in ('VERIFIED', 'REJECTED'):
            raise ValueError('Outcome must be one of: VERIFIED, REJECTED')
        return v


class TransactionResponse(BaseModel):
    id: str
    payer_id: str
    recipient_id: Optional[str]
    amount: float
    currency: str
    item_type: str
    item_id: Optional[str]
    payment_method: Optional[str]
    reference_number: Optional[str]
    status: str
    verified_by: Optional[str]
    verified_at: Optional[datetime]
    updated_at: datetime

    class Config:
        from_attributes = True
