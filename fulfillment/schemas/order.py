"""
Pydantic schemas for Order operations
"""

from pydantic import BaseModel, Field, validator
from typing import Optional
from datetime import datetime


class OrderItemIn(BaseModel):
    """Line item submitted at checkout"""
    item_id: str = Field(..., min_length=1, max_length=64, description="Catalog item identifier")
    name: str = Field(..., min_length=1, max_length=200, description="Item name")
    quantity: int = Field(..., gt=0, description="Quantity ordered")
    price: float = Field(..., ge=0, description="Unit price at checkout")


class OrderCreate(BaseModel):
    """Schema for placing a new order"""
    pharmacy_id: str = Field(..., min_length=1, max_length=64, description="Pharmacy fulfilling the order")
    pharmacy_name: Optional[str] = Field(None, max_length=200)
    pharmacy_branch: Optional[str] = Field(None, max_length=200)
    pharmacy_location: Optional[str] = Field(None, max_length=255)
    patient_name: Optional[str] = Field(None, max_length=200, description="Defaults to the name on the token")
    items: list[OrderItemIn] = Field(..., min_length=1, description="Ordered line items")
    delivery_address: str = Field(..., min_length=1, description="Where the courier delivers")
    payment_method: str = Field(..., min_length=1, max_length=50, description="e.g. M-Pesa, Tigo Pesa, Bank")

    @validator('delivery_address')
    def validate_delivery_address(cls, v):
        if not v.strip():
            raise ValueError('Delivery address is required')
        return v.strip()


class PaymentSubmission(BaseModel):
    """Schema for attaching a payment to an order"""
    transaction_ref: str = Field(..., min_length=1, description="Transaction recorded for this order")


class PaymentVerification(BaseModel):
    """Schema for a pharmacy confirming or rejecting an order payment"""
    outcome: str = Field(..., description="PAID or REJECTED")

    @validator('outcome')
    def validate_outcome(cls, v):
        v = v.upper()
        if v not in ('PAID', 'REJECTED'):
            raise ValueError('Outcome must be one of: PAID, REJECTED')
        return v


class CourierAssignment(BaseModel):
    courier_id: str = Field(..., min_length=1, description="Courier picked from the eligible list")


class OrderCancel(BaseModel):
    reason: Optional[str] = Field(None, max_length=500, description="Why the order is cancelled")


class OrderItemResponse(BaseModel):
    item_id: str
    name: str
    quantity: int
    price: float

    class Config:
        from_attributes = True


class OrderResponse(BaseModel):
    """Schema for order responses"""
    id: str
    display_code: str
    patient_id: str
    patient_name: Optional[str]
    pharmacy_id: str
    pharmacy_name: Optional[str]
    pharmacy_branch: Optional[str]
    pharmacy_location: Optional[str]
    items: list[OrderItemResponse]
    total: float
    delivery_address: str
    payment_method: str
    status: str
    payment_status: str
    transaction_id: Optional[str]
    courier_id: Optional[str]
    courier_name: Optional[str]
    cancel_reason: Optional[str]
    placed_at: datetime
    processing_at: Optional[datetime]
    paid_at: Optional[datetime]
    dispatched_at: Optional[datetime]
    delivered_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    updated_at: datetime

    class Config:
        from_attributes = True


class OrderListResponse(BaseModel):
    """Schema for paginated order list responses"""
    orders: list[OrderResponse]
    total: int
    page: int
    page_size: int
    total_pages: int
