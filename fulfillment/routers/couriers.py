"""
Courier directory endpoints
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from typing import Optional
import logging

from fulfillment.limiter import limiter
from fulfillment.schemas.courier import CourierCreate, CourierResponse, CourierStatusUpdate
from fulfillment.services.courier_scheduler import CourierScheduler
from fulfillment.services.ledger import Ledger, get_ledger
from fulfillment.utils.error_handler import DatabaseError, WorkflowError
from fulfillment.auth.auth_handler import admin_required, courier_required, pharmacy_or_admin

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/", response_model=list[CourierResponse])
@limiter.limit("30/minute")
async def list_couriers(
    request: Request,
    status: Optional[str] = Query(None, description="Available, Busy or Offline"),
    current_user: dict = Depends(pharmacy_or_admin),
    ledger: Ledger = Depends(get_ledger)
):
    try:
        couriers = CourierScheduler(ledger).list_couriers(status)
        return [CourierResponse.model_validate(c) for c in couriers]

    except (HTTPException, WorkflowError, DatabaseError):
        raise
    except Exception as e:
        logger.error(f"Failed to list couriers: {e}")
        raise HTTPException(status_code=500, detail="Failed to retrieve couriers")


@router.get("/eligible", response_model=list[CourierResponse])
@limiter.limit("30/minute")
async def list_eligible_couriers(
    request: Request,
    current_user: dict = Depends(pharmacy_or_admin),
    ledger: Ledger = Depends(get_ledger)
):
    """Couriers a pharmacy can dispatch with right now"""
    try:
        couriers = CourierScheduler(ledger).find_eligible()
        return [CourierResponse.model_validate(c) for c in couriers]

    except (HTTPException, WorkflowError, DatabaseError):
        raise
    except Exception as e:
        logger.error(f"Failed to list eligible couriers: {e}")
        raise HTTPException(status_code=500, detail="Failed to retrieve couriers")


@router.post("/", response_model=CourierResponse, status_code=201)
@limiter.limit("10/minute")
async def register_courier(
    request: Request,
    courier: CourierCreate,
    current_user: dict = Depends(admin_required),
    ledger: Ledger = Depends(get_ledger)
):
    try:
        return CourierScheduler(ledger).register(
            name=courier.name,
            vehicle=courier.vehicle,
            current_location=courier.current_location,
            courier_id=courier.id,
        )

    except (HTTPException, WorkflowError, DatabaseError):
        raise
    except Exception as e:
        logger.error(f"Failed to register courier: {e}")
        raise HTTPException(status_code=500, detail="Failed to register courier")


@router.put("/{courier_id}/status", response_model=CourierResponse)
@limiter.limit("30/minute")
async def update_courier_status(
    request: Request,
    courier_id: str,
    update: CourierStatusUpdate,
    current_user: dict = Depends(courier_required),
    ledger: Ledger = Depends(get_ledger)
):
    """Courier going online, offline or reporting a new location"""
    try:
        if current_user["role"] != "admin" and current_user["user_id"] != courier_id:
            raise HTTPException(status_code=403, detail="Couriers can only update their own status")
        return CourierScheduler(ledger).set_status(courier_id, update.status, update.current_location)

    except (HTTPException, WorkflowError, DatabaseError):
        raise
    except Exception as e:
        logger.error(f"Failed to update status of courier {courier_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to update courier status")
