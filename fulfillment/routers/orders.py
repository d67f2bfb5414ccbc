"""
Order management endpoints
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from typing import Optional
import logging
import math

from fulfillment.limiter import limiter
from fulfillment.schemas.order import (
    CourierAssignment,
    OrderCancel,
    OrderCreate,
    OrderListResponse,
    OrderResponse,
    PaymentSubmission,
    PaymentVerification,
)
from fulfillment.services.ledger import Ledger, get_ledger
from fulfillment.services.order_workflow import OrderWorkflow
from fulfillment.utils.error_handler import DatabaseError, WorkflowError
from fulfillment.auth.auth_handler import (
    any_user,
    delivery_confirmer_required,
    patient_required,
    pharmacy_or_admin,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _ensure_can_view(order, current_user: dict) -> None:
    if current_user["role"] == "admin":
        return
    if current_user["user_id"] in (order.patient_id, order.pharmacy_id, order.courier_id):
        return
    raise HTTPException(status_code=403, detail="Operation not permitted")


@router.post("/", response_model=OrderResponse, status_code=201)
@limiter.limit("10/minute")
async def create_order(
    request: Request,
    order: OrderCreate,
    current_user: dict = Depends(patient_required),
    ledger: Ledger = Depends(get_ledger)
):
    """Place a new order; it starts PENDING with payment PENDING"""
    try:
        db_order = OrderWorkflow(ledger).create(
            patient_id=current_user["user_id"],
            patient_name=order.patient_name or current_user["name"],
            pharmacy_id=order.pharmacy_id,
            pharmacy_name=order.pharmacy_name,
            items=[item.dict() for item in order.items],
            delivery_address=order.delivery_address,
            payment_method=order.payment_method,
            pharmacy_branch=order.pharmacy_branch,
            pharmacy_location=order.pharmacy_location,
        )
        return db_order

    except (HTTPException, WorkflowError, DatabaseError):
        raise
    except Exception as e:
        logger.error(f"Failed to create order: {e}")
        raise HTTPException(status_code=500, detail="Failed to create order")


@router.get("/", response_model=OrderListResponse)
@limiter.limit("30/minute")
async def get_orders(
    request: Request,
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(10, ge=1, le=100, description="Items per page"),
    status: Optional[str] = Query(None, description="Filter by status"),
    current_user: dict = Depends(any_user),
    ledger: Ledger = Depends(get_ledger)
):
    """Paginated orders visible to the caller.

    Patients see their own orders, pharmacies the orders placed with them and
    couriers the orders they carry. Admins see everything.
    """
    try:
        role = current_user["role"]
        scope = {}
        if role == "patient":
            scope["patient_id"] = current_user["user_id"]
        elif role == "pharmacy":
            scope["pharmacy_id"] = current_user["user_id"]
        elif role == "courier":
            scope["courier_id"] = current_user["user_id"]
        elif role != "admin":
            raise HTTPException(status_code=403, detail="Operation not permitted")

        orders, total = OrderWorkflow(ledger).list_orders(
            page=page, page_size=page_size, status=status, **scope
        )

        return OrderListResponse(
            orders=[OrderResponse.model_validate(order) for order in orders],
            total=total,
            page=page,
            page_size=page_size,
            total_pages=math.ceil(total / page_size)
        )

    except (HTTPException, WorkflowError, DatabaseError):
        raise
    except Exception as e:
        logger.error(f"Failed to get orders: {e}")
        raise HTTPException(status_code=500, detail="Failed to retrieve orders")


@router.get("/{order_id}", response_model=OrderResponse)
@limiter.limit("30/minute")
async def get_order(
    request: Request,
    order_id: str,
    current_user: dict = Depends(any_user),
    ledger: Ledger = Depends(get_ledger)
):
    """Get a specific order by ID"""
    try:
        order = OrderWorkflow(ledger).get(order_id)
        _ensure_can_view(order, current_user)
        return order

    except (HTTPException, WorkflowError, DatabaseError):
        raise
    except Exception as e:
        logger.error(f"Failed to get order {order_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to retrieve order")


@router.post("/{order_id}/payment", response_model=OrderResponse)
@limiter.limit("10/minute")
async def submit_payment(
    request: Request,
    order_id: str,
    payment: PaymentSubmission,
    current_user: dict = Depends(patient_required),
    ledger: Ledger = Depends(get_ledger)
):
    """Attach a recorded transaction to the order for pharmacy verification"""
    try:
        return OrderWorkflow(ledger).submit_payment(
            order_id,
            payment.transaction_ref,
            actor_id=current_user["user_id"],
            actor_role=current_user["role"],
        )

    except (HTTPException, WorkflowError, DatabaseError):
        raise
    except Exception as e:
        logger.error(f"Failed to submit payment for order {order_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to submit payment")


@router.post("/{order_id}/verify-payment", response_model=OrderResponse)
@limiter.limit("20/minute")
async def verify_payment(
    request: Request,
    order_id: str,
    verification: PaymentVerification,
    current_user: dict = Depends(pharmacy_or_admin),
    ledger: Ledger = Depends(get_ledger)
):
    """Confirm (PAID) or reject (REJECTED) the order's payment"""
    try:
        return OrderWorkflow(ledger).verify_payment(
            order_id,
            verification.outcome,
            verifier_id=current_user["user_id"],
            verifier_role=current_user["role"],
        )

    except (HTTPException, WorkflowError, DatabaseError):
        raise
    except Exception as e:
        logger.error(f"Failed to verify payment for order {order_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to verify payment")


@router.post("/{order_id}/assign-courier", response_model=OrderResponse)
@limiter.limit("20/minute")
async def assign_courier(
    request: Request,
    order_id: str,
    assignment: CourierAssignment,
    current_user: dict = Depends(pharmacy_or_admin),
    ledger: Ledger = Depends(get_ledger)
):
    """Dispatch a paid order with an available courier"""
    try:
        return OrderWorkflow(ledger).assign_courier(
            order_id,
            assignment.courier_id,
            actor_id=current_user["user_id"],
            actor_role=current_user["role"],
        )

    except (HTTPException, WorkflowError, DatabaseError):
        raise
    except Exception as e:
        logger.error(f"Failed to assign courier to order {order_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to assign courier")


@router.post("/{order_id}/reassign-courier", response_model=OrderResponse)
@limiter.limit("20/minute")
async def reassign_courier(
    request: Request,
    order_id: str,
    assignment: CourierAssignment,
    current_user: dict = Depends(pharmacy_or_admin),
    ledger: Ledger = Depends(get_ledger)
):
    """Hand a dispatched order to a different courier"""
    try:
        return OrderWorkflow(ledger).reassign_courier(
            order_id,
            assignment.courier_id,
            actor_id=current_user["user_id"],
            actor_role=current_user["role"],
        )

    except (HTTPException, WorkflowError, DatabaseError):
        raise
    except Exception as e:
        logger.error(f"Failed to reassign courier for order {order_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to reassign courier")


@router.post("/{order_id}/deliver", response_model=OrderResponse)
@limiter.limit("20/minute")
async def mark_delivered(
    request: Request,
    order_id: str,
    current_user: dict = Depends(delivery_confirmer_required),
    ledger: Ledger = Depends(get_ledger)
):
    """Confirm delivery of a dispatched order"""
    try:
        return OrderWorkflow(ledger).mark_delivered(
            order_id,
            actor_id=current_user["user_id"],
            actor_role=current_user["role"],
        )

    except (HTTPException, WorkflowError, DatabaseError):
        raise
    except Exception as e:
        logger.error(f"Failed to mark order {order_id} delivered: {e}")
        raise HTTPException(status_code=500, detail="Failed to confirm delivery")


@router.post("/{order_id}/cancel", response_model=OrderResponse)
@limiter.limit("10/minute")
async def cancel_order(
    request: Request,
    order_id: str,
    cancellation: OrderCancel,
    current_user: dict = Depends(any_user),
    ledger: Ledger = Depends(get_ledger)
):
    """Cancel an order that has not been dispatched"""
    try:
        return OrderWorkflow(ledger).cancel(
            order_id,
            cancellation.reason,
            actor_id=current_user["user_id"],
            actor_role=current_user["role"],
        )

    except (HTTPException, WorkflowError, DatabaseError):
        raise
    except Exception as e:
        logger.error(f"Failed to cancel order {order_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to cancel order")
