"""
Payment transaction endpoints: intake, verification queue and verification
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from typing import Optional
import logging

from fulfillment.limiter import limiter
from fulfillment.schemas.transaction import (
    TransactionCreate,
    TransactionResponse,
    TransactionVerification,
)
from fulfillment.services.ledger import Ledger, get_ledger
from fulfillment.services.payment_gate import PaymentGate
from fulfillment.utils.error_handler import DatabaseError, WorkflowError
from fulfillment.auth.auth_handler import admin_required, any_user, verifier_required

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/", response_model=TransactionResponse, status_code=201)
@limiter.limit("10/minute")
async def record_transaction(
    request: Request,
    transaction: TransactionCreate,
    current_user: dict = Depends(any_user),
    ledger: Ledger = Depends(get_ledger)
):
    """Record a payment made outside the platform; it waits for manual verification"""
    try:
        return PaymentGate(ledger).record(
            payer_id=current_user["user_id"],
            amount=transaction.amount,
            item_type=transaction.item_type,
            item_id=transaction.item_id,
            recipient_id=transaction.recipient_id,
            currency=transaction.currency,
            reference_number=transaction.reference_number,
            payment_method=transaction.payment_method,
        )

    except (HTTPException, WorkflowError, DatabaseError):
        raise
    except Exception as e:
        logger.error(f"Failed to record transaction: {e}")
        raise HTTPException(status_code=500, detail="Failed to record transaction")


@router.get("/pending", response_model=list[TransactionResponse])
@limiter.limit("30/minute")
async def list_pending_transactions(
    request: Request,
    item_type: Optional[str] = Query(None, description="Filter by paid item type"),
    recipient_id: Optional[str] = Query(None, description="Admin only: filter by recipient"),
    current_user: dict = Depends(verifier_required),
    ledger: Ledger = Depends(get_ledger)
):
    """Verification queue; non-admins only see payments made to them"""
    try:
        if current_user["role"] != "admin":
            recipient_id = current_user["user_id"]
        transactions = PaymentGate(ledger).list_pending(recipient_id=recipient_id, item_type=item_type)
        return [TransactionResponse.model_validate(t) for t in transactions]

    except (HTTPException, WorkflowError, DatabaseError):
        raise
    except Exception as e:
        logger.error(f"Failed to list pending transactions: {e}")
        raise HTTPException(status_code=500, detail="Failed to retrieve transactions")


@router.get("/{transaction_id}", response_model=TransactionResponse)
@limiter.limit("30/minute")
async def get_transaction(
    request: Request,
    transaction_id: str,
    current_user: dict = Depends(any_user),
    ledger: Ledger = Depends(get_ledger)
):
    try:
        transaction = PaymentGate(ledger).get(transaction_id)
        if current_user["role"] != "admin" and current_user["user_id"] not in (
            transaction.payer_id, transaction.recipient_id
        ):
            raise HTTPException(status_code=403, detail="Operation not permitted")
        return transaction

    except (HTTPException, WorkflowError, DatabaseError):
        raise
    except Exception as e:
        logger.error(f"Failed to get transaction {transaction_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to retrieve transaction")


@router.post("/{transaction_id}/verify", response_model=TransactionResponse)
@limiter.limit("20/minute")
async def verify_transaction(
    request: Request,
    transaction_id: str,
    verification: TransactionVerification,
    current_user: dict = Depends(verifier_required),
    ledger: Ledger = Depends(get_ledger)
):
    """Mark a pending payment VERIFIED (applying its effect) or REJECTED"""
    try:
        return PaymentGate(ledger).verify(
            transaction_id,
            verification.outcome,
            verifier_id=current_user["user_id"],
            verifier_role=current_user["role"],
        )

    except (HTTPException, WorkflowError, DatabaseError):
        raise
    except Exception as e:
        logger.error(f"Failed to verify transaction {transaction_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to verify transaction")


@router.post("/{transaction_id}/apply-effect", response_model=TransactionResponse)
@limiter.limit("10/minute")
async def apply_transaction_effect(
    request: Request,
    transaction_id: str,
    current_user: dict = Depends(admin_required),
    ledger: Ledger = Depends(get_ledger)
):
    """Re-apply the effect of a verified payment; safe to repeat"""
    try:
        return PaymentGate(ledger).apply_effect(transaction_id)

    except (HTTPException, WorkflowError, DatabaseError):
        raise
    except Exception as e:
        logger.error(f"Failed to apply effect of transaction {transaction_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to apply payment effect")
