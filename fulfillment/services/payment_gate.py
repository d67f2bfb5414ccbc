"""
Payment verification gate

A human verifier (the receiving pharmacy or doctor, or an admin) moves a
transaction from PENDING_VERIFICATION to VERIFIED or REJECTED exactly once.
On VERIFIED the effect for the paid item is applied in the same database
transaction. Effects are keyed so that applying one twice grants nothing new.
"""

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from fulfillment.config import settings
from fulfillment.models.order import Order
from fulfillment.models.transaction import Entitlement, Transaction
from fulfillment.services.ledger import Ledger
from fulfillment.services.order_workflow import AMOUNT_TOLERANCE, OrderWorkflow
from fulfillment.services.state_machine import (
    TRANSACTION_STATUS,
    ItemType,
    NotificationKind,
    PaymentStatus,
    TransactionStatus,
    parse_enum,
)
from fulfillment.utils.error_handler import (
    ConflictError,
    DatabaseError,
    InvalidStateError,
    PermissionDeniedError,
    PreconditionError,
    ValidationError,
    WorkflowError,
)

logger = logging.getLogger(__name__)


class EntitlementKind(str, Enum):
    ARTICLE_ACCESS = "ARTICLE_ACCESS"
    CONSULTATION_CONFIRMED = "CONSULTATION_CONFIRMED"
    SUBSCRIPTION_ACTIVE = "SUBSCRIPTION_ACTIVE"


class PaymentGate:
    """Owns the transaction state machine and the effects of verified payments"""

    def __init__(self, ledger: Ledger):
        self.ledger = ledger

    def record(
        self,
        payer_id: str,
        amount: float,
        item_type: str,
        item_id: Optional[str],
        recipient_id: Optional[str] = None,
        currency: Optional[str] = None,
        reference_number: Optional[str] = None,
        payment_method: Optional[str] = None,
    ) -> Transaction:
        """Payment intake: store a transaction awaiting manual verification"""
        item_type = parse_enum(ItemType, item_type, "item_type")
        if amount is None or amount <= 0:
            raise ValidationError("Amount must be positive", details={"field": "amount"})
        if item_type != ItemType.SUBSCRIPTION and not item_id:
            raise ValidationError("The paid item is required", details={"field": "item_id"})

        if item_type == ItemType.ORDER:
            order = self.ledger.require(Order, item_id, "Order")
            if recipient_id and recipient_id != order.pharmacy_id:
                raise ValidationError(
                    "Order payments are received by the order's pharmacy",
                    details={"field": "recipient_id"},
                )
            recipient_id = order.pharmacy_id
            if abs(amount - order.total) > AMOUNT_TOLERANCE:
                raise ValidationError(
                    "Payment amount does not match the order total",
                    details={"field": "amount", "expected": order.total, "actual": amount},
                )
            outstanding = (
                self.ledger.db.query(Transaction)
                .filter(
                    Transaction.item_type == ItemType.ORDER.value,
                    Transaction.item_id == order.id,
                    Transaction.status.in_([
                        TransactionStatus.PENDING_VERIFICATION.value,
                        TransactionStatus.VERIFIED.value,
                    ]),
                )
                .first()
            )
            if outstanding is not None:
                raise PreconditionError(
                    f"Order already has a payment that is {outstanding.status.lower()}",
                    details={"transaction_id": outstanding.id, "transaction_status": outstanding.status},
                )
        if recipient_id and recipient_id == payer_id:
            raise ValidationError("A payment cannot be received by its payer", details={"field": "recipient_id"})

        transaction = Transaction(
            payer_id=payer_id,
            recipient_id=recipient_id,
            amount=amount,
            currency=(currency or settings.default_currency).upper(),
            item_type=item_type.value,
            item_id=item_id,
            payment_method=payment_method,
            reference_number=reference_number,
            status=TransactionStatus.PENDING_VERIFICATION.value,
            updated_at=datetime.utcnow(),
        )
        self.ledger.add(transaction)
        self.ledger.notify_after_commit(
            recipient_id,
            NotificationKind.PAYMENT_PENDING.value,
            {"transaction_id": transaction.id, "amount": amount,
             "message": f"Payment of {amount:,.0f} {transaction.currency} awaits your verification"},
        )
        self.ledger.commit()
        logger.info(f"Recorded {item_type.value} payment {transaction.id} from {payer_id} pending verification")
        return self.ledger.get(Transaction, transaction.id)

    def get(self, transaction_id: str) -> Transaction:
        return self.ledger.require(Transaction, transaction_id, "Transaction")

    def list_pending(self, recipient_id: Optional[str] = None, item_type: Optional[str] = None) -> List[Transaction]:
        query = self.ledger.db.query(Transaction).filter(
            Transaction.status == TransactionStatus.PENDING_VERIFICATION.value
        )
        if recipient_id:
            query = query.filter(Transaction.recipient_id == recipient_id)
        if item_type:
            if item_type.lower() not in {t.value for t in ItemType}:
                raise ValidationError(f"Unknown item type: {item_type}", details={"field": "item_type"})
            query = query.filter(Transaction.item_type == item_type.lower())
        return query.order_by(Transaction.created_at.desc()).all()

    def verify(self, transaction_id: str, outcome, verifier_id: str, verifier_role: str) -> Transaction:
        """Settle a pending transaction as VERIFIED or REJECTED, applying its effect"""
        outcome = parse_enum(TransactionStatus, outcome, "outcome")
        if outcome == TransactionStatus.PENDING_VERIFICATION:
            raise ValidationError("Outcome must be VERIFIED or REJECTED", details={"field": "outcome"})

        transaction = self.get(transaction_id)
        TRANSACTION_STATUS.ensure_transition(
            transaction.status,
            outcome,
            reason=f"Transaction already {transaction.status.lower()}",
        )
        if verifier_role != "admin":
            if verifier_id == transaction.payer_id:
                raise PermissionDeniedError("A payer cannot verify their own payment")
            if not transaction.recipient_id or verifier_id != transaction.recipient_id:
                raise PermissionDeniedError("Only the payment recipient or an admin may verify this payment")

        try:
            settled = self.ledger.conditional_update(
                Transaction,
                transaction_id,
                expected={"status": TransactionStatus.PENDING_VERIFICATION.value},
                values={
                    "status": outcome.value,
                    "verified_by": verifier_id,
                    "verified_at": datetime.utcnow(),
                },
            )
            if not settled:
                self.ledger.rollback()
                current = self.get(transaction_id)
                raise InvalidStateError(
                    f"Transaction already {current.status.lower()}",
                    details={"status": current.status},
                )

            transaction = self.get(transaction_id)
            if outcome == TransactionStatus.VERIFIED:
                self._apply_effect(transaction)
            elif transaction.item_type == ItemType.ORDER.value:
                order = self.ledger.require(Order, transaction.item_id, "Order")
                # A stray transaction is rejected without touching the order's own payment
                if order.transaction_id in (None, transaction.id):
                    OrderWorkflow(self.ledger).settle_payment(order, PaymentStatus.REJECTED, transaction.id)

            self._notify_payer(transaction)
            self.ledger.commit()
        except WorkflowError:
            self.ledger.rollback()
            raise
        except SQLAlchemyError as e:
            self.ledger.rollback()
            logger.error(f"Failed to verify transaction {transaction_id}: {e}")
            raise DatabaseError(f"Failed to verify transaction: {str(e)}", e)

        logger.info(f"Transaction {transaction_id} {outcome.value} by {verifier_role} {verifier_id}")
        return self.get(transaction_id)

    def apply_effect(self, transaction_id: str) -> Transaction:
        """Re-run the effect of a verified transaction; already applied effects are left alone"""
        transaction = self.get(transaction_id)
        if transaction.status != TransactionStatus.VERIFIED.value:
            raise PreconditionError(
                "Only verified transactions have effects",
                details={"status": transaction.status},
            )
        try:
            self._apply_effect(transaction)
            self.ledger.commit()
        except WorkflowError:
            self.ledger.rollback()
            raise
        return self.get(transaction_id)

    def _apply_effect(self, transaction: Transaction) -> None:
        item_type = ItemType(transaction.item_type)
        if item_type == ItemType.ORDER:
            order = self.ledger.require(Order, transaction.item_id, "Order")
            OrderWorkflow(self.ledger).settle_payment(order, PaymentStatus.PAID, transaction.id)
        elif item_type in (ItemType.CONSULTATION, ItemType.APPOINTMENT):
            self._grant(
                EntitlementKind.CONSULTATION_CONFIRMED,
                f"consultation:{transaction.item_id}",
                transaction,
            )
        elif item_type == ItemType.ARTICLE:
            self._grant(
                EntitlementKind.ARTICLE_ACCESS,
                f"article:{transaction.payer_id}:{transaction.item_id}",
                transaction,
            )
        elif item_type == ItemType.SUBSCRIPTION:
            self._grant(
                EntitlementKind.SUBSCRIPTION_ACTIVE,
                f"subscription:{transaction.id}",
                transaction,
                expires_at=datetime.utcnow() + timedelta(days=settings.subscription_period_days),
            )

    def _grant(
        self,
        kind: EntitlementKind,
        effect_key: str,
        transaction: Transaction,
        expires_at: Optional[datetime] = None,
    ) -> bool:
        existing = (
            self.ledger.db.query(Entitlement)
            .filter(Entitlement.effect_key == effect_key)
            .first()
        )
        if existing is not None:
            logger.info(f"Effect {effect_key} already granted by transaction {existing.transaction_id}")
            return False

        try:
            self.ledger.add(Entitlement(
                effect_key=effect_key,
                kind=kind.value,
                user_id=transaction.payer_id,
                resource_id=transaction.item_id,
                granted_by=transaction.verified_by,
                transaction_id=transaction.id,
                granted_at=datetime.utcnow(),
                expires_at=expires_at,
            ))
        except IntegrityError:
            raise ConflictError("Effect was applied concurrently", details={"effect_key": effect_key})
        logger.info(f"Granted {kind.value} to {transaction.payer_id} for transaction {transaction.id}")
        return True

    def _notify_payer(self, transaction: Transaction) -> None:
        verified = transaction.status == TransactionStatus.VERIFIED.value
        self.ledger.notify_after_commit(
            transaction.payer_id,
            NotificationKind.PAYMENT_SUCCESS.value if verified else NotificationKind.PAYMENT_REJECTED.value,
            {
                "transaction_id": transaction.id,
                "item_type": transaction.item_type,
                "item_id": transaction.item_id,
                "amount": transaction.amount,
                "currency": transaction.currency,
                "message": (
                    f"Your payment of {transaction.amount:,.0f} {transaction.currency} "
                    f"was {'verified' if verified else 'rejected'}"
                ),
            },
        )
