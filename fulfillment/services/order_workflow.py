"""
Order workflow: checkout, payment submission and verification, delivery and cancellation

Orders move along PENDING -> PROCESSING -> DISPATCHED -> DELIVERED, or
divert once to CANCELLED. Payment status runs alongside and only a PAID
order may leave the pharmacy.
"""

import logging
from datetime import datetime
from typing import List, Optional, Tuple

from fulfillment.models.order import Order, OrderItem, new_id
from fulfillment.models.transaction import Transaction
from fulfillment.services.courier_scheduler import CourierScheduler
from fulfillment.services.ledger import Ledger
from fulfillment.services.state_machine import (
    ORDER_STATUS,
    PAYMENT_STATUS,
    ItemType,
    NotificationKind,
    OrderStatus,
    PaymentStatus,
    TransactionStatus,
    parse_enum,
)
from fulfillment.utils.error_handler import (
    ConflictError,
    InvalidStateError,
    PermissionDeniedError,
    PreconditionError,
    ValidationError,
    WorkflowError,
)

logger = logging.getLogger(__name__)

# Largest difference between a payment and the order total still treated as equal
AMOUNT_TOLERANCE = 0.005


def display_code_for(order_id: str) -> str:
    return order_id.replace("-", "")[:8].upper()


def status_label(status: str) -> str:
    return status.replace("_", " ").title()


class OrderWorkflow:
    """Service owning the order status and payment status machines"""

    def __init__(self, ledger: Ledger):
        self.ledger = ledger

    def create(
        self,
        patient_id: str,
        patient_name: Optional[str],
        pharmacy_id: str,
        pharmacy_name: Optional[str],
        items: List[dict],
        delivery_address: str,
        payment_method: str,
        pharmacy_branch: Optional[str] = None,
        pharmacy_location: Optional[str] = None,
    ) -> Order:
        """Create an order in PENDING/PENDING with a fixed total"""
        if not items:
            raise ValidationError("Order must contain at least one item", details={"field": "items"})
        if not delivery_address or not delivery_address.strip():
            raise ValidationError("Delivery address is required", details={"field": "delivery_address"})
        if not payment_method:
            raise ValidationError("Payment method is required", details={"field": "payment_method"})
        if not pharmacy_id:
            raise ValidationError("Pharmacy is required", details={"field": "pharmacy_id"})

        for index, item in enumerate(items):
            if item["quantity"] <= 0:
                raise ValidationError("Quantity must be positive", details={"field": f"items[{index}].quantity"})
            if item["price"] < 0:
                raise ValidationError("Price cannot be negative", details={"field": f"items[{index}].price"})

        total = sum(item["quantity"] * item["price"] for item in items)
        if total <= 0:
            raise ValidationError("Order total must be positive", details={"field": "items"})

        order_id = new_id()
        placed_at = datetime.utcnow()
        order = Order(
            id=order_id,
            display_code=display_code_for(order_id),
            patient_id=patient_id,
            patient_name=patient_name,
            pharmacy_id=pharmacy_id,
            pharmacy_name=pharmacy_name,
            pharmacy_branch=pharmacy_branch,
            pharmacy_location=pharmacy_location,
            total=total,
            delivery_address=delivery_address.strip(),
            payment_method=payment_method,
            status=OrderStatus.PENDING.value,
            payment_status=PaymentStatus.PENDING.value,
            placed_at=placed_at,
            updated_at=placed_at,
        )
        for position, item in enumerate(items):
            order.items.append(OrderItem(
                position=position,
                item_id=item["item_id"],
                name=item["name"],
                quantity=item["quantity"],
                price=item["price"],
            ))

        self.ledger.add(order)
        self.ledger.notify_after_commit(
            pharmacy_id,
            NotificationKind.ORDER_UPDATE.value,
            {"order_id": order_id, "status": order.status,
             "message": f"New order #{order.display_code} received"},
        )
        self.ledger.commit()
        logger.info(f"Created order {order_id} for patient {patient_id} at pharmacy {pharmacy_id}, total {total}")
        return self.ledger.get(Order, order_id)

    def get(self, order_id: str) -> Order:
        return self.ledger.require(Order, order_id, "Order")

    def list_orders(
        self,
        page: int = 1,
        page_size: int = 10,
        status: Optional[str] = None,
        patient_id: Optional[str] = None,
        pharmacy_id: Optional[str] = None,
        courier_id: Optional[str] = None,
    ) -> Tuple[List[Order], int]:
        query = self.ledger.db.query(Order)
        if status:
            if status.upper() not in OrderStatus.__members__:
                raise ValidationError(f"Unknown order status: {status}", details={"field": "status"})
            query = query.filter(Order.status == status.upper())
        if patient_id:
            query = query.filter(Order.patient_id == patient_id)
        if pharmacy_id:
            query = query.filter(Order.pharmacy_id == pharmacy_id)
        if courier_id:
            query = query.filter(Order.courier_id == courier_id)

        total = query.count()
        offset = (page - 1) * page_size
        orders = query.order_by(Order.placed_at.desc()).offset(offset).limit(page_size).all()
        return orders, total

    def submit_payment(self, order_id: str, transaction_ref: str, actor_id: str, actor_role: str = "patient") -> Order:
        """Attach a pending transaction to the order: payment PENDING -> PROCESSING"""
        order = self.get(order_id)
        if actor_role != "admin" and actor_id != order.patient_id:
            raise PermissionDeniedError("Only the patient who placed the order may submit its payment")
        if order.status != OrderStatus.PENDING.value:
            raise InvalidStateError(
                f"Order is already {status_label(order.status).lower()}",
                details={"status": order.status, "payment_status": order.payment_status},
            )
        PAYMENT_STATUS.ensure_transition(
            order.payment_status,
            PaymentStatus.PROCESSING,
            reason="Payment has already been submitted for this order",
        )

        transaction = self.ledger.require(Transaction, transaction_ref, "Transaction")
        if transaction.item_type != ItemType.ORDER.value or transaction.item_id != order.id:
            raise ValidationError(
                "Transaction does not belong to this order",
                details={"field": "transaction_ref"},
            )
        if transaction.status != TransactionStatus.PENDING_VERIFICATION.value:
            raise PreconditionError(
                f"Transaction is already {transaction.status}",
                details={"transaction_status": transaction.status},
            )
        if abs(transaction.amount - order.total) > AMOUNT_TOLERANCE:
            raise ValidationError(
                "Transaction amount does not match the order total",
                details={"field": "transaction_ref", "expected": order.total, "actual": transaction.amount},
            )

        submitted = self.ledger.conditional_update(
            Order,
            order_id,
            expected={"status": OrderStatus.PENDING.value, "payment_status": PaymentStatus.PENDING.value},
            values={"payment_status": PaymentStatus.PROCESSING.value, "transaction_id": transaction.id},
        )
        if not submitted:
            self.ledger.rollback()
            current = self.get(order_id)
            raise InvalidStateError(
                "Order changed before the payment could be submitted",
                details={"status": current.status, "payment_status": current.payment_status},
            )

        self.ledger.notify_after_commit(
            order.pharmacy_id,
            NotificationKind.ORDER_UPDATE.value,
            {"order_id": order_id, "payment_status": PaymentStatus.PROCESSING.value,
             "message": f"Payment submitted for order #{order.display_code}"},
        )
        self.ledger.commit()
        logger.info(f"Payment {transaction.id} submitted for order {order_id}")
        return self.get(order_id)

    def verify_payment(self, order_id: str, outcome: str, verifier_id: str, verifier_role: str) -> Order:
        """Confirm or reject a submitted payment.

        This is the only path by which an order becomes PROCESSING. When the
        order carries a pending transaction, the transaction and the order are
        settled together by the payment gate.
        """
        outcome = parse_enum(PaymentStatus, outcome, "outcome")
        if outcome not in (PaymentStatus.PAID, PaymentStatus.REJECTED):
            raise ValidationError("Outcome must be PAID or REJECTED", details={"field": "outcome"})

        order = self.get(order_id)
        if verifier_role != "admin" and verifier_id != order.pharmacy_id:
            raise PermissionDeniedError("Only the order's pharmacy or an admin may verify its payment")
        if order.payment_status == PaymentStatus.PENDING.value:
            raise InvalidStateError(
                "Payment has not been submitted yet",
                details={"payment_status": order.payment_status},
            )
        PAYMENT_STATUS.ensure_transition(
            order.payment_status,
            outcome,
            reason=f"Payment already {order.payment_status.lower()}",
        )

        if order.transaction_id:
            transaction = self.ledger.get(Transaction, order.transaction_id)
            if transaction is not None and transaction.status == TransactionStatus.PENDING_VERIFICATION.value:
                from fulfillment.services.payment_gate import PaymentGate

                transaction_outcome = (
                    TransactionStatus.VERIFIED if outcome == PaymentStatus.PAID else TransactionStatus.REJECTED
                )
                PaymentGate(self.ledger).verify(transaction.id, transaction_outcome, verifier_id, verifier_role)
                return self.get(order_id)

        try:
            self.settle_payment(order, outcome)
        except WorkflowError:
            self.ledger.rollback()
            raise
        self.ledger.commit()
        return self.get(order_id)

    def settle_payment(self, order: Order, outcome, transaction_id: Optional[str] = None) -> Order:
        """Apply a payment outcome to the order without committing.

        Re-applying an outcome the order already carries is a no-op. A
        transaction_id ties the outcome to one transaction: a transaction
        other than the one linked to the order, or one that does not pay
        the order total, is refused with PreconditionError.
        """
        outcome = parse_enum(PaymentStatus, outcome, "outcome")
        if transaction_id is not None and outcome == PaymentStatus.PAID:
            self._ensure_pays_order(order, transaction_id)
        if order.payment_status == outcome.value:
            logger.info(f"Order {order.id} already {outcome.value}, nothing to apply")
            return order

        if outcome == PaymentStatus.PAID and order.status != OrderStatus.PENDING.value:
            raise PreconditionError(
                f"Order is {order.status} and can no longer accept payment",
                details={"status": order.status, "payment_status": order.payment_status},
            )

        if order.payment_status == PaymentStatus.PENDING.value:
            # Verified before the patient attached the payment to the order
            PAYMENT_STATUS.ensure_transition(order.payment_status, PaymentStatus.PROCESSING)
            self._write_order(order, {
                "payment_status": PaymentStatus.PROCESSING.value,
                "transaction_id": transaction_id or order.transaction_id,
            })
            order = self.get(order.id)

        PAYMENT_STATUS.ensure_transition(order.payment_status, outcome)
        now = datetime.utcnow()
        if outcome == PaymentStatus.PAID:
            ORDER_STATUS.ensure_transition(order.status, OrderStatus.PROCESSING)
            values = {
                "status": OrderStatus.PROCESSING.value,
                "payment_status": PaymentStatus.PAID.value,
                "paid_at": now,
                "processing_at": now,
            }
        else:
            values = {"payment_status": PaymentStatus.REJECTED.value}
            if order.status != OrderStatus.CANCELLED.value:
                ORDER_STATUS.ensure_transition(order.status, OrderStatus.CANCELLED)
                values.update({
                    "status": OrderStatus.CANCELLED.value,
                    "cancelled_at": now,
                    "cancel_reason": "Payment rejected",
                })

        self._write_order(order, values)
        order = self.get(order.id)
        self._notify_patient(order)
        logger.info(f"Order {order.id} payment {outcome.value}, status now {order.status}")
        return order

    def _ensure_pays_order(self, order: Order, transaction_id: str) -> None:
        if order.transaction_id and order.transaction_id != transaction_id:
            raise PreconditionError(
                "Order is linked to another payment",
                details={"transaction_id": transaction_id, "linked_transaction_id": order.transaction_id},
            )
        transaction = self.ledger.require(Transaction, transaction_id, "Transaction")
        if transaction.item_type != ItemType.ORDER.value or transaction.item_id != order.id:
            raise PreconditionError(
                "Transaction does not belong to this order",
                details={"transaction_id": transaction_id},
            )
        if abs(transaction.amount - order.total) > AMOUNT_TOLERANCE:
            raise PreconditionError(
                "Transaction amount does not match the order total",
                details={"expected": order.total, "actual": transaction.amount},
            )

    def assign_courier(self, order_id: str, courier_id: str, actor_id: str, actor_role: str) -> Order:
        self._ensure_pharmacy(self.get(order_id), actor_id, actor_role)
        return CourierScheduler(self.ledger).assign(order_id, courier_id)

    def reassign_courier(self, order_id: str, courier_id: str, actor_id: str, actor_role: str) -> Order:
        self._ensure_pharmacy(self.get(order_id), actor_id, actor_role)
        return CourierScheduler(self.ledger).reassign(order_id, courier_id)

    def mark_delivered(self, order_id: str, actor_id: str, actor_role: str) -> Order:
        """Confirm delivery of a dispatched order"""
        order = self.get(order_id)
        if actor_role != "admin" and actor_id not in (order.courier_id, order.pharmacy_id):
            raise PermissionDeniedError("Only the assigned courier, the pharmacy or an admin may confirm delivery")
        ORDER_STATUS.ensure_transition(
            order.status,
            OrderStatus.DELIVERED,
            reason=f"Only dispatched orders can be delivered; order is {order.status}",
        )

        delivered = self.ledger.conditional_update(
            Order,
            order_id,
            expected={"status": OrderStatus.DISPATCHED.value, "courier_id": order.courier_id},
            values={"status": OrderStatus.DELIVERED.value, "delivered_at": datetime.utcnow()},
        )
        if not delivered:
            self.ledger.rollback()
            current = self.get(order_id)
            raise InvalidStateError(
                f"Order changed before delivery was confirmed; it is now {current.status}",
                details={"status": current.status},
            )

        order = self.get(order_id)
        self._notify_patient(order)
        self.ledger.commit()
        logger.info(f"Order {order_id} delivered by courier {order.courier_id}")

        CourierScheduler(self.ledger).release(order.courier_id, delivered=True)
        return self.get(order_id)

    def cancel(self, order_id: str, reason: Optional[str], actor_id: str, actor_role: str) -> Order:
        """Cancel an order that has not left the pharmacy"""
        order = self.get(order_id)
        if actor_role != "admin" and actor_id not in (order.patient_id, order.pharmacy_id):
            raise PermissionDeniedError("Only the patient, the pharmacy or an admin may cancel this order")
        if order.status == OrderStatus.DISPATCHED.value:
            refusal = "A dispatched order cannot be cancelled; confirm delivery or raise an exception"
        else:
            refusal = f"Order is already {order.status.lower()}"
        ORDER_STATUS.ensure_transition(order.status, OrderStatus.CANCELLED, reason=refusal)

        cancelled = self.ledger.conditional_update(
            Order,
            order_id,
            expected={"status": order.status},
            values={
                "status": OrderStatus.CANCELLED.value,
                "cancelled_at": datetime.utcnow(),
                "cancel_reason": reason,
            },
        )
        if not cancelled:
            self.ledger.rollback()
            current = self.get(order_id)
            raise InvalidStateError(
                f"Order changed before it could be cancelled; it is now {current.status}",
                details={"status": current.status},
            )

        order = self.get(order_id)
        self._notify_patient(order)
        self.ledger.notify_after_commit(
            order.pharmacy_id,
            NotificationKind.ORDER_UPDATE.value,
            {"order_id": order_id, "status": order.status,
             "message": f"Order #{order.display_code} was cancelled"},
        )
        self.ledger.commit()
        logger.info(f"Order {order_id} cancelled by {actor_role} {actor_id}")
        return self.get(order_id)

    @staticmethod
    def _ensure_pharmacy(order: Order, actor_id: str, actor_role: str) -> None:
        if actor_role != "admin" and actor_id != order.pharmacy_id:
            raise PermissionDeniedError("Only the order's pharmacy or an admin may dispatch this order")

    def _write_order(self, order: Order, values: dict) -> None:
        written = self.ledger.conditional_update(
            Order,
            order.id,
            expected={"status": order.status, "payment_status": order.payment_status},
            values=values,
        )
        if not written:
            raise ConflictError(
                "Order was modified concurrently",
                details={"order_id": order.id},
            )

    def _notify_patient(self, order: Order) -> None:
        self.ledger.notify_after_commit(
            order.patient_id,
            NotificationKind.ORDER_UPDATE.value,
            {
                "order_id": order.id,
                "status": order.status,
                "payment_status": order.payment_status,
                "message": f"Your order #{order.display_code} is now {status_label(order.status)}",
            },
        )
