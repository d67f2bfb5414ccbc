"""
Courier directory and assignment of couriers to paid orders

A courier's Available/Busy status is only a hint for listing. The real
guard is on the order: a partial unique index allows one DISPATCHED
order per courier, so two concurrent assignments of the same courier
cannot both be written.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from fulfillment.models.courier import Courier
from fulfillment.models.order import Order
from fulfillment.services.ledger import Ledger
from fulfillment.services.state_machine import (
    CourierStatus,
    NotificationKind,
    OrderStatus,
    PaymentStatus,
    parse_enum,
)
from fulfillment.utils.error_handler import (
    ConflictError,
    InvalidStateError,
    PreconditionError,
    ValidationError,
)

logger = logging.getLogger(__name__)

VEHICLES = ("Motorcycle", "Bicycle", "Van")


class CourierScheduler:
    """Selects couriers and hands paid orders over to them"""

    def __init__(self, ledger: Ledger):
        self.ledger = ledger

    def list_couriers(self, status: Optional[str] = None) -> List[Courier]:
        query = self.ledger.db.query(Courier)
        if status:
            if status.capitalize() not in {s.value for s in CourierStatus}:
                raise ValidationError(f"Unknown courier status: {status}", details={"field": "status"})
            query = query.filter(Courier.status == status.capitalize())
        return query.order_by(Courier.name).all()

    def find_eligible(self) -> List[Courier]:
        """Couriers that may take a new delivery, best rated first"""
        return (
            self.ledger.db.query(Courier)
            .filter(Courier.status == CourierStatus.AVAILABLE.value)
            .order_by(Courier.rating.desc(), Courier.orders_delivered.desc())
            .all()
        )

    def register(
        self,
        name: str,
        vehicle: str,
        current_location: Optional[str] = None,
        courier_id: Optional[str] = None,
        status: str = CourierStatus.OFFLINE.value,
    ) -> Courier:
        if not name or not name.strip():
            raise ValidationError("Courier name is required", details={"field": "name"})
        if vehicle not in VEHICLES:
            raise ValidationError(
                f"Vehicle must be one of: {', '.join(VEHICLES)}",
                details={"field": "vehicle"},
            )
        if courier_id and self.ledger.get(Courier, courier_id) is not None:
            raise ConflictError("Courier already registered", details={"courier_id": courier_id})

        courier = Courier(
            name=name.strip(),
            vehicle=vehicle,
            status=parse_enum(CourierStatus, status, "status").value,
            current_location=current_location,
            updated_at=datetime.utcnow(),
        )
        if courier_id:
            courier.id = courier_id
        self.ledger.add(courier)
        self.ledger.commit()
        logger.info(f"Registered courier {courier.id} ({courier.name})")
        return self.ledger.get(Courier, courier.id)

    def set_status(self, courier_id: str, status: str, current_location: Optional[str] = None) -> Courier:
        """Courier going online or offline"""
        status = parse_enum(CourierStatus, status, "status")
        courier = self.ledger.require(Courier, courier_id, "Courier")
        if status != CourierStatus.BUSY and self._active_order_id(courier_id) is not None:
            raise PreconditionError(
                "Courier has an active delivery; confirm it before changing status",
                details={"courier_id": courier_id},
            )

        values = {"status": status.value}
        if current_location:
            values["current_location"] = current_location
        if not self.ledger.conditional_update(Courier, courier_id, expected={"status": courier.status}, values=values):
            self.ledger.rollback()
            raise ConflictError("Courier status changed concurrently", details={"courier_id": courier_id})
        self.ledger.commit()
        logger.info(f"Courier {courier_id} is now {status.value}")
        return self.ledger.get(Courier, courier_id)

    def assign(self, order_id: str, courier_id: str) -> Order:
        """Hand a paid, processing order to an available courier"""
        order = self.ledger.require(Order, order_id, "Order")
        if order.payment_status != PaymentStatus.PAID.value:
            raise PreconditionError(
                "Payment not yet verified",
                details={"status": order.status, "payment_status": order.payment_status},
            )
        if order.status != OrderStatus.PROCESSING.value:
            raise PreconditionError(
                f"Order must be processing to assign a courier; it is {order.status}",
                details={"status": order.status, "payment_status": order.payment_status},
            )

        courier = self.ledger.require(Courier, courier_id, "Courier")
        if courier.status != CourierStatus.AVAILABLE.value:
            raise ConflictError(
                f"Courier {courier.name} is no longer available",
                details={"courier_id": courier_id, "courier_status": courier.status},
            )

        try:
            assigned = self.ledger.conditional_update(
                Order,
                order_id,
                expected={
                    "status": OrderStatus.PROCESSING.value,
                    "payment_status": PaymentStatus.PAID.value,
                    "courier_id": None,
                },
                values={
                    "status": OrderStatus.DISPATCHED.value,
                    "courier_id": courier_id,
                    "courier_name": courier.name,
                    "dispatched_at": datetime.utcnow(),
                },
            )
        except IntegrityError:
            self.ledger.rollback()
            logger.warning(f"Courier {courier_id} was claimed by another order while assigning order {order_id}")
            raise ConflictError(
                f"Courier {courier.name} was just assigned to another order",
                details={"courier_id": courier_id},
            )

        if not assigned:
            self.ledger.rollback()
            current = self.ledger.require(Order, order_id, "Order")
            if current.status == OrderStatus.DISPATCHED.value:
                raise ConflictError(
                    "Order was assigned to another courier",
                    details={"courier_id": current.courier_id},
                )
            raise PreconditionError(
                f"Order must be processing to assign a courier; it is {current.status}",
                details={"status": current.status, "payment_status": current.payment_status},
            )

        order = self.ledger.get(Order, order_id)
        self._notify_dispatch(order)
        self.ledger.commit()
        logger.info(f"Order {order_id} dispatched with courier {courier_id}")

        self._mark_busy(courier_id)
        return self.ledger.get(Order, order_id)

    def reassign(self, order_id: str, courier_id: str) -> Order:
        """Move a dispatched order to a different courier"""
        order = self.ledger.require(Order, order_id, "Order")
        if order.status != OrderStatus.DISPATCHED.value:
            raise InvalidStateError(
                f"Only dispatched orders can be reassigned; order is {order.status}",
                details={"status": order.status},
            )
        previous_courier_id = order.courier_id
        if courier_id == previous_courier_id:
            raise ValidationError("Order is already assigned to this courier", details={"field": "courier_id"})

        courier = self.ledger.require(Courier, courier_id, "Courier")
        if courier.status != CourierStatus.AVAILABLE.value:
            raise ConflictError(
                f"Courier {courier.name} is no longer available",
                details={"courier_id": courier_id, "courier_status": courier.status},
            )

        try:
            reassigned = self.ledger.conditional_update(
                Order,
                order_id,
                expected={"status": OrderStatus.DISPATCHED.value, "courier_id": previous_courier_id},
                values={"courier_id": courier_id, "courier_name": courier.name},
            )
        except IntegrityError:
            self.ledger.rollback()
            raise ConflictError(
                f"Courier {courier.name} was just assigned to another order",
                details={"courier_id": courier_id},
            )
        if not reassigned:
            self.ledger.rollback()
            raise ConflictError("Order changed while reassigning", details={"order_id": order_id})

        order = self.ledger.get(Order, order_id)
        self._notify_dispatch(order)
        self.ledger.commit()
        logger.info(f"Order {order_id} reassigned from courier {previous_courier_id} to {courier_id}")

        self._mark_busy(courier_id)
        self.release(previous_courier_id)
        return self.ledger.get(Order, order_id)

    def release(self, courier_id: Optional[str], delivered: bool = False) -> None:
        """Best-effort: return a courier with no dispatched order to Available"""
        if not courier_id:
            return
        try:
            if delivered:
                self.ledger.conditional_update(
                    Courier,
                    courier_id,
                    expected={},
                    values={"orders_delivered": Courier.orders_delivered + 1},
                )
            if self._active_order_id(courier_id) is None:
                self.ledger.conditional_update(
                    Courier,
                    courier_id,
                    expected={"status": CourierStatus.BUSY.value},
                    values={"status": CourierStatus.AVAILABLE.value},
                )
            self.ledger.commit()
        except SQLAlchemyError as e:
            self.ledger.rollback()
            logger.error(f"Failed to release courier {courier_id}: {e}")

    def _mark_busy(self, courier_id: str) -> None:
        try:
            self.ledger.conditional_update(
                Courier,
                courier_id,
                expected={"status": CourierStatus.AVAILABLE.value},
                values={"status": CourierStatus.BUSY.value},
            )
            self.ledger.commit()
        except SQLAlchemyError as e:
            self.ledger.rollback()
            logger.error(f"Failed to mark courier {courier_id} busy: {e}")

    def _active_order_id(self, courier_id: str) -> Optional[str]:
        row = (
            self.ledger.db.query(Order.id)
            .filter(Order.courier_id == courier_id, Order.status == OrderStatus.DISPATCHED.value)
            .first()
        )
        return row.id if row else None

    def _notify_dispatch(self, order: Order) -> None:
        self.ledger.notify_after_commit(
            order.patient_id,
            NotificationKind.ORDER_UPDATE.value,
            {
                "order_id": order.id,
                "status": order.status,
                "courier_name": order.courier_name,
                "message": f"Your order #{order.display_code} is now Dispatched with {order.courier_name}",
            },
        )
        self.ledger.notify_after_commit(
            order.courier_id,
            NotificationKind.DELIVERY_ASSIGNED.value,
            {
                "order_id": order.id,
                "pickup": order.pharmacy_location or order.pharmacy_name,
                "delivery_address": order.delivery_address,
                "message": f"New delivery #{order.display_code} for {order.delivery_address}",
            },
        )
