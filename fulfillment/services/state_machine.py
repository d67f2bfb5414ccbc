"""
Status enums and transition tables for orders, prescriptions and transactions

Every status change in the workflows is checked against one of the
machines defined here before a conditional write is attempted.
"""

from enum import Enum
from typing import Dict, FrozenSet, Iterable, Optional

from fulfillment.utils.error_handler import InvalidStateError, ValidationError


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    DISPATCHED = "DISPATCHED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PAID = "PAID"
    REJECTED = "REJECTED"


class PrescriptionStatus(str, Enum):
    ISSUED = "ISSUED"
    LOCKED_BY_PHARMACY = "LOCKED_BY_PHARMACY"
    DISPENSED = "DISPENSED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class TransactionStatus(str, Enum):
    PENDING_VERIFICATION = "PENDING_VERIFICATION"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"


class ItemType(str, Enum):
    ORDER = "order"
    CONSULTATION = "consultation"
    APPOINTMENT = "appointment"
    ARTICLE = "article"
    SUBSCRIPTION = "subscription"


class CourierStatus(str, Enum):
    AVAILABLE = "Available"
    BUSY = "Busy"
    OFFLINE = "Offline"


class NotificationKind(str, Enum):
    ORDER_UPDATE = "ORDER_UPDATE"
    DELIVERY_ASSIGNED = "DELIVERY_ASSIGNED"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    PAYMENT_SUCCESS = "PAYMENT_SUCCESS"
    PAYMENT_REJECTED = "PAYMENT_REJECTED"
    PRESCRIPTION_UPDATE = "PRESCRIPTION_UPDATE"


def parse_enum(enum_type, value, field: str) -> Enum:
    """Coerce caller input into enum_type, raising ValidationError on unknown values"""
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_type)
        raise ValidationError(
            f"Unknown {field}: {value}. Expected one of: {allowed}",
            details={"field": field},
        )


class StateMachine:
    """A closed set of states with an explicit transition table"""

    def __init__(self, name: str, transitions: Dict[Enum, Iterable[Enum]]):
        self.name = name
        self.transitions: Dict[Enum, FrozenSet[Enum]] = {
            state: frozenset(targets) for state, targets in transitions.items()
        }
        self.state_type = type(next(iter(self.transitions)))

    @property
    def terminal_states(self) -> FrozenSet[Enum]:
        return frozenset(state for state, targets in self.transitions.items() if not targets)

    def coerce(self, state) -> Enum:
        return self.state_type(state)

    def is_terminal(self, state) -> bool:
        return self.coerce(state) in self.terminal_states

    def allowed_from(self, state) -> FrozenSet[Enum]:
        return self.transitions[self.coerce(state)]

    def can_transition(self, current, target) -> bool:
        return self.coerce(target) in self.allowed_from(current)

    def ensure_transition(self, current, target, reason: Optional[str] = None) -> None:
        """Raise InvalidStateError unless current -> target is in the table"""
        current = self.coerce(current)
        target = self.coerce(target)
        if target in self.transitions[current]:
            return
        if current in self.terminal_states:
            message = reason or f"{self.name} is already {current.value}"
        else:
            message = reason or f"Cannot move {self.name} from {current.value} to {target.value}"
        raise InvalidStateError(
            message,
            details={"entity": self.name, "current_status": current.value, "requested_status": target.value},
        )


ORDER_STATUS = StateMachine("order", {
    OrderStatus.PENDING: [OrderStatus.PROCESSING, OrderStatus.CANCELLED],
    OrderStatus.PROCESSING: [OrderStatus.DISPATCHED, OrderStatus.CANCELLED],
    OrderStatus.DISPATCHED: [OrderStatus.DELIVERED],
    OrderStatus.DELIVERED: [],
    OrderStatus.CANCELLED: [],
})

PAYMENT_STATUS = StateMachine("order payment", {
    PaymentStatus.PENDING: [PaymentStatus.PROCESSING],
    PaymentStatus.PROCESSING: [PaymentStatus.PAID, PaymentStatus.REJECTED],
    PaymentStatus.PAID: [],
    PaymentStatus.REJECTED: [],
})

PRESCRIPTION_STATUS = StateMachine("prescription", {
    PrescriptionStatus.ISSUED: [
        PrescriptionStatus.LOCKED_BY_PHARMACY,
        PrescriptionStatus.CANCELLED,
        PrescriptionStatus.EXPIRED,
    ],
    PrescriptionStatus.LOCKED_BY_PHARMACY: [
        PrescriptionStatus.DISPENSED,
        PrescriptionStatus.CANCELLED,
        PrescriptionStatus.EXPIRED,
    ],
    PrescriptionStatus.DISPENSED: [],
    PrescriptionStatus.EXPIRED: [],
    PrescriptionStatus.CANCELLED: [],
})

TRANSACTION_STATUS = StateMachine("transaction", {
    TransactionStatus.PENDING_VERIFICATION: [TransactionStatus.VERIFIED, TransactionStatus.REJECTED],
    TransactionStatus.VERIFIED: [],
    TransactionStatus.REJECTED: [],
})
