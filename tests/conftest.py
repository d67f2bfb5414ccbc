"""
Shared fixtures: an in-memory database, a recording notification channel and tokens
"""

import os

os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fulfillment.auth.auth_handler import AuthHandler
from fulfillment.database import Base, get_db
from fulfillment.models.transaction import Transaction
from fulfillment.services.courier_scheduler import CourierScheduler
from fulfillment.services.ledger import Ledger
from fulfillment.services.notification_dispatcher import NotificationDispatcher, get_dispatcher
from fulfillment.services.order_workflow import OrderWorkflow
from fulfillment.services.payment_gate import PaymentGate
from main import app

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

PATIENT = "patient-1"
PHARMACY = "pharmacy-1"
DOCTOR = "doctor-1"

ITEMS = [
    {"item_id": "amox-500", "name": "Amoxicillin 500mg", "quantity": 2, "price": 5000.0},
    {"item_id": "para-1g", "name": "Paracetamol 1g", "quantity": 1, "price": 2500.0},
]
ITEMS_TOTAL = 12500.0


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def sent():
    """Notifications handed to the dispatcher, as (user_id, kind, payload)"""
    return []


@pytest.fixture
def dispatcher(sent):
    def recording_channel(user_id, kind, payload):
        sent.append((user_id, kind, payload))

    return NotificationDispatcher(channels=[recording_channel])


@pytest.fixture
def ledger(db, dispatcher):
    return Ledger(db, dispatcher)


@pytest.fixture
def place_order(ledger):
    def _place(patient_id=PATIENT, pharmacy_id=PHARMACY, items=None):
        return OrderWorkflow(ledger).create(
            patient_id=patient_id,
            patient_name="Asha Mussa",
            pharmacy_id=pharmacy_id,
            pharmacy_name="Uhuru Pharmacy",
            items=items or ITEMS,
            delivery_address="Plot 12, Sinza, Dar es Salaam",
            payment_method="M-Pesa",
            pharmacy_location="Kariakoo",
        )

    return _place


@pytest.fixture
def pay_order(ledger):
    """Record, submit and verify the payment of an order, leaving it PROCESSING/PAID"""
    def _pay(order, verify=True):
        transaction = PaymentGate(ledger).record(
            payer_id=order.patient_id,
            amount=order.total,
            item_type="order",
            item_id=order.id,
            reference_number="MP240101ABC",
            payment_method="M-Pesa",
        )
        OrderWorkflow(ledger).submit_payment(order.id, transaction.id, actor_id=order.patient_id)
        if verify:
            OrderWorkflow(ledger).verify_payment(order.id, "PAID", order.pharmacy_id, "pharmacy")
        return OrderWorkflow(ledger).get(order.id)

    return _pay


@pytest.fixture
def raw_order_payment(db):
    """Write a pending order transaction straight to the table, skipping intake checks"""
    def _insert(order, amount=None):
        transaction = Transaction(
            payer_id=order.patient_id,
            recipient_id=order.pharmacy_id,
            amount=amount if amount is not None else order.total,
            currency="TZS",
            item_type="order",
            item_id=order.id,
            status="PENDING_VERIFICATION",
        )
        db.add(transaction)
        db.commit()
        return transaction

    return _insert


@pytest.fixture
def make_courier(ledger):
    def _make(courier_id="courier-1", name="Juma Ally", status="Available", rating=None):
        scheduler = CourierScheduler(ledger)
        courier = scheduler.register(name=name, vehicle="Motorcycle", courier_id=courier_id, status=status)
        if rating is not None:
            courier.rating = rating
            ledger.db.commit()
        return courier

    return _make


@pytest.fixture
def client(db, dispatcher):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    handler = AuthHandler()

    def _headers(user_id, role, name=None):
        token = handler.create_access_token({"sub": user_id, "role": role, "name": name or user_id})
        return {"Authorization": f"Bearer {token}"}

    return _headers
