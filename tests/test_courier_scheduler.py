"""
Unit tests for courier selection and assignment
"""

import pytest

from fulfillment.models.courier import Courier
from fulfillment.models.order import Order
from fulfillment.services.courier_scheduler import CourierScheduler
from fulfillment.services.order_workflow import OrderWorkflow
from fulfillment.utils.error_handler import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    PreconditionError,
    ValidationError,
)


@pytest.fixture
def scheduler(ledger):
    return CourierScheduler(ledger)


class TestDirectory:

    def test_register_defaults_offline(self, scheduler):
        courier = scheduler.register(name="Neema Said", vehicle="Bicycle")
        assert courier.id
        assert courier.status == "Offline"
        assert courier.orders_delivered == 0

    def test_register_rejects_unknown_vehicle(self, scheduler):
        with pytest.raises(ValidationError):
            scheduler.register(name="Neema Said", vehicle="Helicopter")

    def test_register_duplicate_id(self, scheduler, make_courier):
        make_courier()
        with pytest.raises(ConflictError):
            scheduler.register(name="Someone Else", vehicle="Van", courier_id="courier-1")

    def test_eligible_couriers_best_rated_first(self, scheduler, make_courier):
        make_courier("courier-1", "Juma Ally", rating=4.2)
        make_courier("courier-2", "Neema Said", rating=4.9)
        make_courier("courier-3", "Hamisi Omari", status="Offline", rating=5.0)

        eligible = scheduler.find_eligible()
        assert [c.id for c in eligible] == ["courier-2", "courier-1"]

    def test_list_by_status(self, scheduler, make_courier):
        make_courier("courier-1")
        make_courier("courier-2", status="Offline")
        assert [c.id for c in scheduler.list_couriers("offline")] == ["courier-2"]
        assert len(scheduler.list_couriers()) == 2
        with pytest.raises(ValidationError):
            scheduler.list_couriers("Sleeping")

    def test_set_status(self, scheduler, make_courier):
        make_courier(status="Offline")
        courier = scheduler.set_status("courier-1", "Available", current_location="Mwenge")
        assert courier.status == "Available"
        assert courier.current_location == "Mwenge"

    def test_set_status_unknown_courier(self, scheduler):
        with pytest.raises(NotFoundError):
            scheduler.set_status("courier-9", "Available")


class TestAssign:

    def test_assign_before_payment_verified(self, scheduler, place_order, make_courier):
        make_courier()
        order = place_order()
        with pytest.raises(PreconditionError, match="Payment not yet verified"):
            scheduler.assign(order.id, "courier-1")
        assert scheduler.ledger.get(Order, order.id).status == "PENDING"

    def test_assign_while_payment_processing(self, scheduler, place_order, pay_order, make_courier):
        make_courier()
        order = pay_order(place_order(), verify=False)
        with pytest.raises(PreconditionError, match="Payment not yet verified"):
            scheduler.assign(order.id, "courier-1")

    def test_assign_paid_order(self, scheduler, place_order, pay_order, make_courier, sent):
        make_courier()
        order = pay_order(place_order())
        dispatched = scheduler.assign(order.id, "courier-1")

        assert dispatched.status == "DISPATCHED"
        assert dispatched.courier_id == "courier-1"
        assert dispatched.dispatched_at is not None
        assert scheduler.ledger.get(Courier, "courier-1").status == "Busy"

        kinds = {(user_id, kind) for user_id, kind, _ in sent}
        assert ("courier-1", "DELIVERY_ASSIGNED") in kinds
        assert ("patient-1", "ORDER_UPDATE") in kinds

    def test_busy_courier_is_refused(self, scheduler, place_order, pay_order, make_courier):
        make_courier()
        first = pay_order(place_order())
        second = pay_order(place_order())
        scheduler.assign(first.id, "courier-1")

        with pytest.raises(ConflictError, match="no longer available"):
            scheduler.assign(second.id, "courier-1")
        assert scheduler.ledger.get(Order, second.id).status == "PROCESSING"

    def test_same_courier_race_loses_on_index(self, db, scheduler, place_order, pay_order, make_courier):
        make_courier()
        first = pay_order(place_order(pharmacy_id="pharmacy-1"))
        second = pay_order(place_order(pharmacy_id="pharmacy-2"))
        scheduler.assign(first.id, "courier-1")

        # The second pharmacy still sees the courier as Available
        db.query(Courier).filter(Courier.id == "courier-1").update({"status": "Available"})
        db.commit()

        with pytest.raises(ConflictError, match="just assigned to another order"):
            scheduler.assign(second.id, "courier-1")

        loser = scheduler.ledger.get(Order, second.id)
        assert loser.status == "PROCESSING"
        assert loser.courier_id is None
        assert scheduler.ledger.get(Order, first.id).courier_id == "courier-1"

    def test_order_already_dispatched(self, scheduler, place_order, pay_order, make_courier):
        make_courier("courier-1")
        make_courier("courier-2", "Neema Said")
        order = pay_order(place_order())
        scheduler.assign(order.id, "courier-1")
        with pytest.raises(PreconditionError):
            scheduler.assign(order.id, "courier-2")
        assert scheduler.ledger.get(Order, order.id).courier_id == "courier-1"

    def test_cancelled_order_cannot_be_dispatched(self, scheduler, place_order, pay_order, make_courier):
        make_courier()
        order = pay_order(place_order())
        OrderWorkflow(scheduler.ledger).cancel(order.id, None, actor_id="pharmacy-1", actor_role="pharmacy")
        with pytest.raises(PreconditionError, match="must be processing"):
            scheduler.assign(order.id, "courier-1")


class TestRelease:

    def test_delivery_frees_courier(self, scheduler, place_order, pay_order, make_courier):
        make_courier()
        order = pay_order(place_order())
        scheduler.assign(order.id, "courier-1")
        OrderWorkflow(scheduler.ledger).mark_delivered(order.id, actor_id="courier-1", actor_role="courier")

        courier = scheduler.ledger.get(Courier, "courier-1")
        assert courier.status == "Available"
        assert courier.orders_delivered == 1
        assert [c.id for c in scheduler.find_eligible()] == ["courier-1"]

    def test_cannot_go_offline_mid_delivery(self, scheduler, place_order, pay_order, make_courier):
        make_courier()
        order = pay_order(place_order())
        scheduler.assign(order.id, "courier-1")
        with pytest.raises(PreconditionError):
            scheduler.set_status("courier-1", "Offline")

    def test_reassign(self, scheduler, place_order, pay_order, make_courier):
        make_courier("courier-1")
        make_courier("courier-2", "Neema Said")
        order = pay_order(place_order())
        scheduler.assign(order.id, "courier-1")

        moved = scheduler.reassign(order.id, "courier-2")
        assert moved.courier_id == "courier-2"
        assert moved.courier_name == "Neema Said"
        assert scheduler.ledger.get(Courier, "courier-1").status == "Available"
        assert scheduler.ledger.get(Courier, "courier-2").status == "Busy"

    def test_reassign_requires_dispatch(self, scheduler, place_order, pay_order, make_courier):
        make_courier()
        order = pay_order(place_order())
        with pytest.raises(InvalidStateError):
            scheduler.reassign(order.id, "courier-1")
