"""
API tests for the order lifecycle, from checkout to delivery
"""

import pytest

ORDER_DATA = {
    "pharmacy_id": "pharmacy-1",
    "pharmacy_name": "Uhuru Pharmacy",
    "pharmacy_location": "Kariakoo",
    "items": [
        {"item_id": "amox-500", "name": "Amoxicillin 500mg", "quantity": 2, "price": 5000},
        {"item_id": "para-1g", "name": "Paracetamol 1g", "quantity": 1, "price": 2500},
    ],
    "delivery_address": "Plot 12, Sinza, Dar es Salaam",
    "payment_method": "M-Pesa",
}


@pytest.fixture
def patient(auth_headers):
    return auth_headers("patient-1", "patient", "Asha Mussa")


@pytest.fixture
def pharmacy(auth_headers):
    return auth_headers("pharmacy-1", "pharmacy", "Uhuru Pharmacy")


@pytest.fixture
def admin(auth_headers):
    return auth_headers("admin-1", "admin", "Ops")


def create_order(client, headers):
    response = client.post("/api/v1/orders/", json=ORDER_DATA, headers=headers)
    assert response.status_code == 201
    return response.json()


def submit_payment(client, order, headers):
    response = client.post("/api/v1/transactions/", json={
        "amount": order["total"],
        "item_type": "order",
        "item_id": order["id"],
        "reference_number": "MP240101ABC",
        "payment_method": "M-Pesa",
    }, headers=headers)
    assert response.status_code == 201
    transaction = response.json()

    response = client.post(
        f"/api/v1/orders/{order['id']}/payment",
        json={"transaction_ref": transaction["id"]},
        headers=headers,
    )
    assert response.status_code == 200
    return response.json()


def online_courier(client, admin, auth_headers, courier_id="courier-1", name="Juma Ally"):
    response = client.post("/api/v1/couriers/", json={
        "id": courier_id, "name": name, "vehicle": "Motorcycle", "current_location": "Mwenge",
    }, headers=admin)
    assert response.status_code == 201
    response = client.put(
        f"/api/v1/couriers/{courier_id}/status",
        json={"status": "available"},
        headers=auth_headers(courier_id, "courier", name),
    )
    assert response.status_code == 200
    assert response.json()["status"] == "Available"


class TestOrderLifecycle:
    """Test cases for the full order flow"""

    def test_create_order_success(self, client, patient):
        data = create_order(client, patient)
        assert data["status"] == "PENDING"
        assert data["payment_status"] == "PENDING"
        assert data["total"] == 12500
        assert data["patient_id"] == "patient-1"
        assert data["patient_name"] == "Asha Mussa"
        assert len(data["display_code"]) == 8
        assert len(data["items"]) == 2

    def test_checkout_to_delivery(self, client, patient, pharmacy, admin, auth_headers):
        order = create_order(client, patient)
        submitted = submit_payment(client, order, patient)
        assert submitted["payment_status"] == "PROCESSING"

        response = client.post(
            f"/api/v1/orders/{order['id']}/verify-payment", json={"outcome": "paid"}, headers=pharmacy
        )
        assert response.status_code == 200
        assert response.json()["status"] == "PROCESSING"
        assert response.json()["payment_status"] == "PAID"

        online_courier(client, admin, auth_headers)
        eligible = client.get("/api/v1/couriers/eligible", headers=pharmacy).json()
        assert [c["id"] for c in eligible] == ["courier-1"]

        response = client.post(
            f"/api/v1/orders/{order['id']}/assign-courier", json={"courier_id": "courier-1"}, headers=pharmacy
        )
        assert response.status_code == 200
        assert response.json()["status"] == "DISPATCHED"
        assert response.json()["courier_name"] == "Juma Ally"
        assert client.get("/api/v1/couriers/eligible", headers=pharmacy).json() == []

        courier = auth_headers("courier-1", "courier", "Juma Ally")
        response = client.post(f"/api/v1/orders/{order['id']}/deliver", headers=courier)
        assert response.status_code == 200
        assert response.json()["status"] == "DELIVERED"

        response = client.get(f"/api/v1/orders/{order['id']}", headers=patient)
        assert response.json()["delivered_at"] is not None

    def test_assign_before_payment_verified(self, client, patient, pharmacy, admin, auth_headers):
        order = create_order(client, patient)
        online_courier(client, admin, auth_headers)

        response = client.post(
            f"/api/v1/orders/{order['id']}/assign-courier", json={"courier_id": "courier-1"}, headers=pharmacy
        )
        assert response.status_code == 412
        error = response.json()["error"]
        assert error["code"] == "PRECONDITION_FAILED"
        assert error["message"] == "Payment not yet verified"
        assert error["details"]["payment_status"] == "PENDING"
        assert error["request_id"]

    def test_same_courier_second_order_conflicts(self, client, patient, pharmacy, admin, auth_headers):
        first = create_order(client, patient)
        second = create_order(client, patient)
        for order in (first, second):
            submit_payment(client, order, patient)
            client.post(f"/api/v1/orders/{order['id']}/verify-payment", json={"outcome": "PAID"}, headers=pharmacy)
        online_courier(client, admin, auth_headers)

        response = client.post(
            f"/api/v1/orders/{first['id']}/assign-courier", json={"courier_id": "courier-1"}, headers=pharmacy
        )
        assert response.status_code == 200

        response = client.post(
            f"/api/v1/orders/{second['id']}/assign-courier", json={"courier_id": "courier-1"}, headers=pharmacy
        )
        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "CONFLICT"
        assert error["message"].endswith("Please refresh and try again.")

    def test_rejected_payment_cancels_order(self, client, patient, pharmacy):
        order = create_order(client, patient)
        submit_payment(client, order, patient)
        response = client.post(
            f"/api/v1/orders/{order['id']}/verify-payment", json={"outcome": "REJECTED"}, headers=pharmacy
        )
        assert response.status_code == 200
        assert response.json()["status"] == "CANCELLED"
        assert response.json()["payment_status"] == "REJECTED"

    def test_cancel_and_cancel_again(self, client, patient):
        order = create_order(client, patient)
        response = client.post(f"/api/v1/orders/{order['id']}/cancel", json={"reason": "Ordered twice"}, headers=patient)
        assert response.status_code == 200
        assert response.json()["status"] == "CANCELLED"

        response = client.post(f"/api/v1/orders/{order['id']}/cancel", json={}, headers=patient)
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "INVALID_STATE"


class TestOrderAccess:
    """Test cases for roles and visibility"""

    def test_doctor_cannot_place_order(self, client, auth_headers):
        response = client.post("/api/v1/orders/", json=ORDER_DATA, headers=auth_headers("doctor-1", "doctor"))
        assert response.status_code == 403

    def test_requires_token(self, client):
        response = client.get("/api/v1/orders/")
        assert response.status_code in (401, 403)

    def test_invalid_token(self, client):
        response = client.get("/api/v1/orders/", headers={"Authorization": "Bearer not-a-token"})
        assert response.status_code == 401

    def test_patients_see_only_their_orders(self, client, patient, auth_headers):
        order = create_order(client, patient)
        other = auth_headers("patient-2", "patient")

        response = client.get("/api/v1/orders/", headers=other)
        assert response.status_code == 200
        assert response.json()["total"] == 0

        response = client.get(f"/api/v1/orders/{order['id']}", headers=other)
        assert response.status_code == 403

    def test_pharmacy_lists_its_orders(self, client, patient, pharmacy):
        create_order(client, patient)
        create_order(client, patient)
        response = client.get("/api/v1/orders/?page=1&page_size=1", headers=pharmacy)
        data = response.json()
        assert data["total"] == 2
        assert data["total_pages"] == 2
        assert len(data["orders"]) == 1

    def test_unknown_status_filter(self, client, admin):
        response = client.get("/api/v1/orders/?status=SHIPPED", headers=admin)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_get_nonexistent_order(self, client, admin):
        response = client.get("/api/v1/orders/does-not-exist", headers=admin)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_other_pharmacy_cannot_verify(self, client, patient, auth_headers):
        order = create_order(client, patient)
        submit_payment(client, order, patient)
        response = client.post(
            f"/api/v1/orders/{order['id']}/verify-payment",
            json={"outcome": "PAID"},
            headers=auth_headers("pharmacy-2", "pharmacy"),
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "PERMISSION_DENIED"


class TestOrderValidation:
    """Test cases for request validation"""

    def test_empty_items(self, client, patient):
        response = client.post("/api/v1/orders/", json={**ORDER_DATA, "items": []}, headers=patient)
        assert response.status_code == 422

    def test_blank_delivery_address(self, client, patient):
        response = client.post("/api/v1/orders/", json={**ORDER_DATA, "delivery_address": "  "}, headers=patient)
        assert response.status_code == 422

    def test_negative_quantity(self, client, patient):
        items = [{"item_id": "x", "name": "X", "quantity": -1, "price": 10}]
        response = client.post("/api/v1/orders/", json={**ORDER_DATA, "items": items}, headers=patient)
        assert response.status_code == 422

    def test_bad_verification_outcome(self, client, patient, pharmacy):
        order = create_order(client, patient)
        response = client.post(
            f"/api/v1/orders/{order['id']}/verify-payment", json={"outcome": "MAYBE"}, headers=pharmacy
        )
        assert response.status_code == 422


class TestServiceEndpoints:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_root(self, client):
        assert client.get("/").json()["message"] == "Fulfillment Workflow API"
