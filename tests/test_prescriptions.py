"""
API tests for prescriptions: issue, QR lookup, lock, dispense
"""

import pytest
from datetime import datetime, timedelta

from fulfillment.models.prescription import Prescription

PRESCRIPTION_DATA = {
    "patient_id": "patient-1",
    "patient_name": "Asha Mussa",
    "appointment_id": "appt-9",
    "items": [
        {"medication": "Amoxicillin", "dosage": "500mg", "frequency": "Three times daily", "duration": "7 days"},
    ],
    "notes": "Complete the full course",
}


@pytest.fixture
def doctor(auth_headers):
    return auth_headers("doctor-1", "doctor", "Dr. Kombo")


@pytest.fixture
def pharmacy_a(auth_headers):
    return auth_headers("pharmacy-a", "pharmacy", "Uhuru Pharmacy")


@pytest.fixture
def pharmacy_b(auth_headers):
    return auth_headers("pharmacy-b", "pharmacy", "Mnazi Pharmacy")


@pytest.fixture
def prescription(client, doctor):
    response = client.post("/api/v1/prescriptions/", json=PRESCRIPTION_DATA, headers=doctor)
    assert response.status_code == 201
    return response.json()


class TestPrescriptionFlow:

    def test_issue(self, prescription):
        assert prescription["status"] == "ISSUED"
        assert prescription["doctor_id"] == "doctor-1"
        assert prescription["doctor_name"] == "Dr. Kombo"
        assert prescription["lookup_code"].startswith("RX-")

    def test_lookup_lock_dispense(self, client, prescription, pharmacy_a, pharmacy_b):
        code = prescription["lookup_code"]
        response = client.get(f"/api/v1/prescriptions/lookup/{code}", headers=pharmacy_a)
        assert response.status_code == 200
        assert response.json()["can_lock"] is True
        assert response.json()["is_expired"] is False

        response = client.post(f"/api/v1/prescriptions/{prescription['id']}/lock", json={}, headers=pharmacy_a)
        assert response.status_code == 200
        assert response.json()["status"] == "LOCKED_BY_PHARMACY"
        assert response.json()["pharmacy_name"] == "Uhuru Pharmacy"

        response = client.post(f"/api/v1/prescriptions/{prescription['id']}/lock", json={}, headers=pharmacy_b)
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "INVALID_STATE"
        assert response.json()["error"]["message"] == "Prescription already locked by Uhuru Pharmacy"

        response = client.get(f"/api/v1/prescriptions/lookup/{code}", headers=pharmacy_b)
        assert response.json()["can_lock"] is False

        response = client.post(f"/api/v1/prescriptions/{prescription['id']}/dispense", headers=pharmacy_b)
        assert response.status_code == 409

        response = client.post(f"/api/v1/prescriptions/{prescription['id']}/dispense", headers=pharmacy_a)
        assert response.status_code == 200
        assert response.json()["status"] == "DISPENSED"

        response = client.post(f"/api/v1/prescriptions/{prescription['id']}/dispense", headers=pharmacy_a)
        assert response.status_code == 409
        assert response.json()["error"]["message"] == "Prescription already dispensed"

    def test_lookup_overdue_is_read_only(self, client, db, prescription, pharmacy_a):
        db.query(Prescription).filter(Prescription.id == prescription["id"]).update(
            {"expires_at": datetime.utcnow() - timedelta(minutes=5)}
        )
        db.commit()

        response = client.get(f"/api/v1/prescriptions/lookup/{prescription['lookup_code']}", headers=pharmacy_a)
        assert response.status_code == 200
        body = response.json()
        assert body["is_expired"] is True
        assert body["can_lock"] is False
        assert body["prescription"]["status"] == "ISSUED"

    def test_lookup_unknown_code(self, client, pharmacy_a):
        response = client.get("/api/v1/prescriptions/lookup/RX-DEADBEEF", headers=pharmacy_a)
        assert response.status_code == 404

    def test_patient_cannot_lookup(self, client, prescription, auth_headers):
        response = client.get(
            f"/api/v1/prescriptions/lookup/{prescription['lookup_code']}",
            headers=auth_headers("patient-1", "patient"),
        )
        assert response.status_code == 403

    def test_doctor_cancels(self, client, prescription, doctor):
        response = client.post(
            f"/api/v1/prescriptions/{prescription['id']}/cancel", json={"reason": "Allergy"}, headers=doctor
        )
        assert response.status_code == 200
        assert response.json()["status"] == "CANCELLED"

    def test_admin_expiry_sweep(self, client, db, prescription, auth_headers):
        admin = auth_headers("admin-1", "admin")
        response = client.post(f"/api/v1/prescriptions/{prescription['id']}/expire", headers=admin)
        assert response.status_code == 412

        db.query(Prescription).filter(Prescription.id == prescription["id"]).update(
            {"expires_at": datetime.utcnow() - timedelta(minutes=5)}
        )
        db.commit()
        response = client.post("/api/v1/prescriptions/expire-overdue", headers=admin)
        assert response.status_code == 200
        assert response.json() == {"expired": 1}


class TestPrescriptionAccess:

    def test_patient_uploads_external(self, client, auth_headers):
        patient = auth_headers("patient-1", "patient", "Asha Mussa")
        response = client.post(
            "/api/v1/prescriptions/external",
            json={"file_url": "https://files.example.com/rx/123.jpg"},
            headers=patient,
        )
        assert response.status_code == 201
        assert response.json()["is_external"] is True

        response = client.get("/api/v1/prescriptions/", headers=patient)
        assert len(response.json()) == 1

    def test_external_upload_needs_http_url(self, client, auth_headers):
        response = client.post(
            "/api/v1/prescriptions/external",
            json={"file_url": "file:///etc/passwd"},
            headers=auth_headers("patient-1", "patient"),
        )
        assert response.status_code == 422

    def test_pharmacy_cannot_issue(self, client, pharmacy_a):
        response = client.post("/api/v1/prescriptions/", json=PRESCRIPTION_DATA, headers=pharmacy_a)
        assert response.status_code == 403

    def test_other_patient_cannot_read(self, client, prescription, auth_headers):
        response = client.get(
            f"/api/v1/prescriptions/{prescription['id']}", headers=auth_headers("patient-2", "patient")
        )
        assert response.status_code == 403

    def test_pharmacy_lists_locked(self, client, prescription, pharmacy_a):
        client.post(f"/api/v1/prescriptions/{prescription['id']}/lock", json={}, headers=pharmacy_a)
        response = client.get("/api/v1/prescriptions/?status=LOCKED_BY_PHARMACY", headers=pharmacy_a)
        assert [p["id"] for p in response.json()] == [prescription["id"]]
