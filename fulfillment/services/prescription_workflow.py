"""
Prescription workflow: issuance, pharmacy locking, dispensing, cancellation and expiry

A prescription is claimed by exactly one pharmacy (LOCKED_BY_PHARMACY)
before it can be dispensed, and it can be dispensed only once.
"""

import logging
import secrets
from datetime import datetime, timedelta
from typing import List, Optional

from fulfillment.config import settings
from fulfillment.models.prescription import Prescription, PrescriptionItem
from fulfillment.services.ledger import Ledger
from fulfillment.services.state_machine import (
    PRESCRIPTION_STATUS,
    NotificationKind,
    PrescriptionStatus,
)
from fulfillment.utils.error_handler import (
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    PreconditionError,
    ValidationError,
)

logger = logging.getLogger(__name__)


def generate_lookup_code() -> str:
    return f"RX-{secrets.token_hex(4).upper()}"


def is_overdue(prescription: Prescription, now: Optional[datetime] = None) -> bool:
    if prescription.expires_at is None or PRESCRIPTION_STATUS.is_terminal(prescription.status):
        return False
    return (now or datetime.utcnow()) >= prescription.expires_at


class PrescriptionWorkflow:
    """Service owning the prescription state machine"""

    def __init__(self, ledger: Ledger):
        self.ledger = ledger

    def issue(
        self,
        patient_id: str,
        patient_name: Optional[str],
        items: List[dict],
        doctor_id: Optional[str] = None,
        doctor_name: Optional[str] = None,
        notes: Optional[str] = None,
        appointment_id: Optional[str] = None,
        is_external: bool = False,
        external_file_url: Optional[str] = None,
        lookup_code: Optional[str] = None,
    ) -> Prescription:
        """Create a prescription in ISSUED"""
        items = items or []
        if not patient_id:
            raise ValidationError("Patient is required", details={"field": "patient_id"})
        if not is_external and not doctor_id:
            raise ValidationError(
                "A doctor is required unless the prescription is an external upload",
                details={"field": "doctor_id"},
            )
        if is_external and not items and not external_file_url:
            raise ValidationError(
                "An external prescription needs items or an uploaded file",
                details={"field": "external_file_url"},
            )
        if not is_external and not items:
            raise ValidationError("Prescription must contain at least one item", details={"field": "items"})
        for index, item in enumerate(items):
            if not item.get("medication"):
                raise ValidationError("Medication is required", details={"field": f"items[{index}].medication"})
            quantity = item.get("quantity")
            if quantity is not None and quantity <= 0:
                raise ValidationError("Quantity must be positive", details={"field": f"items[{index}].quantity"})

        issued_at = datetime.utcnow()
        prescription = Prescription(
            lookup_code=lookup_code or generate_lookup_code(),
            patient_id=patient_id,
            patient_name=patient_name,
            doctor_id=None if is_external else doctor_id,
            doctor_name=None if is_external else doctor_name,
            appointment_id=appointment_id,
            status=PrescriptionStatus.ISSUED.value,
            notes=notes,
            is_external=is_external,
            external_file_url=external_file_url,
            issued_at=issued_at,
            expires_at=issued_at + timedelta(days=settings.prescription_validity_days),
            updated_at=issued_at,
        )
        for position, item in enumerate(items):
            prescription.items.append(PrescriptionItem(
                position=position,
                medication=item["medication"],
                dosage=item.get("dosage") or "",
                frequency=item.get("frequency") or "",
                duration=item.get("duration") or "",
                instructions=item.get("instructions"),
                quantity=item.get("quantity"),
            ))

        self.ledger.add(prescription)
        self._notify(prescription, "issued")
        self.ledger.commit()
        logger.info(f"Issued prescription {prescription.id} for patient {patient_id}")
        return self.ledger.get(Prescription, prescription.id)

    def upload_external(
        self,
        patient_id: str,
        patient_name: Optional[str],
        file_url: str,
        items: Optional[List[dict]] = None,
    ) -> Prescription:
        """Register a prescription the patient uploaded themselves"""
        if not file_url:
            raise ValidationError("Uploaded file is required", details={"field": "file_url"})
        return self.issue(
            patient_id=patient_id,
            patient_name=patient_name,
            items=items or [],
            is_external=True,
            external_file_url=file_url,
        )

    def get(self, prescription_id: str) -> Prescription:
        """Read a prescription, expiring it first if it is overdue"""
        prescription = self.ledger.require(Prescription, prescription_id, "Prescription")
        if is_overdue(prescription):
            prescription = self._expire(prescription)
        return prescription

    def verify_by_lookup_code(self, code: str) -> Prescription:
        """Resolve a QR/lookup code without touching the record"""
        prescription = (
            self.ledger.db.query(Prescription)
            .filter(Prescription.lookup_code == code)
            .first()
        )
        if prescription is None:
            raise NotFoundError("Prescription not found", details={"lookup_code": code})
        return prescription

    def lock(self, prescription_id: str, pharmacy_id: str, pharmacy_name: Optional[str]) -> Prescription:
        """Claim an ISSUED prescription for one pharmacy; first writer wins"""
        prescription = self.get(prescription_id)
        PRESCRIPTION_STATUS.ensure_transition(
            prescription.status,
            PrescriptionStatus.LOCKED_BY_PHARMACY,
            reason=self._refusal(prescription, "locked"),
        )

        locked = self.ledger.conditional_update(
            Prescription,
            prescription_id,
            expected={"status": PrescriptionStatus.ISSUED.value},
            values={
                "status": PrescriptionStatus.LOCKED_BY_PHARMACY.value,
                "pharmacy_id": pharmacy_id,
                "pharmacy_name": pharmacy_name,
                "locked_at": datetime.utcnow(),
            },
        )
        if not locked:
            self.ledger.rollback()
            current = self.ledger.require(Prescription, prescription_id, "Prescription")
            logger.warning(f"Lost lock race on prescription {prescription_id} to pharmacy {current.pharmacy_id}")
            raise InvalidStateError(
                self._refusal(current, "locked"),
                details={"current_status": current.status},
            )

        prescription = self.ledger.get(Prescription, prescription_id)
        self._notify(prescription, f"locked by {pharmacy_name or 'a pharmacy'}")
        self.ledger.commit()
        logger.info(f"Prescription {prescription_id} locked by pharmacy {pharmacy_id}")
        return self.ledger.get(Prescription, prescription_id)

    def dispense(self, prescription_id: str, pharmacy_id: str) -> Prescription:
        """Dispense a prescription held by the calling pharmacy"""
        prescription = self.get(prescription_id)
        PRESCRIPTION_STATUS.ensure_transition(
            prescription.status,
            PrescriptionStatus.DISPENSED,
            reason=self._refusal(prescription, "dispensed"),
        )
        if prescription.pharmacy_id != pharmacy_id:
            raise InvalidStateError(
                "Prescription is locked by another pharmacy",
                details={"current_status": prescription.status},
            )

        dispensed = self.ledger.conditional_update(
            Prescription,
            prescription_id,
            expected={
                "status": PrescriptionStatus.LOCKED_BY_PHARMACY.value,
                "pharmacy_id": pharmacy_id,
            },
            values={
                "status": PrescriptionStatus.DISPENSED.value,
                "dispensed_at": datetime.utcnow(),
            },
        )
        if not dispensed:
            self.ledger.rollback()
            current = self.ledger.require(Prescription, prescription_id, "Prescription")
            raise InvalidStateError(
                self._refusal(current, "dispensed"),
                details={"current_status": current.status},
            )

        prescription = self.ledger.get(Prescription, prescription_id)
        self._notify(prescription, "dispensed")
        self.ledger.commit()
        logger.info(f"Prescription {prescription_id} dispensed by pharmacy {pharmacy_id}")
        return self.ledger.get(Prescription, prescription_id)

    def cancel(
        self,
        prescription_id: str,
        reason: Optional[str],
        actor_id: str,
        actor_role: str,
    ) -> Prescription:
        """Cancel an ISSUED or LOCKED_BY_PHARMACY prescription"""
        prescription = self.get(prescription_id)
        if actor_role != "admin" and actor_id not in (prescription.doctor_id, prescription.patient_id):
            raise PermissionDeniedError(
                "Only the issuing doctor, the patient or an admin may cancel this prescription"
            )
        PRESCRIPTION_STATUS.ensure_transition(
            prescription.status,
            PrescriptionStatus.CANCELLED,
            reason=self._refusal(prescription, "cancelled"),
        )

        cancelled = self.ledger.conditional_update(
            Prescription,
            prescription_id,
            expected={"status": prescription.status},
            values={
                "status": PrescriptionStatus.CANCELLED.value,
                "cancelled_at": datetime.utcnow(),
                "cancel_reason": reason,
            },
        )
        if not cancelled:
            self.ledger.rollback()
            current = self.ledger.require(Prescription, prescription_id, "Prescription")
            raise InvalidStateError(
                self._refusal(current, "cancelled"),
                details={"current_status": current.status},
            )

        prescription = self.ledger.get(Prescription, prescription_id)
        self._notify(prescription, "cancelled")
        if prescription.pharmacy_id:
            self.ledger.notify_after_commit(
                prescription.pharmacy_id,
                NotificationKind.PRESCRIPTION_UPDATE.value,
                {"prescription_id": prescription_id, "status": prescription.status,
                 "message": f"Prescription {prescription.lookup_code} was cancelled"},
            )
        self.ledger.commit()
        logger.info(f"Prescription {prescription_id} cancelled by {actor_role} {actor_id}")
        return self.ledger.get(Prescription, prescription_id)

    def expire(self, prescription_id: str, now: Optional[datetime] = None) -> Prescription:
        """Expire a prescription whose validity has run out"""
        prescription = self.ledger.require(Prescription, prescription_id, "Prescription")
        PRESCRIPTION_STATUS.ensure_transition(prescription.status, PrescriptionStatus.EXPIRED)
        if not is_overdue(prescription, now):
            raise PreconditionError(
                "Prescription has not reached its expiry date",
                details={"expires_at": prescription.expires_at.isoformat() if prescription.expires_at else None},
            )
        return self._expire(prescription)

    def expire_overdue(self, now: Optional[datetime] = None) -> int:
        """Expire every overdue prescription; returns how many were expired"""
        now = now or datetime.utcnow()
        overdue_ids = [
            row.id for row in
            self.ledger.db.query(Prescription.id)
            .filter(
                Prescription.status.in_([
                    PrescriptionStatus.ISSUED.value,
                    PrescriptionStatus.LOCKED_BY_PHARMACY.value,
                ]),
                Prescription.expires_at.isnot(None),
                Prescription.expires_at <= now,
            )
            .all()
        ]
        expired = 0
        for prescription_id in overdue_ids:
            prescription = self.ledger.get(Prescription, prescription_id)
            if self._expire(prescription).status == PrescriptionStatus.EXPIRED.value:
                expired += 1
        logger.info(f"Expired {expired} overdue prescriptions")
        return expired

    def list_for_patient(self, patient_id: str) -> List[Prescription]:
        return self._list(Prescription.patient_id == patient_id)

    def list_for_doctor(self, doctor_id: str) -> List[Prescription]:
        return self._list(Prescription.doctor_id == doctor_id)

    def list_for_pharmacy(self, pharmacy_id: str, status: Optional[str] = None) -> List[Prescription]:
        criteria = [Prescription.pharmacy_id == pharmacy_id]
        if status:
            if status.upper() not in PrescriptionStatus.__members__:
                raise ValidationError(f"Unknown prescription status: {status}", details={"field": "status"})
            criteria.append(Prescription.status == status.upper())
        return self._list(*criteria)

    @staticmethod
    def can_dispense(prescription: Prescription) -> bool:
        return prescription.status == PrescriptionStatus.LOCKED_BY_PHARMACY.value

    def _list(self, *criteria) -> List[Prescription]:
        return (
            self.ledger.db.query(Prescription)
            .filter(*criteria)
            .order_by(Prescription.issued_at.desc())
            .all()
        )

    def _expire(self, prescription: Prescription) -> Prescription:
        expired = self.ledger.conditional_update(
            Prescription,
            prescription.id,
            expected={"status": prescription.status},
            values={"status": PrescriptionStatus.EXPIRED.value, "expired_at": datetime.utcnow()},
        )
        if not expired:
            # Another caller moved it first; report what is there now
            self.ledger.rollback()
            return self.ledger.require(Prescription, prescription.id, "Prescription")

        prescription = self.ledger.get(Prescription, prescription.id)
        self._notify(prescription, "expired")
        self.ledger.commit()
        logger.info(f"Prescription {prescription.id} expired")
        return self.ledger.get(Prescription, prescription.id)

    @staticmethod
    def _refusal(prescription: Prescription, action: str) -> str:
        status = PrescriptionStatus(prescription.status)
        if status == PrescriptionStatus.LOCKED_BY_PHARMACY and action == "locked":
            return f"Prescription already locked by {prescription.pharmacy_name or 'another pharmacy'}"
        if status == PrescriptionStatus.DISPENSED:
            return "Prescription already dispensed"
        if status == PrescriptionStatus.CANCELLED:
            return "Prescription has been cancelled"
        if status == PrescriptionStatus.EXPIRED:
            return "Prescription has expired"
        if status == PrescriptionStatus.ISSUED and action == "dispensed":
            return "Prescription must be locked by the pharmacy before it is dispensed"
        return f"Prescription cannot be {action} while {status.value}"

    def _notify(self, prescription: Prescription, event: str) -> None:
        self.ledger.notify_after_commit(
            prescription.patient_id,
            NotificationKind.PRESCRIPTION_UPDATE.value,
            {
                "prescription_id": prescription.id,
                "status": prescription.status,
                "message": f"Your prescription {prescription.lookup_code} was {event}",
            },
        )
