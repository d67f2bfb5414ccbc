"""
Prescription endpoints: issuance, pharmacy lookup and locking, dispensing, expiry
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from typing import Optional
import logging

from fulfillment.limiter import limiter
from fulfillment.schemas.prescription import (
    ExpirySweepResponse,
    ExternalPrescriptionUpload,
    PrescriptionCancel,
    PrescriptionCreate,
    PrescriptionLock,
    PrescriptionLookupResponse,
    PrescriptionResponse,
)
from fulfillment.services.ledger import Ledger, get_ledger
from fulfillment.services.prescription_workflow import PrescriptionWorkflow, is_overdue
from fulfillment.services.state_machine import PrescriptionStatus
from fulfillment.utils.error_handler import DatabaseError, WorkflowError
from fulfillment.auth.auth_handler import (
    admin_required,
    any_user,
    doctor_required,
    patient_required,
    pharmacy_or_admin,
    pharmacy_required,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/", response_model=PrescriptionResponse, status_code=201)
@limiter.limit("20/minute")
async def issue_prescription(
    request: Request,
    prescription: PrescriptionCreate,
    current_user: dict = Depends(doctor_required),
    ledger: Ledger = Depends(get_ledger)
):
    """Issue a prescription for a patient"""
    try:
        return PrescriptionWorkflow(ledger).issue(
            patient_id=prescription.patient_id,
            patient_name=prescription.patient_name,
            items=[item.dict() for item in prescription.items],
            doctor_id=current_user["user_id"],
            doctor_name=current_user["name"],
            notes=prescription.notes,
            appointment_id=prescription.appointment_id,
            lookup_code=prescription.lookup_code,
        )

    except (HTTPException, WorkflowError, DatabaseError):
        raise
    except Exception as e:
        logger.error(f"Failed to issue prescription: {e}")
        raise HTTPException(status_code=500, detail="Failed to issue prescription")


@router.post("/external", response_model=PrescriptionResponse, status_code=201)
@limiter.limit("10/minute")
async def upload_external_prescription(
    request: Request,
    upload: ExternalPrescriptionUpload,
    current_user: dict = Depends(patient_required),
    ledger: Ledger = Depends(get_ledger)
):
    """Register a paper or third-party prescription uploaded by the patient"""
    try:
        return PrescriptionWorkflow(ledger).upload_external(
            patient_id=current_user["user_id"],
            patient_name=current_user["name"],
            file_url=upload.file_url,
            items=[item.dict() for item in upload.items],
        )

    except (HTTPException, WorkflowError, DatabaseError):
        raise
    except Exception as e:
        logger.error(f"Failed to upload external prescription: {e}")
        raise HTTPException(status_code=500, detail="Failed to upload prescription")


@router.get("/", response_model=list[PrescriptionResponse])
@limiter.limit("30/minute")
async def list_prescriptions(
    request: Request,
    status: Optional[str] = Query(None, description="Filter a pharmacy's prescriptions by status"),
    patient_id: Optional[str] = Query(None, description="Admin only: prescriptions of this patient"),
    current_user: dict = Depends(any_user),
    ledger: Ledger = Depends(get_ledger)
):
    """Prescriptions the caller holds, issued or has locked"""
    try:
        workflow = PrescriptionWorkflow(ledger)
        role = current_user["role"]
        if role == "patient":
            prescriptions = workflow.list_for_patient(current_user["user_id"])
        elif role == "doctor":
            prescriptions = workflow.list_for_doctor(current_user["user_id"])
        elif role == "pharmacy":
            prescriptions = workflow.list_for_pharmacy(current_user["user_id"], status)
        elif role == "admin":
            if not patient_id:
                raise HTTPException(status_code=400, detail="patient_id is required")
            prescriptions = workflow.list_for_patient(patient_id)
        else:
            raise HTTPException(status_code=403, detail="Operation not permitted")

        return [PrescriptionResponse.model_validate(p) for p in prescriptions]

    except (HTTPException, WorkflowError, DatabaseError):
        raise
    except Exception as e:
        logger.error(f"Failed to list prescriptions: {e}")
        raise HTTPException(status_code=500, detail="Failed to retrieve prescriptions")


@router.post("/expire-overdue", response_model=ExpirySweepResponse)
@limiter.limit("5/minute")
async def expire_overdue_prescriptions(
    request: Request,
    current_user: dict = Depends(admin_required),
    ledger: Ledger = Depends(get_ledger)
):
    """Sweep: expire every prescription past its validity"""
    try:
        return ExpirySweepResponse(expired=PrescriptionWorkflow(ledger).expire_overdue())

    except (HTTPException, WorkflowError, DatabaseError):
        raise
    except Exception as e:
        logger.error(f"Failed to expire overdue prescriptions: {e}")
        raise HTTPException(status_code=500, detail="Failed to expire prescriptions")


@router.get("/lookup/{lookup_code}", response_model=PrescriptionLookupResponse)
@limiter.limit("30/minute")
async def lookup_prescription(
    request: Request,
    lookup_code: str,
    current_user: dict = Depends(pharmacy_or_admin),
    ledger: Ledger = Depends(get_ledger)
):
    """Resolve a scanned QR code; read-only"""
    try:
        prescription = PrescriptionWorkflow(ledger).verify_by_lookup_code(lookup_code)
        expired = (
            prescription.status == PrescriptionStatus.EXPIRED.value or is_overdue(prescription)
        )
        return PrescriptionLookupResponse(
            prescription=PrescriptionResponse.model_validate(prescription),
            is_expired=expired,
            can_lock=prescription.status == PrescriptionStatus.ISSUED.value and not expired,
        )

    except (HTTPException, WorkflowError, DatabaseError):
        raise
    except Exception as e:
        logger.error(f"Failed to look up prescription {lookup_code}: {e}")
        raise HTTPException(status_code=500, detail="Failed to look up prescription")


@router.get("/{prescription_id}", response_model=PrescriptionResponse)
@limiter.limit("30/minute")
async def get_prescription(
    request: Request,
    prescription_id: str,
    current_user: dict = Depends(any_user),
    ledger: Ledger = Depends(get_ledger)
):
    """Get a specific prescription by ID"""
    try:
        prescription = PrescriptionWorkflow(ledger).get(prescription_id)
        allowed = (
            current_user["role"] == "admin"
            or current_user["user_id"] in (
                prescription.patient_id, prescription.doctor_id, prescription.pharmacy_id
            )
        )
        if not allowed:
            raise HTTPException(status_code=403, detail="Operation not permitted")
        return prescription

    except (HTTPException, WorkflowError, DatabaseError):
        raise
    except Exception as e:
        logger.error(f"Failed to get prescription {prescription_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to retrieve prescription")


@router.post("/{prescription_id}/lock", response_model=PrescriptionResponse)
@limiter.limit("20/minute")
async def lock_prescription(
    request: Request,
    prescription_id: str,
    lock: PrescriptionLock,
    current_user: dict = Depends(pharmacy_required),
    ledger: Ledger = Depends(get_ledger)
):
    """Claim an issued prescription for the calling pharmacy"""
    try:
        return PrescriptionWorkflow(ledger).lock(
            prescription_id,
            pharmacy_id=current_user["user_id"],
            pharmacy_name=lock.pharmacy_name or current_user["name"],
        )

    except (HTTPException, WorkflowError, DatabaseError):
        raise
    except Exception as e:
        logger.error(f"Failed to lock prescription {prescription_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to lock prescription")


@router.post("/{prescription_id}/dispense", response_model=PrescriptionResponse)
@limiter.limit("20/minute")
async def dispense_prescription(
    request: Request,
    prescription_id: str,
    current_user: dict = Depends(pharmacy_required),
    ledger: Ledger = Depends(get_ledger)
):
    try:
        return PrescriptionWorkflow(ledger).dispense(prescription_id, pharmacy_id=current_user["user_id"])

    except (HTTPException, WorkflowError, DatabaseError):
        raise
    except Exception as e:
        logger.error(f"Failed to dispense prescription {prescription_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to dispense prescription")


@router.post("/{prescription_id}/cancel", response_model=PrescriptionResponse)
@limiter.limit("10/minute")
async def cancel_prescription(
    request: Request,
    prescription_id: str,
    cancellation: PrescriptionCancel,
    current_user: dict = Depends(any_user),
    ledger: Ledger = Depends(get_ledger)
):
    try:
        return PrescriptionWorkflow(ledger).cancel(
            prescription_id,
            cancellation.reason,
            actor_id=current_user["user_id"],
            actor_role=current_user["role"],
        )

    except (HTTPException, WorkflowError, DatabaseError):
        raise
    except Exception as e:
        logger.error(f"Failed to cancel prescription {prescription_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to cancel prescription")


@router.post("/{prescription_id}/expire", response_model=PrescriptionResponse)
@limiter.limit("10/minute")
async def expire_prescription(
    request: Request,
    prescription_id: str,
    current_user: dict = Depends(admin_required),
    ledger: Ledger = Depends(get_ledger)
):
    try:
        return PrescriptionWorkflow(ledger).expire(prescription_id)

    except (HTTPException, WorkflowError, DatabaseError):
        raise
    except Exception as e:
        logger.error(f"Failed to expire prescription {prescription_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to expire prescription")
