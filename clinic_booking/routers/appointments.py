from fastapi import APIRouter, Depends, Header
from sqlalchemy.orm import Session

from ..database import get_db
from .. import schemas
from ..services import booking

router = APIRouter(prefix="", tags=["appointments"])


@router.post("/appointments", response_model=schemas.BookResponse, status_code=201)
def book(req: schemas.BookRequest, db: Session = Depends(get_db)):
    result = booking.book_slot(
        db,
        slot_id=req.slot_id,
        patient_id=req.patient_id,
        notes=req.notes,
        expected_check_in_time=req.expected_check_in_time,
    )
    return schemas.BookResponse(**result)


@router.post("/appointments/{appointment_id}/reschedule", response_model=schemas.AppointmentIdResponse)
def reschedule(appointment_id: str, req: schemas.RescheduleRequest, db: Session = Depends(get_db)):
    result = booking.reschedule_appointment(
        db,
        appointment_id=appointment_id,
        new_slot_id=req.new_slot_id,
        patient_id=req.patient_id,
    )
    return schemas.AppointmentIdResponse(**result)


@router.post("/appointments/{appointment_id}/cancel", response_model=schemas.AppointmentIdResponse)
def cancel(
    appointment_id: str,
    x_actor_id: str = Header(...),
    x_actor_role: str = Header(...),
    db: Session = Depends(get_db),
):
    # Actor identity is set by the upstream auth gateway
    result = booking.cancel_appointment(
        db,
        appointment_id=appointment_id,
        actor_id=x_actor_id,
        actor_role=x_actor_role,
    )
    return schemas.AppointmentIdResponse(**result)


@router.get("/patients/{patient_id}/appointments", response_model=list[schemas.AppointmentOut])
def patient_appointments(patient_id: str, db: Session = Depends(get_db)):
    return booking.list_patient_appointments(db, patient_id)


@router.get("/doctors/{doctor_id}/appointments", response_model=list[schemas.AppointmentOut])
def doctor_appointments(doctor_id: str, db: Session = Depends(get_db)):
    return booking.list_doctor_appointments(db, doctor_id)
