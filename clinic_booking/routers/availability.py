from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from typing import Optional
from dateutil import parser as dtparser

from ..database import get_db
from .. import schemas
from ..services import availability
from ..services.session_adjustment import adjust_session

router = APIRouter(prefix="/doctors", tags=["availability"])


@router.get("/{doctor_id}/slots", response_model=list[schemas.SlotOut])
def get_slots(
    doctor_id: str,
    date: Optional[str] = Query(None, description="YYYY-MM-DD"),
    db: Session = Depends(get_db),
):
    day = None
    if date:
        try:
            day = dtparser.parse(date).date()
        except (ValueError, OverflowError):
            raise HTTPException(status_code=400, detail="Invalid date format. Use YYYY-MM-DD.")
    return availability.list_doctor_slots(db, doctor_id, day)


@router.post("/{doctor_id}/slots", response_model=schemas.SlotOut, status_code=201)
def add_slot(doctor_id: str, req: schemas.SlotIn, db: Session = Depends(get_db)):
    return availability.publish_slot(
        db,
        doctor_id,
        start_time=req.start_time,
        end_time=req.end_time,
        slot_type=req.slot_type,
        max_capacity=req.max_capacity,
    )


@router.delete("/{doctor_id}/slots/{slot_id}")
def delete_slot(doctor_id: str, slot_id: str, db: Session = Depends(get_db)):
    availability.remove_slot(db, doctor_id, slot_id)
    return {"ok": True, "slot_id": slot_id}


@router.post("/{doctor_id}/session", response_model=schemas.SessionAdjustResponse)
def adjust(doctor_id: str, req: schemas.SessionAdjustRequest, db: Session = Depends(get_db)):
    result = adjust_session(
        db,
        doctor_id,
        req.date,
        req.new_start_time,
        req.new_end_time,
        new_consultation_duration_minutes=req.new_consultation_duration_minutes,
        slot_id_to_adjust_capacity=req.slot_id_to_adjust_capacity,
        new_max_capacity=req.new_max_capacity,
    )
    return schemas.SessionAdjustResponse(**result)
