# clinic_booking/services/availability.py
"""Doctor-facing slot publishing: list, add and remove individual slots."""
from __future__ import annotations
import logging
from datetime import date, datetime
from typing import Optional

from sqlalchemy.orm import Session

from ..errors import InvalidInput, NotFound
from ..models import Slot, SlotType, utcnow
from ..repositories import AppointmentRepository, ProfileRepository, SlotRepository
from .scheduling import day_bounds, to_utc_naive
from .unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


def list_doctor_slots(db: Session, doctor_id: str, day: Optional[date] = None) -> list[Slot]:
    if ProfileRepository.find_doctor(db, doctor_id) is None:
        raise NotFound("Doctor not found.")
    if day is None:
        return SlotRepository.find_slots_by_doctor(db, doctor_id)
    bounds = day_bounds(day)
    return SlotRepository.find_slots_by_doctor_and_range(db, doctor_id, bounds.start, bounds.end)


def publish_slot(
    db: Session,
    doctor_id: str,
    start_time: datetime,
    end_time: datetime,
    slot_type: str = SlotType.stream.value,
    max_capacity: Optional[int] = None,
) -> Slot:
    start, end = to_utc_naive(start_time), to_utc_naive(end_time)
    if end <= start:
        raise InvalidInput("end_time must be after start_time.")
    if start < utcnow():
        raise InvalidInput("Cannot add slots in the past.")
    try:
        kind = SlotType(slot_type or SlotType.stream.value)
    except ValueError:
        raise InvalidInput("Invalid slot_type provided. Must be 'stream' or 'wave'.") from None
    if kind == SlotType.wave:
        if max_capacity is None or max_capacity <= 0:
            raise InvalidInput("max_capacity is required and must be a positive number for wave slots.")
    else:
        max_capacity = None

    with UnitOfWork(db):
        doctor = ProfileRepository.lock_doctor(db, doctor_id)
        if doctor is None:
            raise NotFound("Doctor not found.")
        if SlotRepository.find_overlapping(db, doctor.id, start, end):
            raise InvalidInput("The slot overlaps an existing slot of this doctor.")
        slot = SlotRepository.create_slot(
            db,
            doctor_id=doctor.id,
            start_time=start,
            end_time=end,
            slot_type=kind,
            is_available=True,
            max_capacity=max_capacity,
            booked_count=0,
        )

    logger.info("Published %s slot %s for doctor %s at %s", kind.value, slot.id, doctor_id, start.isoformat())
    return slot


def remove_slot(db: Session, doctor_id: str, slot_id: str) -> None:
    with UnitOfWork(db):
        slot = SlotRepository.find_slot_for_doctor(db, slot_id, doctor_id, for_update=True)
        if slot is None:
            raise NotFound("Availability slot not found or does not belong to this doctor.")
        held = (
            AppointmentRepository.count_active_by_slot(db, slot.id) > 0
            or slot.booked_count > 0
            or (slot.slot_type == SlotType.stream and not slot.is_available)
        )
        if held:
            raise InvalidInput("Cannot delete a slot with active appointments. Please cancel them first.")
        SlotRepository.delete_slot(db, slot)

    logger.info("Removed slot %s of doctor %s", slot_id, doctor_id)
