# clinic_booking/services/booking.py
"""
Booking engine: book, reschedule and cancel a single appointment against a
single slot.

Each call is one transaction on the session handed in by the caller. The
slot rows involved are locked for the check-then-update, and the counter
change itself is a guarded UPDATE, so two bookings racing for the last place
cannot both win: the loser gets ``Conflict`` and its transaction is rolled
back.

Row locks are always taken appointment first, then slots in id order; the
session adjustment follows the same order.
"""
from __future__ import annotations
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ..errors import Conflict, Forbidden, InvalidInput, NotFound
from ..models import (
    ActorRole,
    Appointment,
    AppointmentStatus,
    NON_CANCELLABLE_STATUSES,
    RESCHEDULABLE_STATUSES,
    Slot,
    SlotType,
    utcnow,
)
from ..repositories import AppointmentRepository, ProfileRepository, SlotRepository
from .notifications import EventKind, NotificationGateway, build_event
from .scheduling import Interval, to_utc_naive
from .unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


def _check_bookable(slot: Slot, now: datetime, label: str = "slot") -> None:
    """Validation shared by book and reschedule; raises before any mutation."""
    if slot.start_time < now:
        raise InvalidInput(f"Cannot book a {label} that has already started or passed.")
    if slot.slot_type == SlotType.wave:
        if slot.max_capacity is None:
            raise Conflict(f"Wave {label} has no defined max capacity.")
        if slot.booked_count >= slot.max_capacity:
            raise Conflict(f"Wave {label} is fully booked.")
    elif not slot.is_available:
        raise Conflict(f"Stream {label} is already booked or not available.")


def _consume_or_conflict(db: Session, slot: Slot) -> None:
    if not SlotRepository.consume(db, slot):
        logger.info("Lost booking race on slot %s", slot.id)
        raise Conflict("The slot was just taken by another booking.")


def _release_if_present(
    db: Session,
    appointment: Appointment,
    action: str,
    locked: Optional[dict] = None,
) -> Optional[Slot]:
    """
    Give the appointment's place back. A slot already removed by a session
    adjustment is skipped, not treated as an error. ``locked`` holds slots
    the caller has already row-locked.
    """
    if not appointment.slot_id:
        return None
    if locked is not None:
        slot = locked.get(appointment.slot_id)
    else:
        slot = SlotRepository.find_slot(db, appointment.slot_id, for_update=True)
    if slot is None:
        logger.warning(
            "Slot %s for appointment %s not found during %s, likely removed by a session adjustment.",
            appointment.slot_id, appointment.id, action,
        )
        return None
    SlotRepository.release(db, slot)
    return slot


# ====== book ======
def book_slot(
    db: Session,
    slot_id: str,
    patient_id: str,
    notes: Optional[str] = None,
    expected_check_in_time: Optional[datetime] = None,
    notifier: Optional[NotificationGateway] = None,
) -> dict:
    with UnitOfWork(db, notifier) as uow:
        slot = SlotRepository.find_slot(db, slot_id, for_update=True)
        if slot is None:
            raise NotFound("Availability slot not found. It may have been adjusted or removed by the doctor.")
        _check_bookable(slot, utcnow())

        patient = ProfileRepository.find_patient(db, patient_id)
        if patient is None:
            raise NotFound("Patient profile not found.")

        check_in = None
        if expected_check_in_time is not None and slot.slot_type == SlotType.wave:
            check_in = to_utc_naive(expected_check_in_time)

        _consume_or_conflict(db, slot)
        appointment = AppointmentRepository.create_appointment(
            db,
            doctor_id=slot.doctor_id,
            patient_id=patient.id,
            slot_id=slot.id,
            appointment_time=slot.start_time,
            status=AppointmentStatus.pending,
            notes=notes,
            expected_check_in_time=check_in,
        )
        doctor = ProfileRepository.find_doctor(db, slot.doctor_id)
        uow.add_event(build_event(EventKind.booked, appointment, patient, doctor, new_slot=slot))

    logger.info("Booked appointment %s on %s slot %s for patient %s",
                appointment.id, slot.slot_type.value, slot.id, patient_id)
    return {"appointment_id": appointment.id, "status": appointment.status.value}


# ====== reschedule ======
def reschedule_appointment(
    db: Session,
    appointment_id: str,
    new_slot_id: str,
    patient_id: str,
    notifier: Optional[NotificationGateway] = None,
) -> dict:
    with UnitOfWork(db, notifier) as uow:
        appointment = AppointmentRepository.find_appointment(db, appointment_id, for_update=True)
        if appointment is None:
            raise NotFound("Appointment not found.")
        if appointment.patient_id != patient_id:
            raise Forbidden("You do not have permission to reschedule this appointment.")
        if appointment.status not in RESCHEDULABLE_STATUSES:
            raise InvalidInput("Only pending or confirmed appointments can be rescheduled.")
        if appointment.slot_id == new_slot_id:
            raise InvalidInput("The appointment is already in that slot.")

        # both slot rows in one go, id order
        locked = SlotRepository.lock_slots(db, [appointment.slot_id, new_slot_id])
        new_slot = locked.get(new_slot_id)
        if new_slot is None:
            raise NotFound("New availability slot not found. It may have been adjusted or removed by the doctor.")
        if appointment.doctor_id and new_slot.doctor_id != appointment.doctor_id:
            raise InvalidInput("The new slot belongs to a different doctor.")
        _check_bookable(new_slot, utcnow(), label="new slot")

        old_slot = _release_if_present(db, appointment, "reschedule", locked=locked)
        old_range = Interval(old_slot.start_time, old_slot.end_time) if old_slot else None

        _consume_or_conflict(db, new_slot)
        AppointmentRepository.update_appointment(
            db,
            appointment,
            slot_id=new_slot.id,
            appointment_time=new_slot.start_time,
            status=AppointmentStatus.rescheduled,
            expected_check_in_time=None,
        )

        patient = ProfileRepository.find_patient(db, appointment.patient_id)
        doctor = ProfileRepository.find_doctor(db, new_slot.doctor_id)
        uow.add_event(build_event(
            EventKind.rescheduled, appointment, patient, doctor,
            old_slot=old_range, new_slot=new_slot,
        ))

    logger.info("Rescheduled appointment %s to slot %s", appointment.id, new_slot.id)
    return {"appointment_id": appointment.id}


# ====== cancel ======
def _authorize_cancel(db: Session, appointment: Appointment, actor_id: str, actor_role: str) -> None:
    try:
        role = ActorRole(actor_role)
    except ValueError:
        raise Forbidden("Forbidden: You do not have permission to cancel this appointment.")

    if role == ActorRole.patient:
        profile = ProfileRepository.find_patient_by_user(db, actor_id)
        allowed = profile is not None and profile.id == appointment.patient_id
    else:
        profile = ProfileRepository.find_doctor_by_user(db, actor_id)
        allowed = profile is not None and profile.id == appointment.doctor_id

    if not allowed:
        raise Forbidden("Forbidden: You do not have permission to cancel this appointment.")


def cancel_appointment(
    db: Session,
    appointment_id: str,
    actor_id: str,
    actor_role: str,
    notifier: Optional[NotificationGateway] = None,
) -> dict:
    with UnitOfWork(db, notifier) as uow:
        appointment = AppointmentRepository.find_appointment(db, appointment_id, for_update=True)
        if appointment is None:
            raise NotFound("Appointment not found.")
        _authorize_cancel(db, appointment, actor_id, actor_role)
        if appointment.status in NON_CANCELLABLE_STATUSES:
            raise InvalidInput(f"Appointment is already {appointment.status.value}. Cannot cancel.")

        _release_if_present(db, appointment, "cancellation")
        AppointmentRepository.update_appointment(db, appointment, status=AppointmentStatus.cancelled)

        patient = ProfileRepository.find_patient(db, appointment.patient_id)
        doctor = ProfileRepository.find_doctor(db, appointment.doctor_id)
        uow.add_event(build_event(
            EventKind.cancelled, appointment, patient, doctor,
            reason=f"Cancelled by the {actor_role}.",
        ))

    logger.info("Cancelled appointment %s (by %s %s)", appointment.id, actor_role, actor_id)
    return {"appointment_id": appointment.id}


# ====== listings ======
def _slot_details(slot: Optional[Slot]) -> Optional[dict]:
    if slot is None:
        return None
    return {
        "start_time": slot.start_time,
        "end_time": slot.end_time,
        "is_available": slot.is_available,
        "slot_type": slot.slot_type.value,
        "max_capacity": slot.max_capacity,
        "booked_count": slot.booked_count,
    }


def _appointment_rows(db: Session, appointments: list[Appointment]) -> list[dict]:
    slots = SlotRepository.find_slots_by_ids(db, (a.slot_id for a in appointments))
    return [
        {
            "id": a.id,
            "doctor_id": a.doctor_id,
            "patient_id": a.patient_id,
            "slot_id": a.slot_id,
            "appointment_time": a.appointment_time,
            "status": a.status.value,
            "notes": a.notes,
            "expected_check_in_time": a.expected_check_in_time,
            "created_at": a.created_at,
            "slot": _slot_details(slots.get(a.slot_id)),
        }
        for a in appointments
    ]


def list_patient_appointments(db: Session, patient_id: str) -> list[dict]:
    if ProfileRepository.find_patient(db, patient_id) is None:
        raise NotFound("Patient profile not found.")
    return _appointment_rows(db, AppointmentRepository.find_by_patient(db, patient_id))


def list_doctor_appointments(db: Session, doctor_id: str) -> list[dict]:
    if ProfileRepository.find_doctor(db, doctor_id) is None:
        raise NotFound("Doctor not found.")
    return _appointment_rows(db, AppointmentRepository.find_by_doctor(db, doctor_id))
