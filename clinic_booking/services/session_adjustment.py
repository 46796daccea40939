# clinic_booking/services/session_adjustment.py
"""
Session adjustment: re-derive a doctor's slots for one day after the working
window, the consultation duration or one slot's capacity changed.

The whole rewrite is one transaction. The doctor row, then the appointments
holding a place that day, then every slot row of the day are locked first,
so bookings against that day and other adjustments of the same doctor wait
until it commits.

Steps, in order:
  1. load the day's appointments that hold a place (rescheduled included)
  2. cancel those whose slot falls outside the new window, sever the link
  3. queue every other slot of the day outside the window
  4. delete the queued slots (appointment rows are kept)
  5. resize booked stream slots / regenerate unbooked ones to the new duration
  6. apply the capacity override, evicting the newest bookings if needed
  7. merge what is still occupied
  8. fill every uncovered gap of the window with new stream slots
  9. persist and report counts
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, asdict
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from ..config import settings
from ..errors import InvalidInput, NotFound
from ..models import Appointment, AppointmentStatus, Doctor, Patient, Slot, SlotType
from ..repositories import AppointmentRepository, ProfileRepository, SlotRepository
from .notifications import (
    EventKind,
    NotificationGateway,
    REASON_CAPACITY_REDUCED,
    REASON_SESSION_ADJUSTED,
    build_event,
)
from .scheduling import (
    Interval,
    day_bounds,
    fill_gaps,
    merge_intervals,
    outside_window,
    split_range,
    to_utc_naive,
)
from .unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


@dataclass
class AdjustmentResult:
    appointments_cancelled: int = 0
    slots_deleted: int = 0
    slots_created: int = 0
    slots_resized: int = 0
    slots_capacity_adjusted: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


class _SessionRewrite:
    """Carries the state of one adjustment through its steps."""

    def __init__(
        self,
        db: Session,
        uow: UnitOfWork,
        doctor: Doctor,
        day: Interval,
        window: Interval,
        minutes: int,
        target: Optional[Slot],
        new_max_capacity: Optional[int],
    ):
        self.db = db
        self.uow = uow
        self.doctor = doctor
        self.day = day
        self.window = window
        self.minutes = minutes
        self.step = timedelta(minutes=minutes)
        self.target = target
        self.new_max_capacity = new_max_capacity
        self.result = AdjustmentResult()
        self.deleted_ids: set[str] = set()
        self.generated: List[Interval] = []
        self._patients: Dict[str, Optional[Patient]] = {}

    def run(self) -> AdjustmentResult:
        holders = AppointmentRepository.lock_holders_by_doctor_and_range(
            self.db, self.doctor.id, self.day.start, self.day.end
        )
        day_slots = sorted(
            SlotRepository.lock_slots_by_doctor_and_range(self.db, self.doctor.id, self.day.start, self.day.end),
            key=lambda slot: slot.start_time,
        )
        slots_by_id = {slot.id: slot for slot in day_slots}

        doomed = self._cancel_out_of_window(holders, slots_by_id)
        for slot in day_slots:
            if slot.id not in doomed and outside_window(slot.start_time, slot.end_time, *self.window):
                doomed[slot.id] = slot
        for slot in doomed.values():
            self._delete(slot)

        survivors = [slot for slot in day_slots if slot.id not in self.deleted_ids]
        self._resize_stream_slots(survivors)
        self._adjust_capacity()
        self._fill_window()
        return self.result

    # ---- steps 1-2 ----
    def _cancel_out_of_window(self, holders: List[Appointment], slots_by_id: Dict[str, Slot]) -> Dict[str, Slot]:
        doomed: Dict[str, Slot] = {}
        for appointment in holders:
            if not appointment.slot_id:
                continue
            slot = slots_by_id.get(appointment.slot_id)
            if slot is None:
                continue
            if outside_window(slot.start_time, slot.end_time, *self.window):
                self._cancel(appointment, REASON_SESSION_ADJUSTED, sever=True)
                doomed[slot.id] = slot
        return doomed

    # ---- step 4 ----
    def _delete(self, slot: Slot) -> None:
        # a holder dated outside the day still loses its place
        for appointment in AppointmentRepository.find_holders_by_slot(self.db, slot.id):
            logger.warning("Slot %s removed while still held by appointment %s (%s); cancelling it.",
                           slot.id, appointment.id, appointment.status.value)
            self._cancel(appointment, REASON_SESSION_ADJUSTED, sever=True)
        SlotRepository.delete_slot(self.db, slot)
        self.deleted_ids.add(slot.id)
        self.result.slots_deleted += 1

    # ---- step 5 ----
    def _is_held(self, slot: Slot) -> bool:
        if not slot.is_available:
            return True
        return AppointmentRepository.count_holders_by_slot(self.db, slot.id) > 0

    def _resize_stream_slots(self, survivors: List[Slot]) -> None:
        for slot in survivors:
            if slot.slot_type != SlotType.stream or slot is self.target:
                continue
            if slot.duration_minutes == self.minutes:
                continue

            if self._is_held(slot):
                if slot.duration_minutes < self.minutes:
                    # growing a held slot could run into its neighbour
                    continue
                freed = Interval(slot.start_time + self.step, slot.end_time)
                SlotRepository.update_slot(self.db, slot, end_time=freed.start)
                self.result.slots_resized += 1
                self.generated.append(freed)
                logger.debug("Shrunk held slot %s, freed %s..%s", slot.id, freed.start, freed.end)
            else:
                original = Interval(slot.start_time, slot.end_time)
                self._delete(slot)
                self.generated.extend(split_range(original.start, original.end, self.minutes))

    # ---- step 6 ----
    def _adjust_capacity(self) -> None:
        target = self.target
        if target is None:
            return
        if target.id in self.deleted_ids:
            logger.warning(
                "Capacity target %s was removed by this adjustment (outside the new window); skipping.",
                target.id,
            )
            return

        new_max = self.new_max_capacity
        if target.slot_type == SlotType.wave:
            booked = target.booked_count
        else:
            logger.info("Converting stream slot %s to wave with capacity %s", target.id, new_max)
            booked = AppointmentRepository.count_holders_by_slot(self.db, target.id)

        if booked > new_max:
            victims = AppointmentRepository.find_holders_by_slot(
                self.db, target.id, newest_first=True, limit=booked - new_max
            )
            for appointment in victims:
                self._cancel(appointment, REASON_CAPACITY_REDUCED, sever=False)
            booked -= len(victims)
            if booked > new_max:
                remaining = AppointmentRepository.count_holders_by_slot(self.db, target.id)
                logger.warning("Slot %s counter ran ahead of its holders (%d > %d); resetting to %d",
                               target.id, booked, new_max, remaining)
                booked = remaining
            logger.info("Evicted %d appointment(s) from slot %s, booked_count now %d",
                        len(victims), target.id, booked)

        SlotRepository.update_slot(
            self.db,
            target,
            slot_type=SlotType.wave,
            max_capacity=new_max,
            booked_count=booked,
            is_available=booked < new_max,
        )
        self.result.slots_capacity_adjusted += 1

    # ---- steps 7-9 ----
    def _fill_window(self) -> None:
        self.db.flush()
        remaining = SlotRepository.find_overlapping(self.db, self.doctor.id, *self.window)
        occupied = merge_intervals(
            [(slot.start_time, slot.end_time) for slot in remaining] + list(self.generated)
        )
        new_intervals = list(self.generated) + fill_gaps(self.window.start, self.window.end, occupied, self.minutes)
        new_slots = [
            Slot(
                doctor_id=self.doctor.id,
                start_time=iv.start,
                end_time=iv.end,
                slot_type=SlotType.stream,
                is_available=True,
                max_capacity=None,
                booked_count=0,
            )
            for iv in sorted(new_intervals)
        ]
        if new_slots:
            SlotRepository.create_slots(self.db, new_slots)
        self.result.slots_created += len(new_slots)

    # ---- helpers ----
    def _patient(self, patient_id: Optional[str]) -> Optional[Patient]:
        if patient_id not in self._patients:
            self._patients[patient_id] = ProfileRepository.find_patient(self.db, patient_id) if patient_id else None
        return self._patients[patient_id]

    def _cancel(self, appointment: Appointment, reason: str, sever: bool) -> None:
        changes = {"status": AppointmentStatus.cancelled}
        if sever:
            changes["slot_id"] = None
        AppointmentRepository.update_appointment(self.db, appointment, **changes)
        self.result.appointments_cancelled += 1
        self.uow.add_event(build_event(
            EventKind.cancelled, appointment, self._patient(appointment.patient_id), self.doctor, reason=reason,
        ))


def _validate(
    day: date,
    window: Interval,
    minutes,
    slot_id_to_adjust_capacity: Optional[str],
    new_max_capacity: Optional[int],
) -> Interval:
    if window.end <= window.start:
        raise InvalidInput("new_end_time must be after new_start_time.")
    bounds = day_bounds(day)
    if window.start < bounds.start or window.end > bounds.end:
        raise InvalidInput("The new session window must lie within the adjusted date.")
    if isinstance(minutes, bool) or not isinstance(minutes, int) or minutes <= 0:
        raise InvalidInput("new_consultation_duration_minutes must be a positive integer.")
    if (slot_id_to_adjust_capacity is None) != (new_max_capacity is None):
        raise InvalidInput("slot_id_to_adjust_capacity and new_max_capacity must be given together.")
    if new_max_capacity is not None and (isinstance(new_max_capacity, bool) or new_max_capacity <= 0):
        raise InvalidInput("new_max_capacity must be a positive integer.")
    return bounds


def adjust_session(
    db: Session,
    doctor_id: str,
    day: date,
    new_start_time: datetime,
    new_end_time: datetime,
    new_consultation_duration_minutes: Optional[int] = None,
    slot_id_to_adjust_capacity: Optional[str] = None,
    new_max_capacity: Optional[int] = None,
    notifier: Optional[NotificationGateway] = None,
) -> dict:
    if isinstance(day, datetime):
        day = day.date()
    window = Interval(to_utc_naive(new_start_time), to_utc_naive(new_end_time))
    minutes = (
        new_consultation_duration_minutes
        if new_consultation_duration_minutes is not None
        else settings.DEFAULT_CONSULTATION_MINUTES
    )
    bounds = _validate(day, window, minutes, slot_id_to_adjust_capacity, new_max_capacity)

    logger.info(
        "adjust_session doctor=%s day=%s window=%s..%s minutes=%s capacity=%s:%s",
        doctor_id, day.isoformat(), window.start.isoformat(), window.end.isoformat(),
        minutes, slot_id_to_adjust_capacity, new_max_capacity,
    )

    with UnitOfWork(db, notifier) as uow:
        doctor = ProfileRepository.lock_doctor(db, doctor_id)
        if doctor is None:
            raise NotFound("Doctor not found.")

        target = None
        if slot_id_to_adjust_capacity is not None:
            # locked with the rest of the day's slots in run()
            target = SlotRepository.find_slot_for_doctor(db, slot_id_to_adjust_capacity, doctor.id)
            if target is None:
                raise NotFound("Slot to adjust not found or does not belong to this doctor.")
            if not (bounds.start <= target.start_time < bounds.end):
                raise InvalidInput("The slot to adjust is not on the adjusted date.")

        result = _SessionRewrite(db, uow, doctor, bounds, window, minutes, target, new_max_capacity).run()

    logger.info("adjust_session doctor=%s day=%s done: %s", doctor_id, day.isoformat(), result.as_dict())
    return result.as_dict()
