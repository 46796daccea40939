"""Slot repository - database operations for availability slots"""

from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import case, update
from sqlalchemy.orm import Session

from ..models import Appointment, Slot, SlotType, utcnow


class SlotRepository:
    """
    Store contract for slots. Nothing here commits: the caller owns the
    transaction and decides between commit and rollback.
    """

    @staticmethod
    def find_slot(db: Session, slot_id: str, for_update: bool = False) -> Optional[Slot]:
        """Get a slot by id, optionally row-locked for the rest of the transaction"""
        query = db.query(Slot).filter(Slot.id == slot_id)
        if for_update:
            query = query.with_for_update().populate_existing()
        return query.first()

    @staticmethod
    def find_slot_for_doctor(db: Session, slot_id: str, doctor_id: str, for_update: bool = False) -> Optional[Slot]:
        query = db.query(Slot).filter(Slot.id == slot_id, Slot.doctor_id == doctor_id)
        if for_update:
            query = query.with_for_update().populate_existing()
        return query.first()

    @staticmethod
    def find_slots_by_doctor_and_range(
        db: Session,
        doctor_id: str,
        start: datetime,
        end: datetime,
    ) -> list[Slot]:
        """Slots of a doctor whose start_time falls in [start, end), ordered by start"""
        return (
            db.query(Slot)
            .filter(Slot.doctor_id == doctor_id)
            .filter(Slot.start_time >= start)
            .filter(Slot.start_time < end)
            .order_by(Slot.start_time.asc())
            .all()
        )

    @staticmethod
    def lock_slots_by_doctor_and_range(db: Session, doctor_id: str, start: datetime, end: datetime) -> list[Slot]:
        """Row-lock the doctor's slots starting in [start, end), in id order"""
        return (
            db.query(Slot)
            .filter(Slot.doctor_id == doctor_id)
            .filter(Slot.start_time >= start)
            .filter(Slot.start_time < end)
            .order_by(Slot.id.asc())
            .with_for_update()
            .populate_existing()
            .all()
        )

    @staticmethod
    def lock_slots(db: Session, slot_ids: Iterable[Optional[str]]) -> dict[str, Slot]:
        """
        Row-lock several slots at once. Locks are taken in id order so two
        transactions locking the same pair never wait on each other in a cycle.
        Missing ids are simply absent from the result.
        """
        ids = sorted({s for s in slot_ids if s})
        if not ids:
            return {}
        rows = (
            db.query(Slot)
            .filter(Slot.id.in_(ids))
            .order_by(Slot.id.asc())
            .with_for_update()
            .populate_existing()
            .all()
        )
        return {slot.id: slot for slot in rows}

    @staticmethod
    def find_slots_by_doctor(db: Session, doctor_id: str) -> list[Slot]:
        return db.query(Slot).filter(Slot.doctor_id == doctor_id).order_by(Slot.start_time.asc()).all()

    @staticmethod
    def find_slots_by_ids(db: Session, slot_ids: Iterable[str]) -> dict[str, Slot]:
        ids = [s for s in set(slot_ids) if s]
        if not ids:
            return {}
        return {slot.id: slot for slot in db.query(Slot).filter(Slot.id.in_(ids)).all()}

    @staticmethod
    def find_overlapping(db: Session, doctor_id: str, start: datetime, end: datetime) -> list[Slot]:
        """Slots of the doctor sharing any instant with [start, end)"""
        return (
            db.query(Slot)
            .filter(Slot.doctor_id == doctor_id)
            .filter(Slot.start_time < end)
            .filter(Slot.end_time > start)
            .all()
        )

    @staticmethod
    def create_slot(db: Session, **slot_data) -> Slot:
        slot = Slot(**slot_data)
        db.add(slot)
        db.flush()
        return slot

    @staticmethod
    def create_slots(db: Session, slots: list[Slot]) -> list[Slot]:
        db.add_all(slots)
        db.flush()
        return slots

    @staticmethod
    def update_slot(db: Session, slot: Slot, **updates) -> Slot:
        for key, value in updates.items():
            if hasattr(slot, key):
                setattr(slot, key, value)
        db.flush()
        return slot

    @staticmethod
    def delete_slot(db: Session, slot: Slot) -> None:
        """
        Delete a slot. Appointments that still point at it keep their row,
        only the link is severed.
        """
        db.query(Appointment).filter(Appointment.slot_id == slot.id).update(
            {Appointment.slot_id: None, Appointment.updated_at: utcnow()},
            synchronize_session="fetch",
        )
        db.delete(slot)
        db.flush()

    @staticmethod
    def consume(db: Session, slot: Slot) -> bool:
        """
        Take one place in the slot with a single conditional UPDATE.

        Returns False when the guard did not match, i.e. a concurrent booking
        got there first (stream already taken, wave already full).
        """
        db.flush()
        if slot.slot_type == SlotType.wave:
            stmt = (
                update(Slot)
                .where(
                    Slot.id == slot.id,
                    Slot.max_capacity.is_not(None),
                    Slot.booked_count < Slot.max_capacity,
                )
                .values(
                    booked_count=Slot.booked_count + 1,
                    is_available=case((Slot.booked_count + 1 < Slot.max_capacity, True), else_=False),
                )
            )
        else:
            stmt = (
                update(Slot)
                .where(Slot.id == slot.id, Slot.is_available.is_(True))
                .values(is_available=False)
            )
        result = db.execute(stmt.execution_options(synchronize_session=False))
        db.refresh(slot)
        return result.rowcount == 1

    @staticmethod
    def release(db: Session, slot: Slot) -> None:
        """Give back one place: wave decrements (never below 0), stream frees"""
        db.flush()
        if slot.slot_type == SlotType.wave:
            stmt = (
                update(Slot)
                .where(Slot.id == slot.id)
                .values(
                    booked_count=case((Slot.booked_count > 0, Slot.booked_count - 1), else_=0),
                    is_available=True,
                )
            )
        else:
            stmt = update(Slot).where(Slot.id == slot.id).values(is_available=True)
        db.execute(stmt.execution_options(synchronize_session=False))
        db.refresh(slot)
