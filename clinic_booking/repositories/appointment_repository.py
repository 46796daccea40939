"""Appointment repository - database operations for appointments"""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ..models import Appointment, HOLDING_STATUSES, active_statuses, utcnow


class AppointmentRepository:
    """Store contract for appointments. Never commits."""

    @staticmethod
    def find_appointment(db: Session, appointment_id: str, for_update: bool = False) -> Optional[Appointment]:
        query = db.query(Appointment).filter(Appointment.id == appointment_id)
        if for_update:
            query = query.with_for_update().populate_existing()
        return query.first()

    @staticmethod
    def create_appointment(db: Session, **appointment_data) -> Appointment:
        appointment = Appointment(**appointment_data)
        db.add(appointment)
        db.flush()
        return appointment

    @staticmethod
    def update_appointment(db: Session, appointment: Appointment, **updates) -> Appointment:
        for key, value in updates.items():
            if hasattr(appointment, key):
                setattr(appointment, key, value)
        appointment.updated_at = utcnow()
        db.flush()
        return appointment

    @staticmethod
    def count_active_by_slot(db: Session, slot_id: str) -> int:
        return (
            db.query(Appointment)
            .filter(Appointment.slot_id == slot_id)
            .filter(Appointment.status.in_(active_statuses()))
            .count()
        )

    @staticmethod
    def count_holders_by_slot(db: Session, slot_id: str) -> int:
        """Appointments occupying a place in the slot, rescheduled ones included"""
        return (
            db.query(Appointment)
            .filter(Appointment.slot_id == slot_id)
            .filter(Appointment.status.in_(HOLDING_STATUSES))
            .count()
        )

    @staticmethod
    def find_holders_by_slot(
        db: Session,
        slot_id: str,
        newest_first: bool = True,
        limit: Optional[int] = None,
    ) -> list[Appointment]:
        """Appointments occupying a place in the slot, by creation time"""
        order = Appointment.created_at.desc() if newest_first else Appointment.created_at.asc()
        query = (
            db.query(Appointment)
            .filter(Appointment.slot_id == slot_id)
            .filter(Appointment.status.in_(HOLDING_STATUSES))
            .order_by(order, Appointment.id.desc() if newest_first else Appointment.id.asc())
        )
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    @staticmethod
    def lock_holders_by_doctor_and_range(
        db: Session,
        doctor_id: str,
        start: datetime,
        end: datetime,
    ) -> list[Appointment]:
        """
        Row-lock the doctor's slot holders with appointment_time in [start, end).
        Rows are locked in id order, before any slot row of the same
        transaction.
        """
        return (
            db.query(Appointment)
            .filter(Appointment.doctor_id == doctor_id)
            .filter(Appointment.appointment_time >= start)
            .filter(Appointment.appointment_time < end)
            .filter(Appointment.status.in_(HOLDING_STATUSES))
            .order_by(Appointment.id.asc())
            .with_for_update()
            .populate_existing()
            .all()
        )

    @staticmethod
    def find_holders_in_range(db: Session, start: datetime, end: datetime) -> list[Appointment]:
        return (
            db.query(Appointment)
            .filter(Appointment.appointment_time >= start)
            .filter(Appointment.appointment_time < end)
            .filter(Appointment.status.in_(HOLDING_STATUSES))
            .order_by(Appointment.appointment_time.asc())
            .all()
        )

    @staticmethod
    def find_active_in_range(db: Session, start: datetime, end: datetime) -> list[Appointment]:
        return (
            db.query(Appointment)
            .filter(Appointment.appointment_time >= start)
            .filter(Appointment.appointment_time < end)
            .filter(Appointment.status.in_(active_statuses()))
            .order_by(Appointment.appointment_time.asc())
            .all()
        )

    @staticmethod
    def find_by_patient(db: Session, patient_id: str) -> list[Appointment]:
        return (
            db.query(Appointment)
            .filter(Appointment.patient_id == patient_id)
            .order_by(Appointment.appointment_time.asc())
            .all()
        )

    @staticmethod
    def find_by_doctor(db: Session, doctor_id: str) -> list[Appointment]:
        return (
            db.query(Appointment)
            .filter(Appointment.doctor_id == doctor_id)
            .order_by(Appointment.appointment_time.asc())
            .all()
        )
