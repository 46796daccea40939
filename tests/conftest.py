import os

# Must be set before clinic_booking.config is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["TIMEZONE"] = "UTC"
os.environ["DRY_RUN"] = "true"
os.environ["RESCHEDULED_COUNTS_AS_ACTIVE"] = "false"
os.environ["REMINDERS_ENABLED"] = "false"

from datetime import datetime, time, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from clinic_booking.database import Base
from clinic_booking.models import (
    Appointment,
    AppointmentStatus,
    Doctor,
    HOLDING_STATUSES,
    Patient,
    Slot,
    SlotType,
    utcnow,
)
from clinic_booking.repositories import AppointmentRepository
from clinic_booking.services.scheduling import split_range

# A day safely in the future so "past slot" checks never trigger by accident
DAY = (utcnow() + timedelta(days=10)).date()


def at(hour: int, minute: int = 0, day=None) -> datetime:
    return datetime.combine(day or DAY, time(hour, minute))


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def notify(self, event):
        self.events.append(event)

    def kinds(self):
        return [e.kind.value for e in self.events]


class FailingNotifier:
    def __init__(self):
        self.calls = 0

    def notify(self, event):
        self.calls += 1
        raise RuntimeError("gateway down")


class Factory:
    def __init__(self, db):
        self.db = db
        self._seq = 0

    def _next(self) -> int:
        self._seq += 1
        return self._seq

    def doctor(self, user_id=None, **kw) -> Doctor:
        n = self._next()
        doctor = Doctor(
            user_id=user_id or f"doctor-user-{n}",
            full_name=kw.pop("full_name", f"Dr. Number {n}"),
            email=kw.pop("email", f"doctor{n}@clinic.test"),
            phone=kw.pop("phone", f"+1555000{n:04d}"),
            **kw,
        )
        self.db.add(doctor)
        self.db.commit()
        return doctor

    def patient(self, user_id=None, **kw) -> Patient:
        n = self._next()
        patient = Patient(
            user_id=user_id or f"patient-user-{n}",
            full_name=kw.pop("full_name", f"Patient {n}"),
            email=kw.pop("email", f"patient{n}@mail.test"),
            phone=kw.pop("phone", f"+1555100{n:04d}"),
            **kw,
        )
        self.db.add(patient)
        self.db.commit()
        return patient

    def slot(self, doctor, start, end, slot_type=SlotType.stream, max_capacity=None) -> Slot:
        slot = Slot(
            doctor_id=doctor.id,
            start_time=start,
            end_time=end,
            slot_type=slot_type,
            is_available=True,
            max_capacity=max_capacity,
            booked_count=0,
        )
        self.db.add(slot)
        self.db.commit()
        return slot

    def day_of_slots(self, doctor, start, end, minutes=15) -> list[Slot]:
        slots = [
            Slot(doctor_id=doctor.id, start_time=iv.start, end_time=iv.end,
                 slot_type=SlotType.stream, is_available=True, booked_count=0)
            for iv in split_range(start, end, minutes)
        ]
        self.db.add_all(slots)
        self.db.commit()
        return slots

    def appointment(
        self,
        patient,
        slot=None,
        doctor=None,
        status=AppointmentStatus.confirmed,
        created_at=None,
        appointment_time=None,
    ) -> Appointment:
        """Inserts an appointment and keeps the slot counters consistent with it."""
        appointment = Appointment(
            doctor_id=slot.doctor_id if slot is not None else doctor.id,
            patient_id=patient.id,
            slot_id=slot.id if slot is not None else None,
            appointment_time=appointment_time or slot.start_time,
            status=status,
            created_at=created_at or utcnow(),
        )
        self.db.add(appointment)
        if slot is not None and status in HOLDING_STATUSES:
            if slot.slot_type == SlotType.wave:
                slot.booked_count += 1
                slot.is_available = slot.booked_count < slot.max_capacity
            else:
                slot.is_available = False
        self.db.commit()
        return appointment


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def factory(db):
    return Factory(db)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def check_invariants(db):
    """Asserts the slot counter invariants against the appointment table."""

    def _check():
        db.expire_all()
        for slot in db.query(Slot).all():
            active = AppointmentRepository.count_active_by_slot(db, slot.id)
            if slot.slot_type == SlotType.stream:
                assert slot.is_available == (active == 0), slot
            else:
                assert slot.booked_count == active, slot
                assert 0 <= slot.booked_count <= slot.max_capacity, slot

    return _check
