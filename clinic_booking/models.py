# clinic_booking/models.py
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import Integer, String, DateTime, Enum, ForeignKey, Boolean, Text, Index
from datetime import datetime, timezone
import enum
import uuid

from .config import settings
from .database import Base


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    """Naive UTC, the representation every timestamp column uses."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SlotType(str, enum.Enum):
    stream = "stream"
    wave = "wave"


class AppointmentStatus(str, enum.Enum):
    pending = "pending"
    confirmed = "confirmed"
    completed = "completed"
    cancelled = "cancelled"
    rescheduled = "rescheduled"
    rejected = "rejected"


class ActorRole(str, enum.Enum):
    patient = "patient"
    doctor = "doctor"


ACTIVE_STATUSES = (AppointmentStatus.pending, AppointmentStatus.confirmed)
RESCHEDULABLE_STATUSES = ACTIVE_STATUSES
NON_CANCELLABLE_STATUSES = (
    AppointmentStatus.cancelled,
    AppointmentStatus.completed,
    AppointmentStatus.rejected,
)
# Appointments that occupy a place in their slot, whatever counts as active
HOLDING_STATUSES = ACTIVE_STATUSES + (AppointmentStatus.rescheduled,)


def active_statuses() -> tuple:
    if settings.RESCHEDULED_COUNTS_AS_ACTIVE:
        return ACTIVE_STATUSES + (AppointmentStatus.rescheduled,)
    return ACTIVE_STATUSES


class Doctor(Base):
    __tablename__ = "doctors"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    # Opaque id issued by the external auth service
    user_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    full_name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    specialization: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class Patient(Base):
    __tablename__ = "patients"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    full_name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)


class Slot(Base):
    __tablename__ = "availability_slots"
    __table_args__ = (
        Index("ix_slots_doctor_start", "doctor_id", "start_time"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    doctor_id: Mapped[str] = mapped_column(
        String(32),
        ForeignKey("doctors.id", ondelete="CASCADE"),
        nullable=False,
    )
    # Half-open [start_time, end_time), naive UTC
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    slot_type: Mapped[SlotType] = mapped_column(Enum(SlotType, name="slot_type"), default=SlotType.stream, nullable=False)
    is_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # wave only
    max_capacity: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, default=None)
    booked_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    @property
    def duration_minutes(self) -> float:
        return (self.end_time - self.start_time).total_seconds() / 60

    def __repr__(self) -> str:
        return (
            f"<Slot {self.id} {self.slot_type.value} "
            f"{self.start_time:%Y-%m-%d %H:%M}-{self.end_time:%H:%M}>"
        )


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        Index("ix_appointments_doctor_patient_time", "doctor_id", "patient_id", "appointment_time"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    doctor_id: Mapped[str] = mapped_column(String(32), ForeignKey("doctors.id", ondelete="SET NULL"), nullable=True, index=True)
    patient_id: Mapped[str] = mapped_column(String(32), ForeignKey("patients.id", ondelete="SET NULL"), nullable=True, index=True)
    # Severed (NULL) when the slot is removed by a session adjustment
    slot_id: Mapped[Optional[str]] = mapped_column(
        String(32),
        ForeignKey("availability_slots.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    appointment_time: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    status: Mapped[AppointmentStatus] = mapped_column(
        Enum(AppointmentStatus, name="appointment_status"),
        default=AppointmentStatus.pending,
        nullable=False,
    )
    expected_check_in_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
