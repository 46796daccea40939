# clinic_booking/services/notifications.py
"""
Notification gateway.

Events are handed over only after the transaction that produced them has
committed. Delivery is best effort and at most once: a failing gateway is
logged and otherwise ignored.
"""
from __future__ import annotations
import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Protocol

from ..config import settings
from ..models import Appointment, Doctor, Patient, Slot
from .scheduling import Interval
from .twilio_client import send_message

logger = logging.getLogger(__name__)


class EventKind(str, enum.Enum):
    booked = "booked"
    cancelled = "cancelled"
    rescheduled = "rescheduled"
    reminder = "reminder"


REASON_SESSION_ADJUSTED = "session adjusted"
REASON_CAPACITY_REDUCED = "capacity reduced"


@dataclass(frozen=True)
class Contact:
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    @classmethod
    def of(cls, profile: Doctor | Patient | None) -> "Contact":
        if profile is None:
            return cls()
        return cls(name=profile.full_name, email=profile.email, phone=profile.phone)


@dataclass(frozen=True)
class NotificationEvent:
    kind: EventKind
    appointment_id: str
    appointment_time: datetime
    patient: Contact
    doctor: Contact
    reason: Optional[str] = None
    old_range: Optional[Interval] = None
    new_range: Optional[Interval] = None


def build_event(
    kind: EventKind,
    appointment: Appointment,
    patient: Patient | None,
    doctor: Doctor | None,
    reason: Optional[str] = None,
    old_slot: Slot | Interval | None = None,
    new_slot: Slot | Interval | None = None,
) -> NotificationEvent:
    return NotificationEvent(
        kind=kind,
        appointment_id=appointment.id,
        appointment_time=appointment.appointment_time,
        patient=Contact.of(patient),
        doctor=Contact.of(doctor),
        reason=reason,
        old_range=_as_interval(old_slot),
        new_range=_as_interval(new_slot),
    )


def _as_interval(value) -> Optional[Interval]:
    if value is None:
        return None
    if isinstance(value, Interval):
        return value
    return Interval(value.start_time, value.end_time)


# ------------------ rendering ------------------

def _fmt_dt(dt: Optional[datetime]) -> str:
    if isinstance(dt, datetime):
        return dt.strftime("%d/%m/%Y %H:%M")
    return ""


def _fmt_range(iv: Optional[Interval]) -> str:
    if iv is None:
        return ""
    return f"{_fmt_dt(iv.start)} - {iv.end:%H:%M}"


def render(event: NotificationEvent) -> str:
    doctor = event.doctor.name or "your doctor"
    when = _fmt_dt(event.appointment_time)
    if event.kind == EventKind.booked:
        return f"Appointment #{event.appointment_id[:8]} with {doctor} booked for {when}."
    if event.kind == EventKind.cancelled:
        body = f"Your appointment with {doctor} on {when} has been cancelled."
        if event.reason:
            body += f"\nReason: {event.reason}"
        return body
    if event.kind == EventKind.rescheduled:
        body = f"Your appointment with {doctor} has been rescheduled."
        if event.old_range and event.new_range:
            body += f"\nOld time: {_fmt_range(event.old_range)}"
            body += f"\nNew time: {_fmt_range(event.new_range)}"
        else:
            body += f"\nNew time: {when}"
        return body
    return f"Reminder: appointment with {doctor} on {when}."


# ------------------ gateways ------------------

class NotificationGateway(Protocol):
    def notify(self, event: NotificationEvent) -> None: ...


class LoggingNotificationGateway:
    """Writes every event to the log. Used in DRY_RUN and in development."""

    def notify(self, event: NotificationEvent) -> None:
        logger.info(
            "[NOTIFY %s] appointment=%s patient=%s doctor=%s body=%s",
            event.kind.value,
            event.appointment_id,
            event.patient.phone or event.patient.email,
            event.doctor.phone or event.doctor.email,
            render(event).replace("\n", " | "),
        )


class TwilioNotificationGateway:
    """Texts the patient over SMS or WhatsApp."""

    def __init__(self, channel: Optional[str] = None):
        self.channel = channel or settings.NOTIFY_CHANNEL

    def notify(self, event: NotificationEvent) -> None:
        if not event.patient.phone:
            logger.warning("No phone for patient of appointment %s, %s not sent", event.appointment_id, event.kind.value)
            return
        send_message(event.patient.phone, render(event), channel=self.channel)


def get_notifier() -> NotificationGateway:
    if settings.DRY_RUN:
        return LoggingNotificationGateway()
    return TwilioNotificationGateway()


def dispatch(notifier: Optional[NotificationGateway], events: Iterable[NotificationEvent]) -> int:
    """
    Hands each event to the gateway. Failures are logged and swallowed so
    an already-committed transaction is never affected. Returns how many
    events went through.
    """
    notifier = notifier or get_notifier()
    sent = 0
    for event in events:
        try:
            notifier.notify(event)
            sent += 1
        except Exception:
            logger.exception("Notification %s for appointment %s failed", event.kind.value, event.appointment_id)
    return sent
