import logging
from datetime import timedelta

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import Session

from ..database import SessionLocal
from ..config import settings
from ..models import utcnow
from ..repositories import AppointmentRepository, ProfileRepository
from ..services.notifications import EventKind, NotificationGateway, build_event, dispatch

logger = logging.getLogger(__name__)


def reminder_job(db: Session | None = None, notifier: NotificationGateway | None = None) -> int:
    """
    Reminds every appointment holding a place (rescheduled ones included) that
    starts in the hour REMINDER_LEAD_HOURS from now.
    """
    target = utcnow() + timedelta(hours=settings.REMINDER_LEAD_HOURS)
    start = target.replace(minute=0, second=0, microsecond=0)
    end = start + timedelta(hours=1)

    own_session = db is None
    db = db or SessionLocal()
    try:
        events = []
        for appt in AppointmentRepository.find_holders_in_range(db, start, end):
            patient = ProfileRepository.find_patient(db, appt.patient_id)
            doctor = ProfileRepository.find_doctor(db, appt.doctor_id)
            events.append(build_event(EventKind.reminder, appt, patient, doctor))
    finally:
        if own_session:
            db.close()

    sent = dispatch(notifier, events)
    logger.info("Reminder job: %d/%d reminders sent for %s..%s", sent, len(events), start, end)
    return sent


def start_scheduler():
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(reminder_job, CronTrigger(minute=0), id="appointment_reminders")  # every hour
    scheduler.start()
    return scheduler
