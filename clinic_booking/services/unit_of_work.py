# clinic_booking/services/unit_of_work.py
"""
Transaction boundary for the booking core.

One ``UnitOfWork`` wraps one engine operation: everything inside the block
is committed together or rolled back together, and the notification events
collected on the way are handed to the gateway only after a successful
commit.

Usage:
    with UnitOfWork(db, notifier) as uow:
        slot = SlotRepository.find_slot(db, slot_id, for_update=True)
        ...
        uow.add_event(event)
"""
import logging
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..errors import InternalError
from .notifications import NotificationEvent, NotificationGateway, dispatch

logger = logging.getLogger(__name__)


class UnitOfWork:
    def __init__(self, db: Session, notifier: Optional[NotificationGateway] = None):
        self.db = db
        self.notifier = notifier
        self.events: List[NotificationEvent] = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            self.rollback()
            if isinstance(exc_val, SQLAlchemyError):
                raise InternalError("Storage failure; no changes were saved.") from exc_val
            return False

        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.rollback()
            logger.exception("Commit failed")
            raise InternalError("Storage failure; no changes were saved.") from e

        self.publish()
        return False

    def add_event(self, event: NotificationEvent) -> None:
        self.events.append(event)

    def rollback(self) -> None:
        self.events.clear()
        self.db.rollback()

    def publish(self) -> None:
        if not self.events:
            return
        events, self.events = self.events, []
        dispatch(self.notifier, events)
