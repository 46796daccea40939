"""Profile repository - read-only lookups of doctors and patients"""

from typing import Optional

from sqlalchemy.orm import Session

from ..models import Doctor, Patient


class ProfileRepository:
    """Doctor and patient profiles are owned elsewhere; this core only reads them"""

    @staticmethod
    def find_doctor(db: Session, doctor_id: str) -> Optional[Doctor]:
        return db.query(Doctor).filter(Doctor.id == doctor_id).first()

    @staticmethod
    def find_patient(db: Session, patient_id: str) -> Optional[Patient]:
        return db.query(Patient).filter(Patient.id == patient_id).first()

    @staticmethod
    def find_doctor_by_user(db: Session, user_id: str) -> Optional[Doctor]:
        return db.query(Doctor).filter(Doctor.user_id == user_id).first()

    @staticmethod
    def find_patient_by_user(db: Session, user_id: str) -> Optional[Patient]:
        return db.query(Patient).filter(Patient.user_id == user_id).first()

    @staticmethod
    def lock_doctor(db: Session, doctor_id: str) -> Optional[Doctor]:
        """
        Row-lock the doctor for the rest of the transaction. Session
        adjustments take this lock so two of them never rewrite the same
        doctor's day at once.
        """
        return (
            db.query(Doctor)
            .filter(Doctor.id == doctor_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
