# clinic_booking/repositories/__init__.py
from .slot_repository import SlotRepository
from .appointment_repository import AppointmentRepository
from .profile_repository import ProfileRepository

__all__ = ["SlotRepository", "AppointmentRepository", "ProfileRepository"]
