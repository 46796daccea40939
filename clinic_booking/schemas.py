from pydantic import BaseModel, ConfigDict
from datetime import date, datetime
from typing import Optional

from .models import SlotType


class SlotIn(BaseModel):
    start_time: datetime
    end_time: datetime
    slot_type: str = "stream"
    max_capacity: Optional[int] = None


class SlotOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    doctor_id: str
    start_time: datetime
    end_time: datetime
    slot_type: SlotType
    is_available: bool
    max_capacity: Optional[int] = None
    booked_count: int


class SessionAdjustRequest(BaseModel):
    date: date
    new_start_time: datetime
    new_end_time: datetime
    new_consultation_duration_minutes: Optional[int] = None
    slot_id_to_adjust_capacity: Optional[str] = None
    new_max_capacity: Optional[int] = None


class SessionAdjustResponse(BaseModel):
    appointments_cancelled: int
    slots_deleted: int
    slots_created: int
    slots_resized: int
    slots_capacity_adjusted: int


class BookRequest(BaseModel):
    slot_id: str
    patient_id: str
    notes: Optional[str] = None
    expected_check_in_time: Optional[datetime] = None


class BookResponse(BaseModel):
    appointment_id: str
    status: str


class RescheduleRequest(BaseModel):
    new_slot_id: str
    patient_id: str


class AppointmentIdResponse(BaseModel):
    appointment_id: str


class SlotDetails(BaseModel):
    start_time: datetime
    end_time: datetime
    is_available: bool
    slot_type: str
    max_capacity: Optional[int] = None
    booked_count: int


class AppointmentOut(BaseModel):
    id: str
    doctor_id: Optional[str] = None
    patient_id: Optional[str] = None
    slot_id: Optional[str] = None
    appointment_time: datetime
    status: str
    notes: Optional[str] = None
    expected_check_in_time: Optional[datetime] = None
    created_at: datetime
    slot: Optional[SlotDetails] = None
