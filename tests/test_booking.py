from datetime import timedelta

import pytest

from clinic_booking.config import settings
from clinic_booking.errors import Conflict, Forbidden, InvalidInput, NotFound
from clinic_booking.models import Appointment, AppointmentStatus, SlotType, utcnow
from clinic_booking.repositories import SlotRepository
from clinic_booking.services.booking import (
    book_slot,
    cancel_appointment,
    list_doctor_appointments,
    list_patient_appointments,
    reschedule_appointment,
)
from clinic_booking.services.scheduling import Interval

from conftest import FailingNotifier, at


@pytest.fixture
def doctor(factory):
    return factory.doctor(full_name="Dr. Ada Grey")


@pytest.fixture
def patient(factory):
    return factory.patient()


@pytest.fixture
def stream_slot(factory, doctor):
    return factory.slot(doctor, at(9), at(9, 15))


@pytest.fixture
def wave_slot(factory, doctor):
    return factory.slot(doctor, at(10), at(11), slot_type=SlotType.wave, max_capacity=3)


class TestBook:
    def test_stream_slot(self, db, patient, stream_slot, notifier, check_invariants):
        result = book_slot(db, stream_slot.id, patient.id, notes="first visit", notifier=notifier)

        assert result["status"] == "pending"
        appointment = db.get(Appointment, result["appointment_id"])
        assert appointment.slot_id == stream_slot.id
        assert appointment.appointment_time == stream_slot.start_time
        assert appointment.notes == "first visit"
        db.refresh(stream_slot)
        assert stream_slot.is_available is False
        assert notifier.kinds() == ["booked"]
        assert notifier.events[0].doctor.name == "Dr. Ada Grey"
        check_invariants()

    def test_stream_slot_taken(self, db, factory, patient, stream_slot):
        book_slot(db, stream_slot.id, patient.id)
        other = factory.patient()

        with pytest.raises(Conflict):
            book_slot(db, stream_slot.id, other.id)
        assert db.query(Appointment).count() == 1

    def test_wave_fills_up(self, db, factory, wave_slot, check_invariants):
        for _ in range(3):
            book_slot(db, wave_slot.id, factory.patient().id)
        db.refresh(wave_slot)
        assert wave_slot.booked_count == 3
        assert wave_slot.is_available is False

        with pytest.raises(Conflict):
            book_slot(db, wave_slot.id, factory.patient().id)
        db.refresh(wave_slot)
        assert wave_slot.booked_count == 3
        check_invariants()

    def test_wave_without_capacity(self, db, factory, doctor, patient):
        slot = factory.slot(doctor, at(12), at(13), slot_type=SlotType.wave, max_capacity=None)
        with pytest.raises(Conflict):
            book_slot(db, slot.id, patient.id)

    def test_unknown_slot(self, db, patient):
        with pytest.raises(NotFound):
            book_slot(db, "missing", patient.id)

    def test_unknown_patient_changes_nothing(self, db, stream_slot):
        with pytest.raises(NotFound):
            book_slot(db, stream_slot.id, "missing")
        db.refresh(stream_slot)
        assert stream_slot.is_available is True
        assert db.query(Appointment).count() == 0

    def test_past_slot(self, db, factory, doctor, patient):
        start = utcnow() - timedelta(hours=1)
        slot = factory.slot(doctor, start, start + timedelta(minutes=15))
        with pytest.raises(InvalidInput):
            book_slot(db, slot.id, patient.id)

    def test_check_in_time_kept_for_wave_only(self, db, factory, patient, stream_slot, wave_slot):
        wave = book_slot(db, wave_slot.id, patient.id, expected_check_in_time=at(10, 20))
        stream = book_slot(db, stream_slot.id, factory.patient().id, expected_check_in_time=at(9, 5))

        assert db.get(Appointment, wave["appointment_id"]).expected_check_in_time == at(10, 20)
        assert db.get(Appointment, stream["appointment_id"]).expected_check_in_time is None

    def test_failing_gateway_does_not_undo_booking(self, db, patient, stream_slot):
        gateway = FailingNotifier()
        result = book_slot(db, stream_slot.id, patient.id, notifier=gateway)

        assert gateway.calls == 1
        db.expire_all()
        assert db.get(Appointment, result["appointment_id"]) is not None
        assert SlotRepository.find_slot(db, stream_slot.id).is_available is False


class TestConsumeGuard:
    def test_stale_read_loses(self, session_factory, factory, doctor, patient, stream_slot):
        first = session_factory()
        second = session_factory()
        try:
            # both sessions have seen the slot free
            stale = SlotRepository.find_slot(first, stream_slot.id)
            assert stale.is_available is True

            book_slot(second, stream_slot.id, patient.id)

            assert SlotRepository.consume(first, stale) is False
            first.rollback()
        finally:
            first.close()
            second.close()

    def test_wave_guard_stops_at_capacity(self, db, wave_slot):
        assert all(SlotRepository.consume(db, wave_slot) for _ in range(3))
        assert SlotRepository.consume(db, wave_slot) is False
        assert wave_slot.booked_count == 3
        db.rollback()

    def test_release_never_goes_negative(self, db, wave_slot):
        SlotRepository.release(db, wave_slot)
        assert wave_slot.booked_count == 0
        assert wave_slot.is_available is True
        db.rollback()

    def test_lock_slots_in_id_order(self, db, stream_slot, wave_slot):
        locked = SlotRepository.lock_slots(db, [wave_slot.id, None, "missing", stream_slot.id])
        assert list(locked) == sorted([stream_slot.id, wave_slot.id])
        db.rollback()


class TestCancel:
    def test_patient_cancels_and_slot_is_rebookable(self, db, factory, patient, stream_slot, notifier, check_invariants):
        appointment_id = book_slot(db, stream_slot.id, patient.id)["appointment_id"]

        cancel_appointment(db, appointment_id, patient.user_id, "patient", notifier=notifier)

        appointment = db.get(Appointment, appointment_id)
        assert appointment.status == AppointmentStatus.cancelled
        db.refresh(stream_slot)
        assert stream_slot.is_available is True
        assert notifier.kinds() == ["cancelled"]
        check_invariants()

        book_slot(db, stream_slot.id, factory.patient().id)
        check_invariants()

    def test_doctor_cancels_wave_booking(self, db, factory, doctor, wave_slot, check_invariants):
        ids = [book_slot(db, wave_slot.id, factory.patient().id)["appointment_id"] for _ in range(3)]

        cancel_appointment(db, ids[0], doctor.user_id, "doctor")

        db.refresh(wave_slot)
        assert wave_slot.booked_count == 2
        assert wave_slot.is_available is True
        check_invariants()

    def test_other_patient_is_forbidden(self, db, factory, patient, stream_slot):
        appointment_id = book_slot(db, stream_slot.id, patient.id)["appointment_id"]
        intruder = factory.patient()

        with pytest.raises(Forbidden):
            cancel_appointment(db, appointment_id, intruder.user_id, "patient")
        assert db.get(Appointment, appointment_id).status == AppointmentStatus.pending

    def test_other_doctor_is_forbidden(self, db, factory, patient, stream_slot):
        appointment_id = book_slot(db, stream_slot.id, patient.id)["appointment_id"]
        other_doctor = factory.doctor()

        with pytest.raises(Forbidden):
            cancel_appointment(db, appointment_id, other_doctor.user_id, "doctor")

    def test_unknown_role_is_forbidden(self, db, patient, stream_slot):
        appointment_id = book_slot(db, stream_slot.id, patient.id)["appointment_id"]
        with pytest.raises(Forbidden):
            cancel_appointment(db, appointment_id, patient.user_id, "admin")

    def test_unknown_appointment(self, db, patient):
        with pytest.raises(NotFound):
            cancel_appointment(db, "missing", patient.user_id, "patient")

    @pytest.mark.parametrize("status", [
        AppointmentStatus.cancelled,
        AppointmentStatus.completed,
        AppointmentStatus.rejected,
    ])
    def test_terminal_states(self, db, factory, patient, stream_slot, status):
        appointment = factory.appointment(patient, stream_slot, status=status)
        with pytest.raises(InvalidInput):
            cancel_appointment(db, appointment.id, patient.user_id, "patient")

    def test_slot_already_removed(self, db, patient, stream_slot):
        appointment_id = book_slot(db, stream_slot.id, patient.id)["appointment_id"]
        SlotRepository.delete_slot(db, stream_slot)
        db.commit()

        cancel_appointment(db, appointment_id, patient.user_id, "patient")

        appointment = db.get(Appointment, appointment_id)
        assert appointment.status == AppointmentStatus.cancelled
        assert appointment.slot_id is None


class TestReschedule:
    def test_moves_the_booking(self, db, factory, doctor, patient, stream_slot, notifier, monkeypatch, check_invariants):
        target = factory.slot(doctor, at(11), at(11, 15))
        appointment_id = book_slot(db, stream_slot.id, patient.id)["appointment_id"]

        result = reschedule_appointment(db, appointment_id, target.id, patient.id, notifier=notifier)

        assert result == {"appointment_id": appointment_id}
        appointment = db.get(Appointment, appointment_id)
        assert appointment.slot_id == target.id
        assert appointment.appointment_time == at(11)
        assert appointment.status == AppointmentStatus.rescheduled
        db.refresh(stream_slot)
        db.refresh(target)
        assert stream_slot.is_available is True
        assert target.is_available is False

        event = notifier.events[-1]
        assert event.kind.value == "rescheduled"
        assert event.old_range == Interval(at(9), at(9, 15))
        assert event.new_range == Interval(at(11), at(11, 15))

        monkeypatch.setattr(settings, "RESCHEDULED_COUNTS_AS_ACTIVE", True)
        check_invariants()

    def test_wave_to_wave(self, db, factory, doctor, patient, wave_slot):
        other_wave = factory.slot(doctor, at(14), at(15), slot_type=SlotType.wave, max_capacity=2)
        appointment_id = book_slot(db, wave_slot.id, patient.id, expected_check_in_time=at(10, 30))["appointment_id"]

        reschedule_appointment(db, appointment_id, other_wave.id, patient.id)

        db.refresh(wave_slot)
        db.refresh(other_wave)
        assert wave_slot.booked_count == 0
        assert other_wave.booked_count == 1
        assert db.get(Appointment, appointment_id).expected_check_in_time is None

    def test_full_target_keeps_old_slot(self, db, factory, patient, stream_slot, wave_slot):
        for _ in range(3):
            book_slot(db, wave_slot.id, factory.patient().id)
        appointment_id = book_slot(db, stream_slot.id, patient.id)["appointment_id"]

        with pytest.raises(Conflict):
            reschedule_appointment(db, appointment_id, wave_slot.id, patient.id)

        db.expire_all()
        appointment = db.get(Appointment, appointment_id)
        assert appointment.slot_id == stream_slot.id
        assert appointment.status == AppointmentStatus.pending
        assert SlotRepository.find_slot(db, stream_slot.id).is_available is False

    def test_not_the_owner(self, db, factory, doctor, patient, stream_slot):
        target = factory.slot(doctor, at(11), at(11, 15))
        appointment_id = book_slot(db, stream_slot.id, patient.id)["appointment_id"]
        with pytest.raises(Forbidden):
            reschedule_appointment(db, appointment_id, target.id, factory.patient().id)

    def test_same_slot(self, db, patient, stream_slot):
        appointment_id = book_slot(db, stream_slot.id, patient.id)["appointment_id"]
        with pytest.raises(InvalidInput):
            reschedule_appointment(db, appointment_id, stream_slot.id, patient.id)

    def test_other_doctor_slot(self, db, factory, patient, stream_slot):
        foreign = factory.slot(factory.doctor(), at(11), at(11, 15))
        appointment_id = book_slot(db, stream_slot.id, patient.id)["appointment_id"]
        with pytest.raises(InvalidInput):
            reschedule_appointment(db, appointment_id, foreign.id, patient.id)

    def test_only_pending_or_confirmed(self, db, factory, doctor, patient, stream_slot):
        first = factory.slot(doctor, at(11), at(11, 15))
        second = factory.slot(doctor, at(12), at(12, 15))
        appointment_id = book_slot(db, stream_slot.id, patient.id)["appointment_id"]
        reschedule_appointment(db, appointment_id, first.id, patient.id)

        with pytest.raises(InvalidInput):
            reschedule_appointment(db, appointment_id, second.id, patient.id)

    def test_missing_new_slot(self, db, patient, stream_slot):
        appointment_id = book_slot(db, stream_slot.id, patient.id)["appointment_id"]
        with pytest.raises(NotFound):
            reschedule_appointment(db, appointment_id, "missing", patient.id)


    def test_both_slots_locked_together_in_id_order(self, db, factory, doctor, patient, stream_slot, monkeypatch):
        target = factory.slot(doctor, at(11), at(11, 15))
        appointment_id = book_slot(db, stream_slot.id, patient.id)["appointment_id"]
        calls = []
        lock_slots = SlotRepository.lock_slots

        def recording_lock(db, slot_ids):
            locked = lock_slots(db, slot_ids)
            calls.append(list(locked))
            return locked

        monkeypatch.setattr(SlotRepository, "lock_slots", staticmethod(recording_lock))

        reschedule_appointment(db, appointment_id, target.id, patient.id)

        assert calls == [sorted([stream_slot.id, target.id])]

    def test_swap_between_two_waves(self, db, factory, doctor):
        first = factory.slot(doctor, at(13), at(14), slot_type=SlotType.wave, max_capacity=1)
        second = factory.slot(doctor, at(14), at(15), slot_type=SlotType.wave, max_capacity=2)
        a, b = factory.patient(), factory.patient()
        a_id = book_slot(db, first.id, a.id)["appointment_id"]
        b_id = book_slot(db, second.id, b.id)["appointment_id"]

        reschedule_appointment(db, a_id, second.id, a.id)
        reschedule_appointment(db, b_id, first.id, b.id)

        db.refresh(first)
        db.refresh(second)
        assert (first.booked_count, first.is_available) == (1, False)
        assert (second.booked_count, second.is_available) == (1, True)

    def test_old_slot_already_removed(self, db, factory, doctor, patient, stream_slot, notifier):
        target = factory.slot(doctor, at(11), at(11, 15))
        appointment_id = book_slot(db, stream_slot.id, patient.id)["appointment_id"]
        SlotRepository.delete_slot(db, stream_slot)
        db.commit()

        reschedule_appointment(db, appointment_id, target.id, patient.id, notifier=notifier)

        assert db.get(Appointment, appointment_id).slot_id == target.id
        assert notifier.events[-1].old_range is None


class TestListings:
    def test_patient_and_doctor_views(self, db, doctor, patient, stream_slot, wave_slot):
        book_slot(db, wave_slot.id, patient.id)
        book_slot(db, stream_slot.id, patient.id)

        rows = list_patient_appointments(db, patient.id)
        assert [r["appointment_time"] for r in rows] == [at(9), at(10)]
        assert rows[1]["slot"]["slot_type"] == "wave"
        assert rows[1]["slot"]["booked_count"] == 1

        assert len(list_doctor_appointments(db, doctor.id)) == 2

    def test_unknown_profiles(self, db):
        with pytest.raises(NotFound):
            list_patient_appointments(db, "missing")
        with pytest.raises(NotFound):
            list_doctor_appointments(db, "missing")
