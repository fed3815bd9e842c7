import threading
from datetime import datetime, time
from types import SimpleNamespace

import pytest

import appointmentService
from appointmentService import book_appointment, cancel_appointment, update_appointment
from availabilityService import list_day_slots
from exceptions import Forbidden, SlotUnavailable, ValidationError
from models import db, Appointment, AvailabilitySlot, Notification, User
from tests.conftest import SLOT_DAY

NINE = "2030-01-15T09:00:00"
NINE_THIRTY = "2030-01-15T09:30:00"


def book(client, factory, patient_id, doctor_id, when=NINE):
    return client.post(
        "/appointments",
        json={"doctorId": doctor_id, "appointmentDate": when, "reason": "Checkup"},
        headers=factory.headers(patient_id),
    )


def free_starts(client, doctor_id):
    resp = client.get(f"/doctors/{doctor_id}/availability?date={SLOT_DAY.isoformat()}")
    assert resp.status_code == 200
    return [slot["startTime"] for slot in resp.get_json()]


def assert_slots_consistent(app):
    with app.app_context():
        booked = AvailabilitySlot.query.filter(AvailabilitySlot.is_booked.is_(True)).all()
        for slot in booked:
            appointment = db.session.get(Appointment, slot.appointment_id)
            assert appointment is not None
            assert appointment.status != "cancelled"
        for appointment in Appointment.query.filter(Appointment.status != "cancelled").all():
            held = AvailabilitySlot.query.filter_by(appointment_id=appointment.id).all()
            assert len(held) == 1 and held[0].is_booked


@pytest.fixture
def setup(factory):
    doctor_id, doctor_user_id = factory.doctor()
    factory.slots(doctor_id)
    return doctor_id, doctor_user_id, factory.user(first_name="Pat")


def test_booking_claims_the_slot(client, factory, setup, app):
    doctor_id, _, patient_id = setup

    resp = book(client, factory, patient_id, doctor_id)

    assert resp.status_code == 201
    body = resp.get_json()
    assert body["status"] == "scheduled"
    assert body["paymentStatus"] == "pending"
    assert body["appointmentDate"] == NINE
    assert free_starts(client, doctor_id) == [NINE_THIRTY]
    assert_slots_consistent(app)


def test_time_inside_a_slot_books_that_slot(client, factory, setup, app):
    doctor_id, _, patient_id = setup

    resp = book(client, factory, patient_id, doctor_id, "2030-01-15T09:10:00")

    assert resp.status_code == 201
    assert free_starts(client, doctor_id) == [NINE_THIRTY]


def test_slot_end_is_exclusive(client, factory, setup):
    doctor_id, _, patient_id = setup

    resp = book(client, factory, patient_id, doctor_id, "2030-01-15T10:00:00")

    assert resp.status_code == 409


def test_second_booking_for_same_slot_conflicts(client, factory, setup, app):
    doctor_id, _, patient_id = setup
    other_patient = factory.user()

    assert book(client, factory, patient_id, doctor_id).status_code == 201
    resp = book(client, factory, other_patient, doctor_id)

    assert resp.status_code == 409
    body = resp.get_json()
    assert body["error"] == "slot_unavailable"
    assert body["hint"] == "Please choose a different time slot."
    with app.app_context():
        assert Appointment.query.count() == 1


def test_booking_unknown_doctor_is_not_found(client, factory):
    patient_id = factory.user()

    resp = book(client, factory, patient_id, 999)

    assert resp.status_code == 404


def test_only_patients_can_book(client, factory, setup):
    doctor_id, doctor_user_id, _ = setup

    resp = book(client, factory, doctor_user_id, doctor_id)

    assert resp.status_code == 403


def test_booking_rejects_bad_date(client, factory, setup):
    doctor_id, _, patient_id = setup

    resp = book(client, factory, patient_id, doctor_id, "next tuesday")

    assert resp.status_code == 400
    assert "appointmentDate" in resp.get_json()["fields"]


def test_booking_in_the_past_is_rejected(client, factory, setup, app):
    doctor_id, _, patient_id = setup

    resp = book(client, factory, patient_id, doctor_id, "2020-01-15T09:00:00")

    assert resp.status_code == 400
    assert "appointmentDate" in resp.get_json()["fields"]
    with app.app_context():
        assert Appointment.query.count() == 0


def test_duration_cannot_exceed_the_slot(client, factory, setup, app):
    doctor_id, _, patient_id = setup

    resp = client.post(
        "/appointments",
        json={"doctorId": doctor_id, "appointmentDate": NINE, "duration": 60},
        headers=factory.headers(patient_id),
    )

    assert resp.status_code == 400
    assert "duration" in resp.get_json()["fields"]
    assert free_starts(client, doctor_id) == [NINE, NINE_THIRTY]
    assert_slots_consistent(app)


def test_overlapping_slots_never_double_book(client, factory, app):
    doctor_id, _ = factory.doctor()
    with app.app_context():
        for start, end in ((time(9, 0), time(10, 0)), (time(9, 15), time(10, 15))):
            db.session.add(AvailabilitySlot(
                doctor_id=doctor_id,
                date=SLOT_DAY,
                start_time=datetime.combine(SLOT_DAY, start),
                end_time=datetime.combine(SLOT_DAY, end),
            ))
        db.session.commit()

    first = book(client, factory, factory.user(), doctor_id, NINE)
    second = book(client, factory, factory.user(), doctor_id, "2030-01-15T09:20:00")

    assert first.status_code == 201
    assert second.status_code == 409
    with app.app_context():
        assert Appointment.query.filter(Appointment.status != "cancelled").count() == 1
    assert_slots_consistent(app)


def test_concurrent_bookings_for_one_slot_yield_one_winner(app, factory):
    doctor_id, _ = factory.doctor()
    slot_id = factory.slots(doctor_id, end=time(9, 30))[0]
    patients = [factory.user(), factory.user()]
    barrier = threading.Barrier(len(patients))
    outcomes = []
    lock = threading.Lock()

    def attempt(patient_id):
        with app.app_context():
            barrier.wait()
            try:
                appointment = book_appointment(patient_id, doctor_id, datetime(2030, 1, 15, 9, 0))
                result = ("booked", appointment.id)
            except SlotUnavailable:
                result = ("conflict", None)
            with lock:
                outcomes.append(result)

    threads = [threading.Thread(target=attempt, args=(p,)) for p in patients]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert sorted(kind for kind, _ in outcomes) == ["booked", "conflict"]
    winner = next(appointment_id for kind, appointment_id in outcomes if kind == "booked")
    with app.app_context():
        slot = db.session.get(AvailabilitySlot, slot_id)
        assert slot.is_booked and slot.appointment_id == winner
        assert Appointment.query.count() == 1
    assert_slots_consistent(app)


def test_stale_slot_read_rolls_back_the_booking(app_ctx, factory, monkeypatch):
    doctor_id, _ = factory.doctor()
    factory.slots(doctor_id, end=time(9, 30))
    first, second = factory.user(), factory.user()
    when = datetime(2030, 1, 15, 9, 0)

    stale = [
        SimpleNamespace(id=s.id, is_booked=False, start_time=s.start_time, end_time=s.end_time, contains=s.contains)
        for s in list_day_slots(doctor_id, SLOT_DAY)
    ]
    book_appointment(first, doctor_id, when)
    monkeypatch.setattr(appointmentService, "list_day_slots", lambda doctor_id, day: stale)

    with pytest.raises(SlotUnavailable):
        book_appointment(second, doctor_id, when)
    assert Appointment.query.count() == 1


def test_booking_notifies_the_doctor(client, factory, setup):
    doctor_id, doctor_user_id, patient_id = setup

    book(client, factory, patient_id, doctor_id)

    resp = client.get("/notifications", headers=factory.headers(doctor_user_id))
    notes = resp.get_json()
    assert [n["type"] for n in notes] == ["appointment_booking"]
    assert notes[0]["message"].startswith("Pat User booked an appointment")


def test_cancel_releases_slot_and_is_idempotent(client, factory, setup, app):
    doctor_id, doctor_user_id, patient_id = setup
    appointment_id = book(client, factory, patient_id, doctor_id).get_json()["id"]

    first = client.delete(f"/appointments/{appointment_id}", headers=factory.headers(patient_id))
    second = client.delete(f"/appointments/{appointment_id}", headers=factory.headers(patient_id))

    assert first.status_code == 200 and first.get_json()["status"] == "cancelled"
    assert second.status_code == 200 and second.get_json()["status"] == "cancelled"
    assert free_starts(client, doctor_id) == [NINE, NINE_THIRTY]
    assert_slots_consistent(app)
    with app.app_context():
        cancelled = Notification.query.filter_by(user_id=doctor_user_id, type="appointment_cancelled").count()
        assert cancelled == 1
        assert Notification.query.filter_by(user_id=patient_id).count() == 0


def test_cancelled_slot_can_be_booked_again(client, factory, setup):
    doctor_id, _, patient_id = setup
    appointment_id = book(client, factory, patient_id, doctor_id).get_json()["id"]
    client.delete(f"/appointments/{appointment_id}", headers=factory.headers(patient_id))

    resp = book(client, factory, factory.user(), doctor_id)

    assert resp.status_code == 201


def test_cancel_unknown_appointment(client, factory):
    resp = client.delete("/appointments/42", headers=factory.headers(factory.user()))
    assert resp.status_code == 404


def test_strangers_cannot_touch_an_appointment(client, factory, setup):
    doctor_id, _, patient_id = setup
    appointment_id = book(client, factory, patient_id, doctor_id).get_json()["id"]
    stranger = factory.headers(factory.user())

    assert client.get(f"/appointments/{appointment_id}", headers=stranger).status_code == 403
    assert client.delete(f"/appointments/{appointment_id}", headers=stranger).status_code == 403


def test_status_transitions(app_ctx, factory):
    doctor_id, doctor_user_id = factory.doctor()
    factory.slots(doctor_id)
    patient_id = factory.user()
    appointment = book_appointment(patient_id, doctor_id, datetime(2030, 1, 15, 9, 0))
    doctor_user = db.session.get(User, doctor_user_id)
    patient = db.session.get(User, patient_id)

    with pytest.raises(ValidationError):
        update_appointment(appointment.id, doctor_user, {"status": "completed"})
    with pytest.raises(Forbidden):
        update_appointment(appointment.id, patient, {"status": "confirmed"})

    update_appointment(appointment.id, doctor_user, {"status": "confirmed"})
    update_appointment(appointment.id, doctor_user, {"status": "completed"})
    assert appointment.status == "completed"

    with pytest.raises(ValidationError):
        cancel_appointment(appointment.id, patient)
    with pytest.raises(ValidationError):
        update_appointment(appointment.id, patient, {"reason": "changed my mind"})


def test_cancel_through_patch_releases_slot(client, factory, setup, app):
    doctor_id, doctor_user_id, patient_id = setup
    appointment_id = book(client, factory, patient_id, doctor_id).get_json()["id"]

    resp = client.patch(
        f"/appointments/{appointment_id}", json={"status": "cancelled"}, headers=factory.headers(doctor_user_id)
    )

    assert resp.get_json()["status"] == "cancelled"
    assert free_starts(client, doctor_id) == [NINE, NINE_THIRTY]
    assert_slots_consistent(app)


def test_reschedule_moves_the_slot(client, factory, setup, app):
    doctor_id, _, patient_id = setup
    appointment_id = book(client, factory, patient_id, doctor_id).get_json()["id"]

    resp = client.patch(
        f"/appointments/{appointment_id}", json={"appointmentDate": NINE_THIRTY}, headers=factory.headers(patient_id)
    )

    assert resp.status_code == 200
    assert resp.get_json()["appointmentDate"] == NINE_THIRTY
    assert free_starts(client, doctor_id) == [NINE]
    assert_slots_consistent(app)


def test_reschedule_into_taken_slot_conflicts(client, factory, setup, app):
    doctor_id, _, patient_id = setup
    appointment_id = book(client, factory, patient_id, doctor_id).get_json()["id"]
    book(client, factory, factory.user(), doctor_id, NINE_THIRTY)

    resp = client.patch(
        f"/appointments/{appointment_id}", json={"appointmentDate": NINE_THIRTY}, headers=factory.headers(patient_id)
    )

    assert resp.status_code == 409
    detail = client.get(f"/appointments/{appointment_id}", headers=factory.headers(patient_id)).get_json()
    assert detail["appointmentDate"] == NINE
    assert_slots_consistent(app)


def test_list_appointments_for_both_sides(client, factory, setup):
    doctor_id, doctor_user_id, patient_id = setup
    book(client, factory, patient_id, doctor_id)

    mine = client.get("/appointments?when=upcoming", headers=factory.headers(patient_id)).get_json()
    theirs = client.get("/appointments", headers=factory.headers(doctor_user_id)).get_json()
    past = client.get("/appointments?when=past", headers=factory.headers(patient_id)).get_json()

    assert len(mine) == 1 and mine[0]["doctor"]["id"] == doctor_id
    assert len(theirs) == 1 and theirs[0]["patient"]["id"] == patient_id
    assert past == []
    assert client.get("/appointments?when=someday", headers=factory.headers(patient_id)).status_code == 400


def test_reschedule_into_the_past_is_rejected(client, factory, setup, app):
    doctor_id, _, patient_id = setup
    appointment_id = book(client, factory, patient_id, doctor_id).get_json()["id"]

    resp = client.patch(
        f"/appointments/{appointment_id}",
        json={"appointmentDate": "2020-01-15T09:00:00", "notes": "earlier please"},
        headers=factory.headers(patient_id),
    )

    assert resp.status_code == 400
    assert "appointmentDate" in resp.get_json()["fields"]
    detail = client.get(f"/appointments/{appointment_id}", headers=factory.headers(patient_id)).get_json()
    assert detail["appointmentDate"] == NINE
    assert detail["notes"] is None
    assert_slots_consistent(app)
