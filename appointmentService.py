from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

import storage
from appUtils import utc_now
from availabilityService import list_day_slots, find_slot_for_time
from exceptions import NotFound, Forbidden, SlotUnavailable, ValidationError
from models import db, Appointment
from notificationService import (
    broadcast, notify,
    APPOINTMENT_CREATED, APPOINTMENT_UPDATED, APPOINTMENT_CANCELLED,
)

# scheduled -> confirmed -> completed, cancelled from either of the first two
STATUS_TRANSITIONS = {
    "scheduled": {"confirmed", "cancelled"},
    "confirmed": {"completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}
TERMINAL_STATUSES = {"completed", "cancelled"}

# payment signal -> target payment status (None leaves it unchanged)
PAYMENT_SIGNALS = {
    "paid": "paid",
    "succeeded": "paid",
    "refunded": "refunded",
    "failed": None,
    "pending": None,
}
PAYMENT_TRANSITIONS = {
    "paid": {"pending"},
    "refunded": {"paid"},
}


def _participant_role(appointment, user):
    if user.role == "admin":
        return "admin"
    if appointment.patient_id == user.id:
        return "patient"
    doctor = appointment.doctor
    if doctor is not None and doctor.user_id == user.id:
        return "doctor"
    return None


def _require_participant(appointment, user):
    role = _participant_role(appointment, user)
    if role is None:
        raise Forbidden("You are not a participant of this appointment")
    return role


def _recipients(appointment):
    doctor = appointment.doctor
    return [appointment.patient_id, doctor.user_id if doctor else None]


def _require_future(when):
    if when < utc_now():
        raise ValidationError("Appointments cannot be scheduled in the past", fields={"appointmentDate": "must be in the future"})


def _check_duration(slot, duration):
    slot_minutes = int((slot.end_time - slot.start_time).total_seconds() // 60)
    if duration > slot_minutes:
        raise ValidationError("Duration is longer than the slot", fields={"duration": f"must not exceed the {slot_minutes}-minute slot"})


def book_appointment(patient_id, doctor_id, appointment_date, reason=None, appointment_type="in-person", duration=30, notes=None):
    """
    Book the slot containing ``appointment_date`` for a patient.

    The day's slots are re-read here rather than trusted from the caller, and
    the time must fall inside exactly one slot, which must be free. The
    appointment insert and the slot claim share one transaction, and the claim
    is a conditional update on ``is_booked``, so of two concurrent requests for
    the same slot exactly one commits and the other gets SlotUnavailable.
    """
    doctor = storage.get_doctor(doctor_id)
    if doctor is None:
        raise NotFound("Doctor not found")

    _require_future(appointment_date)
    slot = find_slot_for_time(list_day_slots(doctor_id, appointment_date.date()), appointment_date)
    if slot is None or slot.is_booked:
        current_app.logger.info(f"[book_appointment] No free slot for doctor {doctor_id} at {appointment_date}")
        raise SlotUnavailable()
    _check_duration(slot, duration)

    try:
        appointment = Appointment(
            patient_id=patient_id,
            doctor_id=doctor_id,
            appointment_date=appointment_date,
            duration=duration,
            reason=reason,
            notes=notes,
            type=appointment_type,
            status="scheduled",
            payment_status="pending",
        )
        db.session.add(appointment)
        db.session.flush()

        if not storage.claim_slot(slot.id, appointment.id):
            db.session.rollback()
            current_app.logger.info(f"[book_appointment] Slot {slot.id} taken concurrently, booking rolled back")
            raise SlotUnavailable()

        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception(f"[book_appointment] Database commit failed for doctor {doctor_id} at {appointment_date}")
        raise

    current_app.logger.info(f"[book_appointment] Appointment {appointment.id} booked in slot {slot.id} for patient {patient_id}")

    broadcast(APPOINTMENT_CREATED, appointment, _recipients(appointment))
    patient_name = appointment.patient.full_name if appointment.patient else "A patient"
    notify(
        doctor.user_id,
        "appointment_booking",
        "New Appointment Booking",
        f"{patient_name} booked an appointment for {appointment.appointment_date:%Y-%m-%d %H:%M}",
        {"appointmentId": appointment.id},
    )
    return appointment


def cancel_appointment(appointment_id, actor=None):
    """
    Cancel an appointment and free its slot.

    Cancelling twice is a no-op success. A missing slot back-reference is
    logged and does not fail the cancellation.
    """
    appointment = storage.get_appointment(appointment_id)
    if appointment is None:
        raise NotFound("Appointment not found")
    if actor is not None:
        _require_participant(appointment, actor)

    if appointment.status == "cancelled":
        current_app.logger.debug(f"[cancel_appointment] Appointment {appointment_id} already cancelled")
        return appointment
    if appointment.status == "completed":
        raise ValidationError("Completed appointments cannot be cancelled", fields={"status": "completed is terminal"})

    return _cancel(appointment, actor)


def _cancel(appointment, actor):
    appointment.status = "cancelled"
    slot = storage.slot_for_appointment(appointment.id)
    if slot is None:
        current_app.logger.warning(f"[cancel_appointment] No slot bound to appointment {appointment.id}, nothing to release")
    else:
        storage.release_slot(slot)

    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception(f"[cancel_appointment] Database commit failed for appointment {appointment.id}")
        raise

    current_app.logger.info(f"[cancel_appointment] Appointment {appointment.id} cancelled")

    broadcast(APPOINTMENT_CANCELLED, appointment, _recipients(appointment))
    when = f"{appointment.appointment_date:%Y-%m-%d %H:%M}"
    for user_id in _recipients(appointment):
        if user_id is None or (actor is not None and user_id == actor.id):
            continue
        notify(user_id, "appointment_cancelled", "Appointment Cancelled",
               f"The appointment on {when} has been cancelled.", {"appointmentId": appointment.id})
    return appointment


def _check_status_change(appointment, new_status, role):
    if new_status == appointment.status:
        return
    if new_status not in STATUS_TRANSITIONS[appointment.status]:
        raise ValidationError(
            f"Cannot change status from {appointment.status} to {new_status}",
            fields={"status": f"invalid transition from {appointment.status}"},
        )
    if new_status in ("confirmed", "completed") and role not in ("doctor", "admin"):
        raise Forbidden(f"Only the doctor can mark an appointment {new_status}")


def _reschedule(appointment, new_date):
    """Move the appointment to the free slot containing new_date; runs before any other write, caller commits."""
    old_slot = storage.slot_for_appointment(appointment.id)
    slot = find_slot_for_time(list_day_slots(appointment.doctor_id, new_date.date()), new_date)
    if slot is not None and old_slot is not None and slot.id == old_slot.id:
        appointment.appointment_date = new_date
        return

    if slot is not None and not slot.is_booked:
        _check_duration(slot, appointment.duration)
    if slot is None or slot.is_booked or not storage.claim_slot(slot.id, appointment.id):
        db.session.rollback()
        current_app.logger.info(f"[reschedule_appointment] No free slot for appointment {appointment.id} at {new_date}")
        raise SlotUnavailable()

    if old_slot is not None:
        storage.release_slot(old_slot)
    appointment.appointment_date = new_date
    current_app.logger.info(f"[reschedule_appointment] Appointment {appointment.id} moved to slot {slot.id}")


def update_appointment(appointment_id, actor, changes):
    """
    Apply a PATCH to an appointment.

    ``changes`` holds only the fields the caller sent: status, reason, notes,
    type, appointment_date (reschedule) and payment_status (admins only).
    Everything is validated before the first write.
    """
    appointment = storage.get_appointment(appointment_id)
    if appointment is None:
        raise NotFound("Appointment not found")
    role = _require_participant(appointment, actor)

    new_status = changes.get("status")
    new_date = changes.get("appointment_date")
    payment_status = changes.get("payment_status")

    if payment_status is not None and role != "admin":
        raise Forbidden("Only administrators can change the payment status directly")
    if new_status is not None:
        _check_status_change(appointment, new_status, role)
    if new_date is not None and new_date != appointment.appointment_date:
        _require_future(new_date)

    schedule_fields = [f for f in ("reason", "type", "appointment_date") if changes.get(f) is not None]
    if appointment.status in TERMINAL_STATUSES and schedule_fields:
        raise ValidationError(
            f"A {appointment.status} appointment cannot be modified",
            fields={f: f"{appointment.status} is terminal" for f in schedule_fields},
        )

    if new_date is not None and new_date != appointment.appointment_date and new_status != "cancelled":
        _reschedule(appointment, new_date)

    for field in ("reason", "notes", "type"):
        if field in changes and changes[field] is not None:
            setattr(appointment, field, changes[field])

    if payment_status is not None:
        _apply_payment_signal(appointment, payment_status, None)

    if new_status == "cancelled" and appointment.status != "cancelled":
        return _cancel(appointment, actor)
    if new_status is not None:
        appointment.status = new_status

    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception(f"[update_appointment] Database commit failed for appointment {appointment_id}")
        raise

    current_app.logger.info(f"[update_appointment] Appointment {appointment_id} updated: {sorted(changes)}")
    broadcast(APPOINTMENT_UPDATED, appointment, _recipients(appointment))
    return appointment


def _apply_payment_signal(appointment, signal, payment_intent_id):
    if signal not in PAYMENT_SIGNALS:
        raise ValidationError(f"Unknown payment status '{signal}'", fields={"status": "unknown payment signal"})

    if payment_intent_id:
        appointment.payment_intent_id = payment_intent_id

    target = PAYMENT_SIGNALS[signal]
    if target is None or target == appointment.payment_status:
        return False
    if appointment.payment_status not in PAYMENT_TRANSITIONS[target]:
        current_app.logger.warning(
            f"[update_payment_status] Ignoring '{signal}' for appointment {appointment.id} in payment state {appointment.payment_status}"
        )
        return False
    appointment.payment_status = target
    return True


def update_payment_status(appointment_id, signal, payment_intent_id=None):
    """
    Record an external payment signal. Only payment fields change; the
    appointment status and its slot are never touched here.
    """
    appointment = storage.get_appointment(appointment_id)
    if appointment is None:
        raise NotFound("Appointment not found")

    changed = _apply_payment_signal(appointment, signal, payment_intent_id)
    db.session.commit()

    if changed:
        current_app.logger.info(f"[update_payment_status] Appointment {appointment_id} payment is now {appointment.payment_status}")
        broadcast(APPOINTMENT_UPDATED, appointment, _recipients(appointment))
    return appointment


def get_appointment_for_user(appointment_id, user):
    appointment = storage.get_appointment(appointment_id)
    if appointment is None:
        raise NotFound("Appointment not found")
    _require_participant(appointment, user)
    return appointment


def list_appointments_for_user(user, when=None):
    if user.role == "doctor":
        doctor = storage.get_doctor_by_user_id(user.id)
        if doctor is None:
            raise NotFound("Doctor profile not found")
        appointments = storage.appointments_by_doctor(doctor.id)
    else:
        appointments = storage.appointments_by_patient(user.id)

    now = utc_now()
    if when == "upcoming":
        return [a for a in appointments if a.appointment_date > now]
    if when == "past":
        return [a for a in appointments if a.appointment_date <= now]
    if when is not None:
        raise ValidationError("Invalid filter", fields={"when": "must be 'upcoming' or 'past'"})
    return appointments
