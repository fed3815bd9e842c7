from datetime import datetime, timedelta

from flask import current_app

import storage
from exceptions import NotFound, ValidationError
from models import db, AvailabilitySlot


def list_available_slots(doctor_id, day):
    """
    Free slots of one doctor on one calendar day, earliest first.

    No side effects; an empty list means the doctor has no free time that day.
    """
    return storage.slots_for_day(doctor_id, day, free_only=True)


def list_slots(doctor_id, start_date, end_date):
    if end_date < start_date:
        raise ValidationError("Invalid date range", fields={"endDate": "must not be before startDate"})
    return storage.slots_in_range(doctor_id, start_date, end_date)


def list_day_slots(doctor_id, day):
    """Every slot of the day, booked or not, earliest first."""
    return storage.slots_for_day(doctor_id, day, free_only=False)


def find_slot_for_time(slots, when):
    """
    The one slot whose [start, end) interval contains the requested time.

    Returns None when no slot contains it or when overlapping slots make the
    match ambiguous.
    """
    matching = [slot for slot in slots if slot.contains(when)]
    if len(matching) != 1:
        return None
    return matching[0]


def overlaps(start, end, slot):
    return start < slot.end_time and end > slot.start_time


def split_into_slots(day, start, end, slot_minutes):
    """
    Cut [start, end) on the given day into consecutive slots:
    09:00-10:00 at 30 min → [(09:00, 09:30), (09:30, 10:00)]
    A trailing piece shorter than slot_minutes is dropped.
    """
    step = timedelta(minutes=slot_minutes)
    current = datetime.combine(day, start)
    stop = datetime.combine(day, end)
    ranges = []
    while current + step <= stop:
        ranges.append((current, current + step))
        current += step
    return ranges


def publish_slots(doctor_id, day, start, end, slot_minutes=None):
    """
    Create bookable slots for a doctor. Slots identical to existing ones are
    skipped; a slot that partly overlaps an existing one rejects the whole range.
    """
    doctor = storage.get_doctor(doctor_id)
    if doctor is None:
        raise NotFound("Doctor not found")

    slot_minutes = slot_minutes or current_app.config["SLOT_MINUTES"]
    ranges = split_into_slots(day, start, end, slot_minutes)
    if not ranges:
        raise ValidationError("Time range is shorter than one slot", fields={"endTime": f"must allow at least one {slot_minutes}-minute slot"})

    existing = list_day_slots(doctor_id, day)
    created = []
    for slot_start, slot_end in ranges:
        if any(s.start_time == slot_start and s.end_time == slot_end for s in existing):
            continue
        clash = next((s for s in existing if overlaps(slot_start, slot_end, s)), None)
        if clash is not None:
            db.session.rollback()
            raise ValidationError(
                "Slots may not overlap existing slots",
                fields={"startTime": f"{slot_start:%H:%M}-{slot_end:%H:%M} overlaps {clash.start_time:%H:%M}-{clash.end_time:%H:%M}"},
            )
        slot = AvailabilitySlot(doctor_id=doctor_id, date=day, start_time=slot_start, end_time=slot_end)
        db.session.add(slot)
        created.append(slot)
    db.session.commit()

    current_app.logger.info(f"[publish_slots] Doctor {doctor_id}: {len(created)} new slot(s) on {day}, {len(ranges) - len(created)} skipped")
    return created
