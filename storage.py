"""
Data access for the booking service.

Query functions return model instances; assemble_doctors() builds the nested
DoctorWithUser aggregates the API returns (doctor fields plus ``user``,
``reviews`` and ``availabilitySlots``), loading the children with one query per
relation instead of regrouping a flattened join.
"""
from collections import defaultdict

from sqlalchemy import update

from models import db, User, Doctor, Appointment, AvailabilitySlot, Review, Notification


# ----------------------------- Users -----------------------------
def get_user(user_id):
    return db.session.get(User, user_id)


def get_user_by_email(email):
    return User.query.filter_by(email=email.lower()).first()


# ----------------------------- Doctors -----------------------------
def get_doctor(doctor_id):
    return db.session.get(Doctor, doctor_id)


def get_doctor_by_user_id(user_id):
    return Doctor.query.filter_by(user_id=user_id).first()


def query_doctors(conditions=(), order_by=None):
    query = Doctor.query.join(User, Doctor.user_id == User.id)
    if conditions:
        query = query.filter(*conditions)
    if order_by is not None:
        query = query.order_by(*order_by)
    return query.order_by(Doctor.id.asc()).all()


def assemble_doctors(doctors, include_reviews=True, include_slots=True):
    doctor_ids = [d.id for d in doctors]
    reviews_by_doctor = defaultdict(list)
    slots_by_doctor = defaultdict(list)

    if doctor_ids and include_reviews:
        reviews = (
            Review.query.filter(Review.doctor_id.in_(doctor_ids))
            .order_by(Review.created_at.desc(), Review.id.desc())
            .all()
        )
        for review in reviews:
            reviews_by_doctor[review.doctor_id].append(review.to_dict())

    if doctor_ids and include_slots:
        slots = (
            AvailabilitySlot.query.filter(AvailabilitySlot.doctor_id.in_(doctor_ids))
            .order_by(AvailabilitySlot.start_time.asc(), AvailabilitySlot.id.asc())
            .all()
        )
        for slot in slots:
            slots_by_doctor[slot.doctor_id].append(slot.to_dict())

    results = []
    for doctor in doctors:
        item = doctor.to_dict()
        item["user"] = doctor.user.to_dict() if doctor.user else None
        if include_reviews:
            item["reviews"] = reviews_by_doctor[doctor.id]
        if include_slots:
            item["availabilitySlots"] = slots_by_doctor[doctor.id]
        results.append(item)
    return results


def doctor_ids_with_free_slot(day):
    rows = (
        db.session.query(AvailabilitySlot.doctor_id)
        .filter(AvailabilitySlot.date == day, AvailabilitySlot.is_booked.is_(False))
        .distinct()
        .all()
    )
    return {row[0] for row in rows}


# ----------------------------- Availability -----------------------------
def slots_for_day(doctor_id, day, free_only=True):
    query = AvailabilitySlot.query.filter(
        AvailabilitySlot.doctor_id == doctor_id,
        AvailabilitySlot.date == day,
    )
    if free_only:
        query = query.filter(AvailabilitySlot.is_booked.is_(False))
    return query.order_by(AvailabilitySlot.start_time.asc(), AvailabilitySlot.id.asc()).all()


def slots_in_range(doctor_id, start_date, end_date):
    return (
        AvailabilitySlot.query.filter(
            AvailabilitySlot.doctor_id == doctor_id,
            AvailabilitySlot.date >= start_date,
            AvailabilitySlot.date <= end_date,
        )
        .order_by(AvailabilitySlot.start_time.asc(), AvailabilitySlot.id.asc())
        .all()
    )


def slot_for_appointment(appointment_id):
    return AvailabilitySlot.query.filter_by(appointment_id=appointment_id).first()


def claim_slot(slot_id, appointment_id):
    """
    Compare-and-set on the slot's booked flag.

    Returns True only if this call flipped the slot from free to booked; a
    concurrent booking that got there first leaves zero matching rows.
    """
    result = db.session.execute(
        update(AvailabilitySlot)
        .where(AvailabilitySlot.id == slot_id, AvailabilitySlot.is_booked.is_(False))
        .values(is_booked=True, appointment_id=appointment_id)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def release_slot(slot):
    slot.is_booked = False
    slot.appointment_id = None


# ----------------------------- Appointments -----------------------------
def get_appointment(appointment_id):
    return db.session.get(Appointment, appointment_id)


def appointment_by_payment_intent(payment_intent_id):
    return Appointment.query.filter_by(payment_intent_id=payment_intent_id).first()


def appointments_by_patient(patient_id):
    return (
        Appointment.query.filter_by(patient_id=patient_id)
        .order_by(Appointment.appointment_date.desc(), Appointment.id.desc())
        .all()
    )


def appointments_by_doctor(doctor_id):
    return (
        Appointment.query.filter_by(doctor_id=doctor_id)
        .order_by(Appointment.appointment_date.desc(), Appointment.id.desc())
        .all()
    )


def appointment_with_details(appointment):
    item = appointment.to_dict()
    item["patient"] = appointment.patient.to_dict() if appointment.patient else None
    doctor = appointment.doctor
    if doctor is not None:
        item["doctor"] = assemble_doctors([doctor], include_reviews=False, include_slots=False)[0]
    else:
        item["doctor"] = None
    return item


# ----------------------------- Reviews -----------------------------
def reviews_by_doctor(doctor_id):
    return (
        Review.query.filter_by(doctor_id=doctor_id)
        .order_by(Review.created_at.desc(), Review.id.desc())
        .all()
    )


def review_ratings(doctor_id):
    rows = db.session.query(Review.rating).filter(Review.doctor_id == doctor_id).all()
    return [row[0] for row in rows]


# ----------------------------- Notifications -----------------------------
def notifications_by_user(user_id, unread_only=False):
    query = Notification.query.filter_by(user_id=user_id)
    if unread_only:
        query = query.filter(Notification.is_read.is_(False))
    return query.order_by(Notification.created_at.desc(), Notification.id.desc()).all()


def get_notification(notification_id):
    return db.session.get(Notification, notification_id)
