from decimal import Decimal, ROUND_HALF_UP

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

import storage
from exceptions import NotFound, Forbidden, ValidationError
from models import db, Review

TWO_PLACES = Decimal("0.01")


def average_rating(ratings):
    """Mean of integer ratings rounded half-up to 2 places; 0.00 when empty."""
    if not ratings:
        return Decimal("0.00")
    mean = Decimal(sum(ratings)) / Decimal(len(ratings))
    return mean.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def recompute_rating(doctor_id):
    """Rebuild rating and review_count from every review of the doctor."""
    doctor = storage.get_doctor(doctor_id)
    if doctor is None:
        raise NotFound("Doctor not found")

    ratings = storage.review_ratings(doctor_id)
    doctor.rating = average_rating(ratings)
    doctor.review_count = len(ratings)
    db.session.commit()

    current_app.logger.debug(f"[recompute_rating] Doctor {doctor_id}: rating={doctor.rating} over {doctor.review_count} review(s)")
    return doctor


def add_review(patient_id, doctor_id, rating, comment=None, appointment_id=None):
    if not isinstance(rating, int) or isinstance(rating, bool) or not 1 <= rating <= 5:
        raise ValidationError("Invalid rating", fields={"rating": "must be an integer between 1 and 5"})

    doctor = storage.get_doctor(doctor_id)
    if doctor is None:
        raise NotFound("Doctor not found")

    if appointment_id is not None:
        appointment = storage.get_appointment(appointment_id)
        if appointment is None:
            raise NotFound("Appointment not found")
        if appointment.patient_id != patient_id:
            raise Forbidden("You can only review your own appointments")
        if appointment.doctor_id != doctor_id:
            raise ValidationError("Appointment belongs to another doctor", fields={"appointmentId": "does not match doctorId"})
        if appointment.status != "completed":
            raise ValidationError("Only completed appointments can be reviewed", fields={"appointmentId": "appointment is not completed"})

    try:
        review = Review(patient_id=patient_id, doctor_id=doctor_id, appointment_id=appointment_id, rating=rating, comment=comment)
        db.session.add(review)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception(f"[add_review] Database commit failed for doctor {doctor_id}")
        raise

    recompute_rating(doctor_id)
    return review


def list_reviews(doctor_id):
    if storage.get_doctor(doctor_id) is None:
        raise NotFound("Doctor not found")
    return storage.reviews_by_doctor(doctor_id)
