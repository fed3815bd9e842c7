import math
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from flask import current_app
from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError

import storage
from appUtils import parse_bool, validate_date
from exceptions import NotFound, Forbidden, ValidationError
from models import db, Doctor

EARTH_RADIUS_KM = 6371.0
DEFAULT_RADIUS_KM = 10.0
MAX_LIMIT = 100


def haversine_km(lat1, lng1, lat2, lng2):
    """Great-circle distance in kilometres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


def _lowered(values):
    return {str(v).strip().lower() for v in (values or []) if str(v).strip()}


@dataclass
class DoctorSearchFilters:
    """Optional, conjunctive search criteria. A field left as None adds no predicate."""

    specialty: Optional[str] = None
    location: Optional[str] = None
    insurance: Optional[str] = None
    language: Optional[str] = None
    gender: Optional[str] = None
    services: List[str] = field(default_factory=list)
    min_rating: Optional[Decimal] = None
    max_fee: Optional[Decimal] = None
    accepting_patients: Optional[bool] = None
    available_on: Optional[date] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    radius_km: Optional[float] = None
    limit: Optional[int] = None

    @classmethod
    def from_query(cls, args):
        """Build filters from query-string arguments; 'all' and '' mean unset."""
        errors = {}

        def text(name):
            value = args.get(name)
            if value is None:
                return None
            value = value.strip()
            return None if value == "" or value.lower() == "all" else value

        def number(name, cast, minimum=None, maximum=None):
            raw = text(name)
            if raw is None:
                return None
            try:
                value = cast(raw)
            except (ValueError, InvalidOperation):
                errors[name] = "must be a number"
                return None
            if (minimum is not None and value < minimum) or (maximum is not None and value > maximum):
                errors[name] = f"must be between {minimum} and {maximum}"
                return None
            return value

        filters = cls(
            specialty=text("specialty"),
            location=text("location"),
            insurance=text("insurance"),
            language=text("language"),
            gender=text("gender"),
            services=[s.strip() for s in (text("services") or "").split(",") if s.strip()],
            min_rating=number("rating", Decimal, 0, 5),
            max_fee=number("maxFee", Decimal, 0),
            accepting_patients=parse_bool(text("acceptingPatients")),
            lat=number("lat", float, -90, 90),
            lng=number("lng", float, -180, 180),
            radius_km=number("radius", float, 0),
            limit=number("limit", int, 1, MAX_LIMIT),
        )

        available_on = text("availableOn")
        if available_on is not None:
            filters.available_on = validate_date(available_on)
            if filters.available_on is None:
                errors["availableOn"] = "must be a date in YYYY-MM-DD format"

        if (filters.lat is None) != (filters.lng is None) and "lat" not in errors and "lng" not in errors:
            errors["lat" if filters.lat is None else "lng"] = "lat and lng must be given together"

        if errors:
            raise ValidationError("Invalid search filters", fields=errors)
        return filters

    def conditions(self):
        """SQL predicates for the filters the database can evaluate."""
        conditions = []
        if self.specialty:
            conditions.append(func.lower(Doctor.specialty) == self.specialty.lower())
        if self.location:
            pattern = f"%{self.location}%"
            conditions.append(or_(Doctor.clinic_address.ilike(pattern), Doctor.clinic_name.ilike(pattern)))
        if self.gender:
            conditions.append(func.lower(Doctor.gender) == self.gender.lower())
        if self.min_rating is not None:
            conditions.append(Doctor.rating >= self.min_rating)
        if self.max_fee is not None:
            conditions.append(Doctor.consultation_fee <= self.max_fee)
        if self.accepting_patients is not None:
            conditions.append(Doctor.is_accepting_patients.is_(self.accepting_patients))
        if self.available_on is not None:
            conditions.append(Doctor.id.in_(sorted(storage.doctor_ids_with_free_slot(self.available_on))))
        return conditions

    def matches(self, doctor):
        """Set-membership and distance predicates, evaluated per doctor."""
        if self.insurance and self.insurance.lower() not in _lowered(doctor.insurances_accepted):
            return False
        if self.language and self.language.lower() not in _lowered(doctor.languages):
            return False
        if self.services and not (_lowered(self.services) & _lowered(doctor.services_offered)):
            return False
        if self.lat is not None and self.lng is not None:
            if doctor.latitude is None or doctor.longitude is None:
                return False
            radius = self.radius_km if self.radius_km is not None else DEFAULT_RADIUS_KM
            distance = haversine_km(self.lat, self.lng, float(doctor.latitude), float(doctor.longitude))
            if distance > radius:
                return False
        return True


def search_doctors(filters=None):
    filters = filters or DoctorSearchFilters()
    doctors = [d for d in storage.query_doctors(filters.conditions()) if filters.matches(d)]
    if filters.limit:
        doctors = doctors[:filters.limit]
    current_app.logger.debug(f"[search_doctors] {len(doctors)} doctor(s) matched {filters}")
    return storage.assemble_doctors(doctors)


def top_rated_doctors(limit=10):
    doctors = storage.query_doctors(order_by=(Doctor.rating.desc(), Doctor.review_count.desc()))
    return storage.assemble_doctors(doctors[:limit])


def nearby_doctors(lat, lng, radius_km=DEFAULT_RADIUS_KM):
    return search_doctors(DoctorSearchFilters(lat=lat, lng=lng, radius_km=radius_km))


def get_doctor(doctor_id):
    doctor = storage.get_doctor(doctor_id)
    if doctor is None:
        raise NotFound("Doctor not found")
    return storage.assemble_doctors([doctor])[0]


def create_doctor_profile(user, data):
    if user.role not in ("doctor", "admin"):
        raise Forbidden("Only doctors can create a doctor profile")
    if storage.get_doctor_by_user_id(user.id) is not None:
        raise ValidationError("Doctor profile already exists", fields={"userId": "user already owns a doctor profile"})

    try:
        doctor = Doctor(user_id=user.id, **data)
        db.session.add(doctor)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ValidationError("Doctor profile already exists", fields={"userId": "user already owns a doctor profile"})

    current_app.logger.info(f"[create_doctor_profile] Doctor {doctor.id} created for user {user.id}")
    return doctor


def require_doctor_owner(doctor_id, user):
    doctor = storage.get_doctor(doctor_id)
    if doctor is None:
        raise NotFound("Doctor not found")
    if user.role != "admin" and doctor.user_id != user.id:
        raise Forbidden("You can only manage your own doctor profile")
    return doctor


NULLABLE_PROFILE_FIELDS = {"bio", "gender", "latitude", "longitude", "availability_schedule"}


def update_doctor_profile(doctor_id, user, changes):
    doctor = require_doctor_owner(doctor_id, user)
    cleared = [name for name, value in changes.items() if value is None and name not in NULLABLE_PROFILE_FIELDS]
    if cleared:
        raise ValidationError("Required fields cannot be cleared", fields={name: "may not be null" for name in cleared})
    for name, value in changes.items():
        setattr(doctor, name, value)
    db.session.commit()
    current_app.logger.info(f"[update_doctor_profile] Doctor {doctor_id} updated: {sorted(changes)}")
    return doctor
