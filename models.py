# models.py
from decimal import Decimal
from flask_sqlalchemy import SQLAlchemy
from appUtils import utc_now

db = SQLAlchemy()

ROLES = ("patient", "doctor", "admin")
APPOINTMENT_STATUSES = ("scheduled", "confirmed", "completed", "cancelled")
APPOINTMENT_TYPES = ("in-person", "video", "phone")
PAYMENT_STATUSES = ("pending", "paid", "refunded")


def _iso(value):
    return value.isoformat() if value is not None else None


def _money(value):
    if value is None:
        return None
    return f"{Decimal(value):.2f}"


def _coord(value):
    return float(value) if value is not None else None


# database model for USERS table
class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False)
    password = db.Column(db.String(255), nullable=False)
    first_name = db.Column(db.String(120), nullable=False)
    last_name = db.Column(db.String(120), nullable=False)
    phone = db.Column(db.String(20))
    role = db.Column(db.Enum(*ROLES, name="user_role", native_enum=False), nullable=False, default="patient")
    is_verified = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    doctor = db.relationship("Doctor", back_populates="user", uselist=False)

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}"

    def to_dict(self):
        # password hash never leaves the data layer
        return {
            "id": self.id,
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "phone": self.phone,
            "role": self.role,
            "isVerified": self.is_verified,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<User {self.id} {self.role}>"


# database model for DOCTORS table
class Doctor(db.Model):
    __tablename__ = "doctors"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), unique=True, nullable=False)
    specialty = db.Column(db.String(120), nullable=False)
    license_number = db.Column(db.String(64), nullable=False)
    experience = db.Column(db.Integer, nullable=False, default=0)
    education = db.Column(db.String(255), nullable=False)
    languages = db.Column(db.JSON, nullable=False, default=list)
    bio = db.Column(db.Text)
    gender = db.Column(db.String(20))
    clinic_name = db.Column(db.String(200), nullable=False)
    clinic_address = db.Column(db.String(300), nullable=False)
    latitude = db.Column(db.Numeric(10, 8))
    longitude = db.Column(db.Numeric(11, 8))
    consultation_fee = db.Column(db.Numeric(10, 2), nullable=False)
    rating = db.Column(db.Numeric(3, 2), nullable=False, default=Decimal("0.00"))
    review_count = db.Column(db.Integer, nullable=False, default=0)
    is_accepting_patients = db.Column(db.Boolean, nullable=False, default=True)
    services_offered = db.Column(db.JSON, nullable=False, default=list)
    insurances_accepted = db.Column(db.JSON, nullable=False, default=list)
    availability_schedule = db.Column(db.JSON)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    user = db.relationship("User", back_populates="doctor")

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "specialty": self.specialty,
            "licenseNumber": self.license_number,
            "experience": self.experience,
            "education": self.education,
            "languages": list(self.languages or []),
            "bio": self.bio,
            "gender": self.gender,
            "clinicName": self.clinic_name,
            "clinicAddress": self.clinic_address,
            "latitude": _coord(self.latitude),
            "longitude": _coord(self.longitude),
            "consultationFee": _money(self.consultation_fee),
            "rating": _money(self.rating),
            "reviewCount": self.review_count,
            "isAcceptingPatients": self.is_accepting_patients,
            "servicesOffered": list(self.services_offered or []),
            "insurancesAccepted": list(self.insurances_accepted or []),
            "availabilitySchedule": self.availability_schedule,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Doctor {self.id} {self.specialty}>"


# database model for APPOINTMENTS table
class Appointment(db.Model):
    __tablename__ = "appointments"

    id = db.Column(db.Integer, primary_key=True)
    patient_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    doctor_id = db.Column(db.Integer, db.ForeignKey("doctors.id"), nullable=False, index=True)
    appointment_date = db.Column(db.DateTime, nullable=False)
    duration = db.Column(db.Integer, nullable=False, default=30)
    status = db.Column(db.Enum(*APPOINTMENT_STATUSES, name="appointment_status", native_enum=False), nullable=False, default="scheduled")
    type = db.Column(db.Enum(*APPOINTMENT_TYPES, name="appointment_type", native_enum=False), nullable=False, default="in-person")
    reason = db.Column(db.String(500))
    notes = db.Column(db.Text)
    payment_status = db.Column(db.Enum(*PAYMENT_STATUSES, name="payment_status", native_enum=False), nullable=False, default="pending")
    payment_intent_id = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    patient = db.relationship("User", foreign_keys=[patient_id])
    doctor = db.relationship("Doctor")

    def to_dict(self):
        return {
            "id": self.id,
            "patientId": self.patient_id,
            "doctorId": self.doctor_id,
            "appointmentDate": _iso(self.appointment_date),
            "duration": self.duration,
            "status": self.status,
            "type": self.type,
            "reason": self.reason,
            "notes": self.notes,
            "paymentStatus": self.payment_status,
            "paymentIntentId": self.payment_intent_id,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Appointment {self.id} {self.status}>"


# database model for AVAILABILITY_SLOTS table
class AvailabilitySlot(db.Model):
    __tablename__ = "availability_slots"
    __table_args__ = (db.UniqueConstraint("doctor_id", "start_time", name="uq_slot_doctor_start"),)

    id = db.Column(db.Integer, primary_key=True)
    doctor_id = db.Column(db.Integer, db.ForeignKey("doctors.id"), nullable=False, index=True)
    date = db.Column(db.Date, nullable=False, index=True)
    start_time = db.Column(db.DateTime, nullable=False)
    end_time = db.Column(db.DateTime, nullable=False)
    is_booked = db.Column(db.Boolean, nullable=False, default=False)
    appointment_id = db.Column(db.Integer, db.ForeignKey("appointments.id"), index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    def contains(self, when):
        return self.start_time <= when < self.end_time

    def to_dict(self):
        return {
            "id": self.id,
            "doctorId": self.doctor_id,
            "date": _iso(self.date),
            "startTime": _iso(self.start_time),
            "endTime": _iso(self.end_time),
            "isBooked": self.is_booked,
            "appointmentId": self.appointment_id,
        }

    def __repr__(self):
        return f"<AvailabilitySlot {self.id} {self.start_time} booked={self.is_booked}>"


# database model for REVIEWS table
class Review(db.Model):
    __tablename__ = "reviews"

    id = db.Column(db.Integer, primary_key=True)
    patient_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    doctor_id = db.Column(db.Integer, db.ForeignKey("doctors.id"), nullable=False, index=True)
    appointment_id = db.Column(db.Integer, db.ForeignKey("appointments.id"))
    rating = db.Column(db.Integer, nullable=False)
    comment = db.Column(db.Text)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    def to_dict(self):
        return {
            "id": self.id,
            "patientId": self.patient_id,
            "doctorId": self.doctor_id,
            "appointmentId": self.appointment_id,
            "rating": self.rating,
            "comment": self.comment,
            "createdAt": _iso(self.created_at),
        }


# database model for NOTIFICATIONS table
class Notification(db.Model):
    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    type = db.Column(db.String(50), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text, nullable=False)
    data = db.Column(db.JSON)
    is_read = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "data": self.data,
            "isRead": self.is_read,
            "createdAt": _iso(self.created_at),
        }
