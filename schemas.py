"""
Request schemas for the JSON API.

Each model validates one request body; field aliases are the camelCase keys the
clients send. parse_body() turns pydantic errors into the API ValidationError.
"""
from datetime import date, datetime, time
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from appUtils import parse_datetime, validate_email, validate_name, validate_phone
from exceptions import ValidationError


class RequestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", str_strip_whitespace=True)


def _coerce_datetime(value):
    parsed = parse_datetime(value)
    if parsed is None:
        raise ValueError("must be an ISO-8601 date-time")
    return parsed


# ----------------------------- Users -----------------------------
class UserCreate(RequestModel):
    email: str
    password: str = Field(..., min_length=8)
    first_name: str = Field(..., alias="firstName", min_length=1, max_length=120)
    last_name: str = Field(..., alias="lastName", min_length=1, max_length=120)
    phone: Optional[str] = Field(None, max_length=20)
    role: Literal["patient", "doctor", "admin"] = "patient"

    @field_validator("email")
    @classmethod
    def check_email(cls, value):
        if not validate_email(value):
            raise ValueError("invalid email address")
        return value.lower()

    @field_validator("first_name", "last_name")
    @classmethod
    def check_name(cls, value):
        if not validate_name(value):
            raise ValueError("may only contain letters, spaces and . ' -")
        return value

    @field_validator("phone")
    @classmethod
    def check_phone(cls, value):
        if value is not None and not validate_phone(value):
            raise ValueError("must contain 7 to 15 digits")
        return value


# ----------------------------- Doctors -----------------------------
class DoctorUpdate(RequestModel):
    specialty: Optional[str] = Field(None, min_length=1, max_length=120)
    license_number: Optional[str] = Field(None, alias="licenseNumber", min_length=1, max_length=64)
    experience: Optional[int] = Field(None, ge=0, le=80)
    education: Optional[str] = Field(None, min_length=1, max_length=255)
    languages: Optional[List[str]] = None
    bio: Optional[str] = None
    gender: Optional[str] = Field(None, max_length=20)
    clinic_name: Optional[str] = Field(None, alias="clinicName", min_length=1, max_length=200)
    clinic_address: Optional[str] = Field(None, alias="clinicAddress", min_length=1, max_length=300)
    latitude: Optional[Decimal] = Field(None, ge=-90, le=90)
    longitude: Optional[Decimal] = Field(None, ge=-180, le=180)
    consultation_fee: Optional[Decimal] = Field(None, alias="consultationFee", ge=0, max_digits=10, decimal_places=2)
    is_accepting_patients: Optional[bool] = Field(None, alias="isAcceptingPatients")
    services_offered: Optional[List[str]] = Field(None, alias="servicesOffered")
    insurances_accepted: Optional[List[str]] = Field(None, alias="insurancesAccepted")
    availability_schedule: Optional[dict] = Field(None, alias="availabilitySchedule")


class DoctorCreate(DoctorUpdate):
    specialty: str = Field(..., min_length=1, max_length=120)
    license_number: str = Field(..., alias="licenseNumber", min_length=1, max_length=64)
    experience: int = Field(..., ge=0, le=80)
    education: str = Field(..., min_length=1, max_length=255)
    languages: List[str] = Field(default_factory=list)
    clinic_name: str = Field(..., alias="clinicName", min_length=1, max_length=200)
    clinic_address: str = Field(..., alias="clinicAddress", min_length=1, max_length=300)
    consultation_fee: Decimal = Field(..., alias="consultationFee", ge=0, max_digits=10, decimal_places=2)
    services_offered: List[str] = Field(default_factory=list, alias="servicesOffered")
    insurances_accepted: List[str] = Field(default_factory=list, alias="insurancesAccepted")


class SlotPublish(RequestModel):
    day: date = Field(..., alias="date")
    start_time: time = Field(..., alias="startTime")
    end_time: time = Field(..., alias="endTime")
    slot_minutes: Optional[int] = Field(None, alias="slotMinutes", ge=5, le=240)

    @model_validator(mode="after")
    def check_range(self):
        if self.end_time <= self.start_time:
            raise ValueError("endTime must be after startTime")
        return self


# ----------------------------- Appointments -----------------------------
class AppointmentCreate(RequestModel):
    doctor_id: int = Field(..., alias="doctorId", gt=0)
    appointment_date: datetime = Field(..., alias="appointmentDate")
    reason: Optional[str] = Field(None, max_length=500)
    notes: Optional[str] = None
    type: Literal["in-person", "video", "phone"] = "in-person"
    duration: int = Field(30, ge=5, le=240)

    @field_validator("appointment_date", mode="before")
    @classmethod
    def check_date(cls, value):
        return _coerce_datetime(value)


class AppointmentUpdate(RequestModel):
    status: Optional[Literal["scheduled", "confirmed", "completed", "cancelled"]] = None
    reason: Optional[str] = Field(None, max_length=500)
    notes: Optional[str] = None
    type: Optional[Literal["in-person", "video", "phone"]] = None
    appointment_date: Optional[datetime] = Field(None, alias="appointmentDate")
    payment_status: Optional[Literal["pending", "paid", "refunded"]] = Field(None, alias="paymentStatus")

    @field_validator("appointment_date", mode="before")
    @classmethod
    def check_date(cls, value):
        if value is None:
            return value
        return _coerce_datetime(value)


# ----------------------------- Reviews -----------------------------
class ReviewCreate(RequestModel):
    doctor_id: int = Field(..., alias="doctorId", gt=0)
    appointment_id: Optional[int] = Field(None, alias="appointmentId", gt=0)
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=2000)


# ----------------------------- Payments -----------------------------
class PaymentIntentCreate(RequestModel):
    appointment_id: int = Field(..., alias="appointmentId", gt=0)
    amount: Optional[Decimal] = Field(None, gt=0, max_digits=10, decimal_places=2)


class PaymentConfirm(RequestModel):
    appointment_id: int = Field(..., alias="appointmentId", gt=0)
    status: Literal["paid", "succeeded", "failed", "pending", "refunded"]
    payment_intent_id: Optional[str] = Field(None, alias="paymentIntentId")


def parse_body(schema, data):
    """Validate a JSON body against a schema, raising the API ValidationError."""
    if data is None:
        raise ValidationError("Request body must be a JSON object")
    try:
        return schema.model_validate(data)
    except PydanticValidationError as e:
        fields = {}
        for err in e.errors():
            key = ".".join(str(part) for part in err["loc"]) or "__root__"
            fields.setdefault(key, err["msg"])
        raise ValidationError("Invalid request body", fields=fields)
