# app.py
from flask import Flask, Blueprint, Response, g, jsonify, request, stream_with_context
from werkzeug.exceptions import HTTPException
from werkzeug.security import generate_password_hash

import storage
from appUtils import parse_bool, validate_date
from appointmentService import (
    book_appointment, cancel_appointment, update_appointment,
    get_appointment_for_user, list_appointments_for_user, update_payment_status,
)
from auth import login_required, check_shared_secret
from availabilityService import list_available_slots, list_slots, publish_slots
from config import Config, engine_options
from doctorService import (
    DoctorSearchFilters, DEFAULT_RADIUS_KM, search_doctors, top_rated_doctors, nearby_doctors,
    get_doctor, create_doctor_profile, update_doctor_profile, require_doctor_owner,
)
from exceptions import AppError, Forbidden, NotFound, ValidationError
from models import db, User
from notificationService import EventHub, list_notifications, mark_as_read, stream_events
from paymentService import create_payment_intent, handle_webhook, refund_payment
from recommendationService import get_recommendations
from reviewService import add_review, list_reviews
from schemas import (
    parse_body, UserCreate, DoctorCreate, DoctorUpdate, SlotPublish,
    AppointmentCreate, AppointmentUpdate, ReviewCreate, PaymentIntentCreate, PaymentConfirm,
)

api = Blueprint("api", __name__)


def _required_date(name):
    raw = request.args.get(name)
    day = validate_date(raw) if raw else None
    if day is None:
        raise ValidationError("Invalid query parameter", fields={name: "must be a date in YYYY-MM-DD format"})
    return day


def _float_arg(name, default=None):
    raw = request.args.get(name)
    if raw in (None, ""):
        if default is None:
            raise ValidationError("Invalid query parameter", fields={name: "is required"})
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValidationError("Invalid query parameter", fields={name: "must be a number"})


@api.route("/health")
def health():
    return jsonify({"status": "ok"})

# ----------------------------- Users -----------------------------
@api.route("/users", methods=["POST"])
def register_user():
    body = parse_body(UserCreate, request.get_json(silent=True))
    if body.role == "admin":
        raise Forbidden("Administrator accounts cannot be self-registered")
    if storage.get_user_by_email(body.email) is not None:
        raise ValidationError("User already exists", fields={"email": "already registered"})

    user = User(
        email=body.email,
        password=generate_password_hash(body.password),
        first_name=body.first_name,
        last_name=body.last_name,
        phone=body.phone,
        role=body.role,
    )
    db.session.add(user)
    db.session.commit()
    return jsonify(user.to_dict()), 201

@api.route("/users/me")
@login_required()
def current_user():
    data = g.current_user.to_dict()
    doctor = storage.get_doctor_by_user_id(g.current_user.id)
    data["doctorId"] = doctor.id if doctor else None
    return jsonify(data)

# ----------------------------- Doctors -----------------------------
@api.route("/doctors")
def search():
    filters = DoctorSearchFilters.from_query(request.args)
    return jsonify(search_doctors(filters))

@api.route("/doctors/top-rated")
def top_rated():
    limit = request.args.get("limit", type=int) or 10
    return jsonify(top_rated_doctors(max(1, min(limit, 100))))

@api.route("/doctors/nearby")
def nearby():
    lat = _float_arg("lat")
    lng = _float_arg("lng")
    radius = _float_arg("radius", DEFAULT_RADIUS_KM)
    return jsonify(nearby_doctors(lat, lng, radius))

@api.route("/doctors/recommendations")
@login_required()
def recommendations():
    return jsonify(get_recommendations(g.current_user, request.args))

@api.route("/doctors/<int:doctor_id>")
def doctor_detail(doctor_id):
    return jsonify(get_doctor(doctor_id))

@api.route("/doctors", methods=["POST"])
@login_required("doctor", "admin")
def create_doctor():
    body = parse_body(DoctorCreate, request.get_json(silent=True))
    doctor = create_doctor_profile(g.current_user, body.model_dump(exclude_none=True))
    return jsonify(get_doctor(doctor.id)), 201

@api.route("/doctors/<int:doctor_id>", methods=["PATCH"])
@login_required("doctor", "admin")
def update_doctor(doctor_id):
    body = parse_body(DoctorUpdate, request.get_json(silent=True))
    update_doctor_profile(doctor_id, g.current_user, body.model_dump(exclude_unset=True))
    return jsonify(get_doctor(doctor_id))

@api.route("/doctors/<int:doctor_id>/availability")
def availability(doctor_id):
    day = _required_date("date")
    if storage.get_doctor(doctor_id) is None:
        raise NotFound("Doctor not found")
    return jsonify([slot.to_dict() for slot in list_available_slots(doctor_id, day)])

@api.route("/doctors/<int:doctor_id>/slots")
@login_required("doctor", "admin")
def doctor_slots(doctor_id):
    require_doctor_owner(doctor_id, g.current_user)
    slots = list_slots(doctor_id, _required_date("startDate"), _required_date("endDate"))
    return jsonify([slot.to_dict() for slot in slots])

@api.route("/doctors/<int:doctor_id>/slots", methods=["POST"])
@login_required("doctor", "admin")
def create_slots(doctor_id):
    body = parse_body(SlotPublish, request.get_json(silent=True))
    require_doctor_owner(doctor_id, g.current_user)
    created = publish_slots(doctor_id, body.day, body.start_time, body.end_time, body.slot_minutes)
    return jsonify([slot.to_dict() for slot in created]), 201

@api.route("/doctors/<int:doctor_id>/reviews")
def doctor_reviews(doctor_id):
    return jsonify([review.to_dict() for review in list_reviews(doctor_id)])

# ----------------------------- Appointments -----------------------------
@api.route("/appointments")
@login_required()
def list_appointments():
    appointments = list_appointments_for_user(g.current_user, request.args.get("when") or None)
    return jsonify([storage.appointment_with_details(a) for a in appointments])

@api.route("/appointments/<int:appointment_id>")
@login_required()
def appointment_detail(appointment_id):
    appointment = get_appointment_for_user(appointment_id, g.current_user)
    return jsonify(storage.appointment_with_details(appointment))

@api.route("/appointments", methods=["POST"])
@login_required("patient")
def create_appointment():
    body = parse_body(AppointmentCreate, request.get_json(silent=True))
    appointment = book_appointment(
        patient_id=g.current_user.id,
        doctor_id=body.doctor_id,
        appointment_date=body.appointment_date,
        reason=body.reason,
        appointment_type=body.type,
        duration=body.duration,
        notes=body.notes,
    )
    return jsonify(appointment.to_dict()), 201

@api.route("/appointments/<int:appointment_id>", methods=["PATCH"])
@login_required()
def patch_appointment(appointment_id):
    body = parse_body(AppointmentUpdate, request.get_json(silent=True))
    appointment = update_appointment(appointment_id, g.current_user, body.model_dump(exclude_unset=True))
    return jsonify(appointment.to_dict())

@api.route("/appointments/<int:appointment_id>", methods=["DELETE"])
@login_required()
def delete_appointment(appointment_id):
    appointment = cancel_appointment(appointment_id, g.current_user)
    return jsonify(appointment.to_dict())

# ----------------------------- Reviews -----------------------------
@api.route("/reviews", methods=["POST"])
@login_required("patient")
def create_review():
    body = parse_body(ReviewCreate, request.get_json(silent=True))
    review = add_review(g.current_user.id, body.doctor_id, body.rating, body.comment, body.appointment_id)
    return jsonify(review.to_dict()), 201

# ----------------------------- Notifications -----------------------------
@api.route("/notifications")
@login_required()
def notifications():
    unread_only = parse_bool(request.args.get("unread")) or False
    return jsonify([n.to_dict() for n in list_notifications(g.current_user.id, unread_only)])

@api.route("/notifications/<int:notification_id>/read", methods=["PATCH"])
@login_required()
def read_notification(notification_id):
    return jsonify(mark_as_read(notification_id, g.current_user).to_dict())

@api.route("/events")
@login_required()
def events():
    return Response(
        stream_with_context(stream_events(g.current_user.id)),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )

# ----------------------------- Payments -----------------------------
@api.route("/payments/intent", methods=["POST"])
@login_required()
def payment_intent():
    body = parse_body(PaymentIntentCreate, request.get_json(silent=True))
    return jsonify(create_payment_intent(body.appointment_id, g.current_user, body.amount)), 201

@api.route("/payments/confirm", methods=["POST"])
def payment_confirm():
    check_shared_secret("X-Payment-Secret", "PAYMENT_CONFIRM_SECRET")
    body = parse_body(PaymentConfirm, request.get_json(silent=True))
    appointment = update_payment_status(body.appointment_id, body.status, body.payment_intent_id)
    return jsonify(appointment.to_dict())

@api.route("/payments/webhook", methods=["POST"])
def payment_webhook():
    handle_webhook(request.get_data(), request.headers.get("Stripe-Signature", ""))
    return jsonify({"received": True})

@api.route("/payments/refund", methods=["POST"])
@login_required("doctor", "admin")
def payment_refund():
    body = parse_body(PaymentIntentCreate, request.get_json(silent=True))
    return jsonify(refund_payment(body.appointment_id, g.current_user).to_dict())


def register_error_handlers(app):
    @app.errorhandler(AppError)
    def handle_app_error(e):
        app.logger.debug(f"[error] {e.status_code} {e.error}: {e.message}")
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        return jsonify({"error": e.name.lower().replace(" ", "_"), "message": e.description}), e.code

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        app.logger.exception(f"[error] Unhandled exception on {request.method} {request.path}")
        db.session.rollback()
        return jsonify({"error": "internal_error", "message": "Something went wrong"}), 500


def create_app(config_object=Config, **overrides):
    app = Flask(__name__)
    app.config.from_object(config_object)
    app.config.update(overrides)
    app.config.setdefault("SQLALCHEMY_ENGINE_OPTIONS", engine_options(app.config["SQLALCHEMY_DATABASE_URI"]))
    app.logger.setLevel(app.config["LOG_LEVEL"])

    db.init_app(app)
    app.extensions["event_hub"] = EventHub(app.config["EVENT_QUEUE_SIZE"])
    app.register_blueprint(api)
    register_error_handlers(app)

    with app.app_context():
        db.create_all()
    return app


if __name__ == "__main__":
    create_app().run(port=8000, debug=True, threaded=True)
