from decimal import Decimal, ROUND_HALF_UP

import stripe
from flask import current_app

import storage
from appointmentService import get_appointment_for_user, update_payment_status
from exceptions import Forbidden, NotFound, Unauthorized, UpstreamFailure, ValidationError
from models import db

# Stripe event type -> payment signal understood by update_payment_status
WEBHOOK_SIGNALS = {
    "payment_intent.succeeded": "succeeded",
    "payment_intent.payment_failed": "failed",
    "charge.refunded": "refunded",
}


def _api_key():
    key = current_app.config.get("STRIPE_SECRET_KEY")
    if not key:
        raise UpstreamFailure("Payment provider is not configured")
    return key


def to_cents(amount):
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _field(obj, key):
    """Read a key from a Stripe object or a plain dict; StripeObject has no .get()."""
    return obj[key] if obj is not None and key in obj else None


def create_payment_intent(appointment_id, user, amount=None):
    """
    Open a PaymentIntent for an appointment and remember its id.

    Provider errors surface as UpstreamFailure and leave the appointment
    pending so the payment can be retried.
    """
    appointment = get_appointment_for_user(appointment_id, user)
    if appointment.status == "cancelled":
        raise ValidationError("Cannot pay for a cancelled appointment", fields={"appointmentId": "appointment is cancelled"})
    if appointment.payment_status != "pending":
        raise ValidationError("Appointment is already settled", fields={"appointmentId": f"payment is {appointment.payment_status}"})

    amount = amount if amount is not None else appointment.doctor.consultation_fee
    cents = to_cents(amount)
    currency = current_app.config["PAYMENT_CURRENCY"]

    try:
        intent = stripe.PaymentIntent.create(
            api_key=_api_key(),
            amount=cents,
            currency=currency,
            metadata={
                "appointmentId": str(appointment.id),
                "patientId": str(appointment.patient_id),
            },
        )
    except stripe.StripeError as e:
        current_app.logger.error(f"[create_payment_intent] Stripe error for appointment {appointment.id}: {e}")
        raise UpstreamFailure("Payment provider error, please retry")

    appointment.payment_intent_id = intent.id
    db.session.commit()
    current_app.logger.info(f"[create_payment_intent] Intent {intent.id} for appointment {appointment.id}: {cents} {currency}")
    return {
        "appointmentId": appointment.id,
        "paymentIntentId": intent.id,
        "clientSecret": intent.client_secret,
        "amount": cents,
        "currency": currency,
    }


def handle_webhook(payload, signature):
    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    if not secret:
        raise Forbidden("Webhook endpoint is not configured")

    try:
        event = stripe.Webhook.construct_event(payload, signature, secret)
    except ValueError:
        raise ValidationError("Invalid webhook payload")
    except stripe.SignatureVerificationError as e:
        current_app.logger.warning(f"[handle_webhook] Webhook signature verification failed: {e}")
        raise Unauthorized("Invalid signature")

    event_type = event["type"]
    signal = WEBHOOK_SIGNALS.get(event_type)
    if signal is None:
        current_app.logger.info(f"[handle_webhook] Unhandled event type {event_type}")
        return None

    obj = event["data"]["object"]
    intent_id = _field(obj, "payment_intent") if event_type == "charge.refunded" else _field(obj, "id")
    raw_id = _field(_field(obj, "metadata"), "appointmentId")

    appointment = None
    if raw_id:
        try:
            appointment = storage.get_appointment(int(raw_id))
        except (TypeError, ValueError):
            current_app.logger.warning(f"[handle_webhook] {event_type} carries a malformed appointmentId {raw_id!r}")
    if appointment is None and intent_id:
        appointment = storage.appointment_by_payment_intent(intent_id)
    if appointment is None:
        current_app.logger.warning(f"[handle_webhook] {event_type} for unknown appointment (intent {intent_id})")
        return None

    return update_payment_status(appointment.id, signal, intent_id)


def refund_payment(appointment_id, user):
    appointment = storage.get_appointment(appointment_id)
    if appointment is None:
        raise NotFound("Appointment not found")
    doctor = appointment.doctor
    if user.role != "admin" and (doctor is None or doctor.user_id != user.id):
        raise Forbidden("Only the doctor or an administrator can issue refunds")
    if appointment.payment_status != "paid" or not appointment.payment_intent_id:
        raise ValidationError("Only paid appointments can be refunded", fields={"appointmentId": f"payment is {appointment.payment_status}"})

    try:
        stripe.Refund.create(api_key=_api_key(), payment_intent=appointment.payment_intent_id)
    except stripe.StripeError as e:
        current_app.logger.error(f"[refund_payment] Stripe error for appointment {appointment.id}: {e}")
        raise UpstreamFailure("Payment provider error, please retry")

    return update_payment_status(appointment.id, "refunded")
