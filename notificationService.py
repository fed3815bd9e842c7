import json
import queue
import threading
from collections import defaultdict

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

import storage
from appUtils import send_email
from exceptions import NotFound, Forbidden
from models import db, Notification

APPOINTMENT_CREATED = "APPOINTMENT_CREATED"
APPOINTMENT_UPDATED = "APPOINTMENT_UPDATED"
APPOINTMENT_CANCELLED = "APPOINTMENT_CANCELLED"


class EventHub:
    """
    In-process fan-out of real-time events, keyed by user id.

    Every connected client owns a bounded queue under its user's topic. Publishing
    never blocks: a full queue drops the event for that client, and users with no
    open connection simply miss it.
    """

    def __init__(self, queue_size=100):
        self.queue_size = queue_size
        self._lock = threading.Lock()
        self._subscribers = defaultdict(set)

    def subscribe(self, user_id):
        q = queue.Queue(maxsize=self.queue_size)
        with self._lock:
            self._subscribers[user_id].add(q)
        return q

    def unsubscribe(self, user_id, q):
        with self._lock:
            subscribers = self._subscribers.get(user_id)
            if subscribers is None:
                return
            subscribers.discard(q)
            if not subscribers:
                del self._subscribers[user_id]

    def subscriber_count(self, user_id):
        with self._lock:
            return len(self._subscribers.get(user_id, ()))

    def publish(self, user_ids, message):
        delivered = 0
        with self._lock:
            targets = [q for uid in set(user_ids) for q in self._subscribers.get(uid, ())]
        for q in targets:
            try:
                q.put_nowait(message)
                delivered += 1
            except queue.Full:
                pass
        return delivered


def get_event_hub():
    return current_app.extensions["event_hub"]


def broadcast(event_type, appointment, user_ids):
    """Push an appointment event to the given users' live connections. Never raises."""
    user_ids = [uid for uid in user_ids if uid is not None]
    try:
        message = {"type": event_type, "data": appointment.to_dict()}
        delivered = get_event_hub().publish(user_ids, message)
        current_app.logger.debug(f"[broadcast] {event_type} for appointment {appointment.id} delivered to {delivered} connection(s)")
    except Exception:
        current_app.logger.exception(f"[broadcast] Failed to publish {event_type} for appointment {getattr(appointment, 'id', None)}")


def notify(user_id, notification_type, title, message, payload=None):
    """
    Persist a notification for one user and email a copy when SendGrid is configured.

    Failures are logged and swallowed: a notification must never undo the
    state change that triggered it. Returns the Notification or None.
    """
    try:
        notification = Notification(user_id=user_id, type=notification_type, title=title, message=message, data=payload)
        db.session.add(notification)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception(f"[notify] Could not store '{notification_type}' notification for user {user_id}")
        return None

    _email_copy(user_id, title, message)
    return notification


def _email_copy(user_id, subject, body):
    api_key = current_app.config.get("SENDGRID_API_KEY")
    if not api_key:
        return
    user = storage.get_user(user_id)
    if user is None or not user.email:
        return
    try:
        status = send_email(api_key, current_app.config["MAIL_FROM"], user.email, subject, body)
        current_app.logger.info(f"[notify] Email sent to user {user_id}, Status: {status}")
    except Exception as e:
        current_app.logger.warning(f"[notify] Email failed for user {user_id}: {e}")


def list_notifications(user_id, unread_only=False):
    return storage.notifications_by_user(user_id, unread_only=unread_only)


def mark_as_read(notification_id, user):
    notification = storage.get_notification(notification_id)
    if notification is None:
        raise NotFound("Notification not found")
    if notification.user_id != user.id:
        raise Forbidden("You can only update your own notifications")
    if not notification.is_read:
        notification.is_read = True
        db.session.commit()
    return notification


def stream_events(user_id, heartbeat=15.0):
    """Server-Sent Events generator for one user's topic."""
    hub = get_event_hub()
    subscription = hub.subscribe(user_id)
    logger = current_app.logger

    def generate():
        logger.debug(f"[stream_events] User {user_id} connected")
        try:
            yield ": connected\n\n"
            while True:
                try:
                    message = subscription.get(timeout=heartbeat)
                except queue.Empty:
                    yield ": keep-alive\n\n"
                    continue
                yield f"event: {message['type']}\ndata: {json.dumps(message)}\n\n"
        finally:
            hub.unsubscribe(user_id, subscription)
            logger.debug(f"[stream_events] User {user_id} disconnected")

    return generate()
