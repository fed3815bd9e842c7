import itertools
from datetime import date, time
from decimal import Decimal

import jwt
import pytest

from app import create_app
from availabilityService import publish_slots
from config import TestingConfig
from models import db, User, Doctor

SLOT_DAY = date(2030, 1, 15)


@pytest.fixture
def app(tmp_path):
    app = create_app(TestingConfig, SQLALCHEMY_DATABASE_URI=f"sqlite:///{tmp_path / 'test.db'}")
    yield app
    with app.app_context():
        db.session.remove()
        db.engine.dispose()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def app_ctx(app):
    with app.app_context():
        yield app


class Factory:
    """Seeds rows in a short-lived app context and hands back ids."""

    def __init__(self, app):
        self.app = app
        self._seq = itertools.count(1)

    def user(self, role="patient", first_name="Test", last_name="User", **fields):
        with self.app.app_context():
            user = User(
                email=f"user{next(self._seq)}@example.com",
                password="not-a-real-hash",
                first_name=first_name,
                last_name=last_name,
                role=role,
                **fields,
            )
            db.session.add(user)
            db.session.commit()
            return user.id

    def doctor(self, **fields):
        """Returns (doctor_id, user_id)."""
        user_id = self.user(role="doctor", first_name="Jane", last_name="Doe")
        values = {
            "specialty": "Cardiology",
            "license_number": f"LIC-{user_id}",
            "experience": 10,
            "education": "MD",
            "languages": ["English"],
            "clinic_name": "Heart Clinic",
            "clinic_address": "1 Main St, Springfield",
            "consultation_fee": Decimal("100.00"),
            "services_offered": [],
            "insurances_accepted": [],
        }
        values.update(fields)
        with self.app.app_context():
            doctor = Doctor(user_id=user_id, **values)
            db.session.add(doctor)
            db.session.commit()
            return doctor.id, user_id

    def slots(self, doctor_id, day=SLOT_DAY, start=time(9, 0), end=time(10, 0), minutes=30):
        with self.app.app_context():
            return [slot.id for slot in publish_slots(doctor_id, day, start, end, minutes)]

    def token(self, user_id, secret=None):
        secret = secret or self.app.config["JWT_SECRET"]
        return jwt.encode({"sub": str(user_id)}, secret, algorithm="HS256")

    def headers(self, user_id):
        return {"Authorization": f"Bearer {self.token(user_id)}"}


@pytest.fixture
def factory(app):
    return Factory(app)
