# config.py
import os
from dotenv import load_dotenv

load_dotenv()


class Config:
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///doctorbook.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    JWT_SECRET = os.getenv("JWT_SECRET", "development-secret-change-in-production")
    JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    PAYMENT_CONFIRM_SECRET = os.getenv("PAYMENT_CONFIRM_SECRET")
    PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "usd")

    SENDGRID_API_KEY = os.getenv("SENDGRID_API_KEY")
    MAIL_FROM = os.getenv("MAIL_FROM", "no-reply@doctorbook.local")

    OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
    OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://openrouter.ai/api/v1")
    OPENAI_MODEL = os.getenv("OPENAI_MODEL", "deepseek/deepseek-chat-v3.1:free")

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    SLOT_MINUTES = int(os.getenv("SLOT_MINUTES", 30))
    EVENT_QUEUE_SIZE = int(os.getenv("EVENT_QUEUE_SIZE", 100))


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    JWT_SECRET = "test-secret-key-long-enough-for-hs256"
    STRIPE_SECRET_KEY = "sk_test_dummy"
    STRIPE_WEBHOOK_SECRET = "whsec_test"
    PAYMENT_CONFIRM_SECRET = "confirm-secret"
    SENDGRID_API_KEY = None
    OPENAI_API_KEY = None
    LOG_LEVEL = "DEBUG"


def engine_options(database_uri):
    """SQLite writers wait on each other instead of failing with 'database is locked'."""
    if database_uri.startswith("sqlite"):
        return {"connect_args": {"timeout": 30}}
    return {"pool_pre_ping": True}
