
import re
from datetime import datetime, date, timezone
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail


def utc_now():
    """Naive UTC timestamp; every DateTime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def validate_name(name):
    return bool(re.fullmatch(r"[A-Za-z .'-]{1,120}", name.strip()))

def validate_email(email):
    return bool(re.fullmatch(r"[^@\s]+@[^@\s]+\.[^@\s]+", email.strip()))

def validate_phone(phone):
    digits = re.sub(r"[^\d]", "", phone)
    return 7 <= len(digits) <= 15

def validate_date(date_str):
    try:
        return datetime.strptime(date_str, "%Y-%m-%d").date()
    except (TypeError, ValueError):
        return None

def parse_datetime(value):
    """
    Accepts datetime objects or ISO-8601 strings:
    "2024-08-01T10:00"          → datetime(2024, 8, 1, 10, 0)
    "2024-08-01T10:00:00Z"      → datetime(2024, 8, 1, 10, 0)
    "2024-08-01T12:00:00+02:00" → datetime(2024, 8, 1, 10, 0)
    Aware values are converted to naive UTC. Returns None when unparseable.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, datetime.min.time())
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed

def parse_bool(value):
    if value is None:
        return None
    return str(value).strip().lower() in ("1", "true", "t", "yes", "y")

def send_email(api_key, from_email, to_email, subject, body):
    message = Mail(
        from_email=from_email,
        to_emails=to_email,
        subject=subject,
        plain_text_content=body
    )
    sg = SendGridAPIClient(api_key)
    response = sg.send(message)
    return response.status_code
