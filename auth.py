"""
Bearer-token authentication for the API routes.

Tokens are issued elsewhere; here they are only verified with PyJWT. The
``sub`` claim carries the user id as a string.
"""
import hmac
from functools import wraps

import jwt  # PyJWT
from flask import current_app, g, request

import storage
from exceptions import Unauthorized, Forbidden


def decode_token(token):
    try:
        return jwt.decode(
            token,
            current_app.config["JWT_SECRET"],
            algorithms=[current_app.config["JWT_ALGORITHM"]],
        )
    except jwt.ExpiredSignatureError:
        current_app.logger.warning("[decode_token] Token expired")
        raise Unauthorized("Token expired")
    except jwt.InvalidTokenError as e:
        current_app.logger.warning(f"[decode_token] Invalid token: {e}")
        raise Unauthorized("Invalid token")


def current_user_from_request():
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthorized("No token provided")

    payload = decode_token(token.strip())
    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        raise Unauthorized("Invalid token")

    user = storage.get_user(user_id)
    if user is None:
        raise Unauthorized("User not found")
    return user


def login_required(*roles):
    """Authenticate the caller into ``g.current_user``; restrict to ``roles`` when given."""
    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            user = current_user_from_request()
            if roles and user.role not in roles:
                raise Forbidden(f"This action requires role: {', '.join(roles)}")
            g.current_user = user
            return view(*args, **kwargs)
        return wrapper
    return decorator


def check_shared_secret(header_name, config_key):
    expected = current_app.config.get(config_key)
    provided = request.headers.get(header_name, "")
    if not expected:
        raise Forbidden("Endpoint is not configured")
    if not hmac.compare_digest(provided.encode(), expected.encode()):
        raise Unauthorized("Invalid signature")
