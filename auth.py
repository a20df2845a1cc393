"""Admin authentication.

Admins log in with email and password and receive an HS256 bearer token.
Protected views are wrapped with :func:`admin_required`, which resolves the
token into an :class:`Identity` and passes it to the view explicitly.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import wraps
from typing import Optional

import jwt
from flask import current_app, request
from werkzeug.security import check_password_hash, generate_password_hash

from app_logging import get_logger, merge_request_context
from errors import UnauthorizedError, ValidationError
from models import Admin, db

_logger = get_logger("app.auth")


@dataclass(frozen=True)
class Identity:
    """Who is making a request."""

    admin_id: Optional[int] = None
    name: str = ""
    email: str = ""

    @property
    def is_admin(self) -> bool:
        return self.admin_id is not None

    def to_dict(self) -> dict:
        return {'id': self.admin_id, 'name': self.name, 'email': self.email}


ANONYMOUS = Identity()


def hash_password(raw: str) -> str:
    return generate_password_hash(raw)


def verify_password(stored: str, provided: str) -> bool:
    if not stored or not provided:
        return False
    return check_password_hash(stored, provided)


def issue_token(admin: Admin) -> str:
    ttl = timedelta(hours=current_app.config['TOKEN_TTL_HOURS'])
    payload = {
        'id': admin.id,
        'exp': datetime.now(timezone.utc) + ttl,
    }
    return jwt.encode(payload, current_app.config['TOKEN_SECRET'], algorithm='HS256')


def login(email: str, password: str) -> tuple[str, Admin]:
    """Check credentials and return ``(token, admin)``."""
    if not isinstance(email, str) or not isinstance(password, str) or not email or not password:
        raise ValidationError('email and password are required')
    admin = Admin.query.filter_by(email=email.strip().lower()).first()
    if admin is None or not verify_password(admin.password_hash, password):
        _logger.info("login rejected", extra={"event": "login_failed"})
        raise UnauthorizedError('Invalid credentials')
    return issue_token(admin), admin


def resolve_identity(authorization: Optional[str]) -> Identity:
    """Turn an ``Authorization`` header value into an :class:`Identity`.

    Raises :class:`errors.UnauthorizedError` when the header is missing,
    malformed, expired, or names an admin that no longer exists.
    """
    if not authorization:
        raise UnauthorizedError('Authorization token is missing')
    parts = authorization.split(' ')
    if len(parts) != 2 or parts[0].lower() != 'bearer' or not parts[1]:
        raise UnauthorizedError('Unauthorized')
    try:
        claims = jwt.decode(parts[1], current_app.config['TOKEN_SECRET'], algorithms=['HS256'])
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError('Token has expired')
    except jwt.InvalidTokenError:
        raise UnauthorizedError('Token is invalid')

    admin_id = claims.get('id')
    admin = db.session.get(Admin, admin_id) if isinstance(admin_id, int) else None
    if admin is None:
        raise UnauthorizedError('No user found')
    return Identity(admin_id=admin.id, name=admin.name, email=admin.email)


def admin_required(view):
    """Pass the resolved :class:`Identity` as the view's first argument."""

    @wraps(view)
    def decorated(*args, **kwargs):
        identity = resolve_identity(request.headers.get('Authorization'))
        merge_request_context(admin_id=identity.admin_id)
        return view(identity, *args, **kwargs)

    return decorated


__all__ = [
    "ANONYMOUS",
    "Identity",
    "admin_required",
    "hash_password",
    "issue_token",
    "login",
    "resolve_identity",
    "verify_password",
]
