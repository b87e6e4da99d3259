from __future__ import annotations

from dataclasses import dataclass
from functools import wraps

import jwt
from flask import current_app, g, request

from ..app_logger import get_logger
from ..errors import Forbidden, Unauthorized

log = get_logger(__name__)

ROLE_USER = 'user'
ROLE_VENUE_OWNER = 'venue_owner'
ROLE_VENUE_STAFF = 'venue_staff'
ROLE_ADMIN = 'admin'
SCANNER_ROLES = (ROLE_VENUE_OWNER, ROLE_VENUE_STAFF, ROLE_ADMIN)


@dataclass
class Credential:
    user_id: str
    role: str
    venue_id: str | None
    session_id: str

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def decode_credential(raw: str) -> Credential:
    key = current_app.config.get('JWT_PUBLIC_KEY')
    if not key:
        log.error('JWT_PUBLIC_KEY is not configured; rejecting credential')
        raise Unauthorized('Invalid or expired token')
    try:
        payload = jwt.decode(
            raw,
            key,
            algorithms=[current_app.config.get('JWT_ALG', 'RS256')],
            options={'require': ['sub', 'exp']},
        )
    except jwt.InvalidTokenError:
        raise Unauthorized('Invalid or expired token') from None

    sub = str(payload['sub'])
    # staff devices carry their own session id; fall back to the token id
    session_id = payload.get('sid') or payload.get('jti') or sub
    return Credential(
        user_id=sub,
        role=payload.get('role') or ROLE_USER,
        venue_id=payload.get('venue_id'),
        session_id=str(session_id),
    )


def require_credential(*roles):
    """
    Require a bearer credential; optionally restrict to ``roles``.

    Sets ``g.credential``.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            auth = request.headers.get('Authorization', '')
            if not auth.startswith('Bearer '):
                raise Unauthorized()
            cred = decode_credential(auth.split(' ', 1)[1].strip())
            if roles and cred.role not in roles:
                raise Forbidden()
            g.credential = cred
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def require_admin_key(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        api_key = request.headers.get('X-Admin-Key')
        if not api_key or api_key != (current_app.config.get('ADMIN_API_KEY') or ''):
            raise Unauthorized('unauthorized')
        return f(*args, **kwargs)
    return decorated_function
