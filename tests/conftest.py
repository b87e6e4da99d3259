"""
Pytest fixtures for the redemption service.

Each test gets its own SQLite file (threads need a real file, not :memory:),
the in-process guard store and HS256 credentials signed with a test secret.
"""
import time
import uuid
from datetime import timedelta

import jwt
import pytest

from dealqr import create_app
from dealqr.models import db, Deal
from dealqr.time_utils import utcnow

JWT_SECRET = 'test-secret-with-at-least-32-bytes-of-key'
ADMIN_KEY = 'test-admin-key'


@pytest.fixture
def app(tmp_path):
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'test.db'}",
        'SQLALCHEMY_ENGINE_OPTIONS': {'connect_args': {'timeout': 30}},
        'USE_REDIS': False,
        'JWT_ALG': 'HS256',
        'JWT_PUBLIC_KEY': JWT_SECRET,
        'REDEMPTION_TOKEN_SECRET': 'test-token-secret',
        'ADMIN_API_KEY': ADMIN_KEY,
        'CLAIM_TTL_SECONDS': 300,
        'REGEN_LIMIT': 5,
        'REGEN_WINDOW_SECONDS': 3600,
        'SCAN_VELOCITY_LIMIT': 30,
        'SCAN_VELOCITY_WINDOW_SECONDS': 60,
    })
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_deal(app):
    """Create a deal that is live now unless told otherwise."""
    def _make(**kwargs):
        now = utcnow()
        values = {
            'id': str(uuid.uuid4()),
            'venue_id': 'venue-1',
            'title': 'Two for one cocktails',
            'discount_type': 'bogo',
            'start_time': now - timedelta(hours=1),
            'end_time': now + timedelta(hours=1),
            'max_redemptions': None,
            'redemption_count': 0,
            'is_active': True,
        }
        values.update(kwargs)
        deal = Deal(**values)
        db.session.add(deal)
        db.session.commit()
        return values['id']
    return _make


def make_credential(user_id: str, role: str = 'user', venue_id: str | None = None,
                    sid: str | None = None, ttl: int = 3600) -> str:
    payload = {'sub': user_id, 'role': role, 'exp': int(time.time()) + ttl}
    if venue_id:
        payload['venue_id'] = venue_id
    if sid:
        payload['sid'] = sid
    return jwt.encode(payload, JWT_SECRET, algorithm='HS256')


def auth_headers(user_id: str, **kwargs) -> dict:
    return {'Authorization': f'Bearer {make_credential(user_id, **kwargs)}'}


def staff_headers(venue_id: str = 'venue-1', sid: str = 'scanner-a') -> dict:
    return auth_headers(f'staff-{sid}', role='venue_staff', venue_id=venue_id, sid=sid)
