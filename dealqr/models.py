from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import func, text
import time, os

from .time_utils import to_utc_z


def _gen_bigint_id():
    """Generate a sortable 64-bit int: millis timestamp << 16 | 16 bits randomness."""
    return (int(time.time() * 1000) << 16) | int.from_bytes(os.urandom(2), 'big')

db = SQLAlchemy()

CLAIM_ISSUED = 'issued'
CLAIM_CONSUMED = 'consumed'
CLAIM_EXPIRED = 'expired'
CLAIM_VOIDED = 'voided'


class Deal(db.Model):
    """Deal row as published by the venue-side data service.

    Only ``redemption_count`` is written here, through the registry.
    """
    __tablename__ = 'deals'

    id = db.Column(db.String(64), primary_key=True)
    venue_id = db.Column(db.String(64), nullable=False, index=True)
    title = db.Column(db.String(255), nullable=False, default='')
    discount_type = db.Column(db.String(32))  # percentage|fixed|bogo|free_item
    discount_value = db.Column(db.Numeric(10, 2))
    start_time = db.Column(db.DateTime, nullable=False)
    end_time = db.Column(db.DateTime, nullable=False)
    max_redemptions = db.Column(db.Integer)
    redemption_count = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    updated_at = db.Column(db.DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def is_live(self, now) -> bool:
        return bool(self.is_active) and self.start_time <= now <= self.end_time

    def is_sold_out(self) -> bool:
        return self.max_redemptions is not None and self.redemption_count >= self.max_redemptions

    def to_dict(self):
        return {
            'id': self.id,
            'venue_id': self.venue_id,
            'title': self.title,
            'discount_type': self.discount_type,
            'discount_value': float(self.discount_value) if self.discount_value is not None else None,
            'start_time': to_utc_z(self.start_time),
            'end_time': to_utc_z(self.end_time),
            'max_redemptions': self.max_redemptions,
            'redemption_count': self.redemption_count,
            'is_active': self.is_active,
        }


class DealRedemptionIncrement(db.Model):
    # one row per counted redemption; claim_id is the idempotency key
    __tablename__ = 'deal_redemption_increments'

    claim_id = db.Column(db.BigInteger, primary_key=True, autoincrement=False)
    deal_id = db.Column(db.String(64), db.ForeignKey('deals.id'), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False)


class RedemptionClaim(db.Model):
    __tablename__ = 'redemption_claims'
    __table_args__ = (
        db.Index(
            'uq_redemption_claims_active', 'deal_id', 'user_id', unique=True,
            sqlite_where=text("status = 'issued'"),
            postgresql_where=text("status = 'issued'"),
        ),
        db.Index(
            'uq_redemption_claims_consumed', 'deal_id', 'user_id', unique=True,
            sqlite_where=text("status = 'consumed'"),
            postgresql_where=text("status = 'consumed'"),
        ),
    )

    id = db.Column(db.BigInteger, primary_key=True, autoincrement=False, default=_gen_bigint_id)
    deal_id = db.Column(db.String(64), db.ForeignKey('deals.id'), nullable=False, index=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False, default=CLAIM_ISSUED)
    token = db.Column(db.String(128), nullable=False, unique=True)
    issued_at = db.Column(db.DateTime, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    consumed_at = db.Column(db.DateTime)
    consumed_by = db.Column(db.String(128))

    def is_expired(self, now) -> bool:
        return now > self.expires_at

    def to_dict(self):
        return {
            'id': str(self.id),
            'deal_id': self.deal_id,
            'user_id': self.user_id,
            'status': self.status,
            'issued_at': to_utc_z(self.issued_at),
            'expires_at': to_utc_z(self.expires_at),
            'redeemed_at': to_utc_z(self.consumed_at),
        }


class ScanAttempt(db.Model):
    __tablename__ = 'scan_attempts'
    __table_args__ = {'sqlite_autoincrement': True}

    id = db.Column(db.Integer, primary_key=True)
    token = db.Column(db.String(128))
    scanner_session_id = db.Column(db.String(128), index=True)
    deal_id = db.Column(db.String(64), index=True)
    claim_id = db.Column(db.BigInteger, db.ForeignKey('redemption_claims.id'), nullable=True)
    outcome = db.Column(db.String(32), nullable=False)
    velocity_flagged = db.Column(db.Boolean, nullable=False, default=False)
    ip = db.Column(db.String(64))
    attempted_at = db.Column(db.DateTime, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'token': self.token,
            'scanner_session_id': self.scanner_session_id,
            'deal_id': self.deal_id,
            'claim_id': str(self.claim_id) if self.claim_id is not None else None,
            'outcome': self.outcome,
            'velocity_flagged': self.velocity_flagged,
            'ip': self.ip,
            'attempted_at': to_utc_z(self.attempted_at),
        }
