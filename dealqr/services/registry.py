from __future__ import annotations

import math
from datetime import datetime
from decimal import Decimal

from sqlalchemy import or_, update

from ..errors import InvalidRequest
from ..models import db, Deal, DealRedemptionIncrement
from ..time_utils import parse_iso_datetime

DISCOUNT_TYPES = ('percentage', 'fixed', 'bogo', 'free_item')

# increment_redemptions results
INCREMENTED = 'incremented'
NOT_LIVE = 'not_live'
CAP_REACHED = 'cap_reached'


def get_deal(deal_id: str) -> Deal | None:
    return db.session.get(Deal, deal_id, populate_existing=True)


def increment_redemptions(deal_id: str, claim_id: int, now: datetime) -> str:
    """
    Count one redemption for ``deal_id``, keyed by ``claim_id``.

    Runs inside the caller's transaction. The deal must be active, inside its
    window at ``now`` and under its cap; otherwise nothing is written and
    NOT_LIVE or CAP_REACHED is returned. A claim already counted is a no-op
    returning INCREMENTED.
    """
    if db.session.get(DealRedemptionIncrement, claim_id) is not None:
        return INCREMENTED
    stmt = (
        update(Deal)
        .where(
            Deal.id == deal_id,
            Deal.is_active.is_(True),
            Deal.start_time <= now,
            Deal.end_time >= now,
            or_(Deal.max_redemptions.is_(None), Deal.redemption_count < Deal.max_redemptions),
        )
        .values(redemption_count=Deal.redemption_count + 1)
        .execution_options(synchronize_session=False)
    )
    if db.session.execute(stmt).rowcount != 1:
        deal = get_deal(deal_id)
        if deal is None or not deal.is_live(now):
            return NOT_LIVE
        return CAP_REACHED
    db.session.add(DealRedemptionIncrement(claim_id=claim_id, deal_id=deal_id, created_at=now))
    db.session.flush()
    return INCREMENTED


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _clean_fields(data: dict) -> dict:
    """Type-check the writable deal fields present in ``data``."""
    fields = {}
    for key in ('venue_id', 'title'):
        if key in data:
            if not isinstance(data[key], str) or not data[key].strip():
                raise InvalidRequest(f'{key} must be a non-empty string')
            fields[key] = data[key].strip()
    if 'discount_type' in data:
        if data['discount_type'] is not None and data['discount_type'] not in DISCOUNT_TYPES:
            raise InvalidRequest(f"discount_type must be one of {', '.join(DISCOUNT_TYPES)}")
        fields['discount_type'] = data['discount_type']
    if 'discount_value' in data:
        value = data['discount_value']
        if value is not None and not _is_number(value):
            raise InvalidRequest('discount_value must be a number')
        fields['discount_value'] = None if value is None else Decimal(str(value))
    if 'max_redemptions' in data:
        cap = data['max_redemptions']
        if cap is not None and (not isinstance(cap, int) or isinstance(cap, bool) or cap < 0):
            raise InvalidRequest('max_redemptions must be a non-negative integer or null')
        fields['max_redemptions'] = cap
    if 'is_active' in data:
        if not isinstance(data['is_active'], bool):
            raise InvalidRequest('is_active must be true or false')
        fields['is_active'] = data['is_active']
    return fields


def upsert_deal(deal_id: str, data: dict) -> Deal:
    """Load or refresh a deal row from the venue-side data service.

    Everything is validated before the row is touched; a bad field is an
    InvalidRequest and nothing is written.
    """
    fields = _clean_fields(data)
    times = {}
    for key in ('start_time', 'end_time'):
        if data.get(key):
            try:
                times[key] = parse_iso_datetime(data[key])
            except (AttributeError, TypeError, ValueError):
                raise InvalidRequest(f'Invalid {key}') from None

    deal = get_deal(deal_id)
    if deal is None:
        missing = [k for k in ('venue_id', 'start_time', 'end_time') if not data.get(k)]
        if missing:
            raise InvalidRequest(f"Missing fields: {', '.join(missing)}")
    start = times.get('start_time') or deal.start_time
    end = times.get('end_time') or deal.end_time
    if end <= start:
        raise InvalidRequest('End time must be after start time')

    if deal is None:
        deal = Deal(id=deal_id, redemption_count=0)
        db.session.add(deal)
    deal.start_time, deal.end_time = start, end
    for key, value in fields.items():
        setattr(deal, key, value)
    db.session.commit()
    return deal
