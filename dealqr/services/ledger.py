"""
Redemption ledger: the statements behind every claim state transition.

Each race-sensitive transition is one conditional UPDATE (compare-and-set on
``status``) or an INSERT guarded by the partial unique indexes on
``redemption_claims``. Nothing here commits; the issuer and verifier own the
transaction boundary so a transition and its side effects land together.
"""
from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from ..errors import ClaimConflict
from ..models import (
    db, RedemptionClaim, CLAIM_ISSUED, CLAIM_CONSUMED, CLAIM_EXPIRED, CLAIM_VOIDED,
)


def _cas(claim_filter, **values) -> int:
    stmt = (
        update(RedemptionClaim)
        .where(*claim_filter)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return db.session.execute(stmt).rowcount


def _fresh(stmt):
    return db.session.execute(stmt.execution_options(populate_existing=True)).scalars()


def find_active(deal_id: str, user_id: str, now: datetime) -> RedemptionClaim | None:
    """The caller's issued, unexpired claim for this deal, if any."""
    return _fresh(
        select(RedemptionClaim).where(
            RedemptionClaim.deal_id == deal_id,
            RedemptionClaim.user_id == user_id,
            RedemptionClaim.status == CLAIM_ISSUED,
            RedemptionClaim.expires_at >= now,
        )
    ).first()


def find_by_token(token: str) -> RedemptionClaim | None:
    return _fresh(select(RedemptionClaim).where(RedemptionClaim.token == token)).first()


def has_consumed(deal_id: str, user_id: str) -> bool:
    return _fresh(
        select(RedemptionClaim.id).where(
            RedemptionClaim.deal_id == deal_id,
            RedemptionClaim.user_id == user_id,
            RedemptionClaim.status == CLAIM_CONSUMED,
        )
    ).first() is not None


def list_for_user(user_id: str, status: str = CLAIM_CONSUMED, limit: int = 50) -> list[RedemptionClaim]:
    order = RedemptionClaim.consumed_at.desc() if status == CLAIM_CONSUMED else RedemptionClaim.issued_at.desc()
    return list(_fresh(
        select(RedemptionClaim)
        .where(RedemptionClaim.user_id == user_id, RedemptionClaim.status == status)
        .order_by(order, RedemptionClaim.id.desc())
        .limit(limit)
    ))


def expire_stale(deal_id: str, user_id: str, now: datetime) -> int:
    """Lazy reaper: issued claims past their expiry become expired."""
    return _cas(
        (
            RedemptionClaim.deal_id == deal_id,
            RedemptionClaim.user_id == user_id,
            RedemptionClaim.status == CLAIM_ISSUED,
            RedemptionClaim.expires_at < now,
        ),
        status=CLAIM_EXPIRED,
    )


def expire_claim(claim_id: int, now: datetime) -> bool:
    return _cas(
        (
            RedemptionClaim.id == claim_id,
            RedemptionClaim.status == CLAIM_ISSUED,
            RedemptionClaim.expires_at < now,
        ),
        status=CLAIM_EXPIRED,
    ) == 1


def _insert(deal_id, user_id, token, now, ttl_seconds) -> RedemptionClaim:
    claim = RedemptionClaim(
        deal_id=deal_id,
        user_id=user_id,
        status=CLAIM_ISSUED,
        token=token,
        issued_at=now,
        expires_at=now + timedelta(seconds=ttl_seconds),
    )
    db.session.add(claim)
    try:
        db.session.flush()
    except IntegrityError as exc:
        db.session.rollback()
        raise ClaimConflict(f'active claim exists for deal {deal_id}') from exc
    return claim


def try_issue(deal_id: str, user_id: str, token: str, now: datetime, ttl_seconds: int) -> RedemptionClaim:
    """
    Insert a new issued claim.

    Raises ClaimConflict when another issued claim for (deal, user) already
    holds the partial unique index; the session has been rolled back.
    """
    expire_stale(deal_id, user_id, now)
    return _insert(deal_id, user_id, token, now, ttl_seconds)


def try_void_and_reissue(old_claim_id: int, deal_id: str, user_id: str, token: str,
                         now: datetime, ttl_seconds: int) -> RedemptionClaim:
    """Void ``old_claim_id`` (only if still issued) and insert its replacement."""
    voided = _cas(
        (
            RedemptionClaim.id == old_claim_id,
            RedemptionClaim.deal_id == deal_id,
            RedemptionClaim.user_id == user_id,
            RedemptionClaim.status == CLAIM_ISSUED,
        ),
        status=CLAIM_VOIDED,
    )
    if voided != 1:
        db.session.rollback()
        raise ClaimConflict(f'claim {old_claim_id} is no longer issued')
    expire_stale(deal_id, user_id, now)
    return _insert(deal_id, user_id, token, now, ttl_seconds)


def try_consume(token: str, deal_id: str, scanner_session_id: str, now: datetime) -> bool:
    """
    issued -> consumed, only while unexpired. True for exactly one caller per token.

    An IntegrityError here means the user already holds a consumed claim for
    the deal; the caller decides how to report it.
    """
    return _cas(
        (
            RedemptionClaim.token == token,
            RedemptionClaim.deal_id == deal_id,
            RedemptionClaim.status == CLAIM_ISSUED,
            RedemptionClaim.expires_at >= now,
        ),
        status=CLAIM_CONSUMED,
        consumed_at=now,
        consumed_by=scanner_session_id,
    ) == 1
