"""
Token issuer: claim a deal and hand back a short-lived redemption token.

Eligibility is re-checked server-side on every call, in this order:
deal exists, deal is live, cap not reached, user has not already redeemed.
An unexpired issued claim is returned as-is unless regeneration is asked
for, in which case it is voided in the same transaction that creates the
replacement. Only those replacements count against the regeneration window.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from flask import current_app

from . import ledger, rate_limit, registry, tokens
from .concurrency import run_with_retry
from ..app_logger import get_logger, token_hint
from ..errors import (
    AlreadyRedeemed, ClaimConflict, DealNotFound, DealNotLive, DealSoldOut,
    InvalidRequest, RegenerationThrottled, ServiceError,
)
from ..models import db, Deal, RedemptionClaim
from ..time_utils import utcnow

log = get_logger(__name__)


@dataclass
class IssuedClaim:
    claim: RedemptionClaim
    reused: bool
    voided_claim_id: int | None = None
    deal: Deal | None = None

    @property
    def token(self) -> str:
        return self.claim.token

    @property
    def expires_at(self) -> datetime:
        return self.claim.expires_at

    @property
    def qr_payload(self) -> str:
        return tokens.qr_payload(self.claim.deal_id, self.claim.token)


def _check_eligibility(deal_id: str, user_id: str, now: datetime):
    deal = registry.get_deal(deal_id)
    if deal is None:
        raise DealNotFound()
    if not deal.is_live(now):
        raise DealNotLive()
    if deal.is_sold_out():
        raise DealSoldOut()
    if ledger.has_consumed(deal_id, user_id):
        raise AlreadyRedeemed()
    return deal


def _issue(deal_id: str, user_id: str, regenerate: bool, now: datetime) -> IssuedClaim:
    try:
        deal = _check_eligibility(deal_id, user_id, now)
    except ServiceError:
        # release the write lock taken by the eligibility reads
        db.session.rollback()
        raise

    active = ledger.find_active(deal_id, user_id, now)
    if active is not None and not regenerate:
        db.session.commit()
        return IssuedClaim(active, reused=True, deal=deal)

    # only replacing a still-valid code counts against the window
    regenerating = active is not None
    voided = active.id if regenerating else None
    if regenerating and not rate_limit.regeneration_allowed(user_id, deal_id):
        db.session.rollback()
        log.warning('regeneration throttled user=%s deal=%s', user_id, deal_id)
        raise RegenerationThrottled()

    ttl = current_app.config['CLAIM_TTL_SECONDS']
    token = tokens.make_token(deal_id)
    if regenerating:
        claim = ledger.try_void_and_reissue(voided, deal_id, user_id, token, now, ttl)
    else:
        claim = ledger.try_issue(deal_id, user_id, token, now, ttl)
    db.session.commit()

    if regenerating:
        rate_limit.record_regeneration(user_id, deal_id)
    log.info('issued claim=%s deal=%s user=%s token=%s voided=%s',
             claim.id, deal_id, user_id, token_hint(token), voided)
    return IssuedClaim(claim, reused=False, voided_claim_id=voided, deal=deal)


def issue_or_regenerate(deal_id: str, user_id: str, regenerate: bool = False,
                        now: datetime | None = None) -> IssuedClaim:
    """
    Return the caller's redemption token for ``deal_id``.

    Safe to retry: a request that lost an issuance race gets the winner's
    claim back instead of a second token.
    """
    if not deal_id or not user_id:
        raise InvalidRequest('deal_id and user_id are required')
    now = now or utcnow()

    for attempt in range(2):
        try:
            return run_with_retry(lambda: _issue(deal_id, user_id, regenerate, now))
        except ClaimConflict:
            winner = ledger.find_active(deal_id, user_id, now)
            deal = registry.get_deal(deal_id)
            db.session.commit()
            if winner is not None:
                log.info('issuance race for deal=%s user=%s resolved to claim=%s', deal_id, user_id, winner.id)
                return IssuedClaim(winner, reused=True, deal=deal)
            if attempt:
                raise
