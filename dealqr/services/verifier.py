"""
Token verifier: staff-side scan that consumes a redemption token once.

The decision is a single compare-and-set on the claim row (issued ->
consumed, unexpired) plus the deal counter increment in the same
transaction; the increment only lands while the deal is live and under its
cap, otherwise the consume is rolled back. Whatever happens, one ScanAttempt row is appended afterwards.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from . import ledger, rate_limit, registry, tokens
from .concurrency import run_with_retry
from ..app_logger import get_logger, token_hint
from ..models import db, Deal, ScanAttempt, CLAIM_CONSUMED, CLAIM_EXPIRED, CLAIM_ISSUED
from ..time_utils import utcnow

log = get_logger(__name__)

GRANTED = 'granted'
ALREADY_CONSUMED = 'already_consumed'
EXPIRED = 'expired'
NOT_FOUND = 'not_found'
FORGED = 'forged'
SOLD_OUT = 'sold_out'
NOT_LIVE = 'not_live'

# forged and not_found look the same from outside
_PUBLIC = {
    ALREADY_CONSUMED: ('already_redeemed', 'already redeemed'),
    EXPIRED: ('expired', 'code expired'),
    NOT_FOUND: ('invalid_code', 'invalid code'),
    FORGED: ('invalid_code', 'invalid code'),
    SOLD_OUT: ('deal_sold_out', 'Deal has reached maximum redemptions'),
    NOT_LIVE: ('deal_not_live', 'Deal is not currently active'),
}


@dataclass
class VerificationResult:
    outcome: str
    claim_id: int | None = None
    deal_id: str | None = None
    user_id: str | None = None
    consumed_at: datetime | None = None
    deal: Deal | None = None
    velocity_flagged: bool = False

    @property
    def success(self) -> bool:
        return self.outcome == GRANTED

    @property
    def kind(self) -> str | None:
        return None if self.success else _PUBLIC[self.outcome][0]

    @property
    def error(self) -> str | None:
        return None if self.success else _PUBLIC[self.outcome][1]


def _consume(token: str, deal_id: str, scanner_session_id: str, now: datetime) -> VerificationResult:
    try:
        consumed = ledger.try_consume(token, deal_id, scanner_session_id, now)
    except IntegrityError:
        db.session.rollback()
        claim = ledger.find_by_token(token)
        db.session.commit()
        return VerificationResult(ALREADY_CONSUMED, claim.id, deal_id, claim.user_id)

    if consumed:
        claim = ledger.find_by_token(token)
        claim_id, user_id = claim.id, claim.user_id
        counted = registry.increment_redemptions(deal_id, claim_id, now)
        if counted != registry.INCREMENTED:
            # undo the consume; the claim stays issued
            db.session.rollback()
            outcome = NOT_LIVE if counted == registry.NOT_LIVE else SOLD_OUT
            return VerificationResult(outcome, claim_id, deal_id, user_id)
        db.session.commit()
        return VerificationResult(GRANTED, claim_id, deal_id, user_id, now)

    claim = ledger.find_by_token(token)
    if claim is None or claim.deal_id != deal_id:
        db.session.commit()
        return VerificationResult(NOT_FOUND, deal_id=deal_id)
    result = VerificationResult(NOT_FOUND, claim.id, deal_id, claim.user_id)
    if claim.status == CLAIM_CONSUMED:
        result.outcome = ALREADY_CONSUMED
        result.consumed_at = claim.consumed_at
    elif claim.status == CLAIM_EXPIRED:
        result.outcome = EXPIRED
    elif claim.status == CLAIM_ISSUED and claim.is_expired(now):
        ledger.expire_claim(claim.id, now)
        result.outcome = EXPIRED
    db.session.commit()
    return result


def _decide(raw_code: str, deal_id: str | None, scanner_session_id: str, now: datetime) -> VerificationResult:
    try:
        scanned_deal_id, token = tokens.parse_scanned(raw_code)
    except tokens.MalformedToken:
        return VerificationResult(FORGED, deal_id=deal_id)
    if deal_id and scanned_deal_id and scanned_deal_id != deal_id:
        return VerificationResult(FORGED, deal_id=deal_id)
    deal_id = deal_id or scanned_deal_id
    if not deal_id or not tokens.check_token(token, deal_id):
        return VerificationResult(FORGED, deal_id=deal_id)
    return run_with_retry(lambda: _consume(token, deal_id, scanner_session_id, now))


def _record_attempt(raw_code, scanner_session_id, result: VerificationResult, ip, now):
    attempt = ScanAttempt(
        token=(raw_code or '')[:128] if isinstance(raw_code, str) else None,
        scanner_session_id=scanner_session_id,
        deal_id=result.deal_id,
        claim_id=result.claim_id,
        outcome=result.outcome,
        velocity_flagged=result.velocity_flagged,
        ip=ip,
        attempted_at=now,
    )
    try:
        db.session.add(attempt)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        log.exception('could not record scan attempt session=%s outcome=%s', scanner_session_id, result.outcome)


def verify(raw_code: str, scanner_session_id: str, deal_id: str | None = None,
           ip: str | None = None, now: datetime | None = None) -> VerificationResult:
    """
    Verify and consume a scanned code.

    ``raw_code`` is either the full QR payload or the bare token. When
    ``deal_id`` is given (the deal the scanner is verifying against) the code
    must belong to that deal.
    """
    now = now or utcnow()
    flagged = rate_limit.hit_scan(scanner_session_id)

    result = _decide(raw_code, deal_id, scanner_session_id, now)
    result.velocity_flagged = flagged
    if result.success:
        result.deal = registry.get_deal(result.deal_id)

    _record_attempt(raw_code, scanner_session_id, result, ip, now)

    hint = token_hint(raw_code if isinstance(raw_code, str) else None)
    if result.success:
        log.info('granted claim=%s deal=%s session=%s', result.claim_id, result.deal_id, scanner_session_id)
    elif result.outcome == FORGED:
        log.warning('forged code %s deal=%s session=%s', hint, result.deal_id, scanner_session_id)
    else:
        log.info('denied %s code %s claim=%s session=%s', result.outcome, hint, result.claim_id, scanner_session_id)
    return result
