"""
Error taxonomy for the redemption service.

Eligibility failures are raised by the issuer and rendered as
``{"error": message, "kind": kind}`` with their HTTP status. Verification
denials are NOT errors; see ``services.verifier.Outcome``.
"""


class ServiceError(Exception):
    kind = 'error'
    status = 400
    message = 'Request failed'

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)
        if message:
            self.message = message

    def to_dict(self):
        return {'error': self.message, 'kind': self.kind}


class DealNotFound(ServiceError):
    kind = 'deal_not_found'
    status = 404
    message = 'Deal not found'


class DealNotLive(ServiceError):
    kind = 'deal_not_live'
    message = 'Deal is not currently active'


class DealSoldOut(ServiceError):
    kind = 'deal_sold_out'
    message = 'Deal has reached maximum redemptions'


class AlreadyRedeemed(ServiceError):
    kind = 'already_redeemed'
    message = 'You have already redeemed this deal'


class RegenerationThrottled(ServiceError):
    kind = 'regeneration_throttled'
    status = 429
    message = 'Too many new codes requested, try again later'


class InvalidRequest(ServiceError):
    kind = 'invalid_request'


class Unauthorized(ServiceError):
    kind = 'unauthorized'
    status = 401
    message = 'Missing or invalid authorization header'


class Forbidden(ServiceError):
    kind = 'forbidden'
    status = 403
    message = 'Access denied'


class ClaimConflict(Exception):
    """A ledger write lost a race against a concurrent writer."""
