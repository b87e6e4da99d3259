import base64, hashlib, hmac, re, secrets
from flask import current_app

NONCE_BYTES = 16
TAG_BYTES = 16
TOKEN_LENGTH = 43  # base64url of 32 bytes, unpadded
_TOKEN_RE = re.compile(r'^[A-Za-z0-9_-]{%d}$' % TOKEN_LENGTH)


class MalformedToken(ValueError):
    pass


def _secret() -> bytes:
    return current_app.config['REDEMPTION_TOKEN_SECRET'].encode()


def _tag(deal_id: str, nonce: bytes) -> bytes:
    msg = deal_id.encode() + b'.' + nonce
    return hmac.new(_secret(), msg, hashlib.sha256).digest()[:TAG_BYTES]


# Redemption token: 128-bit random nonce + HMAC tag binding it to the deal
def make_token(deal_id: str) -> str:
    nonce = secrets.token_bytes(NONCE_BYTES)
    return base64.urlsafe_b64encode(nonce + _tag(deal_id, nonce)).rstrip(b'=').decode()


def check_token(token: str, deal_id: str) -> bool:
    """True when ``token`` is well formed and was minted for ``deal_id``."""
    if not isinstance(token, str) or not _TOKEN_RE.match(token):
        return False
    raw = base64.urlsafe_b64decode(token + '=')
    nonce, tag = raw[:NONCE_BYTES], raw[NONCE_BYTES:]
    return hmac.compare_digest(tag, _tag(deal_id, nonce))


# QR payload: {scheme}://redeem/{deal_id}/{token}
def qr_payload(deal_id: str, token: str) -> str:
    return f"{current_app.config['QR_SCHEME']}://redeem/{deal_id}/{token}"


def parse_scanned(raw: str):
    """
    Split what a scanner read into (deal_id, token).

    Accepts a full QR payload or a bare token typed in by staff; for a bare
    token deal_id is None.
    """
    if not isinstance(raw, str):
        raise MalformedToken('not a string')
    raw = raw.strip()
    if '://' not in raw:
        return None, raw
    scheme, rest = raw.split('://', 1)
    parts = rest.split('/')
    if scheme != current_app.config['QR_SCHEME'] or len(parts) != 3 or parts[0] != 'redeem':
        raise MalformedToken('unrecognised payload')
    if not parts[1] or not parts[2]:
        raise MalformedToken('empty segment')
    return parts[1], parts[2]
