#!/usr/bin/env python3
import sys, base64, hmac, hashlib

# Usage: python scripts/check_codes.py <TOKEN_OR_QR_PAYLOAD> <REDEMPTION_TOKEN_SECRET> [DEAL_ID]
# Decodes a redemption token and checks its HMAC tag against the deal

def err(msg):
    print(f"ERROR: {msg}")
    sys.exit(1)

if len(sys.argv) < 3:
    err("Usage: check_codes.py <TOKEN_OR_QR_PAYLOAD> <REDEMPTION_TOKEN_SECRET> [DEAL_ID]")

scanned = sys.argv[1].strip()
secret = sys.argv[2].strip().encode()
deal_id = sys.argv[3].strip() if len(sys.argv) > 3 else None

if '://' in scanned:
    scheme, rest = scanned.split('://', 1)
    parts = rest.split('/')
    if len(parts) != 3 or parts[0] != 'redeem':
        err(f"not a redeem payload: {scanned}")
    if deal_id and deal_id != parts[1]:
        err(f"payload names deal {parts[1]}, expected {deal_id}")
    deal_id, token = parts[1], parts[2]
else:
    token = scanned
if not deal_id:
    err("a bare token needs DEAL_ID")

try:
    raw = base64.urlsafe_b64decode(token + '=')
except ValueError as e:
    err(f"base64 decode: {e}")

if len(raw) != 32:
    err(f"expected 32 bytes, got {len(raw)}")

nonce, tag = raw[:16], raw[16:]
exp_tag = hmac.new(secret, deal_id.encode() + b'.' + nonce, hashlib.sha256).digest()[:16]
print({
    'deal_id': deal_id,
    'token': token[:6] + '…',
    'tag_ok': hmac.compare_digest(tag, exp_tag),
})
