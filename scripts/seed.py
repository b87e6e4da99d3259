import os, sys, pathlib
from datetime import timedelta
# Ensure project root is on PYTHONPATH when running directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dealqr import create_app
from dealqr.services import issuer, registry
from dealqr.services.qr import make_qr_bytes
from dealqr.time_utils import to_utc_z, utcnow

# Usage: python scripts/seed.py [DEAL_ID] [USER_ID]
deal_id = sys.argv[1] if len(sys.argv) > 1 else 'demo-deal'
user_id = sys.argv[2] if len(sys.argv) > 2 else 'demo-user'

app = create_app()
with app.app_context():
    now = utcnow()
    registry.upsert_deal(deal_id, {
        'venue_id': os.environ.get('SEED_VENUE_ID', 'demo-venue'),
        'title': 'Two for one cocktails',
        'discount_type': 'bogo',
        'start_time': to_utc_z(now - timedelta(minutes=5)),
        'end_time': to_utc_z(now + timedelta(days=7)),
        'max_redemptions': 100,
        'is_active': True,
    })
    issued = issuer.issue_or_regenerate(deal_id, user_id)

    out = ROOT / f"redeem_{deal_id}.png"
    out.write_bytes(make_qr_bytes(issued.qr_payload))
    print('Deal:', deal_id)
    print('QR payload:', issued.qr_payload)
    print('Expires at:', to_utc_z(issued.expires_at))
    print('PNG:', out)
