import base64
from datetime import timedelta

from sqlalchemy import update

from conftest import ADMIN_KEY, auth_headers, staff_headers
from dealqr.models import db, Deal, RedemptionClaim, ScanAttempt
from dealqr.time_utils import to_utc_z, utcnow


def _generate(client, deal_id, user_id='u1', **body):
    return client.post(f'/api/deals/{deal_id}/generate-qr', json=body, headers=auth_headers(user_id))


def _verify(client, deal_id, code, **kw):
    return client.post(f'/api/deals/{deal_id}/verify', json={'redemption_code': code},
                       headers=staff_headers(**kw))


def test_health(client):
    rv = client.get('/health')
    assert rv.status_code == 200
    assert rv.get_json() == {'ok': True}


def test_generate_qr_returns_payload_code_and_expiry(client, make_deal):
    deal_id = make_deal()
    rv = _generate(client, deal_id)
    assert rv.status_code == 200
    body = rv.get_json()
    assert set(body) == {'qrPayload', 'redemptionCode', 'expiresAt', 'qrCode', 'deal'}
    assert body['deal'] == {'id': deal_id, 'title': 'Two for one cocktails', 'venue_id': 'venue-1'}
    assert body['qrPayload'] == f"buzz://redeem/{deal_id}/{body['redemptionCode']}"
    assert body['expiresAt'].endswith('Z')

    again = _generate(client, deal_id).get_json()
    assert again['redemptionCode'] == body['redemptionCode']

    fresh = _generate(client, deal_id, regenerate=True).get_json()
    assert fresh['redemptionCode'] != body['redemptionCode']


def test_generate_qr_as_png(client, make_deal):
    deal_id = make_deal()
    headers = dict(auth_headers('u1'), Accept='image/png')
    rv = client.post(f'/api/deals/{deal_id}/generate-qr', headers=headers)
    assert rv.status_code == 200
    assert rv.mimetype == 'image/png'
    assert rv.data.startswith(b'\x89PNG')


def test_generate_qr_eligibility_errors(client, make_deal):
    assert _generate(client, 'missing').status_code == 404

    inactive = make_deal(is_active=False)
    rv = _generate(client, inactive)
    assert rv.status_code == 400
    assert rv.get_json() == {'error': 'Deal is not currently active', 'kind': 'deal_not_live'}

    sold_out = make_deal(max_redemptions=1, redemption_count=1)
    assert _generate(client, sold_out).get_json()['kind'] == 'deal_sold_out'


def test_regeneration_throttle_is_429(app, client, make_deal):
    app.config['REGEN_LIMIT'] = 1
    deal_id = make_deal()
    assert _generate(client, deal_id).status_code == 200
    assert _generate(client, deal_id, regenerate=True).status_code == 200
    rv = _generate(client, deal_id, regenerate=True)
    assert rv.status_code == 429
    assert rv.get_json()['kind'] == 'regeneration_throttled'


def test_requests_without_credentials_are_rejected(client, make_deal):
    deal_id = make_deal()
    assert client.post(f'/api/deals/{deal_id}/generate-qr').status_code == 401
    rv = client.post(f'/api/deals/{deal_id}/generate-qr', headers={'Authorization': 'Bearer nope'})
    assert rv.status_code == 401
    assert rv.get_json()['kind'] == 'unauthorized'
    expired = auth_headers('u1', ttl=-60)
    assert client.get('/api/me/redemptions', headers=expired).status_code == 401


def test_redeem_issues_a_code(client, make_deal):
    deal_id = make_deal()
    rv = client.post(f'/api/deals/{deal_id}/redeem', headers=auth_headers('u1'))
    assert rv.status_code == 200
    body = rv.get_json()
    assert body['message'] == 'Deal redeemed successfully!'
    assert body['redemption']['status'] == 'issued'
    assert body['redemption']['user_id'] == 'u1'

    again = client.post(f'/api/deals/{deal_id}/redeem', headers=auth_headers('u1')).get_json()
    assert again['message'] == 'Your code is still valid'
    assert again['redemptionCode'] == body['redemptionCode']


def test_two_staff_devices_scan_the_same_code(client, make_deal):
    deal_id = make_deal(discount_type='percentage', discount_value=20)
    payload = _generate(client, deal_id).get_json()['qrPayload']

    first = _verify(client, deal_id, payload, sid='scanner-a')
    assert first.status_code == 200
    body = first.get_json()
    assert body['success'] is True
    assert body['deal'] == {
        'id': deal_id, 'title': 'Two for one cocktails',
        'discount_type': 'percentage', 'discount_value': 20.0,
    }
    assert body['user'] == {'id': 'u1'}
    assert body['redemption']['redeemed_at'].endswith('Z')

    second = _verify(client, deal_id, payload, sid='scanner-b')
    assert second.status_code == 200
    assert second.get_json() == {'success': False, 'error': 'already redeemed', 'kind': 'already_redeemed'}

    db.session.expire_all()
    assert db.session.get(Deal, deal_id).redemption_count == 1
    sessions = [a.scanner_session_id for a in ScanAttempt.query.order_by(ScanAttempt.id)]
    assert sessions == ['scanner-a', 'scanner-b']


def test_expired_code_then_regenerate(client, make_deal):
    deal_id = make_deal()
    code = _generate(client, deal_id).get_json()['redemptionCode']
    db.session.execute(
        update(RedemptionClaim)
        .where(RedemptionClaim.token == code)
        .values(expires_at=utcnow() - timedelta(seconds=1))
    )
    db.session.commit()

    rv = _verify(client, deal_id, code)
    assert rv.get_json() == {'success': False, 'error': 'code expired', 'kind': 'expired'}

    fresh = _generate(client, deal_id).get_json()['redemptionCode']
    assert fresh != code
    assert _verify(client, deal_id, fresh).get_json()['success'] is True


def test_invalid_code_response(client, make_deal):
    deal_id = make_deal()
    rv = _verify(client, deal_id, 'buzz://redeem/x/not-a-real-token')
    assert rv.status_code == 200
    assert rv.get_json() == {'success': False, 'error': 'invalid code', 'kind': 'invalid_code'}


def test_verify_request_checks(client, make_deal):
    deal_id = make_deal()
    code = _generate(client, deal_id).get_json()['redemptionCode']

    missing = client.post(f'/api/deals/{deal_id}/verify', json={}, headers=staff_headers())
    assert missing.status_code == 400
    assert missing.get_json()['kind'] == 'invalid_request'

    wrong_venue = _verify(client, deal_id, code, venue_id='venue-2')
    assert wrong_venue.status_code == 403
    assert wrong_venue.get_json()['error'] == 'This deal is for a different venue'

    as_user = client.post(f'/api/deals/{deal_id}/verify', json={'redemption_code': code},
                          headers=auth_headers('u2'))
    assert as_user.status_code == 403

    assert _verify(client, 'missing', code).status_code == 404

    # none of the refused requests touched the claim
    admin = auth_headers('root', role='admin', sid='admin-console')
    rv = client.post(f'/api/deals/{deal_id}/verify', json={'redemption_code': code}, headers=admin)
    assert rv.get_json()['success'] is True


def test_my_redemptions_lists_consumed_claims(client, make_deal):
    deal_id = make_deal()
    other = make_deal()
    code = _generate(client, deal_id).get_json()['redemptionCode']
    _generate(client, other)
    _verify(client, deal_id, code)

    rv = client.get('/api/me/redemptions', headers=auth_headers('u1'))
    assert rv.status_code == 200
    listed = rv.get_json()['redemptions']
    assert [r['deal_id'] for r in listed] == [deal_id]
    assert listed[0]['status'] == 'consumed'

    assert client.get('/api/me/redemptions', headers=auth_headers('u2')).get_json() == {'redemptions': []}


def test_storage_failure_is_503(client, make_deal, monkeypatch):
    from sqlalchemy.exc import OperationalError
    from dealqr.services import issuer

    def locked(*a, **kw):
        raise OperationalError('UPDATE', {}, Exception('database is locked'))

    monkeypatch.setattr(issuer, '_issue', locked)
    rv = _generate(client, make_deal())
    assert rv.status_code == 503
    assert rv.get_json()['kind'] == 'unavailable'


def test_admin_requires_key(client):
    assert client.get('/admin/ping').status_code == 401
    assert client.get('/admin/ping', headers={'X-Admin-Key': 'wrong'}).status_code == 401
    assert client.get('/admin/ping', headers={'X-Admin-Key': ADMIN_KEY}).get_json() == {'admin': 'ok'}


def test_admin_upsert_deal(client):
    now = utcnow()
    headers = {'X-Admin-Key': ADMIN_KEY}
    body = {
        'venue_id': 'venue-9',
        'title': 'Half price wings',
        'discount_type': 'percentage',
        'discount_value': 50,
        'start_time': to_utc_z(now - timedelta(hours=1)),
        'end_time': to_utc_z(now + timedelta(hours=3)),
        'max_redemptions': 25,
    }
    rv = client.put('/admin/deals/wings', json=body, headers=headers)
    assert rv.status_code == 200
    deal = rv.get_json()['deal']
    assert deal['venue_id'] == 'venue-9'
    assert deal['redemption_count'] == 0
    assert deal['max_redemptions'] == 25

    rv = client.put('/admin/deals/wings', json={'is_active': False}, headers=headers)
    assert rv.get_json()['deal']['is_active'] is False
    assert _generate(client, 'wings').get_json()['kind'] == 'deal_not_live'

    bad = client.put('/admin/deals/new', json={'venue_id': 'v'}, headers=headers)
    assert bad.status_code == 400
    assert Deal.query.filter_by(id='new').first() is None

    backwards = dict(body, start_time=body['end_time'], end_time=body['start_time'])
    assert client.put('/admin/deals/other', json=backwards, headers=headers).status_code == 400


def test_admin_scan_attempts_show_raw_outcomes(client, make_deal):
    from dealqr.services import tokens

    deal_id = make_deal()
    code = _generate(client, deal_id).get_json()['redemptionCode']
    _verify(client, deal_id, code, sid='scanner-a')
    _verify(client, deal_id, tokens.make_token(deal_id), sid='scanner-a')
    _verify(client, deal_id, 'garbage', sid='scanner-b')

    headers = {'X-Admin-Key': ADMIN_KEY}
    assert client.get('/admin/scan-attempts').status_code == 401

    rows = client.get('/admin/scan-attempts', headers=headers).get_json()['scan_attempts']
    assert [r['outcome'] for r in rows] == ['forged', 'not_found', 'granted']

    by_session = client.get('/admin/scan-attempts?scanner_session_id=scanner-b', headers=headers)
    assert [r['outcome'] for r in by_session.get_json()['scan_attempts']] == ['forged']

    limited = client.get('/admin/scan-attempts?limit=1', headers=headers).get_json()['scan_attempts']
    assert len(limited) == 1
    assert client.get('/admin/scan-attempts?limit=x', headers=headers).status_code == 400


def test_issuance_inlines_the_qr_image(client, make_deal):
    deal_id = make_deal()
    for path in ('generate-qr', 'redeem'):
        body = client.post(f'/api/deals/{deal_id}/{path}', headers=auth_headers('u1')).get_json()
        prefix = 'data:image/png;base64,'
        assert body['qrCode'].startswith(prefix)
        assert base64.b64decode(body['qrCode'][len(prefix):]).startswith(b'\x89PNG')
        assert body['deal']['venue_id'] == 'venue-1'


def test_verify_accepts_dashboard_field_names(client, make_deal):
    deal_id = make_deal()
    code = _generate(client, deal_id).get_json()['redemptionCode']
    rv = client.post(f'/api/deals/{deal_id}/verify', json={'redemptionCode': code, 'userId': 'u1'},
                     headers=staff_headers())
    assert rv.status_code == 200
    assert rv.get_json()['success'] is True


def test_verify_denies_a_deactivated_deal(client, make_deal):
    deal_id = make_deal()
    code = _generate(client, deal_id).get_json()['redemptionCode']
    client.put(f'/admin/deals/{deal_id}', json={'is_active': False}, headers={'X-Admin-Key': ADMIN_KEY})

    rv = _verify(client, deal_id, code)
    assert rv.status_code == 200
    assert rv.get_json() == {'success': False, 'error': 'Deal is not currently active', 'kind': 'deal_not_live'}


def test_admin_upsert_rejects_wrong_field_types(client, make_deal):
    deal_id = make_deal()
    headers = {'X-Admin-Key': ADMIN_KEY}
    for body in (
        {'is_active': 'false'},
        {'max_redemptions': '10'},
        {'max_redemptions': -1},
        {'max_redemptions': True},
        {'discount_value': 'lots'},
        {'title': 7},
    ):
        rv = client.put(f'/admin/deals/{deal_id}', json=body, headers=headers)
        assert rv.status_code == 400, body
        assert rv.get_json()['kind'] == 'invalid_request'

    db.session.expire_all()
    deal = db.session.get(Deal, deal_id)
    assert deal.is_active is True
    assert deal.max_redemptions is None

    ok = client.put(f'/admin/deals/{deal_id}', json={'max_redemptions': None, 'discount_value': 12.5},
                    headers=headers)
    assert ok.get_json()['deal']['discount_value'] == 12.5
