import base64
import io

from flask import Blueprint, g, jsonify, request, send_file

from .errors import DealNotFound, Forbidden, InvalidRequest
from .models import db
from .services import issuer, ledger, registry, verifier
from .services.auth import SCANNER_ROLES, require_credential
from .services.qr import make_qr_bytes
from .time_utils import to_utc_z

bp = Blueprint('api', __name__)


def _flag(value) -> bool:
    return str(value).lower() in ('1', 'true', 'yes')


def _code_body(issued):
    png = base64.b64encode(make_qr_bytes(issued.qr_payload)).decode()
    deal = issued.deal
    return {
        'qrPayload': issued.qr_payload,
        'redemptionCode': issued.token,
        'expiresAt': to_utc_z(issued.expires_at),
        'qrCode': f'data:image/png;base64,{png}',
        'deal': {'id': deal.id, 'title': deal.title, 'venue_id': deal.venue_id} if deal else None,
    }


@bp.post('/deals/<deal_id>/generate-qr')
@require_credential()
def generate_qr(deal_id: str):
    data = request.get_json(silent=True) or {}
    regenerate = _flag(data.get('regenerate', request.args.get('regenerate', '0')))
    issued = issuer.issue_or_regenerate(deal_id, g.credential.user_id, regenerate=regenerate)

    if 'image/png' in request.headers.get('Accept', ''):
        png = make_qr_bytes(issued.qr_payload)
        return send_file(
            io.BytesIO(png), mimetype='image/png', as_attachment=False,
            download_name=f"redeem_{deal_id}.png", etag=False, max_age=0,
        )
    return jsonify(_code_body(issued))


@bp.post('/deals/<deal_id>/redeem')
@require_credential()
def redeem(deal_id: str):
    issued = issuer.issue_or_regenerate(deal_id, g.credential.user_id)
    body = _code_body(issued)
    body['redemption'] = issued.claim.to_dict()
    body['message'] = 'Deal redeemed successfully!' if not issued.reused else 'Your code is still valid'
    return jsonify(body)


@bp.post('/deals/<deal_id>/verify')
@require_credential(*SCANNER_ROLES)
def verify(deal_id: str):
    data = request.get_json(silent=True) or {}
    # the venue dashboard posts {redemptionCode, userId}
    code = data.get('redemption_code') or data.get('redemptionCode')
    if not isinstance(code, str) or not code.strip():
        raise InvalidRequest('redemption_code is required')

    deal = registry.get_deal(deal_id)
    if deal is None:
        raise DealNotFound()
    cred = g.credential
    if not cred.is_admin and cred.venue_id != deal.venue_id:
        raise Forbidden('This deal is for a different venue')
    db.session.commit()

    result = verifier.verify(code.strip(), cred.session_id, deal_id=deal_id, ip=request.remote_addr)
    if not result.success:
        return jsonify({'success': False, 'error': result.error, 'kind': result.kind})

    deal = result.deal
    return jsonify({
        'success': True,
        'deal': {
            'id': deal.id,
            'title': deal.title,
            'discount_type': deal.discount_type,
            'discount_value': float(deal.discount_value) if deal.discount_value is not None else None,
        },
        'user': {'id': result.user_id},
        'redemption': {'id': str(result.claim_id), 'redeemed_at': to_utc_z(result.consumed_at)},
    })


@bp.get('/me/redemptions')
@require_credential()
def my_redemptions():
    claims = ledger.list_for_user(g.credential.user_id)
    return jsonify({'redemptions': [c.to_dict() for c in claims]})
