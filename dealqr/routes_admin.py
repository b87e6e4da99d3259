from flask import Blueprint, jsonify, request
from sqlalchemy import select

from .errors import InvalidRequest
from .models import db, ScanAttempt
from .services import registry
from .services.auth import require_admin_key

bp = Blueprint('admin', __name__)


@bp.get('/ping')
@require_admin_key
def ping():
    return jsonify({'admin': 'ok'})


@bp.put('/deals/<deal_id>')
@require_admin_key
def upsert_deal(deal_id: str):
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidRequest('JSON body required')
    deal = registry.upsert_deal(deal_id, data)
    return jsonify({'deal': deal.to_dict()})


@bp.get('/scan-attempts')
@require_admin_key
def scan_attempts():
    # unmasked outcomes: forged and not_found are told apart here
    try:
        limit = min(int(request.args.get('limit', 100)), 500)
    except ValueError:
        raise InvalidRequest('limit must be an integer') from None
    q = select(ScanAttempt).order_by(ScanAttempt.id.desc()).limit(limit)
    if request.args.get('scanner_session_id'):
        q = q.where(ScanAttempt.scanner_session_id == request.args['scanner_session_id'])
    if request.args.get('outcome'):
        q = q.where(ScanAttempt.outcome == request.args['outcome'])
    if request.args.get('flagged'):
        q = q.where(ScanAttempt.velocity_flagged.is_(True))
    rows = db.session.execute(q).scalars().all()
    return jsonify({'scan_attempts': [a.to_dict() for a in rows]})
