"""Downloads blueprint - redeem download grants."""
import logging

from flask import Blueprint, g, jsonify, redirect

from storefront.database import get_session
from storefront.exceptions import StorefrontError
from storefront.middleware import require_login
from storefront.services import download_service

logger = logging.getLogger(__name__)

downloads_bp = Blueprint('downloads', __name__, url_prefix='/downloads')


@downloads_bp.route('/mine', methods=['GET'])
@require_login
def my_downloads():
    db_session = get_session()
    grants = download_service.list_for_user(db_session, g.user.id)
    return jsonify({'status': 'ok', 'downloads': [grant.to_dict() for grant in grants]})


@downloads_bp.route('/<token>', methods=['GET'])
def redeem(token):
    """Count one download and redirect to a short-lived object-store URL."""
    db_session = get_session()
    try:
        url = download_service.redeem(db_session, token)
        db_session.commit()
    except StorefrontError:
        db_session.rollback()
        raise
    return redirect(url, code=302)
