"""Health checks, the CSRF token and the public product view."""
import logging

from flask import Blueprint, jsonify
from flask_wtf.csrf import generate_csrf
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from storefront.database import get_session
from storefront.services import catalog_service
from storefront.services.cache_service import get_cache

logger = logging.getLogger(__name__)

main_bp = Blueprint('main', __name__)


@main_bp.route('/health')
def health():
    """Liveness plus a database round trip. 500 when the database is unreachable."""
    try:
        get_session().execute(text('SELECT 1')).scalar_one()
    except SQLAlchemyError as e:
        logger.error(f"[HEALTH] Database check failed: {e}")
        return jsonify({'status': 'unhealthy', 'database': 'disconnected', 'error': str(e)}), 500
    return jsonify({'status': 'healthy', 'database': 'connected'}), 200


@main_bp.route('/health/cache')
def health_cache():
    # Always 200: without Redis the product view is served from the database
    cache = get_cache()
    if not cache.is_available():
        return jsonify({'status': 'degraded', 'cache': 'unavailable'}), 200

    cache.set('health', 'ping', {'ok': True}, ttl=10)
    if cache.get('health', 'ping') == {'ok': True}:
        return jsonify({'status': 'ok', 'cache': 'connected'}), 200
    return jsonify({'status': 'degraded', 'cache': 'error'}), 200


@main_bp.route('/csrf-token')
def csrf_token():
    """Token for the X-CSRFToken header on state-changing requests."""
    return jsonify({'csrf_token': generate_csrf()})


@main_bp.route('/products/<int:product_id>')
def product_detail(product_id):
    session = get_session()
    return jsonify({'status': 'ok', 'product': catalog_service.get_product_snapshot(session, product_id)})
