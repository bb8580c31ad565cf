"""
Admin blueprint - order operations and license inventory.

All routes require the ``admin`` role.
"""
import logging

from flask import Blueprint, jsonify, request
from sqlalchemy import func

from storefront.blueprints.orders import _refund
from storefront.database import get_session
from storefront.exceptions import StorefrontError, ValidationError
from storefront.middleware import require_admin
from storefront.models import InventoryItem, Product, ProductType, WebhookEvent
from storefront.services import catalog_service, fulfillment_service, inventory_service, order_service
from storefront.services.audit_service import get_audit_logs
from storefront.utils.request_helpers import get_int, get_json_body

logger = logging.getLogger(__name__)

admin_bp = Blueprint('admin', __name__, url_prefix='/admin')


@admin_bp.route('/orders/<int:order_id>', methods=['GET'])
@require_admin
def order_detail(order_id):
    """Order with payments, refunds, webhook deliveries and its audit trail."""
    db_session = get_session()
    order = order_service.get_order(db_session, order_id)
    logs = get_audit_logs(db_session, 'order', order_id, limit=50)
    correlation_ids = [payment.external_transaction_id for payment in order.payments if payment.external_transaction_id]
    events = db_session.query(WebhookEvent).filter(
        WebhookEvent.correlation_id.in_(correlation_ids)
    ).order_by(WebhookEvent.id).all() if correlation_ids else []

    return jsonify({
        'status': 'ok',
        'order': order_service.serialize_order(db_session, order),
        'payments': [payment.to_dict() for payment in order.payments],
        'refunds': [refund.to_dict() for payment in order.payments for refund in payment.refunds],
        'webhook_events': [event.to_dict() for event in events],
        'audit': [
            {
                'action': log.action.value,
                'user_id': log.user_id,
                'details': log.details,
                'created_at': log.created_at.isoformat() if log.created_at else None,
            }
            for log in logs
        ],
    })


@admin_bp.route('/orders/<int:order_id>/refund', methods=['POST'])
@require_admin
def refund_order(order_id):
    return _refund(order_id)


@admin_bp.route('/orders/<int:order_id>/fulfill', methods=['POST'])
@require_admin
def retry_fulfillment(order_id):
    """Retry fulfillment of a processing order after stock was replenished."""
    db_session = get_session()
    try:
        outcome = fulfillment_service.fulfill_order(db_session, order_id)
        db_session.commit()
    except StorefrontError:
        db_session.rollback()
        raise

    outcome.send_confirmation()
    outcome.raise_for_failure({'order_id': order_id, 'order_status': outcome.order.status})
    return jsonify({'status': 'ok', 'order': order_service.serialize_order(db_session, outcome.order)})


@admin_bp.route('/orders/<int:order_id>/cancel', methods=['POST'])
@require_admin
def cancel_order(order_id):
    """Cancel a pending (unpaid) order."""
    db_session = get_session()
    reason = get_json_body().get('reason')
    try:
        order = order_service.cancel(db_session, order_id, reason)
        db_session.commit()
    except StorefrontError:
        db_session.rollback()
        raise
    return jsonify({'status': 'ok', 'order': order_service.serialize_order(db_session, order, include_fulfillment=False)})


@admin_bp.route('/inventory', methods=['GET'])
@require_admin
def inventory_counts():
    """Available/allocated code counts per license product (?productId= to filter)."""
    db_session = get_session()
    product_id = request.args.get('productId', type=int)

    query = db_session.query(
        Product.id,
        Product.name,
        func.count(InventoryItem.id),
        func.count(InventoryItem.order_id),
    ).outerjoin(InventoryItem, InventoryItem.product_id == Product.id).filter(
        Product.product_type == ProductType.LICENSE_CODE.value
    )
    if product_id is not None:
        query = query.filter(Product.id == product_id)
    rows = query.group_by(Product.id, Product.name).order_by(Product.id).all()

    return jsonify({
        'status': 'ok',
        'inventory': [
            {
                'product_id': pid,
                'product_name': name,
                'total': total,
                'allocated': allocated,
                'available': total - allocated,
            }
            for pid, name, total, allocated in rows
        ],
    })


@admin_bp.route('/inventory', methods=['POST'])
@require_admin
def add_inventory():
    """
    Bulk add codes: {productId, items: ["code" | "code:password" | {code, password}]}.
    """
    db_session = get_session()
    data = get_json_body()
    product_id = get_int(data, 'productId', 'product_id')
    raw_items = data.get('items')
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError('items must be a non-empty list.')

    entries = []
    for raw in raw_items:
        if isinstance(raw, dict):
            code = str(raw.get('code') or '').strip()
            if not code:
                raise ValidationError('Every item needs a code.')
            entries.append((code, raw.get('password') or None))
        elif isinstance(raw, str):
            parsed = inventory_service.parse_inventory_line(raw)
            if parsed:
                entries.append(parsed)
        else:
            raise ValidationError('Items must be strings or objects.')

    try:
        added = inventory_service.add_items(db_session, product_id, entries)
        db_session.commit()
    except StorefrontError:
        db_session.rollback()
        raise

    catalog_service.invalidate_product(product_id)
    return jsonify({
        'status': 'ok',
        'added': added,
        'skipped': len(entries) - added,
        'available': inventory_service.count_available(db_session, product_id),
    }), 201


@admin_bp.route('/inventory/<int:item_id>/release', methods=['POST'])
@require_admin
def release_inventory(item_id):
    """Return an allocated code to the pool (never for completed orders)."""
    db_session = get_session()
    try:
        item = inventory_service.release_item(db_session, item_id)
        db_session.commit()
    except StorefrontError:
        db_session.rollback()
        raise

    catalog_service.invalidate_product(item.product_id)
    return jsonify({'status': 'ok', 'item': {'id': item.id, 'product_id': item.product_id, 'order_id': item.order_id}})
