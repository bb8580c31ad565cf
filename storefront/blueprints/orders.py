"""Orders blueprint - direct orders, order reads, administrative pay and refund."""
import logging

from flask import Blueprint, g, jsonify, request

from storefront.blueprints.metrics import orders_checked_out_total
from storefront.database import get_session
from storefront.exceptions import GatewayError, InvalidStateError, StorefrontError
from storefront.middleware import guest_order_ids, remember_guest_order, require_admin, require_login
from storefront.models import OrderStatus
from storefront.services import fulfillment_service, order_service, payment_service, refund_service
from storefront.utils.request_helpers import get_int, get_json_body

logger = logging.getLogger(__name__)

orders_bp = Blueprint('orders', __name__, url_prefix='/orders')


@orders_bp.route('', methods=['POST'])
def create_order():
    """Pending order for a single product: {productId, quantity, email?}."""
    db_session = get_session()
    data = get_json_body()
    product_id = get_int(data, 'productId', 'product_id')
    quantity = get_int(data, 'quantity', default=1)

    try:
        order = order_service.create_direct_order(
            db_session, product_id, quantity, email=data.get('email'), user=g.get('user')
        )
        db_session.commit()
    except StorefrontError:
        db_session.rollback()
        raise

    if order.user_id is None:
        remember_guest_order(order.id)
    orders_checked_out_total.labels(source='direct').inc()
    return jsonify({'status': 'ok', 'order': order_service.serialize_order(db_session, order)}), 201


@orders_bp.route('/mine', methods=['GET'])
@require_login
def my_orders():
    db_session = get_session()
    orders = order_service.list_for_user(db_session, g.user.id)
    return jsonify({
        'status': 'ok',
        'orders': [order_service.serialize_order(db_session, order, include_fulfillment=False) for order in orders],
    })


@orders_bp.route('/<int:order_id>', methods=['GET'])
def get_order(order_id):
    db_session = get_session()
    order = order_service.get_order_for_user(db_session, order_id, g.get('user'), guest_order_ids())
    return jsonify({'status': 'ok', 'order': order_service.serialize_order(db_session, order)})


@orders_bp.route('/<int:order_id>/pay', methods=['POST'])
@require_admin
def pay_order(order_id):
    """
    Mark a pending order paid without a gateway webhook and fulfill it.

    If fulfillment cannot complete (e.g. stock ran out) the payment and the
    ``processing`` status are still committed and the fulfillment error is
    returned to the caller.
    """
    db_session = get_session()
    method = get_json_body().get('method')

    try:
        order = order_service.get_order(db_session, order_id)
        if order.status != OrderStatus.PENDING.value:
            raise InvalidStateError(
                f'Order {order_id} is {order.status}; only pending orders can be paid.',
                {'order_id': order_id, 'status': order.status}
            )
        payment = payment_service.record_manual_payment(db_session, order, method, request.remote_addr)
        order_service.mark_paid(db_session, order_id, payment.transaction_number)
        outcome = fulfillment_service.fulfill_order(db_session, order_id)
        db_session.commit()
    except StorefrontError:
        db_session.rollback()
        raise

    outcome.send_confirmation()
    outcome.raise_for_failure({'order_id': order_id, 'order_status': outcome.order.status})

    return jsonify({
        'status': 'ok',
        'order': order_service.serialize_order(db_session, outcome.order),
        'payment': payment.to_dict(),
    })


@orders_bp.route('/<int:order_id>/refund', methods=['POST'])
@require_admin
def refund_order(order_id):
    """Refund the order's payment in full: {reason?}."""
    return _refund(order_id)


def _refund(order_id):
    db_session = get_session()
    reason = get_json_body().get('reason')

    try:
        result = refund_service.refund_order(db_session, order_id, reason=reason, actor_id=g.user.id)
        db_session.commit()
    except GatewayError:
        # Keep the failed refund row for operators, then report the retryable error
        db_session.commit()
        raise
    except StorefrontError:
        db_session.rollback()
        raise

    return jsonify({
        'status': 'ok',
        'refund': result.refund.to_dict(),
        'order': order_service.serialize_order(db_session, result.order, include_fulfillment=False),
        'payment': result.payment.to_dict(),
    })
