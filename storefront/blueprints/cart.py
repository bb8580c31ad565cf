"""Cart blueprint - guest and customer carts, coupons and checkout."""
import logging

from flask import Blueprint, current_app, g, jsonify, request

from storefront.blueprints.metrics import orders_checked_out_total
from storefront.database import get_session
from storefront.exceptions import StorefrontError, ValidationError
from storefront.middleware import remember_guest_order
from storefront.services import cart_service
from storefront.utils.request_helpers import get_int, get_json_body

logger = logging.getLogger(__name__)

cart_bp = Blueprint('cart', __name__, url_prefix='/cart')


def _user_id():
    user = g.get('user')
    return user.id if user else None


def _cart_token():
    return request.cookies.get(current_app.config['CART_COOKIE_NAME'])


def _respond(payload, status_code=200, token=None, clear_token=False):
    """JSON response that refreshes (or clears) the guest cart cookie."""
    response = jsonify(payload)
    response.status_code = status_code
    cookie_name = current_app.config['CART_COOKIE_NAME']
    if clear_token:
        response.set_cookie(cookie_name, '', max_age=0, httponly=True, samesite='Lax',
                            secure=current_app.config.get('CART_COOKIE_SECURE', False))
    elif token:
        response.set_cookie(
            cookie_name,
            token,
            max_age=current_app.config.get('CART_TOKEN_TTL_DAYS', 30) * 86400,
            httponly=True,
            samesite='Lax',
            secure=current_app.config.get('CART_COOKIE_SECURE', False),
        )
    return response


@cart_bp.route('', methods=['GET'])
def view_cart():
    """Current cart with recomputed totals."""
    db_session = get_session()
    try:
        cart, token = cart_service.get_or_create_cart(db_session, _user_id(), _cart_token())
        cart_service.recalculate(db_session, cart, _user_id())
        db_session.commit()
        return _respond({'status': 'ok', 'cart': cart_service.serialize_cart(cart)}, token=token)
    except StorefrontError:
        db_session.rollback()
        raise


@cart_bp.route('/items', methods=['POST'])
def add_item():
    """Add a product to the cart: {productId, quantity}."""
    db_session = get_session()
    data = get_json_body()
    product_id = get_int(data, 'productId', 'product_id')
    quantity = get_int(data, 'quantity', default=1)

    try:
        cart, token = cart_service.get_or_create_cart(db_session, _user_id(), _cart_token())
        cart_service.add_item(db_session, cart, product_id, quantity)
        db_session.commit()
        return _respond({'status': 'ok', 'cart': cart_service.serialize_cart(cart)}, 201, token=token)
    except StorefrontError:
        db_session.rollback()
        raise


@cart_bp.route('/items/<int:item_id>', methods=['PUT'])
def update_item(item_id):
    """Set a line's quantity; 0 removes the line."""
    db_session = get_session()
    quantity = get_int(get_json_body(), 'quantity')

    try:
        cart, token = cart_service.get_or_create_cart(db_session, _user_id(), _cart_token())
        cart_service.update_item(db_session, cart, item_id, quantity)
        db_session.commit()
        return _respond({'status': 'ok', 'cart': cart_service.serialize_cart(cart)}, token=token)
    except StorefrontError:
        db_session.rollback()
        raise


@cart_bp.route('/items/<int:item_id>', methods=['DELETE'])
def remove_item(item_id):
    db_session = get_session()
    try:
        cart, token = cart_service.get_or_create_cart(db_session, _user_id(), _cart_token())
        cart_service.remove_item(db_session, cart, item_id)
        db_session.commit()
        return _respond({'status': 'ok', 'cart': cart_service.serialize_cart(cart)}, token=token)
    except StorefrontError:
        db_session.rollback()
        raise


@cart_bp.route('/apply-coupon', methods=['POST'])
def apply_coupon():
    """Apply a coupon code: {code}. Returns the recomputed cart."""
    db_session = get_session()
    code = (get_json_body().get('code') or '').strip()
    if not code:
        raise ValidationError('Coupon code is required.')

    try:
        cart, token = cart_service.get_or_create_cart(db_session, _user_id(), _cart_token())
        cart_service.apply_coupon(db_session, cart, code, _user_id())
        db_session.commit()
        return _respond({'status': 'ok', 'cart': cart_service.serialize_cart(cart)}, token=token)
    except StorefrontError:
        db_session.rollback()
        raise


@cart_bp.route('/remove-coupon', methods=['DELETE'])
def remove_coupon():
    db_session = get_session()
    try:
        cart, token = cart_service.get_or_create_cart(db_session, _user_id(), _cart_token())
        cart_service.remove_coupon(db_session, cart)
        db_session.commit()
        return _respond({'status': 'ok', 'cart': cart_service.serialize_cart(cart)}, token=token)
    except StorefrontError:
        db_session.rollback()
        raise


@cart_bp.route('/checkout', methods=['POST'])
def checkout():
    """
    Freeze the cart into a pending order: {email?}.

    Returns the order id; the guest cart cookie is cleared.
    """
    db_session = get_session()
    email = get_json_body().get('email')

    try:
        cart, _ = cart_service.get_or_create_cart(db_session, _user_id(), _cart_token())
        order = cart_service.checkout(db_session, cart, email=email, user=g.get('user'))
        db_session.commit()
    except StorefrontError as e:
        db_session.rollback()
        logger.info(f"[CART] Checkout rejected: {e.code} {e.message}")
        raise

    if order.user_id is None:
        remember_guest_order(order.id)
    orders_checked_out_total.labels(source='cart').inc()
    return _respond({
        'status': 'ok',
        'order_id': order.id,
        'total_amount': order.total_amount,
        'currency': order.currency,
    }, 201, clear_token=True)
