"""Cart aggregate - persistent cart operations for guests and customers.

A cart is an ``Order`` in status ``cart``. Guests are identified by a signed
JWT (``sub`` = cart id) kept in a cookie. Totals are always recomputed in
full from the line items and the coupon, never patched incrementally.
"""
import logging
import re
from datetime import timedelta
from typing import Optional, Tuple

import jwt
from flask import current_app
from sqlalchemy.orm import Session

from storefront.database import utcnow
from storefront.exceptions import (
    CouponError, InsufficientStockError, InvalidStateError, NotFoundError, ValidationError
)
from storefront.models import AuditAction, Coupon, Order, OrderItem, OrderStatus
from storefront.services import catalog_service, coupon_service, order_service
from storefront.services.audit_service import log_action

logger = logging.getLogger(__name__)

CART_TOKEN_TYPE = 'cart'
EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')


# Cart token

def issue_cart_token(cart_id: int) -> str:
    """Signed guest cart token, valid for CART_TOKEN_TTL_DAYS."""
    now = utcnow()
    payload = {
        'sub': str(cart_id),
        'typ': CART_TOKEN_TYPE,
        'iat': now,
        'exp': now + timedelta(days=current_app.config.get('CART_TOKEN_TTL_DAYS', 30)),
    }
    return jwt.encode(payload, current_app.config['CART_TOKEN_SECRET'], algorithm='HS256')


def read_cart_token(token: Optional[str]) -> Optional[int]:
    """Cart id from a token, or None when missing, expired or tampered with."""
    if not token:
        return None
    try:
        payload = jwt.decode(token, current_app.config['CART_TOKEN_SECRET'], algorithms=['HS256'])
    except jwt.ExpiredSignatureError:
        logger.info("[CART] Expired cart token")
        return None
    except jwt.InvalidTokenError as e:
        logger.warning(f"[CART] Invalid cart token: {e}")
        return None
    if payload.get('typ') != CART_TOKEN_TYPE:
        return None
    try:
        return int(payload['sub'])
    except (KeyError, TypeError, ValueError):
        return None


def get_cart_by_token(session: Session, token: Optional[str]) -> Optional[Order]:
    """Guest cart for a token, only while it still exists in status ``cart``."""
    cart_id = read_cart_token(token)
    if cart_id is None:
        return None
    cart = session.get(Order, cart_id)
    if cart is None or not cart.is_cart:
        return None
    return cart


def find_open_cart(session: Session, user_id: int) -> Optional[Order]:
    return session.query(Order).filter(
        Order.user_id == user_id,
        Order.status == OrderStatus.CART.value
    ).order_by(Order.id.desc()).first()


def get_or_create_cart(session: Session, user_id: Optional[int] = None,
                       token: Optional[str] = None) -> Tuple[Order, Optional[str]]:
    """
    Resolve the caller's cart, creating one on first touch.

    Returns:
        (cart, token) where token is a freshly issued guest token (sliding
        expiry) or None for authenticated users
    """
    if user_id is not None:
        cart = find_open_cart(session, user_id)
        if not cart:
            cart = Order(user_id=user_id, status=OrderStatus.CART.value,
                         currency=current_app.config.get('DEFAULT_CURRENCY', 'USD'))
            session.add(cart)
            session.flush()
            logger.info(f"[CART] Created cart {cart.id} for user {user_id}")
        return cart, None

    cart = get_cart_by_token(session, token)
    if cart is not None and cart.user_id is not None:
        # Token of a cart that now belongs to an account
        cart = None
    if cart is None:
        cart = Order(status=OrderStatus.CART.value,
                     currency=current_app.config.get('DEFAULT_CURRENCY', 'USD'))
        session.add(cart)
        session.flush()
        logger.info(f"[CART] Created guest cart {cart.id}")
    return cart, issue_cart_token(cart.id)


def _require_open(cart: Order) -> None:
    if not cart.is_cart:
        raise InvalidStateError(f'Order {cart.id} is no longer a cart.', {'status': cart.status})


def _find_item(cart: Order, item_id: int) -> OrderItem:
    for item in cart.items:
        if item.id == item_id:
            return item
    raise NotFoundError('Item is not in the cart.', {'item_id': item_id})


def _check_quantity_cap(session: Session, product, quantity: int) -> None:
    if product.max_quantity and quantity > product.max_quantity:
        raise ValidationError(
            f'Maximum quantity for "{product.name}" is {product.max_quantity}.',
            {'product_id': product.id, 'max_quantity': product.max_quantity}
        )
    available = catalog_service.available_stock(session, product)
    if available is not None and quantity > available:
        raise InsufficientStockError(product.name, quantity, available, {'product_id': product.id})


# Totals

def recalculate(session: Session, cart: Order, user_id: Optional[int] = None, strict: bool = False) -> Order:
    """
    Recompute subtotal, discount and total from the current line items.

    Unit prices are refreshed from the catalog while the order is a cart.
    An attached coupon that no longer validates is dropped, or raises when
    ``strict`` (checkout).
    """
    _require_open(cart)

    subtotal = 0
    for item in cart.items:
        item.unit_price = item.product.price
        subtotal += item.line_total

    discount = 0
    if cart.coupon_code:
        coupon = session.query(Coupon).filter(Coupon.code == cart.coupon_code).first()
        try:
            if coupon is None:
                raise CouponError(CouponError.INACTIVE, f'Coupon {cart.coupon_code} no longer exists.')
            coupon_service.validate(session, coupon, subtotal, user_id or cart.user_id,
                                    exclude_order_id=cart.id, currency=cart.currency)
            discount, _ = coupon_service.apply(subtotal, coupon)
        except CouponError as e:
            if strict:
                raise
            logger.info(f"[CART] Dropping coupon {cart.coupon_code} from cart {cart.id}: {e.reason}")
            cart.coupon_code = None
            discount = 0

    cart.subtotal = subtotal
    cart.discount_amount = discount
    cart.total_amount = subtotal - discount
    session.flush()
    return cart


# Line items

def add_item(session: Session, cart: Order, product_id: int, quantity: int) -> Order:
    """Add a product, merging into an existing line for the same product."""
    _require_open(cart)
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
        raise ValidationError('Quantity must be a positive integer.')

    product = catalog_service.get_active_product(session, product_id)
    if cart.items and product.currency != cart.currency:
        raise ValidationError(f'Cart currency is {cart.currency}; "{product.name}" is sold in {product.currency}.')

    existing = next((item for item in cart.items if item.product_id == product.id), None)
    new_quantity = quantity + (existing.quantity if existing else 0)
    _check_quantity_cap(session, product, new_quantity)

    if existing:
        existing.quantity = new_quantity
    else:
        if not cart.items:
            cart.currency = product.currency
        cart.items.append(OrderItem(product=product, quantity=quantity, unit_price=product.price))

    logger.info(f"[CART] Cart {cart.id}: product {product_id} -> qty {new_quantity}")
    return recalculate(session, cart)


def update_item(session: Session, cart: Order, item_id: int, quantity: int) -> Order:
    """Set a line's quantity; below 1 removes the line."""
    _require_open(cart)
    if not isinstance(quantity, int) or isinstance(quantity, bool):
        raise ValidationError('Quantity must be an integer.')

    item = _find_item(cart, item_id)
    if quantity < 1:
        cart.items.remove(item)
        return recalculate(session, cart)

    product = item.product
    if not product.active:
        raise ValidationError(f'Product "{product.name}" is not available.', {'product_id': product.id})
    _check_quantity_cap(session, product, quantity)
    item.quantity = quantity
    return recalculate(session, cart)


def remove_item(session: Session, cart: Order, item_id: int) -> Order:
    _require_open(cart)
    item = _find_item(cart, item_id)
    cart.items.remove(item)
    return recalculate(session, cart)


# Coupons

def apply_coupon(session: Session, cart: Order, code: str, user_id: Optional[int] = None) -> Order:
    """Validate a coupon against the current cart and attach it."""
    _require_open(cart)
    coupon = coupon_service.get_by_code(session, code)
    recalculate(session, cart, user_id)
    coupon_service.validate(session, coupon, cart.subtotal, user_id or cart.user_id,
                            exclude_order_id=cart.id, currency=cart.currency)
    cart.coupon_code = coupon.code
    return recalculate(session, cart, user_id, strict=True)


def remove_coupon(session: Session, cart: Order) -> Order:
    _require_open(cart)
    cart.coupon_code = None
    return recalculate(session, cart)


# Checkout

def checkout(session: Session, cart: Order, email: Optional[str] = None, user=None) -> Order:
    """
    Freeze the cart into a pending order.

    Every line is re-validated against the catalog (active, quantity bounds,
    stock) and the totals are recomputed one last time. The coupon usage
    increment and the status change happen in the caller's transaction, so
    either both are committed or neither is.

    Raises:
        ValidationError, InsufficientStockError, CouponError, InvalidStateError
    """
    _require_open(cart)
    if not cart.items:
        raise ValidationError('Cart is empty.')

    customer_email = (email or '').strip() or cart.customer_email or (user.email if user else None)
    if not customer_email:
        raise ValidationError('Email is required to check out as a guest.')
    if not EMAIL_PATTERN.match(customer_email):
        raise ValidationError('Email address is invalid.')

    for item in cart.items:
        product = item.product
        if not product.active:
            raise ValidationError(f'Product "{product.name}" is no longer available.', {'product_id': product.id})
        catalog_service.validate_quantity(session, product, item.quantity)

    user_id = user.id if user else None
    recalculate(session, cart, user_id, strict=True)

    if cart.coupon_code:
        coupon = coupon_service.get_by_code(session, cart.coupon_code)
        coupon_service.redeem(session, coupon)

    order = order_service.transition(
        session, cart.id, OrderStatus.CART.value, OrderStatus.PENDING.value,
        customer_email=customer_email,
        user_id=cart.user_id or user_id,
        checked_out_at=utcnow(),
    )

    logger.info(f"[CART] Cart {order.id} checked out: total {order.total_amount} {order.currency}")
    log_action(session, AuditAction.ORDER_CHECKED_OUT, 'order', order.id,
               {'total_amount': order.total_amount, 'coupon_code': order.coupon_code})
    return order


def merge_guest_cart(session: Session, token: Optional[str], user_id: int) -> Optional[Order]:
    """
    Fold a guest cart into the user's open cart on login.

    Quantities are summed per product and capped at what can be sold. The
    guest cart is deleted afterwards.
    """
    guest = get_cart_by_token(session, token)
    if guest is None or guest.user_id is not None:
        return None

    user_cart = find_open_cart(session, user_id)
    if user_cart is None:
        guest.user_id = user_id
        logger.info(f"[CART] Guest cart {guest.id} attached to user {user_id}")
        return recalculate(session, guest)

    for guest_item in list(guest.items):
        product = guest_item.product
        if not product.active:
            continue
        existing = next((item for item in user_cart.items if item.product_id == product.id), None)
        quantity = guest_item.quantity + (existing.quantity if existing else 0)
        available = catalog_service.available_stock(session, product)
        if available is not None:
            quantity = min(quantity, available)
        if product.max_quantity:
            quantity = min(quantity, product.max_quantity)
        if quantity < 1:
            continue
        if existing:
            existing.quantity = quantity
        elif not user_cart.items or product.currency == user_cart.currency:
            if not user_cart.items:
                user_cart.currency = product.currency
            user_cart.items.append(OrderItem(product=product, quantity=quantity, unit_price=product.price))

    if guest.coupon_code and not user_cart.coupon_code:
        user_cart.coupon_code = guest.coupon_code

    session.delete(guest)
    session.flush()
    logger.info(f"[CART] Guest cart {guest.id} merged into cart {user_cart.id} of user {user_id}")
    return recalculate(session, user_cart, user_id)


def serialize_cart(cart: Order) -> dict:
    return {
        'id': cart.id,
        'status': cart.status,
        'items': [
            {
                'id': item.id,
                'product_id': item.product_id,
                'product_name': item.product.name,
                'product_type': item.product.product_type,
                'quantity': item.quantity,
                'unit_price': item.unit_price,
                'line_total': item.line_total,
            }
            for item in cart.items
        ],
        'subtotal': cart.subtotal,
        'discount_amount': cart.discount_amount,
        'total_amount': cart.total_amount,
        'currency': cart.currency,
        'coupon_code': cart.coupon_code,
    }
