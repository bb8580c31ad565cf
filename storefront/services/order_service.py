"""Order state machine.

Every status change is a single ``UPDATE ... WHERE status IN (:expected)``.
A duplicate webhook or a racing admin action therefore finds zero matching
rows and cannot apply a second, conflicting transition.
"""
import logging
from typing import Iterable, Optional, Union

from sqlalchemy import update
from sqlalchemy.orm import Session

from storefront.database import utcnow
from storefront.exceptions import ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from storefront.models import (
    FulfillmentKind, InventoryItem, DownloadGrant, Order, OrderItem, OrderStatus, AuditAction
)
from storefront.services import catalog_service
from storefront.services.audit_service import log_action

logger = logging.getLogger(__name__)

S = OrderStatus

# Allowed transitions; anything else is rejected before touching the database
TRANSITIONS = {
    S.CART.value: {S.PENDING.value},
    S.PENDING.value: {S.PROCESSING.value, S.CANCELLED.value},
    S.PROCESSING.value: {S.COMPLETED.value, S.REFUNDED.value},
    S.COMPLETED.value: {S.REFUNDED.value},
    S.CANCELLED.value: set(),
    S.REFUNDED.value: set(),
}


def get_order(session: Session, order_id: int) -> Order:
    order = session.get(Order, order_id)
    if not order or order.is_cart:
        raise NotFoundError(f'Order {order_id} not found.', {'order_id': order_id})
    return order


def get_order_for_user(session: Session, order_id: int, user, guest_order_ids=frozenset()) -> Order:
    """
    Owner or admin access to an order.

    Orders placed without an account are reachable only through
    ``guest_order_ids``, the ids remembered in the placing browser's session.
    """
    order = get_order(session, order_id)
    if user is not None and (user.is_admin or order.user_id == user.id):
        return order
    if order.user_id is None and order.id in guest_order_ids:
        return order
    raise ForbiddenError('You do not have access to this order.')


def list_for_user(session: Session, user_id: int):
    return session.query(Order).filter(
        Order.user_id == user_id,
        Order.status != S.CART.value
    ).order_by(Order.created_at.desc(), Order.id.desc()).all()


def transition(
    session: Session,
    order_id: int,
    from_status: Union[str, Iterable[str]],
    to_status: str,
    **values
) -> Order:
    """
    Compare-and-set the order status.

    Args:
        from_status: Expected current status (or several)
        to_status: Target status
        values: Extra columns written in the same UPDATE

    Raises:
        InvalidStateError: the transition is not allowed, or the order is no
            longer in an expected status
    """
    expected = [from_status] if isinstance(from_status, str) else list(from_status)
    for status in expected:
        if to_status not in TRANSITIONS.get(status, set()):
            raise InvalidStateError(f'Transition {status} -> {to_status} is not allowed.')

    # Pending ORM changes must reach the database before the conditional UPDATE
    session.flush()

    values['status'] = to_status
    values['updated_at'] = utcnow()
    result = session.execute(
        update(Order)
        .where(Order.id == order_id, Order.status.in_(expected))
        .values(**values)
        .execution_options(synchronize_session=False)
    )

    order = session.get(Order, order_id)
    if order is None:
        raise NotFoundError(f'Order {order_id} not found.', {'order_id': order_id})
    session.refresh(order)

    if result.rowcount != 1:
        raise InvalidStateError(
            f'Order {order_id} is {order.status}; expected {" or ".join(expected)}.',
            {'order_id': order_id, 'status': order.status}
        )

    logger.info(f"[ORDER] Order {order_id}: {'/'.join(expected)} -> {to_status}")
    return order


def create_direct_order(session: Session, product_id: int, quantity: int,
                        email: Optional[str] = None, user=None) -> Order:
    """
    Create a pending order for a single product, bypassing the cart.

    Raises:
        ValidationError: inactive product, bad quantity, missing email
        InsufficientStockError: not enough stock
    """
    if not isinstance(quantity, int) or isinstance(quantity, bool):
        raise ValidationError('Quantity must be an integer.')

    product = catalog_service.get_active_product(session, product_id)
    catalog_service.validate_quantity(session, product, quantity)

    customer_email = email or (user.email if user else None)
    if not customer_email:
        raise ValidationError('Email is required for guest orders.')

    now = utcnow()
    total = product.price * quantity
    order = Order(
        user_id=user.id if user else None,
        customer_email=customer_email,
        status=S.PENDING.value,
        subtotal=total,
        discount_amount=0,
        total_amount=total,
        currency=product.currency,
        checked_out_at=now,
    )
    order.items.append(OrderItem(product=product, quantity=quantity, unit_price=product.price))
    session.add(order)
    session.flush()

    logger.info(f"[ORDER] Direct order {order.id} created: product {product_id} x{quantity}")
    log_action(session, AuditAction.ORDER_CHECKED_OUT, 'order', order.id,
               {'total_amount': total, 'direct': True})
    return order


def mark_paid(session: Session, order_id: int, payment_reference: Optional[str] = None) -> Order:
    """pending -> processing. Only pending orders may be marked paid."""
    now = utcnow()
    values = {'paid_at': now}
    if payment_reference:
        values['payment_reference'] = payment_reference
    order = transition(session, order_id, S.PENDING.value, S.PROCESSING.value, **values)
    log_action(session, AuditAction.ORDER_PAID, 'order', order_id, {'payment_reference': payment_reference})
    return order


def complete(session: Session, order_id: int, fulfillment_result: str, fulfillment_kind: str) -> Order:
    """processing -> completed with the delivery attached."""
    order = transition(
        session, order_id, S.PROCESSING.value, S.COMPLETED.value,
        fulfillment_result=fulfillment_result,
        fulfillment_kind=fulfillment_kind,
        fulfillment_error=None,
        completed_at=utcnow(),
    )
    log_action(session, AuditAction.ORDER_FULFILLED, 'order', order_id, {'kind': fulfillment_kind})
    return order


def cancel(session: Session, order_id: int, reason: Optional[str] = None) -> Order:
    """pending -> cancelled. Paid orders are refunded instead."""
    order = transition(session, order_id, S.PENDING.value, S.CANCELLED.value)
    log_action(session, AuditAction.ORDER_STATUS_CHANGED, 'order', order_id,
               {'from': S.PENDING.value, 'to': S.CANCELLED.value, 'reason': reason})
    return order


def mark_refunded(session: Session, order_id: int) -> Order:
    return transition(
        session, order_id, (S.COMPLETED.value, S.PROCESSING.value), S.REFUNDED.value,
        refunded_at=utcnow()
    )


def fulfillment_view(session: Session, order: Order) -> Optional[dict]:
    """
    Tagged view of what was delivered, built from allocated items and grants
    rather than from the stored string.
    """
    if order.fulfillment_kind is None:
        return None

    view = {'kind': order.fulfillment_kind}
    if order.fulfillment_kind in (FulfillmentKind.LICENSE_CODES.value, FulfillmentKind.MIXED.value):
        items = session.query(InventoryItem).filter(
            InventoryItem.order_id == order.id
        ).order_by(InventoryItem.id).all()
        view['items'] = [
            {'product_id': item.product_id, 'code': item.code, 'password': item.password}
            for item in items
        ]
    if order.fulfillment_kind in (FulfillmentKind.DOWNLOAD.value, FulfillmentKind.MIXED.value):
        grants = session.query(DownloadGrant).filter(
            DownloadGrant.order_id == order.id
        ).order_by(DownloadGrant.id).all()
        view['grants'] = [grant.to_dict() for grant in grants]
    return view


def serialize_order(session: Session, order: Order, include_fulfillment: bool = True) -> dict:
    data = {
        'id': order.id,
        'status': order.status,
        'user_id': order.user_id,
        'customer_email': order.customer_email,
        'items': [
            {
                'id': item.id,
                'product_id': item.product_id,
                'product_name': item.product.name if item.product else None,
                'quantity': item.quantity,
                'unit_price': item.unit_price,
                'line_total': item.line_total,
            }
            for item in order.items
        ],
        'subtotal': order.subtotal,
        'discount_amount': order.discount_amount,
        'total_amount': order.total_amount,
        'currency': order.currency,
        'coupon_code': order.coupon_code,
        'payment_reference': order.payment_reference,
        'fulfillment_error': order.fulfillment_error,
        'created_at': order.created_at.isoformat() if order.created_at else None,
        'paid_at': order.paid_at.isoformat() if order.paid_at else None,
        'completed_at': order.completed_at.isoformat() if order.completed_at else None,
    }
    if include_fulfillment and order.status in (S.COMPLETED.value, S.PROCESSING.value):
        data['fulfillment_result'] = order.fulfillment_result
        data['fulfillment'] = fulfillment_view(session, order)
    return data
