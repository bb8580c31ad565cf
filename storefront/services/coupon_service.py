"""Coupon evaluator: validation, pricing and atomic redemption."""
import logging
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy import func, or_, update
from sqlalchemy.orm import Session

from storefront.database import utcnow
from storefront.exceptions import CouponError, NotFoundError, ValidationError
from storefront.models import COUPON_COUNTED_STATUSES, Coupon, DiscountType, Order, normalize_coupon_code

logger = logging.getLogger(__name__)


def get_by_code(session: Session, code: str) -> Coupon:
    normalized = normalize_coupon_code(code)
    if not normalized:
        raise ValidationError('Coupon code is required.')
    coupon = session.query(Coupon).filter(Coupon.code == normalized).first()
    if not coupon:
        raise NotFoundError(f'Coupon {normalized} not found.', {'code': normalized})
    return coupon


def count_user_redemptions(session: Session, coupon: Coupon, user_id: int, exclude_order_id: int = None) -> int:
    """Orders of ``user_id`` that used the coupon and still count against the limit."""
    query = session.query(func.count(Order.id)).filter(
        Order.user_id == user_id,
        Order.coupon_code == coupon.code,
        Order.status.in_(COUPON_COUNTED_STATUSES)
    )
    if exclude_order_id is not None:
        query = query.filter(Order.id != exclude_order_id)
    return query.scalar()


def validate(session: Session, coupon: Coupon, subtotal: int, user_id: Optional[int] = None,
             now: Optional[datetime] = None, exclude_order_id: Optional[int] = None,
             currency: Optional[str] = None) -> None:
    """
    Validate a coupon against a cart snapshot.

    Checks run in a fixed order so the reported reason is deterministic:
    inactive, validity window, global cap, per-user cap, minimum amount.
    A fixed coupon with a currency is inactive for carts in another currency.

    Raises:
        CouponError: with reason INACTIVE, EXPIRED, USAGE_EXCEEDED or BELOW_MINIMUM
    """
    now = now or utcnow()

    if not coupon.active:
        raise CouponError(CouponError.INACTIVE, f'Coupon {coupon.code} is not active.')
    if (coupon.discount_type == DiscountType.FIXED.value and coupon.currency and currency
            and coupon.currency.upper() != currency.upper()):
        raise CouponError(CouponError.INACTIVE,
                          f'Coupon {coupon.code} is only valid for {coupon.currency.upper()} orders.')

    if coupon.starts_at and now < coupon.starts_at:
        raise CouponError(CouponError.EXPIRED, f'Coupon {coupon.code} is not valid yet.')
    if coupon.expires_at and now > coupon.expires_at:
        raise CouponError(CouponError.EXPIRED, f'Coupon {coupon.code} has expired.')

    if coupon.max_uses is not None and coupon.used_count >= coupon.max_uses:
        raise CouponError(CouponError.USAGE_EXCEEDED, f'Coupon {coupon.code} has reached its usage limit.')

    if coupon.per_user_limit is not None and user_id is not None:
        used = count_user_redemptions(session, coupon, user_id, exclude_order_id)
        if used >= coupon.per_user_limit:
            raise CouponError(CouponError.USAGE_EXCEEDED,
                              f'You have already used coupon {coupon.code} the maximum number of times.')

    if coupon.min_order_amount is not None and subtotal < coupon.min_order_amount:
        raise CouponError(CouponError.BELOW_MINIMUM,
                          f'Coupon {coupon.code} requires a minimum order of {coupon.min_order_amount}.')


def apply(subtotal: int, coupon: Coupon) -> Tuple[int, int]:
    """
    Price a coupon against a subtotal.

    Percentage: ``floor(subtotal * amount / 100)``. Fixed: flat amount.
    The discount never exceeds the subtotal, so the total is never negative.

    Returns:
        (discount, total)
    """
    if subtotal <= 0:
        return 0, max(0, subtotal)

    if coupon.discount_type == DiscountType.PERCENTAGE.value:
        discount = (subtotal * coupon.amount) // 100
    elif coupon.discount_type == DiscountType.FIXED.value:
        discount = coupon.amount
    else:
        raise ValidationError(f'Unknown discount type: {coupon.discount_type}')

    discount = max(0, min(discount, subtotal))
    return discount, subtotal - discount


def redeem(session: Session, coupon: Coupon) -> None:
    """
    Increment usage in one conditional UPDATE so concurrent redemptions can
    never push ``used_count`` past ``max_uses``.

    Raises:
        CouponError(USAGE_EXCEEDED): the cap was reached
    """
    result = session.execute(
        update(Coupon)
        .where(
            Coupon.id == coupon.id,
            or_(Coupon.max_uses.is_(None), Coupon.used_count < Coupon.max_uses)
        )
        .values(used_count=Coupon.used_count + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.info(f"[COUPON] Redemption of {coupon.code} rejected: cap reached")
        raise CouponError(CouponError.USAGE_EXCEEDED, f'Coupon {coupon.code} has reached its usage limit.')
    session.expire(coupon, ['used_count'])


def create_coupon(session: Session, code: str, discount_type: str, amount: int, **options) -> Coupon:
    """Create a coupon. ``options`` maps to the remaining Coupon columns."""
    normalized = normalize_coupon_code(code)
    if not normalized:
        raise ValidationError('Coupon code is required.')
    if discount_type not in (DiscountType.PERCENTAGE.value, DiscountType.FIXED.value):
        raise ValidationError(f'Invalid discount type: {discount_type}')
    if amount <= 0:
        raise ValidationError('Coupon amount must be positive.')
    if discount_type == DiscountType.PERCENTAGE.value and amount > 100:
        raise ValidationError('Percentage coupons cannot exceed 100.')
    if session.query(Coupon).filter(Coupon.code == normalized).first():
        raise ValidationError(f'Coupon {normalized} already exists.')

    coupon = Coupon(code=normalized, discount_type=discount_type, amount=amount, used_count=0, **options)
    session.add(coupon)
    session.flush()
    return coupon
