"""
Unit tests for the cart aggregate.
"""
from datetime import timedelta

import jwt
import pytest
from flask import current_app

from storefront.database import utcnow
from storefront.exceptions import CouponError, InsufficientStockError, ValidationError
from storefront.models import Coupon, Order, OrderStatus
from storefront.services import cart_service


class TestCartTotals:
    """Totals are recomputed from line items and the coupon."""

    def test_example_cart_with_percentage_coupon(self, session, make_product, make_coupon):
        """price 5000 x2 with 10% off: subtotal 10000, discount 1000, total 9000."""
        product = make_product(price=5000, codes=5)
        coupon = make_coupon(discount_type='percentage', amount=10)

        cart, _ = cart_service.get_or_create_cart(session)
        cart_service.add_item(session, cart, product.id, 2)
        cart_service.apply_coupon(session, cart, coupon.code)

        assert cart.subtotal == 10000
        assert cart.discount_amount == 1000
        assert cart.total_amount == 9000

    def test_adding_same_product_merges_lines(self, session, make_product):
        product = make_product(price=1000, codes=5)
        cart, _ = cart_service.get_or_create_cart(session)
        cart_service.add_item(session, cart, product.id, 1)
        cart_service.add_item(session, cart, product.id, 2)

        assert len(cart.items) == 1
        assert cart.items[0].quantity == 3
        assert cart.total_amount == 3000

    def test_add_beyond_stock(self, session, make_product):
        product = make_product(codes=1)
        cart, _ = cart_service.get_or_create_cart(session)
        with pytest.raises(InsufficientStockError):
            cart_service.add_item(session, cart, product.id, 2)

    def test_add_beyond_max_quantity(self, session, make_product):
        product = make_product(codes=10, max_quantity=2)
        cart, _ = cart_service.get_or_create_cart(session)
        with pytest.raises(ValidationError):
            cart_service.add_item(session, cart, product.id, 3)

    def test_update_to_zero_removes_line(self, session, make_product):
        product = make_product(price=700, codes=3)
        cart, _ = cart_service.get_or_create_cart(session)
        cart_service.add_item(session, cart, product.id, 2)
        item_id = cart.items[0].id

        cart_service.update_item(session, cart, item_id, 0)
        assert cart.items == []
        assert cart.total_amount == 0

    def test_invalid_coupon_dropped_on_recompute(self, session, make_product, make_coupon):
        product = make_product(price=5000, codes=5)
        coupon = make_coupon(amount=10, min_order_amount=8000)

        cart, _ = cart_service.get_or_create_cart(session)
        cart_service.add_item(session, cart, product.id, 2)
        cart_service.apply_coupon(session, cart, coupon.code)
        assert cart.discount_amount == 1000

        cart_service.update_item(session, cart, cart.items[0].id, 1)
        assert cart.coupon_code is None
        assert cart.total_amount == 5000

    def test_apply_coupon_below_minimum(self, session, make_product, make_coupon):
        product = make_product(price=1000, codes=5)
        coupon = make_coupon(amount=10, min_order_amount=5000)
        cart, _ = cart_service.get_or_create_cart(session)
        cart_service.add_item(session, cart, product.id, 1)

        with pytest.raises(CouponError) as exc:
            cart_service.apply_coupon(session, cart, coupon.code)
        assert exc.value.reason == CouponError.BELOW_MINIMUM

    def test_fixed_coupon_rejected_for_cart_in_other_currency(self, session, make_product, make_coupon):
        product = make_product(price=1000, codes=5, currency='JPY')
        coupon = make_coupon(discount_type='fixed', amount=500, currency='USD')
        cart, _ = cart_service.get_or_create_cart(session)
        cart_service.add_item(session, cart, product.id, 1)

        with pytest.raises(CouponError) as exc:
            cart_service.apply_coupon(session, cart, coupon.code)
        assert exc.value.reason == CouponError.INACTIVE
        assert cart.currency == 'JPY'
        assert cart.discount_amount == 0
        assert cart.total_amount == 1000


class TestCheckout:
    """Checkout freezes the cart into a pending order."""

    def test_checkout_freezes_and_redeems_coupon(self, session, make_product, make_coupon):
        product = make_product(price=5000, codes=5)
        coupon = make_coupon(amount=10, max_uses=5)
        cart, _ = cart_service.get_or_create_cart(session)
        cart_service.add_item(session, cart, product.id, 2)
        cart_service.apply_coupon(session, cart, coupon.code)

        order = cart_service.checkout(session, cart, email='buyer@test.com')
        session.commit()

        assert order.status == OrderStatus.PENDING.value
        assert order.total_amount == 9000
        assert order.customer_email == 'buyer@test.com'
        assert session.get(Coupon, coupon.id).used_count == 1

    def test_checkout_below_min_quantity(self, session, make_product):
        """minQuantity=2 with quantity 1: VALIDATION and the cart stays a cart."""
        product = make_product(codes=5, min_quantity=2)
        cart, _ = cart_service.get_or_create_cart(session)
        cart_service.add_item(session, cart, product.id, 1)
        session.commit()
        cart_id = cart.id

        with pytest.raises(ValidationError):
            cart_service.checkout(session, cart, email='buyer@test.com')
        session.rollback()
        assert session.get(Order, cart_id).status == OrderStatus.CART.value

    def test_checkout_requires_email_for_guests(self, session, make_product):
        product = make_product(codes=1)
        cart, _ = cart_service.get_or_create_cart(session)
        cart_service.add_item(session, cart, product.id, 1)
        with pytest.raises(ValidationError):
            cart_service.checkout(session, cart)

    def test_checkout_empty_cart(self, session):
        cart, _ = cart_service.get_or_create_cart(session)
        with pytest.raises(ValidationError):
            cart_service.checkout(session, cart, email='buyer@test.com')

    def test_exhausted_coupon_blocks_checkout(self, session, make_product, make_coupon):
        product = make_product(price=5000, codes=5)
        coupon = make_coupon(amount=10, max_uses=1)
        cart, _ = cart_service.get_or_create_cart(session)
        cart_service.add_item(session, cart, product.id, 1)
        cart_service.apply_coupon(session, cart, coupon.code)

        coupon.used_count = 1
        session.flush()
        with pytest.raises(CouponError) as exc:
            cart_service.checkout(session, cart, email='buyer@test.com')
        assert exc.value.reason == CouponError.USAGE_EXCEEDED


class TestCartToken:
    """Guest cart tokens."""

    def test_token_round_trip(self, session):
        cart, token = cart_service.get_or_create_cart(session)
        assert cart_service.read_cart_token(token) == cart.id
        assert cart_service.get_cart_by_token(session, token).id == cart.id

    def test_tampered_token(self, session):
        _, token = cart_service.get_or_create_cart(session)
        assert cart_service.read_cart_token(token[:-2] + 'xx') is None

    def test_expired_token(self, session):
        now = utcnow()
        token = jwt.encode(
            {'sub': '1', 'typ': 'cart', 'iat': now - timedelta(days=40), 'exp': now - timedelta(days=10)},
            current_app.config['CART_TOKEN_SECRET'], algorithm='HS256'
        )
        assert cart_service.read_cart_token(token) is None

    def test_checked_out_cart_token_is_not_reused(self, session, make_product):
        product = make_product(codes=2)
        cart, token = cart_service.get_or_create_cart(session)
        cart_service.add_item(session, cart, product.id, 1)
        cart_service.checkout(session, cart, email='buyer@test.com')
        session.commit()

        assert cart_service.get_cart_by_token(session, token) is None
        new_cart, _ = cart_service.get_or_create_cart(session, token=token)
        assert new_cart.id != cart.id


class TestGuestCartMerge:
    """Guest carts merge into the user's cart on login."""

    def test_merge_sums_quantities(self, session, make_product, make_user):
        user = make_user()
        product = make_product(price=1000, codes=10)

        user_cart, _ = cart_service.get_or_create_cart(session, user_id=user.id)
        cart_service.add_item(session, user_cart, product.id, 1)
        guest_cart, token = cart_service.get_or_create_cart(session)
        cart_service.add_item(session, guest_cart, product.id, 2)
        session.commit()

        merged = cart_service.merge_guest_cart(session, token, user.id)
        session.commit()

        assert merged.id == user_cart.id
        assert merged.items[0].quantity == 3
        assert merged.total_amount == 3000

    def test_guest_cart_adopted_without_user_cart(self, session, make_product, make_user):
        user = make_user()
        product = make_product(codes=2)
        guest_cart, token = cart_service.get_or_create_cart(session)
        cart_service.add_item(session, guest_cart, product.id, 1)
        session.commit()

        merged = cart_service.merge_guest_cart(session, token, user.id)
        assert merged.id == guest_cart.id
        assert merged.user_id == user.id
