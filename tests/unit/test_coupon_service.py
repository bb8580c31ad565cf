"""
Unit tests for the coupon evaluator.
"""
from datetime import timedelta

import pytest

from storefront.database import utcnow
from storefront.exceptions import CouponError, NotFoundError
from storefront.models import Coupon, normalize_coupon_code
from storefront.services import coupon_service


class TestCouponPricing:
    """Tests for apply(subtotal, coupon)."""

    def test_percentage_discount(self):
        """10% of 10000 is 1000 off."""
        coupon = Coupon(code='TEN', discount_type='percentage', amount=10)
        assert coupon_service.apply(10000, coupon) == (1000, 9000)

    def test_percentage_discount_rounds_down(self):
        """Fractional minor units are floored."""
        coupon = Coupon(code='TEN', discount_type='percentage', amount=10)
        assert coupon_service.apply(999, coupon) == (99, 900)

    def test_fixed_discount_is_capped_at_subtotal(self):
        """Total never goes negative."""
        coupon = Coupon(code='BIG', discount_type='fixed', amount=5000)
        assert coupon_service.apply(1200, coupon) == (1200, 0)

    def test_apply_is_deterministic(self):
        """Repeated application with the same subtotal gives the same result."""
        coupon = Coupon(code='SEVEN', discount_type='percentage', amount=7)
        results = {coupon_service.apply(12345, coupon) for _ in range(5)}
        assert len(results) == 1
        discount, total = results.pop()
        assert total == 12345 - discount >= 0

    def test_full_percentage(self):
        coupon = Coupon(code='FREE', discount_type='percentage', amount=100)
        assert coupon_service.apply(4321, coupon) == (4321, 0)


class TestCouponValidation:
    """Tests for validate(); reasons are reported in a fixed order."""

    def _coupon(self, **overrides):
        values = dict(code='TEST', discount_type='percentage', amount=10, used_count=0, active=True)
        values.update(overrides)
        return Coupon(**values)

    def test_inactive(self):
        with pytest.raises(CouponError) as exc:
            coupon_service.validate(None, self._coupon(active=False), 10000)
        assert exc.value.reason == CouponError.INACTIVE

    def test_expired(self):
        coupon = self._coupon(expires_at=utcnow() - timedelta(days=1))
        with pytest.raises(CouponError) as exc:
            coupon_service.validate(None, coupon, 10000)
        assert exc.value.reason == CouponError.EXPIRED
        assert exc.value.code == 'EXPIRED'

    def test_not_started(self):
        coupon = self._coupon(starts_at=utcnow() + timedelta(days=1))
        with pytest.raises(CouponError) as exc:
            coupon_service.validate(None, coupon, 10000)
        assert exc.value.reason == CouponError.EXPIRED

    def test_usage_exceeded(self):
        coupon = self._coupon(max_uses=3, used_count=3)
        with pytest.raises(CouponError) as exc:
            coupon_service.validate(None, coupon, 10000)
        assert exc.value.reason == CouponError.USAGE_EXCEEDED

    def test_below_minimum(self):
        coupon = self._coupon(min_order_amount=20000)
        with pytest.raises(CouponError) as exc:
            coupon_service.validate(None, coupon, 10000)
        assert exc.value.reason == CouponError.BELOW_MINIMUM

    def test_inactive_reported_before_expired(self):
        coupon = self._coupon(active=False, expires_at=utcnow() - timedelta(days=1))
        with pytest.raises(CouponError) as exc:
            coupon_service.validate(None, coupon, 10000)
        assert exc.value.reason == CouponError.INACTIVE

    def test_valid_coupon_passes(self):
        coupon = self._coupon(max_uses=5, used_count=4, min_order_amount=5000)
        coupon_service.validate(None, coupon, 10000)

    def test_fixed_coupon_in_other_currency(self):
        """A USD amount is never taken off a JPY cart."""
        coupon = self._coupon(discount_type='fixed', amount=500, currency='USD')
        with pytest.raises(CouponError) as exc:
            coupon_service.validate(None, coupon, 10000, currency='JPY')
        assert exc.value.reason == CouponError.INACTIVE

    def test_fixed_coupon_in_same_currency(self):
        coupon = self._coupon(discount_type='fixed', amount=500, currency='usd')
        coupon_service.validate(None, coupon, 10000, currency='USD')

    def test_percentage_coupon_ignores_currency(self):
        coupon = self._coupon(currency='USD')
        coupon_service.validate(None, coupon, 10000, currency='JPY')


class TestCouponRedemption:
    """Tests for atomic redemption against the database."""

    def test_redeem_increments_usage(self, session, make_coupon):
        coupon = make_coupon(max_uses=2)
        coupon_service.redeem(session, coupon)
        session.commit()
        assert coupon.used_count == 1

    def test_redeem_refuses_past_cap(self, session, make_coupon):
        coupon = make_coupon(max_uses=1)
        coupon_service.redeem(session, coupon)
        session.commit()

        with pytest.raises(CouponError) as exc:
            coupon_service.redeem(session, coupon)
        assert exc.value.reason == CouponError.USAGE_EXCEEDED
        session.rollback()
        assert session.get(Coupon, coupon.id).used_count == 1

    def test_lookup_is_normalized(self, session, make_coupon):
        coupon = make_coupon()
        found = coupon_service.get_by_code(session, f'  {coupon.code.lower()} ')
        assert found.id == coupon.id
        assert normalize_coupon_code(' abc ') == 'ABC'

    def test_unknown_code(self, session):
        with pytest.raises(NotFoundError):
            coupon_service.get_by_code(session, 'NOPE-DOES-NOT-EXIST')
