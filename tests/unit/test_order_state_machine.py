"""
Unit tests for order status transitions.
"""
import pytest

from storefront.exceptions import InvalidStateError
from storefront.models import Order, OrderStatus
from storefront.services import order_service


class TestTransitions:
    """Compare-and-set transitions keyed by the current status."""

    def test_pending_to_processing(self, session, make_product, make_pending_order):
        order = make_pending_order(make_product())
        order = order_service.mark_paid(session, order.id, 'TXN-1')
        session.commit()

        assert order.status == OrderStatus.PROCESSING.value
        assert order.paid_at is not None
        assert order.payment_reference == 'TXN-1'

    def test_second_mark_paid_is_rejected(self, session, make_product, make_pending_order):
        """A duplicate trigger finds no pending row and changes nothing."""
        order = make_pending_order(make_product())
        order_service.mark_paid(session, order.id, 'TXN-1')
        session.commit()

        with pytest.raises(InvalidStateError):
            order_service.mark_paid(session, order.id, 'TXN-2')
        session.rollback()

        reloaded = session.get(Order, order.id)
        assert reloaded.status == OrderStatus.PROCESSING.value
        assert reloaded.payment_reference == 'TXN-1'

    def test_disallowed_transition(self, session, make_product, make_pending_order):
        order = make_pending_order(make_product())
        with pytest.raises(InvalidStateError):
            order_service.transition(session, order.id, OrderStatus.PENDING.value, OrderStatus.REFUNDED.value)

    def test_cancel_only_pending(self, session, make_product, make_pending_order):
        order = make_pending_order(make_product())
        order_service.mark_paid(session, order.id)
        session.commit()

        with pytest.raises(InvalidStateError):
            order_service.cancel(session, order.id)
        session.rollback()

    def test_cancel_pending(self, session, make_product, make_pending_order):
        order = make_pending_order(make_product())
        order = order_service.cancel(session, order.id, 'customer request')
        session.commit()
        assert order.status == OrderStatus.CANCELLED.value

    def test_refund_requires_processing_or_completed(self, session, make_product, make_pending_order):
        order = make_pending_order(make_product())
        with pytest.raises(InvalidStateError):
            order_service.mark_refunded(session, order.id)


class TestDirectOrder:
    """Tests for create_direct_order."""

    def test_creates_pending_order(self, session, make_product):
        product = make_product(price=2500, codes=3)
        order = order_service.create_direct_order(session, product.id, 2, email='a@b.co')
        session.commit()

        assert order.status == OrderStatus.PENDING.value
        assert order.total_amount == 5000
        assert len(order.items) == 1

    def test_min_quantity(self, session, make_product):
        from storefront.exceptions import ValidationError
        product = make_product(codes=5, min_quantity=2)
        with pytest.raises(ValidationError):
            order_service.create_direct_order(session, product.id, 1, email='a@b.co')

    def test_insufficient_stock(self, session, make_product):
        from storefront.exceptions import InsufficientStockError
        product = make_product(codes=1)
        with pytest.raises(InsufficientStockError):
            order_service.create_direct_order(session, product.id, 2, email='a@b.co')
