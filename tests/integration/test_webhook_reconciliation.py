"""
Integration tests for signed webhook ingestion and reconciliation.
"""
import hashlib
import hmac

import pytest

from storefront.models import InventoryItem, Order, OrderStatus, Payment, PaymentStatus, WebhookEvent
from storefront.services import fulfillment_service


class TestSucceededEvent:
    """payment_intent.succeeded drives pending -> processing -> completed."""

    def test_paid_and_fulfilled(self, client, session, make_product, make_pending_order, make_payment,
                                stripe_webhook):
        product = make_product(price=4500, codes=3)
        order = make_pending_order(product, quantity=2)
        payment = make_payment(order, external_id='pi_success_1')
        order_id, payment_id = order.id, payment.id

        response = stripe_webhook('pi_success_1', 9000)

        assert response.status_code == 200
        assert response.get_json()['outcome'] == 'fulfilled'

        session.expire_all()
        order = session.get(Order, order_id)
        payment = session.get(Payment, payment_id)
        assert payment.status == PaymentStatus.PAID.value
        assert payment.provider_payment_id == 'ch_pi_success_1'
        assert order.status == OrderStatus.COMPLETED.value
        assert order.payment_reference == payment.transaction_number

        codes = session.query(InventoryItem).filter(
            InventoryItem.order_id == order_id
        ).order_by(InventoryItem.id).all()
        assert len(codes) == 2
        assert order.fulfillment_result.splitlines() == [item.delivery_line for item in codes]

    def test_replayed_delivery_is_acknowledged_once(self, client, session, make_product, make_pending_order,
                                                    make_payment, stripe_webhook):
        product = make_product(price=1000, codes=2)
        order = make_pending_order(product)
        make_payment(order, external_id='pi_replay_1')
        order_id = order.id

        first = stripe_webhook('pi_replay_1', 1000, event_id='evt_replay_1')
        second = stripe_webhook('pi_replay_1', 1000, event_id='evt_replay_1')
        third = stripe_webhook('pi_replay_1', 1000, event_id='evt_replay_2')

        assert first.get_json()['outcome'] == 'fulfilled'
        assert second.status_code == 200
        assert second.get_json()['outcome'] == 'duplicate'
        assert third.status_code == 200
        assert third.get_json()['outcome'] == 'already_processed'

        session.expire_all()
        assert session.query(InventoryItem).filter(InventoryItem.order_id == order_id).count() == 1
        events = session.query(WebhookEvent).filter(WebhookEvent.correlation_id == 'pi_replay_1').all()
        assert len(events) == 2

    def test_stock_exhausted_holds_order_in_processing(self, client, session, make_product,
                                                       make_pending_order, make_payment, stripe_webhook):
        product = make_product(price=1000, codes=0)
        order = make_pending_order(product)
        make_payment(order, external_id='pi_nostock_1')
        order_id = order.id

        response = stripe_webhook('pi_nostock_1', 1000)

        assert response.status_code == 200
        assert response.get_json()['outcome'] == 'fulfillment_failed'
        session.expire_all()
        order = session.get(Order, order_id)
        assert order.status == OrderStatus.PROCESSING.value
        assert 'INSUFFICIENT_STOCK' in order.fulfillment_error


class TestRejectedDeliveries:
    """Deliveries that must not change any order."""

    def test_bad_signature(self, client, session, make_product, make_pending_order, make_payment,
                           stripe_webhook):
        order = make_pending_order(make_product(codes=1))
        make_payment(order, external_id='pi_badsig_1')
        order_id = order.id

        response = stripe_webhook('pi_badsig_1', order.total_amount, signature='t=1,v1=deadbeef')

        assert response.status_code == 401
        assert response.get_json()['code'] == 'SIGNATURE_INVALID'
        session.expire_all()
        assert session.get(Order, order_id).status == OrderStatus.PENDING.value

    def test_unknown_transaction(self, client, session, stripe_webhook):
        response = stripe_webhook('pi_nobody_knows', 1234)

        assert response.status_code == 200
        assert response.get_json()['outcome'] == 'unknown_transaction'

    def test_amount_mismatch(self, client, session, make_product, make_pending_order, make_payment,
                             stripe_webhook):
        order = make_pending_order(make_product(price=5000, codes=1))
        payment = make_payment(order, external_id='pi_mismatch_1')
        order_id, payment_id = order.id, payment.id

        response = stripe_webhook('pi_mismatch_1', 1)

        assert response.status_code == 200
        assert response.get_json()['outcome'] == 'amount_mismatch'
        session.expire_all()
        assert session.get(Order, order_id).status == OrderStatus.PENDING.value
        payment = session.get(Payment, payment_id)
        assert payment.status == PaymentStatus.FAILED.value
        assert payment.failure_reason.startswith('amount_mismatch')

    def test_payment_failed_event(self, client, session, make_product, make_pending_order, make_payment,
                                  stripe_webhook):
        order = make_pending_order(make_product(codes=1))
        payment = make_payment(order, external_id='pi_failed_1')
        order_id, payment_id = order.id, payment.id

        response = stripe_webhook('pi_failed_1', order.total_amount, event_type='payment_intent.payment_failed')

        assert response.get_json()['outcome'] == 'payment_failed'
        session.expire_all()
        assert session.get(Payment, payment_id).status == PaymentStatus.FAILED.value
        assert session.get(Order, order_id).status == OrderStatus.PENDING.value

    def test_ignored_event_type(self, client, session, stripe_webhook):
        response = stripe_webhook('pi_whatever', 100, event_type='payment_intent.created')

        assert response.status_code == 200
        assert response.get_json()['outcome'] == 'ignored'

    def test_unknown_gateway(self, client, session):
        response = client.post('/payments/bitcoin/webhook', data=b'{}')
        assert response.status_code == 404
        assert response.get_json()['code'] == 'NOT_FOUND'

    @pytest.mark.parametrize('body', [b'not-json', b'[1, 2]'])
    def test_unreadable_payload_is_acknowledged(self, client, session, body):
        """An authentic body that cannot be parsed is acknowledged, not bounced back for redelivery."""
        signature = hmac.new(b'mp_test_secret', body, hashlib.sha256).hexdigest()
        events_before = session.query(WebhookEvent).count()

        response = client.post('/payments/mercadopago/webhook', data=body, headers={'X-Signature': signature})

        assert response.status_code == 200
        assert response.get_json() == {'status': 'acknowledged', 'outcome': 'ignored'}
        assert session.query(WebhookEvent).count() == events_before


class TestProcessingFailure:
    """Unexpected faults roll back and leave a FAILED delivery that a redelivery retries."""

    def test_failed_delivery_is_retried(self, client, session, make_product, make_pending_order, make_payment,
                                        stripe_webhook, monkeypatch):
        order = make_pending_order(make_product(price=2200, codes=1))
        payment = make_payment(order, external_id='pi_fault_1')
        order_id, payment_id = order.id, payment.id
        calls = []
        real_fulfill = fulfillment_service.fulfill_order

        def flaky_fulfill(db_session, target_order_id):
            calls.append(target_order_id)
            if len(calls) == 1:
                raise RuntimeError('storage offline')
            return real_fulfill(db_session, target_order_id)

        monkeypatch.setattr(fulfillment_service, 'fulfill_order', flaky_fulfill)

        first = stripe_webhook('pi_fault_1', 2200, event_id='evt_fault_1')
        assert first.status_code == 500

        session.expire_all()
        assert session.get(Payment, payment_id).status == PaymentStatus.PENDING.value
        assert session.get(Order, order_id).status == OrderStatus.PENDING.value
        failed = session.query(WebhookEvent).filter(WebhookEvent.correlation_id == 'pi_fault_1').one()
        assert failed.status == 'FAILED'

        second = stripe_webhook('pi_fault_1', 2200, event_id='evt_fault_1')
        assert second.status_code == 200
        assert second.get_json()['outcome'] == 'fulfilled'

        session.expire_all()
        assert session.get(Order, order_id).status == OrderStatus.COMPLETED.value
        events = session.query(WebhookEvent).filter(WebhookEvent.correlation_id == 'pi_fault_1').all()
        assert [(event.status, event.outcome) for event in events] == [('PROCESSED', 'fulfilled')]
