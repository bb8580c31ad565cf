"""
Integration tests for administrative pay, fulfillment retry and inventory.
"""
from storefront.models import InventoryItem, Order, OrderStatus, Payment


class TestManualPay:
    """POST /orders/<id>/pay."""

    def test_last_code_goes_to_one_order(self, admin_client, session, make_product, make_pending_order):
        """One code left and two paid orders: one completes, the other waits in processing."""
        product = make_product(price=2000, codes=1)
        first = make_pending_order(product)
        second = make_pending_order(product)
        first_id, second_id = first.id, second.id

        response = admin_client.post(f'/orders/{first_id}/pay', json={'method': 'bank_transfer'})
        assert response.status_code == 200
        body = response.get_json()
        assert body['order']['status'] == 'completed'
        assert body['payment']['gateway'] == 'manual'
        assert body['payment']['method'] == 'bank_transfer'
        assert len(body['order']['fulfillment']['items']) == 1

        response = admin_client.post(f'/orders/{second_id}/pay')
        assert response.status_code == 400
        body = response.get_json()
        assert body['code'] == 'INSUFFICIENT_STOCK'
        assert body['order_status'] == 'processing'

        session.expire_all()
        assert session.get(Order, second_id).status == OrderStatus.PROCESSING.value
        assert session.query(Payment).filter(Payment.order_id == second_id).count() == 1
        assert session.query(InventoryItem).filter(InventoryItem.order_id == second_id).count() == 0

    def test_retry_after_restock(self, admin_client, session, make_product, make_pending_order):
        product = make_product(price=2000, codes=0)
        order = make_pending_order(product, quantity=2)
        product_id, order_id = product.id, order.id

        assert admin_client.post(f'/orders/{order_id}/pay').status_code == 400

        response = admin_client.post('/admin/inventory', json={
            'productId': product_id,
            'items': ['RESTOCK-1:pw', {'code': 'RESTOCK-2'}],
        })
        assert response.status_code == 201
        assert response.get_json()['added'] == 2

        response = admin_client.post(f'/admin/orders/{order_id}/fulfill')
        assert response.status_code == 200
        order = response.get_json()['order']
        assert order['status'] == 'completed'
        assert order['fulfillment_result'].splitlines() == ['RESTOCK-1:pw', 'RESTOCK-2']

    def test_pay_twice_is_invalid_state(self, admin_client, session, make_product, make_pending_order):
        order = make_pending_order(make_product(codes=2))
        assert admin_client.post(f'/orders/{order.id}/pay').status_code == 200

        response = admin_client.post(f'/orders/{order.id}/pay')
        assert response.status_code == 409
        assert response.get_json()['code'] == 'INVALID_STATE'

    def test_customer_cannot_pay(self, client, session, make_product, make_pending_order, make_user):
        order = make_pending_order(make_product(codes=1))
        user = make_user()
        with client.session_transaction() as sess:
            sess['user_id'] = user.id

        response = client.post(f'/orders/{order.id}/pay')
        assert response.status_code == 403


class TestAdminOrders:
    """Order detail and cancellation."""

    def test_order_detail_includes_audit(self, admin_client, session, make_product, make_pending_order):
        order = make_pending_order(make_product(codes=1))
        admin_client.post(f'/orders/{order.id}/pay')

        body = admin_client.get(f'/admin/orders/{order.id}').get_json()
        assert body['order']['status'] == 'completed'
        assert len(body['payments']) == 1
        assert body['refunds'] == []
        assert 'ORDER_PAID' in [entry['action'] for entry in body['audit']]

    def test_order_detail_lists_webhook_deliveries(self, admin_client, session, make_product, make_pending_order,
                                                   make_payment, stripe_webhook):
        order = make_pending_order(make_product(price=1800, codes=1))
        make_payment(order, external_id='pi_detail_1')
        order_id = order.id
        stripe_webhook('pi_detail_1', 1800)

        body = admin_client.get(f'/admin/orders/{order_id}').get_json()
        assert [event['outcome'] for event in body['webhook_events']] == ['fulfilled']
        assert body['payments'][0]['status'] == 'paid'

    def test_cancel_pending_order(self, admin_client, session, make_product, make_pending_order):
        order = make_pending_order(make_product(codes=1))
        response = admin_client.post(f'/admin/orders/{order.id}/cancel', json={'reason': 'duplicate'})
        assert response.status_code == 200
        assert response.get_json()['order']['status'] == 'cancelled'


class TestAdminInventory:
    """License code pool endpoints."""

    def test_counts(self, admin_client, session, make_product, make_pending_order):
        product = make_product(codes=3)
        order = make_pending_order(product)
        admin_client.post(f'/orders/{order.id}/pay')

        body = admin_client.get(f'/admin/inventory?productId={product.id}').get_json()
        assert body['inventory'] == [{
            'product_id': product.id,
            'product_name': product.name,
            'total': 3,
            'allocated': 1,
            'available': 2,
        }]

    def test_duplicates_are_skipped(self, admin_client, session, make_product):
        product = make_product(codes=0)
        response = admin_client.post('/admin/inventory', json={
            'productId': product.id,
            'items': ['DUP-1', 'DUP-1', 'DUP-2'],
        })
        body = response.get_json()
        assert body['added'] == 2
        assert body['skipped'] == 1
        assert body['available'] == 2

    def test_empty_items_rejected(self, admin_client, session, make_product):
        product = make_product(codes=0)
        response = admin_client.post('/admin/inventory', json={'productId': product.id, 'items': []})
        assert response.status_code == 400

    def test_release_refused_for_completed_order(self, admin_client, session, make_product, make_pending_order):
        product = make_product(codes=1)
        order = make_pending_order(product)
        admin_client.post(f'/orders/{order.id}/pay')
        item_id = session.query(InventoryItem.id).filter(InventoryItem.order_id == order.id).scalar()

        response = admin_client.post(f'/admin/inventory/{item_id}/release')
        assert response.status_code == 409

    def test_requires_admin(self, client, session):
        assert client.get('/admin/inventory').status_code == 401
