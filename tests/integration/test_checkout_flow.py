"""
Integration tests for the guest cart and checkout endpoints.
"""
from datetime import timedelta

from storefront.database import utcnow
from storefront.gateways.base import GatewayIntent
from storefront.gateways.stripe_gateway import StripeGateway
from storefront.models import Coupon, Order, OrderStatus, Payment
from storefront.services import order_service


def cart_cookie(client):
    cookie = client.get_cookie('cart_token')
    return cookie.value if cookie else None


class TestGuestCart:
    """Cart endpoints keyed by the guest cookie."""

    def test_add_item_sets_cookie(self, client, session, make_product):
        product = make_product(price=5000, codes=5)

        response = client.post('/cart/items', json={'productId': product.id, 'quantity': 2})

        assert response.status_code == 201
        cart = response.get_json()['cart']
        assert cart['subtotal'] == 10000
        assert cart['total_amount'] == 10000
        assert cart_cookie(client)

    def test_cart_survives_between_requests(self, client, session, make_product):
        product = make_product(price=700, codes=5)
        client.post('/cart/items', json={'productId': product.id, 'quantity': 1})
        client.post('/cart/items', json={'productId': product.id, 'quantity': 1})

        cart = client.get('/cart').get_json()['cart']
        assert len(cart['items']) == 1
        assert cart['items'][0]['quantity'] == 2

    def test_update_and_remove_items(self, client, session, make_product):
        product = make_product(price=1000, codes=5)
        cart = client.post('/cart/items', json={'productId': product.id, 'quantity': 1}).get_json()['cart']
        item_id = cart['items'][0]['id']

        cart = client.put(f'/cart/items/{item_id}', json={'quantity': 3}).get_json()['cart']
        assert cart['total_amount'] == 3000

        cart = client.delete(f'/cart/items/{item_id}').get_json()['cart']
        assert cart['items'] == []
        assert cart['total_amount'] == 0

    def test_unknown_product(self, client, session):
        response = client.post('/cart/items', json={'productId': 999999, 'quantity': 1})
        assert response.status_code == 404

    def test_quantity_must_be_integer(self, client, session, make_product):
        product = make_product(codes=5)
        response = client.post('/cart/items', json={'productId': product.id, 'quantity': 'lots'})
        assert response.status_code == 400
        assert response.get_json()['code'] == 'VALIDATION'


class TestCoupons:
    """Coupon application on the cart."""

    def test_apply_and_remove_coupon(self, client, session, make_product, make_coupon):
        product = make_product(price=5000, codes=5)
        coupon = make_coupon(amount=10)
        client.post('/cart/items', json={'productId': product.id, 'quantity': 2})

        response = client.post('/cart/apply-coupon', json={'code': coupon.code.lower()})
        cart = response.get_json()['cart']
        assert response.status_code == 200
        assert cart['discount_amount'] == 1000
        assert cart['total_amount'] == 9000
        assert cart['coupon_code'] == coupon.code

        cart = client.delete('/cart/remove-coupon').get_json()['cart']
        assert cart['coupon_code'] is None
        assert cart['total_amount'] == 10000

    def test_expired_coupon_reason(self, client, session, make_product, make_coupon):
        product = make_product(price=5000, codes=5)
        coupon = make_coupon(amount=10, expires_at=utcnow() - timedelta(days=1))
        client.post('/cart/items', json={'productId': product.id, 'quantity': 1})

        response = client.post('/cart/apply-coupon', json={'code': coupon.code})
        assert response.status_code == 400
        assert response.get_json()['code'] == 'EXPIRED'

    def test_unknown_coupon(self, client, session, make_product):
        product = make_product(codes=5)
        client.post('/cart/items', json={'productId': product.id, 'quantity': 1})
        response = client.post('/cart/apply-coupon', json={'code': 'NO-SUCH-CODE'})
        assert response.status_code == 404


class TestCheckout:
    """POST /cart/checkout."""

    def test_checkout_creates_pending_order(self, client, session, make_product, make_coupon):
        product = make_product(price=5000, codes=5)
        coupon = make_coupon(amount=10, max_uses=10)
        coupon_id = coupon.id
        client.post('/cart/items', json={'productId': product.id, 'quantity': 2})
        client.post('/cart/apply-coupon', json={'code': coupon.code})

        response = client.post('/cart/checkout', json={'email': 'guest@test.com'})

        assert response.status_code == 201
        data = response.get_json()
        assert data['total_amount'] == 9000
        assert cart_cookie(client) is None

        session.expire_all()
        order = session.get(Order, data['order_id'])
        assert order.status == OrderStatus.PENDING.value
        assert order.customer_email == 'guest@test.com'
        assert session.get(Coupon, coupon_id).used_count == 1

    def test_min_quantity_keeps_cart(self, client, session, make_product):
        """minQuantity=2 with one unit: VALIDATION, and the cart stays a cart."""
        product = make_product(codes=5, min_quantity=2)
        cart = client.post('/cart/items', json={'productId': product.id, 'quantity': 1}).get_json()['cart']

        response = client.post('/cart/checkout', json={'email': 'guest@test.com'})

        assert response.status_code == 400
        assert response.get_json()['code'] == 'VALIDATION'
        session.expire_all()
        assert session.get(Order, cart['id']).status == OrderStatus.CART.value
        assert client.get('/cart').get_json()['cart']['id'] == cart['id']

    def test_guest_needs_email(self, client, session, make_product):
        product = make_product(codes=5)
        client.post('/cart/items', json={'productId': product.id, 'quantity': 1})

        response = client.post('/cart/checkout', json={})
        assert response.status_code == 400

    def test_checkout_then_pay_through_stripe(self, client, session, make_product, stripe_webhook, monkeypatch):
        """Cart to completed order: checkout, payment intent, signed webhook."""
        monkeypatch.setattr(
            StripeGateway, 'create_intent',
            lambda self, payment, order: GatewayIntent('pi_e2e_1', client_secret='pi_e2e_1_secret')
        )
        product = make_product(price=2500, codes=2)
        client.post('/cart/items', json={'productId': product.id, 'quantity': 2})
        order_id = client.post('/cart/checkout', json={'email': 'e2e@test.com'}).get_json()['order_id']

        response = client.post('/payments/stripe/intent', json={'orderId': order_id})
        assert response.status_code == 201
        body = response.get_json()
        assert body['intent']['client_secret'] == 'pi_e2e_1_secret'
        assert body['payment']['amount'] == 5000
        assert body['payment']['status'] == 'pending'

        response = stripe_webhook('pi_e2e_1', 5000)
        assert response.get_json()['outcome'] == 'fulfilled'

        session.expire_all()
        assert session.get(Order, order_id).status == OrderStatus.COMPLETED.value

    def test_intent_requires_pending_order(self, client, session, make_product):
        product = make_product(codes=1)
        order_id = client.post('/orders', json={'productId': product.id, 'email': 'a@b.co'}).get_json()['order']['id']
        order_service.cancel(session, order_id)
        session.commit()

        response = client.post('/payments/stripe/intent', json={'orderId': order_id})
        assert response.status_code == 409
        assert response.get_json()['code'] == 'INVALID_STATE'

    def test_intent_for_open_cart_is_not_found(self, client, session, make_product):
        product = make_product(codes=1)
        cart_id = client.post('/cart/items', json={'productId': product.id, 'quantity': 1}).get_json()['cart']['id']

        response = client.post('/payments/stripe/intent', json={'orderId': cart_id})
        assert response.status_code == 404


class TestPaymentIntentAccess:
    """Only the buyer (or an admin) can start a payment for an order."""

    def _fake_intent(self, monkeypatch):
        monkeypatch.setattr(
            StripeGateway, 'create_intent',
            lambda self, payment, order: GatewayIntent(f'pi_access_{order.id}', client_secret='secret')
        )

    def test_stranger_cannot_start_payment(self, client, session, make_product, make_pending_order, monkeypatch):
        self._fake_intent(monkeypatch)
        order = make_pending_order(make_product(codes=1))
        order_id = order.id

        response = client.post('/payments/stripe/intent', json={'orderId': order_id})

        assert response.status_code == 403
        assert response.get_json()['code'] == 'FORBIDDEN'
        session.expire_all()
        assert session.query(Payment).filter(Payment.order_id == order_id).count() == 0

    def test_other_customer_cannot_start_payment(self, client, session, make_product, make_pending_order,
                                                 make_user, monkeypatch):
        self._fake_intent(monkeypatch)
        owner = make_user()
        order = make_pending_order(make_product(codes=1), user_id=owner.id)
        intruder = make_user()
        with client.session_transaction() as sess:
            sess['user_id'] = intruder.id

        response = client.post('/payments/stripe/intent', json={'orderId': order.id})
        assert response.status_code == 403

    def test_owner_starts_payment(self, client, session, make_product, make_pending_order, make_user,
                                  monkeypatch):
        self._fake_intent(monkeypatch)
        owner = make_user()
        order = make_pending_order(make_product(codes=1), user_id=owner.id)
        with client.session_transaction() as sess:
            sess['user_id'] = owner.id

        response = client.post('/payments/stripe/intent', json={'orderId': order.id})
        assert response.status_code == 201
        assert response.get_json()['payment']['order_id'] == order.id

    def test_guest_order_survives_login(self, client, session, make_product, make_user, monkeypatch):
        self._fake_intent(monkeypatch)
        product = make_product(codes=2)
        order_id = client.post('/orders', json={'productId': product.id, 'email': 'g@b.co'}).get_json()['order']['id']
        user = make_user()
        client.post('/auth/login', json={'email': user.email, 'password': 'password123'})

        assert client.get(f'/orders/{order_id}').status_code == 200
        assert client.post('/payments/stripe/intent', json={'orderId': order_id}).status_code == 201

    def test_intent_keeps_csrf_while_webhook_is_exempt(self, app, client, session, stripe_webhook, monkeypatch):
        monkeypatch.setitem(app.config, 'WTF_CSRF_ENABLED', True)

        response = client.post('/payments/stripe/intent', json={'orderId': 1})
        assert response.status_code == 400
        assert response.get_json()['message'] == 'Invalid or missing CSRF token.'

        response = stripe_webhook('pi_csrf_unknown', 100)
        assert response.status_code == 200
        assert response.get_json()['outcome'] == 'unknown_transaction'


class TestDirectOrders:
    """POST /orders for a single product."""

    def test_direct_order(self, client, session, make_product):
        product = make_product(price=1500, codes=3)
        response = client.post('/orders', json={'productId': product.id, 'quantity': 2, 'email': 'a@b.co'})

        assert response.status_code == 201
        order = response.get_json()['order']
        assert order['status'] == 'pending'
        assert order['total_amount'] == 3000

    def test_direct_order_insufficient_stock(self, client, session, make_product):
        product = make_product(codes=1)
        response = client.post('/orders', json={'productId': product.id, 'quantity': 2, 'email': 'a@b.co'})
        assert response.status_code == 400
        assert response.get_json()['code'] == 'INSUFFICIENT_STOCK'
