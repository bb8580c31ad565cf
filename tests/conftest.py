import hashlib
import hmac
import json
import os
import tempfile
import time
import uuid

import pytest

# Test configuration must be in the environment before config.Config is imported
_db_dir = tempfile.mkdtemp(prefix='storefront-tests-')
os.environ['DATABASE_URL'] = f"sqlite:///{os.path.join(_db_dir, 'storefront.db')}"
os.environ['FLASK_ENV'] = 'testing'
os.environ['CACHE_ENABLED'] = 'false'
os.environ['MAIL_SUPPRESS_SEND'] = 'true'
os.environ['STRIPE_WEBHOOK_SECRET'] = 'whsec_test_secret'
os.environ['STRIPE_SECRET_KEY'] = 'sk_test_dummy'
os.environ['MP_WEBHOOK_SECRET'] = 'mp_test_secret'
os.environ['WEBHOOK_SKIP_VERIFICATION'] = 'false'
os.environ['APP_BASE_URL'] = 'https://shop.test'

from storefront import create_app  # noqa: E402
from storefront.database import Base, get_engine, get_session  # noqa: E402
from storefront.models import (  # noqa: E402
    AppUser, Coupon, InventoryItem, Order, OrderItem, OrderStatus, Payment, PaymentStatus,
    Product, ProductFile, ProductType
)


@pytest.fixture(scope='session')
def app():
    """Create application instance for testing."""
    app = create_app('config.Config')
    app.config['TESTING'] = True
    app.config['WTF_CSRF_ENABLED'] = False
    with app.app_context():
        Base.metadata.create_all(get_engine())
    return app


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def session(app):
    """Database session inside an application context."""
    with app.app_context():
        session = get_session()
        yield session
        session.rollback()
        session.close()


def _suffix():
    return str(uuid.uuid4())[:8]


@pytest.fixture
def make_product(session):
    """Factory for products. License products get ``codes`` loaded into inventory."""
    def _make(price=5000, product_type=ProductType.LICENSE_CODE.value, codes=0, stock=None,
              min_quantity=1, max_quantity=None, currency='USD', active=True, with_file=False):
        suffix = _suffix()
        product = Product(
            name=f'Product {suffix}',
            slug=f'product-{suffix}',
            price=price,
            currency=currency,
            product_type=product_type,
            stock=stock,
            min_quantity=min_quantity,
            max_quantity=max_quantity,
            active=active,
        )
        session.add(product)
        session.flush()
        for i in range(codes):
            session.add(InventoryItem(product_id=product.id, code=f'CODE-{suffix}-{i}', password=f'pw{i}'))
        if with_file:
            session.add(ProductFile(product_id=product.id, object_key=f'products/{product.id}/file.zip',
                                    file_name='file.zip', max_downloads=2))
        session.commit()
        return product
    return _make


@pytest.fixture
def make_coupon(session):
    """Factory for coupons with unique codes."""
    def _make(discount_type='percentage', amount=10, **options):
        coupon = Coupon(code=f'SAVE{_suffix().upper()}', discount_type=discount_type,
                        amount=amount, used_count=0, **options)
        session.add(coupon)
        session.commit()
        return coupon
    return _make


@pytest.fixture
def make_user(session):
    """Factory for users (password: password123)."""
    def _make(role='customer'):
        user = AppUser(email=f'user-{_suffix()}@test.com', full_name='Test User', role=role, active=True)
        user.set_password('password123')
        session.add(user)
        session.commit()
        return user
    return _make


@pytest.fixture
def make_pending_order(session):
    """Factory for pending orders of a single product line."""
    def _make(product, quantity=1, email='buyer@test.com', user_id=None):
        total = product.price * quantity
        order = Order(
            user_id=user_id,
            customer_email=email,
            status=OrderStatus.PENDING.value,
            subtotal=total,
            discount_amount=0,
            total_amount=total,
            currency=product.currency,
        )
        order.items.append(OrderItem(product_id=product.id, quantity=quantity, unit_price=product.price))
        session.add(order)
        session.commit()
        return order
    return _make


@pytest.fixture
def make_payment(session):
    """Factory for gateway payments attached to an order."""
    def _make(order, gateway='stripe', status=PaymentStatus.PENDING.value, external_id=None,
              provider_payment_id=None):
        payment = Payment(
            transaction_number=f'TXN-TEST-{_suffix()}',
            gateway=gateway,
            external_transaction_id=external_id or f'pi_{_suffix()}',
            provider_payment_id=provider_payment_id,
            order_id=order.id,
            amount=order.total_amount,
            currency=order.currency,
            status=status,
        )
        session.add(payment)
        session.commit()
        return payment
    return _make


@pytest.fixture
def admin_client(app, make_user):
    """Test client signed in as an administrator."""
    admin = make_user(role='admin')
    client = app.test_client()
    with client.session_transaction() as sess:
        sess['user_id'] = admin.id
    client.admin_id = admin.id
    return client


@pytest.fixture
def fake_storage(monkeypatch):
    """Replace object storage with an in-memory URL signer."""
    class FakeStorage:
        def __init__(self):
            self.signed = []

        def presign_download(self, key, file_name, expires_in=None):
            self.signed.append(key)
            return f'https://objects.test/{key}?sig=abc'

    storage = FakeStorage()
    monkeypatch.setattr('storefront.services.download_service.get_storage_service', lambda: storage)
    return storage


def _stripe_signature(body, secret):
    timestamp = int(time.time())
    signed = f"{timestamp}.{body.decode('utf-8')}".encode('utf-8')
    digest = hmac.new(secret.encode('utf-8'), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.fixture
def stripe_webhook(client):
    """Post a signed Stripe PaymentIntent event to the webhook endpoint."""
    def _post(intent_id, amount, event_type='payment_intent.succeeded', event_id=None,
              currency='usd', signature=None):
        body = json.dumps({
            'id': event_id or f'evt_{_suffix()}',
            'object': 'event',
            'type': event_type,
            'data': {'object': {
                'id': intent_id,
                'object': 'payment_intent',
                'amount': amount,
                'currency': currency,
                'latest_charge': f'ch_{intent_id}',
            }},
        }).encode('utf-8')
        header = signature or _stripe_signature(body, os.environ['STRIPE_WEBHOOK_SECRET'])
        return client.post('/payments/stripe/webhook', data=body,
                           headers={'Stripe-Signature': header, 'Content-Type': 'application/json'})
    return _post
