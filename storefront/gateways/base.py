"""Payment gateway adapter contract.

Reconciliation only talks to this interface, so adding a gateway never
touches the order or payment services.
"""
import logging

from flask import current_app

logger = logging.getLogger(__name__)

SUCCEEDED = 'succeeded'
FAILED = 'failed'


class GatewayEvent:
    """A verified, parsed webhook delivery."""

    def __init__(self, event_id, event_type, correlation_id=None, outcome=None, amount=None,
                 currency=None, provider_payment_id=None, raw=None):
        self.event_id = event_id
        self.event_type = event_type
        # Our Payment.external_transaction_id for this gateway
        self.correlation_id = correlation_id
        # SUCCEEDED, FAILED or None for events we do not act on
        self.outcome = outcome
        self.amount = amount  # minor units
        self.currency = currency
        self.provider_payment_id = provider_payment_id
        self.raw = raw or {}

    def __repr__(self):
        return f"<GatewayEvent(type='{self.event_type}', correlation='{self.correlation_id}', outcome={self.outcome})>"


class GatewayIntent:
    """Upstream payment created for a local Payment row."""

    def __init__(self, external_id, client_secret=None, approval_url=None):
        self.external_id = external_id
        self.client_secret = client_secret
        self.approval_url = approval_url

    def to_dict(self):
        return {
            'external_id': self.external_id,
            'client_secret': self.client_secret,
            'approval_url': self.approval_url,
        }


class GatewayRefundResult:
    """
    Gateway answer to a refund request. ``status`` is succeeded, pending or
    failed; pending means the gateway took the refund and settles it later.
    """

    def __init__(self, refund_id, status, error_message=None):
        self.refund_id = refund_id
        self.status = status
        self.error_message = error_message

    @property
    def accepted(self):
        return self.status in ('succeeded', 'pending')


class PaymentGateway:
    """Base class for gateway adapters."""

    name = None

    def verify(self, headers, body: bytes) -> bool:
        """Check the delivery's signature headers against the raw body."""
        raise NotImplementedError

    def parse_event(self, body: bytes) -> GatewayEvent:
        """Turn a verified body into a GatewayEvent."""
        raise NotImplementedError

    def extract_correlation(self, event: GatewayEvent):
        """Local correlation id (Payment.external_transaction_id) of an event."""
        return event.correlation_id

    def create_intent(self, payment, order) -> GatewayIntent:
        raise NotImplementedError

    def refund(self, payment, amount: int, reason=None, idempotency_key=None) -> GatewayRefundResult:
        raise NotImplementedError

    def skip_verification(self) -> bool:
        """WEBHOOK_SKIP_VERIFICATION, honoured outside production only."""
        config = current_app.config
        if config.get('WEBHOOK_SKIP_VERIFICATION') and config.get('ENV') != 'production':
            logger.warning(f"[WEBHOOK] Skipping {self.name} signature verification (development mode)")
            return True
        return False
