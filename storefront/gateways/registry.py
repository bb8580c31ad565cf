"""Gateway lookup by name."""
import logging
import uuid

from flask import current_app

from storefront.exceptions import NotFoundError, ValidationError
from storefront.gateways.base import GatewayRefundResult, PaymentGateway
from storefront.gateways.mercadopago_gateway import MercadoPagoGateway
from storefront.gateways.paypal_gateway import PayPalGateway
from storefront.gateways.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)


class ManualGateway(PaymentGateway):
    """
    Payments recorded by an administrator (``POST /orders/<id>/pay``).
    There is no upstream provider: no webhooks, and refunds are settled
    outside the system.
    """

    name = 'manual'

    @classmethod
    def from_config(cls, config):
        return cls()

    def verify(self, headers, body):
        return False

    def parse_event(self, body):
        raise ValidationError('Manual payments do not receive webhooks.')

    def create_intent(self, payment, order):
        raise ValidationError('Manual payments are recorded by an administrator.')

    def refund(self, payment, amount, reason=None, idempotency_key=None):
        refund_id = f"manual-{uuid.uuid4().hex}"
        logger.info(f"[MANUAL] Refund {refund_id} of {amount} recorded for {payment.transaction_number}")
        return GatewayRefundResult(refund_id, 'succeeded')


GATEWAYS = {
    StripeGateway.name: StripeGateway,
    PayPalGateway.name: PayPalGateway,
    MercadoPagoGateway.name: MercadoPagoGateway,
    ManualGateway.name: ManualGateway,
}


def get_gateway(name: str) -> PaymentGateway:
    gateway_cls = GATEWAYS.get((name or '').lower())
    if gateway_cls is None:
        raise NotFoundError(f'Unknown payment gateway: {name}')
    return gateway_cls.from_config(current_app.config)
