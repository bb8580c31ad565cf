"""Stripe adapter (card and wallet payments through PaymentIntents)."""
import json
import logging

import stripe

from storefront.exceptions import GatewayError
from storefront.gateways.base import (
    FAILED, SUCCEEDED, GatewayEvent, GatewayIntent, GatewayRefundResult, PaymentGateway
)

logger = logging.getLogger(__name__)


class StripeGateway(PaymentGateway):
    name = 'stripe'

    SUCCEEDED_EVENTS = {'payment_intent.succeeded'}
    FAILED_EVENTS = {'payment_intent.payment_failed', 'payment_intent.canceled'}

    def __init__(self, api_key=None, webhook_secret=None):
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    @classmethod
    def from_config(cls, config):
        return cls(config.get('STRIPE_SECRET_KEY'), config.get('STRIPE_WEBHOOK_SECRET'))

    def verify(self, headers, body):
        if self.skip_verification():
            return True

        signature = headers.get('Stripe-Signature')
        if not signature:
            logger.warning("[STRIPE] Missing Stripe-Signature header")
            return False
        if not self.webhook_secret:
            logger.error("[STRIPE] STRIPE_WEBHOOK_SECRET is not configured")
            return False

        try:
            stripe.Webhook.construct_event(body, signature, self.webhook_secret)
            return True
        except stripe.SignatureVerificationError as e:
            logger.warning(f"[STRIPE] Signature verification failed: {e}")
            return False
        except ValueError as e:
            logger.warning(f"[STRIPE] Unreadable webhook payload: {e}")
            return False

    def parse_event(self, body):
        payload = json.loads(body)
        event_type = payload.get('type')
        intent = (payload.get('data') or {}).get('object') or {}

        outcome = None
        if event_type in self.SUCCEEDED_EVENTS:
            outcome = SUCCEEDED
        elif event_type in self.FAILED_EVENTS:
            outcome = FAILED

        currency = intent.get('currency')
        return GatewayEvent(
            event_id=payload.get('id'),
            event_type=event_type,
            correlation_id=intent.get('id'),
            outcome=outcome,
            amount=intent.get('amount'),
            currency=currency.upper() if currency else None,
            provider_payment_id=intent.get('latest_charge'),
            raw=payload,
        )

    def _require_api_key(self):
        if not self.api_key:
            raise GatewayError('Stripe is not configured.')

    def create_intent(self, payment, order):
        self._require_api_key()
        try:
            intent = stripe.PaymentIntent.create(
                api_key=self.api_key,
                amount=payment.amount,
                currency=payment.currency.lower(),
                metadata={
                    'orderId': str(order.id),
                    'transactionNumber': payment.transaction_number,
                },
                automatic_payment_methods={'enabled': True},
                idempotency_key=payment.transaction_number,
            )
        except stripe.StripeError as e:
            logger.error(f"[STRIPE] PaymentIntent creation failed for order {order.id}: {e}")
            raise GatewayError(f'Stripe error: {e.user_message or str(e)}')

        logger.info(f"[STRIPE] PaymentIntent {intent.id} created for order {order.id}")
        return GatewayIntent(external_id=intent.id, client_secret=intent.client_secret)

    def refund(self, payment, amount, reason=None, idempotency_key=None):
        self._require_api_key()
        try:
            refund = stripe.Refund.create(
                api_key=self.api_key,
                payment_intent=payment.external_transaction_id,
                amount=amount,
                metadata={'reason': (reason or '')[:500], 'transactionNumber': payment.transaction_number},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            logger.error(f"[STRIPE] Refund failed for {payment.external_transaction_id}: {e}")
            raise GatewayError(f'Stripe refund failed: {e.user_message or str(e)}')

        if refund.status in ('succeeded', 'pending', 'requires_action'):
            status = 'succeeded' if refund.status == 'succeeded' else 'pending'
        else:
            status = 'failed'
        return GatewayRefundResult(refund.id, status, getattr(refund, 'failure_reason', None))
