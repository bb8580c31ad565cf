"""Mercado Pago adapter (Checkout Pro preferences + payment notifications)."""
import hashlib
import hmac
import json
import logging

import mercadopago  # type: ignore
from mercadopago.config import RequestOptions  # type: ignore
from flask import current_app

from storefront.exceptions import GatewayError
from storefront.gateways.base import (
    FAILED, SUCCEEDED, GatewayEvent, GatewayIntent, GatewayRefundResult, PaymentGateway
)
from storefront.utils.formatters import to_major_units, to_minor_units

logger = logging.getLogger(__name__)


class MercadoPagoGateway(PaymentGateway):
    """
    Payments are correlated through ``external_reference``, which carries our
    transaction number, so ``external_transaction_id`` is the transaction
    number for this gateway.
    """

    name = 'mercadopago'

    APPROVED = {'approved'}
    REJECTED = {'rejected', 'cancelled'}

    def __init__(self, access_token=None, webhook_secret=None):
        self.webhook_secret = webhook_secret
        self.sdk = mercadopago.SDK(access_token) if access_token else None

    @classmethod
    def from_config(cls, config):
        return cls(config.get('MP_ACCESS_TOKEN'), config.get('MP_WEBHOOK_SECRET'))

    def _check_sdk(self):
        if not self.sdk:
            raise GatewayError('Mercado Pago is not configured.')

    def verify(self, headers, body):
        if self.skip_verification():
            return True

        signature = headers.get('X-Signature', '')
        if not signature:
            logger.warning("[MP] Missing X-Signature header")
            return False
        if not self.webhook_secret:
            logger.error("[MP] MP_WEBHOOK_SECRET is not configured")
            return False

        expected = hmac.new(self.webhook_secret.encode('utf-8'), body, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(signature, expected):
            logger.warning("[MP] Invalid webhook signature")
            return False
        return True

    def parse_event(self, body):
        payload = json.loads(body)
        topic = payload.get('type') or payload.get('topic')
        resource_id = (payload.get('data') or {}).get('id')
        event_id = str(payload.get('id') or resource_id or '')

        if topic != 'payment' or not resource_id:
            return GatewayEvent(event_id=event_id, event_type=topic, raw=payload)

        self._check_sdk()
        response = self.sdk.payment().get(resource_id)
        if response.get('status') != 200:
            raise GatewayError(f"Mercado Pago payment lookup failed: {response.get('response')}")
        mp_payment = response['response']

        status = mp_payment.get('status')
        outcome = None
        if status in self.APPROVED:
            outcome = SUCCEEDED
        elif status in self.REJECTED:
            outcome = FAILED

        currency = mp_payment.get('currency_id')
        amount = mp_payment.get('transaction_amount')
        return GatewayEvent(
            event_id=event_id,
            event_type=f"payment.{status}",
            correlation_id=mp_payment.get('external_reference'),
            outcome=outcome,
            amount=to_minor_units(amount, currency) if amount is not None else None,
            currency=currency,
            provider_payment_id=str(mp_payment.get('id')),
            raw=payload,
        )

    def create_intent(self, payment, order):
        self._check_sdk()
        base_url = current_app.config.get('APP_BASE_URL', '').rstrip('/')
        preference_data = {
            'items': [{
                'title': f"Order #{order.id}",
                'quantity': 1,
                'unit_price': float(to_major_units(payment.amount, payment.currency)),
                'currency_id': payment.currency,
            }],
            'external_reference': payment.transaction_number,
            'notification_url': f"{base_url}/payments/mercadopago/webhook",
        }
        if order.customer_email:
            preference_data['payer'] = {'email': order.customer_email}

        try:
            response = self.sdk.preference().create(preference_data)
        except Exception as e:
            logger.exception(f"[MP] Preference creation raised for order {order.id}")
            raise GatewayError(f'Mercado Pago error: {e}')

        if response.get('status') not in (200, 201):
            logger.error(f"[MP] Preference creation failed: {response.get('response')}")
            raise GatewayError('Mercado Pago preference creation failed.')

        data = response['response']
        logger.info(f"[MP] Preference {data.get('id')} created for order {order.id}")
        return GatewayIntent(external_id=payment.transaction_number, approval_url=data.get('init_point'))

    def refund(self, payment, amount, reason=None, idempotency_key=None):
        self._check_sdk()
        if not payment.provider_payment_id:
            raise GatewayError(f'Payment {payment.transaction_number} has no Mercado Pago payment to refund.')

        request_options = None
        if idempotency_key:
            request_options = RequestOptions(custom_headers={'x-idempotency-key': idempotency_key})

        try:
            response = self.sdk.refund().create(
                payment.provider_payment_id,
                {'amount': float(to_major_units(amount, payment.currency))},
                request_options,
            )
        except Exception as e:
            logger.exception(f"[MP] Refund raised for payment {payment.provider_payment_id}")
            raise GatewayError(f'Mercado Pago refund failed: {e}')

        if response.get('status') not in (200, 201):
            raise GatewayError(f"Mercado Pago refund failed: {response.get('response')}")

        data = response['response']
        status = {'approved': 'succeeded', 'in_process': 'pending'}.get(data.get('status'), 'failed')
        return GatewayRefundResult(str(data.get('id')), status)
