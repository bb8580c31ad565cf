"""PayPal adapter (Orders v2 + webhook signature verification API)."""
import json
import logging

import requests

from storefront.exceptions import GatewayError
from storefront.gateways.base import (
    FAILED, SUCCEEDED, GatewayEvent, GatewayIntent, GatewayRefundResult, PaymentGateway
)
from storefront.utils.formatters import to_major_units, to_minor_units

logger = logging.getLogger(__name__)


class PayPalGateway(PaymentGateway):
    name = 'paypal'

    REQUIRED_HEADERS = (
        'paypal-transmission-id',
        'paypal-transmission-time',
        'paypal-transmission-sig',
        'paypal-cert-url',
        'paypal-auth-algo',
    )
    SUCCEEDED_EVENTS = {'PAYMENT.CAPTURE.COMPLETED'}
    FAILED_EVENTS = {'PAYMENT.CAPTURE.DENIED', 'PAYMENT.CAPTURE.DECLINED'}
    TIMEOUT = 10

    def __init__(self, client_id=None, client_secret=None, webhook_id=None,
                 api_base='https://api-m.sandbox.paypal.com'):
        self.client_id = client_id
        self.client_secret = client_secret
        self.webhook_id = webhook_id
        self.api_base = api_base.rstrip('/')

    @classmethod
    def from_config(cls, config):
        return cls(
            config.get('PAYPAL_CLIENT_ID'),
            config.get('PAYPAL_CLIENT_SECRET'),
            config.get('PAYPAL_WEBHOOK_ID'),
            config.get('PAYPAL_API_BASE', 'https://api-m.sandbox.paypal.com'),
        )

    def _access_token(self):
        if not self.client_id or not self.client_secret:
            raise GatewayError('PayPal is not configured.')
        response = requests.post(
            f"{self.api_base}/v1/oauth2/token",
            auth=(self.client_id, self.client_secret),
            data={'grant_type': 'client_credentials'},
            headers={'Accept': 'application/json'},
            timeout=self.TIMEOUT,
        )
        response.raise_for_status()
        return response.json()['access_token']

    def _headers(self, request_id=None):
        headers = {
            'Authorization': f'Bearer {self._access_token()}',
            'Content-Type': 'application/json',
        }
        if request_id:
            headers['PayPal-Request-Id'] = request_id
        return headers

    def verify(self, headers, body):
        if self.skip_verification():
            return True

        missing = [name for name in self.REQUIRED_HEADERS if not headers.get(name)]
        if missing:
            logger.warning(f"[PAYPAL] Missing webhook headers: {', '.join(missing)}")
            return False
        if not self.webhook_id:
            logger.error("[PAYPAL] PAYPAL_WEBHOOK_ID is not configured")
            return False

        try:
            response = requests.post(
                f"{self.api_base}/v1/notifications/verify-webhook-signature",
                json={
                    'auth_algo': headers.get('paypal-auth-algo'),
                    'cert_url': headers.get('paypal-cert-url'),
                    'transmission_id': headers.get('paypal-transmission-id'),
                    'transmission_sig': headers.get('paypal-transmission-sig'),
                    'transmission_time': headers.get('paypal-transmission-time'),
                    'webhook_id': self.webhook_id,
                    'webhook_event': json.loads(body),
                },
                headers=self._headers(),
                timeout=self.TIMEOUT,
            )
            response.raise_for_status()
            status = response.json().get('verification_status')
        except (requests.RequestException, GatewayError, ValueError, KeyError) as e:
            logger.error(f"[PAYPAL] Signature verification call failed: {e}")
            return False

        if status != 'SUCCESS':
            logger.warning(f"[PAYPAL] Signature verification status: {status}")
            return False
        return True

    def parse_event(self, body):
        payload = json.loads(body)
        event_type = payload.get('event_type')
        resource = payload.get('resource') or {}

        outcome = None
        if event_type in self.SUCCEEDED_EVENTS:
            outcome = SUCCEEDED
        elif event_type in self.FAILED_EVENTS:
            outcome = FAILED

        related = ((resource.get('supplementary_data') or {}).get('related_ids') or {})
        amount_info = resource.get('amount') or {}
        currency = amount_info.get('currency_code')
        amount = None
        if amount_info.get('value') is not None:
            amount = to_minor_units(amount_info['value'], currency)

        return GatewayEvent(
            event_id=payload.get('id'),
            event_type=event_type,
            correlation_id=related.get('order_id'),
            outcome=outcome,
            amount=amount,
            currency=currency,
            provider_payment_id=resource.get('id'),
            raw=payload,
        )

    def create_intent(self, payment, order):
        body = {
            'intent': 'CAPTURE',
            'purchase_units': [{
                'reference_id': payment.transaction_number,
                'custom_id': str(order.id),
                'amount': {
                    'currency_code': payment.currency,
                    'value': str(to_major_units(payment.amount, payment.currency)),
                },
            }],
        }
        try:
            response = requests.post(
                f"{self.api_base}/v2/checkout/orders",
                json=body,
                headers=self._headers(request_id=payment.transaction_number),
                timeout=self.TIMEOUT,
            )
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as e:
            logger.error(f"[PAYPAL] Order creation failed for order {order.id}: {e}")
            raise GatewayError(f'PayPal error: {e}')

        approval_url = next(
            (link['href'] for link in data.get('links', []) if link.get('rel') in ('approve', 'payer-action')),
            None
        )
        logger.info(f"[PAYPAL] Order {data.get('id')} created for order {order.id}")
        return GatewayIntent(external_id=data['id'], approval_url=approval_url)

    def refund(self, payment, amount, reason=None, idempotency_key=None):
        capture_id = payment.provider_payment_id
        if not capture_id:
            raise GatewayError(f'Payment {payment.transaction_number} has no PayPal capture to refund.')

        body = {
            'amount': {
                'currency_code': payment.currency,
                'value': str(to_major_units(amount, payment.currency)),
            },
        }
        if reason:
            body['note_to_payer'] = reason[:255]

        try:
            response = requests.post(
                f"{self.api_base}/v2/payments/captures/{capture_id}/refund",
                json=body,
                headers=self._headers(request_id=idempotency_key),
                timeout=self.TIMEOUT,
            )
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as e:
            logger.error(f"[PAYPAL] Refund failed for capture {capture_id}: {e}")
            raise GatewayError(f'PayPal refund failed: {e}')

        status = {'COMPLETED': 'succeeded', 'PENDING': 'pending'}.get(data.get('status'), 'failed')
        return GatewayRefundResult(data.get('id'), status, (data.get('status_details') or {}).get('reason'))
