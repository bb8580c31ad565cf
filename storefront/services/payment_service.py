"""Payment intents and webhook reconciliation.

Reconciliation is gateway-agnostic: adapters verify and parse deliveries,
this module maps the parsed event onto the local Payment/Order pair.
Payment status changes are conditional UPDATEs keyed by the current status,
so a replayed delivery finds nothing to change and is acknowledged.
"""
import hashlib
import json
import logging
import secrets
from typing import Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storefront.database import utcnow
from storefront.exceptions import InvalidStateError, ValidationError
from storefront.gateways.base import FAILED, SUCCEEDED, GatewayEvent, PaymentGateway
from storefront.models import Order, OrderStatus, Payment, PaymentStatus, WebhookEvent
from storefront.services import fulfillment_service, order_service

logger = logging.getLogger(__name__)

# Reconciliation outcomes, also used as the webhook_event.outcome and metric label
OUTCOME_IGNORED = 'ignored'
OUTCOME_UNKNOWN = 'unknown_transaction'
OUTCOME_ALREADY_PROCESSED = 'already_processed'
OUTCOME_STALE = 'stale'
OUTCOME_AMOUNT_MISMATCH = 'amount_mismatch'
OUTCOME_ORDER_NOT_PENDING = 'order_not_pending'
OUTCOME_FULFILLED = 'fulfilled'
OUTCOME_FULFILLMENT_FAILED = 'fulfillment_failed'
OUTCOME_PAYMENT_FAILED = 'payment_failed'
OUTCOME_DUPLICATE = 'duplicate'

# webhook_event.status values
WEBHOOK_RECEIVED = 'RECEIVED'
WEBHOOK_PROCESSED = 'PROCESSED'
WEBHOOK_IGNORED = 'IGNORED'
WEBHOOK_FAILED = 'FAILED'


class ReconcileResult:
    """What a webhook delivery did to the local records."""

    def __init__(self, outcome: str, payment: Optional[Payment] = None, fulfillment=None):
        self.outcome = outcome
        self.payment = payment
        self.fulfillment = fulfillment

    def __repr__(self):
        return f"<ReconcileResult(outcome='{self.outcome}')>"


def generate_transaction_number() -> str:
    """Internal payment reference: TXN-<timestamp>-<random>."""
    return f"TXN-{utcnow().strftime('%Y%m%d%H%M%S')}-{secrets.token_hex(4).upper()}"


def create_payment_intent(session: Session, order_id: int, gateway: PaymentGateway,
                          ip_address: Optional[str] = None) -> Tuple[Payment, dict]:
    """
    Create a pending Payment for a pending order and the matching upstream intent.

    The amount always comes from the frozen order total.

    Raises:
        NotFoundError: unknown order
        InvalidStateError: order is not pending
        GatewayError: the gateway refused or could not be reached
    """
    order = order_service.get_order(session, order_id)
    if order.status != OrderStatus.PENDING.value:
        raise InvalidStateError(
            f'Order {order_id} is {order.status}; only pending orders can be paid.',
            {'order_id': order_id, 'status': order.status}
        )
    if order.total_amount <= 0:
        raise ValidationError('Order total must be greater than zero to start a gateway payment.')

    payment = Payment(
        transaction_number=generate_transaction_number(),
        gateway=gateway.name,
        order_id=order.id,
        amount=order.total_amount,
        currency=order.currency,
        status=PaymentStatus.PENDING.value,
        ip_address=ip_address,
    )
    session.add(payment)
    session.flush()

    intent = gateway.create_intent(payment, order)
    payment.external_transaction_id = intent.external_id
    session.flush()

    logger.info(
        f"[PAYMENT] {payment.transaction_number} created on {gateway.name} for order {order.id} "
        f"({payment.amount} {payment.currency})"
    )
    return payment, intent.to_dict()


def record_manual_payment(session: Session, order: Order, method: Optional[str] = None,
                          ip_address: Optional[str] = None) -> Payment:
    """Paid Payment row for an administrative ``pay`` on a pending order."""
    now = utcnow()
    transaction_number = generate_transaction_number()
    payment = Payment(
        transaction_number=transaction_number,
        gateway='manual',
        external_transaction_id=transaction_number,
        order_id=order.id,
        amount=order.total_amount,
        currency=order.currency,
        method=method or 'manual',
        status=PaymentStatus.PAID.value,
        ip_address=ip_address,
        paid_at=now,
    )
    session.add(payment)
    session.flush()
    logger.info(f"[PAYMENT] Manual payment {transaction_number} recorded for order {order.id}")
    return payment


def compute_dedupe_key(gateway_name: str, event_id: Optional[str], body: bytes) -> str:
    digest = hashlib.sha256()
    digest.update(f"{gateway_name}:{event_id or ''}:".encode('utf-8'))
    digest.update(body)
    return digest.hexdigest()


def record_webhook_event(session: Session, gateway_name: str, event: GatewayEvent,
                         body: bytes) -> Tuple[Optional[WebhookEvent], bool]:
    """
    Log a verified delivery.

    Returns:
        (event row, is_new). ``is_new`` is False for a redelivery, in which
        case nothing else must be done with it. A delivery whose earlier
        processing FAILED is handed back as new so the retry is applied.
    """
    dedupe_key = compute_dedupe_key(gateway_name, event.event_id, body)

    existing = session.query(WebhookEvent).filter(WebhookEvent.dedupe_key == dedupe_key).first()
    if existing and existing.status == WEBHOOK_FAILED:
        logger.info(f"[WEBHOOK] Retrying failed {gateway_name} delivery: {dedupe_key[:16]}...")
        existing.status = WEBHOOK_RECEIVED
        existing.outcome = None
        session.flush()
        return existing, True
    if existing:
        logger.info(f"[WEBHOOK] Duplicate {gateway_name} delivery: {dedupe_key[:16]}...")
        return existing, False

    webhook_event = WebhookEvent(
        gateway=gateway_name,
        event_id=event.event_id,
        event_type=event.event_type,
        correlation_id=event.correlation_id,
        payload_json=event.raw or json.loads(body or b'{}'),
        dedupe_key=dedupe_key,
        status=WEBHOOK_RECEIVED,
    )
    try:
        session.add(webhook_event)
        session.flush()
    except IntegrityError:
        # Another worker recorded the same delivery first
        session.rollback()
        logger.warning(f"[WEBHOOK] Dedupe conflict (race): {dedupe_key[:16]}...")
        return None, False

    return webhook_event, True


def mark_webhook_failed(session: Session, gateway_name: str, event: GatewayEvent, body: bytes) -> None:
    """
    Record a delivery whose processing raised. Call after rolling back the
    failed unit of work; the caller commits.
    """
    dedupe_key = compute_dedupe_key(gateway_name, event.event_id, body)
    webhook_event = session.query(WebhookEvent).filter(WebhookEvent.dedupe_key == dedupe_key).first()
    if webhook_event is None:
        webhook_event = WebhookEvent(
            gateway=gateway_name,
            event_id=event.event_id,
            event_type=event.event_type,
            correlation_id=event.correlation_id,
            payload_json=event.raw or json.loads(body or b'{}'),
            dedupe_key=dedupe_key,
        )
        session.add(webhook_event)
    webhook_event.status = WEBHOOK_FAILED
    webhook_event.outcome = 'error'
    webhook_event.processed_at = utcnow()
    session.flush()


def _set_payment_status(session: Session, payment_id: int, expected, to_status: str, **values) -> bool:
    values['status'] = to_status
    values['updated_at'] = utcnow()
    result = session.execute(
        update(Payment)
        .where(Payment.id == payment_id, Payment.status.in_(list(expected)))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def reconcile(session: Session, gateway: PaymentGateway, event: GatewayEvent) -> ReconcileResult:
    """
    Apply a verified gateway event to the local payment and order.

    Never raises for expected conditions (unknown transaction, replays,
    out-of-order events); those come back as an outcome so the caller can
    acknowledge the delivery.
    """
    if event.outcome not in (SUCCEEDED, FAILED):
        logger.info(f"[WEBHOOK] Ignoring {gateway.name} event {event.event_type}")
        return ReconcileResult(OUTCOME_IGNORED)

    correlation_id = gateway.extract_correlation(event)
    payment = None
    if correlation_id:
        payment = session.query(Payment).filter(
            Payment.gateway == gateway.name,
            Payment.external_transaction_id == str(correlation_id)
        ).with_for_update().first()

    if payment is None:
        logger.warning(f"[WEBHOOK] {gateway.name} event for unknown transaction {correlation_id}")
        return ReconcileResult(OUTCOME_UNKNOWN)

    if event.outcome == SUCCEEDED:
        return _apply_success(session, payment, event)
    return _apply_failure(session, payment, event)


def _apply_success(session: Session, payment: Payment, event: GatewayEvent) -> ReconcileResult:
    if payment.status == PaymentStatus.PAID.value:
        logger.info(f"[WEBHOOK] {payment.transaction_number} already paid")
        return ReconcileResult(OUTCOME_ALREADY_PROCESSED, payment)
    if payment.status == PaymentStatus.REFUNDED.value:
        logger.info(f"[WEBHOOK] Late success for refunded {payment.transaction_number}")
        return ReconcileResult(OUTCOME_STALE, payment)

    currency_mismatch = event.currency and event.currency.upper() != payment.currency.upper()
    if (event.amount is not None and event.amount != payment.amount) or currency_mismatch:
        logger.error(
            f"[WEBHOOK] Amount mismatch on {payment.transaction_number}: "
            f"expected {payment.amount} {payment.currency}, got {event.amount} {event.currency}"
        )
        _set_payment_status(
            session, payment.id, (PaymentStatus.PENDING.value,), PaymentStatus.FAILED.value,
            failure_reason=f'amount_mismatch: {event.amount} {event.currency}'
        )
        session.refresh(payment)
        return ReconcileResult(OUTCOME_AMOUNT_MISMATCH, payment)

    # A failed attempt may still succeed later on the same intent
    changed = _set_payment_status(
        session, payment.id,
        (PaymentStatus.PENDING.value, PaymentStatus.FAILED.value),
        PaymentStatus.PAID.value,
        provider_payment_id=event.provider_payment_id or payment.provider_payment_id,
        failure_reason=None,
        paid_at=utcnow(),
    )
    session.refresh(payment)
    if not changed:
        return ReconcileResult(OUTCOME_ALREADY_PROCESSED, payment)

    logger.info(f"[PAYMENT] {payment.transaction_number} paid")

    try:
        order_service.mark_paid(session, payment.order_id, payment.transaction_number)
    except InvalidStateError as e:
        # Paid money against an order that moved on (e.g. cancelled); left for an operator
        logger.error(f"[WEBHOOK] Payment {payment.transaction_number} paid but {e.message}")
        return ReconcileResult(OUTCOME_ORDER_NOT_PENDING, payment)

    fulfillment = fulfillment_service.fulfill_order(session, payment.order_id)
    outcome = OUTCOME_FULFILLED if fulfillment.completed else OUTCOME_FULFILLMENT_FAILED
    return ReconcileResult(outcome, payment, fulfillment)


def _apply_failure(session: Session, payment: Payment, event: GatewayEvent) -> ReconcileResult:
    if payment.status == PaymentStatus.FAILED.value:
        return ReconcileResult(OUTCOME_ALREADY_PROCESSED, payment)
    if payment.status != PaymentStatus.PENDING.value:
        logger.info(f"[WEBHOOK] Out-of-order failure for {payment.status} {payment.transaction_number}")
        return ReconcileResult(OUTCOME_STALE, payment)

    changed = _set_payment_status(
        session, payment.id, (PaymentStatus.PENDING.value,), PaymentStatus.FAILED.value,
        failure_reason=event.event_type
    )
    session.refresh(payment)
    if not changed:
        return ReconcileResult(OUTCOME_ALREADY_PROCESSED, payment)

    logger.info(f"[PAYMENT] {payment.transaction_number} failed ({event.event_type})")
    return ReconcileResult(OUTCOME_PAYMENT_FAILED, payment)
