"""Refund coordinator."""
import logging
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from storefront.blueprints.metrics import refunds_total
from storefront.database import utcnow
from storefront.exceptions import GatewayError, InvalidStateError, NotFoundError
from storefront.gateways.registry import get_gateway
from storefront.models import (
    AuditAction, Order, Payment, PaymentStatus, Refund, RefundStatus
)
from storefront.models.order import REFUNDABLE_STATUSES
from storefront.services import download_service, order_service
from storefront.services.audit_service import log_action

logger = logging.getLogger(__name__)


class RefundResult:
    def __init__(self, refund: Refund, order: Order, payment: Payment):
        self.refund = refund
        self.order = order
        self.payment = payment


def _existing_refund(session: Session, payment_id: int) -> Optional[Refund]:
    """The payment's non-failed refund, if any."""
    return session.query(Refund).filter(
        Refund.payment_id == payment_id,
        Refund.status != RefundStatus.FAILED.value
    ).first()


def refund_order(session: Session, order_id: int, reason: Optional[str] = None,
                 actor_id: Optional[int] = None) -> RefundResult:
    """
    Refund the full paid amount of an order.

    A refund row left ``pending`` by an interrupted attempt is reused, and
    the gateway call carries an idempotency key derived from that row, so a
    retry never refunds twice.

    Gateway acceptance is final: a refund the gateway reports as ``pending``
    (queued for settlement on its side) is recorded as ``succeeded`` and the
    order moves to ``refunded``. ``pending`` on the Refund row only ever means
    the gateway has not answered yet.

    Raises:
        NotFoundError: unknown order
        InvalidStateError: order not completed/processing, no paid payment,
            or already refunded
        GatewayError: the gateway refused the refund; the refund row is
            marked failed and the order is left as it was
    """
    order = session.query(Order).filter(Order.id == order_id).with_for_update().first()
    if not order or order.is_cart:
        raise NotFoundError(f'Order {order_id} not found.', {'order_id': order_id})
    if order.status not in REFUNDABLE_STATUSES:
        raise InvalidStateError(
            f'Order {order_id} is {order.status}; only completed or processing orders can be refunded.',
            {'order_id': order_id, 'status': order.status}
        )

    payment = session.query(Payment).filter(
        Payment.order_id == order.id,
        Payment.status == PaymentStatus.PAID.value
    ).order_by(Payment.id.desc()).with_for_update().first()
    if not payment:
        raise InvalidStateError(f'Order {order_id} has no paid payment to refund.', {'order_id': order_id})

    refund = _existing_refund(session, payment.id)
    if refund and refund.status == RefundStatus.SUCCEEDED.value:
        raise InvalidStateError(f'Order {order_id} has already been refunded.', {'refund_id': refund.id})

    if refund is None:
        refund = Refund(
            payment_id=payment.id,
            order_id=order.id,
            amount=payment.amount,
            currency=payment.currency,
            status=RefundStatus.PENDING.value,
            provider=payment.gateway,
            reason=reason,
            created_by=actor_id,
        )
        session.add(refund)
        session.flush()
    else:
        logger.info(f"[REFUND] Resuming pending refund {refund.id} for order {order_id}")

    gateway = get_gateway(payment.gateway)
    try:
        result = gateway.refund(payment, refund.amount, reason=reason, idempotency_key=f"refund-{refund.id}")
    except GatewayError as e:
        _fail_refund(session, refund, e.message)
        raise

    if not result.accepted:
        message = result.error_message or 'Refund rejected by gateway.'
        _fail_refund(session, refund, message)
        raise GatewayError(message, {'refund_id': refund.id})

    refund.provider_refund_id = result.refund_id
    refund.status = RefundStatus.SUCCEEDED.value
    refund.error_message = None
    session.flush()

    session.execute(
        update(Payment)
        .where(Payment.id == payment.id, Payment.status == PaymentStatus.PAID.value)
        .values(status=PaymentStatus.REFUNDED.value, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    session.refresh(payment)

    order = order_service.mark_refunded(session, order.id)
    revoked = download_service.revoke_for_order(session, order.id)

    log_action(session, AuditAction.ORDER_REFUNDED, 'order', order.id, {
        'refund_id': refund.id,
        'amount': refund.amount,
        'currency': refund.currency,
        'provider_refund_id': refund.provider_refund_id,
        'grants_revoked': revoked,
        'reason': reason,
    }, user_id=actor_id)
    refunds_total.labels(outcome='succeeded').inc()
    logger.info(f"[REFUND] Order {order.id} refunded ({refund.amount} {refund.currency}) via {payment.gateway}")
    return RefundResult(refund, order, payment)


def _fail_refund(session: Session, refund: Refund, message: str) -> None:
    refund.status = RefundStatus.FAILED.value
    refund.error_message = message
    session.flush()
    log_action(session, AuditAction.REFUND_FAILED, 'order', refund.order_id,
               {'refund_id': refund.id, 'error': message})
    refunds_total.labels(outcome='failed').inc()
    logger.error(f"[REFUND] Refund {refund.id} for order {refund.order_id} failed: {message}")
