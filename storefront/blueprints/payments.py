"""
Payments blueprint: gateway intents and signed webhook ingestion.

The webhook view is exempt from CSRF; authenticity comes from each
gateway's signature scheme instead. Intents keep CSRF protection.
"""
import logging

from flask import Blueprint, g, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from storefront.blueprints.metrics import webhook_events_total
from storefront.database import get_session, utcnow
from storefront.exceptions import StorefrontError
from storefront.gateways.registry import get_gateway
from storefront.middleware import guest_order_ids
from storefront.services import order_service, payment_service
from storefront.utils.request_helpers import get_int, get_json_body

logger = logging.getLogger(__name__)

payments_bp = Blueprint('payments', __name__, url_prefix='/payments')


@payments_bp.route('/<gateway_name>/intent', methods=['POST'])
def create_intent(gateway_name):
    """
    Start a gateway payment for a pending order: {orderId}.

    Only the order's owner, the browser that placed a guest order, or an
    admin may start a payment.
    """
    db_session = get_session()
    gateway = get_gateway(gateway_name)
    order_id = get_int(get_json_body(), 'orderId', 'order_id')
    order_service.get_order_for_user(db_session, order_id, g.get('user'), guest_order_ids())

    try:
        payment, intent = payment_service.create_payment_intent(
            db_session, order_id, gateway, ip_address=request.remote_addr
        )
        db_session.commit()
    except StorefrontError:
        db_session.rollback()
        raise

    return jsonify({'status': 'ok', 'payment': payment.to_dict(), 'intent': intent}), 201


@payments_bp.route('/<gateway_name>/webhook', methods=['POST'])
def webhook(gateway_name):
    """
    Signed gateway event ingestion.

    Responds 401 when the signature does not verify, 200 for every handled
    outcome (including duplicates and unknown transactions) and 500 only for
    unexpected faults, which the gateway will redeliver.
    """
    gateway = get_gateway(gateway_name)
    body = request.get_data()

    if not gateway.verify(request.headers, body):
        logger.warning(f"[WEBHOOK] Invalid {gateway.name} signature from {request.remote_addr}")
        webhook_events_total.labels(gateway=gateway.name, outcome='signature_invalid').inc()
        return jsonify({'status': 'error', 'code': 'SIGNATURE_INVALID', 'message': 'Invalid signature'}), 401

    try:
        event = gateway.parse_event(body)
    except (ValueError, TypeError, AttributeError) as e:
        # Authentic but unreadable: redelivering the same body cannot help
        logger.warning(f"[WEBHOOK] Unreadable {gateway.name} payload: {e}")
        webhook_events_total.labels(gateway=gateway.name, outcome='invalid_payload').inc()
        return jsonify({'status': 'acknowledged', 'outcome': payment_service.OUTCOME_IGNORED}), 200
    except Exception:
        logger.exception(f"[WEBHOOK] Could not read {gateway.name} event")
        webhook_events_total.labels(gateway=gateway.name, outcome='error').inc()
        return jsonify({'status': 'error', 'code': 'INTERNAL', 'message': 'Processing failed'}), 500

    db_session = get_session()
    try:
        logger.info(f"[WEBHOOK] {gateway.name} event {event.event_id} type={event.event_type}")

        webhook_event, is_new = payment_service.record_webhook_event(db_session, gateway.name, event, body)
        if not is_new:
            db_session.commit()
            webhook_events_total.labels(gateway=gateway.name, outcome=payment_service.OUTCOME_DUPLICATE).inc()
            return jsonify({'status': 'acknowledged', 'outcome': payment_service.OUTCOME_DUPLICATE}), 200

        result = payment_service.reconcile(db_session, gateway, event)

        webhook_event.outcome = result.outcome
        if result.outcome == payment_service.OUTCOME_IGNORED:
            webhook_event.status = payment_service.WEBHOOK_IGNORED
        else:
            webhook_event.status = payment_service.WEBHOOK_PROCESSED
        webhook_event.processed_at = utcnow()
        db_session.commit()
    except Exception:
        db_session.rollback()
        logger.exception(f"[WEBHOOK] Error processing {gateway.name} webhook")
        _record_failure(db_session, gateway.name, event, body)
        webhook_events_total.labels(gateway=gateway.name, outcome='error').inc()
        return jsonify({'status': 'error', 'code': 'INTERNAL', 'message': 'Processing failed'}), 500

    if result.fulfillment is not None:
        result.fulfillment.send_confirmation()

    webhook_events_total.labels(gateway=gateway.name, outcome=result.outcome).inc()
    return jsonify({'status': 'acknowledged', 'outcome': result.outcome}), 200


def _record_failure(db_session, gateway_name, event, body):
    """Keep a FAILED row for the delivery; a redelivery is processed again."""
    try:
        payment_service.mark_webhook_failed(db_session, gateway_name, event, body)
        db_session.commit()
    except SQLAlchemyError:
        db_session.rollback()
        logger.exception(f"[WEBHOOK] Could not record failed {gateway_name} delivery")
