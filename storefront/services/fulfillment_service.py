"""Fulfillment dispatcher.

Runs on a ``processing`` order: binds license codes and mints download
grants, then completes the order. If any line cannot be delivered the order
stays ``processing`` with ``fulfillment_error`` set for an operator. Codes
already bound stay bound, and a retry only allocates what is still missing,
so re-running fulfillment never issues a code twice.
"""
import logging
from typing import List, Optional

from flask import current_app
from sqlalchemy.orm import Session

from storefront.blueprints.metrics import fulfillments_total
from storefront.exceptions import InsufficientStockError, InvalidStateError, NotFoundError, StorefrontError
from storefront.models import AuditAction, FulfillmentKind, Order, OrderStatus
from storefront.services import catalog_service, download_service, inventory_service, order_service
from storefront.services.audit_service import log_action
from storefront.services.email_service import send_order_confirmation_email

logger = logging.getLogger(__name__)


class FulfillmentOutcome:
    """Result of one fulfillment attempt."""

    def __init__(self, order: Order, completed: bool, errors: Optional[List[StorefrontError]] = None,
                 license_lines: Optional[List[str]] = None, download_urls: Optional[List[str]] = None,
                 already_completed: bool = False):
        self.order = order
        self.completed = completed
        self.errors = errors or []
        self.license_lines = license_lines or []
        self.download_urls = download_urls or []
        self.already_completed = already_completed

    def raise_for_failure(self, payload=None):
        """Re-raise the first line failure, e.g. to answer an HTTP caller."""
        if self.completed:
            return
        error = self.errors[0]
        error.payload = dict(error.payload or (), **(payload or {}))
        raise error

    def send_confirmation(self) -> None:
        """Email the customer. Call after the transaction is committed."""
        if self.completed and not self.already_completed:
            send_order_confirmation_email(self.order, self.license_lines, self.download_urls)


def _download_url(path: str) -> str:
    return f"{current_app.config.get('APP_BASE_URL', '').rstrip('/')}{path}"


def fulfill_order(session: Session, order_id: int) -> FulfillmentOutcome:
    """
    Deliver every line of a processing order.

    Raises:
        NotFoundError: unknown order
        InvalidStateError: order is neither processing nor completed
    """
    order = session.query(Order).filter(Order.id == order_id).with_for_update().first()
    if not order:
        raise NotFoundError(f'Order {order_id} not found.')
    if order.status == OrderStatus.COMPLETED.value:
        logger.info(f"[FULFILLMENT] Order {order_id} already completed")
        return FulfillmentOutcome(order, True, already_completed=True)
    if order.status != OrderStatus.PROCESSING.value:
        raise InvalidStateError(f'Order {order_id} is {order.status}; only processing orders can be fulfilled.')

    errors = []
    license_lines = []
    grants = []

    for item in order.items:
        product = item.product
        if product.is_license:
            bound = inventory_service.get_by_order(session, order.id, product.id)
            remaining = item.quantity - len(bound)
            if remaining > 0:
                try:
                    bound = bound + inventory_service.allocate(session, product.id, order.id, remaining)
                except InsufficientStockError as e:
                    logger.error(f"[FULFILLMENT] Order {order_id}: {remaining} code(s) missing for product {product.id}")
                    errors.append(e)
                    continue
            license_lines.extend(entry.delivery_line for entry in bound)
        else:
            existing = download_service.get_grants_for_order(session, order.id, product.id)
            if existing:
                grants.extend(existing)
                continue
            try:
                grants.append(download_service.mint_grant(session, order, product))
            except NotFoundError as e:
                logger.error(f"[FULFILLMENT] Order {order_id}: {e.message}")
                errors.append(e)

    if errors:
        diagnostic = '; '.join(f"{e.code}: {e.message}" for e in errors)
        order.fulfillment_error = diagnostic
        session.flush()
        log_action(session, AuditAction.ORDER_FULFILLMENT_FAILED, 'order', order.id, {'error': diagnostic})
        fulfillments_total.labels(outcome='failed').inc()
        logger.error(f"[FULFILLMENT] Order {order_id} held in processing: {diagnostic}")
        return FulfillmentOutcome(order, False, errors)

    download_urls = [_download_url(grant.download_path) for grant in grants]
    if license_lines and grants:
        kind = FulfillmentKind.MIXED.value
    elif grants:
        kind = FulfillmentKind.DOWNLOAD.value
    else:
        kind = FulfillmentKind.LICENSE_CODES.value

    result = '\n'.join(license_lines + download_urls)
    order = order_service.complete(session, order.id, result, kind)
    # Cached availability is stale once codes are bound
    for item in order.items:
        catalog_service.invalidate_product(item.product_id)
    fulfillments_total.labels(outcome='completed').inc()
    logger.info(f"[FULFILLMENT] Order {order_id} completed ({kind})")
    return FulfillmentOutcome(order, True, license_lines=license_lines, download_urls=download_urls)
