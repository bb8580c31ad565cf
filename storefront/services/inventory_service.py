"""Inventory allocator for license-code products.

Allocation binds unconsumed codes to an order in one all-or-nothing step.
Once a code is bound it stays bound; only an explicit administrative
release puts it back in the pool.
"""
import logging
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from storefront.database import utcnow
from storefront.exceptions import InsufficientStockError, InvalidStateError, NotFoundError, ValidationError
from storefront.models import AuditAction, InventoryItem, Order, OrderStatus, Product
from storefront.services.audit_service import log_action

logger = logging.getLogger(__name__)


def count_available(session: Session, product_id: int) -> int:
    """Number of unconsumed items for a product."""
    return session.execute(
        select(func.count(InventoryItem.id)).where(
            InventoryItem.product_id == product_id,
            InventoryItem.order_id.is_(None)
        )
    ).scalar_one()


def allocate(session: Session, product_id: int, order_id: int, quantity: int) -> List[InventoryItem]:
    """
    Bind exactly ``quantity`` unconsumed items to ``order_id``, lowest ids first.

    Candidate rows are locked with SKIP LOCKED so a concurrent allocation for
    the same product fails fast instead of waiting. The bind itself only
    touches rows that are still unconsumed; if any candidate was taken in the
    meantime the rows this call bound are unbound before raising, so the
    outcome is all or nothing.

    Raises:
        InsufficientStockError: fewer than ``quantity`` items available now
    """
    if quantity < 1:
        raise ValidationError('Allocation quantity must be at least 1.')

    candidate_ids = list(session.execute(
        select(InventoryItem.id)
        .where(InventoryItem.product_id == product_id, InventoryItem.order_id.is_(None))
        .order_by(InventoryItem.id)
        .limit(quantity)
        .with_for_update(skip_locked=True)
    ).scalars())

    if len(candidate_ids) < quantity:
        logger.warning(
            f"[INVENTORY] Product {product_id}: order {order_id} needs {quantity}, "
            f"{len(candidate_ids)} available"
        )
        raise InsufficientStockError(f"product {product_id}", quantity, len(candidate_ids),
                                     {'product_id': product_id, 'order_id': order_id})

    allocated_at = utcnow()
    result = session.execute(
        update(InventoryItem)
        .where(InventoryItem.id.in_(candidate_ids), InventoryItem.order_id.is_(None))
        .values(order_id=order_id, allocated_at=allocated_at)
        .execution_options(synchronize_session=False)
    )

    if result.rowcount != quantity:
        session.execute(
            update(InventoryItem)
            .where(
                InventoryItem.id.in_(candidate_ids),
                InventoryItem.order_id == order_id,
                InventoryItem.allocated_at == allocated_at
            )
            .values(order_id=None, allocated_at=None)
            .execution_options(synchronize_session=False)
        )
        logger.warning(
            f"[INVENTORY] Product {product_id}: lost race for order {order_id} "
            f"({result.rowcount}/{quantity} bound, undone)"
        )
        raise InsufficientStockError(f"product {product_id}", quantity, result.rowcount,
                                     {'product_id': product_id, 'order_id': order_id})

    items = (
        session.query(InventoryItem)
        .filter(InventoryItem.id.in_(candidate_ids))
        .order_by(InventoryItem.id)
        .populate_existing()
        .all()
    )
    logger.info(f"[INVENTORY] Allocated {quantity} item(s) of product {product_id} to order {order_id}")
    return items


def get_by_order(session: Session, order_id: int, product_id: Optional[int] = None) -> List[InventoryItem]:
    """Items bound to an order, in allocation order."""
    query = session.query(InventoryItem).filter(InventoryItem.order_id == order_id)
    if product_id is not None:
        query = query.filter(InventoryItem.product_id == product_id)
    return query.order_by(InventoryItem.id).all()


def parse_inventory_line(line: str) -> Optional[Tuple[str, Optional[str]]]:
    """``code`` or ``code:password``. Blank lines and ``#`` comments yield None."""
    line = line.strip()
    if not line or line.startswith('#'):
        return None
    code, sep, password = line.partition(':')
    code = code.strip()
    if not code:
        raise ValidationError(f'Invalid inventory line: {line!r}')
    return code, (password.strip() or None) if sep else None


def add_items(session: Session, product_id: int, entries: Iterable[Tuple[str, Optional[str]]]) -> int:
    """
    Add codes to a license product's pool. Codes already present are skipped.

    Returns:
        Number of items added
    """
    product = session.get(Product, product_id)
    if not product:
        raise NotFoundError(f'Product {product_id} not found.')
    if not product.is_license:
        raise ValidationError(f'Product "{product.name}" is not a license-code product.')

    existing = set(session.execute(
        select(InventoryItem.code).where(InventoryItem.product_id == product_id)
    ).scalars())

    added = 0
    for code, password in entries:
        if code in existing:
            continue
        session.add(InventoryItem(product_id=product_id, code=code, password=password))
        existing.add(code)
        added += 1

    session.flush()
    logger.info(f"[INVENTORY] Added {added} item(s) to product {product_id}")
    if added:
        log_action(session, AuditAction.INVENTORY_ADDED, 'product', product_id, {'added': added})
    return added


def release_item(session: Session, item_id: int) -> InventoryItem:
    """
    Administrative release of an allocated item back to the pool.

    Items on a completed order were delivered to the customer and cannot be
    released.
    """
    item = session.query(InventoryItem).filter(InventoryItem.id == item_id).with_for_update().first()
    if not item:
        raise NotFoundError(f'Inventory item {item_id} not found.')
    if item.order_id is None:
        raise InvalidStateError(f'Inventory item {item_id} is not allocated.')

    order = session.get(Order, item.order_id)
    if order is not None and order.status == OrderStatus.COMPLETED.value:
        raise InvalidStateError(
            f'Inventory item {item_id} was delivered with completed order {order.id}.',
            {'order_id': order.id}
        )

    previous_order_id = item.order_id
    item.order_id = None
    item.allocated_at = None
    session.flush()
    logger.warning(f"[INVENTORY] Item {item_id} released from order {previous_order_id}")
    log_action(session, AuditAction.INVENTORY_RELEASED, 'inventory_item', item_id,
               {'order_id': previous_order_id, 'product_id': item.product_id})
    return item
