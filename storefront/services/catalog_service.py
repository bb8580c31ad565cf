"""Catalog lookups used by the order engine.

Checkout and allocation paths always read the database directly. Only the
public product view goes through the Redis cache.
"""
import logging
from typing import Optional

from flask import current_app
from sqlalchemy.orm import Session

from storefront.exceptions import InsufficientStockError, NotFoundError, ValidationError
from storefront.models import Product
from storefront.services import inventory_service
from storefront.services.cache_service import get_cache

logger = logging.getLogger(__name__)

CACHE_MODULE = 'products'


def get_product(session: Session, product_id: int) -> Product:
    product = session.get(Product, product_id)
    if not product:
        raise NotFoundError(f'Product {product_id} not found.', {'product_id': product_id})
    return product


def get_active_product(session: Session, product_id: int) -> Product:
    product = get_product(session, product_id)
    if not product.active:
        raise ValidationError(f'Product "{product.name}" is not available.', {'product_id': product_id})
    return product


def available_stock(session: Session, product: Product) -> Optional[int]:
    """
    Units that can still be sold right now.

    License products count unallocated codes. Digital products use the
    ``stock`` column, where NULL means unlimited.
    """
    if product.is_license:
        return inventory_service.count_available(session, product.id)
    return product.stock


def validate_quantity(session: Session, product: Product, quantity: int) -> None:
    """
    Check quantity bounds and current stock for a purchase of ``quantity`` units.

    Raises:
        ValidationError: quantity outside [min_quantity, max_quantity]
        InsufficientStockError: not enough stock
    """
    if quantity < 1:
        raise ValidationError('Quantity must be at least 1.')
    if product.min_quantity and quantity < product.min_quantity:
        raise ValidationError(
            f'Minimum quantity for "{product.name}" is {product.min_quantity}.',
            {'product_id': product.id, 'min_quantity': product.min_quantity}
        )
    if product.max_quantity and quantity > product.max_quantity:
        raise ValidationError(
            f'Maximum quantity for "{product.name}" is {product.max_quantity}.',
            {'product_id': product.id, 'max_quantity': product.max_quantity}
        )

    available = available_stock(session, product)
    if available is not None and quantity > available:
        raise InsufficientStockError(product.name, quantity, available, {'product_id': product.id})


def get_product_snapshot(session: Session, product_id: int) -> dict:
    """Cached public view of a product, including current availability."""

    def load():
        product = get_product(session, product_id)
        data = product.to_dict()
        data['available'] = available_stock(session, product)
        return data

    ttl = current_app.config.get('CACHE_PRODUCTS_TTL', 60)
    return get_cache().memoize(CACHE_MODULE, str(product_id), load, ttl)


def invalidate_product(product_id: int) -> None:
    get_cache().delete(CACHE_MODULE, str(product_id))
    logger.debug(f"[CATALOG] Product {product_id} evicted from cache")
