"""Models package - exports all SQLAlchemy models."""
from storefront.models.app_user import AppUser
from storefront.models.product import Product, ProductType
from storefront.models.product_file import ProductFile
from storefront.models.coupon import Coupon, DiscountType, normalize_coupon_code
from storefront.models.order import (
    Order, OrderStatus, FulfillmentKind, COUPON_COUNTED_STATUSES, REFUNDABLE_STATUSES
)
from storefront.models.order_item import OrderItem
from storefront.models.inventory_item import InventoryItem
from storefront.models.payment import Payment, PaymentStatus
from storefront.models.refund import Refund, RefundStatus
from storefront.models.download_grant import DownloadGrant
from storefront.models.webhook_event import WebhookEvent
from storefront.models.audit_log import AuditLog, AuditAction

__all__ = [
    'AppUser',
    # Catalog
    'Product', 'ProductType', 'ProductFile',
    'Coupon', 'DiscountType', 'normalize_coupon_code',
    # Orders
    'Order', 'OrderStatus', 'FulfillmentKind', 'COUPON_COUNTED_STATUSES', 'REFUNDABLE_STATUSES',
    'OrderItem', 'InventoryItem',
    # Payments
    'Payment', 'PaymentStatus', 'Refund', 'RefundStatus', 'WebhookEvent',
    'DownloadGrant',
    'AuditLog', 'AuditAction',
]
