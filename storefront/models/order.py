"""Order model. A cart is an order in the ``cart`` status."""
import enum

from sqlalchemy import Column, BigInteger, String, Integer, Text, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship

from storefront.database import Base, BigIntPK, utcnow


class OrderStatus(str, enum.Enum):
    CART = 'cart'
    PENDING = 'pending'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'
    REFUNDED = 'refunded'


# Statuses counted against a coupon's per-user limit
COUPON_COUNTED_STATUSES = (
    OrderStatus.PENDING.value,
    OrderStatus.PROCESSING.value,
    OrderStatus.COMPLETED.value,
)

REFUNDABLE_STATUSES = (OrderStatus.COMPLETED.value, OrderStatus.PROCESSING.value)


class FulfillmentKind(str, enum.Enum):
    LICENSE_CODES = 'license_codes'
    DOWNLOAD = 'download'
    MIXED = 'mixed'


class Order(Base):
    """Cart/order aggregate.

    While ``status == 'cart'`` the amounts are derived from the items and the
    coupon. Once checked out they are frozen.
    """

    __tablename__ = 'orders'
    __table_args__ = (
        Index('ix_orders_user_status', 'user_id', 'status'),
    )

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, ForeignKey('app_user.id'), nullable=True)
    customer_email = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, default=OrderStatus.CART.value, index=True)

    subtotal = Column(Integer, nullable=False, default=0)
    discount_amount = Column(Integer, nullable=False, default=0)
    total_amount = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default='USD')
    coupon_code = Column(String(50), nullable=True)

    fulfillment_result = Column(Text, nullable=True)
    fulfillment_kind = Column(String(20), nullable=True)
    fulfillment_error = Column(Text, nullable=True)
    payment_reference = Column(String(100), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    checked_out_at = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)

    user = relationship('AppUser')
    items = relationship('OrderItem', back_populates='order', cascade='all, delete-orphan',
                         order_by='OrderItem.id')
    payments = relationship('Payment', back_populates='order', order_by='Payment.id')

    @property
    def is_cart(self):
        return self.status == OrderStatus.CART.value

    def __repr__(self):
        return f"<Order(id={self.id}, status={self.status}, total={self.total_amount})>"
