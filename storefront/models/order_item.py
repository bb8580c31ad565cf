"""Order line item."""
from sqlalchemy import Column, BigInteger, Integer, DateTime, ForeignKey, CheckConstraint
from sqlalchemy.orm import relationship

from storefront.database import Base, BigIntPK, utcnow


class OrderItem(Base):
    """Line item. ``unit_price`` is the authoritative snapshot after checkout."""

    __tablename__ = 'order_item'
    __table_args__ = (
        CheckConstraint('quantity > 0', name='ck_order_item_quantity_positive'),
    )

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    order_id = Column(BigInteger, ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True)
    product_id = Column(BigInteger, ForeignKey('product.id'), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    order = relationship('Order', back_populates='items')
    product = relationship('Product')

    @property
    def line_total(self):
        return self.unit_price * self.quantity

    def __repr__(self):
        return f"<OrderItem(order_id={self.order_id}, product_id={self.product_id}, qty={self.quantity})>"
