"""License-code inventory."""
from sqlalchemy import Column, BigInteger, String, DateTime, ForeignKey, UniqueConstraint, Index
from sqlalchemy.orm import relationship

from storefront.database import Base, BigIntPK, utcnow


class InventoryItem(Base):
    """One unit of license-code stock. ``order_id IS NULL`` means available."""

    __tablename__ = 'inventory_item'
    __table_args__ = (
        UniqueConstraint('product_id', 'code', name='uq_inventory_product_code'),
        Index('ix_inventory_available', 'product_id', 'order_id', 'id'),
    )

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    product_id = Column(BigInteger, ForeignKey('product.id'), nullable=False)
    code = Column(String(255), nullable=False)
    password = Column(String(255), nullable=True)
    order_id = Column(BigInteger, ForeignKey('orders.id'), nullable=True)
    allocated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    product = relationship('Product')

    @property
    def delivery_line(self):
        """``code:password`` or the bare code."""
        return f"{self.code}:{self.password}" if self.password else self.code

    def __repr__(self):
        return f"<InventoryItem(id={self.id}, product_id={self.product_id}, order_id={self.order_id})>"
