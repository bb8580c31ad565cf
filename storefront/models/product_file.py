"""Downloadable file attached to a digital product."""
from sqlalchemy import Column, BigInteger, String, Integer, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from storefront.database import Base, BigIntPK, utcnow


class ProductFile(Base):
    """Object-store key for a product download. Never exposed to customers directly."""

    __tablename__ = 'product_file'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    product_id = Column(BigInteger, ForeignKey('product.id'), nullable=False, index=True)
    object_key = Column(String(500), nullable=False)
    file_name = Column(String(255), nullable=False)
    max_downloads = Column(Integer, nullable=True)
    expires_in_days = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    product = relationship('Product', back_populates='files')

    def __repr__(self):
        return f"<ProductFile(id={self.id}, product_id={self.product_id}, key='{self.object_key}')>"
