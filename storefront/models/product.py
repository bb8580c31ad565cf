"""Product model (catalog, read-only to the order engine)."""
import enum

from sqlalchemy import Column, String, Integer, Boolean, DateTime
from sqlalchemy.orm import relationship

from storefront.database import Base, BigIntPK, utcnow


class ProductType(str, enum.Enum):
    """How a product is delivered after payment."""
    LICENSE_CODE = 'license_code'
    DIGITAL = 'digital'


class Product(Base):
    """Sellable digital product. Prices are integer minor currency units."""

    __tablename__ = 'product'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    slug = Column(String(200), nullable=False, unique=True)
    price = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default='USD')
    product_type = Column(String(20), nullable=False, default=ProductType.LICENSE_CODE.value)
    # NULL means unlimited (only meaningful for digital products)
    stock = Column(Integer, nullable=True)
    min_quantity = Column(Integer, nullable=False, default=1)
    max_quantity = Column(Integer, nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    files = relationship('ProductFile', back_populates='product', order_by='ProductFile.id')

    @property
    def is_license(self):
        return self.product_type == ProductType.LICENSE_CODE.value

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'slug': self.slug,
            'price': self.price,
            'currency': self.currency,
            'product_type': self.product_type,
            'stock': self.stock,
            'min_quantity': self.min_quantity,
            'max_quantity': self.max_quantity,
            'active': self.active,
        }

    def __repr__(self):
        return f"<Product(id={self.id}, slug='{self.slug}', type={self.product_type})>"
