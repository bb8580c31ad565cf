"""Scoped, expiring download grant for a digital product."""
from sqlalchemy import Column, BigInteger, String, Integer, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from storefront.database import Base, BigIntPK, utcnow


class DownloadGrant(Base):
    """Customers redeem grants by token; the object key never leaves the server."""

    __tablename__ = 'download_grant'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    token = Column(String(64), nullable=False, unique=True)
    order_id = Column(BigInteger, ForeignKey('orders.id'), nullable=False, index=True)
    product_id = Column(BigInteger, ForeignKey('product.id'), nullable=False)
    product_file_id = Column(BigInteger, ForeignKey('product_file.id'), nullable=False)
    user_id = Column(BigInteger, ForeignKey('app_user.id'), nullable=True, index=True)
    download_count = Column(Integer, nullable=False, default=0)
    max_downloads = Column(Integer, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    revoked_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    product_file = relationship('ProductFile')
    product = relationship('Product')

    @property
    def download_path(self):
        return f"/downloads/{self.token}"

    def is_redeemable(self, now=None):
        now = now or utcnow()
        if self.revoked_at is not None:
            return False
        if self.expires_at is not None and self.expires_at <= now:
            return False
        if self.max_downloads is not None and self.download_count >= self.max_downloads:
            return False
        return True

    def to_dict(self):
        return {
            'id': self.id,
            'order_id': self.order_id,
            'product_id': self.product_id,
            'file_name': self.product_file.file_name if self.product_file else None,
            'download_url': self.download_path,
            'download_count': self.download_count,
            'max_downloads': self.max_downloads,
            'expires_at': self.expires_at.isoformat() if self.expires_at else None,
            'revoked': self.revoked_at is not None,
            'redeemable': self.is_redeemable(),
        }

    def __repr__(self):
        return f"<DownloadGrant(id={self.id}, order_id={self.order_id}, count={self.download_count})>"
