"""Coupon model."""
import enum

from sqlalchemy import Column, String, Integer, Boolean, DateTime, CheckConstraint

from storefront.database import Base, BigIntPK, utcnow


class DiscountType(str, enum.Enum):
    PERCENTAGE = 'percentage'
    FIXED = 'fixed'


def normalize_coupon_code(code):
    """Coupon codes are compared trimmed and upper-cased."""
    return (code or '').strip().upper()


class Coupon(Base):
    """Discount code. ``used_count`` only moves through coupon_service.redeem."""

    __tablename__ = 'coupon'
    __table_args__ = (
        CheckConstraint('used_count >= 0', name='ck_coupon_used_count_positive'),
        CheckConstraint('max_uses IS NULL OR used_count <= max_uses', name='ck_coupon_used_within_cap'),
    )

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    code = Column(String(50), nullable=False, unique=True)
    discount_type = Column(String(20), nullable=False)
    amount = Column(Integer, nullable=False)  # percent, or minor units for fixed
    currency = Column(String(3), nullable=True)
    max_uses = Column(Integer, nullable=True)
    used_count = Column(Integer, nullable=False, default=0)
    per_user_limit = Column(Integer, nullable=True)
    min_order_amount = Column(Integer, nullable=True)
    starts_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def to_dict(self):
        return {
            'code': self.code,
            'discount_type': self.discount_type,
            'amount': self.amount,
            'currency': self.currency,
            'max_uses': self.max_uses,
            'used_count': self.used_count,
            'per_user_limit': self.per_user_limit,
            'min_order_amount': self.min_order_amount,
            'starts_at': self.starts_at.isoformat() if self.starts_at else None,
            'expires_at': self.expires_at.isoformat() if self.expires_at else None,
            'active': self.active,
        }

    def __repr__(self):
        return f"<Coupon(code='{self.code}', type={self.discount_type}, amount={self.amount})>"
