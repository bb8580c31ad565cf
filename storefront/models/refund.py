"""Refund model."""
import enum

from sqlalchemy import (
    Column, BigInteger, String, Integer, Text, DateTime, ForeignKey, Index, UniqueConstraint, text
)
from sqlalchemy.orm import relationship

from storefront.database import Base, BigIntPK, utcnow


class RefundStatus(str, enum.Enum):
    PENDING = 'pending'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'


class Refund(Base):
    """Refund issued against a payment. At most one non-failed row per payment."""

    __tablename__ = 'refund'
    __table_args__ = (
        UniqueConstraint('provider', 'provider_refund_id', name='uq_refund_provider_id'),
        Index(
            'uq_refund_active_per_payment', 'payment_id', unique=True,
            postgresql_where=text("status <> 'failed'"),
            sqlite_where=text("status <> 'failed'"),
        ),
    )

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    payment_id = Column(BigInteger, ForeignKey('payment.id'), nullable=False)
    order_id = Column(BigInteger, ForeignKey('orders.id'), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(20), nullable=False, default=RefundStatus.PENDING.value)
    provider = Column(String(20), nullable=False)
    provider_refund_id = Column(String(255), nullable=True)
    reason = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    created_by = Column(BigInteger, ForeignKey('app_user.id'), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    payment = relationship('Payment', back_populates='refunds')

    def to_dict(self):
        return {
            'id': self.id,
            'payment_id': self.payment_id,
            'order_id': self.order_id,
            'amount': self.amount,
            'currency': self.currency,
            'status': self.status,
            'provider': self.provider,
            'provider_refund_id': self.provider_refund_id,
            'reason': self.reason,
            'error_message': self.error_message,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Refund(id={self.id}, payment_id={self.payment_id}, status={self.status})>"
