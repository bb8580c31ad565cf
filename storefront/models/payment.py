"""Payment model."""
import enum

from sqlalchemy import Column, BigInteger, String, Integer, Text, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship

from storefront.database import Base, BigIntPK, utcnow


class PaymentStatus(str, enum.Enum):
    PENDING = 'pending'
    PAID = 'paid'
    FAILED = 'failed'
    REFUNDED = 'refunded'


class Payment(Base):
    """Payment attempt against an order.

    ``(gateway, external_transaction_id)`` is the idempotency key for
    webhook reconciliation.
    """

    __tablename__ = 'payment'
    __table_args__ = (
        UniqueConstraint('gateway', 'external_transaction_id', name='uq_payment_gateway_external_id'),
    )

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    transaction_number = Column(String(64), nullable=False, unique=True)
    gateway = Column(String(20), nullable=False)
    external_transaction_id = Column(String(255), nullable=True)
    # Gateway id needed for refunds when it differs from the correlation id (PayPal capture, MP payment)
    provider_payment_id = Column(String(255), nullable=True)
    order_id = Column(BigInteger, ForeignKey('orders.id'), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    method = Column(String(30), nullable=True)
    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True)
    failure_reason = Column(Text, nullable=True)
    ip_address = Column(String(45), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    paid_at = Column(DateTime, nullable=True)

    order = relationship('Order', back_populates='payments')
    refunds = relationship('Refund', back_populates='payment', order_by='Refund.id')

    def to_dict(self):
        return {
            'id': self.id,
            'transaction_number': self.transaction_number,
            'gateway': self.gateway,
            'external_transaction_id': self.external_transaction_id,
            'order_id': self.order_id,
            'amount': self.amount,
            'currency': self.currency,
            'method': self.method,
            'status': self.status,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'paid_at': self.paid_at.isoformat() if self.paid_at else None,
        }

    def __repr__(self):
        return f"<Payment(txn='{self.transaction_number}', gateway={self.gateway}, status={self.status})>"
