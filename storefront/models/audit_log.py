"""
Audit Log model for tracking order lifecycle and inventory actions.
"""
import enum

from sqlalchemy import Column, BigInteger, String, Text, DateTime, ForeignKey, Enum as SQLEnum

from storefront.database import Base, BigIntPK, utcnow


class AuditAction(enum.Enum):
    """Enumeration of auditable actions."""
    ORDER_CHECKED_OUT = "ORDER_CHECKED_OUT"
    ORDER_PAID = "ORDER_PAID"
    ORDER_FULFILLED = "ORDER_FULFILLED"
    ORDER_FULFILLMENT_FAILED = "ORDER_FULFILLMENT_FAILED"
    ORDER_STATUS_CHANGED = "ORDER_STATUS_CHANGED"
    ORDER_REFUNDED = "ORDER_REFUNDED"
    REFUND_FAILED = "REFUND_FAILED"

    INVENTORY_ADDED = "INVENTORY_ADDED"
    INVENTORY_RELEASED = "INVENTORY_RELEASED"


class AuditLog(Base):
    """Audit trail. ``user_id`` is NULL for gateway-driven actions."""
    __tablename__ = 'audit_log'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, ForeignKey('app_user.id'), nullable=True)
    action = Column(SQLEnum(AuditAction, name='audit_action'), nullable=False, index=True)
    resource_type = Column(String(50))  # e.g., 'order', 'inventory_item'
    resource_id = Column(BigInteger)
    details = Column(Text)  # JSON
    ip_address = Column(String(45))
    user_agent = Column(String(255))
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<AuditLog {self.action.value} on {self.resource_type} {self.resource_id} at {self.created_at}>"
