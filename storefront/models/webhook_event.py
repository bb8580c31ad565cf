"""Inbound gateway webhook log, used to acknowledge redeliveries without reprocessing."""
from sqlalchemy import Column, String, DateTime

from storefront.database import Base, BigIntPK, JSONType, utcnow


class WebhookEvent(Base):
    """One verified gateway delivery."""
    __tablename__ = 'webhook_event'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    gateway = Column(String(20), nullable=False, index=True)
    event_id = Column(String(255))
    event_type = Column(String(100))
    correlation_id = Column(String(255), index=True)
    payload_json = Column(JSONType, nullable=False)
    dedupe_key = Column(String(64), nullable=False, unique=True)
    received_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    processed_at = Column(DateTime)
    status = Column(String(20), nullable=False, default='RECEIVED', index=True)
    outcome = Column(String(40))

    def __repr__(self):
        return f"<WebhookEvent(gateway='{self.gateway}', type='{self.event_type}', status='{self.status}')>"

    def to_dict(self):
        """Convert to dictionary for JSON serialization."""
        return {
            'id': self.id,
            'gateway': self.gateway,
            'event_id': self.event_id,
            'event_type': self.event_type,
            'correlation_id': self.correlation_id,
            'dedupe_key': self.dedupe_key,
            'received_at': self.received_at.isoformat() if self.received_at else None,
            'processed_at': self.processed_at.isoformat() if self.processed_at else None,
            'status': self.status,
            'outcome': self.outcome,
        }
