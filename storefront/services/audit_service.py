"""
Audit trail for order transitions, refunds and inventory changes.

Rows join the caller's transaction, so an audited action and its audit row
commit or roll back together.
"""
import json
import logging
from typing import Optional

from flask import g, has_request_context, request

from storefront.database import utcnow
from storefront.models.audit_log import AuditAction, AuditLog

logger = logging.getLogger(__name__)


def _request_origin():
    """Actor id, IP and user agent of the current HTTP request, if any."""
    if not has_request_context():
        return None, None, None
    user = g.get('user')
    return (
        user.id if user is not None else None,
        request.remote_addr,
        (request.headers.get('User-Agent') or '')[:255],
    )


def log_action(session, action: AuditAction, resource_type: Optional[str] = None,
               resource_id: Optional[int] = None, details: Optional[dict] = None,
               user_id: Optional[int] = None) -> None:
    """
    Stage an audit row on ``session``.

    ``user_id`` defaults to the signed-in user. Webhook and CLI actions have
    no request user and are recorded with a NULL actor.
    """
    try:
        request_user_id, ip_address, user_agent = _request_origin()
        entry = AuditLog(
            user_id=user_id if user_id is not None else request_user_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            details=json.dumps(details, default=str) if details else None,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=utcnow(),
        )
        session.add(entry)
        logger.info(f"[AUDIT] {action.value} {resource_type}:{resource_id} by user {entry.user_id}")
    except Exception as e:
        # The audited operation still goes through
        logger.error(f"[AUDIT] Could not record {action.value} on {resource_type}:{resource_id}: {e}")


def get_audit_logs(session, resource_type: Optional[str] = None, resource_id: Optional[int] = None,
                   limit: int = 100):
    """Newest first, optionally scoped to one resource."""
    query = session.query(AuditLog)
    if resource_type:
        query = query.filter(AuditLog.resource_type == resource_type)
    if resource_id is not None:
        query = query.filter(AuditLog.resource_id == resource_id)
    return query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit).all()
