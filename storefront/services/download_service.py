"""Download grants for digital products."""
import logging
import secrets
from datetime import timedelta
from typing import List, Optional

from flask import current_app
from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from storefront.database import utcnow
from storefront.exceptions import ForbiddenError, NotFoundError
from storefront.models import DownloadGrant, Order, OrderStatus, Product, ProductFile
from storefront.services.storage_service import get_storage_service

logger = logging.getLogger(__name__)


def get_grants_for_order(session: Session, order_id: int, product_id: Optional[int] = None) -> List[DownloadGrant]:
    query = session.query(DownloadGrant).filter(DownloadGrant.order_id == order_id)
    if product_id is not None:
        query = query.filter(DownloadGrant.product_id == product_id)
    return query.order_by(DownloadGrant.id).all()


def mint_grant(session: Session, order: Order, product: Product) -> DownloadGrant:
    """
    Create a download grant for the product's first file.

    The ceiling comes from the file (``max_downloads``, ``expires_in_days``)
    or the DOWNLOAD_DEFAULT_* settings.

    Raises:
        NotFoundError: the product has no file attached
    """
    product_file = session.query(ProductFile).filter(
        ProductFile.product_id == product.id
    ).order_by(ProductFile.id).first()
    if not product_file:
        raise NotFoundError(f'No file found for product "{product.name}".', {'product_id': product.id})

    max_downloads = product_file.max_downloads or current_app.config.get('DOWNLOAD_DEFAULT_MAX')
    days = product_file.expires_in_days or current_app.config.get('DOWNLOAD_DEFAULT_DAYS')
    expires_at = utcnow() + timedelta(days=days) if days else None

    grant = DownloadGrant(
        token=secrets.token_urlsafe(32),
        order_id=order.id,
        product_id=product.id,
        product_file_id=product_file.id,
        user_id=order.user_id,
        download_count=0,
        max_downloads=max_downloads,
        expires_at=expires_at,
    )
    session.add(grant)
    session.flush()
    logger.info(f"[DOWNLOAD] Grant {grant.id} minted for order {order.id}, product {product.id}")
    return grant


def redeem(session: Session, token: str) -> str:
    """
    Count one download and return a short-lived presigned URL.

    The count is incremented with a conditional UPDATE so concurrent
    requests cannot exceed ``max_downloads``.

    Raises:
        NotFoundError: unknown token
        ForbiddenError: grant revoked, expired, exhausted, or order not completed
    """
    grant = session.query(DownloadGrant).filter(DownloadGrant.token == token).first()
    if not grant:
        raise NotFoundError('Download not found.')

    order = session.get(Order, grant.order_id)
    if order is None or order.status != OrderStatus.COMPLETED.value:
        raise ForbiddenError('This download is no longer available.')

    now = utcnow()
    result = session.execute(
        update(DownloadGrant)
        .where(
            DownloadGrant.id == grant.id,
            DownloadGrant.revoked_at.is_(None),
            or_(DownloadGrant.expires_at.is_(None), DownloadGrant.expires_at > now),
            or_(DownloadGrant.max_downloads.is_(None), DownloadGrant.download_count < DownloadGrant.max_downloads)
        )
        .values(download_count=DownloadGrant.download_count + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.info(f"[DOWNLOAD] Grant {grant.id} refused (revoked, expired or exhausted)")
        raise ForbiddenError('This download link has expired or reached its download limit.')

    session.expire(grant, ['download_count'])
    product_file = grant.product_file
    return get_storage_service().presign_download(product_file.object_key, product_file.file_name)


def revoke_for_order(session: Session, order_id: int) -> int:
    """Expire every grant of an order. Returns the number of grants revoked."""
    now = utcnow()
    result = session.execute(
        update(DownloadGrant)
        .where(DownloadGrant.order_id == order_id, DownloadGrant.revoked_at.is_(None))
        .values(revoked_at=now, expires_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.info(f"[DOWNLOAD] Revoked {result.rowcount} grant(s) of order {order_id}")
    return result.rowcount


def list_for_user(session: Session, user_id: int) -> List[DownloadGrant]:
    return session.query(DownloadGrant).join(Order, Order.id == DownloadGrant.order_id).filter(
        Order.user_id == user_id,
        Order.status == OrderStatus.COMPLETED.value
    ).order_by(DownloadGrant.created_at.desc(), DownloadGrant.id.desc()).all()
