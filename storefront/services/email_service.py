"""
Order confirmation emails sent through Flask-Mail.

Delivery is best effort: a completed order stays completed even when SMTP
is down, and nothing is sent while mail is unconfigured or suppressed.
"""
import logging
from html import escape
from typing import Iterable, Optional

from flask import current_app
from flask_mail import Mail, Message

from storefront.utils.formatters import format_money

logger = logging.getLogger(__name__)

mail = Mail()


def init_mail(app):
    mail.init_app(app)


def _can_send() -> bool:
    cfg = current_app.config
    if cfg.get('MAIL_SUPPRESS_SEND'):
        return False
    return bool(cfg.get('MAIL_SERVER') and cfg.get('MAIL_USERNAME'))


def _render_html(order, license_lines, download_urls) -> str:
    rows = ''.join(
        f"<tr><td>{escape(item.product.name)}</td><td>{item.quantity}</td>"
        f"<td>{format_money(item.line_total, order.currency)}</td></tr>"
        for item in order.items
    )
    sections = []
    if license_lines:
        sections.append('<h3>Your license codes</h3><pre>' + escape('\n'.join(license_lines)) + '</pre>')
    if download_urls:
        links = ''.join(f'<li><a href="{escape(url)}">{escape(url)}</a></li>' for url in download_urls)
        sections.append(f'<h3>Your downloads</h3><ul>{links}</ul>')

    return (
        '<!DOCTYPE html><html><head><meta charset="UTF-8"></head>'
        '<body style="font-family: Arial, sans-serif; color: #333;">'
        f'<h2>Thanks for your order #{order.id}</h2>'
        f'<table><tr><th>Product</th><th>Qty</th><th>Total</th></tr>{rows}</table>'
        f'<p><strong>Total paid: {format_money(order.total_amount, order.currency)}</strong></p>'
        + ''.join(sections)
        + '</body></html>'
    )


def _render_text(order, license_lines, download_urls) -> str:
    lines = [f'Thanks for your order #{order.id}.',
             f'Total paid: {format_money(order.total_amount, order.currency)}']
    if license_lines:
        lines += ['', 'License codes:', *license_lines]
    if download_urls:
        lines += ['', 'Downloads:', *download_urls]
    return '\n'.join(lines) + '\n'


def send_order_confirmation_email(order, license_lines: Optional[Iterable[str]] = None,
                                  download_urls: Optional[Iterable[str]] = None) -> bool:
    """
    Email the delivered codes and download links of a completed order.

    Returns False only when SMTP rejected the message. Orders without a
    customer email and disabled mail count as success.
    """
    license_lines = list(license_lines or [])
    download_urls = list(download_urls or [])

    recipient = order.customer_email
    if not recipient:
        logger.info(f"[EMAIL] Order {order.id} has no customer email, skipping confirmation")
        return True
    if not _can_send():
        logger.warning(f"[EMAIL] Mail disabled, confirmation for order {order.id} not sent")
        return True

    message = Message(
        subject=f'Order #{order.id} confirmation',
        recipients=[recipient],
        html=_render_html(order, license_lines, download_urls),
        body=_render_text(order, license_lines, download_urls),
        charset='utf-8',
    )
    try:
        mail.send(message)
    except Exception as e:
        # SMTP errors come from smtplib and socket alike
        logger.exception(f"[EMAIL] Confirmation for order {order.id} failed: {e}")
        return False
    logger.info(f"[EMAIL] Confirmation for order {order.id} sent to {recipient}")
    return True
