"""
Flask CLI commands for store operations.

Commands:
- flask create-admin: Create an administrator account
- flask create-coupon: Create a discount coupon
- flask import-inventory: Load license codes from a file
- flask add-product-file: Upload a downloadable file for a product
- flask retry-fulfillment: Re-run fulfillment of a processing order
"""
import os
import re

import click
from botocore.exceptions import ClientError

from storefront.database import get_session
from storefront.exceptions import StorefrontError
from storefront.models import AppUser, DiscountType, ProductFile
from storefront.services import catalog_service, coupon_service, fulfillment_service, inventory_service
from storefront.services.storage_service import get_storage_service


def init_cli_commands(app):
    """Register CLI commands with Flask app."""

    @app.cli.command('create-admin')
    @click.option('--email', prompt=True, help='Admin email address')
    @click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Admin password')
    def create_admin(email, password):
        """Create an administrator account (or promote an existing one)."""
        email = email.strip().lower()
        if not re.match(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$', email):
            click.echo(click.style('Invalid email. Use the format user@example.com', fg='red'))
            return
        if len(password) < 8:
            click.echo(click.style('Password must be at least 8 characters.', fg='red'))
            return

        db_session = get_session()
        user = db_session.query(AppUser).filter_by(email=email).first()
        try:
            if user is None:
                user = AppUser(email=email)
                db_session.add(user)
            user.role = 'admin'
            user.active = True
            user.set_password(password)
            db_session.commit()
        except Exception as e:
            db_session.rollback()
            click.echo(click.style(f'Error creating admin: {e}', fg='red'))
            return

        click.echo(click.style('Administrator ready.', fg='green', bold=True))
        click.echo(f'   Email: {email}')
        click.echo(f'   ID: {user.id}')

    @app.cli.command('create-coupon')
    @click.argument('code')
    @click.option('--type', 'discount_type', type=click.Choice([t.value for t in DiscountType]),
                  default=DiscountType.PERCENTAGE.value, show_default=True)
    @click.option('--amount', type=int, required=True,
                  help='Percent (1-100) or fixed amount in minor units')
    @click.option('--currency', default=None, help='Currency of a fixed-amount coupon')
    @click.option('--max-uses', type=int, default=None)
    @click.option('--per-user-limit', type=int, default=None)
    @click.option('--min-order', 'min_order_amount', type=int, default=None, help='Minimum subtotal (minor units)')
    @click.option('--expires', 'expires_at', type=click.DateTime(), default=None)
    def create_coupon(code, discount_type, amount, currency, max_uses, per_user_limit, min_order_amount, expires_at):
        """Create a discount coupon."""
        db_session = get_session()
        try:
            coupon = coupon_service.create_coupon(
                db_session, code, discount_type, amount,
                currency=currency,
                max_uses=max_uses,
                per_user_limit=per_user_limit,
                min_order_amount=min_order_amount,
                expires_at=expires_at,
            )
            db_session.commit()
        except StorefrontError as e:
            db_session.rollback()
            raise click.ClickException(e.message)
        click.echo(click.style(f'Coupon {coupon.code} created (id {coupon.id}).', fg='green'))
        for key, value in coupon.to_dict().items():
            click.echo(f'   {key}: {value}')

    @app.cli.command('import-inventory')
    @click.argument('product_id', type=int)
    @click.argument('source', type=click.File('r', encoding='utf-8'))
    def import_inventory(product_id, source):
        """Load license codes (one `code[:password]` per line) into a product's pool."""
        db_session = get_session()
        entries = []
        for line_number, line in enumerate(source, start=1):
            try:
                parsed = inventory_service.parse_inventory_line(line)
            except StorefrontError as e:
                raise click.ClickException(f'Line {line_number}: {e.message}')
            if parsed:
                entries.append(parsed)

        try:
            added = inventory_service.add_items(db_session, product_id, entries)
            db_session.commit()
        except StorefrontError as e:
            db_session.rollback()
            raise click.ClickException(e.message)

        catalog_service.invalidate_product(product_id)
        click.echo(click.style(f'{added} code(s) added, {len(entries) - added} duplicate(s) skipped.', fg='green'))
        click.echo(f'   Available now: {inventory_service.count_available(db_session, product_id)}')

    @app.cli.command('add-product-file')
    @click.argument('product_id', type=int)
    @click.argument('path', type=click.Path(exists=True, dir_okay=False))
    @click.option('--max-downloads', type=int, default=None)
    @click.option('--expires-in-days', type=int, default=None)
    def add_product_file(product_id, path, max_downloads, expires_in_days):
        """Upload a file to object storage and attach it to a digital product."""
        db_session = get_session()
        try:
            product = catalog_service.get_product(db_session, product_id)
        except StorefrontError as e:
            raise click.ClickException(e.message)
        if product.is_license:
            raise click.ClickException(f'Product "{product.name}" delivers license codes, not files.')

        file_name = os.path.basename(path)
        try:
            with open(path, 'rb') as fh:
                object_key = get_storage_service().put_product_file(fh, product.id, file_name)
        except (ClientError, RuntimeError) as e:
            raise click.ClickException(f'Upload failed: {e}')

        db_session.add(ProductFile(
            product_id=product.id,
            object_key=object_key,
            file_name=file_name,
            max_downloads=max_downloads,
            expires_in_days=expires_in_days,
        ))
        db_session.commit()
        click.echo(click.style(f'Attached {file_name} to product {product.id}.', fg='green'))

    @app.cli.command('retry-fulfillment')
    @click.argument('order_id', type=int)
    def retry_fulfillment(order_id):
        """Re-run fulfillment for an order held in processing."""
        db_session = get_session()
        try:
            outcome = fulfillment_service.fulfill_order(db_session, order_id)
            db_session.commit()
        except StorefrontError as e:
            db_session.rollback()
            raise click.ClickException(e.message)

        if outcome.already_completed:
            click.echo(f'Order {order_id} was already completed.')
        elif outcome.completed:
            outcome.send_confirmation()
            click.echo(click.style(f'Order {order_id} completed.', fg='green'))
        else:
            click.echo(click.style(f'Order {order_id} still processing: {outcome.order.fulfillment_error}', fg='yellow'))
