"""Middleware for authentication context."""
from functools import wraps

from flask import current_app, g, session

from storefront.database import get_session
from storefront.exceptions import ForbiddenError, UnauthorizedError
from storefront.models import AppUser


def load_current_user():
    """
    Load the signed-in user into g.

    Called before each request. Sets g.user (or None) from the Flask
    session's ``user_id``.
    """
    g.user = None
    g.user_id = None

    user_id = session.get('user_id')
    if not user_id:
        return

    try:
        db_session = get_session()
        user = db_session.query(AppUser).filter_by(id=user_id, active=True).first()
    except Exception as e:
        current_app.logger.error(f"Error in load_current_user: {e}")
        return

    if user:
        g.user = user
        g.user_id = user.id
    else:
        # Deactivated or deleted account
        session.pop('user_id', None)


def require_login(f):
    """Decorator: reject anonymous requests with UNAUTHORIZED."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if g.get('user') is None:
            raise UnauthorizedError('Authentication required.')
        return f(*args, **kwargs)
    return decorated_function


def require_admin(f):
    """Decorator: admin role required."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user = g.get('user')
        if user is None:
            raise UnauthorizedError('Authentication required.')
        if not user.is_admin:
            current_app.logger.warning(f"[AUTH] User {user.id} denied admin access")
            raise ForbiddenError('Administrator access required.')
        return f(*args, **kwargs)
    return decorated_function


GUEST_ORDERS_KEY = 'guest_order_ids'
GUEST_ORDERS_KEPT = 20


def remember_guest_order(order_id: int) -> None:
    """Let this browser pay for and view an order it placed without an account."""
    order_ids = [oid for oid in session.get(GUEST_ORDERS_KEY, []) if oid != order_id]
    order_ids.append(order_id)
    session[GUEST_ORDERS_KEY] = order_ids[-GUEST_ORDERS_KEPT:]


def guest_order_ids():
    return frozenset(session.get(GUEST_ORDERS_KEY, []))
