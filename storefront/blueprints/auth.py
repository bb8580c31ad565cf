"""
Authentication blueprint.
Handles customer registration, login (with guest cart merge) and logout.
"""
import logging
import re

from flask import Blueprint, current_app, jsonify, request, session
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from storefront.database import get_session
from storefront.exceptions import StorefrontError, UnauthorizedError, ValidationError
from storefront.middleware import GUEST_ORDERS_KEY
from storefront.models import AppUser
from storefront.services import cart_service
from storefront.utils.request_helpers import get_json_body

logger = logging.getLogger(__name__)

auth_bp = Blueprint('auth', __name__, url_prefix='/auth')


def is_valid_email(email: str) -> bool:
    """Validate email format."""
    pattern = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
    return re.match(pattern, email) is not None


@auth_bp.route('/register', methods=['POST'])
def register():
    """Create a customer account: {email, password, fullName?}."""
    db_session = get_session()
    data = get_json_body()
    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''

    if not email or not is_valid_email(email):
        raise ValidationError('Invalid email.', {'field': 'email'})
    if len(password) < 8:
        raise ValidationError('Password must be at least 8 characters.', {'field': 'password'})

    if db_session.query(AppUser).filter(func.lower(AppUser.email) == email).first():
        raise ValidationError('Email is already registered.', {'field': 'email'})

    user = AppUser(email=email, full_name=(data.get('fullName') or data.get('full_name') or '').strip() or None)
    user.set_password(password)
    try:
        db_session.add(user)
        db_session.commit()
    except IntegrityError:
        db_session.rollback()
        raise ValidationError('Email is already registered.', {'field': 'email'})

    logger.info(f"[AUTH] Registered user {user.id}")
    return jsonify({'status': 'ok', 'user': user.to_dict()}), 201


@auth_bp.route('/login', methods=['POST'])
def login():
    """
    Sign in: {email, password}.

    A guest cart held in the cart cookie is merged into the user's cart and
    the cookie is cleared.
    """
    db_session = get_session()
    data = get_json_body()
    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''

    user = db_session.query(AppUser).filter(func.lower(AppUser.email) == email).first()
    if not user or not user.active or not user.check_password(password):
        logger.warning(f"[AUTH] Failed login for {email or '<empty>'}")
        raise UnauthorizedError('Invalid email or password.')

    cookie_name = current_app.config['CART_COOKIE_NAME']
    guest_token = request.cookies.get(cookie_name)
    cart = None
    try:
        if guest_token:
            cart = cart_service.merge_guest_cart(db_session, guest_token, user.id)
        db_session.commit()
    except StorefrontError:
        db_session.rollback()
        raise

    guest_orders = session.get(GUEST_ORDERS_KEY)
    session.clear()
    session['user_id'] = user.id
    if guest_orders:
        session[GUEST_ORDERS_KEY] = guest_orders
    session.permanent = True
    logger.info(f"[AUTH] User {user.id} logged in")

    payload = {'status': 'ok', 'user': user.to_dict()}
    if cart is not None:
        payload['cart'] = cart_service.serialize_cart(cart)
    response = jsonify(payload)
    if guest_token:
        response.set_cookie(cookie_name, '', max_age=0, httponly=True, samesite='Lax',
                            secure=current_app.config.get('CART_COOKIE_SECURE', False))
    return response


@auth_bp.route('/logout', methods=['POST'])
def logout():
    session.clear()
    return jsonify({'status': 'ok'})
