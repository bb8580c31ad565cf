"""Flask application factory."""
import os

from flask import Flask, jsonify, request
from flask_wtf.csrf import CSRFError, CSRFProtect
from werkzeug.exceptions import HTTPException

from storefront.database import init_db


def create_app(config_object='config.Config'):
    """Create and configure the Flask application."""
    app = Flask(__name__)
    app.config.from_object(config_object)

    # CSRF protection for cookie-authenticated JSON calls (X-CSRFToken header)
    csrf = CSRFProtect(app)

    @app.errorhandler(CSRFError)
    def handle_csrf_error(e):
        app.logger.warning(f"CSRF Error: {e.description}")
        return jsonify({'status': 'error', 'code': 'FORBIDDEN', 'message': 'Invalid or missing CSRF token.'}), 400

    # Error tracking in production
    if os.getenv('SENTRY_DSN') and app.config.get('ENV') == 'production':
        import sentry_sdk
        from sentry_sdk.integrations.flask import FlaskIntegration

        sentry_sdk.init(
            dsn=os.getenv('SENTRY_DSN'),
            integrations=[FlaskIntegration()],
            traces_sample_rate=0.1,
            environment=app.config.get('ENV'),
            release=os.getenv('GIT_COMMIT', 'unknown')
        )

    from storefront.services.email_service import init_mail
    init_mail(app)

    from storefront.services.cache_service import init_cache
    init_cache(app)

    from storefront.blueprints.metrics import setup_metrics_instrumentation
    setup_metrics_instrumentation(app)

    # Production: trust the reverse proxy's X-Forwarded-* headers
    if app.config.get('ENV') == 'production':
        from werkzeug.middleware.proxy_fix import ProxyFix
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1, x_prefix=0)

    init_db(app)

    from storefront.middleware import load_current_user

    @app.before_request
    def before_request_handler():
        """Load the signed-in user for each request."""
        load_current_user()

    # Error Handlers
    from storefront.exceptions import StorefrontError

    @app.errorhandler(StorefrontError)
    def handle_storefront_error(error):
        """Render application exceptions as JSON."""
        if error.status_code >= 500:
            app.logger.error(f"StorefrontError [{error.status_code}] {error.code}: {error.message}")
        else:
            app.logger.info(f"StorefrontError [{error.status_code}] {error.code}: {error.message}")
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(404)
    def not_found_error(error):
        return jsonify({'status': 'error', 'code': 'NOT_FOUND', 'message': 'Not Found'}), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({'status': 'error', 'code': 'VALIDATION', 'message': 'Method Not Allowed'}), 405

    @app.errorhandler(500)
    @app.errorhandler(Exception)
    def internal_error(error):
        if isinstance(error, HTTPException) and error.code != 500:
            return error
        app.logger.exception(f"Unhandled Exception on {request.method} {request.path}: {error}")
        return jsonify({'status': 'error', 'code': 'INTERNAL', 'message': 'Internal Server Error'}), 500

    # Register blueprints
    from storefront.blueprints.main import main_bp
    from storefront.blueprints.auth import auth_bp
    from storefront.blueprints.cart import cart_bp
    from storefront.blueprints.orders import orders_bp
    from storefront.blueprints.payments import payments_bp, webhook as payments_webhook
    from storefront.blueprints.downloads import downloads_bp
    from storefront.blueprints.admin import admin_bp
    from storefront.blueprints.metrics import metrics_bp

    app.register_blueprint(main_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(cart_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(downloads_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(metrics_bp)

    # Webhooks authenticate with gateway signatures, not CSRF tokens
    csrf.exempt(payments_webhook)
    app.register_blueprint(payments_bp)

    from storefront.cli_commands import init_cli_commands
    init_cli_commands(app)

    return app
