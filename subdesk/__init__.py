"""Flask application factory."""
from flask import Flask, request, jsonify
from werkzeug.exceptions import HTTPException
from subdesk.database import Database
import os


def create_app(config_object='config.Config'):
    """Create and configure the Flask application."""
    app = Flask(__name__)
    app.config.from_object(config_object)

    # Initialize Sentry for error tracking in production
    sentry_dsn = app.config.get('SENTRY_DSN') or os.getenv('SENTRY_DSN')
    if sentry_dsn and (app.config.get('ENV') == 'production' or os.getenv('FLASK_ENV') == 'production'):
        import sentry_sdk
        from sentry_sdk.integrations.flask import FlaskIntegration

        sentry_sdk.init(
            dsn=sentry_dsn,
            integrations=[FlaskIntegration()],
            traces_sample_rate=0.1,  # 10% of transactions for performance monitoring
            profiles_sample_rate=0.1,  # 10% for profiling
            environment=os.getenv('FLASK_ENV', 'production'),
            release=os.getenv('GIT_COMMIT', 'unknown')
        )

    # Setup Prometheus metrics instrumentation
    from subdesk.blueprints.metrics import setup_metrics_instrumentation
    setup_metrics_instrumentation(app)

    # Production: Enable ProxyFix for HTTPS behind Nginx reverse proxy
    if app.config.get('ENV') == 'production':
        from werkzeug.middleware.proxy_fix import ProxyFix
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=1,      # Trust X-Forwarded-For with 1 proxy
            x_proto=1,    # Trust X-Forwarded-Proto
            x_host=1,     # Trust X-Forwarded-Host
            x_port=1,     # Trust X-Forwarded-Port
            x_prefix=0    # No prefix (not behind a URL prefix)
        )

    # Initialize database (engine + scoped session live on app.extensions)
    Database(app)

    # Error Handlers
    from subdesk.exceptions import SubdeskError

    @app.errorhandler(SubdeskError)
    def handle_subdesk_error(error):
        """Translate typed application errors to their status code."""
        if error.status_code >= 500:
            app.logger.error(f"SubdeskError [{error.status_code}] on {request.method} {request.path}: {error.message}")
        else:
            app.logger.info(f"SubdeskError [{error.status_code}] on {request.method} {request.path}: {error.message}")
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        return jsonify({'status': 'error', 'message': error.description}), error.code

    @app.errorhandler(Exception)
    def internal_error(error):
        app.logger.exception(
            f"Unhandled Exception on {request.method} {request.path}: {error} | "
            f"body={request.get_data(as_text=True)[:2000]!r}"
        )
        return jsonify({'status': 'error', 'message': 'Internal Server Error'}), 500

    # Register blueprints
    from subdesk.blueprints.orders import orders_bp
    from subdesk.blueprints.accounts import accounts_bp
    from subdesk.blueprints.metrics import metrics_bp

    app.register_blueprint(orders_bp)
    app.register_blueprint(accounts_bp)
    app.register_blueprint(metrics_bp)

    # Register CLI commands
    from subdesk.cli_commands import init_cli_commands
    init_cli_commands(app)

    app.logger.info(f"Database: {app.extensions['database'].engine.url.render_as_string(hide_password=True)}")

    return app
