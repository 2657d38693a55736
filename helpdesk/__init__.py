"""Helpdesk dashboard application factory."""
import json
import logging
import re
import secrets
import warnings
from urllib.parse import urlparse

from flask import Flask, abort, flash, g, has_request_context, redirect, render_template, request, session, url_for
from flask_login import LoginManager
from markupsafe import Markup, escape
from sqlalchemy import inspect, text
from werkzeug.middleware.proxy_fix import ProxyFix

try:
    from .config import Config
    from .models import db, User
except ImportError:  # pragma: no cover - fallback when running from helpdesk/ as script root
    from config import Config
    from models import db, User

login_manager = LoginManager()
login_manager.login_view = 'dashboard.login'
login_manager.login_message = 'Please sign in to access the dashboard.'
login_manager.login_message_category = 'warning'

CSRF_SESSION_KEY = '_csrf_token'
CSRF_ERROR = 'Invalid or missing CSRF token.'
STATE_CHANGING_METHODS = frozenset({'POST', 'PUT', 'PATCH', 'DELETE'})
REQUIRED_TABLES = ('user', 'customer', 'ticket')
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{8,80}$")
_sentry_initialized = False


class JsonLogFormatter(logging.Formatter):
    """One JSON object per record, with request details when inside a request."""

    def format(self, record):
        payload = {
            'time': self.formatTime(record, self.datefmt),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        if has_request_context():
            payload['request_id'] = getattr(g, 'request_id', '')
            payload['method'] = request.method
            payload['path'] = request.path
            payload['remote_ip'] = request.remote_addr
        if record.exc_info:
            payload['exc_info'] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(app):
    level_name = str(app.config.get('LOG_LEVEL') or 'INFO').upper()
    app.logger.setLevel(getattr(logging, level_name, logging.INFO))
    if app.config.get('LOG_JSON', True):
        formatter = JsonLogFormatter()
        for handler in app.logger.handlers:
            handler.setFormatter(formatter)


@login_manager.user_loader
def load_user(user_id):
    try:
        return db.session.get(User, int(user_id))
    except (TypeError, ValueError):
        return None


def get_csrf_token():
    token = session.get(CSRF_SESSION_KEY)
    if not token:
        token = secrets.token_urlsafe(32)
        session[CSRF_SESSION_KEY] = token
    return token


def csrf_input():
    token = get_csrf_token()
    return Markup(f'<input type="hidden" name="{CSRF_SESSION_KEY}" value="{escape(token)}">')  # nosec B704


def get_csp_nonce():
    if not getattr(g, 'csp_nonce', ''):
        g.csp_nonce = secrets.token_urlsafe(16)
    return g.csp_nonce


def safe_referrer_path(fallback):
    """Same-host path of the referrer, or ``fallback`` for anything else."""
    parsed = urlparse((request.referrer or '').strip())
    if not parsed.path and not parsed.netloc:
        return fallback
    if parsed.scheme and parsed.scheme not in {'http', 'https'}:
        return fallback
    if parsed.netloc and parsed.netloc != request.host:
        return fallback
    path = parsed.path or '/'
    if not path.startswith('/') or path.startswith('//'):
        return fallback
    return f'{path}?{parsed.query}' if parsed.query else path


def init_sentry(app):
    global _sentry_initialized
    dsn = (app.config.get('SENTRY_DSN') or '').strip()
    if _sentry_initialized or not dsn:
        return

    try:
        import sentry_sdk
        from sentry_sdk.integrations.flask import FlaskIntegration
        from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

        sentry_sdk.init(
            dsn=dsn,
            integrations=[FlaskIntegration(), SqlalchemyIntegration()],
            traces_sample_rate=float(app.config.get('SENTRY_TRACES_SAMPLE_RATE') or 0.0),
            environment=(app.config.get('SENTRY_ENVIRONMENT') or None),
        )
    except Exception:
        app.logger.exception('Failed to initialize Sentry monitoring.')
        return
    _sentry_initialized = True
    app.logger.info('Sentry monitoring enabled.')


def _hsts_value(app):
    parts = [f"max-age={max(0, int(app.config.get('HSTS_MAX_AGE', 31536000)))}"]
    if app.config.get('HSTS_INCLUDE_SUBDOMAINS', True):
        parts.append('includeSubDomains')
    if app.config.get('HSTS_PRELOAD', False):
        parts.append('preload')
    return '; '.join(parts)


def _content_security_policy(nonce):
    directives = [
        "default-src 'self'",
        "base-uri 'self'",
        "frame-ancestors 'none'",
        "form-action 'self'",
        "object-src 'none'",
        "img-src 'self' data:",
        f"script-src 'self' 'nonce-{nonce}'",
        f"style-src 'self' 'nonce-{nonce}'",
        # The customer form fetches normalized masks from the same origin.
        "connect-src 'self'",
    ]
    if request.is_secure:
        directives.append('upgrade-insecure-requests')
    return '; '.join(directives)


def register_request_hooks(app):
    @app.before_request
    def assign_request_id():
        incoming = (request.headers.get('X-Request-ID') or '').strip()
        g.request_id = incoming if _REQUEST_ID_RE.match(incoming) else secrets.token_hex(16)

    @app.before_request
    def enforce_csrf():
        if request.method not in STATE_CHANGING_METHODS:
            return None
        expected = session.get(CSRF_SESSION_KEY)
        provided = request.form.get(CSRF_SESSION_KEY) or request.headers.get('X-CSRF-Token')
        if not expected or not provided or not secrets.compare_digest(expected, provided):
            abort(400, description=CSRF_ERROR)
        return None

    @app.context_processor
    def inject_template_helpers():
        return {
            'csrf_input': csrf_input,
            'csp_nonce': get_csp_nonce(),
        }

    @app.after_request
    def add_security_headers(response):
        headers = response.headers
        headers['X-Request-ID'] = getattr(g, 'request_id', '')
        headers.setdefault('X-Content-Type-Options', 'nosniff')
        headers.setdefault('X-Frame-Options', 'DENY')
        headers.setdefault('Referrer-Policy', 'strict-origin-when-cross-origin')
        headers.setdefault('Permissions-Policy', 'geolocation=(), microphone=(), camera=()')
        headers.setdefault('Cross-Origin-Opener-Policy', 'same-origin')
        if request.is_secure and app.config.get('HSTS_ENABLED', True):
            headers.setdefault('Strict-Transport-Security', _hsts_value(app))
        if request.path.startswith('/dashboard'):
            # Agent pages and customer data stay out of search indexes.
            headers.setdefault('X-Robots-Tag', 'noindex, nofollow, noarchive')

        if request.path.startswith('/static/') and response.status_code in (200, 304):
            headers['Cache-Control'] = 'public, max-age=86400'
        elif response.mimetype == 'text/html':
            headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, max-age=0'
            headers['Pragma'] = 'no-cache'
            headers['Content-Security-Policy'] = _content_security_policy(get_csp_nonce())
        return response


def register_error_handlers(app):
    @app.errorhandler(400)
    def handle_bad_request(error):
        if getattr(error, 'description', '') == CSRF_ERROR:
            flash('Your form session expired. Please retry your action.', 'danger')
            return redirect(safe_referrer_path(url_for('main.index')))
        return error

    @app.errorhandler(404)
    def handle_not_found(error):
        return render_template('errors/404.html'), 404

    @app.errorhandler(500)
    def handle_server_error(error):
        return render_template('errors/500.html'), 500


def register_health_checks(app):
    @app.get('/healthz')
    def healthz():
        try:
            db.session.execute(text('SELECT 1'))
        except Exception:
            db.session.rollback()
            app.logger.exception('Health check DB probe failed.')
            return {'status': 'degraded'}, 503
        return {'status': 'ok'}, 200

    @app.get('/readyz')
    def readyz():
        checks = {'database': False, 'admin_user_seeded': False}
        try:
            db.session.execute(text('SELECT 1'))
            existing = set(inspect(db.engine).get_table_names())
            checks['database'] = all(table in existing for table in REQUIRED_TABLES)
            checks['admin_user_seeded'] = db.session.query(User.id).first() is not None
        except Exception:
            db.session.rollback()
            app.logger.exception('Readiness check failed.')
            return {'status': 'degraded', 'checks': checks}, 503
        ready = all(checks.values())
        return {'status': 'ready' if ready else 'warming', 'checks': checks}, (200 if ready else 503)


def register_blueprints(app):
    try:
        from .routes.main import main_bp
        from .routes.dashboard import dashboard_bp
    except ImportError:  # pragma: no cover - fallback for script-style execution
        from routes.main import main_bp
        from routes.dashboard import dashboard_bp
    app.register_blueprint(main_bp)
    app.register_blueprint(dashboard_bp, url_prefix='/dashboard')


def prepare_database(app):
    try:
        from .seed import seed_database
    except ImportError:  # pragma: no cover - fallback for script-style execution
        from seed import seed_database

    with app.app_context():
        try:
            db.create_all()
        except Exception:
            app.logger.exception('db.create_all() failed, tables may need manual migration.')
        try:
            seed_database()
        except Exception:
            db.session.rollback()
            app.logger.exception('seed_database() failed, seeding skipped.')


def create_app(config_overrides=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    app.config.update(config_overrides or {})
    configure_logging(app)

    if not app.config.get('SECRET_KEY'):
        app.config['SECRET_KEY'] = secrets.token_urlsafe(32)
        warnings.warn(
            'SECRET_KEY is not set, using a random key. Sessions will not survive restarts.',
            stacklevel=2,
        )

    if app.config.get('TRUST_PROXY_HEADERS'):
        # One hop only: the platform edge.
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1)

    init_sentry(app)
    db.init_app(app)
    login_manager.init_app(app)

    register_request_hooks(app)
    register_error_handlers(app)
    register_health_checks(app)
    register_blueprints(app)
    prepare_database(app)
    return app
