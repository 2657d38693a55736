import logging
import os
import secrets

from sqlalchemy.exc import SQLAlchemyError

try:
    from .models import db, User
except ImportError:  # pragma: no cover - fallback when running from helpdesk/ cwd
    from models import db, User

ADMIN_USERNAME = 'admin'
ADMIN_EMAIL = 'admin@example.com'

logger = logging.getLogger(__name__)


def seed_database():
    env_password = os.environ.get('ADMIN_PASSWORD') or ''

    # Always sync admin password with env var on startup
    if env_password:
        try:
            existing_admin = User.query.filter_by(username=ADMIN_USERNAME).first()
            if existing_admin and not existing_admin.check_password(env_password):
                existing_admin.set_password(env_password)
                db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception('Failed to sync admin password from ADMIN_PASSWORD.')

    if User.query.order_by(User.id.asc()).first():
        return None

    if not env_password:
        env_password = secrets.token_urlsafe(16)
        logger.warning(
            'ADMIN_PASSWORD not set. Seeded admin with a random password. '
            'Set ADMIN_PASSWORD and restart to rotate it to a known value.'
        )
    admin = User(username=ADMIN_USERNAME, email=ADMIN_EMAIL)
    admin.set_password(env_password)
    db.session.add(admin)
    db.session.commit()
    return admin
