from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from sqlalchemy.orm import joinedload
from werkzeug.security import generate_password_hash, check_password_hash

try:
    from .utils import utc_now_naive
except ImportError:  # pragma: no cover - fallback when running from helpdesk/ cwd
    from utils import utc_now_naive

db = SQLAlchemy()

TICKET_STATUS_OPEN = 'open'
TICKET_STATUS_CLOSED = 'closed'
TICKET_STATUS_LABELS = {
    TICKET_STATUS_OPEN: 'Open',
    TICKET_STATUS_CLOSED: 'Closed',
}


class User(UserMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(256), nullable=False)
    created_at = db.Column(db.DateTime, default=utc_now_naive)
    customers = db.relationship('Customer', back_populates='user', lazy=True)
    tickets = db.relationship('Ticket', back_populates='user', lazy=True)

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)


class Customer(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(200), nullable=False, index=True)
    phone = db.Column(db.String(20), nullable=False)   # (XX) 9XXXX-XXXX
    cnpj = db.Column(db.String(20), nullable=False)    # XX.XXX.XXX/XXXX-XX
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=utc_now_naive)
    updated_at = db.Column(db.DateTime, default=utc_now_naive, onupdate=utc_now_naive)
    user = db.relationship('User', back_populates='customers')
    tickets = db.relationship(
        'Ticket',
        back_populates='customer',
        lazy=True,
        cascade='all, delete-orphan',
        order_by='Ticket.created_at.desc()',
    )


class Ticket(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=False)
    status = db.Column(db.String(20), default=TICKET_STATUS_OPEN, nullable=False, index=True)  # open, closed
    customer_id = db.Column(db.Integer, db.ForeignKey('customer.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=utc_now_naive, index=True)
    updated_at = db.Column(db.DateTime, default=utc_now_naive, onupdate=utc_now_naive)
    customer = db.relationship('Customer', back_populates='tickets')
    user = db.relationship('User', back_populates='tickets')

    __table_args__ = (
        db.Index('ix_ticket_user_status_created', 'user_id', 'status', 'created_at'),
    )

    @property
    def status_label(self):
        return TICKET_STATUS_LABELS.get(self.status, self.status)


class AuthRateLimitBucket(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    scope = db.Column(db.String(80), nullable=False, index=True)
    ip = db.Column(db.String(64), nullable=False, index=True)
    count = db.Column(db.Integer, nullable=False, default=0)
    reset_at = db.Column(db.DateTime, nullable=False)
    updated_at = db.Column(db.DateTime, default=utc_now_naive, onupdate=utc_now_naive)

    __table_args__ = (
        db.UniqueConstraint('scope', 'ip', name='uq_auth_rate_limit_scope_ip'),
        db.Index('ix_auth_rate_limit_scope_reset_at', 'scope', 'reset_at'),
    )


def create_customer(*, name, email, phone, cnpj, user_id):
    """Persist a new customer owned by ``user_id``.

    Expects already validated and normalized values. Errors from the database are
    re-raised after the session is rolled back.
    """
    customer = Customer(
        name=name,
        email=email,
        phone=phone,
        cnpj=cnpj,
        user_id=user_id,
    )
    db.session.add(customer)
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return customer


def get_customer_details(customer_id):
    """Load a customer with its tickets and each ticket's user in one query.

    Returns None when no customer matches.
    """
    stmt = (
        db.select(Customer)
        .options(joinedload(Customer.tickets).joinedload(Ticket.user))
        .where(Customer.id == customer_id)
    )
    return db.session.execute(stmt).unique().scalar_one_or_none()


def create_ticket(*, customer, name, description, user_id=None):
    ticket = Ticket(
        name=name,
        description=description,
        status=TICKET_STATUS_OPEN,
        customer_id=customer.id,
        user_id=user_id if user_id is not None else customer.user_id,
    )
    db.session.add(ticket)
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return ticket


def close_ticket(ticket):
    if ticket.status == TICKET_STATUS_CLOSED:
        return False
    ticket.status = TICKET_STATUS_CLOSED
    db.session.commit()
    return True
