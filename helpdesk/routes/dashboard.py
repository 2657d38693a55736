from flask import Blueprint, render_template, request, redirect, url_for, flash, current_app, session, abort, jsonify
from flask_login import login_user, logout_user, login_required, current_user
from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import joinedload
from werkzeug.security import check_password_hash, generate_password_hash

try:
    from ..forms import CustomerForm, LoginForm, TicketForm
    from ..masks import MASKS
    from ..models import (
        db,
        User,
        Customer,
        Ticket,
        TICKET_STATUS_OPEN,
        create_customer,
        get_customer_details,
        create_ticket,
        close_ticket,
    )
    from ..ratelimit import is_rate_limited, register_hit, clear_hits
    from ..utils import clean_text, escape_like, sanitize_ticket_text
except ImportError:  # pragma: no cover - fallback when running from helpdesk/ cwd
    from forms import CustomerForm, LoginForm, TicketForm
    from masks import MASKS
    from models import (
        db,
        User,
        Customer,
        Ticket,
        TICKET_STATUS_OPEN,
        create_customer,
        get_customer_details,
        create_ticket,
        close_ticket,
    )
    from ratelimit import is_rate_limited, register_hit, clear_hits
    from utils import clean_text, escape_like, sanitize_ticket_text

dashboard_bp = Blueprint('dashboard', __name__)
LOGIN_SCOPE = 'dashboard_login'
AUTH_DUMMY_HASH = generate_password_hash('helpdesk::dummy-auth-check')
MASK_VALUE_MAX_LENGTH = 64


def parse_positive_int(value):
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None
    if parsed <= 0:
        return None
    return parsed


def safe_next_path(value, fallback):
    candidate = (value or '').strip()
    if not candidate.startswith('/') or candidate.startswith('//') or '\\' in candidate:
        return fallback
    return candidate


def owned_customer_or_404(customer_id):
    customer = db.session.get(Customer, customer_id)
    if not customer or customer.user_id != current_user.id:
        abort(404)
    return customer


# Auth
@dashboard_bp.route('/login', methods=['GET', 'POST'])
def login():
    if current_user.is_authenticated:
        return redirect(url_for('dashboard.index'))
    form = LoginForm()
    if request.method == 'POST':
        login_limit = current_app.config['LOGIN_LIMIT']
        window_seconds = current_app.config['LOGIN_WINDOW_SECONDS']
        limited, seconds = is_rate_limited(LOGIN_SCOPE, login_limit, window_seconds)
        if limited:
            flash(f'Too many login attempts. Try again in {seconds} seconds.', 'danger')
            return render_template('dashboard/login.html', form=form), 429

        username = clean_text(form.username.data, 80)
        password = form.password.data or ''
        user = User.query.filter_by(username=username).first() if username else None
        password_ok = False
        if user:
            password_ok = user.check_password(password)
        else:
            # Keep response timing closer for unknown usernames.
            check_password_hash(AUTH_DUMMY_HASH, password)
        if user and password_ok:
            clear_hits(LOGIN_SCOPE)
            next_path = safe_next_path(request.args.get('next'), url_for('dashboard.index'))
            session.clear()
            login_user(user)
            current_app.logger.info('User %s signed in.', user.id)
            return redirect(next_path)

        attempts = register_hit(LOGIN_SCOPE, window_seconds)
        remaining = max(0, login_limit - attempts)
        if remaining == 0:
            flash('Too many failed attempts. Please wait a few minutes and try again.', 'danger')
        else:
            flash(f'Invalid credentials. {remaining} attempt(s) remaining before temporary lock.', 'danger')
    return render_template('dashboard/login.html', form=form)


@dashboard_bp.route('/logout', methods=['POST'])
@login_required
def logout():
    logout_user()
    return redirect(url_for('dashboard.login'))


# Dashboard
@dashboard_bp.route('/')
@login_required
def index():
    tickets = (
        Ticket.query.options(joinedload(Ticket.customer))
        .filter(Ticket.user_id == current_user.id, Ticket.status == TICKET_STATUS_OPEN)
        .order_by(Ticket.created_at.desc(), Ticket.id.desc())
        .all()
    )
    return render_template('dashboard/index.html', tickets=tickets)


# Customers
@dashboard_bp.route('/customers')
@login_required
def customers():
    search = clean_text(request.args.get('q', ''), 120)
    query = Customer.query.filter(Customer.user_id == current_user.id)
    if search:
        safe_search = escape_like(search.lower())
        query = query.filter(
            or_(
                func.lower(Customer.name).like(f'%{safe_search}%', escape='\\'),
                func.lower(Customer.email).like(f'%{safe_search}%', escape='\\'),
                Customer.cnpj.like(f'%{safe_search}%', escape='\\'),
            )
        )
    items = query.order_by(Customer.name.asc(), Customer.id.asc()).all()
    return render_template('dashboard/customers.html', items=items, search=search)


@dashboard_bp.route('/customers/new', methods=['GET', 'POST'])
@login_required
def customer_new():
    form = CustomerForm()
    if form.validate_on_submit():
        try:
            customer = create_customer(**form.customer_fields(), user_id=current_user.id)
        except Exception:
            current_app.logger.exception('Customer creation failed.')
            flash('Failed to register customer.', 'danger')
            return render_template('dashboard/customer_form.html', form=form)
        current_app.logger.info('Customer %s created by user %s.', customer.id, current_user.id)
        flash('Customer registered successfully!', 'success')
        return redirect(url_for('dashboard.customer_new'))
    return render_template('dashboard/customer_form.html', form=form)


@dashboard_bp.get('/customers/masks')
@login_required
def customer_masks():
    field = clean_text(request.args.get('field', ''), 20).lower()
    normalizer = MASKS.get(field)
    if normalizer is None:
        return jsonify(error='Unknown field.'), 400
    raw_value = (request.args.get('value') or '')[:MASK_VALUE_MAX_LENGTH]
    return jsonify(field=field, value=normalizer(raw_value))


@dashboard_bp.route('/customers/<int:customer_id>')
@login_required
def customer_detail(customer_id):
    customer = get_customer_details(customer_id)
    status = 200 if customer is not None else 404
    return render_template('dashboard/customer_detail.html', customer=customer), status


@dashboard_bp.route('/customers/<int:customer_id>/delete', methods=['POST'])
@login_required
def customer_delete(customer_id):
    customer = owned_customer_or_404(customer_id)
    if customer.tickets:
        flash('This customer still has tickets and cannot be deleted.', 'danger')
        return redirect(url_for('dashboard.customers'))
    name = customer.name
    db.session.delete(customer)
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception('Customer %s deletion failed.', customer_id)
        flash('Failed to delete customer.', 'danger')
        return redirect(url_for('dashboard.customers'))
    flash(f'Customer "{name}" deleted.', 'success')
    return redirect(url_for('dashboard.customers'))


# Tickets
@dashboard_bp.route('/tickets/new', methods=['GET', 'POST'])
@login_required
def ticket_new():
    owned = Customer.query.filter_by(user_id=current_user.id).order_by(Customer.name.asc()).all()
    form = TicketForm()
    form.customer_id.choices = [(customer.id, customer.name) for customer in owned]
    if request.method == 'GET':
        form.customer_id.data = parse_positive_int(request.args.get('customer_id'))

    if form.validate_on_submit():
        customer = next(item for item in owned if item.id == form.customer_id.data)
        try:
            ticket = create_ticket(
                customer=customer,
                name=form.name.data,
                description=sanitize_ticket_text(form.description.data),
                user_id=current_user.id,
            )
        except Exception:
            current_app.logger.exception('Ticket creation failed.')
            flash('Failed to open ticket.', 'danger')
            return render_template('dashboard/ticket_form.html', form=form, has_customers=bool(owned))
        current_app.logger.info('Ticket %s opened for customer %s.', ticket.id, customer.id)
        flash('Ticket opened.', 'success')
        return redirect(url_for('dashboard.index'))
    return render_template('dashboard/ticket_form.html', form=form, has_customers=bool(owned))


@dashboard_bp.route('/tickets/<int:ticket_id>/close', methods=['POST'])
@login_required
def ticket_close(ticket_id):
    ticket = db.session.get(Ticket, ticket_id)
    if not ticket or ticket.user_id != current_user.id:
        abort(404)
    if close_ticket(ticket):
        flash('Ticket closed.', 'success')
    else:
        flash('Ticket is already closed.', 'info')
    return redirect(safe_next_path(request.form.get('next'), url_for('dashboard.index')))
