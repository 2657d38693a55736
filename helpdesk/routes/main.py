from flask import Blueprint, render_template, redirect, url_for, flash, session, current_app
from flask_login import current_user
from sqlalchemy import func

try:
    from ..forms import CustomerLookupForm, OpenTicketForm
    from ..models import db, Customer, create_ticket
    from ..notifications import send_ticket_notification
    from ..ratelimit import is_rate_limited, register_hit
    from ..utils import sanitize_ticket_text
except ImportError:  # pragma: no cover - fallback when running from helpdesk/ cwd
    from forms import CustomerLookupForm, OpenTicketForm
    from models import db, Customer, create_ticket
    from notifications import send_ticket_notification
    from ratelimit import is_rate_limited, register_hit
    from utils import sanitize_ticket_text

main_bp = Blueprint('main', __name__)
OPEN_TICKET_SCOPE = 'ticket_open'
OPEN_TICKET_SESSION_KEY = 'open_ticket_customer_id'


def get_lookup_customer():
    customer_id = session.get(OPEN_TICKET_SESSION_KEY)
    if not customer_id:
        return None
    try:
        parsed_id = int(customer_id)
    except (TypeError, ValueError):
        session.pop(OPEN_TICKET_SESSION_KEY, None)
        return None
    customer = db.session.get(Customer, parsed_id)
    if customer is None:
        session.pop(OPEN_TICKET_SESSION_KEY, None)
    return customer


def find_customer_by_email(email):
    normalized = (email or '').strip().lower()
    if not normalized:
        return None
    return (
        Customer.query.filter(func.lower(Customer.email) == normalized)
        .order_by(Customer.id.asc())
        .first()
    )


def render_open_ticket(customer, lookup_form=None, ticket_form=None, status=200):
    return render_template(
        'main/open_ticket.html',
        customer=customer,
        lookup_form=lookup_form or CustomerLookupForm(formdata=None),
        ticket_form=ticket_form or OpenTicketForm(formdata=None),
    ), status


@main_bp.route('/')
def index():
    return render_template('main/index.html', signed_in=current_user.is_authenticated)


@main_bp.route('/open', methods=['GET', 'POST'])
def open_ticket():
    lookup_form = CustomerLookupForm()
    if lookup_form.validate_on_submit():
        customer = find_customer_by_email(lookup_form.email.data)
        if customer is None:
            session.pop(OPEN_TICKET_SESSION_KEY, None)
            flash('No customer is registered with that email.', 'danger')
            return render_open_ticket(None, lookup_form=lookup_form)
        session[OPEN_TICKET_SESSION_KEY] = customer.id
        return redirect(url_for('main.open_ticket'))
    return render_open_ticket(get_lookup_customer(), lookup_form=lookup_form)


@main_bp.route('/open/ticket', methods=['POST'])
def open_ticket_submit():
    customer = get_lookup_customer()
    if customer is None:
        flash('Look up your registration by email before opening a ticket.', 'warning')
        return redirect(url_for('main.open_ticket'))

    form = OpenTicketForm()
    limit = current_app.config['TICKET_OPEN_LIMIT']
    window_seconds = current_app.config['TICKET_OPEN_WINDOW_SECONDS']
    limited, seconds = is_rate_limited(OPEN_TICKET_SCOPE, limit, window_seconds)
    if limited:
        flash(f'Too many tickets opened from this network. Try again in {seconds} seconds.', 'danger')
        return render_open_ticket(customer, ticket_form=form, status=429)

    if not form.validate_on_submit():
        return render_open_ticket(customer, ticket_form=form)

    register_hit(OPEN_TICKET_SCOPE, window_seconds)
    try:
        ticket = create_ticket(
            customer=customer,
            name=form.name.data,
            description=sanitize_ticket_text(form.description.data),
        )
    except Exception:
        current_app.logger.exception('Public ticket creation failed for customer %s.', customer.id)
        flash('Failed to open ticket. Please try again.', 'danger')
        return render_open_ticket(customer, ticket_form=form)

    current_app.logger.info('Ticket %s opened from the public form (customer=%s).', ticket.id, customer.id)
    send_ticket_notification(ticket)
    session.pop(OPEN_TICKET_SESSION_KEY, None)
    flash('Ticket opened! Our team will get back to you soon.', 'success')
    return redirect(url_for('main.open_ticket'))


@main_bp.route('/open/reset', methods=['POST'])
def open_ticket_reset():
    session.pop(OPEN_TICKET_SESSION_KEY, None)
    return redirect(url_for('main.open_ticket'))
