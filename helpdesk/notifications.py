"""Ticket notification emails.

Delivery goes through the Mailgun HTTP API when ``MAILGUN_API_KEY`` and
``MAILGUN_DOMAIN`` are set, otherwise through SMTP when ``SMTP_HOST`` is set.
With neither configured the notification is skipped and logged.
"""
import base64
import smtplib
import urllib.error
import urllib.parse
import urllib.request
from email.message import EmailMessage

from flask import current_app, has_request_context, request

MAILGUN_API_URL = 'https://api.mailgun.net/v3/{domain}/messages'


def _header_safe(value, max_length=240):
    # CR/LF would allow header injection.
    return ' '.join((value or '').replace('\r', ' ').replace('\n', ' ').split())[:max_length]


def _unique_addresses(raw):
    addresses = []
    seen = set()
    for item in (raw or '').split(','):
        address = _header_safe(item, max_length=320)
        if address and address.lower() not in seen:
            seen.add(address.lower())
            addresses.append(address)
    return addresses


def _customer_url(customer_id):
    base = (current_app.config.get('APP_BASE_URL') or '').rstrip('/')
    if not base and has_request_context():
        base = request.host_url.rstrip('/')
    return f'{base}/dashboard/customers/{customer_id}'


def _deliver_mailgun(message):
    config = current_app.config
    api_key = (config.get('MAILGUN_API_KEY') or '').strip()
    domain = (config.get('MAILGUN_DOMAIN') or '').strip()
    if not api_key or not domain:
        return None

    data = urllib.parse.urlencode({
        'from': message['From'],
        'to': message['To'],
        'subject': message['Subject'],
        'text': message.get_content(),
    }).encode('utf-8')
    req = urllib.request.Request(MAILGUN_API_URL.format(domain=domain), data=data, method='POST')
    credentials = base64.b64encode(f'api:{api_key}'.encode()).decode()
    req.add_header('Authorization', f'Basic {credentials}')
    try:
        with urllib.request.urlopen(req, timeout=15):  # nosec B310
            return True
    except urllib.error.HTTPError as exc:
        current_app.logger.error('Mailgun rejected ticket notification (%s): %s', exc.code,
                                 exc.read().decode('utf-8', errors='replace'))
    except Exception:
        current_app.logger.exception('Mailgun ticket notification failed.')
    return False


def _deliver_smtp(message):
    config = current_app.config
    host = (config.get('SMTP_HOST') or '').strip()
    if not host:
        return None

    port = int(config.get('SMTP_PORT') or 587)
    use_ssl = bool(config.get('SMTP_USE_SSL'))
    smtp_class = smtplib.SMTP_SSL if use_ssl else smtplib.SMTP
    try:
        with smtp_class(host=host, port=port, timeout=12) as smtp:
            if config.get('SMTP_USE_TLS') and not use_ssl:
                smtp.starttls()
            if config.get('SMTP_USERNAME') and config.get('SMTP_PASSWORD'):
                smtp.login(config['SMTP_USERNAME'], config['SMTP_PASSWORD'])
            smtp.send_message(message)
    except Exception:
        current_app.logger.exception('SMTP ticket notification failed.')
        return False
    return True


def ticket_notification_recipients(ticket):
    """Configured support addresses followed by the assigned user's email."""
    raw = current_app.config.get('TICKET_NOTIFICATION_EMAILS') or ''
    user = getattr(ticket, 'user', None)
    if user is not None and user.email:
        raw = f'{raw},{user.email}'
    return _unique_addresses(raw)


def build_ticket_message(ticket, recipients):
    customer = ticket.customer
    message = EmailMessage()
    message['Subject'] = _header_safe(f'[Helpdesk] New ticket #{ticket.id}: {ticket.name}')
    message['From'] = _header_safe(current_app.config.get('MAIL_FROM') or 'no-reply@localhost', max_length=254)
    message['To'] = ', '.join(recipients)
    message.set_content('\n'.join([
        'A new ticket has been opened from the public form.',
        '',
        f'Ticket: #{ticket.id}',
        f'Title: {ticket.name}',
        f'Status: {ticket.status_label}',
        f'Customer: {customer.name}',
        f'Customer email: {customer.email}',
        f'Customer phone: {customer.phone}',
        f'Customer CNPJ: {customer.cnpj}',
        '',
        'Description:',
        ticket.description or '',
        '',
        f'Customer page: {_customer_url(ticket.customer_id)}',
    ]))
    return message


def send_ticket_notification(ticket):
    """Email the new ticket. Returns True only when a provider accepted it."""
    recipients = ticket_notification_recipients(ticket)
    if not recipients:
        return False

    message = build_ticket_message(ticket, recipients)
    for deliver in (_deliver_mailgun, _deliver_smtp):
        result = deliver(message)
        if result is not None:
            return result
    current_app.logger.info('Ticket %s notification skipped: no email provider configured.', ticket.id)
    return False
