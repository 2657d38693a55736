import re
import uuid

import pytest

from helpdesk import create_app
from helpdesk.models import AuthRateLimitBucket, Customer, Ticket, User, db

CSRF_TOKEN_RE = re.compile(r'name="_csrf_token" value="([^"]+)"')
ADMIN_PASSWORD = "admin123"


def extract_csrf_token(html):
    match = CSRF_TOKEN_RE.search(html or "")
    return match.group(1) if match else None


def build_test_app(tmp_path, monkeypatch, overrides=None):
    db_path = tmp_path / f"helpdesk_test_{uuid.uuid4().hex[:8]}.db"

    monkeypatch.setenv("ADMIN_PASSWORD", ADMIN_PASSWORD)

    config = {
        "TESTING": True,
        "SECRET_KEY": "test-secret-key",
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
        "SQLALCHEMY_ENGINE_OPTIONS": {},
        "LOG_JSON": False,
        "SENTRY_DSN": "",
        "TICKET_NOTIFICATION_EMAILS": "",
        "SMTP_HOST": "",
        "MAILGUN_API_KEY": "",
        "MAILGUN_DOMAIN": "",
    }
    if overrides:
        config.update(overrides)

    app = create_app(config)
    with app.app_context():
        AuthRateLimitBucket.query.delete()
        db.session.commit()
    return app


@pytest.fixture()
def app(tmp_path, monkeypatch):
    return build_test_app(tmp_path, monkeypatch)


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def admin_id(app):
    with app.app_context():
        return User.query.filter_by(username="admin").first().id


def csrf_token(client):
    with client.session_transaction() as sess:
        token = sess.get("_csrf_token")
        if not token:
            token = f"test-csrf-{uuid.uuid4().hex}"
            sess["_csrf_token"] = token
    return token


def login(client, username="admin", password=ADMIN_PASSWORD):
    login_page = client.get("/dashboard/login")
    token = extract_csrf_token(login_page.get_data(as_text=True))
    assert token

    response = client.post(
        "/dashboard/login",
        data={
            "_csrf_token": token,
            "username": username,
            "password": password,
        },
        follow_redirects=False,
    )
    assert response.status_code in (302, 303)
    return response


def make_user(app, username, password="Secret-pass-123"):
    with app.app_context():
        user = User(username=username, email=f"{username}@example.com")
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        return user.id


def make_customer(app, user_id, **fields):
    values = {
        "name": "Acme Ltda",
        "email": "contact@acme.com.br",
        "phone": "(11) 98765-4321",
        "cnpj": "12.345.678/0001-99",
    }
    values.update(fields)
    with app.app_context():
        customer = Customer(user_id=user_id, **values)
        db.session.add(customer)
        db.session.commit()
        return customer.id


def make_ticket(app, customer_id, user_id, name="Printer offline", description="It stopped printing.", status="open"):
    with app.app_context():
        ticket = Ticket(
            customer_id=customer_id,
            user_id=user_id,
            name=name,
            description=description,
            status=status,
        )
        db.session.add(ticket)
        db.session.commit()
        return ticket.id
