from types import SimpleNamespace

import pytest
from sqlalchemy import event
from sqlalchemy.exc import IntegrityError

from helpdesk.models import Customer, create_customer, db, get_customer_details
from helpdesk.routes import dashboard as dashboard_routes

from conftest import csrf_token, login, make_customer, make_ticket, make_user

VALID_CUSTOMER = {
    "email": "ana@example.com",
    "name": "Ana Souza",
    "phone": "11987654321",
    "cnpj": "12345678000199",
}


def post_customer(client, **overrides):
    data = dict(VALID_CUSTOMER)
    data.update(overrides)
    data["_csrf_token"] = csrf_token(client)
    return client.post("/dashboard/customers/new", data=data, follow_redirects=False)


def test_customer_pages_require_login(client):
    response = client.get("/dashboard/customers/new", follow_redirects=False)
    assert response.status_code in (302, 303)
    assert "/dashboard/login" in response.headers["Location"]


def test_customer_form_renders_masked_inputs(client):
    login(client)
    response = client.get("/dashboard/customers/new")
    assert response.status_code == 200
    html = response.get_data(as_text=True)
    assert 'data-mask="phone"' in html
    assert 'data-mask="cnpj"' in html
    assert 'placeholder="(xx) xxxxx-xxxx"' in html
    assert 'data-mask-url="/dashboard/customers/masks"' in html


def test_create_customer_persists_normalized_values_and_clears_form(client, app, admin_id):
    login(client)
    response = post_customer(client)
    assert response.status_code in (302, 303)
    assert response.headers["Location"].endswith("/dashboard/customers/new")

    follow = client.get(response.headers["Location"])
    html = follow.get_data(as_text=True)
    assert "Customer registered successfully!" in html
    assert 'value="ana@example.com"' not in html
    assert 'value="(11) 98765-4321"' not in html

    with app.app_context():
        customer = Customer.query.filter_by(email="ana@example.com").one()
        assert customer.name == "Ana Souza"
        assert customer.phone == "(11) 98765-4321"
        assert customer.cnpj == "12.345.678/0001-99"
        assert customer.user_id == admin_id


def test_create_customer_calls_create_once(client, monkeypatch, admin_id):
    calls = []

    def fake_create_customer(**kwargs):
        calls.append(kwargs)
        return SimpleNamespace(id=99, **kwargs)

    monkeypatch.setattr(dashboard_routes, "create_customer", fake_create_customer)
    login(client)
    response = post_customer(client)
    assert response.status_code in (302, 303)
    assert calls == [
        {
            "email": "ana@example.com",
            "name": "Ana Souza",
            "phone": "(11) 98765-4321",
            "cnpj": "12.345.678/0001-99",
            "user_id": admin_id,
        }
    ]


def test_create_customer_failure_keeps_fields_and_shows_toast(client, app, monkeypatch):
    def failing_create_customer(**kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(dashboard_routes, "create_customer", failing_create_customer)
    login(client)
    response = post_customer(client)
    assert response.status_code == 200
    html = response.get_data(as_text=True)
    assert "Failed to register customer." in html
    assert "Customer registered successfully!" not in html
    assert 'value="ana@example.com"' in html
    assert 'value="Ana Souza"' in html
    assert 'value="(11) 98765-4321"' in html
    assert 'value="12.345.678/0001-99"' in html
    assert "field-error" not in html

    with app.app_context():
        assert Customer.query.count() == 0


def test_invalid_customer_is_not_submitted(client, app, monkeypatch):
    calls = []
    monkeypatch.setattr(dashboard_routes, "create_customer", lambda **kwargs: calls.append(kwargs))
    login(client)
    response = post_customer(client, phone="123", cnpj="abc")
    assert response.status_code == 200
    html = response.get_data(as_text=True)
    assert "The phone field must be in the format (xx) xxxxx-xxxx." in html
    assert "The CNPJ field is required." in html
    assert calls == []

    with app.app_context():
        assert Customer.query.count() == 0


def test_get_customer_details_loads_tickets_and_users_in_one_query(app, admin_id):
    customer_id = make_customer(app, admin_id)
    make_ticket(app, customer_id, admin_id, name="Printer offline")
    make_ticket(app, customer_id, admin_id, name="Email bounce", status="closed")

    with app.app_context():
        statements = []

        def record(conn, cursor, statement, parameters, context, executemany):
            statements.append(statement)

        event.listen(db.engine, "before_cursor_execute", record)
        try:
            customer = get_customer_details(customer_id)
            ticket_names = sorted(ticket.name for ticket in customer.tickets)
            usernames = {ticket.user.username for ticket in customer.tickets}
        finally:
            event.remove(db.engine, "before_cursor_execute", record)

    assert len(statements) == 1
    assert ticket_names == ["Email bounce", "Printer offline"]
    assert usernames == {"admin"}


def test_get_customer_details_returns_none_for_unknown_id(app):
    with app.app_context():
        assert get_customer_details(424242) is None


def test_customer_detail_page_lists_tickets(client, app, admin_id):
    customer_id = make_customer(app, admin_id, name="Padaria Pão Quente")
    make_ticket(app, customer_id, admin_id, name="Card reader down")
    login(client)
    response = client.get(f"/dashboard/customers/{customer_id}")
    assert response.status_code == 200
    html = response.get_data(as_text=True)
    assert "Padaria Pão Quente" in html
    assert "Card reader down" in html
    assert "(11) 98765-4321" in html
    assert "12.345.678/0001-99" in html
    assert "<td>admin</td>" in html


def test_customer_detail_page_for_unknown_customer(client):
    login(client)
    response = client.get("/dashboard/customers/424242")
    assert response.status_code == 404
    assert "Customer not found" in response.get_data(as_text=True)


def test_customer_masks_endpoint(client):
    login(client)
    response = client.get("/dashboard/customers/masks", query_string={"field": "phone", "value": "11987"})
    assert response.status_code == 200
    assert response.get_json() == {"field": "phone", "value": "(11) 987"}

    response = client.get("/dashboard/customers/masks", query_string={"field": "cnpj", "value": "123456780001"})
    assert response.get_json() == {"field": "cnpj", "value": "12.345.678/0001"}

    response = client.get("/dashboard/customers/masks", query_string={"field": "email", "value": "x"})
    assert response.status_code == 400


def test_customer_list_only_shows_own_customers(client, app, admin_id):
    other_id = make_user(app, "agent")
    make_customer(app, admin_id, name="Mine Co", email="mine@example.com")
    make_customer(app, other_id, name="Theirs Co", email="theirs@example.com")
    login(client)

    html = client.get("/dashboard/customers").get_data(as_text=True)
    assert "Mine Co" in html
    assert "Theirs Co" not in html

    html = client.get("/dashboard/customers", query_string={"q": "nothing%"}).get_data(as_text=True)
    assert "Mine Co" not in html
    assert "No customers found." in html


def test_delete_customer_refused_while_tickets_exist(client, app, admin_id):
    customer_id = make_customer(app, admin_id)
    make_ticket(app, customer_id, admin_id)
    login(client)
    response = client.post(
        f"/dashboard/customers/{customer_id}/delete",
        data={"_csrf_token": csrf_token(client)},
        follow_redirects=True,
    )
    assert response.status_code == 200
    assert "still has tickets" in response.get_data(as_text=True)
    with app.app_context():
        assert db.session.get(Customer, customer_id) is not None


def test_delete_customer_without_tickets(client, app, admin_id):
    customer_id = make_customer(app, admin_id)
    login(client)
    response = client.post(
        f"/dashboard/customers/{customer_id}/delete",
        data={"_csrf_token": csrf_token(client)},
        follow_redirects=False,
    )
    assert response.status_code in (302, 303)
    with app.app_context():
        assert db.session.get(Customer, customer_id) is None


def test_delete_customer_of_another_user_is_not_found(client, app):
    other_id = make_user(app, "agent")
    customer_id = make_customer(app, other_id)
    login(client)
    response = client.post(
        f"/dashboard/customers/{customer_id}/delete",
        data={"_csrf_token": csrf_token(client)},
    )
    assert response.status_code == 404


def test_create_customer_rolls_back_its_own_failure(app, admin_id):
    with app.app_context():
        with pytest.raises(IntegrityError):
            create_customer(
                name="Orphan Co",
                email="orphan@example.com",
                phone="(11) 98765-4321",
                cnpj="12.345.678/0001-99",
                user_id=None,
            )
        # The session is usable again without the caller rolling back.
        assert Customer.query.count() == 0
        customer = create_customer(
            name="Acme Ltda",
            email="contact@acme.com.br",
            phone="(11) 98765-4321",
            cnpj="12.345.678/0001-99",
            user_id=admin_id,
        )
        assert customer.id is not None


def test_customer_detail_shows_ticket_status_labels(client, app, admin_id):
    customer_id = make_customer(app, admin_id)
    make_ticket(app, customer_id, admin_id, name="Fresh issue")
    make_ticket(app, customer_id, admin_id, name="Old issue", status="closed")
    login(client)
    html = client.get(f"/dashboard/customers/{customer_id}").get_data(as_text=True)
    assert '<span class="badge badge-open">Open</span>' in html
    assert '<span class="badge badge-closed">Closed</span>' in html


def test_mask_endpoint_leaves_formatted_values_unchanged(client):
    login(client)
    for field, value in (("phone", "(11) 98765-4321"), ("phone", "(11) 98"), ("cnpj", "12.345.678/0001-99")):
        response = client.get("/dashboard/customers/masks", query_string={"field": field, "value": value})
        assert response.get_json()["value"] == value


def test_mask_script_waits_for_typing_to_pause(client):
    script = client.get("/static/js/app.js").get_data(as_text=True)
    assert "MASK_DELAY_MS" in script
    assert "setSelectionRange" in script
