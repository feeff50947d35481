import pytest
from sqlalchemy.exc import OperationalError

from lounge import realtime
from lounge.main import app as flask_app
from lounge.realtime import broadcast_station_update, notify_customer_check_in, socketio


@pytest.fixture
def socket_client(db_session):
    client = socketio.test_client(flask_app)
    yield client
    if client.is_connected():
        client.disconnect()


@pytest.fixture
def staff(customer_service):
    success, message, user = customer_service.create_staff_user(
        "Front Desk", "desk", "0700000002", "staff-pass-123"
    )
    assert success, message
    return user


def _signed_in_socket(username, password):
    http = flask_app.test_client()
    response = http.post("/api/auth/login", json={"username": username, "password": password})
    assert response.status_code == 200
    client = socketio.test_client(flask_app, flask_test_client=http)
    client.get_received()
    return client


def _events(client, name):
    return [message["args"][0] for message in client.get_received() if message["name"] == name]


def test_connect_is_acknowledged(socket_client):
    (payload,) = _events(socket_client, "connection_established")
    assert payload["clientId"]
    assert payload["timestamp"]


def test_unknown_role(socket_client):
    socket_client.get_received()
    socket_client.emit("register_role", {"role": "manager"})
    assert _events(socket_client, "error") == [{"message": "Unknown role: manager"}]


@pytest.mark.parametrize("role", ["admin", "staff", "customer"])
def test_anonymous_sockets_cannot_join_rooms(socket_client, role):
    socket_client.get_received()
    socket_client.emit("register_role", {"role": role})
    assert _events(socket_client, "error") == [{"message": f"Not allowed to register as {role}"}]


def test_staff_register_as_staff_only(db_session, staff):
    client = _signed_in_socket("desk", "staff-pass-123")

    client.emit("register_role", {"role": "admin"})
    assert _events(client, "error") == [{"message": "Not allowed to register as admin"}]

    client.emit("register_role", {"role": "staff"})
    assert _events(client, "role_registered") == [{"role": "staff", "userId": staff.userID}]
    client.disconnect()


def test_customers_cannot_listen_to_staff_rooms(db_session, customer):
    client = _signed_in_socket("ProGamer", "gamer-pass-123")

    client.emit("register_role", {"role": "admin"})
    assert _events(client, "error") == [{"message": "Not allowed to register as admin"}]

    client.emit("register_role", {"role": "customer"})
    assert _events(client, "role_registered") == [{"role": "customer", "userId": customer.userID}]

    assert notify_customer_check_in({"bookingId": 1, "stationId": 2})
    assert _events(client, "customer_check_in") == []
    client.disconnect()


def test_station_update_on_request(socket_client, station):
    socket_client.get_received()
    socket_client.emit("station_update_request")
    (payload,) = _events(socket_client, "station_update")
    assert [s["name"] for s in payload["stations"]] == ["PS5 Station 1"]


def test_station_changes_are_broadcast(socket_client, station_service):
    socket_client.get_received()
    station_service.create_station("VR Pod", "vr")
    (payload,) = _events(socket_client, "station_update")
    assert [s["name"] for s in payload["stations"]] == ["VR Pod"]


def test_payment_confirmation_reaches_staff_room(staff, payment_service, pending_transaction):
    client = _signed_in_socket("desk", "staff-pass-123")
    client.emit("register_role", {"role": "staff"})
    client.get_received()

    payment_service.pay_cash(pending_transaction.transactionID)

    (payload,) = _events(client, "payment_confirmation")
    assert payload["transactionId"] == pending_transaction.transactionID
    assert payload["method"] == "cash"
    assert payload["transactionStatus"] == "completed"
    client.disconnect()


def test_publisher_failures_stay_out_of_the_business_flow(monkeypatch, db_session, station_service):
    def broken_payload(db):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(realtime, "_station_payload", broken_payload)

    assert broadcast_station_update(db_session) is False
    success, _, station = station_service.create_station("VR Pod", "vr")
    assert success
    assert station.stationID is not None
