# tests/conftest.py
"""
Shared fixtures: an in-memory SQLite database, a controllable clock,
sample lounge data and stub payment provider clients.
"""

import os
from datetime import datetime, timedelta, timezone

# Must be set before anything imports lounge.config
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["DEFAULT_TIMEZONE"] = "UTC"
os.environ["PAYMENT_DEBUG_LOG_ENABLED"] = "false"
os.environ["AIRTEL_ENVIRONMENT"] = "mock"
os.environ["FLASK_TESTING"] = "true"

import pytest

from lounge.database import Base, SessionLocal, engine
from lounge.integrations.airtel import AirtelMoneyClient, _MockLedger
from lounge.integrations.mpesa import MpesaClient, MpesaError, normalize_phone_number
from lounge.models import Game, GameStation, StationCategory, StationStatus
from lounge.observability.metrics import reset_metrics
from lounge.services.customer_service import CustomerService
from lounge.services.loyalty_service import LoyaltyService
from lounge.services.payment_service import PaymentService
from lounge.services.station_service import StationService

# Wednesday, outside peak hours
START_TIME = datetime(2025, 6, 4, 10, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable datetime clock that tests move forward by hand."""

    def __init__(self, start=START_TIME):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class FakeTimer:
    """Float clock for the provider clients (seconds since the epoch)."""

    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class StubMpesaClient:
    """Stands in for MpesaClient in service tests; records every call."""

    def __init__(self):
        self.pushes = []
        self.queries = []
        self.reversals = []
        self.fail_with = None
        self.query_response = {"ResultCode": "0", "ResultDesc": "The service request is processed successfully."}
        self.query_error = None
        self._counter = 0

    def stk_push(self, phone_number, amount, account_reference, transaction_desc, callback_url=None):
        phone = normalize_phone_number(phone_number)
        if self.fail_with is not None:
            raise self.fail_with
        self._counter += 1
        self.pushes.append(
            {
                "phone": phone,
                "amount": amount,
                "account_reference": account_reference,
                "transaction_desc": transaction_desc,
            }
        )
        return {
            "MerchantRequestID": f"MR-{self._counter}",
            "CheckoutRequestID": f"ws_CO_{self._counter}",
            "ResponseCode": "0",
            "CustomerMessage": "Success. Request accepted for processing",
        }

    def stk_query(self, checkout_request_id):
        self.queries.append(checkout_request_id)
        if self.query_error is not None:
            raise self.query_error
        return dict(self.query_response)

    def reverse_transaction(self, transaction_id, amount, remarks="Payment reversal"):
        if self.fail_with is not None:
            raise self.fail_with
        self.reversals.append({"receipt": transaction_id, "amount": amount, "remarks": remarks})
        return {"ResponseCode": "0", "ResponseDescription": "Accept the service request successfully."}

    def generate_qr_code(self, amount, reference):
        return {"ResponseCode": "AG_20191219_000043fdf61864fe9ff5", "QRCode": "iVBORw0KGgo=", "RefNo": reference, "Amount": amount}

    def register_urls(self, confirmation_url, validation_url):
        return {"ResponseDescription": "success", "ConfirmationURL": confirmation_url, "ValidationURL": validation_url}

    def transaction_status(self, transaction_id):
        return {"ResponseCode": "0", "ResponseDescription": "Accept the service request successfully."}

    parse_stk_callback = staticmethod(MpesaClient.parse_stk_callback)


def stk_callback(checkout_request_id, result_code=0, receipt="QGH12ABC34", amount=40, phone=254712345678):
    body = {
        "MerchantRequestID": "MR-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully." if result_code == 0 else "Request cancelled by user",
    }
    if result_code == 0:
        body["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "TransactionDate", "Value": 20250604101500},
                {"Name": "PhoneNumber", "Value": phone},
            ]
        }
    return {"Body": {"stkCallback": body}}


@pytest.fixture(autouse=True)
def _reset_state():
    reset_metrics()
    _MockLedger().clear()
    yield
    _MockLedger().clear()


@pytest.fixture
def db_session():
    """Fresh schema for every test."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timer():
    return FakeTimer()


@pytest.fixture
def loyalty_service(db_session):
    return LoyaltyService(db_session)


@pytest.fixture
def customer_service(db_session, loyalty_service):
    return CustomerService(db_session, loyalty_service=loyalty_service)


@pytest.fixture
def station_service(db_session, loyalty_service, clock):
    return StationService(db_session, loyalty_service=loyalty_service, clock=clock)


@pytest.fixture
def stub_mpesa():
    return StubMpesaClient()


@pytest.fixture
def airtel_client(timer):
    return AirtelMoneyClient(clock=timer)


@pytest.fixture
def payment_service(db_session, stub_mpesa, airtel_client, loyalty_service):
    return PaymentService(
        db_session,
        mpesa_client=stub_mpesa,
        airtel_client=airtel_client,
        loyalty_service=loyalty_service,
    )


@pytest.fixture
def customer(customer_service):
    success, message, user = customer_service.register_customer(
        display_name="John Doe",
        gaming_name="ProGamer",
        phone_number="0712345678",
        password="gamer-pass-123",
    )
    assert success, message
    return user


@pytest.fixture
def game(db_session):
    fifa = Game(name="FIFA 24", category="Sports", price_per_session=40, price_per_hour=200, popularity=0, is_active=True)
    db_session.add(fifa)
    db_session.commit()
    return fifa


@pytest.fixture
def station(db_session):
    ps5 = GameStation(
        name="PS5 Station 1",
        category=StationCategory.CONSOLE,
        status=StationStatus.OPERATIONAL,
        is_available=True,
        hourly_rate=300,
    )
    db_session.add(ps5)
    db_session.commit()
    return ps5


@pytest.fixture
def second_station(db_session):
    pc = GameStation(
        name="Gaming PC 1",
        category=StationCategory.PC,
        status=StationStatus.OPERATIONAL,
        is_available=True,
    )
    db_session.add(pc)
    db_session.commit()
    return pc


@pytest.fixture
def pending_transaction(station_service, station, game, customer):
    """A per-game session's unpaid 40 KES transaction for the sample customer."""
    success, message, game_session = station_service.start_session(
        station.stationID, game.gameID, "per_game", customer_id=customer.userID
    )
    assert success, message
    return game_session.transaction


__all__ = ["FakeClock", "FakeTimer", "StubMpesaClient", "stk_callback", "MpesaError", "START_TIME"]
