import pytest
import requests

from lounge.config import Config
from lounge.integrations.airtel import (
    SANDBOX_URL,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_NOT_FOUND,
    STATUS_PENDING,
    AirtelMoneyClient,
    AirtelMoneyError,
)


class _LiveConfig(Config):
    AIRTEL_ENVIRONMENT = "sandbox"
    AIRTEL_CLIENT_ID = "client-id"
    AIRTEL_CLIENT_SECRET = "client-secret"
    PROVIDER_RETRY_ATTEMPTS = 1


class _FakeResponse:
    def __init__(self, status_code, body):
        self.status_code = status_code
        self._body = body
        self.text = str(body)

    def json(self):
        return self._body


class _FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, json=None, headers=None, timeout=None):
        self.calls.append({"method": method, "url": url, "json": json, "headers": headers})
        outcome = self.responses.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def test_mock_reference_format(airtel_client):
    reference = airtel_client.generate_reference()
    assert reference.startswith("AIR")
    assert len(reference) == 14
    assert reference[3:].isdigit()


def test_mock_payment_completes_after_delay(airtel_client, timer):
    result = airtel_client.initiate_payment("0733123456", 200, "Lounge TX-1")
    assert result.status == STATUS_PENDING

    assert airtel_client.check_transaction_status(result.reference).status == STATUS_PENDING

    timer.advance(Config.AIRTEL_MOCK_COMPLETION_SECONDS)
    completed = airtel_client.check_transaction_status(result.reference)
    assert completed.status == STATUS_COMPLETED
    assert completed.provider_reference == f"MP{result.reference[3:]}"


def test_mock_ledger_is_shared_between_clients(airtel_client, timer):
    result = airtel_client.initiate_payment("0733123456", 200, "Lounge TX-1")
    other = AirtelMoneyClient(clock=timer)
    assert other.check_transaction_status(result.reference).status == STATUS_PENDING


def test_mock_unknown_reference_is_not_found(airtel_client):
    assert airtel_client.check_transaction_status("AIR00000000000").status == STATUS_NOT_FOUND


def test_mock_rejects_non_positive_amount(airtel_client):
    with pytest.raises(AirtelMoneyError):
        airtel_client.initiate_payment("0733123456", 0, "Lounge TX-1")


def test_msisdn_drops_country_code():
    assert AirtelMoneyClient.to_msisdn("+254 733 123 456") == "733123456"


def test_live_collection_request(timer):
    session = _FakeSession(
        [
            _FakeResponse(200, {"access_token": "airtel-token", "expires_in": "180"}),
            _FakeResponse(
                200,
                {
                    "data": {"transaction": {"id": "AIR-PROVIDER-1", "status": "TIP"}},
                    "status": {"success": True, "message": "SUCCESS"},
                },
            ),
        ]
    )
    client = AirtelMoneyClient(_LiveConfig, session=session, clock=timer)

    result = client.initiate_payment("0733123456", 150, "Lounge TX-7")

    assert result.status == STATUS_PENDING
    assert result.provider_reference == "AIR-PROVIDER-1"
    token_call, collect_call = session.calls
    assert token_call["url"] == f"{SANDBOX_URL}/auth/oauth2/token"
    assert collect_call["url"] == f"{SANDBOX_URL}/merchant/v1/payments/"
    assert collect_call["headers"]["Authorization"] == "Bearer airtel-token"
    assert collect_call["headers"]["X-Country"] == "KE"
    assert collect_call["json"]["subscriber"]["msisdn"] == "733123456"
    assert collect_call["json"]["transaction"]["id"] == result.reference


@pytest.mark.parametrize(
    "provider_status, expected",
    [("TS", STATUS_COMPLETED), ("TF", STATUS_FAILED), ("TA", STATUS_PENDING), ("TIP", STATUS_PENDING)],
)
def test_live_status_mapping(timer, provider_status, expected):
    session = _FakeResponse(200, {"access_token": "airtel-token", "expires_in": "3600"})
    status = _FakeResponse(
        200,
        {"data": {"transaction": {"status": provider_status, "airtel_money_id": "MP2506"}}, "status": {"message": "ok"}},
    )
    client = AirtelMoneyClient(_LiveConfig, session=_FakeSession([session, status]), clock=timer)
    assert client.check_transaction_status("AIR12345678123").status == expected


def test_live_status_404_is_not_found(timer):
    client = AirtelMoneyClient(
        _LiveConfig,
        session=_FakeSession(
            [
                _FakeResponse(200, {"access_token": "airtel-token", "expires_in": "3600"}),
                _FakeResponse(404, {"status": {"message": "Transaction not found"}}),
            ]
        ),
        clock=timer,
    )
    assert client.check_transaction_status("AIR12345678123").status == STATUS_NOT_FOUND


def test_live_rejection_raises(timer):
    client = AirtelMoneyClient(
        _LiveConfig,
        session=_FakeSession(
            [
                _FakeResponse(200, {"access_token": "airtel-token", "expires_in": "3600"}),
                _FakeResponse(200, {"status": {"success": False, "message": "Subscriber not found"}}),
            ]
        ),
        clock=timer,
    )
    with pytest.raises(AirtelMoneyError, match="Subscriber not found"):
        client.initiate_payment("0733123456", 150, "Lounge TX-7")


def test_live_collection_is_not_resent_after_a_read_timeout(timer):
    class _RetryingConfig(_LiveConfig):
        PROVIDER_RETRY_ATTEMPTS = 3

    session = _FakeSession(
        [
            _FakeResponse(200, {"access_token": "airtel-token", "expires_in": "3600"}),
            requests.ReadTimeout("no response"),
            _FakeResponse(200, {"data": {"transaction": {"status": "TIP"}}, "status": {"success": True}}),
        ]
    )
    client = AirtelMoneyClient(_RetryingConfig, session=session, clock=timer)

    with pytest.raises(AirtelMoneyError, match="Could not reach Airtel Money"):
        client.initiate_payment("0733123456", 150, "Lounge TX-7")
    assert [call["url"] for call in session.calls].count(f"{SANDBOX_URL}/merchant/v1/payments/") == 1
