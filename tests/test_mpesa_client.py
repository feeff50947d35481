import base64

import pytest
import requests

from conftest import FakeTimer, stk_callback
from lounge.config import Config
from lounge.integrations.mpesa import (
    SANDBOX_URL,
    MpesaCallbackError,
    MpesaClient,
    MpesaError,
    normalize_phone_number,
)


class _StubConfig(Config):
    MPESA_ENVIRONMENT = "sandbox"
    MPESA_CONSUMER_KEY = "consumer-key"
    MPESA_CONSUMER_SECRET = "consumer-secret"
    MPESA_SHORTCODE = "174379"
    MPESA_PASSKEY = "passkey"
    MPESA_CALLBACK_URL = "https://lounge.example.com/api/mpesa/callback"
    MPESA_TOKEN_TTL_SECONDS = 3300
    PROVIDER_RETRY_ATTEMPTS = 3


class _FakeResponse:
    def __init__(self, status_code, body):
        self.status_code = status_code
        self._body = body
        self.text = str(body)

    def json(self):
        if isinstance(self._body, Exception):
            raise self._body
        return self._body


class _FakeSession:
    """Scripted replacement for requests.Session keyed by URL path."""

    def __init__(self):
        self.calls = []
        self.scripts = {}

    def script(self, path, *outcomes):
        self.scripts.setdefault(path, []).extend(outcomes)

    def request(self, method, url, json=None, params=None, auth=None, headers=None, timeout=None):
        path = url.replace(SANDBOX_URL, "")
        self.calls.append({"method": method, "path": path, "json": json, "params": params, "auth": auth, "headers": headers})
        if path == "/oauth/v1/generate" and not self.scripts.get(path):
            return _FakeResponse(200, {"access_token": f"token-{len(self.calls)}", "expires_in": "3599"})
        outcome = self.scripts[path].pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def paths(self):
        return [call["path"] for call in self.calls]


_ACCEPTED = {
    "MerchantRequestID": "29115-34620561-1",
    "CheckoutRequestID": "ws_CO_191220191020363925",
    "ResponseCode": "0",
    "ResponseDescription": "Success. Request accepted for processing",
    "CustomerMessage": "Success. Request accepted for processing",
}


@pytest.fixture
def fake_session():
    return _FakeSession()


@pytest.fixture
def mpesa(fake_session):
    return MpesaClient(_StubConfig, session=fake_session, clock=FakeTimer(), retry_wait_multiplier=0)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("0712345678", "254712345678"),
        ("+254 712 345 678", "254712345678"),
        ("712345678", "254712345678"),
        ("254-712-345-678", "254712345678"),
        ("0110123456", "254110123456"),
    ],
)
def test_normalize_phone_number_accepts_local_and_international_forms(raw, expected):
    assert normalize_phone_number(raw) == expected


@pytest.mark.parametrize("raw", ["12345", "2547123", "not-a-phone", "", None])
def test_normalize_phone_number_rejects_malformed_numbers(raw):
    with pytest.raises(ValueError):
        normalize_phone_number(raw)


def test_stk_push_builds_daraja_payload(mpesa, fake_session):
    fake_session.script("/mpesa/stkpush/v1/processrequest", _FakeResponse(200, dict(_ACCEPTED)))

    body = mpesa.stk_push("0712345678", 40.4, "TX-123456789012345", "Infinity Gaming Lounge session")

    assert body["CheckoutRequestID"] == "ws_CO_191220191020363925"
    push = fake_session.calls[-1]
    payload = push["json"]
    assert push["headers"]["Authorization"].startswith("Bearer token-")
    assert payload["Amount"] == 40
    assert payload["PartyA"] == payload["PhoneNumber"] == "254712345678"
    assert payload["AccountReference"] == "TX-123456789"
    assert payload["TransactionDesc"] == "Infinity Gami"
    assert payload["CallBackURL"] == _StubConfig.MPESA_CALLBACK_URL
    expected_password = base64.b64encode(f"174379passkey{payload['Timestamp']}".encode()).decode()
    assert payload["Password"] == expected_password
    assert len(payload["Timestamp"]) == 14


def test_access_token_is_cached_until_expiry(fake_session):
    timer = FakeTimer()
    client = MpesaClient(_StubConfig, session=fake_session, clock=timer, retry_wait_multiplier=0)
    fake_session.script(
        "/mpesa/stkpush/v1/processrequest",
        _FakeResponse(200, dict(_ACCEPTED)),
        _FakeResponse(200, dict(_ACCEPTED)),
        _FakeResponse(200, dict(_ACCEPTED)),
    )

    client.stk_push("0712345678", 40, "TX-1", "Lounge TX1")
    client.stk_push("0712345678", 40, "TX-2", "Lounge TX2")
    assert fake_session.paths().count("/oauth/v1/generate") == 1

    timer.advance(_StubConfig.MPESA_TOKEN_TTL_SECONDS + 1)
    client.stk_push("0712345678", 40, "TX-3", "Lounge TX3")
    assert fake_session.paths().count("/oauth/v1/generate") == 2


def test_oauth_uses_basic_auth_credentials(mpesa, fake_session):
    mpesa.get_access_token()
    oauth = fake_session.calls[0]
    assert oauth["auth"] == ("consumer-key", "consumer-secret")
    assert oauth["params"] == {"grant_type": "client_credentials"}
    assert "Authorization" not in oauth["headers"]


def test_missing_credentials_raise_before_any_request(fake_session):
    class _Unconfigured(_StubConfig):
        MPESA_CONSUMER_KEY = ""

    client = MpesaClient(_Unconfigured, session=fake_session, retry_wait_multiplier=0)
    with pytest.raises(MpesaError, match="not configured"):
        client.stk_push("0712345678", 40, "TX-1", "Lounge TX1")
    assert fake_session.calls == []


def test_rejected_stk_push_raises(mpesa, fake_session):
    fake_session.script(
        "/mpesa/stkpush/v1/processrequest",
        _FakeResponse(200, {"ResponseCode": "1", "ResponseDescription": "Rejected"}),
    )
    with pytest.raises(MpesaError, match="Rejected"):
        mpesa.stk_push("0712345678", 40, "TX-1", "Lounge TX1")


def test_http_error_carries_daraja_error_code(mpesa, fake_session):
    fake_session.script(
        "/mpesa/stkpushquery/v1/query",
        _FakeResponse(500, {"errorCode": "500.001.1001", "errorMessage": "The transaction is being processed"}),
    )
    with pytest.raises(MpesaError) as excinfo:
        mpesa.stk_query("ws_CO_1")
    assert excinfo.value.status_code == 500
    assert excinfo.value.error_code == "500.001.1001"
    assert excinfo.value.is_processing


def test_connection_errors_are_retried(mpesa, fake_session):
    fake_session.script(
        "/mpesa/stkpushquery/v1/query",
        requests.ConnectionError("reset by peer"),
        requests.Timeout("slow"),
        _FakeResponse(200, {"ResultCode": "0", "ResultDesc": "processed"}),
    )
    body = mpesa.stk_query("ws_CO_1")
    assert body["ResultCode"] == "0"
    assert fake_session.paths().count("/mpesa/stkpushquery/v1/query") == 3


def test_http_errors_are_not_retried(mpesa, fake_session):
    fake_session.script(
        "/mpesa/stkpush/v1/processrequest",
        _FakeResponse(400, {"errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid Amount"}),
    )
    with pytest.raises(MpesaError, match="Invalid Amount"):
        mpesa.stk_push("0712345678", 40, "TX-1", "Lounge TX1")
    assert fake_session.paths().count("/mpesa/stkpush/v1/processrequest") == 1


def test_exhausted_retries_surface_as_mpesa_error(mpesa, fake_session):
    fake_session.script(
        "/mpesa/stkpushquery/v1/query",
        requests.ConnectionError("down"),
        requests.ConnectionError("down"),
        requests.ConnectionError("down"),
    )
    with pytest.raises(MpesaError, match="Could not reach M-Pesa"):
        mpesa.stk_query("ws_CO_1")

def test_stk_push_is_not_resent_after_a_read_timeout(mpesa, fake_session):
    fake_session.script(
        "/mpesa/stkpush/v1/processrequest",
        requests.ReadTimeout("no response"),
        _FakeResponse(200, dict(_ACCEPTED)),
    )
    with pytest.raises(MpesaError, match="Could not reach M-Pesa"):
        mpesa.stk_push("0712345678", 40, "TX-1", "Lounge TX1")
    assert fake_session.paths().count("/mpesa/stkpush/v1/processrequest") == 1


def test_stk_push_is_resent_when_the_connection_never_opened(mpesa, fake_session):
    fake_session.script(
        "/mpesa/stkpush/v1/processrequest",
        requests.ConnectTimeout("connect timed out"),
        requests.ConnectionError("refused"),
        _FakeResponse(200, dict(_ACCEPTED)),
    )
    body = mpesa.stk_push("0712345678", 40, "TX-1", "Lounge TX1")
    assert body["ResponseCode"] == "0"
    assert fake_session.paths().count("/mpesa/stkpush/v1/processrequest") == 3


def test_reversal_is_not_resent_after_a_read_timeout(mpesa, fake_session):
    fake_session.script("/mpesa/reversal/v1/request", requests.ReadTimeout("no response"))
    with pytest.raises(MpesaError):
        mpesa.reverse_transaction("QGH12ABC34", 40.0)
    assert fake_session.paths().count("/mpesa/reversal/v1/request") == 1



def test_reversal_and_qr_payloads(mpesa, fake_session):
    fake_session.script("/mpesa/reversal/v1/request", _FakeResponse(200, {"ResponseCode": "0"}))
    fake_session.script("/mpesa/qrcode/v1/generate", _FakeResponse(200, {"QRCode": "abc"}))

    mpesa.reverse_transaction("QGH12ABC34", 40.0, remarks="Customer refund")
    mpesa.generate_qr_code(250.6, "TX-9")

    reversal = fake_session.calls[-2]["json"]
    assert reversal["CommandID"] == "TransactionReversal"
    assert reversal["TransactionID"] == "QGH12ABC34"
    assert reversal["Amount"] == 40
    qr = fake_session.calls[-1]["json"]
    assert qr["Amount"] == 251
    assert qr["RefNo"] == "TX-9"
    assert qr["CPI"] == "174379"


def test_parse_successful_callback():
    callback = MpesaClient.parse_stk_callback(stk_callback("ws_CO_1", receipt="QGH12ABC34", amount=40))
    assert callback.succeeded
    assert callback.checkout_request_id == "ws_CO_1"
    assert callback.receipt_number == "QGH12ABC34"
    assert callback.amount == 40.0
    assert callback.phone_number == "254712345678"


def test_parse_failed_callback_has_no_metadata():
    callback = MpesaClient.parse_stk_callback(stk_callback("ws_CO_1", result_code=1032))
    assert not callback.succeeded
    assert callback.result_code == 1032
    assert callback.receipt_number is None


@pytest.mark.parametrize(
    "payload",
    [
        None,
        [],
        {"Body": {}},
        {"Body": {"stkCallback": {"ResultCode": 0}}},
        {"Body": {"stkCallback": {"CheckoutRequestID": "ws_CO_1", "ResultCode": "abc"}}},
    ],
)
def test_parse_malformed_callback_raises(payload):
    with pytest.raises(MpesaCallbackError):
        MpesaClient.parse_stk_callback(payload)
