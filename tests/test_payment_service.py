import pytest

from conftest import MpesaError, stk_callback
from lounge.models import PaymentMethod, PaymentStatus, TransactionStatus
from lounge.observability.metrics import get_counter_value
from lounge.services.payment_service import C2B_REJECT, CALLBACK_ACK, split_amounts


@pytest.mark.parametrize(
    "total, payers, expected",
    [
        (100, 3, [34.0, 33.0, 33.0]),
        (40, 2, [20.0, 20.0]),
        (10.01, 2, [5.01, 5.0]),
        (375, 4, [94.0, 94.0, 94.0, 93.0]),
    ],
)
def test_split_amounts_add_back_up(total, payers, expected):
    parts = split_amounts(total, payers)
    assert parts == expected
    assert round(sum(parts), 2) == round(total, 2)


@pytest.mark.parametrize("total, payers", [(40, 1), (0, 2), (1, 3)])
def test_split_amounts_rejects_impossible_splits(total, payers):
    with pytest.raises(ValueError):
        split_amounts(total, payers)


# ---------------------------------------------------------------------------
# Cash and points
# ---------------------------------------------------------------------------
def test_cash_payment_settles_and_credits_points(payment_service, pending_transaction, customer):
    success, message, payment = payment_service.pay_cash(pending_transaction.transactionID)

    assert success, message
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.reference.startswith(f"CASH-{pending_transaction.transactionID}-")
    assert float(payment.amount) == 40
    assert pending_transaction.payment_status == TransactionStatus.COMPLETED
    assert pending_transaction.points_credited
    assert customer.points == 5
    assert get_counter_value("payments_completed_total", {"method": "cash"}) == 1


def test_paid_transaction_cannot_be_paid_again(payment_service, pending_transaction):
    payment_service.pay_cash(pending_transaction.transactionID)
    success, message, _ = payment_service.pay_cash(pending_transaction.transactionID)
    assert not success
    assert message == "Transaction is already paid"


def test_partial_cash_payments(payment_service, pending_transaction, customer):
    success, _, first = payment_service.pay_cash(pending_transaction.transactionID, amount=15)
    assert success
    assert pending_transaction.payment_status == TransactionStatus.PENDING
    assert pending_transaction.balance_due == 25
    assert customer.points == 0

    success, message, _ = payment_service.pay_cash(pending_transaction.transactionID, amount=30)
    assert not success
    assert message == "Amount exceeds the outstanding balance of 25.00"

    success, _, _ = payment_service.pay_cash(pending_transaction.transactionID)
    assert success
    assert pending_transaction.payment_status == TransactionStatus.COMPLETED
    assert customer.points == 5


def test_unknown_transaction(payment_service, db_session):
    success, message, _ = payment_service.pay_cash(999)
    assert not success
    assert message == "Transaction not found"


def test_split_cash_payments(payment_service, pending_transaction):
    txn_id = pending_transaction.transactionID
    success, _, first = payment_service.pay_cash(txn_id, split_index=1, split_total=3)
    assert success
    assert float(first.amount) == 14
    assert first.split_payment

    payment_service.pay_cash(txn_id, split_index=2, split_total=3)
    assert pending_transaction.payment_status == TransactionStatus.PENDING
    payment_service.pay_cash(txn_id, split_index=3, split_total=3)
    assert pending_transaction.payment_status == TransactionStatus.COMPLETED
    assert pending_transaction.amount_paid == 40


@pytest.mark.parametrize(
    "index, total, expected",
    [
        (1, None, "split_index and split_total must be provided together"),
        (0, 2, "Invalid split position"),
        (3, 2, "Invalid split position"),
        (1, 1, "Invalid split position"),
    ],
)
def test_split_position_validation(payment_service, pending_transaction, index, total, expected):
    success, message, _ = payment_service.pay_cash(
        pending_transaction.transactionID, split_index=index, split_total=total
    )
    assert not success
    assert message == expected


def test_points_payment_needs_enough_points(payment_service, pending_transaction):
    success, message, _ = payment_service.pay_with_points(pending_transaction.transactionID)
    assert not success
    assert message == "Insufficient points: 40 needed, 0 available"


def test_points_payment_does_not_earn_points(payment_service, loyalty_service, pending_transaction, customer):
    loyalty_service.award_points(customer.userID, 100, "Welcome gift")

    success, message, payment = payment_service.pay_with_points(pending_transaction.transactionID)

    assert success, message
    assert message == "Paid with 40 points"
    assert payment.payment_method == PaymentMethod.POINTS
    assert pending_transaction.payment_status == TransactionStatus.COMPLETED
    assert not pending_transaction.points_credited
    assert customer.points == 60


def test_walk_in_cannot_pay_with_points(payment_service, station_service, station, game):
    _, _, game_session = station_service.start_session(
        station.stationID, game.gameID, "per_game", customer_name="Walk-in Wanjiru"
    )
    success, message, _ = payment_service.pay_with_points(game_session.transaction.transactionID)
    assert not success
    assert message == "A registered customer is required to pay with points"


# ---------------------------------------------------------------------------
# M-Pesa
# ---------------------------------------------------------------------------
def test_mpesa_push_creates_pending_payment(payment_service, stub_mpesa, pending_transaction):
    success, message, payment = payment_service.initiate_mpesa(pending_transaction.transactionID, "0712345678")

    assert success, message
    assert payment.status == PaymentStatus.PENDING
    assert payment.checkout_request_id == "ws_CO_1"
    assert payment.phone_number == "254712345678"
    push = stub_mpesa.pushes[0]
    assert push["amount"] == 40
    assert push["account_reference"] == f"TX-{pending_transaction.transactionID}"

    success, message, _ = payment_service.initiate_mpesa(pending_transaction.transactionID, "0712345678")
    assert not success
    assert message == "No outstanding balance; a payment may still be pending"


def test_mpesa_rejects_bad_phone_number(payment_service, stub_mpesa, pending_transaction):
    success, message, _ = payment_service.initiate_mpesa(pending_transaction.transactionID, "12345")
    assert not success
    assert "Invalid phone number" in message
    assert stub_mpesa.pushes == []


def test_mpesa_request_failure_is_counted(payment_service, stub_mpesa, pending_transaction):
    stub_mpesa.fail_with = MpesaError("Service unavailable", status_code=503)
    success, message, _ = payment_service.initiate_mpesa(pending_transaction.transactionID, "0712345678")
    assert not success
    assert message == "M-Pesa request failed: Service unavailable"
    assert get_counter_value("payments_failed_total", {"method": "mpesa"}) == 1
    assert payment_service.payments_for_transaction(pending_transaction.transactionID) == []


def test_successful_callback_settles_transaction(payment_service, pending_transaction, customer):
    _, _, payment = payment_service.initiate_mpesa(pending_transaction.transactionID, "0712345678")

    ack = payment_service.handle_mpesa_callback(stk_callback(payment.checkout_request_id, receipt="QGH12ABC34"))

    assert ack == CALLBACK_ACK
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.reference == "QGH12ABC34"
    assert payment.result_code == "0"
    assert pending_transaction.payment_status == TransactionStatus.COMPLETED
    assert pending_transaction.mpesa_ref == "QGH12ABC34"
    assert customer.points == 5


def test_repeated_callback_is_ignored(payment_service, pending_transaction, customer):
    _, _, payment = payment_service.initiate_mpesa(pending_transaction.transactionID, "0712345678")
    callback = stk_callback(payment.checkout_request_id)

    payment_service.handle_mpesa_callback(callback)
    assert payment_service.handle_mpesa_callback(callback) == CALLBACK_ACK

    assert customer.points == 5
    assert get_counter_value("payments_completed_total", {"method": "mpesa"}) == 1


def test_failed_callback_allows_retry(payment_service, pending_transaction):
    _, _, payment = payment_service.initiate_mpesa(pending_transaction.transactionID, "0712345678")

    payment_service.handle_mpesa_callback(stk_callback(payment.checkout_request_id, result_code=1032))

    assert payment.status == PaymentStatus.FAILED
    assert payment.result_desc == "Request cancelled by user"
    assert pending_transaction.payment_status == TransactionStatus.FAILED

    success, _, retry = payment_service.initiate_mpesa(pending_transaction.transactionID, "0712345678")
    assert success
    assert retry.checkout_request_id == "ws_CO_2"
    assert pending_transaction.payment_status == TransactionStatus.PENDING


@pytest.mark.parametrize("payload", [None, {"Body": {}}, {"unexpected": True}])
def test_malformed_callback_is_still_acknowledged(payment_service, payload):
    assert payment_service.handle_mpesa_callback(payload) == CALLBACK_ACK


def test_callback_for_unknown_checkout_is_acknowledged(payment_service, db_session):
    assert payment_service.handle_mpesa_callback(stk_callback("ws_CO_unknown")) == CALLBACK_ACK


def test_status_query_completes_payment(payment_service, stub_mpesa, pending_transaction):
    _, _, payment = payment_service.initiate_mpesa(pending_transaction.transactionID, "0712345678")

    success, message, queried = payment_service.check_mpesa_status(payment.checkout_request_id)

    assert success
    assert message == "Payment completed"
    assert queried.status == PaymentStatus.COMPLETED
    assert stub_mpesa.queries == ["ws_CO_1"]


def test_status_query_while_processing(payment_service, stub_mpesa, pending_transaction):
    _, _, payment = payment_service.initiate_mpesa(pending_transaction.transactionID, "0712345678")
    stub_mpesa.query_error = MpesaError(
        "The transaction is being processed", status_code=500, error_code="500.001.1001"
    )

    success, message, queried = payment_service.check_mpesa_status(payment.checkout_request_id)

    assert success
    assert message == "Payment is still being processed"
    assert queried.status == PaymentStatus.PENDING


def test_status_query_reports_failure(payment_service, stub_mpesa, pending_transaction):
    _, _, payment = payment_service.initiate_mpesa(pending_transaction.transactionID, "0712345678")
    stub_mpesa.query_response = {"ResultCode": "1032", "ResultDesc": "Request cancelled by user"}

    success, message, queried = payment_service.check_mpesa_status(payment.checkout_request_id)

    assert success
    assert message == "Request cancelled by user"
    assert queried.status == PaymentStatus.FAILED


def test_reversal_refunds_and_claws_back_points(payment_service, stub_mpesa, pending_transaction, customer):
    _, _, payment = payment_service.initiate_mpesa(pending_transaction.transactionID, "0712345678")
    payment_service.handle_mpesa_callback(stk_callback(payment.checkout_request_id, receipt="QGH12ABC34"))
    assert customer.points == 5

    success, message, reversed_payment = payment_service.reverse_mpesa_payment(payment.paymentID, "Wrong station")

    assert success, message
    assert reversed_payment.status == PaymentStatus.REVERSED
    assert pending_transaction.payment_status == TransactionStatus.REFUNDED
    assert not pending_transaction.points_credited
    assert customer.points == 0
    assert stub_mpesa.reversals == [{"receipt": "QGH12ABC34", "amount": 40.0, "remarks": "Wrong station"}]


def test_only_completed_mpesa_payments_reverse(payment_service, pending_transaction):
    _, _, payment = payment_service.pay_cash(pending_transaction.transactionID)
    success, message, _ = payment_service.reverse_mpesa_payment(payment.paymentID)
    assert not success
    assert message == "Only completed M-Pesa payments can be reversed"


def test_c2b_validation(payment_service, pending_transaction):
    reference = f"TX-{pending_transaction.transactionID}"
    assert payment_service.validate_c2b({"BillRefNumber": reference}) == CALLBACK_ACK
    assert payment_service.validate_c2b({"BillRefNumber": "TX-999"}) == C2B_REJECT
    assert payment_service.validate_c2b({"BillRefNumber": "lounge"}) == C2B_REJECT


def test_c2b_confirmation_records_payment_once(payment_service, pending_transaction, customer):
    payload = {
        "TransID": "RKTQDM7W6S",
        "TransAmount": "40.00",
        "BillRefNumber": f"tx{pending_transaction.transactionID}",
        "MSISDN": "254712345678",
    }

    assert payment_service.confirm_c2b(payload) == CALLBACK_ACK
    assert payment_service.confirm_c2b(payload) == CALLBACK_ACK

    payments = payment_service.payments_for_transaction(pending_transaction.transactionID)
    assert len(payments) == 1
    assert payments[0].reference == "RKTQDM7W6S"
    assert pending_transaction.payment_status == TransactionStatus.COMPLETED
    assert customer.points == 5


# ---------------------------------------------------------------------------
# Airtel Money
# ---------------------------------------------------------------------------
def test_airtel_payment_completes_after_provider_delay(payment_service, pending_transaction, timer, customer):
    success, _, payment = payment_service.initiate_airtel(pending_transaction.transactionID, "0733123456")
    assert success
    assert payment.status == PaymentStatus.PENDING
    assert payment.reference.startswith("AIR")

    success, message, _ = payment_service.check_airtel_status(payment.reference)
    assert success
    assert message == "Payment is still being processed"

    timer.advance(30)
    success, _, checked = payment_service.check_airtel_status(payment.reference)
    assert success
    assert checked.status == PaymentStatus.COMPLETED
    assert pending_transaction.payment_status == TransactionStatus.COMPLETED
    assert pending_transaction.mpesa_ref == payment.reference
    assert customer.points == 5


def test_airtel_unknown_reference(payment_service, db_session):
    success, message, _ = payment_service.check_airtel_status("AIR00000000000")
    assert not success
    assert message == "Payment not found"


def test_pending_transactions_listing(payment_service, pending_transaction):
    assert [t.transactionID for t in payment_service.pending_transactions()] == [pending_transaction.transactionID]
    payment_service.pay_cash(pending_transaction.transactionID)
    assert payment_service.pending_transactions() == []
    assert len(payment_service.list_transactions(status="completed")) == 1
