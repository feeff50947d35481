from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from lounge.blueprints.common import (
    bad_request,
    current_user,
    json_payload,
    optional_float,
    optional_int,
    provider_clients,
    require_admin,
    require_login,
    require_staff,
    service_response,
)
from lounge.config import Config
from lounge.database import get_db
from lounge.models import Transaction
from lounge.services.payment_service import CALLBACK_ACK, PaymentService, split_amounts
from lounge.services.report_service import PERIODS, ReportService

payments_bp = Blueprint("payments", __name__)
logger = logging.getLogger(__name__)


def _get_payment_service() -> PaymentService:
    mpesa, airtel = provider_clients()
    return PaymentService(get_db(), mpesa_client=mpesa, airtel_client=airtel)


def _payment_args(payload):
    """Common (transaction_id, amount, split_index, split_total) fields of a payment request."""
    transaction_id = optional_int(payload.get("transactionId"), "transactionId")
    if transaction_id is None:
        raise ValueError("transactionId is required")
    return (
        transaction_id,
        optional_float(payload.get("amount"), "amount"),
        optional_int(payload.get("splitIndex"), "splitIndex"),
        optional_int(payload.get("splitTotal"), "splitTotal"),
    )


def _payer_id(payload):
    """Staff may pay for anyone; customers only ever pay as themselves."""
    user_id = optional_int(payload.get("userId"), "userId")
    user = current_user()
    if user is not None and not user.is_staff:
        if user_id is not None and user_id != user.userID:
            raise PermissionError("Cannot pay on behalf of another customer")
        user_id = user.userID
    return user_id


def _forbidden(exc: PermissionError):
    return jsonify({"error": "Forbidden", "message": str(exc)}), 403


@payments_bp.route("/api/payments/cash", methods=["POST"])
def api_pay_cash():
    denied = require_staff()
    if denied:
        return denied
    payload = json_payload()
    try:
        transaction_id, amount, split_index, split_total = _payment_args(payload)
        user_id = optional_int(payload.get("userId"), "userId")
    except ValueError as exc:
        return bad_request(str(exc))
    success, message, payment = _get_payment_service().pay_cash(
        transaction_id, amount, split_index=split_index, split_total=split_total, user_id=user_id
    )
    return service_response(success, message, "payment", payment)


@payments_bp.route("/api/payments/points", methods=["POST"])
def api_pay_points():
    denied = require_login()
    if denied:
        return denied
    payload = json_payload()
    try:
        transaction_id = optional_int(payload.get("transactionId"), "transactionId")
        user_id = _payer_id(payload)
    except ValueError as exc:
        return bad_request(str(exc))
    except PermissionError as exc:
        return _forbidden(exc)
    if transaction_id is None:
        return bad_request("transactionId is required")
    success, message, payment = _get_payment_service().pay_with_points(transaction_id, user_id=user_id)
    return service_response(success, message, "payment", payment)


@payments_bp.route("/api/payments/mpesa", methods=["POST"])
def api_pay_mpesa():
    denied = require_login()
    if denied:
        return denied
    payload = json_payload()
    try:
        transaction_id, amount, split_index, split_total = _payment_args(payload)
        user_id = _payer_id(payload)
    except ValueError as exc:
        return bad_request(str(exc))
    except PermissionError as exc:
        return _forbidden(exc)
    if not payload.get("phoneNumber"):
        return bad_request("phoneNumber is required")
    success, message, payment = _get_payment_service().initiate_mpesa(
        transaction_id,
        payload["phoneNumber"],
        amount=amount,
        user_id=user_id,
        split_index=split_index,
        split_total=split_total,
    )
    response, status = service_response(success, message, "payment", payment)
    if success:
        body = response.get_json()
        body["checkoutRequestId"] = payment.checkout_request_id
        return jsonify(body), status
    return response, status


@payments_bp.route("/api/payments/airtel", methods=["POST"])
def api_pay_airtel():
    denied = require_login()
    if denied:
        return denied
    payload = json_payload()
    try:
        transaction_id, amount, split_index, split_total = _payment_args(payload)
        user_id = _payer_id(payload)
    except ValueError as exc:
        return bad_request(str(exc))
    except PermissionError as exc:
        return _forbidden(exc)
    if not payload.get("phoneNumber"):
        return bad_request("phoneNumber is required")
    success, message, payment = _get_payment_service().initiate_airtel(
        transaction_id,
        payload["phoneNumber"],
        amount=amount,
        user_id=user_id,
        split_index=split_index,
        split_total=split_total,
    )
    response, status = service_response(success, message, "payment", payment)
    if success:
        body = response.get_json()
        body["reference"] = payment.reference
        return jsonify(body), status
    return response, status


@payments_bp.route("/api/payments/split", methods=["POST"])
def api_split_payment():
    denied = require_staff()
    if denied:
        return denied
    payload = json_payload()
    try:
        payers = optional_int(payload.get("payers"), "payers")
        total = optional_float(payload.get("amount"), "amount")
        transaction_id = optional_int(payload.get("transactionId"), "transactionId")
    except ValueError as exc:
        return bad_request(str(exc))
    if payers is None:
        return bad_request("payers is required")
    if total is None:
        if transaction_id is None:
            return bad_request("amount or transactionId is required")
        transaction = get_db().get(Transaction, transaction_id)
        if transaction is None:
            return jsonify({"success": False, "error": "Transaction not found"}), 404
        total = transaction.balance_due
    try:
        parts = split_amounts(total, payers)
    except ValueError as exc:
        return bad_request(str(exc))
    return jsonify(
        {
            "success": True,
            "total": total,
            "splitTotal": payers,
            "parts": [{"splitIndex": index, "amount": amount} for index, amount in enumerate(parts, start=1)],
        }
    )


@payments_bp.route("/api/payments/transaction/<int:transaction_id>", methods=["GET"])
def api_transaction_payments(transaction_id: int):
    denied = require_login()
    if denied:
        return denied
    transaction = get_db().get(Transaction, transaction_id)
    if transaction is None:
        return jsonify({"success": False, "error": "Transaction not found"}), 404
    user = current_user()
    if not user.is_staff and transaction.userID != user.userID:
        return jsonify({"error": "Forbidden"}), 403
    payments = _get_payment_service().payments_for_transaction(transaction_id)
    return jsonify(
        {
            "transaction": transaction.to_dict(),
            "balanceDue": transaction.balance_due,
            "payments": [p.to_dict() for p in payments],
        }
    )


@payments_bp.route("/api/payments/mpesa/status/<checkout_request_id>", methods=["GET"])
def api_mpesa_status(checkout_request_id: str):
    denied = require_login()
    if denied:
        return denied
    success, message, payment = _get_payment_service().check_mpesa_status(checkout_request_id)
    return service_response(success, message, "payment", payment)


@payments_bp.route("/api/payments/airtel/status/<reference>", methods=["GET"])
def api_airtel_status(reference: str):
    denied = require_login()
    if denied:
        return denied
    success, message, payment = _get_payment_service().check_airtel_status(reference)
    return service_response(success, message, "payment", payment)


@payments_bp.route("/api/payments/<int:payment_id>/reverse", methods=["POST"])
def api_reverse_payment(payment_id: int):
    denied = require_admin()
    if denied:
        return denied
    remarks = json_payload().get("remarks") or "Payment reversal"
    success, message, payment = _get_payment_service().reverse_mpesa_payment(payment_id, remarks=remarks)
    return service_response(success, message, "payment", payment)


@payments_bp.route("/api/payments/debug", methods=["GET"])
def api_payment_debug():
    denied = require_admin()
    if denied:
        return denied
    try:
        limit = optional_int(request.args.get("limit"), "limit") or 20
    except ValueError as exc:
        return bad_request(str(exc))
    return jsonify(_get_payment_service().recent_payment_events(limit=limit))


@payments_bp.route("/api/payments/stats/methods", methods=["GET"])
def api_payment_method_stats():
    denied = require_staff()
    if denied:
        return denied
    return jsonify(ReportService(get_db()).payment_method_breakdown())


@payments_bp.route("/api/payments/stats/<period>", methods=["GET"])
def api_payment_stats(period: str):
    denied = require_staff()
    if denied:
        return denied
    if period not in PERIODS:
        return bad_request(f"Unknown period: {period}")
    return jsonify(ReportService(get_db()).payment_stats(period))


@payments_bp.route("/api/payments/mpesa/qrcode", methods=["POST"])
def api_mpesa_qr():
    denied = require_staff()
    if denied:
        return denied
    payload = json_payload()
    try:
        transaction_id = optional_int(payload.get("transactionId"), "transactionId")
        amount = optional_float(payload.get("amount"), "amount")
    except ValueError as exc:
        return bad_request(str(exc))
    if transaction_id is None:
        return bad_request("transactionId is required")
    success, message, body = _get_payment_service().generate_mpesa_qr(transaction_id, amount)
    return service_response(success, message, "qrCode", body)


# ----------------------------------------------------------------------
# Daraja-facing routes
# ----------------------------------------------------------------------
@payments_bp.route("/api/mpesa/callback", methods=["POST"])
def api_mpesa_callback():
    payload = request.get_json(silent=True)
    try:
        ack = _get_payment_service().handle_mpesa_callback(payload)
    except Exception:
        # Daraja must always get an acknowledgement
        logger.exception("Failed to process M-Pesa callback")
        get_db().rollback()
        ack = dict(CALLBACK_ACK)
    return jsonify(ack), 200


@payments_bp.route("/api/mpesa/c2b/validation", methods=["POST"])
def api_c2b_validation():
    return jsonify(_get_payment_service().validate_c2b(json_payload())), 200


@payments_bp.route("/api/mpesa/c2b/confirmation", methods=["POST"])
def api_c2b_confirmation():
    return jsonify(_get_payment_service().confirm_c2b(json_payload())), 200


@payments_bp.route("/api/mpesa/register-urls", methods=["POST"])
def api_register_urls():
    denied = require_admin()
    if denied:
        return denied
    payload = json_payload()
    base = request.host_url.rstrip("/")
    confirmation_url = payload.get("confirmationUrl") or f"{base}/api/mpesa/c2b/confirmation"
    validation_url = payload.get("validationUrl") or f"{base}/api/mpesa/c2b/validation"
    success, message, body = _get_payment_service().register_mpesa_urls(confirmation_url, validation_url)
    return service_response(success, message, "response", body)


@payments_bp.route("/api/mpesa/transaction-status", methods=["POST"])
def api_mpesa_transaction_status():
    denied = require_admin()
    if denied:
        return denied
    receipt = json_payload().get("transactionId") or json_payload().get("receiptNumber")
    if not receipt:
        return bad_request("receiptNumber is required")
    if not Config.MPESA_INITIATOR_NAME:
        return bad_request("M-Pesa initiator credentials are not configured")
    success, message, body = _get_payment_service().query_mpesa_transaction(receipt)
    return service_response(success, message, "response", body)
