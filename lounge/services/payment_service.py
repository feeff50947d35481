from __future__ import annotations

import logging
import math
import re
import uuid
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import desc
from sqlalchemy.orm import Session

from lounge.config import Config
from lounge.integrations.airtel import (
    STATUS_COMPLETED as AIRTEL_COMPLETED,
    STATUS_FAILED as AIRTEL_FAILED,
    STATUS_NOT_FOUND as AIRTEL_NOT_FOUND,
    AirtelMoneyClient,
    AirtelMoneyError,
)
from lounge.integrations.mpesa import MpesaCallbackError, MpesaClient, MpesaError, normalize_phone_number
from lounge.models import (
    Payment,
    PaymentMethod,
    PaymentStatus,
    Transaction,
    TransactionStatus,
    User,
)
from lounge.observability import increment_counter, log_payment_debug, record_event
from lounge.observability.logging_config import read_payment_debug_log
from lounge.observability.metrics import recent_events
from lounge.realtime import broadcast_transaction_update, notify_payment_confirmation
from lounge.services.loyalty_service import LoyaltyService

CALLBACK_ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}
C2B_REJECT = {"ResultCode": "C2B00012", "ResultDesc": "Rejected"}

_ACCOUNT_REFERENCE = re.compile(r"^TX-?(\d+)$", re.IGNORECASE)
_MOBILE_METHODS = (PaymentMethod.MPESA, PaymentMethod.AIRTEL)


def split_amounts(total: float, payers: int) -> List[float]:
    """
    Divide a bill between `payers` so the parts add back up to `total` exactly.

    Whole-shilling totals split into whole shillings; the leftover shillings
    go to the first payers.
    """
    if payers < 2:
        raise ValueError("A split payment needs at least two payers")
    total_cents = int(round(float(total) * 100))
    if total_cents <= 0:
        raise ValueError("Amount must be positive")
    unit = 100 if total_cents % 100 == 0 else 1
    units = total_cents // unit
    if units < payers:
        raise ValueError("Amount is too small to split that many ways")
    base, remainder = divmod(units, payers)
    return [((base + (1 if index < remainder else 0)) * unit) / 100 for index in range(payers)]


class PaymentService:
    """
    Takes payment for lounge transactions: cash, loyalty points, M-Pesa STK
    push and Airtel Money. Mobile payments start pending and settle through
    the provider callback or status polling. A transaction completes (and
    its loyalty points are credited) once completed payments cover it.
    """

    def __init__(
        self,
        db_session: Session,
        config: type[Config] = Config,
        mpesa_client: Optional[MpesaClient] = None,
        airtel_client: Optional[AirtelMoneyClient] = None,
        loyalty_service: Optional[LoyaltyService] = None,
    ) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.config = config
        self.mpesa = mpesa_client or MpesaClient(config)
        self.airtel = airtel_client or AirtelMoneyClient(config)
        self.loyalty = loyalty_service or LoyaltyService(db_session, config=config)

    # ------------------------------------------------------------------
    # Cash and points
    # ------------------------------------------------------------------
    def pay_cash(
        self,
        transaction_id: int,
        amount: Optional[float] = None,
        split_index: Optional[int] = None,
        split_total: Optional[int] = None,
        user_id: Optional[int] = None,
    ) -> Tuple[bool, str, Optional[Payment]]:
        transaction, amount_or_error = self._prepare(transaction_id, amount, split_index, split_total)
        if transaction is None:
            return False, amount_or_error, None

        payment = self._new_payment(
            transaction,
            PaymentMethod.CASH,
            amount_or_error,
            user_id=user_id,
            split_index=split_index,
            split_total=split_total,
        )
        payment.reference = f"CASH-{transaction.transactionID}-{uuid.uuid4().hex[:8].upper()}"
        self._complete_payment(payment)
        self.db.commit()
        self._publish(payment)
        return True, "Cash payment recorded", payment

    def pay_with_points(
        self,
        transaction_id: int,
        user_id: Optional[int] = None,
    ) -> Tuple[bool, str, Optional[Payment]]:
        transaction, amount_or_error = self._prepare(transaction_id, None, None, None)
        if transaction is None:
            return False, amount_or_error, None

        user = self.db.get(User, user_id or transaction.userID) if (user_id or transaction.userID) else None
        if user is None:
            return False, "A registered customer is required to pay with points", None

        amount = amount_or_error
        points_needed = math.ceil(amount) * self.config.POINTS_REDEMPTION_RATE
        if (user.points or 0) < points_needed:
            return False, f"Insufficient points: {points_needed} needed, {user.points or 0} available", None

        payment = self._new_payment(transaction, PaymentMethod.POINTS, amount, user_id=user.userID)
        payment.reference = f"PTS-{transaction.transactionID}-{uuid.uuid4().hex[:8].upper()}"
        self.loyalty.apply_points(
            user,
            -points_needed,
            f"Paid transaction #{transaction.transactionID} with points",
            transaction_id=transaction.transactionID,
        )
        self._complete_payment(payment)
        self.db.commit()
        self._publish(payment)
        return True, f"Paid with {points_needed} points", payment

    # ------------------------------------------------------------------
    # M-Pesa
    # ------------------------------------------------------------------
    def initiate_mpesa(
        self,
        transaction_id: int,
        phone_number: str,
        amount: Optional[float] = None,
        user_id: Optional[int] = None,
        split_index: Optional[int] = None,
        split_total: Optional[int] = None,
    ) -> Tuple[bool, str, Optional[Payment]]:
        transaction, amount_or_error = self._prepare(transaction_id, amount, split_index, split_total)
        if transaction is None:
            return False, amount_or_error, None
        amount = amount_or_error

        try:
            response = self.mpesa.stk_push(
                phone_number,
                amount,
                account_reference=f"TX-{transaction.transactionID}",
                transaction_desc=f"Lounge TX{transaction.transactionID}",
            )
        except ValueError as exc:
            return False, str(exc), None
        except MpesaError as exc:
            self._record_failure(PaymentMethod.MPESA, transaction.transactionID, str(exc))
            return False, f"M-Pesa request failed: {exc}", None

        payment = self._new_payment(
            transaction,
            PaymentMethod.MPESA,
            amount,
            user_id=user_id,
            split_index=split_index,
            split_total=split_total,
        )
        payment.phone_number = normalize_phone_number(phone_number)
        payment.merchant_request_id = response.get("MerchantRequestID")
        payment.checkout_request_id = response.get("CheckoutRequestID")
        self.db.commit()

        increment_counter("payments_initiated_total", labels={"method": PaymentMethod.MPESA.value})
        record_event(
            "payment_initiated",
            {
                "payment_id": payment.paymentID,
                "transaction_id": transaction.transactionID,
                "method": PaymentMethod.MPESA.value,
                "checkout_request_id": payment.checkout_request_id,
            },
        )
        message = response.get("CustomerMessage") or "Check your phone to complete the payment"
        return True, message, payment

    def handle_mpesa_callback(self, payload: Any) -> Dict[str, Any]:
        """Apply an STK push result. Always returns the acknowledgement Daraja expects."""
        log_payment_debug("mpesa", "callback", payload)
        try:
            callback = MpesaClient.parse_stk_callback(payload)
        except MpesaCallbackError as exc:
            self.logger.warning("Rejected malformed M-Pesa callback: %s", exc)
            record_event("mpesa_callback_rejected", {"reason": str(exc)})
            return dict(CALLBACK_ACK)

        payment = self.get_payment_by_checkout_id(callback.checkout_request_id)
        if payment is None:
            self.logger.warning(
                "M-Pesa callback for unknown checkout request",
                extra={"checkout_request_id": callback.checkout_request_id},
            )
            return dict(CALLBACK_ACK)
        if payment.status != PaymentStatus.PENDING:
            self.logger.info(
                "Ignoring repeated M-Pesa callback",
                extra={"payment_id": payment.paymentID, "status": payment.status.value},
            )
            return dict(CALLBACK_ACK)

        payment.result_code = str(callback.result_code)
        payment.result_desc = callback.result_desc
        if callback.succeeded:
            self._complete_payment(payment, reference=callback.receipt_number)
        else:
            self._fail_payment(payment, callback.result_desc)
        self.db.commit()
        self._publish(payment)
        return dict(CALLBACK_ACK)

    def check_mpesa_status(self, checkout_request_id: str) -> Tuple[bool, str, Optional[Payment]]:
        """Poll Daraja for a pending STK push, for when the callback never arrives."""
        payment = self.get_payment_by_checkout_id(checkout_request_id)
        if payment is None:
            return False, "Payment not found", None
        if payment.status != PaymentStatus.PENDING:
            return True, f"Payment {payment.status.value}", payment

        try:
            body = self.mpesa.stk_query(checkout_request_id)
        except MpesaError as exc:
            if exc.is_processing:
                return True, "Payment is still being processed", payment
            return False, f"Could not query M-Pesa: {exc}", payment

        result_code = body.get("ResultCode")
        if result_code is None or str(result_code) == "":
            return True, "Payment is still being processed", payment

        payment.result_code = str(result_code)
        payment.result_desc = body.get("ResultDesc")
        if str(result_code) == "0":
            self._complete_payment(payment)
            message = "Payment completed"
        else:
            self._fail_payment(payment, body.get("ResultDesc") or "Payment failed")
            message = body.get("ResultDesc") or "Payment failed"
        self.db.commit()
        self._publish(payment)
        return True, message, payment

    def validate_c2b(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Daraja C2B validation: accept only bill references that name a payable transaction."""
        transaction = self._transaction_for_account(payload.get("BillRefNumber"))
        if transaction is None or transaction.payment_status in (
            TransactionStatus.COMPLETED,
            TransactionStatus.REFUNDED,
        ):
            return dict(C2B_REJECT)
        return dict(CALLBACK_ACK)

    def confirm_c2b(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Record a paybill payment the customer made directly from their phone."""
        log_payment_debug("mpesa", "c2b_confirmation", payload)
        transaction = self._transaction_for_account(payload.get("BillRefNumber"))
        receipt = payload.get("TransID")
        try:
            amount = float(payload.get("TransAmount"))
        except (TypeError, ValueError):
            amount = 0.0
        if transaction is None or not receipt or amount <= 0:
            self.logger.warning("Unmatched C2B confirmation", extra={"bill_ref": payload.get("BillRefNumber")})
            return dict(CALLBACK_ACK)
        if self.db.query(Payment).filter(Payment.reference == receipt).first():
            return dict(CALLBACK_ACK)
        if transaction.payment_status in (TransactionStatus.COMPLETED, TransactionStatus.REFUNDED):
            self.logger.warning(
                "C2B payment received for a closed transaction",
                extra={"transaction_id": transaction.transactionID, "receipt": receipt},
            )
            return dict(CALLBACK_ACK)

        payment = self._new_payment(transaction, PaymentMethod.MPESA, amount)
        payment.phone_number = str(payload.get("MSISDN") or "") or None
        self._complete_payment(payment, reference=receipt)
        self.db.commit()
        self._publish(payment)
        return dict(CALLBACK_ACK)

    def reverse_mpesa_payment(
        self,
        payment_id: int,
        remarks: str = "Payment reversal",
    ) -> Tuple[bool, str, Optional[Payment]]:
        payment = self.db.get(Payment, payment_id)
        if payment is None:
            return False, "Payment not found", None
        if payment.payment_method != PaymentMethod.MPESA or payment.status != PaymentStatus.COMPLETED:
            return False, "Only completed M-Pesa payments can be reversed", payment
        if not payment.reference:
            return False, "Payment has no M-Pesa receipt to reverse", payment

        try:
            self.mpesa.reverse_transaction(payment.reference, float(payment.amount), remarks=remarks[:100])
        except MpesaError as exc:
            self.logger.error("M-Pesa reversal failed", extra={"payment_id": payment_id, "reason": str(exc)})
            return False, f"Reversal failed: {exc}", payment

        payment.transition_to(PaymentStatus.REVERSED)
        transaction = payment.transaction
        if transaction.payment_status == TransactionStatus.COMPLETED:
            transaction.transition_to(TransactionStatus.REFUNDED)
        if transaction.points_credited and transaction.user is not None:
            clawback = min(transaction.points_awarded or 0, transaction.user.points or 0)
            if clawback > 0:
                self.loyalty.apply_points(
                    transaction.user,
                    -clawback,
                    f"Points reversed for transaction #{transaction.transactionID}",
                    transaction_id=transaction.transactionID,
                )
            transaction.points_credited = False
        self.db.commit()

        increment_counter("payments_reversed_total", labels={"method": PaymentMethod.MPESA.value})
        record_event("payment_reversed", {"payment_id": payment_id, "transaction_id": transaction.transactionID})
        broadcast_transaction_update(self.db)
        return True, "Payment reversed", payment

    def generate_mpesa_qr(
        self,
        transaction_id: int,
        amount: Optional[float] = None,
    ) -> Tuple[bool, str, Optional[Dict[str, Any]]]:
        transaction, amount_or_error = self._prepare(transaction_id, amount, None, None)
        if transaction is None:
            return False, amount_or_error, None
        try:
            body = self.mpesa.generate_qr_code(amount_or_error, f"TX-{transaction.transactionID}")
        except MpesaError as exc:
            return False, f"Could not generate QR code: {exc}", None
        return True, "QR code generated", body

    def register_mpesa_urls(self, confirmation_url: str, validation_url: str) -> Tuple[bool, str, Optional[Dict[str, Any]]]:
        try:
            body = self.mpesa.register_urls(confirmation_url, validation_url)
        except MpesaError as exc:
            return False, f"URL registration failed: {exc}", None
        return True, body.get("ResponseDescription") or "URLs registered", body

    def query_mpesa_transaction(self, receipt_number: str) -> Tuple[bool, str, Optional[Dict[str, Any]]]:
        try:
            body = self.mpesa.transaction_status(receipt_number)
        except MpesaError as exc:
            return False, f"Status query failed: {exc}", None
        return True, body.get("ResponseDescription") or "Status query accepted", body

    # ------------------------------------------------------------------
    # Airtel Money
    # ------------------------------------------------------------------
    def initiate_airtel(
        self,
        transaction_id: int,
        phone_number: str,
        amount: Optional[float] = None,
        user_id: Optional[int] = None,
        split_index: Optional[int] = None,
        split_total: Optional[int] = None,
    ) -> Tuple[bool, str, Optional[Payment]]:
        transaction, amount_or_error = self._prepare(transaction_id, amount, split_index, split_total)
        if transaction is None:
            return False, amount_or_error, None
        amount = amount_or_error

        try:
            result = self.airtel.initiate_payment(phone_number, amount, f"Lounge TX-{transaction.transactionID}")
        except ValueError as exc:
            return False, str(exc), None
        except AirtelMoneyError as exc:
            self._record_failure(PaymentMethod.AIRTEL, transaction.transactionID, str(exc))
            return False, f"Airtel Money request failed: {exc}", None

        payment = self._new_payment(
            transaction,
            PaymentMethod.AIRTEL,
            amount,
            user_id=user_id,
            split_index=split_index,
            split_total=split_total,
        )
        payment.reference = result.reference
        payment.phone_number = normalize_phone_number(phone_number)
        payment.result_desc = result.message
        if result.status == AIRTEL_COMPLETED:
            self._complete_payment(payment)
        self.db.commit()

        increment_counter("payments_initiated_total", labels={"method": PaymentMethod.AIRTEL.value})
        record_event(
            "payment_initiated",
            {
                "payment_id": payment.paymentID,
                "transaction_id": transaction.transactionID,
                "method": PaymentMethod.AIRTEL.value,
                "reference": payment.reference,
            },
        )
        if payment.status == PaymentStatus.COMPLETED:
            self._publish(payment)
        return True, result.message, payment

    def check_airtel_status(self, reference: str) -> Tuple[bool, str, Optional[Payment]]:
        payment = (
            self.db.query(Payment)
            .filter(Payment.reference == reference, Payment.payment_method == PaymentMethod.AIRTEL)
            .first()
        )
        if payment is None:
            return False, "Payment not found", None
        if payment.status != PaymentStatus.PENDING:
            return True, f"Payment {payment.status.value}", payment

        try:
            result = self.airtel.check_transaction_status(reference)
        except AirtelMoneyError as exc:
            return False, f"Could not query Airtel Money: {exc}", payment

        payment.result_code = result.status
        payment.result_desc = result.message
        if result.status == AIRTEL_COMPLETED:
            self._complete_payment(payment)
        elif result.status == AIRTEL_FAILED:
            self._fail_payment(payment, result.message)
        elif result.status == AIRTEL_NOT_FOUND:
            self._fail_payment(payment, "Transaction not found at Airtel Money")
        else:
            self.db.commit()
            return True, "Payment is still being processed", payment
        self.db.commit()
        self._publish(payment)
        return True, result.message, payment

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_payment_by_checkout_id(self, checkout_request_id: str) -> Optional[Payment]:
        return (
            self.db.query(Payment)
            .filter(Payment.checkout_request_id == checkout_request_id)
            .first()
        )

    def payments_for_transaction(self, transaction_id: int) -> List[Payment]:
        return (
            self.db.query(Payment)
            .filter(Payment.transactionID == transaction_id)
            .order_by(Payment.paymentID)
            .all()
        )

    def list_transactions(
        self,
        status: Optional[str] = None,
        user_id: Optional[int] = None,
        limit: int = 100,
    ) -> List[Transaction]:
        query = self.db.query(Transaction)
        if status:
            query = query.filter(Transaction.payment_status == TransactionStatus(status))
        if user_id is not None:
            query = query.filter(Transaction.userID == user_id)
        return query.order_by(desc(Transaction.created_at), desc(Transaction.transactionID)).limit(limit).all()

    def pending_transactions(self) -> List[Transaction]:
        return self.list_transactions(status=TransactionStatus.PENDING.value, limit=500)

    def recent_payment_events(self, limit: int = 20) -> Dict[str, Any]:
        return {
            "log": read_payment_debug_log(limit=limit),
            "failures": recent_events("payment_failed", limit=limit),
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _prepare(
        self,
        transaction_id: int,
        amount: Optional[float],
        split_index: Optional[int],
        split_total: Optional[int],
    ) -> Tuple[Optional[Transaction], Any]:
        """Return (transaction, amount to charge) or (None, error message)."""
        transaction = self.db.get(Transaction, transaction_id)
        if transaction is None:
            return None, "Transaction not found"
        if transaction.payment_status == TransactionStatus.COMPLETED:
            return None, "Transaction is already paid"
        if transaction.payment_status == TransactionStatus.REFUNDED:
            return None, "Transaction has been refunded"

        if (split_index is None) != (split_total is None):
            return None, "split_index and split_total must be provided together"
        if split_total is not None:
            if split_total < 2 or not 1 <= split_index <= split_total:
                return None, "Invalid split position"

        in_flight = sum(
            float(p.amount) for p in transaction.payments if p.status == PaymentStatus.PENDING
        )
        outstanding = round(transaction.balance_due - in_flight, 2)
        if outstanding <= 0:
            return None, "No outstanding balance; a payment may still be pending"

        if amount is None:
            if split_total is not None:
                parts = split_amounts(float(transaction.amount), split_total)
                amount = min(parts[split_index - 1], outstanding)
            else:
                amount = outstanding
        try:
            amount = round(float(amount), 2)
        except (TypeError, ValueError):
            return None, "Amount must be a number"
        if amount <= 0:
            return None, "Amount must be positive"
        if amount > outstanding + 0.001:
            return None, f"Amount exceeds the outstanding balance of {outstanding:.2f}"
        return transaction, amount

    def _new_payment(
        self,
        transaction: Transaction,
        method: PaymentMethod,
        amount: float,
        user_id: Optional[int] = None,
        split_index: Optional[int] = None,
        split_total: Optional[int] = None,
    ) -> Payment:
        if transaction.payment_status == TransactionStatus.FAILED:
            transaction.transition_to(TransactionStatus.PENDING)
        payment = Payment(
            userID=user_id or transaction.userID,
            amount=amount,
            payment_method=method,
            status=PaymentStatus.PENDING,
            split_payment=split_total is not None,
            split_index=split_index,
            split_total=split_total,
        )
        payment.transaction = transaction
        self.db.add(payment)
        self.db.flush()
        return payment

    def _complete_payment(self, payment: Payment, reference: Optional[str] = None) -> None:
        payment.transition_to(PaymentStatus.COMPLETED)
        if reference:
            payment.reference = reference
        self.db.flush()
        self._settle(payment.transaction)
        increment_counter("payments_completed_total", labels={"method": payment.payment_method.value})
        self.logger.info(
            "Payment completed",
            extra={
                "payment_id": payment.paymentID,
                "transaction_id": payment.transactionID,
                "payment_method": payment.payment_method.value,
                "amount": float(payment.amount),
            },
        )

    def _fail_payment(self, payment: Payment, reason: Optional[str]) -> None:
        payment.transition_to(PaymentStatus.FAILED)
        payment.result_desc = reason
        transaction = payment.transaction
        others_open = any(
            p.paymentID != payment.paymentID and p.status in (PaymentStatus.PENDING, PaymentStatus.COMPLETED)
            for p in transaction.payments
        )
        if not payment.split_payment and not others_open and transaction.payment_status == TransactionStatus.PENDING:
            transaction.transition_to(TransactionStatus.FAILED)
        self._record_failure(payment.payment_method, payment.transactionID, reason or "Payment failed", payment.paymentID)

    def _settle(self, transaction: Transaction) -> bool:
        if transaction.payment_status in (TransactionStatus.COMPLETED, TransactionStatus.REFUNDED):
            return False
        if transaction.amount_paid + 0.001 < float(transaction.amount):
            return False

        transaction.transition_to(TransactionStatus.COMPLETED)
        completed = [p for p in transaction.payments if p.status == PaymentStatus.COMPLETED]
        mobile_refs = [p.reference for p in completed if p.payment_method in _MOBILE_METHODS and p.reference]
        if mobile_refs:
            transaction.mpesa_ref = mobile_refs[-1]

        paid_with_points = any(p.payment_method == PaymentMethod.POINTS for p in completed)
        if (
            transaction.user is not None
            and (transaction.points_awarded or 0) > 0
            and not paid_with_points
            and not transaction.points_credited
        ):
            self.loyalty.apply_points(
                transaction.user,
                transaction.points_awarded,
                f"Points for {transaction.game_name} (transaction #{transaction.transactionID})",
                transaction_id=transaction.transactionID,
            )
            transaction.points_credited = True
        record_event(
            "transaction_settled",
            {"transaction_id": transaction.transactionID, "amount": float(transaction.amount)},
        )
        return True

    def _record_failure(
        self,
        method: PaymentMethod,
        transaction_id: int,
        reason: str,
        payment_id: Optional[int] = None,
    ) -> None:
        increment_counter("payments_failed_total", labels={"method": method.value})
        record_event(
            "payment_failed",
            {"transaction_id": transaction_id, "payment_id": payment_id, "method": method.value, "reason": reason},
        )
        self.logger.warning(
            "Payment failed",
            extra={"transaction_id": transaction_id, "payment_id": payment_id, "payment_method": method.value, "reason": reason},
        )

    def _transaction_for_account(self, account_reference: Optional[str]) -> Optional[Transaction]:
        match = _ACCOUNT_REFERENCE.match((account_reference or "").strip())
        if not match:
            return None
        return self.db.get(Transaction, int(match.group(1)))

    def _publish(self, payment: Payment) -> None:
        transaction = payment.transaction
        if payment.status == PaymentStatus.COMPLETED:
            notify_payment_confirmation(
                {
                    "paymentId": payment.paymentID,
                    "transactionId": payment.transactionID,
                    "amount": float(payment.amount),
                    "method": payment.payment_method.value,
                    "reference": payment.reference,
                    "transactionStatus": transaction.payment_status.value,
                    "customerName": transaction.customer_name,
                },
                user_id=payment.userID,
            )
        broadcast_transaction_update(self.db)
