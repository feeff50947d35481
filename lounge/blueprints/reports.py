from __future__ import annotations

from datetime import datetime, time

from flask import Blueprint, Response, jsonify, request

from lounge.blueprints.common import (
    bad_request,
    current_user,
    optional_int,
    require_login,
    require_staff,
)
from lounge.database import get_db
from lounge.models import Transaction
from lounge.observability.business_metrics import LOCAL_TZ, compute_dashboard_snapshot
from lounge.services.report_service import PERIODS, ReportOptions, ReportService

reports_bp = Blueprint("reports", __name__)


def _get_report_service() -> ReportService:
    return ReportService(get_db())


def _parse_day(value, end_of_day=False):
    """Parse a YYYY-MM-DD (or full ISO) query value as a lounge-local datetime."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise ValueError(f"Invalid date: {value}") from None
    if len(value) == 10:
        parsed = datetime.combine(parsed.date(), time.max if end_of_day else time.min)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=LOCAL_TZ)
    return parsed


def _attachment(content: bytes, mimetype: str, filename: str) -> Response:
    return Response(
        content,
        mimetype=mimetype,
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@reports_bp.route("/api/reports/<report_type>", methods=["GET"])
def api_report(report_type: str):
    denied = require_staff()
    if denied:
        return denied
    args = request.args
    try:
        options = ReportOptions(
            report_type=report_type,
            format=args.get("format", "json"),
            start_date=_parse_day(args.get("startDate")),
            end_date=_parse_day(args.get("endDate"), end_of_day=True),
            start_hour=optional_int(args.get("startHour"), "startHour"),
            end_hour=optional_int(args.get("endHour"), "endHour"),
            compare_period=args.get("comparePeriod", "monthly"),
            segment_type=args.get("segmentType", "frequency"),
        )
    except ValueError as exc:
        return bad_request(str(exc))

    service = _get_report_service()
    success, message, report = service.generate(options)
    if not success:
        return bad_request(message)
    return _attachment(*service.render(report, options.format))


@reports_bp.route("/api/analytics", methods=["GET"])
def api_analytics():
    denied = require_staff()
    if denied:
        return denied
    period = request.args.get("period", "daily")
    if period not in PERIODS:
        return bad_request(f"Unknown period: {period}")
    return jsonify(_get_report_service().analytics_summary(period))


@reports_bp.route("/api/receipts/<int:transaction_id>", methods=["GET"])
def api_receipt(transaction_id: int):
    denied = require_login()
    if denied:
        return denied
    transaction = get_db().get(Transaction, transaction_id)
    if transaction is None:
        return jsonify({"success": False, "error": "Transaction not found"}), 404
    user = current_user()
    if not user.is_staff and transaction.userID != user.userID:
        return jsonify({"error": "Forbidden"}), 403
    return _attachment(*_get_report_service().render_receipt_pdf(transaction))


@reports_bp.route("/api/dashboard", methods=["GET"])
def api_dashboard():
    denied = require_staff()
    if denied:
        return denied
    return jsonify(compute_dashboard_snapshot(get_db()))
