from __future__ import annotations

from flask import Blueprint, jsonify, request

from lounge.blueprints.common import (
    bad_request,
    can_access_user,
    current_user,
    json_payload,
    optional_float,
    optional_int,
    require_login,
    require_staff,
    service_response,
)
from lounge.database import get_db
from lounge.models import Booking
from lounge.services.booking_service import BookingService

bookings_bp = Blueprint("bookings", __name__)


def _get_booking_service() -> BookingService:
    return BookingService(get_db())


@bookings_bp.route("/api/bookings", methods=["GET"])
def api_list_bookings():
    denied = require_login()
    if denied:
        return denied
    user = current_user()
    try:
        station_id = optional_int(request.args.get("stationId"), "stationId")
        user_id = optional_int(request.args.get("userId"), "userId")
    except ValueError as exc:
        return bad_request(str(exc))
    if not user.is_staff:
        user_id = user.userID
    try:
        bookings = _get_booking_service().list_bookings(
            booking_date=request.args.get("date") or None,
            station_id=station_id,
            user_id=user_id,
            status=request.args.get("status") or None,
        )
    except ValueError as exc:
        return bad_request(str(exc))
    return jsonify([b.to_dict() for b in bookings])


@bookings_bp.route("/api/bookings", methods=["POST"])
def api_create_booking():
    denied = require_login()
    if denied:
        return denied
    payload = json_payload()
    try:
        station_id = optional_int(payload.get("stationId"), "stationId")
        user_id = optional_int(payload.get("userId"), "userId") or current_user().userID
        duration = optional_int(payload.get("duration"), "duration") or 1
        price = optional_float(payload.get("price"), "price")
    except ValueError as exc:
        return bad_request(str(exc))
    if station_id is None or not payload.get("date") or not payload.get("startTime"):
        return bad_request("stationId, date and startTime are required")
    if not can_access_user(user_id):
        return jsonify({"error": "Forbidden"}), 403

    user = current_user()
    success, message, booking = _get_booking_service().create_booking(
        station_id=station_id,
        user_id=user_id,
        booking_date=payload["date"],
        start_time=payload["startTime"],
        duration_hours=duration,
        price=price if user.is_staff else None,
        note=payload.get("note"),
        status=payload.get("status", "pending") if user.is_staff else "pending",
    )
    return service_response(success, message, "booking", booking, created=True)


@bookings_bp.route("/api/bookings/<int:booking_id>", methods=["PATCH"])
def api_update_booking(booking_id: int):
    denied = require_staff()
    if denied:
        return denied
    payload = json_payload()
    field_map = {
        "stationId": "station_id",
        "date": "booking_date",
        "startTime": "start_time",
        "duration": "duration_hours",
        "price": "price",
        "note": "note",
    }
    changes = {field: payload[key] for key, field in field_map.items() if key in payload}
    numeric_fields = (
        ("station_id", "stationId", optional_int),
        ("duration_hours", "duration", optional_int),
        ("price", "price", optional_float),
    )
    try:
        for field, key, parse in numeric_fields:
            if field in changes:
                value = parse(changes.pop(field), key)
                if value is not None:
                    changes[field] = value
    except ValueError as exc:
        return bad_request(str(exc))
    success, message, booking = _get_booking_service().update_booking(booking_id, changes)
    return service_response(success, message, "booking", booking)


@bookings_bp.route("/api/bookings/<int:booking_id>/confirm", methods=["POST"])
def api_confirm_booking(booking_id: int):
    denied = require_staff()
    if denied:
        return denied
    success, message, booking = _get_booking_service().confirm(booking_id)
    return service_response(success, message, "booking", booking)


@bookings_bp.route("/api/bookings/<int:booking_id>/cancel", methods=["POST"])
def api_cancel_booking(booking_id: int):
    denied = require_login()
    if denied:
        return denied
    booking = get_db().get(Booking, booking_id)
    if booking is not None and not can_access_user(booking.userID):
        return jsonify({"error": "Forbidden"}), 403
    success, message, booking = _get_booking_service().cancel(booking_id)
    return service_response(success, message, "booking", booking)


@bookings_bp.route("/api/bookings/<int:booking_id>/complete", methods=["POST"])
def api_complete_booking(booking_id: int):
    denied = require_staff()
    if denied:
        return denied
    success, message, booking = _get_booking_service().complete(booking_id)
    return service_response(success, message, "booking", booking)


@bookings_bp.route("/api/bookings/<int:booking_id>/check-in", methods=["POST"])
def api_check_in_booking(booking_id: int):
    denied = require_staff()
    if denied:
        return denied
    try:
        game_id = optional_int(json_payload().get("gameId"), "gameId")
    except ValueError as exc:
        return bad_request(str(exc))
    success, message, booking = _get_booking_service().check_in(booking_id, game_id=game_id)
    return service_response(success, message, "booking", booking)
