from __future__ import annotations

from flask import Blueprint, jsonify, request

from lounge.blueprints.common import (
    bad_request,
    current_user,
    json_payload,
    optional_float,
    optional_int,
    require_admin,
    require_login,
    require_staff,
    service_response,
)
from lounge.database import get_db
from lounge.models import TransactionStatus
from lounge.services.payment_service import PaymentService
from lounge.services.station_service import StationService

stations_bp = Blueprint("stations", __name__)

_STATION_FIELDS = {
    "name": "name",
    "specs": "specs",
    "location": "location",
    "notes": "notes",
    "hourlyRate": "hourly_rate",
    "peakHourRate": "peak_hour_rate",
    "offPeakRate": "off_peak_rate",
    "weekendRate": "weekend_rate",
    "nextMaintenance": "next_maintenance",
    "category": "category",
}
_GAME_FIELDS = {
    "name": "name",
    "description": "description",
    "category": "category",
    "pricePerSession": "price_per_session",
    "pricePerHour": "price_per_hour",
    "isActive": "is_active",
}


def _get_station_service() -> StationService:
    return StationService(get_db())


def _pick(payload, field_map):
    return {field: payload[key] for key, field in field_map.items() if key in payload}


# ----------------------------------------------------------------------
# Stations
# ----------------------------------------------------------------------
@stations_bp.route("/api/stations", methods=["GET"])
def api_list_stations():
    return jsonify([s.to_dict() for s in _get_station_service().list_stations()])


@stations_bp.route("/api/stations", methods=["POST"])
def api_create_station():
    denied = require_admin()
    if denied:
        return denied
    payload = json_payload()
    fields = _pick(payload, _STATION_FIELDS)
    name = fields.pop("name", None)
    category = fields.pop("category", "console")
    success, message, station = _get_station_service().create_station(name, category, **fields)
    return service_response(success, message, "station", station, created=True)


@stations_bp.route("/api/stations/<int:station_id>", methods=["PATCH"])
def api_update_station(station_id: int):
    denied = require_admin()
    if denied:
        return denied
    success, message, station = _get_station_service().update_station(
        station_id, _pick(json_payload(), _STATION_FIELDS)
    )
    return service_response(success, message, "station", station)


@stations_bp.route("/api/stations/<int:station_id>/status", methods=["POST"])
def api_set_station_status(station_id: int):
    denied = require_staff()
    if denied:
        return denied
    payload = json_payload()
    if not payload.get("status"):
        return bad_request("status is required")
    success, message, station = _get_station_service().set_station_status(
        station_id, payload["status"], notes=payload.get("notes")
    )
    return service_response(success, message, "station", station)


@stations_bp.route("/api/stations/<int:station_id>/transactions", methods=["GET"])
def api_station_history(station_id: int):
    denied = require_staff()
    if denied:
        return denied
    service = _get_station_service()
    if not service.get_station(station_id):
        return jsonify({"success": False, "error": "Station not found"}), 404
    return jsonify([t.to_dict() for t in service.station_history(station_id)])


# ----------------------------------------------------------------------
# Games
# ----------------------------------------------------------------------
@stations_bp.route("/api/games", methods=["GET"])
def api_list_games():
    active_only = request.args.get("active", "").lower() in ("1", "true", "yes")
    return jsonify([g.to_dict() for g in _get_station_service().list_games(active_only=active_only)])


@stations_bp.route("/api/games", methods=["POST"])
def api_create_game():
    denied = require_admin()
    if denied:
        return denied
    payload = json_payload()
    try:
        session_price = optional_float(payload.get("pricePerSession"), "pricePerSession")
        hourly_price = optional_float(payload.get("pricePerHour"), "pricePerHour")
    except ValueError as exc:
        return bad_request(str(exc))
    success, message, game = _get_station_service().create_game(
        name=payload.get("name"),
        price_per_session=session_price,
        price_per_hour=hourly_price,
        description=payload.get("description"),
        category=payload.get("category"),
    )
    return service_response(success, message, "game", game, created=True)


@stations_bp.route("/api/games/<int:game_id>", methods=["PATCH"])
def api_update_game(game_id: int):
    denied = require_admin()
    if denied:
        return denied
    success, message, game = _get_station_service().update_game(game_id, _pick(json_payload(), _GAME_FIELDS))
    return service_response(success, message, "game", game)


# ----------------------------------------------------------------------
# Sessions
# ----------------------------------------------------------------------
@stations_bp.route("/api/game-sessions", methods=["GET"])
def api_list_sessions():
    denied = require_staff()
    if denied:
        return denied
    service = _get_station_service()
    if request.args.get("active", "").lower() in ("1", "true", "yes"):
        sessions = service.active_sessions()
    else:
        sessions = service.list_sessions()
    return jsonify([s.to_dict() for s in sessions])


@stations_bp.route("/api/game-sessions", methods=["POST"])
def api_start_session():
    denied = require_staff()
    if denied:
        return denied
    payload = json_payload()
    try:
        station_id = optional_int(payload.get("stationId"), "stationId")
        game_id = optional_int(payload.get("gameId"), "gameId")
        customer_id = optional_int(payload.get("customerId"), "customerId")
    except ValueError as exc:
        return bad_request(str(exc))
    if station_id is None or game_id is None:
        return bad_request("stationId and gameId are required")

    success, message, game_session = _get_station_service().start_session(
        station_id=station_id,
        game_id=game_id,
        session_type=payload.get("sessionType", "per_game"),
        customer_id=customer_id,
        customer_name=payload.get("customerName"),
        use_bonus=bool(payload.get("useBonus", False)),
    )
    return service_response(success, message, "session", game_session, created=True)


@stations_bp.route("/api/game-sessions/<int:session_id>/end", methods=["POST"])
def api_end_session(session_id: int):
    denied = require_staff()
    if denied:
        return denied
    success, message, game_session = _get_station_service().end_session(session_id)
    response, status = service_response(success, message, "session", game_session)
    if success and game_session.transaction is not None:
        body = response.get_json()
        body["transaction"] = game_session.transaction.to_dict()
        return jsonify(body), status
    return response, status


# ----------------------------------------------------------------------
# Transactions
# ----------------------------------------------------------------------
@stations_bp.route("/api/transactions", methods=["GET"])
def api_list_transactions():
    denied = require_staff()
    if denied:
        return denied
    try:
        limit = optional_int(request.args.get("limit"), "limit") or 100
    except ValueError as exc:
        return bad_request(str(exc))
    transactions = PaymentService(get_db()).list_transactions(limit=limit)
    return jsonify([t.to_dict() for t in transactions])


@stations_bp.route("/api/transactions/status/<status>", methods=["GET"])
def api_transactions_by_status(status: str):
    denied = require_staff()
    if denied:
        return denied
    if status not in {s.value for s in TransactionStatus}:
        return bad_request(f"Unknown transaction status: {status}")
    transactions = PaymentService(get_db()).list_transactions(status=status)
    return jsonify([t.to_dict() for t in transactions])


@stations_bp.route("/api/transactions/pending", methods=["GET"])
def api_pending_transactions():
    denied = require_staff()
    if denied:
        return denied
    return jsonify([t.to_dict() for t in PaymentService(get_db()).pending_transactions()])


@stations_bp.route("/api/transactions/user/current", methods=["GET"])
def api_my_transactions():
    denied = require_login()
    if denied:
        return denied
    transactions = PaymentService(get_db()).list_transactions(user_id=current_user().userID)
    return jsonify([t.to_dict() for t in transactions])
