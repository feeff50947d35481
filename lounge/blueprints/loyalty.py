from __future__ import annotations

from flask import Blueprint, jsonify

from lounge.blueprints.common import (
    bad_request,
    can_access_user,
    current_user,
    json_payload,
    optional_int,
    require_admin,
    require_login,
    require_staff,
    service_response,
)
from lounge.database import get_db
from lounge.services.loyalty_service import LoyaltyService

loyalty_bp = Blueprint("loyalty", __name__)


def _get_loyalty_service() -> LoyaltyService:
    return LoyaltyService(get_db())


@loyalty_bp.route("/api/loyalty/<int:user_id>/history", methods=["GET"])
def api_loyalty_history(user_id: int):
    denied = require_login()
    if denied:
        return denied
    if not can_access_user(user_id):
        return jsonify({"error": "Forbidden"}), 403
    service = _get_loyalty_service()
    balance = service.balance(user_id)
    if balance is None:
        return jsonify({"success": False, "error": "User not found"}), 404
    return jsonify(
        {
            "userId": user_id,
            "points": balance,
            "tier": service.tier_for_points(balance),
            "history": [entry.to_dict() for entry in service.history(user_id)],
        }
    )


def _points_request():
    payload = json_payload()
    user_id = optional_int(payload.get("userId"), "userId")
    points = optional_int(payload.get("points"), "points")
    if user_id is None or points is None:
        raise ValueError("userId and points are required")
    return user_id, points, payload.get("description")


@loyalty_bp.route("/api/loyalty/award", methods=["POST"])
def api_award_points():
    denied = require_staff()
    if denied:
        return denied
    try:
        user_id, points, description = _points_request()
    except ValueError as exc:
        return bad_request(str(exc))
    success, message, entry = _get_loyalty_service().award_points(user_id, points, description)
    return service_response(success, message, "entry", entry)


@loyalty_bp.route("/api/loyalty/redeem", methods=["POST"])
def api_redeem_points():
    denied = require_staff()
    if denied:
        return denied
    try:
        user_id, points, description = _points_request()
    except ValueError as exc:
        return bad_request(str(exc))
    success, message, entry = _get_loyalty_service().redeem_points(user_id, points, description)
    return service_response(success, message, "entry", entry)


@loyalty_bp.route("/api/rewards", methods=["GET"])
def api_list_rewards():
    return jsonify([reward.to_dict() for reward in _get_loyalty_service().list_rewards()])


@loyalty_bp.route("/api/rewards", methods=["POST"])
def api_create_reward():
    denied = require_admin()
    if denied:
        return denied
    payload = json_payload()
    try:
        points_cost = optional_int(payload.get("pointsCost"), "pointsCost")
    except ValueError as exc:
        return bad_request(str(exc))
    success, message, reward = _get_loyalty_service().create_reward(
        payload.get("name"), points_cost, description=payload.get("description")
    )
    return service_response(success, message, "reward", reward, created=True)


@loyalty_bp.route("/api/rewards/redeem", methods=["POST"])
def api_redeem_reward():
    denied = require_login()
    if denied:
        return denied
    payload = json_payload()
    try:
        reward_id = optional_int(payload.get("rewardId"), "rewardId")
        user_id = optional_int(payload.get("userId"), "userId") or current_user().userID
    except ValueError as exc:
        return bad_request(str(exc))
    if reward_id is None:
        return bad_request("rewardId is required")
    if not can_access_user(user_id):
        return jsonify({"error": "Forbidden"}), 403
    success, message, entry = _get_loyalty_service().redeem_reward(user_id, reward_id)
    return service_response(success, message, "entry", entry)


@loyalty_bp.route("/api/bonus-games/<int:user_id>", methods=["GET"])
def api_bonus_games(user_id: int):
    denied = require_login()
    if denied:
        return denied
    if not can_access_user(user_id):
        return jsonify({"error": "Forbidden"}), 403
    return jsonify([bonus.to_dict() for bonus in _get_loyalty_service().unused_bonus_games(user_id)])


@loyalty_bp.route("/api/bonus-games", methods=["POST"])
def api_award_bonus_game():
    denied = require_staff()
    if denied:
        return denied
    payload = json_payload()
    try:
        user_id = optional_int(payload.get("userId"), "userId")
    except ValueError as exc:
        return bad_request(str(exc))
    if user_id is None:
        return bad_request("userId is required")
    success, message, bonus = _get_loyalty_service().award_bonus_game(user_id, payload.get("gameName"))
    return service_response(success, message, "bonusGame", bonus, created=True)
