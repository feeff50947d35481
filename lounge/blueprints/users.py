from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request, session

from lounge.blueprints.common import (
    bad_request,
    can_access_user,
    current_user,
    json_payload,
    require_admin,
    require_login,
    require_staff,
    service_response,
)
from lounge.database import get_db
from lounge.observability import record_event
from lounge.services.customer_service import CustomerService
from lounge.services.loyalty_service import LoyaltyService

users_bp = Blueprint("users", __name__)
logger = logging.getLogger(__name__)


def _get_customer_service() -> CustomerService:
    return CustomerService(get_db())


@users_bp.route("/api/auth/login", methods=["POST"])
def api_login():
    payload = json_payload()
    identifier = payload.get("username") or payload.get("phoneNumber") or payload.get("identifier")
    password = payload.get("password")
    if not identifier or not password:
        return bad_request("Username and password are required")

    user = _get_customer_service().authenticate(identifier, password)
    if user is None:
        logger.warning("Failed login attempt")
        return jsonify({"success": False, "error": "Invalid credentials"}), 401

    session.clear()
    session["user_id"] = user.userID
    session["role"] = user.role.value
    record_event("user_login", {"user_id": user.userID, "role": user.role.value})
    return jsonify({"success": True, "user": user.to_dict()})


@users_bp.route("/api/auth/logout", methods=["POST"])
def api_logout():
    session.clear()
    return jsonify({"success": True, "message": "Logged out"})


@users_bp.route("/api/users/current", methods=["GET"])
def api_current_user():
    denied = require_login()
    if denied:
        return denied
    user = current_user()
    body = user.to_dict()
    body["tier"] = LoyaltyService(get_db()).tier_for_points(user.points or 0)
    return jsonify(body)


@users_bp.route("/api/users/customers", methods=["GET"])
def api_list_customers():
    denied = require_staff()
    if denied:
        return denied
    customers = _get_customer_service().list_customers(search=request.args.get("search"))
    return jsonify([c.to_dict() for c in customers])


@users_bp.route("/api/users/create", methods=["POST"])
def api_create_customer():
    denied = require_staff()
    if denied:
        return denied
    payload = json_payload()
    success, message, user = _get_customer_service().register_customer(
        display_name=payload.get("displayName"),
        gaming_name=payload.get("gamingName"),
        phone_number=payload.get("phoneNumber"),
        password=payload.get("password"),
        email=payload.get("email"),
        referral_code=payload.get("referralCode"),
    )
    return service_response(success, message, "user", user, created=True)


@users_bp.route("/api/users/staff", methods=["POST"])
def api_create_staff():
    denied = require_admin()
    if denied:
        return denied
    payload = json_payload()
    success, message, user = _get_customer_service().create_staff_user(
        display_name=payload.get("displayName"),
        gaming_name=payload.get("gamingName"),
        phone_number=payload.get("phoneNumber"),
        password=payload.get("password"),
        role=payload.get("role", "staff"),
        email=payload.get("email"),
    )
    return service_response(success, message, "user", user, created=True)


@users_bp.route("/api/users/<int:user_id>", methods=["GET"])
def api_get_user(user_id: int):
    denied = require_login()
    if denied:
        return denied
    if not can_access_user(user_id):
        return jsonify({"error": "Forbidden"}), 403
    user = _get_customer_service().get_customer(user_id)
    if not user:
        return jsonify({"success": False, "error": "User not found"}), 404
    return jsonify(user.to_dict())


@users_bp.route("/api/users/phone/<phone>", methods=["GET"])
def api_find_by_phone(phone: str):
    denied = require_staff()
    if denied:
        return denied
    user = _get_customer_service().find_by_phone(phone)
    if not user:
        return jsonify({"success": False, "error": "User not found"}), 404
    return jsonify(user.to_dict())


@users_bp.route("/api/users/<int:user_id>", methods=["PATCH"])
def api_update_user(user_id: int):
    denied = require_login()
    if denied:
        return denied
    if not can_access_user(user_id):
        return jsonify({"error": "Forbidden"}), 403
    payload = json_payload()
    field_map = {
        "displayName": "display_name",
        "gamingName": "gaming_name",
        "phoneNumber": "phone_number",
        "email": "email",
    }
    changes = {field: payload[key] for key, field in field_map.items() if key in payload}
    success, message, user = _get_customer_service().update_customer(user_id, changes)
    return service_response(success, message, "user", user)
