from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from flask import current_app, g, jsonify, request, session

from lounge.config import Config
from lounge.database import get_db
from lounge.integrations import AirtelMoneyClient, MpesaClient
from lounge.models import User

PROVIDERS_KEY = "lounge.providers"


def current_user() -> Optional[User]:
    if "user_id" not in session:
        return None
    if getattr(g, "current_user", None) is None:
        g.current_user = get_db().get(User, session["user_id"])
    return g.current_user


def require_login():
    if current_user() is None:
        return jsonify({"error": "Not authenticated"}), 401
    return None


def require_staff():
    user = current_user()
    if user is None:
        return jsonify({"error": "Not authenticated"}), 401
    if not user.is_staff:
        return jsonify({"error": "Forbidden"}), 403
    return None


def require_admin():
    user = current_user()
    if user is None:
        return jsonify({"error": "Not authenticated"}), 401
    if not user.is_admin:
        return jsonify({"error": "Forbidden"}), 403
    return None


def can_access_user(user_id: int) -> bool:
    user = current_user()
    return user is not None and (user.is_staff or user.userID == user_id)


def json_payload() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def optional_int(value: Any, field: str) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{field} must be a whole number") from None


def optional_float(value: Any, field: str) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{field} must be a number") from None


def bad_request(message: str):
    return jsonify({"success": False, "error": message}), 400


def service_response(
    success: bool,
    message: str,
    key: Optional[str] = None,
    obj: Any = None,
    created: bool = False,
) -> Tuple[Any, int]:
    """Map a service (success, message, obj) tuple to a JSON response."""
    if success:
        body: Dict[str, Any] = {"success": True, "message": message}
        if key and obj is not None:
            body[key] = obj.to_dict() if hasattr(obj, "to_dict") else obj
        return jsonify(body), 201 if created else 200
    status = 404 if "not found" in message.lower() else 400
    return jsonify({"success": False, "error": message}), status


def provider_clients() -> Tuple[MpesaClient, AirtelMoneyClient]:
    """Provider clients live for the app's lifetime so the OAuth token cache survives requests."""
    clients = current_app.extensions.get(PROVIDERS_KEY)
    if clients is None:
        clients = (MpesaClient(Config), AirtelMoneyClient(Config))
        current_app.extensions[PROVIDERS_KEY] = clients
    return clients
