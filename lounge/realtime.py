"""
Realtime floor updates over Socket.IO.

Clients connect, announce their role with `register_role`, and receive
station, transaction, check-in and payment broadcasts. Services call the
`broadcast_*` / `notify_*` publishers after committing; they are no-ops
until `init_realtime` has bound the server to an app.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from flask import Flask, request, session
from flask_socketio import SocketIO, emit, join_room
from sqlalchemy import desc
from sqlalchemy.orm import Session

from lounge.config import Config
from lounge.database import SessionLocal
from lounge.models import GameStation, Transaction
from lounge.observability import increment_counter, record_event

logger = logging.getLogger(__name__)

ROLES = ("admin", "staff", "customer")
# rooms a signed-in account may join, keyed by the account's own role
ALLOWED_ROOMS = {
    "admin": ("admin", "staff"),
    "staff": ("staff",),
    "customer": ("customer",),
}
STAFF_ROOMS = ("role:admin", "role:staff")

socketio = SocketIO(cors_allowed_origins=Config.SOCKETIO_CORS_ORIGINS, async_mode="threading")


def init_realtime(app: Flask) -> SocketIO:
    socketio.init_app(app, cors_allowed_origins=Config.SOCKETIO_CORS_ORIGINS, async_mode="threading")
    return socketio


def _station_payload(db: Session) -> List[Dict[str, Any]]:
    return [s.to_dict() for s in db.query(GameStation).order_by(GameStation.stationID).all()]


def _transaction_payload(db: Session, limit: int = 50) -> List[Dict[str, Any]]:
    rows = db.query(Transaction).order_by(desc(Transaction.created_at), desc(Transaction.transactionID)).limit(limit)
    return [t.to_dict() for t in rows]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ----------------------------------------------------------------------
# Client -> server messages
# ----------------------------------------------------------------------
@socketio.on("connect")
def handle_connect(auth=None):
    increment_counter("realtime_connections_total")
    emit("connection_established", {"clientId": request.sid, "timestamp": _now()})


@socketio.on("register_role")
def handle_register_role(data):
    role = (data or {}).get("role")
    if role not in ROLES:
        emit("error", {"message": f"Unknown role: {role}"})
        return
    user_id = session.get("user_id")
    if user_id is None or role not in ALLOWED_ROOMS.get(session.get("role"), ()):
        logger.warning("Realtime role refused", extra={"role": role, "sid": request.sid, "user_id": user_id})
        emit("error", {"message": f"Not allowed to register as {role}"})
        return
    join_room(f"role:{role}")
    join_room(f"user:{user_id}")
    logger.info("Realtime client registered", extra={"role": role, "sid": request.sid})
    emit("role_registered", {"role": role, "userId": user_id})


@socketio.on("station_update_request")
def handle_station_update_request(data=None):
    db = SessionLocal()
    try:
        emit("station_update", {"stations": _station_payload(db), "timestamp": _now()})
    finally:
        db.close()


@socketio.on("transaction_update_request")
def handle_transaction_update_request(data=None):
    db = SessionLocal()
    try:
        emit("transaction_update", {"transactions": _transaction_payload(db), "timestamp": _now()})
    finally:
        db.close()


# ----------------------------------------------------------------------
# Server-side publishers
# ----------------------------------------------------------------------
def _is_ready() -> bool:
    return Config.REALTIME_ENABLED and socketio.server is not None


def _publish(
    event: str,
    build_payload: Callable[[], Dict[str, Any]],
    rooms: Optional[Iterable[str]] = None,
) -> bool:
    """Build and emit one event; failures are logged and reported as False."""
    if not _is_ready():
        return False
    try:
        payload = {**build_payload(), "timestamp": _now()}
        if rooms is None:
            socketio.emit(event, payload)
        else:
            socketio.emit(event, payload, to=list(rooms))
    except Exception:  # publishers never raise into the caller
        logger.warning("Realtime publish failed", extra={"event": event}, exc_info=True)
        return False
    increment_counter("realtime_events_total", labels={"event": event})
    return True


def broadcast_station_update(db: Session) -> bool:
    return _publish("station_update", lambda: {"stations": _station_payload(db)})


def broadcast_transaction_update(db: Session) -> bool:
    return _publish("transaction_update", lambda: {"transactions": _transaction_payload(db)})


def notify_customer_check_in(data: Dict[str, Any]) -> bool:
    record_event("customer_check_in", data)
    return _publish("customer_check_in", lambda: dict(data), rooms=STAFF_ROOMS)


def notify_payment_confirmation(data: Dict[str, Any], user_id: Optional[int] = None) -> bool:
    rooms = list(STAFF_ROOMS)
    if user_id is not None:
        rooms.append(f"user:{user_id}")
    return _publish("payment_confirmation", lambda: dict(data), rooms=rooms)
