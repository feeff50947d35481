from __future__ import annotations

import logging
from datetime import date, datetime, time, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from lounge.config import Config
from lounge.models import (
    Booking,
    BookingStatus,
    Game,
    GameStation,
    SessionType,
    User,
)
from lounge.observability import increment_counter, record_event
from lounge.observability.business_metrics import LOCAL_TZ
from lounge.realtime import notify_customer_check_in
from lounge.services.station_service import StationService
from lounge.services.validation import parse_hhmm, sanitize_text

_ACTIVE_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)
_MINUTES_PER_DAY = 24 * 60


class BookingService:
    """Station reservations: validation, overlap checks, status lifecycle and check-in."""

    def __init__(
        self,
        db_session: Session,
        config: type[Config] = Config,
        station_service: Optional[StationService] = None,
    ) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.config = config
        self.station_service = station_service or StationService(db_session, config=config)

    def create_booking(
        self,
        station_id: int,
        user_id: int,
        booking_date: date | str,
        start_time: str,
        duration_hours: int = 1,
        price: Optional[float] = None,
        note: Optional[str] = None,
        status: BookingStatus | str = BookingStatus.PENDING,
    ) -> Tuple[bool, str, Optional[Booking]]:
        try:
            status_enum = status if isinstance(status, BookingStatus) else BookingStatus(status)
        except ValueError:
            return False, f"Unknown booking status: {status}", None
        if status_enum not in _ACTIVE_STATUSES:
            return False, "New bookings must be pending or confirmed", None

        user = self.db.get(User, user_id)
        if not user:
            return False, "Customer not found", None
        ok, message, station, slot = self._validate_slot(station_id, booking_date, start_time, duration_hours)
        if not ok:
            return False, message, None
        day, start_minutes, hours = slot

        if price is None:
            price = self._default_price(station, day, start_minutes, hours)
        else:
            try:
                price = _parse_price(price)
            except ValueError as exc:
                return False, str(exc), None

        booking = Booking(
            stationID=station.stationID,
            userID=user.userID,
            booking_date=day,
            start_time=_format_hhmm(start_minutes),
            duration_hours=hours,
            status=status_enum,
            price=float(price),
            note=sanitize_text(note),
        )
        self.db.add(booking)
        self.db.commit()

        increment_counter("bookings_created_total")
        record_event(
            "booking_created",
            {"booking_id": booking.bookingID, "station_id": station.stationID, "user_id": user.userID},
        )
        self.logger.info(
            "Booking created",
            extra={"booking_id": booking.bookingID, "station_id": station.stationID, "booking_date": day.isoformat()},
        )
        return True, "Booking created", booking

    def update_booking(self, booking_id: int, changes: Dict[str, Any]) -> Tuple[bool, str, Optional[Booking]]:
        booking = self.db.get(Booking, booking_id)
        if not booking:
            return False, "Booking not found", None
        if booking.status not in _ACTIVE_STATUSES:
            return False, f"A {booking.status.value} booking cannot be changed", booking
        new_price = None
        if changes.get("price") is not None:
            try:
                new_price = _parse_price(changes["price"])
            except ValueError as exc:
                return False, str(exc), booking

        station_id = changes.get("station_id", booking.stationID)
        booking_date = changes.get("booking_date", booking.booking_date)
        start_time = changes.get("start_time", booking.start_time)
        duration = changes.get("duration_hours", booking.duration_hours)
        ok, message, station, slot = self._validate_slot(
            station_id, booking_date, start_time, duration, exclude_id=booking.bookingID
        )
        if not ok:
            return False, message, None
        day, start_minutes, hours = slot

        schedule_changed = (
            station.stationID != booking.stationID
            or day != booking.booking_date
            or start_minutes != booking.start_minutes
            or hours != booking.duration_hours
        )
        booking.stationID = station.stationID
        booking.booking_date = day
        booking.start_time = _format_hhmm(start_minutes)
        booking.duration_hours = hours
        if new_price is not None:
            booking.price = new_price
        elif schedule_changed:
            booking.price = self._default_price(station, day, start_minutes, hours)
        if "note" in changes:
            booking.note = sanitize_text(changes["note"])
        self.db.commit()
        return True, "Booking updated", booking

    def confirm(self, booking_id: int) -> Tuple[bool, str, Optional[Booking]]:
        return self._transition(booking_id, BookingStatus.CONFIRMED)

    def cancel(self, booking_id: int) -> Tuple[bool, str, Optional[Booking]]:
        return self._transition(booking_id, BookingStatus.CANCELLED)

    def complete(self, booking_id: int) -> Tuple[bool, str, Optional[Booking]]:
        return self._transition(booking_id, BookingStatus.COMPLETED)

    def check_in(self, booking_id: int, game_id: Optional[int] = None) -> Tuple[bool, str, Optional[Booking]]:
        """Start the booked hourly session for a confirmed booking and close the booking."""
        booking = self.db.get(Booking, booking_id)
        if not booking:
            return False, "Booking not found", None
        if booking.status != BookingStatus.CONFIRMED:
            return False, "Only confirmed bookings can be checked in", booking

        game = self.db.get(Game, game_id) if game_id else None
        if game is None:
            game = (
                self.db.query(Game)
                .filter(Game.is_active.is_(True))
                .order_by(Game.popularity.desc(), Game.gameID)
                .first()
            )
        if game is None:
            return False, "No active game to start the session with", booking

        success, message, game_session = self.station_service.start_session(
            station_id=booking.stationID,
            game_id=game.gameID,
            session_type=SessionType.HOURLY,
            customer_id=booking.userID,
        )
        if not success:
            return False, message, booking

        booking.transition_to(BookingStatus.COMPLETED)
        booking.sessionID = game_session.sessionID
        self.db.commit()

        notify_customer_check_in(
            {
                "bookingId": booking.bookingID,
                "sessionId": game_session.sessionID,
                "stationId": booking.stationID,
                "stationName": booking.station.name,
                "customerId": booking.userID,
                "customerName": booking.user.display_name,
            }
        )
        increment_counter("booking_check_ins_total")
        return True, "Customer checked in", booking

    def list_bookings(
        self,
        booking_date: Optional[date | str] = None,
        station_id: Optional[int] = None,
        user_id: Optional[int] = None,
        status: Optional[str] = None,
    ) -> List[Booking]:
        query = self.db.query(Booking)
        if booking_date is not None:
            query = query.filter(Booking.booking_date == _parse_date(booking_date))
        if station_id is not None:
            query = query.filter(Booking.stationID == station_id)
        if user_id is not None:
            query = query.filter(Booking.userID == user_id)
        if status:
            query = query.filter(Booking.status == BookingStatus(status))
        return query.order_by(Booking.booking_date, Booking.start_time, Booking.bookingID).all()

    def upcoming_for_user(self, user_id: int, today: Optional[date] = None) -> List[Booking]:
        today = today or datetime.now(LOCAL_TZ).date()
        return (
            self.db.query(Booking)
            .filter(
                Booking.userID == user_id,
                Booking.booking_date >= today,
                Booking.status.in_(_ACTIVE_STATUSES),
            )
            .order_by(Booking.booking_date, Booking.start_time)
            .all()
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _transition(self, booking_id: int, new_status: BookingStatus) -> Tuple[bool, str, Optional[Booking]]:
        booking = self.db.get(Booking, booking_id)
        if not booking:
            return False, "Booking not found", None
        old_status = booking.status
        try:
            booking.transition_to(new_status)
        except ValueError as exc:
            return False, str(exc), booking
        self.db.commit()
        record_event(
            "booking_status_changed",
            {"booking_id": booking_id, "from": old_status.value, "to": new_status.value},
        )
        return True, f"Booking {new_status.value}", booking

    def _validate_slot(
        self,
        station_id: int,
        booking_date: date | str,
        start_time: str,
        duration_hours: Any,
        exclude_id: Optional[int] = None,
    ) -> Tuple[bool, str, Optional[GameStation], Optional[Tuple[date, int, int]]]:
        station = self.db.get(GameStation, station_id)
        if not station:
            return False, "Station not found", None, None
        try:
            day = _parse_date(booking_date)
            start_minutes = parse_hhmm(start_time)
            hours = int(duration_hours)
        except (TypeError, ValueError) as exc:
            return False, str(exc) or "Invalid booking details", None, None
        if hours < 1:
            return False, "Bookings must be at least 1 hour", None, None
        end_minutes = start_minutes + hours * 60
        if end_minutes > _MINUTES_PER_DAY:
            return False, "Bookings cannot run past midnight", None, None

        query = self.db.query(Booking).filter(
            Booking.stationID == station.stationID,
            Booking.booking_date == day,
            Booking.status.in_(_ACTIVE_STATUSES),
        )
        if exclude_id is not None:
            query = query.filter(Booking.bookingID != exclude_id)
        for existing in query.all():
            if existing.overlaps(day, start_minutes, end_minutes):
                return False, "Station is already booked for that time", None, None
        return True, "ok", station, (day, start_minutes, hours)

    def _default_price(self, station: GameStation, day: date, start_minutes: int, hours: int) -> float:
        local_start = datetime.combine(day, time(start_minutes // 60, start_minutes % 60), tzinfo=LOCAL_TZ)
        rate = self.station_service.current_hourly_rate(station, local_start.astimezone(timezone.utc))
        return round(rate * hours, 2)


def _parse_date(value: date | str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError as exc:
        raise ValueError("Date must be in YYYY-MM-DD format") from exc


def _parse_price(value: Any) -> float:
    try:
        price = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError("Price must be a number") from exc
    if not price >= 0:
        raise ValueError("Price cannot be negative")
    return round(price, 2)

def _format_hhmm(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"
