from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import desc
from sqlalchemy.orm import Session

from lounge.config import Config
from lounge.models import (
    BonusGame,
    Game,
    GameSession,
    GameStation,
    SessionType,
    StationCategory,
    StationStatus,
    StreakSession,
    Transaction,
    TransactionStatus,
    User,
    as_utc,
    utc_now,
)
from lounge.observability import increment_counter, record_event
from lounge.observability.business_metrics import to_local_timezone
from lounge.realtime import broadcast_station_update, broadcast_transaction_update
from lounge.services.loyalty_service import LoyaltyService
from lounge.services.validation import sanitize_text

_STATION_RATE_FIELDS = ("hourly_rate", "peak_hour_rate", "off_peak_rate", "weekend_rate")
_STATION_TEXT_FIELDS = ("name", "specs", "location", "notes")
_GAME_TEXT_FIELDS = ("name", "description", "category")


class StationService:
    """
    Runs the lounge floor: the game catalogue, station records and the
    live sessions played on them.

    Per-game sessions are priced up front and raise their transaction when
    they start. Hourly sessions are billed when they end, rounded up to the
    billing increment with a one-hour minimum. Registered customers build
    streaks of consecutive per-game sessions; a full streak earns a bonus game.
    """

    def __init__(
        self,
        db_session: Session,
        config: type[Config] = Config,
        loyalty_service: Optional[LoyaltyService] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.config = config
        self.loyalty = loyalty_service or LoyaltyService(db_session, config=config)
        self.clock = clock or utc_now

    # ------------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------------
    def current_hourly_rate(
        self,
        station: GameStation,
        at: Optional[datetime] = None,
        game: Optional[Game] = None,
    ) -> float:
        local = to_local_timezone(at or self.clock())
        if local.weekday() >= 5 and station.weekend_rate:
            return float(station.weekend_rate)

        in_peak = self.config.PEAK_HOURS_START <= local.hour < self.config.PEAK_HOURS_END
        if in_peak and station.peak_hour_rate:
            return float(station.peak_hour_rate)
        if not in_peak and station.off_peak_rate:
            return float(station.off_peak_rate)
        if station.hourly_rate:
            return float(station.hourly_rate)
        if game is not None and game.price_per_hour:
            return float(game.price_per_hour)
        return float(self.config.DEFAULT_HOURLY_RATE)

    def calculate_hourly_cost(self, minutes: int, rate: float) -> Tuple[int, int]:
        """Return (billed minutes, cost in whole KES) for an hourly session."""
        increment = max(self.config.BILLING_INCREMENT_MINUTES, 1)
        billed = math.ceil(max(minutes, 0) / increment) * increment
        billed = max(billed, self.config.MINIMUM_BILLED_MINUTES)
        return billed, math.ceil(rate * billed / 60)

    # ------------------------------------------------------------------
    # Game catalogue
    # ------------------------------------------------------------------
    def list_games(self, active_only: bool = False) -> List[Game]:
        query = self.db.query(Game)
        if active_only:
            query = query.filter(Game.is_active.is_(True))
        return query.order_by(desc(Game.popularity), Game.name).all()

    def create_game(
        self,
        name: str,
        price_per_session: Optional[float] = None,
        price_per_hour: Optional[float] = None,
        description: Optional[str] = None,
        category: Optional[str] = None,
    ) -> Tuple[bool, str, Optional[Game]]:
        name = sanitize_text(name, max_length=255)
        if not name:
            return False, "Game name is required", None
        if self.db.query(Game).filter(Game.name == name).first():
            return False, "Game already exists", None
        try:
            session_price = _positive_amount(price_per_session, self.config.DEFAULT_GAME_PRICE)
            hourly_price = _positive_amount(price_per_hour, self.config.DEFAULT_HOURLY_RATE)
        except ValueError as exc:
            return False, str(exc), None

        game = Game(
            name=name,
            description=sanitize_text(description),
            category=sanitize_text(category, max_length=100),
            price_per_session=session_price,
            price_per_hour=hourly_price,
            popularity=0,
            is_active=True,
        )
        self.db.add(game)
        self.db.commit()
        return True, "Game created", game

    def update_game(self, game_id: int, changes: Dict[str, Any]) -> Tuple[bool, str, Optional[Game]]:
        game = self.db.get(Game, game_id)
        if not game:
            return False, "Game not found", None
        try:
            for field in _GAME_TEXT_FIELDS:
                if field in changes:
                    setattr(game, field, sanitize_text(changes[field]))
            if "price_per_session" in changes:
                game.price_per_session = _positive_amount(changes["price_per_session"], None)
            if "price_per_hour" in changes:
                game.price_per_hour = _positive_amount(changes["price_per_hour"], None)
        except ValueError as exc:
            self.db.rollback()
            return False, str(exc), None
        if "is_active" in changes:
            game.is_active = bool(changes["is_active"])
        if not game.name:
            self.db.rollback()
            return False, "Game name is required", None
        if self.db.query(Game).filter(Game.name == game.name, Game.gameID != game.gameID).first():
            self.db.rollback()
            return False, "Game already exists", None
        self.db.commit()
        return True, "Game updated", game

    # ------------------------------------------------------------------
    # Stations
    # ------------------------------------------------------------------
    def list_stations(self) -> List[GameStation]:
        return self.db.query(GameStation).order_by(GameStation.stationID).all()

    def get_station(self, station_id: int) -> Optional[GameStation]:
        return self.db.get(GameStation, station_id)

    def create_station(
        self,
        name: str,
        category: StationCategory | str = StationCategory.CONSOLE,
        **fields: Any,
    ) -> Tuple[bool, str, Optional[GameStation]]:
        name = sanitize_text(name, max_length=100)
        if not name:
            return False, "Station name is required", None
        if self.db.query(GameStation).filter(GameStation.name == name).first():
            return False, "A station with that name already exists", None
        try:
            category_enum = category if isinstance(category, StationCategory) else StationCategory(category)
        except ValueError:
            return False, f"Unknown station category: {category}", None

        station = GameStation(
            name=name,
            category=category_enum,
            status=StationStatus.OPERATIONAL,
            is_available=True,
        )
        ok, message = self._apply_station_fields(station, fields)
        if not ok:
            return False, message, None
        self.db.add(station)
        self.db.commit()
        broadcast_station_update(self.db)
        return True, "Station created", station

    def update_station(self, station_id: int, changes: Dict[str, Any]) -> Tuple[bool, str, Optional[GameStation]]:
        station = self.db.get(GameStation, station_id)
        if not station:
            return False, "Station not found", None
        if "category" in changes:
            try:
                station.category = StationCategory(changes["category"])
            except ValueError:
                self.db.rollback()
                return False, f"Unknown station category: {changes['category']}", None
        ok, message = self._apply_station_fields(station, changes)
        if not ok:
            self.db.rollback()
            return False, message, None
        if not station.name:
            self.db.rollback()
            return False, "Station name is required", None
        duplicate = (
            self.db.query(GameStation)
            .filter(GameStation.name == station.name, GameStation.stationID != station.stationID)
            .first()
        )
        if duplicate:
            self.db.rollback()
            return False, "A station with that name already exists", None
        self.db.commit()
        broadcast_station_update(self.db)
        return True, "Station updated", station

    def set_station_status(
        self,
        station_id: int,
        status: StationStatus | str,
        notes: Optional[str] = None,
    ) -> Tuple[bool, str, Optional[GameStation]]:
        station = self.db.get(GameStation, station_id)
        if not station:
            return False, "Station not found", None
        try:
            new_status = status if isinstance(status, StationStatus) else StationStatus(status)
        except ValueError:
            return False, f"Unknown station status: {status}", None
        if new_status != StationStatus.OPERATIONAL and not station.is_available:
            return False, "Station has an active session; end it first", station

        old_status = station.status
        station.status = new_status
        if new_status == StationStatus.MAINTENANCE:
            station.last_maintenance = self.clock()
        if notes is not None:
            station.notes = sanitize_text(notes)
        self.db.commit()
        record_event(
            "station_status_changed",
            {"station_id": station_id, "from": _value(old_status), "to": new_status.value},
        )
        self.logger.info(
            "Station status changed",
            extra={"station_id": station_id, "old_status": _value(old_status), "new_status": new_status.value},
        )
        broadcast_station_update(self.db)
        return True, f"Station marked {new_status.value}", station

    def station_history(self, station_id: int, limit: int = 50) -> List[Transaction]:
        return (
            self.db.query(Transaction)
            .filter(Transaction.stationID == station_id)
            .order_by(desc(Transaction.created_at), desc(Transaction.transactionID))
            .limit(limit)
            .all()
        )

    # ------------------------------------------------------------------
    # Live sessions
    # ------------------------------------------------------------------
    def active_sessions(self) -> List[GameSession]:
        return (
            self.db.query(GameSession)
            .filter(GameSession.end_time.is_(None))
            .order_by(GameSession.start_time)
            .all()
        )

    def list_sessions(self, limit: int = 100) -> List[GameSession]:
        return (
            self.db.query(GameSession)
            .order_by(desc(GameSession.start_time), desc(GameSession.sessionID))
            .limit(limit)
            .all()
        )

    def start_session(
        self,
        station_id: int,
        game_id: int,
        session_type: SessionType | str = SessionType.PER_GAME,
        customer_id: Optional[int] = None,
        customer_name: Optional[str] = None,
        use_bonus: bool = False,
    ) -> Tuple[bool, str, Optional[GameSession]]:
        try:
            kind = session_type if isinstance(session_type, SessionType) else SessionType(session_type)
        except ValueError:
            return False, f"Unknown session type: {session_type}", None

        station = self.db.get(GameStation, station_id)
        if not station:
            return False, "Station not found", None
        if station.status != StationStatus.OPERATIONAL:
            return False, f"Station is {_value(station.status)}", None
        if not station.is_available:
            return False, "Station is already in use", None

        game = self.db.get(Game, game_id)
        if not game or not game.is_active:
            return False, "Game not found", None

        user: Optional[User] = None
        if customer_id is not None:
            user = self.db.get(User, customer_id)
            if not user:
                return False, "Customer not found", None
            if self._active_session_for(user.userID):
                return False, "Customer already has an active session", None
            name = user.display_name
        else:
            name = sanitize_text(customer_name, max_length=255)
            if not name:
                return False, "Customer name is required for walk-in sessions", None

        bonus: Optional[BonusGame] = None
        if use_bonus:
            if user is None or kind != SessionType.PER_GAME:
                return False, "Bonus games apply to registered customers on per-game sessions", None
            unused = self.loyalty.unused_bonus_games(user.userID)
            if not unused:
                return False, "No unused bonus games available", None
            bonus = unused[0]

        now = self.clock()
        game_session = GameSession(
            userID=user.userID if user else None,
            customer_name=name,
            stationID=station.stationID,
            gameID=game.gameID,
            session_type=kind,
            start_time=now,
            cost=0,
            points_earned=0,
            used_bonus=bonus is not None,
        )

        transaction: Optional[Transaction] = None
        if kind == SessionType.PER_GAME:
            cost = 0.0 if bonus else float(game.price_per_session)
            points = 0 if bonus else self.config.POINTS_PER_GAME
            game_session.cost = cost
            game_session.points_earned = points
            if bonus:
                bonus.used = True
                bonus.used_at = now
            elif user is not None:
                streak = self._advance_streak(user, game, now)
                game_session.streakID = streak.streakID
            transaction = Transaction(
                stationID=station.stationID,
                userID=user.userID if user else None,
                customer_name=name,
                game_name=game.name,
                session_type=kind,
                amount=cost,
                payment_status=TransactionStatus.COMPLETED if cost == 0 else TransactionStatus.PENDING,
                points_awarded=points if user else 0,
                points_credited=False,
                created_at=now,
            )
            self.db.add(transaction)
            game_session.transaction = transaction
        else:
            game_session.rate = self.current_hourly_rate(station, now, game)

        game.popularity = (game.popularity or 0) + 1
        self.db.add(game_session)
        self.db.flush()
        # a free game is settled on creation, so its points are credited here
        if (
            transaction is not None
            and transaction.payment_status == TransactionStatus.COMPLETED
            and transaction.points_awarded
        ):
            self.loyalty.apply_points(
                user,
                transaction.points_awarded,
                f"Points for {game.name} (transaction #{transaction.transactionID})",
                transaction_id=transaction.transactionID,
            )
            transaction.points_credited = True
        station.occupy(game_session, name, game.name)
        self.db.commit()

        increment_counter("sessions_started_total", labels={"session_type": kind.value})
        record_event(
            "session_started",
            {"session_id": game_session.sessionID, "station_id": station.stationID, "session_type": kind.value},
        )
        self.logger.info(
            "Session started on %s",
            station.name,
            extra={"session_id": game_session.sessionID, "customer_id": customer_id, "session_type": kind.value},
        )
        broadcast_station_update(self.db)
        if transaction is not None:
            broadcast_transaction_update(self.db)
        return True, "Session started", game_session

    def end_session(self, session_id: int) -> Tuple[bool, str, Optional[GameSession]]:
        game_session = self.db.get(GameSession, session_id)
        if not game_session:
            return False, "Session not found", None
        if not game_session.is_active:
            return False, "Session already ended", game_session

        now = self.clock()
        started = as_utc(game_session.start_time)
        minutes = max(math.ceil((now - started).total_seconds() / 60), 0)
        game_session.end_time = now
        game_session.duration_minutes = minutes

        if game_session.session_type == SessionType.HOURLY:
            rate = float(game_session.rate or self.config.DEFAULT_HOURLY_RATE)
            billed, cost = self.calculate_hourly_cost(minutes, rate)
            points = cost // self.config.POINTS_PER_KES if game_session.userID else 0
            game_session.cost = cost
            game_session.points_earned = points
            transaction = Transaction(
                stationID=game_session.stationID,
                userID=game_session.userID,
                customer_name=game_session.customer_name,
                game_name=game_session.game.name,
                session_type=SessionType.HOURLY,
                amount=cost,
                duration=billed,
                payment_status=TransactionStatus.COMPLETED if cost == 0 else TransactionStatus.PENDING,
                points_awarded=points,
                points_credited=False,
                created_at=now,
            )
            self.db.add(transaction)
            game_session.transaction = transaction
        else:
            if game_session.transaction is not None:
                game_session.transaction.duration = minutes
            streak = game_session.streak
            if streak is not None and streak.is_open:
                streak.last_game_at = now

        station = game_session.station
        if station is not None and station.current_sessionID in (None, game_session.sessionID):
            station.release()
        self.db.commit()

        kind = _value(game_session.session_type)
        increment_counter("sessions_ended_total", labels={"session_type": kind})
        record_event(
            "session_ended",
            {
                "session_id": game_session.sessionID,
                "session_type": kind,
                "duration_minutes": minutes,
                "cost": float(game_session.cost),
            },
        )
        broadcast_station_update(self.db)
        broadcast_transaction_update(self.db)
        return True, "Session ended", game_session

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _active_session_for(self, user_id: int) -> Optional[GameSession]:
        return (
            self.db.query(GameSession)
            .filter(GameSession.userID == user_id, GameSession.end_time.is_(None))
            .first()
        )

    def _advance_streak(self, user: User, game: Game, now: datetime) -> StreakSession:
        streak = (
            self.db.query(StreakSession)
            .filter(
                StreakSession.userID == user.userID,
                StreakSession.completed.is_(False),
                StreakSession.end_time.is_(None),
            )
            .order_by(desc(StreakSession.start_time))
            .first()
        )
        max_gap = timedelta(minutes=self.config.STREAK_MAX_GAP_MINUTES)
        if streak is not None and now - as_utc(streak.last_game_at) > max_gap:
            streak.end_time = streak.last_game_at
            streak = None

        if streak is None:
            streak = StreakSession(
                userID=user.userID,
                start_time=now,
                last_game_at=now,
                games_played=0,
                completed=False,
                bonus_awarded=False,
            )
            self.db.add(streak)

        streak.games_played += 1
        streak.last_game_at = now
        if streak.games_played >= self.config.STREAK_LENGTH:
            streak.completed = True
            streak.end_time = now
            streak.bonus_awarded = True
            self.loyalty.grant_bonus_game(user, game.name)
            record_event("streak_completed", {"user_id": user.userID, "game": game.name})
        self.db.flush()
        return streak

    def _apply_station_fields(self, station: GameStation, fields: Dict[str, Any]) -> Tuple[bool, str]:
        for field in _STATION_TEXT_FIELDS:
            if field in fields:
                setattr(station, field, sanitize_text(fields[field]))
        for field in _STATION_RATE_FIELDS:
            if field in fields:
                try:
                    value = fields[field]
                    setattr(station, field, None if value in (None, "") else _positive_amount(value, None))
                except ValueError as exc:
                    return False, str(exc)
        if "next_maintenance" in fields:
            value = fields["next_maintenance"]
            if isinstance(value, str):
                try:
                    value = datetime.fromisoformat(value)
                except ValueError:
                    return False, "next_maintenance must be an ISO date"
            station.next_maintenance = value
        return True, "ok"


def _positive_amount(value: Any, default: Optional[float]) -> float:
    if value is None:
        if default is None:
            raise ValueError("Amount is required")
        return float(default)
    try:
        amount = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError("Amount must be a number") from exc
    if amount < 0:
        raise ValueError("Amount cannot be negative")
    return amount


def _value(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value
