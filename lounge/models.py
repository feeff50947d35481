# lounge/models.py
from enum import Enum
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    Date,
    DateTime,
    ForeignKey,
    Boolean,
    Text,
    Enum as SAEnum,
)
from sqlalchemy.orm import relationship

# Shared Base so every model lands in the same metadata
from lounge.database import Base


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _serialize_dt(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def _money(value: Any) -> Optional[float]:
    return float(value) if value is not None else None


def _enum_value(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


def _enum_column(enum_cls, name: str):
    return SAEnum(
        enum_cls,
        name=name,
        native_enum=False,
        validate_strings=True,
        values_callable=lambda members: [member.value for member in members],
    )


class UserRole(str, Enum):
    ADMIN = "admin"
    STAFF = "staff"
    CUSTOMER = "customer"


class StationCategory(str, Enum):
    CONSOLE = "console"
    PC = "pc"
    VR = "vr"
    RACING = "racing"
    ARCADE = "arcade"
    MOBILE = "mobile"
    OTHER = "other"


class StationStatus(str, Enum):
    OPERATIONAL = "operational"
    MAINTENANCE = "maintenance"
    REPAIR = "repair"
    OFFLINE = "offline"


class SessionType(str, Enum):
    PER_GAME = "per_game"
    HOURLY = "hourly"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    CASH = "cash"
    MPESA = "mpesa"
    AIRTEL = "airtel"
    POINTS = "points"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REVERSED = "reversed"


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class User(Base):
    __tablename__ = 'User'

    userID = Column(Integer, primary_key=True, autoincrement=True)
    display_name = Column(String(255), nullable=False)
    gaming_name = Column(String(100), unique=True, nullable=False)
    phone_number = Column(String(20), unique=True, nullable=False)
    email = Column(String(255))
    _passwordHash = Column('passwordHash', String(255))
    role = Column(_enum_column(UserRole, "user_role"), default=UserRole.CUSTOMER, nullable=False)
    points = Column(Integer, default=0, nullable=False)
    referral_code = Column(String(16), unique=True)
    referred_by_id = Column(Integer, ForeignKey('User.userID'))
    created_at = Column(DateTime, default=utc_now)

    sessions = relationship("GameSession", back_populates="user")
    bookings = relationship("Booking", back_populates="user")
    loyalty_history = relationship("LoyaltyTransaction", back_populates="user", cascade="all, delete-orphan")
    bonus_games = relationship("BonusGame", back_populates="user", cascade="all, delete-orphan")

    @property
    def passwordHash(self):
        return self._passwordHash

    @passwordHash.setter
    def passwordHash(self, value):
        self._passwordHash = value

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def is_staff(self) -> bool:
        return self.role in (UserRole.ADMIN, UserRole.STAFF)

    @property
    def loyalty_level(self) -> str:
        points = self.points or 0
        if points < 500:
            return "Beginner"
        if points < 2000:
            return "Pro"
        return "Elite"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.userID,
            "displayName": self.display_name,
            "gamingName": self.gaming_name,
            "phoneNumber": self.phone_number,
            "email": self.email,
            "role": _enum_value(self.role),
            "points": self.points or 0,
            "loyaltyLevel": self.loyalty_level,
            "referralCode": self.referral_code,
            "referredBy": self.referred_by_id,
            "createdAt": _serialize_dt(self.created_at),
        }


class Game(Base):
    __tablename__ = 'Game'

    gameID = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), unique=True, nullable=False)
    description = Column(Text)
    category = Column(String(100))
    price_per_session = Column(Numeric(10, 2), nullable=False, default=40)
    price_per_hour = Column(Numeric(10, 2), nullable=False, default=200)
    popularity = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.gameID,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "pricePerSession": _money(self.price_per_session),
            "pricePerHour": _money(self.price_per_hour),
            "popularity": self.popularity or 0,
            "isActive": bool(self.is_active),
        }


class GameStation(Base):
    __tablename__ = 'GameStation'

    stationID = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), unique=True, nullable=False)
    category = Column(_enum_column(StationCategory, "station_category"), default=StationCategory.CONSOLE, nullable=False)
    status = Column(_enum_column(StationStatus, "station_status"), default=StationStatus.OPERATIONAL, nullable=False)
    specs = Column(Text)
    location = Column(String(255))
    hourly_rate = Column(Numeric(10, 2))
    peak_hour_rate = Column(Numeric(10, 2))
    off_peak_rate = Column(Numeric(10, 2))
    weekend_rate = Column(Numeric(10, 2))
    last_maintenance = Column(DateTime)
    next_maintenance = Column(DateTime)
    notes = Column(Text)

    # Live session snapshot shown on the POS floor view
    is_available = Column(Boolean, default=True, nullable=False)
    current_customer = Column(String(255))
    current_game = Column(String(255))
    session_type = Column(_enum_column(SessionType, "station_session_type"))
    session_start_time = Column(DateTime)
    current_sessionID = Column(Integer)
    created_at = Column(DateTime, default=utc_now)

    sessions = relationship("GameSession", back_populates="station")
    bookings = relationship("Booking", back_populates="station")

    def occupy(self, game_session: "GameSession", customer_name: str, game_name: str) -> None:
        self.is_available = False
        self.current_customer = customer_name
        self.current_game = game_name
        self.session_type = game_session.session_type
        self.session_start_time = game_session.start_time
        self.current_sessionID = game_session.sessionID

    def release(self) -> None:
        self.is_available = True
        self.current_customer = None
        self.current_game = None
        self.session_type = None
        self.session_start_time = None
        self.current_sessionID = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.stationID,
            "name": self.name,
            "category": _enum_value(self.category),
            "status": _enum_value(self.status),
            "specs": self.specs,
            "location": self.location,
            "hourlyRate": _money(self.hourly_rate),
            "peakHourRate": _money(self.peak_hour_rate),
            "offPeakRate": _money(self.off_peak_rate),
            "weekendRate": _money(self.weekend_rate),
            "lastMaintenance": _serialize_dt(self.last_maintenance),
            "nextMaintenance": _serialize_dt(self.next_maintenance),
            "notes": self.notes,
            "isAvailable": bool(self.is_available),
            "currentCustomer": self.current_customer,
            "currentGame": self.current_game,
            "sessionType": _enum_value(self.session_type),
            "sessionStartTime": _serialize_dt(self.session_start_time),
            "currentSessionId": self.current_sessionID,
        }


class StreakSession(Base):
    __tablename__ = 'StreakSession'

    streakID = Column(Integer, primary_key=True, autoincrement=True)
    userID = Column(Integer, ForeignKey('User.userID'), nullable=False)
    start_time = Column(DateTime, default=utc_now, nullable=False)
    last_game_at = Column(DateTime, default=utc_now, nullable=False)
    end_time = Column(DateTime)
    games_played = Column(Integer, default=0, nullable=False)
    completed = Column(Boolean, default=False, nullable=False)
    bonus_awarded = Column(Boolean, default=False, nullable=False)

    @property
    def is_open(self) -> bool:
        return not self.completed and self.end_time is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.streakID,
            "userId": self.userID,
            "startTime": _serialize_dt(self.start_time),
            "lastGameAt": _serialize_dt(self.last_game_at),
            "endTime": _serialize_dt(self.end_time),
            "gamesPlayed": self.games_played,
            "completed": bool(self.completed),
            "bonusAwarded": bool(self.bonus_awarded),
        }


class BonusGame(Base):
    __tablename__ = 'BonusGame'

    bonusGameID = Column(Integer, primary_key=True, autoincrement=True)
    userID = Column(Integer, ForeignKey('User.userID'), nullable=False)
    game_name = Column(String(255))
    used = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utc_now)
    used_at = Column(DateTime)

    user = relationship("User", back_populates="bonus_games")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.bonusGameID,
            "userId": self.userID,
            "gameName": self.game_name,
            "used": bool(self.used),
            "createdAt": _serialize_dt(self.created_at),
            "usedAt": _serialize_dt(self.used_at),
        }


class Transaction(Base):
    __tablename__ = 'Transaction'

    transactionID = Column(Integer, primary_key=True, autoincrement=True)
    stationID = Column(Integer, ForeignKey('GameStation.stationID'))
    userID = Column(Integer, ForeignKey('User.userID'))
    customer_name = Column(String(255), nullable=False)
    game_name = Column(String(255), nullable=False)
    session_type = Column(_enum_column(SessionType, "transaction_session_type"), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    payment_status = Column(
        _enum_column(TransactionStatus, "transaction_status"),
        default=TransactionStatus.PENDING,
        nullable=False,
    )
    mpesa_ref = Column(String(100))
    duration = Column(Integer)
    points_awarded = Column(Integer, default=0, nullable=False)
    points_credited = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    station = relationship("GameStation")
    user = relationship("User")
    payments = relationship("Payment", back_populates="transaction", order_by="Payment.paymentID")

    _VALID_TRANSITIONS = {
        TransactionStatus.PENDING: {TransactionStatus.COMPLETED, TransactionStatus.FAILED},
        TransactionStatus.FAILED: {TransactionStatus.PENDING, TransactionStatus.COMPLETED},
        TransactionStatus.COMPLETED: {TransactionStatus.REFUNDED},
    }

    def can_transition(self, new_status: TransactionStatus) -> bool:
        allowed = self._VALID_TRANSITIONS.get(TransactionStatus(self.payment_status), set())
        return new_status in allowed

    def transition_to(self, new_status: TransactionStatus) -> None:
        if not self.can_transition(new_status):
            raise ValueError(f"Invalid transaction status transition from {self.payment_status} to {new_status}")
        self.payment_status = new_status

    @property
    def amount_paid(self) -> float:
        return round(
            sum(float(p.amount) for p in self.payments if p.status == PaymentStatus.COMPLETED),
            2,
        )

    @property
    def balance_due(self) -> float:
        return round(max(float(self.amount) - self.amount_paid, 0.0), 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.transactionID,
            "stationId": self.stationID,
            "userId": self.userID,
            "customerName": self.customer_name,
            "gameName": self.game_name,
            "sessionType": _enum_value(self.session_type),
            "amount": _money(self.amount),
            "paymentStatus": _enum_value(self.payment_status),
            "mpesaRef": self.mpesa_ref,
            "duration": self.duration,
            "pointsAwarded": self.points_awarded or 0,
            "amountPaid": self.amount_paid,
            "createdAt": _serialize_dt(self.created_at),
        }


class GameSession(Base):
    __tablename__ = 'GameSession'

    sessionID = Column(Integer, primary_key=True, autoincrement=True)
    userID = Column(Integer, ForeignKey('User.userID'))
    customer_name = Column(String(255), nullable=False)
    stationID = Column(Integer, ForeignKey('GameStation.stationID'), nullable=False)
    gameID = Column(Integer, ForeignKey('Game.gameID'), nullable=False)
    session_type = Column(_enum_column(SessionType, "session_type"), nullable=False)
    start_time = Column(DateTime, default=utc_now, nullable=False)
    end_time = Column(DateTime)
    duration_minutes = Column(Integer)
    rate = Column(Numeric(10, 2))
    cost = Column(Numeric(10, 2), default=0, nullable=False)
    points_earned = Column(Integer, default=0, nullable=False)
    used_bonus = Column(Boolean, default=False, nullable=False)
    streakID = Column(Integer, ForeignKey('StreakSession.streakID'))
    transactionID = Column(Integer, ForeignKey('Transaction.transactionID'))

    user = relationship("User", back_populates="sessions")
    station = relationship("GameStation", back_populates="sessions")
    game = relationship("Game")
    streak = relationship("StreakSession")
    transaction = relationship("Transaction")

    @property
    def is_active(self) -> bool:
        return self.end_time is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.sessionID,
            "userId": self.userID,
            "customerName": self.customer_name,
            "stationId": self.stationID,
            "gameId": self.gameID,
            "gameName": self.game.name if self.game else None,
            "sessionType": _enum_value(self.session_type),
            "startTime": _serialize_dt(self.start_time),
            "endTime": _serialize_dt(self.end_time),
            "durationMinutes": self.duration_minutes,
            "rate": _money(self.rate),
            "cost": _money(self.cost),
            "pointsEarned": self.points_earned or 0,
            "usedBonus": bool(self.used_bonus),
            "streakId": self.streakID,
            "transactionId": self.transactionID,
            "active": self.is_active,
        }


class Payment(Base):
    __tablename__ = 'Payment'

    paymentID = Column(Integer, primary_key=True, autoincrement=True)
    transactionID = Column(Integer, ForeignKey('Transaction.transactionID'), nullable=False)
    userID = Column(Integer, ForeignKey('User.userID'))
    amount = Column(Numeric(10, 2), nullable=False)
    payment_method = Column(_enum_column(PaymentMethod, "payment_method"), nullable=False)
    status = Column(_enum_column(PaymentStatus, "payment_status"), default=PaymentStatus.PENDING, nullable=False)
    reference = Column(String(100))
    phone_number = Column(String(20))
    merchant_request_id = Column(String(100))
    checkout_request_id = Column(String(100), unique=True)
    result_code = Column(String(20))
    result_desc = Column(String(255))
    split_payment = Column(Boolean, default=False, nullable=False)
    split_index = Column(Integer)
    split_total = Column(Integer)
    created_at = Column(DateTime, default=utc_now)
    completed_at = Column(DateTime)

    transaction = relationship("Transaction", back_populates="payments")
    user = relationship("User")

    _VALID_TRANSITIONS = {
        PaymentStatus.PENDING: {PaymentStatus.COMPLETED, PaymentStatus.FAILED},
        PaymentStatus.COMPLETED: {PaymentStatus.REVERSED},
    }

    def can_transition(self, new_status: PaymentStatus) -> bool:
        allowed = self._VALID_TRANSITIONS.get(PaymentStatus(self.status), set())
        return new_status in allowed

    def transition_to(self, new_status: PaymentStatus) -> None:
        if not self.can_transition(new_status):
            raise ValueError(f"Invalid payment status transition from {self.status} to {new_status}")
        self.status = new_status
        if new_status == PaymentStatus.COMPLETED:
            self.completed_at = utc_now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.paymentID,
            "transactionId": self.transactionID,
            "userId": self.userID,
            "amount": _money(self.amount),
            "paymentMethod": _enum_value(self.payment_method),
            "status": _enum_value(self.status),
            "reference": self.reference,
            "phoneNumber": self.phone_number,
            "merchantRequestId": self.merchant_request_id,
            "checkoutRequestId": self.checkout_request_id,
            "resultCode": self.result_code,
            "resultDesc": self.result_desc,
            "splitPayment": bool(self.split_payment),
            "splitIndex": self.split_index,
            "splitTotal": self.split_total,
            "createdAt": _serialize_dt(self.created_at),
            "completedAt": _serialize_dt(self.completed_at),
        }


class LoyaltyTransaction(Base):
    __tablename__ = 'LoyaltyTransaction'

    loyaltyTransactionID = Column(Integer, primary_key=True, autoincrement=True)
    userID = Column(Integer, ForeignKey('User.userID'), nullable=False)
    points = Column(Integer, nullable=False)
    description = Column(String(255), nullable=False)
    transactionID = Column(Integer, ForeignKey('Transaction.transactionID'))
    created_at = Column(DateTime, default=utc_now)

    user = relationship("User", back_populates="loyalty_history")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.loyaltyTransactionID,
            "userId": self.userID,
            "points": self.points,
            "type": "earned" if self.points >= 0 else "spent",
            "description": self.description,
            "transactionId": self.transactionID,
            "createdAt": _serialize_dt(self.created_at),
        }


class Reward(Base):
    __tablename__ = 'Reward'

    rewardID = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    points_cost = Column(Integer, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.rewardID,
            "name": self.name,
            "description": self.description,
            "pointsCost": self.points_cost,
            "isActive": bool(self.is_active),
        }


class Booking(Base):
    __tablename__ = 'Booking'

    bookingID = Column(Integer, primary_key=True, autoincrement=True)
    stationID = Column(Integer, ForeignKey('GameStation.stationID'), nullable=False)
    userID = Column(Integer, ForeignKey('User.userID'), nullable=False)
    booking_date = Column(Date, nullable=False)
    start_time = Column(String(5), nullable=False)
    duration_hours = Column(Integer, nullable=False, default=1)
    status = Column(_enum_column(BookingStatus, "booking_status"), default=BookingStatus.PENDING, nullable=False)
    price = Column(Numeric(10, 2))
    note = Column(Text)
    sessionID = Column(Integer, ForeignKey('GameSession.sessionID'))
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    station = relationship("GameStation", back_populates="bookings")
    user = relationship("User", back_populates="bookings")

    _VALID_TRANSITIONS = {
        BookingStatus.PENDING: {BookingStatus.CONFIRMED, BookingStatus.CANCELLED},
        BookingStatus.CONFIRMED: {BookingStatus.COMPLETED, BookingStatus.CANCELLED},
    }

    def can_transition(self, new_status: BookingStatus) -> bool:
        allowed = self._VALID_TRANSITIONS.get(BookingStatus(self.status), set())
        return new_status in allowed

    def transition_to(self, new_status: BookingStatus) -> None:
        if not self.can_transition(new_status):
            raise ValueError(f"Invalid booking status transition from {self.status} to {new_status}")
        self.status = new_status

    @property
    def start_minutes(self) -> int:
        hours, minutes = self.start_time.split(":")
        return int(hours) * 60 + int(minutes)

    @property
    def end_minutes(self) -> int:
        return self.start_minutes + self.duration_hours * 60

    def overlaps(self, booking_date: date, start_minutes: int, end_minutes: int) -> bool:
        if self.booking_date != booking_date:
            return False
        return start_minutes < self.end_minutes and self.start_minutes < end_minutes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.bookingID,
            "stationId": self.stationID,
            "stationName": self.station.name if self.station else None,
            "userId": self.userID,
            "customerName": self.user.display_name if self.user else None,
            "date": self.booking_date.isoformat() if self.booking_date else None,
            "time": self.start_time,
            "duration": self.duration_hours,
            "status": _enum_value(self.status),
            "price": _money(self.price),
            "note": self.note,
            "sessionId": self.sessionID,
            "createdAt": _serialize_dt(self.created_at),
            "updatedAt": _serialize_dt(self.updated_at),
        }
