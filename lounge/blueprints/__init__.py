from .users import users_bp
from .stations import stations_bp
from .payments import payments_bp
from .loyalty import loyalty_bp
from .bookings import bookings_bp
from .reports import reports_bp

ALL_BLUEPRINTS = (users_bp, stations_bp, payments_bp, loyalty_bp, bookings_bp, reports_bp)

__all__ = [
    "users_bp",
    "stations_bp",
    "payments_bp",
    "loyalty_bp",
    "bookings_bp",
    "reports_bp",
    "ALL_BLUEPRINTS",
]
