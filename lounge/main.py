# lounge/main.py
import logging
import time

import click
from flask import Flask, request, jsonify, g
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from lounge.config import Config
from lounge.database import close_db, engine, SessionLocal
from lounge.models import Base, Game, GameStation, Reward, StationCategory, User
from lounge.blueprints import ALL_BLUEPRINTS
from lounge.blueprints.common import require_admin
from lounge.observability import (
    configure_logging,
    increment_counter,
    observe_latency,
    get_metrics_snapshot,
    check_database_health,
    check_payment_providers,
)
from lounge.observability.logging_config import ensure_request_id
from lounge.realtime import init_realtime, socketio
from lounge.services.customer_service import CustomerService
from lounge.services.loyalty_service import LoyaltyService
from lounge.services.station_service import StationService

app = Flask(__name__)
Config.configure_app(app)
configure_logging(app)
init_realtime(app)
for blueprint in ALL_BLUEPRINTS:
    app.register_blueprint(blueprint)

logger = logging.getLogger(__name__)


# Initialize database tables
def init_database():
    """Initialize database tables"""
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables initialized successfully")
    except OperationalError as e:
        logger.exception("Error initializing database: %s", e)

# Initialize database on startup
init_database()


@app.before_request
def before_request_logging():
    g.current_user = None
    g.request_started_at = time.perf_counter()
    g.request_id = ensure_request_id()
    increment_counter(
        "http_requests_total",
        labels={
            "method": request.method,
            "endpoint": request.endpoint or request.path,
        },
    )

@app.after_request
def after_request_logging(response):
    started = getattr(g, 'request_started_at', None)
    if started is not None:
        duration_ms = (time.perf_counter() - started) * 1000
        observe_latency(
            "http_request_latency_ms",
            duration_ms,
            labels={
                "method": request.method,
                "endpoint": request.endpoint or request.path,
                "status": str(response.status_code),
            },
        )
    if response.status_code >= 500:
        increment_counter(
            "http_errors_total",
            labels={
                "method": request.method,
                "endpoint": request.endpoint or request.path,
                "status": str(response.status_code),
            },
        )
        logger.error("Request finished with error status %s", response.status_code)
    else:
        logger.info("Request finished", extra={"status_code": response.status_code})
    response.headers[Config.REQUEST_ID_HEADER] = g.get("request_id", "")
    return response

@app.teardown_appcontext
def teardown_db(exception):
    close_db(exception)

@app.errorhandler(500)
def internal_error(error):
    logger.exception("Unhandled error: %s", getattr(error, "original_exception", error))
    return jsonify({"error": "Internal Server Error"}), 500


def _health_payload():
    db_status = check_database_health()
    providers = check_payment_providers(Config)
    overall = "UP" if db_status.get("status") == "UP" else "DEGRADED"
    status_code = 200 if overall == "UP" else 503
    return jsonify({
        "status": overall,
        "components": {
            "database": db_status,
            **providers,
        }
    }), status_code

@app.route('/health', methods=['GET'])
def health():
    return _health_payload()

@app.route('/api/health', methods=['GET'])
def api_health():
    return _health_payload()

@app.route('/admin/metrics', methods=['GET'])
def admin_metrics():
    denied = require_admin()
    if denied:
        return denied
    return jsonify(get_metrics_snapshot())


# ---------------------------------------------
# CLI commands
# ---------------------------------------------
@app.cli.command("init-db")
def init_db_command():
    """Create all database tables."""
    Base.metadata.create_all(bind=engine)
    click.echo("Database tables created.")


@app.cli.command("wait-for-db")
@click.option("--attempts", default=Config.DB_WAIT_ATTEMPTS, show_default=True)
@click.option("--interval", default=Config.DB_WAIT_INTERVAL, show_default=True)
def wait_for_db_command(attempts, interval):
    """Block until the database accepts connections."""
    for attempt in range(1, attempts + 1):
        try:
            with engine.connect() as connection:
                connection.execute(text("SELECT 1"))
            click.echo("Database connection established.")
            return
        except OperationalError as exc:
            click.echo(f"[wait-for-db] Attempt {attempt}/{attempts} failed: {exc}")
            time.sleep(interval)
    raise click.ClickException("Database not reachable after waiting.")


@app.cli.command("seed-demo")
def seed_demo_command():
    """Create demo accounts, games, stations and a reward."""
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        seed_demo_data(db)
    finally:
        db.close()
    click.echo("Demo data ready.")


DEMO_GAMES = (
    ("FIFA 24", "Sports", 40, 200),
    ("Call of Duty: Modern Warfare III", "Shooter", 50, 250),
    ("Mortal Kombat 1", "Fighting", 40, 200),
    ("Gran Turismo 7", "Racing", 50, 250),
)
DEMO_STATIONS = (
    ("PS5 Station 1", StationCategory.CONSOLE),
    ("PS5 Station 2", StationCategory.CONSOLE),
    ("Gaming PC 1", StationCategory.PC),
    ("VR Pod", StationCategory.VR),
    ("Racing Rig", StationCategory.RACING),
)


def seed_demo_data(db):
    customers = CustomerService(db)
    if not db.query(User).filter(User.phone_number == Config.DEMO_ADMIN_PHONE).first():
        customers.create_staff_user("Lounge Admin", "admin", Config.DEMO_ADMIN_PHONE, Config.DEMO_ADMIN_PASSWORD, role="admin")
    if not db.query(User).filter(User.phone_number == Config.DEMO_STAFF_PHONE).first():
        customers.create_staff_user("Front Desk", "staff", Config.DEMO_STAFF_PHONE, Config.DEMO_STAFF_PASSWORD)
    if not db.query(User).filter(User.gaming_name == "ProGamer").first():
        customers.register_customer("John Doe", "ProGamer", "254700000003", points=120)

    stations = StationService(db)
    for name, category, session_price, hourly_price in DEMO_GAMES:
        if not db.query(Game).filter(Game.name == name).first():
            stations.create_game(name, session_price, hourly_price, category=category)
    for name, category in DEMO_STATIONS:
        if not db.query(GameStation).filter(GameStation.name == name).first():
            stations.create_station(name, category)

    if not db.query(Reward).first():
        LoyaltyService(db).create_reward("Free hour of play", 200, description="One hour on any station")


if __name__ == '__main__':
    socketio.run(app, host=Config.FLASK_RUN_HOST, port=Config.FLASK_RUN_PORT, debug=Config.DEBUG, allow_unsafe_werkzeug=True)
