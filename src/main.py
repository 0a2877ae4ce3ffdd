# src/main.py
import logging
import time

from flask import Flask, g, jsonify, request, session

from src.config import Config
from src.database import SessionLocal, close_db, engine, get_db
from src.errors import CheckoutError
from src.models import Base, User
from src.blueprints.admin import admin_bp
from src.blueprints.orders import orders_bp
from src.blueprints.webhooks import webhooks_bp
from src.observability import (
    check_database_health,
    check_payment_gateway_config,
    configure_logging,
    increment_counter,
    observe_latency,
)
from src.observability.logging_config import ensure_request_id
from src.services.sweep_service import PendingPaymentSweeper

app = Flask(__name__)
Config.configure_app(app)
configure_logging(app)
app.register_blueprint(orders_bp)
app.register_blueprint(webhooks_bp)
app.register_blueprint(admin_bp)

logger = logging.getLogger(__name__)


def init_database():
    """Initialize database tables"""
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables initialized successfully")
    except Exception as e:
        logger.exception("Error initializing database: %s", e)


init_database()

payment_sweeper = PendingPaymentSweeper(SessionLocal)


def start_background_jobs():
    if app.config.get("PAYMENT_SWEEP_ENABLED") and not app.config.get("TESTING"):
        payment_sweeper.start_scheduler(Config.PAYMENT_SWEEP_INTERVAL_SECONDS)


start_background_jobs()


@app.before_request
def before_request_logging():
    g.current_user = None
    if 'user_id' in session:
        db = get_db()
        g.current_user = db.query(User).filter_by(userID=session['user_id']).first()
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
    return response


@app.teardown_appcontext
def teardown_db(exception):
    try:
        close_db(exception)
    except RuntimeError:
        # Handle case where we're outside of application context during tests
        pass


@app.errorhandler(CheckoutError)
def handle_checkout_error(error: CheckoutError):
    if error.status_code >= 500:
        logger.error("Request failed: %s", error.message, extra={"code": error.code})
    else:
        logger.info("Request rejected: %s", error.message, extra={"code": error.code})
    return jsonify(error.to_dict()), error.status_code


@app.route('/health', methods=['GET'])
def health():
    db_status = check_database_health()
    gateway_status = check_payment_gateway_config()
    overall = "UP" if db_status.get("status") == "UP" else "DEGRADED"
    status_code = 200 if overall == "UP" else 503
    return jsonify({
        "status": overall,
        "components": {
            "database": db_status,
            "paymentGateway": gateway_status,
            "paymentSweeper": {"running": payment_sweeper.is_running},
        }
    }), status_code
