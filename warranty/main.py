# warranty/main.py
import logging
import time

from flask import Flask, abort, g, jsonify, request, session

from warranty.config import Config
from warranty.database import Base, close_db, engine
from warranty import models  # noqa: F401  (registers the tables on Base)
from warranty.blueprints import batches_bp, claims_bp, public_bp, warranties_bp
from warranty.blueprints.common import current_actor, register_error_handlers
from warranty.observability import (
    check_batch_runner_health,
    check_database_health,
    configure_logging,
    get_metrics_snapshot,
    increment_counter,
    observe_latency,
)
from warranty.observability.logging_config import ensure_request_id
from warranty.services.collaborators import ROLE_ADMIN
from warranty.services.notification_service import NotificationService

app = Flask(__name__)
Config.configure_app(app)
configure_logging(app)
register_error_handlers(app)
app.register_blueprint(batches_bp)
app.register_blueprint(warranties_bp)
app.register_blueprint(claims_bp)
app.register_blueprint(public_bp)

logger = logging.getLogger(__name__)


# Initialize database tables
def init_database():
    """Initialize database tables"""
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables initialized successfully")
    except Exception as e:
        logger.exception("Error initializing database: %s", e)

# Initialize database on startup
init_database()


def is_admin_user() -> bool:
    actor = current_actor()
    return actor is not None and actor.has_role(ROLE_ADMIN)


@app.before_request
def before_request_logging():
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
    request_id = getattr(g, 'request_id', None)
    if request_id:
        response.headers[Config.REQUEST_ID_HEADER] = request_id
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
    close_db(exception)


@app.route('/health', methods=['GET'])
def health():
    db_status = check_database_health()
    runner_status = check_batch_runner_health()
    overall = "UP" if db_status.get("status") == "UP" else "DEGRADED"
    status_code = 200 if overall == "UP" else 503
    return jsonify({
        "status": overall,
        "components": {
            "database": db_status,
            "batch_runner": runner_status,
        }
    }), status_code

@app.route('/admin/metrics', methods=['GET'])
def admin_metrics():
    if not is_admin_user():
        abort(403)
    return jsonify(get_metrics_snapshot())


# ---------------------------------------------
# Notifications API
# ---------------------------------------------

@app.route('/api/notifications', methods=['GET'])
def api_get_notifications():
    """Get notifications for the current user."""
    if 'user_id' not in session:
        return jsonify({'error': 'Not authenticated'}), 401

    notification_service = NotificationService()
    unread_only = request.args.get('unread_only', 'false').lower() == 'true'
    try:
        limit = int(request.args.get('limit', 20))
    except ValueError:
        limit = 20

    notifications = notification_service.get_notifications(
        user_id=session['user_id'],
        unread_only=unread_only,
        limit=limit,
    )
    unread_count = notification_service.get_unread_count(session['user_id'])

    return jsonify({
        'notifications': notifications,
        'unread_count': unread_count,
    })


@app.route('/api/notifications/<notification_id>/read', methods=['POST'])
def api_mark_notification_read(notification_id):
    """Mark a notification as read."""
    if 'user_id' not in session:
        return jsonify({'error': 'Not authenticated'}), 401

    notification_service = NotificationService()
    success = notification_service.mark_as_read(session['user_id'], notification_id)

    return jsonify({
        'success': success,
        'unread_count': notification_service.get_unread_count(session['user_id']),
    })


@app.route('/api/notifications/mark-all-read', methods=['POST'])
def api_mark_all_notifications_read():
    """Mark all notifications as read."""
    if 'user_id' not in session:
        return jsonify({'error': 'Not authenticated'}), 401

    notification_service = NotificationService()
    count = notification_service.mark_all_as_read(session['user_id'])

    return jsonify({
        'success': True,
        'marked_count': count,
        'unread_count': 0,
    })
