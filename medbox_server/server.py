"""
═══════════════════════════════════════════════════════════════════════════════
Medication Box Telemetry Server
═══════════════════════════════════════════════════════════════════════════════

Receives temperature/humidity readings and compartment open/closed states
from medication boxes via HTTP POST and stores them in PostgreSQL. Serves
the latest state, a 24h history window and the medication schedule back to
the dashboard.

Usage:
    pip install .
    psql -f schema.sql
    medbox-server

Environment Variables (.env file):
    See .env.template for all options
"""

import logging
from datetime import date, datetime
from decimal import Decimal

from flask import Blueprint, Flask, current_app, jsonify, request
from flask.json.provider import DefaultJSONProvider
from flask_cors import CORS

from . import config, handlers
from .db import init_db, init_db_pool
from .exceptions import MedboxError, ValidationError

logger = logging.getLogger(__name__)

api = Blueprint('api', __name__)


# Custom JSON provider for Decimal and datetime
class MedboxJSONProvider(DefaultJSONProvider):
    @staticmethod
    def default(obj):
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        return DefaultJSONProvider.default(obj)


def get_local_now():
    """Get current time in the configured timezone."""
    return datetime.now(config.LOCAL_TZ)


def _pool():
    return current_app.extensions['db_pool']


def _failure(error, context):
    """Log a failed request and build the uniform failure response."""
    if isinstance(error, ValidationError):
        logger.warning(f"{context}: {error}")
    elif isinstance(error, MedboxError):
        logger.error(f"{context}: {error}")
    else:
        logger.exception(f"{context}: {error}")
    return jsonify({'success': False, 'error': str(error)}), 500


def _log_request():
    logger.info(f"{request.method} {request.path}")


# ═══════════════════════════════════════════════════════════════════════════════
# Device Endpoints
# ═══════════════════════════════════════════════════════════════════════════════

@api.route('/health', methods=['GET'])
def health_check():
    """Liveness probe (does not touch the database)."""
    return jsonify({
        'status': 'ok',
        'timestamp': get_local_now().isoformat()
    })


@api.route('/api/sensor-data', methods=['POST'])
def receive_sensor_data():
    """
    Store a report from a box.

    Expected JSON:
    {
        "boxId": "box1",
        "temperature": 22.5,
        "humidity": 40,
        "compartmentStatus": [{"id": 1, "isOpen": true}, ...]   // optional
    }
    """
    try:
        data = request.get_json(silent=True)
        logger.debug(f"Received sensor data: {data}")

        handlers.ingest_report(
            _pool(), data,
            transactional=current_app.config['INGEST_TRANSACTIONAL']
        )

        return jsonify({'success': True, 'message': 'Data received successfully'})

    except Exception as e:
        return _failure(e, "Error saving sensor data")


# ═══════════════════════════════════════════════════════════════════════════════
# Query Endpoints
# ═══════════════════════════════════════════════════════════════════════════════

@api.route('/api/sensor-data/latest/<box_id>', methods=['GET'])
def get_latest_sensor_data(box_id):
    """Latest reading and compartment states for a box."""
    try:
        state = handlers.latest_state(
            _pool(), box_id,
            max_compartments=current_app.config['MAX_COMPARTMENTS']
        )

        return jsonify({
            'success': True,
            'sensor': state['sensor'],
            'compartments': state['compartments']
        })

    except Exception as e:
        return _failure(e, "Error fetching sensor data")


@api.route('/api/sensor-data/history/<box_id>', methods=['GET'])
def get_sensor_history(box_id):
    """Readings from the trailing window (24h by default)."""
    try:
        readings = handlers.reading_history(
            _pool(), box_id,
            hours=current_app.config['HISTORY_WINDOW_HOURS']
        )
        return jsonify({'success': True, 'data': readings})

    except Exception as e:
        return _failure(e, "Error fetching history")


# ═══════════════════════════════════════════════════════════════════════════════
# Medication Schedule Endpoints
# ═══════════════════════════════════════════════════════════════════════════════

@api.route('/api/medication-schedule/<box_id>', methods=['GET'])
def get_medication_schedule(box_id):
    """Outstanding (untaken) schedule entries, soonest first."""
    try:
        schedules = handlers.outstanding_schedule(_pool(), box_id)
        return jsonify({'success': True, 'data': schedules})

    except Exception as e:
        return _failure(e, "Error fetching schedule")


@api.route('/api/medication-schedule/complete', methods=['POST'])
def complete_medication():
    """
    Mark a schedule entry as taken.

    Expected JSON:
    {
        "scheduleId": 17
    }
    """
    try:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ValidationError("No JSON data")

        handlers.complete_schedule(_pool(), data.get('scheduleId'))

        return jsonify({'success': True, 'message': 'Medication marked as taken'})

    except Exception as e:
        return _failure(e, "Error updating schedule")


@api.route('/api/medication-history/<box_id>', methods=['GET'])
def get_medication_history(box_id):
    """Full schedule record for statistics, latest first."""
    try:
        schedules = handlers.schedule_history(_pool(), box_id)
        return jsonify({'success': True, 'data': schedules})

    except Exception as e:
        return _failure(e, "Error fetching medication history")


# ═══════════════════════════════════════════════════════════════════════════════
# Application
# ═══════════════════════════════════════════════════════════════════════════════

def create_app(db_pool, ingest_mode=None, history_window_hours=None, max_compartments=None):
    """
    Build the Flask app around an existing pool.

    ``db_pool`` is anything with a ``connection()`` context manager
    (normally a db.ConnectionPool). Unset options fall back to the
    environment configuration.
    """
    app = Flask(__name__)
    app.json = MedboxJSONProvider(app)

    app.config.update(
        INGEST_TRANSACTIONAL=config.ingest_transactional(ingest_mode),
        HISTORY_WINDOW_HOURS=(
            config.HISTORY_WINDOW_HOURS if history_window_hours is None else history_window_hours
        ),
        MAX_COMPARTMENTS=(
            config.MAX_COMPARTMENTS if max_compartments is None else max_compartments
        ),
    )
    app.extensions['db_pool'] = db_pool

    # Configure CORS
    if config.CORS_ORIGINS == '*':
        CORS(app)
    else:
        CORS(app, origins=config.CORS_ORIGINS.split(','))

    if config.LOG_REQUESTS:
        app.before_request(_log_request)

    app.register_blueprint(api)
    return app


# ═══════════════════════════════════════════════════════════════════════════════
# Main
# ═══════════════════════════════════════════════════════════════════════════════

def main():
    config.setup_logging()

    print("""
═══════════════════════════════════════════════════════════════════════════════
   Medication Box Telemetry Server
═══════════════════════════════════════════════════════════════════════════════
""")

    db_pool = init_db_pool()
    if not init_db(db_pool):
        print("\n⚠️  Warning: Database connection failed!")
        print("   Check your .env configuration, then run: psql -f schema.sql\n")

    app = create_app(db_pool)

    database = config.DATABASE_URL.split('@')[1] if '@' in config.DATABASE_URL else 'configured'
    print(f"""
Configuration:
   Database:  {database}
   Pool:      {config.DB_POOL_MIN}-{config.DB_POOL_MAX} connections, {config.DB_POOL_TIMEOUT:g}s wait
   Ingest:    {config.INGEST_MODE}
   History:   {config.HISTORY_WINDOW_HOURS}h window
   Timezone:  {config.TIMEZONE}
   Host:      {config.HOST}:{config.PORT}

Device Endpoints:
   POST /api/sensor-data                    - Store reading + compartment states

Query Endpoints:
   GET  /api/sensor-data/latest/<boxId>     - Latest reading + compartments
   GET  /api/sensor-data/history/<boxId>    - Readings from the last {config.HISTORY_WINDOW_HOURS}h

Medication Endpoints:
   GET  /api/medication-schedule/<boxId>    - Outstanding schedule
   POST /api/medication-schedule/complete   - Mark entry as taken
   GET  /api/medication-history/<boxId>     - Full schedule record

Public Endpoints:
   GET  /health                             - Liveness probe

Starting server...
═══════════════════════════════════════════════════════════════════════════════
""")

    try:
        app.run(host=config.HOST, port=config.PORT, debug=config.DEBUG, threaded=True)
    finally:
        db_pool.closeall()


if __name__ == '__main__':
    main()
