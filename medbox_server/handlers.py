"""
Request handlers for box telemetry and the medication schedule.

Each handler takes the connection pool as its first argument and borrows
exactly one connection for the duration of the call. Handlers raise
ValidationError / StoreError; turning those into HTTP responses is the
server's job.
"""

import logging

from . import config
from .exceptions import ValidationError

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# Statements
# ═══════════════════════════════════════════════════════════════════════════════

# Timestamps are always assigned by the store. Ties at equal timestamps are
# broken by the serial id.

INSERT_READING = """
    INSERT INTO sensor_logs (box_id, temperature, humidity, timestamp)
    VALUES (%s, %s, %s, NOW())
"""

INSERT_COMPARTMENT = """
    INSERT INTO compartment_status (box_id, compartment_id, is_open, timestamp)
    VALUES (%s, %s, %s, NOW())
"""

SELECT_LATEST_READING = """
    SELECT * FROM sensor_logs
    WHERE box_id = %s
    ORDER BY timestamp DESC, id DESC
    LIMIT 1
"""

SELECT_LATEST_COMPARTMENTS = """
    SELECT * FROM compartment_status
    WHERE box_id = %s
    ORDER BY timestamp DESC, id DESC
    LIMIT %s
"""

SELECT_READING_HISTORY = """
    SELECT * FROM sensor_logs
    WHERE box_id = %s
        AND timestamp > NOW() - %s * INTERVAL '1 hour'
    ORDER BY timestamp DESC, id DESC
"""

SELECT_OUTSTANDING_SCHEDULE = """
    SELECT * FROM medication_schedule
    WHERE box_id = %s AND is_taken = FALSE
    ORDER BY scheduled_time ASC, id ASC
"""

COMPLETE_SCHEDULE = """
    UPDATE medication_schedule
    SET is_taken = TRUE, taken_time = NOW()
    WHERE id = %s
"""

SELECT_SCHEDULE_HISTORY = """
    SELECT * FROM medication_schedule
    WHERE box_id = %s
    ORDER BY scheduled_time DESC, id DESC
"""


# ═══════════════════════════════════════════════════════════════════════════════
# Ingestion
# ═══════════════════════════════════════════════════════════════════════════════

def _parse_report(report):
    if not isinstance(report, dict):
        raise ValidationError("No JSON data")

    box_id = report.get('boxId')
    if box_id is None or str(box_id).strip() == '':
        raise ValidationError("boxId is required")

    compartments = report.get('compartmentStatus')
    if not isinstance(compartments, list):
        compartments = []

    return str(box_id), report.get('temperature'), report.get('humidity'), compartments


def _parse_compartment(compartment, position):
    if not isinstance(compartment, dict) or compartment.get('id') is None:
        raise ValidationError(f"compartmentStatus[{position}] must be an object with an id")
    return compartment['id'], bool(compartment.get('isOpen'))


def ingest_report(db_pool, report, transactional=False):
    """
    Store one device report: one sensor_logs row plus one compartment_status
    row per entry of ``compartmentStatus`` (in input order).

    Expected JSON:
    {
        "boxId": "box1",
        "temperature": 22.5,
        "humidity": 40,
        "compartmentStatus": [            // optional
            {"id": 1, "isOpen": true},
            {"id": 2, "isOpen": false}
        ]
    }

    With ``transactional=False`` every insert is committed on its own, so a
    failure part-way leaves the rows written before it in place. With
    ``transactional=True`` the whole report is committed once, or not at all.

    Returns the number of compartment rows written.
    """
    box_id, temperature, humidity, compartments = _parse_report(report)

    with db_pool.connection() as conn:
        cur = conn.cursor()

        cur.execute(INSERT_READING, (box_id, temperature, humidity))
        if not transactional:
            conn.commit()

        for position, compartment in enumerate(compartments):
            compartment_id, is_open = _parse_compartment(compartment, position)
            cur.execute(INSERT_COMPARTMENT, (box_id, compartment_id, is_open))
            if not transactional:
                conn.commit()

        conn.commit()
        cur.close()

    logger.info(
        f"Box {box_id}: reading T={temperature} H={humidity}, "
        f"{len(compartments)} compartment(s)"
    )
    return len(compartments)


# ═══════════════════════════════════════════════════════════════════════════════
# Telemetry queries
# ═══════════════════════════════════════════════════════════════════════════════

def latest_state(db_pool, box_id, max_compartments=None):
    """Most recent reading (or None) and the most recent compartment rows."""
    if max_compartments is None:
        max_compartments = config.MAX_COMPARTMENTS

    with db_pool.connection() as conn:
        cur = conn.cursor()

        cur.execute(SELECT_LATEST_READING, (box_id,))
        sensor = cur.fetchone()

        cur.execute(SELECT_LATEST_COMPARTMENTS, (box_id, max_compartments))
        compartments = cur.fetchall()
        cur.close()

    return {
        'sensor': dict(sensor) if sensor else None,
        'compartments': [dict(c) for c in compartments],
    }


def reading_history(db_pool, box_id, hours=None):
    """All readings inside the trailing window, newest first."""
    if hours is None:
        hours = config.HISTORY_WINDOW_HOURS

    with db_pool.connection() as conn:
        cur = conn.cursor()
        cur.execute(SELECT_READING_HISTORY, (box_id, hours))
        readings = cur.fetchall()
        cur.close()

    return [dict(r) for r in readings]


# ═══════════════════════════════════════════════════════════════════════════════
# Medication schedule
# ═══════════════════════════════════════════════════════════════════════════════

def outstanding_schedule(db_pool, box_id):
    """Untaken entries, soonest due first (overdue ones included)."""
    with db_pool.connection() as conn:
        cur = conn.cursor()
        cur.execute(SELECT_OUTSTANDING_SCHEDULE, (box_id,))
        schedules = cur.fetchall()
        cur.close()

    return [dict(s) for s in schedules]


def complete_schedule(db_pool, schedule_id):
    """
    Mark one schedule entry as taken.

    Unguarded on purpose: the row is not checked for existence or prior
    completion. Re-applying only moves taken_time forward. Returns the number
    of rows matched (0 for an unknown id).
    """
    if schedule_id is None or str(schedule_id).strip() == '':
        raise ValidationError("scheduleId is required")

    with db_pool.connection() as conn:
        cur = conn.cursor()
        cur.execute(COMPLETE_SCHEDULE, (schedule_id,))
        matched = cur.rowcount
        conn.commit()
        cur.close()

    if matched:
        logger.info(f"Schedule #{schedule_id} marked as taken")
    else:
        logger.warning(f"Schedule #{schedule_id} not found, nothing marked as taken")
    return matched


def schedule_history(db_pool, box_id):
    """Every entry for the box, taken or not, latest scheduled_time first."""
    with db_pool.connection() as conn:
        cur = conn.cursor()
        cur.execute(SELECT_SCHEDULE_HISTORY, (box_id,))
        schedules = cur.fetchall()
        cur.close()

    return [dict(s) for s in schedules]
