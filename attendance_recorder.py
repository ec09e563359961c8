# =================================================================
#   Online Teaching ERP - Attendance Recorder
#   One row per (session, student). Every write goes through the
#   single atomic upsert in mark_attendance().
#
#   Check-in methods (stored in attendance.check_in_method):
#     code          - student redeemed the live session's code
#     join          - student joined inside the scheduled time window
#     manual        - teacher/admin marked the student
#     course_roster - bulk marking from a course roster
# =================================================================

import datetime
import logging

import analytics
from access_guard import Role, ensure_can_access_own, ensure_can_manage
from errors import InvalidCode, InvalidState, NotFound, ValidationError, WindowClosed
from session_lifecycle import get_session
from timeutil import from_db, to_db, utc_now

logger = logging.getLogger(__name__)

VALID_STATUSES = ('present', 'absent', 'late')

METHOD_CODE = 'code'
METHOD_JOIN = 'join'
METHOD_MANUAL = 'manual'
METHOD_COURSE_ROSTER = 'course_roster'
CHECK_IN_METHODS = (METHOD_CODE, METHOD_JOIN, METHOD_MANUAL, METHOD_COURSE_ROSTER)


def validate_status(status):
    if status not in VALID_STATUSES:
        raise ValidationError('Status must be one of: present, absent, late', error='invalid_status')
    return status


def mark_attendance(conn, session_id, student_id, status='present', method=METHOD_MANUAL, now=None, commit=True):
    """
    Inserts the (session, student) row or overwrites its status and timestamp.

    Runs as one INSERT ... ON CONFLICT statement against the
    UNIQUE(session_id, student_id) constraint, so concurrent calls for the
    same pair always leave exactly one row.
    """
    validate_status(status)
    if method not in CHECK_IN_METHODS:
        raise ValueError(f'Unknown check-in method: {method!r}')

    stamp = to_db(now or utc_now())
    conn.execute(
        """INSERT INTO attendance
               (session_id, student_id, status, check_in_method, timestamp, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT (session_id, student_id) DO UPDATE SET
               status = excluded.status,
               check_in_method = excluded.check_in_method,
               timestamp = excluded.timestamp,
               updated_at = excluded.updated_at""",
        (session_id, student_id, status, method, stamp, stamp, stamp)
    )
    if commit:
        conn.commit()
    return find_one(conn, session_id, student_id)


def find_one(conn, session_id, student_id):
    return conn.execute(
        "SELECT * FROM attendance WHERE session_id = ? AND student_id = ?",
        (session_id, student_id)
    ).fetchone()


def find_by_id(conn, attendance_id):
    return conn.execute("SELECT * FROM attendance WHERE id = ?", (attendance_id,)).fetchone()


# --- Student-facing paths ---
def check_in_with_code(conn, session_id, code, student_id, now=None):
    """
    Code mode: the session must be live and the code must match exactly.

    A session that is not live is rejected before the code is compared, so a
    stale code from an ended session reports InvalidState.
    """
    session = get_session(conn, session_id)

    if not session['is_live']:
        logger.warning(f"Check-in rejected - Session {session['id']} not live, Student: {student_id}")
        raise InvalidState('This session is not currently accepting attendance')

    if session['attendance_code'] != code:
        logger.warning(f"Check-in rejected - Wrong code for session {session['id']}, Student: {student_id}")
        raise InvalidCode('The attendance code provided is incorrect')

    attendance = mark_attendance(conn, session['id'], student_id, 'present', METHOD_CODE, now=now)
    logger.info(f"Check-in SUCCESS - Session: {session['id']}, Student: {student_id}")
    return attendance, session


def join_window(scheduled_at, early_minutes, late_minutes):
    """The closed interval [start - early, start + late] in which joining is allowed."""
    return (scheduled_at - datetime.timedelta(minutes=early_minutes),
            scheduled_at + datetime.timedelta(minutes=late_minutes))


def join_session(conn, session_id, student_id, early_minutes=15, late_minutes=120, now=None):
    """
    Join mode: no code, only the time window around the scheduled start.
    Returns (attendance, session); the caller redirects to session['meeting_link'].
    """
    session = get_session(conn, session_id)

    now = now or utc_now()
    opens_at, closes_at = join_window(from_db(session['date_time']), early_minutes, late_minutes)
    if now < opens_at or now > closes_at:
        logger.warning(f"Join rejected - Session {session['id']} outside window "
                       f"({to_db(opens_at)} .. {to_db(closes_at)}), Student: {student_id}")
        raise WindowClosed('You can only join sessions that are starting soon or currently ongoing')

    attendance = mark_attendance(conn, session['id'], student_id, 'present', METHOD_JOIN, now=now)
    logger.info(f"Join SUCCESS - Session: {session['id']}, Student: {student_id}")
    return attendance, session


# --- Teacher/admin paths ---
def record_manual_mark(conn, session_id, student_id, status, actor, now=None):
    """Teacher/admin marks a student on one of their sessions."""
    validate_status(status)
    session = get_session(conn, session_id)
    ensure_can_manage(actor, session['teacher_id'], 'You can only mark attendance for your own sessions')

    student = conn.execute(
        "SELECT id FROM users WHERE id = ? AND role = 'student'", (student_id,)
    ).fetchone()
    if not student:
        raise NotFound('Student with the specified ID does not exist')

    attendance = mark_attendance(conn, session['id'], student['id'], status, METHOD_MANUAL, now=now)
    logger.info(f"Manual mark - Session: {session['id']}, Student: {student['id']}, "
                f"Status: {status}, By: {actor.user_id}")
    return attendance


def update_status(conn, attendance_id, status, actor):
    """Overwrites the status of an existing row. The timestamp is kept."""
    validate_status(status)
    record = find_by_id(conn, attendance_id)
    if not record:
        raise NotFound('Attendance record with the specified ID does not exist')

    session = get_session(conn, record['session_id'])
    ensure_can_manage(actor, session['teacher_id'], 'You can only update attendance for your own sessions')

    conn.execute(
        "UPDATE attendance SET status = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
        (status, record['id'])
    )
    conn.commit()
    logger.info(f"Attendance status updated - ID: {record['id']}, "
                f"{record['status']} -> {status}, By: {actor.user_id}")
    return find_by_id(conn, record['id'])


# --- Reads ---
def find_by_session(conn, session_id, actor):
    session = get_session(conn, session_id)
    ensure_can_manage(actor, session['teacher_id'], 'You can only view attendance for your own sessions')
    rows = conn.execute("""
        SELECT a.*, u.name AS student_name, u.email AS student_email,
               s.title AS session_title, s.date_time AS session_date_time
        FROM attendance a
        LEFT JOIN users u ON a.student_id = u.id
        LEFT JOIN sessions s ON a.session_id = s.id
        WHERE a.session_id = ?
        ORDER BY a.timestamp DESC, a.id DESC
    """, (session['id'],)).fetchall()
    return session, rows


def resolve_student_id(actor, student_id=None):
    """
    Whose records a read is about.
    student -> always themselves, teacher/admin -> the given student id.
    """
    if actor.role is Role.STUDENT:
        if student_id is not None:
            ensure_can_access_own(actor, student_id, 'You can only view your own attendance')
        return actor.user_id
    if actor.role in (Role.TEACHER, Role.ADMIN):
        if student_id is None:
            raise ValidationError('Student ID is required')
        return int(student_id)
    raise ValueError(f'Unhandled role: {actor.role!r}')


def find_by_student(conn, student_id):
    return conn.execute("""
        SELECT a.*, s.title AS session_title, s.description AS session_description,
               s.date_time AS session_date_time, u.name AS teacher_name
        FROM attendance a
        LEFT JOIN sessions s ON a.session_id = s.id
        LEFT JOIN users u ON s.teacher_id = u.id
        WHERE a.student_id = ?
        ORDER BY s.date_time DESC
    """, (student_id,)).fetchall()


def _rate(part, total):
    return round(part * 100.0 / total, 2) if total else None


def get_stats(conn, now=None):
    now = now or utc_now()
    week_ago = to_db(now - datetime.timedelta(days=7))
    month_ago = to_db(now - datetime.timedelta(days=30))
    row = conn.execute("""
        SELECT
            COUNT(*) AS total_attendance_records,
            COUNT(CASE WHEN status = 'present' THEN 1 END) AS total_present,
            COUNT(CASE WHEN status = 'absent' THEN 1 END) AS total_absent,
            COUNT(CASE WHEN status = 'late' THEN 1 END) AS total_late,
            COUNT(CASE WHEN timestamp >= ? THEN 1 END) AS attendance_this_week,
            COUNT(CASE WHEN timestamp >= ? THEN 1 END) AS attendance_this_month
        FROM attendance
    """, (week_ago, month_ago)).fetchone()
    stats = dict(row)
    stats['attendance_rate'] = _rate(stats['total_present'], stats['total_attendance_records'])
    return stats


def resolve_teacher_id(actor, teacher_id=None):
    if actor.role is Role.TEACHER:
        if teacher_id is not None:
            ensure_can_access_own(actor, teacher_id, 'You can only view your own reports')
        return actor.user_id
    if actor.role is Role.ADMIN:
        if teacher_id is None:
            raise ValidationError('Teacher ID is required for admin users')
        return int(teacher_id)
    if actor.role is Role.STUDENT:
        raise ValidationError('Teacher reports are not available to students')
    raise ValueError(f'Unhandled role: {actor.role!r}')


def get_teacher_report(conn, teacher_id):
    rows = conn.execute("""
        SELECT
            s.id AS session_id,
            s.title AS session_title,
            s.date_time AS session_date_time,
            COUNT(a.id) AS total_attendees,
            COUNT(CASE WHEN a.status = 'present' THEN 1 END) AS present_count,
            COUNT(CASE WHEN a.status = 'absent' THEN 1 END) AS absent_count,
            COUNT(CASE WHEN a.status = 'late' THEN 1 END) AS late_count
        FROM sessions s
        LEFT JOIN attendance a ON s.id = a.session_id
        WHERE s.teacher_id = ?
        GROUP BY s.id, s.title, s.date_time
        ORDER BY s.date_time DESC
    """, (teacher_id,)).fetchall()

    report = []
    for row in rows:
        entry = dict(row)
        entry['attendance_rate'] = _rate(entry['present_count'], entry['total_attendees'])
        report.append(entry)
    return report


def get_student_summary(conn, student_id, target_percent=75.0, critical_percent=60.0):
    row = conn.execute("""
        SELECT
            COUNT(*) AS total_sessions_attended,
            COUNT(CASE WHEN status = 'present' THEN 1 END) AS sessions_present,
            COUNT(CASE WHEN status = 'absent' THEN 1 END) AS sessions_absent,
            COUNT(CASE WHEN status = 'late' THEN 1 END) AS sessions_late
        FROM attendance
        WHERE student_id = ?
    """, (student_id,)).fetchone()
    summary = dict(row)
    summary['attendance_rate'] = _rate(summary['sessions_present'], summary['total_sessions_attended'])
    summary['standing'] = analytics.calculate_standing(
        summary['sessions_present'], summary['total_sessions_attended'],
        target_percent, critical_percent
    )
    return summary
