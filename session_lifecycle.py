# =================================================================
#   Online Teaching ERP - Session Lifecycle
#   Scheduled -> Live -> Ended. A live session carries the attendance
#   code students redeem; ending it clears the code.
# =================================================================

import logging
from urllib.parse import urlparse

from access_guard import Role, ensure_can_manage
from errors import NotFound, ValidationError
from timeutil import parse_iso, to_db, utc_now

logger = logging.getLogger(__name__)

STATE_SCHEDULED = 'scheduled'
STATE_LIVE = 'live'
STATE_ENDED = 'ended'

_SESSION_SELECT = """
    SELECT s.*, u.name AS teacher_name, u.email AS teacher_email
    FROM sessions s
    LEFT JOIN users u ON s.teacher_id = u.id
"""


def session_state(row):
    """Derives the lifecycle state from the stored flags."""
    if row['is_live']:
        return STATE_LIVE
    if row['session_ended_at']:
        return STATE_ENDED
    return STATE_SCHEDULED


def serialize_session(row, include_code=True):
    if row is None:
        return None
    data = dict(row)
    data['is_live'] = bool(data.get('is_live'))
    data['state'] = session_state(row)
    if not include_code:
        data.pop('attendance_code', None)
    return data


def _is_http_url(value):
    if not isinstance(value, str):
        return False
    parsed = urlparse(value.strip())
    return parsed.scheme in ('http', 'https') and bool(parsed.netloc)


def _validate_session_fields(data, creating):
    """Collects every problem with the submitted fields. Returns a cleaned dict."""
    errors = []
    cleaned = {}

    title = data.get('title')
    if title is not None or creating:
        if not isinstance(title, str) or not title.strip():
            errors.append('Title is required')
        elif len(title.strip()) > 200:
            errors.append('Title must be less than 200 characters')
        else:
            cleaned['title'] = title.strip()

    description = data.get('description')
    if description is not None or creating:
        if not isinstance(description, str) or not description.strip():
            errors.append('Description is required')
        elif len(description.strip()) > 1000:
            errors.append('Description must be less than 1000 characters')
        else:
            cleaned['description'] = description.strip()

    date_time = data.get('date_time')
    if date_time is not None or creating:
        parsed = parse_iso(date_time)
        if parsed is None:
            errors.append('Date and time must be a valid ISO 8601 date')
        elif creating and parsed <= utc_now():
            errors.append('Session date and time must be in the future')
        else:
            cleaned['date_time'] = to_db(parsed)

    meeting_link = data.get('meeting_link')
    if meeting_link is not None or creating:
        if not _is_http_url(meeting_link):
            errors.append('Meeting link must be a valid URL')
        else:
            cleaned['meeting_link'] = meeting_link.strip()

    if 'recording_link' in data:
        recording_link = data.get('recording_link')
        if recording_link in (None, ''):
            cleaned['recording_link'] = None
        elif not _is_http_url(recording_link):
            errors.append('Recording link must be a valid URL')
        else:
            cleaned['recording_link'] = recording_link.strip()

    if errors:
        raise ValidationError('Please check your input data', details=errors)
    return cleaned


# --- Queries ---
def find_by_id(conn, session_id):
    return conn.execute(_SESSION_SELECT + " WHERE s.id = ?", (session_id,)).fetchone()


def get_session(conn, session_id):
    session = find_by_id(conn, session_id)
    if not session:
        raise NotFound('Session with the specified ID does not exist')
    return session


def find_by_attendance_code(conn, code):
    """The live session carrying exactly this code, or None."""
    if not isinstance(code, str) or not code:
        return None
    return conn.execute(
        _SESSION_SELECT + " WHERE s.attendance_code = ? AND s.is_live = 1",
        (code,)
    ).fetchone()


def list_sessions(conn, actor, now=None):
    """admin: all sessions, teacher: own sessions, student: upcoming sessions."""
    if actor.role is Role.ADMIN:
        return conn.execute(_SESSION_SELECT + " ORDER BY s.date_time DESC").fetchall()
    if actor.role is Role.TEACHER:
        return conn.execute(
            _SESSION_SELECT + " WHERE s.teacher_id = ? ORDER BY s.date_time DESC",
            (actor.user_id,)
        ).fetchall()
    if actor.role is Role.STUDENT:
        now = now or utc_now()
        return conn.execute(
            _SESSION_SELECT + " WHERE s.date_time > ? ORDER BY s.date_time ASC",
            (to_db(now),)
        ).fetchall()
    raise ValueError(f'Unhandled role: {actor.role!r}')


def find_live_sessions(conn, actor):
    if actor.role is Role.ADMIN:
        return conn.execute(
            _SESSION_SELECT + " WHERE s.is_live = 1 ORDER BY s.date_time DESC"
        ).fetchall()
    return conn.execute(
        _SESSION_SELECT + " WHERE s.teacher_id = ? AND s.is_live = 1 ORDER BY s.date_time DESC",
        (actor.user_id,)
    ).fetchall()


# --- Mutations ---
def _is_int_id(value):
    return isinstance(value, int) and not isinstance(value, bool)


def owner_teacher_id(conn, data, actor):
    """The teacher a new session or course belongs to. Admins may name one via teacher_id."""
    if not actor.is_admin or data.get('teacher_id') is None:
        return actor.user_id

    teacher = None
    if _is_int_id(data['teacher_id']):
        teacher = conn.execute(
            "SELECT id FROM users WHERE id = ? AND role = 'teacher'", (data['teacher_id'],)
        ).fetchone()
    if not teacher:
        raise ValidationError('teacher_id must reference an existing teacher')
    return teacher['id']


def create_session(conn, data, actor):
    """Creates a Scheduled session. Admins may create on behalf of a teacher via teacher_id."""
    data = data or {}
    fields = _validate_session_fields(data, creating=True)

    teacher_id = owner_teacher_id(conn, data, actor)

    course_id = data.get('course_id')
    if course_id is not None:
        if not _is_int_id(course_id):
            raise ValidationError('course_id must be an integer')
        course = conn.execute("SELECT id, teacher_id FROM courses WHERE id = ?", (course_id,)).fetchone()
        if not course:
            raise NotFound('Course with the specified ID does not exist')
        ensure_can_manage(actor, course['teacher_id'], 'You can only add sessions to your own courses')
        course_id = course['id']

    cursor = conn.execute(
        """INSERT INTO sessions
           (title, description, date_time, meeting_link, recording_link, teacher_id, course_id)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (fields['title'], fields['description'], fields['date_time'], fields['meeting_link'],
         fields.get('recording_link'), teacher_id, course_id)
    )
    conn.commit()

    logger.info(f"Session created - ID: {cursor.lastrowid}, Teacher: {teacher_id}, "
                f"Scheduled: {fields['date_time']}")
    return find_by_id(conn, cursor.lastrowid)


def update_session(conn, session_id, data, actor):
    session = get_session(conn, session_id)
    ensure_can_manage(actor, session['teacher_id'], 'You can only update your own sessions')

    fields = _validate_session_fields(data or {}, creating=False)
    if fields:
        assignments = ', '.join(f"{column} = ?" for column in fields)
        conn.execute(
            f"UPDATE sessions SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            list(fields.values()) + [session['id']]
        )
        conn.commit()
        logger.info(f"Session updated - ID: {session['id']}, Fields: {sorted(fields)}")
    return find_by_id(conn, session['id'])


def delete_session(conn, session_id, actor):
    session = get_session(conn, session_id)
    ensure_can_manage(actor, session['teacher_id'], 'You can only delete your own sessions')

    # Attendance rows go with it (ON DELETE CASCADE)
    conn.execute("DELETE FROM sessions WHERE id = ?", (session['id'],))
    conn.commit()
    logger.info(f"Session deleted - ID: {session['id']}, By: {actor.user_id}")


def start_live_session(conn, session_id, code, actor):
    """
    Scheduled/Ended -> Live. Stores the caller-supplied attendance code.

    Starting an already live session overwrites its code, so the old code
    stops working immediately.
    """
    if not isinstance(code, str) or not code.strip():
        raise ValidationError('Attendance code is required')

    session = get_session(conn, session_id)
    ensure_can_manage(actor, session['teacher_id'], 'You can only start your own sessions')

    cursor = conn.execute(
        """UPDATE sessions
           SET attendance_code = ?, is_live = 1, updated_at = CURRENT_TIMESTAMP
           WHERE id = ?""",
        (code, session['id'])
    )
    conn.commit()
    if cursor.rowcount == 0:
        raise NotFound('Session with the specified ID does not exist')

    if session['is_live']:
        logger.info(f"Live session restarted - ID: {session['id']}, previous code invalidated")
    logger.info(f"Live session started - ID: {session['id']}, By: {actor.user_id}")
    return find_by_id(conn, session['id'])


def end_live_session(conn, session_id, actor, now=None):
    """Any state -> Ended. Clears the code and stamps session_ended_at."""
    session = get_session(conn, session_id)
    ensure_can_manage(actor, session['teacher_id'], 'You can only end your own sessions')

    ended_at = to_db(now or utc_now())
    cursor = conn.execute(
        """UPDATE sessions
           SET attendance_code = NULL, is_live = 0, session_ended_at = ?, updated_at = CURRENT_TIMESTAMP
           WHERE id = ?""",
        (ended_at, session['id'])
    )
    conn.commit()
    if cursor.rowcount == 0:
        raise NotFound('Session with the specified ID does not exist')

    logger.info(f"Live session ended - ID: {session['id']}, At: {ended_at}, By: {actor.user_id}")
    return find_by_id(conn, session['id'])
