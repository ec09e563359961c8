# =================================================================
#   Online Teaching ERP - Courses, Enrollment & Notifications
# =================================================================

import sqlite3
import logging

from access_guard import Role, ensure_can_manage, require_role
from attendance_recorder import METHOD_COURSE_ROSTER, VALID_STATUSES, mark_attendance
from database_setup import transaction
from errors import (AlreadyEnrolled, AlreadyExists, BusinessRuleError, CourseFull,
                    NotFound, ValidationError)
from session_lifecycle import get_session, owner_teacher_id
from timeutil import parse_iso

logger = logging.getLogger(__name__)

_COURSE_SELECT = """
    SELECT c.*, u.name AS teacher_name, u.email AS teacher_email,
           COUNT(e.id) AS enrolled_students
    FROM courses c
    LEFT JOIN users u ON c.teacher_id = u.id
    LEFT JOIN enrollments e ON c.id = e.course_id AND e.status = 'active'
"""
_COURSE_GROUP = " GROUP BY c.id"


def serialize_course(row):
    if row is None:
        return None
    data = dict(row)
    data['is_active'] = bool(data.get('is_active'))
    return data


def _validate_course_fields(data, creating, default_max_students):
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

    course_code = data.get('course_code')
    if course_code is not None or creating:
        if not isinstance(course_code, str) or not course_code.strip():
            errors.append('Course code is required')
        elif len(course_code.strip()) > 20:
            errors.append('Course code must be less than 20 characters')
        else:
            cleaned['course_code'] = course_code.strip().upper()

    if 'description' in data:
        description = data.get('description')
        if description is not None and not isinstance(description, str):
            errors.append('Description must be a string')
        else:
            cleaned['description'] = description.strip() if description else None

    max_students = data.get('max_students')
    if max_students is not None:
        if isinstance(max_students, bool) or not isinstance(max_students, int) or max_students < 1:
            errors.append('max_students must be a positive integer')
        else:
            cleaned['max_students'] = max_students
    elif creating:
        cleaned['max_students'] = default_max_students

    for key in ('start_date', 'end_date'):
        if data.get(key) is not None:
            parsed = parse_iso(data[key])
            if parsed is None:
                errors.append(f"{key} must be a valid ISO 8601 date")
            else:
                cleaned[key] = parsed.date().isoformat()

    if cleaned.get('start_date') and cleaned.get('end_date') and cleaned['end_date'] < cleaned['start_date']:
        errors.append('end_date must not be before start_date')

    if 'is_active' in data and not creating:
        cleaned['is_active'] = 1 if data['is_active'] else 0

    if errors:
        raise ValidationError('Please check your input data', details=errors)
    return cleaned


# --- Courses ---
def find_by_id(conn, course_id):
    return conn.execute(_COURSE_SELECT + " WHERE c.id = ?" + _COURSE_GROUP, (course_id,)).fetchone()


def get_course(conn, course_id):
    course = find_by_id(conn, course_id)
    if not course:
        raise NotFound('Course with the specified ID does not exist')
    return course


def list_courses(conn, actor):
    """admin: all active, teacher: own active, student: active courses not yet enrolled in."""
    if actor.role is Role.ADMIN:
        return conn.execute(
            _COURSE_SELECT + " WHERE c.is_active = 1" + _COURSE_GROUP + " ORDER BY c.created_at DESC, c.id DESC"
        ).fetchall()
    if actor.role is Role.TEACHER:
        return conn.execute(
            _COURSE_SELECT + " WHERE c.teacher_id = ? AND c.is_active = 1" + _COURSE_GROUP
            + " ORDER BY c.created_at DESC, c.id DESC",
            (actor.user_id,)
        ).fetchall()
    if actor.role is Role.STUDENT:
        return conn.execute(
            _COURSE_SELECT + """ WHERE c.is_active = 1 AND c.id NOT IN (
                SELECT course_id FROM enrollments WHERE student_id = ? AND status = 'active'
            )""" + _COURSE_GROUP + " ORDER BY c.created_at DESC, c.id DESC",
            (actor.user_id,)
        ).fetchall()
    raise ValueError(f'Unhandled role: {actor.role!r}')


def create_course(conn, data, actor, default_max_students=50):
    data = data or {}
    fields = _validate_course_fields(data, creating=True, default_max_students=default_max_students)

    teacher_id = owner_teacher_id(conn, data, actor)

    try:
        cursor = conn.execute(
            """INSERT INTO courses
               (title, description, course_code, teacher_id, max_students, start_date, end_date)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (fields['title'], fields.get('description'), fields['course_code'], teacher_id,
             fields['max_students'], fields.get('start_date'), fields.get('end_date'))
        )
        conn.commit()
    except sqlite3.IntegrityError:
        conn.rollback()
        raise AlreadyExists('Course code already exists. Please choose a different course code')

    logger.info(f"Course created - ID: {cursor.lastrowid}, Code: {fields['course_code']}, Teacher: {teacher_id}")
    return find_by_id(conn, cursor.lastrowid)


def update_course(conn, course_id, data, actor):
    course = get_course(conn, course_id)
    ensure_can_manage(actor, course['teacher_id'], 'You can only update your own courses')

    fields = _validate_course_fields(data or {}, creating=False, default_max_students=None)
    if fields.get('max_students') is not None and fields['max_students'] < course['enrolled_students']:
        raise BusinessRuleError('max_students cannot be lower than the current enrollment',
                                error='capacity_below_enrollment')
    if fields:
        assignments = ', '.join(f"{column} = ?" for column in fields)
        try:
            conn.execute(
                f"UPDATE courses SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                list(fields.values()) + [course['id']]
            )
            conn.commit()
        except sqlite3.IntegrityError:
            conn.rollback()
            raise AlreadyExists('Course code already exists. Please choose a different course code')
        logger.info(f"Course updated - ID: {course['id']}, Fields: {sorted(fields)}")
    return find_by_id(conn, course['id'])


def delete_course(conn, course_id, actor):
    course = get_course(conn, course_id)
    require_role(actor, Role.ADMIN)
    if course['enrolled_students']:
        raise BusinessRuleError(
            f"Course has {course['enrolled_students']} enrolled students and cannot be deleted",
            error='course_has_enrollments'
        )
    conn.execute("DELETE FROM courses WHERE id = ?", (course['id'],))
    conn.commit()
    logger.info(f"Course deleted - ID: {course['id']}, By: {actor.user_id}")


# --- Enrollment ---
def enroll_student(conn, student_id, course_id):
    """
    Enrolls a student and notifies the course teacher.

    The duplicate check, capacity check, insert and notification all run
    under one BEGIN IMMEDIATE, so two students cannot both take the last seat.
    """
    with transaction(conn):
        existing = conn.execute(
            "SELECT id FROM enrollments WHERE student_id = ? AND course_id = ?",
            (student_id, course_id)
        ).fetchone()
        if existing:
            raise AlreadyEnrolled('Student already enrolled in this course')

        course = conn.execute("""
            SELECT c.id, c.title, c.teacher_id, c.max_students, c.is_active,
                   COUNT(e.id) AS current_enrolled
            FROM courses c
            LEFT JOIN enrollments e ON c.id = e.course_id AND e.status = 'active'
            WHERE c.id = ?
            GROUP BY c.id
        """, (course_id,)).fetchone()
        if not course or not course['is_active']:
            raise NotFound('Course not found')
        if course['current_enrolled'] >= course['max_students']:
            raise CourseFull('Course is full')

        cursor = conn.execute(
            "INSERT INTO enrollments (student_id, course_id) VALUES (?, ?)",
            (student_id, course['id'])
        )
        enrollment_id = cursor.lastrowid

        student = conn.execute("SELECT name, email FROM users WHERE id = ?", (student_id,)).fetchone()
        if not student:
            raise NotFound('Student not found')
        conn.execute(
            """INSERT INTO notifications (teacher_id, student_id, course_id, type, title, message)
               VALUES (?, ?, ?, 'enrollment', 'New Student Enrollment', ?)""",
            (course['teacher_id'], student_id, course['id'],
             f"{student['name']} has enrolled in your course: {course['title']}")
        )

    logger.info(f"Enrollment - Student: {student_id}, Course: {course['id']} "
                f"({course['current_enrolled'] + 1}/{course['max_students']})")
    return conn.execute("SELECT * FROM enrollments WHERE id = ?", (enrollment_id,)).fetchone()


def list_student_courses(conn, student_id):
    return conn.execute("""
        SELECT c.*, u.name AS teacher_name, e.enrollment_date,
               (SELECT COUNT(*) FROM sessions s WHERE s.course_id = c.id) AS total_sessions,
               (SELECT COUNT(*) FROM attendance a
                  JOIN sessions s ON a.session_id = s.id
                 WHERE s.course_id = c.id AND a.student_id = e.student_id
                   AND a.status IN ('present', 'late')) AS attended_sessions
        FROM enrollments e
        JOIN courses c ON e.course_id = c.id
        LEFT JOIN users u ON c.teacher_id = u.id
        WHERE e.student_id = ? AND e.status = 'active'
        ORDER BY e.enrollment_date DESC, e.id DESC
    """, (student_id,)).fetchall()


def list_course_students(conn, course_id, actor):
    course = get_course(conn, course_id)
    ensure_can_manage(actor, course['teacher_id'], 'You can only view students of your own courses')
    students = conn.execute("""
        SELECT u.id, u.name, u.email, e.enrollment_date, e.status,
               (SELECT COUNT(*) FROM attendance a
                  JOIN sessions s ON a.session_id = s.id
                 WHERE s.course_id = e.course_id AND a.student_id = u.id
                   AND a.status IN ('present', 'late')) AS sessions_attended
        FROM enrollments e
        JOIN users u ON e.student_id = u.id
        WHERE e.course_id = ? AND e.status = 'active'
        ORDER BY e.enrollment_date DESC, e.id DESC
    """, (course['id'],)).fetchall()
    return course, students


def list_course_sessions(conn, course_id, actor):
    """Owner/admin see every course session; enrolled students see them too."""
    course = get_course(conn, course_id)
    if actor.role is Role.STUDENT:
        enrolled = conn.execute(
            "SELECT 1 FROM enrollments WHERE course_id = ? AND student_id = ? AND status = 'active'",
            (course['id'], actor.user_id)
        ).fetchone()
        if not enrolled:
            raise NotFound('Course not found or you are not enrolled')
    else:
        ensure_can_manage(actor, course['teacher_id'], 'You can only view sessions of your own courses')

    sessions = conn.execute("""
        SELECT s.id, s.title, s.description, s.date_time, s.meeting_link, s.is_live,
               s.session_ended_at,
               COUNT(a.id) AS total_marked,
               COUNT(CASE WHEN a.status = 'present' THEN 1 END) AS present_count
        FROM sessions s
        LEFT JOIN attendance a ON a.session_id = s.id
        WHERE s.course_id = ?
        GROUP BY s.id
        ORDER BY s.date_time DESC
    """, (course['id'],)).fetchall()
    return course, sessions


def mark_course_attendance(conn, course_id, session_id, entries, actor, now=None):
    """
    Bulk marks a course roster for one session.

    entries: [{'studentId': int, 'status': 'present'|'absent'|'late'}, ...]
    Every entry must name an enrolled student; the whole batch is written in
    one transaction or not at all.
    """
    course = get_course(conn, course_id)
    ensure_can_manage(actor, course['teacher_id'], 'You can only mark attendance for your own courses')

    session = get_session(conn, session_id)
    if session['course_id'] != course['id']:
        raise ValidationError('Session does not belong to this course')

    if not isinstance(entries, list) or not entries:
        raise ValidationError('attendanceData must be a non-empty list of {studentId, status}')

    enrolled_ids = {row['student_id'] for row in conn.execute(
        "SELECT student_id FROM enrollments WHERE course_id = ? AND status = 'active'", (course['id'],)
    ).fetchall()}

    errors = []
    cleaned = []
    for position, entry in enumerate(entries):
        if not isinstance(entry, dict):
            errors.append(f"Entry {position} must be an object")
            continue
        student_id = entry.get('studentId')
        status = entry.get('status', 'present')
        if not isinstance(student_id, int) or isinstance(student_id, bool):
            errors.append(f"Entry {position} must have an integer studentId")
        elif student_id not in enrolled_ids:
            errors.append(f"Student {student_id} is not enrolled in this course")
        elif status not in VALID_STATUSES:
            errors.append(f"Entry {position}: status must be one of present, absent, late")
        else:
            cleaned.append((student_id, status))
    if errors:
        raise ValidationError('Please check your attendance data', details=errors)

    with transaction(conn):
        for student_id, status in cleaned:
            mark_attendance(conn, session['id'], student_id, status, METHOD_COURSE_ROSTER,
                            now=now, commit=False)

    counts = {status: sum(1 for _, s in cleaned if s == status) for status in VALID_STATUSES}
    logger.info(f"Course attendance marked - Course: {course['id']}, Session: {session['id']}, "
                f"Counts: {counts}, By: {actor.user_id}")
    return counts


# --- Notifications ---
def list_notifications(conn, teacher_id):
    return conn.execute("""
        SELECT n.*, u.name AS student_name, c.title AS course_title
        FROM notifications n
        LEFT JOIN users u ON n.student_id = u.id
        LEFT JOIN courses c ON n.course_id = c.id
        WHERE n.teacher_id = ?
        ORDER BY n.created_at DESC, n.id DESC
        LIMIT 50
    """, (teacher_id,)).fetchall()


def mark_notification_read(conn, notification_id, actor):
    notification = conn.execute(
        "SELECT * FROM notifications WHERE id = ?", (notification_id,)
    ).fetchone()
    if not notification:
        raise NotFound('Notification not found')
    ensure_can_manage(actor, notification['teacher_id'], 'You can only update your own notifications')

    conn.execute(
        "UPDATE notifications SET is_read = 1, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
        (notification['id'],)
    )
    conn.commit()
    return conn.execute("SELECT * FROM notifications WHERE id = ?", (notification['id'],)).fetchone()
