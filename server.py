# =================================================================
#   Online Teaching ERP Server
# =================================================================

from flask import Blueprint, Flask, current_app, g, jsonify, request, send_file
import sqlite3
import datetime
import time
import jwt
from functools import wraps

import logging
from logging.handlers import RotatingFileHandler
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_cors import CORS
from werkzeug.exceptions import HTTPException
from werkzeug.serving import WSGIRequestHandler

import analytics
import attendance_recorder
import courses
import session_lifecycle
import users
from access_guard import Actor, Role, can_manage, require_role
from config import Config
from database_setup import create_default_admin, get_db_connection, init_schema
from errors import AppError, Forbidden, NotFound, Unauthorized, ValidationError

logger = logging.getLogger(__name__)


class TimedRequestHandler(WSGIRequestHandler):
    """Request handler for the development server that only logs slow or failed requests"""
    def handle_one_request(self):
        self._start_time = time.time()
        return super().handle_one_request()

    def log_request(self, code='-', size='-'):
        if hasattr(self, '_start_time'):
            duration = time.time() - self._start_time
            if duration > 1.0 or (str(code).isdigit() and int(code) >= 400):
                self.log('info', f'"{self.requestline}" {code} {size} ({duration:.2f}s)')


# --- Configure logging with rotation ---
def configure_logging(config):
    handlers = [logging.StreamHandler()]
    if config.get('LOG_FILE'):
        log_file_handler = RotatingFileHandler(
            config['LOG_FILE'],
            maxBytes=10 * 1024 * 1024,  # 10 MB per file
            backupCount=5,              # Keep 5 backup files
            encoding='utf-8'
        )
        log_file_handler.setLevel(logging.INFO)
        log_file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
        handlers.insert(0, log_file_handler)

    logging.basicConfig(
        level=getattr(logging, str(config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO),
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers
    )

    # Reduce werkzeug (Flask web server) logging - only show warnings and errors
    logging.getLogger('werkzeug').setLevel(logging.WARNING)


# --- Rate Limiting: Protect against brute-force attacks ---
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[Config.RATE_LIMIT_API],
    storage_uri="memory://"
)

api = Blueprint('api', __name__, url_prefix='/api')


# =================================================================
#   Database & Token Helper Functions
# =================================================================

def get_db():
    """The request's database connection, opened on first use."""
    if 'db' not in g:
        g.db = get_db_connection(current_app.config['DATABASE_PATH'])
    return g.db


def close_db(exception=None):
    conn = g.pop('db', None)
    if conn is not None:
        conn.close()


def create_token(user):
    """Signs a bearer token carrying {userId, email, role, exp}."""
    payload = {
        'userId': user['id'],
        'email': user['email'],
        'role': user['role'],
        'exp': datetime.datetime.now(datetime.timezone.utc)
               + datetime.timedelta(hours=current_app.config['JWT_EXPIRY_HOURS'])
    }
    return jwt.encode(payload, current_app.config['SECRET_KEY'], algorithm=current_app.config['JWT_ALGORITHM'])


# This decorator protects a route: it checks for a valid JSON Web Token in the
# Authorization header and passes the caller (an Actor) as the first argument.
def token_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        header = request.headers.get('Authorization', '')
        parts = header.split(' ')
        # The token is expected to be in the format "Bearer <token>"
        if len(parts) != 2 or parts[0].lower() != 'bearer' or not parts[1]:
            raise Unauthorized('Authorization token is missing', error='token_missing')

        try:
            data = jwt.decode(
                parts[1],
                current_app.config['SECRET_KEY'],
                algorithms=[current_app.config['JWT_ALGORITHM']]
            )
        except jwt.ExpiredSignatureError:
            raise Unauthorized('Token has expired', error='token_expired')
        except jwt.InvalidTokenError:
            raise Unauthorized('Token is invalid', error='token_invalid')

        return f(Actor.from_claims(data), *args, **kwargs)
    return decorated


def roles_required(*roles):
    """Use below @token_required. Raises Forbidden unless the caller holds one of `roles`."""
    def decorator(f):
        @wraps(f)
        def decorated(actor, *args, **kwargs):
            require_role(actor, *roles)
            return f(actor, *args, **kwargs)
        return decorated
    return decorator


# --- Input Validation Helper ---
def validate_required_fields(data, required_fields):
    """
    Validates that request data contains all required fields and they're not empty.

    Raises ValidationError naming the first missing or empty field.
    """
    if not data:
        raise ValidationError("No data provided in request body")

    for field in required_fields:
        if field not in data or data[field] is None:
            raise ValidationError(f"Missing required field: '{field}'")
        # Convert to string and check if empty after stripping whitespace
        if not str(data[field]).strip():
            raise ValidationError(f"Field '{field}' cannot be empty")


def _json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _as_int(value, field):
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ValidationError(f"Field '{field}' must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Field '{field}' must be an integer")


def _session_preview(session):
    return {'id': session['id'], 'title': session['title'], 'meeting_link': session['meeting_link']}


# =================================================================
#   Health & Index
# =================================================================

@api.route('/health', methods=['GET'])
@limiter.exempt
def health_check():
    """
    Health check endpoint for monitoring and process supervisors.
    Returns server status, database connectivity, and version info.
    """
    status = {
        "status": "healthy",
        "version": current_app.config['VERSION'],
        "environment": "production" if not current_app.config['DEBUG'] else "development",
        "database": "unknown"
    }

    conn = None
    try:
        conn = get_db_connection(current_app.config['DATABASE_PATH'])
        conn.execute("SELECT 1 FROM users LIMIT 1").fetchone()
        status["database"] = "connected"
    except sqlite3.Error as e:
        status["status"] = "degraded"
        status["database"] = f"error: {str(e)}"
        logger.error(f"Health check - Database error: {e}")
    finally:
        if conn is not None:
            conn.close()

    http_code = 200 if status["status"] == "healthy" else 503
    return jsonify(status), http_code


@api.route('', methods=['GET'])
@api.route('/', methods=['GET'])
def api_index():
    return jsonify({
        "name": "Online Teaching ERP API",
        "version": current_app.config['VERSION'],
        "endpoints": {
            "auth": "/api/auth",
            "users": "/api/users",
            "sessions": "/api/sessions",
            "attendance": "/api/attendance",
            "courses": "/api/courses",
            "health": "/api/health"
        }
    })


# =================================================================
#   AUTH API ENDPOINTS
# =================================================================

@api.route('/auth/register', methods=['POST'])
def register():
    data = _json_body()
    # Administrators are created by an administrator, never by self-registration
    if Role.parse(data.get('role')) is Role.ADMIN:
        logger.warning(f"Registration rejected - admin role requested for {data.get('email')}")
        raise ValidationError('Cannot self-register as admin', error='invalid_role')

    user = users.create_user(get_db(), data, allowed_roles=(Role.STUDENT, Role.TEACHER))
    return jsonify({
        "message": "User registered successfully",
        "user": users.serialize_user(user),
        "token": create_token(user)
    }), 201


@api.route('/auth/login', methods=['POST'])
@limiter.limit(Config.RATE_LIMIT_LOGIN)
def login():
    data = _json_body()
    user = users.authenticate(get_db(), data.get('email'), data.get('password'))
    logger.info(f"Login successful - UserID: {user['id']}, Role: {user['role']}")
    return jsonify({
        "message": "Login successful",
        "user": users.serialize_user(user),
        "token": create_token(user)
    })


@api.route('/auth/profile', methods=['GET'])
@token_required
def get_profile(actor):
    user = users.get_user(get_db(), actor.user_id)
    return jsonify({"user": users.serialize_user(user)})


@api.route('/auth/profile', methods=['PUT'])
@token_required
def update_profile(actor):
    user = users.update_profile(get_db(), actor.user_id, _json_body())
    return jsonify({"message": "Profile updated successfully", "user": users.serialize_user(user)})


@api.route('/auth/change-password', methods=['PUT'])
@token_required
def change_password(actor):
    data = _json_body()
    users.change_password(get_db(), actor.user_id, data.get('currentPassword'), data.get('newPassword'))
    return jsonify({"message": "Password changed successfully"})


@api.route('/auth/verify', methods=['GET'])
@token_required
def verify_token(actor):
    user = users.get_user(get_db(), actor.user_id)
    return jsonify({"valid": True, "user": users.serialize_user(user)})


# =================================================================
#   USER ADMINISTRATION API ENDPOINTS
# =================================================================

@api.route('/users', methods=['GET', 'POST'])
@token_required
@roles_required(Role.ADMIN)
def manage_users(actor):
    conn = get_db()
    if request.method == 'POST':
        user = users.create_user(conn, _json_body())
        return jsonify({"message": "User created successfully", "user": users.serialize_user(user)}), 201

    rows = users.list_users(conn, request.args.get('role'))
    return jsonify({"users": [users.serialize_user(r) for r in rows], "count": len(rows)})


@api.route('/users/stats', methods=['GET'])
@token_required
@roles_required(Role.ADMIN)
def user_stats(actor):
    return jsonify({"stats": users.get_stats(get_db())})


@api.route('/users/students', methods=['GET'])
@token_required
@roles_required(Role.TEACHER, Role.ADMIN)
def list_students(actor):
    rows = users.list_users(get_db(), Role.STUDENT)
    return jsonify({"students": [users.serialize_user(r) for r in rows], "count": len(rows)})


@api.route('/users/<int:user_id>', methods=['GET', 'PUT', 'DELETE'])
@token_required
@roles_required(Role.ADMIN)
def manage_single_user(actor, user_id):
    conn = get_db()
    if request.method == 'PUT':
        user = users.update_user(conn, user_id, _json_body())
        return jsonify({"message": "User updated successfully", "user": users.serialize_user(user)})
    if request.method == 'DELETE':
        users.delete_user(conn, user_id, actor)
        return jsonify({"message": "User deleted successfully"})
    return jsonify({"user": users.serialize_user(users.get_user(conn, user_id))})


# =================================================================
#   SESSION API ENDPOINTS
# =================================================================

@api.route('/sessions', methods=['GET'])
@token_required
def list_sessions(actor):
    rows = session_lifecycle.list_sessions(get_db(), actor)
    sessions = [session_lifecycle.serialize_session(r, include_code=can_manage(actor, r['teacher_id']))
                for r in rows]
    return jsonify({"sessions": sessions, "count": len(sessions)})


@api.route('/sessions', methods=['POST'])
@token_required
@roles_required(Role.TEACHER, Role.ADMIN)
def create_session(actor):
    session = session_lifecycle.create_session(get_db(), _json_body(), actor)
    return jsonify({
        "message": "Session created successfully",
        "session": session_lifecycle.serialize_session(session)
    }), 201


@api.route('/sessions/live', methods=['GET'])
@token_required
@roles_required(Role.TEACHER, Role.ADMIN)
def live_sessions(actor):
    rows = session_lifecycle.find_live_sessions(get_db(), actor)
    return jsonify({
        "sessions": [session_lifecycle.serialize_session(r) for r in rows],
        "count": len(rows)
    })


@api.route('/sessions/<int:session_id>', methods=['GET'])
@token_required
def get_session(actor, session_id):
    session = session_lifecycle.get_session(get_db(), session_id)
    if actor.role is Role.TEACHER and not can_manage(actor, session['teacher_id']):
        raise Forbidden('You can only view your own sessions')
    return jsonify({
        "session": session_lifecycle.serialize_session(
            session, include_code=can_manage(actor, session['teacher_id']))
    })


@api.route('/sessions/<int:session_id>', methods=['PUT', 'DELETE'])
@token_required
@roles_required(Role.TEACHER, Role.ADMIN)
def manage_single_session(actor, session_id):
    conn = get_db()
    if request.method == 'DELETE':
        session_lifecycle.delete_session(conn, session_id, actor)
        return jsonify({"message": "Session deleted successfully"})

    session = session_lifecycle.update_session(conn, session_id, _json_body(), actor)
    return jsonify({
        "message": "Session updated successfully",
        "session": session_lifecycle.serialize_session(session)
    })


@api.route('/sessions/<int:session_id>/join', methods=['POST'])
@token_required
@roles_required(Role.STUDENT, Role.ADMIN)
def join_session(actor, session_id):
    attendance, session = attendance_recorder.join_session(
        get_db(), session_id, actor.user_id,
        early_minutes=current_app.config['JOIN_EARLY_MINUTES'],
        late_minutes=current_app.config['JOIN_LATE_MINUTES']
    )
    return jsonify({
        "message": "Successfully joined session",
        "attendance": dict(attendance),
        "session": _session_preview(session),
        "redirect_url": session['meeting_link']
    })


@api.route('/sessions/<int:session_id>/start-live', methods=['POST'])
@token_required
@roles_required(Role.TEACHER, Role.ADMIN)
def start_live_session(actor, session_id):
    code = _json_body().get('attendanceCode')
    session = session_lifecycle.start_live_session(get_db(), session_id, code, actor)
    return jsonify({
        "message": "Live session started successfully",
        "session": session_lifecycle.serialize_session(session),
        "attendanceCode": session['attendance_code']
    })


@api.route('/sessions/<int:session_id>/end-live', methods=['POST'])
@token_required
@roles_required(Role.TEACHER, Role.ADMIN)
def end_live_session(actor, session_id):
    session = session_lifecycle.end_live_session(get_db(), session_id, actor)
    return jsonify({
        "message": "Live session ended successfully",
        "session": session_lifecycle.serialize_session(session)
    })


# =================================================================
#   ATTENDANCE API ENDPOINTS
# =================================================================

@api.route('/attendance/checkin', methods=['POST'])
@limiter.limit(Config.RATE_LIMIT_CHECKIN)
@token_required
@roles_required(Role.STUDENT)
def check_in(actor):
    data = _json_body()
    validate_required_fields(data, ['sessionId', 'attendanceCode'])
    session_id = _as_int(data['sessionId'], 'sessionId')

    attendance, session = attendance_recorder.check_in_with_code(
        get_db(), session_id, str(data['attendanceCode']), actor.user_id
    )
    return jsonify({
        "message": "Successfully checked in",
        "attendance": dict(attendance),
        "session": _session_preview(session)
    }), 201


@api.route('/attendance/verify-code', methods=['POST'])
@token_required
def verify_code(actor):
    data = _json_body()
    validate_required_fields(data, ['attendanceCode'])

    session = session_lifecycle.find_by_attendance_code(get_db(), str(data['attendanceCode']))
    if not session:
        raise NotFound('No active session found with this attendance code', error='invalid_code')

    return jsonify({
        "message": "Attendance code verified",
        "valid": True,
        "session": {
            "id": session['id'],
            "title": session['title'],
            "description": session['description'],
            "date_time": session['date_time'],
            "teacher_name": session['teacher_name']
        }
    })


@api.route('/attendance/mark', methods=['POST'])
@token_required
@roles_required(Role.TEACHER, Role.ADMIN)
def mark_attendance(actor):
    data = _json_body()
    validate_required_fields(data, ['sessionId', 'studentId'])

    attendance = attendance_recorder.record_manual_mark(
        get_db(),
        _as_int(data['sessionId'], 'sessionId'),
        _as_int(data['studentId'], 'studentId'),
        data.get('status', 'present'),
        actor
    )
    return jsonify({"message": "Attendance marked successfully", "attendance": dict(attendance)}), 201


@api.route('/attendance/<int:attendance_id>/status', methods=['PUT'])
@token_required
@roles_required(Role.TEACHER, Role.ADMIN)
def update_attendance_status(actor, attendance_id):
    attendance = attendance_recorder.update_status(
        get_db(), attendance_id, _json_body().get('status'), actor
    )
    return jsonify({"message": "Attendance status updated successfully", "attendance": dict(attendance)})


@api.route('/attendance/session/<int:session_id>', methods=['GET'])
@token_required
@roles_required(Role.TEACHER, Role.ADMIN)
def session_attendance(actor, session_id):
    session, rows = attendance_recorder.find_by_session(get_db(), session_id, actor)
    return jsonify({
        "sessionId": session['id'],
        "attendance": [dict(r) for r in rows],
        "totalAttendees": len(rows)
    })


@api.route('/attendance/session/<int:session_id>/export', methods=['GET'])
@token_required
@roles_required(Role.TEACHER, Role.ADMIN)
def export_session_attendance(actor, session_id):
    """Generates a .xlsx Excel file of one session's attendance and sends it for download."""
    session, rows = attendance_recorder.find_by_session(get_db(), session_id, actor)
    logger.info(f"Excel export - SessionID: {session['id']}, Rows: {len(rows)}")

    in_memory_file = analytics.build_attendance_workbook(session, rows)
    return send_file(
        in_memory_file,
        as_attachment=True,
        download_name=f"Attendance_Session_{session['id']}_{datetime.date.today()}.xlsx",
        mimetype=analytics.XLSX_MIMETYPE
    )


@api.route('/attendance/student', methods=['GET'])
@api.route('/attendance/student/<int:student_id>', methods=['GET'])
@token_required
def student_attendance(actor, student_id=None):
    student_id = attendance_recorder.resolve_student_id(actor, student_id)
    rows = attendance_recorder.find_by_student(get_db(), student_id)
    return jsonify({
        "studentId": student_id,
        "attendance": [dict(r) for r in rows],
        "totalSessions": len(rows)
    })


@api.route('/attendance/student/summary', methods=['GET'])
@api.route('/attendance/student/summary/<int:student_id>', methods=['GET'])
@token_required
def student_summary(actor, student_id=None):
    student_id = attendance_recorder.resolve_student_id(actor, student_id)
    summary = attendance_recorder.get_student_summary(
        get_db(), student_id,
        target_percent=current_app.config['MINIMUM_ATTENDANCE_PERCENTAGE'],
        critical_percent=current_app.config['ATTENDANCE_WARNING_THRESHOLD']
    )
    return jsonify({"studentId": student_id, "summary": summary})


@api.route('/attendance/stats', methods=['GET'])
@token_required
@roles_required(Role.ADMIN)
def attendance_stats(actor):
    return jsonify({"stats": attendance_recorder.get_stats(get_db())})


@api.route('/attendance/teacher', methods=['GET'])
@api.route('/attendance/teacher/<int:teacher_id>', methods=['GET'])
@token_required
@roles_required(Role.TEACHER, Role.ADMIN)
def teacher_report(actor, teacher_id=None):
    teacher_id = attendance_recorder.resolve_teacher_id(actor, teacher_id)
    report = attendance_recorder.get_teacher_report(get_db(), teacher_id)
    return jsonify({"teacherId": teacher_id, "report": report})


# =================================================================
#   COURSE API ENDPOINTS
# =================================================================

@api.route('/courses', methods=['GET'])
@token_required
def list_courses(actor):
    rows = courses.list_courses(get_db(), actor)
    return jsonify({"courses": [courses.serialize_course(r) for r in rows], "count": len(rows)})


@api.route('/courses', methods=['POST'])
@token_required
@roles_required(Role.TEACHER, Role.ADMIN)
def create_course(actor):
    course = courses.create_course(
        get_db(), _json_body(), actor, default_max_students=current_app.config['DEFAULT_MAX_STUDENTS']
    )
    return jsonify({"message": "Course created successfully", "course": courses.serialize_course(course)}), 201


@api.route('/courses/<int:course_id>', methods=['GET'])
@token_required
def get_course(actor, course_id):
    course = courses.get_course(get_db(), course_id)
    if actor.role is Role.TEACHER and not can_manage(actor, course['teacher_id']):
        raise Forbidden('You can only view your own courses')
    return jsonify({"course": courses.serialize_course(course)})


@api.route('/courses/<int:course_id>', methods=['PUT'])
@token_required
@roles_required(Role.TEACHER, Role.ADMIN)
def update_course(actor, course_id):
    course = courses.update_course(get_db(), course_id, _json_body(), actor)
    return jsonify({"message": "Course updated successfully", "course": courses.serialize_course(course)})


@api.route('/courses/<int:course_id>', methods=['DELETE'])
@token_required
@roles_required(Role.ADMIN)
def delete_course(actor, course_id):
    courses.delete_course(get_db(), course_id, actor)
    return jsonify({"message": "Course deleted successfully"})


@api.route('/courses/<int:course_id>/enroll', methods=['POST'])
@token_required
@roles_required(Role.STUDENT)
def enroll_in_course(actor, course_id):
    enrollment = courses.enroll_student(get_db(), actor.user_id, course_id)
    return jsonify({"message": "Successfully enrolled in course", "enrollment": dict(enrollment)}), 201


@api.route('/courses/student/enrolled', methods=['GET'])
@token_required
@roles_required(Role.STUDENT)
def enrolled_courses(actor):
    rows = courses.list_student_courses(get_db(), actor.user_id)
    return jsonify({"courses": [courses.serialize_course(r) for r in rows], "count": len(rows)})


@api.route('/courses/<int:course_id>/students', methods=['GET'])
@token_required
@roles_required(Role.TEACHER, Role.ADMIN)
def course_students(actor, course_id):
    course, rows = courses.list_course_students(get_db(), course_id, actor)
    return jsonify({
        "course": courses.serialize_course(course),
        "students": [dict(r) for r in rows],
        "count": len(rows)
    })


@api.route('/courses/<int:course_id>/sessions', methods=['GET'])
@token_required
def course_sessions(actor, course_id):
    course, rows = courses.list_course_sessions(get_db(), course_id, actor)
    return jsonify({
        "course": courses.serialize_course(course),
        "sessions": [dict(r, is_live=bool(r['is_live'])) for r in rows],
        "count": len(rows)
    })


@api.route('/courses/<int:course_id>/sessions/<int:session_id>/attendance', methods=['POST'])
@token_required
@roles_required(Role.TEACHER, Role.ADMIN)
def mark_course_attendance(actor, course_id, session_id):
    counts = courses.mark_course_attendance(
        get_db(), course_id, session_id, _json_body().get('attendanceData'), actor
    )
    return jsonify({
        "message": "Attendance marked successfully",
        "markedCount": sum(counts.values()),
        "counts": counts
    })


@api.route('/courses/notifications', methods=['GET'])
@token_required
@roles_required(Role.TEACHER, Role.ADMIN)
def notifications(actor):
    rows = courses.list_notifications(get_db(), actor.user_id)
    return jsonify({
        "notifications": [dict(r, is_read=bool(r['is_read'])) for r in rows],
        "unread": sum(1 for r in rows if not r['is_read'])
    })


@api.route('/courses/notifications/<int:notification_id>/read', methods=['PATCH'])
@token_required
@roles_required(Role.TEACHER, Role.ADMIN)
def mark_notification_read(actor, notification_id):
    notification = courses.mark_notification_read(get_db(), notification_id, actor)
    return jsonify({"message": "Notification marked as read",
                    "notification": dict(notification, is_read=True)})


# =================================================================
#   Middleware & Error Handlers
# =================================================================

def register_middleware(app):
    # --- Security Headers Middleware ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'SAMEORIGIN'
        response.headers['X-XSS-Protection'] = '1; mode=block'
        response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'
        # Only add HSTS in production
        if not current_app.config['DEBUG']:
            response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'
        return response

    # --- Request/Response Logging Middleware ---
    @app.before_request
    def log_request_info():
        """Log every incoming request with method, path, and client IP."""
        if request.path == '/api/health':
            return
        g.request_started = time.time()
        logger.info(f"[REQUEST] {request.method} {request.path} - Client: {request.remote_addr}")

    @app.after_request
    def log_response_info(response):
        """Log response status and time taken for non-200 or slow requests."""
        started = g.get('request_started')
        if started is None:
            return response
        duration = (time.time() - started) * 1000  # ms
        if response.status_code != 200 or duration > 500:
            logger.info(f"[RESPONSE] {request.method} {request.path} - Status: {response.status_code} - {duration:.0f}ms")
        return response

    app.teardown_appcontext(close_db)


def register_error_handlers(app):
    @app.errorhandler(AppError)
    def handle_app_error(e):
        if e.status_code in (401, 403):
            logger.warning(f"{e.error} - {request.method} {request.path}: {e.message}")
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(404)
    def handle_not_found(e):
        return jsonify({"error": "not_found", "message": "The requested endpoint does not exist"}), 404

    @app.errorhandler(405)
    def handle_method_not_allowed(e):
        return jsonify({"error": "method_not_allowed",
                        "message": f"Method {request.method} is not allowed for this endpoint"}), 405

    @app.errorhandler(429)
    def handle_rate_limited(e):
        logger.warning(f"Rate limit hit - {request.method} {request.path} - Client: {request.remote_addr}")
        return jsonify({"error": "rate_limited", "message": f"Too many requests: {e.description}"}), 429

    @app.errorhandler(Exception)
    def handle_unexpected_error(e):
        if isinstance(e, HTTPException):
            return jsonify({"error": e.name.lower().replace(' ', '_'), "message": e.description}), e.code

        logger.error(f"Unhandled error on {request.method} {request.path}: {e}", exc_info=True)
        conn = g.get('db')
        if conn is not None and conn.in_transaction:
            conn.rollback()
        message = str(e) if current_app.config['DEBUG'] else 'An unexpected error occurred'
        return jsonify({"error": "internal_error", "message": message}), 500


def init_database(app):
    """
    Applies the schema and makes sure an administrator exists.

    A database that cannot be opened is fatal: the error is logged and
    re-raised so the process exits and its supervisor restarts it.
    """
    conn = None
    try:
        conn = get_db_connection(app.config['DATABASE_PATH'])
        init_schema(conn)
        if create_default_admin(conn, app.config['ADMIN_DEFAULT_EMAIL'], app.config['ADMIN_DEFAULT_PASSWORD']):
            logger.warning(f"Default admin created ({app.config['ADMIN_DEFAULT_EMAIL']}) - change its password")
    except sqlite3.Error as e:
        logger.critical(f"Database unavailable at {app.config['DATABASE_PATH']}: {e}", exc_info=True)
        raise
    finally:
        if conn is not None:
            conn.close()


# =================================================================
#   App Factory
# =================================================================

def create_app(config_object=None, **overrides):
    app = Flask(__name__)
    app.config.from_object(config_object or Config)
    app.config.update(overrides)

    configure_logging(app.config)

    # --- CORS: Allow configured cross-origin requests ---
    CORS(app, resources={r"/api/*": {"origins": app.config['CORS_ORIGINS']}})
    limiter.init_app(app)

    init_database(app)
    register_middleware(app)
    register_error_handlers(app)
    app.register_blueprint(api)

    logger.info(f"Online Teaching ERP v{app.config['VERSION']} ready - Database: {app.config['DATABASE_PATH']}")
    return app


# =================================================================
#   Server Startup
# =================================================================

if __name__ == '__main__':
    app = create_app()
    # host='0.0.0.0' makes the server accessible from other devices on your network
    app.run(host=app.config['HOST'], port=app.config['PORT'], debug=app.config['DEBUG'],
            threaded=True, use_reloader=False, request_handler=TimedRequestHandler)
