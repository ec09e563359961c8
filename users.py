# =================================================================
#   Online Teaching ERP - Users
#   Password hashing, input validation and user CRUD queries.
# =================================================================

import re
import sqlite3
import logging

import bcrypt

from access_guard import Role
from errors import AlreadyExists, BusinessRuleError, NotFound, Unauthorized, ValidationError

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')

PUBLIC_FIELDS = ('id', 'name', 'email', 'role', 'phone', 'address', 'bio', 'created_at', 'updated_at')


# --- Password Hashing Helpers (bcrypt) ---
def hash_password(password):
    """Hash a password using bcrypt."""
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')


def verify_password(password, hashed):
    """Verify a password against a stored bcrypt hash."""
    if not password or not hashed:
        return False
    try:
        return bcrypt.checkpw(password.encode('utf-8'), hashed.encode('utf-8'))
    except ValueError:
        # Malformed hash in the store
        logger.warning("Password check failed - stored hash is not a bcrypt hash")
        return False


# --- Input Validation Helpers ---
def _validate_name(name, errors, required=True):
    if name is None:
        if required:
            errors.append('Name is required and must be a non-empty string')
        return
    if not isinstance(name, str) or not name.strip():
        errors.append('Name is required and must be a non-empty string')
    elif len(name.strip()) < 2:
        errors.append('Name must be at least 2 characters long')
    elif len(name.strip()) > 100:
        errors.append('Name must be less than 100 characters long')


def _validate_email(email, errors, required=True):
    if email is None:
        if required:
            errors.append('Email is required and must be a string')
        return
    if not isinstance(email, str):
        errors.append('Email is required and must be a string')
    elif not EMAIL_RE.match(email.strip()):
        errors.append('Please provide a valid email address')


def _validate_password(password, errors, required=True):
    if password is None:
        if required:
            errors.append('Password is required')
        return
    if not isinstance(password, str):
        errors.append('Password must be a string')
    elif len(password) < 6:
        errors.append('Password must be at least 6 characters long')
    elif len(password) > 128:
        errors.append('Password must be less than 128 characters long')


def _validate_role(role, errors, allowed=tuple(Role)):
    if role is None:
        return None
    parsed = Role.parse(role)
    if parsed is None or parsed not in allowed:
        errors.append('Role must be one of: ' + ', '.join(r.value for r in allowed))
        return None
    return parsed


def _raise_if(errors):
    if errors:
        raise ValidationError('Please check your input data', details=errors)


def serialize_user(row):
    if row is None:
        return None
    data = dict(row)
    return {field: data.get(field) for field in PUBLIC_FIELDS if field in data}


# --- Queries ---
def find_by_id(conn, user_id):
    return conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()


def find_by_email(conn, email):
    return conn.execute("SELECT * FROM users WHERE email = ?", (email.strip().lower(),)).fetchone()


def get_user(conn, user_id):
    user = find_by_id(conn, user_id)
    if not user:
        raise NotFound('User with the specified ID does not exist')
    return user


def list_users(conn, role=None):
    if role is not None:
        parsed = Role.parse(role)
        if parsed is None:
            raise ValidationError('Role must be one of: admin, teacher, student')
        return conn.execute(
            "SELECT * FROM users WHERE role = ? ORDER BY name ASC", (parsed.value,)
        ).fetchall()
    return conn.execute("SELECT * FROM users ORDER BY created_at DESC, id DESC").fetchall()


def create_user(conn, data, allowed_roles=tuple(Role)):
    """Validates and inserts a user. Returns the new row."""
    data = data or {}
    errors = []
    _validate_name(data.get('name'), errors)
    _validate_email(data.get('email'), errors)
    _validate_password(data.get('password'), errors)
    role = _validate_role(data.get('role'), errors, allowed_roles) or Role.STUDENT
    _raise_if(errors)

    name = data['name'].strip()
    email = data['email'].strip().lower()
    if find_by_email(conn, email):
        raise AlreadyExists('A user with this email already exists')

    try:
        cursor = conn.execute(
            "INSERT INTO users (name, email, password_hash, role) VALUES (?, ?, ?, ?)",
            (name, email, hash_password(data['password']), role.value)
        )
        conn.commit()
    except sqlite3.IntegrityError:
        conn.rollback()
        raise AlreadyExists('A user with this email already exists')

    logger.info(f"User created - ID: {cursor.lastrowid}, Email: {email}, Role: {role.value}")
    return find_by_id(conn, cursor.lastrowid)


def authenticate(conn, email, password):
    """Returns the user row for valid credentials, raises Unauthorized otherwise."""
    errors = []
    _validate_email(email, errors)
    if not isinstance(password, str) or not password:
        errors.append('Password is required and must be a string')
    _raise_if(errors)

    user = find_by_email(conn, email)
    if not user or not verify_password(password, user['password_hash']):
        logger.warning(f"Login failed - Invalid credentials for email: {email}")
        raise Unauthorized('Email or password is incorrect', error='invalid_credentials')
    return user


def update_user(conn, user_id, data):
    """Admin edit: name, email, role and password. Missing keys are left alone."""
    data = data or {}
    get_user(conn, user_id)

    errors = []
    _validate_name(data.get('name'), errors, required=False)
    _validate_email(data.get('email'), errors, required=False)
    _validate_password(data.get('password'), errors, required=False)
    role = _validate_role(data.get('role'), errors)
    _raise_if(errors)

    fields = {}
    if data.get('name') is not None:
        fields['name'] = data['name'].strip()
    if data.get('email') is not None:
        email = data['email'].strip().lower()
        other = find_by_email(conn, email)
        if other and other['id'] != int(user_id):
            raise AlreadyExists('A user with this email already exists')
        fields['email'] = email
    if role is not None:
        fields['role'] = role.value
    if data.get('password') is not None:
        fields['password_hash'] = hash_password(data['password'])

    _apply_update(conn, user_id, fields)
    logger.info(f"User updated - ID: {user_id}, Fields: {sorted(fields)}")
    return find_by_id(conn, user_id)


def update_profile(conn, user_id, data):
    """Self-service profile edit. Role and email are not editable here."""
    data = data or {}
    get_user(conn, user_id)

    errors = []
    _validate_name(data.get('name'), errors, required=False)
    for key in ('phone', 'address', 'bio'):
        if data.get(key) is not None and not isinstance(data[key], str):
            errors.append(f"Field '{key}' must be a string")
    _raise_if(errors)

    fields = {}
    if data.get('name') is not None:
        fields['name'] = data['name'].strip()
    for key in ('phone', 'address', 'bio'):
        if key in data:
            fields[key] = data[key].strip() if isinstance(data[key], str) else None

    _apply_update(conn, user_id, fields)
    return find_by_id(conn, user_id)


def change_password(conn, user_id, current_password, new_password):
    user = get_user(conn, user_id)
    if not current_password or not new_password:
        raise ValidationError('Current password and new password are required')
    errors = []
    _validate_password(new_password, errors)
    _raise_if(errors)
    if not verify_password(current_password, user['password_hash']):
        raise BusinessRuleError('Current password is incorrect', error='invalid_current_password')

    _apply_update(conn, user_id, {'password_hash': hash_password(new_password)})
    logger.info(f"Password changed - UserID: {user_id}")


def delete_user(conn, user_id, actor):
    get_user(conn, user_id)
    if int(user_id) == actor.user_id:
        raise BusinessRuleError('You cannot delete your own account', error='cannot_delete_self')
    conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
    conn.commit()
    logger.info(f"User deleted - ID: {user_id}, By: {actor.user_id}")


def get_stats(conn):
    row = conn.execute("""
        SELECT
            COUNT(*) AS total_users,
            COUNT(CASE WHEN role = 'student' THEN 1 END) AS total_students,
            COUNT(CASE WHEN role = 'teacher' THEN 1 END) AS total_teachers,
            COUNT(CASE WHEN role = 'admin' THEN 1 END) AS total_admins
        FROM users
    """).fetchone()
    return dict(row)


def _apply_update(conn, user_id, fields):
    if not fields:
        return
    # Column names come from the fixed keys above, never from the request.
    assignments = ', '.join(f"{column} = ?" for column in fields)
    try:
        conn.execute(
            f"UPDATE users SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            list(fields.values()) + [user_id]
        )
        conn.commit()
    except sqlite3.IntegrityError:
        conn.rollback()
        raise AlreadyExists('A user with this email already exists')
