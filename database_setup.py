import os
import sqlite3
import logging
from contextlib import contextmanager
from dotenv import load_dotenv

# =================================================================
#   Online Teaching ERP - Database Setup
#   - Opens request connections with foreign keys enforced.
#   - Creates the schema (idempotent, CREATE ... IF NOT EXISTS).
#   - Adds a default administrator for first-time login.
# =================================================================

# Load environment variables
load_dotenv(os.path.join(os.path.dirname(os.path.abspath(__file__)), '.env'))

logger = logging.getLogger(__name__)


SCHEMA = [
    # 1. Users: one table for all three roles.
    """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        email TEXT UNIQUE NOT NULL,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'student' CHECK (role IN ('admin', 'teacher', 'student')),
        phone TEXT,
        address TEXT,
        bio TEXT,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )
    """,
    # 2. Courses: owned by a teacher, capacity enforced at enrollment time.
    """
    CREATE TABLE IF NOT EXISTS courses (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        title TEXT NOT NULL,
        description TEXT,
        course_code TEXT UNIQUE NOT NULL,
        teacher_id INTEGER NOT NULL,
        max_students INTEGER NOT NULL DEFAULT 50,
        start_date TEXT,
        end_date TEXT,
        is_active BOOLEAN NOT NULL DEFAULT 1,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (teacher_id) REFERENCES users (id) ON DELETE CASCADE
    )
    """,
    # 3. Sessions: attendance_code is set exactly while the session is live.
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        title TEXT NOT NULL,
        description TEXT NOT NULL,
        date_time DATETIME NOT NULL,
        meeting_link TEXT NOT NULL,
        recording_link TEXT,
        teacher_id INTEGER NOT NULL,
        course_id INTEGER,
        attendance_code TEXT,
        is_live BOOLEAN NOT NULL DEFAULT 0,
        session_ended_at DATETIME,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        CHECK ((is_live = 1 AND attendance_code IS NOT NULL) OR (is_live = 0 AND attendance_code IS NULL)),
        FOREIGN KEY (teacher_id) REFERENCES users (id) ON DELETE CASCADE,
        FOREIGN KEY (course_id) REFERENCES courses (id) ON DELETE SET NULL
    )
    """,
    # 4. Attendance: at most one row per (session, student).
    """
    CREATE TABLE IF NOT EXISTS attendance (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id INTEGER NOT NULL,
        student_id INTEGER NOT NULL,
        status TEXT NOT NULL DEFAULT 'present' CHECK (status IN ('present', 'absent', 'late')),
        check_in_method TEXT NOT NULL DEFAULT 'manual',
        timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (session_id, student_id),
        FOREIGN KEY (session_id) REFERENCES sessions (id) ON DELETE CASCADE,
        FOREIGN KEY (student_id) REFERENCES users (id) ON DELETE CASCADE
    )
    """,
    # 5. Enrollments: junction between students and courses.
    """
    CREATE TABLE IF NOT EXISTS enrollments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        student_id INTEGER NOT NULL,
        course_id INTEGER NOT NULL,
        status TEXT NOT NULL DEFAULT 'active',
        enrollment_date DATETIME DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (student_id, course_id),
        FOREIGN KEY (student_id) REFERENCES users (id) ON DELETE CASCADE,
        FOREIGN KEY (course_id) REFERENCES courses (id) ON DELETE CASCADE
    )
    """,
    # 6. Notifications: enrollment alerts for teachers.
    """
    CREATE TABLE IF NOT EXISTS notifications (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        teacher_id INTEGER NOT NULL,
        student_id INTEGER,
        course_id INTEGER,
        type TEXT NOT NULL,
        title TEXT NOT NULL,
        message TEXT NOT NULL,
        is_read BOOLEAN NOT NULL DEFAULT 0,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (teacher_id) REFERENCES users (id) ON DELETE CASCADE,
        FOREIGN KEY (student_id) REFERENCES users (id) ON DELETE CASCADE,
        FOREIGN KEY (course_id) REFERENCES courses (id) ON DELETE CASCADE
    )
    """,
]

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_users_role ON users (role)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_teacher_id ON sessions (teacher_id)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_date_time ON sessions (date_time)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_attendance_code ON sessions (attendance_code)",
    "CREATE INDEX IF NOT EXISTS idx_attendance_student_id ON attendance (student_id)",
    "CREATE INDEX IF NOT EXISTS idx_attendance_timestamp ON attendance (timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_enrollments_course_id ON enrollments (course_id)",
    "CREATE INDEX IF NOT EXISTS idx_notifications_teacher_id ON notifications (teacher_id)",
]


def get_db_connection(db_path):
    """Opens a connection to the SQLite database."""
    # check_same_thread=False: the connection is created and closed inside one
    # request, but Flask may hand the teardown to a different thread.
    conn = sqlite3.connect(db_path, check_same_thread=False)
    # Rows accessible by column name.
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def transaction(conn):
    """
    Runs the block inside one write transaction.

    BEGIN IMMEDIATE takes SQLite's write lock up front, so a
    check-then-insert inside the block cannot interleave with another
    writer. Rolls back and re-raises on any error.
    """
    if conn.in_transaction:
        conn.commit()
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except Exception:
        conn.rollback()
        raise
    else:
        conn.commit()


def init_schema(conn):
    """Creates all tables and indexes if they do not exist yet."""
    for statement in SCHEMA:
        conn.execute(statement)
    for statement in INDEXES:
        conn.execute(statement)
    conn.commit()


def create_default_admin(conn, email, password):
    """Creates the default administrator when the database has no admin. Returns True if created."""
    from users import hash_password

    count = conn.execute("SELECT COUNT(*) AS c FROM users WHERE role = 'admin'").fetchone()['c']
    if count:
        return False
    conn.execute(
        "INSERT INTO users (name, email, password_hash, role) VALUES (?, ?, ?, 'admin')",
        ('System Administrator', email.strip().lower(), hash_password(password))
    )
    conn.commit()
    logger.info(f"Default admin user created - Email: {email}")
    return True


def setup_database(db_path=None):
    """
    Connects to the database, creates all tables with the final schema and
    adds a default admin user if none exists.
    """
    db_path = db_path or os.environ.get('DATABASE_PATH', 'teaching_erp.db')
    admin_email = os.environ.get('ADMIN_DEFAULT_EMAIL', 'admin@erp.com')
    admin_password = os.environ.get('ADMIN_DEFAULT_PASSWORD', 'admin123')

    connection = None
    try:
        connection = get_db_connection(db_path)
        print("--- Creating tables...")
        init_schema(connection)
        print("All tables created successfully.")

        print("\n--- Checking for an administrator...")
        if create_default_admin(connection, admin_email, admin_password):
            print("Default admin user created successfully.")
            print(f"  Email: {admin_email}")
            print(f"  Password: {admin_password}")
            print("  ⚠️  CHANGE THIS PASSWORD IMMEDIATELY after first login!")
        else:
            print("Admin user already exists.")
    except sqlite3.Error as e:
        print(f"An error occurred: {e}")
        raise
    finally:
        if connection:
            connection.close()
            print("Database connection closed.")


if __name__ == '__main__':
    print("Starting database setup...")
    setup_database()
    print("\nDatabase setup complete.")
