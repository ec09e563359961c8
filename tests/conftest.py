import datetime

import pytest

import users
from access_guard import Actor, Role
from config import TestingConfig
from database_setup import get_db_connection
from server import create_app, create_token
from timeutil import to_db, utc_now

PASSWORD = 'password123'

ADMIN_EMAIL = 'admin@erp.com'
SEED_USERS = [
    ('Tina Teacher', 'teacher@erp.com', 'teacher'),
    ('Otto Other', 'teacher2@erp.com', 'teacher'),
    ('Sam Student', 'student@erp.com', 'student'),
    ('Bea Student', 'student2@erp.com', 'student'),
]


@pytest.fixture(scope='session')
def password_hash():
    return users.hash_password(PASSWORD)


@pytest.fixture
def app(tmp_path, password_hash):
    db_path = str(tmp_path / 'erp_test.db')
    app = create_app(
        TestingConfig,
        DATABASE_PATH=db_path,
        ADMIN_DEFAULT_EMAIL=ADMIN_EMAIL,
        ADMIN_DEFAULT_PASSWORD=PASSWORD,
    )

    conn = get_db_connection(db_path)
    conn.executemany(
        "INSERT INTO users (name, email, password_hash, role) VALUES (?, ?, ?, ?)",
        [(name, email, password_hash, role) for name, email, role in SEED_USERS]
    )
    conn.commit()
    conn.close()
    yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def conn(app):
    connection = get_db_connection(app.config['DATABASE_PATH'])
    yield connection
    connection.close()


@pytest.fixture
def people(conn):
    """Seeded users keyed by a short name."""
    def by_email(email):
        return conn.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
    return {
        'admin': by_email(ADMIN_EMAIL),
        'teacher': by_email('teacher@erp.com'),
        'teacher2': by_email('teacher2@erp.com'),
        'student': by_email('student@erp.com'),
        'student2': by_email('student2@erp.com'),
    }


@pytest.fixture
def actors(people):
    return {key: Actor(row['id'], row['email'], Role(row['role'])) for key, row in people.items()}


@pytest.fixture
def headers(app, people):
    """headers('teacher') -> Authorization header for that seeded user."""
    def _headers(key):
        with app.app_context():
            token = create_token(people[key])
        return {'Authorization': f'Bearer {token}'}
    return _headers


@pytest.fixture
def make_session(conn):
    """Inserts a session row directly, so tests can place it anywhere in time."""
    def _make(teacher_id, date_time=None, title='Algebra I', course_id=None):
        date_time = date_time or utc_now() + datetime.timedelta(hours=1)
        cursor = conn.execute(
            """INSERT INTO sessions (title, description, date_time, meeting_link, teacher_id, course_id)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (title, 'Weekly lecture', to_db(date_time), 'https://meet.example.com/abc', teacher_id, course_id)
        )
        conn.commit()
        return cursor.lastrowid
    return _make
