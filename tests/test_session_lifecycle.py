import datetime

import pytest

import session_lifecycle
from errors import Forbidden, NotFound, ValidationError
from timeutil import utc_now


def _payload(**overrides):
    payload = {
        'title': 'Linear Algebra',
        'description': 'Eigenvalues and eigenvectors',
        'date_time': (utc_now() + datetime.timedelta(days=1)).isoformat(),
        'meeting_link': 'https://meet.example.com/la',
    }
    payload.update(overrides)
    return payload


def test_create_session_is_scheduled(conn, actors):
    session = session_lifecycle.create_session(conn, _payload(), actors['teacher'])

    assert session['teacher_id'] == actors['teacher'].user_id
    assert session['teacher_name'] == 'Tina Teacher'
    assert session_lifecycle.session_state(session) == session_lifecycle.STATE_SCHEDULED
    assert session['attendance_code'] is None


def test_create_session_collects_all_errors(conn, actors):
    past = (utc_now() - datetime.timedelta(hours=1)).isoformat()
    with pytest.raises(ValidationError) as exc:
        session_lifecycle.create_session(
            conn, _payload(title='', date_time=past, meeting_link='ftp://nope'), actors['teacher']
        )
    assert len(exc.value.details) == 3


def test_admin_creates_for_teacher(conn, actors):
    session = session_lifecycle.create_session(
        conn, _payload(teacher_id=actors['teacher'].user_id), actors['admin']
    )
    assert session['teacher_id'] == actors['teacher'].user_id


@pytest.mark.parametrize('field, value', [
    ('teacher_id', [1]),
    ('teacher_id', '2'),
    ('course_id', {'id': 1}),
])
def test_create_session_rejects_non_integer_ids(conn, actors, field, value):
    with pytest.raises(ValidationError):
        session_lifecycle.create_session(conn, _payload(**{field: value}), actors['admin'])


def test_start_then_find_then_end(conn, actors, make_session):
    session_id = make_session(actors['teacher'].user_id)

    live = session_lifecycle.start_live_session(conn, session_id, 'ABC123', actors['teacher'])
    assert live['is_live'] == 1
    assert live['attendance_code'] == 'ABC123'
    assert session_lifecycle.session_state(live) == session_lifecycle.STATE_LIVE
    assert session_lifecycle.find_by_attendance_code(conn, 'ABC123')['id'] == session_id

    ended = session_lifecycle.end_live_session(conn, session_id, actors['teacher'])
    assert ended['is_live'] == 0
    assert ended['attendance_code'] is None
    assert ended['session_ended_at'] is not None
    assert session_lifecycle.session_state(ended) == session_lifecycle.STATE_ENDED
    assert session_lifecycle.find_by_attendance_code(conn, 'ABC123') is None


def test_code_lookup_is_exact(conn, actors, make_session):
    session_id = make_session(actors['teacher'].user_id)
    session_lifecycle.start_live_session(conn, session_id, 'AbC123', actors['teacher'])

    assert session_lifecycle.find_by_attendance_code(conn, 'abc123') is None
    assert session_lifecycle.find_by_attendance_code(conn, 'AbC123')['id'] == session_id


def test_restart_overwrites_code(conn, actors, make_session):
    session_id = make_session(actors['teacher'].user_id)
    session_lifecycle.start_live_session(conn, session_id, 'FIRST1', actors['teacher'])
    session_lifecycle.start_live_session(conn, session_id, 'SECOND', actors['teacher'])

    assert session_lifecycle.find_by_attendance_code(conn, 'FIRST1') is None
    assert session_lifecycle.find_by_attendance_code(conn, 'SECOND')['id'] == session_id


def test_ended_session_can_go_live_again(conn, actors, make_session):
    session_id = make_session(actors['teacher'].user_id)
    session_lifecycle.start_live_session(conn, session_id, 'ONE111', actors['teacher'])
    session_lifecycle.end_live_session(conn, session_id, actors['teacher'])

    live = session_lifecycle.start_live_session(conn, session_id, 'TWO222', actors['teacher'])
    assert session_lifecycle.session_state(live) == session_lifecycle.STATE_LIVE


def test_end_without_being_live(conn, actors, make_session):
    session_id = make_session(actors['teacher'].user_id)
    ended = session_lifecycle.end_live_session(conn, session_id, actors['teacher'])
    assert session_lifecycle.session_state(ended) == session_lifecycle.STATE_ENDED


def test_start_requires_code(conn, actors, make_session):
    session_id = make_session(actors['teacher'].user_id)
    with pytest.raises(ValidationError):
        session_lifecycle.start_live_session(conn, session_id, '  ', actors['teacher'])


def test_unknown_session_is_not_found(conn, actors):
    with pytest.raises(NotFound):
        session_lifecycle.start_live_session(conn, 4242, 'ABC123', actors['admin'])
    with pytest.raises(NotFound):
        session_lifecycle.end_live_session(conn, 4242, actors['admin'])


@pytest.mark.parametrize('operation', ['start', 'end', 'update', 'delete'])
def test_other_teacher_is_forbidden(conn, actors, make_session, operation):
    session_id = make_session(actors['teacher'].user_id)
    intruder = actors['teacher2']
    calls = {
        'start': lambda: session_lifecycle.start_live_session(conn, session_id, 'ABC123', intruder),
        'end': lambda: session_lifecycle.end_live_session(conn, session_id, intruder),
        'update': lambda: session_lifecycle.update_session(conn, session_id, {'title': 'Mine now'}, intruder),
        'delete': lambda: session_lifecycle.delete_session(conn, session_id, intruder),
    }
    with pytest.raises(Forbidden):
        calls[operation]()


def test_admin_is_never_denied(conn, actors, make_session):
    session_id = make_session(actors['teacher'].user_id)
    admin = actors['admin']

    session_lifecycle.start_live_session(conn, session_id, 'ADM001', admin)
    session_lifecycle.end_live_session(conn, session_id, admin)
    updated = session_lifecycle.update_session(conn, session_id, {'title': 'Renamed'}, admin)
    assert updated['title'] == 'Renamed'
    session_lifecycle.delete_session(conn, session_id, admin)
    assert session_lifecycle.find_by_id(conn, session_id) is None


def test_delete_cascades_attendance(conn, actors, make_session):
    session_id = make_session(actors['teacher'].user_id)
    conn.execute("INSERT INTO attendance (session_id, student_id) VALUES (?, ?)",
                 (session_id, actors['student'].user_id))
    conn.commit()

    session_lifecycle.delete_session(conn, session_id, actors['teacher'])
    count = conn.execute("SELECT COUNT(*) FROM attendance WHERE session_id = ?", (session_id,)).fetchone()[0]
    assert count == 0


def test_list_sessions_by_role(conn, actors, make_session):
    now = utc_now()
    mine = make_session(actors['teacher'].user_id, now + datetime.timedelta(hours=2))
    theirs = make_session(actors['teacher2'].user_id, now + datetime.timedelta(hours=3))
    past = make_session(actors['teacher'].user_id, now - datetime.timedelta(days=1))

    def ids(actor):
        return {row['id'] for row in session_lifecycle.list_sessions(conn, actor, now=now)}

    assert ids(actors['admin']) == {mine, theirs, past}
    assert ids(actors['teacher']) == {mine, past}
    assert ids(actors['student']) == {mine, theirs}


def test_find_live_sessions(conn, actors, make_session):
    mine = make_session(actors['teacher'].user_id)
    theirs = make_session(actors['teacher2'].user_id)
    session_lifecycle.start_live_session(conn, mine, 'MINE01', actors['teacher'])
    session_lifecycle.start_live_session(conn, theirs, 'THEIRS', actors['teacher2'])

    assert [r['id'] for r in session_lifecycle.find_live_sessions(conn, actors['teacher'])] == [mine]
    assert len(session_lifecycle.find_live_sessions(conn, actors['admin'])) == 2


def test_serialize_hides_code_when_asked(conn, actors, make_session):
    session_id = make_session(actors['teacher'].user_id)
    live = session_lifecycle.start_live_session(conn, session_id, 'SECRET', actors['teacher'])

    public = session_lifecycle.serialize_session(live, include_code=False)
    assert 'attendance_code' not in public
    assert public['is_live'] is True
    assert public['state'] == 'live'
