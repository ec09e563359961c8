import datetime

import pytest

import attendance_recorder
import session_lifecycle
from errors import Forbidden, InvalidCode, InvalidState, NotFound, ValidationError, WindowClosed
from timeutil import to_db

T = datetime.datetime(2030, 1, 15, 10, 0, 0, tzinfo=datetime.timezone.utc)


def _count(conn, session_id):
    return conn.execute("SELECT COUNT(*) FROM attendance WHERE session_id = ?", (session_id,)).fetchone()[0]


@pytest.fixture
def live_session(conn, actors, make_session):
    session_id = make_session(actors['teacher'].user_id, T)
    session_lifecycle.start_live_session(conn, session_id, 'XYZ999', actors['teacher'])
    return session_id


def test_mark_attendance_upserts(conn, actors, make_session):
    session_id = make_session(actors['teacher'].user_id, T)
    student_id = actors['student'].user_id

    first = attendance_recorder.mark_attendance(conn, session_id, student_id, 'late', now=T)
    second = attendance_recorder.mark_attendance(conn, session_id, student_id, 'present',
                                                 now=T + datetime.timedelta(minutes=5))

    assert first['id'] == second['id']
    assert second['status'] == 'present'
    assert second['timestamp'] == to_db(T + datetime.timedelta(minutes=5))
    assert _count(conn, session_id) == 1


def test_mark_attendance_rejects_bad_status(conn, actors, make_session):
    session_id = make_session(actors['teacher'].user_id, T)
    with pytest.raises(ValidationError):
        attendance_recorder.mark_attendance(conn, session_id, actors['student'].user_id, 'asleep')


def test_check_in_twice_keeps_one_row(conn, actors, live_session):
    student_id = actors['student'].user_id
    later = T + datetime.timedelta(minutes=3)

    attendance_recorder.check_in_with_code(conn, live_session, 'XYZ999', student_id, now=T)
    attendance, _ = attendance_recorder.check_in_with_code(conn, live_session, 'XYZ999', student_id, now=later)

    assert _count(conn, live_session) == 1
    assert attendance['status'] == 'present'
    assert attendance['check_in_method'] == 'code'
    assert attendance['timestamp'] == to_db(later)


def test_check_in_wrong_code(conn, actors, live_session):
    with pytest.raises(InvalidCode):
        attendance_recorder.check_in_with_code(conn, live_session, 'xyz999', actors['student'].user_id)
    assert _count(conn, live_session) == 0


def test_check_in_stale_code_after_end(conn, actors, live_session):
    session_lifecycle.end_live_session(conn, live_session, actors['teacher'])
    with pytest.raises(InvalidState) as exc:
        attendance_recorder.check_in_with_code(conn, live_session, 'XYZ999', actors['student'].user_id)
    assert exc.value.message == 'This session is not currently accepting attendance'
    assert exc.value.status_code == 400


def test_check_in_never_started(conn, actors, make_session):
    session_id = make_session(actors['teacher'].user_id, T)
    with pytest.raises(InvalidState):
        attendance_recorder.check_in_with_code(conn, session_id, 'ANYTHING', actors['student'].user_id)


def test_check_in_unknown_session(conn, actors):
    with pytest.raises(NotFound):
        attendance_recorder.check_in_with_code(conn, 999, 'XYZ999', actors['student'].user_id)


@pytest.mark.parametrize('offset', [
    datetime.timedelta(minutes=-15),
    datetime.timedelta(0),
    datetime.timedelta(hours=1),
    datetime.timedelta(hours=2),
])
def test_join_inside_window(conn, actors, make_session, offset):
    session_id = make_session(actors['teacher'].user_id, T)
    attendance, session = attendance_recorder.join_session(
        conn, session_id, actors['student'].user_id, now=T + offset
    )
    assert attendance['status'] == 'present'
    assert attendance['check_in_method'] == 'join'
    assert session['meeting_link'] == 'https://meet.example.com/abc'


@pytest.mark.parametrize('offset', [
    datetime.timedelta(minutes=-15, seconds=-1),
    datetime.timedelta(hours=-3),
    datetime.timedelta(hours=2, seconds=1),
    datetime.timedelta(days=1),
])
def test_join_outside_window(conn, actors, make_session, offset):
    session_id = make_session(actors['teacher'].user_id, T)
    with pytest.raises(WindowClosed):
        attendance_recorder.join_session(conn, session_id, actors['student'].user_id, now=T + offset)
    assert _count(conn, session_id) == 0


def test_join_does_not_need_live(conn, actors, make_session):
    session_id = make_session(actors['teacher'].user_id, T)
    attendance_recorder.join_session(conn, session_id, actors['student'].user_id, now=T)
    assert session_lifecycle.find_by_id(conn, session_id)['is_live'] == 0


def test_join_respects_configured_window(conn, actors, make_session):
    session_id = make_session(actors['teacher'].user_id, T)
    with pytest.raises(WindowClosed):
        attendance_recorder.join_session(conn, session_id, actors['student'].user_id,
                                         early_minutes=5, now=T - datetime.timedelta(minutes=10))


def test_manual_mark_then_code_check_in(conn, actors, live_session):
    student_id = actors['student'].user_id
    attendance_recorder.record_manual_mark(conn, live_session, student_id, 'absent', actors['teacher'], now=T)
    attendance, _ = attendance_recorder.check_in_with_code(conn, live_session, 'XYZ999', student_id, now=T)

    assert attendance['status'] == 'present'
    assert attendance['check_in_method'] == 'code'
    assert _count(conn, live_session) == 1


def test_manual_mark_checks_owner_and_student(conn, actors, live_session):
    with pytest.raises(Forbidden):
        attendance_recorder.record_manual_mark(
            conn, live_session, actors['student'].user_id, 'present', actors['teacher2'])
    with pytest.raises(NotFound):
        attendance_recorder.record_manual_mark(
            conn, live_session, actors['teacher2'].user_id, 'present', actors['teacher'])


def test_update_status(conn, actors, live_session):
    attendance, _ = attendance_recorder.check_in_with_code(
        conn, live_session, 'XYZ999', actors['student'].user_id, now=T)

    updated = attendance_recorder.update_status(conn, attendance['id'], 'late', actors['teacher'])
    assert updated['status'] == 'late'
    assert updated['timestamp'] == attendance['timestamp']

    with pytest.raises(Forbidden):
        attendance_recorder.update_status(conn, attendance['id'], 'absent', actors['teacher2'])
    with pytest.raises(NotFound):
        attendance_recorder.update_status(conn, 999, 'absent', actors['admin'])


def test_reports(conn, actors, make_session):
    first = make_session(actors['teacher'].user_id, T)
    second = make_session(actors['teacher'].user_id, T + datetime.timedelta(days=1))
    student_id = actors['student'].user_id
    attendance_recorder.mark_attendance(conn, first, student_id, 'present', now=T)
    attendance_recorder.mark_attendance(conn, second, student_id, 'absent', now=T)
    attendance_recorder.mark_attendance(conn, first, actors['student2'].user_id, 'late', now=T)

    history = attendance_recorder.find_by_student(conn, student_id)
    assert [row['session_id'] for row in history] == [second, first]

    report = {row['session_id']: row for row in attendance_recorder.get_teacher_report(conn, actors['teacher'].user_id)}
    assert report[first]['total_attendees'] == 2
    assert report[first]['attendance_rate'] == 50.0
    assert report[second]['absent_count'] == 1

    summary = attendance_recorder.get_student_summary(conn, student_id)
    assert summary['sessions_present'] == 1
    assert summary['attendance_rate'] == 50.0
    assert summary['standing']['status'] == 'Critical'

    stats = attendance_recorder.get_stats(conn, now=T + datetime.timedelta(days=2))
    assert stats['total_attendance_records'] == 3
    assert stats['attendance_this_week'] == 3
    assert stats['attendance_rate'] == pytest.approx(33.33)


def test_resolve_student_id(actors):
    student = actors['student']
    assert attendance_recorder.resolve_student_id(student) == student.user_id
    assert attendance_recorder.resolve_student_id(actors['admin'], 12) == 12
    with pytest.raises(Forbidden):
        attendance_recorder.resolve_student_id(student, student.user_id + 1)
    with pytest.raises(ValidationError):
        attendance_recorder.resolve_student_id(actors['admin'])
