import datetime

import jwt
import pytest

import users
from conftest import PASSWORD
from errors import AlreadyExists, ValidationError


def test_password_hashing():
    hashed = users.hash_password('s3cret!')
    assert hashed.startswith('$2')
    assert users.verify_password('s3cret!', hashed)
    assert not users.verify_password('wrong', hashed)
    assert not users.verify_password('s3cret!', 'not-a-bcrypt-hash')


def test_create_user_validation(conn):
    with pytest.raises(ValidationError) as exc:
        users.create_user(conn, {'name': 'A', 'email': 'bad', 'password': '123'})
    assert len(exc.value.details) == 3

    with pytest.raises(AlreadyExists):
        users.create_user(conn, {'name': 'Dup', 'email': 'TEACHER@erp.com', 'password': PASSWORD})


def test_register_and_login(client, app):
    resp = client.post('/api/auth/register', json={
        'name': 'New Student', 'email': 'New@Example.com', 'password': 'hunter22'
    })
    assert resp.status_code == 201
    body = resp.get_json()
    assert body['user']['role'] == 'student'
    assert body['user']['email'] == 'new@example.com'
    assert 'password_hash' not in body['user']

    claims = jwt.decode(body['token'], app.config['SECRET_KEY'], algorithms=['HS256'])
    assert claims['userId'] == body['user']['id']
    assert claims['role'] == 'student'
    expires = datetime.datetime.fromtimestamp(claims['exp'], tz=datetime.timezone.utc)
    remaining = expires - datetime.datetime.now(datetime.timezone.utc)
    assert datetime.timedelta(hours=23) < remaining <= datetime.timedelta(hours=24)

    resp = client.post('/api/auth/login', json={'email': 'new@example.com', 'password': 'hunter22'})
    assert resp.status_code == 200
    token = resp.get_json()['token']

    resp = client.get('/api/auth/verify', headers={'Authorization': f'Bearer {token}'})
    assert resp.get_json()['valid'] is True


def test_register_rejects_admin_and_duplicates(client):
    resp = client.post('/api/auth/register', json={
        'name': 'Sneaky', 'email': 'sneaky@example.com', 'password': 'hunter22', 'role': 'admin'
    })
    assert resp.status_code == 400

    resp = client.post('/api/auth/register', json={
        'name': 'Copy', 'email': 'student@erp.com', 'password': 'hunter22'
    })
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'already_exists'


def test_login_bad_credentials(client):
    resp = client.post('/api/auth/login', json={'email': 'student@erp.com', 'password': 'nope-nope'})
    assert resp.status_code == 401
    assert resp.get_json()['error'] == 'invalid_credentials'


def test_expired_token(client, app, people):
    token = jwt.encode({
        'userId': people['student']['id'], 'email': 'student@erp.com', 'role': 'student',
        'exp': datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(minutes=1)
    }, app.config['SECRET_KEY'], algorithm='HS256')
    resp = client.get('/api/auth/profile', headers={'Authorization': f'Bearer {token}'})
    assert resp.status_code == 401
    assert resp.get_json()['error'] == 'token_expired'


def test_profile_update_and_password_change(client, headers):
    resp = client.put('/api/auth/profile', json={'name': 'Samuel Student', 'bio': 'Likes maths'},
                      headers=headers('student'))
    assert resp.status_code == 200
    assert resp.get_json()['user']['bio'] == 'Likes maths'

    resp = client.put('/api/auth/change-password',
                      json={'currentPassword': 'wrong-one', 'newPassword': 'brandnew1'},
                      headers=headers('student'))
    assert resp.status_code == 400

    resp = client.put('/api/auth/change-password',
                      json={'currentPassword': PASSWORD, 'newPassword': 'brandnew1'},
                      headers=headers('student'))
    assert resp.status_code == 200
    resp = client.post('/api/auth/login', json={'email': 'student@erp.com', 'password': 'brandnew1'})
    assert resp.status_code == 200


def test_admin_user_management(client, headers, people):
    resp = client.post('/api/users', json={
        'name': 'Fresh Teacher', 'email': 'fresh@erp.com', 'password': 'teach123', 'role': 'teacher'
    }, headers=headers('admin'))
    assert resp.status_code == 201
    new_id = resp.get_json()['user']['id']

    listed = client.get('/api/users?role=teacher', headers=headers('admin')).get_json()
    assert listed['count'] == 3

    stats = client.get('/api/users/stats', headers=headers('admin')).get_json()['stats']
    assert stats == {'total_users': 6, 'total_students': 2, 'total_teachers': 3, 'total_admins': 1}

    resp = client.put(f'/api/users/{new_id}', json={'email': 'teacher@erp.com'}, headers=headers('admin'))
    assert resp.status_code == 400

    resp = client.put(f'/api/users/{new_id}', json={'role': 'student'}, headers=headers('admin'))
    assert resp.get_json()['user']['role'] == 'student'

    assert client.delete(f'/api/users/{new_id}', headers=headers('admin')).status_code == 200
    assert client.get(f'/api/users/{new_id}', headers=headers('admin')).status_code == 404


def test_admin_cannot_delete_self(client, headers, people):
    resp = client.delete(f"/api/users/{people['admin']['id']}", headers=headers('admin'))
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'cannot_delete_self'


def test_user_admin_is_admin_only(client, headers):
    resp = client.get('/api/users', headers=headers('teacher'))
    assert resp.status_code == 403
    assert resp.get_json()['message'] == 'This resource requires admin role. Your role: teacher'

    students = client.get('/api/users/students', headers=headers('teacher')).get_json()
    assert students['count'] == 2
