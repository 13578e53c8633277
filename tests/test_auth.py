"""
Tests for login, lockout, sessions, password changes and role-based access.
"""
import sqlite3

import pytest

import app as hotel_app
import init_db
from conftest import TEST_PASSWORD, create_user, query


class TestLogin:
    """Session login and logout."""

    def test_login_success(self, client):
        """Valid credentials return the user and set the session."""
        create_user("maria", "housekeeper")

        response = client.post('/login', json={'username': 'maria', 'password': TEST_PASSWORD})
        assert response.status_code == 200
        data = response.get_json()
        assert data['user']['username'] == 'maria'
        assert data['user']['role'] == 'housekeeper'
        assert data['forcePasswordChange'] is False
        assert 'password_hash' not in data['user']

        session_response = client.get('/session')
        assert session_response.status_code == 200
        assert session_response.get_json()['user']['username'] == 'maria'

        assert query("SELECT last_login FROM users WHERE username = 'maria'")[0]['last_login']

    def test_wrong_password_and_unknown_user_look_the_same(self, client):
        create_user("maria", "housekeeper")

        wrong = client.post('/login', json={'username': 'maria', 'password': 'WrongPass123'})
        unknown = client.post('/login', json={'username': 'nobody', 'password': 'WrongPass123'})

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.get_json()['message'] == unknown.get_json()['message'] == "Invalid username or password"

    def test_missing_fields(self, client):
        response = client.post('/login', json={'username': 'maria'})
        assert response.status_code == 400

        response = client.post('/login', data="not json", content_type='text/plain')
        assert response.status_code == 400

    def test_inactive_user_cannot_login(self, client):
        create_user("former", "housekeeper", is_active=0)
        response = client.post('/login', json={'username': 'former', 'password': TEST_PASSWORD})
        assert response.status_code == 401

    def test_account_locks_after_repeated_failures(self, client):
        """After five bad passwords even the right password is refused."""
        create_user("maria", "housekeeper")

        for _ in range(hotel_app.MAX_LOGIN_ATTEMPTS):
            response = client.post('/login', json={'username': 'maria', 'password': 'WrongPass123'})
            assert response.status_code == 401

        response = client.post('/login', json={'username': 'maria', 'password': TEST_PASSWORD})
        assert response.status_code == 423

        attempt = query("SELECT * FROM login_attempts WHERE username = 'maria'")[0]
        assert attempt['attempt_count'] == hotel_app.MAX_LOGIN_ATTEMPTS
        assert attempt['locked_until']

    def test_successful_login_resets_attempts(self, client):
        create_user("maria", "housekeeper")
        client.post('/login', json={'username': 'maria', 'password': 'WrongPass123'})
        client.post('/login', json={'username': 'maria', 'password': TEST_PASSWORD})

        attempt = query("SELECT * FROM login_attempts WHERE username = 'maria'")[0]
        assert attempt['attempt_count'] == 0

    def test_expired_lockout_is_cleared(self, client):
        create_user("maria", "housekeeper")
        hotel_app.run_transaction(lambda conn: conn.execute("""
            INSERT INTO login_attempts (username, attempt_count, locked_until, last_attempt)
            VALUES ('maria', 5, '2000-01-01T00:00:00', '2000-01-01T00:00:00')
        """))

        response = client.post('/login', json={'username': 'maria', 'password': TEST_PASSWORD})
        assert response.status_code == 200

    def test_logout_clears_session(self, housekeeper_client):
        response = housekeeper_client.post('/logout')
        assert response.status_code == 200
        assert housekeeper_client.get('/session').status_code == 401

    def test_login_is_audited(self, housekeeper_client):
        rows = query("SELECT * FROM audit_logs WHERE action = 'User Logged In'")
        assert len(rows) == 1
        assert rows[0]['username'] == 'test_housekeeper'
        assert rows[0]['role'] == 'housekeeper'


class TestRoleAccess:
    """Every API route is limited to its allowed roles."""

    @pytest.mark.parametrize("method, path", [
        ("get", "/checklists"),
        ("post", "/submit-checklist"),
        ("get", "/status-reports"),
        ("post", "/submit-status-report"),
        ("get", "/inventory"),
        ("post", "/inventory"),
        ("get", "/inventory/snapshot/2025-03-14"),
        ("get", "/transactions"),
        ("get", "/audit-logs"),
        ("get", "/users"),
        ("get", "/notifications"),
    ])
    def test_anonymous_requests_are_rejected(self, client, method, path):
        response = getattr(client, method)(path, json={})
        assert response.status_code == 401
        assert response.get_json()['message'] == "Authentication required"

    @pytest.mark.parametrize("method, path", [
        ("get", "/inventory"),
        ("post", "/inventory"),
        ("get", "/inventory/snapshot/2025-03-14"),
        ("get", "/transactions"),
        ("get", "/audit-logs"),
        ("get", "/users"),
    ])
    def test_housekeeper_forbidden_routes(self, housekeeper_client, method, path):
        response = getattr(housekeeper_client, method)(path, json={})
        assert response.status_code == 403

    @pytest.mark.parametrize("method, path", [
        ("get", "/checklists"),
        ("post", "/submit-checklist"),
        ("get", "/status-reports"),
        ("post", "/submit-status-report"),
        ("get", "/audit-logs"),
        ("get", "/notifications"),
    ])
    def test_store_manager_forbidden_routes(self, store_client, method, path):
        response = getattr(store_client, method)(path, json={})
        assert response.status_code == 403

    def test_allowed_routes(self, housekeeper_client, store_client, admin_client):
        assert housekeeper_client.get('/checklists').status_code == 200
        assert housekeeper_client.get('/status-reports').status_code == 200
        assert store_client.get('/inventory').status_code == 200
        assert store_client.get('/transactions').status_code == 200
        for path in ('/checklists', '/status-reports', '/inventory', '/audit-logs', '/users', '/notifications'):
            assert admin_client.get(path).status_code == 200

    def test_forbidden_request_writes_nothing(self, store_client):
        response = store_client.post('/submit-checklist', json={'room': '101', 'date': '2025-03-14',
                                                                'items': {'soap': 'no'}})
        assert response.status_code == 403
        assert query("SELECT * FROM checklists") == []
        assert query("SELECT * FROM notifications") == []

    def test_deactivated_user_loses_session(self, admin_client, housekeeper_client):
        user_id = query("SELECT id FROM users WHERE username = 'test_housekeeper'")[0]['id']

        response = admin_client.post(f'/users/{user_id}/toggle')
        assert response.status_code == 200
        assert response.get_json()['user']['isActive'] is False

        assert housekeeper_client.get('/checklists').status_code == 401


class TestPasswordChange:

    def test_forced_change_blocks_other_routes(self, client):
        create_user("newhire", "housekeeper", force_password_change=1)
        response = client.post('/login', json={'username': 'newhire', 'password': TEST_PASSWORD})
        assert response.status_code == 200
        assert response.get_json()['forcePasswordChange'] is True

        blocked = client.get('/checklists')
        assert blocked.status_code == 403
        assert blocked.get_json()['forcePasswordChange'] is True

        assert client.get('/session').status_code == 200

        changed = client.post('/change-password', json={
            'current_password': TEST_PASSWORD,
            'new_password': 'BrandNew2025',
            'confirm_password': 'BrandNew2025',
        })
        assert changed.status_code == 200
        assert client.get('/checklists').status_code == 200

        user = query("SELECT force_password_change FROM users WHERE username = 'newhire'")[0]
        assert user['force_password_change'] == 0

    def test_wrong_current_password(self, housekeeper_client):
        response = housekeeper_client.post('/change-password', json={
            'current_password': 'NotMine123',
            'new_password': 'BrandNew2025',
            'confirm_password': 'BrandNew2025',
        })
        assert response.status_code == 401

    def test_mismatch_and_weak_passwords(self, housekeeper_client):
        mismatch = housekeeper_client.post('/change-password', json={
            'current_password': TEST_PASSWORD,
            'new_password': 'BrandNew2025',
            'confirm_password': 'BrandNew2026',
        })
        assert mismatch.status_code == 400

        weak = housekeeper_client.post('/change-password', json={
            'current_password': TEST_PASSWORD,
            'new_password': 'short',
            'confirm_password': 'short',
        })
        assert weak.status_code == 400
        assert "at least 8 characters" in weak.get_json()['message']

    def test_new_password_works_for_login(self, housekeeper_client, client):
        housekeeper_client.post('/change-password', json={
            'current_password': TEST_PASSWORD,
            'new_password': 'BrandNew2025',
            'confirm_password': 'BrandNew2025',
        })

        old = client.post('/login', json={'username': 'test_housekeeper', 'password': TEST_PASSWORD})
        assert old.status_code == 401
        new = client.post('/login', json={'username': 'test_housekeeper', 'password': 'BrandNew2025'})
        assert new.status_code == 200


class TestUserManagement:

    def test_admin_creates_user(self, admin_client):
        response = admin_client.post('/users', json={
            'username': 'store_lead', 'password': 'StorePass123', 'role': 'store_manager',
        })
        assert response.status_code == 201
        user = response.get_json()['user']
        assert user['role'] == 'store_manager'
        assert user['forcePasswordChange'] is True

        listed = admin_client.get('/users').get_json()
        assert 'store_lead' in [u['username'] for u in listed]

    def test_duplicate_username(self, admin_client):
        payload = {'username': 'store_lead', 'password': 'StorePass123', 'role': 'store_manager'}
        assert admin_client.post('/users', json=payload).status_code == 201
        assert admin_client.post('/users', json=payload).status_code == 409

    @pytest.mark.parametrize("payload", [
        {'username': 'ab', 'password': 'StorePass123', 'role': 'store_manager'},
        {'username': 'store_lead', 'password': 'StorePass123', 'role': 'manager'},
        {'username': 'store_lead', 'password': 'weak', 'role': 'store_manager'},
    ])
    def test_invalid_user_input(self, admin_client, payload):
        assert admin_client.post('/users', json=payload).status_code == 400

    def test_admin_cannot_deactivate_self(self, admin_client):
        admin_id = query("SELECT id FROM users WHERE username = 'test_admin'")[0]['id']
        response = admin_client.post(f'/users/{admin_id}/toggle')
        assert response.status_code == 400

    def test_toggle_unknown_user(self, admin_client):
        assert admin_client.post('/users/9999/toggle').status_code == 404


class TestBootstrapAdmin:

    def test_admin_created_once(self, clean_db, monkeypatch):
        monkeypatch.setenv("ADMIN_USERNAME", "owner")
        monkeypatch.setenv("ADMIN_PASSWORD", "OwnerPass123")

        conn = sqlite3.connect(clean_db)
        try:
            assert init_db.ensure_admin(conn) == "owner"
            assert init_db.ensure_admin(conn) is None
        finally:
            conn.close()

        admins = query("SELECT * FROM users WHERE role = 'admin'")
        assert [a['username'] for a in admins] == ['owner']
        assert admins[0]['force_password_change'] == 0

    def test_generated_password_forces_change(self, clean_db, monkeypatch):
        monkeypatch.delenv("ADMIN_USERNAME", raising=False)
        monkeypatch.delenv("ADMIN_PASSWORD", raising=False)

        conn = sqlite3.connect(clean_db)
        try:
            assert init_db.ensure_admin(conn) == "admin"
        finally:
            conn.close()

        assert query("SELECT force_password_change FROM users WHERE username = 'admin'")[0]['force_password_change'] == 1
