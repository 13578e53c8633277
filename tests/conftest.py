"""
Pytest configuration and fixtures for Hotel Operations App testing.

The environment is set before the app module is imported so the app picks up
the temporary database and test mail settings.
"""
import os
import sys
import shutil
import sqlite3
import tempfile

import bcrypt
import pytest

TEST_DIR = tempfile.mkdtemp()
os.environ['DB_PATH'] = os.path.join(TEST_DIR, "test_hotel.db")
os.environ['LOG_FILE'] = os.path.join(TEST_DIR, "test_app.log")
os.environ['SECRET_KEY'] = 'test-secret-key-not-for-production'
os.environ['FLASK_ENV'] = 'testing'
os.environ['SMTP_HOST'] = 'smtp.hotel.test'
os.environ['EMAIL_USER'] = 'alerts@hotel.test'
os.environ['EMAIL_PASS'] = 'test-mail-password'
os.environ.pop('ALERT_EMAIL_TO', None)
os.environ.pop('CORS_ORIGIN', None)

# Add parent directory to path to import the app modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import app as hotel_app  # noqa: E402
import init_db  # noqa: E402
import mailer  # noqa: E402

hotel_app.app.config['TESTING'] = True
hotel_app.app.config['WTF_CSRF_ENABLED'] = False  # Disable CSRF for testing

# Test configuration
TEST_PASSWORD = "TestPass123"

# Captured before the autouse fixture swaps it out
REAL_SEND_EMAIL = mailer.send_email


class FakeSMTP:
    """In-memory stand-in for smtplib.SMTP that records what would be sent."""
    instances = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.started_tls = False
        self.credentials = None
        self.messages = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        self.started_tls = True

    def login(self, username, password):
        self.credentials = (username, password)

    def send_message(self, msg):
        self.messages.append(msg)


def create_user(username, role, password=TEST_PASSWORD, is_active=1, force_password_change=0):
    """Insert a user directly; low bcrypt cost keeps the suite fast."""
    password_hash = bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt(rounds=4)).decode('utf-8')
    conn = sqlite3.connect(hotel_app.DB_PATH)
    cursor = conn.execute("""
        INSERT INTO users (username, password_hash, role, is_active, force_password_change)
        VALUES (?, ?, ?, ?, ?)
    """, (username, password_hash, role, is_active, force_password_change))
    conn.commit()
    user_id = cursor.lastrowid
    conn.close()
    return user_id


def query(sql, params=()):
    """Run a read query against the test database and return dict rows."""
    conn = sqlite3.connect(hotel_app.DB_PATH)
    conn.row_factory = sqlite3.Row
    rows = [dict(row) for row in conn.execute(sql, params).fetchall()]
    conn.close()
    return rows


@pytest.fixture(scope="session", autouse=True)
def test_dir():
    yield TEST_DIR
    shutil.rmtree(TEST_DIR, ignore_errors=True)


@pytest.fixture(scope="function")
def clean_db():
    """Recreate every table before the test."""
    init_db.init_db(hotel_app.DB_PATH, reset=True, seed_admin=False)
    yield hotel_app.DB_PATH


@pytest.fixture(autouse=True)
def sent_mail(monkeypatch):
    """Capture outgoing mail instead of talking to an SMTP server."""
    sent = []

    def fake_send_email(recipient, subject, text, html, **kwargs):
        sent.append({"recipient": recipient, "subject": subject, "text": text, "html": html})

    monkeypatch.setattr(mailer, "send_email", fake_send_email)
    return sent


@pytest.fixture
def smtp_server(monkeypatch, sent_mail):
    """Run the real send_email against FakeSMTP."""
    FakeSMTP.instances = []
    monkeypatch.setattr(mailer, "send_email", REAL_SEND_EMAIL)
    monkeypatch.setattr(mailer.smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


@pytest.fixture(scope="function")
def client(clean_db):
    """Anonymous test client."""
    return hotel_app.app.test_client()


@pytest.fixture(scope="function")
def login_as(clean_db):
    """Factory returning a logged-in test client for a role, creating the user on first use."""
    def _login(role, username=None, password=TEST_PASSWORD):
        username = username or f"test_{role}"
        if not query("SELECT id FROM users WHERE username = ?", (username,)):
            create_user(username, role, password=password)

        test_client = hotel_app.app.test_client()
        response = test_client.post('/login', json={'username': username, 'password': password})
        assert response.status_code == 200, response.get_json()
        return test_client

    return _login


@pytest.fixture
def admin_client(login_as):
    return login_as('admin')


@pytest.fixture
def housekeeper_client(login_as):
    return login_as('housekeeper')


@pytest.fixture
def store_client(login_as):
    return login_as('store_manager')
