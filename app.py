"""
Hotel Operations App
Housekeeping checklists, room status reports and inventory tracking for hotel staff.

Security Features:
- bcrypt password hashing with salt
- Role-based access on every API route (admin, housekeeper, store_manager)
- CSRF protection via Flask-WTF
- Rate limiting on authentication endpoints
- Account lockout after repeated failed logins
- Secure session configuration
- Security headers (CSP, X-Frame-Options, etc.)
"""
import os
import sqlite3
import json
import secrets
import smtplib
import logging
from datetime import datetime, timedelta
from functools import wraps

import bcrypt
from dotenv import load_dotenv
from flask import Flask, request, jsonify, render_template, session, g
from flask_wtf.csrf import CSRFProtect, CSRFError, generate_csrf
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_cors import CORS

import hotel_utils
import init_db
import mailer

# Load environment variables from .env file
load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(os.environ.get("LOG_FILE") or 'app.log'),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DB_PATH = os.environ.get("DB_PATH") or os.path.join(BASE_DIR, "hotel.db")

# Mail settings (alerts go to ALERT_EMAIL_TO, which defaults to the sending account)
SMTP_HOST = os.environ.get("SMTP_HOST", "smtp.gmail.com")
SMTP_PORT = int(os.environ.get("SMTP_PORT", "587"))
SMTP_USE_TLS = os.environ.get("SMTP_USE_TLS", "true").lower() not in ("0", "false", "no")
SMTP_TIMEOUT = 10
EMAIL_USER = os.environ.get("EMAIL_USER", "")
EMAIL_PASS = os.environ.get("EMAIL_PASS", "")
ALERT_EMAIL_TO = os.environ.get("ALERT_EMAIL_TO") or EMAIL_USER

CORS_ORIGINS = [origin.strip() for origin in os.environ.get("CORS_ORIGIN", "").split(",") if origin.strip()]

app = Flask(__name__)
app.config['MAX_CONTENT_LENGTH'] = 1 * 1024 * 1024  # JSON bodies only

# Security: Require SECRET_KEY from environment, no fallback to insecure default
secret_key = os.environ.get('SECRET_KEY')
if not secret_key:
    # Generate a secure key and warn - in production this should be set in .env
    secret_key = secrets.token_hex(32)
    logger.warning("SECRET_KEY not set in environment. Using generated key.")
    logger.warning("Sessions will not survive a restart. Set SECRET_KEY in .env for production.")
app.secret_key = secret_key

# Session security configuration
app.config['SESSION_COOKIE_SECURE'] = os.environ.get('FLASK_ENV') == 'production'  # HTTPS only in production
app.config['SESSION_COOKIE_HTTPONLY'] = True  # Prevent JavaScript access
app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'  # CSRF protection
app.config['PERMANENT_SESSION_LIFETIME'] = timedelta(hours=8)  # Session timeout

# CSRF Protection
app.config['WTF_CSRF_TIME_LIMIT'] = 3600  # CSRF token valid for 1 hour
app.config['WTF_CSRF_SSL_STRICT'] = os.environ.get('FLASK_ENV') == 'production'
csrf = CSRFProtect(app)

# Rate limiting
if os.environ.get('FLASK_ENV') == 'testing':
    app.config['RATELIMIT_ENABLED'] = False

limiter = Limiter(
    key_func=get_remote_address,
    app=app,
    default_limits=["5000 per day", "500 per hour"],
    storage_uri="memory://",
)

# A separate front end needs its origin listed to send the session cookie
if CORS_ORIGINS:
    CORS(app, origins=CORS_ORIGINS, supports_credentials=True)
else:
    CORS(app)

ROLES = ('admin', 'housekeeper', 'store_manager')
HOUSEKEEPING_ROLES = ('admin', 'housekeeper')
INVENTORY_ROLES = ('admin', 'store_manager')

# Account lockout settings
MAX_LOGIN_ATTEMPTS = 5
LOCKOUT_DURATION_MINUTES = 15

MAX_NOTIFICATION_ATTEMPTS = 5
DEFAULT_LIST_LIMIT = 200
MAX_LIST_LIMIT = 1000

# Endpoints a user flagged for a password change can still reach
PASSWORD_CHANGE_ENDPOINTS = {'change_password', 'logout', 'get_session'}


# Database Helper Functions
def dict_factory(cursor, row):
    return {col[0]: row[idx] for idx, col in enumerate(cursor.description)}


def connect_db():
    conn = sqlite3.connect(DB_PATH, timeout=10)
    conn.row_factory = dict_factory
    return conn


def run_transaction(ops):
    """Execute database operations within a transaction with rollback on error."""
    conn = connect_db()
    try:
        result = ops(conn)
        conn.commit()
        return result
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def fetch_one(sql, params=()):
    conn = connect_db()
    try:
        return conn.execute(sql, params).fetchone()
    finally:
        conn.close()


def fetch_all(sql, params=()):
    conn = connect_db()
    try:
        return conn.execute(sql, params).fetchall()
    finally:
        conn.close()


def parse_limit(value):
    limit = hotel_utils.parse_whole_number(value, minimum=1) if value is not None else None
    if limit is None:
        return DEFAULT_LIST_LIMIT
    return min(limit, MAX_LIST_LIMIT)


def json_body():
    """Request JSON as a dict; anything else (missing, invalid, a list) counts as empty."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def load_json_field(value, default):
    try:
        return json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return default


# Password & Login Helpers
def hash_password(password: str) -> str:
    """Hash a password using bcrypt with automatic salt generation."""
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')


def verify_password(password: str, hashed: str) -> bool:
    """Verify a password against a bcrypt hash."""
    try:
        return bcrypt.checkpw(password.encode('utf-8'), hashed.encode('utf-8'))
    except (ValueError, TypeError):
        return False


# Hash compared against when the username is unknown, so both paths cost one bcrypt check
DUMMY_PASSWORD_HASH = hash_password(secrets.token_hex(16))


def is_account_locked(username: str) -> bool:
    """Check if an account is currently locked due to failed login attempts."""
    attempt = fetch_one("SELECT locked_until FROM login_attempts WHERE username = ?", (username,))

    if not attempt or not attempt['locked_until']:
        return False

    try:
        locked_until = datetime.fromisoformat(attempt['locked_until'])
    except (ValueError, TypeError):
        return False

    if datetime.now() < locked_until:
        return True

    # Lockout expired, reset
    reset_login_attempts(username)
    return False


def record_failed_login(username: str):
    """Record a failed login attempt and lock account if threshold reached."""
    def upsert_attempt(conn):
        attempt = conn.execute("SELECT attempt_count FROM login_attempts WHERE username = ?", (username,)).fetchone()
        new_count = attempt['attempt_count'] + 1 if attempt else 1

        locked_until = None
        if new_count >= MAX_LOGIN_ATTEMPTS:
            locked_until = (datetime.now() + timedelta(minutes=LOCKOUT_DURATION_MINUTES)).isoformat()
            logger.warning(f"Account locked: {username} (too many failed attempts)")

        conn.execute("""
            INSERT INTO login_attempts (username, attempt_count, locked_until, last_attempt)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(username) DO UPDATE SET
                attempt_count = excluded.attempt_count,
                locked_until = excluded.locked_until,
                last_attempt = excluded.last_attempt
        """, (username, new_count, locked_until, datetime.now().isoformat()))

    run_transaction(upsert_attempt)


def reset_login_attempts(username: str):
    """Reset login attempts after successful login."""
    run_transaction(lambda conn: conn.execute(
        "UPDATE login_attempts SET attempt_count = 0, locked_until = NULL WHERE username = ?", (username,)
    ))


# User Helpers
def get_user_by_id(user_id):
    return fetch_one("SELECT * FROM users WHERE id = ?", (user_id,))


def get_user_by_username(username):
    return fetch_one("SELECT * FROM users WHERE username = ?", (username,))


def verify_user_credentials(username, password):
    """
    Verify user credentials with timing-attack resistance.
    Always performs bcrypt check even if user doesn't exist.
    """
    user = get_user_by_username(username)

    if user and user['is_active']:
        if verify_password(password, user['password_hash']):
            return user
        return None

    verify_password(password, DUMMY_PASSWORD_HASH)
    return None


def serialize_user(user):
    return {
        "id": user['id'],
        "username": user['username'],
        "role": user['role'],
        "isActive": bool(user['is_active']),
        "forcePasswordChange": bool(user['force_password_change']),
        "lastLogin": user['last_login'],
        "createdAt": user['created_at'],
    }


def load_session_user():
    """Reload the session user from the database; inactive or deleted users lose the session."""
    if 'user_id' not in session:
        return None
    user = get_user_by_id(session['user_id'])
    if not user or not user['is_active']:
        session.clear()
        return None
    return user


def check_access(roles=None):
    """
    Return an error response for the current request, or None when access is allowed.
    Sets g.user for the handler and the audit log.
    """
    user = load_session_user()
    if not user:
        return jsonify({"message": "Authentication required"}), 401
    g.user = user

    if user['force_password_change'] and request.endpoint not in PASSWORD_CHANGE_ENDPOINTS:
        return jsonify({"message": "Password change required", "forcePasswordChange": True}), 403

    if roles and user['role'] not in roles:
        logger.warning(f"Forbidden: {user['username']} ({user['role']}) -> {request.method} {request.path}")
        return jsonify({"message": "You do not have permission to perform this action"}), 403
    return None


# Auth Decorators
def login_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        denied = check_access()
        if denied:
            return denied
        return f(*args, **kwargs)
    return decorated_function


def roles_required(*roles):
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            denied = check_access(roles)
            if denied:
                return denied
            return f(*args, **kwargs)
        return decorated_function
    return decorator


# Audit Log
def record_audit(action, details, user=None):
    """Store an audit entry. Failures are logged and never fail the request."""
    if user is None:
        user = g.get('user')
    try:
        run_transaction(lambda conn: conn.execute("""
            INSERT INTO audit_logs (action, details, username, role, timestamp)
            VALUES (?, ?, ?, ?, ?)
        """, (
            action,
            json.dumps(details, default=str),
            user['username'] if user else None,
            user['role'] if user else None,
            hotel_utils.utc_now(),
        )))
        logger.info(f"Audit Log: {action} - {details}")
    except sqlite3.Error as e:
        logger.error(f"Failed to create audit log: {e}")


def serialize_audit_log(row):
    return {
        "id": row['id'],
        "action": row['action'],
        "details": load_json_field(row['details'], {}),
        "user": row['username'],
        "role": row['role'],
        "timestamp": row['timestamp'],
    }


# Notifications Outbox
def mail_configured() -> bool:
    return bool(SMTP_HOST and EMAIL_USER and ALERT_EMAIL_TO)


def queue_notification(kind, content):
    """Write a pending notification row and return its id."""
    def insert(conn):
        cursor = conn.execute("""
            INSERT INTO notifications (kind, recipient, subject, body_text, body_html, status, created_at)
            VALUES (?, ?, ?, ?, ?, 'pending', ?)
        """, (kind, ALERT_EMAIL_TO or None, content['subject'], content['text'], content.get('html'),
              hotel_utils.utc_now()))
        return cursor.lastrowid

    return run_transaction(insert)


def deliver_notification(notification_id) -> bool:
    """
    Attempt delivery of one outbox row.

    Returns True when the mail was sent. Failures are recorded on the row and
    logged; the row stays eligible for retry.
    """
    row = fetch_one("SELECT * FROM notifications WHERE id = ?", (notification_id,))
    if not row:
        return False

    if not mail_configured():
        logger.warning(f"Mail is not configured. Notification {notification_id} left pending.")
        return False

    try:
        mailer.send_email(
            row['recipient'] or ALERT_EMAIL_TO,
            row['subject'],
            row['body_text'],
            row['body_html'],
            host=SMTP_HOST,
            port=SMTP_PORT,
            sender=EMAIL_USER,
            username=EMAIL_USER,
            password=EMAIL_PASS,
            use_tls=SMTP_USE_TLS,
            timeout=SMTP_TIMEOUT,
        )
    except (smtplib.SMTPException, OSError, ValueError) as e:
        # ValueError: the email package refused a malformed header or address
        logger.error(f"Email sending failed for notification {notification_id}: {e}")
        run_transaction(lambda conn: conn.execute("""
            UPDATE notifications SET status = 'failed', attempts = attempts + 1, last_error = ?
            WHERE id = ?
        """, (str(e)[:500], notification_id)))
        return False

    run_transaction(lambda conn: conn.execute("""
        UPDATE notifications SET status = 'sent', attempts = attempts + 1, last_error = NULL, sent_at = ?
        WHERE id = ?
    """, (hotel_utils.utc_now(), notification_id)))
    logger.info(f"Email sent: {row['subject']}")
    return True


def notify(kind, content) -> bool:
    """Queue and attempt one alert. Never raises: the primary write has already happened."""
    try:
        notification_id = queue_notification(kind, content)
        return deliver_notification(notification_id)
    except sqlite3.Error as e:
        logger.error(f"Failed to queue {kind} notification: {e}")
        return False


def serialize_notification(row):
    return {
        "id": row['id'],
        "kind": row['kind'],
        "recipient": row['recipient'],
        "subject": row['subject'],
        "status": row['status'],
        "attempts": row['attempts'],
        "lastError": row['last_error'],
        "createdAt": row['created_at'],
        "sentAt": row['sent_at'],
    }


def notify_if_low_stock(row) -> bool:
    if not hotel_utils.is_low_stock(row['quantity'], row['low_stock_level']):
        return False
    content = mailer.low_stock_email(row['item'], row['quantity'], row['low_stock_level'])
    return notify('low_stock', content)


# Security headers middleware
@app.after_request
def add_security_headers(response):
    """Add security headers to all responses."""
    # Prevent clickjacking
    response.headers['X-Frame-Options'] = 'DENY'
    # Prevent MIME type sniffing
    response.headers['X-Content-Type-Options'] = 'nosniff'
    # Referrer policy
    response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'
    # Content Security Policy
    response.headers['Content-Security-Policy'] = (
        "default-src 'self'; "
        "script-src 'self'; "
        "style-src 'self' 'unsafe-inline'; "
        "img-src 'self' data:; "
        "frame-ancestors 'none'; "
        "form-action 'self';"
    )
    response.headers['Permissions-Policy'] = 'geolocation=(), microphone=(), camera=()'
    return response


@app.get("/")
def index():
    return render_template("index.html")


# CSRF token endpoint for JavaScript requests
@app.get('/api/csrf-token')
def get_csrf_token():
    """Provide CSRF token for JavaScript API calls (needed before login too)."""
    return jsonify({'csrf_token': generate_csrf()})


# Session Routes
@app.post("/login")
@limiter.limit("10 per minute")
def login():
    data = json_body()
    username = str(data.get('username') or '').strip()
    password = str(data.get('password') or '')

    if not username or not password:
        return jsonify({"message": "Username and password are required"}), 400

    if is_account_locked(username):
        return jsonify({"message": "Account is temporarily locked. Please try again later."}), 423

    user = verify_user_credentials(username, password)
    if not user:
        record_failed_login(username)
        logger.warning(f"Failed login for {username} from {request.remote_addr or 'unknown'}")
        return jsonify({"message": "Invalid username or password"}), 401

    reset_login_attempts(username)

    # Regenerate session to prevent session fixation attacks
    session.clear()
    session.permanent = True
    session['user_id'] = user['id']
    session['username'] = user['username']
    session['role'] = user['role']

    run_transaction(lambda conn: conn.execute(
        "UPDATE users SET last_login = ? WHERE id = ?", (hotel_utils.utc_now(), user['id'])
    ))
    record_audit('User Logged In', {'username': user['username']}, user=user)

    return jsonify({
        "message": "Login successful",
        "user": serialize_user(user),
        "forcePasswordChange": bool(user['force_password_change']),
    }), 200


@app.post("/logout")
def logout():
    user = load_session_user()
    if user:
        record_audit('User Logged Out', {'username': user['username']}, user=user)
    session.clear()
    return jsonify({"message": "Logged out"}), 200


@app.get("/session")
@login_required
def get_session():
    return jsonify({"user": serialize_user(g.user)}), 200


@app.post("/change-password")
@login_required
@limiter.limit("10 per hour")
def change_password():
    data = json_body()
    current_password = str(data.get('current_password') or '')
    new_password = str(data.get('new_password') or '')
    confirm_password = str(data.get('confirm_password') or '')

    if not verify_password(current_password, g.user['password_hash']):
        return jsonify({"message": "Current password is incorrect"}), 401

    if new_password != confirm_password:
        return jsonify({"message": "Passwords do not match"}), 400

    problem = hotel_utils.password_problems(new_password)
    if problem:
        return jsonify({"message": problem}), 400

    hashed = hash_password(new_password)
    run_transaction(lambda conn: conn.execute(
        "UPDATE users SET password_hash = ?, force_password_change = 0 WHERE id = ?", (hashed, g.user['id'])
    ))
    record_audit('Password Changed', {'username': g.user['username']})
    return jsonify({"message": "Password updated successfully"}), 200


# User Management Routes
@app.get("/users")
@roles_required('admin')
def list_users():
    users = fetch_all("SELECT * FROM users ORDER BY username")
    return jsonify([serialize_user(user) for user in users]), 200


@app.post("/users")
@roles_required('admin')
@limiter.limit("10 per hour")
def add_user():
    """Create a new user account. The new user must change the password at first login."""
    data = json_body()
    username = str(data.get('username') or '').strip()[:50]
    password = str(data.get('password') or '')
    role = str(data.get('role') or '').strip()

    if len(username) < 3:
        return jsonify({"message": "Username must be at least 3 characters"}), 400
    if role not in ROLES:
        return jsonify({"message": "Invalid role"}), 400
    problem = hotel_utils.password_problems(password)
    if problem:
        return jsonify({"message": problem}), 400

    if get_user_by_username(username):
        return jsonify({"message": "Username already exists"}), 409

    hashed = hash_password(password)

    def create_user(conn):
        cursor = conn.execute("""
            INSERT INTO users (username, password_hash, role, is_active, force_password_change)
            VALUES (?, ?, ?, 1, 1)
        """, (username, hashed, role))
        return cursor.lastrowid

    try:
        user_id = run_transaction(create_user)
    except sqlite3.IntegrityError:
        return jsonify({"message": "Username already exists"}), 409
    except sqlite3.Error as e:
        logger.error(f"Error creating user: {e}")
        return jsonify({"message": "Failed to create user"}), 500

    record_audit('User Created', {'username': username, 'role': role})
    return jsonify({"message": f"User {username} created successfully",
                    "user": serialize_user(get_user_by_id(user_id))}), 201


@app.post("/users/<int:user_id>/toggle")
@roles_required('admin')
def toggle_user_active(user_id):
    if user_id == g.user['id']:
        return jsonify({"message": "You cannot deactivate your own account"}), 400

    user = get_user_by_id(user_id)
    if not user:
        return jsonify({"message": "User not found"}), 404

    new_state = 0 if user['is_active'] else 1
    run_transaction(lambda conn: conn.execute(
        "UPDATE users SET is_active = ? WHERE id = ?", (new_state, user_id)
    ))
    record_audit('User Activated' if new_state else 'User Deactivated', {'username': user['username']})
    return jsonify({"message": "User updated", "user": serialize_user(get_user_by_id(user_id))}), 200


# Checklist Routes
def serialize_checklist(row):
    return {
        "id": row['id'],
        "room": row['room'],
        "date": row['date'],
        "items": load_json_field(row['items'], {}),
        "createdAt": row['created_at'],
        "updatedAt": row['updated_at'],
    }


@app.post("/submit-checklist")
@roles_required(*HOUSEKEEPING_ROLES)
def submit_checklist():
    data = json_body()
    room = str(data.get('room') or '').strip()[:50]
    checklist_date = str(data.get('date') or '').strip()[:50]
    items = data.get('items')

    if not room or not checklist_date or items is None:
        return jsonify({"message": "Missing fields"}), 400
    if not isinstance(items, dict):
        return jsonify({"message": "Items must be an object of item name to yes/no"}), 400

    now = hotel_utils.utc_now()

    def create_checklist(conn):
        cursor = conn.execute("""
            INSERT INTO checklists (room, date, items, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
        """, (room, checklist_date, json.dumps(items), now, now))
        return conn.execute("SELECT * FROM checklists WHERE id = ?", (cursor.lastrowid,)).fetchone()

    try:
        checklist = run_transaction(create_checklist)
    except sqlite3.Error as e:
        logger.error(f"Error saving checklist: {e}")
        return jsonify({"message": "Server error while submitting checklist"}), 500

    record_audit('Checklist Submitted', {'id': checklist['id'], 'room': room, 'date': checklist_date})

    email_sent = False
    missing = hotel_utils.missing_items(items)
    if missing:
        email_sent = notify('missing_items', mailer.missing_items_email(room, checklist_date, missing))

    return jsonify({
        "message": "Checklist submitted successfully",
        "checklist": serialize_checklist(checklist),
        "emailSent": email_sent,
    }), 201


def checklist_matches(row, search):
    """Case-insensitive substring match on room, date or any item name (not the yes/no values)."""
    needle = search.casefold()
    items = load_json_field(row['items'], {})
    keys = items.keys() if isinstance(items, dict) else []
    return any(needle in str(value).casefold() for value in (row['room'], row['date'], *keys))


@app.get("/checklists")
@roles_required(*HOUSEKEEPING_ROLES)
def list_checklists():
    search = request.args.get('q', '').strip()

    try:
        rows = fetch_all("SELECT * FROM checklists ORDER BY date DESC, created_at DESC, id DESC")
    except sqlite3.Error as e:
        logger.error(f"Error retrieving checklists: {e}")
        return jsonify({"message": "Failed to retrieve checklists"}), 500

    if search:
        rows = [row for row in rows if checklist_matches(row, search)]
    return jsonify([serialize_checklist(row) for row in rows]), 200


@app.get("/checklists/<int:checklist_id>")
@roles_required(*HOUSEKEEPING_ROLES)
def get_checklist(checklist_id):
    row = fetch_one("SELECT * FROM checklists WHERE id = ?", (checklist_id,))
    if not row:
        return jsonify({"message": "Checklist not found"}), 404
    return jsonify(serialize_checklist(row)), 200


@app.put("/checklists/<int:checklist_id>")
@roles_required(*HOUSEKEEPING_ROLES)
def update_checklist(checklist_id):
    """Replace whichever of room, date and items are supplied."""
    data = json_body()
    updates = {}

    if 'room' in data:
        room = str(data.get('room') or '').strip()[:50]
        if not room:
            return jsonify({"message": "Room cannot be empty"}), 400
        updates['room'] = room
    if 'date' in data:
        checklist_date = str(data.get('date') or '').strip()[:50]
        if not checklist_date:
            return jsonify({"message": "Date cannot be empty"}), 400
        updates['date'] = checklist_date
    if 'items' in data:
        if not isinstance(data['items'], dict):
            return jsonify({"message": "Items must be an object of item name to yes/no"}), 400
        updates['items'] = json.dumps(data['items'])

    if not updates:
        return jsonify({"message": "No fields to update"}), 400

    updates['updated_at'] = hotel_utils.utc_now()
    assignments = ", ".join(f"{column} = ?" for column in updates)

    def apply_update(conn):
        cursor = conn.execute(f"UPDATE checklists SET {assignments} WHERE id = ?",
                              (*updates.values(), checklist_id))
        if cursor.rowcount == 0:
            return None
        return conn.execute("SELECT * FROM checklists WHERE id = ?", (checklist_id,)).fetchone()

    try:
        updated = run_transaction(apply_update)
    except sqlite3.Error as e:
        logger.error(f"Error updating checklist {checklist_id}: {e}")
        return jsonify({"message": "Update failed for checklist"}), 500

    if not updated:
        return jsonify({"message": "Checklist not found"}), 404

    record_audit('Checklist Updated', {'id': checklist_id, 'room': updated['room']})
    return jsonify({"message": "Checklist updated successfully", "updated": serialize_checklist(updated)}), 200


@app.delete("/checklists/<int:checklist_id>")
@roles_required(*HOUSEKEEPING_ROLES)
def delete_checklist(checklist_id):
    try:
        deleted = run_transaction(lambda conn: conn.execute(
            "DELETE FROM checklists WHERE id = ?", (checklist_id,)
        ).rowcount)
    except sqlite3.Error as e:
        logger.error(f"Error deleting checklist {checklist_id}: {e}")
        return jsonify({"message": "Delete failed for checklist"}), 500

    if not deleted:
        return jsonify({"message": "Checklist not found"}), 404

    record_audit('Checklist Deleted', {'id': checklist_id})
    return jsonify({"message": "Checklist deleted successfully"}), 200


# Status Report Routes
def serialize_status_report(row):
    return {
        "id": row['id'],
        "room": row['room'],
        "category": row['category'],
        "status": row['status'],
        "remarks": row['remarks'],
        "dateTime": row['date_time'],
        "createdAt": row['created_at'],
        "updatedAt": row['updated_at'],
    }


def validate_status_report_fields(data, partial=False):
    """
    Validate status report input.

    Returns:
        (dict, str | None): Column values to store, and an error message.
    """
    fields = {}
    for key, column, limit in (('room', 'room', 50), ('category', 'category', 100), ('status', 'status', 50)):
        if partial and key not in data:
            continue
        value = str(data.get(key) or '').strip()[:limit]
        if not value:
            return fields, "Missing required fields for status report"
        fields[column] = value

    if 'status' in fields and not hotel_utils.is_valid_status(fields['status']):
        return fields, f"Invalid status. Allowed values: {', '.join(hotel_utils.STATUS_VALUES)}"

    if not partial or 'dateTime' in data:
        if not data.get('dateTime'):
            return fields, "Missing required fields for status report"
        date_time = hotel_utils.parse_datetime_input(data.get('dateTime'))
        if not date_time:
            return fields, "Invalid dateTime. Use an ISO-8601 date and time"
        fields['date_time'] = date_time

    if not partial or 'remarks' in data:
        fields['remarks'] = str(data.get('remarks') or '').strip()[:1000]

    return fields, None


@app.post("/submit-status-report")
@roles_required(*HOUSEKEEPING_ROLES)
def submit_status_report():
    data = json_body()
    fields, error = validate_status_report_fields(data)
    if error:
        return jsonify({"message": error}), 400

    now = hotel_utils.utc_now()

    def create_report(conn):
        cursor = conn.execute("""
            INSERT INTO status_reports (room, category, status, remarks, date_time, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (fields['room'], fields['category'], fields['status'], fields['remarks'],
              fields['date_time'], now, now))
        return conn.execute("SELECT * FROM status_reports WHERE id = ?", (cursor.lastrowid,)).fetchone()

    try:
        report = run_transaction(create_report)
    except sqlite3.Error as e:
        logger.error(f"Error saving status report: {e}")
        return jsonify({"message": "Server error while saving status report"}), 500

    record_audit('Status Report Submitted', {
        'id': report['id'], 'room': report['room'], 'category': report['category'], 'status': report['status'],
    })
    return jsonify({"message": "Status report submitted successfully",
                    "report": serialize_status_report(report)}), 201


@app.get("/status-reports")
@roles_required(*HOUSEKEEPING_ROLES)
def list_status_reports():
    clauses = []
    params = []

    filter_date = request.args.get('date', '').strip()
    if filter_date:
        day = hotel_utils.parse_snapshot_date(filter_date)
        if not day:
            return jsonify({"message": "Invalid date format"}), 400
        start, end = hotel_utils.day_bounds(day)
        clauses.append("date_time >= ? AND date_time < ?")
        params += [start, end]

    room = request.args.get('room', '').strip()
    if room:
        clauses.append("room = ?")
        params.append(room)

    sql = "SELECT * FROM status_reports"
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY date_time DESC, id DESC"

    try:
        rows = fetch_all(sql, params)
    except sqlite3.Error as e:
        logger.error(f"Error retrieving status reports: {e}")
        return jsonify({"message": "Failed to retrieve status reports"}), 500
    return jsonify([serialize_status_report(row) for row in rows]), 200


@app.get("/status-reports/<int:report_id>")
@roles_required(*HOUSEKEEPING_ROLES)
def get_status_report(report_id):
    row = fetch_one("SELECT * FROM status_reports WHERE id = ?", (report_id,))
    if not row:
        return jsonify({"message": "Status report not found"}), 404
    return jsonify(serialize_status_report(row)), 200


@app.put("/status-reports/<int:report_id>")
@roles_required(*HOUSEKEEPING_ROLES)
def update_status_report(report_id):
    data = json_body()
    fields, error = validate_status_report_fields(data, partial=True)
    if error:
        return jsonify({"message": error}), 400
    if not fields:
        return jsonify({"message": "No fields to update"}), 400

    fields['updated_at'] = hotel_utils.utc_now()
    assignments = ", ".join(f"{column} = ?" for column in fields)

    def apply_update(conn):
        cursor = conn.execute(f"UPDATE status_reports SET {assignments} WHERE id = ?",
                              (*fields.values(), report_id))
        if cursor.rowcount == 0:
            return None
        return conn.execute("SELECT * FROM status_reports WHERE id = ?", (report_id,)).fetchone()

    try:
        updated = run_transaction(apply_update)
    except sqlite3.Error as e:
        logger.error(f"Error updating status report {report_id}: {e}")
        return jsonify({"message": "Update failed for status report"}), 500

    if not updated:
        return jsonify({"message": "Status report not found"}), 404

    record_audit('Status Report Updated', {'id': report_id, 'room': updated['room']})
    return jsonify({"message": "Status report updated successfully",
                    "updated": serialize_status_report(updated)}), 200


@app.delete("/status-reports/<int:report_id>")
@roles_required(*HOUSEKEEPING_ROLES)
def delete_status_report(report_id):
    try:
        deleted = run_transaction(lambda conn: conn.execute(
            "DELETE FROM status_reports WHERE id = ?", (report_id,)
        ).rowcount)
    except sqlite3.Error as e:
        logger.error(f"Error deleting status report {report_id}: {e}")
        return jsonify({"message": "Delete failed for status report"}), 500

    if not deleted:
        return jsonify({"message": "Status report not found"}), 404

    record_audit('Status Report Deleted', {'id': report_id})
    return jsonify({"message": "Status report deleted successfully"}), 200


# Inventory Routes
def serialize_inventory(row):
    return {
        "id": row['id'],
        "item": row['item'],
        "quantity": row['quantity'],
        "lowStockLevel": row['low_stock_level'],
        "createdAt": row['created_at'],
        "updatedAt": row['updated_at'],
    }


def serialize_transaction(row):
    return {
        "id": row['id'],
        "item": row['item'],
        "quantity": row['quantity'],
        "action": row['action'],
        "timestamp": row['timestamp'],
    }


def requested_low_stock_level(data):
    """The threshold from a request body, accepting both field names. Returns (value, error)."""
    raw = data.get('lowStockLevel', data.get('lowStockThreshold'))
    if raw is None or raw == '':
        return None, None
    level = hotel_utils.parse_whole_number(raw, minimum=0)
    if level is None:
        return None, "Low stock level must be a whole number of 0 or more"
    return level, None


def record_ledger_row(conn, row, quantity, action, timestamp):
    """Append one movement for an inventory row to the ledger."""
    conn.execute("""
        INSERT INTO transactions (item_id, item, item_key, quantity, action, timestamp)
        VALUES (?, ?, ?, ?, ?, ?)
    """, (row['id'], row['item'], row['item_key'], quantity, action, timestamp))


def apply_inventory_action(item_name, quantity, action, low_stock_level=None):
    """
    Apply an add/use movement and append its ledger row in one transaction.

    The stock check for "use" is part of the UPDATE itself, so two requests
    racing for the last units cannot both succeed.

    Returns:
        (dict | None, str | None, int): Inventory row, error message, HTTP status.
    """
    now = hotel_utils.utc_now()
    key = hotel_utils.item_key(item_name)

    def ops(conn):
        # Take the write lock before reading so the lookup and the update see the same row
        conn.execute("BEGIN IMMEDIATE")
        existing = conn.execute("SELECT * FROM inventory WHERE item_key = ?", (key,)).fetchone()

        if existing is None:
            if action == 'use':
                return None, "Item not found in inventory", 404
            level = hotel_utils.DEFAULT_LOW_STOCK_LEVEL if low_stock_level is None else low_stock_level
            cursor = conn.execute("""
                INSERT INTO inventory (item, item_key, quantity, low_stock_level, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (item_name, key, quantity, level, now, now))
            item_id = cursor.lastrowid
        else:
            item_id = existing['id']
            if action == 'add':
                conn.execute("UPDATE inventory SET quantity = quantity + ?, updated_at = ? WHERE id = ?",
                             (quantity, now, item_id))
            else:
                cursor = conn.execute("""
                    UPDATE inventory SET quantity = quantity - ?, updated_at = ?
                    WHERE id = ? AND quantity >= ?
                """, (quantity, now, item_id, quantity))
                if cursor.rowcount == 0:
                    return None, f"Cannot use {quantity} units. Only {existing['quantity']} are in stock.", 400

            if low_stock_level is not None:
                conn.execute("UPDATE inventory SET low_stock_level = ? WHERE id = ?", (low_stock_level, item_id))

        row = conn.execute("SELECT * FROM inventory WHERE id = ?", (item_id,)).fetchone()
        record_ledger_row(conn, row, quantity, action, now)
        return row, None, 200

    return run_transaction(ops)


@app.post("/inventory")
@roles_required(*INVENTORY_ROLES)
def adjust_inventory():
    """Add stock to an item (creating it if needed) or use stock from an existing item."""
    data = json_body()
    item_name = str(data.get('item') or '').strip()[:100]
    action = str(data.get('action') or '').strip().lower()

    if not item_name or data.get('quantity') in (None, '') or not action:
        return jsonify({"message": "Missing required fields"}), 400
    if action not in hotel_utils.INVENTORY_ACTIONS:
        return jsonify({"message": "Action must be 'add' or 'use'"}), 400

    quantity = hotel_utils.parse_whole_number(data.get('quantity'), minimum=1)
    if quantity is None:
        return jsonify({"message": "Quantity must be a whole number greater than 0"}), 400

    low_stock_level, error = requested_low_stock_level(data)
    if error:
        return jsonify({"message": error}), 400

    try:
        row, error, status = apply_inventory_action(item_name, quantity, action, low_stock_level)
    except sqlite3.Error as e:
        logger.error(f"Error updating inventory: {e}")
        return jsonify({"message": "Server error while updating inventory"}), 500

    if error:
        return jsonify({"message": error}), status

    record_audit('Inventory Transaction', {'item': row['item'], 'quantity': quantity, 'action': action})
    low_stock_email_sent = notify_if_low_stock(row)

    return jsonify({
        "message": "Inventory updated successfully",
        "item": serialize_inventory(row),
        "lowStockEmailSent": low_stock_email_sent,
    }), 200


@app.get("/inventory")
@roles_required(*INVENTORY_ROLES)
def list_inventory():
    try:
        rows = fetch_all("SELECT * FROM inventory ORDER BY item_key")
    except sqlite3.Error as e:
        logger.error(f"Error retrieving inventory: {e}")
        return jsonify({"message": "Failed to retrieve inventory"}), 500
    return jsonify([serialize_inventory(row) for row in rows]), 200


@app.get("/inventory/<int:item_id>")
@roles_required(*INVENTORY_ROLES)
def get_inventory_item(item_id):
    row = fetch_one("SELECT * FROM inventory WHERE id = ?", (item_id,))
    if not row:
        return jsonify({"message": "Inventory item not found"}), 404
    return jsonify(serialize_inventory(row)), 200


@app.put("/inventory/<int:item_id>")
@roles_required(*INVENTORY_ROLES)
def update_inventory_item(item_id):
    """
    Overwrite item name, quantity or low stock level directly.

    A quantity change is written to the ledger as an add/use of the difference,
    so snapshots replayed from the ledger still match the live quantity.
    """
    data = json_body()
    updates = {}

    if 'item' in data:
        item_name = str(data.get('item') or '').strip()[:100]
        if not item_name:
            return jsonify({"message": "Item name cannot be empty"}), 400
        updates['item'] = item_name
        updates['item_key'] = hotel_utils.item_key(item_name)
    if 'quantity' in data:
        quantity = hotel_utils.parse_whole_number(data.get('quantity'), minimum=0)
        if quantity is None:
            return jsonify({"message": "Quantity must be a whole number of 0 or more"}), 400
        updates['quantity'] = quantity
    low_stock_level, error = requested_low_stock_level(data)
    if error:
        return jsonify({"message": error}), 400
    if low_stock_level is not None:
        updates['low_stock_level'] = low_stock_level

    if not updates:
        return jsonify({"message": "No fields to update"}), 400

    now = hotel_utils.utc_now()
    updates['updated_at'] = now
    assignments = ", ".join(f"{column} = ?" for column in updates)

    def apply_update(conn):
        conn.execute("BEGIN IMMEDIATE")
        existing = conn.execute("SELECT * FROM inventory WHERE id = ?", (item_id,)).fetchone()
        if not existing:
            return None
        conn.execute(f"UPDATE inventory SET {assignments} WHERE id = ?", (*updates.values(), item_id))
        row = conn.execute("SELECT * FROM inventory WHERE id = ?", (item_id,)).fetchone()

        delta = row['quantity'] - existing['quantity']
        if delta:
            record_ledger_row(conn, row, abs(delta), 'add' if delta > 0 else 'use', now)
        return row

    try:
        updated = run_transaction(apply_update)
    except sqlite3.IntegrityError:
        return jsonify({"message": "An inventory item with that name already exists"}), 409
    except sqlite3.Error as e:
        logger.error(f"Error updating inventory item {item_id}: {e}")
        return jsonify({"message": "Update failed for inventory item"}), 500

    if not updated:
        return jsonify({"message": "Inventory item not found"}), 404

    record_audit('Inventory Item Updated', {'id': item_id, 'item': updated['item']})
    low_stock_email_sent = notify_if_low_stock(updated)

    return jsonify({
        "message": "Inventory item updated successfully",
        "updated": serialize_inventory(updated),
        "lowStockEmailSent": low_stock_email_sent,
    }), 200


@app.delete("/inventory/<int:item_id>")
@roles_required(*INVENTORY_ROLES)
def delete_inventory_item(item_id):
    def remove(conn):
        row = conn.execute("SELECT item FROM inventory WHERE id = ?", (item_id,)).fetchone()
        if row:
            conn.execute("DELETE FROM inventory WHERE id = ?", (item_id,))
        return row

    try:
        deleted = run_transaction(remove)
    except sqlite3.Error as e:
        logger.error(f"Error deleting inventory item {item_id}: {e}")
        return jsonify({"message": "Delete failed for inventory item"}), 500

    if not deleted:
        return jsonify({"message": "Inventory item not found"}), 404

    record_audit('Inventory Item Deleted', {'id': item_id, 'item': deleted['item']})
    return jsonify({"message": "Inventory item deleted successfully"}), 200


@app.get("/inventory/snapshot/<snapshot_date>")
@roles_required(*INVENTORY_ROLES)
def inventory_snapshot(snapshot_date):
    """
    Quantities at the end of a UTC day, rebuilt from the transaction ledger.

    Ledger rows are reported under the item's current name, so a renamed item
    keeps its history. Rows of deleted items keep the name they were logged with.
    """
    day = hotel_utils.parse_snapshot_date(snapshot_date)
    if not day:
        return jsonify({"message": "Invalid date format"}), 400

    try:
        transactions = fetch_all(
            "SELECT item_id, item, item_key, quantity, action FROM transactions WHERE timestamp < ? ORDER BY id",
            (hotel_utils.snapshot_cutoff(day),),
        )
        inventory_rows = fetch_all("SELECT id, item, item_key, low_stock_level FROM inventory")
    except sqlite3.Error as e:
        logger.error(f"Error fetching inventory snapshot: {e}")
        return jsonify({"message": "Server error while fetching snapshot"}), 500

    live_by_id = {row['id']: row for row in inventory_rows}
    live_by_key = {row['item_key']: row for row in inventory_rows}

    def current_name(transaction):
        live = live_by_id.get(transaction['item_id']) or live_by_key.get(transaction['item_key'])
        return live['item'] if live else transaction['item']

    totals = hotel_utils.replay_ledger(
        {**transaction, 'item': current_name(transaction)} for transaction in transactions
    )
    snapshot = []
    for item, quantity in sorted(totals.items(), key=lambda entry: hotel_utils.item_key(entry[0])):
        live = live_by_key.get(hotel_utils.item_key(item))
        snapshot.append({"item": item, "quantity": quantity,
                         "lowStockLevel": live['low_stock_level'] if live else 0})

    record_audit('Inventory Snapshot Fetched', {'date': snapshot_date})
    return jsonify(snapshot), 200


@app.get("/transactions")
@roles_required(*INVENTORY_ROLES)
def list_transactions():
    item_name = request.args.get('item', '').strip()
    limit = parse_limit(request.args.get('limit'))
    sql = "SELECT * FROM transactions"
    params = []

    try:
        if item_name:
            key = hotel_utils.item_key(item_name)
            live = fetch_one("SELECT id FROM inventory WHERE item_key = ?", (key,))
            sql += " WHERE item_key = ? OR item_id = ?"
            params += [key, live['id'] if live else None]
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        rows = fetch_all(sql, params)
    except sqlite3.Error as e:
        logger.error(f"Error retrieving transactions: {e}")
        return jsonify({"message": "Failed to retrieve transactions"}), 500
    return jsonify([serialize_transaction(row) for row in rows]), 200


# Audit & Notification Routes
@app.get("/audit-logs")
@roles_required('admin')
def list_audit_logs():
    action = request.args.get('action', '').strip()
    limit = parse_limit(request.args.get('limit'))
    sql = "SELECT * FROM audit_logs"
    params = []
    if action:
        sql += " WHERE action = ?"
        params.append(action)
    sql += " ORDER BY id DESC LIMIT ?"
    params.append(limit)

    try:
        rows = fetch_all(sql, params)
    except sqlite3.Error as e:
        logger.error(f"Error retrieving audit logs: {e}")
        return jsonify({"message": "Failed to retrieve audit logs"}), 500
    return jsonify([serialize_audit_log(row) for row in rows]), 200


@app.get("/notifications")
@roles_required('admin')
def list_notifications():
    status = request.args.get('status', '').strip()
    sql = "SELECT * FROM notifications"
    params = []
    if status:
        if status not in ('pending', 'sent', 'failed'):
            return jsonify({"message": "Invalid status"}), 400
        sql += " WHERE status = ?"
        params.append(status)
    sql += " ORDER BY id DESC LIMIT ?"
    params.append(parse_limit(request.args.get('limit')))

    try:
        rows = fetch_all(sql, params)
    except sqlite3.Error as e:
        logger.error(f"Error retrieving notifications: {e}")
        return jsonify({"message": "Failed to retrieve notifications"}), 500
    return jsonify([serialize_notification(row) for row in rows]), 200


@app.post("/notifications/retry")
@roles_required('admin')
def retry_notifications():
    """Retry every pending or failed notification that still has attempts left."""
    try:
        rows = fetch_all("""
            SELECT id FROM notifications
            WHERE status IN ('pending', 'failed') AND attempts < ?
            ORDER BY id
        """, (MAX_NOTIFICATION_ATTEMPTS,))
    except sqlite3.Error as e:
        logger.error(f"Error retrieving notifications to retry: {e}")
        return jsonify({"message": "Failed to retry notifications"}), 500

    sent = 0
    for row in rows:
        # One broken row must not stop the rest of the batch
        try:
            if deliver_notification(row['id']):
                sent += 1
        except sqlite3.Error as e:
            logger.error(f"Error retrying notification {row['id']}: {e}")

    record_audit('Notifications Retried', {'attempted': len(rows), 'sent': sent})
    return jsonify({"message": "Retry finished", "attempted": len(rows), "sent": sent,
                    "failed": len(rows) - sent}), 200


# Error handlers
@app.errorhandler(CSRFError)
def csrf_error_handler(e):
    return jsonify({"message": e.description}), 400


@app.errorhandler(400)
def bad_request_handler(e):
    return jsonify({"message": "Bad request"}), 400


@app.errorhandler(404)
def not_found_handler(e):
    return jsonify({"message": "Not found"}), 404


@app.errorhandler(405)
def method_not_allowed_handler(e):
    return jsonify({"message": "Method not allowed"}), 405


@app.errorhandler(429)
def ratelimit_handler(e):
    return jsonify({"message": "Too many requests. Please try again later."}), 429


@app.errorhandler(500)
def internal_error_handler(e):
    return jsonify({"message": "Internal server error"}), 500


if __name__ == "__main__":
    is_production = os.environ.get('FLASK_ENV') == 'production'

    # Fail fast when the database can't be opened
    init_db.init_db(DB_PATH)

    if not is_production:
        logger.info(f"[DEV MODE] Database: {DB_PATH}")
        logger.warning("[DEV MODE] Debug mode enabled - DO NOT USE IN PRODUCTION")
    if not mail_configured():
        logger.warning("EMAIL_USER is not set. Alerts will be queued but not sent.")

    port = int(os.environ.get("PORT", "5000"))
    app.run(debug=not is_production, host='127.0.0.1', port=port)
