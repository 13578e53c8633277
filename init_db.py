"""
Database initialization script for the Hotel Operations App.
Creates the schema (safe to run repeatedly) and the bootstrap admin account.

Usage:
    python init_db.py           # create missing tables
    python init_db.py --reset   # drop and recreate everything (local development only)
"""
import os
import sys
import secrets
import sqlite3

import bcrypt
from dotenv import load_dotenv

load_dotenv()

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DB_PATH = os.environ.get("DB_PATH") or os.path.join(BASE_DIR, "hotel.db")

TABLES = (
    "notifications",
    "audit_logs",
    "transactions",
    "inventory",
    "status_reports",
    "checklists",
    "login_attempts",
    "users",
)


def create_schema(conn):
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            username TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            role TEXT NOT NULL CHECK(role IN ('admin', 'housekeeper', 'store_manager')),
            is_active INTEGER DEFAULT 1,
            force_password_change INTEGER DEFAULT 0,
            created_at TIMESTAMP DEFAULT (datetime('now')),
            last_login TIMESTAMP
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS login_attempts (
            username TEXT PRIMARY KEY,
            attempt_count INTEGER NOT NULL DEFAULT 0,
            locked_until TEXT,
            last_attempt TEXT
        )
    """)

    # items: JSON object of amenity key -> "yes"/"no"
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS checklists (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            room TEXT NOT NULL,
            date TEXT NOT NULL,
            items TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS status_reports (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            room TEXT NOT NULL,
            category TEXT NOT NULL,
            status TEXT NOT NULL,
            remarks TEXT NOT NULL DEFAULT '',
            date_time TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)

    # item_key is the casefolded name; lookups and uniqueness go through it
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS inventory (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            item TEXT NOT NULL COLLATE NOCASE,
            item_key TEXT NOT NULL,
            quantity INTEGER NOT NULL DEFAULT 0 CHECK(quantity >= 0),
            low_stock_level INTEGER NOT NULL DEFAULT 10 CHECK(low_stock_level >= 0),
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)

    # Append-only ledger; rows outlive deleted inventory items.
    # item_id follows the inventory row across renames.
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            item_id INTEGER,
            item TEXT NOT NULL,
            item_key TEXT NOT NULL,
            quantity INTEGER NOT NULL,
            action TEXT NOT NULL CHECK(action IN ('add', 'use')),
            timestamp TEXT NOT NULL
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS audit_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            action TEXT NOT NULL,
            details TEXT NOT NULL,
            username TEXT,
            role TEXT,
            timestamp TEXT NOT NULL
        )
    """)

    # Outbox: status 'pending', 'sent' or 'failed'
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS notifications (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            kind TEXT NOT NULL,
            recipient TEXT,
            subject TEXT NOT NULL,
            body_text TEXT NOT NULL,
            body_html TEXT,
            status TEXT NOT NULL DEFAULT 'pending' CHECK(status IN ('pending', 'sent', 'failed')),
            attempts INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            created_at TEXT NOT NULL,
            sent_at TEXT
        )
    """)

    upgrade_item_keys(cursor)

    cursor.execute("CREATE INDEX IF NOT EXISTS idx_checklists_date ON checklists(date)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_status_reports_date_time ON status_reports(date_time)")
    cursor.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_inventory_item_key ON inventory(item_key)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_transactions_timestamp ON transactions(timestamp)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_transactions_item_key ON transactions(item_key)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_transactions_item_id ON transactions(item_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_audit_logs_timestamp ON audit_logs(timestamp)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_notifications_status ON notifications(status)")

    conn.commit()


def column_exists(cursor, table: str, column: str) -> bool:
    cursor.execute(f"PRAGMA table_info({table})")
    columns = [row[1] for row in cursor.fetchall()]
    return column in columns


def upgrade_item_keys(cursor):
    """
    Add and backfill the item key columns on databases created before they existed.

    SQLite's NOCASE only folds ASCII, so the keys are computed here with casefold().
    """
    if not column_exists(cursor, "inventory", "item_key"):
        cursor.execute("ALTER TABLE inventory ADD COLUMN item_key TEXT NOT NULL DEFAULT ''")
        rows = cursor.execute("SELECT id, item FROM inventory").fetchall()
        cursor.executemany("UPDATE inventory SET item_key = ? WHERE id = ?",
                           [(item.casefold(), item_id) for item_id, item in rows])
        print("Added item_key column to inventory")

    if not column_exists(cursor, "transactions", "item_key"):
        cursor.execute("ALTER TABLE transactions ADD COLUMN item_id INTEGER")
        cursor.execute("ALTER TABLE transactions ADD COLUMN item_key TEXT NOT NULL DEFAULT ''")
        rows = cursor.execute("SELECT id, item FROM transactions").fetchall()
        cursor.executemany("UPDATE transactions SET item_key = ? WHERE id = ?",
                           [(item.casefold(), row_id) for row_id, item in rows])
        # Link old ledger rows to the live item carrying the same name
        cursor.execute("""
            UPDATE transactions SET item_id = (
                SELECT inventory.id FROM inventory WHERE inventory.item_key = transactions.item_key
            )
        """)
        print("Added item_id and item_key columns to transactions")


def drop_schema(conn):
    for table in TABLES:
        conn.execute(f"DROP TABLE IF EXISTS {table}")
    conn.commit()


def ensure_admin(conn):
    """
    Create the bootstrap admin when no admin account exists.

    Uses ADMIN_USERNAME / ADMIN_PASSWORD from the environment. Without a
    password a random one is generated and the account must change it at
    first login.

    Returns:
        str | None: The username created, or None if an admin already existed.
    """
    existing = conn.execute("SELECT COUNT(*) FROM users WHERE role = 'admin'").fetchone()[0]
    if existing:
        return None

    username = os.environ.get("ADMIN_USERNAME") or "admin"
    password = os.environ.get("ADMIN_PASSWORD")
    force_change = 0
    if not password:
        password = secrets.token_urlsafe(12)
        force_change = 1
        print("=" * 60)
        print("IMPORTANT: Default admin account created")
        print(f"Username: {username}")
        print(f"Password: {password}")
        print("Please log in and change this password immediately!")
        print("=" * 60)

    password_hash = bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')
    conn.execute("""
        INSERT INTO users (username, password_hash, role, is_active, force_password_change)
        VALUES (?, ?, 'admin', 1, ?)
    """, (username, password_hash, force_change))
    conn.commit()
    return username


def init_db(db_path=None, reset=False, seed_admin=True):
    db_path = db_path or DB_PATH
    conn = sqlite3.connect(db_path)
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        if reset:
            drop_schema(conn)
        create_schema(conn)
        if seed_admin:
            ensure_admin(conn)
    finally:
        conn.close()


if __name__ == "__main__":
    reset = "--reset" in sys.argv[1:]
    init_db(reset=reset)
    print(f"Database initialized at: {DB_PATH}")
