"""
Create a staff account or reset an existing one's password from the command line.
"""
import getpass
import sqlite3

import bcrypt

import hotel_utils
from init_db import DB_PATH

ROLES = ('admin', 'housekeeper', 'store_manager')


def create_or_reset_user():
    print(f"Connecting to database at: {DB_PATH}")
    conn = sqlite3.connect(DB_PATH)

    username = input("Username: ").strip()
    if len(username) < 3:
        print("Username must be at least 3 characters.")
        conn.close()
        return

    new_password = getpass.getpass("New password: ")
    problem = hotel_utils.password_problems(new_password)
    if problem:
        print(problem)
        conn.close()
        return

    hashed = bcrypt.hashpw(new_password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')

    user = conn.execute("SELECT id FROM users WHERE username = ?", (username,)).fetchone()
    if user:
        conn.execute("UPDATE users SET password_hash = ?, is_active = 1 WHERE username = ?", (hashed, username))
        print(f"Updated password for existing user: {username}")
    else:
        role = input(f"Role for new user ({', '.join(ROLES)}): ").strip()
        if role not in ROLES:
            print("Invalid role. Operation cancelled.")
            conn.close()
            return
        conn.execute("""
            INSERT INTO users (username, password_hash, role, is_active, force_password_change)
            VALUES (?, ?, ?, 1, 0)
        """, (username, hashed, role))
        print(f"Created {role} user: {username}")

    conn.commit()
    conn.close()


if __name__ == "__main__":
    create_or_reset_user()
