"""
Reset a staff password from the command line.

Reads RESET_USERNAME and RESET_PASSWORD from the environment (or .env).
The account is flagged so the user must pick a new password at next login.
"""

import os

import psycopg2
from dotenv import load_dotenv
from werkzeug.security import generate_password_hash

MIN_PASSWORD_LENGTH = 6


def reset_password(database_url, username, raw_password):
    """Return the number of accounts updated (0 or 1)."""
    password_hash = generate_password_hash(raw_password)
    with psycopg2.connect(database_url) as conn:
        with conn.cursor() as c:
            c.execute(
                """UPDATE users SET password_hash = %s, temp_password = TRUE, updated_at = NOW()
                   WHERE LOWER(username) = LOWER(%s)""",
                (password_hash, username),
            )
            updated = int(c.rowcount or 0)
        conn.commit()
    return updated


def main():
    load_dotenv()
    database_url = (os.getenv("DATABASE_URL") or "").strip()
    username = (os.getenv("RESET_USERNAME") or "").strip()
    raw_password = os.getenv("RESET_PASSWORD") or ""
    min_length = int(os.getenv("MIN_PASSWORD_LENGTH") or MIN_PASSWORD_LENGTH)

    if not database_url:
        raise RuntimeError("DATABASE_URL not found. Set it in .env")
    if not username:
        raise RuntimeError("RESET_USERNAME is required.")
    if len(raw_password) < min_length:
        raise RuntimeError(f"RESET_PASSWORD must be at least {min_length} characters.")

    if reset_password(database_url, username, raw_password):
        print(f"Password reset successfully for {username}. A new password is required at next login.")
    else:
        print(f"No user found for {username}.")


if __name__ == "__main__":
    main()
