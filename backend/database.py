import sqlite3
import os
import logging
from datetime import datetime
from typing import Optional, Dict, Any
from passlib.context import CryptContext

DATABASE_PATH = os.getenv('DB_PATH', 'gst-drivers.db')

# Initialize password hashing
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

logger = logging.getLogger(__name__)

USER_FIELDS = ('id', 'name', 'email', 'dob', 'avatar', 'created_at')


def init_db():
    """Initialize the database with required tables."""
    conn = None
    try:
        conn = sqlite3.connect(DATABASE_PATH)
        cursor = conn.cursor()

        # Create users table
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                email TEXT UNIQUE NOT NULL,
                password_hash TEXT,
                name TEXT,
                dob TEXT,
                avatar TEXT,
                google_id TEXT,
                created_at TEXT,
                updated_at TEXT
            )
        ''')

        # One serialized {transactions, percentages} document per user
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS user_data (
                user_id TEXT PRIMARY KEY,
                payload TEXT NOT NULL,
                updated_at TEXT,
                FOREIGN KEY (user_id) REFERENCES users (id)
            )
        ''')

        conn.commit()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Error initializing database: {str(e)}")
        raise
    finally:
        if conn:
            conn.close()


def migrate_db():
    """Migrate the database to the latest schema."""
    conn = None
    try:
        init_db()

        conn = sqlite3.connect(DATABASE_PATH)
        c = conn.cursor()

        c.execute("PRAGMA table_info(users)")
        columns = [col[1] for col in c.fetchall()]

        for column in ('name', 'dob', 'avatar', 'google_id', 'updated_at'):
            if column not in columns:
                c.execute(f'ALTER TABLE users ADD COLUMN {column} TEXT')
                logger.info(f"Added {column} column to users table")

        conn.commit()
        logger.info("Database migration completed successfully")
    except Exception as e:
        logger.error(f"Error migrating database: {str(e)}")
        raise
    finally:
        if conn:
            conn.close()


def get_db():
    """Get a database connection."""
    try:
        conn = sqlite3.connect(DATABASE_PATH)
        conn.row_factory = sqlite3.Row
        return conn
    except Exception as e:
        logger.error(f"Error connecting to database: {str(e)}")
        raise


def _public_user(row) -> Dict[str, Any]:
    user = dict(row)
    return {key: user.get(key) for key in USER_FIELDS}


def get_user_by_email(email: str) -> Optional[Dict[str, Any]]:
    """Get a user by email, including the password hash."""
    conn = get_db()
    try:
        cursor = conn.cursor()
        cursor.execute('SELECT * FROM users WHERE LOWER(email) = LOWER(?)', (email,))
        user = cursor.fetchone()
        return dict(user) if user else None
    except Exception as e:
        logger.error(f"Error getting user: {str(e)}")
        raise
    finally:
        conn.close()


def get_user_by_id(user_id: str) -> Optional[Dict[str, Any]]:
    conn = get_db()
    try:
        cursor = conn.cursor()
        cursor.execute('SELECT * FROM users WHERE id = ?', (user_id,))
        user = cursor.fetchone()
        return _public_user(user) if user else None
    finally:
        conn.close()


def create_user(user_id: str, email: str, name: str, password: Optional[str] = None,
                dob: Optional[str] = None, avatar: Optional[str] = None,
                google_id: Optional[str] = None) -> Dict[str, Any]:
    """Create a new user. Google accounts have no password."""
    conn = get_db()
    try:
        cursor = conn.cursor()
        password_hash = pwd_context.hash(password) if password else None
        now = datetime.now().isoformat()

        cursor.execute('''
            INSERT INTO users (id, email, password_hash, name, dob, avatar, google_id, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', (user_id, email.lower(), password_hash, name, dob, avatar, google_id, now, now))
        conn.commit()

        cursor.execute('SELECT * FROM users WHERE id = ?', (user_id,))
        return _public_user(cursor.fetchone())
    except sqlite3.IntegrityError:
        raise ValueError("Email already exists")
    except Exception as e:
        logger.error(f"Error creating user: {str(e)}")
        raise
    finally:
        conn.close()


def update_user(user_id: str, name: Optional[str] = None, dob: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Update the editable profile fields and return the stored user."""
    conn = get_db()
    try:
        cursor = conn.cursor()
        if name is not None:
            cursor.execute('UPDATE users SET name = ?, updated_at = ? WHERE id = ?',
                           (name, datetime.now().isoformat(), user_id))
        if dob is not None:
            cursor.execute('UPDATE users SET dob = ?, updated_at = ? WHERE id = ?',
                           (dob, datetime.now().isoformat(), user_id))
        conn.commit()

        cursor.execute('SELECT * FROM users WHERE id = ?', (user_id,))
        row = cursor.fetchone()
        return _public_user(row) if row else None
    finally:
        conn.close()


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    """Verify a password against its hash."""
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def load_user_data(user_id: str) -> Optional[str]:
    """Raw persisted payload for a user, or None when nothing was ever saved."""
    conn = get_db()
    try:
        cursor = conn.cursor()
        cursor.execute('SELECT payload FROM user_data WHERE user_id = ?', (user_id,))
        row = cursor.fetchone()
        return row['payload'] if row else None
    finally:
        conn.close()


def save_user_data(user_id: str, payload: str) -> None:
    conn = get_db()
    try:
        cursor = conn.cursor()
        cursor.execute('''
            INSERT INTO user_data (user_id, payload, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET payload = excluded.payload, updated_at = excluded.updated_at
        ''', (user_id, payload, datetime.now().isoformat()))
        conn.commit()
    finally:
        conn.close()
