"""
SQLite storage for the Wingman web app: user accounts and the AI
providers the settings panel can connect to.

Every statement is parameterized. Connections are short-lived, one per
call, so each request handler gets its own and SQLite does the locking.
"""

import json
import logging
import sqlite3
import uuid
from contextlib import closing, contextmanager
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


def get_default_db_path():
    return Path.home() / ".wingman" / "wingman.db"


class DatabaseError(Exception):
    """Any failure talking to the database."""


class ConstraintError(DatabaseError):
    """A write hit a UNIQUE or PRIMARY KEY constraint (duplicate email or id)."""


SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    name          TEXT NOT NULL,
    email         TEXT NOT NULL UNIQUE,
    password      TEXT NOT NULL,
    api_key       TEXT,
    profile_image TEXT,
    created_at    TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ai_providers (
    id            TEXT PRIMARY KEY,
    name          TEXT NOT NULL,
    base_urls     TEXT NOT NULL DEFAULT '[]',
    default_model TEXT,
    requires_auth INTEGER NOT NULL DEFAULT 1,
    auth_header   TEXT,
    created_at    TEXT NOT NULL,
    updated_at    TEXT NOT NULL
);
"""


def _now():
    return datetime.now(timezone.utc).isoformat()


def parse_base_urls(value):
    """
    base_urls may arrive as a JSON list, a comma-separated string or an
    already-split list. Always returns a list of strings.
    """
    if value is None or value == "":
        return []
    if isinstance(value, (list, tuple)):
        return [str(u) for u in value]
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    text = str(value)
    try:
        parsed = json.loads(text)
    except ValueError:
        parsed = None
    if isinstance(parsed, list):
        return [str(u) for u in parsed]
    return [u.strip() for u in text.split(",") if u.strip()]


def _provider_from_row(row):
    provider = dict(row)
    provider["base_urls"] = parse_base_urls(provider.get("base_urls"))
    provider["requires_auth"] = bool(provider.get("requires_auth"))
    return provider


class WingmanDB:
    DB_TIMEOUT = 10.0

    def __init__(self, db_path=None):
        self.db_path = Path(db_path) if db_path else get_default_db_path()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _connect(self):
        try:
            with closing(sqlite3.connect(self.db_path, timeout=self.DB_TIMEOUT)) as conn:
                conn.row_factory = sqlite3.Row
                with conn:
                    yield conn
        except sqlite3.IntegrityError as e:
            raise ConstraintError(str(e)) from e
        except sqlite3.Error as e:
            raise DatabaseError(str(e)) from e

    def _init_db(self):
        with self._connect() as conn:
            conn.executescript(SCHEMA)
        logger.debug("Database ready at %s", self.db_path)

    # ── Users ────────────────────────────────────────────────────

    def get_user_by_email(self, email):
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, name, email, password, profile_image FROM users WHERE email = ?",
                (email,),
            ).fetchone()
        return dict(row) if row else None

    def create_user(self, name, email, password_hash, api_key=None, profile_image=None):
        """Returns the new id. A taken email raises ConstraintError."""
        with self._connect() as conn:
            cur = conn.execute(
                "INSERT INTO users (name, email, password, api_key, profile_image, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (name, email, password_hash, api_key, profile_image, _now()),
            )
        return cur.lastrowid

    def update_password(self, user_id, password_hash):
        """Returns the number of rows changed (0 for an unknown id)."""
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE users SET password = ? WHERE id = ?",
                (password_hash, user_id),
            )
        return cur.rowcount

    # ── Providers ────────────────────────────────────────────────

    def add_provider(self, name, base_urls, default_model=None,
                     requires_auth=True, auth_header=None, provider_id=None):
        provider_id = provider_id or str(uuid.uuid4())
        now = _now()
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO ai_providers "
                "(id, name, base_urls, default_model, requires_auth, auth_header, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (provider_id, name, json.dumps(list(base_urls)), default_model,
                 int(bool(requires_auth)), auth_header, now, now),
            )
        return provider_id

    def get_all_providers(self):
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM ai_providers ORDER BY created_at ASC, rowid ASC"
            ).fetchall()
        return [_provider_from_row(r) for r in rows]

    def get_provider_by_id(self, provider_id):
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM ai_providers WHERE id = ?", (provider_id,)
            ).fetchone()
        return _provider_from_row(row) if row else None

    def get_default_provider(self):
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM ai_providers ORDER BY created_at ASC, rowid ASC LIMIT 1"
            ).fetchone()
        return _provider_from_row(row) if row else None

    def seed_providers(self, providers):
        """
        Insert provider rows from dicts shaped like the table columns.
        Rows whose id is already present are skipped, so seeding twice
        is harmless. Returns the ids that were added.
        """
        added = []
        for entry in providers:
            try:
                provider_id = self.add_provider(
                    entry["name"],
                    parse_base_urls(entry.get("base_urls")),
                    default_model=entry.get("default_model"),
                    requires_auth=entry.get("requires_auth", True),
                    auth_header=entry.get("auth_header"),
                    provider_id=entry.get("id"),
                )
            except ConstraintError:
                logger.info("Provider %s already present, skipping", entry.get("id"))
                continue
            logger.info("Seeded provider %s (%s)", entry["name"], provider_id)
            added.append(provider_id)
        return added
