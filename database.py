"""
Database module for Local Ollama Chat
SQLite store, user directory and the append-only conversation log
"""
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional, Tuple, Union

from loguru import logger

from errors import NotFound, PersistenceError, ValidationError
from models import Turn, User, UserStats

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT UNIQUE NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS conversations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    model TEXT NOT NULL,
    prompt TEXT NOT NULL,
    response TEXT NOT NULL,
    image_data TEXT,
    timestamp TEXT NOT NULL,
    FOREIGN KEY (user_id) REFERENCES users (id)
);

CREATE INDEX IF NOT EXISTS idx_conversations_user_recent
    ON conversations (user_id, timestamp DESC, id DESC);
"""


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class ChatStore:
    """Handle on the SQLite database file.

    A fresh connection is opened per operation, so one store may be shared by
    every request thread. Concurrent writers are serialized by SQLite itself.
    """

    def __init__(self, db_path: Union[str, Path], timeout: float = 30.0):
        self.db_path = Path(db_path)
        self.timeout = timeout

    def initialize(self) -> "ChatStore":
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as conn:
            conn.executescript(SCHEMA)
        logger.info(f"Database initialized at {self.db_path}")
        return self

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection that commits on success and rolls back on error"""
        conn = sqlite3.connect(str(self.db_path), timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def ping(self) -> None:
        try:
            with self.connection() as conn:
                conn.execute("SELECT 1").fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Database unavailable: {e}") from e


def _row_to_user(row: sqlite3.Row) -> User:
    return User(id=row["id"], name=row["name"], created_at=row["created_at"])


def _row_to_turn(row: sqlite3.Row) -> Turn:
    return Turn(
        id=row["id"],
        user_id=row["user_id"],
        model=row["model"],
        prompt=row["prompt"],
        response=row["response"],
        image=row["image_data"],
        timestamp=row["timestamp"],
    )


class UserDirectory:
    """Resolves display names to stable user identities"""

    def __init__(self, store: ChatStore):
        self._store = store

    @staticmethod
    def normalize(name) -> str:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Name is required")
        return name.strip()

    def resolve_status(self, name: str) -> Tuple[User, bool]:
        """Create the user if absent; return (user, created).

        Uniqueness is enforced by the UNIQUE constraint on users.name, so two
        concurrent first logins with the same name still yield one row.
        """
        name = self.normalize(name)
        try:
            with self._store.connection() as conn:
                cur = conn.execute(
                    "INSERT OR IGNORE INTO users (name, created_at) VALUES (?, ?)",
                    (name, utc_now()),
                )
                created = cur.rowcount > 0
                row = conn.execute("SELECT * FROM users WHERE name = ?", (name,)).fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to resolve user: {e}") from e

        if row is None:
            raise PersistenceError(f"User row missing after insert: {name}")

        if created:
            logger.info(f"New user created: {name}")
        else:
            logger.info(f"Welcome back: {name}")
        return _row_to_user(row), created

    def resolve(self, name: str) -> User:
        user, _ = self.resolve_status(name)
        return user

    def lookup(self, name: str) -> User:
        name = name.strip() if isinstance(name, str) else ""
        try:
            with self._store.connection() as conn:
                row = conn.execute("SELECT * FROM users WHERE name = ?", (name,)).fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to look up user: {e}") from e
        if row is None:
            raise NotFound("User not found")
        return _row_to_user(row)

    def stats(self, user_id: int) -> Optional[UserStats]:
        """Aggregate turn statistics, or None when the user has no turns"""
        try:
            with self._store.connection() as conn:
                row = conn.execute(
                    """
                    SELECT
                        COUNT(*) AS total_turns,
                        COUNT(DISTINCT model) AS models_used,
                        MIN(timestamp) AS first_turn,
                        MAX(timestamp) AS last_turn
                    FROM conversations
                    WHERE user_id = ?
                    """,
                    (user_id,),
                ).fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to read user stats: {e}") from e

        if not row or row["total_turns"] == 0:
            return None
        return UserStats(
            total_turns=row["total_turns"],
            distinct_models_used=row["models_used"],
            first_turn_at=row["first_turn"],
            last_turn_at=row["last_turn"],
        )


class ConversationLog:
    """Append-only per-user record of turns"""

    def __init__(self, store: ChatStore):
        self._store = store

    @property
    def store(self) -> ChatStore:
        return self._store

    def append(self, user_id: int, model: str, prompt: str, response: str,
               image: Optional[str] = None) -> Turn:
        """Persist one turn. This is the single write path for history."""
        if not isinstance(model, str) or not model.strip():
            raise ValidationError("A turn needs a model name")
        if not prompt and not image:
            raise ValidationError("A turn needs a prompt or an image")
        timestamp = utc_now()
        try:
            with self._store.connection() as conn:
                cur = conn.execute(
                    """
                    INSERT INTO conversations (user_id, model, prompt, response, image_data, timestamp)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (user_id, model, prompt, response, image, timestamp),
                )
                turn_id = cur.lastrowid
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to save conversation: {e}") from e

        logger.debug(f"Saved turn {turn_id} for user {user_id}")
        return Turn(
            id=turn_id,
            user_id=user_id,
            model=model,
            prompt=prompt,
            response=response,
            image=image,
            timestamp=timestamp,
        )

    def recent(self, user_id: int, limit: int, text_only: bool = False) -> List[Turn]:
        """Most-recent-first turns for a user.

        With text_only, image turns are filtered in the query before the
        LIMIT applies, so the result still holds up to `limit` rows.
        """
        if limit <= 0:
            return []
        query = "SELECT * FROM conversations WHERE user_id = ? "
        if text_only:
            query += "AND image_data IS NULL "
        query += "ORDER BY timestamp DESC, id DESC LIMIT ?"

        try:
            with self._store.connection() as conn:
                rows = conn.execute(query, (user_id, limit)).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to read conversation history: {e}") from e
        return [_row_to_turn(r) for r in rows]

    def clear(self, user_id: int) -> int:
        """Delete every turn for a user and return how many were removed"""
        try:
            with self._store.connection() as conn:
                cur = conn.execute("DELETE FROM conversations WHERE user_id = ?", (user_id,))
                removed = cur.rowcount
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to clear conversation history: {e}") from e
        logger.info(f"Cleared {removed} conversations for user {user_id}")
        return removed
