"""SQLite-backed persistence for users and tasks."""
from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional, Sequence

from sqlalchemy.pool import QueuePool

from .models import Task, User
from .passwords import hash_password, verify_password

DEFAULT_POOL_SIZE = 10
DEFAULT_POOL_TIMEOUT = 30.0
DEFAULT_STATUS = "open"

_TASK_COLUMNS = "id, user_id, title, description, status, created_at, updated_at"


class DuplicateEmailError(ValueError):
    """Raised when a registration collides with an existing email address."""

    def __init__(self, email: str) -> None:
        super().__init__("Email already registered")
        self.email = email


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the application database."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "tasks.sqlite3").resolve(strict=False)


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


def _parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value)


def normalize_email(email: str) -> str:
    return email.strip().lower()


@dataclass(frozen=True)
class QueryResult:
    """Rows returned by a statement together with its write summary."""

    rows: List[sqlite3.Row] = field(default_factory=list)
    rowcount: int = -1
    lastrowid: Optional[int] = None


class Database:
    """Gateway around a pooled SQLite database holding users and tasks.

    At most ``pool_size`` connections are opened; callers beyond that wait up to
    ``pool_timeout`` seconds and then fail with :class:`sqlalchemy.exc.TimeoutError`.
    """

    def __init__(
        self,
        path: Path,
        *,
        pool_size: int = DEFAULT_POOL_SIZE,
        pool_timeout: float = DEFAULT_POOL_TIMEOUT,
    ) -> None:
        if pool_size < 1:
            raise ValueError("Connection pool size must be at least 1")
        _ensure_directory(path)
        self._path = path
        self._busy_timeout = pool_timeout
        self._pool = QueuePool(self._connect, pool_size=pool_size, max_overflow=0, timeout=pool_timeout)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def pool(self) -> QueuePool:
        return self._pool

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, check_same_thread=False, timeout=self._busy_timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Borrow a pooled connection; the block commits or rolls back on exit."""

        pooled = self._pool.connect()
        try:
            conn = pooled.driver_connection
            with conn:
                yield conn
        finally:
            pooled.close()

    def initialize(self) -> None:
        """Create the required tables if they do not already exist."""

        with self.connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS tasks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER REFERENCES users(id) ON DELETE CASCADE,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    status TEXT NOT NULL DEFAULT 'open',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_tasks_user_created ON tasks(user_id, created_at);
                """
            )

    def execute(self, sql: str, params: Sequence[object] = ()) -> QueryResult:
        """Run a single parameter-bound statement and return its result."""

        with self.connection() as conn:
            cursor = conn.execute(sql, tuple(params))
            rows = cursor.fetchall()
            return QueryResult(rows=rows, rowcount=cursor.rowcount, lastrowid=cursor.lastrowid)

    def healthcheck(self) -> None:
        """Round-trip a trivial query; raises :class:`sqlite3.Error` when unreachable."""

        self.execute("SELECT 1")

    def close(self) -> None:
        self._pool.dispose()

    # ------------------------------------------------------------------
    # User management
    # ------------------------------------------------------------------
    def create_user(self, name: str, email: str, password: str) -> User:
        """Create a new user, relying on the UNIQUE constraint for email conflicts."""

        normalized_name = (name or "").strip()
        normalized_email = normalize_email(email or "")
        if not normalized_name or not normalized_email or not password:
            raise ValueError("Name, email, and password are required")

        password_hash = hash_password(password)
        created_at = _current_timestamp()

        try:
            result = self.execute(
                "INSERT INTO users (name, email, password_hash, created_at) VALUES (?, ?, ?, ?)",
                (normalized_name, normalized_email, password_hash, _serialize_datetime(created_at)),
            )
        except sqlite3.IntegrityError as exc:
            raise DuplicateEmailError(normalized_email) from exc

        return User(
            id=int(result.lastrowid),
            name=normalized_name,
            email=normalized_email,
            created_at=created_at,
        )

    def get_user(self, user_id: int) -> Optional[User]:
        result = self.execute("SELECT * FROM users WHERE id = ?", (user_id,))
        if not result.rows:
            return None
        return self._row_to_user(result.rows[0])

    def list_users(self) -> List[User]:
        result = self.execute("SELECT * FROM users ORDER BY id")
        return [self._row_to_user(row) for row in result.rows]

    def authenticate_user(self, email: str, password: str) -> Optional[User]:
        """Return the user when the credentials match, ``None`` otherwise."""

        result = self.execute(
            "SELECT * FROM users WHERE email = ?",
            (normalize_email(email),),
        )
        if not result.rows:
            return None
        row = result.rows[0]
        if not verify_password(password, row["password_hash"]):
            return None
        return self._row_to_user(row)

    # ------------------------------------------------------------------
    # Task management
    # ------------------------------------------------------------------
    # ``user_id IS ?`` matches NULL owners as well, so the same statements
    # serve both owned and global task lists.
    def list_tasks(self, owner_id: Optional[int]) -> List[Task]:
        result = self.execute(
            f"SELECT {_TASK_COLUMNS} FROM tasks WHERE user_id IS ? ORDER BY created_at DESC, id DESC",
            (owner_id,),
        )
        return [self._row_to_task(row) for row in result.rows]

    def get_task(self, owner_id: Optional[int], task_id: int) -> Optional[Task]:
        result = self.execute(
            f"SELECT {_TASK_COLUMNS} FROM tasks WHERE id = ? AND user_id IS ?",
            (task_id, owner_id),
        )
        if not result.rows:
            return None
        return self._row_to_task(result.rows[0])

    def create_task(
        self,
        owner_id: Optional[int],
        *,
        title: str,
        description: Optional[str] = None,
        status: Optional[str] = None,
    ) -> Task:
        values = _normalize_task_fields(title, description, status)
        timestamp = _serialize_datetime(_current_timestamp())
        result = self.execute(
            """
            INSERT INTO tasks (user_id, title, description, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (owner_id, *values, timestamp, timestamp),
        )

        task = self.get_task(owner_id, int(result.lastrowid))
        if task is None:
            raise RuntimeError("Failed to load task after creation")
        return task

    def update_task(
        self,
        owner_id: Optional[int],
        task_id: int,
        *,
        title: str,
        description: Optional[str] = None,
        status: Optional[str] = None,
    ) -> Optional[Task]:
        """Replace title, description and status; ``None`` when nothing matched."""

        values = _normalize_task_fields(title, description, status)
        result = self.execute(
            """
            UPDATE tasks
               SET title = ?, description = ?, status = ?, updated_at = ?
             WHERE id = ? AND user_id IS ?
            """,
            (*values, _serialize_datetime(_current_timestamp()), task_id, owner_id),
        )
        if result.rowcount == 0:
            return None
        return self.get_task(owner_id, task_id)

    def delete_task(self, owner_id: Optional[int], task_id: int) -> bool:
        result = self.execute(
            "DELETE FROM tasks WHERE id = ? AND user_id IS ?",
            (task_id, owner_id),
        )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _row_to_user(self, row: sqlite3.Row) -> User:
        return User(
            id=int(row["id"]),
            name=str(row["name"]),
            email=str(row["email"]),
            created_at=_parse_datetime(str(row["created_at"])),
        )

    def _row_to_task(self, row: sqlite3.Row) -> Task:
        owner = row["user_id"]
        return Task(
            id=int(row["id"]),
            user_id=int(owner) if owner is not None else None,
            title=str(row["title"]),
            description=str(row["description"]),
            status=str(row["status"]),
            created_at=_parse_datetime(str(row["created_at"])),
            updated_at=_parse_datetime(str(row["updated_at"])),
        )


def _normalize_task_fields(
    title: str,
    description: Optional[str],
    status: Optional[str],
) -> tuple[str, str, str]:
    normalized_title = title.strip() if isinstance(title, str) else ""
    if not normalized_title:
        raise ValueError("Title is required")
    normalized_description = (description or "").strip()
    return normalized_title, normalized_description, status or DEFAULT_STATUS


__all__ = [
    "Database",
    "DuplicateEmailError",
    "QueryResult",
    "normalize_email",
    "resolve_database_path",
]
