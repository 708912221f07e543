"""
Session and transcript storage.

Two interchangeable backends behind the SessionStore protocol:
- InMemorySessionStore: lock-guarded dicts, lost on restart
- SqliteSessionStore: durable SQLite file with versioned schema migrations
"""
from __future__ import annotations

import sqlite3
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Protocol

from .config import SESSION_DB_PATH, SESSION_STORE
from .errors import ConfigurationError, SessionNotFoundError, ValidationError
from .observability import get_logger

logger = get_logger(__name__)

SOURCE_KINDS = ("url", "pdf", "topic-only")
MESSAGE_ROLES = ("user", "assistant")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class ContentSession:
    id: str
    topic: str
    source_kind: str
    created_at: datetime
    url: str | None = None
    title: str | None = None
    extracted_content: str | None = None
    word_count: int | None = None
    read_time: int | None = None
    model_used: str | None = None
    file_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "title": self.title,
            "topic": self.topic,
            "extractedContent": self.extracted_content,
            "wordCount": self.word_count,
            "readTime": self.read_time,
            "modelUsed": self.model_used,
            "sourceType": self.source_kind,
            "fileName": self.file_name,
            "createdAt": _iso(self.created_at),
        }


@dataclass(frozen=True)
class Message:
    id: str
    session_id: str
    role: str
    content: str
    timestamp: datetime
    model_used: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "role": self.role,
            "content": self.content,
            "modelUsed": self.model_used,
            "timestamp": _iso(self.timestamp),
        }


def validate_session_fields(
    *,
    topic: str,
    source_kind: str,
    url: str | None,
    file_name: str | None,
    extracted_content: str | None,
):
    """Enforces the url / fileName / topic-only exclusivity and the content-null rule."""
    if not str(topic or "").strip():
        raise ValidationError("Topic is required")
    if source_kind not in SOURCE_KINDS:
        raise ValidationError(f"Unknown source kind: {source_kind!r}")
    if source_kind == "url" and (not url or file_name):
        raise ValidationError("URL sessions need a url and no file name")
    if source_kind == "pdf" and (not file_name or url):
        raise ValidationError("PDF sessions need a file name and no url")
    if source_kind == "topic-only":
        if url or file_name:
            raise ValidationError("Topic-only sessions take neither url nor file name")
        if extracted_content is not None:
            raise ValidationError("Topic-only sessions have no extracted content")
    elif extracted_content is None:
        raise ValidationError(f"{source_kind} sessions require extracted content")


def _validate_message(role: str, content: str):
    if role not in MESSAGE_ROLES:
        raise ValidationError(f"Unknown message role: {role!r}")
    if not str(content or "").strip():
        raise ValidationError("Message content is required")


class SessionStore(Protocol):
    def create_session(
        self,
        *,
        topic: str,
        source_kind: str,
        url: str | None = None,
        title: str | None = None,
        extracted_content: str | None = None,
        word_count: int | None = None,
        read_time: int | None = None,
        model_used: str | None = None,
        file_name: str | None = None,
    ) -> ContentSession:
        ...

    def get_session(self, session_id: str) -> ContentSession | None:
        ...

    def list_sessions(self) -> list[ContentSession]:
        ...

    def append_message(
        self,
        session_id: str,
        role: str,
        content: str,
        model_used: str | None = None,
    ) -> Message:
        ...

    def list_messages(self, session_id: str) -> list[Message]:
        ...

    def close(self):
        ...


class InMemorySessionStore:
    """Process-local store; each append is an atomic insert under one lock."""

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: dict[str, ContentSession] = {}
        self._messages: dict[str, list[Message]] = {}

    def create_session(self, *, topic: str, source_kind: str, **fields: Any) -> ContentSession:
        validate_session_fields(
            topic=topic,
            source_kind=source_kind,
            url=fields.get("url"),
            file_name=fields.get("file_name"),
            extracted_content=fields.get("extracted_content"),
        )
        session = ContentSession(
            id=str(uuid.uuid4()),
            topic=str(topic).strip(),
            source_kind=source_kind,
            created_at=_utcnow(),
            **fields,
        )
        with self._lock:
            self._sessions[session.id] = session
            self._messages[session.id] = []
        logger.info("session_created", session_id=session.id, source_kind=source_kind, backend="memory")
        return session

    def get_session(self, session_id: str) -> ContentSession | None:
        with self._lock:
            return self._sessions.get(str(session_id))

    def list_sessions(self) -> list[ContentSession]:
        with self._lock:
            # Newest insertion first so equal timestamps still list newest first.
            sessions = list(reversed(self._sessions.values()))
        return sorted(sessions, key=lambda s: s.created_at, reverse=True)

    def append_message(
        self,
        session_id: str,
        role: str,
        content: str,
        model_used: str | None = None,
    ) -> Message:
        _validate_message(role, content)
        session_id = str(session_id)
        with self._lock:
            history = self._messages.get(session_id)
            if history is None:
                raise SessionNotFoundError(session_id)
            timestamp = _utcnow()
            if history and timestamp < history[-1].timestamp:
                timestamp = history[-1].timestamp
            message = Message(
                id=str(uuid.uuid4()),
                session_id=session_id,
                role=role,
                content=str(content),
                timestamp=timestamp,
                model_used=model_used,
            )
            history.append(message)
        return message

    def list_messages(self, session_id: str) -> list[Message]:
        with self._lock:
            return list(self._messages.get(str(session_id), []))

    def close(self):
        return None


# ==============================================================================
# SQLite backend
# ==============================================================================
MigrationRunner = Callable[[sqlite3.Connection], None]


@dataclass(frozen=True)
class SqliteMigration:
    version: int
    name: str
    statements: tuple[str, ...] = ()
    runner: MigrationRunner | None = None


def apply_sqlite_migrations(
    conn: sqlite3.Connection,
    *,
    component: str,
    migrations: list[SqliteMigration],
):
    """Applies ordered migrations for a component and records applied versions."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            component TEXT NOT NULL,
            version INTEGER NOT NULL,
            name TEXT NOT NULL,
            applied_at TEXT NOT NULL,
            PRIMARY KEY(component, version)
        )
        """
    )
    applied = {
        int(row[0])
        for row in conn.execute(
            "SELECT version FROM schema_migrations WHERE component = ?",
            (component,),
        ).fetchall()
    }

    for migration in sorted(migrations, key=lambda m: int(m.version)):
        if int(migration.version) in applied:
            continue
        for statement in migration.statements:
            sql = str(statement or "").strip()
            if sql:
                conn.execute(sql)
        if callable(migration.runner):
            migration.runner(conn)
        conn.execute(
            "INSERT INTO schema_migrations (component, version, name, applied_at) VALUES (?, ?, ?, ?)",
            (component, int(migration.version), migration.name, _utcnow().isoformat(timespec="seconds")),
        )
        logger.info("db_migration_applied", component=component, version=migration.version, name=migration.name)


_SESSION_COLUMNS = (
    "id, topic, source_kind, url, title, extracted_content, word_count, "
    "read_time, model_used, file_name, created_at"
)


class SqliteSessionStore:
    """Durable store sharing one guarded connection across request threads."""

    def __init__(self, db_path: str | Path = SESSION_DB_PATH):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = self._connect()
        try:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
        except sqlite3.Error:
            pass
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _connection(self):
        with self._lock:
            if self._conn is None:
                raise RuntimeError("session store connection is closed")
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def close(self):
        with self._lock:
            if self._conn is None:
                return
            try:
                self._conn.commit()
            except sqlite3.Error:
                pass
            self._conn.close()
            self._conn = None

    def _ensure_schema(self):
        migrations = [
            SqliteMigration(
                version=1,
                name="create_session_tables",
                statements=(
                    """
                    CREATE TABLE IF NOT EXISTS content_sessions (
                        id TEXT PRIMARY KEY,
                        topic TEXT NOT NULL,
                        source_kind TEXT NOT NULL CHECK(source_kind IN ('url', 'pdf', 'topic-only')),
                        url TEXT,
                        title TEXT,
                        extracted_content TEXT,
                        word_count INTEGER,
                        read_time INTEGER,
                        model_used TEXT,
                        file_name TEXT,
                        created_at TEXT NOT NULL
                    )
                    """,
                    """
                    CREATE TABLE IF NOT EXISTS messages (
                        seq INTEGER PRIMARY KEY AUTOINCREMENT,
                        id TEXT NOT NULL UNIQUE,
                        session_id TEXT NOT NULL,
                        role TEXT NOT NULL CHECK(role IN ('user', 'assistant')),
                        content TEXT NOT NULL,
                        model_used TEXT,
                        timestamp TEXT NOT NULL,
                        FOREIGN KEY(session_id) REFERENCES content_sessions(id)
                    )
                    """,
                    "CREATE INDEX IF NOT EXISTS idx_sessions_created ON content_sessions(created_at)",
                    "CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id, seq)",
                ),
            ),
        ]
        with self._connection() as conn:
            apply_sqlite_migrations(conn, component="session_store", migrations=migrations)

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> ContentSession:
        return ContentSession(
            id=str(row["id"]),
            topic=str(row["topic"]),
            source_kind=str(row["source_kind"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            url=row["url"],
            title=row["title"],
            extracted_content=row["extracted_content"],
            word_count=row["word_count"],
            read_time=row["read_time"],
            model_used=row["model_used"],
            file_name=row["file_name"],
        )

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> Message:
        return Message(
            id=str(row["id"]),
            session_id=str(row["session_id"]),
            role=str(row["role"]),
            content=str(row["content"]),
            timestamp=datetime.fromisoformat(row["timestamp"]),
            model_used=row["model_used"],
        )

    def create_session(self, *, topic: str, source_kind: str, **fields: Any) -> ContentSession:
        validate_session_fields(
            topic=topic,
            source_kind=source_kind,
            url=fields.get("url"),
            file_name=fields.get("file_name"),
            extracted_content=fields.get("extracted_content"),
        )
        session = ContentSession(
            id=str(uuid.uuid4()),
            topic=str(topic).strip(),
            source_kind=source_kind,
            created_at=_utcnow(),
            **fields,
        )
        with self._connection() as conn:
            conn.execute(
                f"INSERT INTO content_sessions ({_SESSION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    session.id,
                    session.topic,
                    session.source_kind,
                    session.url,
                    session.title,
                    session.extracted_content,
                    session.word_count,
                    session.read_time,
                    session.model_used,
                    session.file_name,
                    session.created_at.isoformat(),
                ),
            )
        logger.info("session_created", session_id=session.id, source_kind=source_kind, backend="sqlite")
        return session

    def get_session(self, session_id: str) -> ContentSession | None:
        with self._connection() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM content_sessions WHERE id = ?",
                (str(session_id),),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def list_sessions(self) -> list[ContentSession]:
        with self._connection() as conn:
            rows = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM content_sessions ORDER BY created_at DESC, rowid DESC"
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def append_message(
        self,
        session_id: str,
        role: str,
        content: str,
        model_used: str | None = None,
    ) -> Message:
        _validate_message(role, content)
        session_id = str(session_id)
        with self._connection() as conn:
            exists = conn.execute("SELECT 1 FROM content_sessions WHERE id = ?", (session_id,)).fetchone()
            if not exists:
                raise SessionNotFoundError(session_id)
            last = conn.execute(
                "SELECT timestamp FROM messages WHERE session_id = ? ORDER BY seq DESC LIMIT 1",
                (session_id,),
            ).fetchone()
            timestamp = _utcnow()
            if last is not None:
                timestamp = max(timestamp, datetime.fromisoformat(last["timestamp"]))
            message = Message(
                id=str(uuid.uuid4()),
                session_id=session_id,
                role=role,
                content=str(content),
                timestamp=timestamp,
                model_used=model_used,
            )
            conn.execute(
                """
                INSERT INTO messages (id, session_id, role, content, model_used, timestamp)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (message.id, session_id, role, message.content, model_used, timestamp.isoformat()),
            )
        return message

    def list_messages(self, session_id: str) -> list[Message]:
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT id, session_id, role, content, model_used, timestamp
                FROM messages
                WHERE session_id = ?
                ORDER BY seq ASC
                """,
                (str(session_id),),
            ).fetchall()
        return [self._row_to_message(row) for row in rows]


def build_session_store(kind: str = SESSION_STORE, db_path: str | Path = SESSION_DB_PATH) -> SessionStore:
    kind = str(kind or "").strip().lower()
    if kind == "memory":
        return InMemorySessionStore()
    if kind == "sqlite":
        return SqliteSessionStore(db_path)
    raise ConfigurationError(f"Unknown SESSION_STORE backend: {kind!r}")
