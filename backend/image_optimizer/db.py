"""Database layer. SQLite by default; set DATABASE_URL for MySQL.
State is a handful of JSON key/value records (queue, progress, settings, conversion history).
Startup ensures the table exists; on connection failure logs verbosely and falls back to in-memory SQLite so the app can start."""
import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool

from image_optimizer import config as app_config

logger = logging.getLogger("image_optimizer.db")

_store: Optional["KeyValueStore"] = None

# Tables required for the app (created at startup if missing)
REQUIRED_TABLES = ("kv_records",)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def make_engine(url: str) -> Engine:
    kwargs: dict[str, Any] = {}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url:
            # One shared connection, otherwise every checkout sees an empty database
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


class KeyValueStore:
    """JSON records keyed by string, with atomic read-modify-write."""

    def __init__(self, engine: Engine):
        self._engine = engine
        self._lock = threading.RLock()

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def dialect(self) -> str:
        return self._engine.dialect.name

    def ensure_tables(self) -> None:
        """Create required tables if they do not exist."""
        if self.dialect == "mysql":
            ddl = """
                CREATE TABLE IF NOT EXISTS kv_records (
                    record_key VARCHAR(255) PRIMARY KEY,
                    value_json LONGTEXT,
                    updated_at VARCHAR(50) NOT NULL
                )
            """
        else:
            ddl = """
                CREATE TABLE IF NOT EXISTS kv_records (
                    record_key TEXT PRIMARY KEY,
                    value_json TEXT,
                    updated_at TEXT NOT NULL
                )
            """
        with self._engine.begin() as conn:
            conn.execute(text(ddl))
        logger.info("Required tables ensured: %s", ", ".join(REQUIRED_TABLES))

    @contextmanager
    def session(self):
        with self._lock:
            with self._engine.connect() as conn:
                try:
                    yield conn
                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise

    @staticmethod
    def _read(conn, key: str) -> Optional[str]:
        row = conn.execute(
            text("SELECT value_json FROM kv_records WHERE record_key = :key"),
            {"key": key},
        ).fetchone()
        return row[0] if row else None

    def _write(self, conn, key: str, value: Any) -> None:
        params = {"key": key, "value_json": json.dumps(value), "now": _now_iso()}
        if self.dialect == "sqlite":
            conn.execute(
                text("""
                    INSERT OR REPLACE INTO kv_records (record_key, value_json, updated_at)
                    VALUES (:key, :value_json, :now)
                """),
                params,
            )
        elif self.dialect == "mysql":
            conn.execute(
                text("""
                    INSERT INTO kv_records (record_key, value_json, updated_at)
                    VALUES (:key, :value_json, :now)
                    ON DUPLICATE KEY UPDATE value_json = :value_json, updated_at = :now
                """),
                params,
            )
        else:
            result = conn.execute(
                text("UPDATE kv_records SET value_json = :value_json, updated_at = :now WHERE record_key = :key"),
                params,
            )
            if result.rowcount == 0:
                conn.execute(
                    text("INSERT INTO kv_records (record_key, value_json, updated_at) VALUES (:key, :value_json, :now)"),
                    params,
                )

    def get(self, key: str, default: Any = None) -> Any:
        with self.session() as conn:
            raw = self._read(conn, key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Corrupt record %s, ignoring", key)
            return default

    def set(self, key: str, value: Any) -> None:
        with self.session() as conn:
            self._write(conn, key, value)

    def delete(self, key: str) -> None:
        with self.session() as conn:
            conn.execute(text("DELETE FROM kv_records WHERE record_key = :key"), {"key": key})

    def exists(self, key: str) -> bool:
        with self.session() as conn:
            return self._read(conn, key) is not None

    def update(self, key: str, fn: Callable[[Any], Any], default: Any = None) -> Any:
        """Read, apply fn, write back in one transaction. Returns the stored value."""
        with self.session() as conn:
            raw = self._read(conn, key)
            current = json.loads(raw) if raw is not None else default
            new_value = fn(current)
            self._write(conn, key, new_value)
        return new_value

    def update_many(self, keys: list[str], fn: Callable[[dict], dict]) -> dict:
        """
        Read several records, apply fn to {key: value-or-None}, write back what it returns, in one transaction.
        A None value in the result deletes that record. If fn raises, nothing is written.
        """
        with self.session() as conn:
            current = {}
            for key in keys:
                raw = self._read(conn, key)
                current[key] = json.loads(raw) if raw is not None else None
            changes = fn(current)
            for key, value in changes.items():
                if value is None:
                    conn.execute(text("DELETE FROM kv_records WHERE record_key = :key"), {"key": key})
                else:
                    self._write(conn, key, value)
        return changes

    def keys(self, prefix: str = "") -> list[str]:
        with self.session() as conn:
            rows = conn.execute(
                text("SELECT record_key FROM kv_records WHERE record_key LIKE :prefix ORDER BY record_key"),
                {"prefix": f"{prefix}%"},
            ).fetchall()
        return [r[0] for r in rows]


def init_db() -> KeyValueStore:
    """Prepare database at startup. On failure, fall back to in-memory SQLite so the app can start."""
    global _store
    url = app_config.DATABASE_URL
    logger.info("Database init: preparing %s (tables: %s)", url.split(":", 1)[0], ", ".join(REQUIRED_TABLES))
    try:
        store = KeyValueStore(make_engine(url))
        store.ensure_tables()
        _store = store
        logger.info("Database ready")
        return store
    except OperationalError as e:
        logger.warning("Database connection failed: %s. Using in-memory SQLite.", e.orig, exc_info=True)
    except Exception as e:
        logger.exception("Database init failed: %s. Using in-memory SQLite.", e)

    # Last resort: batch state will not persist across restarts
    app_config.DATABASE_URL = "sqlite:///:memory:"
    store = KeyValueStore(make_engine(app_config.DATABASE_URL))
    store.ensure_tables()
    _store = store
    logger.warning("Database unavailable. Using in-memory SQLite. Batch state will not persist across restarts.")
    return store


def get_store() -> KeyValueStore:
    global _store
    if _store is None:
        _store = init_db()
    return _store
