import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, List, Optional, Sequence, Tuple

from .errors import PersistenceError
from .logs import get_logger
from .models import APIKey, Paste, Shortlink


logger = get_logger("storage")


class IdentifierTaken(Exception):
    """Raised when an insert collides with an id already used by a paste or shortlink."""


PASTE_SORT_COLUMNS = {
    "created_at": "created_at",
    "expires_at": "expires_at",
    "size": "size",
    "filename": "filename",
}

SHORTLINK_SORT_COLUMNS = {
    "created_at": "created_at",
    "expires_at": "expires_at",
    "clicks": "clicks",
}


def _is_primary_key_collision(error: sqlite3.IntegrityError) -> bool:
    message = str(error)
    return "UNIQUE constraint failed" in message and (
        ".id" in message or ".key" in message
    )


class MetadataStore:
    """SQLite-backed metadata for pastes, shortlinks and API keys."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    @contextmanager
    def get_db(self) -> Generator[sqlite3.Connection, None, None]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(self.path, timeout=30.0)
        except sqlite3.Error as error:
            raise PersistenceError(f"Database unavailable: {error}") from error
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            if conn.in_transaction:
                conn.commit()
        except Exception:
            if conn.in_transaction:
                conn.rollback()
            raise
        finally:
            conn.close()

    def _execute(self, query: str, params: Sequence[object] = ()) -> int:
        try:
            with self.get_db() as conn:
                cursor = conn.execute(query, tuple(params))
                return cursor.rowcount
        except sqlite3.Error as error:
            logger.error("metadata_write_failed error=%s", error)
            raise PersistenceError(f"Metadata write failed: {error}") from error

    def _fetchone(self, query: str, params: Sequence[object] = ()) -> Optional[sqlite3.Row]:
        try:
            with self.get_db() as conn:
                return conn.execute(query, tuple(params)).fetchone()
        except sqlite3.Error as error:
            raise PersistenceError(f"Metadata read failed: {error}") from error

    def _fetchall(self, query: str, params: Sequence[object] = ()) -> List[sqlite3.Row]:
        try:
            with self.get_db() as conn:
                return conn.execute(query, tuple(params)).fetchall()
        except sqlite3.Error as error:
            raise PersistenceError(f"Metadata read failed: {error}") from error

    def _insert(self, query: str, params: Sequence[object]) -> None:
        try:
            with self.get_db() as conn:
                inserted = conn.execute(query, tuple(params)).rowcount
        except sqlite3.IntegrityError as error:
            if _is_primary_key_collision(error):
                raise IdentifierTaken(str(error)) from error
            raise PersistenceError(f"Metadata insert failed: {error}") from error
        except sqlite3.Error as error:
            raise PersistenceError(f"Metadata insert failed: {error}") from error
        if inserted == 0:
            raise IdentifierTaken("Identifier is already used by another record")

    def init_db(self) -> None:
        with self.get_db() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS pastes (
                    id TEXT PRIMARY KEY,
                    storage_backend TEXT NOT NULL,
                    storage_path TEXT NOT NULL,
                    filename TEXT NOT NULL,
                    extension TEXT,
                    mime_type TEXT NOT NULL,
                    size INTEGER NOT NULL,
                    api_key TEXT,
                    delete_key TEXT NOT NULL,
                    private INTEGER DEFAULT 0,
                    created_at REAL NOT NULL,
                    expires_at REAL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS shortlinks (
                    id TEXT PRIMARY KEY,
                    target_url TEXT NOT NULL,
                    title TEXT,
                    api_key TEXT NOT NULL,
                    clicks INTEGER NOT NULL DEFAULT 0,
                    last_click REAL,
                    created_at REAL NOT NULL,
                    expires_at REAL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS api_keys (
                    key TEXT PRIMARY KEY,
                    email TEXT NOT NULL,
                    name TEXT NOT NULL,
                    verified INTEGER DEFAULT 0,
                    verify_token TEXT,
                    verify_expiry REAL,
                    allow_shortlinks INTEGER DEFAULT 0,
                    created_at REAL NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_pastes_api_key ON pastes(api_key)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_pastes_expires_at ON pastes(expires_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_shortlinks_api_key ON shortlinks(api_key)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_shortlinks_expires_at ON shortlinks(expires_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_api_keys_verify_token ON api_keys(verify_token)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_api_keys_email ON api_keys(email)")

    def ping(self) -> None:
        self._fetchone("SELECT COUNT(*) FROM pastes")

    # Pastes

    def insert_paste(self, paste: Paste) -> None:
        self._insert(
            """
            INSERT INTO pastes (
                id,
                storage_backend,
                storage_path,
                filename,
                extension,
                mime_type,
                size,
                api_key,
                delete_key,
                private,
                created_at,
                expires_at
            )
            SELECT ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?
            WHERE NOT EXISTS (SELECT 1 FROM shortlinks WHERE id = ?)
            """,
            (
                paste.id,
                paste.storage.backend,
                paste.storage.path,
                paste.filename,
                paste.extension,
                paste.mime_type,
                paste.size,
                paste.api_key,
                paste.delete_key,
                1 if paste.private else 0,
                paste.created_at,
                paste.expires_at,
                paste.id,
            ),
        )

    def get_paste(self, paste_id: str) -> Optional[Paste]:
        row = self._fetchone("SELECT * FROM pastes WHERE id = ?", (paste_id,))
        return Paste.from_row(row) if row else None

    def update_paste_expiry(self, paste_id: str, expires_at: Optional[float]) -> bool:
        return self._execute(
            "UPDATE pastes SET expires_at = ? WHERE id = ?", (expires_at, paste_id)
        ) > 0

    def delete_paste(self, paste_id: str) -> bool:
        return self._execute("DELETE FROM pastes WHERE id = ?", (paste_id,)) > 0

    def list_pastes(
        self,
        api_key: str,
        now: float,
        *,
        limit: int,
        offset: int = 0,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> Tuple[List[Paste], int]:
        # column and direction come from whitelists, never from user input
        column = PASTE_SORT_COLUMNS.get(sort_by, "created_at")
        direction = "ASC" if sort_order.lower() == "asc" else "DESC"
        where = "api_key = ? AND (expires_at IS NULL OR expires_at > ?)"
        rows = self._fetchall(
            f"SELECT * FROM pastes WHERE {where} ORDER BY {column} {direction}, id ASC "
            "LIMIT ? OFFSET ?",
            (api_key, now, max(int(limit), 0), max(min(int(offset), 1_000_000), 0)),
        )
        count_row = self._fetchone(
            f"SELECT COUNT(*) AS count FROM pastes WHERE {where}", (api_key, now)
        )
        total = int(count_row["count"] if count_row and count_row["count"] is not None else 0)
        return [Paste.from_row(row) for row in rows], total

    def expired_pastes(self, now: float) -> List[Paste]:
        rows = self._fetchall(
            "SELECT * FROM pastes WHERE expires_at IS NOT NULL AND expires_at <= ? "
            "ORDER BY expires_at",
            (now,),
        )
        return [Paste.from_row(row) for row in rows]

    def paste_totals(self) -> Tuple[int, int]:
        row = self._fetchone("SELECT COUNT(*) AS count, COALESCE(SUM(size), 0) AS total FROM pastes")
        if not row:
            return 0, 0
        return int(row["count"] or 0), int(row["total"] or 0)

    # Shortlinks

    def insert_shortlink(self, link: Shortlink) -> None:
        self._insert(
            """
            INSERT INTO shortlinks (
                id, target_url, title, api_key, clicks, last_click, created_at, expires_at
            )
            SELECT ?, ?, ?, ?, ?, ?, ?, ?
            WHERE NOT EXISTS (SELECT 1 FROM pastes WHERE id = ?)
            """,
            (
                link.id,
                link.target_url,
                link.title,
                link.api_key,
                link.clicks,
                link.last_click,
                link.created_at,
                link.expires_at,
                link.id,
            ),
        )

    def get_shortlink(self, link_id: str) -> Optional[Shortlink]:
        row = self._fetchone("SELECT * FROM shortlinks WHERE id = ?", (link_id,))
        return Shortlink.from_row(row) if row else None

    def increment_clicks(self, link_id: str, now: float) -> bool:
        # Single statement so concurrent clicks never overwrite each other.
        return self._execute(
            "UPDATE shortlinks SET clicks = clicks + 1, last_click = ? WHERE id = ?",
            (now, link_id),
        ) > 0

    def update_shortlink_expiry(self, link_id: str, expires_at: Optional[float]) -> bool:
        return self._execute(
            "UPDATE shortlinks SET expires_at = ? WHERE id = ?", (expires_at, link_id)
        ) > 0

    def delete_shortlink(self, link_id: str) -> bool:
        return self._execute("DELETE FROM shortlinks WHERE id = ?", (link_id,)) > 0

    def list_shortlinks(
        self,
        api_key: str,
        now: float,
        *,
        limit: int,
        offset: int = 0,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> Tuple[List[Shortlink], int]:
        column = SHORTLINK_SORT_COLUMNS.get(sort_by, "created_at")
        direction = "ASC" if sort_order.lower() == "asc" else "DESC"
        where = "api_key = ? AND (expires_at IS NULL OR expires_at > ?)"
        rows = self._fetchall(
            f"SELECT * FROM shortlinks WHERE {where} ORDER BY {column} {direction}, id ASC "
            "LIMIT ? OFFSET ?",
            (api_key, now, max(int(limit), 0), max(min(int(offset), 1_000_000), 0)),
        )
        count_row = self._fetchone(
            f"SELECT COUNT(*) AS count FROM shortlinks WHERE {where}", (api_key, now)
        )
        total = int(count_row["count"] if count_row and count_row["count"] is not None else 0)
        return [Shortlink.from_row(row) for row in rows], total

    def expired_shortlinks(self, now: float) -> List[Shortlink]:
        rows = self._fetchall(
            "SELECT * FROM shortlinks WHERE expires_at IS NOT NULL AND expires_at <= ? "
            "ORDER BY expires_at",
            (now,),
        )
        return [Shortlink.from_row(row) for row in rows]

    def count_shortlinks(self) -> int:
        row = self._fetchone("SELECT COUNT(*) AS count FROM shortlinks")
        return int(row["count"] if row and row["count"] is not None else 0)

    # API keys

    def insert_api_key(self, api_key: APIKey) -> None:
        self._insert(
            """
            INSERT INTO api_keys (
                key, email, name, verified, verify_token, verify_expiry,
                allow_shortlinks, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                api_key.key,
                api_key.email,
                api_key.name,
                1 if api_key.verified else 0,
                api_key.verify_token,
                api_key.verify_expiry,
                1 if api_key.allow_shortlinks else 0,
                api_key.created_at,
            ),
        )

    def get_api_key(self, key: str) -> Optional[APIKey]:
        row = self._fetchone("SELECT * FROM api_keys WHERE key = ?", (key,))
        return APIKey.from_row(row) if row else None

    def find_verified_key_by_email(self, email: str) -> Optional[APIKey]:
        row = self._fetchone(
            "SELECT * FROM api_keys WHERE LOWER(email) = LOWER(?) AND verified = 1 LIMIT 1",
            (email,),
        )
        return APIKey.from_row(row) if row else None

    def find_pending_key_by_token(self, token: str, now: float) -> Optional[APIKey]:
        row = self._fetchone(
            "SELECT * FROM api_keys WHERE verify_token = ? AND verify_expiry > ? "
            "AND verified = 0",
            (token, now),
        )
        return APIKey.from_row(row) if row else None

    def mark_key_verified(self, key: str, token: str) -> bool:
        # Guarded on the token so a key flips to verified exactly once.
        return self._execute(
            "UPDATE api_keys SET verified = 1, verify_token = NULL, verify_expiry = NULL "
            "WHERE key = ? AND verify_token = ? AND verified = 0",
            (key, token),
        ) > 0

    def set_allow_shortlinks(self, key: str, allowed: bool) -> bool:
        return self._execute(
            "UPDATE api_keys SET allow_shortlinks = ? WHERE key = ?",
            (1 if allowed else 0, key),
        ) > 0

    def delete_api_key(self, key: str) -> bool:
        return self._execute("DELETE FROM api_keys WHERE key = ?", (key,)) > 0
