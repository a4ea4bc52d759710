import json
import os
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from app.services.errors import ConflictError

logger = logging.getLogger(__name__)

# Index columns copied out of each JSON document so the store can filter
# without parsing every row.
COLLECTIONS: Dict[str, Tuple[str, ...]] = {
    "users": ("email", "role", "is_active"),
    "provider_profiles": ("user_id", "is_active"),
    "bookings": ("user_id", "friend_id", "status"),
}


class DocumentStore:
    """JSON documents in SQLite, one table per collection.

    Every write goes through :meth:`transaction`, which holds the process-wide
    write lock, and every update is a compare-and-swap on ``version``.
    """

    def __init__(self, db_path: str) -> None:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._lock = Lock()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self.transaction() as conn:
            for table, columns in COLLECTIONS.items():
                extra = "".join(f"{column} TEXT, " for column in columns)
                conn.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        id TEXT PRIMARY KEY,
                        {extra}
                        version INTEGER NOT NULL DEFAULT 0,
                        doc_json TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                for column in columns:
                    conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_{column} ON {table} ({column})")

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connect()
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    def _index_values(self, table: str, doc: Dict[str, Any]) -> List[Any]:
        values = []
        for column in COLLECTIONS[table]:
            value = doc.get(_camel(column))
            if isinstance(value, bool):
                value = "1" if value else "0"
            values.append(None if value is None else str(value))
        return values

    def insert(self, conn: sqlite3.Connection, table: str, doc: Dict[str, Any]) -> int:
        columns = COLLECTIONS[table]
        placeholders = ", ".join("?" for _ in range(len(columns) + 5))
        try:
            conn.execute(
                f"""
                INSERT INTO {table} (id, {", ".join(columns)}, version, doc_json, created_at, updated_at)
                VALUES ({placeholders})
                """,
                (
                    doc["id"],
                    *self._index_values(table, doc),
                    0,
                    json.dumps(doc),
                    str(doc.get("createdAt", "")),
                    str(doc.get("updatedAt", "")),
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(f"Document {doc['id']} already exists in {table}") from exc
        return 0

    def insert_if_missing(self, conn: sqlite3.Connection, table: str, doc: Dict[str, Any]) -> None:
        exists = conn.execute(f"SELECT 1 FROM {table} WHERE id = ?", (doc["id"],)).fetchone()
        if not exists:
            self.insert(conn, table, doc)

    def replace(self, conn: sqlite3.Connection, table: str, doc: Dict[str, Any], expected_version: int) -> int:
        columns = COLLECTIONS[table]
        assignments = ", ".join(f"{column} = ?" for column in columns)
        cursor = conn.execute(
            f"""
            UPDATE {table}
            SET {assignments}, version = version + 1, doc_json = ?, updated_at = ?
            WHERE id = ? AND version = ?
            """,
            (
                *self._index_values(table, doc),
                json.dumps(doc),
                str(doc.get("updatedAt", "")),
                doc["id"],
                expected_version,
            ),
        )
        if cursor.rowcount != 1:
            logger.warning("Version conflict on %s/%s at version %s", table, doc["id"], expected_version)
            raise ConflictError("Document was modified concurrently, please retry")
        return expected_version + 1

    def fetch(self, conn: sqlite3.Connection, table: str, doc_id: str) -> Optional[Tuple[Dict[str, Any], int]]:
        row = conn.execute(f"SELECT doc_json, version FROM {table} WHERE id = ?", (doc_id,)).fetchone()
        if not row:
            return None
        return _decode(row), int(row["version"])

    def find(
        self,
        conn: sqlite3.Connection,
        table: str,
        where: str = "",
        params: Sequence[Any] = (),
        order_by: str = "id",
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Tuple[Dict[str, Any], int]]:
        query = f"SELECT doc_json, version FROM {table}"
        if where:
            query += f" WHERE {where}"
        query += f" ORDER BY {order_by}"
        if limit is not None:
            query += f" LIMIT {int(limit)} OFFSET {int(offset)}"
        rows = conn.execute(query, tuple(params)).fetchall()
        return [(_decode(row), int(row["version"])) for row in rows]

    def count(self, conn: sqlite3.Connection, table: str, where: str = "", params: Sequence[Any] = ()) -> int:
        query = f"SELECT COUNT(*) AS n FROM {table}"
        if where:
            query += f" WHERE {where}"
        return int(conn.execute(query, tuple(params)).fetchone()["n"])


def _decode(row: sqlite3.Row) -> Dict[str, Any]:
    return json.loads(row["doc_json"])


def _camel(column: str) -> str:
    head, *rest = column.split("_")
    return head + "".join(part.title() for part in rest)


default_db = str(Path(__file__).resolve().parents[2] / "data" / "companion.sqlite3")
document_store = DocumentStore(db_path=os.getenv("COMPANION_DB_PATH", default_db))
