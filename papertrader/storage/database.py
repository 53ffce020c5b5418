"""Database — SQLite-backed document store.

Documents are JSON objects keyed by (collection, id). The store exposes the
narrow contract the pipelines rely on (get / query / set_merge) plus add and
delete for the operational commands, and typed helpers for positions,
strategies and explanations.

Merge writes are a read-modify-write inside one IMMEDIATE transaction: only
the named fields change, everything else in the document is preserved.
"""

from __future__ import annotations

import datetime as dt
import json
import re
import sqlite3
import uuid
from pathlib import Path
from typing import Any

from papertrader.config import StorageConfig
from papertrader.errors import PersistenceError
from papertrader.storage.migrations import run_migrations
from papertrader.storage.models import (
    Explanation,
    Position,
    PositionStatus,
    StrategyDocument,
    parse_document,
    to_document,
)
from papertrader.observability.logger import get_logger

log = get_logger(__name__)

POSITIONS = "positions"
STRATEGIES = "strategies"
EXPLANATIONS = "explanations"
SIGNALS = "signals"
LEDGER = "ledger"

_FIELD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _field_path(name: str) -> str:
    if not _FIELD_RE.match(name):
        raise ValueError(f"invalid field name: {name!r}")
    return f"$.{name}"


def _now() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


class Database:
    """SQLite document store for positions, strategies and explanations."""

    def __init__(self, config: StorageConfig):
        self._config = config
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Open database connection and run migrations."""
        db_path = Path(self._config.sqlite_path)
        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(db_path))
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            run_migrations(self._conn)
        except (OSError, sqlite3.Error) as e:
            raise PersistenceError(f"cannot open store at {db_path}: {e}", reason="UNREACHABLE") from e
        log.info("database.connected", path=str(db_path))

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise PersistenceError("Database not connected. Call connect() first.", reason="NOT_CONNECTED")
        return self._conn

    # ── Document contract ────────────────────────────────────────────

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        """Return the document (with its ``id``) or None when absent."""
        try:
            row = self.conn.execute(
                "SELECT id, data FROM documents WHERE collection = ? AND id = ?",
                (collection, doc_id),
            ).fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"get {collection}/{doc_id} failed: {e}") from e
        if row is None:
            return None
        return {**json.loads(row["data"]), "id": row["id"]}

    def query(
        self,
        collection: str,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        where: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """List documents of a collection, optionally filtered and ordered."""
        sql = "SELECT id, data FROM documents WHERE collection = ?"
        params: list[Any] = [collection]
        for field_name, value in (where or {}).items():
            sql += " AND json_extract(data, ?) = ?"
            params.extend([_field_path(field_name), value])
        if order_by:
            sql += f" ORDER BY json_extract(data, ?) {'DESC' if descending else 'ASC'}, rowid"
            params.append(_field_path(order_by))
        else:
            sql += " ORDER BY created_at, rowid"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        try:
            rows = self.conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"query {collection} failed: {e}", reason="QUERY_FAILED") from e
        return [{**json.loads(r["data"]), "id": r["id"]} for r in rows]

    def set_merge(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        """Write only ``fields`` into the document, creating it if absent."""
        fields = {k: v for k, v in fields.items() if k != "id"}
        now = _now()
        conn = self.conn
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT data FROM documents WHERE collection = ? AND id = ?",
                (collection, doc_id),
            ).fetchone()
            if row is None:
                conn.execute(
                    "INSERT INTO documents (collection, id, data, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (collection, doc_id, json.dumps(fields), now, now),
                )
            else:
                merged = {**json.loads(row["data"]), **fields}
                conn.execute(
                    "UPDATE documents SET data = ?, updated_at = ? WHERE collection = ? AND id = ?",
                    (json.dumps(merged), now, collection, doc_id),
                )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(
                f"merge into {collection}/{doc_id} failed: {e}", reason="WRITE_REJECTED"
            ) from e

    def add(self, collection: str, doc: dict[str, Any]) -> str:
        """Insert a new document under a generated id."""
        doc_id = str(uuid.uuid4())
        data = {k: v for k, v in doc.items() if k != "id"}
        now = _now()
        try:
            self.conn.execute(
                "INSERT INTO documents (collection, id, data, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (collection, doc_id, json.dumps(data), now, now),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"add to {collection} failed: {e}", reason="WRITE_REJECTED") from e
        return doc_id

    def delete(self, collection: str, doc_id: str) -> bool:
        try:
            cur = self.conn.execute(
                "DELETE FROM documents WHERE collection = ? AND id = ?", (collection, doc_id)
            )
            self.conn.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"delete {collection}/{doc_id} failed: {e}") from e
        return cur.rowcount > 0

    def delete_all(self, collection: str) -> int:
        try:
            cur = self.conn.execute("DELETE FROM documents WHERE collection = ?", (collection,))
            self.conn.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"delete_all {collection} failed: {e}") from e
        return cur.rowcount

    # ── Positions ────────────────────────────────────────────────────

    def add_position(self, position: Position) -> Position:
        pid = self.add(POSITIONS, to_document(position))
        return position.model_copy(update={"id": pid})

    def get_position(self, position_id: str) -> Position | None:
        doc = self.get(POSITIONS, position_id)
        if doc is None:
            return None
        return parse_document(Position, doc)

    def get_open_positions(self) -> list[Position]:
        docs = self.query(POSITIONS, where={"status": PositionStatus.OPEN.value}, order_by="entry_ts")
        return [parse_document(Position, d) for d in docs]

    def latest_position_doc(self) -> dict[str, Any] | None:
        docs = self.query(POSITIONS, order_by="entry_ts", descending=True, limit=1)
        return docs[0] if docs else None

    # ── Strategies ───────────────────────────────────────────────────

    def get_strategy_document(self, strategy_id: str) -> StrategyDocument | None:
        doc = self.get(STRATEGIES, strategy_id)
        if doc is None:
            return None
        return parse_document(StrategyDocument, doc)

    # ── Explanations ─────────────────────────────────────────────────

    def add_explanation(self, explanation: Explanation) -> Explanation:
        eid = self.add(EXPLANATIONS, to_document(explanation))
        return explanation.model_copy(update={"id": eid})

    def get_explanations_for_position(self, position_id: str) -> list[Explanation]:
        docs = self.query(EXPLANATIONS, where={"position_id": position_id})
        return [parse_document(Explanation, d) for d in docs]
