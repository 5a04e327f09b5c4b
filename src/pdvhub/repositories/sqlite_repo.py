from __future__ import annotations

import json
import shutil
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

from pdvhub.domain.errors import BackendError, InsufficientStockError, NotFoundError
from pdvhub.repositories.contracts import (
    PRODUCT,
    apply_stock_delta,
    matches,
    sort_records,
    stock_available,
)


class SqliteEntityStore:
    """EntityClient persisted as JSON documents in a local SQLite file."""

    def __init__(self, db_path: Path | str):
        self.db_path = str(db_path)

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.isolation_level = None
        return conn

    def init_db(self) -> None:
        self.run_migrations()

    def run_migrations(self) -> None:
        conn = self._conn()
        backup_path = self._create_pre_migration_backup()
        try:
            cur = conn.cursor()
            cur.execute("BEGIN")
            cur.execute("CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)")
            cur.execute("SELECT COALESCE(MAX(version), 0) FROM schema_migrations")
            current_version = int(cur.fetchone()[0])

            migrations = [
                (1, self._migration_v1_documents),
                (2, self._migration_v2_stock_ledger),
                (3, self._migration_v3_timestamps),
            ]

            for version, migration in migrations:
                if version <= current_version:
                    continue
                migration(cur)
                cur.execute(
                    "INSERT INTO schema_migrations (version, applied_at) VALUES (?, datetime('now'))",
                    (version,),
                )
            cur.execute("COMMIT")
        except Exception as exc:
            conn.rollback()
            self._restore_pre_migration_backup(backup_path)
            raise RuntimeError(
                "Database migration failed. Original database restored from automatic backup."
            ) from exc
        finally:
            conn.close()

    def _create_pre_migration_backup(self) -> Path | None:
        db_file = Path(self.db_path)
        if not db_file.exists() or db_file.stat().st_size == 0:
            return None
        backup_file = db_file.with_name(f"{db_file.stem}.pre_migration_{datetime.now().strftime('%Y%m%d%H%M%S')}.bak")
        shutil.copy2(db_file, backup_file)
        return backup_file

    def _restore_pre_migration_backup(self, backup_path: Path | None) -> None:
        if backup_path is None or not backup_path.exists():
            return
        shutil.copy2(backup_path, self.db_path)

    def _migration_v1_documents(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS entities (
                entity TEXT NOT NULL,
                id TEXT NOT NULL,
                body TEXT NOT NULL,
                PRIMARY KEY (entity, id)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS sequences (
                name TEXT PRIMARY KEY,
                value INTEGER NOT NULL CHECK(value >= 0)
            )
            """
        )

    def _migration_v2_stock_ledger(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS stock_ledger (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                datetime TEXT NOT NULL,
                product_id TEXT NOT NULL,
                store_id TEXT,
                qty_delta INTEGER NOT NULL,
                stock_after INTEGER NOT NULL CHECK(stock_after >= 0)
            )
            """
        )

    def _migration_v3_timestamps(self, cur: sqlite3.Cursor) -> None:
        self._add_column_if_missing(cur, "entities", "updated_at", "TEXT")
        cur.execute("CREATE INDEX IF NOT EXISTS ix_entities_entity ON entities(entity)")

    def _add_column_if_missing(self, cur: sqlite3.Cursor, table: str, column: str, definition: str) -> None:
        cur.execute(f"PRAGMA table_info({table})")
        cols = {str(r[1]) for r in cur.fetchall()}
        if column in cols:
            return
        cur.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Connection scope: rolls back an open transaction on error and reports sqlite failures as BackendError."""
        try:
            conn = self._conn()
        except sqlite3.Error as e:
            raise BackendError(f"Local database unavailable: {e}") from e
        try:
            yield conn
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.rollback()
            raise BackendError(f"Local database error: {e}") from e
        except Exception:
            if conn.in_transaction:
                conn.rollback()
            raise
        finally:
            conn.close()

    # ---------- Documents ----------
    def _load(self, cur: sqlite3.Cursor, entity: str, record_id: str) -> Optional[dict]:
        cur.execute("SELECT body FROM entities WHERE entity=? AND id=?", (entity, str(record_id)))
        row = cur.fetchone()
        return json.loads(row[0]) if row else None

    def _store(self, cur: sqlite3.Cursor, entity: str, record: dict) -> None:
        cur.execute(
            """
            INSERT INTO entities (entity, id, body, updated_at) VALUES (?, ?, ?, datetime('now'))
            ON CONFLICT(entity, id) DO UPDATE SET body=excluded.body, updated_at=excluded.updated_at
            """,
            (entity, record["id"], json.dumps(record, ensure_ascii=False)),
        )

    def list(self, entity: str, order_by: Optional[str] = None, limit: Optional[int] = None) -> list[dict]:
        with self._connect() as conn:
            cur = conn.cursor()
            cur.execute("SELECT body FROM entities WHERE entity=? ORDER BY rowid", (entity,))
            records = [json.loads(r[0]) for r in cur.fetchall()]
        records = sort_records(records, order_by)
        return records[:limit] if limit else records

    def filter(self, entity: str, criteria: dict) -> list[dict]:
        return [r for r in self.list(entity) if matches(r, criteria)]

    def get(self, entity: str, record_id: str) -> Optional[dict]:
        with self._connect() as conn:
            return self._load(conn.cursor(), entity, record_id)

    def create(self, entity: str, data: dict) -> dict:
        record = dict(data)
        record["id"] = str(record.get("id") or uuid.uuid4().hex)
        with self._connect() as conn:
            self._store(conn.cursor(), entity, record)
        return record

    def update(self, entity: str, record_id: str, data: dict) -> dict:
        with self._connect() as conn:
            cur = conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            record = self._load(cur, entity, record_id)
            if record is None:
                raise NotFoundError(f"{entity} {record_id} not found.")
            record.update(data)
            record["id"] = str(record_id)
            self._store(cur, entity, record)
            cur.execute("COMMIT")
            return record

    def delete(self, entity: str, record_id: str) -> None:
        with self._connect() as conn:
            cur = conn.cursor()
            cur.execute("DELETE FROM entities WHERE entity=? AND id=?", (entity, str(record_id)))
            if cur.rowcount == 0:
                raise NotFoundError(f"{entity} {record_id} not found.")

    # ---------- Stock ----------
    def _change_stock(self, product_id: str, delta: int, store_id: Optional[str]) -> dict:
        with self._connect() as conn:
            cur = conn.cursor()
            # IMMEDIATE takes the write lock before the read, so check and write are one step
            cur.execute("BEGIN IMMEDIATE")
            product = self._load(cur, PRODUCT, product_id)
            if product is None:
                raise NotFoundError(f"Product {product_id} not found.")
            if delta < 0 and not stock_available(product, -delta, store_id):
                raise InsufficientStockError(
                    f"Not enough stock for {product.get('name', product_id)}. Available: {product.get('stock', 0)}"
                )
            product.update(apply_stock_delta(product, delta, store_id))
            self._store(cur, PRODUCT, product)
            cur.execute(
                """
                INSERT INTO stock_ledger (datetime, product_id, store_id, qty_delta, stock_after)
                VALUES (datetime('now'), ?, ?, ?, ?)
                """,
                (str(product_id), store_id, int(delta), max(int(product["stock"]), 0)),
            )
            cur.execute("COMMIT")
            return product

    def decrement_stock(self, product_id: str, qty: int, store_id: Optional[str] = None) -> dict:
        return self._change_stock(product_id, -int(qty), store_id)

    def increment_stock(self, product_id: str, qty: int, store_id: Optional[str] = None) -> dict:
        return self._change_stock(product_id, int(qty), store_id)

    def stock_movements(self, product_id: str) -> list[tuple[str, Optional[str], int, int]]:
        with self._connect() as conn:
            cur = conn.cursor()
            cur.execute(
                "SELECT datetime, store_id, qty_delta, stock_after FROM stock_ledger WHERE product_id=? ORDER BY id",
                (str(product_id),),
            )
            return [(str(r[0]), r[1], int(r[2]), int(r[3])) for r in cur.fetchall()]

    def next_sequence(self, name: str, floor: int = 0) -> int:
        with self._connect() as conn:
            cur = conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            cur.execute("SELECT value FROM sequences WHERE name=?", (name,))
            row = cur.fetchone()
            value = max(int(row[0]) if row else 0, int(floor)) + 1
            cur.execute(
                "INSERT INTO sequences (name, value) VALUES (?, ?) ON CONFLICT(name) DO UPDATE SET value=excluded.value",
                (name, value),
            )
            cur.execute("COMMIT")
            return value

    def integrity_check(self) -> str:
        with self._connect() as conn:
            cur = conn.cursor()
            cur.execute("PRAGMA integrity_check")
            row = cur.fetchone()
        return str(row[0]) if row else "unknown"
