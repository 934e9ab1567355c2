from __future__ import annotations

import json
import os
import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from ..domain.models import Aisle, ProductItem, Store, link_from, utc_now_iso
from ..errors import PersistenceError
from ..logging import get_logger
from ..paths import default_db_path


LOG = get_logger("localdb")


SCHEMA_SQL = """
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS stores (
  store_id    TEXT PRIMARY KEY,
  remote_id   TEXT UNIQUE,
  name        TEXT NOT NULL,
  latitude    REAL,
  longitude   REAL,
  address     TEXT,
  city        TEXT,
  created_at  TEXT NOT NULL,
  updated_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS aisles (
  aisle_id        TEXT PRIMARY KEY,
  store_id        TEXT NOT NULL REFERENCES stores(store_id) ON DELETE CASCADE,
  remote_id       TEXT,
  name_or_number  TEXT NOT NULL,
  keywords        TEXT NOT NULL DEFAULT '[]',   -- JSON list, lowercased
  created_at      TEXT NOT NULL,
  updated_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS product_items (
  product_id       TEXT PRIMARY KEY,
  store_id         TEXT NOT NULL REFERENCES stores(store_id) ON DELETE CASCADE,
  aisle_id         TEXT REFERENCES aisles(aisle_id) ON DELETE SET NULL,
  remote_id        TEXT,
  aisle_remote_id  TEXT,
  name             TEXT NOT NULL,
  barcode          TEXT,
  created_at       TEXT NOT NULL,
  updated_at       TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_aisles_store_remote
  ON aisles(store_id, remote_id) WHERE remote_id IS NOT NULL;
CREATE UNIQUE INDEX IF NOT EXISTS idx_products_store_remote
  ON product_items(store_id, remote_id) WHERE remote_id IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_aisles_store    ON aisles(store_id);
CREATE INDEX IF NOT EXISTS idx_products_store  ON product_items(store_id);
CREATE INDEX IF NOT EXISTS idx_products_aisle  ON product_items(aisle_id);
"""


def normalize_keyword_list(keywords: Optional[List[Any]]) -> List[str]:
    """Lowercase + trim, drop empties, de-dup keeping first-seen order."""
    out: List[str] = []
    seen = set()
    for kw in keywords or []:
        if not isinstance(kw, str):
            continue
        k = kw.strip().lower()
        if k and k not in seen:
            seen.add(k)
            out.append(k)
    return out


def _row_to_store(row: sqlite3.Row) -> Store:
    return Store(
        store_id=row["store_id"],
        link=link_from(row["remote_id"]),
        name=row["name"],
        latitude=row["latitude"],
        longitude=row["longitude"],
        address=row["address"],
        city=row["city"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_aisle(row: sqlite3.Row) -> Aisle:
    try:
        keywords = json.loads(row["keywords"] or "[]")
    except ValueError:
        LOG.warning("Corrupt keyword JSON on aisle %s; treating as empty", row["aisle_id"])
        keywords = []
    return Aisle(
        aisle_id=row["aisle_id"],
        store_id=row["store_id"],
        link=link_from(row["remote_id"]),
        name_or_number=row["name_or_number"],
        keywords=[k for k in keywords if isinstance(k, str)],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_product(row: sqlite3.Row) -> ProductItem:
    return ProductItem(
        product_id=row["product_id"],
        store_id=row["store_id"],
        aisle_id=row["aisle_id"],
        link=link_from(row["remote_id"]),
        aisle_remote_id=row["aisle_remote_id"],
        name=row["name"],
        barcode=row["barcode"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _linked_clause(linked: Optional[bool]) -> Optional[str]:
    if linked is None:
        return None
    return "remote_id IS NOT NULL" if linked else "remote_id IS NULL"


def _like_pattern(text: str) -> str:
    """Substring pattern for `LIKE ? ESCAPE '\\'`; user wildcards match literally."""
    q = text.strip().lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{q}%"


class LocalTransaction:
    """Mutations staged on one open connection; committed by LocalStore.transaction()."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn
        self.changes = 0

    def _exec(self, sql: str, params: tuple) -> sqlite3.Cursor:
        cur = self.conn.execute(sql, params)
        self.changes += max(cur.rowcount, 0)
        return cur

    def _guarded_update(self, table: str, pk: str, key: str, remote_id: Optional[str], sets: Dict[str, Any]) -> None:
        # The remote id may be set once; a different non-null id is refused.
        cols = ", ".join(f"{c} = ?" for c in sets)
        cur = self._exec(
            f"UPDATE {table} SET {cols} WHERE {pk} = ? AND (remote_id IS NULL OR remote_id = ? OR ? IS NULL);",
            (*sets.values(), key, remote_id, remote_id),
        )
        if cur.rowcount == 1:
            return
        row = self.conn.execute(f"SELECT remote_id FROM {table} WHERE {pk} = ?;", (key,)).fetchone()
        if row is None:
            raise PersistenceError(f"{table}: no row with {pk}={key}")
        raise PersistenceError(f"{table}: {pk}={key} is already linked to {row['remote_id']}, refusing {remote_id}")

    # ---------- stores ----------
    def insert_store(self, store: Store) -> Store:
        self._exec(
            """
            INSERT INTO stores (store_id, remote_id, name, latitude, longitude, address, city, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                store.store_id,
                store.remote_id,
                store.name,
                store.latitude,
                store.longitude,
                store.address,
                store.city,
                store.created_at,
                store.updated_at,
            ),
        )
        return store

    def update_store(self, store: Store) -> Store:
        store.updated_at = utc_now_iso()
        # A linked store keeps its remote id; unlinking goes through delete.
        remote_id = store.remote_id
        sets = {
            "name": store.name,
            "latitude": store.latitude,
            "longitude": store.longitude,
            "address": store.address,
            "city": store.city,
            "updated_at": store.updated_at,
        }
        if remote_id:
            sets["remote_id"] = remote_id
        self._guarded_update("stores", "store_id", store.store_id, remote_id, sets)
        return store

    def delete_store(self, store_id: str) -> None:
        self._exec("DELETE FROM stores WHERE store_id = ?;", (store_id,))

    # ---------- aisles ----------
    def insert_aisle(self, aisle: Aisle) -> Aisle:
        aisle.keywords = normalize_keyword_list(aisle.keywords)
        self._exec(
            """
            INSERT INTO aisles (aisle_id, store_id, remote_id, name_or_number, keywords, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?);
            """,
            (
                aisle.aisle_id,
                aisle.store_id,
                aisle.remote_id,
                aisle.name_or_number,
                json.dumps(aisle.keywords, ensure_ascii=False),
                aisle.created_at,
                aisle.updated_at,
            ),
        )
        return aisle

    def update_aisle(self, aisle: Aisle) -> Aisle:
        aisle.keywords = normalize_keyword_list(aisle.keywords)
        sets = {
            "name_or_number": aisle.name_or_number,
            "keywords": json.dumps(aisle.keywords, ensure_ascii=False),
            "updated_at": aisle.updated_at,
        }
        if aisle.remote_id:
            sets["remote_id"] = aisle.remote_id
        self._guarded_update("aisles", "aisle_id", aisle.aisle_id, aisle.remote_id, sets)
        return aisle

    def delete_aisle(self, aisle_id: str) -> None:
        self._exec("DELETE FROM aisles WHERE aisle_id = ?;", (aisle_id,))

    def relink_products(self, store_id: str, aisle_id: str, aisle_remote_id: str) -> int:
        """Point products that reference `aisle_remote_id` at the local aisle now holding it."""
        cur = self._exec(
            """
            UPDATE product_items SET aisle_id = ?
            WHERE store_id = ? AND aisle_remote_id = ? AND (aisle_id IS NULL OR aisle_id != ?);
            """,
            (aisle_id, store_id, aisle_remote_id, aisle_id),
        )
        return cur.rowcount

    # ---------- products ----------
    def insert_product(self, item: ProductItem) -> ProductItem:
        self._exec(
            """
            INSERT INTO product_items (
                product_id, store_id, aisle_id, remote_id, aisle_remote_id,
                name, barcode, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                item.product_id,
                item.store_id,
                item.aisle_id,
                item.remote_id,
                item.aisle_remote_id,
                item.name,
                item.barcode,
                item.created_at,
                item.updated_at,
            ),
        )
        return item

    def update_product(self, item: ProductItem) -> ProductItem:
        sets = {
            "name": item.name,
            "barcode": item.barcode,
            "aisle_id": item.aisle_id,
            "aisle_remote_id": item.aisle_remote_id,
            "updated_at": item.updated_at,
        }
        if item.remote_id:
            sets["remote_id"] = item.remote_id
        self._guarded_update("product_items", "product_id", item.product_id, item.remote_id, sets)
        return item

    def delete_product(self, product_id: str) -> None:
        self._exec("DELETE FROM product_items WHERE product_id = ?;", (product_id,))


class LocalStore:
    """SQLite-backed offline store for stores, aisles and product items.

    - Defaults to `<repo-root>/var/shelfdb/shelf.sqlite3`.
    - Ensures schema on construction.
    - Opens a short-lived connection per operation, so instances can be
      shared between threads; per-store write ordering is the sync engine's job.
    """

    def __init__(self, db_path: Optional[str] = None, *, root_dir: Optional[str] = None) -> None:
        self.db_path = db_path or default_db_path(root_dir)
        folder = os.path.dirname(os.path.abspath(self.db_path))
        os.makedirs(folder, exist_ok=True)
        LOG.info(f"Local DB path: {self.db_path}")
        self._ensure_schema()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, isolation_level=None, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON;")
            yield conn
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        try:
            with self.connect() as conn:
                try:
                    conn.execute("PRAGMA journal_mode=WAL;")
                    conn.execute("PRAGMA synchronous=NORMAL;")
                except sqlite3.OperationalError:
                    # Non-fatal; continue with schema creation
                    pass
                conn.executescript(SCHEMA_SQL)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to initialise schema at {self.db_path}: {exc}") from exc
        LOG.debug("Local DB schema ensured.")

    @contextmanager
    def transaction(self) -> Iterator[LocalTransaction]:
        """All-or-nothing batch. sqlite3 errors surface as PersistenceError."""
        with self.connect() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE;")
            except sqlite3.Error as exc:
                raise PersistenceError(f"Could not open transaction: {exc}") from exc
            tx = LocalTransaction(conn)
            try:
                yield tx
                conn.execute("COMMIT;")
            except sqlite3.Error as exc:
                conn.execute("ROLLBACK;")
                LOG.error("Local transaction rolled back: %s", exc)
                raise PersistenceError(str(exc)) from exc
            except BaseException:
                conn.execute("ROLLBACK;")
                raise

    # ---------- single-call mutations ----------
    def insert_store(self, store: Store) -> Store:
        with self.transaction() as tx:
            return tx.insert_store(store)

    def update_store(self, store: Store) -> Store:
        with self.transaction() as tx:
            return tx.update_store(store)

    def delete_store(self, store_id: str) -> None:
        with self.transaction() as tx:
            tx.delete_store(store_id)

    def insert_aisle(self, aisle: Aisle) -> Aisle:
        with self.transaction() as tx:
            return tx.insert_aisle(aisle)

    def update_aisle(self, aisle: Aisle) -> Aisle:
        with self.transaction() as tx:
            return tx.update_aisle(aisle)

    def delete_aisle(self, aisle_id: str) -> None:
        with self.transaction() as tx:
            tx.delete_aisle(aisle_id)

    def insert_product(self, item: ProductItem) -> ProductItem:
        with self.transaction() as tx:
            return tx.insert_product(item)

    def update_product(self, item: ProductItem) -> ProductItem:
        with self.transaction() as tx:
            return tx.update_product(item)

    def delete_product(self, product_id: str) -> None:
        with self.transaction() as tx:
            tx.delete_product(product_id)

    # ---------- queries ----------
    def _select(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        try:
            with self.connect() as conn:
                return conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise PersistenceError(str(exc)) from exc

    @staticmethod
    def _where(clauses: List[str]) -> str:
        return f"WHERE {' AND '.join(clauses)}" if clauses else ""

    def get_store(self, store_id: str) -> Optional[Store]:
        rows = self._select("SELECT * FROM stores WHERE store_id = ?;", (store_id,))
        return _row_to_store(rows[0]) if rows else None

    def get_store_by_remote_id(self, remote_id: str) -> Optional[Store]:
        rows = self._select("SELECT * FROM stores WHERE remote_id = ?;", (remote_id,))
        return _row_to_store(rows[0]) if rows else None

    def fetch_stores(self, *, name_contains: Optional[str] = None, linked: Optional[bool] = None) -> List[Store]:
        clauses: List[str] = []
        params: List[Any] = []
        lc = _linked_clause(linked)
        if lc:
            clauses.append(lc)
        if name_contains:
            clauses.append("LOWER(name) LIKE ? ESCAPE '\\'")
            params.append(_like_pattern(name_contains))
        rows = self._select(f"SELECT * FROM stores {self._where(clauses)} ORDER BY created_at, rowid;", tuple(params))
        return [_row_to_store(r) for r in rows]

    def get_aisle(self, aisle_id: str) -> Optional[Aisle]:
        rows = self._select("SELECT * FROM aisles WHERE aisle_id = ?;", (aisle_id,))
        return _row_to_aisle(rows[0]) if rows else None

    def fetch_aisles(
        self,
        store_id: str,
        *,
        linked: Optional[bool] = None,
        name_contains: Optional[str] = None,
        keyword_contains: Optional[str] = None,
    ) -> List[Aisle]:
        """Aisles of a store in insertion order."""
        clauses = ["store_id = ?"]
        params: List[Any] = [store_id]
        lc = _linked_clause(linked)
        if lc:
            clauses.append(lc)
        if name_contains:
            clauses.append("LOWER(name_or_number) LIKE ? ESCAPE '\\'")
            params.append(_like_pattern(name_contains))
        rows = self._select(f"SELECT * FROM aisles {self._where(clauses)} ORDER BY rowid;", tuple(params))
        aisles = [_row_to_aisle(r) for r in rows]
        if keyword_contains:
            q = keyword_contains.strip().lower()
            aisles = [a for a in aisles if any(q in kw for kw in a.keywords)]
        return aisles

    def get_product(self, product_id: str) -> Optional[ProductItem]:
        rows = self._select("SELECT * FROM product_items WHERE product_id = ?;", (product_id,))
        return _row_to_product(rows[0]) if rows else None

    def fetch_products(
        self,
        store_id: str,
        *,
        linked: Optional[bool] = None,
        name_contains: Optional[str] = None,
        aisle_id: Optional[str] = None,
    ) -> List[ProductItem]:
        clauses = ["store_id = ?"]
        params: List[Any] = [store_id]
        lc = _linked_clause(linked)
        if lc:
            clauses.append(lc)
        if name_contains:
            clauses.append("LOWER(name) LIKE ? ESCAPE '\\'")
            params.append(_like_pattern(name_contains))
        if aisle_id:
            clauses.append("aisle_id = ?")
            params.append(aisle_id)
        rows = self._select(f"SELECT * FROM product_items {self._where(clauses)} ORDER BY rowid;", tuple(params))
        return [_row_to_product(r) for r in rows]

    def summary(self) -> Dict[str, int]:
        """Row counts per table."""
        counts: Dict[str, int] = {}
        for table in ("stores", "aisles", "product_items"):
            rows = self._select(f"SELECT COUNT(*) AS count FROM {table};")
            counts[table] = int(rows[0]["count"])
        return counts
