"""persistent store: sqlite-backed collections with atomic transactions.

four collections (canvases, nodes, edges, settings) declared up front with
their key and index fields, dexie style. records are plain json dicts; the
indexed fields are copied into real columns so range queries hit an index.

usage:
    store = Store(path)
    await store.open_or_create()
    async with store.transaction("nodes", "edges") as tx:
        await tx.nodes.delete_where("canvasId", canvas_id)
        await tx.edges.delete_where("canvasId", canvas_id)
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, Optional, Sequence, Union

import aiosqlite

from .errors import StoreUnavailableError, TransactionAbortedError

logger = logging.getLogger(__name__)


# --- configuration ---

SCHEMA_VERSION = 1
DB_FILENAME = "warren.db"
MEMORY = ":memory:"

Index = Union[str, tuple[str, ...]]


@dataclass(frozen=True)
class CollectionSchema:
    """key and index layout for one collection."""

    name: str
    key: tuple[str, ...]
    indexes: tuple[Index, ...] = ()

    @property
    def columns(self) -> tuple[str, ...]:
        """key fields first, then every indexed field, no repeats."""
        seen: list[str] = list(self.key)
        for index in self.indexes:
            for column in _fields(index):
                if column not in seen:
                    seen.append(column)
        return tuple(seen)


SCHEMA: tuple[CollectionSchema, ...] = (
    CollectionSchema("canvases", key=("id",), indexes=("name", "updatedAt", "createdAt")),
    CollectionSchema(
        "nodes",
        key=("canvasId", "id"),
        indexes=("canvasId", "type", "updatedAt", "createdAt", ("canvasId", "type")),
    ),
    CollectionSchema(
        "edges",
        key=("canvasId", "id"),
        indexes=(
            "canvasId", "source", "target", "updatedAt", "createdAt",
            ("canvasId", "source"), ("canvasId", "target"),
        ),
    ),
    CollectionSchema("settings", key=("key",), indexes=("updatedAt",)),
)

COLLECTIONS = tuple(s.name for s in SCHEMA)


def get_data_dir() -> Path:
    """get the local data directory (WARREN_HOME or ~/.warren)."""
    env_home = os.environ.get("WARREN_HOME")
    data_dir = Path(env_home).expanduser() if env_home else Path.home() / ".warren"
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def get_default_db_path() -> Path:
    """database file path: WARREN_DB_PATH, else <data dir>/warren.db."""
    env_path = os.environ.get("WARREN_DB_PATH")
    if env_path:
        return Path(env_path).expanduser()
    return get_data_dir() / DB_FILENAME


def _fields(index: Index) -> tuple[str, ...]:
    return (index,) if isinstance(index, str) else tuple(index)


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def _column_value(value: Any) -> Any:
    """sqlite can index scalars only; anything else is indexed by its json."""
    if value is None or isinstance(value, (str, int, float)):
        return value
    return json.dumps(value, sort_keys=True)


_active_tx: ContextVar[Optional["Transaction"]] = ContextVar("warren_active_tx", default=None)


class Collection:
    """one collection as seen from inside a transaction."""

    def __init__(self, tx: Transaction, schema: CollectionSchema):
        self._tx = tx
        self.schema = schema
        self._table = _quote(schema.name)

    @property
    def name(self) -> str:
        return self.schema.name

    # --- reads ---

    async def get(self, key: Union[str, Sequence[Any]]) -> Optional[dict]:
        """fetch one record by primary key (tuple for compound keys)."""
        values = self._key_values(key)
        where = " AND ".join(f"{_quote(k)} = ?" for k in self.schema.key)
        rows = await self._tx._fetch(f"SELECT record FROM {self._table} WHERE {where}", values)
        return json.loads(rows[0]["record"]) if rows else None

    async def where(
        self,
        index: Index,
        value: Any,
        order_by: Optional[Index] = None,
        reverse: bool = False,
    ) -> list[dict]:
        """all records whose indexed field(s) equal value."""
        fields = self._check_index(index)
        values = (value,) if len(fields) == 1 else tuple(value)
        if len(values) != len(fields):
            raise ValueError(f"index {fields} needs {len(fields)} values, got {len(values)}")
        where = " AND ".join(f"{_quote(f)} = ?" for f in fields)
        sql = f"SELECT record FROM {self._table} WHERE {where}{self._order(order_by, reverse)}"
        rows = await self._tx._fetch(sql, [_column_value(v) for v in values])
        return [json.loads(r["record"]) for r in rows]

    async def between(
        self,
        index: str,
        lower: Any = None,
        upper: Any = None,
        reverse: bool = False,
    ) -> list[dict]:
        """records with lower <= field <= upper, ordered by the field."""
        (column,) = self._check_index(index)
        clauses, params = [], []
        if lower is not None:
            clauses.append(f"{_quote(column)} >= ?")
            params.append(lower)
        if upper is not None:
            clauses.append(f"{_quote(column)} <= ?")
            params.append(upper)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = f"SELECT record FROM {self._table}{where}{self._order(index, reverse)}"
        rows = await self._tx._fetch(sql, params)
        return [json.loads(r["record"]) for r in rows]

    async def all(self, order_by: Optional[Index] = None, reverse: bool = False) -> list[dict]:
        rows = await self._tx._fetch(f"SELECT record FROM {self._table}{self._order(order_by, reverse)}", ())
        return [json.loads(r["record"]) for r in rows]

    async def count(self) -> int:
        rows = await self._tx._fetch(f"SELECT COUNT(*) AS n FROM {self._table}", ())
        return rows[0]["n"]

    # --- writes ---

    async def put(self, record: dict) -> None:
        """insert or replace one record."""
        await self.bulk_put([record])

    async def bulk_put(self, records: Iterable[dict]) -> None:
        self._tx._require_write(self.name)
        columns = self.schema.columns
        rows = [self._row(record, columns) for record in records]
        if not rows:
            return
        names = ", ".join(_quote(c) for c in columns)
        marks = ", ".join("?" for _ in range(len(columns) + 1))
        sql = f"INSERT OR REPLACE INTO {self._table} ({names}, record) VALUES ({marks})"
        await self._tx._write_many(sql, rows)

    async def delete(self, key: Union[str, Sequence[Any]]) -> bool:
        """delete by primary key. returns True if a record was removed."""
        self._tx._require_write(self.name)
        values = self._key_values(key)
        where = " AND ".join(f"{_quote(k)} = ?" for k in self.schema.key)
        return await self._tx._write(f"DELETE FROM {self._table} WHERE {where}", values) > 0

    async def delete_where(self, index: Index, value: Any) -> int:
        """delete every record matching an index. returns the count."""
        self._tx._require_write(self.name)
        fields = self._check_index(index)
        values = (value,) if len(fields) == 1 else tuple(value)
        where = " AND ".join(f"{_quote(f)} = ?" for f in fields)
        return await self._tx._write(
            f"DELETE FROM {self._table} WHERE {where}", [_column_value(v) for v in values]
        )

    async def clear(self) -> int:
        self._tx._require_write(self.name)
        return await self._tx._write(f"DELETE FROM {self._table}", ())

    # --- helpers ---

    def _key_values(self, key: Union[str, Sequence[Any]]) -> list[Any]:
        values = [key] if isinstance(key, str) else list(key)
        if len(values) != len(self.schema.key):
            raise ValueError(f"{self.name} key is {self.schema.key}, got {key!r}")
        return values

    def _check_index(self, index: Index) -> tuple[str, ...]:
        fields = _fields(index)
        declared = [_fields(i) for i in self.schema.indexes] + [self.schema.key]
        if fields not in declared:
            raise ValueError(f"{self.name} has no index on {'+'.join(fields)}")
        return fields

    def _order(self, order_by: Optional[Index], reverse: bool) -> str:
        # insertion order (rowid) unless asked otherwise, and as the final tie-break
        direction = " DESC" if reverse else ""
        if order_by is None:
            return f" ORDER BY rowid{direction}"
        fields = _fields(order_by)
        for f in fields:
            if f not in self.schema.columns:
                raise ValueError(f"{self.name} cannot be ordered by {f}")
        terms = [f"{_quote(f)}{direction}" for f in fields] + [f"rowid{direction}"]
        return " ORDER BY " + ", ".join(terms)

    def _row(self, record: dict, columns: tuple[str, ...]) -> list[Any]:
        for k in self.schema.key:
            if record.get(k) in (None, ""):
                raise ValueError(f"{self.name} record is missing key field {k!r}")
        row = [_column_value(record.get(c)) for c in columns]
        row.append(json.dumps(record))
        return row


class Transaction:
    """handle passed to a transaction body."""

    def __init__(self, conn: aiosqlite.Connection, scope: tuple[str, ...], mode: str):
        self._conn = conn
        self.scope = scope
        self.mode = mode
        self.owner = asyncio.current_task()
        self._collections = {
            s.name: Collection(self, s) for s in SCHEMA if s.name in scope
        }

    def __getitem__(self, name: str) -> Collection:
        try:
            return self._collections[name]
        except KeyError:
            raise ValueError(
                f"collection {name!r} is not part of this transaction ({', '.join(self.scope)})"
            ) from None

    @property
    def canvases(self) -> Collection:
        return self["canvases"]

    @property
    def nodes(self) -> Collection:
        return self["nodes"]

    @property
    def edges(self) -> Collection:
        return self["edges"]

    @property
    def settings(self) -> Collection:
        return self["settings"]

    def _require_write(self, name: str) -> None:
        if self.mode != "rw":
            raise ValueError(f"cannot write {name!r} in a read-only transaction")

    async def _fetch(self, sql: str, params: Sequence[Any]) -> list[aiosqlite.Row]:
        try:
            return list(await self._conn.execute_fetchall(sql, params))
        except aiosqlite.Error as e:
            raise TransactionAbortedError(f"read failed: {e}") from e

    async def _write(self, sql: str, params: Sequence[Any]) -> int:
        try:
            cursor = await self._conn.execute(sql, params)
            count = cursor.rowcount
            await cursor.close()
            return count
        except aiosqlite.Error as e:
            raise TransactionAbortedError(f"write failed: {e}") from e

    async def _write_many(self, sql: str, rows: list[list[Any]]) -> None:
        try:
            await self._conn.executemany(sql, rows)
        except aiosqlite.Error as e:
            raise TransactionAbortedError(f"write failed: {e}") from e


class Store:
    """durable, versioned, indexed store for canvases, nodes, edges, settings."""

    def __init__(self, path: Union[str, Path, None] = None, schema_version: int = SCHEMA_VERSION):
        if path is None:
            path = get_default_db_path()
        self.path = str(path)
        self.schema_version = schema_version
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    async def open_or_create(self, schema_version: Optional[int] = None) -> None:
        """open the database, creating tables and indexes if needed.

        idempotent. raises StoreUnavailableError if the file can't be opened
        or was written by a newer schema.
        """
        if self._conn is not None:
            return
        if schema_version is not None:
            self.schema_version = schema_version

        conn: Optional[aiosqlite.Connection] = None
        try:
            if self.path != MEMORY:
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            # autocommit mode: transactions are opened explicitly below
            conn = await aiosqlite.connect(self.path, isolation_level=None)
            conn.row_factory = aiosqlite.Row

            rows = await conn.execute_fetchall("PRAGMA user_version")
            on_disk = rows[0][0]
            if on_disk > self.schema_version:
                raise StoreUnavailableError(
                    f"database schema v{on_disk} is newer than supported v{self.schema_version}"
                )

            await conn.execute("BEGIN IMMEDIATE")
            for schema in SCHEMA:
                for statement in _ddl(schema):
                    await conn.execute(statement)
            await conn.execute(f"PRAGMA user_version = {int(self.schema_version)}")
            await conn.execute("COMMIT")
        except (aiosqlite.Error, OSError) as e:
            if conn is not None:
                await conn.close()
            raise StoreUnavailableError(f"cannot open store at {self.path}: {e}") from e
        except StoreUnavailableError:
            if conn is not None:
                await conn.close()
            raise

        self._conn = conn
        logger.debug("store open at %s (schema v%d)", self.path, self.schema_version)

    async def close(self) -> None:
        if self._conn is not None:
            conn, self._conn = self._conn, None
            await conn.close()

    async def __aenter__(self) -> Store:
        await self.open_or_create()
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    @asynccontextmanager
    async def transaction(self, *collections: str, mode: str = "rw") -> AsyncIterator[Transaction]:
        """run a body with exclusive access to the named collections.

        writes commit together when the body exits normally; any exception
        rolls all of them back and propagates. a transaction opened again
        from the same task joins the outer one.
        """
        if mode not in ("r", "rw"):
            raise ValueError(f"mode must be 'r' or 'rw', got {mode!r}")
        scope = tuple(collections) or COLLECTIONS
        unknown = [c for c in scope if c not in COLLECTIONS]
        if unknown:
            raise ValueError(f"unknown collection(s): {', '.join(unknown)}")

        outer = _active_tx.get()
        if outer is not None and outer.owner is asyncio.current_task() and outer._conn is self._conn:
            missing = [c for c in scope if c not in outer.scope]
            if missing:
                raise ValueError(f"nested transaction widens scope with {', '.join(missing)}")
            if mode == "rw" and outer.mode != "rw":
                raise ValueError("nested read-write transaction inside a read-only one")
            yield outer
            return

        conn = self._require_open()
        async with self._lock:
            tx = Transaction(conn, scope, mode)
            try:
                await conn.execute("BEGIN IMMEDIATE" if mode == "rw" else "BEGIN")
            except aiosqlite.Error as e:
                raise StoreUnavailableError(f"cannot begin transaction: {e}") from e

            token = _active_tx.set(tx)
            try:
                yield tx
            except BaseException:
                await self._rollback(conn)
                raise
            else:
                try:
                    await conn.execute("COMMIT")
                except aiosqlite.Error as e:
                    await self._rollback(conn)
                    raise TransactionAbortedError(f"commit failed: {e}") from e
            finally:
                _active_tx.reset(token)

    async def info(self) -> dict:
        """name, version and record counts, for debugging."""
        counts = {}
        async with self.transaction(mode="r") as tx:
            for name in COLLECTIONS:
                counts[name] = await tx[name].count()
        return {
            "name": self.path,
            "version": self.schema_version,
            "is_open": self.is_open,
            "tables": counts,
        }

    def _require_open(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StoreUnavailableError("store is not open - call open_or_create() first")
        return self._conn

    async def _rollback(self, conn: aiosqlite.Connection) -> None:
        try:
            await conn.execute("ROLLBACK")
        except aiosqlite.Error:
            # sqlite already rolled back on its own (e.g. after a full disk)
            logger.warning("rollback failed on %s", self.path, exc_info=True)


def _ddl(schema: CollectionSchema) -> list[str]:
    table = _quote(schema.name)
    columns = ", ".join(f"{_quote(c)}" for c in schema.columns)
    key = ", ".join(_quote(k) for k in schema.key)
    statements = [
        f"CREATE TABLE IF NOT EXISTS {table} ({columns}, record TEXT NOT NULL, PRIMARY KEY ({key}))"
    ]
    for index in schema.indexes:
        fields = _fields(index)
        name = _quote(f"idx_{schema.name}_{'_'.join(fields)}")
        statements.append(
            f"CREATE INDEX IF NOT EXISTS {name} ON {table} ({', '.join(_quote(f) for f in fields)})"
        )
    return statements
