from __future__ import annotations

import json
import sqlite3
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from .errors import DuplicateSchema, ExecutionError, StorageError
from .schema import DataType, SchemaDescriptor, TableDef, TableOp, TableOpKind

SQLITE_TYPES = {
    DataType.TEXT: "TEXT",
    DataType.INT: "INTEGER",
    DataType.BOOL: "INTEGER",
    DataType.UUID: "TEXT",
    DataType.BLOB: "BLOB",
}


def physical_table(schema_id: str, table: str) -> str:
    """Name of the sqlite table backing a schema's table."""
    return f'"{schema_id}__{table}"'


def _encode(value: Any, data_type: DataType) -> Any:
    if value is None:
        return None
    if data_type == DataType.BOOL:
        return 1 if value else 0
    if data_type == DataType.UUID:
        return str(value)
    return value


def _decode(value: Any, data_type: DataType) -> Any:
    if value is None:
        return None
    if data_type == DataType.BOOL:
        return bool(value)
    if data_type == DataType.BLOB and isinstance(value, memoryview):
        return bytes(value)
    return value


def _journal_value(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    return value


class Transaction:
    """The transaction handle shared by every context in one call chain.

    Opened by TableStore.begin(); committed or rolled back exactly once by
    the owner of the top-level context.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._journal: List[Dict[str, Any]] = []
        self._notices: List[str] = []
        self._sequence = 0
        self._closed = False
        self._conn.execute("BEGIN")

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def journal(self) -> List[Dict[str, Any]]:
        return list(self._journal)

    @property
    def notices(self) -> List[str]:
        return list(self._notices)

    def add_notice(self, message: str) -> None:
        self._notices.append(message)

    def next_sequence(self) -> int:
        """Per-transaction counter used for deterministic id derivation."""
        self._sequence += 1
        return self._sequence

    def execute(self, schema_id: str, table_def: TableDef, op: TableOp) -> Union[List[Dict[str, Any]], int]:
        """Run one statement against a table of `schema_id`.

        Returns rows for selects and the affected row count otherwise.
        """
        if self._closed:
            raise StorageError("Transaction is closed")

        self._check_columns(table_def, op)
        try:
            if op.kind == TableOpKind.SELECT:
                return self._select(schema_id, table_def, op)
            if op.kind == TableOpKind.INSERT:
                affected = self._insert(schema_id, table_def, op)
            elif op.kind == TableOpKind.UPDATE:
                affected = self._update(schema_id, table_def, op)
            else:
                affected = self._delete(schema_id, table_def, op)
        except sqlite3.IntegrityError as exc:
            raise StorageError(f"{table_def.name}: {exc}") from exc

        self._journal.append(
            {
                "schema": schema_id,
                "table": table_def.name,
                "op": op.kind.value,
                "values": {k: _journal_value(v) for k, v in sorted(op.values.items())},
                "set": {k: _journal_value(v) for k, v in sorted(op.assign.items())},
                "where": {k: _journal_value(v) for k, v in sorted(op.where.items())},
                "affected": affected,
            }
        )
        return affected

    def commit(self) -> List[Dict[str, Any]]:
        if self._closed:
            raise StorageError("Transaction is closed")
        self._conn.execute("COMMIT")
        self._closed = True
        return self.journal

    def rollback(self) -> None:
        if self._closed:
            return
        self._conn.execute("ROLLBACK")
        self._closed = True
        self._journal.clear()
        self._notices.clear()

    def _check_columns(self, table_def: TableDef, op: TableOp) -> None:
        names = list(op.values) + list(op.where) + list(op.assign) + list(op.columns or [])
        for name in names:
            if table_def.column(name) is None:
                raise ExecutionError(f"Unknown column {name!r} on table {table_def.name!r}")

    def _where_clause(self, table_def: TableDef, where: Dict[str, Any]) -> Tuple[str, List[Any]]:
        if not where:
            return "", []
        parts = []
        params: List[Any] = []
        for name in sorted(where):
            col = table_def.column(name)
            value = where[name]
            if value is None:
                parts.append(f'"{name}" IS NULL')
            else:
                parts.append(f'"{name}" = ?')
                params.append(_encode(value, col.type))
        return " WHERE " + " AND ".join(parts), params

    def _select(self, schema_id: str, table_def: TableDef, op: TableOp) -> List[Dict[str, Any]]:
        columns = op.columns or [c.name for c in table_def.columns]
        projection = ", ".join(f'"{name}"' for name in columns)
        where_sql, params = self._where_clause(table_def, op.where)
        # Deterministic ordering: primary key first, insertion order otherwise.
        order_cols = [f'"{name}"' for name in table_def.primary_key] or ["rowid"]
        sql = (
            f"SELECT {projection} FROM {physical_table(schema_id, table_def.name)}"
            f"{where_sql} ORDER BY {', '.join(order_cols)}"
        )
        if op.limit is not None:
            sql += " LIMIT ?"
            params.append(op.limit)

        rows = []
        for row in self._conn.execute(sql, params):
            rows.append(
                {name: _decode(row[name], table_def.column(name).type) for name in columns}
            )
        return rows

    def _insert(self, schema_id: str, table_def: TableDef, op: TableOp) -> int:
        for col in table_def.columns:
            if col.not_null and op.values.get(col.name) is None:
                raise StorageError(f"{table_def.name}.{col.name} may not be null")
        if not op.values:
            raise ExecutionError(f"Insert into {table_def.name!r} has no values")
        names = sorted(op.values)
        placeholders = ", ".join("?" for _ in names)
        quoted = ", ".join(f'"{n}"' for n in names)
        params = [_encode(op.values[n], table_def.column(n).type) for n in names]
        sql = f"INSERT INTO {physical_table(schema_id, table_def.name)} ({quoted}) VALUES ({placeholders})"

        if op.on_conflict == "update" and table_def.primary_key:
            updates = [n for n in names if n not in table_def.primary_key]
            conflict = ", ".join(f'"{n}"' for n in table_def.primary_key)
            if updates:
                assignments = ", ".join(f'"{n}" = excluded."{n}"' for n in updates)
                sql += f" ON CONFLICT({conflict}) DO UPDATE SET {assignments}"
            else:
                sql += f" ON CONFLICT({conflict}) DO NOTHING"
        elif op.on_conflict == "nothing":
            sql += " ON CONFLICT DO NOTHING"

        cur = self._conn.execute(sql, params)
        return cur.rowcount

    def _update(self, schema_id: str, table_def: TableDef, op: TableOp) -> int:
        if not op.assign:
            raise ExecutionError(f"Update on {table_def.name!r} sets no columns")
        names = sorted(op.assign)
        assignments = ", ".join(f'"{n}" = ?' for n in names)
        params = [_encode(op.assign[n], table_def.column(n).type) for n in names]
        where_sql, where_params = self._where_clause(table_def, op.where)
        cur = self._conn.execute(
            f"UPDATE {physical_table(schema_id, table_def.name)} SET {assignments}{where_sql}",
            params + where_params,
        )
        return cur.rowcount

    def _delete(self, schema_id: str, table_def: TableDef, op: TableOp) -> int:
        where_sql, params = self._where_clause(table_def, op.where)
        cur = self._conn.execute(
            f"DELETE FROM {physical_table(schema_id, table_def.name)}{where_sql}",
            params,
        )
        return cur.rowcount


class TableStore:
    """sqlite-backed storage for deployed schemas and their tables."""

    def __init__(self, path: str) -> None:
        self._path = path
        # Autocommit mode: transactions are opened explicitly by begin().
        # Callers serialize access; the HTTP surface may hop threads.
        self._conn = sqlite3.connect(path, isolation_level=None, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._active: Optional[Transaction] = None
        self._ensure_schema()

    @property
    def path(self) -> str:
        return self._path

    def _ensure_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schemas (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                owner TEXT NOT NULL,
                data_json TEXT NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_schemas_owner
            ON schemas(owner)
            """
        )

    def save_schema(self, descriptor: SchemaDescriptor) -> None:
        """Persist a compiled schema and create its tables.

        Write-once: an existing id fails with DuplicateSchema.
        """
        cur = self._conn.cursor()
        cur.execute("BEGIN")
        try:
            cur.execute(
                "INSERT INTO schemas (id, name, owner, data_json) VALUES (?, ?, ?, json(?))",
                (
                    descriptor.id,
                    descriptor.name,
                    descriptor.owner,
                    json.dumps(descriptor.model_dump(mode="json", by_alias=True)),
                ),
            )
            for table_def in descriptor.tables.values():
                cur.execute(self._create_table_sql(descriptor.id, table_def))
        except sqlite3.IntegrityError as exc:
            cur.execute("ROLLBACK")
            raise DuplicateSchema(f"Schema already deployed: {descriptor.id}") from exc
        except sqlite3.Error:
            cur.execute("ROLLBACK")
            raise
        cur.execute("COMMIT")

    def _create_table_sql(self, schema_id: str, table_def: TableDef) -> str:
        cols = []
        for col in table_def.columns:
            decl = f'"{col.name}" {SQLITE_TYPES[col.type]}'
            if col.not_null:
                decl += " NOT NULL"
            cols.append(decl)
        if table_def.primary_key:
            keys = ", ".join(f'"{name}"' for name in table_def.primary_key)
            cols.append(f"PRIMARY KEY ({keys})")
        return f"CREATE TABLE {physical_table(schema_id, table_def.name)} ({', '.join(cols)})"

    def iter_schemas(self) -> Iterable[SchemaDescriptor]:
        cur = self._conn.execute("SELECT data_json FROM schemas ORDER BY rowid")
        for row in cur.fetchall():
            yield SchemaDescriptor.model_validate(json.loads(row["data_json"]))

    def begin(self) -> Transaction:
        if self._active is not None and not self._active.closed:
            raise StorageError("A transaction is already open on this store")
        self._active = Transaction(self._conn)
        return self._active

    def dump(self, schema_id: str, table_def: TableDef) -> List[Dict[str, Any]]:
        """Read committed rows of one table in deterministic order."""
        order_cols = [f'"{name}"' for name in table_def.primary_key] or ["rowid"]
        cur = self._conn.execute(
            f"SELECT * FROM {physical_table(schema_id, table_def.name)} ORDER BY {', '.join(order_cols)}"
        )
        return [
            {col.name: _decode(row[col.name], col.type) for col in table_def.columns}
            for row in cur.fetchall()
        ]

    def close(self) -> None:
        if self._active is not None and not self._active.closed:
            self._active.rollback()
        self._conn.close()
