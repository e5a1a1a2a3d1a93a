from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    insert,
    text,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import URL
from sqlalchemy.exc import DBAPIError, DisconnectionError, NoSuchTableError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from scrape_pipeline.config_models import ConnectionProfile, DatabaseSinkSettings, parse_sink_settings
from scrape_pipeline.core.connections import ConnectionRegistry
from scrape_pipeline.core.errors import (
    ConfigurationError,
    PipelineStateError,
    RecordShapeError,
    SinkInitializationError,
)
from scrape_pipeline.core.models import BatchResult, Record
from scrape_pipeline.sinks.base import Sink

COLUMN_TYPES = {
    "text": Text,
    "string": String,
    "integer": Integer,
    "bigint": BigInteger,
    "float": Float,
    "numeric": Numeric,
    "boolean": Boolean,
    "date": Date,
    "datetime": DateTime,
    "json": JSON,
}

# Dialects whose insert() supports ON CONFLICT ... DO UPDATE
UPSERT_INSERTS: Dict[str, Callable[[Table], Any]] = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def build_url(profile: ConnectionProfile) -> str | URL:
    if profile.url:
        return profile.url
    return URL.create(
        profile.driver,
        username=profile.user,
        password=profile.password,
        host=profile.host,
        port=profile.port,
        database=profile.database,
    )


class DatabaseSink(Sink):
    """
    Writes records to a relational table through a SQLAlchemy async engine.

    Records are written in sub-batches of `batch_size` rows, each in its own
    transaction, either as a plain multi-row insert or as an upsert keyed on
    `conflict_column` that overwrites every other column. A sub-batch that
    fails with a data error is counted as failed and the next one is still
    attempted. Lost connections are not data errors and propagate.
    """

    sink_type = "database"

    def __init__(
        self,
        settings: Dict[str, Any],
        connections: Optional[ConnectionRegistry] = None,
        logger: Optional[logging.Logger] = None,
    ):
        super().__init__(logger)
        self.settings = parse_sink_settings(DatabaseSinkSettings, settings, self.sink_type)
        self.connections = connections or ConnectionRegistry()
        self._column_types = self._resolve_column_types(self.settings.table_schema)
        self._engine: Optional[AsyncEngine] = None
        self._table: Optional[Table] = None

    # ---------- Lifecycle ----------

    async def initialize(self) -> None:
        if self._engine is not None:
            if self._table is not None:
                return
            # Left over from a failed attempt
            await self._engine.dispose()
            self._engine = None

        try:
            profile = self.connections.get(self.settings.connection)
        except KeyError as e:
            raise SinkInitializationError(str(e.args[0])) from e

        try:
            self._engine = create_async_engine(build_url(profile), **profile.pool)
        except (SQLAlchemyError, ImportError, TypeError) as e:
            raise SinkInitializationError(f"Cannot create engine for '{self.settings.connection}': {e}") from e

        try:
            async with self._engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
                if self.settings.auto_create_table:
                    await conn.run_sync(self._create_table)
                self._table = await conn.run_sync(self._reflect_table)
        except NoSuchTableError as e:
            raise SinkInitializationError(
                f"Table '{self.settings.table}' does not exist and auto_create_table is off"
            ) from e
        except (SQLAlchemyError, OSError) as e:
            raise SinkInitializationError(f"Database '{self.settings.connection}' is unreachable: {e}") from e

        try:
            self._check_upsert_support()
        except SinkInitializationError:
            self._table = None
            raise
        self.log.info(
            "Database sink initialized: connection=%s table=%s upsert=%s batch_size=%d",
            self.settings.connection,
            self.settings.table,
            self.settings.upsert,
            self.settings.batch_size,
        )

    async def write(self, records: List[Record]) -> BatchResult:
        if not records:
            return BatchResult.empty()
        if self._engine is None or self._table is None:
            raise PipelineStateError("database sink is not initialized")

        result = BatchResult(success=True)
        size = self.settings.batch_size

        for offset in range(0, len(records), size):
            sub_batch = records[offset:offset + size]
            try:
                await self._write_sub_batch(sub_batch)
            except (SQLAlchemyError, RecordShapeError) as e:
                if self._is_disconnect(e):
                    raise
                result.success = False
                result.error_count += len(sub_batch)
                result.errors.append(e)
                self.log.error(
                    "Database batch write failed: table=%s offset=%d rows=%d error=%s",
                    self.settings.table,
                    offset,
                    len(sub_batch),
                    e,
                )
                continue
            result.processed_count += len(sub_batch)

        return result

    async def close(self) -> None:
        engine, self._engine = self._engine, None
        self._table = None
        if engine is None:
            return
        await engine.dispose()
        self.log.info("Database sink closed: connection=%s table=%s", self.settings.connection, self.settings.table)

    async def health_check(self) -> bool:
        if self._engine is None:
            return False
        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            self.log.warning("Database health check failed: connection=%s error=%s", self.settings.connection, e)
            return False
        return True

    def describe(self) -> str:
        return f"database:{self.settings.connection}/{self.settings.table}"

    # ---------- Writes ----------

    async def _write_sub_batch(self, rows: List[Record]) -> None:
        columns, params = self._normalize_rows(rows)
        stmt = self._insert_statement(columns)
        assert self._engine is not None
        async with self._engine.begin() as conn:
            await conn.execute(stmt, params)

    def _normalize_rows(self, rows: List[Record]) -> Tuple[List[str], List[Dict[str, Any]]]:
        """Bind every row with the union of keys in the sub-batch; gaps become NULL."""
        columns: List[str] = []
        seen = set()
        for index, row in enumerate(rows):
            if not isinstance(row, Mapping):
                raise RecordShapeError(f"row {index}: expected a mapping, got {type(row).__name__}")
            for key in row.keys():
                if key not in seen:
                    seen.add(key)
                    columns.append(key)
        return columns, [{c: row.get(c) for c in columns} for row in rows]

    def _insert_statement(self, columns: List[str]):
        assert self._table is not None and self._engine is not None
        if not self.settings.upsert:
            return insert(self._table)

        conflict = self.settings.conflict_column
        stmt = UPSERT_INSERTS[self._engine.dialect.name](self._table)
        updates = {c: stmt.excluded[c] for c in columns if c != conflict and c in self._table.c}
        if not updates:
            return stmt.on_conflict_do_nothing(index_elements=[conflict])
        return stmt.on_conflict_do_update(index_elements=[conflict], set_=updates)

    def _is_disconnect(self, e: Exception) -> bool:
        if isinstance(e, DisconnectionError):
            return True
        return isinstance(e, DBAPIError) and bool(e.connection_invalidated)

    # ---------- Schema ----------

    def _split_table_name(self) -> Tuple[Optional[str], str]:
        schema, _, name = self.settings.table.rpartition(".")
        return (schema or None), name

    def _create_table(self, sync_conn) -> None:
        schema, name = self._split_table_name()
        conflict = self.settings.conflict_column
        table = Table(
            name,
            MetaData(),
            *[
                Column(col, col_type(), primary_key=(col == conflict))
                for col, col_type in self._column_types.items()
            ],
            schema=schema,
        )
        table.create(sync_conn, checkfirst=True)

    def _reflect_table(self, sync_conn) -> Table:
        schema, name = self._split_table_name()
        return Table(name, MetaData(), schema=schema, autoload_with=sync_conn)

    def _check_upsert_support(self) -> None:
        if not self.settings.upsert:
            return
        assert self._engine is not None and self._table is not None
        dialect = self._engine.dialect.name
        if dialect not in UPSERT_INSERTS:
            raise SinkInitializationError(
                f"Upsert is not supported for dialect '{dialect}'. Supported: {', '.join(sorted(UPSERT_INSERTS))}"
            )
        if self.settings.conflict_column not in self._table.c:
            raise SinkInitializationError(
                f"Conflict column '{self.settings.conflict_column}' not found in table '{self.settings.table}'"
            )

    def _resolve_column_types(self, schema: Dict[str, str]) -> Dict[str, Any]:
        resolved = {}
        for column, type_name in schema.items():
            key = str(type_name or "").strip().lower()
            if key not in COLUMN_TYPES:
                known = ", ".join(sorted(COLUMN_TYPES))
                raise ConfigurationError(
                    f"Unknown column type '{type_name}' for column '{column}'. Known types: {known}"
                )
            resolved[column] = COLUMN_TYPES[key]
        return resolved
