"""
QueryDeck - Database Executor
=============================

PURPOSE:
    The execution collaborator for database mode:

        execute(sql, params) -> rows

    Filter injection emits PostgreSQL-style positional placeholders
    ($1, $2, ...). SQLAlchemy's text() binds by name, so each $n is
    rewritten to :pn and params are passed as {"p1": ..., "p2": ...}.
    Placeholders inside quoted literals are left alone.

GUARANTEES:
    - At most max_rows rows returned per statement
    - PostgreSQL statements run under SET LOCAL statement_timeout
    - SQLAlchemyError propagates to the caller (the pipeline reports it)

WHAT THIS IS NOT:
    - NOT a validator (validate_query() runs before this)
    - NOT a connection manager for multiple databases
"""

import re
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

DEFAULT_MAX_ROWS = 10000
DEFAULT_STATEMENT_TIMEOUT_MS = 30000

SYSTEM_SCHEMAS = {
    'information_schema', 'pg_catalog', 'pg_toast',
    'mysql', 'sys', 'performance_schema',
}

_LITERAL_OR_POSITIONAL_RE = re.compile(r"'[^']*(?:''[^']*)*'|\$(\d+)")
# ':word' inside a literal would otherwise be taken as a bind by text()
_LITERAL_COLON_RE = re.compile(r'(?<![:\w\\]):(?=\w)')

_MISSING_COLUMN_MARKERS = ("Unknown column", "no such column")


def to_named_binds(sql: str, params: Sequence[Any]) -> Tuple[str, Dict[str, Any]]:
    """
    Rewrite $n placeholders into :pn binds.

    Example:
        to_named_binds("SELECT * FROM t WHERE a = $1 AND b = '$2'", ["x"])
        -> ("SELECT * FROM t WHERE a = :p1 AND b = '$2'", {"p1": "x"})
    """
    def replace(match: re.Match) -> str:
        if match.group(1) is None:
            return _LITERAL_COLON_RE.sub(r'\\:', match.group(0))
        return f":p{match.group(1)}"

    converted = _LITERAL_OR_POSITIONAL_RE.sub(replace, sql)
    bound = {f"p{i}": value for i, value in enumerate(params or [], start=1)}
    return converted, bound


def is_missing_column_error(message: str) -> bool:
    """Driver-agnostic check for 'column does not exist' failures."""
    if any(marker in message for marker in _MISSING_COLUMN_MARKERS):
        return True
    return "column" in message and "does not exist" in message


class DatabaseExecutor:
    """Runs validated, parameterized SELECTs through a SQLAlchemy engine."""

    def __init__(
        self,
        database_url: Optional[str] = None,
        engine: Optional[Engine] = None,
        max_rows: int = DEFAULT_MAX_ROWS,
        statement_timeout_ms: int = DEFAULT_STATEMENT_TIMEOUT_MS,
    ):
        if engine is None and not database_url:
            raise ValueError("DatabaseExecutor needs a database_url or an engine")

        self.engine = engine if engine is not None else create_engine(database_url, pool_pre_ping=True)
        self.max_rows = max_rows
        self.statement_timeout_ms = statement_timeout_ms
        logger.info(f"[EXECUTOR] Engine ready (dialect: {self.dialect})")

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def execute(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
        """
        Execute one SELECT and return rows as dicts.

        Raises:
            SQLAlchemyError: on any driver/database failure
        """
        statement, bound = to_named_binds(sql, params or [])

        with self.engine.connect() as conn:
            if self.dialect == "postgresql" and self.statement_timeout_ms:
                conn.execute(text(f"SET LOCAL statement_timeout = {int(self.statement_timeout_ms)}"))

            result = conn.execute(text(statement), bound)
            rows = [dict(row._mapping) for row in result.fetchmany(self.max_rows)]

        if len(rows) >= self.max_rows:
            logger.warning(f"[EXECUTOR] Result capped at {self.max_rows} rows")
        logger.info(f"[EXECUTOR] Query executed: {len(rows)} rows returned")
        return rows

    def test_connection(self) -> Dict[str, Any]:
        """SELECT 1 round trip; reports failure instead of raising."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1")).fetchone()
            return {"success": True, "message": "Connection successful", "dialect": self.dialect}
        except SQLAlchemyError as e:
            logger.error(f"[EXECUTOR] Connection test failed: {e}")
            return {"success": False, "error": str(e)}

    def introspect_schema(self) -> Dict[str, Any]:
        """
        Tables and columns visible to the engine.

        Returns:
            {"tables": {name: {"columns": [{"name", "type", "nullable"}]}}}
            Non-default schemas are prefixed (schema.table).
        """
        inspector = inspect(self.engine)
        default_schema = inspector.default_schema_name
        schema_info: Dict[str, Any] = {"tables": {}}

        for schema in inspector.get_schema_names():
            if schema in SYSTEM_SCHEMAS or schema.startswith("pg_"):
                continue

            for table in inspector.get_table_names(schema=schema):
                name = table if schema == default_schema else f"{schema}.{table}"
                schema_info["tables"][name] = {
                    "columns": [
                        {
                            "name": col["name"],
                            "type": str(col["type"]),
                            "nullable": col.get("nullable", True),
                        }
                        for col in inspector.get_columns(table, schema=schema)
                    ]
                }

        logger.info(f"[EXECUTOR] Schema loaded: {len(schema_info['tables'])} tables")
        return schema_info

    def dispose(self):
        self.engine.dispose()
