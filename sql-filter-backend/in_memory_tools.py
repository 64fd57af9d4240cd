"""
QueryDeck Tools - In-Memory SQL Tool Surface
============================================

Tagged-result wrappers the agent loop calls when the data source is an
uploaded file. Engine exceptions never escape: every failure comes back
as SQLToolResult(success=False, error=...) so the message can be fed to
the agent verbatim for self-correction.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

from in_memory_db import InMemoryDatabase, InMemoryQueryError, TableSchema

logger = logging.getLogger(__name__)

NO_TABLES_MESSAGE = "No tables loaded. Please upload a file first."
NO_DATA_MESSAGE = "No data loaded. Please upload a file first."

IN_MEMORY_SQL_TOOL_DESCRIPTION = """Execute a SQL SELECT query against the in-memory data and return the results.
If the query fails, the error message is returned so you can fix and retry.

SUPPORTED SQL (use ONLY these):
- SELECT columns FROM table / SELECT * FROM table
- WHERE col = value, col > value, col < value, col >= value, col <= value
- WHERE col LIKE '%pattern%' / WHERE col IN ('a', 'b') / WHERE col BETWEEN x AND y
- Multiple WHERE conditions joined with AND only
- GROUP BY column (single column)
- ORDER BY column [ASC|DESC]
- LIMIT n
- COUNT(*), SUM(col), AVG(col), MIN(col), MAX(col)

NOT SUPPORTED: JOINs, subqueries, OR, HAVING, window functions, CASE/WHEN,
expressions inside aggregates."""


@dataclass
class SQLToolResult:
    """
    Outcome of one keyed query.

    Attributes:
        key: Caller-chosen query identifier (e.g. 'total-count')
        success: Whether rows were produced
        rows: Result rows (None on failure)
        row_count: len(rows) (None on failure)
        error: Error text (None on success)
    """
    key: str
    success: bool
    rows: Optional[List[Dict[str, Any]]] = None
    row_count: Optional[int] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, key: str, rows: List[Dict[str, Any]]) -> "SQLToolResult":
        return cls(key=key, success=True, rows=rows, row_count=len(rows))

    @classmethod
    def failed(cls, key: str, error: str) -> "SQLToolResult":
        return cls(key=key, success=False, error=error)

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


def in_memory_schema_to_prompt(schemas: List[TableSchema]) -> str:
    """Render loaded tables as schema text for the agent prompt."""
    if not schemas:
        return NO_TABLES_MESSAGE

    descriptions = []
    for table in schemas:
        column_lines = "\n".join(
            f"    {col.name} ({col.type}{', nullable' if col.nullable else ''})"
            for col in table.columns
        )
        descriptions.append(
            f"Table: {table.name} ({table.row_count} rows)\n  Columns:\n{column_lines}"
        )

    return "In-Memory Data (from uploaded file):\n\n" + "\n\n".join(descriptions)


def execute_in_memory_sql(db: InMemoryDatabase, key: str, sql: str) -> SQLToolResult:
    """
    Run `sql` against `db` and wrap the outcome.

    Returns:
        SQLToolResult; never raises for engine errors
    """
    if db.is_empty():
        return SQLToolResult.failed(key, NO_DATA_MESSAGE)

    try:
        result = db.query(sql)
    except InMemoryQueryError as e:
        logger.warning(f"[IN_MEMORY] Query '{key}' failed ({e.kind}): {e}")
        return SQLToolResult.failed(key, str(e))

    logger.info(f"[IN_MEMORY] Query '{key}': {len(result.rows)} rows")
    return SQLToolResult.ok(key, result.rows)
