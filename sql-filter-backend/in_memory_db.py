"""
QueryDeck - In-Memory Query Engine
==================================

PURPOSE:
    Run agent SQL over uploaded rows (CSV / Excel / JSON) when no database
    is attached. Tables are plain lists of dicts; statements are re-parsed
    per call, no AST is kept.

GRAMMAR (single statement, keywords case-insensitive):

    SELECT <col-list> FROM <table>
      [WHERE <cond> [AND <cond>]*]
      [GROUP BY <col>]
      [ORDER BY <col> [ASC|DESC]]
      [LIMIT <n>]

    <col-list>  *  |  name  |  name AS alias  |  FUNC(arg) [AS alias]
    FUNC        COUNT | SUM | AVG | MIN | MAX   (arg '*' for COUNT only)
    <cond>      column op value, op in = != <> > < >= <= LIKE IN BETWEEN

EXECUTION ORDER:
    table lookup -> WHERE -> GROUP BY / aggregates -> ORDER BY -> LIMIT
    -> projection (non-aggregate queries only)

WHAT THIS IS NOT:
    - NOT a SQL engine (no joins, no OR, no expressions)
    - NOT strict: unknown columns read as None instead of raising

CONCURRENCY:
    One InMemoryDatabase per session, guarded by an RLock. Sessions are
    handed out by InMemoryStoreRegistry.
"""

import re
import math
import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime
from functools import cmp_to_key
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

Row = Dict[str, Any]

TYPE_SAMPLE_SIZE = 100
TYPE_MAJORITY_THRESHOLD = 0.8

SUPPORTED_FORMAT = "SELECT columns FROM table [WHERE ...] [GROUP BY column] [ORDER BY ...] [LIMIT n]"

_SELECT_RE = re.compile(
    r'^\s*SELECT\s+(?P<columns>.+?)\s+FROM\s+(?P<table>\w+)'
    r'(?:\s+WHERE\s+(?P<where>.+?))?'
    r'(?:\s+GROUP\s+BY\s+(?P<group_by>\w+))?'
    r'(?:\s+ORDER\s+BY\s+(?P<order_by>\w+)(?:\s+(?P<order_dir>ASC|DESC))?)?'
    r'(?:\s+LIMIT\s+(?P<limit>\d+))?'
    r'\s*;?\s*$',
    re.IGNORECASE | re.DOTALL,
)

_AGGREGATE_RE = re.compile(
    r'^(COUNT|SUM|AVG|MIN|MAX)\s*\(\s*(.+?)\s*\)(?:\s+AS\s+(\w+))?$',
    re.IGNORECASE,
)
_HAS_AGGREGATE_RE = re.compile(r'\b(COUNT|SUM|AVG|MIN|MAX)\s*\(', re.IGNORECASE)
_ALIAS_RE = re.compile(r'^(.+?)\s+AS\s+(\w+)$', re.IGNORECASE)

_CONDITION_RE = re.compile(
    r'(\w+)\s*(BETWEEN|LIKE|IN|!=|<>|>=|<=|=|>|<)\s*(.+)',
    re.IGNORECASE | re.DOTALL,
)
# AND separators outside string literals
_LITERAL_OR_AND_RE = re.compile(r"'[^']*(?:''[^']*)*'|\s+AND\s+", re.IGNORECASE)
_BETWEEN_HEAD_RE = re.compile(r"\bBETWEEN\s+\S+$", re.IGNORECASE)

_NUMERIC_RE = re.compile(r'^\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?\s*$')
_FLOAT_PREFIX_RE = re.compile(r'\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?')
_ISO_DATE_RE = re.compile(r'^(\d{4}-\d{2}-\d{2})')
_SLASH_DATE_RE = re.compile(r'^(\d{1,2})/(\d{1,2})/(\d{2,4})')


# =============================================================================
# ERRORS
# =============================================================================

class InMemoryQueryError(Exception):
    """Base for in-memory query failures; `kind` is echoed back to the agent."""
    kind = "IN_MEMORY_ERROR"


class TableNotFoundError(InMemoryQueryError):
    kind = "TABLE_NOT_FOUND"

    def __init__(self, table_name: str, available: List[str]):
        self.table_name = table_name
        self.available = available
        listed = ", ".join(available) or "none"
        super().__init__(f'Table "{table_name}" not found. Available tables: {listed}')


class UnsupportedSyntaxError(InMemoryQueryError):
    kind = "UNSUPPORTED_SYNTAX"

    def __init__(self, sql: str):
        self.sql = sql
        super().__init__(f"Only SELECT queries are supported. Format: {SUPPORTED_FORMAT}")


# =============================================================================
# SCHEMA
# =============================================================================

@dataclass
class ColumnInfo:
    name: str
    type: str  # text | number | boolean | date | unknown
    nullable: bool


@dataclass
class TableSchema:
    name: str
    columns: List[ColumnInfo]
    row_count: int


@dataclass
class InMemoryTable:
    name: str
    rows: List[Row]
    columns: List[ColumnInfo] = field(default_factory=list)

    def schema(self) -> TableSchema:
        return TableSchema(name=self.name, columns=list(self.columns), row_count=len(self.rows))


@dataclass
class InMemoryQueryResult:
    rows: List[Row]
    columns: List[str]


# =============================================================================
# VALUE HELPERS
# =============================================================================

def _is_null(value: Any) -> bool:
    return value is None or value == ""


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _looks_like_date(value: str) -> bool:
    iso = _ISO_DATE_RE.match(value)
    if iso:
        try:
            date.fromisoformat(iso.group(1))
            return True
        except ValueError:
            return False

    slash = _SLASH_DATE_RE.match(value)
    if slash:
        month, day, year = (int(part) for part in slash.groups())
        if year < 100:
            year += 2000
        try:
            date(year, month, day)
            return True
        except ValueError:
            return False

    return False


def infer_column_type(values: List[Any]) -> str:
    """
    Infer a column type from up to TYPE_SAMPLE_SIZE non-null values.

    number > boolean > date when one of them reaches the majority
    threshold; otherwise text. All-null columns are 'unknown'.
    """
    sample = [v for v in values if not _is_null(v)][:TYPE_SAMPLE_SIZE]
    if not sample:
        return "unknown"

    number_count = boolean_count = date_count = 0
    for value in sample:
        if _is_number(value) or (isinstance(value, str) and _NUMERIC_RE.match(value)):
            number_count += 1
        elif isinstance(value, bool) or value in ("true", "false"):
            boolean_count += 1
        elif isinstance(value, (date, datetime)):
            date_count += 1
        elif isinstance(value, str) and _looks_like_date(value):
            date_count += 1

    threshold = len(sample) * TYPE_MAJORITY_THRESHOLD
    if number_count >= threshold:
        return "number"
    if boolean_count >= threshold:
        return "boolean"
    if date_count >= threshold:
        return "date"
    return "text"


def _build_column_info(rows: List[Row], column_names: List[str]) -> List[ColumnInfo]:
    columns = []
    for name in column_names:
        values = [row.get(name) for row in rows]
        columns.append(ColumnInfo(
            name=name,
            type=infer_column_type(values),
            nullable=any(_is_null(v) for v in values),
        ))
    return columns


def _to_number(value: Any) -> float:
    """Numeric coercion: None/'' -> 0, bools -> 0/1, non-numeric -> nan."""
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if _is_number(value):
        return value
    text = str(value).strip()
    if text == "":
        return 0
    if _NUMERIC_RE.match(text):
        number = float(text)
        return int(number) if number.is_integer() and "." not in text and "e" not in text.lower() else number
    return math.nan


def _number_or_zero(value: Any) -> float:
    number = _to_number(value)
    return 0 if math.isnan(number) else number


def _parse_float_prefix(text: str) -> float:
    match = _FLOAT_PREFIX_RE.match(text)
    return float(match.group(0)) if match else math.nan


def _as_text(value: Any) -> str:
    """Stable textual form used by IN lists, LIKE, grouping and sorting."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _unquote(literal: str) -> str:
    literal = literal.strip()
    if len(literal) >= 2 and literal[0] == literal[-1] and literal[0] in ("'", '"'):
        quote = literal[0]
        return literal[1:-1].replace(quote * 2, quote)
    return literal


# =============================================================================
# WHERE
# =============================================================================

def _split_conditions(where_clause: str) -> List[str]:
    """Split on AND outside string literals, keeping BETWEEN x AND y together."""
    parts: List[str] = []
    start = 0
    for match in _LITERAL_OR_AND_RE.finditer(where_clause):
        if match.group(0).startswith("'"):
            continue
        parts.append(where_clause[start:match.start()])
        start = match.end()
    parts.append(where_clause[start:])

    merged: List[str] = []
    for part in parts:
        if merged and _BETWEEN_HEAD_RE.search(merged[-1]):
            merged[-1] = f"{merged[-1]} AND {part}"
        else:
            merged.append(part)
    return [p.strip() for p in merged if p.strip()]


def _loose_equals(row_value: Any, compare_value: Any) -> bool:
    if row_value is None:
        return False
    if _is_number(row_value) and _is_number(compare_value):
        return row_value == compare_value
    if isinstance(row_value, str) and isinstance(compare_value, str):
        return row_value == compare_value
    return _as_text(row_value) == _as_text(compare_value)


def _ordered(left: Any, right: Any, op: Callable[[Any, Any], bool]) -> bool:
    if left is None or right is None:
        return False
    if isinstance(left, str) and isinstance(right, str):
        return op(left, right)
    left_num, right_num = _to_number(left), _to_number(right)
    if math.isnan(left_num) or math.isnan(right_num):
        return False
    return op(left_num, right_num)


def _like(row_value: Any, pattern: str) -> bool:
    if row_value is None:
        return False
    regex = "".join(
        ".*" if ch == "%" else "." if ch == "_" else re.escape(ch)
        for ch in pattern
    )
    return re.fullmatch(regex, _as_text(row_value), re.IGNORECASE | re.DOTALL) is not None


_ORDERED_OPS = {
    ">": lambda a, b: a > b,
    "<": lambda a, b: a < b,
    ">=": lambda a, b: a >= b,
    "<=": lambda a, b: a <= b,
}


def _row_matches(row: Row, condition: str) -> bool:
    match = _CONDITION_RE.search(condition)
    if not match:
        # Unparseable conditions do not filter
        return True

    column, operator, raw_value = match.groups()
    operator = operator.upper()
    row_value = row.get(column)
    raw_value = raw_value.strip()

    if operator == "IN":
        inner = re.sub(r'^\(|\)$', '', raw_value)
        candidates = [_unquote(v) for v in inner.split(",")]
        return _as_text(row_value) in candidates

    if operator == "BETWEEN":
        bounds = re.split(r'\s+AND\s+', raw_value, maxsplit=1, flags=re.IGNORECASE)
        if len(bounds) != 2:
            return True
        low, high = (_coerce_compare_value(row_value, b) for b in bounds)
        return _ordered(row_value, low, _ORDERED_OPS[">="]) and _ordered(row_value, high, _ORDERED_OPS["<="])

    compare_value = _coerce_compare_value(row_value, raw_value)

    if operator == "=":
        return _loose_equals(row_value, compare_value)
    if operator in ("!=", "<>"):
        return not _loose_equals(row_value, compare_value)
    if operator == "LIKE":
        return _like(row_value, str(compare_value))
    return _ordered(row_value, compare_value, _ORDERED_OPS[operator])


def _coerce_compare_value(row_value: Any, raw_value: str) -> Any:
    value = _unquote(raw_value)
    if _is_number(row_value):
        return _parse_float_prefix(value)
    return value


# =============================================================================
# AGGREGATION
# =============================================================================

def _split_columns(columns_str: str) -> List[str]:
    return [c.strip() for c in columns_str.split(",")]


def _aggregate(func: str, arg: str, rows: List[Row]) -> Any:
    func = func.upper()
    if func == "COUNT" and arg == "*":
        return len(rows)

    values = [row.get(arg) for row in rows if row.get(arg) is not None]

    if func == "COUNT":
        return len(values)
    if func == "SUM":
        return sum(_number_or_zero(v) for v in values)
    if func == "AVG":
        return sum(_number_or_zero(v) for v in values) / len(values) if values else 0

    numbers = [_to_number(v) for v in values]
    if not numbers or any(math.isnan(n) for n in numbers):
        return None
    return min(numbers) if func == "MIN" else max(numbers)


def _aggregate_row(columns_str: str, rows: List[Row], group_by: Optional[str] = None) -> Row:
    result: Row = {}
    if group_by:
        result[group_by] = rows[0].get(group_by) if rows else None

    for col in _split_columns(columns_str):
        if group_by and col.lower() == group_by.lower():
            continue

        agg = _AGGREGATE_RE.match(col)
        if agg:
            func, arg, alias = agg.groups()
            result[alias or col] = _aggregate(func, arg, rows)
            continue

        # Bare column in a grouped query: first-seen value of the group
        if group_by and rows:
            alias = _ALIAS_RE.match(col)
            if alias:
                result[alias.group(2)] = rows[0].get(alias.group(1).strip())
            else:
                result[col] = rows[0].get(col)

    return result


def _group_rows(rows: List[Row], columns_str: str, group_by: str) -> List[Row]:
    groups: Dict[str, List[Row]] = {}
    for row in rows:
        groups.setdefault(_as_text(row.get(group_by)), []).append(row)
    return [_aggregate_row(columns_str, group, group_by) for group in groups.values()]


def _aggregate_columns(columns_str: str, group_by: Optional[str] = None) -> List[str]:
    names = [group_by] if group_by else []
    for col in _split_columns(columns_str):
        if group_by and col.lower() == group_by.lower():
            continue
        # Ungrouped aggregate rows carry aggregates only
        if not group_by and not _AGGREGATE_RE.match(col):
            continue
        alias = re.search(r'AS\s+(\w+)$', col, re.IGNORECASE)
        names.append(alias.group(1) if alias else col)
    return names


# =============================================================================
# ORDER BY / PROJECTION
# =============================================================================

def _compare_values(a: Any, b: Any) -> int:
    if _is_number(a) and _is_number(b):
        return (a > b) - (a < b)
    left, right = _as_text(a), _as_text(b)
    left_key, right_key = (left.casefold(), left), (right.casefold(), right)
    return (left_key > right_key) - (left_key < right_key)


def _sort_rows(rows: List[Row], column: str, descending: bool) -> List[Row]:
    """Sort by one column; None sorts last in either direction."""
    present = [r for r in rows if r.get(column) is not None]
    missing = [r for r in rows if r.get(column) is None]
    direction = -1 if descending else 1
    present.sort(key=cmp_to_key(lambda a, b: direction * _compare_values(a[column], b[column])))
    return present + missing


def _project(rows: List[Row], columns_str: str) -> Tuple[List[Row], List[str]]:
    specs: List[Tuple[str, str]] = []
    for col in _split_columns(columns_str):
        alias = _ALIAS_RE.match(col)
        if alias:
            specs.append((alias.group(1).strip(), alias.group(2)))
        else:
            specs.append((col, col))

    projected = [{out: row.get(src) for src, out in specs} for row in rows]
    return projected, [out for _, out in specs]


# =============================================================================
# DATABASE
# =============================================================================

class InMemoryDatabase:
    """
    Named row collections with a minimal SQL interface.

    add_table() replaces any table of the same name wholesale; query()
    sees either the old or the new table, never a mix.
    """

    def __init__(self):
        self._tables: Dict[str, InMemoryTable] = {}
        self._lock = threading.RLock()

    def add_table(
        self,
        name: str,
        rows: List[Row],
        column_names: Optional[List[str]] = None,
    ) -> TableSchema:
        """Register (or replace) a table. Columns default to the first row's keys."""
        rows = list(rows or [])
        if column_names is None:
            column_names = list(rows[0].keys()) if rows else []

        table = InMemoryTable(name=name, rows=rows, columns=_build_column_info(rows, column_names))
        with self._lock:
            replaced = name in self._tables
            self._tables[name] = table

        logger.info(
            f"[IN_MEMORY] {'Replaced' if replaced else 'Added'} table '{name}': "
            f"{len(rows)} rows, {len(column_names)} columns"
        )
        return table.schema()

    def remove_table(self, name: str) -> bool:
        with self._lock:
            removed = self._tables.pop(name, None) is not None
        if removed:
            logger.info(f"[IN_MEMORY] Removed table '{name}'")
        return removed

    def get_table_schema(self, name: str) -> Optional[TableSchema]:
        with self._lock:
            table = self._tables.get(name)
            return table.schema() if table else None

    def get_all_schemas(self) -> List[TableSchema]:
        with self._lock:
            return [table.schema() for table in self._tables.values()]

    def get_table_data(self, name: str) -> Optional[List[Row]]:
        with self._lock:
            table = self._lookup(name)
            return table.rows if table else None

    def clear(self):
        with self._lock:
            self._tables.clear()
        logger.info("[IN_MEMORY] Cleared all tables")

    def is_empty(self) -> bool:
        with self._lock:
            return not self._tables

    def _lookup(self, name: str) -> Optional[InMemoryTable]:
        table = self._tables.get(name)
        if table:
            return table
        lowered = name.lower()
        for table_name, candidate in self._tables.items():
            if table_name.lower() == lowered:
                return candidate
        return None

    def query(self, sql: str) -> InMemoryQueryResult:
        """
        Execute one SELECT against the registered tables.

        Raises:
            UnsupportedSyntaxError: statement does not fit the grammar
            TableNotFoundError: FROM names an unknown table
        """
        match = _SELECT_RE.match(sql or "")
        if not match:
            logger.warning(f"[IN_MEMORY] Unsupported statement: {sql[:120] if sql else sql!r}")
            raise UnsupportedSyntaxError(sql)

        columns_str = match.group("columns").strip()
        table_name = match.group("table")
        where_clause = match.group("where")
        group_by = match.group("group_by")
        order_by = match.group("order_by")
        order_dir = match.group("order_dir")
        limit = match.group("limit")

        with self._lock:
            table = self._lookup(table_name)
            if table is None:
                raise TableNotFoundError(table_name, list(self._tables.keys()))
            rows = list(table.rows)
            table_columns = [c.name for c in table.columns]

        if where_clause:
            conditions = _split_conditions(where_clause)
            rows = [row for row in rows if all(_row_matches(row, c) for c in conditions)]

        has_aggregation = bool(_HAS_AGGREGATE_RE.search(columns_str))
        grouped = has_aggregation or bool(group_by)

        if group_by:
            rows = _group_rows(rows, columns_str, group_by)
            columns = _aggregate_columns(columns_str, group_by)
        elif has_aggregation:
            rows = [_aggregate_row(columns_str, rows)]
            columns = _aggregate_columns(columns_str)
        elif columns_str == "*":
            columns = table_columns
        else:
            columns = []

        if order_by:
            rows = _sort_rows(rows, order_by, descending=(order_dir or "").upper() == "DESC")

        if limit:
            rows = rows[:int(limit)]

        if not grouped and columns_str != "*":
            rows, columns = _project(rows, columns_str)

        logger.debug(f"[IN_MEMORY] {table_name}: {len(rows)} row(s) returned")
        return InMemoryQueryResult(rows=rows, columns=columns)


class InMemoryStoreRegistry:
    """Per-session InMemoryDatabase handles with explicit reset."""

    def __init__(self):
        self._stores: Dict[str, InMemoryDatabase] = {}
        self._lock = threading.Lock()

    def get(self, session_id: str = "default") -> InMemoryDatabase:
        with self._lock:
            store = self._stores.get(session_id)
            if store is None:
                store = InMemoryDatabase()
                self._stores[session_id] = store
                logger.debug(f"[IN_MEMORY] Created store for session '{session_id}'")
            return store

    def reset(self, session_id: str = "default") -> bool:
        with self._lock:
            store = self._stores.pop(session_id, None)
        if store is None:
            return False
        store.clear()
        return True

    def reset_all(self):
        with self._lock:
            stores = list(self._stores.values())
            self._stores.clear()
        for store in stores:
            store.clear()

    def session_ids(self) -> List[str]:
        with self._lock:
            return list(self._stores.keys())
