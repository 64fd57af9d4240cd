"""
QueryDeck - Parameterized Filter Injection
==========================================

PROBLEM SOLVED:
    The agent writes a SQL statement once; the dashboard then changes date
    ranges and dropdowns many times. Re-generating SQL per filter change is
    slow, and splicing user values into SQL text is an injection vector.

SOLUTION:
    Each query carries structured filter metadata (column, operator, type).
    At execution time the active filter values are turned into a
    parameterized condition ($1, $2, ...) and spliced into the caller's SQL
    at the correct syntactic position:

        SELECT region, SUM(revenue) FROM daily_metrics GROUP BY region
            + date_from = '2024-01-01'
        ->  SELECT region, SUM(revenue) FROM daily_metrics
            WHERE date >= $1 GROUP BY region            params: ['2024-01-01']

    The condition goes into the statement itself, not around it, so filters
    work on columns that the SELECT list does not expose.

FILTER SYSTEMS (in priority order):
    1. Explicit metadata      build_filtered_query()
    2. Name-based inference   build_auto_filtered_query() / infer_filter_meta()
    3. Legacy placeholders    placeholder_engine.py

INJECTION POINT:
    The statement is tokenized with sqlparse (string literals and quoted
    identifiers are single tokens) and walked with explicit parenthesis
    depth. Only depth-0 keywords preceded by whitespace count, so WHERE or
    ORDER BY inside a subquery, CTE body or window clause is ignored.

GUARANTEES:
    - len(params) equals the number of $n placeholders emitted
    - Filter values never appear in the SQL text
    - No surviving filter -> SQL returned unchanged, params == []
    - Never raises on bad metadata: invalid entries are skipped and logged
"""

import re
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import sqlparse
from sqlparse import tokens as T

logger = logging.getLogger(__name__)


class FilterOperator(str, Enum):
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    NOT_IN = "not_in"
    LIKE = "like"
    ILIKE = "ilike"
    BETWEEN = "between"


class FilterType(str, Enum):
    """Governs value casting only; values are always bind parameters."""
    DATE = "date"
    TEXT = "text"
    NUMBER = "number"
    BOOLEAN = "boolean"


# Single-parameter operators -> SQL comparison
_COMPARISON_SQL = {
    FilterOperator.EQ: "=",
    FilterOperator.NEQ: "!=",
    FilterOperator.GT: ">",
    FilterOperator.GTE: ">=",
    FilterOperator.LT: "<",
    FilterOperator.LTE: "<=",
    FilterOperator.LIKE: "LIKE",
    FilterOperator.ILIKE: "ILIKE",
}

IDENTIFIER_PATTERN = re.compile(r'[A-Za-z_][A-Za-z0-9_.]{0,127}')

FilterValue = Union[str, int, float, bool, Sequence[Any], None]


@dataclass
class FilterMeta:
    """
    How one dashboard filter maps onto a SQL condition.

    Attributes:
        id: Filter id, unique within a query (e.g. 'date_from', 'region')
        column: Column to filter on
        operator: Comparison operator
        type: Value type used for casting
        table: Alias qualifier when the query joins (e.g. 'dm')
        optional: Whether the filter may be left unset
    """
    id: str
    column: str
    operator: Union[FilterOperator, str]
    type: Union[FilterType, str]
    table: Optional[str] = None
    optional: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FilterMeta":
        """Build from a loosely-typed mapping; missing fields become ''."""
        return cls(
            id=data.get("id") or "",
            column=data.get("column") or "",
            operator=data.get("operator") or "",
            type=data.get("type") or "",
            table=data.get("table") or None,
            optional=data.get("optional", True),
        )


@dataclass
class FilteredQueryResult:
    """
    Output of filter injection.

    Attributes:
        sql: Statement with the condition spliced in
        params: Values for $1, $2, ... in order
        where_clause: Applied clause, for diagnostics ('' when nothing applied)
    """
    sql: str
    params: List[Any] = field(default_factory=list)
    where_clause: str = ""


@dataclass
class FilterMetaValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)


@dataclass
class WhereInjectionPoint:
    position: int
    has_existing_where: bool
    insert_text: str
    # Start of the existing WHERE body (only when has_existing_where)
    where_body_start: int = -1
    # Existing WHERE body has a depth-0 OR and must be parenthesized
    needs_grouping: bool = False


# =============================================================================
# VALUE CASTING
# =============================================================================

_FLOAT_PREFIX_RE = re.compile(r'\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?')


def _parse_float(text: str) -> Optional[float]:
    """Leading-numeric parse: '12.5kg' -> 12.5, 'abc' -> None."""
    match = _FLOAT_PREFIX_RE.match(text)
    if not match:
        return None
    return float(match.group(0))


def cast_value(value: Any, filter_type: Union[FilterType, str]) -> Any:
    """Cast a raw filter value to the Python type bound for `filter_type`."""
    if value is None:
        return None

    if filter_type == FilterType.NUMBER:
        if isinstance(value, bool):
            return float(value)
        if isinstance(value, (int, float)):
            return float(value)
        return _parse_float(str(value))

    if filter_type == FilterType.BOOLEAN:
        if isinstance(value, bool):
            return value
        return str(value) in ("true", "1")

    # date and text pass through; the database casts ISO dates itself
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _is_unset(value: Any) -> bool:
    if value is None or value == "":
        return True
    if isinstance(value, (list, tuple)) and len(value) == 0:
        return True
    return False


def _coerce_enum(enum_cls, value):
    try:
        return enum_cls(value)
    except ValueError:
        return None


# =============================================================================
# INJECTION POINT
# =============================================================================

_TERMINATOR_PHRASES = {"GROUP BY", "ORDER BY"}
_TERMINATOR_WORDS = {"LIMIT", "HAVING", "UNION", "INTERSECT", "EXCEPT"}


def _is_terminator(keyword: str) -> bool:
    if keyword in _TERMINATOR_PHRASES:
        return True
    return keyword.split(" ", 1)[0] in _TERMINATOR_WORDS


def _depth_zero_keywords(sql: str) -> List[Tuple[int, str]]:
    """
    (offset, KEYWORD) for each keyword token outside parentheses.

    Multi-word keywords ('GROUP  BY', 'UNION ALL') are normalized to single
    spaces. A keyword counts only at start of string or after whitespace.
    """
    found: List[Tuple[int, str]] = []
    depth = 0
    offset = 0

    for ttype, value in sqlparse.lexer.tokenize(sql):
        if ttype in T.Punctuation:
            if value == "(":
                depth += 1
            elif value == ")":
                depth -= 1
        elif depth == 0 and ttype in T.Keyword:
            if offset == 0 or sql[offset - 1].isspace():
                found.append((offset, " ".join(value.upper().split())))
        offset += len(value)

    return found


def find_where_injection_point(sql: str) -> WhereInjectionPoint:
    """
    Locate where a filter condition belongs in `sql`.

    Existing depth-0 WHERE: append ' AND ...' before the first depth-0
    GROUP BY / ORDER BY / LIMIT / HAVING / UNION / INTERSECT / EXCEPT after
    it (or at the end).
    No WHERE: insert ' WHERE ...' before the earliest such terminator.
    """
    keywords = _depth_zero_keywords(sql)

    where_pos = next((pos for pos, kw in keywords if kw == "WHERE"), None)

    if where_pos is not None:
        end_pos = next(
            (pos for pos, kw in keywords if pos > where_pos and _is_terminator(kw)),
            len(sql),
        )
        has_or = any(
            kw == "OR" for pos, kw in keywords if where_pos < pos < end_pos
        )
        return WhereInjectionPoint(
            position=end_pos,
            has_existing_where=True,
            insert_text=" AND ",
            where_body_start=where_pos + len("WHERE"),
            needs_grouping=has_or,
        )

    insert_pos = next((pos for pos, kw in keywords if _is_terminator(kw)), len(sql))
    return WhereInjectionPoint(
        position=insert_pos,
        has_existing_where=False,
        insert_text=" WHERE ",
    )


# Whitespace collapse that leaves string literals alone
_LITERAL_OR_SPACE_RE = re.compile(r"'[^']*(?:''[^']*)*'|\s+")


def _collapse_whitespace(sql: str) -> str:
    def replace(match: re.Match) -> str:
        text = match.group(0)
        return text if text.startswith("'") else " "
    return _LITERAL_OR_SPACE_RE.sub(replace, sql).strip()


# =============================================================================
# QUERY BUILDING
# =============================================================================

def _column_reference(meta: FilterMeta) -> Optional[str]:
    if not meta.column or not IDENTIFIER_PATTERN.fullmatch(meta.column):
        return None
    if meta.table:
        if not IDENTIFIER_PATTERN.fullmatch(meta.table):
            return None
        return f"{meta.table}.{meta.column}"
    return meta.column


def _render_condition(
    meta: FilterMeta,
    operator: FilterOperator,
    filter_type: FilterType,
    value: Any,
    next_index: int,
) -> Optional[Tuple[str, List[Any]]]:
    """One SQL fragment plus its params, or None when the filter is skipped."""
    col = _column_reference(meta)
    if col is None:
        logger.warning(
            f"[FILTER] Skipping filter '{meta.id}': invalid column reference "
            f"{meta.table!r}.{meta.column!r}"
        )
        return None

    if operator in _COMPARISON_SQL:
        return (
            f"{col} {_COMPARISON_SQL[operator]} ${next_index}",
            [cast_value(value, filter_type)],
        )

    if operator in (FilterOperator.IN, FilterOperator.NOT_IN):
        values = list(value) if isinstance(value, (list, tuple)) else [value]
        placeholders = ", ".join(f"${next_index + i}" for i in range(len(values)))
        keyword = "IN" if operator == FilterOperator.IN else "NOT IN"
        return (
            f"{col} {keyword} ({placeholders})",
            [cast_value(v, filter_type) for v in values],
        )

    if operator == FilterOperator.BETWEEN:
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            logger.debug(f"[FILTER] Skipping BETWEEN filter '{meta.id}': expected [from, to]")
            return None
        low, high = value
        if low is None or high is None:
            return None
        return (
            f"{col} BETWEEN ${next_index} AND ${next_index + 1}",
            [cast_value(low, filter_type), cast_value(high, filter_type)],
        )

    return None


def build_filtered_query(
    base_sql: str,
    filter_meta: Sequence[FilterMeta],
    filter_values: Dict[str, FilterValue],
) -> FilteredQueryResult:
    """
    Inject a parameterized WHERE/AND condition into `base_sql`.

    Args:
        base_sql: Caller SQL without filter conditions
        filter_meta: How each filter maps onto a column
        filter_values: Filter id -> scalar, [from, to] pair or list

    Returns:
        FilteredQueryResult

    Example:
        build_filtered_query(
            "SELECT region, SUM(revenue) FROM daily_metrics GROUP BY region",
            [FilterMeta(id="date_from", column="date", operator="gte", type="date")],
            {"date_from": "2024-01-01"},
        )
        -> sql: "SELECT region, SUM(revenue) FROM daily_metrics
                 WHERE date >= $1 GROUP BY region"
           params: ["2024-01-01"]
    """
    conditions: List[str] = []
    params: List[Any] = []
    filter_values = filter_values or {}

    for meta in filter_meta or []:
        value = filter_values.get(meta.id)
        if _is_unset(value):
            continue

        operator = _coerce_enum(FilterOperator, meta.operator)
        filter_type = _coerce_enum(FilterType, meta.type)
        if operator is None or filter_type is None:
            logger.warning(
                f"[FILTER] Skipping filter '{meta.id}': unsupported operator/type "
                f"({meta.operator!r}, {meta.type!r})"
            )
            continue

        rendered = _render_condition(meta, operator, filter_type, value, len(params) + 1)
        if rendered is None:
            continue

        fragment, fragment_params = rendered
        conditions.append(fragment)
        params.extend(fragment_params)

    if not conditions:
        return FilteredQueryResult(sql=base_sql, params=[], where_clause="")

    conditions_text = " AND ".join(conditions)
    clean_base = re.sub(r';\s*$', '', base_sql).strip()
    point = find_where_injection_point(clean_base)

    head = clean_base[:point.position]
    if point.needs_grouping:
        # a OR b AND $1 would bind the filter to b only
        existing = clean_base[point.where_body_start:point.position].strip()
        head = f"{clean_base[:point.where_body_start]} ({existing})"

    sql = head + point.insert_text + conditions_text + " " + clean_base[point.position:]
    sql = _collapse_whitespace(sql)

    where_clause = (
        f"AND {conditions_text}" if point.has_existing_where else f"WHERE {conditions_text}"
    )
    logger.debug(f"[FILTER] Applied {len(conditions)} filter(s), {len(params)} param(s): {sql}")

    return FilteredQueryResult(sql=sql, params=params, where_clause=where_clause)


# =============================================================================
# CONVENIENCE CONSTRUCTORS
# =============================================================================

def create_date_range_filter_meta(column: str, table: Optional[str] = None) -> List[FilterMeta]:
    """gte/lte pair keyed date_from/date_to."""
    return [
        FilterMeta(id="date_from", column=column, operator=FilterOperator.GTE,
                   type=FilterType.DATE, table=table),
        FilterMeta(id="date_to", column=column, operator=FilterOperator.LTE,
                   type=FilterType.DATE, table=table),
    ]


def create_equality_filter_meta(
    id: str,
    column: str,
    type: Union[FilterType, str] = FilterType.TEXT,
    table: Optional[str] = None,
) -> FilterMeta:
    return FilterMeta(id=id, column=column, operator=FilterOperator.EQ, type=type, table=table)


# =============================================================================
# METADATA VALIDATION
# =============================================================================

def validate_filter_meta(filter_meta: Sequence[FilterMeta]) -> FilterMetaValidationResult:
    """
    Check filter metadata for duplicate ids and missing fields.

    Collects every violation rather than stopping at the first one.
    """
    errors: List[str] = []
    seen_ids = set()

    for meta in filter_meta or []:
        if meta.id in seen_ids:
            errors.append(f"Duplicate filter ID: {meta.id}")
        seen_ids.add(meta.id)

        if not meta.id:
            errors.append("Filter missing required 'id' field")
        if not meta.column:
            errors.append(f"Filter '{meta.id}' missing required 'column' field")
        elif not IDENTIFIER_PATTERN.fullmatch(meta.column):
            errors.append(f"Filter '{meta.id}' has invalid column name: {meta.column}")
        if not meta.operator:
            errors.append(f"Filter '{meta.id}' missing required 'operator' field")
        elif _coerce_enum(FilterOperator, meta.operator) is None:
            errors.append(f"Filter '{meta.id}' has unsupported operator: {meta.operator}")
        if not meta.type:
            errors.append(f"Filter '{meta.id}' missing required 'type' field")
        elif _coerce_enum(FilterType, meta.type) is None:
            errors.append(f"Filter '{meta.id}' has unsupported type: {meta.type}")

    return FilterMetaValidationResult(valid=not errors, errors=errors)


# =============================================================================
# AUTO-INFERENCE (fallback when the agent sent no metadata)
# =============================================================================

COMMON_DATE_COLUMNS = [
    "date",
    "created_at",
    "updated_at",
    "order_date",
    "transaction_date",
    "timestamp",
    "datetime",
    "time",
    "day",
    "event_date",
    "sale_date",
    "purchase_date",
]

DATE_FROM_KEYS = {"date_from", "start_date", "from_date"}
DATE_TO_KEYS = {"date_to", "end_date", "to_date"}
CATEGORICAL_KEYS = {
    "category", "region", "status", "type", "department",
    "product", "customer", "country", "state", "city",
}


def detect_date_column(sql: str) -> Optional[str]:
    """First COMMON_DATE_COLUMNS entry referenced by `sql`, or None."""
    for col in COMMON_DATE_COLUMNS:
        name = re.escape(col)
        patterns = [
            rf'\b{name}\b',                                 # simple reference
            rf'\.{name}\b',                                 # t.date
            rf'\b{name}\s*[,)]',                            # SELECT list
            rf'\b{name}\s*(?:=|>|<|>=|<=|BETWEEN)',         # WHERE context
        ]
        for pattern in patterns:
            if re.search(pattern, sql, re.IGNORECASE):
                return col
    return None


def infer_filter_meta(
    filter_params: Dict[str, FilterValue],
    sql: Optional[str] = None,
) -> List[FilterMeta]:
    """
    Infer filter metadata from parameter names.

    date_from/start_date/from_date   -> gte on the detected date column
    date_to/end_date/to_date         -> lte on the detected date column
    category, region, status, ...    -> eq (scalar) or in (list), text
    *_id                             -> eq, number
    *_min / *_max                    -> gte / lte on the stripped name, number

    Date filters are dropped when `sql` is given but references none of
    COMMON_DATE_COLUMNS; without `sql` they target 'date'. Unknown keys
    are dropped.
    """
    meta: List[FilterMeta] = []
    date_column = detect_date_column(sql) if sql else "date"

    for key, value in (filter_params or {}).items():
        if _is_unset(value):
            continue

        if key in DATE_FROM_KEYS:
            if date_column:
                meta.append(FilterMeta(id=key, column=date_column,
                                       operator=FilterOperator.GTE, type=FilterType.DATE))
        elif key in DATE_TO_KEYS:
            if date_column:
                meta.append(FilterMeta(id=key, column=date_column,
                                       operator=FilterOperator.LTE, type=FilterType.DATE))
        elif key in CATEGORICAL_KEYS:
            operator = FilterOperator.IN if isinstance(value, (list, tuple)) else FilterOperator.EQ
            meta.append(FilterMeta(id=key, column=key, operator=operator, type=FilterType.TEXT))
        elif key.endswith("_id"):
            meta.append(FilterMeta(id=key, column=key,
                                   operator=FilterOperator.EQ, type=FilterType.NUMBER))
        elif key.endswith("_min"):
            meta.append(FilterMeta(id=key, column=key[:-len("_min")],
                                   operator=FilterOperator.GTE, type=FilterType.NUMBER))
        elif key.endswith("_max"):
            meta.append(FilterMeta(id=key, column=key[:-len("_max")],
                                   operator=FilterOperator.LTE, type=FilterType.NUMBER))

    if meta:
        logger.debug(f"[FILTER] Inferred {len(meta)} filter(s): {[m.id for m in meta]}")
    return meta


def build_auto_filtered_query(
    base_sql: str,
    filter_params: Dict[str, FilterValue],
) -> Optional[FilteredQueryResult]:
    """
    infer_filter_meta() + build_filtered_query().

    Returns None when nothing could be inferred, telling the caller to run
    the query unmodified.
    """
    meta = infer_filter_meta(filter_params, base_sql)
    if not meta:
        return None
    return build_filtered_query(base_sql, meta, filter_params)
