"""
QueryDeck - Legacy Placeholder Substitution & Cleanup
=====================================================

ARCHITECTURAL ROLE:
    Backward-compatible filter path for SQL that still carries
    `{{placeholder}}` tokens instead of structured filter metadata.
    The metadata path (filter_metadata.py) is preferred: values there are
    bind parameters, whereas this module substitutes text.

OPERATIONS:
    inject_placeholders()               {{key}} -> value (single quotes doubled)
    remove_unresolved_conditions()      drop AND/OR conditions whose value is
                                        still an unresolved placeholder
    strip_all_unresolved_placeholders() bounded fixed-point cleanup for
                                        AI-emitted defensive SQL

GUARANTEES:
    - Never raises; degrades to NULL / 1=1 / TRUE substitutions
    - strip_all_unresolved_placeholders() leaves no {{...}} in its output
    - The statement head (SELECT/WITH) is never removed
    - Keys that fail the column-name pattern are never substituted

WHAT THIS IS NOT:
    - NOT a SQL parser (regex over text, same as the rest of the pipeline)
    - NOT parameterized (values are inlined after quote escaping)
"""

import re
import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


MAX_CLEANUP_ITERATIONS = 20

# Identifier allow-list shared with filter metadata (table.column allowed)
COLUMN_NAME_PATTERN = re.compile(r'[A-Za-z_][A-Za-z0-9_.]{0,127}')

PLACEHOLDER_PATTERN = re.compile(r'\{\{([^}]+)\}\}')

# SQL single-quoted string literal, '' escape aware, optionally followed by a
# ::type cast. Scanning literal by literal keeps a stray quote pair from
# spanning two unrelated literals.
_QUOTED_LITERAL_RE = re.compile(r"'[^']*(?:''[^']*)*'(?:::\w+)?")


# =============================================================================
# NAME CHECKS
# =============================================================================

def is_valid_column_name(name: Any) -> bool:
    """Check a column/placeholder name against the identifier allow-list."""
    if not isinstance(name, str):
        return False
    return COLUMN_NAME_PATTERN.fullmatch(name) is not None


def sanitize_column_name(name: Any) -> Optional[str]:
    """
    Strip characters outside [A-Za-z0-9_.] from a column name.

    Returns None when nothing usable is left (empty, leading digit/dot,
    or longer than 128 characters).
    """
    if not name or not isinstance(name, str):
        return None

    sanitized = re.sub(r'[^A-Za-z0-9_.]', '', name)

    if not re.match(r'[A-Za-z_]', sanitized):
        return None
    if len(sanitized) > 128:
        return None

    return sanitized


def has_unresolved_placeholders(sql: str) -> bool:
    return bool(sql) and PLACEHOLDER_PATTERN.search(sql) is not None


def extract_placeholders(sql: str) -> List[str]:
    """Unique placeholder names in first-seen order."""
    if not sql:
        return []
    seen: List[str] = []
    for name in PLACEHOLDER_PATTERN.findall(sql):
        if name not in seen:
            seen.append(name)
    return seen


# =============================================================================
# SUBSTITUTION
# =============================================================================

def _escape_sql_value(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ", ".join(_escape_sql_value(v) for v in value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).replace("'", "''")


def inject_placeholders(sql: str, values: Dict[str, Any]) -> str:
    """
    Replace {{key}} occurrences with their values.

    Single quotes in values are doubled. Keys failing the column-name
    pattern are skipped with a warning, as are None values; whatever stays
    unresolved is left for remove_unresolved_conditions().

    Example:
        inject_placeholders(
            "SELECT * FROM orders WHERE region = '{{region}}'",
            {"region": "O'Neil"},
        )
        -> "SELECT * FROM orders WHERE region = 'O''Neil'"
    """
    if not sql or not values:
        return sql

    result = sql
    for key, value in values.items():
        if not is_valid_column_name(key):
            logger.warning(f"[PLACEHOLDER] Skipping invalid filter key: {key!r}")
            continue
        if value is None:
            continue

        safe_value = _escape_sql_value(value)
        pattern = re.compile(r'\{\{' + re.escape(key) + r'\}\}')
        # Function replacement: the value is literal text, not a template
        result = pattern.sub(lambda _m: safe_value, result)

    return result


# =============================================================================
# CONDITION REMOVAL
# =============================================================================

_COL = r'[\w.]+'
_OP = r'(?:=|!=|<>|<=|>=|<|>|IN|LIKE|NOT\s+IN|NOT\s+LIKE)'
_QUOTED_VAL = r"'[^']*\{\{[^}]+\}\}[^']*'"
_PAREN_VAL = r'\([^)]*\{\{[^}]+\}\}[^)]*\)'
_BARE_VAL = r'\{\{[^}]+\}\}'
_ANY_VAL = f'(?:{_QUOTED_VAL}|{_PAREN_VAL}|{_BARE_VAL})'
_CLAUSE_END = r'(?=AND|OR|GROUP|ORDER|LIMIT|HAVING|$)'

_AND_BETWEEN_RE = re.compile(
    rf'\s+AND\s+{_COL}\s+BETWEEN\s+{_QUOTED_VAL}\s+AND\s+{_QUOTED_VAL}',
    re.IGNORECASE,
)
_AND_CONDITION_RE = re.compile(rf'\s+AND\s+{_COL}\s*{_OP}\s*{_ANY_VAL}', re.IGNORECASE)
_OR_CONDITION_RE = re.compile(rf'\s+OR\s+{_COL}\s*{_OP}\s*{_ANY_VAL}', re.IGNORECASE)
_WHERE_BETWEEN_RE = re.compile(
    rf'WHERE\s+{_COL}\s+BETWEEN\s+{_QUOTED_VAL}\s+AND\s+{_QUOTED_VAL}\s*{_CLAUSE_END}',
    re.IGNORECASE,
)
_WHERE_CONDITION_RE = re.compile(
    rf'WHERE\s+{_COL}\s*{_OP}\s*{_ANY_VAL}\s*{_CLAUSE_END}',
    re.IGNORECASE,
)
_DOUBLE_TAUTOLOGY_RE = re.compile(r'WHERE\s+1\s*=\s*1\s+AND\s+1\s*=\s*1', re.IGNORECASE)


def _collapse_whitespace(sql: str) -> str:
    return re.sub(r'\s+', ' ', sql).strip()


def remove_unresolved_conditions(sql: str) -> str:
    """
    Remove filter conditions whose value is still a {{placeholder}}.

    Handles:
        AND col = '{{x}}'                 (any comparison operator)
        AND t.col IN ({{x}})              (parenthesized lists, NOT IN)
        AND col LIKE '%{{x}}%'            (quoted, NOT LIKE)
        AND col >= {{x}}                  (unquoted)
        AND col BETWEEN '{{a}}' AND '{{b}}'
        OR  col = '{{x}}'
        WHERE <one of the above>          -> WHERE 1=1

    A BETWEEN with only one side unresolved is left alone; the fixed-point
    cleanup in strip_all_unresolved_placeholders() deals with it.
    """
    if not sql:
        return sql

    result = _AND_BETWEEN_RE.sub('', sql)
    result = _AND_CONDITION_RE.sub('', result)
    result = _OR_CONDITION_RE.sub('', result)
    result = _WHERE_BETWEEN_RE.sub('WHERE 1=1 ', result)
    result = _WHERE_CONDITION_RE.sub('WHERE 1=1 ', result)
    result = _DOUBLE_TAUTOLOGY_RE.sub('WHERE 1=1', result)

    return _collapse_whitespace(result)


# =============================================================================
# FIXED-POINT CLEANUP
# =============================================================================
# AI-generated SQL often wraps placeholders defensively:
#
#   WHERE (CASE WHEN '{{date_from}}' ~ '^[0-9]{4}' THEN date >= '{{date_from}}'::date
#               ELSE TRUE END)
#
# Each pass collapses the known idioms, cleans redundant TRUE terms, then
# removes whole conditions that still reference a placeholder. A pass that
# changes nothing replaces every remaining placeholder with NULL and stops.
# =============================================================================

_DEFENSIVE_IDIOMS = [
    # CASE WHEN '{{x}}' ... ELSE TRUE END -> TRUE
    (re.compile(r"CASE\s+WHEN\s+'[^']*\{\{[^}]+\}\}[^']*'[^E]*?ELSE\s+TRUE\s+END", re.IGNORECASE),
     'TRUE'),
    # CASE WHEN '{{x}}' LIKE 'NULL' THEN TRUE ELSE <cond> END -> <cond>
    (re.compile(r"CASE\s+WHEN\s+'[^']*\{\{[^}]+\}\}[^']*'[^T]*?THEN\s+TRUE\s+ELSE\s+([^E]+?)\s+END",
                re.IGNORECASE),
     r'\1'),
    # (CASE WHEN '{{x}}' ... END) -> TRUE
    (re.compile(r"\(\s*CASE\s+WHEN\s+'[^']*\{\{[^}]+\}\}[^']*'[^)]*?END\s*\)", re.IGNORECASE),
     'TRUE'),
    # to_date('{{x}}', 'fmt') -> NULL
    (re.compile(r"to_date\s*\(\s*'[^']*\{\{[^}]+\}\}[^']*'\s*,\s*'[^']*'\s*\)", re.IGNORECASE),
     'NULL'),
    # COALESCE(NULLIF('{{x}}', ''), default) -> default
    (re.compile(r"COALESCE\s*\(\s*NULLIF\s*\(\s*'[^']*\{\{[^}]+\}\}[^']*'\s*,\s*'[^']*'\s*\)\s*,\s*([^)]+)\)",
                re.IGNORECASE),
     r'\1'),
    # COALESCE(NULLIF(to_date('{{x}}', ...), ...), default) -> default
    (re.compile(r"COALESCE\s*\(\s*NULLIF\s*\(\s*to_date\s*\([^)]+\{\{[^}]+\}\}[^)]*\)[^)]*\)\s*,\s*([^)]+)\)",
                re.IGNORECASE),
     r'\1'),
]

_TRUE_TERM_END = r'(?=\s+AND|\s+OR|\s+GROUP|\s+ORDER|\s+LIMIT|\s+HAVING|\s*$)'
_AND_TRUE_RE = re.compile(rf'\s+AND\s+TRUE{_TRUE_TERM_END}', re.IGNORECASE)
_WHERE_TRUE_AND_RE = re.compile(r'\bWHERE\s+TRUE\s+AND\s+', re.IGNORECASE)
_OR_TRUE_RE = re.compile(
    r'\s+OR\s+TRUE(?=\s*\)|\s+GROUP|\s+ORDER|\s+LIMIT|\s+HAVING|\s*$)',
    re.IGNORECASE,
)

_CONDITION_END = r'(?=\s+AND|\s+OR|\s+GROUP|\s+ORDER|\s+LIMIT|\s+OFFSET|\s+HAVING|$)'
# Text of a single condition: never crosses a connective or a clause keyword
_CONDITION_SPAN = r'(?:(?!\s+(?:AND|OR|GROUP|ORDER|LIMIT|OFFSET|HAVING)\s)[^()])*?'
_AND_OR_PLACEHOLDER_RE = re.compile(
    rf'\s+(?:AND|OR)\s+{_CONDITION_SPAN}\{{\{{[^}}]+\}}\}}[^()]*?{_CONDITION_END}',
    re.IGNORECASE,
)
_WHERE_PLACEHOLDER_RE = re.compile(
    rf'\bWHERE\s+{_CONDITION_SPAN}\{{\{{[^}}]+\}}\}}[^()]*?{_CONDITION_END}',
    re.IGNORECASE,
)
_LIMIT_PLACEHOLDER_RE = re.compile(r'\bLIMIT\s+\{\{[^}]+\}\}', re.IGNORECASE)
_OFFSET_PLACEHOLDER_RE = re.compile(r'\bOFFSET\s+\{\{[^}]+\}\}', re.IGNORECASE)

_WHERE_TRUE_RE = re.compile(
    r'\bWHERE\s+TRUE(?=\s+GROUP|\s+ORDER|\s+LIMIT|\s+HAVING|\s*$)',
    re.IGNORECASE,
)
_EMPTY_WHERE_RE = re.compile(r'\bWHERE\s*(?=GROUP\b|ORDER\b|LIMIT\b|HAVING\b|$)', re.IGNORECASE)
_WHERE_ONLY_TAUTOLOGY_RE = re.compile(
    r'\bWHERE\s+1\s*=\s*1\s*(?=GROUP\b|ORDER\b|LIMIT\b|HAVING\b|$)',
    re.IGNORECASE,
)


def _null_quoted_placeholders(sql: str) -> str:
    """'{{x}}' and '{{x}}'::type -> NULL (the cast is dropped with the literal)."""
    def replace(match: re.Match) -> str:
        literal = match.group(0)
        return 'NULL' if PLACEHOLDER_PATTERN.search(literal) else literal
    return _QUOTED_LITERAL_RE.sub(replace, sql)


def _cleanup_pass(sql: str) -> str:
    result = sql

    # Phase 1: defensive idioms
    for pattern, replacement in _DEFENSIVE_IDIOMS:
        result = pattern.sub(replacement, result)
    result = _null_quoted_placeholders(result)

    # Phase 2: redundant TRUE terms
    result = _AND_TRUE_RE.sub('', result)
    result = _WHERE_TRUE_AND_RE.sub('WHERE ', result)
    result = _OR_TRUE_RE.sub('', result)

    # Phase 3: LIMIT/OFFSET defaults, so the condition patterns below
    # never reach a pagination placeholder
    result = _LIMIT_PLACEHOLDER_RE.sub('LIMIT 1000', result)
    result = _OFFSET_PLACEHOLDER_RE.sub('OFFSET 0', result)

    # Phase 4: whole conditions still holding a raw placeholder
    result = _AND_OR_PLACEHOLDER_RE.sub('', result)
    result = _WHERE_PLACEHOLDER_RE.sub('WHERE 1=1 ', result)

    return result


def _final_cleanup(sql: str) -> str:
    """Normalize leftover tautologies until the text stops changing."""
    result = _collapse_whitespace(sql)
    while True:
        before = result
        result = _WHERE_TRUE_AND_RE.sub('WHERE ', result)
        result = _AND_TRUE_RE.sub('', result)
        result = _WHERE_TRUE_RE.sub('WHERE 1=1', result)
        result = _WHERE_ONLY_TAUTOLOGY_RE.sub('', result)
        result = _EMPTY_WHERE_RE.sub('', result)
        result = _collapse_whitespace(result)
        if result == before:
            return result


def strip_all_unresolved_placeholders(sql: str) -> str:
    """
    Remove every remaining {{placeholder}} from SQL.

    Fallback for when remove_unresolved_conditions() leaves placeholders
    behind. Runs at most MAX_CLEANUP_ITERATIONS passes; the output never
    contains a placeholder and cleaning it again returns it unchanged.

    Returns:
        Cleaned SQL (whitespace collapsed)
    """
    if not sql:
        return sql

    result = sql
    iterations = 0

    while has_unresolved_placeholders(result) and iterations < MAX_CLEANUP_ITERATIONS:
        before = result
        result = _cleanup_pass(result)

        if result == before:
            # No progress: last resort
            result = PLACEHOLDER_PATTERN.sub('NULL', result)
            break

        iterations += 1

    if has_unresolved_placeholders(result):
        logger.warning(
            f"[PLACEHOLDER] Cleanup hit {MAX_CLEANUP_ITERATIONS} iterations; "
            f"nulling remaining placeholders: {extract_placeholders(result)}"
        )
        result = PLACEHOLDER_PATTERN.sub('NULL', result)

    return _final_cleanup(result)
