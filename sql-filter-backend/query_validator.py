"""
QueryDeck - Read-Only Query Validator
=====================================

PURPOSE:
    Final gate before any SQL reaches a database or the in-memory engine.
    Every statement, including one produced by filter injection or legacy
    placeholder substitution, must pass this allow-list check.

RULES (in order):
    1. Empty or longer than MAX_QUERY_LENGTH characters -> INVALID_QUERY_LENGTH
    2. Any denylisted pattern -> DISALLOWED_OPERATION
         - DDL/DML keywords (INSERT, UPDATE, DELETE, DROP, CREATE, ALTER,
           TRUNCATE, GRANT, REVOKE)
         - Procedural keywords (EXECUTE, EXEC, CALL)
         - Comment markers (-- and /*)
         - Stacked statements (semicolon followed by more text)
         - pg_sleep / pg_read_file
    3. Must start with SELECT or WITH -> NOT_A_SELECT

WHAT THIS IS NOT:
    - NOT a parser (keyword matching only)
    - NOT SQL repair (we reject, never modify)

Pure function, no side effects.
"""

import re
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


MAX_QUERY_LENGTH = 5000

DISALLOWED_PATTERNS = [
    re.compile(r'\b(INSERT|UPDATE|DELETE|DROP|CREATE|ALTER|TRUNCATE|GRANT|REVOKE)\b', re.IGNORECASE),
    re.compile(r'\b(EXECUTE|EXEC|CALL)\b', re.IGNORECASE),
    re.compile(r'--'),
    re.compile(r'/\*'),
    re.compile(r';\s*\S'),
    re.compile(r'\bpg_sleep\b', re.IGNORECASE),
    re.compile(r'\bpg_read_file\b', re.IGNORECASE),
]


class QueryErrorKind(Enum):
    """Why a statement was rejected."""
    INVALID_QUERY_LENGTH = "INVALID_QUERY_LENGTH"
    DISALLOWED_OPERATION = "DISALLOWED_OPERATION"
    NOT_A_SELECT = "NOT_A_SELECT"


_ERROR_MESSAGES = {
    QueryErrorKind.INVALID_QUERY_LENGTH: "Invalid query length",
    QueryErrorKind.DISALLOWED_OPERATION: "Query contains disallowed operations",
    QueryErrorKind.NOT_A_SELECT: "Only SELECT queries allowed",
}


@dataclass
class QueryValidationResult:
    """
    Result of read-only validation.

    Attributes:
        valid: Whether the statement may be executed
        error_kind: Rejection category (None when valid)
        error_message: Human-readable error, echoed back to the agent
    """
    valid: bool
    error_kind: Optional[QueryErrorKind] = None
    error_message: Optional[str] = None


def _reject(kind: QueryErrorKind) -> QueryValidationResult:
    return QueryValidationResult(
        valid=False,
        error_kind=kind,
        error_message=_ERROR_MESSAGES[kind],
    )


def validate_query(sql: Optional[str]) -> QueryValidationResult:
    """
    Validate that SQL is a single read-only SELECT/WITH statement.

    Args:
        sql: Raw SQL text (after any filter injection)

    Returns:
        QueryValidationResult; never raises
    """
    if not sql or len(sql) > MAX_QUERY_LENGTH:
        logger.warning(f"[VALIDATOR] REJECTED: invalid length ({len(sql) if sql else 0} chars)")
        return _reject(QueryErrorKind.INVALID_QUERY_LENGTH)

    for pattern in DISALLOWED_PATTERNS:
        if pattern.search(sql):
            logger.warning(f"[VALIDATOR] REJECTED: disallowed pattern {pattern.pattern!r}")
            return _reject(QueryErrorKind.DISALLOWED_OPERATION)

    head = sql.strip().upper()
    if not (head.startswith("SELECT") or head.startswith("WITH")):
        logger.warning("[VALIDATOR] REJECTED: statement is not SELECT/WITH")
        return _reject(QueryErrorKind.NOT_A_SELECT)

    return QueryValidationResult(valid=True)

