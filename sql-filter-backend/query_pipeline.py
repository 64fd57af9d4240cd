"""
QueryPipeline - Batch Query Orchestration

Re-runs a dashboard's saved queries when filters change, without going back
to the agent. Per query:

    1. Choose a filter path
         filterMeta present      -> build_filtered_query()   ($n params)
         'distinct-*' lookup key -> run as-is (feeds the dropdowns)
         no {{placeholders}}     -> build_auto_filtered_query()
         otherwise               -> legacy placeholder substitution + cleanup
    2. validate_query() on the final SQL
    3. Dispatch to the database executor or the session's in-memory store
    4. Missing-column failure on an inferred filter -> one retry unfiltered

Failures are collected per key; one bad query never fails the batch.
"""

import re
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from query_validator import validate_query
from placeholder_engine import (
    PLACEHOLDER_PATTERN,
    extract_placeholders,
    has_unresolved_placeholders,
    inject_placeholders,
    remove_unresolved_conditions,
    strip_all_unresolved_placeholders,
)
from filter_metadata import (
    FilterMeta,
    build_auto_filtered_query,
    build_filtered_query,
    validate_filter_meta,
)
from in_memory_db import InMemoryDatabase, InMemoryQueryError, InMemoryStoreRegistry
from in_memory_tools import SQLToolResult
from db_executor import DatabaseExecutor, is_missing_column_error
from query_cache import QueryCache

logger = logging.getLogger(__name__)

LOOKUP_KEY_PREFIX = "distinct-"
FILTERS_SKIPPED_SUFFIX = " /* filters skipped: column not found */"
CACHE_NAMESPACE = "execute-queries"

_LITERAL_OR_POSITIONAL_RE = re.compile(r"'[^']*(?:''[^']*)*'|\$(\d+)")


class DataSourceType(str, Enum):
    DATABASE = "database"
    FILE = "file"


@dataclass
class QuerySpec:
    """One saved dashboard query."""
    key: str
    sql: str
    filter_meta: Optional[List[FilterMeta]] = None


@dataclass
class FileData:
    """Uploaded rows to (re)load before the batch runs."""
    table_name: str
    rows: List[Dict[str, Any]]


@dataclass
class PreparedQuery:
    sql: str
    params: List[Any] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class BatchExecutionResult:
    """
    Attributes:
        results: key -> rows for every query that ran
        executed_queries: key -> final SQL (with $n, never inlined values)
        errors: one failed SQLToolResult per query that did not run
    """
    results: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    executed_queries: Dict[str, str] = field(default_factory=dict)
    errors: List[SQLToolResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "results": self.results,
            "executedQueries": self.executed_queries,
        }
        if self.errors:
            payload["errors"] = [e.to_dict() for e in self.errors]
        return payload


def _sql_literal(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    if isinstance(value, int):
        return str(value)
    return "'" + str(value).replace("'", "''") + "'"


def inline_params(sql: str, params: List[Any]) -> str:
    """
    Replace $n with SQL literals for engines without bind support.

    Only the in-memory engine needs this; its parser understands quoted
    literals with doubled quotes.
    """
    if not params:
        return sql

    def replace(match: re.Match) -> str:
        if match.group(1) is None:
            return match.group(0)
        index = int(match.group(1)) - 1
        return _sql_literal(params[index]) if 0 <= index < len(params) else match.group(0)

    return _LITERAL_OR_POSITIONAL_RE.sub(replace, sql)


class QueryPipeline:
    """
    Pure orchestration over the filter engines, the validator and the two
    execution back ends.
    """

    def __init__(
        self,
        stores: InMemoryStoreRegistry,
        executor: Optional[DatabaseExecutor] = None,
        cache: Optional[QueryCache] = None,
        cache_ttl: Optional[int] = None,
    ):
        self.stores = stores
        self.executor = executor
        self.cache = cache
        self.cache_ttl = cache_ttl

    # =========================================================================
    # FILTER PATH SELECTION
    # =========================================================================

    def _apply_filters(self, query: QuerySpec, filter_params: Optional[Dict[str, Any]]) -> PreparedQuery:
        key, sql = query.key, query.sql

        if query.filter_meta and filter_params:
            validation = validate_filter_meta(query.filter_meta)
            if not validation.valid:
                return PreparedQuery(
                    sql=sql,
                    error=f"Invalid filter metadata: {', '.join(validation.errors)}",
                )
            filtered = build_filtered_query(sql, query.filter_meta, filter_params)
            return PreparedQuery(sql=filtered.sql, params=filtered.params)

        if not filter_params:
            return PreparedQuery(sql=sql)

        if key.startswith(LOOKUP_KEY_PREFIX):
            return PreparedQuery(sql=sql)

        if not PLACEHOLDER_PATTERN.search(sql):
            auto = build_auto_filtered_query(sql, filter_params)
            if auto and auto.params:
                logger.info(f"[PIPELINE] '{key}': auto-inferred {len(auto.params)} filter param(s)")
                return PreparedQuery(sql=auto.sql, params=auto.params)
            return PreparedQuery(sql=sql)

        # Legacy {{placeholder}} path
        processed = inject_placeholders(sql, filter_params)
        processed = remove_unresolved_conditions(processed)
        if has_unresolved_placeholders(processed):
            logger.warning(
                f"[PIPELINE] '{key}' still has unresolved placeholders "
                f"{extract_placeholders(processed)}; using fallback stripping"
            )
            processed = strip_all_unresolved_placeholders(processed)
        return PreparedQuery(sql=processed)

    # =========================================================================
    # EXECUTION
    # =========================================================================

    def _run(self, sql: str, params: List[Any], data_source: DataSourceType, store: InMemoryDatabase):
        if data_source == DataSourceType.FILE:
            return store.query(inline_params(sql, params)).rows

        if self.executor is None:
            raise RuntimeError("No database configured")
        return self.executor.execute(sql, params)

    def _execute_one(
        self,
        query: QuerySpec,
        filter_params: Optional[Dict[str, Any]],
        data_source: DataSourceType,
        store: InMemoryDatabase,
        batch: BatchExecutionResult,
    ):
        key = query.key
        prepared = self._apply_filters(query, filter_params)
        if prepared.error:
            batch.errors.append(SQLToolResult.failed(key, prepared.error))
            return

        batch.executed_queries[key] = prepared.sql

        validation = validate_query(prepared.sql)
        if not validation.valid:
            batch.errors.append(SQLToolResult.failed(key, validation.error_message))
            return

        try:
            batch.results[key] = self._run(prepared.sql, prepared.params, data_source, store)
            return
        except (SQLAlchemyError, InMemoryQueryError, RuntimeError) as e:
            message = str(e)

        retryable = (
            is_missing_column_error(message)
            and not query.filter_meta
            and bool(filter_params)
        )
        if not retryable:
            logger.warning(f"[PIPELINE] '{key}' failed: {message}")
            batch.errors.append(SQLToolResult.failed(key, message))
            return

        logger.warning(f"[PIPELINE] '{key}' filter caused column error, retrying unfiltered: {message}")
        try:
            batch.results[key] = self._run(query.sql, [], data_source, store)
            batch.executed_queries[key] = query.sql + FILTERS_SKIPPED_SUFFIX
        except (SQLAlchemyError, InMemoryQueryError, RuntimeError) as e:
            batch.errors.append(SQLToolResult.failed(key, str(e)))

    def execute_queries(
        self,
        queries: List[QuerySpec],
        filter_params: Optional[Dict[str, Any]] = None,
        data_source: DataSourceType = DataSourceType.DATABASE,
        file_data: Optional[FileData] = None,
        session_id: str = "default",
    ) -> BatchExecutionResult:
        """
        Run every query in `queries` with the current filters.

        Args:
            queries: Saved dashboard queries
            filter_params: Filter id -> value (scalar, [from, to] or list)
            data_source: database or file
            file_data: Rows to load into the session store first (file mode)
            session_id: In-memory store handle

        Returns:
            BatchExecutionResult (cached for identical requests)
        """
        data_source = DataSourceType(data_source)
        store = self.stores.get(session_id)
        namespace = f"{CACHE_NAMESPACE}:{session_id}"

        if data_source == DataSourceType.FILE and file_data and file_data.table_name:
            store.add_table(file_data.table_name, file_data.rows)
            if self.cache:
                self.cache.invalidate_prefix(f"{namespace}:")

        def compute() -> BatchExecutionResult:
            batch = BatchExecutionResult()
            for query in queries:
                self._execute_one(query, filter_params, data_source, store, batch)
            logger.info(
                f"[PIPELINE] Batch done: {len(batch.results)} ok, {len(batch.errors)} failed "
                f"({data_source.value})"
            )
            return batch

        if self.cache is None:
            return compute()

        cache_key = QueryCache.generate_key(namespace, {
            "queries": [
                {
                    "key": q.key,
                    "sql": q.sql,
                    "filter_meta": [vars(m) for m in q.filter_meta] if q.filter_meta else None,
                }
                for q in queries
            ],
            "filter_params": filter_params,
            "data_source": data_source.value,
            "file_table": file_data.table_name if file_data else None,
        })
        return self.cache.get_or_compute(cache_key, compute, ttl=self.cache_ttl)

    def invalidate_session(self, session_id: str = "default") -> int:
        """Drop cached batches for a session after its tables change."""
        if self.cache is None:
            return 0
        return self.cache.invalidate_prefix(f"{CACHE_NAMESPACE}:{session_id}:")
