"""
QueryDeck v1.0 - Dashboard Query Service
========================================

Re-runs saved dashboard queries when the user changes filters, without a
round trip through the agent.

Architecture:
- filter_metadata: structured filters -> parameterized WHERE/AND ($n)
- placeholder_engine: legacy {{placeholder}} substitution + cleanup
- query_validator: read-only gate on every final statement
- db_executor: SQLAlchemy execution (database mode)
- in_memory_db: uploaded rows + minimal SQL engine (file mode)
- query_pipeline: per-query path selection, retry, batch cache

Author: QueryDeck Team
Version: 1.0
"""

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any, Literal
import os
from dotenv import load_dotenv
import logging
from contextlib import asynccontextmanager

from sqlalchemy.exc import SQLAlchemyError

from filter_metadata import FilterMeta
from in_memory_db import InMemoryStoreRegistry, TableSchema
from in_memory_tools import IN_MEMORY_SQL_TOOL_DESCRIPTION, in_memory_schema_to_prompt
from db_executor import DatabaseExecutor
from query_cache import QueryCache
from query_pipeline import QueryPipeline, QuerySpec, FileData, DataSourceType

load_dotenv()

# Configuration
DATABASE_URL = os.getenv("DATABASE_URL")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
QUERY_CACHE_TTL_SECONDS = int(os.getenv("QUERY_CACHE_TTL_SECONDS", "60"))
QUERY_CACHE_MAX_SIZE = int(os.getenv("QUERY_CACHE_MAX_SIZE", "1000"))
MAX_RESULT_ROWS = int(os.getenv("MAX_RESULT_ROWS", "10000"))
STATEMENT_TIMEOUT_MS = int(os.getenv("STATEMENT_TIMEOUT_MS", "30000"))

logging.basicConfig(
    level=logging.WARNING,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)
for _module in ("__main__", "main", "query_pipeline", "query_validator", "placeholder_engine",
                "filter_metadata", "in_memory_db", "in_memory_tools", "db_executor", "query_cache"):
    logging.getLogger(_module).setLevel(LOG_LEVEL)

# Global instances
stores: Optional[InMemoryStoreRegistry] = None
cache: Optional[QueryCache] = None
executor: Optional[DatabaseExecutor] = None
pipeline: Optional[QueryPipeline] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the store registry, cache and (optional) database executor"""
    global stores, cache, executor, pipeline

    logger.info("Initializing QueryDeck v1.0...")
    stores = InMemoryStoreRegistry()
    cache = QueryCache(max_size=QUERY_CACHE_MAX_SIZE, default_ttl=QUERY_CACHE_TTL_SECONDS)

    if DATABASE_URL:
        try:
            executor = DatabaseExecutor(
                DATABASE_URL,
                max_rows=MAX_RESULT_ROWS,
                statement_timeout_ms=STATEMENT_TIMEOUT_MS,
            )
        except (SQLAlchemyError, ValueError) as e:
            logger.error(f"Database executor unavailable: {e}")
            executor = None
    else:
        logger.warning("DATABASE_URL not set - only file data sources are available")

    pipeline = QueryPipeline(stores, executor=executor, cache=cache, cache_ttl=QUERY_CACHE_TTL_SECONDS)
    logger.info("QueryDeck ready")

    yield

    logger.info("Shutting down QueryDeck...")
    if executor is not None:
        executor.dispose()
    stores.reset_all()
    cache.clear()


app = FastAPI(
    title="QueryDeck Dashboard Query API",
    description="Filter injection and re-execution of saved dashboard queries",
    version="1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed bodies are client errors (400), reported in the same shape as other failures"""
    logger.warning(f"Rejected request to {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request body", "details": jsonable_errors(exc)},
    )


def jsonable_errors(exc: RequestValidationError) -> List[Dict[str, Any]]:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]


# Pydantic Models
class FilterMetaModel(BaseModel):
    id: str = ""
    column: str = ""
    operator: str = ""
    type: str = ""
    table: Optional[str] = None

    def to_filter_meta(self) -> FilterMeta:
        return FilterMeta(
            id=self.id,
            column=self.column,
            operator=self.operator,
            type=self.type,
            table=self.table,
        )


class SQLQueryModel(BaseModel):
    key: str
    sql: str
    filter_meta: Optional[List[FilterMetaModel]] = Field(default=None, alias="filterMeta")


class FileDataModel(BaseModel):
    table_name: str = Field(alias="tableName")
    data: List[Dict[str, Any]]


class ExecuteQueriesRequest(BaseModel):
    queries: List[SQLQueryModel]
    filter_params: Optional[Dict[str, Any]] = Field(default=None, alias="filterParams")
    data_source_type: Literal["database", "file"] = Field(default="database", alias="dataSourceType")
    file_data: Optional[FileDataModel] = Field(default=None, alias="fileData")
    session_id: str = Field(default="default", alias="sessionId")


class AddTableRequest(BaseModel):
    table_name: str = Field(alias="tableName")
    data: List[Dict[str, Any]]
    column_names: Optional[List[str]] = Field(default=None, alias="columnNames")
    session_id: str = Field(default="default", alias="sessionId")


class ResetTablesRequest(BaseModel):
    session_id: str = Field(default="default", alias="sessionId")


def _schema_to_dict(schema: TableSchema) -> Dict[str, Any]:
    return {
        "name": schema.name,
        "rowCount": schema.row_count,
        "columns": [
            {"name": c.name, "type": c.type, "nullable": c.nullable}
            for c in schema.columns
        ],
    }


def _require_pipeline() -> QueryPipeline:
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return pipeline


@app.get("/")
async def root():
    return {
        "message": "QueryDeck Dashboard Query API v1.0",
        "version": "1.0",
        "features": [
            "Parameterized filter injection",
            "Filter auto-inference",
            "Legacy {{placeholder}} cleanup",
            "In-memory SQL over uploaded files",
        ],
    }


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    if pipeline is None:
        return {"status": "unhealthy", "error": "Service not initialized"}

    return {
        "status": "healthy",
        "version": "1.0",
        "database_configured": executor is not None,
        "database_dialect": executor.dialect if executor else None,
        "active_sessions": len(stores.session_ids()) if stores else 0,
        "cache": cache.get_stats() if cache else None,
    }


@app.post("/execute-queries")
def execute_queries(request: ExecuteQueriesRequest):
    """Re-run a batch of saved queries with the current filter values"""
    active = _require_pipeline()

    queries = [
        QuerySpec(
            key=q.key,
            sql=q.sql,
            filter_meta=[m.to_filter_meta() for m in q.filter_meta] if q.filter_meta else None,
        )
        for q in request.queries
    ]
    file_data = (
        FileData(table_name=request.file_data.table_name, rows=request.file_data.data)
        if request.file_data else None
    )

    try:
        batch = active.execute_queries(
            queries,
            filter_params=request.filter_params,
            data_source=DataSourceType(request.data_source_type),
            file_data=file_data,
            session_id=request.session_id,
        )
    except Exception as e:
        logger.error(f"Execute queries error: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    return batch.to_dict()


@app.post("/tables")
def add_table(request: AddTableRequest):
    """Load (or replace) an uploaded table in a session store"""
    active = _require_pipeline()
    store = active.stores.get(request.session_id)
    schema = store.add_table(request.table_name, request.data, request.column_names)
    active.invalidate_session(request.session_id)
    return {"success": True, "schema": _schema_to_dict(schema)}


@app.get("/tables")
def list_tables(session_id: str = "default"):
    """Schemas of the session's in-memory tables, plus the agent prompt and SQL tool text"""
    active = _require_pipeline()
    schemas = active.stores.get(session_id).get_all_schemas()
    return {
        "tables": [_schema_to_dict(s) for s in schemas],
        "schema_text": in_memory_schema_to_prompt(schemas),
        "tool_description": IN_MEMORY_SQL_TOOL_DESCRIPTION,
    }


@app.delete("/tables/{table_name}")
def delete_table(table_name: str, session_id: str = "default"):
    """Remove one table from a session store"""
    active = _require_pipeline()
    if not active.stores.get(session_id).remove_table(table_name):
        raise HTTPException(status_code=404, detail=f"Table {table_name} not found")
    active.invalidate_session(session_id)
    return {"message": f"Table {table_name} removed"}


@app.post("/tables/reset")
def reset_tables(request: ResetTablesRequest):
    """Drop every table of a session"""
    active = _require_pipeline()
    existed = active.stores.reset(request.session_id)
    active.invalidate_session(request.session_id)
    return {"success": True, "session_reset": existed}


@app.get("/database/schema")
def get_database_schema():
    """Tables and columns of the configured database"""
    if executor is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    try:
        return {"success": True, "schema": executor.introspect_schema()}
    except SQLAlchemyError as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/database/test-connection")
def test_database_connection():
    """SELECT 1 against the configured database"""
    if executor is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return executor.test_connection()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
