"""
Database overview of the downstream services' MongoDB storage

Introspection runs pymongo's blocking client on worker threads. One service
failing to answer becomes an error entry in the overview, never a failed
response.
"""

import asyncio
import datetime
import functools
import json
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlsplit

from bson import ObjectId, json_util
from pymongo import MongoClient
from pymongo.errors import OperationFailure, PyMongoError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from libs.shared_auth.jwt_fastapi import Principal

from .. import crud
from ..cache import CacheLayer
from ..core.config import Settings
from ..core.logging import get_logger
from ..instrumentation import QUERY_EXECUTIONS
from ..models import AlertSeverity
from ..notifications import NotificationHub, NotificationKind
from ..schemas import (
    CollectionInfoResponse,
    DatabaseAlertResponse,
    DatabaseOverviewResponse,
    DatabaseRefreshedEvent,
    DatabaseSearchResult,
    DatabaseStatsResponse,
    DatabaseUpdateEvent,
    ExecuteQueryRequest,
    IndexInfoResponse,
    QueryExecutionHistoryResponse,
    QueryExecutionResponse,
    SearchDatabaseRequest,
    ServiceDatabaseResponse,
)

logger = get_logger("database_service")

CACHE_PREFIX = "db:overview:"
OVERVIEW_KEY = f"{CACHE_PREFIX}all"
FORBIDDEN_QUERY_KEYWORDS = ("$where", "$function", "$accumulator", "eval", "javascript", "$out", "$merge")
DEFAULT_MONGO_PORT = 27017


class UnknownServiceError(LookupError):
    pass


class QueryRejectedError(ValueError):
    """The ad-hoc query is forbidden or malformed; it is never sent downstream."""

    def __init__(self, message: str, execution_id: Optional[str] = None):
        super().__init__(message)
        self.execution_id = execution_id


def _create_mongo_client(uri: str, timeout_ms: int) -> MongoClient:
    return MongoClient(uri, serverSelectionTimeoutMS=timeout_ms, connectTimeoutMS=timeout_ms)


def _service_cache_key(service_name: str) -> str:
    return f"{CACHE_PREFIX}service:{service_name}"


def mask_connection_string(uri: str) -> str:
    try:
        password = urlsplit(uri).password
    except ValueError:
        return "****"
    return uri.replace(password, "****") if password else uri


def extract_port(uri: str) -> int:
    try:
        return urlsplit(uri).port or DEFAULT_MONGO_PORT
    except ValueError:
        return DEFAULT_MONGO_PORT


def bson_type_name(value: Any) -> str:
    if value is None:
        return "Null"
    if isinstance(value, bool):
        return "Boolean"
    if isinstance(value, int):
        return "Int32" if -(2 ** 31) <= value < 2 ** 31 else "Int64"
    if isinstance(value, float):
        return "Double"
    if isinstance(value, str):
        return "String"
    if isinstance(value, ObjectId):
        return "ObjectId"
    if isinstance(value, datetime.datetime):
        return "DateTime"
    if isinstance(value, dict):
        return "Document"
    if isinstance(value, (list, tuple)):
        return "Array"
    if isinstance(value, bytes):
        return "Binary"
    return type(value).__name__


def infer_schema(document: Dict[str, Any]) -> Dict[str, str]:
    return {name: bson_type_name(value) for name, value in document.items()}


def check_query_text(query: str) -> None:
    lowered = query.lower()
    for keyword in FORBIDDEN_QUERY_KEYWORDS:
        if keyword in lowered:
            raise QueryRejectedError(f"Query contains forbidden keyword: {keyword}")


class DatabaseService:
    def __init__(self,
                 settings: Settings,
                 session_factory: async_sessionmaker[AsyncSession],
                 cache: CacheLayer,
                 hub: NotificationHub,
                 client_factory: Optional[Callable[[str, int], Any]] = None):
        self._settings = settings
        self._session_factory = session_factory
        self._cache = cache
        self._hub = hub
        self._client_factory = client_factory or _create_mongo_client
        self._client: Optional[Any] = None
        # Dedicated workers; broker polls run on a pool of their own.
        self._executor = ThreadPoolExecutor(
            max_workers=settings.MONGO_MAX_WORKERS,
            thread_name_prefix="mongo-inspect",
        )

    @property
    def service_databases(self) -> Dict[str, str]:
        return dict(self._settings.SERVICE_DATABASES)

    def _mongo(self) -> Any:
        if self._client is None:
            self._client = self._client_factory(self._settings.MONGO_URI, self._settings.MONGO_TIMEOUT_MS)
        return self._client

    async def _run_blocking(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, *args))

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        if self._client is not None:
            self._client.close()
            self._client = None

    # --- Overview ---------------------------------------------------------------

    async def get_overview(self, force_refresh: bool = False) -> DatabaseOverviewResponse:
        if not force_refresh:
            cached = await self._cache.get(OVERVIEW_KEY, DatabaseOverviewResponse)
            if cached is not None:
                logger.info("Returning cached database overview")
                return cached
        overview = await self._compute_overview()
        await self._cache.set(OVERVIEW_KEY, overview, self._settings.DATABASE_OVERVIEW_CACHE_TTL)
        await self._raise_capacity_alerts(overview)
        return overview

    async def get_service(self, service_name: str, force_refresh: bool = False) -> ServiceDatabaseResponse:
        database_name = self.service_databases.get(service_name)
        if database_name is None:
            raise UnknownServiceError(service_name)
        return await self._cache.get_or_compute(
            _service_cache_key(service_name),
            self._settings.DATABASE_OVERVIEW_CACHE_TTL,
            lambda: self._inspect_service(service_name, database_name),
            ServiceDatabaseResponse,
            refresh=force_refresh,
        )

    async def _compute_overview(self) -> DatabaseOverviewResponse:
        services = await asyncio.gather(
            *(self._inspect_service(name, database) for name, database in self.service_databases.items())
        )
        total = DatabaseStatsResponse()
        for service in services:
            if not service.is_connected:
                continue
            total.total_collections += service.stats.total_collections
            total.total_documents += service.stats.total_documents
            total.total_size_in_bytes += service.stats.total_size_in_bytes
            total.total_indexes += service.stats.total_indexes
        if total.total_documents > 0:
            total.average_document_size = total.total_size_in_bytes / total.total_documents
        return DatabaseOverviewResponse(
            id=str(uuid.uuid4()),
            generated_at=datetime.datetime.now(datetime.timezone.utc),
            services=list(services),
            total_stats=total,
            cache_time_seconds=self._settings.DATABASE_OVERVIEW_CACHE_TTL,
        )

    async def _inspect_service(self, service_name: str, database_name: str) -> ServiceDatabaseResponse:
        uri = self._settings.MONGO_URI
        service = ServiceDatabaseResponse(
            service_name=service_name,
            database_name=database_name,
            connection_string=mask_connection_string(uri),
            port=extract_port(uri),
            is_connected=False,
        )
        try:
            client = self._mongo()
            collections = await self._run_blocking(self._inspect_database_sync, client, database_name)
        except PyMongoError as e:
            logger.error(f"Failed to connect to database {database_name}: {e}")
            service.error_message = str(e)
            return service

        service.is_connected = True
        service.collections = collections
        service.stats = DatabaseStatsResponse(
            total_collections=len(collections),
            total_documents=sum(c.document_count for c in collections),
            total_size_in_bytes=sum(c.size_in_bytes for c in collections),
            total_indexes=sum(len(c.indexes) for c in collections),
            average_document_size=(
                sum(c.average_size_in_bytes for c in collections) / len(collections) if collections else 0.0
            ),
        )
        return service

    def _inspect_database_sync(self, client: Any, database_name: str) -> List[CollectionInfoResponse]:
        database = client[database_name]
        return [
            self._inspect_collection_sync(database, name)
            for name in sorted(database.list_collection_names())
        ]

    def _inspect_collection_sync(self, database: Any, name: str) -> CollectionInfoResponse:
        collection = database[name]
        info = CollectionInfoResponse(name=name, document_count=collection.count_documents({}))

        for index in collection.list_indexes():
            info.indexes.append(IndexInfoResponse(
                name=index["name"],
                keys=dict(index["key"]),
                is_unique=bool(index.get("unique", False)),
                is_sparse=bool(index.get("sparse", False)),
            ))

        try:
            stats = database.command("collStats", name)
            info.size_in_bytes = int(stats.get("size", 0))
            info.average_size_in_bytes = float(stats.get("avgObjSize", 0.0))
            for index_name, size in (stats.get("indexSizes") or {}).items():
                for index in info.indexes:
                    if index.name == index_name:
                        index.size_in_bytes = int(size)
        except OperationFailure as e:
            logger.warning(f"Failed to get stats for collection {name}: {e}")

        samples = list(collection.find({}).limit(self._settings.SAMPLE_DOCUMENT_LIMIT))
        if samples:
            rendered = json_util.dumps(samples, indent=2)
            limit = self._settings.SAMPLE_DOCUMENT_MAX_CHARS
            info.sample_document = rendered if len(rendered) <= limit else rendered[:limit] + "\n... (truncated)"
            info.schema_ = infer_schema(samples[0])
        return info

    async def _raise_capacity_alerts(self, overview: DatabaseOverviewResponse) -> None:
        document_limit = self._settings.HIGH_DOCUMENT_COUNT_THRESHOLD
        size_limit = self._settings.LARGE_COLLECTION_SIZE_BYTES
        async with self._session_factory() as db:
            for service in overview.services:
                if not service.is_connected:
                    continue
                for collection in service.collections:
                    if collection.document_count > document_limit:
                        await crud.create_database_alert_if_absent(
                            db,
                            service_name=service.service_name,
                            database_name=service.database_name,
                            collection_name=collection.name,
                            alert_type="HighDocumentCount",
                            message=f"Collection {collection.name} has {collection.document_count:,} documents",
                            severity=AlertSeverity.WARNING,
                            details={"documentCount": collection.document_count},
                        )
                    if collection.size_in_bytes > size_limit:
                        await crud.create_database_alert_if_absent(
                            db,
                            service_name=service.service_name,
                            database_name=service.database_name,
                            collection_name=collection.name,
                            alert_type="LargeCollectionSize",
                            message=f"Collection {collection.name} is {collection.size_in_bytes / 1_000_000_000:.2f} GB",
                            severity=AlertSeverity.WARNING,
                            details={"sizeInBytes": collection.size_in_bytes},
                        )
            await db.commit()

    # --- Search -----------------------------------------------------------------

    async def search(self, request: SearchDatabaseRequest) -> List[DatabaseSearchResult]:
        overview = await self.get_overview()
        term = (request.search_term or "").lower()
        results: List[DatabaseSearchResult] = []
        for service in overview.services:
            if request.service_name and request.service_name.lower() not in service.service_name.lower():
                continue
            for collection in service.collections:
                if request.collection_name and request.collection_name.lower() not in collection.name.lower():
                    continue
                if request.min_document_count is not None and collection.document_count < request.min_document_count:
                    continue
                if request.max_document_count is not None and collection.document_count > request.max_document_count:
                    continue
                if request.min_size_in_bytes is not None and collection.size_in_bytes < request.min_size_in_bytes:
                    continue
                if request.max_size_in_bytes is not None and collection.size_in_bytes > request.max_size_in_bytes:
                    continue
                matched: List[str] = []
                if term:
                    if term in collection.name.lower():
                        matched.append("name")
                    matched.extend(field for field in collection.schema_ if term in field.lower())
                    if not matched:
                        continue
                results.append(DatabaseSearchResult(
                    service_name=service.service_name,
                    database_name=service.database_name,
                    collection_name=collection.name,
                    document_count=collection.document_count,
                    size_in_bytes=collection.size_in_bytes,
                    matched_fields=matched,
                ))
        return results

    # --- Ad-hoc queries ---------------------------------------------------------

    def _parse_query(self, request: ExecuteQueryRequest) -> Any:
        if request.database_name not in self.service_databases.values():
            raise QueryRejectedError(f"Unknown database: {request.database_name}")
        check_query_text(request.query)
        try:
            parsed = json_util.loads(request.query or "{}")
        except (ValueError, TypeError) as e:
            raise QueryRejectedError(f"Invalid JSON query: {e}") from e
        if request.query_type == "aggregate":
            if not isinstance(parsed, list) or not all(isinstance(stage, dict) for stage in parsed):
                raise QueryRejectedError("Aggregate queries must be a JSON array of stages")
        elif not isinstance(parsed, dict):
            raise QueryRejectedError("Find and count queries must be a JSON object")
        return parsed

    def _run_query_sync(self, client: Any, request: ExecuteQueryRequest, parsed: Any) -> List[str]:
        collection = client[request.database_name][request.collection_name]
        limit = min(request.limit, self._settings.MAX_QUERY_RESULTS)
        if request.query_type == "count":
            return [json.dumps({"count": collection.count_documents(parsed)})]
        if request.query_type == "aggregate":
            pipeline = list(parsed) + [{"$skip": request.skip}, {"$limit": limit}]
            documents = list(collection.aggregate(pipeline))
        else:
            documents = list(collection.find(parsed).skip(request.skip).limit(limit))
        return [json_util.dumps(document, indent=2) for document in documents]

    async def execute_query(self, request: ExecuteQueryRequest, principal: Principal) -> QueryExecutionResponse:
        """Run a read-only query and record it.

        Rejected queries are recorded and then re-raised; downstream failures
        are recorded and returned as an unsuccessful execution.
        """
        started = time.perf_counter()
        results: List[str] = []
        error: Optional[str] = None
        rejection: Optional[QueryRejectedError] = None
        try:
            parsed = self._parse_query(request)
            client = self._mongo()
            results = await self._run_blocking(self._run_query_sync, client, request, parsed)
        except QueryRejectedError as e:
            rejection = e
            error = str(e)
            logger.warning(f"Rejected query from {principal.email or principal.user_id}: {e}")
        except PyMongoError as e:
            error = str(e)
            logger.error(f"Query execution failed for user {principal.email or principal.user_id}: {e}")
        elapsed_ms = (time.perf_counter() - started) * 1000

        async with self._session_factory() as db:
            execution = await crud.record_query_execution(
                db,
                user_id=principal.user_id,
                user_email=principal.email,
                database_name=request.database_name,
                collection_name=request.collection_name,
                query=request.query,
                query_type=request.query_type,
                is_successful=error is None,
                error_message=error,
                result_count=len(results),
                execution_time_ms=elapsed_ms,
            )
        QUERY_EXECUTIONS.labels(
            query_type=request.query_type,
            outcome="success" if error is None else ("rejected" if rejection else "failed"),
        ).inc()
        self._hub.publish_model(NotificationKind.QUERY_EXECUTED, QueryExecutionHistoryResponse.model_validate(execution))

        if rejection is not None:
            rejection.execution_id = execution.id
            raise rejection
        return QueryExecutionResponse(
            id=execution.id,
            is_successful=execution.is_successful,
            error_message=execution.error_message,
            results=results,
            result_count=execution.result_count,
            execution_time_ms=execution.execution_time_ms,
            executed_at=execution.executed_at,
        )

    async def query_history(self, user_id: Optional[str] = None, limit: int = 50) -> List[QueryExecutionHistoryResponse]:
        async with self._session_factory() as db:
            executions = await crud.list_query_executions(db, user_id=user_id, limit=limit)
        return [QueryExecutionHistoryResponse.model_validate(execution) for execution in executions]

    # --- Database alerts --------------------------------------------------------

    async def list_alerts(self, include_resolved: bool = False) -> List[DatabaseAlertResponse]:
        async with self._session_factory() as db:
            alerts = await crud.list_database_alerts(db, include_resolved=include_resolved)
        return [DatabaseAlertResponse.model_validate(alert) for alert in alerts]

    async def resolve_alert(self, alert_id: str) -> bool:
        async with self._session_factory() as db:
            return await crud.resolve_database_alert(db, alert_id)

    # --- Cache and collaborator signals -----------------------------------------

    async def clear_cache(self) -> None:
        await self._cache.invalidate(OVERVIEW_KEY, *(_service_cache_key(name) for name in self.service_databases))
        await self._cache.invalidate_prefix(CACHE_PREFIX)

    async def refresh(self) -> DatabaseOverviewResponse:
        await self.clear_cache()
        overview = await self.get_overview(force_refresh=True)
        self._hub.publish_model(
            NotificationKind.DATABASE_REFRESHED,
            DatabaseRefreshedEvent(
                generated_at=overview.generated_at,
                total_services=len(overview.services),
                connected_services=sum(1 for service in overview.services if service.is_connected),
            ),
        )
        return overview

    async def record_database_update(self, event: DatabaseUpdateEvent) -> None:
        """A downstream collaborator reported a storage change."""
        keys = [OVERVIEW_KEY]
        for name, database in self.service_databases.items():
            if name == event.service_name or database == event.database_name:
                keys.append(_service_cache_key(name))
        await self._cache.invalidate(*keys)
        self._hub.publish_model(NotificationKind.DATABASE_UPDATE, event)
        logger.info(f"Database update from {event.service_name}: {event.event_type} on {event.collection_name}")
