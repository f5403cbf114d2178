"""
Database client.

Async facade over the synchronous Supabase (PostgREST) client. Each request
runs in the default thread-pool executor and is retried with exponential
backoff; a request that keeps failing surfaces as ``RetryableError`` so the
worker can requeue the task that issued it.

Conditional writes (``update(...).eq(...).in_("status", [...])``) are single
PostgREST requests, which is what the Job Store relies on for its guarded
status transitions.
"""

import asyncio
from typing import Optional, Any, Callable, Dict
from supabase import create_client, Client
from shared.config import settings
from shared.errors import RetryableError, ConfigError

# First retry waits 2s, then 4s
RETRY_BASE_SECONDS = 2


class DatabaseClient:
    """Supabase client shared by the Job Store and health checks."""

    def __init__(self):
        try:
            self.client: Client = create_client(settings.supabase_url, settings.supabase_service_key)
        except Exception as e:
            raise ConfigError(f"Failed to initialize database client: {str(e)}") from e

    async def _execute_sync(self, func: Callable[[], Any], max_attempts: int = 3) -> Any:
        """
        Run a blocking PostgREST call off the event loop.

        Raises:
            RetryableError: The call failed on every attempt
        """
        loop = asyncio.get_running_loop()
        attempt = 1
        while True:
            try:
                return await loop.run_in_executor(None, func)
            except Exception as e:
                if attempt >= max_attempts:
                    raise RetryableError(
                        f"Database operation failed after {max_attempts} attempts: {str(e)}"
                    ) from e
            await asyncio.sleep(RETRY_BASE_SECONDS ** attempt)
            attempt += 1

    def table(self, table_name: str) -> "AsyncTableQueryBuilder":
        return AsyncTableQueryBuilder(self, table_name)

    async def rpc(self, function_name: str, params: Optional[Dict[str, Any]] = None, max_attempts: int = 3) -> Any:
        """
        Call a Postgres function.

        Batch counters move only through functions like this, since a
        read-increment-write from Python would race between workers.
        """
        return await self._execute_sync(
            lambda: self.client.rpc(function_name, params or {}).execute(),
            max_attempts
        )

    async def health_check(self) -> bool:
        """One cheap read against pipeline_jobs, without retries."""
        try:
            await self._execute_sync(
                lambda: self.client.table("pipeline_jobs").select("id").limit(1).execute(),
                max_attempts=1
            )
        except RetryableError:
            return False
        return True


class AsyncTableQueryBuilder:
    """
    Chainable query whose ``execute`` is awaitable.

    Only the builder methods the Job Store uses are exposed; each one is
    forwarded to the underlying PostgREST builder.
    """

    def __init__(self, db_client: DatabaseClient, table_name: str):
        self.db_client = db_client
        self.table_name = table_name
        self._query_builder = db_client.client.table(table_name)

    def _chain(self, method: str, *args, **kwargs) -> "AsyncTableQueryBuilder":
        self._query_builder = getattr(self._query_builder, method)(*args, **kwargs)
        return self

    # Operations
    def select(self, *args, **kwargs):
        return self._chain("select", *args, **kwargs)

    def insert(self, *args, **kwargs):
        return self._chain("insert", *args, **kwargs)

    def upsert(self, *args, **kwargs):
        """upsert(rows, on_conflict="a,b", ignore_duplicates=True) gives ON CONFLICT DO NOTHING."""
        return self._chain("upsert", *args, **kwargs)

    def update(self, *args, **kwargs):
        return self._chain("update", *args, **kwargs)

    def delete(self, *args, **kwargs):
        return self._chain("delete", *args, **kwargs)

    # Filters
    def eq(self, *args, **kwargs):
        return self._chain("eq", *args, **kwargs)

    def neq(self, *args, **kwargs):
        return self._chain("neq", *args, **kwargs)

    def in_(self, *args, **kwargs):
        return self._chain("in_", *args, **kwargs)

    def is_(self, *args, **kwargs):
        """is_("batch_id", "null")"""
        return self._chain("is_", *args, **kwargs)

    def gt(self, *args, **kwargs):
        return self._chain("gt", *args, **kwargs)

    def gte(self, *args, **kwargs):
        return self._chain("gte", *args, **kwargs)

    def lt(self, *args, **kwargs):
        return self._chain("lt", *args, **kwargs)

    def lte(self, *args, **kwargs):
        return self._chain("lte", *args, **kwargs)

    # Modifiers
    def order(self, *args, **kwargs):
        return self._chain("order", *args, **kwargs)

    def limit(self, *args, **kwargs):
        return self._chain("limit", *args, **kwargs)

    async def execute(self, max_attempts: int = 3) -> Any:
        """Send the query; the response's ``.data`` holds the affected rows."""
        query_builder = self._query_builder
        return await self.db_client._execute_sync(query_builder.execute, max_attempts)


# Singleton instance
db = DatabaseClient()
