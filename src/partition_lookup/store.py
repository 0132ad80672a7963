"""
Process-wide handle on the CQL session.

``PartitionStore`` owns the one long-lived pooled session, its prepared
statements and the trace sink. It is created once at startup, handed to
every request handler explicitly, and shut down when the service stops.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from cassandra.cluster import Cluster, Session
from cassandra.query import PreparedStatement

from partition_lookup.cluster import READ_PROFILE, WRITE_PROFILE, QueryTraceSink, connect
from partition_lookup.config import ServiceConfig
from partition_lookup.cursor import RowCursor

logger = logging.getLogger(__name__)


class PartitionStore:
    """
    Session, configuration and prepared statement cache.

    Example:
        async with PartitionStore.from_config(config) as store:
            engine = PartitionQueryEngine(store)
            records = await engine.find_by_id("3")
    """

    def __init__(
        self,
        session: Session,
        config: ServiceConfig,
        *,
        cluster: Cluster | None = None,
        trace_sink: QueryTraceSink | None = None,
    ) -> None:
        self.session = session
        self.cluster = cluster
        self.config = config
        self.keyspace = config.dataset.keyspace
        self.table = config.dataset.table
        self.trace_sink = trace_sink or QueryTraceSink(enabled=config.cluster.trace_queries)

        self._prepared_statements: dict[str, PreparedStatement] = {}
        self._prepare_lock = asyncio.Lock()

    @property
    def qualified_table(self) -> str:
        return f"{self.keyspace}.{self.table}"

    @property
    def query_timeout(self) -> float:
        return self.config.cluster.query_timeout

    @classmethod
    @asynccontextmanager
    async def from_config(cls, config: ServiceConfig) -> AsyncIterator["PartitionStore"]:
        """
        Connect, yield a store, and always release the session on exit.

        Raises:
            StoreConnectionError: If the cluster is unreachable
        """
        loop = asyncio.get_running_loop()
        # connect() is blocking; run it once at startup
        cluster, session = await loop.run_in_executor(None, connect, config.cluster)

        store = cls(session, config, cluster=cluster)
        try:
            yield store
        finally:
            await store.aclose()

    async def prepare(self, name: str, query: str) -> PreparedStatement:
        """
        Prepare ``query`` once and cache it under ``name``.

        Raises:
            Driver exceptions from the prepare round trip (e.g. InvalidRequest
            when the table does not exist yet)
        """
        prepared = self._prepared_statements.get(name)
        if prepared is not None:
            return prepared

        async with self._prepare_lock:
            prepared = self._prepared_statements.get(name)
            if prepared is None:
                loop = asyncio.get_running_loop()
                prepared = await loop.run_in_executor(None, self.session.prepare, query)
                self._prepared_statements[name] = prepared
                logger.debug(f"Prepared statement '{name}'")
        return prepared

    def execute_async(
        self,
        statement: Any,
        parameters: Any = None,
        *,
        profile: Any = READ_PROFILE,
        trace: bool = False,
    ) -> Any:
        """Submit a statement and return the driver's ResponseFuture."""
        return self.session.execute_async(
            statement,
            parameters,
            trace=trace and self.trace_sink.enabled,
            timeout=self.query_timeout,
            execution_profile=profile,
        )

    def stream(
        self,
        statement: Any,
        parameters: Any = None,
        *,
        profile: Any = READ_PROFILE,
        trace: bool = True,
    ) -> tuple[RowCursor, Any]:
        """
        Execute a statement and return a cursor over its pages.

        Returns:
            (cursor, response_future); the future is needed to fetch the trace
        """
        response_future = self.execute_async(statement, parameters, profile=profile, trace=trace)
        return RowCursor(response_future), response_future

    async def execute(
        self,
        statement: Any,
        parameters: Any = None,
        *,
        name: str,
        profile: Any = WRITE_PROFILE,
        trace: bool = False,
    ) -> list:
        """
        Execute a statement, drain all pages, and check the terminal status.

        Raises:
            Whatever the driver reported for the statement
        """
        cursor, response_future = self.stream(statement, parameters, profile=profile, trace=trace)
        rows = [row async for row in cursor]
        cursor.close()
        if trace:
            self.trace_sink.schedule(response_future, name)
        return rows

    async def health_check(self) -> dict[str, Any]:
        """
        Round trip to the coordinator.

        Returns:
            {"status": "healthy", "latency_ms": ...} or
            {"status": "unhealthy", "error": ...}
        """
        try:
            start = time.perf_counter()
            await self.execute("SELECT now() FROM system.local", name="health_check", profile=READ_PROFILE)
            latency_ms = (time.perf_counter() - start) * 1000
        except Exception as e:
            logger.warning(f"Health check failed: {e}")
            return {"status": "unhealthy", "error": str(e)}

        return {
            "status": "healthy",
            "latency_ms": round(latency_ms, 2),
            "keyspace": self.keyspace,
            "prepared_statements_count": len(self._prepared_statements),
        }

    async def aclose(self) -> None:
        """
        Release the session and the cluster connections.

        Safe to call more than once.
        """
        logger.info("Shutting down cluster session...")
        await self.trace_sink.close()
        self._prepared_statements.clear()

        if self.cluster is not None and not self.cluster.is_shutdown:
            # Cluster.shutdown() is blocking
            await asyncio.get_running_loop().run_in_executor(None, self.cluster.shutdown)
        logger.info("Cluster session shut down")
