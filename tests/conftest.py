"""
Pytest configuration and fixtures for the partition lookup tests.

Provides:
- An in-memory stand-in for the driver session and its ResponseFutures
- Store, engine and application fixtures wired to it
- A live-cluster store for integration tests
"""

import os
import re
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta
from types import SimpleNamespace
from typing import Any

import pytest
import pytest_asyncio
from cassandra import InvalidRequest
from dotenv import load_dotenv

from partition_lookup.cluster import QueryTraceSink
from partition_lookup.config import ClusterConfig, RetryConfig, SchemaConfig, ServiceConfig
from partition_lookup.store import PartitionStore

# Load environment variables for tests
load_dotenv()


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (fast, no external dependencies)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (require a running Cassandra/ScyllaDB node)"
    )


# ============================================================================
# Driver fakes
# ============================================================================

class FakeResponseFuture:
    """
    Stand-in for ``cassandra.cluster.ResponseFuture``.

    Delivers ``pages`` one at a time to the registered callback, then
    ``error`` (if any) to the errback. Delivery is synchronous: the first
    page on ``add_callbacks``, the next ones on ``start_fetching_next_page``.
    """

    def __init__(self, pages: list | None = None, error: Exception | None = None,
                 hang: bool = False, trace: Any = None):
        self._items: list[tuple[str, Any]] = [("page", page) for page in (pages if pages is not None else [[]])]
        if error is not None:
            self._items.append(("error", error))
        self._index = 0
        self._hang = hang
        self._callback = None
        self._errback = None
        self.trace = trace
        self.pages_fetched = 0

    @property
    def has_more_pages(self) -> bool:
        return self._index < len(self._items) - 1

    def add_callbacks(self, callback, errback):
        self._callback = callback
        self._errback = errback
        if not self._hang:
            self._deliver()

    def start_fetching_next_page(self):
        if not self.has_more_pages:
            raise RuntimeError("No more pages to fetch")
        self._index += 1
        self._deliver()

    def _deliver(self):
        kind, payload = self._items[self._index]
        if kind == "error":
            self._errback(payload)
        else:
            self.pages_fetched += 1
            self._callback(payload)

    def get_query_trace(self, max_wait=None):
        if isinstance(self.trace, Exception):
            raise self.trace
        return self.trace


class FakePreparedStatement:
    def __init__(self, query_string: str):
        self.query_string = query_string


def make_trace(*descriptions: str) -> SimpleNamespace:
    """A QueryTrace-shaped object with one event per description."""
    return SimpleNamespace(
        trace_id=uuid.uuid4(),
        coordinator="127.0.0.1",
        duration=timedelta(microseconds=1500),
        events=[
            SimpleNamespace(
                description=description,
                source="127.0.0.1",
                source_elapsed=timedelta(microseconds=100 * (i + 1)),
                thread_name="shard 0",
            )
            for i, description in enumerate(descriptions)
        ],
    )


_TABLE_RE = re.compile(r"(?:FROM|INTO|TABLE IF NOT EXISTS)\s+(\w+)\.(\w+)", re.IGNORECASE)
_KEYSPACE_RE = re.compile(r"KEYSPACE IF NOT EXISTS\s+(\w+)", re.IGNORECASE)
_COLUMNS_RE = re.compile(r"INSERT INTO\s+\w+\.\w+\s*\(([^)]*)\)", re.IGNORECASE)


class FakeSession:
    """
    In-memory interpreter for the handful of statements the service issues.

    Supports CREATE KEYSPACE/TABLE, single-row INSERT, ``SELECT now()`` and
    partition-key SELECTs with ``secondary_id = ?`` or ``secondary_id IN ?``.
    Every ``execute_async`` call is recorded in ``executed``.

    Failures are injected with ``inject``: the next matching statement(s)
    fail through the errback, or never complete when ``hang`` is set.
    """

    def __init__(self, page_size: int = 5000):
        self.page_size = page_size
        self.keyspaces: set[str] = set()
        self.tables: set[str] = set()
        self.rows: dict[str, dict[tuple, dict]] = {}
        self.executed: list[SimpleNamespace] = []
        self.prepared: list[str] = []
        self.trace: Any = None
        self._injections: list[dict] = []

    # ---------------------------------------------------------------- setup

    def inject(self, error: Exception | None = None, *, match: str = "", times: int = 1, hang: bool = False):
        self._injections.append({"error": error, "match": match.upper(), "times": times, "hang": hang})

    def statements(self, prefix: str) -> list[SimpleNamespace]:
        """Executed calls whose normalized query starts with ``prefix``."""
        return [call for call in self.executed if call.query.upper().startswith(prefix.upper())]

    # --------------------------------------------------------------- driver

    def prepare(self, query: str) -> FakePreparedStatement:
        normalized = _normalize(query)
        match = _TABLE_RE.search(normalized)
        if match and f"{match.group(1)}.{match.group(2)}".lower() not in self.tables:
            raise InvalidRequest(f"unconfigured table {match.group(2)}")
        self.prepared.append(normalized)
        return FakePreparedStatement(normalized)

    def execute_async(self, statement, parameters=None, trace=False, timeout=None, execution_profile=None):
        query = _normalize(getattr(statement, "query_string", statement))
        self.executed.append(SimpleNamespace(
            query=query,
            parameters=parameters,
            trace=trace,
            timeout=timeout,
            execution_profile=execution_profile,
        ))

        injection = self._take_injection(query)
        if injection is not None:
            if injection["hang"]:
                return FakeResponseFuture(hang=True)
            return FakeResponseFuture(pages=[], error=injection["error"])

        try:
            rows = self._run(query, parameters)
        except Exception as e:
            return FakeResponseFuture(pages=[], error=e)

        trace_result = self.trace if trace else None
        if rows is None:
            return FakeResponseFuture(pages=[None], trace=trace_result)
        pages = [rows[i:i + self.page_size] for i in range(0, len(rows), self.page_size)] or [[]]
        return FakeResponseFuture(pages=pages, trace=trace_result)

    # ------------------------------------------------------------ internals

    def _take_injection(self, query: str):
        for injection in self._injections:
            if injection["times"] > 0 and injection["match"] in query.upper():
                injection["times"] -= 1
                return injection
        return None

    def _run(self, query: str, parameters):
        upper = query.upper()

        if upper.startswith("CREATE KEYSPACE"):
            self.keyspaces.add(_KEYSPACE_RE.search(query).group(1).lower())
            return None

        if upper.startswith("CREATE TABLE"):
            match = _TABLE_RE.search(query)
            keyspace = match.group(1).lower()
            if keyspace not in self.keyspaces:
                raise InvalidRequest(f"Keyspace {keyspace} does not exist")
            name = f"{keyspace}.{match.group(2).lower()}"
            self.tables.add(name)
            self.rows.setdefault(name, {})
            return None

        if upper.startswith("SELECT NOW()"):
            return [{"system.now()": uuid.uuid1()}]

        match = _TABLE_RE.search(query)
        table = f"{match.group(1)}.{match.group(2)}".lower()
        if table not in self.tables:
            raise InvalidRequest(f"unconfigured table {match.group(2)}")
        stored = self.rows[table]

        if upper.startswith("INSERT"):
            columns = [c.strip() for c in _COLUMNS_RE.search(query).group(1).split(",")]
            row = dict(zip(columns, parameters))
            # Timestamps come back naive, in UTC, with millisecond precision
            stamp = row["data_col_3"]
            row["data_col_3"] = stamp.replace(tzinfo=None, microsecond=stamp.microsecond // 1000 * 1000)
            key = (row["partition_id"], row["secondary_id"], row["cluster_col_1"], row["cluster_col_2"])
            stored[key] = row
            return None

        if upper.startswith("SELECT"):
            partition_id, wanted = parameters
            ids = list(wanted) if "IN ?" in upper else [wanted]
            result = []
            for secondary_id in ids:
                matched = [row for key, row in stored.items() if key[:2] == (partition_id, secondary_id)]
                result.extend(sorted(matched, key=lambda r: (r["cluster_col_1"], r["cluster_col_2"])))
            return [dict(row) for row in result]

        raise InvalidRequest(f"Unsupported statement: {query}")


def _normalize(query: str) -> str:
    return " ".join(query.split())


@pytest.fixture
def response_future():
    """The FakeResponseFuture class, for building driver results by hand."""
    return FakeResponseFuture


@pytest.fixture
def query_trace():
    """Factory for QueryTrace-shaped objects."""
    return make_trace


# ============================================================================
# Store Fixtures
# ============================================================================

@pytest.fixture
def service_config():
    """Configuration with fast retries and a short deadline."""
    return ServiceConfig(
        cluster=ClusterConfig(
            trace_queries=False,
            retry=RetryConfig(num_retries=2, min_backoff=0.01, max_backoff=0.01),
        ),
        dataset=SchemaConfig(keyspace="demo", table="demo"),
        request_deadline=2.0,
    )


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest_asyncio.fixture
async def store(fake_session, service_config):
    """Store over the in-memory session."""
    store = PartitionStore(
        fake_session,
        service_config,
        trace_sink=QueryTraceSink(enabled=service_config.cluster.trace_queries),
    )
    yield store
    await store.aclose()


@pytest.fixture
def store_factory(fake_session):
    """Replacement for ``PartitionStore.from_config`` used by the app lifespan."""

    @asynccontextmanager
    async def factory(config: ServiceConfig):
        store = PartitionStore(fake_session, config, trace_sink=QueryTraceSink(enabled=False))
        try:
            yield store
        finally:
            await store.aclose()

    return factory


# ============================================================================
# Live cluster
# ============================================================================

@pytest_asyncio.fixture
async def live_store():
    """
    Store connected to a real node, in a throwaway keyspace.

    Uses CQL_CONTACT_POINTS (default 127.0.0.1); skipped when nothing answers.
    """
    from partition_lookup.errors import StoreConnectionError

    contact_points = os.getenv("CQL_CONTACT_POINTS", "127.0.0.1").split(",")
    config = ServiceConfig(
        cluster=ClusterConfig(
            contact_points=contact_points,
            consistency_level="ONE",
            connect_timeout=5.0,
        ),
        dataset=SchemaConfig(keyspace="test_partition_lookup", table="demo"),
    )

    try:
        async with PartitionStore.from_config(config) as store:
            yield store
            await store.execute(
                "DROP KEYSPACE IF EXISTS test_partition_lookup",
                name="drop_keyspace",
            )
    except StoreConnectionError:
        pytest.skip(f"No CQL node reachable at {contact_points}")
