"""
Partition-key lookups.

Two query shapes, both restricted to the demo partition:

- ``search``: partition key + a set of secondary ids (``IN``), partial records
- ``find_by_id``: exact composite partition key, full records for every
  clustering variant

Each read is executed, streamed through a ``RowCursor``, drained, and
checked at close before it counts as a success. Transient failures are
retried with exponential backoff; the whole read is bounded by a deadline.
"""

import asyncio
import logging
import random
import time
from typing import Any, Iterable

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_exponential_jitter,
)

from partition_lookup.cluster import READ_PROFILE
from partition_lookup.config import RetryConfig
from partition_lookup.errors import (
    StoreQueryError,
    StoreTimeoutError,
    StoreUnavailableError,
    translate_driver_error,
)
from partition_lookup.logging_utils import PerformanceLogger
from partition_lookup.models import RowRecord
from partition_lookup.observability import QueryMetrics, Tracer
from partition_lookup.schema import DEFAULT_SECONDARY_ID, PARTITION_KEY, format_secondary_id, parse_decimal
from partition_lookup.store import PartitionStore

logger = logging.getLogger(__name__)

RANDOM_SEARCH_KEYS = 10
RANDOM_SEARCH_UPPER = 1000
MAX_SEARCH_KEYS = 100

SELECT_COLUMNS = (
    "partition_id, secondary_id, cluster_col_1, cluster_col_2, "
    "data_col_1, data_col_2, data_col_3"
)

SEARCH_QUERY = """
    SELECT {columns}
      FROM {keyspace}.{table}
     WHERE partition_id = ? AND secondary_id IN ?
"""

FIND_QUERY = """
    SELECT {columns}
      FROM {keyspace}.{table}
     WHERE partition_id = ? AND secondary_id = ?
"""

TRANSIENT_ERRORS = (StoreTimeoutError, StoreUnavailableError)


def parse_lookup_id(raw: str | None) -> str:
    """Secondary id for an exact lookup; absent or non-numeric means all zeros."""
    value = parse_decimal(raw)
    if value is None:
        return DEFAULT_SECONDARY_ID
    return format_secondary_id(value)


def parse_id_list(raw: str) -> list[str]:
    """
    Parse a comma-separated list of numeric ids into secondary ids.

    Duplicates are dropped, order is kept.

    Raises:
        ValueError: On an empty list, a non-numeric entry, or too many ids
    """
    ids: list[str] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        value = parse_decimal(part)
        if value is None:
            raise ValueError(f"invalid id {part!r}")
        secondary_id = format_secondary_id(value)
        if secondary_id not in ids:
            ids.append(secondary_id)

    if not ids:
        raise ValueError("no ids given")
    if len(ids) > MAX_SEARCH_KEYS:
        raise ValueError(f"at most {MAX_SEARCH_KEYS} ids per search, got {len(ids)}")
    return ids


class PartitionQueryEngine:
    """
    Builds and runs the partition lookups against a ``PartitionStore``.

    Args:
        store: Connected store
        metrics: Metrics sink (a private one is created if omitted)
        tracer: OpenTelemetry tracer; disabled if omitted
        rng: Random source for placeholder search keys
        deadline: Default upper bound in seconds for one lookup, retries included
    """

    def __init__(
        self,
        store: PartitionStore,
        *,
        metrics: QueryMetrics | None = None,
        tracer: Tracer | None = None,
        rng: random.Random | None = None,
        deadline: float | None = None,
    ) -> None:
        self.store = store
        self.metrics = metrics or QueryMetrics()
        self.tracer = tracer or Tracer(enabled=False)
        self.rng = rng or random.Random()
        self.deadline = deadline if deadline is not None else store.config.request_deadline
        self.retry_config: RetryConfig = store.config.cluster.retry

        fmt = {"columns": SELECT_COLUMNS, "keyspace": store.keyspace, "table": store.table}
        self._queries = {
            "search": SEARCH_QUERY.format(**fmt),
            "find_by_id": FIND_QUERY.format(**fmt),
        }

    def random_search_ids(self, count: int = RANDOM_SEARCH_KEYS) -> list[str]:
        """Placeholder keys for ``search`` when the caller names none."""
        return [format_secondary_id(self.rng.randrange(RANDOM_SEARCH_UPPER)) for _ in range(count)]

    async def search(self, ids: Iterable[str] | None = None, deadline: float | None = None) -> list[RowRecord]:
        """
        Rows of the demo partition whose secondary id is in ``ids``.

        Args:
            ids: Already formatted secondary ids; 10 random ids when None
            deadline: Override of the default deadline in seconds

        Returns:
            Partial records (no data_col_2 / data_col_3) in store order

        Raises:
            StoreQueryError: If the lookup failed after retries
        """
        keys = list(ids) if ids is not None else self.random_search_ids()
        rows = await self._read("search", (PARTITION_KEY, keys), deadline, keys=len(keys))
        return [RowRecord.from_row(row, partial=True) for row in rows]

    async def find_by_id(self, raw_id: str | None, deadline: float | None = None) -> list[RowRecord]:
        """
        Every clustering variant stored under the composite key (P1, id).

        Args:
            raw_id: Numeric id as received; absent or malformed means 0
            deadline: Override of the default deadline in seconds

        Returns:
            Full records; empty when nothing is stored under the key

        Raises:
            StoreQueryError: If the lookup failed after retries
        """
        secondary_id = parse_lookup_id(raw_id)
        rows = await self._read("find_by_id", (PARTITION_KEY, secondary_id), deadline, secondary_id=secondary_id)
        return [RowRecord.from_row(row) for row in rows]

    async def _read(self, operation: str, params: tuple, deadline: float | None, **context: Any) -> list:
        """Run one read with retries under a deadline, recording metrics."""
        deadline = deadline if deadline is not None else self.deadline
        start = time.perf_counter()
        rows: list = []
        succeeded = False
        error_type = None

        try:
            async with self.tracer.span(f"cql.{operation}", {"partition_id": PARTITION_KEY, **context}):
                async with PerformanceLogger(operation, logger=logger, **context):
                    try:
                        rows = await asyncio.wait_for(self._read_with_retry(operation, params), timeout=deadline)
                    except asyncio.TimeoutError as e:
                        raise StoreTimeoutError(
                            "Request deadline exceeded",
                            original_error=e,
                            operation=operation,
                            timeout_seconds=deadline,
                        ) from e
            succeeded = True
        except StoreQueryError as e:
            error_type = type(e.original_error or e).__name__
            raise
        finally:
            self.metrics.record_query(
                operation,
                (time.perf_counter() - start) * 1000,
                success=succeeded,
                error_type=error_type,
                rows=len(rows),
            )

        return rows

    def wait_strategy(self):
        """Backoff between read attempts: min_backoff doubling up to max_backoff."""
        config = self.retry_config
        if config.jitter:
            return wait_exponential_jitter(
                multiplier=config.min_backoff,
                min=config.min_backoff,
                max=config.max_backoff,
                jitter=config.min_backoff,
            )
        return wait_exponential(multiplier=config.min_backoff, min=config.min_backoff, max=config.max_backoff)

    async def _read_with_retry(self, operation: str, params: tuple) -> list:
        config = self.retry_config
        rows: list = []
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(config.num_retries + 1),
            wait=self.wait_strategy(),
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            before_sleep=self._before_retry(operation),
            reraise=True,
        ):
            with attempt:
                rows = await self._read_once(operation, params)
        return rows

    def _before_retry(self, operation: str):
        def log_retry(retry_state: RetryCallState) -> None:
            self.metrics.record_retry(operation)
            logger.warning(
                f"Retrying {operation} after transient failure "
                f"(attempt {retry_state.attempt_number}/{self.retry_config.num_retries + 1}): "
                f"{retry_state.outcome.exception()}"
            )
        return log_retry

    async def _read_once(self, operation: str, params: tuple) -> list:
        """Prepare, execute, drain and close. Driver errors come out translated."""
        try:
            statement = await self.store.prepare(operation, self._queries[operation])
            cursor, response_future = self.store.stream(statement, params, profile=READ_PROFILE)
            rows = [row async for row in cursor]
            cursor.close()
        except StoreQueryError:
            raise
        except Exception as e:
            raise translate_driver_error(e, operation, self.store.query_timeout) from e

        self.store.trace_sink.schedule(response_future, operation)
        return rows
