"""
Cluster session configuration.

Builds the driver ``Cluster`` for a set of contact points: protocol and CQL
version, timeouts, keepalive, per-profile consistency, a partition-aware
host-selection policy and the connection pool. Also provides the trace sink
that logs server-side statement traces.
"""

import asyncio
import logging
import socket
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from cassandra.cluster import Cluster, ExecutionProfile, EXEC_PROFILE_DEFAULT, Session
from cassandra.io.asyncioreactor import AsyncioConnection
from cassandra.policies import (
    DCAwareRoundRobinPolicy,
    FallthroughRetryPolicy,
    HostDistance,
    LoadBalancingPolicy,
    RoundRobinPolicy,
    TokenAwarePolicy,
)
from cassandra.query import dict_factory

from partition_lookup.config import ClusterConfig
from partition_lookup.errors import StoreConnectionError

logger = logging.getLogger(__name__)
trace_logger = logging.getLogger("partition_lookup.trace")

READ_PROFILE = EXEC_PROFILE_DEFAULT
WRITE_PROFILE = "write"


def build_load_balancing_policy(config: ClusterConfig) -> LoadBalancingPolicy:
    """
    Two-tier host selection.

    TokenAwarePolicy sends each statement straight to a replica that owns the
    statement's partition key. When ownership is unknown (no routing key, or
    metadata not loaded yet) or the replicas are down, it falls back to the
    child policy: DC-aware round-robin when ``local_dc`` is set, plain
    round-robin across every known node otherwise.
    """
    if config.local_dc:
        child = DCAwareRoundRobinPolicy(local_dc=config.local_dc)
    else:
        child = RoundRobinPolicy()
    return TokenAwarePolicy(child)


def build_execution_profile(config: ClusterConfig) -> ExecutionProfile:
    """
    Execution profile shared by reads and writes.

    The driver never retries on its own (FallthroughRetryPolicy); read
    retries with backoff happen in the query engine, writes are not retried.
    """
    return ExecutionProfile(
        load_balancing_policy=build_load_balancing_policy(config),
        retry_policy=FallthroughRetryPolicy(),
        consistency_level=config.consistency,
        serial_consistency_level=config.serial_consistency,
        request_timeout=config.query_timeout,
        row_factory=dict_factory,
    )


def build_socket_options(config: ClusterConfig) -> list[tuple[int, int, int]]:
    """TCP keepalive probing for idle connections; empty when disabled."""
    if config.keepalive_interval <= 0:
        return []

    interval = max(1, int(config.keepalive_interval))
    options = [(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)]
    # Not every platform exposes the per-socket knobs
    if hasattr(socket, "TCP_KEEPIDLE"):
        options.append((socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, interval))
    if hasattr(socket, "TCP_KEEPINTVL"):
        options.append((socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, interval))
    return options


def build_cluster(config: ClusterConfig) -> Cluster:
    """
    Build (but do not connect) a Cluster from configuration.

    Args:
        config: Cluster connection settings

    Returns:
        Configured Cluster with "read" (default) and "write" profiles
    """
    cluster = Cluster(
        contact_points=config.contact_points,
        port=config.port,
        protocol_version=config.protocol_version,
        cql_version=config.cql_version,
        connect_timeout=config.connect_timeout,
        control_connection_timeout=config.connect_timeout,
        idle_heartbeat_interval=config.keepalive_interval,
        sockopts=build_socket_options(config),
        connection_class=AsyncioConnection,
        execution_profiles={
            READ_PROFILE: build_execution_profile(config),
            WRITE_PROFILE: build_execution_profile(config),
        },
    )

    if config.protocol_version < 3:
        cluster.set_max_connections_per_host(HostDistance.LOCAL, config.connections_per_host)
        cluster.set_core_connections_per_host(HostDistance.LOCAL, config.connections_per_host)
    else:
        logger.debug(
            f"Protocol v{config.protocol_version} multiplexes requests; "
            f"connections_per_host={config.connections_per_host} not applied"
        )

    logger.info(
        f"Configured cluster {config.contact_points}:{config.port} "
        f"(protocol v{config.protocol_version}, CQL {config.cql_version}, "
        f"consistency={config.consistency_level}, "
        f"routing=token-aware/{'dc-aware ' + config.local_dc if config.local_dc else 'round-robin'})"
    )
    return cluster


def connect(config: ClusterConfig) -> tuple[Cluster, Session]:
    """
    Connect to the cluster. Blocking; run it in an executor from async code.

    Raises:
        StoreConnectionError: If no contact point answered within connect_timeout
    """
    cluster = build_cluster(config)
    try:
        session = cluster.connect()
    except Exception as e:
        cluster.shutdown()
        raise StoreConnectionError(
            f"Could not connect to any of {config.contact_points} on port {config.port}",
            original_error=e,
        ) from e

    logger.info(f"Connected to cluster '{cluster.metadata.cluster_name}'")
    return cluster, session


class QueryTraceSink:
    """
    Logs server-side traces of executed statements.

    Statements are executed with tracing on; once a statement completes the
    sink fetches its trace from ``system_traces`` in the background and
    writes one line per trace event to the ``partition_lookup.trace``
    logger. Trace failures never affect the statement's outcome.

    Fetches run on a private pool of ``max_workers`` threads so they never
    compete with ``prepare`` or shutdown on the default executor. At most
    ``max_pending`` fetches are in flight; traces beyond that are dropped.
    """

    def __init__(
        self,
        enabled: bool = True,
        max_wait: float = 2.0,
        logger: logging.Logger = trace_logger,
        max_workers: int = 2,
        max_pending: int = 64,
    ):
        self.enabled = enabled
        self.max_wait = max_wait
        self.logger = logger
        self.max_workers = max_workers
        self.max_pending = max_pending
        self.dropped = 0
        self._executor: ThreadPoolExecutor | None = None
        self._pending: set[asyncio.Future] = set()

    def schedule(self, response_future: Any, statement_name: str) -> None:
        """Fetch and log the trace of ``response_future`` off the event loop."""
        if not self.enabled:
            return
        if len(self._pending) >= self.max_pending:
            self.dropped += 1
            self.logger.debug(f"Trace for '{statement_name}' dropped: {len(self._pending)} fetches in flight")
            return

        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="cql-trace")
        loop = asyncio.get_running_loop()
        task = loop.run_in_executor(self._executor, self.record, response_future, statement_name)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def record(self, response_future: Any, statement_name: str) -> None:
        """Blocking trace fetch and log."""
        try:
            trace = response_future.get_query_trace(max_wait=self.max_wait)
        except Exception as e:
            self.logger.warning(f"Trace for '{statement_name}' unavailable: {e}")
            return

        if trace is None:
            return

        self.logger.info(
            f"Tracing session {trace.trace_id} ({statement_name}, "
            f"coordinator: {trace.coordinator}, duration: {trace.duration})"
        )
        for event in trace.events or ():
            self.logger.info(
                f"{trace.trace_id}: {event.description} "
                f"(source: {event.source}, elapsed: {event.source_elapsed}, thread: {event.thread_name})"
            )

    async def drain(self) -> None:
        """Wait for in-flight trace fetches."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    async def close(self) -> None:
        """Drain, then release the fetch threads."""
        await self.drain()
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
