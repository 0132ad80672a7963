"""
Partition Lookup - HTTP lookups over a CQL wide-column store.

This package provides an HTTP service that seeds a demo dataset into a
Cassandra/ScyllaDB table and serves partition-key lookups against it, on a
single long-lived, token-aware driver session.
"""

from partition_lookup.errors import (
    StoreError,
    StoreConnectionError,
    StoreSchemaError,
    StoreQueryError,
    StoreTimeoutError,
    StoreUnavailableError,
    ConfigurationError,
    translate_driver_error,
)

from partition_lookup.config import (
    ServiceConfig,
    ClusterConfig,
    SchemaConfig,
    RetryConfig,
    load_config_from_env,
)

from partition_lookup.cluster import (
    READ_PROFILE,
    WRITE_PROFILE,
    QueryTraceSink,
    build_cluster,
    connect,
)

from partition_lookup.cursor import RowCursor, CursorStateError
from partition_lookup.store import PartitionStore
from partition_lookup.schema import ensure_schema, seed_rows, initialize
from partition_lookup.queries import PartitionQueryEngine
from partition_lookup.models import RowRecord, Envelope, HealthStatus

from partition_lookup.observability import (
    Tracer,
    QueryMetrics,
    PercentileTracker,
)

from partition_lookup.api import create_app

__version__ = "1.0.0"

__all__ = [
    # Errors
    "StoreError",
    "StoreConnectionError",
    "StoreSchemaError",
    "StoreQueryError",
    "StoreTimeoutError",
    "StoreUnavailableError",
    "ConfigurationError",
    "translate_driver_error",
    # Configuration
    "ServiceConfig",
    "ClusterConfig",
    "SchemaConfig",
    "RetryConfig",
    "load_config_from_env",
    # Session
    "READ_PROFILE",
    "WRITE_PROFILE",
    "QueryTraceSink",
    "build_cluster",
    "connect",
    "RowCursor",
    "CursorStateError",
    "PartitionStore",
    # Data
    "ensure_schema",
    "seed_rows",
    "initialize",
    "PartitionQueryEngine",
    "RowRecord",
    "Envelope",
    "HealthStatus",
    # Observability
    "Tracer",
    "QueryMetrics",
    "PercentileTracker",
    # HTTP
    "create_app",
]
