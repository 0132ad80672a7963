"""
Configuration management for the partition lookup service.

This module provides:
- Pydantic-based configuration validation
- Cluster connection, consistency and host-selection settings
- Read retry (exponential backoff) settings
- HTTP server and logging settings
- An environment loader that fails closed on malformed values
"""

import os
import logging
from typing import Callable, Literal, Optional, TypeVar

from cassandra import ConsistencyLevel
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from partition_lookup.errors import ConfigurationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

SERIAL_LEVELS = ("SERIAL", "LOCAL_SERIAL")


# ============================================================================
# Configuration Models
# ============================================================================

class RetryConfig(BaseModel):
    """
    Exponential backoff for read statements.

    Writes are never retried. Keep ``num_retries`` low and backoff generous:
    retrying reads against a short ``query_timeout`` while the cluster is
    electing leaders multiplies load on the nodes that are still up.
    """

    num_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Retries after the first attempt (0 disables retries)"
    )

    min_backoff: float = Field(
        default=0.05,
        ge=0.01,
        le=5.0,
        description="Initial retry delay in seconds"
    )

    max_backoff: float = Field(
        default=2.0,
        ge=0.01,
        le=60.0,
        description="Maximum retry delay in seconds"
    )

    jitter: bool = Field(
        default=True,
        description="Add random jitter to retry delays"
    )

    @model_validator(mode='after')
    def validate_backoff(self):
        if self.max_backoff < self.min_backoff:
            raise ValueError("max_backoff cannot be lower than min_backoff")
        return self


class ClusterConfig(BaseModel):
    """
    Connection settings for the CQL cluster.

    Example usage:
        config = ClusterConfig(
            contact_points=["10.0.0.1", "10.0.0.2"],
            consistency_level="LOCAL_QUORUM",
            local_dc="dc1",
        )
    """

    contact_points: list[str] = Field(
        default_factory=lambda: ["127.0.0.1"],
        description="Contact points used for initial topology discovery"
    )

    port: int = Field(
        default=9042,
        ge=1,
        le=65535,
        description="Native transport port"
    )

    protocol_version: int = Field(
        default=4,
        ge=1,
        le=5,
        description="Native protocol version"
    )

    cql_version: str = Field(
        default="3.4.2",
        description="CQL language version requested at handshake"
    )

    connect_timeout: float = Field(
        default=12.0,
        gt=0,
        le=300.0,
        description="Initial dial timeout in seconds"
    )

    query_timeout: float = Field(
        default=12.0,
        gt=0,
        le=300.0,
        description="Per-statement request timeout in seconds"
    )

    keepalive_interval: float = Field(
        default=10.0,
        ge=0,
        le=3600.0,
        description="TCP keepalive / heartbeat interval in seconds (0 disables)"
    )

    consistency_level: str = Field(
        default="QUORUM",
        description="Default consistency level; ONE enables follower reads"
    )

    serial_consistency_level: str = Field(
        default="SERIAL",
        description="Consistency level for conditional (LWT) statements"
    )

    local_dc: Optional[str] = Field(
        default=None,
        description="Local datacenter for DC-aware fallback routing"
    )

    connections_per_host: int = Field(
        default=2,
        ge=1,
        le=128,
        description="Connection pool size per host (protocol v1/v2 only)"
    )

    trace_queries: bool = Field(
        default=True,
        description="Record server-side statement traces to the trace logger"
    )

    retry: RetryConfig = Field(
        default_factory=RetryConfig,
        description="Read retry configuration"
    )

    model_config = ConfigDict(validate_assignment=True)

    @field_validator('contact_points')
    @classmethod
    def validate_contact_points(cls, v):
        """Validate contact points."""
        points = [p.strip() for p in v if p and p.strip()]
        if not points:
            raise ValueError("At least one contact point required")
        return points

    @field_validator('consistency_level', 'serial_consistency_level')
    @classmethod
    def validate_consistency(cls, v):
        """Validate consistency level names against the driver's table."""
        name = v.strip().upper()
        if name not in ConsistencyLevel.name_to_value:
            raise ValueError(f"Unknown consistency level: {v}")
        return name

    @field_validator('serial_consistency_level')
    @classmethod
    def validate_serial_consistency(cls, v):
        if v not in SERIAL_LEVELS:
            raise ValueError(f"Serial consistency must be one of {SERIAL_LEVELS}")
        return v

    @property
    def consistency(self) -> int:
        return ConsistencyLevel.name_to_value[self.consistency_level]

    @property
    def serial_consistency(self) -> int:
        return ConsistencyLevel.name_to_value[self.serial_consistency_level]


class SchemaConfig(BaseModel):
    """Keyspace and table holding the demo dataset."""

    keyspace: str = Field(default="demo", description="Keyspace name")
    table: str = Field(default="demo", description="Table name")
    replication_factor: int = Field(
        default=1,
        ge=1,
        le=9,
        description="SimpleStrategy replication factor"
    )

    @field_validator('keyspace', 'table')
    @classmethod
    def validate_identifier(cls, v):
        """Identifiers are interpolated into CQL, so keep them plain."""
        if not v or not v.replace('_', '').isalnum() or v[0].isdigit():
            raise ValueError(
                "Must be alphanumeric with optional underscores, not starting with a digit"
            )
        return v.lower()


class ServiceConfig(BaseModel):
    """
    Complete configuration for the partition lookup service.

    Example usage:
        config = load_config_from_env()
        app = create_app(config)
    """

    cluster: ClusterConfig = Field(default_factory=ClusterConfig)

    dataset: SchemaConfig = Field(default_factory=SchemaConfig)

    http_host: str = Field(default="0.0.0.0", description="HTTP bind address")

    http_port: int = Field(default=8000, ge=1, le=65535, description="HTTP port")

    request_deadline: float = Field(
        default=30.0,
        gt=0,
        le=600.0,
        description="Upper bound on a single lookup, retries included"
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")

    log_format: Literal["json", "text"] = Field(default="text")

    otel_tracing: bool = Field(
        default=False,
        description="Wrap lookups in OpenTelemetry spans"
    )

    @field_validator('log_level', 'log_format', mode='before')
    @classmethod
    def normalize_case(cls, v, info):
        if isinstance(v, str):
            return v.upper() if info.field_name == 'log_level' else v.lower()
        return v


# ============================================================================
# Environment loading
# ============================================================================

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _parse_bool(raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError("expected a boolean (true/false)")


def _env(name: str, default: T, parse: Callable[[str], T]) -> T:
    """Read and parse one variable; unset or empty means ``default``."""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return parse(raw.strip())
    except ValueError as e:
        raise ConfigurationError(str(e), variable=name, value=raw) from e


def load_config_from_env(dotenv: bool = True) -> ServiceConfig:
    """
    Load configuration from environment variables.

    Environment variables:
        CQL_CONTACT_POINTS: Comma-separated list of contact points
        CQL_PORT: Native transport port (default: 9042)
        CQL_PROTOCOL_VERSION: Protocol version (default: 4)
        CQL_VERSION: CQL version (default: 3.4.2)
        CQL_CONNECT_TIMEOUT / CQL_QUERY_TIMEOUT: Seconds (default: 12)
        CQL_KEEPALIVE: Keepalive interval in seconds, 0 disables (default: 10)
        CQL_CONSISTENCY: Default consistency level (default: QUORUM)
        CQL_SERIAL_CONSISTENCY: Serial consistency level (default: SERIAL)
        CQL_LOCAL_DC: Local datacenter for DC-aware routing
        CQL_CONNECTIONS_PER_HOST: Pool size per host (default: 2)
        CQL_RETRY_ATTEMPTS / CQL_RETRY_MIN_BACKOFF / CQL_RETRY_MAX_BACKOFF
        CQL_TRACE: Record statement traces (default: true)
        CQL_KEYSPACE / CQL_TABLE / CQL_REPLICATION_FACTOR
        HTTP_HOST / HTTP_PORT: HTTP bind address (default: 0.0.0.0:8000)
        REQUEST_DEADLINE: Per-lookup deadline in seconds (default: 30)
        LOG_LEVEL / LOG_FORMAT: Logging (default: INFO / text)
        OTEL_TRACING_ENABLED: Enable OpenTelemetry spans (default: false)

    Returns:
        Validated configuration

    Raises:
        ConfigurationError: If any variable is malformed
    """
    if dotenv:
        load_dotenv()

    contact_points = _env(
        "CQL_CONTACT_POINTS",
        ["127.0.0.1"],
        lambda raw: [cp.strip() for cp in raw.split(",") if cp.strip()],
    )

    try:
        return ServiceConfig(
            cluster=ClusterConfig(
                contact_points=contact_points,
                port=_env("CQL_PORT", 9042, int),
                protocol_version=_env("CQL_PROTOCOL_VERSION", 4, int),
                cql_version=_env("CQL_VERSION", "3.4.2", str),
                connect_timeout=_env("CQL_CONNECT_TIMEOUT", 12.0, float),
                query_timeout=_env("CQL_QUERY_TIMEOUT", 12.0, float),
                keepalive_interval=_env("CQL_KEEPALIVE", 10.0, float),
                consistency_level=_env("CQL_CONSISTENCY", "QUORUM", str),
                serial_consistency_level=_env("CQL_SERIAL_CONSISTENCY", "SERIAL", str),
                local_dc=_env("CQL_LOCAL_DC", None, str),
                connections_per_host=_env("CQL_CONNECTIONS_PER_HOST", 2, int),
                trace_queries=_env("CQL_TRACE", True, _parse_bool),
                retry=RetryConfig(
                    num_retries=_env("CQL_RETRY_ATTEMPTS", 3, int),
                    min_backoff=_env("CQL_RETRY_MIN_BACKOFF", 0.05, float),
                    max_backoff=_env("CQL_RETRY_MAX_BACKOFF", 2.0, float),
                ),
            ),
            dataset=SchemaConfig(
                keyspace=_env("CQL_KEYSPACE", "demo", str),
                table=_env("CQL_TABLE", "demo", str),
                replication_factor=_env("CQL_REPLICATION_FACTOR", 1, int),
            ),
            http_host=_env("HTTP_HOST", "0.0.0.0", str),
            http_port=_env("HTTP_PORT", 8000, int),
            request_deadline=_env("REQUEST_DEADLINE", 30.0, float),
            log_level=_env("LOG_LEVEL", "INFO", str),
            log_format=_env("LOG_FORMAT", "text", str),
            otel_tracing=_env("OTEL_TRACING_ENABLED", False, _parse_bool),
        )
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e
