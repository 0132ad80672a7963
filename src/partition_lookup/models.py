"""
Result records and the response envelope.

Every endpoint answers with the same three-field envelope:
``{"type": "success"|"error", "data": [...], "message": "..."}``.
``data`` is omitted on error, ``message`` on success.
"""

from datetime import datetime, timezone
from typing import Any, Literal, Mapping, Optional

from pydantic import BaseModel, Field


class RowRecord(BaseModel):
    """One row of the demo table as returned to callers."""

    partition_id: str
    secondary_id: str
    cluster_col_1: str
    cluster_col_2: str
    data_col_1: Optional[int] = None
    data_col_2: Optional[bool] = None
    data_col_3: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any], partial: bool = False) -> "RowRecord":
        """
        Map a driver row (dict_factory) to a record.

        Args:
            row: Row with the demo table's column names as keys
            partial: Drop the boolean and timestamp columns
        """
        record = cls(
            partition_id=row["partition_id"],
            secondary_id=row["secondary_id"],
            cluster_col_1=row["cluster_col_1"],
            cluster_col_2=row["cluster_col_2"],
            data_col_1=row.get("data_col_1"),
        )
        if not partial:
            record.data_col_2 = row.get("data_col_2")
            timestamp = row.get("data_col_3")
            # The driver returns naive datetimes in UTC
            if timestamp is not None and timestamp.tzinfo is None:
                timestamp = timestamp.replace(tzinfo=timezone.utc)
            record.data_col_3 = timestamp
        return record


class Envelope(BaseModel):
    """Uniform success/error response body."""

    type: Literal["success", "error"]
    data: Optional[list[RowRecord]] = None
    message: Optional[str] = None

    @classmethod
    def success(cls, records: list[RowRecord] | None = None) -> "Envelope":
        return cls(type="success", data=list(records or []))

    @classmethod
    def error(cls, message: str) -> "Envelope":
        return cls(type="error", message=message or "unknown error")

    def render(self) -> dict[str, Any]:
        """JSON-ready dict; absent fields are left out."""
        return self.model_dump(mode="json", exclude_none=True)


class HealthStatus(BaseModel):
    status: Literal["healthy", "unhealthy"]
    latency_ms: Optional[float] = None
    keyspace: Optional[str] = None
    prepared_statements_count: Optional[int] = None
    error: Optional[str] = Field(default=None, description="Failure reason when unhealthy")
