"""
Schema initialization and demo data seeding.

Creates the keyspace and table if they are missing, then loads ``rows x 2``
synthetic rows into the demo partition with one single-row insert per row.
Every failure here is fatal: there is no partial-failure recovery.
"""

import logging
import random
import re
from datetime import datetime, timezone

from cassandra import AlreadyExists

from partition_lookup.cluster import WRITE_PROFILE
from partition_lookup.errors import StoreSchemaError
from partition_lookup.logging_utils import PerformanceLogger
from partition_lookup.store import PartitionStore

logger = logging.getLogger(__name__)

PARTITION_KEY = "P1"
SECONDARY_ID_WIDTH = 13
DEFAULT_SECONDARY_ID = "0" * SECONDARY_ID_WIDTH
DEFAULT_ROW_COUNT = 10_000
INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1
CLUSTER_VARIANTS = ("FOO0", "FOO1")
CLUSTER_COL_2 = "BAR"

COLUMNS = (
    "partition_id",
    "secondary_id",
    "cluster_col_1",
    "cluster_col_2",
    "data_col_1",
    "data_col_2",
    "data_col_3",
)

CREATE_KEYSPACE = """
    CREATE KEYSPACE IF NOT EXISTS {keyspace}
    WITH replication = {{
        'class': 'SimpleStrategy',
        'replication_factor': {replication_factor}
    }}
"""

CREATE_TABLE = """
    CREATE TABLE IF NOT EXISTS {keyspace}.{table} (
        partition_id text,
        secondary_id text,
        cluster_col_1 text,
        cluster_col_2 text,
        data_col_1 int,
        data_col_2 boolean,
        data_col_3 timestamp,
        PRIMARY KEY ((partition_id, secondary_id), cluster_col_1, cluster_col_2)
    )
"""

INSERT_ROW = """
    INSERT INTO {keyspace}.{table} ({columns})
    VALUES ({placeholders})
"""

_DECIMAL_RE = re.compile(r"[+-]?[0-9]+")


def format_secondary_id(value: int) -> str:
    """
    Render an id as a 13-digit zero-padded decimal.

    Fixed width keeps lexicographic order equal to numeric order, so text
    range scans over secondary_id behave like numeric ranges.
    """
    return format(value, f"0{SECONDARY_ID_WIDTH}d")


def parse_decimal(raw: str | None) -> int | None:
    """
    Parse a signed 64-bit decimal integer, or return None.

    Only an optional sign followed by ASCII digits is accepted: no
    whitespace, no underscores, no non-ASCII digits, nothing outside the
    int64 range.
    """
    if raw is None or not _DECIMAL_RE.fullmatch(raw):
        return None
    value = int(raw)
    if not INT64_MIN <= value <= INT64_MAX:
        return None
    return value


def parse_row_count(raw: str | None, default: int = DEFAULT_ROW_COUNT) -> int:
    """Row count from a request parameter; anything non-numeric means ``default``."""
    count = parse_decimal(raw)
    if count is None:
        return default
    return max(count, 0)


async def ensure_schema(store: PartitionStore) -> None:
    """
    Create keyspace and table if they do not exist. Idempotent.

    Raises:
        StoreSchemaError: If either statement fails
    """
    dataset = store.config.dataset
    statements = (
        ("create_keyspace", CREATE_KEYSPACE.format(
            keyspace=dataset.keyspace,
            replication_factor=dataset.replication_factor,
        )),
        ("create_table", CREATE_TABLE.format(keyspace=dataset.keyspace, table=dataset.table)),
    )

    for name, statement in statements:
        logger.info(f"Initializing {store.qualified_table}: {name}")
        try:
            await store.execute(statement, name=name, profile=WRITE_PROFILE, trace=True)
        except AlreadyExists:
            # A concurrent creator won the race
            logger.debug(f"{name}: already exists")
        except Exception as e:
            raise StoreSchemaError(f"{name} failed", original_error=e, statement=name) from e


async def seed_rows(store: PartitionStore, rows: int, rng: random.Random | None = None) -> int:
    """
    Insert ``rows x len(CLUSTER_VARIANTS)`` synthetic rows into the demo partition.

    Inserts are sequential single-row statements, unbatched and never
    retried: the first failure aborts the whole load.

    Args:
        store: Connected store
        rows: Number of secondary ids to write, ids ``0 .. rows-1``
        rng: Random source for payload columns

    Returns:
        Number of rows written

    Raises:
        StoreSchemaError: On the first failed insert
    """
    rng = rng or random.Random()
    query = INSERT_ROW.format(
        keyspace=store.keyspace,
        table=store.table,
        columns=", ".join(COLUMNS),
        placeholders=", ".join("?" for _ in COLUMNS),
    )

    try:
        statement = await store.prepare("insert_row", query)
    except Exception as e:
        raise StoreSchemaError("Preparing insert failed", original_error=e, statement="insert_row") from e

    written = 0
    for i in range(rows):
        secondary_id = format_secondary_id(i)
        for cluster_col_1 in CLUSTER_VARIANTS:
            params = (
                PARTITION_KEY,
                secondary_id,
                cluster_col_1,
                CLUSTER_COL_2,
                rng.randrange(100),
                rng.randrange(2) == 1,
                datetime.now(timezone.utc),
            )
            try:
                await store.execute(statement, params, name="insert_row", profile=WRITE_PROFILE)
            except Exception as e:
                raise StoreSchemaError(
                    f"Insert failed at secondary_id={secondary_id}, cluster_col_1={cluster_col_1} "
                    f"after {written} rows",
                    original_error=e,
                    statement="insert_row",
                ) from e
            written += 1

    return written


async def initialize(store: PartitionStore, rows: int, rng: random.Random | None = None) -> int:
    """Ensure the schema, then seed. Returns the number of rows written."""
    async with PerformanceLogger("init_data", logger=logger, rows=rows):
        await ensure_schema(store)
        logger.info(f"Initializing dataset with {rows} (x{len(CLUSTER_VARIANTS)}) rows...")
        written = await seed_rows(store, rows, rng=rng)
    logger.info(f"Initialization done: {written} rows written")
    return written
