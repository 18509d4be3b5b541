# src/s3_migration/preview.py
"""
Local preview of an inventory filter for the dry run.

Applies the same `FilterExpression` the S3 Select query would use to a
locally downloaded inventory data file, so an operator can check how many
objects a run would copy before starting it.
"""

import gzip
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import polars as pl

from s3_migration.config import FilterCriteria
from s3_migration.exceptions import InvalidSchemaError
from s3_migration.query import FilterExpression, build_filter_expression, parse_file_schema

logger: logging.Logger = logging.getLogger(__name__)

# Schema produced by the inventory configuration this tool creates.
DEFAULT_FILE_SCHEMA: str = (
    "Bucket, Key, VersionId, IsLatest, IsDeleteMarker, Size, LastModifiedDate, "
    "ReplicationStatus"
)


@dataclass(frozen=True)
class InventoryPreview:
    """
    Row counts of a local inventory file before and after filtering.

    Attributes:
        path (Path): The inventory data file.
        total_rows (int): Rows in the file.
        matching_rows (int): Rows the filter keeps.
        expression (str): The equivalent S3 Select statement.
        sample (pl.DataFrame): The first matching bucket/key rows.
    """

    path: Path
    total_rows: int
    matching_rows: int
    expression: str
    sample: pl.DataFrame


def read_inventory_csv(path: Path, columns: List[str]) -> pl.DataFrame:
    """
    Reads a header-less inventory CSV (optionally gzipped) as string columns.

    Args:
        path (Path): The CSV or CSV.GZ file.
        columns (List[str]): Column names in positional order.

    Returns:
        pl.DataFrame: The inventory rows.
    """
    data: bytes = (
        gzip.decompress(path.read_bytes()) if path.suffix == ".gz" else path.read_bytes()
    )
    if not data.strip():
        return pl.DataFrame(schema={name: pl.String for name in columns})
    frame: pl.DataFrame = pl.read_csv(data, has_header=False, infer_schema=False)
    if frame.width != len(columns):
        raise InvalidSchemaError(
            f"Inventory file '{path}' has {frame.width} columns but the schema "
            f"declares {len(columns)}."
        )
    return frame.rename(dict(zip(frame.columns, columns)))


def preview_inventory(
    path: Path,
    criteria: FilterCriteria,
    versioning_disabled: bool,
    file_schema: str = DEFAULT_FILE_SCHEMA,
    sample_size: int = 5,
    log: Optional[logging.Logger] = None,
) -> InventoryPreview:
    """
    Filters a local inventory file the way the migration would.

    Args:
        path (Path): The CSV or CSV.GZ inventory data file.
        criteria (FilterCriteria): The user's filters.
        versioning_disabled (bool): True for never-versioned buckets.
        file_schema (str): Comma-delimited column names of the file.
        sample_size (int): Number of matching rows to keep as a sample.
        log (logging.Logger, optional): Injected logger.

    Returns:
        InventoryPreview: Counts, the SQL statement and a sample.
    """
    log = log or logger
    columns: List[str] = parse_file_schema(file_schema)
    expression: FilterExpression = build_filter_expression(
        file_schema,
        criteria.start,
        criteria.end,
        criteria.latest_only,
        versioning_disabled,
        log=log,
    )
    frame: pl.DataFrame = read_inventory_csv(path, columns)
    predicate: Optional[pl.Expr] = expression.to_polars()
    matching: pl.DataFrame = frame if predicate is None else frame.filter(predicate)
    log.debug(f"Previewed {frame.height} inventory rows from '{path}'.")
    return InventoryPreview(
        path=path,
        total_rows=frame.height,
        matching_rows=matching.height,
        expression=expression.to_sql(),
        sample=matching.select(columns[:2]).head(sample_size),
    )
