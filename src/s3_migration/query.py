# src/s3_migration/query.py
"""
Builds the row filter applied to an inventory data file.

Inventory CSV files carry no header, so the manifest's declared `fileSchema`
is the only positional mapping from column names to S3 Select references
(`s._1`, `s._2`, ...). The builder produces a structured `FilterExpression`
that renders both to S3 Select SQL and to a polars expression, so the dry run
previews exactly the rows the server-side query would return.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import polars as pl

from s3_migration.config import LatestOnly
from s3_migration.exceptions import InvalidSchemaError

logger: logging.Logger = logging.getLogger(__name__)

IS_LATEST_COLUMN: str = "IsLatest"
# S3 Inventory names the column LastModifiedDate; older schemas used LastUpdated.
LAST_UPDATED_COLUMNS: Tuple[str, ...] = ("LastModifiedDate", "LastUpdated")
PROJECTION: Tuple[str, str] = ("s._1", "s._2")
ISO_FORMAT: str = "%Y-%m-%dT%H:%M:%S"


@dataclass(frozen=True)
class FilterPredicate:
    """
    A single comparison against one positional inventory column.

    Attributes:
        name (str): Schema column name, e.g. "IsLatest".
        ref (str): Positional S3 Select reference, e.g. "s._4".
        op (str): One of "=", "<", ">" or "BETWEEN".
        values (Tuple[str, ...]): Literal operands; two for BETWEEN.
    """

    name: str
    ref: str
    op: str
    values: Tuple[str, ...]

    def to_sql(self) -> str:
        if self.op == "BETWEEN":
            low, high = self.values
            return f"{self.ref} BETWEEN '{low}' AND '{high}'"
        return f"{self.ref} {self.op} '{self.values[0]}'"

    def to_polars(self) -> pl.Expr:
        column: pl.Expr = pl.col(self.name)
        if self.op == "BETWEEN":
            low, high = self.values
            return column.is_between(pl.lit(low), pl.lit(high), closed="both")
        if self.op == "<":
            return column < pl.lit(self.values[0])
        if self.op == ">":
            return column > pl.lit(self.values[0])
        return column == pl.lit(self.values[0])


@dataclass(frozen=True)
class FilterExpression:
    """
    A two-column projection (bucket, key) plus zero or more predicates.

    Attributes:
        predicates (Tuple[FilterPredicate, ...]): Conditions joined with AND.
        columns (Tuple[str, ...]): Schema column names in positional order;
            empty when the schema was not inspected.
    """

    predicates: Tuple[FilterPredicate, ...] = ()
    columns: Tuple[str, ...] = field(default=())

    def to_sql(self) -> str:
        """Renders the expression as an S3 Select statement."""
        sql: str = f"SELECT {', '.join(PROJECTION)} FROM s3object s"
        if self.predicates:
            sql += " WHERE " + " AND ".join(p.to_sql() for p in self.predicates)
        return sql

    def to_polars(self) -> Optional[pl.Expr]:
        """Renders the predicates as a polars filter, or None if unfiltered."""
        if not self.predicates:
            return None
        combined: pl.Expr = self.predicates[0].to_polars()
        for predicate in self.predicates[1:]:
            combined = combined & predicate.to_polars()
        return combined


def parse_file_schema(file_schema: str) -> List[str]:
    """
    Splits a comma-delimited inventory schema into column names.

    Args:
        file_schema (str): The manifest `fileSchema` value.

    Returns:
        List[str]: Column names in positional order.

    Raises:
        InvalidSchemaError: If fewer than two columns are declared.
    """
    columns: List[str] = [c.strip() for c in file_schema.split(",")]
    if len(columns) < 2 or not all(columns[:2]):
        raise InvalidSchemaError(f"Invalid input file schema: '{file_schema}'")
    return columns


def _to_iso(value: datetime) -> str:
    return value.strftime(ISO_FORMAT)


def build_filter_expression(
    file_schema: str,
    start: Optional[datetime],
    end: Optional[datetime],
    latest_only: Optional[LatestOnly],
    versioning_disabled: bool,
    log: Optional[logging.Logger] = None,
) -> FilterExpression:
    """
    Builds the inventory row filter for one batch job manifest.

    The latest-only predicate is mandatory when requested. The date predicate
    is best effort: a schema without a last-updated column logs a warning and
    the predicate is dropped. Note the one-sided date bounds: a start alone
    selects objects modified before it, an end alone selects objects modified
    after it.

    Args:
        file_schema (str): Comma-delimited column names from the manifest.
        start (datetime, optional): Start of the last-modified range.
        end (datetime, optional): End of the last-modified range.
        latest_only (LatestOnly, optional): Version selector.
        versioning_disabled (bool): True when the source bucket never had
            versioning enabled; all filters are then dropped.
        log (logging.Logger, optional): Logger for skipped predicates.

    Returns:
        FilterExpression: The projection and its predicates.
    """
    log = log or logger
    if versioning_disabled:
        return FilterExpression()

    columns: List[str] = parse_file_schema(file_schema)
    positions: Dict[str, str] = {
        name: f"s._{index + 1}" for index, name in enumerate(columns)
    }
    predicates: List[FilterPredicate] = []

    if latest_only is not None:
        if IS_LATEST_COLUMN not in positions:
            raise InvalidSchemaError(
                f"File schema does not contain field '{IS_LATEST_COLUMN}', "
                f"provided file schema: '{file_schema}'"
            )
        value: str = "true" if latest_only is LatestOnly.YES else "false"
        predicates.append(
            FilterPredicate(
                IS_LATEST_COLUMN, positions[IS_LATEST_COLUMN], "=", (value,)
            )
        )

    if start is not None or end is not None:
        date_column: Optional[str] = next(
            (name for name in LAST_UPDATED_COLUMNS if name in positions), None
        )
        if date_column is None:
            log.warning(
                f"File schema does not contain any of {list(LAST_UPDATED_COLUMNS)}, "
                f"skipping date filter. Provided file schema: '{file_schema}'"
            )
        else:
            ref: str = positions[date_column]
            if start is not None and end is not None:
                predicates.append(
                    FilterPredicate(
                        date_column, ref, "BETWEEN", (_to_iso(start), _to_iso(end))
                    )
                )
            elif start is not None:
                predicates.append(
                    FilterPredicate(date_column, ref, "<", (_to_iso(start),))
                )
            elif end is not None:
                predicates.append(
                    FilterPredicate(date_column, ref, ">", (_to_iso(end),))
                )

    return FilterExpression(predicates=tuple(predicates), columns=tuple(columns))
