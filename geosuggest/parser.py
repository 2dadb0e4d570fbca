"""
Schema-driven parser for delimited gazetteer extracts.

A Schema names the columns a caller cares about, where they live and how to
convert them. Parsing is lazy: rows come out one at a time, and a malformed
row turns into a ParseError value instead of stopping the stream, so the
caller can collect-and-continue or abort on the first error.

Predefined schemas cover the GeoNames dump files:

  citiesNNNN.txt          GEONAMES_CITIES   (tab, 19 columns)
  alternateNamesV2.txt    ALTERNATE_NAMES   (tab, 10 columns; V1 with 8 also works)
  admin1CodesASCII.txt    ADMIN1_CODES      (tab, 4 columns)
  admin2Codes.txt         ADMIN2_CODES      (tab, 4 columns)
  countryInfo.txt         COUNTRY_INFO      (tab, 19 columns, '#' comments)

and a minimal comma-separated cities file with a header row
(MINIMAL_CITIES) for the cities-only flow.
"""

from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Iterator, Literal, Optional, Union

from geosuggest.errors import ParseError

logger = logging.getLogger(__name__)


class ColumnKind(str, Enum):
    STR = "str"
    INT = "int"
    FLOAT = "float"
    LATITUDE = "latitude"
    LONGITUDE = "longitude"
    FLAG = "flag"  # GeoNames boolean columns: "1" or empty


@dataclass(frozen=True)
class Column:
    name: str
    index: int
    kind: ColumnKind = ColumnKind.STR
    # Value for an empty numeric cell; gazetteers routinely omit population
    default: Any = 0


@dataclass(frozen=True)
class Schema:
    name: str
    columns: tuple[Column, ...]
    delimiter: str = "\t"
    # Exact column count; None means "at least enough for every column"
    column_count: Optional[int] = None
    has_header: bool = False
    comment_prefix: Optional[str] = "#"
    quoting: int = csv.QUOTE_NONE

    @property
    def min_columns(self) -> int:
        return max(c.index for c in self.columns) + 1


@dataclass(frozen=True)
class ParsedRow:
    line_no: int
    values: dict[str, Any] = field(default_factory=dict)

    def __getitem__(self, key: str) -> Any:
        return self.values[key]

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)


RowResult = Union[ParsedRow, ParseError]


# ── Predefined schemas ────────────────────────────────────────────────

GEONAMES_CITIES = Schema(
    name="cities",
    column_count=19,
    columns=(
        Column("id", 0, ColumnKind.INT, default=None),
        Column("name", 1),
        Column("asciiname", 2),
        Column("alternatenames", 3),
        Column("latitude", 4, ColumnKind.LATITUDE),
        Column("longitude", 5, ColumnKind.LONGITUDE),
        Column("feature_code", 7),
        Column("country_code", 8),
        Column("admin1_code", 10),
        Column("admin2_code", 11),
        Column("population", 14, ColumnKind.INT),
        Column("timezone", 17),
    ),
)

MINIMAL_CITIES = Schema(
    name="cities",
    delimiter=",",
    has_header=True,
    quoting=csv.QUOTE_MINIMAL,
    columns=(
        Column("id", 0, ColumnKind.INT, default=None),
        Column("name", 1),
        Column("latitude", 2, ColumnKind.LATITUDE),
        Column("longitude", 3, ColumnKind.LONGITUDE),
        Column("country_code", 4),
        Column("population", 5, ColumnKind.INT),
        Column("timezone", 6),
    ),
)

ALTERNATE_NAMES = Schema(
    name="names",
    columns=(
        Column("geonameid", 1, ColumnKind.INT, default=None),
        Column("isolanguage", 2),
        Column("alternate_name", 3),
        Column("is_preferred_name", 4, ColumnKind.FLAG),
        Column("is_short_name", 5, ColumnKind.FLAG),
        Column("is_colloquial", 6, ColumnKind.FLAG),
        Column("is_historic", 7, ColumnKind.FLAG),
    ),
)

ADMIN1_CODES = Schema(
    name="admin1_codes",
    column_count=4,
    columns=(
        Column("code", 0),
        Column("name", 1),
        Column("geonameid", 3, ColumnKind.INT, default=None),
    ),
)

ADMIN2_CODES = Schema(
    name="admin2_codes",
    column_count=4,
    columns=ADMIN1_CODES.columns,
)

COUNTRY_INFO = Schema(
    name="countries",
    column_count=19,
    columns=(
        Column("iso", 0),
        Column("iso3", 1),
        Column("name", 4),
        Column("capital", 5),
        Column("population", 7, ColumnKind.INT),
        Column("continent", 8),
        Column("languages", 15),
        Column("geonameid", 16, ColumnKind.INT, default=None),
        Column("neighbours", 17),
    ),
)


# ── Parsing ───────────────────────────────────────────────────────────

def read_lines(content: Union[str, bytes]) -> list[str]:
    """Split an in-memory source into lines, decoding bytes as UTF-8."""
    if isinstance(content, bytes):
        content = content.decode("utf-8-sig")
    return content.splitlines()


def _split(line: str, schema: Schema) -> list[str]:
    if schema.quoting == csv.QUOTE_NONE:
        return line.split(schema.delimiter)
    return next(csv.reader(io.StringIO(line), delimiter=schema.delimiter, quoting=schema.quoting))


def _convert(raw: str, column: Column) -> Any:
    """Convert one cell. Raises ValueError with a human readable reason."""
    value = raw.strip()

    if column.kind is ColumnKind.STR:
        return value
    if column.kind is ColumnKind.FLAG:
        return value == "1"
    if column.kind is ColumnKind.INT:
        if not value:
            return column.default
        try:
            number = int(value)
        except ValueError:
            raise ValueError(f"{column.name}: not an integer: {value!r}") from None
        if number < 0:
            raise ValueError(f"{column.name}: negative value {number}")
        return number
    if column.kind is ColumnKind.FLOAT:
        if not value:
            return column.default
        try:
            return float(value)
        except ValueError:
            raise ValueError(f"{column.name}: not a number: {value!r}") from None

    # Coordinates are never optional
    try:
        number = float(value)
    except ValueError:
        raise ValueError(f"{column.name}: not a number: {value!r}") from None
    limit = 90.0 if column.kind is ColumnKind.LATITUDE else 180.0
    if not -limit <= number <= limit:
        raise ValueError(f"{column.name}: {number} out of range [-{limit:g}, {limit:g}]")
    return number


def _header_positions(cells: list[str], schema: Schema) -> dict[str, int]:
    names = [c.strip().lower() for c in cells]
    positions = {}
    for column in schema.columns:
        if column.name in names:
            positions[column.name] = names.index(column.name)
    return positions


def iter_rows(lines: Iterable[str], schema: Schema) -> Iterator[RowResult]:
    """
    Lazily parse lines into ParsedRow values.
    Malformed rows are yielded as ParseError instances, never raised.
    """
    positions = {c.name: c.index for c in schema.columns}
    header_seen = not schema.has_header

    for line_no, line in enumerate(lines, 1):
        line = line.rstrip("\r\n")
        if not line.strip():
            continue
        if schema.comment_prefix and line.startswith(schema.comment_prefix):
            continue

        try:
            cells = _split(line, schema)
        except csv.Error as e:
            yield ParseError(line_no, f"unreadable row: {e}", line)
            continue

        if not header_seen:
            # Header names override the positional defaults
            positions.update(_header_positions(cells, schema))
            header_seen = True
            continue

        if schema.column_count is not None and len(cells) != schema.column_count:
            yield ParseError(
                line_no, f"expected {schema.column_count} columns, got {len(cells)}", line
            )
            continue
        needed = max(positions.values()) + 1
        if len(cells) < needed:
            yield ParseError(line_no, f"expected at least {needed} columns, got {len(cells)}", line)
            continue

        values: dict[str, Any] = {}
        try:
            for column in schema.columns:
                values[column.name] = _convert(cells[positions[column.name]], column)
        except ValueError as e:
            yield ParseError(line_no, str(e), line)
            continue

        yield ParsedRow(line_no, values)


def parse_table(
    lines: Iterable[str],
    schema: Schema,
    on_error: Literal["skip", "raise"] = "skip",
    errors: Optional[list[ParseError]] = None,
) -> Iterator[ParsedRow]:
    """
    Iterate valid rows only.

    on_error="raise" aborts on the first malformed row; "skip" drops it and,
    when an ``errors`` list is given, appends the ParseError to it.
    """
    for result in iter_rows(lines, schema):
        if isinstance(result, ParseError):
            if on_error == "raise":
                raise result
            logger.debug("Skipping %s row: %s", schema.name, result)
            if errors is not None:
                errors.append(result)
            continue
        yield result
