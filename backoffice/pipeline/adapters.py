"""
Flat-file readers turning uploads into rows for the validation engine.

Headers are matched to column names case-insensitively; columns missing from
the header come through as ``None`` and are judged by the column spec.
Headerless formats map values to columns by position.
"""

from __future__ import annotations

import csv
from typing import IO, Iterator

from .definitions import IntegrationDefinition, SourceFormat

DELIMITERS = {
    SourceFormat.CSV: ",",
    SourceFormat.PIPE: "|",
}


def _normalize_header(value: str | None) -> str:
    return (value or "").strip().lstrip("\ufeff").lower()


def read_rows(definition: IntegrationDefinition, handle: IO[str]) -> Iterator[dict[str, str | None]]:
    """Yield one mapping per data line keyed by the definition's column names."""

    delimiter = DELIMITERS[SourceFormat(definition.source_format)]
    reader = csv.reader(handle, delimiter=delimiter)
    if definition.has_header:
        try:
            header = [_normalize_header(name) for name in next(reader)]
        except StopIteration:
            return
        positions = {name: index for index, name in enumerate(header) if name}
        wanted = [(column, positions.get(_normalize_header(column))) for column in definition.column_names]
    else:
        wanted = [(column, index) for index, column in enumerate(definition.column_names)]

    for values in reader:
        if not any(value.strip() for value in values):
            continue
        yield {
            column: (values[index] if index is not None and index < len(values) else None)
            for column, index in wanted
        }


def missing_columns(definition: IntegrationDefinition, handle: IO[str]) -> tuple[str, ...]:
    """Column names the file header does not provide; rewinds ``handle``."""

    if not definition.has_header:
        return ()
    delimiter = DELIMITERS[SourceFormat(definition.source_format)]
    start = handle.tell()
    try:
        header_line = handle.readline()
    finally:
        handle.seek(start)
    header = {_normalize_header(name) for name in next(csv.reader([header_line], delimiter=delimiter), [])}
    return tuple(column for column in definition.column_names if _normalize_header(column) not in header)
