"""
CardSync — Streaming CSV Parser

Turns a text stream (arriving in arbitrary chunks) into header-keyed rows
without buffering the whole payload first. A line may straddle any number of
chunk boundaries; the partial tail is carried to the next feed().
Records are line-oriented: every newline ends one, even inside quotes, so
quoted fields may hold delimiters but not newlines.

Cells stay raw strings (empty -> None). Typing is the normalizer's job.
"""

from __future__ import annotations

import csv
import re
from typing import AsyncIterable, AsyncIterator, Iterable, Iterator

import structlog

logger = structlog.get_logger(__name__)

Row = dict[str, "str | None"]

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_SEPARATORS = re.compile(r"[\s\-]+")


def normalize_header(name: str) -> str:
    """'GroupId' -> 'group_id', ' "Product Name" ' -> 'product_name'."""
    name = name.strip().strip('"').strip("'").strip()
    name = _CAMEL_BOUNDARY.sub("_", name)
    name = _SEPARATORS.sub("_", name.lower())
    return name.strip("_")


def _split_line(line: str, delimiter: str) -> list[str]:
    # One physical line at a time; quoted delimiters are honoured
    return next(csv.reader([line], delimiter=delimiter), [])


class StreamingCSVParser:
    """
    Incremental CSV parser. Single use: create one per stream.

    Usage:
        parser = StreamingCSVParser()
        for chunk in chunks:
            rows.extend(parser.feed(chunk))
        rows.extend(parser.finalize())
    """

    def __init__(self, delimiter: str = ","):
        self._delimiter = delimiter
        self._buffer = ""
        self._headers: list[str] | None = None
        self._row_count = 0
        self._finalized = False

    @property
    def headers(self) -> list[str] | None:
        return self._headers

    @property
    def row_count(self) -> int:
        return self._row_count

    def _parse_line(self, line: str) -> Row | None:
        line = line.rstrip("\r")
        if not line.strip():
            return None

        cells = _split_line(line, self._delimiter)
        if self._headers is None:
            self._headers = [normalize_header(c) for c in cells]
            return None

        row: Row = {}
        for i, header in enumerate(self._headers):
            value = cells[i].strip() if i < len(cells) else ""
            row[header] = value or None
        self._row_count += 1
        return row

    def feed(self, chunk: str) -> list[Row]:
        """Consume one chunk and return the rows it completed."""
        if self._finalized:
            raise RuntimeError("StreamingCSVParser already finalized; create a new parser")

        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")

        rows = []
        for line in lines:
            row = self._parse_line(line)
            if row is not None:
                rows.append(row)
        return rows

    def finalize(self) -> list[Row]:
        """Flush the trailing partial line, if any. The parser is closed afterwards."""
        if self._finalized:
            raise RuntimeError("StreamingCSVParser already finalized; create a new parser")
        self._finalized = True

        tail, self._buffer = self._buffer, ""
        row = self._parse_line(tail) if tail else None

        logger.debug("csv_stream_finalized", rows=self._row_count, columns=len(self._headers or []))
        return [row] if row is not None else []


# ---------------------------------------------------------------------------
# Lazy helpers
# ---------------------------------------------------------------------------


def iter_csv_rows(chunks: Iterable[str], delimiter: str = ",") -> Iterator[Row]:
    parser = StreamingCSVParser(delimiter)
    for chunk in chunks:
        yield from parser.feed(chunk)
    yield from parser.finalize()


async def aiter_csv_rows(chunks: AsyncIterable[str], delimiter: str = ",") -> AsyncIterator[Row]:
    parser = StreamingCSVParser(delimiter)
    async for chunk in chunks:
        for row in parser.feed(chunk):
            yield row
    for row in parser.finalize():
        yield row
