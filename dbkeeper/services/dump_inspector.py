"""Streaming inspection of mysqldump output.

Logical snapshots are parsed while they are written so the artifact carries
the replication coordinates from the dump header and exact per-table row
counts without a second pass over the (possibly huge) file.
"""
from __future__ import annotations

import re

from dbkeeper.domain.types import ConsistencyMarker


_INSERT_PREFIX = b"INSERT INTO `"
_CREATE_PREFIX = b"CREATE TABLE `"
_VALUES_MARKER = b" VALUES "
_DUMP_COMPLETED = b"-- Dump completed"
_TABLE_NAME_RE = re.compile(rb"^(?:INSERT INTO|CREATE TABLE) `((?:[^`]|``)+)`")
_TUPLE_TOKEN_RE = re.compile(rb"\\.|['()]", re.DOTALL)
_BINLOG_RE = re.compile(
    r"CHANGE (?:MASTER|REPLICATION SOURCE) TO (?:MASTER|SOURCE)_LOG_FILE='([^']+)',\s*"
    r"(?:MASTER|SOURCE)_LOG_POS=(\d+)"
)
_GTID_RE = re.compile(r"GTID_PURGED=(?:/\*!\d+\s*'\+'\s*\*/\s*)?'(.*)$")


def count_value_tuples(values: bytes) -> int:
    """Count top-level ``(...)`` groups in the VALUES part of an INSERT."""
    count = 0
    depth = 0
    in_string = False
    for match in _TUPLE_TOKEN_RE.finditer(values):
        token = match.group()
        if token[:1] == b"\\":
            continue
        if token == b"'":
            in_string = not in_string
            continue
        if in_string:
            continue
        if token == b"(":
            if depth == 0:
                count += 1
            depth += 1
        elif depth > 0:
            depth -= 1
    return count


def _table_name(line: bytes) -> str | None:
    match = _TABLE_NAME_RE.match(line)
    if match is None:
        return None
    return match.group(1).replace(b"``", b"`").decode("utf-8", errors="replace")


class DumpInspector:
    def __init__(self) -> None:
        self._pending = b""
        self._row_counts: dict[str, int] = {}
        self._binlog_file: str | None = None
        self._binlog_position: int | None = None
        self._gtid_parts: list[str] | None = None
        self._gtid_set: str | None = None
        self._completed = False

    @property
    def row_counts(self) -> dict[str, int]:
        return dict(self._row_counts)

    @property
    def completed(self) -> bool:
        # mysqldump writes its trailer only after a clean exit.
        return self._completed

    @property
    def marker(self) -> ConsistencyMarker:
        return ConsistencyMarker(
            binlog_file=self._binlog_file,
            binlog_position=self._binlog_position,
            gtid_set=self._gtid_set,
        )

    def feed(self, chunk: bytes) -> None:
        data = self._pending + chunk
        lines = data.split(b"\n")
        self._pending = lines.pop()
        for line in lines:
            self._inspect_line(line)

    def close(self) -> None:
        if self._pending:
            self._inspect_line(self._pending)
            self._pending = b""

    def _inspect_line(self, line: bytes) -> None:
        if line.startswith(_INSERT_PREFIX):
            table = _table_name(line)
            values_at = line.find(_VALUES_MARKER)
            if table is not None and values_at >= 0:
                self._row_counts[table] = self._row_counts.get(table, 0) + count_value_tuples(
                    line[values_at + len(_VALUES_MARKER):]
                )
            return
        if self._gtid_parts is not None:
            self._continue_gtid(line.decode("utf-8", errors="replace"))
            return
        if line.startswith(_CREATE_PREFIX):
            table = _table_name(line)
            if table is not None:
                self._row_counts.setdefault(table, 0)
            return
        if line.startswith(_DUMP_COMPLETED):
            self._completed = True
            return
        if b"GTID_PURGED=" in line:
            text = line.decode("utf-8", errors="replace")
            match = _GTID_RE.search(text)
            if match is not None:
                self._gtid_parts = []
                self._continue_gtid(match.group(1))
            return
        if b"_LOG_FILE=" in line:
            match = _BINLOG_RE.search(line.decode("utf-8", errors="replace"))
            if match is not None and self._binlog_file is None:
                self._binlog_file = match.group(1)
                self._binlog_position = int(match.group(2))

    def _continue_gtid(self, text: str) -> None:
        # GTID sets with many server UUIDs span several lines until the closing quote.
        assert self._gtid_parts is not None
        end = text.find("'")
        if end < 0:
            self._gtid_parts.append(text.strip())
            return
        self._gtid_parts.append(text[:end].strip())
        self._gtid_set = "".join(self._gtid_parts) or None
        self._gtid_parts = None
