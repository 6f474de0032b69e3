from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Sequence

from dbkeeper.core.config import get_settings
from dbkeeper.core.errors import (
    ConcurrentDDLError,
    ConfigurationError,
    DbKeeperError,
    InsufficientDiskSpaceError,
    SnapshotError,
    TransientConnectionError,
)
from dbkeeper.domain.types import TargetDescriptor
from dbkeeper.services.process import CommandResult, run_command


logger = logging.getLogger(__name__)

OPTION_FILE_NAME = "client.cnf"

_TRANSIENT_PATTERNS = (
    "can't connect to mysql server",
    "can't connect to local mysql server",
    "lost connection to mysql server",
    "mysql server has gone away",
    "too many connections",
    "unknown mysql server host",
    "connection refused",
)
_TRANSIENT_CODES = {"1040", "2002", "2003", "2005", "2006", "2013"}
_DDL_PATTERNS = (
    "table definition has changed",
    "waiting for table metadata lock",
    "ddl operation",
)
_DDL_CODES = {"1412"}
_DISK_PATTERNS = ("no space left on device", "errcode: 28", "errno: 28", "disk full")
_AUTH_PATTERNS = ("access denied",)
_ERROR_CODE_RE = re.compile(r"(?:error|errno)[\s:]*\(?(\d{4})\)?|\((\d{4})\)", re.IGNORECASE)


def _error_codes(text: str) -> set[str]:
    codes: set[str] = set()
    for match in _ERROR_CODE_RE.finditer(text):
        codes.add(match.group(1) or match.group(2))
    return codes


def classify_tool_failure(tool: str, stderr: str, returncode: int) -> DbKeeperError:
    # Map MySQL tool stderr to the error classes that drive retry/abort decisions.
    text = stderr.lower()
    codes = _error_codes(stderr)
    summary = stderr.strip().splitlines()[-1] if stderr.strip() else f"exit code {returncode}"
    message = f"{tool} failed: {summary}"
    if any(pattern in text for pattern in _DISK_PATTERNS):
        return InsufficientDiskSpaceError(message)
    if any(pattern in text for pattern in _AUTH_PATTERNS):
        return ConfigurationError(message)
    if codes & _DDL_CODES or any(pattern in text for pattern in _DDL_PATTERNS):
        return ConcurrentDDLError(message)
    if codes & _TRANSIENT_CODES or any(pattern in text for pattern in _TRANSIENT_PATTERNS):
        return TransientConnectionError(message)
    return SnapshotError(message)


def _quote_option(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def write_option_file(target: TargetDescriptor, directory: Path) -> Path:
    # Keep credentials off argv by handing tools a private [client] option file.
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / OPTION_FILE_NAME
    lines: list[str] = []
    if target.option_file is not None:
        option_file = Path(target.option_file).expanduser()
        if not option_file.exists():
            raise ConfigurationError(f"option file {option_file} for target {target.name} does not exist")
        lines.append(f"!include {option_file}")
    lines.append("[client]")
    if target.socket:
        lines.append(f"socket={_quote_option(target.socket)}")
    else:
        lines.append(f"host={_quote_option(target.host)}")
        lines.append(f"port={int(target.port)}")
    if target.user:
        lines.append(f"user={_quote_option(target.user)}")
    if target.password:
        lines.append(f"password={_quote_option(target.password)}")
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write("\n".join(lines) + "\n")
    return path


def quote_identifier(name: str) -> str:
    return "`" + name.replace("`", "``") + "`"


def quote_literal(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


class MySQLClient:
    """Thin async wrapper around the `mysql` command line client."""

    def __init__(
        self,
        target: TargetDescriptor,
        option_file: Path | None,
        *,
        mysql_bin: str | None = None,
        command_prefix: Sequence[str] = (),
        extra_args: Sequence[str] = (),
    ) -> None:
        self._target = target
        self._option_file = option_file
        self._mysql_bin = mysql_bin or get_settings().mysql_bin
        # Prefix lets the client run inside a container, e.g. `docker exec -i <name>`.
        self._command_prefix = list(command_prefix)
        self._extra_args = list(extra_args)

    @property
    def target(self) -> TargetDescriptor:
        return self._target

    def _base_args(self) -> list[str]:
        # --defaults-extra-file must come first for the client to honour it.
        args = self._command_prefix + [self._mysql_bin]
        if self._option_file is not None:
            args.append(f"--defaults-extra-file={self._option_file}")
        return args + self._extra_args

    async def _run(self, args: list[str], **kwargs) -> CommandResult:
        result = await run_command(args, **kwargs)
        if not result.ok:
            raise classify_tool_failure("mysql", result.stderr, result.returncode)
        return result

    async def query(self, sql: str, *, database: str | None = None) -> list[list[str]]:
        args = self._base_args()
        if database:
            args.append(f"--database={database}")
        args += ["--batch", "--skip-column-names", "--raw", "-e", sql]
        result = await self._run(args)
        rows: list[list[str]] = []
        for line in result.stdout.decode("utf-8", errors="replace").splitlines():
            if line:
                rows.append(line.split("\t"))
        return rows

    async def ping(self) -> None:
        await self.query("SELECT 1")

    async def estimate_size_bytes(self, database: str) -> int:
        rows = await self.query(
            "SELECT COALESCE(SUM(data_length + index_length), 0) FROM information_schema.tables "
            f"WHERE table_schema = {quote_literal(database)}"
        )
        if not rows or not rows[0]:
            return 0
        try:
            return int(float(rows[0][0]))
        except ValueError:
            return 0

    async def list_tables(self, database: str) -> list[str]:
        rows = await self.query(
            "SELECT table_name FROM information_schema.tables "
            f"WHERE table_schema = {quote_literal(database)} AND table_type = 'BASE TABLE' ORDER BY table_name"
        )
        return [row[0] for row in rows if row]

    async def table_row_counts(self, database: str) -> dict[str, int]:
        # Exact counts; information_schema.table_rows is only an estimate for InnoDB.
        tables = await self.list_tables(database)
        if not tables:
            return {}
        selects = [
            f"SELECT {quote_literal(table)}, COUNT(*) FROM {quote_identifier(database)}.{quote_identifier(table)}"
            for table in tables
        ]
        rows = await self.query(" UNION ALL ".join(selects))
        return {row[0]: int(row[1]) for row in rows if len(row) >= 2}

    async def create_database(self, database: str) -> None:
        await self.query(f"CREATE DATABASE {quote_identifier(database)}")

    async def drop_database(self, database: str) -> None:
        await self.query(f"DROP DATABASE IF EXISTS {quote_identifier(database)}")

    async def load_sql(self, path: Path, *, database: str, gzipped: bool = True) -> None:
        args = self._base_args() + [f"--database={database}"]
        await self._run(args, stdin_path=path, stdin_gzipped=gzipped)
