from __future__ import annotations

import asyncio
import gzip
import logging
import shutil
import tarfile
from pathlib import Path
from typing import Protocol

from dbkeeper.core.config import get_settings
from dbkeeper.core.errors import ConfigurationError, SnapshotConsistencyError
from dbkeeper.domain.types import CaptureResult, ConsistencyMarker, RestoreSource, TargetDescriptor
from dbkeeper.services.dump_inspector import DumpInspector
from dbkeeper.services.mysql_client import MySQLClient, classify_tool_failure
from dbkeeper.services.process import run_command


logger = logging.getLogger(__name__)

LOGICAL_DATA_FILE = "dump.sql.gz"
PHYSICAL_DATA_FILE = "datadir.tar.gz"
XTRABACKUP_BINLOG_INFO = "xtrabackup_binlog_info"


class BackupStrategy(Protocol):
    # Pluggable capture/restore pair; strategies never touch the catalog.
    name: str
    data_filename: str

    async def estimate_size(self, target: TargetDescriptor, option_file: Path) -> int:
        ...

    async def capture(self, target: TargetDescriptor, option_file: Path, output_path: Path) -> CaptureResult:
        ...

    async def prepare_restore(self, data_path: Path, workdir: Path) -> RestoreSource:
        ...


async def _tool_version(binary: str) -> str | None:
    result = await run_command([binary, "--version"])
    if not result.ok:
        return None
    text = (result.stdout.decode("utf-8", errors="replace") or result.stderr).strip()
    return text.splitlines()[0] if text else None


class LogicalDumpStrategy:
    """mysqldump in a single consistent transaction, parsed while streaming to gzip."""

    name = "logical"
    data_filename = LOGICAL_DATA_FILE

    def __init__(self, *, mysqldump_bin: str | None = None, mysql_bin: str | None = None) -> None:
        settings = get_settings()
        self._mysqldump_bin = mysqldump_bin or settings.mysqldump_bin
        self._mysql_bin = mysql_bin or settings.mysql_bin
        self._extra_args = list(settings.mysqldump_extra_args)

    def dump_args(self, target: TargetDescriptor, option_file: Path) -> list[str]:
        # No --databases: the dump carries no USE statement so it restores into any schema.
        return [
            self._mysqldump_bin,
            f"--defaults-extra-file={option_file}",
            "--single-transaction",
            "--source-data=2",
            "--routines",
            "--triggers",
            "--events",
            "--hex-blob",
            "--quick",
            *self._extra_args,
            target.database,
        ]

    async def estimate_size(self, target: TargetDescriptor, option_file: Path) -> int:
        client = MySQLClient(target, option_file, mysql_bin=self._mysql_bin)
        return await client.estimate_size_bytes(target.database)

    async def capture(self, target: TargetDescriptor, option_file: Path, output_path: Path) -> CaptureResult:
        inspector = DumpInspector()
        with gzip.open(output_path, "wb") as handle:

            def _on_chunk(chunk: bytes) -> None:
                inspector.feed(chunk)
                handle.write(chunk)

            result = await run_command(self.dump_args(target, option_file), on_stdout=_on_chunk)
        inspector.close()
        if not result.ok:
            raise classify_tool_failure("mysqldump", result.stderr, result.returncode)
        if not inspector.completed:
            raise SnapshotConsistencyError(f"mysqldump output for {target.name} is truncated (no completion trailer)")
        marker = inspector.marker
        if marker.is_empty():
            # --source-data=2 always writes coordinates; their absence means the header is untrustworthy.
            raise SnapshotConsistencyError(f"mysqldump output for {target.name} carries no binlog coordinates")
        return CaptureResult(
            data_path=output_path,
            marker=marker,
            row_counts=inspector.row_counts,
            tool_version=await _tool_version(self._mysqldump_bin),
        )

    async def prepare_restore(self, data_path: Path, workdir: Path) -> RestoreSource:
        return RestoreSource(kind="sql", path=data_path)


def parse_binlog_info(text: str) -> ConsistencyMarker:
    # Format: <file>\t<position>[\t<gtid set>]; the GTID set may wrap onto following lines.
    stripped = text.strip()
    if not stripped:
        return ConsistencyMarker()
    parts = stripped.split("\t", 2)
    binlog_file = parts[0].strip() or None
    position = int(parts[1]) if len(parts) > 1 and parts[1].strip().isdigit() else None
    gtid = "".join(parts[2].split()) if len(parts) > 2 else ""
    return ConsistencyMarker(binlog_file=binlog_file, binlog_position=position, gtid_set=gtid or None)


def _make_tarball(source_dir: Path, destination: Path) -> None:
    with tarfile.open(destination, "w:gz") as archive:
        archive.add(source_dir, arcname=".")


def _extract_tarball(source: Path, destination: Path) -> None:
    destination.mkdir(parents=True, exist_ok=True)
    with tarfile.open(source, "r:gz") as archive:
        archive.extractall(destination, filter="data")


class PhysicalCopyStrategy:
    """Percona XtraBackup hot copy of the whole instance, tarred into one artifact."""

    name = "physical"
    data_filename = PHYSICAL_DATA_FILE

    def __init__(self, *, xtrabackup_bin: str | None = None, mysql_bin: str | None = None) -> None:
        settings = get_settings()
        self._xtrabackup_bin = xtrabackup_bin or settings.xtrabackup_bin
        self._mysql_bin = mysql_bin or settings.mysql_bin

    async def estimate_size(self, target: TargetDescriptor, option_file: Path) -> int:
        client = MySQLClient(target, option_file, mysql_bin=self._mysql_bin)
        rows = await client.query(
            "SELECT COALESCE(SUM(data_length + index_length), 0) FROM information_schema.tables"
        )
        try:
            return int(float(rows[0][0])) if rows and rows[0] else 0
        except ValueError:
            return 0

    async def capture(self, target: TargetDescriptor, option_file: Path, output_path: Path) -> CaptureResult:
        raw_dir = output_path.parent / "raw"
        shutil.rmtree(raw_dir, ignore_errors=True)
        raw_dir.mkdir(parents=True)
        try:
            result = await run_command(
                [
                    self._xtrabackup_bin,
                    f"--defaults-extra-file={option_file}",
                    "--backup",
                    f"--target-dir={raw_dir}",
                ]
            )
            if not result.ok:
                raise classify_tool_failure("xtrabackup", result.stderr, result.returncode)
            info_path = raw_dir / XTRABACKUP_BINLOG_INFO
            if not info_path.exists():
                raise SnapshotConsistencyError(f"xtrabackup for {target.name} did not record binlog coordinates")
            marker = parse_binlog_info(info_path.read_text(encoding="utf-8"))
            if marker.is_empty():
                raise SnapshotConsistencyError(f"xtrabackup binlog info for {target.name} is empty")
            await asyncio.to_thread(_make_tarball, raw_dir, output_path)
        finally:
            shutil.rmtree(raw_dir, ignore_errors=True)
        return CaptureResult(
            data_path=output_path,
            marker=marker,
            row_counts=None,
            tool_version=await _tool_version(self._xtrabackup_bin),
        )

    async def prepare_restore(self, data_path: Path, workdir: Path) -> RestoreSource:
        datadir = workdir / "datadir"
        await asyncio.to_thread(_extract_tarball, data_path, datadir)
        # Apply the redo log so the directory is a consistent, startable datadir.
        result = await run_command([self._xtrabackup_bin, "--prepare", f"--target-dir={datadir}"])
        if not result.ok:
            raise classify_tool_failure("xtrabackup", result.stderr, result.returncode)
        return RestoreSource(kind="datadir", path=datadir)


_STRATEGIES: dict[str, type] = {
    LogicalDumpStrategy.name: LogicalDumpStrategy,
    PhysicalCopyStrategy.name: PhysicalCopyStrategy,
}


def get_strategy(name: str) -> BackupStrategy:
    strategy_cls = _STRATEGIES.get(name)
    if strategy_cls is None:
        raise ConfigurationError(f"unknown backup strategy {name!r}; expected one of {', '.join(sorted(_STRATEGIES))}")
    return strategy_cls()
