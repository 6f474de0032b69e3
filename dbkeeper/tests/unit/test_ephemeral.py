from __future__ import annotations

import asyncio
import re
from pathlib import Path

import pytest

from dbkeeper.core.errors import EphemeralTargetError
from dbkeeper.domain.types import RestoreSource, TargetDescriptor
from dbkeeper.services.ephemeral import DockerMySQLProvider, ScratchSchemaProvider


def _fake_tool(tmp_path: Path, name: str, body: str) -> tuple[Path, Path]:
    # Shell stand-in that records every argv before running `body`.
    log = tmp_path / f"{name}.log"
    script = tmp_path / name
    script.write_text(f'#!/bin/sh\nprintf "%s\\n" "$*" >> "{log}"\n{body}\nexit 0\n', encoding="utf-8")
    script.chmod(0o755)
    return script, log


def _lines(log: Path) -> list[str]:
    return log.read_text(encoding="utf-8").splitlines() if log.exists() else []


async def _wait_for(log: Path, needle: str) -> None:
    for _ in range(500):
        if any(needle in line for line in _lines(log)):
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"{needle!r} never reached {log}")


async def _enter(provider, source: RestoreSource) -> None:
    async with provider.provision(source, database="orders"):
        pass


def _sql_source(tmp_path: Path) -> RestoreSource:
    dump = tmp_path / "dump.sql"
    dump.write_text("CREATE TABLE t (id INT);\n", encoding="utf-8")
    return RestoreSource(kind="sql", path=dump)


def _container_from_run(log: Path) -> str:
    run_line = next(line for line in _lines(log) if line.startswith("run "))
    return re.search(r"--name (\S+)", run_line).group(1)


@pytest.mark.asyncio
async def test_docker_container_removed_when_cancelled_during_start(tmp_path: Path) -> None:
    docker, log = _fake_tool(tmp_path, "docker", 'case "$1" in run) exec sleep 30;; esac')
    provider = DockerMySQLProvider(docker_bin=str(docker), poll_interval_s=0.01)

    task = asyncio.create_task(_enter(provider, _sql_source(tmp_path)))
    await _wait_for(log, "run ")
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    container = _container_from_run(log)
    assert f"rm -f {container}" in _lines(log)


@pytest.mark.asyncio
async def test_docker_container_removed_when_run_fails(tmp_path: Path) -> None:
    docker, log = _fake_tool(tmp_path, "docker", 'case "$1" in run) echo "port is already allocated" >&2; exit 125;; esac')
    provider = DockerMySQLProvider(docker_bin=str(docker), poll_interval_s=0.01)

    with pytest.raises(EphemeralTargetError, match="port is already allocated"):
        await _enter(provider, _sql_source(tmp_path))

    container = _container_from_run(log)
    assert _lines(log)[-1] == f"rm -f {container}"


def _scratch(mysql: Path) -> ScratchSchemaProvider:
    return ScratchSchemaProvider(server=TargetDescriptor(name="scratch", database="mysql"), mysql_bin=str(mysql))


def _created_schema(log: Path) -> str:
    create_line = next(line for line in _lines(log) if "CREATE DATABASE" in line)
    return re.search(r"`(dbkeeper_verify_[0-9a-f]+)`", create_line).group(1)


@pytest.mark.asyncio
async def test_scratch_schema_dropped_when_cancelled_during_create(tmp_path: Path) -> None:
    mysql, log = _fake_tool(tmp_path, "mysql", 'case "$*" in *"CREATE DATABASE"*) exec sleep 30;; esac')

    task = asyncio.create_task(_enter(_scratch(mysql), _sql_source(tmp_path)))
    await _wait_for(log, "CREATE DATABASE")
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    schema = _created_schema(log)
    assert any(line.endswith(f"DROP DATABASE IF EXISTS `{schema}`") for line in _lines(log))


@pytest.mark.asyncio
async def test_scratch_schema_dropped_when_create_fails(tmp_path: Path) -> None:
    mysql, log = _fake_tool(
        tmp_path,
        "mysql",
        'case "$*" in *"CREATE DATABASE"*) echo "ERROR 2013 (HY000): Lost connection to MySQL server" >&2; exit 1;; esac',
    )

    with pytest.raises(EphemeralTargetError, match="could not create scratch schema"):
        await _enter(_scratch(mysql), _sql_source(tmp_path))

    schema = _created_schema(log)
    assert _lines(log)[-1].endswith(f"DROP DATABASE IF EXISTS `{schema}`")
