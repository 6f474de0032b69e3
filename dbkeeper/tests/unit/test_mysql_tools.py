from __future__ import annotations

import stat
from pathlib import Path

import pytest

from dbkeeper.core.errors import (
    ConcurrentDDLError,
    ConfigurationError,
    EphemeralTargetError,
    InsufficientDiskSpaceError,
    SnapshotError,
    TransientConnectionError,
)
from dbkeeper.domain.types import RestoreSource, TargetDescriptor
from dbkeeper.services.ephemeral import DockerMySQLProvider, ScratchSchemaProvider, get_provider
from dbkeeper.services.mysql_client import (
    MySQLClient,
    classify_tool_failure,
    quote_identifier,
    quote_literal,
    write_option_file,
)
from dbkeeper.services.strategies import LogicalDumpStrategy, PhysicalCopyStrategy, get_strategy


@pytest.mark.parametrize(
    ("stderr", "expected"),
    [
        ("mysqldump: Got error: 2013: Lost connection to MySQL server during query when dumping table", TransientConnectionError),
        ("mysqldump: Got error: 2003: Can't connect to MySQL server on 'db' (111)", TransientConnectionError),
        ("mysqldump: Error 1412: Table definition has changed, please retry transaction", ConcurrentDDLError),
        ("mysqldump: Couldn't write: No space left on device (Errcode: 28)", InsufficientDiskSpaceError),
        ("mysqldump: Got error: 1045: Access denied for user 'backup'@'10.0.0.5'", ConfigurationError),
        ("mysqldump: Got error: 1049: Unknown database 'nope'", SnapshotError),
        ("", SnapshotError),
    ],
)
def test_classify_tool_failure(stderr: str, expected: type) -> None:
    error = classify_tool_failure("mysqldump", stderr, 2)
    assert type(error) is expected
    assert str(error).startswith("mysqldump failed:")


def test_option_file_keeps_credentials_private(tmp_path: Path) -> None:
    target = TargetDescriptor(name="orders", database="orders", host="db", port=3307, user="backup", password='p"w\\d')
    path = write_option_file(target, tmp_path)
    assert stat.S_IMODE(path.stat().st_mode) == 0o600
    assert path.read_text(encoding="utf-8").splitlines() == [
        "[client]",
        'host="db"',
        "port=3307",
        'user="backup"',
        'password="p\\"w\\\\d"',
    ]


def test_option_file_includes_operator_file(tmp_path: Path) -> None:
    extra = tmp_path / "my.cnf"
    extra.write_text("[client]\npassword=x\n", encoding="utf-8")
    target = TargetDescriptor(name="orders", database="orders", option_file=extra, socket="/run/mysqld.sock")
    lines = write_option_file(target, tmp_path / "cred").read_text(encoding="utf-8").splitlines()
    assert lines == [f"!include {extra}", "[client]", 'socket="/run/mysqld.sock"']

    missing = TargetDescriptor(name="orders", database="orders", option_file=tmp_path / "absent.cnf")
    with pytest.raises(ConfigurationError):
        write_option_file(missing, tmp_path / "cred2")


def test_quoting() -> None:
    assert quote_identifier("we`ird") == "`we``ird`"
    assert quote_literal("it's") == "'it\\'s'"


def test_logical_dump_arguments(tmp_path: Path) -> None:
    strategy = LogicalDumpStrategy(mysqldump_bin="/usr/bin/mysqldump")
    target = TargetDescriptor(name="orders", database="orders_db")
    args = strategy.dump_args(target, tmp_path / "client.cnf")
    assert args[0] == "/usr/bin/mysqldump"
    assert args[1] == f"--defaults-extra-file={tmp_path / 'client.cnf'}"
    assert "--single-transaction" in args
    assert "--source-data=2" in args
    assert args[-1] == "orders_db"
    assert "--databases" not in args


def test_strategy_registry() -> None:
    assert isinstance(get_strategy("logical"), LogicalDumpStrategy)
    assert isinstance(get_strategy("physical"), PhysicalCopyStrategy)
    with pytest.raises(ConfigurationError):
        get_strategy("zfs")


def test_docker_provider_arguments(tmp_path: Path) -> None:
    provider = DockerMySQLProvider(image="mysql:8.0", docker_bin="docker")
    sql = RestoreSource(kind="sql", path=tmp_path / "dump.sql.gz")
    args = provider.run_args("c1", sql, "pw")
    assert args[:6] == ["docker", "run", "-d", "--rm", "--name", "c1"]
    assert "MYSQL_ROOT_PASSWORD=pw" in args
    assert args[-1] == "mysql:8.0"

    datadir = RestoreSource(kind="datadir", path=tmp_path / "datadir")
    args = provider.run_args("c2", datadir, "pw")
    assert f"{tmp_path / 'datadir'}:/var/lib/mysql" in args
    assert args[-2:] == ["mysql:8.0", "--skip-grant-tables"]
    assert not any(arg.startswith("MYSQL_ROOT_PASSWORD") for arg in args)


def test_docker_client_runs_inside_container(tmp_path: Path) -> None:
    provider = DockerMySQLProvider(docker_bin="docker")
    client = provider.client_for("c1", RestoreSource(kind="sql", path=tmp_path / "x"), "pw", "orders_db")
    assert isinstance(client, MySQLClient)
    assert client._base_args() == [
        "docker", "exec", "-i", "-e", "MYSQL_PWD=pw", "c1", "mysql", "-uroot", "-h127.0.0.1", "--protocol=TCP",
    ]


@pytest.mark.asyncio
async def test_scratch_provider_only_restores_logical_dumps(tmp_path: Path) -> None:
    provider = ScratchSchemaProvider()
    with pytest.raises(EphemeralTargetError):
        async with provider.provision(RestoreSource(kind="datadir", path=tmp_path), database="orders"):
            pass


def test_provider_registry() -> None:
    assert isinstance(get_provider("docker"), DockerMySQLProvider)
    assert isinstance(get_provider("scratch_schema"), ScratchSchemaProvider)
    with pytest.raises(ConfigurationError):
        get_provider("kubernetes")
