from __future__ import annotations

import asyncio
import logging
import os
import secrets
import tempfile
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncContextManager, AsyncIterator, Protocol
from uuid import uuid4

from dbkeeper.core.config import get_settings
from dbkeeper.core.errors import ConfigurationError, DbKeeperError, EphemeralTargetError
from dbkeeper.domain.types import RestoreSource, TargetDescriptor
from dbkeeper.services.mysql_client import MySQLClient, write_option_file
from dbkeeper.services.process import run_command


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RestoredDatabase:
    # Handle on a restored copy inside an ephemeral target.
    client: MySQLClient
    database: str

    async def row_counts(self) -> dict[str, int]:
        # Counting every table doubles as the "tables are readable" check.
        return await self.client.table_row_counts(self.database)


class EphemeralProvider(Protocol):
    name: str

    def provision(self, source: RestoreSource, *, database: str) -> AsyncContextManager[RestoredDatabase]:
        ...


async def _teardown(label: str, coro) -> None:
    # Shield teardown so a second cancellation cannot leave resources behind.
    try:
        await asyncio.shield(coro)
    except Exception as exc:  # noqa: BLE001 - teardown failures must not mask the verification result
        logger.error("ephemeral_teardown_failed resource=%s error=%s", label, exc)


class ScratchSchemaProvider:
    """Restore logical dumps into a throwaway schema on an existing server."""

    name = "scratch_schema"

    def __init__(self, server: TargetDescriptor | None = None, *, mysql_bin: str | None = None) -> None:
        settings = get_settings()
        self._server = server or TargetDescriptor(
            name="verify-scratch",
            database="mysql",
            host=settings.verify_scratch_host,
            port=settings.verify_scratch_port,
            user=settings.verify_scratch_user,
            password=settings.verify_scratch_password,
        )
        self._mysql_bin = mysql_bin

    @asynccontextmanager
    async def provision(self, source: RestoreSource, *, database: str) -> AsyncIterator[RestoredDatabase]:
        if source.kind != "sql":
            raise EphemeralTargetError("scratch schema provider only restores logical dumps; use the docker provider")
        schema = f"dbkeeper_verify_{uuid4().hex[:12]}"
        with tempfile.TemporaryDirectory(prefix="dbkeeper-verify-") as cred_dir:
            client = MySQLClient(self._server, write_option_file(self._server, Path(cred_dir)), mysql_bin=self._mysql_bin)
            # The drop runs even when CREATE was cancelled mid-flight or half-applied.
            try:
                try:
                    await client.create_database(schema)
                except DbKeeperError as exc:
                    raise EphemeralTargetError(f"could not create scratch schema on {self._server.host}: {exc}") from exc
                logger.info("ephemeral_provisioned provider=%s schema=%s", self.name, schema)
                await client.load_sql(source.path, database=schema, gzipped=source.path.suffix == ".gz")
                yield RestoredDatabase(client=client, database=schema)
            finally:
                await _teardown(schema, client.drop_database(schema))
                logger.info("ephemeral_released provider=%s schema=%s", self.name, schema)


class DockerMySQLProvider:
    """Start a disposable MySQL container and restore into it."""

    name = "docker"

    def __init__(
        self,
        *,
        image: str | None = None,
        docker_bin: str | None = None,
        ready_timeout_s: float | None = None,
        poll_interval_s: float = 2.0,
    ) -> None:
        settings = get_settings()
        self._image = image or settings.verify_docker_image
        self._docker_bin = docker_bin or settings.docker_bin
        self._ready_timeout_s = ready_timeout_s if ready_timeout_s is not None else settings.verify_ready_timeout_s
        self._poll_interval_s = poll_interval_s

    def run_args(self, container: str, source: RestoreSource, password: str) -> list[str]:
        args = [self._docker_bin, "run", "-d", "--rm", "--name", container]
        if source.kind == "datadir":
            # Prepared xtrabackup directories keep the source's grants; skip them instead of guessing credentials.
            args += [
                "--user",
                f"{os.getuid()}:{os.getgid()}",
                "-v",
                f"{source.path}:/var/lib/mysql",
                self._image,
                "--skip-grant-tables",
            ]
        else:
            args += ["-e", f"MYSQL_ROOT_PASSWORD={password}", self._image]
        return args

    def client_for(self, container: str, source: RestoreSource, password: str, database: str) -> MySQLClient:
        if source.kind == "datadir":
            prefix = [self._docker_bin, "exec", "-i", container]
            extra = ["-uroot"]
        else:
            prefix = [self._docker_bin, "exec", "-i", "-e", f"MYSQL_PWD={password}", container]
            # TCP only answers once the image's init phase has restarted the real server.
            extra = ["-uroot", "-h127.0.0.1", "--protocol=TCP"]
        target = TargetDescriptor(name=container, database=database)
        return MySQLClient(target, None, mysql_bin="mysql", command_prefix=prefix, extra_args=extra)

    async def _wait_ready(self, client: MySQLClient, container: str) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._ready_timeout_s
        last_error: Exception | None = None
        while loop.time() < deadline:
            try:
                await client.ping()
                return
            except DbKeeperError as exc:
                last_error = exc
            await asyncio.sleep(self._poll_interval_s)
        raise EphemeralTargetError(
            f"container {container} not ready after {self._ready_timeout_s}s: {last_error}"
        )

    @asynccontextmanager
    async def provision(self, source: RestoreSource, *, database: str) -> AsyncIterator[RestoredDatabase]:
        container = f"dbkeeper-verify-{uuid4().hex[:12]}"
        password = secrets.token_urlsafe(18)
        # The name is fixed before `docker run`, so `rm -f` can reap a container whose start was interrupted.
        try:
            result = await run_command(self.run_args(container, source, password))
            if not result.ok:
                raise EphemeralTargetError(f"docker run failed: {result.stderr.strip()}")
            logger.info("ephemeral_provisioned provider=%s container=%s image=%s", self.name, container, self._image)
            client = self.client_for(container, source, password, database)
            await self._wait_ready(client, container)
            if source.kind == "sql":
                await client.create_database(database)
                await client.load_sql(source.path, database=database, gzipped=source.path.suffix == ".gz")
            yield RestoredDatabase(client=client, database=database)
        finally:
            await _teardown(container, run_command([self._docker_bin, "rm", "-f", container]))
            logger.info("ephemeral_released provider=%s container=%s", self.name, container)


def get_provider(name: str | None = None) -> EphemeralProvider:
    resolved = name or get_settings().verify_provider
    if resolved == DockerMySQLProvider.name:
        return DockerMySQLProvider()
    if resolved == ScratchSchemaProvider.name:
        return ScratchSchemaProvider()
    raise ConfigurationError(f"unknown verification provider {resolved!r}")
