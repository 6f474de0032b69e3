from __future__ import annotations

import asyncio
import gzip
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Sequence

from dbkeeper.core.errors import ConfigurationError


logger = logging.getLogger(__name__)

_CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: bytes
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def _pump_stdout(
    stream: asyncio.StreamReader,
    on_chunk: Callable[[bytes], None] | None,
    buffer: bytearray,
) -> None:
    while True:
        chunk = await stream.read(_CHUNK_SIZE)
        if not chunk:
            return
        if on_chunk is not None:
            on_chunk(chunk)
        else:
            buffer.extend(chunk)


async def _feed_stdin(writer: asyncio.StreamWriter, source: Path, *, gzipped: bool) -> None:
    opener = gzip.open if gzipped else open
    try:
        with opener(source, "rb") as handle:
            for chunk in iter(lambda: handle.read(_CHUNK_SIZE), b""):
                writer.write(chunk)
                await writer.drain()
    except (BrokenPipeError, ConnectionResetError):
        # The tool exited early; its stderr explains why.
        return
    finally:
        writer.close()


async def run_command(
    args: Sequence[str],
    *,
    on_stdout: Callable[[bytes], None] | None = None,
    stdin_path: Path | None = None,
    stdin_gzipped: bool = False,
) -> CommandResult:
    # Run an external tool, streaming stdout; the child is killed if the caller is cancelled.
    logger.debug("command_start argv0=%s", args[0])
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.PIPE if stdin_path is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise ConfigurationError(f"{args[0]} not found; install it or set its *_bin setting") from exc

    stdout_buffer = bytearray()
    try:
        assert proc.stdout is not None and proc.stderr is not None
        jobs = [
            _pump_stdout(proc.stdout, on_stdout, stdout_buffer),
            proc.stderr.read(),
        ]
        if stdin_path is not None:
            assert proc.stdin is not None
            jobs.append(_feed_stdin(proc.stdin, stdin_path, gzipped=stdin_gzipped))
        results = await asyncio.gather(*jobs)
        returncode = await proc.wait()
    except BaseException:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        raise
    stderr = results[1].decode("utf-8", errors="ignore")
    return CommandResult(returncode=returncode, stdout=bytes(stdout_buffer), stderr=stderr)
