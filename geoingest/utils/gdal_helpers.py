"""Execution wrappers for GDAL/OGR and PostGIS command-line utilities.

This module runs the external tools the pipelines depend on (ogrinfo,
gdalinfo, shp2pgsql, psql) as subprocesses. Every helper blocks until the
process exits; callers running inside the event loop hand them to
``asyncio.to_thread``. No timeout is applied.

A process that cannot be started or that exits with a non-zero status
raises CommandError carrying its stderr output.

Example:
    Capture a tool report:
        >>> from geoingest.utils.gdal_helpers import run_command
        >>> report = run_command(["gdalinfo", "elevation.tif"])

    Stream a load script into psql:
        >>> run_piped(
        ...     ["shp2pgsql", "-c", "-s", "4326", "-I", "roads.shp",
        ...      "public.layer_abc"],
        ...     ["psql", "-q", "-v", "ON_ERROR_STOP=1"],
        ...     env={"PGHOST": "localhost", "PGDATABASE": "gis"},
        ... )
"""

from __future__ import annotations

import os
import subprocess
import tempfile
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Iterable, Mapping


class CommandError(RuntimeError):
    """Exception raised when an external command fails.

    Raised when the executable cannot be started or exits with a non-zero
    status code. The message is the command's stderr output.

    Attributes:
        returncode: Exit status of the failed process, or None when it
            could not be started at all.
    """

    def __init__(self, message: str, returncode: int | None = None) -> None:
        super().__init__(message)
        self.returncode = returncode

    @property
    def started(self) -> bool:
        return self.returncode is not None


def run_command(
    command: Iterable[str | pathlib.Path],
    workdir: pathlib.Path | None = None,
) -> str:
    """Execute a command and return its standard output.

    Args:
        command: Iterable arguments to execute (e.g., ["ogrinfo", ...]).
        workdir: Optional working directory for the command execution.

    Returns:
        Everything the command wrote to stdout.

    Raises:
        CommandError: if the command cannot be started or exits with a
            non-zero status code.
    """
    args = [str(arg) for arg in command]
    try:
        result = subprocess.run(
            args,
            cwd=workdir,
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as exc:
        raise CommandError(f"Could not run {args[0]}: {exc}") from exc
    if result.returncode != 0:
        raise CommandError(
            result.stderr.strip() or "Unknown command failure",
            result.returncode,
        )
    return result.stdout


def run_piped(
    producer: Iterable[str | pathlib.Path],
    consumer: Iterable[str | pathlib.Path],
    env: Mapping[str, str] | None = None,
) -> None:
    """Pipe the stdout of ``producer`` into the stdin of ``consumer``.

    Both processes inherit the current environment extended with ``env``.
    The producer's stderr is spooled to a temporary file so a chatty
    producer cannot stall on a full pipe.

    Args:
        producer: Arguments of the command generating the stream.
        consumer: Arguments of the command reading the stream.
        env: Extra environment variables for both processes.

    Raises:
        CommandError: if either command cannot be started or either exits
            with a non-zero status code.
    """
    producer_args = [str(arg) for arg in producer]
    consumer_args = [str(arg) for arg in consumer]
    process_env = {**os.environ, **(env or {})}
    with tempfile.TemporaryFile() as producer_stderr:
        try:
            source = subprocess.Popen(
                producer_args,
                stdout=subprocess.PIPE,
                stderr=producer_stderr,
                env=process_env,
            )
        except OSError as exc:
            raise CommandError(
                f"Could not run {producer_args[0]}: {exc}"
            ) from exc

        try:
            sink = subprocess.run(
                consumer_args,
                stdin=source.stdout,
                capture_output=True,
                text=True,
                env=process_env,
                check=False,
            )
        except OSError as exc:
            source.kill()
            raise CommandError(
                f"Could not run {consumer_args[0]}: {exc}"
            ) from exc
        finally:
            if source.stdout is not None:
                source.stdout.close()
            returncode = source.wait()

        if returncode != 0:
            producer_stderr.seek(0)
            message = producer_stderr.read().decode(errors="replace")
            raise CommandError(
                message.strip() or f"{producer_args[0]} failed",
                returncode,
            )

    if sink.returncode != 0:
        raise CommandError(
            sink.stderr.strip() or f"{consumer_args[0]} failed",
            sink.returncode,
        )
