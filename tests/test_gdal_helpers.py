"""Unit tests for utilities in geoingest.utils.gdal_helpers.

This module tests the external command execution helpers:
    - run_command: stdout capture, non-zero exit and start failures
    - run_piped: producer/consumer wiring, environment propagation and
      failure of either side

Monkeypatching is used to avoid actual subprocess execution, ensuring tests
are isolated, fast, and reliable.

See Also:
    - geoingest/utils/gdal_helpers.py for implementation details.
"""

from __future__ import annotations

import io
import subprocess
from typing import Any

import pytest

from geoingest.utils import gdal_helpers


def test_run_command_success(monkeypatch: pytest.MonkeyPatch) -> None:
    """Command with zero return code returns its stdout."""

    def fake_run(
        *args: Any,
        **kwargs: Any,
    ) -> subprocess.CompletedProcess[str]:
        """Mock subprocess.run to return a successful CompletedProcess."""
        return subprocess.CompletedProcess(
            args=[],
            returncode=0,
            stdout="Feature Count: 3\n",
            stderr="",
        )

    monkeypatch.setattr(gdal_helpers.subprocess, "run", fake_run)
    assert gdal_helpers.run_command(["ogrinfo", "x"]) == "Feature Count: 3\n"


def test_run_command_stringifies_arguments(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Any,
) -> None:
    seen: dict[str, Any] = {}

    def fake_run(args: list[str], **kwargs: Any) -> Any:
        seen["args"] = args
        return subprocess.CompletedProcess(args, 0, "", "")

    monkeypatch.setattr(gdal_helpers.subprocess, "run", fake_run)
    gdal_helpers.run_command(["gdalinfo", tmp_path / "dem.tif"])
    assert seen["args"] == ["gdalinfo", str(tmp_path / "dem.tif")]


def test_run_command_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    """Command errors raise CommandError with the stderr message."""

    def fake_run(
        *args: Any,
        **kwargs: Any,
    ) -> subprocess.CompletedProcess[str]:
        return subprocess.CompletedProcess(
            args=[],
            returncode=1,
            stdout="",
            stderr="not recognized as a supported file format",
        )

    monkeypatch.setattr(gdal_helpers.subprocess, "run", fake_run)
    with pytest.raises(gdal_helpers.CommandError, match="supported file") as exc:
        gdal_helpers.run_command(["gdalinfo", "bad.tif"])
    assert exc.value.returncode == 1
    assert exc.value.started


def test_run_command_missing_executable(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def fake_run(*args: Any, **kwargs: Any) -> Any:
        raise FileNotFoundError("ogrinfo")

    monkeypatch.setattr(gdal_helpers.subprocess, "run", fake_run)
    with pytest.raises(gdal_helpers.CommandError, match="Could not run") as exc:
        gdal_helpers.run_command(["ogrinfo"])
    assert not exc.value.started


class FakePopen:
    """Stand-in for the producer process of run_piped."""

    instances: list[FakePopen] = []

    def __init__(self, args: list[str], **kwargs: Any) -> None:
        self.args = args
        self.kwargs = kwargs
        self.stdout = io.BytesIO(b"INSERT ...;")
        self.returncode = 0
        self.killed = False
        FakePopen.instances.append(self)

    def wait(self) -> int:
        return self.returncode

    def kill(self) -> None:
        self.killed = True


@pytest.fixture
def fake_popen(monkeypatch: pytest.MonkeyPatch) -> type[FakePopen]:
    FakePopen.instances = []
    monkeypatch.setattr(gdal_helpers.subprocess, "Popen", FakePopen)
    return FakePopen


def test_run_piped_wires_processes(
    monkeypatch: pytest.MonkeyPatch,
    fake_popen: type[FakePopen],
) -> None:
    seen: dict[str, Any] = {}

    def fake_run(args: list[str], **kwargs: Any) -> Any:
        seen["args"] = args
        seen["stdin"] = kwargs["stdin"]
        seen["env"] = kwargs["env"]
        return subprocess.CompletedProcess(args, 0, "", "")

    monkeypatch.setattr(gdal_helpers.subprocess, "run", fake_run)
    gdal_helpers.run_piped(
        ["shp2pgsql", "-c", "roads.shp", "public.layer_x"],
        ["psql", "-q"],
        env={"PGHOST": "db.test"},
    )
    producer = fake_popen.instances[0]
    assert producer.args == ["shp2pgsql", "-c", "roads.shp", "public.layer_x"]
    assert producer.kwargs["env"]["PGHOST"] == "db.test"
    assert seen["args"] == ["psql", "-q"]
    assert seen["stdin"] is producer.stdout
    assert seen["env"]["PGHOST"] == "db.test"
    assert producer.stdout.closed


def test_run_piped_consumer_failure(
    monkeypatch: pytest.MonkeyPatch,
    fake_popen: type[FakePopen],
) -> None:
    def fake_run(args: list[str], **kwargs: Any) -> Any:
        return subprocess.CompletedProcess(
            args, 3, "", 'relation "layer_x" already exists'
        )

    monkeypatch.setattr(gdal_helpers.subprocess, "run", fake_run)
    with pytest.raises(gdal_helpers.CommandError, match="already exists"):
        gdal_helpers.run_piped(["shp2pgsql"], ["psql"])


def test_run_piped_producer_failure(
    monkeypatch: pytest.MonkeyPatch,
    fake_popen: type[FakePopen],
) -> None:
    def fake_run(args: list[str], **kwargs: Any) -> Any:
        fake_popen.instances[0].returncode = 1
        return subprocess.CompletedProcess(args, 0, "", "")

    monkeypatch.setattr(gdal_helpers.subprocess, "run", fake_run)
    with pytest.raises(gdal_helpers.CommandError, match="shp2pgsql failed"):
        gdal_helpers.run_piped(["shp2pgsql"], ["psql"])


def test_run_piped_consumer_cannot_start(
    monkeypatch: pytest.MonkeyPatch,
    fake_popen: type[FakePopen],
) -> None:
    def fake_run(args: list[str], **kwargs: Any) -> Any:
        raise FileNotFoundError("psql")

    monkeypatch.setattr(gdal_helpers.subprocess, "run", fake_run)
    with pytest.raises(gdal_helpers.CommandError, match="Could not run psql"):
        gdal_helpers.run_piped(["shp2pgsql"], ["psql"])
    assert fake_popen.instances[0].killed
