"""Tests for the loguru sink configuration."""

from __future__ import annotations

import pathlib
from collections.abc import Iterator

import pytest
from loguru import logger

from geoingest.core import logging as app_logging


@pytest.fixture(autouse=True)
def _reset_sinks() -> Iterator[None]:
    yield
    logger.remove()


def test_setup_logging_writes_log_file(tmp_path: pathlib.Path) -> None:
    log_dir = tmp_path / "logs"
    app_logging.setup_logging("debug", str(log_dir))
    logger.info("upload {} accepted", "abc")
    logger.remove()

    content = (log_dir / "geoingest.log").read_text()
    assert "INFO" in content
    assert "upload abc accepted" in content


def test_setup_logging_respects_level(tmp_path: pathlib.Path) -> None:
    app_logging.setup_logging("warning", str(tmp_path))
    logger.info("quiet")
    logger.warning("loud")
    logger.remove()

    content = (tmp_path / "geoingest.log").read_text()
    assert "quiet" not in content
    assert "loud" in content


def test_setup_logging_without_directory(tmp_path: pathlib.Path) -> None:
    app_logging.setup_logging("info", None)
    logger.info("stderr only")
    assert list(tmp_path.iterdir()) == []
