"""Tests for the upload and catalog repositories.

This module covers:
- InMemoryUploadRepository: snapshots, ordering, monotonic status updates,
  result recording and catalog linking.
- InMemoryCatalogRepository: id assignment, one layer per upload, lookup
  and deletion.
- PostgresUploadRepository / PostgresCatalogRepository: row conversion and
  the status-update transaction, driven through a fake psycopg2
  connection.

All tests are self-contained and do not require a running database.
"""

from __future__ import annotations

import dataclasses
import datetime
from typing import Any

import pytest

from geoingest.core import config
from geoingest.db import database
from geoingest.db import models as db_models

Status = db_models.UploadStatus


def _record(upload_id: str = "u-1", **overrides: Any) -> db_models.UploadRecord:
    values: dict[str, Any] = {
        "id": upload_id,
        "original_filename": "roads.zip",
        "temp_path": f"/tmp/{upload_id}.zip",
        "kind": db_models.UploadKind.VECTOR_ARCHIVE,
    }
    values.update(overrides)
    return db_models.UploadRecord(**values)


def _entry(upload_id: str = "u-1") -> db_models.CatalogLayerEntry:
    return db_models.CatalogLayerEntry(
        id=None,
        upload_id=upload_id,
        name="layer_u1",
        title="roads",
        description="Uploaded vector-archive: roads.zip",
        type="wms",
        tile_kind="vector",
        access_url="https://maps.example.org/geoserver/spectra/wms?",
        source_layer_name="layer_u1",
        workspace="spectra",
        store="postgis",
        metadata={"feature_count": 3},
    )


def test_in_memory_add_and_get() -> None:
    repo = database.InMemoryUploadRepository()
    repo.add(_record())
    found = repo.get("u-1")
    assert found is not None
    assert found.status is Status.PENDING
    assert repo.get("missing") is None


def test_in_memory_reads_are_snapshots() -> None:
    """A record read earlier does not change when the upload progresses."""
    repo = database.InMemoryUploadRepository()
    repo.add(_record())
    before = repo.get("u-1")
    repo.update_status("u-1", Status.PROCESSING)
    assert before is not None
    assert before.status is Status.PENDING
    after = repo.get("u-1")
    assert after is not None
    assert after.status is Status.PROCESSING


def test_in_memory_all_newest_first() -> None:
    repo = database.InMemoryUploadRepository()
    base = datetime.datetime(2024, 1, 1, tzinfo=datetime.UTC)
    for offset in range(3):
        repo.add(
            _record(
                f"u-{offset}",
                created_at=base + datetime.timedelta(minutes=offset),
            )
        )
    assert [record.id for record in repo.all()] == ["u-2", "u-1", "u-0"]


def test_in_memory_all_is_limited() -> None:
    repo = database.InMemoryUploadRepository()
    for index in range(database.RECENT_UPLOADS_LIMIT + 5):
        repo.add(_record(f"u-{index}"))
    assert len(list(repo.all())) == database.RECENT_UPLOADS_LIMIT


def test_in_memory_status_is_monotonic() -> None:
    repo = database.InMemoryUploadRepository()
    repo.add(_record())
    repo.update_status("u-1", Status.PROCESSING)
    repo.update_status("u-1", Status.COMPLETED)
    with pytest.raises(ValueError, match="cannot move"):
        repo.update_status("u-1", Status.PROCESSING)
    with pytest.raises(ValueError):
        repo.update_status("u-1", Status.FAILED, error_message="late")
    record = repo.get("u-1")
    assert record is not None
    assert record.status is Status.COMPLETED
    assert record.error_message is None


def test_in_memory_failure_stores_message() -> None:
    repo = database.InMemoryUploadRepository()
    repo.add(_record())
    failed = repo.update_status("u-1", Status.FAILED, error_message="bad zip")
    assert failed.status is Status.FAILED
    assert failed.error_message == "bad zip"


def test_in_memory_unknown_upload_raises() -> None:
    repo = database.InMemoryUploadRepository()
    with pytest.raises(KeyError):
        repo.update_status("missing", Status.PROCESSING)


def test_in_memory_record_result_and_links() -> None:
    repo = database.InMemoryUploadRepository()
    repo.add(_record())
    target = db_models.PublishTarget("spectra", "postgis", "layer_u1")
    metadata = db_models.VectorMetadata(feature_count=3, srid=4326)
    updated = repo.record_result(
        "u-1", target, metadata, table_name="layer_u1"
    )
    assert updated.workspace == "spectra"
    assert updated.store == "postgis"
    assert updated.layer_name == "layer_u1"
    assert updated.table_name == "layer_u1"
    assert updated.metadata == metadata

    repo.link_catalog_layer("u-1", "layer-1")
    linked = repo.get("u-1")
    assert linked is not None
    assert linked.catalog_layer_id == "layer-1"

    repo.unlink_catalog_layer("layer-1")
    unlinked = repo.get("u-1")
    assert unlinked is not None
    assert unlinked.catalog_layer_id is None


def test_in_memory_catalog_assigns_id() -> None:
    repo = database.InMemoryCatalogRepository()
    stored = repo.add(_entry())
    assert stored.id is not None
    assert repo.get(stored.id) == stored
    assert repo.get_by_upload("u-1") == stored
    assert list(repo.all()) == [stored]


def test_in_memory_catalog_one_layer_per_upload() -> None:
    repo = database.InMemoryCatalogRepository()
    repo.add(_entry())
    with pytest.raises(ValueError, match="already has a catalog layer"):
        repo.add(_entry())


def test_in_memory_catalog_delete() -> None:
    repo = database.InMemoryCatalogRepository()
    stored = repo.add(_entry())
    assert stored.id is not None
    assert repo.delete(stored.id) is True
    assert repo.delete(stored.id) is False
    assert repo.get(stored.id) is None


class FakeCursor:
    """Cursor returning scripted rows and recording executed statements."""

    def __init__(self, rows: list[Any]) -> None:
        self.rows = rows
        self.executed: list[tuple[Any, Any]] = []
        self.rowcount = 0

    def __enter__(self) -> FakeCursor:
        return self

    def __exit__(self, *exc_info: object) -> None:
        return None

    def execute(self, query: Any, params: Any = None) -> None:
        self.executed.append((query, params))

    def fetchone(self) -> Any:
        return self.rows.pop(0) if self.rows else None

    def fetchall(self) -> list[Any]:
        rows, self.rows = self.rows, []
        return rows


class FakeConn:
    """Connection handing out one shared FakeCursor."""

    def __init__(self, cursor: FakeCursor) -> None:
        self.cursor_obj = cursor
        self.commits = 0
        self.closed = 0

    def __enter__(self) -> FakeConn:
        return self

    def __exit__(self, *exc_info: object) -> None:
        return None

    def cursor(self, cursor_factory: Any = None) -> FakeCursor:
        return self.cursor_obj

    def commit(self) -> None:
        self.commits += 1

    def close(self) -> None:
        self.closed += 1


@pytest.fixture
def fake_cursor(monkeypatch: pytest.MonkeyPatch) -> FakeCursor:
    cursor = FakeCursor([])
    conn = FakeConn(cursor)
    monkeypatch.setattr(database, "get_connection", lambda settings: conn)
    return cursor


def _upload_row(**overrides: Any) -> dict[str, Any]:
    row: dict[str, Any] = {
        "id": "u-1",
        "original_filename": "dem.tif",
        "temp_path": "/tmp/u-1.tif",
        "kind": "raster",
        "status": "processing",
        "error_message": None,
        "workspace": None,
        "store": None,
        "layer_name": None,
        "table_name": None,
        "file_path": None,
        "metadata": None,
        "catalog_layer_id": None,
        "created_at": datetime.datetime(2024, 1, 1, tzinfo=datetime.UTC),
        "updated_at": datetime.datetime(2024, 1, 1, tzinfo=datetime.UTC),
    }
    row.update(overrides)
    return row


def test_postgres_repository_creates_table(fake_cursor: FakeCursor) -> None:
    database.PostgresUploadRepository(config.Settings())
    assert "CREATE TABLE IF NOT EXISTS uploads" in fake_cursor.executed[0][0]


def test_postgres_repository_closes_connections(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    conn = FakeConn(FakeCursor([]))
    monkeypatch.setattr(database, "get_connection", lambda settings: conn)
    repo = database.PostgresUploadRepository(config.Settings())
    conn.cursor_obj.rows = [_upload_row()]
    assert repo.get("u-1") is not None
    assert conn.closed == 2


def test_postgres_update_status_checks_transition(
    fake_cursor: FakeCursor,
) -> None:
    repo = database.PostgresUploadRepository(config.Settings())
    fake_cursor.rows = [{"status": "completed"}]
    with pytest.raises(ValueError):
        repo.update_status("u-1", Status.PROCESSING)
    assert not any(
        q.lstrip().startswith("UPDATE") for q, _ in fake_cursor.executed
    )


def test_postgres_update_status_writes(fake_cursor: FakeCursor) -> None:
    repo = database.PostgresUploadRepository(config.Settings())
    fake_cursor.rows = [
        {"status": "processing"},
        _upload_row(status="failed", error_message="boom"),
    ]
    updated = repo.update_status("u-1", Status.FAILED, error_message="boom")
    assert updated.status is Status.FAILED
    assert updated.error_message == "boom"
    assert "FOR UPDATE" in fake_cursor.executed[-2][0]
    assert fake_cursor.executed[-1][1] == ("failed", "boom", "u-1")


def test_postgres_update_status_unknown_upload(
    fake_cursor: FakeCursor,
) -> None:
    repo = database.PostgresUploadRepository(config.Settings())
    with pytest.raises(KeyError):
        repo.update_status("missing", Status.PROCESSING)


def test_postgres_upload_to_row() -> None:
    record = _record(
        metadata=db_models.VectorMetadata(feature_count=3),
        status=Status.COMPLETED,
    )
    row = database.PostgresUploadRepository._to_row(record)
    assert row["kind"] == "vector-archive"
    assert row["status"] == "completed"
    assert row["metadata"].adapted == {
        "geometry_type": None,
        "feature_count": 3,
        "srid": None,
        "extent": None,
    }


def test_postgres_upload_from_row_rebuilds_metadata() -> None:
    row = _upload_row(
        status="completed",
        store="store_u1",
        metadata={
            "size": {"width": 512, "height": 256},
            "srid": 32633,
            "bands": [{"number": 1, "type": "Float32"}],
        },
    )
    record = database.PostgresUploadRepository._from_row(row)
    assert record.kind is db_models.UploadKind.RASTER
    assert record.status is Status.COMPLETED
    assert record.store == "store_u1"
    assert isinstance(record.metadata, db_models.RasterMetadata)
    assert record.metadata.size == db_models.RasterSize(512, 256)
    assert record.metadata.srid == 32633
    assert record.metadata.bands == (db_models.Band(1, "Float32"),)


def test_postgres_catalog_round_trip_row() -> None:
    stored = dataclasses.replace(_entry(), id="l-1")
    row = database.PostgresCatalogRepository._to_row(stored)
    assert row["metadata"].adapted == {"feature_count": 3}
    row["metadata"] = {"feature_count": 3}
    rebuilt = database.PostgresCatalogRepository._from_row(row)
    assert rebuilt == stored


def test_postgres_catalog_delete_reports_rowcount(
    fake_cursor: FakeCursor,
) -> None:
    repo = database.PostgresCatalogRepository(config.Settings())
    fake_cursor.rowcount = 1
    assert repo.delete("l-1") is True
    fake_cursor.rowcount = 0
    assert repo.delete("l-1") is False


def test_factories_build_postgres_repositories(
    fake_cursor: FakeCursor,
) -> None:
    settings = config.Settings()
    assert isinstance(
        database.get_upload_repository(settings),
        database.PostgresUploadRepository,
    )
    assert isinstance(
        database.get_catalog_repository(settings),
        database.PostgresCatalogRepository,
    )
