"""Database helpers and repositories for uploads and catalog layers."""

from __future__ import annotations

import contextlib
import dataclasses
import datetime
import uuid
from typing import TYPE_CHECKING, Any, Protocol, cast

import psycopg2
import psycopg2.extensions
import psycopg2.extras

from geoingest.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from geoingest.core import config

RECENT_UPLOADS_LIMIT = 100


def _cast[T](value: object, dtype: type[T]) -> T | None:  # type: ignore[misc]
    """Cast a value to a specific type, returning None if value is None."""
    if value is None:
        return None

    return cast(T, value)


def _now() -> datetime.datetime:
    return datetime.datetime.now(tz=datetime.UTC)


def _check_transition(
    upload_id: str,
    current: db_models.UploadStatus,
    target: db_models.UploadStatus,
) -> None:
    if not current.can_transition_to(target):
        raise ValueError(
            f"Upload {upload_id} cannot move from {current} to {target}"
        )


class UploadRepositoryProtocol(Protocol):
    """Protocol interface for storing and updating upload records.

    Status changes go through update_status, which rejects any transition
    that would move an upload backwards.
    """

    def add(self, record: db_models.UploadRecord) -> db_models.UploadRecord:
        ...

    def get(self, upload_id: str) -> db_models.UploadRecord | None: ...

    def all(self) -> Iterable[db_models.UploadRecord]: ...

    def update_status(
        self,
        upload_id: str,
        status: db_models.UploadStatus,
        error_message: str | None = None,
    ) -> db_models.UploadRecord: ...

    def record_result(
        self,
        upload_id: str,
        target: db_models.PublishTarget,
        metadata: db_models.ExtractedMetadata | None,
        table_name: str | None = None,
        file_path: str | None = None,
    ) -> db_models.UploadRecord: ...

    def link_catalog_layer(self, upload_id: str, layer_id: str) -> None: ...

    def unlink_catalog_layer(self, layer_id: str) -> None: ...


class CatalogRepositoryProtocol(Protocol):
    """Protocol interface for the layer catalog.

    add assigns the catalog identifier and returns the stored entry.
    """

    def add(
        self,
        entry: db_models.CatalogLayerEntry,
    ) -> db_models.CatalogLayerEntry: ...

    def get(self, layer_id: str) -> db_models.CatalogLayerEntry | None: ...

    def get_by_upload(
        self,
        upload_id: str,
    ) -> db_models.CatalogLayerEntry | None: ...

    def all(self) -> Iterable[db_models.CatalogLayerEntry]: ...

    def delete(self, layer_id: str) -> bool: ...


class InMemoryUploadRepository(UploadRepositoryProtocol):
    """Simple in-memory upload store for tests and local development.

    Every read returns a copy, so a record handed out earlier never
    changes underneath its holder.
    """

    def __init__(self) -> None:
        self._store: dict[str, db_models.UploadRecord] = {}

    def add(self, record: db_models.UploadRecord) -> db_models.UploadRecord:
        self._store[record.id] = dataclasses.replace(record)
        return dataclasses.replace(record)

    def get(self, upload_id: str) -> db_models.UploadRecord | None:
        record = self._store.get(upload_id)
        return dataclasses.replace(record) if record else None

    def all(self) -> Iterable[db_models.UploadRecord]:
        records = sorted(
            self._store.values(),
            key=lambda record: record.created_at,
            reverse=True,
        )
        return [dataclasses.replace(r) for r in records[:RECENT_UPLOADS_LIMIT]]

    def _require(self, upload_id: str) -> db_models.UploadRecord:
        try:
            return self._store[upload_id]
        except KeyError:
            raise KeyError(f"Upload {upload_id} not found") from None

    def update_status(
        self,
        upload_id: str,
        status: db_models.UploadStatus,
        error_message: str | None = None,
    ) -> db_models.UploadRecord:
        record = self._require(upload_id)
        _check_transition(upload_id, record.status, status)
        record.status = status
        record.error_message = error_message
        record.updated_at = _now()
        return dataclasses.replace(record)

    def record_result(
        self,
        upload_id: str,
        target: db_models.PublishTarget,
        metadata: db_models.ExtractedMetadata | None,
        table_name: str | None = None,
        file_path: str | None = None,
    ) -> db_models.UploadRecord:
        record = self._require(upload_id)
        record.workspace = target.workspace
        record.store = target.store
        record.layer_name = target.layer
        record.metadata = metadata
        record.table_name = table_name
        record.file_path = file_path
        return dataclasses.replace(record)

    def link_catalog_layer(self, upload_id: str, layer_id: str) -> None:
        self._require(upload_id).catalog_layer_id = layer_id

    def unlink_catalog_layer(self, layer_id: str) -> None:
        for record in self._store.values():
            if record.catalog_layer_id == layer_id:
                record.catalog_layer_id = None


class InMemoryCatalogRepository(CatalogRepositoryProtocol):
    """In-memory layer catalog for tests and local development."""

    def __init__(self) -> None:
        self._store: dict[str, db_models.CatalogLayerEntry] = {}

    def add(
        self,
        entry: db_models.CatalogLayerEntry,
    ) -> db_models.CatalogLayerEntry:
        if self.get_by_upload(entry.upload_id) is not None:
            raise ValueError(
                f"Upload {entry.upload_id} already has a catalog layer"
            )
        stored = dataclasses.replace(entry, id=str(uuid.uuid4()))
        self._store[cast(str, stored.id)] = stored
        return stored

    def get(self, layer_id: str) -> db_models.CatalogLayerEntry | None:
        return self._store.get(layer_id)

    def get_by_upload(
        self,
        upload_id: str,
    ) -> db_models.CatalogLayerEntry | None:
        for entry in self._store.values():
            if entry.upload_id == upload_id:
                return entry
        return None

    def all(self) -> Iterable[db_models.CatalogLayerEntry]:
        return sorted(
            self._store.values(),
            key=lambda entry: entry.created_at,
            reverse=True,
        )

    def delete(self, layer_id: str) -> bool:
        return self._store.pop(layer_id, None) is not None


class _PostgresRepository:
    """Connection handling shared by the PostgreSQL repositories."""

    CREATE_TABLE_SQL = ""

    def __init__(self, settings: config.Settings) -> None:
        """Initialize repository with database settings.

        Args:
            settings: Application settings containing database connection URL.
        """
        self.settings = settings
        self._ensure_schema()

    def _connection(
        self,
    ) -> contextlib.AbstractContextManager[psycopg2.extensions.connection]:
        return connection(self.settings)

    def _cursor(
        self,
        conn: psycopg2.extensions.connection,
    ) -> psycopg2.extensions.cursor:
        return conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)

    def _ensure_schema(self) -> None:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(self.CREATE_TABLE_SQL)
            conn.commit()


class PostgresCatalogRepository(_PostgresRepository, CatalogRepositoryProtocol):
    """PostgreSQL-backed layer catalog.

    The unique constraint on upload_id keeps one catalog layer per upload.
    """

    CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS catalog_layers (
      id TEXT PRIMARY KEY,
      upload_id TEXT NOT NULL UNIQUE,
      name TEXT NOT NULL,
      title TEXT NOT NULL,
      description TEXT,
      type TEXT NOT NULL,
      tile_kind TEXT NOT NULL,
      access_url TEXT NOT NULL,
      source_layer_name TEXT NOT NULL,
      workspace TEXT NOT NULL,
      store TEXT NOT NULL,
      visible BOOLEAN NOT NULL DEFAULT TRUE,
      queryable BOOLEAN NOT NULL DEFAULT TRUE,
      metadata JSONB,
      created_at TIMESTAMPTZ DEFAULT now()
    );
    """

    def add(
        self,
        entry: db_models.CatalogLayerEntry,
    ) -> db_models.CatalogLayerEntry:
        stored = dataclasses.replace(entry, id=str(uuid.uuid4()))
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO catalog_layers (
                    id, upload_id, name, title, description, type,
                    tile_kind, access_url, source_layer_name, workspace,
                    store, visible, queryable, metadata, created_at
                ) VALUES (%(id)s, %(upload_id)s, %(name)s, %(title)s,
                    %(description)s, %(type)s, %(tile_kind)s,
                    %(access_url)s, %(source_layer_name)s, %(workspace)s,
                    %(store)s, %(visible)s, %(queryable)s, %(metadata)s,
                    %(created_at)s);
                """,
                self._to_row(stored),
            )
            conn.commit()
        return stored

    def get(self, layer_id: str) -> db_models.CatalogLayerEntry | None:
        return self._fetch_one("id", layer_id)

    def get_by_upload(
        self,
        upload_id: str,
    ) -> db_models.CatalogLayerEntry | None:
        return self._fetch_one("upload_id", upload_id)

    def _fetch_one(
        self,
        column: str,
        value: str,
    ) -> db_models.CatalogLayerEntry | None:
        with self._connection() as conn, self._cursor(conn) as cur:
            cur.execute(
                f"SELECT * FROM catalog_layers WHERE {column} = %s",  # noqa: S608
                (value,),
            )
            row = cur.fetchone()
        return self._from_row(row) if row is not None else None

    def all(self) -> Iterable[db_models.CatalogLayerEntry]:
        with self._connection() as conn, self._cursor(conn) as cur:
            cur.execute("SELECT * FROM catalog_layers ORDER BY created_at DESC")
            rows = cur.fetchall()
        return [self._from_row(row) for row in rows]

    def delete(self, layer_id: str) -> bool:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute("DELETE FROM catalog_layers WHERE id = %s", (layer_id,))
            deleted = cur.rowcount
            conn.commit()
        return deleted > 0

    @staticmethod
    def _to_row(entry: db_models.CatalogLayerEntry) -> dict[str, object]:
        row: dict[str, object] = dataclasses.asdict(entry)
        row["metadata"] = psycopg2.extras.Json(entry.metadata)
        return row

    @staticmethod
    def _from_row(row: dict[str, Any]) -> db_models.CatalogLayerEntry:
        created_at = _cast(row.get("created_at"), datetime.datetime) or _now()
        return db_models.CatalogLayerEntry(
            id=str(row["id"]),
            upload_id=str(row["upload_id"]),
            name=str(row["name"]),
            title=str(row["title"]),
            description=str(row.get("description") or ""),
            type=str(row["type"]),
            tile_kind=str(row["tile_kind"]),
            access_url=str(row["access_url"]),
            source_layer_name=str(row["source_layer_name"]),
            workspace=str(row["workspace"]),
            store=str(row["store"]),
            visible=bool(row["visible"]),
            queryable=bool(row["queryable"]),
            metadata=dict(row.get("metadata") or {}),
            created_at=created_at,
        )


class PostgresUploadRepository(_PostgresRepository, UploadRepositoryProtocol):
    """PostgreSQL-backed upload records.

    Status updates lock the row, check the transition against the stored
    status and write in the same transaction.
    """

    CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS uploads (
      id TEXT PRIMARY KEY,
      original_filename TEXT NOT NULL,
      temp_path TEXT NOT NULL,
      kind TEXT NOT NULL,
      status TEXT NOT NULL DEFAULT 'pending',
      error_message TEXT,
      workspace TEXT,
      store TEXT,
      layer_name TEXT,
      table_name TEXT,
      file_path TEXT,
      metadata JSONB,
      catalog_layer_id TEXT,
      created_at TIMESTAMPTZ DEFAULT now(),
      updated_at TIMESTAMPTZ DEFAULT now()
    );
    CREATE INDEX IF NOT EXISTS idx_uploads_status ON uploads(status);
    """

    def add(self, record: db_models.UploadRecord) -> db_models.UploadRecord:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO uploads (
                    id, original_filename, temp_path, kind, status,
                    error_message, workspace, store, layer_name, table_name,
                    file_path, metadata, catalog_layer_id, created_at,
                    updated_at
                ) VALUES (%(id)s, %(original_filename)s, %(temp_path)s,
                    %(kind)s, %(status)s, %(error_message)s, %(workspace)s,
                    %(store)s, %(layer_name)s, %(table_name)s, %(file_path)s,
                    %(metadata)s, %(catalog_layer_id)s, %(created_at)s,
                    %(updated_at)s);
                """,
                self._to_row(record),
            )
            conn.commit()
        return record

    def get(self, upload_id: str) -> db_models.UploadRecord | None:
        with self._connection() as conn, self._cursor(conn) as cur:
            cur.execute("SELECT * FROM uploads WHERE id = %s", (upload_id,))
            row = cur.fetchone()
        return self._from_row(row) if row is not None else None

    def all(self) -> Iterable[db_models.UploadRecord]:
        with self._connection() as conn, self._cursor(conn) as cur:
            cur.execute(
                "SELECT * FROM uploads ORDER BY created_at DESC LIMIT %s",
                (RECENT_UPLOADS_LIMIT,),
            )
            rows = cur.fetchall()
        return [self._from_row(row) for row in rows]

    def update_status(
        self,
        upload_id: str,
        status: db_models.UploadStatus,
        error_message: str | None = None,
    ) -> db_models.UploadRecord:
        with self._connection() as conn, self._cursor(conn) as cur:
            cur.execute(
                "SELECT status FROM uploads WHERE id = %s FOR UPDATE",
                (upload_id,),
            )
            row = cur.fetchone()
            if row is None:
                raise KeyError(f"Upload {upload_id} not found")
            current = db_models.UploadStatus(row["status"])
            _check_transition(upload_id, current, status)
            cur.execute(
                """
                UPDATE uploads
                SET status = %s, error_message = %s, updated_at = now()
                WHERE id = %s
                RETURNING *;
                """,
                (str(status), error_message, upload_id),
            )
            updated = cur.fetchone()
            conn.commit()
        return self._from_row(cast(dict[str, Any], updated))

    def record_result(
        self,
        upload_id: str,
        target: db_models.PublishTarget,
        metadata: db_models.ExtractedMetadata | None,
        table_name: str | None = None,
        file_path: str | None = None,
    ) -> db_models.UploadRecord:
        with self._connection() as conn, self._cursor(conn) as cur:
            cur.execute(
                """
                UPDATE uploads
                SET workspace = %(workspace)s, store = %(store)s,
                    layer_name = %(layer_name)s, table_name = %(table_name)s,
                    file_path = %(file_path)s, metadata = %(metadata)s
                WHERE id = %(id)s
                RETURNING *;
                """,
                {
                    "id": upload_id,
                    "workspace": target.workspace,
                    "store": target.store,
                    "layer_name": target.layer,
                    "table_name": table_name,
                    "file_path": file_path,
                    "metadata": psycopg2.extras.Json(
                        metadata.to_dict() if metadata else None
                    ),
                },
            )
            updated = cur.fetchone()
            conn.commit()
        if updated is None:
            raise KeyError(f"Upload {upload_id} not found")
        return self._from_row(updated)

    def link_catalog_layer(self, upload_id: str, layer_id: str) -> None:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                "UPDATE uploads SET catalog_layer_id = %s WHERE id = %s",
                (layer_id, upload_id),
            )
            conn.commit()

    def unlink_catalog_layer(self, layer_id: str) -> None:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                "UPDATE uploads SET catalog_layer_id = NULL "
                "WHERE catalog_layer_id = %s",
                (layer_id,),
            )
            conn.commit()

    @staticmethod
    def _to_row(record: db_models.UploadRecord) -> dict[str, object]:
        """Convert an UploadRecord to a parameter dictionary.

        Args:
            record: Upload record to convert.

        Returns:
            Dictionary suitable for parameterized SQL insertion.
        """
        return {
            "id": record.id,
            "original_filename": record.original_filename,
            "temp_path": record.temp_path,
            "kind": str(record.kind),
            "status": str(record.status),
            "error_message": record.error_message,
            "workspace": record.workspace,
            "store": record.store,
            "layer_name": record.layer_name,
            "table_name": record.table_name,
            "file_path": record.file_path,
            "metadata": psycopg2.extras.Json(
                record.metadata.to_dict() if record.metadata else None
            ),
            "catalog_layer_id": record.catalog_layer_id,
            "created_at": record.created_at,
            "updated_at": record.updated_at,
        }

    @staticmethod
    def _from_row(row: dict[str, Any]) -> db_models.UploadRecord:
        """Convert a database row dictionary to an UploadRecord.

        Args:
            row: Dictionary from database query result.

        Returns:
            UploadRecord with metadata rebuilt for its kind.
        """
        kind = db_models.UploadKind(row["kind"])
        return db_models.UploadRecord(
            id=str(row["id"]),
            original_filename=str(row["original_filename"]),
            temp_path=str(row["temp_path"]),
            kind=kind,
            status=db_models.UploadStatus(row["status"]),
            error_message=_cast(row.get("error_message"), str),
            workspace=_cast(row.get("workspace"), str),
            store=_cast(row.get("store"), str),
            layer_name=_cast(row.get("layer_name"), str),
            table_name=_cast(row.get("table_name"), str),
            file_path=_cast(row.get("file_path"), str),
            metadata=db_models.metadata_from_dict(kind, row.get("metadata")),
            catalog_layer_id=_cast(row.get("catalog_layer_id"), str),
            created_at=_cast(row.get("created_at"), datetime.datetime)
            or _now(),
            updated_at=_cast(row.get("updated_at"), datetime.datetime)
            or _now(),
        )


def get_upload_repository(
    settings: config.Settings,
) -> UploadRepositoryProtocol:
    """Factory function to create the upload repository.

    Args:
        settings: Application settings for database connection.

    Returns:
        PostgresUploadRepository instance for production use.
    """
    return PostgresUploadRepository(settings)


def get_catalog_repository(
    settings: config.Settings,
) -> CatalogRepositoryProtocol:
    """Factory function to create the catalog repository.

    Args:
        settings: Application settings for database connection.

    Returns:
        PostgresCatalogRepository instance for production use.
    """
    return PostgresCatalogRepository(settings)


def get_connection(
    settings: config.Settings,
) -> psycopg2.extensions.connection:
    """Create a synchronous psycopg2 connection.

    Args:
        settings: Application settings containing database connection URL.

    Returns:
        psycopg2 connection object for direct database access.
    """
    return psycopg2.connect(settings.database_url)


@contextlib.contextmanager
def connection(
    settings: config.Settings,
) -> Iterator[psycopg2.extensions.connection]:
    """Open a connection, run the block in one transaction, then close it.

    psycopg2's own ``with conn`` only ends the transaction.
    """
    conn = get_connection(settings)
    try:
        with conn:
            yield conn
    finally:
        conn.close()
