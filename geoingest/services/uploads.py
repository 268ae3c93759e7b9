"""Upload lifecycle: acceptance, background dispatch and status.

UploadLifecycleManager is the entry point of the ingestion core. submit()
records an upload as pending and hands the pipeline to the task runner
without waiting for it. The background task then drives the record through
its statuses:

    pending -> processing -> completed | failed

Every error raised inside a pipeline is caught at this boundary and stored
as the upload's failure message. The submitter has already been answered
and never sees it. A failure after the catalog layer was registered
removes that layer again, so a failed upload never keeps one.

Repository calls made by the background task run in worker threads.

Example:
    Accept an upload and poll it:
        >>> manager = UploadLifecycleManager(
        ...     settings, uploads, catalog, tasks.PipelineTaskRunner(4)
        ... )
        >>> upload_id = manager.submit(
        ...     path, "roads.zip", db_models.UploadKind.VECTOR_ARCHIVE
        ... )
        >>> manager.get_status(upload_id).status
        <UploadStatus.PENDING: 'pending'>
"""

from __future__ import annotations

import asyncio
import pathlib
import uuid
from typing import TYPE_CHECKING

import psycopg2
from loguru import logger

from geoingest.core import errors
from geoingest.db import models as db_models
from geoingest.services import geoserver, ingest_raster, ingest_vector
from geoingest.services import registrar as registrar_module

if TYPE_CHECKING:
    from collections.abc import Callable

    from geoingest.core import config, tasks
    from geoingest.db import database
    from geoingest.services import pipeline


class UploadLifecycleManager:
    """Accepts uploads and runs their pipelines in the background.

    Args:
        settings: Application settings.
        uploads: Upload repository.
        catalog: Catalog repository.
        runner: Task runner executing the pipelines.
        publisher_factory: Builds a fresh GeoServer publisher per run;
            defaults to one configured from settings.
    """

    def __init__(
        self,
        settings: config.Settings,
        uploads: database.UploadRepositoryProtocol,
        catalog: database.CatalogRepositoryProtocol,
        runner: tasks.PipelineTaskRunner,
        publisher_factory: Callable[[], geoserver.GeoServerPublisher]
        | None = None,
    ) -> None:
        self.settings = settings
        self.uploads = uploads
        self.catalog = catalog
        self.runner = runner
        self.registrar = registrar_module.LayerRegistrar(uploads, catalog)
        gs_config = geoserver.GeoServerConfig.from_settings(settings)
        self.publisher_factory = publisher_factory or (
            lambda: geoserver.GeoServerPublisher(gs_config)
        )

    def submit(
        self,
        temp_path: pathlib.Path,
        original_filename: str,
        kind: db_models.UploadKind,
        *,
        srid: int | None = None,
        load_mode: db_models.LoadMode = db_models.LoadMode.CREATE,
    ) -> str:
        """Record a pending upload and dispatch its pipeline.

        Returns as soon as the record exists; processing happens in a
        background task. Must be called from a running event loop.

        Args:
            temp_path: Where the uploaded file was saved.
            original_filename: Name the file was uploaded under.
            kind: Declared kind of the file.
            srid: SRID for the vector loader (vector uploads only).
            load_mode: Vector loader mode (vector uploads only).

        Returns:
            The new upload id.
        """
        record = db_models.UploadRecord(
            id=str(uuid.uuid4()),
            original_filename=original_filename,
            temp_path=str(temp_path),
            kind=kind,
        )
        self.uploads.add(record)
        logger.info(
            f"File upload accepted: {record.id} - {original_filename}"
        )
        self.runner.submit(
            record.id,
            lambda: self._process(record.id, srid=srid, load_mode=load_mode),
        )
        return record.id

    def get_status(self, upload_id: str) -> db_models.UploadRecord:
        """Return the current state of an upload without waiting.

        Raises:
            UploadNotFoundError: If the upload does not exist.
        """
        record = self.uploads.get(upload_id)
        if record is None:
            raise errors.UploadNotFoundError(upload_id)
        return record

    def list_uploads(self) -> list[db_models.UploadRecord]:
        return list(self.uploads.all())

    def catalog_layer_for(
        self,
        record: db_models.UploadRecord,
    ) -> db_models.CatalogLayerEntry | None:
        if record.catalog_layer_id is None:
            return None
        return self.catalog.get(record.catalog_layer_id)

    async def remove_layer(self, layer_id: str) -> db_models.CatalogLayerEntry:
        """Delete a catalog layer, cleaning up GeoServer on a best-effort basis.

        Raises:
            LayerNotFoundError: If the layer does not exist.
        """
        async with self.publisher_factory() as publisher:
            return await self.registrar.unregister(layer_id, publisher)

    async def _run_pipeline(
        self,
        upload: db_models.UploadRecord,
        *,
        srid: int | None,
        load_mode: db_models.LoadMode,
    ) -> pipeline.IngestResult:
        async with self.publisher_factory() as publisher:
            if upload.kind is db_models.UploadKind.VECTOR_ARCHIVE:
                logger.info(f"Processing shapefile: {upload.id}")
                return await ingest_vector.ingest_vector_archive(
                    upload,
                    self.settings,
                    publisher,
                    self.registrar,
                    srid=srid,
                    mode=load_mode,
                )
            logger.info(f"Processing GeoTIFF: {upload.id}")
            return await ingest_raster.ingest_raster(
                upload,
                self.settings,
                publisher,
                self.registrar,
            )

    async def _process(
        self,
        upload_id: str,
        *,
        srid: int | None = None,
        load_mode: db_models.LoadMode = db_models.LoadMode.CREATE,
    ) -> None:
        """Background body of one upload; always ends in a terminal status."""
        try:
            upload = await asyncio.to_thread(
                self.uploads.update_status,
                upload_id,
                db_models.UploadStatus.PROCESSING,
            )
            result = await self._run_pipeline(
                upload,
                srid=srid,
                load_mode=load_mode,
            )
            await self._complete(upload_id, result)
            logger.info(f"File processing completed: {upload_id}")
        except errors.IngestError as exc:
            logger.error(f"Error processing file {upload_id}: {exc}")
            await self._mark_failed(upload_id, str(exc))
        except Exception as exc:
            logger.exception(f"Unexpected error processing file {upload_id}")
            await self._mark_failed(upload_id, f"Unexpected error: {exc}")

    async def _complete(
        self,
        upload_id: str,
        result: pipeline.IngestResult,
    ) -> None:
        """Store the pipeline result and mark the upload completed.

        Raises:
            PersistenceError: If either write fails; the registered catalog
                layer has been removed by then.
        """
        try:
            await asyncio.to_thread(
                self.uploads.record_result,
                upload_id,
                result.target,
                result.metadata,
                table_name=result.table_name,
                file_path=result.file_path,
            )
            await asyncio.to_thread(
                self.uploads.update_status,
                upload_id,
                db_models.UploadStatus.COMPLETED,
            )
        except (psycopg2.Error, ValueError, KeyError) as exc:
            layer = result.catalog_layer
            if layer is not None and layer.id is not None:
                await self._withdraw_layer(str(layer.id))
            raise errors.PersistenceError(
                f"Could not record upload result: {exc}"
            ) from exc

    async def _withdraw_layer(self, layer_id: str) -> None:
        try:
            await self.remove_layer(layer_id)
        except (errors.LayerNotFoundError, psycopg2.Error) as exc:
            logger.warning(
                f"Could not withdraw catalog layer {layer_id}: {exc}"
            )

    async def _mark_failed(self, upload_id: str, message: str) -> None:
        try:
            await asyncio.to_thread(
                self.uploads.update_status,
                upload_id,
                db_models.UploadStatus.FAILED,
                error_message=message,
            )
        except Exception:
            logger.exception(f"Could not record failure of upload {upload_id}")
