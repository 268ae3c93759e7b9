"""Catalog registration of published layers.

LayerRegistrar turns a finished pipeline result into exactly one catalog
layer entry and links it back to its upload. Registration runs after
GeoServer publishing succeeded and before the upload is marked completed.

If the catalog write or the link fails, the registrar drops the entry it
just created, removes the freshly published GeoServer layer (best effort)
and raises PersistenceError, so the upload ends up failed with no catalog
layer rather than completed without one.

Repository calls run in worker threads so a slow database does not stall
the event loop.
"""

from __future__ import annotations

import asyncio
import dataclasses
import pathlib
from typing import TYPE_CHECKING

import psycopg2
from loguru import logger

from geoingest.core import errors
from geoingest.db import models as db_models
from geoingest.services import tool_reports

if TYPE_CHECKING:
    from geoingest.db import database
    from geoingest.services import geoserver, pipeline

CATALOG_LAYER_TYPE = "wms"


def _layer_kind(kind: db_models.UploadKind) -> geoserver.LayerKind:
    if kind is db_models.UploadKind.VECTOR_ARCHIVE:
        return "featuretype"
    return "coverage"


class LayerRegistrar:
    """Writes catalog layers for completed pipelines.

    Args:
        uploads: Upload repository, back-filled with the catalog layer id.
        catalog: Catalog repository receiving the entries.
    """

    def __init__(
        self,
        uploads: database.UploadRepositoryProtocol,
        catalog: database.CatalogRepositoryProtocol,
    ) -> None:
        self.uploads = uploads
        self.catalog = catalog

    def build_entry(
        self,
        upload: db_models.UploadRecord,
        result: pipeline.IngestResult,
    ) -> db_models.CatalogLayerEntry:
        """Describe the published layer as an unsaved catalog entry."""
        is_vector = upload.kind is db_models.UploadKind.VECTOR_ARCHIVE
        metadata = {
            **result.metadata.to_dict(),
            "parser_version": tool_reports.PARSER_VERSION,
        }
        if result.table_name:
            metadata["table_name"] = result.table_name
        return db_models.CatalogLayerEntry(
            id=None,
            upload_id=upload.id,
            name=result.target.layer,
            title=pathlib.PurePath(upload.original_filename).stem,
            description=f"Uploaded {upload.kind}: {upload.original_filename}",
            type=CATALOG_LAYER_TYPE,
            tile_kind="vector" if is_vector else "raster",
            access_url=result.access_url,
            source_layer_name=result.target.layer,
            workspace=result.target.workspace,
            store=result.target.store,
            visible=True,
            queryable=is_vector,
            metadata=metadata,
        )

    async def register(
        self,
        upload: db_models.UploadRecord,
        result: pipeline.IngestResult,
        publisher: geoserver.GeoServerPublisher,
    ) -> pipeline.IngestResult:
        """Create the catalog layer for ``upload`` and link it.

        Calling it again for an upload that already has a catalog layer
        returns the existing entry instead of writing a second one.

        Args:
            upload: Upload the layer was produced from.
            result: Published pipeline result.
            publisher: Open publisher, used to undo publishing on failure.

        Returns:
            ``result`` with its catalog layer set.

        Raises:
            PersistenceError: If the catalog write or link fails.
        """
        created: db_models.CatalogLayerEntry | None = None
        try:
            entry = await asyncio.to_thread(
                self.catalog.get_by_upload, upload.id
            )
            if entry is None:
                entry = created = await asyncio.to_thread(
                    self.catalog.add, self.build_entry(upload, result)
                )
                logger.info(f"Registered catalog layer {entry.id}")
            else:
                logger.info(
                    f"Upload {upload.id} already has catalog layer {entry.id}"
                )
            await asyncio.to_thread(
                self.uploads.link_catalog_layer, upload.id, str(entry.id)
            )
        except (psycopg2.Error, ValueError, KeyError) as exc:
            logger.error(f"Error registering layer for {upload.id}: {exc}")
            if created is not None:
                await self._discard(str(created.id))
            await publisher.delete_layer(
                result.target.workspace,
                result.target.store,
                result.target.layer,
                _layer_kind(upload.kind),
            )
            raise errors.PersistenceError(
                f"Catalog registration failed: {exc}"
            ) from exc
        return dataclasses.replace(result, catalog_layer=entry)

    async def unregister(
        self,
        layer_id: str,
        publisher: geoserver.GeoServerPublisher,
    ) -> db_models.CatalogLayerEntry:
        """Remove a catalog layer and, best effort, its GeoServer layer.

        A failed GeoServer delete is logged and does not stop the catalog
        removal.

        Raises:
            LayerNotFoundError: If no such catalog layer exists.
        """
        entry = await asyncio.to_thread(self.catalog.get, layer_id)
        if entry is None:
            raise errors.LayerNotFoundError(layer_id)

        kind: geoserver.LayerKind = (
            "featuretype" if entry.tile_kind == "vector" else "coverage"
        )
        await publisher.delete_layer(
            entry.workspace,
            entry.store,
            entry.source_layer_name,
            kind,
        )
        await asyncio.to_thread(self.catalog.delete, layer_id)
        await asyncio.to_thread(self.uploads.unlink_catalog_layer, layer_id)
        logger.info(f"Deleted catalog layer {layer_id}")
        return entry

    async def _discard(self, layer_id: str) -> None:
        try:
            await asyncio.to_thread(self.catalog.delete, layer_id)
        except psycopg2.Error as exc:
            logger.warning(f"Could not drop catalog layer {layer_id}: {exc}")
