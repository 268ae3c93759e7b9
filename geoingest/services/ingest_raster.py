"""Raster ingestion into permanent storage and GeoServer.

The raster path is shorter than the vector one and stricter about
inspection:

1. Run ``gdalinfo`` on the uploaded file. A missing file or a failing
   gdalinfo means the raster is invalid and aborts the run.
2. Parse the same report for size, projection, EPSG code, corner extent,
   pixel size and bands. Unparsed fields stay null; the SRID defaults to
   4326.
3. Copy the file into ``raster_storage_dir`` as
   ``raster_<upload id><extension>``. The uploaded file is left in place.
4. Provision the workspace, a GeoTIFF coverage store pointing at the copy
   and the coverage on GeoServer.
5. Register the catalog layer.

Store and coverage names come from the upload id, so running the pipeline
twice for one upload finds both already provisioned the second time.

Example:
    Ingest an accepted GeoTIFF upload:
        >>> async with geoserver.GeoServerPublisher(gs_config) as publisher:
        ...     result = await ingest_raster.ingest_raster(
        ...         upload, settings, publisher, registrar,
        ...     )
        >>> result.target.layer
        'coverage_5b0c2a3e8d7f4c8e9a510f1e2d3c4b5a'
"""

from __future__ import annotations

import asyncio
import pathlib
import shutil
from typing import TYPE_CHECKING

from loguru import logger

from geoingest.core import errors
from geoingest.db import models as db_models
from geoingest.services import pipeline, tool_reports
from geoingest.utils import gdal_helpers

if TYPE_CHECKING:
    from geoingest.core import config
    from geoingest.services import geoserver
    from geoingest.services import registrar as registrar_module


def validate_raster(raster_path: pathlib.Path) -> str:
    """Check that GDAL can read the raster and return its gdalinfo report.

    Args:
        raster_path: Raster file to inspect.

    Returns:
        The gdalinfo text report.

    Raises:
        ValidationError: If the file is missing, gdalinfo cannot be run
            or gdalinfo rejects it.
    """
    if not raster_path.is_file():
        raise errors.ValidationError(f"Raster file not found: {raster_path}")
    try:
        return gdal_helpers.run_command(("gdalinfo", str(raster_path)))
    except gdal_helpers.CommandError as exc:
        logger.error(f"GeoTIFF validation failed: {exc}")
        raise errors.ValidationError(f"Invalid GeoTIFF file: {exc}") from exc


def stored_raster_name(upload: db_models.UploadRecord) -> str:
    """Permanent file name: upload id plus the original extension."""
    suffix = pathlib.PurePath(upload.original_filename).suffix.lower()
    return f"raster_{upload.id}{suffix}"


def store_raster(
    raster_path: pathlib.Path,
    upload: db_models.UploadRecord,
    storage_dir: pathlib.Path,
) -> pathlib.Path:
    """Copy a validated raster into permanent storage.

    Raises:
        PersistenceError: If the copy fails.
    """
    target_path = storage_dir / stored_raster_name(upload)
    try:
        storage_dir.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(raster_path, target_path)
    except OSError as exc:
        raise errors.PersistenceError(
            f"Could not store raster {upload.original_filename}: {exc}"
        ) from exc
    logger.info(f"Stored GeoTIFF: {target_path}")
    return target_path


def server_visible_path(
    stored_path: pathlib.Path,
    settings: config.Settings,
) -> pathlib.PurePosixPath:
    """Path under which GeoServer sees a stored raster.

    Uses ``geoserver_raster_dir`` when GeoServer mounts the raster storage
    elsewhere, and the local path otherwise.
    """
    if settings.geoserver_raster_dir is None:
        return pathlib.PurePosixPath(stored_path.resolve())
    return pathlib.PurePosixPath(settings.geoserver_raster_dir) / stored_path.name


async def ingest_raster(
    upload: db_models.UploadRecord,
    settings: config.Settings,
    publisher: geoserver.GeoServerPublisher,
    registrar: registrar_module.LayerRegistrar,
) -> pipeline.IngestResult:
    """Run the raster pipeline for one upload.

    Args:
        upload: Upload being processed.
        settings: Application settings.
        publisher: Open GeoServer publisher.
        registrar: Catalog registrar.

    Returns:
        The published result, including the catalog layer.

    Raises:
        ValidationError: gdalinfo rejected the file.
        PersistenceError: Storing the file or registering the layer failed.
        PublishError: GeoServer provisioning failed.
    """
    source_path = pathlib.Path(upload.temp_path)
    target = db_models.PublishTarget.for_upload(
        upload.id,
        upload.kind,
        workspace=publisher.config.workspace,
        vector_datastore=publisher.config.datastore,
    )

    logger.info(f"Validating GeoTIFF: {upload.original_filename}")
    report = await asyncio.to_thread(validate_raster, source_path)
    metadata = tool_reports.parse_raster_report(report)
    logger.info(f"GeoTIFF metadata: {metadata.to_dict()}")

    stored_path = await asyncio.to_thread(
        store_raster,
        source_path,
        upload,
        settings.raster_storage_dir,
    )

    await publisher.ensure_workspace(target.workspace)
    logger.info(f"Creating coverage store: {target.store}")
    await publisher.ensure_coverage_store(
        target.workspace,
        target.store,
        server_visible_path(stored_path, settings),
    )
    logger.info(f"Publishing coverage: {target.layer}")
    await publisher.ensure_coverage(target.workspace, target.store, target.layer)

    result = pipeline.IngestResult(
        target=target,
        metadata=metadata,
        access_url=publisher.config.wms_layer_url(
            target.workspace,
            target.layer,
        ),
        file_path=str(stored_path),
    )
    return await registrar.register(upload, result, publisher)
