"""Vector archive ingestion into PostGIS and GeoServer.

This module takes a zipped shapefile through the whole vector path:

1. Extract the archive into a per-upload scratch directory and pick the
   shapefile to load.
2. Run ``ogrinfo -al -so`` and parse its report for a first estimate of
   geometry type, feature count and extent. A failing ogrinfo is tolerated.
3. Stream ``shp2pgsql`` into ``psql`` to load the table ``layer_<id>``.
4. Build a GiST index on the geometry column; failure is only a warning.
5. Query PostGIS for authoritative feature count, SRID, geometry type and
   extent, superseding the ogrinfo estimate.
6. Provision the workspace, the shared PostGIS datastore and the feature
   type on GeoServer.
7. Register the catalog layer.

The scratch directory is removed on every exit path.

Example:
    Run the pipeline for an accepted upload:
        >>> async with geoserver.GeoServerPublisher(gs_config) as publisher:
        ...     result = await ingest_vector.ingest_vector_archive(
        ...         upload, settings, publisher, registrar,
        ...     )
        >>> result.metadata.feature_count
        42
"""

from __future__ import annotations

import asyncio
import dataclasses
import pathlib
import shutil
import zipfile
from typing import TYPE_CHECKING, NamedTuple, cast

import psycopg2
from loguru import logger
from psycopg2 import sql

from geoingest.core import errors
from geoingest.db import database
from geoingest.db import models as db_models
from geoingest.services import geoserver, pipeline, tool_reports
from geoingest.utils import gdal_helpers

if TYPE_CHECKING:
    from geoingest.core import config
    from geoingest.services import registrar as registrar_module

SHAPEFILE_SUFFIX = ".shp"

LOADER_MODE_FLAGS: dict[db_models.LoadMode, str] = {
    db_models.LoadMode.CREATE: "-c",
    db_models.LoadMode.APPEND: "-a",
    db_models.LoadMode.DROP: "-d",
}


class ExtractedShapefile(NamedTuple):
    path: pathlib.Path
    name: str


def extract_shapefile(
    archive_path: pathlib.Path,
    extract_dir: pathlib.Path,
) -> ExtractedShapefile:
    """Unpack a zip archive and locate its shapefile.

    When the archive holds several shapefiles the one whose relative path
    sorts first is used, so the choice does not depend on archive or
    filesystem ordering.

    Args:
        archive_path: Uploaded zip file.
        extract_dir: Directory to extract into (created if needed).

    Returns:
        Path and base name of the selected shapefile.

    Raises:
        ExtractionError: If the archive cannot be read or holds no .shp.
    """
    extract_dir.mkdir(parents=True, exist_ok=True)
    try:
        with zipfile.ZipFile(archive_path) as archive:
            archive.extractall(extract_dir)
    except (zipfile.BadZipFile, OSError) as exc:
        raise errors.ExtractionError(
            f"Could not extract {archive_path.name}: {exc}"
        ) from exc

    candidates = sorted(
        (
            path
            for path in extract_dir.rglob("*")
            if path.is_file() and path.suffix.lower() == SHAPEFILE_SUFFIX
        ),
        key=lambda path: path.relative_to(extract_dir).as_posix(),
    )
    if not candidates:
        raise errors.ExtractionError("No .shp file found in ZIP archive")
    if len(candidates) > 1:
        logger.warning(
            f"Archive {archive_path.name} holds {len(candidates)} shapefiles; "
            f"using {candidates[0].relative_to(extract_dir)}"
        )

    selected = candidates[0]
    logger.info(f"Extracted shapefile: {selected.name}")
    return ExtractedShapefile(selected, selected.stem)


def inspect_shapefile(shp_path: pathlib.Path) -> db_models.VectorMetadata:
    """Estimate metadata from the ogrinfo summary report.

    Returns empty metadata when ogrinfo cannot be run; the load step still
    follows.
    """
    try:
        report = gdal_helpers.run_command(
            ("ogrinfo", "-al", "-so", str(shp_path))
        )
    except gdal_helpers.CommandError as exc:
        logger.warning(f"Could not get shapefile metadata: {exc}")
        return db_models.VectorMetadata()
    return tool_reports.parse_vector_report(report)


def build_loader_commands(
    shp_path: pathlib.Path,
    table_name: str,
    settings: config.Settings,
    *,
    srid: int,
    mode: db_models.LoadMode = db_models.LoadMode.CREATE,
    spatial_index: bool = True,
) -> tuple[list[str], list[str], dict[str, str]]:
    """Assemble the shp2pgsql | psql invocation.

    Args:
        shp_path: Shapefile to load.
        table_name: Target table in settings.db_schema.
        settings: Application settings with the database URL.
        srid: SRID assigned to the loaded geometries.
        mode: create, append or drop-and-recreate.
        spatial_index: Ask shp2pgsql to emit a GiST index.

    Returns:
        Loader arguments, psql arguments and the PG* environment.
    """
    loader = ["shp2pgsql", LOADER_MODE_FLAGS[mode], "-s", str(srid)]
    if spatial_index:
        loader.append("-I")
    loader += [str(shp_path), f"{settings.db_schema}.{table_name}"]

    params = settings.database_params()
    env = {
        "PGHOST": params.get("host", "localhost"),
        "PGPORT": str(params.get("port", "5432")),
        "PGDATABASE": params.get("dbname", ""),
        "PGUSER": params.get("user", ""),
        "PGPASSWORD": params.get("password", ""),
    }
    return loader, ["psql", "-q", "-v", "ON_ERROR_STOP=1"], env


def load_into_postgis(
    shp_path: pathlib.Path,
    table_name: str,
    settings: config.Settings,
    *,
    srid: int,
    mode: db_models.LoadMode = db_models.LoadMode.CREATE,
) -> None:
    """Load a shapefile into PostGIS through shp2pgsql and psql.

    Raises:
        ToolInvocationError: If shp2pgsql or psql cannot be started.
        PersistenceError: If either process exits with an error.
    """
    loader, client, env = build_loader_commands(
        shp_path,
        table_name,
        settings,
        srid=srid,
        mode=mode,
    )
    logger.info(f"Importing shapefile to PostGIS: {table_name} ({mode})")
    try:
        gdal_helpers.run_piped(loader, client, env=env)
    except gdal_helpers.CommandError as exc:
        if not exc.started:
            raise errors.ToolInvocationError(str(exc)) from exc
        raise errors.PersistenceError(
            f"Loading {shp_path.name} into {table_name} failed: {exc}"
        ) from exc


def _qualified(settings: config.Settings, table_name: str) -> sql.Identifier:
    return sql.Identifier(settings.db_schema, table_name)


def create_spatial_index(table_name: str, settings: config.Settings) -> bool:
    """Create the GiST index on ``geom`` if missing.

    Returns:
        False when the index could not be built; the caller carries on.
    """
    statement = sql.SQL(
        "CREATE INDEX IF NOT EXISTS {index} ON {table} USING GIST (geom)"
    ).format(
        index=sql.Identifier(f"{table_name}_geom_idx"),
        table=_qualified(settings, table_name),
    )
    try:
        with database.connection(settings) as conn, conn.cursor() as cur:
            cur.execute(statement)
            conn.commit()
    except psycopg2.Error as exc:
        logger.warning(f"Could not create spatial index: {exc}")
        return False
    logger.info(f"Created spatial index on {table_name}")
    return True


def fetch_table_metadata(
    table_name: str,
    settings: config.Settings,
) -> db_models.VectorMetadata:
    """Read feature count, SRID, geometry type and extent from PostGIS.

    Args:
        table_name: Loaded table in settings.db_schema.
        settings: Application settings for database connection.

    Returns:
        VectorMetadata as stored; fields are None for an empty table.

    Raises:
        PersistenceError: If the table cannot be queried.
    """
    table = _qualified(settings, table_name)
    try:
        with database.connection(settings) as conn, conn.cursor() as cur:
            cur.execute(
                sql.SQL(
                    """
                    SELECT COUNT(*),
                        ST_XMin(ST_Extent(geom)), ST_YMin(ST_Extent(geom)),
                        ST_XMax(ST_Extent(geom)), ST_YMax(ST_Extent(geom))
                    FROM {table};
                    """
                ).format(table=table)
            )
            count_row = cur.fetchone()

            cur.execute(
                sql.SQL(
                    "SELECT GeometryType(geom), ST_SRID(geom) "
                    "FROM {table} WHERE geom IS NOT NULL LIMIT 1;"
                ).format(table=table)
            )
            geometry_row = cur.fetchone()
    except psycopg2.Error as exc:
        raise errors.PersistenceError(
            f"Could not read metadata of {table_name}: {exc}"
        ) from exc

    feature_count: int | None = None
    extent: db_models.BBox | None = None
    if count_row:
        feature_count = int(count_row[0]) if count_row[0] is not None else None
        bounds = count_row[1:]
        if len(bounds) == 4 and all(v is not None for v in bounds):
            extent = cast(db_models.BBox, tuple(map(float, bounds)))

    geometry_type, srid = geometry_row if geometry_row else (None, None)
    return db_models.VectorMetadata(
        geometry_type=geometry_type,
        feature_count=feature_count,
        srid=int(srid) if srid is not None else None,
        extent=extent,
    )


async def ingest_vector_archive(
    upload: db_models.UploadRecord,
    settings: config.Settings,
    publisher: geoserver.GeoServerPublisher,
    registrar: registrar_module.LayerRegistrar,
    *,
    srid: int | None = None,
    mode: db_models.LoadMode = db_models.LoadMode.CREATE,
) -> pipeline.IngestResult:
    """Run the vector pipeline for one upload.

    Args:
        upload: Upload being processed.
        settings: Application settings.
        publisher: Open GeoServer publisher.
        registrar: Catalog registrar.
        srid: SRID for the loader; defaults to settings.default_epsg.
        mode: Loader mode.

    Returns:
        The published result, including the catalog layer.

    Raises:
        ExtractionError: The archive holds no shapefile.
        PersistenceError: The load, verification or registration failed.
        PublishError: GeoServer provisioning failed.
    """
    extract_dir = settings.scratch_dir / upload.id
    table_name = db_models.table_name_for(upload.id)
    target = db_models.PublishTarget.for_upload(
        upload.id,
        upload.kind,
        workspace=publisher.config.workspace,
        vector_datastore=publisher.config.datastore,
    )
    try:
        logger.info(f"Extracting shapefile: {upload.original_filename}")
        shapefile = await asyncio.to_thread(
            extract_shapefile,
            pathlib.Path(upload.temp_path),
            extract_dir,
        )

        estimate = await asyncio.to_thread(inspect_shapefile, shapefile.path)

        load_srid = srid or settings.default_epsg
        await asyncio.to_thread(
            load_into_postgis,
            shapefile.path,
            table_name,
            settings,
            srid=load_srid,
            mode=mode,
        )
        await asyncio.to_thread(create_spatial_index, table_name, settings)
        stored = await asyncio.to_thread(
            fetch_table_metadata,
            table_name,
            settings,
        )
        metadata = estimate.merged_with(stored)
        if metadata.srid is None:
            metadata = dataclasses.replace(metadata, srid=load_srid)
        logger.info(
            f"Imported {metadata.feature_count} features to {table_name}"
        )

        await publisher.ensure_workspace(target.workspace)
        await publisher.ensure_datastore(
            target.workspace,
            target.store,
            geoserver.PostGISConnection.from_settings(settings),
        )
        await publisher.ensure_feature_type(
            target.workspace,
            target.store,
            target.layer,
            table_name,
        )

        result = pipeline.IngestResult(
            target=target,
            metadata=metadata,
            access_url=publisher.config.wms_layer_url(
                target.workspace,
                target.layer,
            ),
            table_name=table_name,
        )
        return await registrar.register(upload, result, publisher)
    finally:
        await asyncio.to_thread(
            shutil.rmtree,
            extract_dir,
            ignore_errors=True,
        )
