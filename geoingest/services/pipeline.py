"""Result type shared by the vector and raster pipelines."""

from __future__ import annotations

import dataclasses
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from geoingest.db import models as db_models


@dataclasses.dataclass(frozen=True)
class IngestResult:
    """Outcome of a pipeline run that reached GeoServer.

    Attributes:
        target: Names the upload was published under.
        metadata: Metadata extracted for the layer.
        access_url: Public URL of the published layer.
        table_name: PostGIS table for vector uploads.
        file_path: Permanent raster path for raster uploads.
        catalog_layer: Catalog entry, set once the layer is registered.
    """

    target: db_models.PublishTarget
    metadata: db_models.ExtractedMetadata
    access_url: str
    table_name: str | None = None
    file_path: str | None = None
    catalog_layer: db_models.CatalogLayerEntry | None = None
