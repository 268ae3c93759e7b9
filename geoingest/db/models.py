"""Data models for uploads, extracted metadata and catalog layers.

This module defines the core data structures that flow through the
ingestion pipelines:

- UploadRecord tracks one submitted file from acceptance to a terminal
  status, including the names it was published under.
- VectorMetadata and RasterMetadata are the value objects extracted from
  tool reports and the spatial store. Every field is independently
  nullable; absence is never an error.
- PublishTarget holds the deterministic GeoServer names for an upload.
- CatalogLayerEntry is the externally visible layer produced once per
  successful ingestion.

Example:
    Derive publish names for a raster upload:
        >>> from geoingest.db.models import PublishTarget, UploadKind
        >>> target = PublishTarget.for_upload(
        ...     "5b0c2a3e-8d7f-4c8e-9a51-0f1e2d3c4b5a",
        ...     UploadKind.RASTER,
        ...     workspace="spectra",
        ...     vector_datastore="postgis",
        ... )
        >>> target.store
        'store_5b0c2a3e8d7f4c8e9a510f1e2d3c4b5a'
"""

from __future__ import annotations

import dataclasses
import datetime
import enum
from typing import Any, NamedTuple

BBox = tuple[float, float, float, float]


class UploadKind(enum.StrEnum):
    """Declared kind of a submitted file."""

    VECTOR_ARCHIVE = "vector-archive"
    RASTER = "raster"


class UploadStatus(enum.StrEnum):
    """Lifecycle status of an upload.

    Transitions only move forward: pending -> processing ->
    completed | failed.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (UploadStatus.COMPLETED, UploadStatus.FAILED)

    def can_transition_to(self, target: UploadStatus) -> bool:
        return target in _TRANSITIONS[self]


_TRANSITIONS: dict[UploadStatus, frozenset[UploadStatus]] = {
    UploadStatus.PENDING: frozenset(
        {UploadStatus.PROCESSING, UploadStatus.FAILED}
    ),
    UploadStatus.PROCESSING: frozenset(
        {UploadStatus.COMPLETED, UploadStatus.FAILED}
    ),
    UploadStatus.COMPLETED: frozenset(),
    UploadStatus.FAILED: frozenset(),
}


class LoadMode(enum.StrEnum):
    """How the bulk loader treats an existing target table."""

    CREATE = "create"
    APPEND = "append"
    DROP = "drop"


class RasterSize(NamedTuple):
    width: int
    height: int


class PixelSize(NamedTuple):
    x: float
    y: float


@dataclasses.dataclass(frozen=True)
class Band:
    number: int
    type: str | None = None


@dataclasses.dataclass(frozen=True)
class VectorMetadata:
    """Metadata for a vector layer.

    Attributes:
        geometry_type: Geometry type name ("Polygon", "POINT", ...).
        feature_count: Number of features.
        srid: Spatial reference id of the stored geometries.
        extent: Bounding box as (minx, miny, maxx, maxy).
    """

    geometry_type: str | None = None
    feature_count: int | None = None
    srid: int | None = None
    extent: BBox | None = None

    def merged_with(self, authoritative: VectorMetadata) -> VectorMetadata:
        """Overlay the non-null fields of ``authoritative`` onto self."""
        return VectorMetadata(
            geometry_type=_prefer(
                authoritative.geometry_type, self.geometry_type
            ),
            feature_count=_prefer(
                authoritative.feature_count, self.feature_count
            ),
            srid=_prefer(authoritative.srid, self.srid),
            extent=_prefer(authoritative.extent, self.extent),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "geometry_type": self.geometry_type,
            "feature_count": self.feature_count,
            "srid": self.srid,
            "extent": list(self.extent) if self.extent else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VectorMetadata:
        extent = data.get("extent")
        return cls(
            geometry_type=data.get("geometry_type"),
            feature_count=data.get("feature_count"),
            srid=data.get("srid"),
            extent=tuple(extent) if extent else None,  # type: ignore[arg-type]
        )


@dataclasses.dataclass(frozen=True)
class RasterMetadata:
    """Metadata for a raster layer.

    Attributes:
        size: Pixel dimensions.
        projection: The PROJCS/GEOGCS line of the tool report.
        srid: EPSG code, 4326 when the report names none.
        extent: Bounding box of the corner coordinates.
        pixel_size: Pixel size along x and y.
        bands: Bands in report order.
    """

    size: RasterSize | None = None
    projection: str | None = None
    srid: int | None = 4326
    extent: BBox | None = None
    pixel_size: PixelSize | None = None
    bands: tuple[Band, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "size": self.size._asdict() if self.size else None,
            "projection": self.projection,
            "srid": self.srid,
            "extent": list(self.extent) if self.extent else None,
            "pixel_size": (
                self.pixel_size._asdict() if self.pixel_size else None
            ),
            "bands": [
                {"number": band.number, "type": band.type}
                for band in self.bands
            ],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RasterMetadata:
        size = data.get("size")
        pixel_size = data.get("pixel_size")
        extent = data.get("extent")
        return cls(
            size=RasterSize(**size) if size else None,
            projection=data.get("projection"),
            srid=data.get("srid"),
            extent=tuple(extent) if extent else None,  # type: ignore[arg-type]
            pixel_size=PixelSize(**pixel_size) if pixel_size else None,
            bands=tuple(Band(**band) for band in data.get("bands") or ()),
        )


ExtractedMetadata = VectorMetadata | RasterMetadata


def metadata_from_dict(
    kind: UploadKind,
    data: dict[str, Any] | None,
) -> ExtractedMetadata | None:
    """Rebuild the kind-specific metadata object from its JSON snapshot."""
    if data is None:
        return None
    if kind is UploadKind.VECTOR_ARCHIVE:
        return VectorMetadata.from_dict(data)
    return RasterMetadata.from_dict(data)


def _prefer[T](primary: T | None, fallback: T | None) -> T | None:
    return primary if primary is not None else fallback


@dataclasses.dataclass(frozen=True)
class PublishTarget:
    """GeoServer names an upload is published under.

    Every name is derived from the upload id (or fixed configuration), never
    generated randomly, so publishing the same upload twice addresses the
    same resources.
    """

    workspace: str
    store: str
    layer: str

    @classmethod
    def for_upload(
        cls,
        upload_id: str,
        kind: UploadKind,
        *,
        workspace: str,
        vector_datastore: str,
    ) -> PublishTarget:
        """Derive the publish target for an upload.

        Vector uploads share the configured PostGIS datastore and publish a
        feature type named after their table. Rasters get their own
        coverage store and coverage.

        Args:
            upload_id: Upload identity (a UUID string).
            kind: Declared upload kind.
            workspace: GeoServer workspace.
            vector_datastore: Name of the shared PostGIS datastore.

        Returns:
            The deterministic publish target.
        """
        token = upload_token(upload_id)
        if kind is UploadKind.VECTOR_ARCHIVE:
            return cls(workspace, vector_datastore, f"layer_{token}")
        return cls(workspace, f"store_{token}", f"coverage_{token}")


def upload_token(upload_id: str) -> str:
    """Turn an upload id into a fragment safe for SQL and REST names."""
    return "".join(c for c in upload_id if c.isalnum()).lower()


def table_name_for(upload_id: str) -> str:
    """Return the spatial-store table that receives a vector upload."""
    return f"layer_{upload_token(upload_id)}"


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(tz=datetime.UTC)


@dataclasses.dataclass
class UploadRecord:
    """One submitted file and the state of its ingestion.

    Attributes:
        id: Upload identity (UUID string).
        original_filename: Name the file was uploaded under.
        temp_path: Where the uploaded file was stored on arrival.
        kind: Declared kind of the file.
        status: Current lifecycle status.
        error_message: Failure text once status is failed.
        workspace: GeoServer workspace it was published into.
        store: GeoServer datastore or coverage store.
        layer_name: GeoServer feature type or coverage.
        table_name: Spatial-store table for vector uploads.
        file_path: Permanent raster location for raster uploads.
        metadata: Extracted metadata.
        catalog_layer_id: Catalog layer produced by this upload.
        created_at: Submission time.
        updated_at: Time of the last status change.
    """

    id: str
    original_filename: str
    temp_path: str
    kind: UploadKind
    status: UploadStatus = UploadStatus.PENDING
    error_message: str | None = None
    workspace: str | None = None
    store: str | None = None
    layer_name: str | None = None
    table_name: str | None = None
    file_path: str | None = None
    metadata: ExtractedMetadata | None = None
    catalog_layer_id: str | None = None
    created_at: datetime.datetime = dataclasses.field(default_factory=_utcnow)
    updated_at: datetime.datetime = dataclasses.field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the record for API responses."""
        return {
            "id": self.id,
            "original_filename": self.original_filename,
            "temp_path": self.temp_path,
            "kind": str(self.kind),
            "status": str(self.status),
            "error_message": self.error_message,
            "workspace": self.workspace,
            "store": self.store,
            "layer_name": self.layer_name,
            "table_name": self.table_name,
            "file_path": self.file_path,
            "metadata": self.metadata.to_dict() if self.metadata else None,
            "catalog_layer_id": self.catalog_layer_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclasses.dataclass(frozen=True)
class CatalogLayerEntry:
    """Externally visible description of a published layer.

    Attributes:
        id: Catalog identifier, assigned by the catalog on write.
        upload_id: Upload the layer was produced by.
        name: Layer name (the GeoServer layer).
        title: Human-readable title.
        description: Free-text description.
        type: Service type clients use to reach the layer ("wms").
        tile_kind: "vector" or "raster".
        access_url: Public URL of the layer.
        source_layer_name: Layer name to request from the service.
        workspace: GeoServer workspace.
        store: GeoServer datastore or coverage store.
        visible: Whether the layer is shown by default.
        queryable: Whether the layer supports feature queries.
        metadata: Snapshot of the extracted metadata.
        created_at: Registration time.
    """

    id: str | None
    upload_id: str
    name: str
    title: str
    description: str
    type: str
    tile_kind: str
    access_url: str
    source_layer_name: str
    workspace: str
    store: str
    visible: bool = True
    queryable: bool = True
    metadata: dict[str, Any] = dataclasses.field(default_factory=dict)
    created_at: datetime.datetime = dataclasses.field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        result = dataclasses.asdict(self)
        result["created_at"] = self.created_at.isoformat()
        return result
