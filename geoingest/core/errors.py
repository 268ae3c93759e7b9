"""Error taxonomy for the ingestion pipelines.

Every error a pipeline raises on purpose derives from IngestError. The
upload lifecycle manager catches them at its boundary and records the
message on the upload; nothing here is ever re-raised to the submitter.
Metadata parsing problems are deliberately absent: an unreadable tool
report yields empty metadata, not an error.
"""


class IngestError(Exception):
    """Base class for failures that abort an ingestion run."""


class ExtractionError(IngestError):
    """The archive is unreadable or holds no usable vector payload."""


class ValidationError(IngestError):
    """The raster failed inspection by the raster tool."""


class ToolInvocationError(IngestError):
    """An external process could not run or exited abnormally."""


class PublishError(IngestError):
    """A GeoServer REST call failed outside the expected not-found case."""


class PersistenceError(IngestError):
    """The spatial store load or a catalog write failed."""


class UploadNotFoundError(LookupError):
    """No upload record exists for the given identifier."""


class LayerNotFoundError(LookupError):
    """No catalog layer entry exists for the given identifier."""
