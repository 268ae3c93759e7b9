"""File upload intake and upload status endpoints.

This module provides the REST surface in front of the upload lifecycle
manager. The upload endpoint stores the multipart file, records the upload
and answers 202 immediately; ingestion continues in the background. The
status endpoints return the upload record, including the catalog layer once
registration has happened.

Example:
    Upload a zipped shapefile and poll its status:
        >>> response = client.post(
        ...     "/api/uploads",
        ...     files={"file": ("roads.zip", open("roads.zip", "rb"))},
        ... )
        >>> upload_id = response.json()["upload_id"]
        >>> client.get(f"/api/uploads/{upload_id}").json()["status"]
        'processing'
"""

from __future__ import annotations

import pathlib
import tempfile
import uuid
from typing import Any

import fastapi

from geoingest.core import config, errors
from geoingest.db import models as db_models
from geoingest.services import uploads as upload_service

router = fastapi.APIRouter(prefix="/api/uploads", tags=["uploads"])


def get_manager(request: fastapi.Request) -> upload_service.UploadLifecycleManager:
    """Resolve the process-wide lifecycle manager from application state."""
    return request.app.state.manager


def _detect_kind(
    filename: str,
    settings: config.Settings,
) -> db_models.UploadKind:
    """Infer the upload kind from the file extension.

    Raises:
        HTTPException: 415 if the extension is not accepted.
    """
    suffix = pathlib.PurePath(filename).suffix.lower()
    if suffix in settings.vector_extensions:
        return db_models.UploadKind.VECTOR_ARCHIVE
    if suffix in settings.raster_extensions:
        return db_models.UploadKind.RASTER
    allowed = ", ".join(settings.vector_extensions + settings.raster_extensions)
    raise fastapi.HTTPException(
        status_code=415,
        detail=f"Invalid file type. Allowed: {allowed}",
    )


def _save_upload(
    file: fastapi.UploadFile,
    storage_dir: pathlib.Path,
    max_size: int,
) -> pathlib.Path:
    """Persist an uploaded file to disk with size validation.

    The stored name is random with the original extension, so concurrent
    uploads of the same file name never overwrite each other.

    Args:
        file: FastAPI UploadFile object containing the file data.
        storage_dir: Directory where the file should be saved.
        max_size: Maximum allowed file size in bytes.

    Returns:
        Path to the saved file.

    Raises:
        HTTPException: If the file exceeds the maximum size limit.
    """
    storage_dir.mkdir(parents=True, exist_ok=True)
    suffix = pathlib.PurePath(file.filename or "").suffix.lower()
    target_path = storage_dir / f"{uuid.uuid4()}{suffix}"
    with tempfile.NamedTemporaryFile(delete=False, dir=storage_dir) as tmp:
        tmp_path = pathlib.Path(tmp.name)
        size = 0
        for chunk in iter(lambda: file.file.read(1024 * 1024), b""):
            size += len(chunk)
            if size > max_size:
                tmp.close()
                tmp_path.unlink(missing_ok=True)
                raise fastapi.HTTPException(
                    status_code=413,
                    detail="Upload too large",
                )

            tmp.write(chunk)

        tmp.flush()

    tmp_path.replace(target_path)

    return target_path


def _with_layer(
    record: db_models.UploadRecord,
    manager: upload_service.UploadLifecycleManager,
) -> dict[str, Any]:
    result = record.to_dict()
    layer = manager.catalog_layer_for(record)
    result["layer"] = layer.to_dict() if layer else None
    return result


@router.post("", status_code=202)
async def upload_file(
    file: fastapi.UploadFile,
    kind: db_models.UploadKind | None = None,
    srid: int | None = None,
    load_mode: db_models.LoadMode = db_models.LoadMode.CREATE,
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
    manager: upload_service.UploadLifecycleManager = fastapi.Depends(  # noqa: B008
        get_manager
    ),
) -> dict[str, str]:
    """Accept a vector archive or raster and start ingesting it.

    Args:
        file: Uploaded file from multipart form data.
        kind: Declared kind; inferred from the extension when omitted.
        srid: SRID for the vector loader; defaults to settings.default_epsg.
        load_mode: Vector loader mode (create, append or drop).
        settings: Application settings (injected via FastAPI Depends).
        manager: Upload lifecycle manager (injected via FastAPI Depends).

    Returns:
        Acknowledgement with the upload id.

    Raises:
        HTTPException: 400 without a file name, 415 for unsupported
            extensions, 413 for oversized files.
    """
    if not file.filename:
        raise fastapi.HTTPException(status_code=400, detail="No file uploaded")
    declared_kind = kind or _detect_kind(file.filename, settings)
    saved_path = _save_upload(
        file,
        settings.storage_dir,
        settings.max_upload_size_bytes,
    )
    try:
        upload_id = manager.submit(
            saved_path,
            file.filename,
            declared_kind,
            srid=srid,
            load_mode=load_mode,
        )
    except Exception:
        saved_path.unlink(missing_ok=True)
        raise
    return {
        "message": "File uploaded successfully, processing in background",
        "upload_id": upload_id,
        "status": str(db_models.UploadStatus.PROCESSING),
    }


@router.get("")
async def list_uploads(
    manager: upload_service.UploadLifecycleManager = fastapi.Depends(  # noqa: B008
        get_manager
    ),
) -> list[dict[str, Any]]:
    """List the most recent uploads, newest first."""
    return [record.to_dict() for record in manager.list_uploads()]


@router.get("/{upload_id}")
async def get_upload_status(
    upload_id: str,
    manager: upload_service.UploadLifecycleManager = fastapi.Depends(  # noqa: B008
        get_manager
    ),
) -> dict[str, Any]:
    """Return an upload record together with its catalog layer, if any.

    Raises:
        HTTPException: 404 if the upload does not exist.
    """
    try:
        record = manager.get_status(upload_id)
    except errors.UploadNotFoundError:
        raise fastapi.HTTPException(
            status_code=404,
            detail="Upload not found",
        ) from None
    return _with_layer(record, manager)
