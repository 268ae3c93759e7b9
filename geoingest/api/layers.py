"""Catalog layer query and removal API endpoints.

This module provides REST API endpoints over the layer catalog: listing
every registered layer, reading one layer, and deleting one. Deleting a
layer also removes it from GeoServer on a best-effort basis; a GeoServer
failure is logged and does not keep the catalog entry alive.

Example:
    List all registered layers:
        >>> response = client.get("/api/layers")
        >>> layers = response.json()
        >>> # Returns: [{"id": "abc-123", "name": "layer_5b0c...",
        >>> #           "type": "wms", "tile_kind": "vector", ...}, ...]

    Remove a layer:
        >>> client.delete("/api/layers/abc-123").status_code
        204
"""

from typing import Any

import fastapi

from geoingest.api import uploads as uploads_api
from geoingest.core import errors
from geoingest.db import models as db_models
from geoingest.services import uploads as upload_service

router = fastapi.APIRouter(prefix="/api/layers", tags=["layers"])


@router.get("")
async def list_layers(
    manager: upload_service.UploadLifecycleManager = fastapi.Depends(  # noqa: B008
        uploads_api.get_manager
    ),
) -> list[dict[str, Any]]:
    """List all registered catalog layers, newest first.

    Args:
        manager: Upload lifecycle manager (injected via FastAPI Depends).

    Returns:
        List of catalog layer dictionaries. Each one carries the access
        URL, the GeoServer names and the metadata snapshot taken at
        registration time.
    """
    return [layer.to_dict() for layer in manager.catalog.all()]


@router.get("/{layer_id}")
async def get_layer(
    layer_id: str,
    manager: upload_service.UploadLifecycleManager = fastapi.Depends(  # noqa: B008
        uploads_api.get_manager
    ),
) -> dict[str, Any]:
    """Get a single catalog layer.

    Raises:
        HTTPException: If the layer is not found (404 status code).
    """
    layer: db_models.CatalogLayerEntry | None = manager.catalog.get(layer_id)
    if not layer:
        raise fastapi.HTTPException(
            status_code=404,
            detail="Layer not found",
        )

    return layer.to_dict()


@router.delete("/{layer_id}", status_code=204)
async def delete_layer(
    layer_id: str,
    manager: upload_service.UploadLifecycleManager = fastapi.Depends(  # noqa: B008
        uploads_api.get_manager
    ),
) -> fastapi.Response:
    """Delete a catalog layer and its GeoServer layer.

    Raises:
        HTTPException: If the layer is not found (404 status code).
    """
    try:
        await manager.remove_layer(layer_id)
    except errors.LayerNotFoundError:
        raise fastapi.HTTPException(
            status_code=404,
            detail="Layer not found",
        ) from None
    return fastapi.Response(status_code=204)
