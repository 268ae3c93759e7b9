"""API router subpackage for the ingestion service.

Submodules:
    - uploads: Upload intake (202 Accepted) and upload status polling.
    - layers: Listing, reading and deleting catalog layers.

Each module exposes its own APIRouter for composition in the application's
main FastAPI instance. Routers only translate HTTP to calls on the upload
lifecycle manager kept in ``app.state.manager``.
"""
