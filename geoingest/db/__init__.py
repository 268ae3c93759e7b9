"""Persistence models and repositories for uploads and catalog layers.

This package holds the upload and catalog data models together with
repository protocols and their in-memory (testing) and PostgreSQL
(production) implementations. Pipelines and the lifecycle manager receive
repositories explicitly, so tests can swap in the in-memory versions.

Example:
    Build repositories for a service:
        >>> from geoingest.db import database
        >>> uploads = database.get_upload_repository(settings)
        >>> catalog = database.get_catalog_repository(settings)
"""
