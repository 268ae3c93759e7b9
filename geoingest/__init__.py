"""Geospatial upload ingestion service.

This package accepts user-uploaded geospatial files and turns them into
published, catalogued map layers without blocking the uploader:

- Zipped shapefiles are extracted, inspected with ``ogrinfo``, loaded into
  PostGIS with ``shp2pgsql | psql``, indexed and measured
- GeoTIFFs are validated and inspected with ``gdalinfo`` and copied into
  permanent raster storage
- Both are provisioned on GeoServer through its REST API, idempotently
- Each published layer is recorded once in the layer catalog with a WMS
  access URL and a metadata snapshot

Upload status moves pending -> processing -> completed | failed and can be
polled at any time. See the module docstrings for details.
"""
