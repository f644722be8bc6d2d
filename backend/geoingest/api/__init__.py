"""API router subpackage for the layer ingestion service.

Submodules:
    - ingest: Endpoints for creating and replacing layers from zipped
      shapefiles and for updating layer title/description.

Routers are composed into the application in ``geoingest.main``.
"""
