"""Database interface and repository abstractions.

This package holds the spatial store handle (connection pool lifecycle),
the layer repository protocol with its PostgreSQL and in-memory
implementations, and the data models they exchange with the ingestion
pipeline.

Example:
    Use in a service or FastAPI lifespan:
        >>> from geoingest.db import database
        >>> store = database.SpatialStore(settings)
        >>> store.open()
        >>> repo = database.get_layer_repository(store)
"""
