"""Backend package for the department layer ingestion service.

This package ingests zipped ESRI shapefiles into PostGIS, one schema per
department and one table per layer, and keeps a ``layer_metadata`` catalog
row in step with every loaded table.

- Uploads are staged and extracted in per-job scratch directories that are
  always removed afterwards
- Geometry is loaded through shp2pgsql and psql, invoked with argument
  arrays and a bounded timeout
- SRID and geometry type are reconciled from PostGIS' geometry_columns
- Loads of the same department/layer are serialized, different layers
  proceed in parallel

See module sub-docstrings for details on architecture and usage.
"""
