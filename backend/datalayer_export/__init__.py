"""Datalayer export service for incident collaboration rooms.

This package publishes the features users sketch in an incident's
collaboration rooms as GeoServer layers and exports them for use outside the
platform. Layers are backed by SQL views in EPSG:3857 (Web Mercator) and are
created on first export.

- Checks the caller's identity and room permission before anything else
- Provisions missing room layers through the GeoServer REST API
- Exports layers as KML/KMZ, zipped Shapefile or GeoJSON, and incident
  workspaces as WMS/WFS GetCapabilities documents
- Always answers with a file, substituting a diagnostic text file on failure

See module sub-docstrings for details on architecture and usage.
"""
