"""API router subpackage for the datalayer export service.

Submodules:
    - datalayers: Endpoints exporting collaboration room layers (KML/KMZ,
      Shapefile, GeoJSON) and incident workspace capability documents.

Each module exposes its own APIRouter for composition in the application's
main FastAPI instance.
"""
