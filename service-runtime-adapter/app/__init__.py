"""Runtime adapter service package.

Layout:
- ``api``: REST endpoints for the mesh control plane.
- ``runtime``: placement, sizing, config document and reload orchestration.
- ``adapters``: HTTP transport to the backend inference server.

Import convenience:
- from app.runtime.adapter_service import RuntimeAdapterService
"""
