"""Shared libraries for the runtime adapter.

Subpackages:
- ``libs.common``: configuration, logging and metrics.

Notes:
- Avoid service-specific logic; keep modules cohesive and broadly useful.
"""
