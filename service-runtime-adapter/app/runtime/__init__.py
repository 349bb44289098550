"""Runtime layer of the adapter.

Components, leaf to root:
- ``placement`` and ``sizing``: materialize a model's files and size them
- ``config_store``: the backend's config document with atomic persistence
- ``reload``: backend reload trigger and status verification
- ``adapter_service``: the load/unload/status orchestration

Import convenience:
- from app.runtime.adapter_service import RuntimeAdapterService
"""
