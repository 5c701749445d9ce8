"""API subpackage for the embedding service.

Contains FastAPI routers that expose endpoints for:
- Single and batch encoding (``/encode``, ``/encode/batch``)
- Model inspection and switching (``/model/info``, ``/model/switch``, ``/model/presets``)
"""
