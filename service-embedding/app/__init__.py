"""Embedding service package.

Layout:
- ``api``: FastAPI route handlers and request/response models.
- ``encoders``: inference core, ``InferenceService`` and the model registry.
- ``loaders``: ``ModelLoader`` building model units from metadata.
- ``pipelines``: retry handling for model fetches.
- ``runtime``: device resolution and the metrics facade.

Import convenience:
- from app.encoders.service import InferenceService
"""
