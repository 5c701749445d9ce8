"""Model loading for the embedding service.

``ModelLoader`` turns ``ModelMetadata`` into a ready ``ModelUnit`` (tokenizer,
runtime on its device, resolved metadata) or raises ``ModelLoadError``.
"""
