"""Inference core of the embedding service.

- ``models``: metadata, model unit and request/result value types
- ``tokenizer``: ``TokenizerAdapter`` producing padded ``TokenBatch`` tensors
- ``runtime``: ``EncoderRuntime`` protocol and its torch implementations
- ``postprocess``: pooling and L2 normalization
- ``registry``: reader/writer guarded slot holding the active ``ModelUnit``
- ``service``: ``InferenceService`` (encode, encode_batch, switch_model)

Keep heavy ML imports within implementation modules to minimize import
overhead for unrelated paths.
"""
