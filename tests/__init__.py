"""Tests for the embedding service.

Unit tests run against in-memory fakes (``tests.fakes``) so no model is
downloaded; ``load/`` holds a Locust scenario for a running service.
"""
