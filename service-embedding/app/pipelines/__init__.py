"""Load pipeline helpers.

Holds the retry/backoff handler used by the model loader when fetching
tokenizer and weight files. The inference core itself never retries.
"""
