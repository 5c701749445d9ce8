"""Load and performance tests.

Focus on throughput, latency, and resource utilization under realistic load.
These tests inform capacity planning and catch regressions in hot paths.
"""
