"""Load testing with Locust for the embedding service.

Run against a live service, e.g.::

    locust -f tests/load/locustfile.py --host http://localhost:8080

``EmbeddingServiceUser`` drives steady encode traffic; ``ModelSwitchUser``
switches between presets now and then so switches are measured under load.
"""

import random

from locust import HttpUser, between, task

SENTENCES = [
    "Natural gas Henry Hub futures contract",
    "Crude oil WTI front month",
    "US Treasury 10-year bond yield",
    "EUR/USD foreign exchange rate",
    "S&P 500 equity index futures",
    "Gold futures commodity contract",
    "",
]

LATENCY_TARGET_MS = 250


class EmbeddingServiceUser(HttpUser):
    """Load test user for the encode endpoints."""

    wait_time = between(0.1, 0.5)

    def on_start(self):
        """Setup for each user."""
        response = self.client.get("/health")
        if response.status_code != 200:
            raise Exception("Embedding service not available")

    @task(10)
    def encode_single(self):
        """Encode one sentence."""
        with self.client.post(
            "/api/v1/encode",
            json={"text": random.choice(SENTENCES)},
            catch_response=True
        ) as response:
            if response.status_code != 200:
                response.failure(f"HTTP {response.status_code}")
                return
            data = response.json()
            if data["dimension"] != len(data["embedding"]):
                response.failure("Dimension does not match embedding length")
            elif data["latency_ms"] > LATENCY_TARGET_MS:
                response.failure(f"Latency {data['latency_ms']:.2f}ms exceeds {LATENCY_TARGET_MS}ms target")
            else:
                response.success()

    @task(4)
    def encode_batch(self):
        """Encode a batch and check order-preserving shape."""
        texts = [random.choice(SENTENCES) for _ in range(random.randint(2, 32))]

        with self.client.post(
            "/api/v1/encode/batch",
            json={"texts": texts},
            catch_response=True
        ) as response:
            if response.status_code != 200:
                response.failure(f"HTTP {response.status_code}")
                return
            data = response.json()
            dimensions = {len(vector) for vector in data["embeddings"]}
            if data["count"] != len(texts):
                response.failure("Incorrect batch response")
            elif dimensions != {data["dimension"]}:
                response.failure("Mixed dimensions within one batch")
            else:
                response.success()

    @task(1)
    def model_info(self):
        """Read the active model."""
        with self.client.get("/api/v1/model/info", catch_response=True) as response:
            if response.status_code == 200:
                response.success()
            else:
                response.failure(f"HTTP {response.status_code}")


class ModelSwitchUser(HttpUser):
    """Occasionally switches the active model while encode traffic runs."""

    wait_time = between(20, 40)
    weight = 1

    def on_start(self):
        """Discover the configured presets."""
        response = self.client.get("/api/v1/model/presets")
        self.presets = list(response.json()) if response.status_code == 200 else []

    @task
    def switch_model(self):
        """Switch to a random preset; 409 means another switch was in flight."""
        if not self.presets:
            return

        with self.client.post(
            "/api/v1/model/switch",
            json={"preset": random.choice(self.presets)},
            catch_response=True,
            timeout=600,
        ) as response:
            if response.status_code in (200, 409):
                response.success()
            else:
                response.failure(f"HTTP {response.status_code}")
