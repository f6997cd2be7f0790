"""Classifier adapter: uniform scoring contract over an external ML model.

The adapter extracts a fixed-shape feature vector from the transaction and
its window snapshot, calls a backend, and enforces a hard timeout. Any
timeout or backend failure yields ``ClassifierResult.unavailable`` so the
pipeline never waits longer than the budget.

Backends:
- ``HttpClassifierBackend`` posts the vector to a model-serving endpoint.
- ``InProcessModelBackend`` wraps a loaded model object (anything with a
  ``predict`` method) and runs it in a worker thread.
"""

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
import numpy as np
import structlog

from .config import ClassifierSettings
from .errors import ClassifierUnavailableError
from .models import Channel, ClassifierResult, Transaction, WindowSnapshot

logger = structlog.get_logger()

_CHANNEL_CODES = {channel: i for i, channel in enumerate(Channel)}

# Windows the feature vector is built from
FEATURE_WINDOWS: tuple[str, ...] = ("1h", "24h", "7d")

FEATURE_NAMES: tuple[str, ...] = (
    "amount",
    "log_amount",
    "hour_of_day",
    "day_of_week",
    "channel_code",
    "has_geolocation",
    "count_1h",
    "amount_1h",
    "count_24h",
    "amount_24h",
    "count_7d",
    "amount_7d",
    "distinct_merchants_24h",
)


def extract_features(transaction: Transaction, snapshot: WindowSnapshot) -> np.ndarray:
    """Build the model input vector in ``FEATURE_NAMES`` order."""
    w1h, w24h, w7d = (snapshot.window(name) for name in FEATURE_WINDOWS)
    ts = transaction.timestamp
    return np.array(
        [
            float(transaction.amount),
            math.log1p(transaction.amount),
            float(ts.hour),
            float(ts.weekday()),
            float(_CHANNEL_CODES[transaction.channel]),
            1.0 if transaction.country else 0.0,
            float(w1h.count),
            float(w1h.total_amount),
            float(w24h.count),
            float(w24h.total_amount),
            float(w7d.count),
            float(w7d.total_amount),
            float(w24h.distinct_merchants),
        ],
        dtype=np.float64,
    )


@dataclass
class BackendResponse:
    score: float
    confidence: float | None = None
    model_version: str | None = None


class ClassifierBackend(Protocol):
    async def predict(self, features: np.ndarray) -> BackendResponse: ...


class HttpClassifierBackend:
    """Calls an external model-serving endpoint.

    Request:  ``{"feature_names": [...], "features": [...]}``
    Response: ``{"score": 0-100, "confidence": 0-1, "model_version": "..."}``
    """

    def __init__(self, url: str, client: httpx.AsyncClient | None = None) -> None:
        self._url = url
        self._client = client or httpx.AsyncClient()

    async def predict(self, features: np.ndarray) -> BackendResponse:
        try:
            response = await self._client.post(
                self._url,
                json={"feature_names": list(FEATURE_NAMES), "features": features.tolist()},
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ClassifierUnavailableError(f"classifier request failed: {e}") from e

        if "score" not in body:
            raise ClassifierUnavailableError("classifier response missing 'score'")
        return BackendResponse(
            score=float(body["score"]),
            confidence=body.get("confidence"),
            model_version=body.get("model_version"),
        )

    async def aclose(self) -> None:
        await self._client.aclose()


class InProcessModelBackend:
    """Wraps a loaded model. Probabilities in [0, 1] are scaled to 0-100."""

    def __init__(self, model: Any, model_version: str = "unknown", probability: bool = True) -> None:
        self._model = model
        self._model_version = model_version
        self._probability = probability

    def _predict_sync(self, features: np.ndarray) -> float:
        raw = self._model.predict(features.reshape(1, -1))
        # Handle both array and scalar outputs
        if isinstance(raw, np.ndarray):
            value = float(raw.ravel()[0])
        else:
            value = float(raw)
        return value * 100.0 if self._probability else value

    async def predict(self, features: np.ndarray) -> BackendResponse:
        try:
            score = await asyncio.to_thread(self._predict_sync, features)
        except Exception as e:
            raise ClassifierUnavailableError(f"model prediction failed: {e}") from e
        return BackendResponse(score=score, model_version=self._model_version)


class ClassifierAdapter:
    """Scores a transaction with a hard timeout and a sentinel fallback."""

    def __init__(
        self,
        backend: ClassifierBackend | None,
        settings: ClassifierSettings | None = None,
    ) -> None:
        self._backend = backend
        self._settings = settings or ClassifierSettings()

    @property
    def timeout_seconds(self) -> float:
        return self._settings.timeout_ms / 1000.0

    @property
    def enabled(self) -> bool:
        return self._backend is not None

    def check_windows(self, durations: dict[str, int]) -> None:
        """Reject a window configuration the feature vector cannot be built from."""
        if self._backend is None:
            return
        missing = [name for name in FEATURE_WINDOWS if name not in durations]
        if missing:
            raise ValueError(
                f"classifier features need windows {', '.join(FEATURE_WINDOWS)}; "
                f"missing: {', '.join(missing)}"
            )

    async def score(self, transaction: Transaction, snapshot: WindowSnapshot) -> ClassifierResult:
        if self._backend is None:
            return ClassifierResult.unavailable("no classifier configured")

        features = extract_features(transaction, snapshot)
        start = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                self._backend.predict(features), timeout=self.timeout_seconds
            )
        except TimeoutError:
            latency_ms = (time.perf_counter() - start) * 1000
            logger.warning(
                "classifier_timeout",
                transaction_id=transaction.transaction_id,
                timeout_ms=self._settings.timeout_ms,
                latency_ms=round(latency_ms, 2),
            )
            return ClassifierResult.unavailable("timeout", latency_ms)
        except Exception as e:
            latency_ms = (time.perf_counter() - start) * 1000
            logger.warning(
                "classifier_error",
                transaction_id=transaction.transaction_id,
                error=str(e),
                latency_ms=round(latency_ms, 2),
            )
            return ClassifierResult.unavailable(str(e) or type(e).__name__, latency_ms)

        latency_ms = (time.perf_counter() - start) * 1000
        return ClassifierResult(
            available=True,
            score=response.score,
            confidence=response.confidence,
            latency_ms=round(latency_ms, 3),
            model_version=response.model_version,
        )
