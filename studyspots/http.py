"""HTTP client with retry/backoff and request budgeting."""
from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import requests

logger = logging.getLogger(__name__)

REQUEST_KINDS = ("places", "details", "distance")


class BudgetExceededError(RuntimeError):
    pass


class ApiStatusError(RuntimeError):
    """Raised when a Maps web service answers with a non-OK status."""

    def __init__(self, status: Optional[str], message: Optional[str] = None) -> None:
        self.status = status
        self.error_message = message
        super().__init__(f"{status}: {message}" if message else str(status))


def check_status(payload: Dict[str, Any], ok_statuses=("OK", "ZERO_RESULTS")) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise ValueError(f"Unexpected payload type: {type(payload).__name__}")
    status = payload.get("status")
    if status not in ok_statuses:
        raise ApiStatusError(status, payload.get("error_message"))
    return payload


@dataclass
class RequestMetrics:
    network: Dict[str, int] = field(default_factory=lambda: {k: 0 for k in REQUEST_KINDS})
    dedup_skips: Dict[str, int] = field(default_factory=lambda: {k: 0 for k in REQUEST_KINDS})
    failures: Dict[str, int] = field(default_factory=lambda: {k: 0 for k in REQUEST_KINDS})

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def _inc(self, counter: Dict[str, int], kind: str) -> None:
        if kind not in counter:
            raise ValueError(f"Unknown request kind: {kind}")
        with self._lock:
            counter[kind] += 1

    def inc_network(self, kind: str) -> None:
        self._inc(self.network, kind)

    def inc_dedup_skip(self, kind: str) -> None:
        self._inc(self.dedup_skips, kind)

    def inc_failure(self, kind: str) -> None:
        self._inc(self.failures, kind)

    def as_dict(self) -> Dict[str, Dict[str, int]]:
        return {
            "network": dict(self.network),
            "dedup_skips": dict(self.dedup_skips),
            "failures": dict(self.failures),
        }


class RequestBudget:
    def __init__(
        self,
        max_places: int,
        max_details: int,
        max_distance: int,
        on_consume: Optional[Callable[[str, int], None]] = None,
        metrics: Optional[RequestMetrics] = None,
    ) -> None:
        self.limits = {"places": max_places, "details": max_details, "distance": max_distance}
        self.on_consume = on_consume
        self.metrics = metrics
        self._counts = {k: 0 for k in REQUEST_KINDS}
        self._lock = threading.Lock()

    def count(self, kind: str) -> int:
        return self._counts[kind]

    def consume(self, kind: str) -> None:
        if kind not in self.limits:
            raise ValueError(f"Unknown budget kind: {kind}")
        with self._lock:
            used = self._counts[kind]
            if used >= self.limits[kind]:
                raise BudgetExceededError(
                    f"{kind.capitalize()} request budget exceeded: {used} >= {self.limits[kind]}"
                )
            self._counts[kind] = used + 1
            used += 1
        if self.metrics is not None:
            self.metrics.inc_network(kind)
        if self.on_consume:
            self.on_consume(kind, used)


class HttpClient:
    def __init__(
        self,
        api_key: str,
        timeout: int = 20,
        retry_max: int = 3,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
    ) -> None:
        self.api_key = api_key
        self.timeout = timeout
        self.retry_max = retry_max
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        # Shared by the pipeline worker threads; only get() is called on it after setup.
        self.session = requests.Session()

    def get_json(self, url: str, params: Dict[str, Any]) -> Dict[str, Any]:
        query = dict(params)
        query["key"] = self.api_key

        for attempt in range(1, self.retry_max + 1):
            try:
                resp = self.session.get(url, params=query, timeout=self.timeout)
            except requests.RequestException:
                if attempt >= self.retry_max:
                    raise
                self._sleep_backoff(attempt)
                continue

            status = resp.status_code
            if status == 200:
                try:
                    return resp.json()
                except ValueError:
                    logger.error("Non-JSON response from %s", url)
                    raise

            if status in (429, 500, 502, 503, 504):
                logger.warning("HTTP %s from %s (attempt %s)", status, url, attempt)
                if attempt >= self.retry_max:
                    resp.raise_for_status()
                if not self._sleep_retry_after(resp):
                    self._sleep_backoff(attempt)
                continue

            # Non-retryable
            logger.error("HTTP %s from %s", status, url)
            resp.raise_for_status()

        raise RuntimeError("Unexpected HTTP retry loop exit")

    def _sleep_backoff(self, attempt: int) -> None:
        base = min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)
        jitter = random.uniform(0, self.backoff_base)
        time.sleep(base + jitter)

    def _sleep_retry_after(self, resp: requests.Response) -> bool:
        retry_after = resp.headers.get("Retry-After")
        if not retry_after:
            return False
        try:
            delay = float(retry_after)
        except ValueError:
            return False
        delay = max(0.0, min(delay, self.backoff_max))
        time.sleep(delay)
        return True
