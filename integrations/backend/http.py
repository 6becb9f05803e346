"""Shared HTTP helper for the lending backend REST service.

Uses `httpx.AsyncClient` with:
* Base URL from ``BACKEND_API_URL`` (via ``IndexerSettings``)
* Exponential back-off retry on 429 / 502 / 503 / 504 and transport errors (max 3 attempts)
* Prometheus counters + histogram (labels: endpoint, method, status)

Network access is *never* used in CI; tests pass an ``httpx.MockTransport``.
"""
from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Any, Optional

import httpx
from prometheus_client import Counter, Histogram

from lending_observability.metrics import get_metric

__all__ = ["BackendHTTP"]

_LOG = logging.getLogger(__name__)

_RETRY_STATUSES = {429, 502, 503, 504}
_MAX_ATTEMPTS = 3

_REQUESTS_TOTAL = get_metric(
    Counter,
    "backend_http_requests_total",
    "HTTP requests to the lending backend",
    labelnames=["endpoint", "method", "status"],
)
_LATENCY_SEC = get_metric(
    Histogram,
    "backend_http_latency_seconds",
    "Latency for lending backend HTTP requests",
    labelnames=["endpoint"],
)


class BackendHTTP:
    def __init__(
        self,
        *,
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        backoff_base: float = 0.1,
    ):
        self._backoff_base = backoff_base
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        endpoint_label = url.split("?", 1)[0]
        attempt = 0
        while True:
            attempt += 1
            start = time.perf_counter()
            try:
                resp = await self._client.request(method, url, **kwargs)
            except httpx.RequestError as exc:
                _REQUESTS_TOTAL.labels(endpoint_label, method.lower(), "error").inc()
                if attempt >= _MAX_ATTEMPTS:
                    raise
                _LOG.debug("%s %s failed (%s); retrying", method, url, exc)
                await asyncio.sleep(2 ** attempt * self._backoff_base)
                continue
            _LATENCY_SEC.labels(endpoint_label).observe(time.perf_counter() - start)
            _REQUESTS_TOTAL.labels(endpoint_label, method.lower(), resp.status_code).inc()
            if resp.status_code in _RETRY_STATUSES and attempt < _MAX_ATTEMPTS:
                retry_after = resp.headers.get("Retry-After")
                delay = float(retry_after) if retry_after and retry_after.isdigit() else 2 ** attempt * self._backoff_base
                delay = delay * (1 + random.random() * 0.2)  # jitter
                await asyncio.sleep(delay)
                continue
            resp.raise_for_status()
            return resp

    async def get(self, url: str, **kw: Any) -> httpx.Response:
        return await self._request("GET", url, **kw)

    async def post(self, url: str, **kw: Any) -> httpx.Response:
        return await self._request("POST", url, **kw)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()
