"""Scoring bridge: ``GET /domains/{name}/score`` on the lending backend."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from integrations.backend.http import BackendHTTP
from integrations.base import DomainScore

log = logging.getLogger(__name__)

FALLBACK_SCORE = 50
FALLBACK_CONFIDENCE = 20
DEFAULT_CONFIDENCE = 90


class _ScoreResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    totalScore: int = Field(ge=0, le=100)
    confidence: Optional[int] = None
    reasoning: Optional[str] = None


def fallback_score(error: str) -> DomainScore:
    return DomainScore(
        score=FALLBACK_SCORE,
        confidence=FALLBACK_CONFIDENCE,
        reasoning=f"Fallback score due to backend error: {error}",
        is_fallback=True,
        error=error,
    )


class ScoringClient:
    """Never raises: any failure yields a conservative fallback ``DomainScore``."""

    def __init__(self, http: BackendHTTP, *, timeout: float = 30.0):
        self._http = http
        self._timeout = timeout

    async def score_domain(self, domain_name: str) -> DomainScore:
        try:
            resp = await asyncio.wait_for(
                self._http.get(f"/domains/{quote(domain_name, safe='')}/score"), self._timeout
            )
            payload: Dict[str, Any] = resp.json()
            if isinstance(payload.get("data"), dict):
                payload = payload["data"]
            parsed = _ScoreResponse.model_validate(payload)
        except asyncio.TimeoutError:
            return self._fallback(domain_name, f"timed out after {self._timeout}s")
        except (httpx.HTTPError, ValidationError, ValueError, AttributeError) as exc:
            return self._fallback(domain_name, str(exc) or exc.__class__.__name__)

        log.info("Scored %s: %d", domain_name, parsed.totalScore)
        return DomainScore(
            score=parsed.totalScore,
            confidence=parsed.confidence or DEFAULT_CONFIDENCE,
            reasoning=parsed.reasoning or f"AI scored domain: {parsed.totalScore}/100",
        )

    @staticmethod
    def _fallback(domain_name: str, error: str) -> DomainScore:
        log.warning("Scoring %s failed, using fallback: %s", domain_name, error)
        return fallback_score(error)
