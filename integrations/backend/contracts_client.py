"""On-chain writes relayed through the backend: score submission and liquidation."""
from __future__ import annotations

import logging
from typing import Any, Dict

import httpx

from integrations.backend.errors import BackendError, ExecutorError
from integrations.backend.http import BackendHTTP
from integrations.base import (DomainScore, LiquidationRequest,
                               LiquidationResult, SubmissionResult)

log = logging.getLogger(__name__)


class ContractsClient:
    """Implements both ``ScoreSubmitter`` and ``LiquidationExecutor``."""

    def __init__(self, http: BackendHTTP):
        self._http = http

    async def _post(self, path: str, body: Dict[str, Any], error_cls: type) -> Dict[str, Any]:
        try:
            resp = await self._http.post(path, json=body)
        except httpx.HTTPStatusError as exc:
            raise error_cls(
                f"{path} failed: {exc.response.status_code} {exc.response.text}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise error_cls(f"{path} failed: {exc}") from exc
        try:
            data = resp.json()
        except ValueError as exc:
            raise error_cls(f"{path} returned invalid JSON") from exc
        if not isinstance(data, dict) or not data.get("success"):
            error = data.get("error") if isinstance(data, dict) else None
            raise error_cls(f"{path} was not successful: {error or data!r}")
        return data

    async def submit_score(self, domain_token_id: int, domain_name: str, score: DomainScore) -> SubmissionResult:
        data = await self._post(
            "/contracts/submit-score",
            {
                "domainTokenId": str(domain_token_id),
                "domainName": domain_name,
                "score": score.score,
                "confidence": score.confidence,
                "reasoning": score.reasoning,
            },
            BackendError,
        )
        tx_hash = data.get("txHash")
        log.info("Score %d submitted for %s: tx %s", score.score, domain_name, tx_hash)
        result: SubmissionResult = {"raw": data}
        if tx_hash:
            result["tx_hash"] = tx_hash
        return result

    async def liquidate(self, request: LiquidationRequest) -> LiquidationResult:
        data = await self._post(
            "/contracts/liquidate-loan",
            {
                "loanId": request.loan_id,
                "domainTokenId": request.domain_token_id,
                "borrowerAddress": request.borrower_address,
            },
            ExecutorError,
        )
        tx_hash = data.get("txHash")
        if not tx_hash:
            raise ExecutorError(f"liquidation of loan {request.loan_id} returned no transaction hash")
        result: LiquidationResult = {"tx_hash": tx_hash, "raw": data}
        if data.get("auctionId") is not None:
            result["auction_id"] = str(data["auctionId"])
        return result
