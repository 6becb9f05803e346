"""Adapters for the lending backend REST service."""
from integrations.backend.contracts_client import ContractsClient
from integrations.backend.errors import BackendError, ExecutorError
from integrations.backend.http import BackendHTTP
from integrations.backend.scoring_client import ScoringClient

__all__ = ["BackendHTTP", "BackendError", "ContractsClient", "ExecutorError", "ScoringClient"]
