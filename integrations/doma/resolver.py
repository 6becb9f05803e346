"""Token id -> domain name through the Doma ownership-token contract.

Tries ``getDomainName(tokenId)`` first, then ``tokenURI(tokenId)`` (either a
``data:application/json;base64,`` metadata blob or a bare domain name).
Anything else, including RPC errors and timeouts, yields the placeholder
``domain-<tokenId>``. Only real names are cached, in a bounded LRU.
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
from collections import OrderedDict
from typing import Any, Optional

from web3 import AsyncHTTPProvider, AsyncWeb3

from integrations.base import placeholder_domain_name

log = logging.getLogger(__name__)

OWNERSHIP_TOKEN_ABI = [
    {
        "type": "function",
        "name": "getDomainName",
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "outputs": [{"name": "", "type": "string"}],
        "stateMutability": "view",
    },
    {
        "type": "function",
        "name": "tokenURI",
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "outputs": [{"name": "", "type": "string"}],
        "stateMutability": "view",
    },
]

_DATA_URI_PREFIX = "data:application/json;base64,"


def parse_token_uri(uri: str) -> Optional[str]:
    """Domain name carried by a token URI, or None when it has none we can read."""
    if not uri:
        return None
    if uri.startswith(_DATA_URI_PREFIX):
        try:
            metadata = json.loads(base64.b64decode(uri[len(_DATA_URI_PREFIX):]))
        except (binascii.Error, ValueError):
            return None
        if not isinstance(metadata, dict):
            return None
        for key in ("name", "domain", "title"):
            value = metadata.get(key)
            if isinstance(value, str) and value:
                return value
        return None
    if uri.startswith(("ipfs://", "http://", "https://")):
        # would need an off-chain fetch
        return None
    if "." in uri:
        return uri
    return None


class DomaResolver:
    def __init__(self, contract: Any, *, timeout: float = 10.0, cache_size: int = 4096):
        self._contract = contract
        self._timeout = timeout
        self._cache_size = cache_size
        # least recently used first
        self._cache: "OrderedDict[int, str]" = OrderedDict()

    @classmethod
    def from_rpc(cls, rpc_url: str, address: str, *, timeout: float = 10.0, cache_size: int = 4096) -> "DomaResolver":
        w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        contract = w3.eth.contract(address=AsyncWeb3.to_checksum_address(address), abi=OWNERSHIP_TOKEN_ABI)
        return cls(contract, timeout=timeout, cache_size=cache_size)

    async def _call(self, fn_name: str, token_id: int) -> Optional[str]:
        fn = getattr(self._contract.functions, fn_name)
        try:
            return await asyncio.wait_for(fn(token_id).call(), self._timeout)
        except asyncio.TimeoutError:
            log.warning("%s(%s) timed out after %ss", fn_name, token_id, self._timeout)
        except Exception as exc:  # RPC, ABI decoding and contract reverts all look different
            log.warning("%s(%s) failed: %s", fn_name, token_id, exc)
        return None

    async def resolve_domain_name(self, token_id: int) -> str:
        cached = self._cache.get(token_id)
        if cached is not None:
            self._cache.move_to_end(token_id)
            return cached

        name = await self._call("getDomainName", token_id)
        if not name:
            uri = await self._call("tokenURI", token_id)
            name = parse_token_uri(uri) if uri else None
        if not name:
            fallback = placeholder_domain_name(token_id)
            log.warning("Could not resolve token %s; using %s", token_id, fallback)
            return fallback

        self._cache[token_id] = name
        if len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)
        return name
