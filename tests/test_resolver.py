import asyncio
import base64
import json

import pytest

from integrations.doma import DomaResolver, parse_token_uri


def _data_uri(metadata):
    return "data:application/json;base64," + base64.b64encode(json.dumps(metadata).encode()).decode()


class _Call:
    def __init__(self, result):
        self._result = result

    async def call(self):
        if isinstance(self._result, BaseException):
            raise self._result
        if self._result == "hang":
            await asyncio.sleep(10)
        return self._result


class _Functions:
    def __init__(self, names, uris):
        self.names = names
        self.uris = uris
        self.calls = []

    def getDomainName(self, token_id):
        self.calls.append(("getDomainName", token_id))
        return _Call(self.names.get(token_id, ""))

    def tokenURI(self, token_id):
        self.calls.append(("tokenURI", token_id))
        return _Call(self.uris.get(token_id, ""))


class _Contract:
    def __init__(self, names=None, uris=None):
        self.functions = _Functions(names or {}, uris or {})


def test_parse_token_uri_variants():
    assert parse_token_uri(_data_uri({"name": "example.com"})) == "example.com"
    assert parse_token_uri(_data_uri({"title": "nike.io"})) == "nike.io"
    assert parse_token_uri(_data_uri({"image": "x"})) is None
    assert parse_token_uri("data:application/json;base64,!!!") is None
    assert parse_token_uri("ipfs://Qm123") is None
    assert parse_token_uri("plain.xyz") == "plain.xyz"
    assert parse_token_uri("nodots") is None
    assert parse_token_uri("") is None


@pytest.mark.anyio
async def test_prefers_get_domain_name_and_caches():
    contract = _Contract(names={7: "example.com"})
    resolver = DomaResolver(contract)
    assert await resolver.resolve_domain_name(7) == "example.com"
    assert await resolver.resolve_domain_name(7) == "example.com"
    assert contract.functions.calls == [("getDomainName", 7)]


@pytest.mark.anyio
async def test_falls_back_to_token_uri():
    contract = _Contract(uris={8: _data_uri({"domain": "nike.io"})})
    resolver = DomaResolver(contract)
    assert await resolver.resolve_domain_name(8) == "nike.io"
    assert contract.functions.calls == [("getDomainName", 8), ("tokenURI", 8)]


@pytest.mark.anyio
async def test_rpc_failures_yield_placeholder_and_are_not_cached():
    contract = _Contract(names={9: ConnectionError("rpc down")}, uris={9: ValueError("revert")})
    resolver = DomaResolver(contract)
    assert await resolver.resolve_domain_name(9) == "domain-9"

    contract.functions.names[9] = "later.com"
    assert await resolver.resolve_domain_name(9) == "later.com"


@pytest.mark.anyio
async def test_slow_rpc_times_out():
    resolver = DomaResolver(_Contract(names={3: "hang"}, uris={3: "hang"}), timeout=0.01)
    assert await resolver.resolve_domain_name(3) == "domain-3"


@pytest.mark.anyio
async def test_cache_evicts_least_recently_used():
    contract = _Contract(names={1: "a.com", 2: "b.com", 3: "c.com"})
    resolver = DomaResolver(contract, cache_size=2)
    await resolver.resolve_domain_name(1)
    await resolver.resolve_domain_name(2)
    await resolver.resolve_domain_name(1)  # 2 is now the oldest
    await resolver.resolve_domain_name(3)
    contract.functions.calls.clear()

    assert await resolver.resolve_domain_name(1) == "a.com"
    assert await resolver.resolve_domain_name(3) == "c.com"
    assert contract.functions.calls == []
    assert await resolver.resolve_domain_name(2) == "b.com"
    assert contract.functions.calls == [("getDomainName", 2)]
