"""Liquidity pool handlers. Arithmetic lives in ``event_dispatcher.ledger``."""
from __future__ import annotations

from event_dispatcher import ledger
from event_dispatcher.context import ApplyContext, ApplyStatus, require
from event_dispatcher.errors import InvalidTransitionError
from lending_domain.events import (LiquidityAdded, LiquidityRemoved,
                                   PoolCreated, PoolUpdated)
from state_store.repositories import PoolRepository


def on_pool_created(ctx: ApplyContext, event: PoolCreated) -> ApplyStatus:
    pool_id = str(event.pool_id)
    if PoolRepository(ctx.session).get(pool_id) is not None:
        raise InvalidTransitionError(f"pool {pool_id} already exists", details={"pool_id": pool_id})
    ledger.create_pool(ctx.session, event)
    return ApplyStatus.APPLIED


def on_liquidity_added(ctx: ApplyContext, event: LiquidityAdded) -> ApplyStatus:
    pool = require(PoolRepository(ctx.session).get(str(event.pool_id)), "pool", str(event.pool_id))
    ledger.add_liquidity(ctx.session, pool, event)
    return ApplyStatus.APPLIED


def on_liquidity_removed(ctx: ApplyContext, event: LiquidityRemoved) -> ApplyStatus:
    pool = require(PoolRepository(ctx.session).get(str(event.pool_id)), "pool", str(event.pool_id))
    ledger.remove_liquidity(ctx.session, pool, event)
    return ApplyStatus.APPLIED


def on_pool_updated(ctx: ApplyContext, event: PoolUpdated) -> ApplyStatus:
    pool = require(PoolRepository(ctx.session).get(str(event.pool_id)), "pool", str(event.pool_id))
    ledger.update_terms(ctx.session, pool, event)
    return ApplyStatus.APPLIED
