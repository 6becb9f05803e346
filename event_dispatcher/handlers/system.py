"""Administrative oracle events, journaled in ``system_event``."""
from __future__ import annotations

import logging

from common.audit import log_event
from event_dispatcher.context import ApplyContext, ApplyStatus
from lending_domain.events import (BackendServiceUpdated, EmergencyPauseToggled,
                                   PaidScoringFeeUpdated, PaymentTokenUpdated)

log = logging.getLogger(__name__)


def on_backend_service_updated(ctx: ApplyContext, event: BackendServiceUpdated) -> ApplyStatus:
    log_event(
        ctx.session,
        id=event.event_id,
        event_type="backend_service_updated",
        contract_address=event.contract_address,
        triggered_by=event.updated_by,
        old_value=event.old_service,
        new_value=event.new_service,
        event_timestamp=event.occurred_at,
        block_number=event.block_number,
        transaction_hash=event.transaction_hash,
    )
    log.info("Oracle backend service changed %s -> %s", event.old_service, event.new_service)
    return ApplyStatus.APPLIED


def on_emergency_pause_toggled(ctx: ApplyContext, event: EmergencyPauseToggled) -> ApplyStatus:
    log_event(
        ctx.session,
        id=event.event_id,
        event_type="emergency_pause_toggled",
        contract_address=event.contract_address,
        triggered_by=event.toggled_by,
        old_value=str(not event.is_paused).lower(),
        new_value=str(event.is_paused).lower(),
        event_timestamp=event.occurred_at,
        block_number=event.block_number,
        transaction_hash=event.transaction_hash,
    )
    log.warning("Oracle emergency pause is now %s", "ON" if event.is_paused else "OFF")
    return ApplyStatus.APPLIED


def on_payment_token_updated(ctx: ApplyContext, event: PaymentTokenUpdated) -> ApplyStatus:
    log_event(
        ctx.session,
        id=event.event_id,
        event_type="payment_token_updated",
        contract_address=event.contract_address,
        triggered_by=event.updated_by,
        old_value=event.old_token,
        new_value=event.new_token,
        event_timestamp=event.occurred_at,
        block_number=event.block_number,
        transaction_hash=event.transaction_hash,
    )
    log.info("Paid scoring payment token changed %s -> %s", event.old_token, event.new_token)
    return ApplyStatus.APPLIED


def on_paid_scoring_fee_updated(ctx: ApplyContext, event: PaidScoringFeeUpdated) -> ApplyStatus:
    log_event(
        ctx.session,
        id=event.event_id,
        event_type="paid_scoring_fee_updated",
        contract_address=event.contract_address,
        triggered_by=event.updated_by,
        old_value=str(event.old_fee),
        new_value=str(event.new_fee),
        event_timestamp=event.occurred_at,
        block_number=event.block_number,
        transaction_hash=event.transaction_hash,
    )
    log.info("Paid scoring fee changed %s -> %s", event.old_fee, event.new_fee)
    return ApplyStatus.APPLIED
