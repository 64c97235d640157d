"""Margin engine: per-position state, fee accrual, forced closes and settlement.

Every mutating entry point runs the same three stages:

1. Accrue pending funding/borrowing fees into the position, then evaluate
   liquidation first and max-profit closure second on the *existing* position.
   A trigger fully closes the position and replaces the requested operation.
2. Apply the requested delta, with leverage, remaining-collateral and lockable
   capital checks. Market-driven shortfalls are soft declines
   (``SettlementResult.success is False``), not errors.
3. Return a ``SettlementResult`` describing the fund movements. The engine never
   moves funds; the orchestrator applies the result after this call returns.

State (positions, instrument aggregates, fee indices, idempotency labels) is
computed on immutable records and committed in one place, after the post-state
passes the position invariants. Nothing is written before a hard abort.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterator, Mapping, Protocol, Tuple

from ...config import CallContext, InstrumentConfig
from ...state.labels import LabelTable
from ...state.positions import PositionTable
from ..errors import AbortKind, FatalInvariantError, LedgerAbort
from . import fee_index
from .invariants import check_position
from .math import BPS_SCALE, bps_of, index_weight_fee, require_uint, usd_value
from .settlement import DecreaseBreakdown, compute_decrease, max_profit
from .sides import SideStrategy, side_for
from .types import (
    FeeIndexState,
    FeeParams,
    InstrumentState,
    Operation,
    Outcome,
    Position,
    SettlementResult,
)

logger = logging.getLogger(__name__)


class CapitalView(Protocol):
    """Read-only view of pool capital used for advisory lock ceilings."""

    def available_liquidity(self) -> int: ...

    def can_lock(self, ctx: CallContext, product_id: int, instrument_id: int, amount: int) -> bool: ...


@dataclass(frozen=True)
class _Call:
    """Everything one call reads, loaded once and never written back on abort."""

    instrument_id: int
    user_id: str
    inst: InstrumentConfig
    side: SideStrategy
    price: int
    index: FeeIndexState
    stored: Position
    position: Position


class MarginEngine:
    def __init__(self, capital: CapitalView) -> None:
        self._capital = capital
        self._positions = PositionTable()
        self._instruments: Dict[int, InstrumentState] = {}
        self._fee_indices: Dict[int, FeeIndexState] = {}
        self._labels: LabelTable[SettlementResult] = LabelTable()

    # -- State access --------------------------------------------------------

    def get_position(self, user_id: str, instrument_id: int) -> Position:
        return self._positions.get(user_id, instrument_id)

    def get_instrument(self, instrument_id: int) -> InstrumentState:
        return self._instruments.get(instrument_id, InstrumentState())

    def get_fee_index(self, instrument_id: int) -> FeeIndexState:
        return self._fee_indices.get(instrument_id, FeeIndexState())

    def positions_for(self, instrument_id: int) -> Iterator[Tuple[str, Position]]:
        return self._positions.for_instrument(instrument_id)

    def recorded(self, label: Any) -> SettlementResult | None:
        """Result previously recorded under *label*, if any."""
        if not isinstance(label, str) or not label:
            return None
        return self._labels.get(label)

    def checkpoint(self) -> Any:
        # Values are frozen dataclasses, so shallow copies are complete snapshots.
        return (
            self._positions.copy(),
            dict(self._instruments),
            dict(self._fee_indices),
            self._labels.copy(),
        )

    def rollback(self, token: Any) -> None:
        positions, instruments, indices, labels = token
        self._positions = positions.copy()
        self._instruments = dict(instruments)
        self._fee_indices = dict(indices)
        self._labels = labels.copy()

    def export_state(self) -> Dict[str, Any]:
        return {
            "positions": dict(self._positions.items()),
            "instruments": dict(self._instruments),
            "fee_indices": dict(self._fee_indices),
            "labels": dict(self._labels.get_all()),
        }

    def load_state(
        self,
        *,
        positions: Mapping[Tuple[str, int], Position],
        instruments: Mapping[int, InstrumentState],
        fee_indices: Mapping[int, FeeIndexState],
        labels: Mapping[str, SettlementResult] | None = None,
    ) -> None:
        """Replace engine state wholesale (snapshot restore).

        Recorded labels are restored too, so a replay after a restore still
        returns the original result instead of executing again.
        """
        table = PositionTable()
        for (user_id, instrument_id), position in positions.items():
            violations = check_position(position)
            if violations:
                raise FatalInvariantError(violations)
            table.put(user_id, instrument_id, position)
        recorded: LabelTable[SettlementResult] = LabelTable()
        for label, result in (labels or {}).items():
            if result.label != label:
                raise ValueError(f"label {label!r} holds a result recorded as {result.label!r}")
            recorded.record(label, result)
        self._positions = table
        self._instruments = dict(instruments)
        self._fee_indices = dict(fee_indices)
        self._labels = recorded

    # -- Loading / valuation helpers -----------------------------------------

    def _load(self, ctx: CallContext, instrument_id: int, user_id: str, price: Any) -> _Call:
        inst = ctx.config.instrument(instrument_id)
        price = require_uint(price, name="price")
        if price == 0:
            raise LedgerAbort(AbortKind.INVALID_AMOUNT, "price must be positive")
        if not isinstance(user_id, str) or not user_id:
            raise LedgerAbort(AbortKind.INVALID_AMOUNT, "user_id must be a non-empty string")
        index = fee_index.accrue(self.get_fee_index(instrument_id), ctx.now)
        stored = self._positions.get(user_id, instrument_id)
        return _Call(
            instrument_id=instrument_id,
            user_id=user_id,
            inst=inst,
            side=side_for(inst.side),
            price=price,
            index=index,
            stored=stored,
            position=fee_index.accrue_position(stored, index, inst),
        )

    @staticmethod
    def _pnl(call: _Call, p: Position) -> int:
        return call.side.unrealized_pnl(p.token_size, p.open_cost, call.price, call.inst.token_decimals)

    @staticmethod
    def _fees_owed(p: Position) -> int:
        return p.cumulative_borrowing_fee + p.cumulative_team_fee + p.cumulative_funding_fee

    def _net_value(self, call: _Call, p: Position) -> int:
        return p.collateral + self._pnl(call, p) - self._fees_owed(p)

    @staticmethod
    def _liquidation_threshold(call: _Call, p: Position) -> int:
        value = usd_value(p.token_size, call.price, call.inst.token_decimals)
        return bps_of(value, call.inst.remain_collateral_ratio_bps + call.inst.predicted_liquidation_fee_bps)

    def _is_liquidatable(self, call: _Call, p: Position) -> bool:
        if not p.is_open:
            return False
        return self._net_value(call, p) <= self._liquidation_threshold(call, p)

    def _exceeds_max_profit(self, call: _Call, p: Position) -> bool:
        if not p.is_open:
            return False
        return self._pnl(call, p) > max_profit(p)

    def _max_decrease_collateral(self, call: _Call, p: Position) -> int:
        if not p.is_open:
            return 0
        value = usd_value(p.token_size, call.price, call.inst.token_decimals)
        pnl = self._pnl(call, p)
        # Remaining collateral must keep the position strictly above the
        # liquidation threshold, within max leverage, and able to cover its
        # current profit under the max-profit cap.
        floor_liq = self._liquidation_threshold(call, p) - pnl + self._fees_owed(p) + 1
        floor_leverage = -(-value // call.inst.max_leverage)
        floor_profit = -(-(pnl * BPS_SCALE) // p.max_profit_ratio) if pnl > 0 and p.max_profit_ratio else 0
        floor_collateral = max(floor_liq, floor_leverage, floor_profit, 1)
        return max(0, p.collateral - floor_collateral)

    # -- Queries -------------------------------------------------------------

    def get_usd_value(self, ctx: CallContext, instrument_id: int, size: int, price: int) -> int:
        inst = ctx.config.instrument(instrument_id)
        return usd_value(require_uint(size, name="size"), require_uint(price, name="price"), inst.token_decimals)

    def get_net_value(self, ctx: CallContext, instrument_id: int, user_id: str, price: int) -> int:
        call = self._load(ctx, instrument_id, user_id, price)
        return self._net_value(call, call.position)

    def check_liquidation(self, ctx: CallContext, instrument_id: int, user_id: str, price: int) -> bool:
        call = self._load(ctx, instrument_id, user_id, price)
        return self._is_liquidatable(call, call.position)

    def check_max_profit(self, ctx: CallContext, instrument_id: int, user_id: str, price: int) -> bool:
        call = self._load(ctx, instrument_id, user_id, price)
        return self._exceeds_max_profit(call, call.position)

    def get_max_decrease_collateral(self, ctx: CallContext, instrument_id: int, user_id: str, price: int) -> int:
        call = self._load(ctx, instrument_id, user_id, price)
        return self._max_decrease_collateral(call, call.position)

    def get_unrealized_pnl_in_usd(self, ctx: CallContext, instrument_id: int, price: int) -> int:
        """Traders' aggregate P&L on *instrument_id*, net of fees owed to the pool."""
        inst = ctx.config.instrument(instrument_id)
        price = require_uint(price, name="price")
        index = fee_index.accrue(self.get_fee_index(instrument_id), ctx.now)
        agg = self.get_instrument(instrument_id)

        price_pnl = side_for(inst.side).unrealized_pnl(agg.size_global, agg.cost_global, price, inst.token_decimals)
        pending_borrowing = index_weight_fee(
            agg.size_global, index.borrowing_fee_per_token, agg.borrowing_entry_weight, inst.token_decimals,
        )
        pending_borrowing -= bps_of(pending_borrowing, inst.team_fee_share_bps)
        pending_funding = index_weight_fee(
            agg.size_global, index.funding_fee_per_token, agg.funding_entry_weight, inst.token_decimals,
        )
        owed_to_pool = agg.borrowing_fee_global + pending_borrowing + agg.funding_fee_global + pending_funding
        return price_pnl - owed_to_pool

    def get_lp_unrealized_pnl(self, ctx: CallContext, instrument_id: int, price: int) -> int:
        """Pool-side mirror of ``get_unrealized_pnl_in_usd``."""
        return -self.get_unrealized_pnl_in_usd(ctx, instrument_id, price)

    # -- Fee-rate updates ----------------------------------------------------

    def update_borrowing_fee(self, ctx: CallContext, instrument_id: int, rate: int, price: int) -> FeeIndexState:
        inst = ctx.config.instrument(instrument_id)
        state = fee_index.update_borrowing_rate(self.get_fee_index(instrument_id), inst, rate, price, ctx.now)
        self._fee_indices[instrument_id] = state
        logger.debug("borrowing rate instrument=%s rate=%s", instrument_id, rate)
        return state

    def update_funding_fee(self, ctx: CallContext, instrument_id: int, rate: int, price: int) -> FeeIndexState:
        inst = ctx.config.instrument(instrument_id)
        state = fee_index.update_funding_rate(self.get_fee_index(instrument_id), inst, rate, price, ctx.now)
        self._fee_indices[instrument_id] = state
        logger.debug("funding rate instrument=%s rate=%s", instrument_id, rate)
        return state

    # -- Commit / result plumbing --------------------------------------------

    def _replay(self, label: Any, operation: Operation, instrument_id: int, user_id: str) -> SettlementResult | None:
        if not isinstance(label, str) or not label:
            raise LedgerAbort(AbortKind.INVALID_AMOUNT, "label must be a non-empty string")
        prior = self._labels.get(label)
        if prior is None:
            return None
        if (prior.operation, prior.instrument_id, prior.user_id) != (operation, instrument_id, user_id):
            raise LedgerAbort(AbortKind.INVALID_AMOUNT, f"label {label!r} already used for another operation")
        logger.debug("replayed label %s", label)
        return prior

    def _commit(self, call: _Call, new_position: Position, result: SettlementResult) -> None:
        violations = check_position(new_position)
        if violations:
            raise FatalInvariantError(violations)

        old = call.stored
        agg = self.get_instrument(call.instrument_id)
        new_agg = InstrumentState(
            size_global=agg.size_global + new_position.token_size - old.token_size,
            cost_global=agg.cost_global + new_position.open_cost - old.open_cost,
            borrowing_fee_global=agg.borrowing_fee_global
            + new_position.cumulative_borrowing_fee - old.cumulative_borrowing_fee,
            funding_fee_global=agg.funding_fee_global
            + new_position.cumulative_funding_fee - old.cumulative_funding_fee,
            borrowing_entry_weight=agg.borrowing_entry_weight
            + new_position.token_size * new_position.entry_borrowing_index
            - old.token_size * old.entry_borrowing_index,
            funding_entry_weight=agg.funding_entry_weight
            + new_position.token_size * new_position.entry_funding_index
            - old.token_size * old.entry_funding_index,
        )
        if min(new_agg.size_global, new_agg.cost_global, new_agg.borrowing_fee_global) < 0:
            raise FatalInvariantError(["inv_aggregates_non_negative"])

        self._positions.put(call.user_id, call.instrument_id, new_position)
        self._instruments[call.instrument_id] = new_agg
        self._fee_indices[call.instrument_id] = call.index
        self._labels.record(result.label, result)

    def _decline(self, call: _Call, operation: Operation, label: str, reason: str) -> SettlementResult:
        result = SettlementResult(
            label=label,
            operation=operation,
            instrument_id=call.instrument_id,
            user_id=call.user_id,
            outcome=Outcome.DECLINED,
            position=call.stored,
            decline_reason=reason,
        )
        self._labels.record(label, result)
        logger.warning(
            "%s declined instrument=%s user=%s: %s",
            operation.value, call.instrument_id, call.user_id, reason,
        )
        return result

    def _settle_decrease(
        self,
        call: _Call,
        operation: Operation,
        label: str,
        outcome: Outcome,
        breakdown: DecreaseBreakdown,
        size_delta: int,
    ) -> SettlementResult:
        if breakdown.lp_fee_shortfall:
            logger.warning(
                "pool fee payment truncated instrument=%s user=%s shortfall=%s",
                call.instrument_id, call.user_id, breakdown.lp_fee_shortfall,
            )
        result = SettlementResult(
            label=label,
            operation=operation,
            instrument_id=call.instrument_id,
            user_id=call.user_id,
            outcome=outcome,
            position=breakdown.position,
            collateral_to_user=breakdown.collateral_to_user,
            collateral_to_lp=breakdown.collateral_to_lp,
            collateral_to_team=breakdown.collateral_to_team,
            lp_to_user=breakdown.lp_to_user,
            lp_to_team=breakdown.lp_to_team,
            unlocked_amount=breakdown.unlocked_amount,
            size_delta=size_delta,
            realized_pnl=breakdown.realized_pnl,
            lp_fee_shortfall=breakdown.lp_fee_shortfall,
        )
        self._commit(call, breakdown.position, result)
        return result

    def _forced_close(
        self, call: _Call, operation: Operation, fees: FeeParams, label: str,
    ) -> SettlementResult | None:
        """Stage 1: liquidation strictly before max-profit closure."""
        p = call.position
        if self._is_liquidatable(call, p):
            outcome = Outcome.LIQUIDATED
            pnl_cap = None
        elif self._exceeds_max_profit(call, p):
            outcome = Outcome.MAX_PROFIT_CLOSED
            pnl_cap = max_profit(p)
        else:
            return None

        breakdown = compute_decrease(
            p,
            inst=call.inst,
            side=call.side,
            decrease_size=p.token_size,
            price=call.price,
            fees=fees,
            pool_free=self._capital.available_liquidity(),
            pnl_cap=pnl_cap,
            liquidation=outcome is Outcome.LIQUIDATED,
        )
        logger.info(
            "%s instrument=%s user=%s size=%s price=%s pnl=%s (requested %s)",
            outcome.value, call.instrument_id, call.user_id, p.token_size,
            call.price, breakdown.realized_pnl, operation.value,
        )
        return self._settle_decrease(call, operation, label, outcome, breakdown, p.token_size)

    # -- Entry points --------------------------------------------------------

    def increase_position(
        self,
        ctx: CallContext,
        instrument_id: int,
        user_id: str,
        price: int,
        size_delta: int,
        collateral_delta: int,
        fees: FeeParams,
        label: str,
    ) -> SettlementResult:
        operation = Operation.INCREASE_POSITION
        replay = self._replay(label, operation, instrument_id, user_id)
        if replay is not None:
            return replay
        size_delta = require_uint(size_delta, name="size_delta")
        collateral_delta = require_uint(collateral_delta, name="collateral_delta")
        if size_delta == 0:
            raise LedgerAbort(AbortKind.INVALID_AMOUNT, "size_delta must be positive")

        call = self._load(ctx, instrument_id, user_id, price)
        forced = self._forced_close(call, operation, fees, label)
        if forced is not None:
            return forced

        p, inst = call.position, call.inst
        value = usd_value(size_delta, call.price, inst.token_decimals)
        tx_fee = bps_of(value, fees.tx_fee_bps)
        price_impact_fee = bps_of(value, fees.price_impact_fee_bps)
        collateral_in = collateral_delta - (tx_fee + price_impact_fee)

        new_size = p.token_size + size_delta
        new_value = usd_value(new_size, call.price, inst.token_decimals)
        required = bps_of(new_value, inst.remain_collateral_ratio_bps + inst.predicted_liquidation_fee_bps)
        if collateral_in <= required:
            return self._decline(call, operation, label, "collateral does not cover required remaining collateral")

        new_collateral = p.collateral + collateral_in
        if new_value > new_collateral * inst.max_leverage:
            return self._decline(call, operation, label, "leverage above maximum")

        new_position = replace(
            p,
            token_size=new_size,
            open_cost=p.open_cost + value,
            collateral=new_collateral,
            max_profit_ratio=p.max_profit_ratio if p.is_open else inst.max_profit_ratio_bps,
        )
        lock = max_profit(new_position) - max_profit(p)
        if lock > 0 and not self._capital.can_lock(ctx, inst.product_id, instrument_id, lock):
            return self._decline(call, operation, label, "insufficient lockable pool capital")

        result = SettlementResult(
            label=label,
            operation=operation,
            instrument_id=instrument_id,
            user_id=user_id,
            outcome=Outcome.APPLIED,
            position=new_position,
            user_to_collateral=collateral_in,
            user_to_team=tx_fee,
            user_to_lp=price_impact_fee,
            locked_amount=lock,
            size_delta=size_delta,
        )
        self._commit(call, new_position, result)
        logger.debug("increase_position instrument=%s user=%s size=+%s", instrument_id, user_id, size_delta)
        return result

    def decrease_position(
        self,
        ctx: CallContext,
        instrument_id: int,
        user_id: str,
        price: int,
        size_delta: int,
        fees: FeeParams,
        label: str,
    ) -> SettlementResult:
        operation = Operation.DECREASE_POSITION
        replay = self._replay(label, operation, instrument_id, user_id)
        if replay is not None:
            return replay
        size_delta = require_uint(size_delta, name="size_delta")

        call = self._load(ctx, instrument_id, user_id, price)
        forced = self._forced_close(call, operation, fees, label)
        if forced is not None:
            return forced
        if not call.position.is_open:
            raise LedgerAbort(AbortKind.INVALID_AMOUNT, f"no open position for {user_id} on {instrument_id}")

        breakdown = compute_decrease(
            call.position,
            inst=call.inst,
            side=call.side,
            decrease_size=size_delta,
            price=call.price,
            fees=fees,
            pool_free=self._capital.available_liquidity(),
        )
        result = self._settle_decrease(call, operation, label, Outcome.APPLIED, breakdown, size_delta)
        logger.debug("decrease_position instrument=%s user=%s size=-%s", instrument_id, user_id, size_delta)
        return result

    def increase_collateral(
        self,
        ctx: CallContext,
        instrument_id: int,
        user_id: str,
        price: int,
        collateral_delta: int,
        fees: FeeParams,
        label: str,
    ) -> SettlementResult:
        operation = Operation.INCREASE_COLLATERAL
        replay = self._replay(label, operation, instrument_id, user_id)
        if replay is not None:
            return replay
        collateral_delta = require_uint(collateral_delta, name="collateral_delta")
        if collateral_delta == 0:
            raise LedgerAbort(AbortKind.INVALID_AMOUNT, "collateral_delta must be positive")

        call = self._load(ctx, instrument_id, user_id, price)
        forced = self._forced_close(call, operation, fees, label)
        if forced is not None:
            return forced
        p = call.position
        if not p.is_open:
            raise LedgerAbort(AbortKind.INVALID_AMOUNT, f"no open position for {user_id} on {instrument_id}")

        new_position = replace(p, collateral=p.collateral + collateral_delta)
        lock = max_profit(new_position) - max_profit(p)
        if lock > 0 and not self._capital.can_lock(ctx, call.inst.product_id, instrument_id, lock):
            return self._decline(call, operation, label, "insufficient lockable pool capital")

        result = SettlementResult(
            label=label,
            operation=operation,
            instrument_id=instrument_id,
            user_id=user_id,
            outcome=Outcome.APPLIED,
            position=new_position,
            user_to_collateral=collateral_delta,
            locked_amount=lock,
        )
        self._commit(call, new_position, result)
        return result

    def decrease_collateral(
        self,
        ctx: CallContext,
        instrument_id: int,
        user_id: str,
        price: int,
        collateral_delta: int,
        fees: FeeParams,
        label: str,
    ) -> SettlementResult:
        operation = Operation.DECREASE_COLLATERAL
        replay = self._replay(label, operation, instrument_id, user_id)
        if replay is not None:
            return replay
        collateral_delta = require_uint(collateral_delta, name="collateral_delta")
        if collateral_delta == 0:
            raise LedgerAbort(AbortKind.INVALID_AMOUNT, "collateral_delta must be positive")

        call = self._load(ctx, instrument_id, user_id, price)
        forced = self._forced_close(call, operation, fees, label)
        if forced is not None:
            return forced
        p = call.position
        if not p.is_open:
            raise LedgerAbort(AbortKind.INVALID_AMOUNT, f"no open position for {user_id} on {instrument_id}")

        allowed = self._max_decrease_collateral(call, p)
        if collateral_delta > allowed:
            raise LedgerAbort(
                AbortKind.INSUFFICIENT_COLLATERAL,
                f"withdrawal {collateral_delta} exceeds maximum {allowed}",
            )

        new_position = replace(p, collateral=p.collateral - collateral_delta)
        result = SettlementResult(
            label=label,
            operation=operation,
            instrument_id=instrument_id,
            user_id=user_id,
            outcome=Outcome.APPLIED,
            position=new_position,
            collateral_to_user=collateral_delta,
            unlocked_amount=max_profit(p) - max_profit(new_position),
        )
        self._commit(call, new_position, result)
        return result

    def liquidate_position(
        self,
        ctx: CallContext,
        instrument_id: int,
        user_id: str,
        price: int,
        fees: FeeParams,
        label: str,
    ) -> SettlementResult:
        operation = Operation.LIQUIDATE_POSITION
        replay = self._replay(label, operation, instrument_id, user_id)
        if replay is not None:
            return replay

        call = self._load(ctx, instrument_id, user_id, price)
        forced = self._forced_close(call, operation, fees, label)
        if forced is None:
            raise LedgerAbort(
                AbortKind.NOT_LIQUIDATABLE,
                f"position {user_id} on {instrument_id} meets no forced-close condition",
            )
        return forced
