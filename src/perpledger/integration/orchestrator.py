"""
Settlement orchestrator: applies margin-engine results to the pool and the
balance ledger, and drives the resumable epoch rollover.

Each entry point runs inside ``transaction()``: engine, pool, balance and
rollover state are checkpointed up front and restored if anything raises, so a
call either completes or leaves no trace. Within a call the order is fixed:

1. validate the price with the oracle;
2. let the engine decide and commit its own state;
3. check the user can fund their side, then apply unlock/lock and pool
   accounting;
4. issue balance transfers last.

Epoch rollover is split into batches so no single call has to visit every
instrument. Each side keeps a watermark (how many of its instrument ids, in
ascending order, have been priced). Callers pass the watermarks they expect;
the pool only rolls once both sides have been fully priced.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, Sequence, Tuple

from ..config import CallContext
from ..core.errors import AbortKind, LedgerAbort
from ..core.margin.engine import MarginEngine
from ..core.margin.types import FeeParams, SettlementResult
from ..core.oracle import PriceOracle
from ..core.pool.ledger import LiquidityPoolLedger
from ..core.pool.types import EpochCloseResult
from ..state.balances import BalanceLedger

logger = logging.getLogger(__name__)

PriceBatch = Sequence[Tuple[int, int]]


@dataclass(frozen=True)
class RolloverProgress:
    epoch: int
    long_watermark: int
    short_watermark: int
    long_total: int
    short_total: int
    lp_upl: int
    rolled: bool = False
    close: Optional[EpochCloseResult] = None


class SettlementOrchestrator:
    def __init__(
        self,
        engine: MarginEngine,
        pool: LiquidityPoolLedger,
        balances: BalanceLedger,
        oracle: PriceOracle,
        *,
        identity: str = "orchestrator",
    ) -> None:
        self.engine = engine
        self.pool = pool
        self.balances = balances
        self.oracle = oracle
        self.identity = identity
        self._long_watermark = 0
        self._short_watermark = 0
        self._lp_upl = 0

    @classmethod
    def create(cls, oracle: PriceOracle, *, identity: str = "orchestrator") -> "SettlementOrchestrator":
        """Wire a fresh balance ledger, pool and engine together."""
        balances = BalanceLedger()
        pool = LiquidityPoolLedger(balances)
        return cls(MarginEngine(pool), pool, balances, oracle, identity=identity)

    @property
    def watermarks(self) -> Tuple[int, int]:
        return self._long_watermark, self._short_watermark

    @contextmanager
    def transaction(self) -> Iterator[None]:
        saved = (
            self.engine.checkpoint(),
            self.pool.checkpoint(),
            self.balances.copy(),
            (self._long_watermark, self._short_watermark, self._lp_upl),
        )
        try:
            yield
        except BaseException:
            engine_token, pool_token, balances, rollover = saved
            self.engine.rollback(engine_token)
            self.pool.rollback(pool_token)
            self.balances.restore(balances)
            self._long_watermark, self._short_watermark, self._lp_upl = rollover
            raise

    def _own_ctx(self, ctx: CallContext) -> CallContext:
        return CallContext(caller=self.identity, now=ctx.now, config=ctx.config)

    def _require_acting_for(self, ctx: CallContext, user_id: str) -> None:
        if ctx.caller != user_id and ctx.caller not in ctx.config.pool.orchestrators:
            raise LedgerAbort(AbortKind.UNAUTHORIZED, f"{ctx.caller!r} may not act for {user_id!r}")

    def _validate_price(self, ctx: CallContext, instrument_id: int, price: int) -> int:
        inst = ctx.config.instrument(instrument_id)
        return self.oracle.validate_price(ctx, inst.product_id, instrument_id, price)

    # -- Applying results ----------------------------------------------------

    def _apply(self, ctx: CallContext, result: SettlementResult) -> None:
        if not result.success:
            return
        cfg = ctx.config
        token = cfg.usd_token
        user = result.user_id
        vault, team, pool_account = cfg.margin_vault_account, cfg.team_account, cfg.pool.pool_account
        product_id = cfg.instrument(result.instrument_id).product_id

        user_out = result.user_to_collateral + result.user_to_lp + result.user_to_team
        held = self.balances.get(user, token)
        if held < user_out:
            raise LedgerAbort(AbortKind.INSUFFICIENT_BALANCE, f"{user} holds {held} {token}, needs {user_out}")

        own = self._own_ctx(ctx)
        if result.unlocked_amount:
            self.pool.unlock_liquidity(own, product_id, result.instrument_id, result.unlocked_amount)
        if result.locked_amount:
            self.pool.lock_liquidity(own, product_id, result.instrument_id, result.locked_amount)
        pool_in = result.user_to_lp + result.collateral_to_lp
        if pool_in:
            self.pool.increase_liquidity(own, pool_in)

        self.balances.transfer(token, user, vault, result.user_to_collateral)
        self.balances.transfer(token, user, pool_account, result.user_to_lp)
        self.balances.transfer(token, user, team, result.user_to_team)
        self.balances.transfer(token, vault, user, result.collateral_to_user)
        self.balances.transfer(token, vault, pool_account, result.collateral_to_lp)
        self.balances.transfer(token, vault, team, result.collateral_to_team)
        if result.lp_to_user:
            self.pool.transfer_usd(own, user, result.lp_to_user)
        if result.lp_to_team:
            self.pool.transfer_usd(own, team, result.lp_to_team)

    # -- Margin entry points -------------------------------------------------

    def _execute(
        self,
        ctx: CallContext,
        instrument_id: int,
        price: int,
        label: str,
        run: Callable[[int], SettlementResult],
    ) -> SettlementResult:
        with self.transaction():
            if self.engine.recorded(label) is not None:
                # Replayed label: the engine returns the recorded result and
                # its funds have already moved.
                return run(price)
            price = self._validate_price(ctx, instrument_id, price)
            result = run(price)
            self._apply(ctx, result)
        return result

    def increase_position(
        self, ctx: CallContext, instrument_id: int, user_id: str, price: int,
        size_delta: int, collateral_delta: int, fees: FeeParams, label: str,
    ) -> SettlementResult:
        self._require_acting_for(ctx, user_id)
        return self._execute(ctx, instrument_id, price, label, lambda p: self.engine.increase_position(
            ctx, instrument_id, user_id, p, size_delta, collateral_delta, fees, label,
        ))

    def decrease_position(
        self, ctx: CallContext, instrument_id: int, user_id: str, price: int,
        size_delta: int, fees: FeeParams, label: str,
    ) -> SettlementResult:
        self._require_acting_for(ctx, user_id)
        return self._execute(ctx, instrument_id, price, label, lambda p: self.engine.decrease_position(
            ctx, instrument_id, user_id, p, size_delta, fees, label,
        ))

    def increase_collateral(
        self, ctx: CallContext, instrument_id: int, user_id: str, price: int,
        collateral_delta: int, fees: FeeParams, label: str,
    ) -> SettlementResult:
        self._require_acting_for(ctx, user_id)
        return self._execute(ctx, instrument_id, price, label, lambda p: self.engine.increase_collateral(
            ctx, instrument_id, user_id, p, collateral_delta, fees, label,
        ))

    def decrease_collateral(
        self, ctx: CallContext, instrument_id: int, user_id: str, price: int,
        collateral_delta: int, fees: FeeParams, label: str,
    ) -> SettlementResult:
        self._require_acting_for(ctx, user_id)
        return self._execute(ctx, instrument_id, price, label, lambda p: self.engine.decrease_collateral(
            ctx, instrument_id, user_id, p, collateral_delta, fees, label,
        ))

    def liquidate_position(
        self, ctx: CallContext, instrument_id: int, user_id: str, price: int, fees: FeeParams, label: str,
    ) -> SettlementResult:
        """Open to any caller; the engine refuses positions that meet no trigger."""
        return self._execute(ctx, instrument_id, price, label, lambda p: self.engine.liquidate_position(
            ctx, instrument_id, user_id, p, fees, label,
        ))

    # -- Epoch rollover ------------------------------------------------------

    def _price_side(self, ctx: CallContext, side: str, start: int, batch: PriceBatch) -> int:
        ids = ctx.config.instrument_ids(side)  # type: ignore[arg-type]
        expected = ids[start:start + len(batch)]
        got = [instrument_id for instrument_id, _ in batch]
        if got != expected:
            raise LedgerAbort(
                AbortKind.WATERMARK_MISMATCH,
                f"{side} batch {got} does not continue from watermark {start} (expected {expected})",
            )
        upl = 0
        for instrument_id, price in batch:
            price = self._validate_price(ctx, instrument_id, price)
            upl += self.engine.get_lp_unrealized_pnl(ctx, instrument_id, price)
        return upl

    def roll_epoch(
        self,
        ctx: CallContext,
        long_start: int,
        short_start: int,
        long_prices: PriceBatch,
        short_prices: PriceBatch,
    ) -> RolloverProgress:
        """Price one batch of instruments per side; roll the pool once all are priced."""
        if ctx.caller not in ctx.config.pool.orchestrators:
            raise LedgerAbort(AbortKind.UNAUTHORIZED, f"{ctx.caller!r} may not roll the epoch")
        if (long_start, short_start) != (self._long_watermark, self._short_watermark):
            raise LedgerAbort(
                AbortKind.WATERMARK_MISMATCH,
                f"watermarks are ({self._long_watermark}, {self._short_watermark}), "
                f"got ({long_start}, {short_start})",
            )
        if ctx.now < self.pool.state.epoch_end_time:
            raise LedgerAbort(
                AbortKind.EPOCH_NOT_ENDED,
                f"epoch {self.pool.epoch_number} ends at {self.pool.state.epoch_end_time}",
            )

        with self.transaction():
            own = self._own_ctx(ctx)
            if not self.pool.state.closing_price_claimed:
                self.pool.claim_closing_price(own)

            self._lp_upl += self._price_side(ctx, "long", long_start, long_prices)
            self._lp_upl += self._price_side(ctx, "short", short_start, short_prices)
            self._long_watermark += len(long_prices)
            self._short_watermark += len(short_prices)

            long_total = len(ctx.config.instrument_ids("long"))
            short_total = len(ctx.config.instrument_ids("short"))
            epoch = self.pool.epoch_number
            if self._long_watermark < long_total or self._short_watermark < short_total:
                logger.debug(
                    "rollover of epoch %s at long=%s/%s short=%s/%s",
                    epoch, self._long_watermark, long_total, self._short_watermark, short_total,
                )
                return RolloverProgress(
                    epoch=epoch,
                    long_watermark=self._long_watermark,
                    short_watermark=self._short_watermark,
                    long_total=long_total,
                    short_total=short_total,
                    lp_upl=self._lp_upl,
                )

            lp_upl = self._lp_upl
            close = self.pool.move_to_next_epoch(own, lp_upl)
            self._long_watermark = self._short_watermark = 0
            self._lp_upl = 0
        logger.info("rolled epoch %s with lp upl %s", epoch, lp_upl)
        return RolloverProgress(
            epoch=epoch,
            long_watermark=long_total,
            short_watermark=short_total,
            long_total=long_total,
            short_total=short_total,
            lp_upl=lp_upl,
            rolled=True,
            close=close,
        )
