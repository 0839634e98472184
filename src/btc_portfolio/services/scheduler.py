import asyncio
import contextlib
from collections.abc import Callable
from datetime import datetime, timedelta
from decimal import ROUND_DOWN, Decimal
from time import perf_counter
from typing import Any

from pydantic import BaseModel

from btc_portfolio.domain.dates import format_duration, utcnow
from btc_portfolio.domain.tags import merge_tags
from btc_portfolio.logger import get_logger
from btc_portfolio.manager import PortfolioService
from btc_portfolio.models import RecurringPlan, TransactionDraft
from btc_portfolio.services.recurring import (
    InactivePlanError,
    RecurringPlanService,
    calculate_next_execution,
    should_auto_pause,
)
from btc_portfolio.storage.ledger import LedgerStore

logger = get_logger(__name__)

SATOSHI = Decimal("0.00000001")


class PriceUnavailableError(RuntimeError):
    pass


class PlanClaimedError(RuntimeError):
    pass


class ExecutionResult(BaseModel):
    success: bool
    plan_id: str
    transaction_id: str
    btc_amount: Decimal
    price_per_btc: Decimal
    next_execution: datetime
    auto_paused: bool


class DCAScheduler:
    """Polls for due recurring plans and turns each into a ledger transaction.

    Owned by the application lifespan: ``start()`` spawns the polling task,
    which checks once immediately and then every ``interval_seconds``.
    Ticks never overlap; a tick that finds the previous one still running
    is skipped.
    """

    def __init__(
        self,
        store: LedgerStore,
        plans: RecurringPlanService,
        portfolio: PortfolioService,
        *,
        interval_seconds: int,
        auto_tags: list[str] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.plans = plans
        self.portfolio = portfolio
        self.interval_seconds = interval_seconds
        self.auto_tags = auto_tags or []
        self.clock = clock
        self._task: asyncio.Task | None = None
        self._tick_lock = asyncio.Lock()
        self.last_run: datetime | None = None
        self.last_tick: dict[str, Any] = {}

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            logger.warning("[DCA] Scheduler already running.")
            return
        logger.info("[DCA] Starting scheduler (checking every %ss).", self.interval_seconds)
        self._task = asyncio.create_task(self._loop(), name="dca-scheduler")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("[DCA] Scheduler stopped.")

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("[DCA] Scheduler tick failed.")
            await asyncio.sleep(self.interval_seconds)

    async def run_once(self, now: datetime | None = None) -> dict[str, Any]:
        if self._tick_lock.locked():
            logger.warning("[DCA] Previous check still running, skipping this tick.")
            return {"skipped": True}

        async with self._tick_lock:
            now = now or self.clock()
            start = perf_counter()
            due = self.plans.get_due_plans(now)
            executed = failed = skipped = 0
            if due:
                logger.info("[DCA] Found %s due plan(s).", len(due))

            for plan in due:
                try:
                    result = await self.execute_plan(plan, now)
                except Exception:
                    failed += 1
                    logger.exception("[DCA] Plan '%s' (%s) failed.", plan.name, plan.id)
                    continue
                if result is None:
                    skipped += 1
                else:
                    executed += 1

            self.last_run = now
            self.last_tick = {
                "skipped": False,
                "due": len(due),
                "executed": executed,
                "failed": failed,
                "claimed_elsewhere": skipped,
            }
            if due:
                logger.info(
                    "[DCA] Check complete in %s: executed=%s failed=%s skipped=%s",
                    format_duration(perf_counter() - start),
                    executed,
                    failed,
                    skipped,
                )
            return dict(self.last_tick)

    async def execute_plan(self, plan: RecurringPlan, now: datetime) -> ExecutionResult | None:
        """Run one plan. Returns None when another worker already claimed it."""
        price = await self.portfolio.get_btc_price(plan.currency)
        if price is None or price <= 0:
            raise PriceUnavailableError("Unable to fetch current Bitcoin price")

        next_execution = calculate_next_execution(now, plan.frequency)
        claimed = await asyncio.to_thread(
            self.store.claim_plan,
            plan.id,
            expected_next=plan.next_execution,
            new_next=next_execution,
        )
        if claimed is None:
            logger.info("[DCA] Plan '%s' (%s) already claimed, skipping.", plan.name, plan.id)
            return None

        btc_amount = (plan.fiat_amount / price).quantize(SATOSHI, rounding=ROUND_DOWN)
        try:
            draft = TransactionDraft(
                kind=plan.kind,
                btc_amount=btc_amount,
                price_per_btc=price,
                total_amount=plan.fiat_amount,
                currency=plan.currency,
                fee=plan.fee,
                fee_currency=plan.effective_fee_currency,
                timestamp=now,
                tags=merge_tags(plan.tags, self.auto_tags),
                notes=f"Auto-DCA: {plan.name}",
                recurring_plan_id=plan.id,
            )
            tx = await asyncio.to_thread(self.store.add_transaction, plan.owner_id, draft)
        except Exception:
            # Hand the period back so the next tick retries it.
            released = await asyncio.to_thread(
                self.store.claim_plan,
                plan.id,
                expected_next=next_execution,
                new_next=plan.next_execution,
            )
            logger.error(
                "[DCA] Could not record purchase for '%s' (%s); claim %s.",
                plan.name,
                plan.id,
                "released" if released is not None else "could not be released",
            )
            raise

        after_run = claimed.model_copy(update={"execution_count": claimed.execution_count + 1})
        auto_paused = should_auto_pause(after_run, now)
        await asyncio.to_thread(self.store.record_execution, plan.id, executed_at=now, is_paused=auto_paused)

        logger.info(
            "[DCA] Executed '%s': %s BTC at %s %s (next %s%s)",
            plan.name,
            btc_amount,
            price,
            plan.currency,
            next_execution.isoformat(),
            ", auto-paused" if auto_paused else "",
        )

        try:
            await self.portfolio.refresh_summary(plan.owner_id)
        except Exception:
            logger.exception("[DCA] Summary refresh failed for %s.", plan.owner_id)

        return ExecutionResult(
            success=True,
            plan_id=plan.id,
            transaction_id=tx.id,
            btc_amount=btc_amount,
            price_per_btc=price,
            next_execution=next_execution,
            auto_paused=auto_paused,
        )

    async def execute_now(self, owner_id: str, plan_id: str) -> ExecutionResult:
        plan = self.plans.get_plan(owner_id, plan_id)
        if not plan.is_active:
            raise InactivePlanError("Recurring plan is not active")
        result = await self.execute_plan(plan, self.clock())
        if result is None:
            raise PlanClaimedError("Recurring plan is already being executed")
        return result

    def status(self, owner_id: str | None = None) -> dict[str, Any]:
        next_run = None
        if self.running and self.last_run is not None:
            next_run = self.last_run + timedelta(seconds=self.interval_seconds)
        return {
            "running": self.running,
            "interval_seconds": self.interval_seconds,
            "last_run": self.last_run,
            "next_run": next_run,
            "last_tick": dict(self.last_tick),
            "statistics": self.plans.statistics(owner_id),
        }
