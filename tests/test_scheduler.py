import asyncio
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from btc_portfolio.models import PlanDraft
from btc_portfolio.services.recurring import (
    InactivePlanError,
    PlanNotFoundError,
    RecurringPlanService,
)
from btc_portfolio.services.scheduler import DCAScheduler, PriceUnavailableError
from btc_portfolio.storage.ledger import LedgerStore

NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)
PRICE = Decimal("50000")


@pytest.fixture
def store() -> LedgerStore:
    return LedgerStore()


@pytest.fixture
def plans(store: LedgerStore) -> RecurringPlanService:
    return RecurringPlanService(store=store, clock=lambda: NOW)


@pytest.fixture
def portfolio() -> MagicMock:
    mock = MagicMock()
    mock.get_btc_price = AsyncMock(return_value=PRICE)
    mock.refresh_summary = AsyncMock(return_value={})
    return mock


@pytest.fixture
def scheduler(store: LedgerStore, plans: RecurringPlanService, portfolio: MagicMock) -> DCAScheduler:
    return DCAScheduler(
        store,
        plans,
        portfolio,
        interval_seconds=3600,
        auto_tags=["DCA", "Automatic"],
        clock=lambda: NOW,
    )


def _daily_plan(plans: RecurringPlanService, **overrides):
    fields = {
        "name": "Daily sats",
        "fiat_amount": Decimal("100"),
        "frequency": "daily",
        "start_date": NOW,
    }
    fields.update(overrides)
    return plans.create_plan("owner", PlanDraft(**fields))


@pytest.mark.anyio
async def test_due_plan_creates_transaction(
    scheduler: DCAScheduler,
    plans: RecurringPlanService,
    store: LedgerStore,
    portfolio: MagicMock,
) -> None:
    plan = _daily_plan(plans, tags=["stack"])
    run_at = NOW + timedelta(days=1)

    result = await scheduler.run_once(run_at)

    assert result["executed"] == 1
    [tx] = store.list_transactions("owner")
    assert tx.btc_amount == Decimal("0.002")
    assert tx.price_per_btc == PRICE
    assert tx.total_amount == Decimal("100")
    assert tx.notes == "Auto-DCA: Daily sats"
    assert tx.tags == ["stack", "DCA", "Automatic"]
    assert tx.recurring_plan_id == plan.id
    assert tx.timestamp == run_at

    stored = plans.get_plan("owner", plan.id)
    assert stored.execution_count == 1
    assert stored.last_executed == run_at
    assert stored.next_execution == run_at + timedelta(days=1)
    portfolio.refresh_summary.assert_awaited_once_with("owner")


@pytest.mark.anyio
async def test_plan_not_due_is_left_alone(scheduler: DCAScheduler, plans: RecurringPlanService) -> None:
    _daily_plan(plans)
    result = await scheduler.run_once(NOW)
    assert result["due"] == 0
    assert result["executed"] == 0


@pytest.mark.anyio
async def test_auto_pause_after_max_occurrences(
    scheduler: DCAScheduler,
    plans: RecurringPlanService,
    store: LedgerStore,
) -> None:
    plan = _daily_plan(plans, max_occurrences=3)

    for day in range(1, 5):
        await scheduler.run_once(NOW + timedelta(days=day))

    stored = plans.get_plan("owner", plan.id)
    assert stored.execution_count == 3
    assert stored.is_paused is True
    assert len(store.list_transactions("owner")) == 3


@pytest.mark.anyio
async def test_auto_pause_when_end_date_reached(
    scheduler: DCAScheduler,
    plans: RecurringPlanService,
) -> None:
    plan = _daily_plan(plans, end_date=NOW + timedelta(days=2, hours=12))

    first = await scheduler.execute_plan(plans.get_plan("owner", plan.id), NOW + timedelta(days=1))
    assert first is not None and first.auto_paused is False
    second = await scheduler.execute_plan(plans.get_plan("owner", plan.id), NOW + timedelta(days=2))
    assert second is not None and second.auto_paused is True


@pytest.mark.anyio
async def test_one_failing_plan_does_not_stop_the_batch(
    scheduler: DCAScheduler,
    plans: RecurringPlanService,
    store: LedgerStore,
    portfolio: MagicMock,
) -> None:
    async def price_for(currency: str) -> Decimal:
        if currency == "EUR":
            raise RuntimeError("feed exploded")
        return PRICE

    portfolio.get_btc_price.side_effect = price_for
    broken = _daily_plan(plans, name="broken", currency="EUR")
    healthy = _daily_plan(plans, name="healthy")

    result = await scheduler.run_once(NOW + timedelta(days=1))

    assert result["failed"] == 1
    assert result["executed"] == 1
    assert plans.get_plan("owner", broken.id).execution_count == 0
    assert plans.get_plan("owner", healthy.id).execution_count == 1
    assert [tx.recurring_plan_id for tx in store.list_transactions("owner")] == [healthy.id]


@pytest.mark.anyio
async def test_missing_price_aborts_plan(
    scheduler: DCAScheduler,
    plans: RecurringPlanService,
    store: LedgerStore,
    portfolio: MagicMock,
) -> None:
    portfolio.get_btc_price.return_value = None
    plan = _daily_plan(plans)

    with pytest.raises(PriceUnavailableError):
        await scheduler.execute_plan(plan, NOW + timedelta(days=1))

    assert store.list_transactions("owner") == []
    assert plans.get_plan("owner", plan.id).next_execution == plan.next_execution


@pytest.mark.anyio
async def test_claimed_plan_is_not_executed_twice(
    scheduler: DCAScheduler,
    plans: RecurringPlanService,
    store: LedgerStore,
) -> None:
    plan = _daily_plan(plans)
    run_at = NOW + timedelta(days=1)

    first = await scheduler.execute_plan(plan, run_at)
    # A second worker still holding the old snapshot loses the claim.
    second = await scheduler.execute_plan(plan, run_at)

    assert first is not None
    assert second is None
    assert len(store.list_transactions("owner")) == 1


@pytest.mark.anyio
async def test_failed_write_releases_claim(
    scheduler: DCAScheduler,
    plans: RecurringPlanService,
    store: LedgerStore,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    plan = _daily_plan(plans)
    monkeypatch.setattr(store, "add_transaction", MagicMock(side_effect=OSError("disk full")))

    with pytest.raises(OSError):
        await scheduler.execute_plan(plan, NOW + timedelta(days=1))

    stored = plans.get_plan("owner", plan.id)
    assert stored.next_execution == plan.next_execution
    assert stored.execution_count == 0

    monkeypatch.undo()
    result = await scheduler.run_once(NOW + timedelta(days=1))
    assert result["executed"] == 1


@pytest.mark.anyio
async def test_ledger_writes_run_off_the_event_loop(
    scheduler: DCAScheduler,
    plans: RecurringPlanService,
    store: LedgerStore,
) -> None:
    _daily_plan(plans)
    save = store.save
    save_threads: list[int] = []

    def recording_save() -> None:
        save_threads.append(threading.get_ident())
        save()

    store.save = recording_save
    await scheduler.run_once(NOW + timedelta(days=1))

    assert len(save_threads) >= 3
    assert threading.get_ident() not in save_threads


@pytest.mark.anyio
async def test_ticks_do_not_overlap(scheduler: DCAScheduler, plans: RecurringPlanService) -> None:
    _daily_plan(plans)
    async with scheduler._tick_lock:
        result = await scheduler.run_once(NOW + timedelta(days=1))
    assert result == {"skipped": True}
    assert plans.statistics("owner")["total_executions"] == 0


@pytest.mark.anyio
async def test_execute_now_errors(scheduler: DCAScheduler, plans: RecurringPlanService) -> None:
    plan = _daily_plan(plans)
    with pytest.raises(PlanNotFoundError):
        await scheduler.execute_now("owner", "missing")

    plans.deactivate_plan("owner", plan.id)
    with pytest.raises(InactivePlanError):
        await scheduler.execute_now("owner", plan.id)


@pytest.mark.anyio
async def test_execute_now_ignores_schedule(
    scheduler: DCAScheduler,
    plans: RecurringPlanService,
    store: LedgerStore,
) -> None:
    plan = _daily_plan(plans)
    result = await scheduler.execute_now("owner", plan.id)
    assert result.success is True
    assert result.btc_amount == Decimal("0.002")
    assert store.get_transaction("owner", result.transaction_id) is not None


@pytest.mark.anyio
async def test_start_runs_first_check_immediately(
    scheduler: DCAScheduler,
    plans: RecurringPlanService,
    store: LedgerStore,
) -> None:
    _daily_plan(plans)
    scheduler.clock = lambda: NOW + timedelta(days=1)

    scheduler.start()
    for _ in range(100):
        if store.list_transactions("owner"):
            break
        await asyncio.sleep(0.01)
    assert scheduler.running
    assert len(store.list_transactions("owner")) == 1

    await scheduler.stop()
    assert not scheduler.running
    status = scheduler.status("owner")
    assert status["statistics"]["total_executions"] == 1
    assert status["last_tick"]["executed"] == 1
