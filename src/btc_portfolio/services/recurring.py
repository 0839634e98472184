from collections.abc import Callable
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from btc_portfolio.domain.dates import add_months, utcnow
from btc_portfolio.logger import get_logger
from btc_portfolio.models import (
    Frequency,
    PlanDraft,
    PlanUpdate,
    RecurringPlan,
    TransactionKind,
)
from btc_portfolio.storage.ledger import LedgerStore, new_id

logger = get_logger(__name__)

_FREQUENCY_STEPS = {
    Frequency.DAILY: timedelta(days=1),
    Frequency.WEEKLY: timedelta(weeks=1),
    Frequency.BIWEEKLY: timedelta(weeks=2),
}

_CLEARABLE_FIELDS = frozenset({"end_date", "max_occurrences", "notes"})


class PlanValidationError(ValueError):
    pass


class PlanNotFoundError(LookupError):
    pass


class InactivePlanError(ValueError):
    pass


def parse_frequency(raw: str | Frequency) -> Frequency:
    try:
        return Frequency(str(raw.value if isinstance(raw, Frequency) else raw).lower())
    except ValueError:
        raise PlanValidationError(
            "Invalid frequency. Must be: daily, weekly, biweekly, or monthly"
        ) from None


def calculate_next_execution(from_date: datetime, frequency: Frequency) -> datetime:
    if frequency == Frequency.MONTHLY:
        return add_months(from_date, 1)
    return from_date + _FREQUENCY_STEPS[frequency]


def should_auto_pause(plan: RecurringPlan, now: datetime) -> bool:
    if plan.max_occurrences is not None and plan.execution_count >= plan.max_occurrences:
        return True
    if plan.end_date is not None and (now >= plan.end_date or plan.next_execution > plan.end_date):
        return True
    return False


def validate_plan_values(
    *,
    fiat_amount: Decimal,
    fee: Decimal,
    frequency: str | Frequency,
    start_date: datetime,
    end_date: datetime | None,
    max_occurrences: int | None,
    kind: TransactionKind = TransactionKind.BUY,
) -> Frequency:
    if fiat_amount <= 0:
        raise PlanValidationError("Amount must be greater than 0")
    if fee < 0:
        raise PlanValidationError("Fees cannot be negative")
    if kind not in (TransactionKind.BUY, TransactionKind.SELL):
        raise PlanValidationError("Recurring plans must be BUY or SELL")
    parsed = parse_frequency(frequency)
    if end_date is not None and end_date <= start_date:
        raise PlanValidationError("End date must be after start date")
    if max_occurrences is not None and max_occurrences < 1:
        raise PlanValidationError("Max occurrences must be at least 1")
    return parsed


class RecurringPlanService:
    def __init__(self, store: LedgerStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    def create_plan(self, owner_id: str, draft: PlanDraft) -> RecurringPlan:
        frequency = validate_plan_values(
            fiat_amount=draft.fiat_amount,
            fee=draft.fee,
            frequency=draft.frequency,
            start_date=draft.start_date,
            end_date=draft.end_date,
            max_occurrences=draft.max_occurrences,
            kind=draft.kind,
        )
        if draft.start_date.date() < self.clock().date():
            raise PlanValidationError("Start date cannot be in the past")

        fields = draft.model_dump(exclude={"frequency", "fee_currency"})
        plan = RecurringPlan(
            **fields,
            fee_currency=draft.fee_currency or draft.currency,
            frequency=frequency,
            id=new_id(),
            owner_id=owner_id,
            next_execution=calculate_next_execution(draft.start_date, frequency),
        )
        self.store.add_plan(plan)
        logger.info(
            "[DCA] Created %s plan '%s' for %s (next run %s)",
            frequency.value,
            plan.name,
            owner_id,
            plan.next_execution.isoformat(),
        )
        return plan

    def get_plan(self, owner_id: str, plan_id: str) -> RecurringPlan:
        plan = self.store.get_plan(owner_id, plan_id)
        if plan is None:
            raise PlanNotFoundError(f"Recurring plan {plan_id} not found")
        return plan

    def list_plans(
        self,
        owner_id: str,
        *,
        is_active: bool | None = None,
        is_paused: bool | None = None,
        frequency: str | None = None,
    ) -> list[RecurringPlan]:
        plans = self.store.list_plans(owner_id)
        if is_active is not None:
            plans = [plan for plan in plans if plan.is_active == is_active]
        if is_paused is not None:
            plans = [plan for plan in plans if plan.is_paused == is_paused]
        if frequency:
            wanted = parse_frequency(frequency)
            plans = [plan for plan in plans if plan.frequency == wanted]
        # Active first, then running before paused, then soonest run.
        plans.sort(key=lambda plan: (not plan.is_active, plan.is_paused, plan.next_execution))
        return plans

    def update_plan(self, owner_id: str, plan_id: str, update: PlanUpdate) -> RecurringPlan:
        plan = self.get_plan(owner_id, plan_id)
        changes: dict[str, Any] = {
            key: value
            for key, value in update.model_dump(exclude_unset=True).items()
            if value is not None or key in _CLEARABLE_FIELDS
        }
        merged = plan.model_copy(update=changes)
        frequency = validate_plan_values(
            fiat_amount=merged.fiat_amount,
            fee=merged.fee,
            frequency=changes.get("frequency", plan.frequency),
            start_date=merged.start_date,
            end_date=merged.end_date,
            max_occurrences=merged.max_occurrences,
            kind=merged.kind,
        )
        changes["frequency"] = frequency
        if frequency != plan.frequency:
            anchor = plan.last_executed or plan.start_date
            changes["next_execution"] = calculate_next_execution(anchor, frequency)

        updated = RecurringPlan.model_validate({**plan.model_dump(), **changes})
        self.store.replace_plan(updated)
        logger.info("[DCA] Updated plan '%s' (%s): %s", updated.name, plan_id, sorted(changes))
        return updated

    def toggle_pause(self, owner_id: str, plan_id: str) -> RecurringPlan:
        plan = self.get_plan(owner_id, plan_id)
        return self.update_plan(owner_id, plan_id, PlanUpdate(is_paused=not plan.is_paused))

    def deactivate_plan(self, owner_id: str, plan_id: str) -> RecurringPlan:
        """Soft delete: executed transactions keep pointing at the plan."""
        plan = self.get_plan(owner_id, plan_id)
        updated = plan.model_copy(update={"is_active": False, "is_paused": True})
        self.store.replace_plan(updated)
        logger.info("[DCA] Deactivated plan '%s' (%s)", plan.name, plan_id)
        return updated

    def get_due_plans(self, now: datetime | None = None) -> list[RecurringPlan]:
        return self.store.due_plans(now or self.clock())

    def statistics(self, owner_id: str | None = None) -> dict[str, int]:
        plans = self.store.list_plans(owner_id)
        return {
            "total": len(plans),
            "active": sum(1 for plan in plans if plan.is_active and not plan.is_paused),
            "paused": sum(1 for plan in plans if plan.is_active and plan.is_paused),
            "inactive": sum(1 for plan in plans if not plan.is_active),
            "total_executions": sum(plan.execution_count for plan in plans),
        }
