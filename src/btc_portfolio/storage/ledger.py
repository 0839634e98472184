import json
import os
import threading
import uuid
from datetime import datetime
from typing import Any

from btc_portfolio.domain.ledger import normalize_stored_row, normalize_transaction
from btc_portfolio.logger import get_logger
from btc_portfolio.models import (
    RecurringPlan,
    Transaction,
    TransactionDraft,
    TransactionKind,
    TransactionUpdate,
    Wallet,
    WalletDraft,
)

logger = get_logger(__name__)


def new_id() -> str:
    return uuid.uuid4().hex


class LedgerStore:
    """Owner-scoped transactions, wallets and recurring plans.

    Backed by a single JSON file when ``data_path`` is given, otherwise kept
    in memory only. Every mutation is a single-row append or update done
    under one lock, followed by a full rewrite of the file.
    """

    def __init__(self, data_path: str | None = None):
        self.data_path = data_path
        self._lock = threading.RLock()
        self._transactions: dict[str, Transaction] = {}
        self._wallets: dict[str, Wallet] = {}
        self._plans: dict[str, RecurringPlan] = {}
        self._summaries: dict[str, dict[str, Any]] = {}
        self.load()

    def load(self) -> None:
        if not self.data_path or not os.path.exists(self.data_path):
            return
        try:
            with open(self.data_path, encoding="utf-8") as handle:
                data = json.load(handle)
        except json.JSONDecodeError as exc:
            logger.error("[LEDGER] Could not parse %s: %s", self.data_path, exc)
            return

        with self._lock:
            for row in data.get("transactions", []):
                tx = normalize_stored_row(row)
                self._transactions[tx.id] = tx
            for row in data.get("wallets", []):
                wallet = Wallet.model_validate(row)
                self._wallets[wallet.id] = wallet
            for row in data.get("plans", []):
                plan = RecurringPlan.model_validate(row)
                self._plans[plan.id] = plan
            self._summaries = dict(data.get("summaries", {}))
        logger.info(
            "[LEDGER] Loaded %s transactions, %s wallets, %s plans from %s",
            len(self._transactions),
            len(self._wallets),
            len(self._plans),
            self.data_path,
        )

    def save(self) -> None:
        if not self.data_path:
            return
        with self._lock:
            payload = {
                "transactions": [tx.model_dump(mode="json") for tx in self._transactions.values()],
                "wallets": [wallet.model_dump(mode="json") for wallet in self._wallets.values()],
                "plans": [plan.model_dump(mode="json") for plan in self._plans.values()],
                "summaries": self._summaries,
            }
            tmp_path = f"{self.data_path}.tmp"
            with open(tmp_path, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
            os.replace(tmp_path, self.data_path)

    # Transactions

    def add_transaction(self, owner_id: str, draft: TransactionDraft) -> Transaction:
        tx = normalize_transaction(draft, tx_id=new_id(), owner_id=owner_id)
        with self._lock:
            self._transactions[tx.id] = tx
            self.save()
        return tx

    def get_transaction(self, owner_id: str, tx_id: str) -> Transaction | None:
        tx = self._transactions.get(tx_id)
        if tx is None or tx.owner_id != owner_id:
            return None
        return tx

    def list_transactions(
        self,
        owner_id: str,
        *,
        wallet_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        kind: TransactionKind | None = None,
    ) -> list[Transaction]:
        with self._lock:
            rows = [tx for tx in self._transactions.values() if tx.owner_id == owner_id]
        if wallet_id:
            rows = [
                tx for tx in rows
                if wallet_id in (tx.source_wallet_id, tx.destination_wallet_id)
            ]
        if start:
            rows = [tx for tx in rows if tx.timestamp >= start]
        if end:
            rows = [tx for tx in rows if tx.timestamp <= end]
        if kind:
            rows = [tx for tx in rows if tx.kind == kind]
        rows.sort(key=lambda tx: (tx.timestamp, tx.id))
        return rows

    def update_transaction(
        self,
        owner_id: str,
        tx_id: str,
        update: TransactionUpdate,
    ) -> Transaction | None:
        with self._lock:
            current = self.get_transaction(owner_id, tx_id)
            if current is None:
                return None
            changes = update.model_dump(exclude_unset=True)
            updated = Transaction.model_validate({**current.model_dump(), **changes})
            self._transactions[tx_id] = updated
            self.save()
        return updated

    # Wallets

    def add_wallet(self, owner_id: str, draft: WalletDraft) -> Wallet:
        wallet = Wallet(**draft.model_dump(), id=new_id(), owner_id=owner_id)
        with self._lock:
            if wallet.is_default:
                for other in self.list_wallets(owner_id):
                    if other.is_default:
                        self._wallets[other.id] = other.model_copy(update={"is_default": False})
            self._wallets[wallet.id] = wallet
            self.save()
        return wallet

    def list_wallets(self, owner_id: str) -> list[Wallet]:
        with self._lock:
            return [w for w in self._wallets.values() if w.owner_id == owner_id]

    # Recurring plans

    def add_plan(self, plan: RecurringPlan) -> RecurringPlan:
        with self._lock:
            self._plans[plan.id] = plan
            self.save()
        return plan

    def get_plan(self, owner_id: str, plan_id: str) -> RecurringPlan | None:
        plan = self._plans.get(plan_id)
        if plan is None or plan.owner_id != owner_id:
            return None
        return plan

    def list_plans(self, owner_id: str | None = None) -> list[RecurringPlan]:
        with self._lock:
            plans = list(self._plans.values())
        if owner_id is not None:
            plans = [plan for plan in plans if plan.owner_id == owner_id]
        return plans

    def replace_plan(self, plan: RecurringPlan) -> RecurringPlan:
        with self._lock:
            if plan.id not in self._plans:
                raise KeyError(plan.id)
            self._plans[plan.id] = plan
            self.save()
        return plan

    def due_plans(self, now: datetime) -> list[RecurringPlan]:
        with self._lock:
            due = [
                plan for plan in self._plans.values()
                if plan.is_active and not plan.is_paused and plan.next_execution <= now
            ]
        due.sort(key=lambda plan: plan.next_execution)
        return due

    def claim_plan(
        self,
        plan_id: str,
        *,
        expected_next: datetime,
        new_next: datetime,
    ) -> RecurringPlan | None:
        """Advance ``next_execution`` only if nobody else has moved it yet."""
        with self._lock:
            plan = self._plans.get(plan_id)
            if plan is None or plan.next_execution != expected_next:
                return None
            claimed = plan.model_copy(update={"next_execution": new_next})
            self._plans[plan_id] = claimed
            self.save()
        return claimed

    def record_execution(
        self,
        plan_id: str,
        *,
        executed_at: datetime,
        is_paused: bool,
    ) -> RecurringPlan:
        with self._lock:
            plan = self._plans[plan_id]
            updated = plan.model_copy(
                update={
                    "execution_count": plan.execution_count + 1,
                    "last_executed": executed_at,
                    "is_paused": plan.is_paused or is_paused,
                }
            )
            self._plans[plan_id] = updated
            self.save()
        return updated

    # Summaries

    def save_summary(self, owner_id: str, summary: dict[str, Any]) -> None:
        with self._lock:
            self._summaries[owner_id] = summary
            self.save()

    def get_summary(self, owner_id: str) -> dict[str, Any] | None:
        return self._summaries.get(owner_id)
