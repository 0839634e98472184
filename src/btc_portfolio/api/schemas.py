from pydantic import BaseModel, Field

from btc_portfolio.models import RecurringPlan, Transaction, Wallet


class TransactionListResponse(BaseModel):
    transactions: list[Transaction]
    total: int


class WalletListResponse(BaseModel):
    wallets: list[Wallet]


class PlanListResponse(BaseModel):
    plans: list[RecurringPlan]
    statistics: dict[str, int]


class ConfigUpdateRequest(BaseModel):
    values: dict[str, str] = Field(default_factory=dict)
