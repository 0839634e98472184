from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from btc_portfolio.domain.dates import ensure_utc
from btc_portfolio.domain.tags import normalize_tags

BTC = "BTC"
SATOSHIS_PER_BTC = Decimal(100_000_000)


class TransactionKind(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    TRANSFER = "TRANSFER"


class TransferCategory(str, Enum):
    INTERNAL = "INTERNAL"
    EXTERNAL_IN = "EXTERNAL_IN"
    EXTERNAL_OUT = "EXTERNAL_OUT"


class LegacyTransferType(str, Enum):
    TO_COLD_WALLET = "TO_COLD_WALLET"
    FROM_COLD_WALLET = "FROM_COLD_WALLET"
    BETWEEN_WALLETS = "BETWEEN_WALLETS"
    TRANSFER_IN = "TRANSFER_IN"
    TRANSFER_OUT = "TRANSFER_OUT"


class Temperature(str, Enum):
    HOT = "HOT"
    COLD = "COLD"


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"


def _upper_currency(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().upper()
    return value


class TransactionFields(BaseModel):
    kind: TransactionKind
    btc_amount: Decimal = Field(gt=0)
    price_per_btc: Decimal = Field(default=Decimal(0), ge=0)
    total_amount: Decimal = Field(default=Decimal(0), ge=0)
    currency: str = "USD"
    fee: Decimal = Field(default=Decimal(0), ge=0)
    fee_currency: str = "USD"
    timestamp: datetime
    source_wallet_id: str | None = None
    destination_wallet_id: str | None = None
    tags: list[str] = Field(default_factory=list)
    notes: str | None = None

    @field_validator("currency", "fee_currency", mode="before")
    @classmethod
    def _normalize_currency(cls, value: Any) -> Any:
        return _upper_currency(value)

    @field_validator("tags", mode="before")
    @classmethod
    def _normalize_tags(cls, value: Any) -> list[str]:
        return normalize_tags(value)

    @field_validator("timestamp")
    @classmethod
    def _timestamp_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class TransactionDraft(TransactionFields):
    """Incoming ledger row, either structured or carrying a legacy transfer tag."""

    transfer_category: TransferCategory | None = None
    transfer_type: str | None = None
    recurring_plan_id: str | None = None


class Transaction(TransactionFields):
    id: str
    owner_id: str
    transfer_category: TransferCategory | None = None
    legacy_transfer_type: LegacyTransferType | None = None
    recurring_plan_id: str | None = None

    @property
    def has_btc_fee(self) -> bool:
        return self.fee_currency == BTC and self.fee > 0


class TransactionUpdate(BaseModel):
    price_per_btc: Decimal | None = Field(default=None, ge=0)
    total_amount: Decimal | None = Field(default=None, ge=0)
    fee: Decimal | None = Field(default=None, ge=0)
    fee_currency: str | None = None
    source_wallet_id: str | None = None
    destination_wallet_id: str | None = None
    tags: list[str] | None = None
    notes: str | None = None

    @field_validator("fee_currency", mode="before")
    @classmethod
    def _normalize_currency(cls, value: Any) -> Any:
        return _upper_currency(value)


class WalletDraft(BaseModel):
    name: str = Field(min_length=1)
    temperature: Temperature = Temperature.HOT
    include_in_total: bool = True
    is_default: bool = False


class Wallet(WalletDraft):
    id: str
    owner_id: str


class PlanFields(BaseModel):
    name: str = Field(min_length=1)
    kind: TransactionKind = TransactionKind.BUY
    fiat_amount: Decimal
    currency: str = "USD"
    fee: Decimal = Decimal(0)
    fee_currency: str | None = None
    frequency: str
    start_date: datetime
    end_date: datetime | None = None
    max_occurrences: int | None = None
    notes: str | None = None
    tags: list[str] = Field(default_factory=list)

    @field_validator("currency", "fee_currency", mode="before")
    @classmethod
    def _normalize_currency(cls, value: Any) -> Any:
        return _upper_currency(value)

    @field_validator("tags", mode="before")
    @classmethod
    def _normalize_tags(cls, value: Any) -> list[str]:
        return normalize_tags(value)

    @field_validator("start_date", "end_date")
    @classmethod
    def _dates_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None


class PlanDraft(PlanFields):
    pass


class PlanUpdate(BaseModel):
    name: str | None = None
    fiat_amount: Decimal | None = None
    fee: Decimal | None = None
    frequency: str | None = None
    end_date: datetime | None = None
    max_occurrences: int | None = None
    is_paused: bool | None = None
    notes: str | None = None
    tags: list[str] | None = None

    @field_validator("tags", mode="before")
    @classmethod
    def _normalize_tags(cls, value: Any) -> list[str] | None:
        return None if value is None else normalize_tags(value)

    @field_validator("end_date")
    @classmethod
    def _dates_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None


class RecurringPlan(PlanFields):
    id: str
    owner_id: str
    frequency: Frequency
    next_execution: datetime
    execution_count: int = 0
    last_executed: datetime | None = None
    is_active: bool = True
    is_paused: bool = False

    @field_validator("next_execution", "last_executed")
    @classmethod
    def _execution_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None

    @property
    def effective_fee_currency(self) -> str:
        return self.fee_currency or self.currency


class PriceQuote(BaseModel):
    price: Decimal
    change_24h: Decimal = Decimal(0)
    change_percent_24h: Decimal = Decimal(0)
    currency: str = "USD"
    fetched_at: datetime | None = None
