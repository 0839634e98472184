"""Ingestion-time normalization of ledger rows.

Older ledgers describe transfers with a free-text direction tag
(``TO_COLD_WALLET`` and friends) instead of a transfer category. Rows are
classified into one of two transfer schemes and resolved to a
``TransferCategory`` exactly once, before they are stored, so downstream
calculations only ever see the structured form.
"""
from dataclasses import dataclass

from btc_portfolio.logger import get_logger
from btc_portfolio.models import (
    LegacyTransferType,
    Transaction,
    TransactionDraft,
    TransactionKind,
    TransferCategory,
)

logger = get_logger(__name__)

LEGACY_CATEGORY_MAP: dict[LegacyTransferType, TransferCategory] = {
    LegacyTransferType.TO_COLD_WALLET: TransferCategory.INTERNAL,
    LegacyTransferType.FROM_COLD_WALLET: TransferCategory.INTERNAL,
    LegacyTransferType.BETWEEN_WALLETS: TransferCategory.INTERNAL,
    LegacyTransferType.TRANSFER_IN: TransferCategory.EXTERNAL_IN,
    LegacyTransferType.TRANSFER_OUT: TransferCategory.EXTERNAL_OUT,
}


@dataclass(frozen=True)
class StructuredTransfer:
    category: TransferCategory


@dataclass(frozen=True)
class LegacyTransfer:
    raw_type: str

    @property
    def legacy_type(self) -> LegacyTransferType | None:
        try:
            return LegacyTransferType(self.raw_type.strip().upper())
        except ValueError:
            return None


TransferScheme = StructuredTransfer | LegacyTransfer


def classify_transfer(
    category: TransferCategory | None,
    transfer_type: str | None,
) -> TransferScheme:
    if category is not None:
        return StructuredTransfer(category=category)
    return LegacyTransfer(raw_type=transfer_type or "")


def resolve_category(scheme: TransferScheme) -> TransferCategory:
    if isinstance(scheme, StructuredTransfer):
        return scheme.category
    legacy_type = scheme.legacy_type
    if legacy_type is None:
        # Unknown or missing tags are treated as moves between own wallets.
        logger.warning(
            "[LEDGER] Unknown transfer type '%s', treating as internal transfer.",
            scheme.raw_type,
        )
        return TransferCategory.INTERNAL
    return LEGACY_CATEGORY_MAP[legacy_type]


def normalize_transaction(draft: TransactionDraft, *, tx_id: str, owner_id: str) -> Transaction:
    category: TransferCategory | None = None
    legacy_type: LegacyTransferType | None = None
    if draft.kind == TransactionKind.TRANSFER:
        scheme = classify_transfer(draft.transfer_category, draft.transfer_type)
        category = resolve_category(scheme)
        if isinstance(scheme, LegacyTransfer):
            legacy_type = scheme.legacy_type

    payload = draft.model_dump(exclude={"transfer_category", "transfer_type"})
    return Transaction(
        **payload,
        id=tx_id,
        owner_id=owner_id,
        transfer_category=category,
        legacy_transfer_type=legacy_type,
    )


def normalize_stored_row(row: dict) -> Transaction:
    """Upgrade a persisted row that may predate transfer categories."""
    if row.get("kind") == TransactionKind.TRANSFER.value and not row.get("transfer_category"):
        draft_fields = {key: value for key, value in row.items() if key not in {"id", "owner_id"}}
        draft_fields["transfer_type"] = row.get("legacy_transfer_type") or row.get("transfer_type")
        draft_fields.pop("legacy_transfer_type", None)
        draft = TransactionDraft.model_validate(draft_fields)
        return normalize_transaction(draft, tx_id=str(row["id"]), owner_id=str(row["owner_id"]))
    return Transaction.model_validate(row)
