from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from tally.report_models import (
    CardNotAllowed,
    CardSelectorConflict,
    InvalidCardID,
    InvalidCategoryID,
    InvalidLabelID,
    InvalidLabelMode,
    InvalidPaymentFilter,
)

LABEL_MODE_ANY = "ANY"
LABEL_MODE_ALL = "ALL"
LABEL_MODE_NONE = "NONE"
LABEL_MODES = {LABEL_MODE_ANY, LABEL_MODE_ALL, LABEL_MODE_NONE}

PAYMENT_METHOD_CASH = "cash"
PAYMENT_METHOD_CARD = "card"
PAYMENT_FILTER_CREDIT = "credit"
PAYMENT_FILTER_DEBIT = "debit"
PAYMENT_FILTERS = {
    PAYMENT_METHOD_CASH,
    PAYMENT_METHOD_CARD,
    PAYMENT_FILTER_CREDIT,
    PAYMENT_FILTER_DEBIT,
}


@dataclass(frozen=True)
class EntryListFilter:
    """Constraints an entry source applies before handing entries to the report engine."""

    date_from_utc: str
    date_to_utc: str
    category_id: Optional[int] = None
    label_ids: tuple[int, ...] = ()
    label_mode: str = LABEL_MODE_ANY
    payment_method: str = ""
    payment_card_id: Optional[int] = None
    payment_card_nickname: str = ""
    payment_card_lookup: str = ""


def validate_optional_category_id(category_id: Optional[int]) -> None:
    if category_id is not None and category_id <= 0:
        raise InvalidCategoryID("Category id must be a positive integer.")


def normalize_label_ids(label_ids: Iterable[int] | None) -> tuple[int, ...]:
    unique: set[int] = set()
    for label_id in label_ids or ():
        if label_id <= 0:
            raise InvalidLabelID("Label ids must be positive integers.")
        unique.add(label_id)
    return tuple(sorted(unique))


def normalize_label_mode(mode: str | None) -> str:
    normalized = (mode or "").strip().upper()
    if not normalized:
        return LABEL_MODE_ANY
    if normalized not in LABEL_MODES:
        raise InvalidLabelMode("Invalid label mode. Use any, all or none.")
    return normalized


def normalize_payment_method_filter(value: str | None) -> str:
    normalized = (value or "").strip().lower()
    if not normalized:
        return ""
    if normalized not in PAYMENT_FILTERS:
        raise InvalidPaymentFilter(
            "Invalid payment method filter. Use cash, card, credit or debit."
        )
    return normalized


def has_card_selector(
    card_id: Optional[int], card_nickname: str | None, card_lookup: str | None
) -> bool:
    return (
        card_id is not None
        or bool((card_nickname or "").strip())
        or bool((card_lookup or "").strip())
    )


def validate_card_selector(
    card_id: Optional[int], card_nickname: str | None, card_lookup: str | None
) -> None:
    if card_id is not None and card_id <= 0:
        raise InvalidCardID("Card id must be a positive integer.")
    selectors = [
        card_id is not None,
        bool((card_nickname or "").strip()),
        bool((card_lookup or "").strip()),
    ]
    if sum(selectors) > 1:
        raise CardSelectorConflict(
            "Use only one of card id, card nickname or card lookup."
        )


def validate_payment_selection(
    payment_method: str,
    card_id: Optional[int],
    card_nickname: str | None,
    card_lookup: str | None,
) -> None:
    validate_card_selector(card_id, card_nickname, card_lookup)
    if payment_method == PAYMENT_METHOD_CASH and has_card_selector(
        card_id, card_nickname, card_lookup
    ):
        raise CardNotAllowed("Card selector cannot be used with cash payment method.")


def matches_labels(entry_label_ids: Iterable[int], label_ids: tuple[int, ...], mode: str) -> bool:
    if not label_ids:
        return True
    attached = set(entry_label_ids)
    if mode == LABEL_MODE_ALL:
        return all(label_id in attached for label_id in label_ids)
    if mode == LABEL_MODE_NONE:
        return not any(label_id in attached for label_id in label_ids)
    return any(label_id in attached for label_id in label_ids)
