from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from tally.report_models import (
    CATEGORY_ORPHAN_KEY,
    CATEGORY_ORPHAN_LABEL,
    CATEGORY_UNKNOWN_LABEL,
    ENTRY_TYPE_EXPENSE,
    ENTRY_TYPE_INCOME,
    CategoryTotal,
    CurrencyTotal,
    Entry,
    GroupTotal,
    ReportNet,
    ReportSection,
)
from tally.report_period import normalize_report_grouping, period_key_for_transaction

CategoryLabelResolver = Callable[[int], Optional[str]]

# (has_category, category_id, currency_code); orphans carry (False, 0, currency).
CategoryCurrencyKey = Tuple[bool, int, str]
GroupCurrencyKey = Tuple[str, str]


@dataclass(frozen=True)
class AggregateResult:
    earnings: ReportSection
    spending: ReportSection
    net: ReportNet


class _SectionTotals:
    def __init__(self) -> None:
        self.by_currency: Dict[str, int] = defaultdict(int)
        self.groups: Dict[GroupCurrencyKey, int] = defaultdict(int)
        self.categories: Dict[CategoryCurrencyKey, int] = defaultdict(int)

    def add(self, entry: Entry, period_key: str) -> None:
        self.by_currency[entry.currency_code] += entry.amount_minor
        self.groups[(period_key, entry.currency_code)] += entry.amount_minor
        self.categories[_category_currency_key(entry)] += entry.amount_minor

    def to_section(self, label_resolver: Optional[CategoryLabelResolver]) -> ReportSection:
        return ReportSection(
            by_currency=_currency_totals(self.by_currency),
            groups=_group_totals(self.groups),
            categories=_category_totals(self.categories, label_resolver),
        )


def build_aggregate(
    entries: Iterable[Entry],
    grouping: str,
    category_label_resolver: Optional[CategoryLabelResolver] = None,
) -> AggregateResult:
    """Total entries per currency, per period bucket and per category.

    Earnings and spending are accumulated separately; net is earnings minus
    spending for every currency seen on either side. Any unparseable
    transaction date aborts the whole aggregation.
    """
    normalized_grouping = normalize_report_grouping(grouping)
    earnings = _SectionTotals()
    spending = _SectionTotals()

    for entry in entries:
        period_key = period_key_for_transaction(entry.transaction_date_utc, normalized_grouping)
        if entry.type == ENTRY_TYPE_INCOME:
            earnings.add(entry, period_key)
        elif entry.type == ENTRY_TYPE_EXPENSE:
            spending.add(entry, period_key)

    return AggregateResult(
        earnings=earnings.to_section(category_label_resolver),
        spending=spending.to_section(category_label_resolver),
        net=ReportNet(by_currency=_net_totals(earnings.by_currency, spending.by_currency)),
    )


def sort_entries_deterministic(entries: Iterable[Entry]) -> List[Entry]:
    return sorted(
        entries,
        key=lambda entry: (
            entry.transaction_date_utc,
            entry.type,
            entry.currency_code,
            entry.amount_minor,
            entry.id,
        ),
    )


def _category_currency_key(entry: Entry) -> CategoryCurrencyKey:
    if entry.category_id is None:
        return (False, 0, entry.currency_code)
    return (True, entry.category_id, entry.currency_code)


def _currency_totals(values: Dict[str, int]) -> tuple[CurrencyTotal, ...]:
    return tuple(
        CurrencyTotal(currency_code=currency, total_minor=values[currency])
        for currency in sorted(values)
    )


def _group_totals(values: Dict[GroupCurrencyKey, int]) -> tuple[GroupTotal, ...]:
    return tuple(
        GroupTotal(period_key=period_key, currency_code=currency, total_minor=values[(period_key, currency)])
        for period_key, currency in sorted(values)
    )


def _category_totals(
    values: Dict[CategoryCurrencyKey, int],
    label_resolver: Optional[CategoryLabelResolver],
) -> tuple[CategoryTotal, ...]:
    output: List[CategoryTotal] = []
    for key in sorted(values):
        has_category, category_id, currency = key
        if not has_category:
            output.append(
                CategoryTotal(
                    category_key=CATEGORY_ORPHAN_KEY,
                    category_label=CATEGORY_ORPHAN_LABEL,
                    currency_code=currency,
                    total_minor=values[key],
                )
            )
            continue
        output.append(
            CategoryTotal(
                category_id=category_id,
                category_key=f"category:{category_id}",
                category_label=_resolve_label(category_id, label_resolver),
                currency_code=currency,
                total_minor=values[key],
            )
        )
    return tuple(output)


def _resolve_label(category_id: int, label_resolver: Optional[CategoryLabelResolver]) -> str:
    label = ""
    if label_resolver is not None:
        label = (label_resolver(category_id) or "").strip()
    return label or CATEGORY_UNKNOWN_LABEL


def _net_totals(earnings: Dict[str, int], spending: Dict[str, int]) -> tuple[CurrencyTotal, ...]:
    net: Dict[str, int] = defaultdict(int)
    for currency, total in earnings.items():
        net[currency] += total
    for currency, total in spending.items():
        net[currency] -= total
    return _currency_totals(net)
