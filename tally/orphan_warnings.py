from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from tally.report_models import (
    BPS_SCALE,
    DEFAULT_ORPHAN_COUNT_THRESHOLD,
    DEFAULT_ORPHAN_SPENDING_THRESHOLD_BPS,
    ENTRY_TYPE_EXPENSE,
    ORPHAN_COUNT_WARNING_MESSAGE,
    ORPHAN_SPENDING_WARNING_MESSAGE,
    TRIGGER_MONTH_CAP,
    TRIGGER_MONTH_SPEND,
    WARNING_CODE_ORPHAN_COUNT_EXCEEDED,
    WARNING_CODE_ORPHAN_SPENDING_EXCEEDED,
    Entry,
    OrphanCountWarningDetails,
    OrphanSpendingWarningDetails,
    ReportCapStatus,
    ReportPeriod,
    ReportWarning,
    Settings,
)
from tally.report_period import month_key_from_datetime

MonthCurrencyKey = Tuple[str, str]


@dataclass(frozen=True)
class OrphanThresholds:
    count_threshold: int = DEFAULT_ORPHAN_COUNT_THRESHOLD
    spending_threshold_bps: int = DEFAULT_ORPHAN_SPENDING_THRESHOLD_BPS

    @classmethod
    def from_settings(cls, settings: Settings) -> "OrphanThresholds":
        defaults = cls()
        count_threshold = settings.orphan_count_threshold
        spending_threshold_bps = settings.orphan_spending_threshold_bps
        return cls(
            count_threshold=count_threshold if count_threshold > 0 else defaults.count_threshold,
            spending_threshold_bps=(
                spending_threshold_bps
                if spending_threshold_bps > 0
                else defaults.spending_threshold_bps
            ),
        )


@dataclass
class _MonthSpend:
    orphan_spend_minor: int = 0
    month_spend_minor: int = 0


def build_orphan_warnings(
    entries: Iterable[Entry],
    period: ReportPeriod,
    cap_status: Iterable[ReportCapStatus],
    thresholds: OrphanThresholds,
) -> List[ReportWarning]:
    """Flag uncategorized activity.

    The count check covers uncategorized entries of any type over the whole
    period. The spending check only looks at uncategorized expenses, per
    calendar month and currency, against both month spend and the month cap.
    """
    orphan_count = 0
    spend_by_month: Dict[MonthCurrencyKey, _MonthSpend] = {}

    for entry in entries:
        if entry.category_id is None:
            orphan_count += 1
        if entry.type != ENTRY_TYPE_EXPENSE:
            continue
        key = (month_key_from_datetime(entry.transaction_date_utc), entry.currency_code)
        stats = spend_by_month.setdefault(key, _MonthSpend())
        stats.month_spend_minor += entry.amount_minor
        if entry.category_id is None:
            stats.orphan_spend_minor += entry.amount_minor

    warnings: List[ReportWarning] = []
    if orphan_count > thresholds.count_threshold:
        warnings.append(
            ReportWarning(
                code=WARNING_CODE_ORPHAN_COUNT_EXCEEDED,
                message=ORPHAN_COUNT_WARNING_MESSAGE,
                details=OrphanCountWarningDetails(
                    period_from_utc=period.from_utc,
                    period_to_utc=period.to_utc,
                    orphan_count=orphan_count,
                    threshold=thresholds.count_threshold,
                ),
            )
        )

    caps = {(status.month_key, status.currency_code): status for status in cap_status}
    for key in sorted(spend_by_month):
        warning = _spending_warning(
            key, spend_by_month[key], caps.get(key), thresholds.spending_threshold_bps
        )
        if warning is not None:
            warnings.append(warning)

    return warnings


def ratio_bps(part: int, whole: int) -> int:
    """Return ``part`` as basis points of ``whole``, truncated; zero when whole <= 0."""
    if whole <= 0:
        return 0
    return (part * BPS_SCALE) // whole


def _spending_warning(
    key: MonthCurrencyKey,
    stats: _MonthSpend,
    cap: Optional[ReportCapStatus],
    threshold_bps: int,
) -> Optional[ReportWarning]:
    orphan_spend = stats.orphan_spend_minor
    if orphan_spend == 0:
        return None

    month_spend = stats.month_spend_minor
    cap_amount = cap.cap_amount_minor if cap is not None else 0

    triggered_by: List[str] = []
    if month_spend > 0 and orphan_spend * BPS_SCALE > threshold_bps * month_spend:
        triggered_by.append(TRIGGER_MONTH_SPEND)
    if cap_amount > 0 and orphan_spend * BPS_SCALE > threshold_bps * cap_amount:
        triggered_by.append(TRIGGER_MONTH_CAP)
    if not triggered_by:
        return None

    month_key, currency_code = key
    return ReportWarning(
        code=WARNING_CODE_ORPHAN_SPENDING_EXCEEDED,
        message=ORPHAN_SPENDING_WARNING_MESSAGE,
        details=OrphanSpendingWarningDetails(
            month_key=month_key,
            currency_code=currency_code,
            orphan_spend_minor=orphan_spend,
            month_spend_minor=month_spend,
            cap_amount_minor=cap_amount if cap_amount > 0 else None,
            threshold_bps=threshold_bps,
            triggered_by=tuple(triggered_by),
            ratio_to_month_spend_bps=ratio_bps(orphan_spend, month_spend),
            ratio_to_cap_bps=ratio_bps(orphan_spend, cap_amount),
        ),
    )
