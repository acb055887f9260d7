from __future__ import annotations

from typing import List, Protocol, Sequence, Tuple

import structlog

from tally.report_models import (
    CapNotFound,
    MonthlyCap,
    MonthlyCapChange,
    ReportCapStatus,
    ReportPeriod,
)
from tally.report_period import month_keys_in_period

logger = structlog.get_logger(__name__)


class ReportCapReader(Protocol):
    def show(self, month_key: str) -> MonthlyCap:
        """Return the active cap for a month or raise CapNotFound."""

    def history(self, month_key: str) -> Sequence[MonthlyCapChange]:
        ...

    def expense_total(self, month_key: str, currency_code: str) -> int:
        ...


def build_cap_data(
    period: ReportPeriod, cap_reader: ReportCapReader
) -> Tuple[tuple[ReportCapStatus, ...], tuple[MonthlyCapChange, ...]]:
    """Resolve cap status and cap change history for every month the period touches.

    Months without an active cap still contribute their change history. Reader
    errors other than CapNotFound propagate to the caller.
    """
    statuses: List[ReportCapStatus] = []
    changes: List[MonthlyCapChange] = []

    for month_key in month_keys_in_period(period.from_utc, period.to_utc):
        changes.extend(cap_reader.history(month_key))

        try:
            cap = cap_reader.show(month_key)
        except CapNotFound:
            logger.debug("cap_status.no_active_cap", month_key=month_key)
            continue

        spend_total = cap_reader.expense_total(month_key, cap.currency_code)
        statuses.append(evaluate_cap(month_key, cap, spend_total))

    statuses.sort(key=lambda status: (status.month_key, status.currency_code))
    changes.sort(key=lambda change: (change.month_key, change.changed_at_utc, change.id))
    return tuple(statuses), tuple(changes)


def evaluate_cap(month_key: str, cap: MonthlyCap, spend_total: int) -> ReportCapStatus:
    overspend = max(0, spend_total - cap.amount_minor)
    return ReportCapStatus(
        month_key=month_key,
        currency_code=cap.currency_code,
        cap_amount_minor=cap.amount_minor,
        spend_total_minor=spend_total,
        overspend_minor=overspend,
        is_exceeded=overspend > 0,
    )
