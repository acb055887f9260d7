from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

ENTRY_TYPE_INCOME = "income"
ENTRY_TYPE_EXPENSE = "expense"

REPORT_SCOPE_RANGE = "range"
REPORT_SCOPE_MONTHLY = "monthly"
REPORT_SCOPE_BIMONTHLY = "bimonthly"
REPORT_SCOPE_QUARTERLY = "quarterly"
REPORT_SCOPES = {
    REPORT_SCOPE_RANGE,
    REPORT_SCOPE_MONTHLY,
    REPORT_SCOPE_BIMONTHLY,
    REPORT_SCOPE_QUARTERLY,
}
SCOPE_MONTH_SPANS = {
    REPORT_SCOPE_MONTHLY: 1,
    REPORT_SCOPE_BIMONTHLY: 2,
    REPORT_SCOPE_QUARTERLY: 3,
}

REPORT_GROUPING_DAY = "day"
REPORT_GROUPING_WEEK = "week"
REPORT_GROUPING_MONTH = "month"
REPORT_GROUPINGS = {REPORT_GROUPING_DAY, REPORT_GROUPING_WEEK, REPORT_GROUPING_MONTH}

CATEGORY_ORPHAN_KEY = "orphan"
CATEGORY_ORPHAN_LABEL = "Orphan"
CATEGORY_UNKNOWN_LABEL = "Unknown Category"

DEFAULT_ORPHAN_COUNT_THRESHOLD = 5
DEFAULT_ORPHAN_SPENDING_THRESHOLD_BPS = 500
BPS_SCALE = 10000

WARNING_CODE_ORPHAN_COUNT_EXCEEDED = "ORPHAN_COUNT_THRESHOLD_EXCEEDED"
WARNING_CODE_ORPHAN_SPENDING_EXCEEDED = "ORPHAN_SPENDING_THRESHOLD_EXCEEDED"
WARNING_CODE_FX_ESTIMATE_USED = "FX_ESTIMATE_USED"
ORPHAN_COUNT_WARNING_MESSAGE = (
    "Orphan entries exceed the configured threshold for the selected period."
)
ORPHAN_SPENDING_WARNING_MESSAGE = (
    "Orphan spending exceeds the configured threshold for one or more months."
)
FX_ESTIMATE_WARNING_MESSAGE = (
    "Future-dated conversion used latest available FX rate estimate."
)

TRIGGER_MONTH_SPEND = "MONTH_SPEND"
TRIGGER_MONTH_CAP = "MONTH_CAP"


class ReportValidationError(ValueError):
    """Raised when report input fails validation. Safe to retry with corrected input."""


class InvalidReportScope(ReportValidationError):
    pass


class InvalidReportGrouping(ReportValidationError):
    pass


class InvalidReportPeriod(ReportValidationError):
    pass


class InvalidMonthKey(InvalidReportPeriod):
    pass


class InvalidTransactionDate(ReportValidationError):
    pass


class InvalidCurrencyCode(ReportValidationError):
    pass


class InvalidCategoryID(ReportValidationError):
    pass


class InvalidLabelID(ReportValidationError):
    pass


class InvalidLabelMode(ReportValidationError):
    pass


class InvalidPaymentFilter(ReportValidationError):
    pass


class InvalidCardID(ReportValidationError):
    pass


class CardSelectorConflict(ReportValidationError):
    pass


class CardNotAllowed(ReportValidationError):
    pass


class FXRateUnavailable(RuntimeError):
    """Raised when no FX rate can be produced for a requested conversion."""


class CapNotFound(LookupError):
    """Raised by cap readers when a month has no active cap."""


class SettingsNotFound(LookupError):
    """Raised by settings readers when no settings row exists yet."""


@dataclass(frozen=True)
class Entry:
    id: int
    type: str
    amount_minor: int
    currency_code: str
    transaction_date_utc: str
    category_id: Optional[int] = None
    label_ids: tuple[int, ...] = ()
    note: str = ""
    payment_method: str = ""
    payment_card_id: Optional[int] = None


@dataclass(frozen=True)
class Category:
    id: int
    name: str


@dataclass(frozen=True)
class MonthlyCap:
    id: int
    month_key: str
    amount_minor: int
    currency_code: str


@dataclass(frozen=True)
class MonthlyCapChange:
    id: int
    month_key: str
    new_amount_minor: int
    currency_code: str
    changed_at_utc: str
    old_amount_minor: Optional[int] = None


@dataclass(frozen=True)
class Settings:
    default_currency_code: str = "USD"
    orphan_count_threshold: int = DEFAULT_ORPHAN_COUNT_THRESHOLD
    orphan_spending_threshold_bps: int = DEFAULT_ORPHAN_SPENDING_THRESHOLD_BPS


@dataclass(frozen=True)
class CardDebtBucket:
    currency_code: str
    balance_minor_signed: int
    state: str


@dataclass(frozen=True)
class CardDebtSummary:
    card_id: int
    card_nickname: str
    buckets: tuple[CardDebtBucket, ...] = ()


@dataclass(frozen=True)
class ReportPeriodInput:
    scope: str = ""
    month_key: str = ""
    date_from_utc: str = ""
    date_to_utc: str = ""


@dataclass(frozen=True)
class ReportPeriod:
    scope: str
    from_utc: str
    to_utc: str
    month_key: Optional[str] = None


@dataclass(frozen=True)
class CurrencyTotal:
    currency_code: str
    total_minor: int


@dataclass(frozen=True)
class GroupTotal:
    period_key: str
    currency_code: str
    total_minor: int


@dataclass(frozen=True)
class CategoryTotal:
    category_key: str
    category_label: str
    currency_code: str
    total_minor: int
    category_id: Optional[int] = None


@dataclass(frozen=True)
class ReportSection:
    by_currency: tuple[CurrencyTotal, ...] = ()
    groups: tuple[GroupTotal, ...] = ()
    categories: tuple[CategoryTotal, ...] = ()


@dataclass(frozen=True)
class ReportNet:
    # Signed: a currency with more spending than earnings goes negative.
    by_currency: tuple[CurrencyTotal, ...] = ()


@dataclass(frozen=True)
class ReportCapStatus:
    month_key: str
    currency_code: str
    cap_amount_minor: int
    spend_total_minor: int
    overspend_minor: int
    is_exceeded: bool


@dataclass(frozen=True)
class ConvertedSummary:
    target_currency: str
    earnings_minor: int = 0
    spending_minor: int = 0
    net_minor: int = 0
    used_estimate_rate: bool = False


@dataclass(frozen=True)
class ReportCardLiability:
    card_id: int
    card_nickname: str
    currency_code: str
    balance_minor_signed: int
    state: str


@dataclass(frozen=True)
class ReportPaymentMethods:
    credit_liability: tuple[ReportCardLiability, ...] = ()


@dataclass(frozen=True)
class OrphanCountWarningDetails:
    period_from_utc: str
    period_to_utc: str
    orphan_count: int
    threshold: int


@dataclass(frozen=True)
class OrphanSpendingWarningDetails:
    month_key: str
    currency_code: str
    orphan_spend_minor: int
    month_spend_minor: int
    cap_amount_minor: Optional[int]
    threshold_bps: int
    triggered_by: tuple[str, ...]
    ratio_to_month_spend_bps: int
    ratio_to_cap_bps: int


@dataclass(frozen=True)
class ReportWarning:
    code: str
    message: str
    details: Any = None


@dataclass(frozen=True)
class Report:
    period: ReportPeriod
    grouping: str
    earnings: ReportSection
    spending: ReportSection
    net: ReportNet
    converted: Optional[ConvertedSummary] = None
    cap_status: tuple[ReportCapStatus, ...] = ()
    cap_changes: tuple[MonthlyCapChange, ...] = ()
    payment_methods: Optional[ReportPaymentMethods] = None


@dataclass(frozen=True)
class ReportResult:
    report: Report
    warnings: tuple[ReportWarning, ...] = field(default_factory=tuple)


def fx_estimate_warning(target_currency: str) -> ReportWarning:
    details: Mapping[str, str] = {"target_currency": target_currency}
    return ReportWarning(
        code=WARNING_CODE_FX_ESTIMATE_USED,
        message=FX_ESTIMATE_WARNING_MESSAGE,
        details=details,
    )
