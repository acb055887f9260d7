from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, runtime_checkable

import structlog

from tally.cap_status import ReportCapReader, build_cap_data
from tally.currency_conversion import (
    ReportFXConverter,
    build_converted_summary,
    normalize_currency,
)
from tally.entry_filters import (
    EntryListFilter,
    normalize_label_ids,
    normalize_label_mode,
    normalize_payment_method_filter,
    validate_optional_category_id,
    validate_payment_selection,
)
from tally.orphan_warnings import OrphanThresholds, build_orphan_warnings
from tally.report_aggregation import (
    CategoryLabelResolver,
    build_aggregate,
    sort_entries_deterministic,
)
from tally.report_models import (
    CardDebtSummary,
    Category,
    Entry,
    FXRateUnavailable,
    MonthlyCapChange,
    Report,
    ReportCapStatus,
    ReportCardLiability,
    ReportPaymentMethods,
    ReportPeriod,
    ReportPeriodInput,
    ReportResult,
    ReportWarning,
    Settings,
    SettingsNotFound,
    fx_estimate_warning,
)
from tally.report_period import build_report_period, normalize_report_grouping

logger = structlog.get_logger(__name__)


class ReportEntryReader(Protocol):
    def list(self, entry_filter: EntryListFilter) -> Sequence[Entry]:
        ...


class ReportCategoryReader(Protocol):
    def list(self) -> Sequence[Category]:
        ...


@runtime_checkable
class ReportCategoryByIDsReader(Protocol):
    def list_by_ids(self, ids: Sequence[int]) -> Sequence[Category]:
        ...


class ReportSettingsReader(Protocol):
    def get(self) -> Settings:
        """Return stored settings or raise SettingsNotFound."""


class ReportCardDebtReader(Protocol):
    def show_debt_all(self) -> Sequence[CardDebtSummary]:
        ...


@dataclass(frozen=True)
class ReportRequest:
    period: ReportPeriodInput
    grouping: str = ""
    category_id: Optional[int] = None
    label_ids: tuple[int, ...] = ()
    label_mode: str = ""
    convert_to: str = ""
    payment_method: str = ""
    payment_card_id: Optional[int] = None
    payment_card_nickname: str = ""
    payment_card_lookup: str = ""


class ReportService:
    """Builds period reports from entries and the optional collaborators it was given.

    Only the entry reader is required. Every other collaborator left as None is
    treated as not configured: no cap data, no conversion (requesting one is an
    error), default orphan thresholds, "Unknown Category" labels and no card
    liability section.
    """

    def __init__(
        self,
        entry_reader: ReportEntryReader,
        cap_reader: Optional[ReportCapReader] = None,
        *,
        fx_converter: Optional[ReportFXConverter] = None,
        settings_reader: Optional[ReportSettingsReader] = None,
        category_reader: Optional[ReportCategoryReader] = None,
        card_debt_reader: Optional[ReportCardDebtReader] = None,
    ) -> None:
        if entry_reader is None:
            raise ValueError("report service: entry reader is required")
        self.entry_reader = entry_reader
        self.cap_reader = cap_reader
        self.fx_converter = fx_converter
        self.settings_reader = settings_reader
        self.category_reader = category_reader
        self.card_debt_reader = card_debt_reader

    def generate(self, request: ReportRequest) -> ReportResult:
        period = build_report_period(request.period)
        grouping = normalize_report_grouping(request.grouping)
        entry_filter = self._build_entry_filter(request, period)
        target_currency = self._resolve_target_currency(request.convert_to)

        log = logger.bind(scope=period.scope, grouping=grouping)
        log.debug("report.generate.started", from_utc=period.from_utc, to_utc=period.to_utc)

        entries = sort_entries_deterministic(self.entry_reader.list(entry_filter))
        label_resolver = self._build_category_label_resolver(entries)
        aggregate = build_aggregate(entries, grouping, label_resolver)

        payment_methods = None
        if self.card_debt_reader is not None:
            payment_methods = ReportPaymentMethods(
                credit_liability=_card_liabilities(self.card_debt_reader.show_debt_all())
            )

        converted = None
        conversion_warnings: List[ReportWarning] = []
        if target_currency is not None:
            converted = build_converted_summary(entries, target_currency, self.fx_converter)
            if converted.used_estimate_rate:
                conversion_warnings.append(fx_estimate_warning(target_currency))

        cap_status: tuple[ReportCapStatus, ...] = ()
        cap_changes: tuple[MonthlyCapChange, ...] = ()
        if self.cap_reader is not None:
            cap_status, cap_changes = build_cap_data(period, self.cap_reader)

        thresholds = self._read_orphan_thresholds()
        warnings = build_orphan_warnings(entries, period, cap_status, thresholds)
        warnings.extend(conversion_warnings)

        report = Report(
            period=period,
            grouping=grouping,
            earnings=aggregate.earnings,
            spending=aggregate.spending,
            net=aggregate.net,
            converted=converted,
            cap_status=cap_status,
            cap_changes=cap_changes,
            payment_methods=payment_methods,
        )
        log.info(
            "report.generated",
            entry_count=len(entries),
            warning_codes=[warning.code for warning in warnings],
            converted_to=target_currency,
        )
        return ReportResult(report=report, warnings=tuple(warnings))

    def _build_entry_filter(self, request: ReportRequest, period: ReportPeriod) -> EntryListFilter:
        validate_optional_category_id(request.category_id)
        label_ids = normalize_label_ids(request.label_ids)
        label_mode = normalize_label_mode(request.label_mode)
        payment_method = normalize_payment_method_filter(request.payment_method)
        validate_payment_selection(
            payment_method,
            request.payment_card_id,
            request.payment_card_nickname,
            request.payment_card_lookup,
        )
        return EntryListFilter(
            date_from_utc=period.from_utc,
            date_to_utc=period.to_utc,
            category_id=request.category_id,
            label_ids=label_ids,
            label_mode=label_mode,
            payment_method=payment_method,
            payment_card_id=request.payment_card_id,
            payment_card_nickname=(request.payment_card_nickname or "").strip(),
            payment_card_lookup=(request.payment_card_lookup or "").strip(),
        )

    def _resolve_target_currency(self, convert_to: str | None) -> Optional[str]:
        requested = (convert_to or "").strip()
        if not requested:
            return None
        if self.fx_converter is None:
            raise FXRateUnavailable("Currency conversion requested but no FX converter is configured.")
        return normalize_currency(requested)

    def _build_category_label_resolver(
        self, entries: Iterable[Entry]
    ) -> Optional[CategoryLabelResolver]:
        category_ids = sorted({entry.category_id for entry in entries if entry.category_id is not None})
        if not category_ids:
            return None

        names: Dict[int, str] = {}
        if self.category_reader is not None:
            if isinstance(self.category_reader, ReportCategoryByIDsReader):
                categories = self.category_reader.list_by_ids(category_ids)
            else:
                categories = self.category_reader.list()
            needed = set(category_ids)
            for category in categories:
                name = (category.name or "").strip()
                if category.id in needed and name:
                    names[category.id] = name

        return names.get

    def _read_orphan_thresholds(self) -> OrphanThresholds:
        if self.settings_reader is None:
            return OrphanThresholds()
        try:
            settings = self.settings_reader.get()
        except SettingsNotFound:
            logger.debug("report.settings_missing", using="default_orphan_thresholds")
            return OrphanThresholds()
        return OrphanThresholds.from_settings(settings)


def _card_liabilities(rows: Iterable[CardDebtSummary]) -> tuple[ReportCardLiability, ...]:
    liabilities = [
        ReportCardLiability(
            card_id=row.card_id,
            card_nickname=row.card_nickname,
            currency_code=bucket.currency_code,
            balance_minor_signed=bucket.balance_minor_signed,
            state=bucket.state,
        )
        for row in rows
        for bucket in row.buckets
    ]
    liabilities.sort(key=lambda item: (item.card_id, item.currency_code))
    return tuple(liabilities)
