from __future__ import annotations

import os
from dataclasses import asdict
from datetime import date, datetime, timedelta
from typing import Any, Sequence

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import (
    BigInteger,
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    func,
    select,
)

from tally.currency_conversion import (
    FrankfurterRateProvider,
    RateConverter,
    StaticRateProvider,
    normalize_currency,
)
from tally.entry_filters import (
    PAYMENT_FILTER_CREDIT,
    PAYMENT_FILTER_DEBIT,
    PAYMENT_METHOD_CARD,
    PAYMENT_METHOD_CASH,
    EntryListFilter,
    matches_labels,
)
from tally.logging_setup import configure_logging
from tally.report_models import (
    ENTRY_TYPE_EXPENSE,
    CapNotFound,
    Category,
    Entry,
    FXRateUnavailable,
    InvalidTransactionDate,
    MonthlyCap,
    MonthlyCapChange,
    ReportPeriodInput,
    ReportResult,
    ReportValidationError,
    Settings,
    SettingsNotFound,
)
from tally.report_period import (
    month_key_from_datetime,
    parse_timestamp_ns,
    shift_month,
    utc_datetime,
)
from tally.report_service import ReportRequest, ReportService

configure_logging(os.getenv("LOG_LEVEL", "INFO"), os.getenv("LOG_FORMAT", "json"))

app = FastAPI()

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = os.getenv("DATABASE_URL", "sqlite:///./tally.db")
connect_args = {}
if database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(database_url, connect_args=connect_args)
metadata = MetaData()


def get_system_default_currency() -> str:
    raw = os.getenv("DEFAULT_CURRENCY", "USD")
    try:
        return normalize_currency(raw)
    except ValueError:
        return "USD"


def build_fx_converter() -> RateConverter:
    provider_name = os.getenv("FX_PROVIDER", "frankfurter").strip().lower()
    if provider_name == "static":
        return RateConverter(provider=StaticRateProvider())
    return RateConverter(provider=FrankfurterRateProvider(), fallback=StaticRateProvider())


SYSTEM_DEFAULT_CURRENCY = get_system_default_currency()
FX_CONVERTER = build_fx_converter()

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(120), nullable=False, unique=True),
)

cards = Table(
    "cards",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("nickname", String(120), nullable=False, unique=True),
    Column("card_type", String(10), nullable=False),
)

entries = Table(
    "entries",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("type", String(10), nullable=False),
    Column("amount_minor", BigInteger, nullable=False),
    Column("currency_code", String(3), nullable=False, server_default=SYSTEM_DEFAULT_CURRENCY),
    Column("transaction_date_utc", String(40), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("note", String(500)),
    Column("payment_method", String(10)),
    Column("payment_card_id", Integer, ForeignKey("cards.id")),
)

entry_labels = Table(
    "entry_labels",
    metadata,
    Column("entry_id", Integer, ForeignKey("entries.id"), primary_key=True),
    Column("label_id", Integer, primary_key=True),
)

monthly_caps = Table(
    "monthly_caps",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("month_key", String(7), nullable=False, unique=True),
    Column("amount_minor", BigInteger, nullable=False),
    Column("currency_code", String(3), nullable=False),
)

monthly_cap_changes = Table(
    "monthly_cap_changes",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("month_key", String(7), nullable=False),
    Column("old_amount_minor", BigInteger),
    Column("new_amount_minor", BigInteger, nullable=False),
    Column("currency_code", String(3), nullable=False),
    Column("changed_at_utc", String(40), nullable=False),
)

settings = Table(
    "settings",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "default_currency_code",
        String(3),
        nullable=False,
        server_default=SYSTEM_DEFAULT_CURRENCY,
    ),
    Column("orphan_count_threshold", Integer, nullable=False, server_default="5"),
    Column("orphan_spending_threshold_bps", Integer, nullable=False, server_default="500"),
)


@app.on_event("startup")
def init_db() -> None:
    metadata.create_all(engine)


class SqlEntryReader:
    def __init__(self, db_engine) -> None:
        self.engine = db_engine

    def list(self, entry_filter: EntryListFilter) -> list[Entry]:
        from_ns = parse_timestamp_ns(entry_filter.date_from_utc)
        to_ns = parse_timestamp_ns(entry_filter.date_to_utc)
        lower, upper = _transaction_date_bounds(
            utc_datetime(from_ns).date(), utc_datetime(to_ns).date()
        )

        stmt = (
            select(entries)
            .select_from(entries.outerjoin(cards, entries.c.payment_card_id == cards.c.id))
            .where(
                entries.c.transaction_date_utc >= lower,
                entries.c.transaction_date_utc < upper,
            )
        )
        if entry_filter.category_id is not None:
            stmt = stmt.where(entries.c.category_id == entry_filter.category_id)
        stmt = _apply_payment_filter(stmt, entry_filter)

        with self.engine.begin() as conn:
            rows = conn.execute(stmt.order_by(entries.c.id)).mappings().all()
            in_period = [row for row in rows if from_ns <= _row_timestamp_ns(row) <= to_ns]
            labels_by_entry = _fetch_entry_labels(conn, [row["id"] for row in in_period])

        results: list[Entry] = []
        for row in in_period:
            label_ids = labels_by_entry.get(row["id"], ())
            if not matches_labels(label_ids, entry_filter.label_ids, entry_filter.label_mode):
                continue
            results.append(
                Entry(
                    id=row["id"],
                    type=row["type"],
                    amount_minor=int(row["amount_minor"]),
                    currency_code=row["currency_code"],
                    transaction_date_utc=row["transaction_date_utc"],
                    category_id=row["category_id"],
                    label_ids=label_ids,
                    note=row["note"] or "",
                    payment_method=row["payment_method"] or "",
                    payment_card_id=row["payment_card_id"],
                )
            )
        return results


class SqlCategoryReader:
    def __init__(self, db_engine) -> None:
        self.engine = db_engine

    def list(self) -> list[Category]:
        with self.engine.begin() as conn:
            rows = conn.execute(select(categories).order_by(categories.c.id)).mappings().all()
        return [Category(id=row["id"], name=row["name"]) for row in rows]

    def list_by_ids(self, ids: Sequence[int]) -> list[Category]:
        if not ids:
            return []
        stmt = select(categories).where(categories.c.id.in_(list(ids))).order_by(categories.c.id)
        with self.engine.begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [Category(id=row["id"], name=row["name"]) for row in rows]


class SqlCapReader:
    def __init__(self, db_engine) -> None:
        self.engine = db_engine

    def show(self, month_key: str) -> MonthlyCap:
        stmt = select(monthly_caps).where(monthly_caps.c.month_key == month_key)
        with self.engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
        if not row:
            raise CapNotFound(f"No cap configured for {month_key}.")
        return MonthlyCap(
            id=row["id"],
            month_key=row["month_key"],
            amount_minor=int(row["amount_minor"]),
            currency_code=row["currency_code"],
        )

    def history(self, month_key: str) -> list[MonthlyCapChange]:
        stmt = (
            select(monthly_cap_changes)
            .where(monthly_cap_changes.c.month_key == month_key)
            .order_by(monthly_cap_changes.c.changed_at_utc, monthly_cap_changes.c.id)
        )
        with self.engine.begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [
            MonthlyCapChange(
                id=row["id"],
                month_key=row["month_key"],
                old_amount_minor=row["old_amount_minor"],
                new_amount_minor=int(row["new_amount_minor"]),
                currency_code=row["currency_code"],
                changed_at_utc=row["changed_at_utc"],
            )
            for row in rows
        ]

    def expense_total(self, month_key: str, currency_code: str) -> int:
        start = datetime.strptime(month_key, "%Y-%m").date()
        lower, upper = _transaction_date_bounds(
            start, shift_month(start, 1) - timedelta(days=1)
        )
        stmt = select(entries.c.amount_minor, entries.c.transaction_date_utc).where(
            entries.c.type == ENTRY_TYPE_EXPENSE,
            entries.c.currency_code == currency_code,
            entries.c.transaction_date_utc >= lower,
            entries.c.transaction_date_utc < upper,
        )
        with self.engine.begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return sum(
            int(row["amount_minor"])
            for row in rows
            if month_key_from_datetime(row["transaction_date_utc"]) == month_key
        )


class SqlSettingsReader:
    def __init__(self, db_engine) -> None:
        self.engine = db_engine

    def get(self) -> Settings:
        with self.engine.begin() as conn:
            row = conn.execute(select(settings).order_by(settings.c.id)).mappings().first()
        if not row:
            raise SettingsNotFound("Settings have not been initialized.")
        return Settings(
            default_currency_code=row["default_currency_code"],
            orphan_count_threshold=int(row["orphan_count_threshold"]),
            orphan_spending_threshold_bps=int(row["orphan_spending_threshold_bps"]),
        )


def build_report_service() -> ReportService:
    return ReportService(
        SqlEntryReader(engine),
        SqlCapReader(engine),
        fx_converter=FX_CONVERTER,
        settings_reader=SqlSettingsReader(engine),
        category_reader=SqlCategoryReader(engine),
    )


def _apply_payment_filter(stmt, entry_filter: EntryListFilter):
    method = entry_filter.payment_method
    if method in (PAYMENT_METHOD_CASH, PAYMENT_METHOD_CARD):
        stmt = stmt.where(entries.c.payment_method == method)
    elif method in (PAYMENT_FILTER_CREDIT, PAYMENT_FILTER_DEBIT):
        stmt = stmt.where(
            entries.c.payment_method == PAYMENT_METHOD_CARD,
            cards.c.card_type == method,
        )

    if entry_filter.payment_card_id is not None:
        stmt = stmt.where(entries.c.payment_card_id == entry_filter.payment_card_id)
    elif entry_filter.payment_card_nickname:
        stmt = stmt.where(
            func.lower(cards.c.nickname) == entry_filter.payment_card_nickname.lower()
        )
    elif entry_filter.payment_card_lookup:
        lookup = entry_filter.payment_card_lookup
        if lookup.isdigit():
            stmt = stmt.where(entries.c.payment_card_id == int(lookup))
        else:
            stmt = stmt.where(func.lower(cards.c.nickname) == lookup.lower())
    return stmt


def _transaction_date_bounds(from_day: date, to_day: date) -> tuple[str, str]:
    """Return a range on the stored date prefix covering UTC days ``from_day``..``to_day``.

    Stored timestamps keep their offset, so the local date may sit one day
    either side of the UTC date. Rows in the window are still checked exactly.
    """
    lower = (from_day - timedelta(days=1)).isoformat()
    upper = (to_day + timedelta(days=2)).isoformat()
    return lower, upper


def _row_timestamp_ns(row) -> int:
    try:
        return parse_timestamp_ns(row["transaction_date_utc"])
    except ValueError as exc:
        raise InvalidTransactionDate(
            f"Entry {row['id']} has an invalid transaction date."
        ) from exc


def _fetch_entry_labels(conn, entry_ids: list[int]) -> dict[int, tuple[int, ...]]:
    if not entry_ids:
        return {}
    stmt = select(entry_labels.c.entry_id, entry_labels.c.label_id).where(
        entry_labels.c.entry_id.in_(entry_ids)
    )
    labels: dict[int, list[int]] = {}
    for row in conn.execute(stmt).mappings().all():
        labels.setdefault(row["entry_id"], []).append(row["label_id"])
    return {entry_id: tuple(sorted(ids)) for entry_id, ids in labels.items()}


class ReportPeriodResponse(BaseModel):
    scope: str
    month_key: str | None = None
    from_utc: str
    to_utc: str


class CurrencyTotalResponse(BaseModel):
    currency_code: str
    total_minor: int


class GroupTotalResponse(BaseModel):
    period_key: str
    currency_code: str
    total_minor: int


class CategoryTotalResponse(BaseModel):
    category_id: int | None = None
    category_key: str
    category_label: str
    currency_code: str
    total_minor: int


class ReportSectionResponse(BaseModel):
    by_currency: list[CurrencyTotalResponse]
    groups: list[GroupTotalResponse]
    categories: list[CategoryTotalResponse]


class ReportNetResponse(BaseModel):
    by_currency: list[CurrencyTotalResponse]


class ConvertedSummaryResponse(BaseModel):
    target_currency: str
    earnings_minor: int
    spending_minor: int
    net_minor: int
    used_estimate_rate: bool


class ReportCapStatusResponse(BaseModel):
    month_key: str
    currency_code: str
    cap_amount_minor: int
    spend_total_minor: int
    overspend_minor: int
    is_exceeded: bool


class MonthlyCapChangeResponse(BaseModel):
    id: int
    month_key: str
    old_amount_minor: int | None = None
    new_amount_minor: int
    currency_code: str
    changed_at_utc: str


class ReportCardLiabilityResponse(BaseModel):
    card_id: int
    card_nickname: str
    currency_code: str
    balance_minor_signed: int
    state: str


class ReportPaymentMethodsResponse(BaseModel):
    credit_liability: list[ReportCardLiabilityResponse]


class ReportResponse(BaseModel):
    period: ReportPeriodResponse
    grouping: str
    earnings: ReportSectionResponse
    spending: ReportSectionResponse
    net: ReportNetResponse
    converted: ConvertedSummaryResponse | None = None
    cap_status: list[ReportCapStatusResponse]
    cap_changes: list[MonthlyCapChangeResponse]
    payment_methods: ReportPaymentMethodsResponse | None = None


class WarningResponse(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class GeneratedReportResponse(BaseModel):
    report: ReportResponse
    warnings: list[WarningResponse]


def report_result_payload(result: ReportResult) -> dict:
    return {
        "report": asdict(result.report),
        "warnings": [asdict(warning) for warning in result.warnings],
    }


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/reports", response_model=GeneratedReportResponse)
def generate_report(
    scope: str = Query(""),
    month: str = Query(""),
    date_from: str = Query(""),
    date_to: str = Query(""),
    group_by: str = Query("month"),
    category_id: int | None = Query(None),
    label_id: list[int] = Query([]),
    label_mode: str = Query("any"),
    convert_to: str = Query(""),
    payment_method: str = Query(""),
    payment_card_id: int | None = Query(None),
    payment_card_nickname: str = Query(""),
    payment_card_lookup: str = Query(""),
) -> GeneratedReportResponse:
    request = ReportRequest(
        period=ReportPeriodInput(
            scope=scope,
            month_key=month,
            date_from_utc=date_from,
            date_to_utc=date_to,
        ),
        grouping=group_by,
        category_id=category_id,
        label_ids=tuple(label_id),
        label_mode=label_mode,
        convert_to=convert_to,
        payment_method=payment_method,
        payment_card_id=payment_card_id,
        payment_card_nickname=payment_card_nickname,
        payment_card_lookup=payment_card_lookup,
    )
    try:
        result = build_report_service().generate(request)
    except ReportValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except FXRateUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return GeneratedReportResponse.model_validate(report_result_payload(result))
