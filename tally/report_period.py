from __future__ import annotations

import calendar
import re
from datetime import date, datetime, timedelta, timezone
from typing import List

from tally.report_models import (
    REPORT_GROUPING_DAY,
    REPORT_GROUPING_MONTH,
    REPORT_GROUPING_WEEK,
    REPORT_GROUPINGS,
    REPORT_SCOPE_RANGE,
    REPORT_SCOPES,
    SCOPE_MONTH_SPANS,
    InvalidMonthKey,
    InvalidReportGrouping,
    InvalidReportPeriod,
    InvalidReportScope,
    InvalidTransactionDate,
    ReportPeriod,
    ReportPeriodInput,
)

NANOS_PER_SECOND = 1_000_000_000
SECONDS_PER_DAY = 24 * 60 * 60
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_TIMESTAMP_PATTERN = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})[Tt](\d{2}):(\d{2}):(\d{2})"
    r"(?:\.(\d{1,9}))?([Zz]|[+-]\d{2}:\d{2})$"
)
_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_MONTH_PATTERN = re.compile(r"^\d{4}-\d{2}$")


def normalize_report_scope(scope: str | None) -> str:
    normalized = (scope or "").strip().lower()
    if not normalized:
        return REPORT_SCOPE_RANGE
    if normalized not in REPORT_SCOPES:
        raise InvalidReportScope(
            "Invalid report scope. Use range, monthly, bimonthly or quarterly."
        )
    return normalized


def normalize_report_grouping(grouping: str | None) -> str:
    normalized = (grouping or "").strip().lower()
    if not normalized:
        return REPORT_GROUPING_MONTH
    if normalized not in REPORT_GROUPINGS:
        raise InvalidReportGrouping("Invalid report grouping. Use day, week or month.")
    return normalized


def normalize_month_key(month_key: str | None) -> str:
    normalized = (month_key or "").strip()
    if not _MONTH_PATTERN.match(normalized):
        raise InvalidMonthKey("Invalid month format. Use YYYY-MM.")
    try:
        parsed = datetime.strptime(normalized, "%Y-%m").date()
    except ValueError as exc:
        raise InvalidMonthKey("Invalid month format. Use YYYY-MM.") from exc
    return parsed.strftime("%Y-%m")


def build_report_period(period_input: ReportPeriodInput) -> ReportPeriod:
    """Resolve a scope plus month key or date range into a concrete UTC period.

    Month-based scopes span one, two or three calendar months and end one
    nanosecond before the next window starts. Range boundaries accept full
    RFC3339 timestamps or bare dates; a bare ``to`` date covers the whole day.
    """
    scope = normalize_report_scope(period_input.scope)

    if scope == REPORT_SCOPE_RANGE:
        from_ns = _parse_period_boundary(period_input.date_from_utc, end_of_day=False)
        to_ns = _parse_period_boundary(period_input.date_to_utc, end_of_day=True)
        if from_ns > to_ns:
            raise InvalidReportPeriod("Period start must be on or before period end.")
        return ReportPeriod(
            scope=scope,
            from_utc=format_timestamp_ns(from_ns),
            to_utc=format_timestamp_ns(to_ns),
        )

    month_key = normalize_month_key(period_input.month_key)
    start = _month_start_from_key(month_key)
    end = shift_month(start, SCOPE_MONTH_SPANS[scope])
    from_ns = _date_to_ns(start)
    to_ns = _date_to_ns(end) - 1
    return ReportPeriod(
        scope=scope,
        month_key=month_key,
        from_utc=format_timestamp_ns(from_ns),
        to_utc=format_timestamp_ns(to_ns),
    )


def month_keys_in_period(from_utc: str, to_utc: str) -> List[str]:
    try:
        from_value = utc_datetime(parse_timestamp_ns(from_utc))
        to_value = utc_datetime(parse_timestamp_ns(to_utc))
    except ValueError as exc:
        raise InvalidReportPeriod("Invalid report period boundaries.") from exc
    if from_value > to_value:
        raise InvalidReportPeriod("Period start must be on or before period end.")
    return [month.strftime("%Y-%m") for month in iter_months(from_value.date(), to_value.date())]


def period_key_for_transaction(transaction_date_utc: str, grouping: str) -> str:
    normalized_grouping = normalize_report_grouping(grouping)
    value = _transaction_datetime(transaction_date_utc)

    if normalized_grouping == REPORT_GROUPING_DAY:
        return value.strftime("%Y-%m-%d")
    if normalized_grouping == REPORT_GROUPING_WEEK:
        iso_year, iso_week, _ = value.isocalendar()
        return f"{iso_year:04d}-W{iso_week:02d}"
    return value.strftime("%Y-%m")


def month_key_from_datetime(transaction_date_utc: str) -> str:
    return _transaction_datetime(transaction_date_utc).strftime("%Y-%m")


def normalize_transaction_date_utc(value: str) -> str:
    trimmed = (value or "").strip()
    try:
        return format_timestamp_ns(parse_timestamp_ns(trimmed))
    except ValueError:
        pass
    if _DATE_PATTERN.match(trimmed):
        try:
            return format_timestamp_ns(_date_to_ns(datetime.strptime(trimmed, "%Y-%m-%d").date()))
        except ValueError:
            pass
    raise InvalidTransactionDate("Transaction date must be RFC3339 or YYYY-MM-DD.")


def parse_timestamp_ns(value: str) -> int:
    """Parse an RFC3339 timestamp into integer nanoseconds since the epoch (UTC)."""
    match = _TIMESTAMP_PATTERN.match((value or "").strip())
    if not match:
        raise ValueError("Timestamp must be RFC3339.")
    year, month, day, hour, minute, second = (int(part) for part in match.groups()[:6])
    fraction = match.group(7) or ""
    offset = match.group(8)

    base = datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)
    seconds = calendar.timegm(base.utctimetuple())
    if offset not in ("Z", "z"):
        offset_hours = int(offset[1:3])
        offset_minutes = int(offset[4:6])
        if offset_hours > 23 or offset_minutes > 59:
            raise ValueError("Timestamp offset out of range.")
        sign = 1 if offset[0] == "+" else -1
        seconds -= sign * (offset_hours * 3600 + offset_minutes * 60)

    nanos = int(fraction.ljust(9, "0")) if fraction else 0
    return seconds * NANOS_PER_SECOND + nanos


def format_timestamp_ns(value: int) -> str:
    nanos = value % NANOS_PER_SECOND
    moment = utc_datetime(value)
    stamp = (
        f"{moment.year:04d}-{moment.month:02d}-{moment.day:02d}"
        f"T{moment.hour:02d}:{moment.minute:02d}:{moment.second:02d}"
    )
    if nanos:
        stamp += "." + f"{nanos:09d}".rstrip("0")
    return stamp + "Z"


def utc_datetime(value_ns: int) -> datetime:
    return EPOCH + timedelta(seconds=value_ns // NANOS_PER_SECOND)


def datetime_to_ns(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    delta = value.astimezone(timezone.utc) - EPOCH
    return (delta.days * SECONDS_PER_DAY + delta.seconds) * NANOS_PER_SECOND + (
        delta.microseconds * 1000
    )


def month_start(value: date) -> date:
    return value.replace(day=1)


def shift_month(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    return date(year, month, 1)


def iter_months(start_value: date, end_value: date) -> list[date]:
    months: list[date] = []
    cursor = month_start(start_value)
    end_month = month_start(end_value)
    while cursor <= end_month:
        months.append(cursor)
        cursor = shift_month(cursor, 1)
    return months


def _month_start_from_key(month_key: str) -> date:
    return datetime.strptime(month_key, "%Y-%m").date()


def _date_to_ns(value: date) -> int:
    return calendar.timegm(value.timetuple()) * NANOS_PER_SECOND


def _parse_period_boundary(value: str | None, end_of_day: bool) -> int:
    trimmed = (value or "").strip()
    if not trimmed:
        raise InvalidReportPeriod("Both period boundaries are required for a range report.")

    try:
        return parse_timestamp_ns(trimmed)
    except ValueError:
        pass

    if not _DATE_PATTERN.match(trimmed):
        raise InvalidReportPeriod("Period boundary must be RFC3339 or YYYY-MM-DD.")
    try:
        day = datetime.strptime(trimmed, "%Y-%m-%d").date()
    except ValueError as exc:
        raise InvalidReportPeriod("Period boundary must be RFC3339 or YYYY-MM-DD.") from exc

    if end_of_day:
        return _date_to_ns(day + timedelta(days=1)) - 1
    return _date_to_ns(day)


def _transaction_datetime(transaction_date_utc: str) -> datetime:
    try:
        return utc_datetime(parse_timestamp_ns(transaction_date_utc))
    except ValueError as exc:
        raise InvalidTransactionDate(
            f"Invalid transaction date: {transaction_date_utc!r}."
        ) from exc
