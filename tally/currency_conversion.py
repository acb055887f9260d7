from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
import json
import time
from typing import Callable, Iterable, Mapping, Optional, Protocol
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

import structlog

from tally.report_models import (
    ENTRY_TYPE_EXPENSE,
    ENTRY_TYPE_INCOME,
    ConvertedSummary,
    Entry,
    FXRateUnavailable,
    InvalidCurrencyCode,
)
from tally.report_period import (
    datetime_to_ns,
    normalize_transaction_date_utc,
    parse_timestamp_ns,
    utc_datetime,
)

logger = structlog.get_logger(__name__)

DEFAULT_RATES: dict[str, Decimal] = {
    "USD": Decimal("1"),
    "EUR": Decimal("0.92"),
    "GBP": Decimal("0.79"),
    "JPY": Decimal("147.50"),
    "CAD": Decimal("1.34"),
    "AUD": Decimal("1.52"),
    "NZD": Decimal("1.64"),
    "CHF": Decimal("0.88"),
    "SEK": Decimal("10.45"),
}

DEFAULT_MINOR_UNIT = 2
CURRENCY_MINOR_UNITS: dict[str, int] = {
    "BIF": 0,
    "CLP": 0,
    "DJF": 0,
    "GNF": 0,
    "ISK": 0,
    "JPY": 0,
    "KMF": 0,
    "KRW": 0,
    "PYG": 0,
    "RWF": 0,
    "UGX": 0,
    "UYI": 0,
    "VND": 0,
    "VUV": 0,
    "XAF": 0,
    "XOF": 0,
    "XPF": 0,
    "BHD": 3,
    "IQD": 3,
    "JOD": 3,
    "KWD": 3,
    "LYD": 3,
    "OMR": 3,
    "TND": 3,
    "CLF": 4,
    "UYW": 4,
}

IDENTITY_PROVIDER = "identity"


class RateProvider(Protocol):
    name: str

    def get_rate(self, currency: str, date: date | str | None = None) -> Decimal:
        """Return units of ``currency`` per 1 USD; ``date=None`` means latest."""


@dataclass(frozen=True)
class StaticRateProvider:
    """Deterministic, in-memory FX rates.

    Rates are expressed as target currency per 1 USD.
    """

    rates: Mapping[str, Decimal] = None
    name: str = "static"

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", dict(self.rates or DEFAULT_RATES))

    def get_rate(self, currency: str, date: date | str | None = None) -> Decimal:
        normalized = normalize_currency(currency)
        try:
            return self.rates[normalized]
        except KeyError as exc:
            raise ValueError(f"Unsupported currency: {normalized}") from exc


class RateProviderUnavailable(FXRateUnavailable):
    """Raised when a rate provider cannot fetch live rates."""


@dataclass(frozen=True)
class CachedRates:
    rates: Mapping[str, Decimal]
    expires_at: float | None


@dataclass
class FrankfurterRateProvider:
    base_currency: str = "USD"
    base_url: str = "https://api.frankfurter.app"
    cache_ttl_seconds: int = 12 * 60 * 60
    timeout_seconds: float = 8
    name: str = "frankfurter"
    _cache: dict[tuple[str, str], CachedRates] = field(default_factory=dict)

    def get_rate(self, currency: str, date: date | str | None = None) -> Decimal:
        normalized = normalize_currency(currency)
        base_currency = normalize_currency(self.base_currency)
        if normalized == base_currency:
            return Decimal("1")

        date_key = _normalize_rate_date(date)
        rates = self._get_rates(base_currency, date_key)
        try:
            return rates[normalized]
        except KeyError as exc:
            raise ValueError(f"Unsupported currency: {normalized}") from exc

    def _get_rates(self, base_currency: str, date_key: str | None) -> Mapping[str, Decimal]:
        cache_key = (base_currency, date_key or "latest")
        cached = self._cache.get(cache_key)
        now = time.monotonic()
        if cached and (cached.expires_at is None or cached.expires_at > now):
            return cached.rates

        rates = self._fetch_rates(base_currency, date_key)
        expires_at = None
        if date_key is None:
            expires_at = now + self.cache_ttl_seconds
        self._cache[cache_key] = CachedRates(rates=rates, expires_at=expires_at)
        return rates

    def _fetch_rates(self, base_currency: str, date_key: str | None) -> Mapping[str, Decimal]:
        endpoint = date_key or "latest"
        url = f"{self.base_url}/{endpoint}?from={base_currency}"
        try:
            with urlopen(url, timeout=self.timeout_seconds) as response:
                payload = json.load(response)
        except (HTTPError, URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise RateProviderUnavailable("Frankfurter API unavailable") from exc

        rates = payload.get("rates")
        if not isinstance(rates, dict):
            raise RateProviderUnavailable("Frankfurter response missing rates")

        parsed = {normalize_currency(code): Decimal(str(value)) for code, value in rates.items()}
        parsed[base_currency] = Decimal("1")
        return parsed


@dataclass(frozen=True)
class ConvertedAmount:
    amount_minor: int
    is_estimate: bool
    rate: Decimal
    rate_date: str | None
    provider: str


@dataclass
class RateConverter:
    """Converts minor-unit amounts between currencies for report summaries.

    Transactions dated after ``now`` are converted with the latest rate and
    flagged as estimates, as are conversions served by the fallback provider
    when the primary one is unavailable.
    """

    provider: RateProvider
    fallback: Optional[RateProvider] = None
    now_fn: Callable[[], datetime] = field(default_factory=lambda: _utc_now)

    def convert(
        self,
        amount_minor: int,
        from_currency: str,
        to_currency: str,
        transaction_date_utc: str,
    ) -> ConvertedAmount:
        if amount_minor < 0:
            raise ValueError("amount_minor must not be negative.")
        source = normalize_currency(from_currency)
        target = normalize_currency(to_currency)
        transaction_ns = parse_timestamp_ns(normalize_transaction_date_utc(transaction_date_utc))
        date_key = utc_datetime(transaction_ns).date().isoformat()

        if source == target:
            return ConvertedAmount(
                amount_minor=amount_minor,
                is_estimate=False,
                rate=Decimal("1"),
                rate_date=date_key,
                provider=IDENTITY_PROVIDER,
            )

        is_estimate = transaction_ns > datetime_to_ns(self.now_fn())
        rate_date = None if is_estimate else date_key
        provider = self.provider
        try:
            rate = _provider_rate(provider, source, target, rate_date)
        except RateProviderUnavailable as exc:
            if self.fallback is None:
                raise FXRateUnavailable(
                    f"No FX rate available for {source}->{target}."
                ) from exc
            logger.warning(
                "fx.fallback_rate_used",
                source=source,
                target=target,
                rate_date=rate_date,
                primary=_provider_name(self.provider),
            )
            provider = self.fallback
            rate = _provider_rate(provider, source, target, rate_date)
            is_estimate = True

        major_amount = Decimal(amount_minor).scaleb(-currency_minor_unit(source))
        converted_major = major_amount * rate
        converted_minor = int(
            converted_major.scaleb(currency_minor_unit(target)).quantize(
                Decimal("1"), rounding=ROUND_HALF_UP
            )
        )
        return ConvertedAmount(
            amount_minor=max(0, converted_minor),
            is_estimate=is_estimate,
            rate=rate,
            rate_date=rate_date,
            provider=_provider_name(provider),
        )


class ReportFXConverter(Protocol):
    def convert(
        self,
        amount_minor: int,
        from_currency: str,
        to_currency: str,
        transaction_date_utc: str,
    ) -> ConvertedAmount:
        ...


def build_converted_summary(
    entries: Iterable[Entry], target_currency: str, converter: ReportFXConverter
) -> ConvertedSummary:
    earnings = 0
    spending = 0
    net = 0
    used_estimate = False

    for entry in entries:
        converted = converter.convert(
            entry.amount_minor,
            entry.currency_code,
            target_currency,
            entry.transaction_date_utc,
        )
        if converted.is_estimate:
            used_estimate = True
        if entry.type == ENTRY_TYPE_INCOME:
            earnings += converted.amount_minor
            net += converted.amount_minor
        elif entry.type == ENTRY_TYPE_EXPENSE:
            spending += converted.amount_minor
            net -= converted.amount_minor

    return ConvertedSummary(
        target_currency=target_currency,
        earnings_minor=earnings,
        spending_minor=spending,
        net_minor=net,
        used_estimate_rate=used_estimate,
    )


def currency_minor_unit(currency: str) -> int:
    return CURRENCY_MINOR_UNITS.get(normalize_currency(currency), DEFAULT_MINOR_UNIT)


def normalize_currency(value: str) -> str:
    normalized = (value or "").strip().upper()
    if len(normalized) != 3 or not normalized.isascii() or not normalized.isalpha():
        raise InvalidCurrencyCode("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _provider_name(provider: RateProvider) -> str:
    return getattr(provider, "name", type(provider).__name__)


def _provider_rate(
    provider: RateProvider, source: str, target: str, rate_date: str | None
) -> Decimal:
    # Providers report unknown currencies as ValueError; for report
    # conversion that means no rate is available.
    try:
        source_rate = provider.get_rate(source, date=rate_date)
        target_rate = provider.get_rate(target, date=rate_date)
    except InvalidCurrencyCode:
        raise
    except ValueError as exc:
        raise FXRateUnavailable(str(exc)) from exc
    return target_rate / source_rate


def _normalize_rate_date(value: date | str | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, date):
        return value.isoformat()
    try:
        parsed = datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as exc:
        raise ValueError("Date must be in YYYY-MM-DD format.") from exc
    return parsed.isoformat()
