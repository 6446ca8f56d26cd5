from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from http.client import HTTPException
import json
import logging
from typing import Callable, MutableMapping, Protocol
from urllib.request import urlopen

from pocketledger.models import Currency, ExchangeRate

logger = logging.getLogger(__name__)

ONE = Decimal("1")
RATE_PAIR = "USD_EUR"


class RateSourceUnavailable(RuntimeError):
    """Raised when a rate source cannot deliver a usable rate."""


class RateSource(Protocol):
    def fetch_latest(self) -> Decimal: ...

    def fetch_historical(self, day: date) -> Decimal: ...


@dataclass
class FrankfurterRateSource:
    """USD->EUR rates from the Frankfurter API."""

    base_url: str = "https://api.frankfurter.app"
    timeout: int = 8

    def fetch_latest(self) -> Decimal:
        return self._fetch_rate("latest")

    def fetch_historical(self, day: date) -> Decimal:
        return self._fetch_rate(day.isoformat())

    def _fetch_rate(self, endpoint: str) -> Decimal:
        url = f"{self.base_url}/{endpoint}?from=USD&to=EUR"
        try:
            with urlopen(url, timeout=self.timeout) as response:
                payload = json.load(response)
        except (OSError, HTTPException, ValueError) as exc:
            raise RateSourceUnavailable("Frankfurter API unavailable") from exc

        rates = payload.get("rates") if isinstance(payload, dict) else None
        if not isinstance(rates, dict) or rates.get("EUR") is None:
            raise RateSourceUnavailable("Frankfurter response missing rates")
        try:
            rate = _coerce_amount(rates["EUR"])
        except InvalidOperation as exc:
            raise RateSourceUnavailable(f"Invalid rate in response: {rates['EUR']!r}") from exc
        if not rate.is_finite() or rate <= 0:
            raise RateSourceUnavailable(f"Invalid rate in response: {rate}")
        return rate


@dataclass
class CurrencyConverter:
    """Converts between EUR and USD using a live daily rate and per-date history.

    ``historical_rates`` is keyed ``"YYYY-MM-DD_USD_EUR"`` and only ever grows.
    Pairs other than EUR/USD are passed through unchanged.
    """

    exchange_rate: ExchangeRate = field(default_factory=ExchangeRate)
    historical_rates: MutableMapping[str, Decimal] = field(default_factory=dict)
    source: RateSource | None = None
    clock: Callable[[], date] = date.today

    @property
    def usd_to_eur(self) -> Decimal:
        return self.exchange_rate.usd_to_eur

    def convert(
        self,
        amount: Decimal | int | float | str,
        source_currency: Currency | str,
        target_currency: Currency | str,
    ) -> Decimal:
        coerced_amount = _coerce_amount(amount)
        rate = self._live_rate(_as_currency(source_currency), _as_currency(target_currency))
        if rate is None:
            return coerced_amount
        return coerced_amount * rate

    async def rate_for_date(
        self,
        day: date | str,
        source_currency: Currency | str,
        target_currency: Currency | str,
    ) -> Decimal:
        source = _as_currency(source_currency)
        target = _as_currency(target_currency)
        if self._live_rate(source, target) is None:
            return ONE

        rate_day = _normalize_rate_date(day)
        if rate_day >= self.clock():
            return self._live_rate(source, target)

        key = historical_rate_key(rate_day)
        cached = self.historical_rates.get(key)
        if cached:
            return _orient(cached, source)

        if self.source is None:
            return self._live_rate(source, target)
        try:
            logger.info("Fetching historical rate for %s", rate_day)
            rate = await asyncio.to_thread(self.source.fetch_historical, rate_day)
        except RateSourceUnavailable as exc:
            logger.warning("Failed to fetch historical rate for %s: %s", rate_day, exc)
            return self._live_rate(source, target)

        self.historical_rates[key] = rate
        return _orient(rate, source)

    async def refresh_daily_rate(self) -> bool:
        """Refresh the live rate once per calendar day. Returns True when it changed."""
        today = self.clock().isoformat()
        if self.exchange_rate.last_updated == today or self.source is None:
            return False
        logger.info("Fetching daily exchange rate")
        try:
            rate = await asyncio.to_thread(self.source.fetch_latest)
        except RateSourceUnavailable as exc:
            logger.warning("Failed to fetch exchange rate: %s", exc)
            return False
        logger.info("Updated USD to EUR rate: %s", rate)
        self.exchange_rate = ExchangeRate(usd_to_eur=rate, last_updated=today)
        return True

    def _live_rate(self, source: Currency | None, target: Currency | None) -> Decimal | None:
        if source is None or target is None:
            return None
        if source == target:
            return ONE
        if source == Currency.USD and target == Currency.EUR:
            return self.usd_to_eur
        return ONE / self.usd_to_eur


def historical_rate_key(day: date) -> str:
    return f"{day.isoformat()}_{RATE_PAIR}"


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def _as_currency(value: Currency | str) -> Currency | None:
    if isinstance(value, Currency):
        return value
    try:
        return Currency(normalize_currency(value))
    except ValueError:
        logger.debug("Unsupported currency %r, passing amount through", value)
        return None


def _orient(usd_to_eur: Decimal, source: Currency) -> Decimal:
    return usd_to_eur if source == Currency.USD else ONE / usd_to_eur


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))


def _normalize_rate_date(value: date | str) -> date:
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(value[:10], "%Y-%m-%d").date()
    except ValueError as exc:
        raise ValueError("Date must be in YYYY-MM-DD format.") from exc
