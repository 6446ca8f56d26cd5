from __future__ import annotations

import asyncio
import calendar
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from http.client import HTTPException
import json
import logging
from typing import Any, Protocol, Sequence
from urllib.parse import quote
from urllib.request import Request, urlopen

from pocketledger.models import (
    ZERO,
    Currency,
    InvestmentHolding,
    InvestmentTransaction,
    InvestmentTransactionType,
    InvestmentType,
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class CryptoAsset:
    ticker: str
    name: str
    coingecko_id: str


CRYPTOCURRENCIES: tuple[CryptoAsset, ...] = (
    CryptoAsset("BTC", "Bitcoin", "bitcoin"),
    CryptoAsset("ETH", "Ethereum", "ethereum"),
    CryptoAsset("SOL", "Solana", "solana"),
    CryptoAsset("ADA", "Cardano", "cardano"),
    CryptoAsset("XRP", "XRP", "ripple"),
    CryptoAsset("DOT", "Polkadot", "polkadot"),
    CryptoAsset("DOGE", "Dogecoin", "dogecoin"),
    CryptoAsset("LTC", "Litecoin", "litecoin"),
    CryptoAsset("LINK", "Chainlink", "chainlink"),
    CryptoAsset("AVAX", "Avalanche", "avalanche-2"),
    CryptoAsset("MATIC", "Polygon", "matic-network"),
    CryptoAsset("BNB", "BNB", "binancecoin"),
    CryptoAsset("USDT", "Tether", "tether"),
    CryptoAsset("USDC", "USD Coin", "usd-coin"),
)
COINGECKO_IDS = {asset.ticker: asset.coingecko_id for asset in CRYPTOCURRENCIES}


class PriceSourceUnavailable(RuntimeError):
    """Raised when a market data source cannot deliver a price."""


class SymbolLookupError(RuntimeError):
    """Raised when an ISIN cannot be resolved."""


class PriceSource(Protocol):
    def fetch_crypto_prices(self, coin_ids: Sequence[str]) -> dict[str, dict[str, Decimal]]: ...

    def fetch_crypto_history(self, coin_id: str, day: date, currency: Currency) -> Decimal: ...

    def fetch_equity_price(self, ticker: str) -> Decimal: ...

    def fetch_equity_close(self, ticker: str, day: date) -> Decimal: ...


class SymbolDirectory(Protocol):
    def lookup_isin(self, isin: str) -> dict[str, str]: ...


@dataclass
class MarketDataSource:
    """Spot and historical prices from CoinGecko (crypto) and Yahoo (stocks/ETFs)."""

    coingecko_url: str = "https://api.coingecko.com/api/v3"
    yahoo_chart_url: str = "https://query1.finance.yahoo.com/v8/finance/chart"
    timeout: int = 8

    def fetch_crypto_prices(self, coin_ids: Sequence[str]) -> dict[str, dict[str, Decimal]]:
        ids = ",".join(coin_ids)
        payload = self._get_json(
            f"{self.coingecko_url}/simple/price?ids={quote(ids, safe=',')}&vs_currencies=usd,eur"
        )
        if not isinstance(payload, dict):
            raise PriceSourceUnavailable("CoinGecko response malformed")
        prices: dict[str, dict[str, Decimal]] = {}
        for coin_id, quotes in payload.items():
            if isinstance(quotes, dict):
                parsed = {key: _parse_price(value) for key, value in quotes.items()}
                prices[coin_id] = {key: value for key, value in parsed.items() if value is not None}
        return prices

    def fetch_crypto_history(self, coin_id: str, day: date, currency: Currency) -> Decimal:
        date_str = f"{day.day}-{day.month}-{day.year}"
        payload = self._get_json(f"{self.coingecko_url}/coins/{quote(coin_id)}/history?date={date_str}")
        price = _dig(payload, "market_data", "current_price", currency.value.lower())
        return _positive_price(price, f"{coin_id} on {day}")

    def fetch_equity_price(self, ticker: str) -> Decimal:
        payload = self._get_json(f"{self.yahoo_chart_url}/{quote(ticker)}")
        price = _dig(payload, "chart", "result", 0, "meta", "regularMarketPrice")
        return _positive_price(price, ticker)

    def fetch_equity_close(self, ticker: str, day: date) -> Decimal:
        period1 = calendar.timegm(day.timetuple())
        period2 = period1 + SECONDS_PER_DAY
        payload = self._get_json(
            f"{self.yahoo_chart_url}/{quote(ticker)}"
            f"?period1={period1}&period2={period2}&interval=1d"
        )
        price = _dig(payload, "chart", "result", 0, "indicators", "quote", 0, "close", 0)
        return _positive_price(price, f"{ticker} on {day}")

    def _get_json(self, url: str) -> Any:
        try:
            with urlopen(url, timeout=self.timeout) as response:
                return json.load(response)
        except (OSError, HTTPException, ValueError) as exc:
            raise PriceSourceUnavailable(f"Price request failed: {url}") from exc


@dataclass
class OpenFigiDirectory:
    base_url: str = "https://api.openfigi.com/v3"
    timeout: int = 8

    def lookup_isin(self, isin: str) -> dict[str, str]:
        body = json.dumps([{"idType": "ID_ISIN", "idValue": isin}]).encode("utf-8")
        request = Request(
            f"{self.base_url}/mapping",
            data=body,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urlopen(request, timeout=self.timeout) as response:
                payload = json.load(response)
        except (OSError, HTTPException, ValueError) as exc:
            raise SymbolLookupError(f"OpenFIGI request failed for {isin}") from exc

        data = _dig(payload, 0, "data", 0)
        if not isinstance(data, dict) or not data.get("ticker"):
            raise SymbolLookupError(f"ISIN not found: {isin}")
        return {"name": str(data.get("name") or data["ticker"]), "ticker": str(data["ticker"])}


def last_trade_price(
    investment_transactions: Sequence[InvestmentTransaction],
    holding_id: str,
    day: date,
) -> Decimal:
    trades = [
        txn
        for txn in investment_transactions
        if txn.holding_id == holding_id
        and txn.date <= day
        and txn.type in (InvestmentTransactionType.BUY, InvestmentTransactionType.SELL)
    ]
    if not trades:
        return ZERO
    return max(trades, key=lambda txn: txn.date).price_per_unit


@dataclass
class HistoricalPriceLookup:
    """Closing price of a holding on a day: cache, then live source, then last trade, then 0."""

    investment_transactions: Sequence[InvestmentTransaction]
    source: PriceSource | None = None
    cache: dict[str, Decimal] = field(default_factory=dict)

    async def price_on(self, holding: InvestmentHolding, day: date) -> Decimal:
        cache_key = f"{holding.ticker}-{day.isoformat()}"
        if cache_key in self.cache:
            return self.cache[cache_key]

        try:
            price = await self._fetch(holding, day)
        except PriceSourceUnavailable as exc:
            logger.warning("Could not fetch price for %s on %s: %s", holding.ticker, day, exc)
            price = last_trade_price(self.investment_transactions, holding.id, day)

        self.cache[cache_key] = price
        return price

    async def _fetch(self, holding: InvestmentHolding, day: date) -> Decimal:
        if self.source is None:
            raise PriceSourceUnavailable("No price source configured")
        if holding.investment_type == InvestmentType.CRYPTO:
            coin_id = COINGECKO_IDS.get(holding.ticker)
            if coin_id is None:
                raise PriceSourceUnavailable(f"Crypto not found: {holding.ticker}")
            price = await asyncio.to_thread(
                self.source.fetch_crypto_history, coin_id, day, holding.currency
            )
        else:
            price = await asyncio.to_thread(self.source.fetch_equity_close, holding.ticker, day)
        if price <= ZERO:
            raise PriceSourceUnavailable(f"Price not found for {holding.ticker}")
        return price


@dataclass(frozen=True)
class PriceRefreshResult:
    holdings: list[InvestmentHolding]
    changed: list[InvestmentHolding]
    failed_count: int

    @property
    def complete(self) -> bool:
        return self.failed_count == 0


async def refresh_holdings(
    holdings: Sequence[InvestmentHolding],
    source: PriceSource,
    directory: SymbolDirectory | None = None,
) -> PriceRefreshResult:
    """Verify holdings flagged for review and pull current prices.

    Returns the full new list plus only the holdings that differ from the input.
    """
    reviewed = list(
        await asyncio.gather(*(_review_holding(holding, directory) for holding in holdings))
    )

    prices: dict[str, Decimal] = {}
    crypto = [h for h in reviewed if h.investment_type == InvestmentType.CRYPTO and h.ticker in COINGECKO_IDS]
    stocks = [h for h in reviewed if h.investment_type != InvestmentType.CRYPTO]
    await asyncio.gather(
        _fetch_crypto_prices(crypto, source, prices),
        *(_fetch_equity_price(holding, source, prices) for holding in stocks),
    )

    refreshed = [
        h.model_copy(update={"current_price": prices[h.id]}) if h.id in prices else h
        for h in reviewed
    ]
    originals = {h.id: h for h in holdings}
    changed = [h for h in refreshed if originals.get(h.id) != h]
    return PriceRefreshResult(
        holdings=refreshed,
        changed=changed,
        failed_count=len(holdings) - len(prices),
    )


async def _review_holding(
    holding: InvestmentHolding, directory: SymbolDirectory | None
) -> InvestmentHolding:
    if not holding.needs_review:
        return holding
    if holding.investment_type in (InvestmentType.STOCK, InvestmentType.ETF) and holding.isin:
        if directory is None:
            return holding
        try:
            match = await asyncio.to_thread(directory.lookup_isin, holding.isin)
        except SymbolLookupError as exc:
            logger.warning("ISIN lookup failed for %s (%s): %s", holding.ticker, holding.isin, exc)
            return holding
        return holding.model_copy(
            update={"name": match["name"], "ticker": match["ticker"].upper(), "needs_review": False}
        )
    if holding.investment_type == InvestmentType.CRYPTO:
        ticker = holding.ticker.lower()
        name = holding.name.lower()
        asset = next(
            (a for a in CRYPTOCURRENCIES if a.ticker.lower() == ticker or a.name.lower() == name),
            None,
        )
        if asset is None:
            logger.warning("Could not verify crypto %s, needs manual review", holding.ticker)
            return holding
        return holding.model_copy(
            update={"name": asset.name, "ticker": asset.ticker, "needs_review": False}
        )
    return holding


async def _fetch_crypto_prices(
    holdings: list[InvestmentHolding], source: PriceSource, prices: dict[str, Decimal]
) -> None:
    if not holdings:
        return
    coin_ids = sorted({COINGECKO_IDS[h.ticker] for h in holdings})
    try:
        quotes = await asyncio.to_thread(source.fetch_crypto_prices, coin_ids)
    except PriceSourceUnavailable as exc:
        logger.warning("Crypto price fetch error: %s", exc)
        return
    for holding in holdings:
        quote_key = "usd" if holding.currency == Currency.USD else "eur"
        price = quotes.get(COINGECKO_IDS[holding.ticker], {}).get(quote_key)
        if price:
            prices[holding.id] = price


async def _fetch_equity_price(
    holding: InvestmentHolding, source: PriceSource, prices: dict[str, Decimal]
) -> None:
    try:
        prices[holding.id] = await asyncio.to_thread(source.fetch_equity_price, holding.ticker)
    except PriceSourceUnavailable as exc:
        logger.warning("Stock price fetch error for %s: %s", holding.ticker, exc)


def _dig(payload: Any, *path: str | int) -> Any:
    current = payload
    for key in path:
        if isinstance(key, int):
            if not isinstance(current, list) or len(current) <= key:
                return None
        elif not isinstance(current, dict):
            return None
        current = current[key] if isinstance(key, int) else current.get(key)
        if current is None:
            return None
    return current


def _positive_price(value: Any, label: str) -> Decimal:
    price = _parse_price(value)
    if price is None:
        raise PriceSourceUnavailable(f"Price not found for {label}")
    return price


def _parse_price(value: Any) -> Decimal | None:
    if value is None or isinstance(value, (bool, dict, list)):
        return None
    try:
        price = Decimal(str(value))
    except InvalidOperation:
        return None
    if not price.is_finite() or price <= ZERO:
        return None
    return price
