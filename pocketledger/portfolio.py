from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from typing import Iterable, Sequence

from pocketledger.currency_conversion import CurrencyConverter
from pocketledger.ledger import Ledger
from pocketledger.models import (
    ZERO,
    Currency,
    InvestmentHolding,
    InvestmentTransaction,
    InvestmentTransactionType,
    InvestmentType,
    ReportData,
)
from pocketledger.price_sources import HistoricalPriceLookup

ONE = Decimal("1")
HUNDRED = Decimal("100")
HALF = Decimal("0.5")
DIETZ_MIN_DENOMINATOR = ONE
DUST_QUANTITY = Decimal("0.00001")
SORT_OPTIONS = {"alphabetical", "marketValue", "profitPercentage"}


@dataclass(frozen=True)
class HoldingSummary:
    holding: InvestmentHolding
    quantity: Decimal
    transaction_count: int
    cost_basis: Decimal
    proceeds: Decimal
    dividends: Decimal
    market_value: Decimal
    total_return: Decimal
    return_pct: Decimal
    market_value_eur: Decimal
    cost_basis_eur: Decimal
    proceeds_eur: Decimal
    dividends_eur: Decimal
    total_return_eur: Decimal
    return_pct_eur: Decimal
    transactions: tuple[InvestmentTransaction, ...] = ()
    allocation_pct: Decimal = ZERO

    @property
    def investment_type(self) -> InvestmentType:
        return self.holding.investment_type


@dataclass(frozen=True)
class PortfolioStats:
    total_market_value_eur: Decimal
    total_cost_basis_eur: Decimal
    total_return_eur: Decimal
    total_pl_pct: Decimal
    value_by_type: dict[str, Decimal] = field(default_factory=dict)
    ytd_return_eur: Decimal | None = None
    ytd_return_pct: Decimal | None = None
    ytd_dividends_eur: Decimal = ZERO
    total_dividends_eur: Decimal = ZERO
    annual_dividend_yield: Decimal = ZERO


def return_percentage(total_return: Decimal, cost_basis: Decimal) -> Decimal:
    if cost_basis == ZERO:
        return ZERO
    return total_return / cost_basis * HUNDRED


def modified_dietz(start_value: Decimal, end_value: Decimal, net_inflows: Decimal) -> Decimal:
    """Period return in percent with inflows weighted at half the period.

    Denominators of 1 or less yield 0 so tiny starting balances do not spike.
    """
    gain = end_value - start_value - net_inflows
    denominator = start_value + net_inflows * HALF
    if denominator > DIETZ_MIN_DENOMINATOR:
        return gain / denominator * HUNDRED
    return ZERO


def holding_quantity(transactions: Iterable[InvestmentTransaction]) -> Decimal:
    quantity = ZERO
    for txn in transactions:
        if txn.type == InvestmentTransactionType.BUY:
            quantity += txn.quantity
        elif txn.type == InvestmentTransactionType.SELL:
            quantity -= txn.quantity
    return quantity


async def summarize_holding(
    holding: InvestmentHolding,
    transactions: Sequence[InvestmentTransaction],
    converter: CurrencyConverter,
) -> HoldingSummary:
    quantity = holding_quantity(transactions)
    cost_basis, proceeds, dividends = _totals(transactions, [ONE] * len(transactions))

    market_value = ZERO
    if holding.current_price and quantity > ZERO:
        market_value = holding.current_price * quantity
    total_return = market_value + proceeds + dividends - cost_basis

    if holding.currency == Currency.EUR:
        return HoldingSummary(
            holding=holding,
            quantity=quantity,
            transaction_count=len(transactions),
            cost_basis=cost_basis,
            proceeds=proceeds,
            dividends=dividends,
            market_value=market_value,
            total_return=total_return,
            return_pct=return_percentage(total_return, cost_basis),
            market_value_eur=market_value,
            cost_basis_eur=cost_basis,
            proceeds_eur=proceeds,
            dividends_eur=dividends,
            total_return_eur=total_return,
            return_pct_eur=return_percentage(total_return, cost_basis),
            transactions=tuple(transactions),
        )

    # Each trade at its own day's rate, the open position at today's rate.
    rates = await asyncio.gather(
        *(converter.rate_for_date(txn.date, holding.currency, Currency.EUR) for txn in transactions)
    )
    cost_basis_eur, proceeds_eur, dividends_eur = _totals(transactions, rates)
    market_value_eur = converter.convert(market_value, holding.currency, Currency.EUR)
    total_return_eur = market_value_eur + proceeds_eur + dividends_eur - cost_basis_eur
    return HoldingSummary(
        holding=holding,
        quantity=quantity,
        transaction_count=len(transactions),
        cost_basis=cost_basis,
        proceeds=proceeds,
        dividends=dividends,
        market_value=market_value,
        total_return=total_return,
        return_pct=return_percentage(total_return, cost_basis),
        market_value_eur=market_value_eur,
        cost_basis_eur=cost_basis_eur,
        proceeds_eur=proceeds_eur,
        dividends_eur=dividends_eur,
        total_return_eur=total_return_eur,
        return_pct_eur=return_percentage(total_return_eur, cost_basis_eur),
        transactions=tuple(transactions),
    )


async def summarize_portfolio(
    ledger: Ledger,
    converter: CurrencyConverter,
    sort_by: str = "alphabetical",
) -> list[HoldingSummary]:
    if sort_by not in SORT_OPTIONS:
        raise ValueError("Sort must be alphabetical, marketValue or profitPercentage.")
    summaries = await asyncio.gather(
        *(
            summarize_holding(holding, ledger.transactions_for_holding(holding.id), converter)
            for holding in ledger.holdings
        )
    )
    visible = [s for s in summaries if s.quantity > DUST_QUANTITY or s.transaction_count == 0]
    with_allocation = allocate(visible)

    if sort_by == "marketValue":
        with_allocation.sort(key=lambda s: s.market_value_eur, reverse=True)
    elif sort_by == "profitPercentage":
        with_allocation.sort(key=lambda s: s.return_pct, reverse=True)
    else:
        with_allocation.sort(key=lambda s: s.holding.ticker)
    return with_allocation


def allocate(summaries: Sequence[HoldingSummary]) -> list[HoldingSummary]:
    total = sum((s.market_value_eur for s in summaries if s.quantity > ZERO), ZERO)
    allocated = []
    for summary in summaries:
        pct = ZERO
        if total > ZERO and summary.quantity > ZERO:
            pct = summary.market_value_eur / total * HUNDRED
        allocated.append(_with_allocation(summary, pct))
    return allocated


async def value_as_of(
    ledger: Ledger,
    as_of: date,
    price_lookup: HistoricalPriceLookup,
    converter: CurrencyConverter,
    types: Iterable[InvestmentType] | None = None,
) -> Decimal:
    """EUR value of the positions held at the end of ``as_of``."""
    allowed = set(types) if types is not None else None
    holdings = [
        h for h in ledger.holdings if allowed is None or h.investment_type in allowed
    ]

    async def holding_value(holding: InvestmentHolding) -> Decimal:
        held = [txn for txn in ledger.transactions_for_holding(holding.id) if txn.date <= as_of]
        if not held:
            return ZERO
        quantity = holding_quantity(held)
        if quantity <= ZERO:
            return ZERO
        price = await price_lookup.price_on(holding, as_of)
        return converter.convert(quantity * price, holding.currency, Currency.EUR)

    values = await asyncio.gather(*(holding_value(h) for h in holdings))
    return sum(values, ZERO)


def portfolio_stats(
    summaries: Sequence[HoldingSummary],
    reports: Sequence[ReportData],
    converter: CurrencyConverter,
    today: date,
    exclude_crypto: bool = False,
) -> PortfolioStats:
    considered = [
        s for s in summaries if not (exclude_crypto and s.investment_type == InvestmentType.CRYPTO)
    ]

    value_by_type = {"stocks": ZERO, "etfs": ZERO, "crypto": ZERO}
    for summary in summaries:
        value_by_type[_type_bucket(summary.investment_type)] += summary.market_value_eur

    total_market_value = sum((s.market_value_eur for s in considered), ZERO)
    total_cost_basis = sum((s.cost_basis_eur for s in considered), ZERO)
    total_return = sum((s.total_return_eur for s in considered), ZERO)

    one_year_ago = _one_year_before(today)
    ytd_buys = ytd_sells = ytd_dividends = annual_dividends = total_dividends = ZERO
    for summary in considered:
        currency = summary.holding.currency
        for txn in summary.transactions:
            amount_eur = converter.convert(txn.total_amount, currency, Currency.EUR)
            is_dividend = txn.type == InvestmentTransactionType.DIVIDEND
            if txn.date.year == today.year:
                if txn.type == InvestmentTransactionType.BUY:
                    ytd_buys += amount_eur
                elif txn.type == InvestmentTransactionType.SELL:
                    ytd_sells += amount_eur
                elif is_dividend:
                    ytd_dividends += amount_eur
            if is_dividend:
                total_dividends += amount_eur
                if txn.date >= one_year_ago:
                    annual_dividends += amount_eur

    ytd_return = ytd_pct = None
    start_report = next((r for r in reports if r.id == f"{today.year - 1}-12"), None)
    if start_report is not None:
        start_value = start_report.summary.end_of_month_investments
        if exclude_crypto:
            start_value -= start_report.summary.end_of_month_investments_crypto or ZERO
        ytd_return = total_market_value + ytd_sells + ytd_dividends - (start_value + ytd_buys)
        denominator = start_value + (ytd_buys - ytd_sells) * HALF
        ytd_pct = ytd_return / denominator * HUNDRED if denominator > ZERO else ZERO

    return PortfolioStats(
        total_market_value_eur=total_market_value,
        total_cost_basis_eur=total_cost_basis,
        total_return_eur=total_return,
        total_pl_pct=return_percentage(total_return, total_cost_basis),
        value_by_type=value_by_type,
        ytd_return_eur=ytd_return,
        ytd_return_pct=ytd_pct,
        ytd_dividends_eur=ytd_dividends,
        total_dividends_eur=total_dividends,
        annual_dividend_yield=(
            annual_dividends / total_market_value * HUNDRED if total_market_value > ZERO else ZERO
        ),
    )


def _totals(
    transactions: Sequence[InvestmentTransaction], rates: Sequence[Decimal]
) -> tuple[Decimal, Decimal, Decimal]:
    cost_basis = proceeds = dividends = ZERO
    for txn, rate in zip(transactions, rates):
        amount = txn.total_amount * rate
        if txn.type == InvestmentTransactionType.BUY:
            cost_basis += amount
        elif txn.type == InvestmentTransactionType.SELL:
            proceeds += amount
        elif txn.type == InvestmentTransactionType.DIVIDEND:
            dividends += amount
    return cost_basis, proceeds, dividends


def _with_allocation(summary: HoldingSummary, pct: Decimal) -> HoldingSummary:
    return replace(summary, allocation_pct=pct)


def _type_bucket(investment_type: InvestmentType) -> str:
    if investment_type == InvestmentType.ETF:
        return "etfs"
    if investment_type == InvestmentType.CRYPTO:
        return "crypto"
    return "stocks"


def _one_year_before(today: date) -> date:
    try:
        return today.replace(year=today.year - 1)
    except ValueError:
        return today.replace(year=today.year - 1, day=28)
