from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Iterable, Sequence

from pocketledger.balances import total_cash_eur
from pocketledger.currency_conversion import CurrencyConverter
from pocketledger.ledger import Ledger, costs_in_category
from pocketledger.models import (
    ZERO,
    CostCategory,
    Currency,
    MonthlySummary,
    Transaction,
    TransactionType,
    period_id,
)
from pocketledger.periods import month_bounds, previous_month

logger = logging.getLogger(__name__)


def transaction_amount_eur(
    ledger: Ledger, txn: Transaction, converter: CurrencyConverter
) -> Decimal:
    """Amount of a COST/INCOME in EUR, at the current rate of its account's currency."""
    account = ledger.find_account(txn.account_id)
    currency = account.currency if account is not None else Currency.EUR
    return converter.convert(txn.amount, currency, Currency.EUR)


def transactions_in_month(ledger: Ledger, year: int, month: int) -> list[Transaction]:
    start, end = month_bounds(year, month)
    return [txn for txn in ledger.transactions if start <= txn.date <= end]


def generate_monthly_summary(
    ledger: Ledger,
    year: int,
    month: int,
    converter: CurrencyConverter,
) -> MonthlySummary:
    _, end = month_bounds(year, month)
    month_transactions = transactions_in_month(ledger, year, month)

    def total(transactions: Iterable[Transaction]) -> Decimal:
        return sum((transaction_amount_eur(ledger, txn, converter) for txn in transactions), ZERO)

    must_spending = total(costs_in_category(month_transactions, CostCategory.MUST))
    wants_spending = total(costs_in_category(month_transactions, CostCategory.WANTS))
    total_income = total(txn for txn in month_transactions if txn.type == TransactionType.INCOME)
    total_spending = must_spending + wants_spending

    return MonthlySummary(
        id=period_id(year, month),
        year=year,
        month=month - 1,
        total_income=total_income,
        total_spending=total_spending,
        must_spending=must_spending,
        wants_spending=wants_spending,
        net_savings=total_income - total_spending,
        end_of_month_cash=total_cash_eur(ledger, end, converter),
    )


def sort_summaries(summaries: Iterable[MonthlySummary]) -> list[MonthlySummary]:
    return sorted(summaries, key=lambda s: s.id, reverse=True)


def ensure_summaries_up_to_date(
    ledger: Ledger,
    summaries: Sequence[MonthlySummary],
    converter: CurrencyConverter,
    today: date,
) -> list[MonthlySummary]:
    """Add the summary of the month before ``today`` when it is missing and had activity.

    Existing summaries are never recomputed, so calling this repeatedly is safe.
    """
    if not ledger.has_activity():
        return sort_summaries(summaries)

    last_month = previous_month(today)
    summary_id = period_id(last_month.year, last_month.month)
    if any(s.id == summary_id for s in summaries):
        return sort_summaries(summaries)
    if not transactions_in_month(ledger, last_month.year, last_month.month):
        return sort_summaries(summaries)

    logger.info("Generating summary for %s", summary_id)
    summary = generate_monthly_summary(ledger, last_month.year, last_month.month, converter)
    return sort_summaries([*summaries, summary])


def active_months(ledger: Ledger) -> set[tuple[int, int]]:
    months = {(txn.date.year, txn.date.month) for txn in ledger.transactions}
    months.update((txn.date.year, txn.date.month) for txn in ledger.investment_transactions)
    return months


def regenerate_all_summaries(ledger: Ledger, converter: CurrencyConverter) -> list[MonthlySummary]:
    return sort_summaries(
        generate_monthly_summary(ledger, year, month, converter)
        for year, month in active_months(ledger)
    )
