from __future__ import annotations

import asyncio
import csv
import io
import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Iterable, Protocol, Sequence

from pocketledger.currency_conversion import CurrencyConverter
from pocketledger.ledger import Ledger, costs_in_category
from pocketledger.models import (
    ZERO,
    CostCategory,
    Currency,
    ExpenseDetails,
    IncomeDetails,
    IncomeType,
    InvestmentDetails,
    InvestmentHolding,
    InvestmentTransaction,
    InvestmentTransactionType,
    InvestmentType,
    MonthlySummary,
    Performance,
    ReportData,
    ReportSummary,
    SubCategoryTotal,
    TransactionType,
    period_id,
)
from pocketledger.monthly_summary import transaction_amount_eur, transactions_in_month
from pocketledger.periods import month_bounds, validate_year_month
from pocketledger.portfolio import HUNDRED, modified_dietz, value_as_of
from pocketledger.price_sources import HistoricalPriceLookup

logger = logging.getLogger(__name__)

ASSET_CLASSES: dict[str, InvestmentType] = {
    "stocks": InvestmentType.STOCK,
    "etfs": InvestmentType.ETF,
    "crypto": InvestmentType.CRYPTO,
}
CENT = Decimal("0.01")


class ExportSink(Protocol):
    def write(self, payload: str, filename: str) -> None: ...


@dataclass
class FileExportSink:
    directory: Path

    def write(self, payload: str, filename: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        # BOM so spreadsheet tools pick up UTF-8
        (self.directory / filename).write_text("﻿" + payload, encoding="utf-8")
        logger.info("Exported %s", filename)


def investment_amount_eur(
    ledger: Ledger, txn: InvestmentTransaction, converter: CurrencyConverter
) -> Decimal:
    account = ledger.find_account(txn.account_id)
    currency = account.currency if account is not None else Currency.EUR
    return converter.convert(txn.total_amount, currency, Currency.EUR)


def net_inflows(
    ledger: Ledger,
    transactions: Iterable[InvestmentTransaction],
    converter: CurrencyConverter,
    investment_type: InvestmentType | None = None,
) -> Decimal:
    holding_ids = {
        h.id for h in ledger.holdings if investment_type is None or h.investment_type == investment_type
    }
    inflows = ZERO
    for txn in transactions:
        if txn.holding_id not in holding_ids:
            continue
        if txn.type == InvestmentTransactionType.BUY:
            inflows += investment_amount_eur(ledger, txn, converter)
        elif txn.type == InvestmentTransactionType.SELL:
            inflows -= investment_amount_eur(ledger, txn, converter)
    return inflows


async def generate_report(
    ledger: Ledger,
    year: int,
    month: int,
    summaries: Sequence[MonthlySummary],
    converter: CurrencyConverter,
    price_lookup: HistoricalPriceLookup,
) -> ReportData:
    """Build the report of a 1-based ``month``.

    Cash amounts use the current rate of the account currency; portfolio values
    come from point-in-time valuations at the end of the previous and of the
    selected month.
    """
    validate_year_month(year, month)
    report_id = period_id(year, month)
    logger.info("Generating report for %s", report_id)

    start, end = month_bounds(year, month)
    month_transactions = transactions_in_month(ledger, year, month)
    month_investments = [
        txn for txn in ledger.investment_transactions if start <= txn.date <= end
    ]

    def cash_total(transactions) -> Decimal:
        return sum((transaction_amount_eur(ledger, txn, converter) for txn in transactions), ZERO)

    def investment_total(transactions) -> Decimal:
        return sum((investment_amount_eur(ledger, txn, converter) for txn in transactions), ZERO)

    income = [txn for txn in month_transactions if txn.type == TransactionType.INCOME]
    work_income = cash_total(txn for txn in income if txn.income_type == IncomeType.WORK)
    extra_income = [txn for txn in income if txn.income_type == IncomeType.EXTRA]
    dividends = [t for t in month_investments if t.type == InvestmentTransactionType.DIVIDEND]
    total_income = work_income + cash_total(extra_income) + investment_total(dividends)

    must_spending = cash_total(costs_in_category(month_transactions, CostCategory.MUST))
    wants_spending = cash_total(costs_in_category(month_transactions, CostCategory.WANTS))
    total_spending = must_spending + wants_spending

    buys = [t for t in month_investments if t.type == InvestmentTransactionType.BUY]
    sells = [t for t in month_investments if t.type == InvestmentTransactionType.SELL]
    net_investments = investment_total(buys) - investment_total(sells)

    net_savings = total_income - total_spending
    savings_rate = net_savings / total_income * HUNDRED if total_income > ZERO else ZERO
    investment_rate = net_investments / total_income * HUNDRED if total_income > ZERO else ZERO
    cash_flow = total_income - total_spending - net_investments

    costs = [txn for txn in month_transactions if txn.type == TransactionType.COST]
    by_sub_category: dict[str, SubCategoryTotal] = {}
    for txn in costs:
        if not txn.sub_category or txn.category is None:
            continue
        entry = by_sub_category.get(txn.sub_category)
        amount = transaction_amount_eur(ledger, txn, converter)
        if entry is None:
            by_sub_category[txn.sub_category] = SubCategoryTotal(total=amount, category=txn.category)
        else:
            by_sub_category[txn.sub_category] = entry.model_copy(update={"total": entry.total + amount})

    summary = next((s for s in summaries if s.id == report_id), None)
    end_of_month_cash = summary.end_of_month_cash if summary is not None else ZERO

    period_start = start - timedelta(days=1)
    windows: list[tuple[str, InvestmentType | None]] = [("total", None)]
    windows.extend(ASSET_CLASSES.items())
    values = await asyncio.gather(
        *(
            value_as_of(ledger, day, price_lookup, converter, None if kind is None else [kind])
            for _, kind in windows
            for day in (period_start, end)
        )
    )
    start_values = {name: values[i * 2] for i, (name, _) in enumerate(windows)}
    end_values = {name: values[i * 2 + 1] for i, (name, _) in enumerate(windows)}
    inflows = {name: net_inflows(ledger, month_investments, converter, kind) for name, kind in windows}
    performance = {
        name: modified_dietz(start_values[name], end_values[name], inflows[name]) for name, _ in windows
    }

    return ReportData(
        id=report_id,
        year=year,
        month=month - 1,
        summary=ReportSummary(
            total_income=total_income,
            total_spending=total_spending,
            net_savings=net_savings,
            net_investments=net_investments,
            savings_rate=savings_rate,
            investment_rate=investment_rate,
            cash_flow=cash_flow,
            end_of_month_cash=end_of_month_cash,
            end_of_month_investments=end_values["total"],
            end_of_month_investments_stocks=end_values["stocks"],
            end_of_month_investments_etfs=end_values["etfs"],
            end_of_month_investments_crypto=end_values["crypto"],
        ),
        income_details=IncomeDetails(
            work_income=work_income, extra_income=extra_income, dividends=dividends
        ),
        expense_details=ExpenseDetails(
            must_spending=must_spending,
            wants_spending=wants_spending,
            transactions=costs,
            by_sub_category=by_sub_category,
        ),
        investment_details=InvestmentDetails(
            buys=buys,
            sells=sells,
            performance=Performance(**performance),
            start_value=start_values["total"],
            end_value=end_values["total"],
            net_inflows=inflows["total"],
        ),
    )


def upsert_report(reports: Sequence[ReportData], report: ReportData) -> list[ReportData]:
    kept = [r for r in reports if r.id != report.id]
    return sorted([*kept, report], key=lambda r: r.id, reverse=True)


def report_filename(report: ReportData) -> str:
    return f"report-{report.id}.csv"


def report_to_csv(report: ReportData, holdings: Sequence[InvestmentHolding]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, delimiter=";", lineterminator="\n")
    writer.writerow(["Section", "Item", "Value"])
    tickers = {h.id: h.ticker for h in holdings}

    def row(section: str, item: str, value: Decimal) -> None:
        writer.writerow([section, item, _format_value(value)])

    summary = report.summary
    row("Summary", "Total Income", summary.total_income)
    row("Summary", "Total Expenses", summary.total_spending)
    row("Summary", "Net Savings", summary.net_savings)
    row("Summary", "Cash Flow", summary.cash_flow)
    row("Summary", "End of Month Cash", summary.end_of_month_cash)
    row("Summary", "End of Month Investments", summary.end_of_month_investments)
    row("Summary", "Savings Rate (%)", summary.savings_rate)
    row("Summary", "Investment Rate (%)", summary.investment_rate)
    buffer.write("\n")

    income = report.income_details
    row("Income", "Work Income", income.work_income)
    for txn in income.dividends:
        row("Income", f"Dividend ({tickers.get(txn.holding_id, 'N/A')})", txn.total_amount)
    for txn in income.extra_income:
        row("Income", f"Extra ({txn.description})", txn.amount)
    buffer.write("\n")

    expenses = report.expense_details
    row("Expenses", "Musts", expenses.must_spending)
    row("Expenses", "Wants", expenses.wants_spending)
    buffer.write("\n")
    for name, entry in expenses.by_sub_category.items():
        row("Expense Category", name, entry.total)
    buffer.write("\n")

    investments = report.investment_details
    row("Investments", "Start Value", investments.start_value)
    row("Investments", "End Value", investments.end_value)
    row("Investments", "Net Inflows", investments.net_inflows)
    row("Investments", "Total Performance (%)", investments.performance.total)
    row("Investments", "Stocks Performance (%)", investments.performance.stocks)
    row("Investments", "ETFs Performance (%)", investments.performance.etfs)
    row("Investments", "Crypto Performance (%)", investments.performance.crypto)
    return buffer.getvalue()


def transactions_to_csv(ledger: Ledger, year: int, month: int) -> str:
    """Cash and investment activity of a month, newest first."""
    validate_year_month(year, month)
    start, end = month_bounds(year, month)
    rows: list[tuple] = []

    for txn in ledger.transactions:
        if not start <= txn.date <= end:
            continue
        account = ledger.find_account(txn.account_id or txn.from_account_id)
        currency = account.currency.value if account is not None else Currency.EUR.value
        account_name = account.name if account is not None else "N/A"
        if txn.type == TransactionType.TRANSFER:
            to_account = ledger.find_account(txn.to_account_id)
            details = f"To: {to_account.name if to_account is not None else 'N/A'}"
            amount = -txn.amount
        elif txn.type == TransactionType.INCOME:
            details = txn.income_type.value if txn.income_type is not None else ""
            amount = txn.amount
        else:
            category = txn.category.value if txn.category is not None else ""
            details = f"{category} > {txn.sub_category or ''}"
            amount = -txn.amount
        rows.append((txn.date, txn.description, amount, currency, account_name, details))

    for inv in ledger.investment_transactions:
        if not start <= inv.date <= end:
            continue
        account = ledger.find_account(inv.account_id)
        holding = ledger.find_holding(inv.holding_id)
        if account is None or holding is None:
            continue
        positive = inv.type != InvestmentTransactionType.BUY
        if inv.type == InvestmentTransactionType.DIVIDEND:
            details = "Dividend Income"
        else:
            details = f"{inv.quantity:.4f} @ {inv.price_per_unit:.2f}"
        rows.append(
            (
                inv.date,
                f"{inv.type.value} {holding.ticker}",
                inv.total_amount if positive else -inv.total_amount,
                account.currency.value,
                account.name,
                details,
            )
        )

    rows.sort(key=lambda r: r[0], reverse=True)
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(["Date", "Description", "Amount", "Currency", "Account Name", "Details"])
    for day, description, amount, currency, account_name, details in rows:
        writer.writerow(
            [day.isoformat(), description, f"{amount.quantize(CENT, ROUND_HALF_UP)}", currency, account_name, details]
        )
    return buffer.getvalue()


def transactions_filename(year: int, month: int) -> str:
    return f"transactions-{period_id(year, month)}.csv"


def _format_value(value: Decimal | None) -> str:
    if value is None:
        value = ZERO
    return f"{value.quantize(CENT, ROUND_HALF_UP)}".replace(".", ",")
