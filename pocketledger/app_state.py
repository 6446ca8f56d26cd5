from __future__ import annotations

import logging
import threading
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Iterable

from pydantic import TypeAdapter

from pocketledger import budget as budget_rules
from pocketledger import categories
from pocketledger.balances import current_balance
from pocketledger.currency_conversion import CurrencyConverter
from pocketledger.historical_import import import_history
from pocketledger.ledger import Ledger
from pocketledger.models import (
    Account,
    Budget,
    CostCategory,
    CustomCategories,
    ExchangeRate,
    InvestmentHolding,
    InvestmentTransaction,
    MonthlySummary,
    ReportData,
    Transaction,
)
from pocketledger.monthly_summary import ensure_summaries_up_to_date, regenerate_all_summaries
from pocketledger.portfolio import HoldingSummary, PortfolioStats, portfolio_stats, summarize_portfolio
from pocketledger.price_sources import (
    HistoricalPriceLookup,
    PriceRefreshResult,
    PriceSource,
    PriceSourceUnavailable,
    SymbolDirectory,
    refresh_holdings,
)
from pocketledger.reports import (
    ExportSink,
    generate_report,
    report_filename,
    report_to_csv,
    transactions_filename,
    transactions_to_csv,
    upsert_report,
)
from pocketledger.sample_data import demo_ledger
from pocketledger.storage import StateStore

logger = logging.getLogger(__name__)

_ACCOUNTS = TypeAdapter(list[Account])
_TRANSACTIONS = TypeAdapter(list[Transaction])
_HOLDINGS = TypeAdapter(list[InvestmentHolding])
_INVESTMENT_TRANSACTIONS = TypeAdapter(list[InvestmentTransaction])
_SUMMARIES = TypeAdapter(list[MonthlySummary])
_REPORTS = TypeAdapter(list[ReportData])


def _dump(items: Iterable[Any]) -> list[dict]:
    return [item.to_json() for item in items]


def _ledger_values(ledger: Ledger) -> dict[str, Any]:
    return {
        "accounts": _dump(ledger.accounts),
        "transactions": _dump(ledger.transactions),
        "investmentHoldings": _dump(ledger.holdings),
        "investmentTransactions": _dump(ledger.investment_transactions),
    }


class FinanceApp:
    """Single owner of the ledger, derived data and caches.

    Every mutator builds the new state first, persists it in one store
    transaction and only then swaps it in, so a failure leaves the previous
    state untouched. Read-build-commit sequences hold ``_lock``; request
    handlers call in from a thread pool.
    """

    def __init__(
        self,
        store: StateStore,
        converter: CurrencyConverter | None = None,
        price_source: PriceSource | None = None,
        symbol_directory: SymbolDirectory | None = None,
        clock: Callable[[], date] = date.today,
    ) -> None:
        self.store = store
        self.clock = clock
        self.converter = converter or CurrencyConverter(clock=clock)
        self.price_source = price_source
        self.symbol_directory = symbol_directory
        self.ledger = Ledger()
        self.budget = Budget()
        self.summaries: list[MonthlySummary] = []
        self.reports: list[ReportData] = []
        self.custom_categories = CustomCategories()
        self._lock = threading.RLock()

    def load(self) -> None:
        store = self.store
        self.ledger = Ledger.build(
            _ACCOUNTS.validate_python(store.load("accounts", [])),
            _TRANSACTIONS.validate_python(store.load("transactions", [])),
            _HOLDINGS.validate_python(store.load("investmentHoldings", [])),
            _INVESTMENT_TRANSACTIONS.validate_python(store.load("investmentTransactions", [])),
        )
        self.budget = Budget.model_validate(store.load("budget", {}))
        self.custom_categories = CustomCategories.model_validate(store.load("customCategories", {}))
        self.summaries = _SUMMARIES.validate_python(store.load("monthlySummaries", []))
        self.reports = _REPORTS.validate_python(store.load("reports", []))
        stored_rate = store.load("exchangeRate")
        if stored_rate is not None:
            self.converter.exchange_rate = ExchangeRate.model_validate(stored_rate)
        self.converter.historical_rates.clear()
        self.converter.historical_rates.update(
            (key, Decimal(str(value))) for key, value in store.load("historicalRates", {}).items()
        )
        logger.info(
            "Loaded %d accounts, %d transactions, %d holdings",
            len(self.ledger.accounts),
            len(self.ledger.transactions),
            len(self.ledger.holdings),
        )
        self.ensure_summaries()

    # Persistence

    def _commit(
        self,
        ledger: Ledger | None = None,
        budget: Budget | None = None,
        summaries: list[MonthlySummary] | None = None,
        reports: list[ReportData] | None = None,
        custom_categories: CustomCategories | None = None,
        rates: bool = False,
    ) -> None:
        values: dict[str, Any] = {}
        if ledger is not None:
            values.update(_ledger_values(ledger))
        if budget is not None:
            values["budget"] = budget.to_json()
        if summaries is not None:
            values["monthlySummaries"] = _dump(summaries)
        if reports is not None:
            values["reports"] = _dump(reports)
        if custom_categories is not None:
            values["customCategories"] = custom_categories.to_json()
        if rates:
            values["exchangeRate"] = self.converter.exchange_rate.to_json()
            values["historicalRates"] = {
                key: str(value) for key, value in self.converter.historical_rates.items()
            }
        if not values:
            return
        with self._lock:
            self.store.save_many(values)
            if ledger is not None:
                self.ledger = ledger
            if budget is not None:
                self.budget = budget
            if summaries is not None:
                self.summaries = summaries
            if reports is not None:
                self.reports = reports
            if custom_categories is not None:
                self.custom_categories = custom_categories

    def _change_ledger(self, change: Callable[[Ledger], Ledger]) -> Ledger:
        """Apply ``change`` to the current ledger and commit it with its summaries."""
        with self._lock:
            ledger = change(self.ledger)
            summaries = ensure_summaries_up_to_date(
                ledger, self.summaries, self.converter, self.clock()
            )
            self._commit(ledger=ledger, summaries=summaries)
            return ledger

    def ensure_summaries(self) -> list[MonthlySummary]:
        with self._lock:
            summaries = ensure_summaries_up_to_date(
                self.ledger, self.summaries, self.converter, self.clock()
            )
            if [s.id for s in summaries] != [s.id for s in self.summaries]:
                self._commit(summaries=summaries)
            return self.summaries

    # Ledger

    def add_transaction(self, transaction: Transaction) -> Transaction:
        ledger = self._change_ledger(lambda current: current.add_transaction(transaction))
        return ledger.transactions[-1]

    def move_funds(
        self, from_account_id: str, to_account_id: str, amount: Decimal, day: date, description: str = ""
    ) -> Transaction:
        ledger = self._change_ledger(
            lambda current: current.move_funds(
                from_account_id, to_account_id, amount, day, description, self.converter
            )
        )
        return ledger.transactions[-1]

    def add_account(self, account: Account) -> Account:
        ledger = self._change_ledger(lambda current: current.add_account(account))
        return ledger.accounts[-1]

    def update_account(self, account: Account) -> Account:
        ledger = self._change_ledger(lambda current: current.update_account(account))
        return ledger.find_account(account.id)

    def delete_account(self, account_id: str) -> None:
        self._change_ledger(lambda current: current.delete_account(account_id))

    def reorder_accounts(self, account_ids: list[str]) -> None:
        self._change_ledger(lambda current: current.reorder_accounts(account_ids))

    def add_holding(self, holding: InvestmentHolding) -> InvestmentHolding:
        ledger = self._change_ledger(lambda current: current.add_holding(holding))
        return ledger.holdings[-1]

    def update_holding(self, holding: InvestmentHolding) -> InvestmentHolding:
        ledger = self._change_ledger(lambda current: current.update_holding(holding))
        return ledger.find_holding(holding.id)

    def edit_holding(self, holding_id: str, **changes: Any) -> InvestmentHolding:
        """Update the given fields of a holding, keeping the rest."""

        def change(current: Ledger) -> Ledger:
            existing = current.find_holding(holding_id)
            if existing is None:
                raise LookupError("Holding not found.")
            return current.update_holding(existing.model_copy(update=changes))

        return self._change_ledger(change).find_holding(holding_id)

    def add_investment_transaction(self, transaction: InvestmentTransaction) -> InvestmentTransaction:
        ledger = self._change_ledger(lambda current: current.add_investment_transaction(transaction))
        return ledger.investment_transactions[-1]

    def balances(self) -> dict[str, Decimal]:
        return {
            account.id: current_balance(self.ledger, account.id, self.converter)
            for account in self.ledger.accounts
        }

    # Budget and categories

    def update_budget(
        self,
        must_percentage: Decimal | None = None,
        wants_percentage: Decimal | None = None,
        monthly_income: Decimal | None = None,
    ) -> Budget:
        with self._lock:
            budget = self.budget
            if monthly_income is not None:
                budget = budget_rules.set_monthly_income(budget, monthly_income)
            if must_percentage is not None:
                budget = budget_rules.set_must_percentage(budget, must_percentage)
            if wants_percentage is not None:
                budget = budget_rules.set_wants_percentage(budget, wants_percentage)
            self._commit(budget=budget)
            return budget

    def add_custom_subcategory(self, category: CostCategory, sub_category: str) -> CustomCategories:
        with self._lock:
            custom = categories.add_custom_subcategory(self.custom_categories, category, sub_category)
            self._commit(custom_categories=custom)
            return custom

    def add_custom_detail(self, category: CostCategory, sub_category: str, detail: str) -> CustomCategories:
        with self._lock:
            custom = categories.add_custom_detail(self.custom_categories, category, sub_category, detail)
            self._commit(custom_categories=custom)
            return custom

    # Market data

    async def refresh_exchange_rate(self) -> bool:
        changed = await self.converter.refresh_daily_rate()
        if changed:
            self._commit(rates=True)
        return changed

    async def refresh_prices(self) -> PriceRefreshResult:
        if self.price_source is None:
            raise PriceSourceUnavailable("No price source configured")
        result = await refresh_holdings(self.ledger.holdings, self.price_source, self.symbol_directory)
        if result.changed:
            with self._lock:
                self._commit(ledger=self.ledger.replace_holdings(result.changed))
        if not result.complete:
            logger.warning("Some prices could not be updated (%d failed)", result.failed_count)
        return result

    async def portfolio(self, sort_by: str = "alphabetical") -> list[HoldingSummary]:
        known = len(self.converter.historical_rates)
        summaries = await summarize_portfolio(self.ledger, self.converter, sort_by)
        if len(self.converter.historical_rates) != known:
            self._commit(rates=True)
        return summaries

    async def portfolio_stats(self, exclude_crypto: bool = False) -> PortfolioStats:
        summaries = await self.portfolio()
        return portfolio_stats(summaries, self.reports, self.converter, self.clock(), exclude_crypto)

    # Reports

    async def generate_report(self, year: int, month: int) -> ReportData:
        lookup = HistoricalPriceLookup(self.ledger.investment_transactions, source=self.price_source)
        report = await generate_report(
            self.ledger, year, month, self.summaries, self.converter, lookup
        )
        with self._lock:
            self._commit(reports=upsert_report(self.reports, report), rates=True)
        return report

    def find_report(self, report_id: str) -> ReportData | None:
        return next((r for r in self.reports if r.id == report_id), None)

    def export_report(self, report_id: str, sink: ExportSink) -> str:
        report = self.find_report(report_id)
        if report is None:
            raise LookupError("Report not found.")
        filename = report_filename(report)
        sink.write(report_to_csv(report, self.ledger.holdings), filename)
        return filename

    def export_transactions(self, year: int, month: int, sink: ExportSink) -> str:
        payload = transactions_to_csv(self.ledger, year, month)
        filename = transactions_filename(year, month)
        sink.write(payload, filename)
        return filename

    # Whole-ledger replacement

    def import_history(
        self,
        expenses_json: str | None = None,
        dividends_json: str | None = None,
        month_end_json: str | None = None,
        investments_json: str | None = None,
    ) -> None:
        result = import_history(
            expenses_json,
            dividends_json,
            month_end_json,
            investments_json,
            converter=self.converter,
            today=self.clock(),
        )
        self._commit(
            ledger=result.ledger,
            summaries=result.summaries,
            reports=[],
            custom_categories=result.custom_categories,
        )

    def load_test_data(self) -> None:
        today = self.clock()
        ledger = demo_ledger(today)
        completed = [
            s
            for s in regenerate_all_summaries(ledger, self.converter)
            if (s.year, s.month + 1) < (today.year, today.month)
        ]
        self._commit(ledger=ledger, summaries=completed, reports=[])
