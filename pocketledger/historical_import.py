from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal, Sequence, TypeVar

from pydantic import AliasChoices, BaseModel, Field, TypeAdapter, ValidationError, field_validator

from pocketledger.balances import balance_as_of
from pocketledger.currency_conversion import CurrencyConverter
from pocketledger.ledger import Ledger
from pocketledger.models import (
    ZERO,
    Account,
    AccountType,
    CamelModel,
    CategoryExtension,
    CostCategory,
    Currency,
    CustomCategories,
    IncomeType,
    InvestmentHolding,
    InvestmentTransaction,
    InvestmentTransactionType,
    InvestmentType,
    MonthlySummary,
    Transaction,
    TransactionType,
)
from pocketledger.monthly_summary import generate_monthly_summary, sort_summaries
from pocketledger.periods import month_start, parse_month_value

logger = logging.getLogger(__name__)

LEGACY_BANK_NAME = "Legacy Bank (EUR)"
LEGACY_BANK_BALANCE = Decimal("8000")
DEFAULT_BANK_NAME = "Default Bank (EUR)"
EXPENSE_DAY = 15
WORK_INCOME_DAY = 5
EXTRA_INCOME_DAY = 20

LogT = TypeVar("LogT", bound=BaseModel)


class ImportFormatError(ValueError):
    """A log document could not be read; nothing was imported."""

    def __init__(self, source: str, message: str) -> None:
        super().__init__(f"{source}: {message}")
        self.source = source


class ExpenseLog(BaseModel):
    month: str
    group: Literal["Must", "Wants"]
    category: str
    sub: str
    amount: Decimal

    @property
    def cost_category(self) -> CostCategory:
        return CostCategory.MUST if self.group == "Must" else CostCategory.WANTS


class DividendLog(BaseModel):
    stock: str
    amount: Decimal
    currency: str = "EUR"
    platform: str
    date: date

    @field_validator("date", mode="before")
    @classmethod
    def parse_day_first(cls, value: Any) -> Any:
        if isinstance(value, str):
            try:
                return datetime.strptime(value.strip(), "%d/%m/%Y").date()
            except ValueError as exc:
                raise ValueError("Dividend date must be DD/MM/YYYY.") from exc
        return value


class TradeLog(BaseModel):
    source: str | None = None
    platform: str
    ticker: str
    date: date
    price: Decimal
    quantity: Decimal
    currency: str = "EUR"
    type: Literal["Buy", "Sell"]
    isin: str | None = Field(default=None, validation_alias=AliasChoices("isin", "ISIN"))
    transaction_cost: Decimal = Field(default=ZERO, validation_alias=AliasChoices("TCOST", "tcost"))

    @field_validator("date", mode="before")
    @classmethod
    def keep_calendar_day(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip()[:10]
        return value


class MonthIncome(BaseModel):
    work: Decimal = ZERO
    extra: Decimal = ZERO


class MonthEndInvestments(CamelModel):
    stocks_etfs: Decimal = ZERO
    crypto: Decimal = ZERO
    total: Decimal = ZERO


class MonthEndPosition(BaseModel):
    cash: Decimal = ZERO
    investments: MonthEndInvestments = Field(default_factory=MonthEndInvestments)


class MonthEndLog(CamelModel):
    month: str
    income: MonthIncome = Field(default_factory=MonthIncome)
    end_of_month: MonthEndPosition = Field(default_factory=MonthEndPosition)

    @property
    def first_day(self) -> date:
        return month_start(parse_month_value(self.month))


class AccountsBalancesLog(BaseModel):
    accounts: dict[AccountType, dict[str, Decimal]]


@dataclass(frozen=True)
class ImportResult:
    ledger: Ledger
    summaries: list[MonthlySummary]
    custom_categories: CustomCategories


def import_history(
    expenses_json: str | None = None,
    dividends_json: str | None = None,
    month_end_json: str | None = None,
    investments_json: str | None = None,
    *,
    converter: CurrencyConverter,
    today: date,
) -> ImportResult:
    """Rebuild a complete ledger from the four historical log documents.

    The result replaces whatever ledger existed before; nothing is merged.
    Initial balances of accounts listed in the balances entry of the month end
    log are solved so that replaying the imported ledger ends on the reported
    balance.
    """
    expenses = _parse_logs("expenses", expenses_json, ExpenseLog)
    dividends = _parse_logs("dividends", dividends_json, DividendLog)
    trades = _parse_logs("investments", investments_json, TradeLog)
    month_ends, balances = _parse_month_end(month_end_json)

    if not (expenses or dividends or trades or month_ends):
        raise ImportFormatError("import", "No data found in any of the provided files.")

    current_month = month_start(today)
    month_ends = [log for log in month_ends if log.first_day < current_month]

    accounts = _discover_accounts(balances, trades, dividends)
    holdings = _discover_holdings(trades, dividends)
    account_ids = {acc.name: acc.id for acc in accounts}
    holding_ids = {h.ticker: h.id for h in holdings}
    bank = next((acc for acc in accounts if acc.type == AccountType.BANK), accounts[0])

    def platform_account(platform: str) -> str | None:
        return account_ids.get(platform) or account_ids.get(_brokerage_name(platform))

    investment_transactions: list[InvestmentTransaction] = []
    for index, trade in enumerate(trades):
        holding_id = holding_ids.get(trade.ticker.strip().upper())
        account_id = platform_account(trade.platform)
        if holding_id is None or account_id is None:
            logger.warning("Skipping trade of %s on unknown platform %s", trade.ticker, trade.platform)
            continue
        total = trade.quantity * trade.price
        if trade.type == "Buy":
            total += trade.transaction_cost
        else:
            total -= trade.transaction_cost
        investment_transactions.append(
            InvestmentTransaction(
                id=f"hist-invest-{trade.date.isoformat()}-{index}",
                holding_id=holding_id,
                account_id=account_id,
                type=InvestmentTransactionType.BUY if trade.type == "Buy" else InvestmentTransactionType.SELL,
                date=trade.date,
                quantity=trade.quantity,
                price_per_unit=trade.price,
                total_amount=total,
            )
        )

    for index, dividend in enumerate(dividends):
        holding_id = holding_ids.get(dividend.stock.strip().upper())
        account_id = platform_account(dividend.platform)
        if holding_id is None or account_id is None:
            logger.warning("Skipping dividend of %s on unknown platform %s", dividend.stock, dividend.platform)
            continue
        investment_transactions.append(
            InvestmentTransaction(
                id=f"hist-div-{dividend.date.isoformat()}-{index}",
                holding_id=holding_id,
                account_id=account_id,
                type=InvestmentTransactionType.DIVIDEND,
                date=dividend.date,
                total_amount=dividend.amount,
            )
        )

    transactions: list[Transaction] = []
    for index, expense in enumerate(expenses):
        first_day = month_start(_parse_log_month("expenses", expense.month))
        transactions.append(
            Transaction(
                id=f"hist-exp-{expense.month}-{index}",
                type=TransactionType.COST,
                amount=expense.amount,
                date=first_day.replace(day=EXPENSE_DAY),
                account_id=bank.id,
                description=expense.sub,
                category=expense.cost_category,
                sub_category=expense.category,
                detail=expense.sub,
            )
        )

    for log in month_ends:
        if log.income.work > ZERO:
            transactions.append(
                Transaction(
                    id=f"tx-income-work-{log.month}",
                    type=TransactionType.INCOME,
                    income_type=IncomeType.WORK,
                    amount=log.income.work,
                    date=log.first_day.replace(day=WORK_INCOME_DAY),
                    account_id=bank.id,
                    description="Work Income",
                )
            )
        if log.income.extra > ZERO:
            transactions.append(
                Transaction(
                    id=f"tx-income-extra-{log.month}",
                    type=TransactionType.INCOME,
                    income_type=IncomeType.EXTRA,
                    amount=log.income.extra,
                    date=log.first_day.replace(day=EXTRA_INCOME_DAY),
                    account_id=bank.id,
                    description="Extra Income",
                )
            )

    ledger = Ledger.build(accounts, transactions, holdings, investment_transactions)
    if balances is not None:
        ledger = _solve_initial_balances(ledger, balances, converter, today)

    months = {_parse_log_month("expenses", log.month) for log in expenses}
    months.update(log.first_day for log in month_ends)
    months.update(month_start(txn.date) for txn in investment_transactions)
    summaries = [
        _summary_for_month(ledger, first_day, month_ends, converter) for first_day in sorted(months)
    ]

    logger.info(
        "Imported %d transactions, %d investment transactions, %d summaries",
        len(transactions),
        len(investment_transactions),
        len(summaries),
    )
    return ImportResult(
        ledger=ledger,
        summaries=sort_summaries(summaries),
        custom_categories=_custom_categories(expenses),
    )


def _parse_logs(source: str, payload: str | None, model: type[LogT]) -> list[LogT]:
    if not payload or not payload.strip():
        return []
    data = _load_json(source, payload)
    try:
        return TypeAdapter(list[model]).validate_python(data)
    except ValidationError as exc:
        raise ImportFormatError(source, _first_error(exc)) from exc


def _parse_month_end(payload: str | None) -> tuple[list[MonthEndLog], AccountsBalancesLog | None]:
    if not payload or not payload.strip():
        return [], None
    data = _load_json("monthEnd", payload)
    if not isinstance(data, list):
        raise ImportFormatError("monthEnd", "Expected a list of month end entries.")

    balances = None
    if data and isinstance(data[-1], dict) and "accounts" in data[-1]:
        try:
            balances = AccountsBalancesLog.model_validate(data[-1])
        except ValidationError as exc:
            raise ImportFormatError("monthEnd", _first_error(exc)) from exc
        data = data[:-1]

    try:
        logs = TypeAdapter(list[MonthEndLog]).validate_python(data)
    except ValidationError as exc:
        raise ImportFormatError("monthEnd", _first_error(exc)) from exc
    for log in logs:
        _parse_log_month("monthEnd", log.month)
    return logs, balances


def _load_json(source: str, payload: str) -> Any:
    try:
        return json.loads(payload)
    except json.JSONDecodeError as exc:
        raise ImportFormatError(source, f"Invalid JSON: {exc.msg}") from exc


def _parse_log_month(source: str, value: str) -> date:
    try:
        return month_start(parse_month_value(value))
    except ValueError as exc:
        raise ImportFormatError(source, str(exc)) from exc


def _first_error(exc: ValidationError) -> str:
    error = exc.errors()[0]
    location = ".".join(str(part) for part in error["loc"])
    return f"{location}: {error['msg']}" if location else error["msg"]


def _brokerage_name(platform: str) -> str:
    return f"Brokerage ({platform})"


def _currency(value: str) -> Currency:
    return Currency.USD if value.strip().upper() == "USD" else Currency.EUR


def _discover_accounts(
    balances: AccountsBalancesLog | None,
    trades: Sequence[TradeLog],
    dividends: Sequence[DividendLog],
) -> list[Account]:
    by_name: dict[str, Account] = {}
    platform_logs: list[TradeLog | DividendLog] = [*trades, *dividends]

    def add(name: str, account_type: AccountType, currency: Currency, initial: Decimal = ZERO) -> None:
        by_name[name] = Account(
            id=f"hist-acc-{len(by_name)}",
            name=name,
            type=account_type,
            initial_balance=initial,
            currency=currency,
        )

    if balances is not None:
        for account_type, named in balances.accounts.items():
            for name in named:
                if name in by_name:
                    continue
                currency = Currency.EUR
                if account_type == AccountType.BROKERAGE:
                    match = next((log for log in platform_logs if log.platform == name), None)
                    if match is not None:
                        currency = _currency(match.currency)
                add(name, account_type, currency)
    else:
        add(LEGACY_BANK_NAME, AccountType.BANK, Currency.EUR, LEGACY_BANK_BALANCE)
        for log in platform_logs:
            name = _brokerage_name(log.platform)
            if name not in by_name:
                add(name, AccountType.BROKERAGE, _currency(log.currency))

    if not any(acc.type == AccountType.BANK for acc in by_name.values()):
        add(DEFAULT_BANK_NAME, AccountType.BANK, Currency.EUR)
    return list(by_name.values())


def _infer_investment_type(ticker: str, source: str | None) -> InvestmentType:
    if source in {t.value for t in InvestmentType}:
        return InvestmentType(source)
    if "BTC" in ticker or "ETH" in ticker:
        return InvestmentType.CRYPTO
    if "." in ticker:
        return InvestmentType.ETF
    return InvestmentType.STOCK


def _discover_holdings(
    trades: Sequence[TradeLog], dividends: Sequence[DividendLog]
) -> list[InvestmentHolding]:
    discovered: dict[str, InvestmentHolding] = {}
    entries: list[tuple[str, str, str | None, str | None]] = [
        (trade.ticker, trade.currency, trade.source, trade.isin) for trade in trades
    ]
    entries.extend((dividend.stock, dividend.currency, None, None) for dividend in dividends)

    for raw_ticker, currency, source, raw_isin in entries:
        ticker = raw_ticker.strip().upper()
        isin = raw_isin.strip().upper() if raw_isin else None
        existing = discovered.get(ticker)
        if existing is None:
            discovered[ticker] = InvestmentHolding(
                id=f"hist-hold-{len(discovered)}",
                name=ticker,
                ticker=ticker,
                investment_type=_infer_investment_type(ticker, source),
                currency=_currency(currency),
                isin=isin,
                needs_review=True,
            )
        elif existing.isin is None and isin:
            discovered[ticker] = existing.model_copy(update={"isin": isin})
    return list(discovered.values())


def _solve_initial_balances(
    ledger: Ledger,
    balances: AccountsBalancesLog,
    converter: CurrencyConverter,
    today: date,
) -> Ledger:
    targets = {name: target for named in balances.accounts.values() for name, target in named.items()}
    zeroed = Ledger.build(
        (
            acc.model_copy(update={"initial_balance": ZERO}) if acc.name in targets else acc
            for acc in ledger.accounts
        ),
        ledger.transactions,
        ledger.holdings,
        ledger.investment_transactions,
    )
    solved = []
    for account in zeroed.accounts:
        if account.name in targets:
            impact = balance_as_of(zeroed, account.id, today, converter)
            account = account.model_copy(update={"initial_balance": targets[account.name] - impact})
        solved.append(account)
    return Ledger.build(solved, ledger.transactions, ledger.holdings, ledger.investment_transactions)


def _summary_for_month(
    ledger: Ledger,
    first_day: date,
    month_ends: Sequence[MonthEndLog],
    converter: CurrencyConverter,
) -> MonthlySummary:
    summary = generate_monthly_summary(ledger, first_day.year, first_day.month, converter)
    snapshot = next((log for log in month_ends if log.first_day == first_day), None)
    if snapshot is None:
        return summary

    dividends = ZERO
    for txn in ledger.investment_transactions:
        if txn.type != InvestmentTransactionType.DIVIDEND or month_start(txn.date) != first_day:
            continue
        holding = ledger.find_holding(txn.holding_id)
        currency = holding.currency if holding is not None else Currency.USD
        dividends += converter.convert(txn.total_amount, currency, Currency.EUR)

    total_income = snapshot.income.work + snapshot.income.extra + dividends
    investments = snapshot.end_of_month.investments
    # Month end logs only split stocks+ETFs from crypto.
    return summary.model_copy(
        update={
            "end_of_month_cash": snapshot.end_of_month.cash,
            "end_of_month_investments": investments.total,
            "end_of_month_investments_stocks": investments.stocks_etfs,
            "end_of_month_investments_etfs": ZERO,
            "end_of_month_investments_crypto": investments.crypto,
            "total_income": total_income,
            "net_savings": total_income - summary.total_spending,
        }
    )


def _custom_categories(expenses: Sequence[ExpenseLog]) -> CustomCategories:
    extensions: dict[CostCategory, CategoryExtension] = {}
    for expense in expenses:
        extension = extensions.setdefault(expense.cost_category, CategoryExtension())
        if expense.category not in extension.new_sub_categories:
            extension.new_sub_categories.append(expense.category)
        details = extension.sub_categories.setdefault(expense.category, [])
        if expense.sub not in details:
            details.append(expense.sub)
    return CustomCategories(
        MUST=extensions.get(CostCategory.MUST),
        WANTS=extensions.get(CostCategory.WANTS),
    )
