import logging
from datetime import date
from decimal import Decimal

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from pocketledger.app_state import FinanceApp
from pocketledger.budget import budget_amounts, budget_progress
from pocketledger.categories import detail_options, subcategory_options
from pocketledger.config import Settings
from pocketledger.currency_conversion import CurrencyConverter, FrankfurterRateSource
from pocketledger.ledger import new_id
from pocketledger.models import (
    Account,
    AccountType,
    Budget,
    CostCategory,
    Currency,
    ExchangeRate,
    IncomeType,
    InvestmentHolding,
    InvestmentTransaction,
    InvestmentTransactionType,
    InvestmentType,
    MonthlySummary,
    ReportData,
    Transaction,
    TransactionType,
)
from pocketledger.periods import parse_month_value
from pocketledger.portfolio import SORT_OPTIONS, HoldingSummary
from pocketledger.price_sources import MarketDataSource, OpenFigiDirectory, PriceSourceUnavailable
from pocketledger.reports import FileExportSink
from pocketledger.storage import StateStore

settings = Settings.from_env()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

finance = FinanceApp(
    StateStore.from_url(settings.database_url),
    converter=CurrencyConverter(source=FrankfurterRateSource(settings.fx_api_url)),
    price_source=MarketDataSource(settings.coingecko_api_url, settings.yahoo_chart_url),
    symbol_directory=OpenFigiDirectory(settings.openfigi_api_url),
)
export_sink = FileExportSink(settings.export_dir)


@app.on_event("startup")
async def init_state() -> None:
    finance.store.init_db()
    finance.load()
    await finance.refresh_exchange_rate()


class AccountPayload(BaseModel):
    name: str
    type: AccountType
    initial_balance: Decimal = Decimal("0")
    currency: Currency = Currency.EUR

    @classmethod
    def validate_payload(cls, payload: "AccountPayload") -> "AccountPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Account name required.")
        return payload


class AccountOrderPayload(BaseModel):
    account_ids: list[str]


class AccountBalanceResponse(BaseModel):
    account_id: str
    name: str
    currency: Currency
    balance: Decimal


class TransactionPayload(BaseModel):
    type: TransactionType
    amount: Decimal
    date: date
    account_id: str
    description: str = ""
    category: CostCategory | None = None
    sub_category: str | None = None
    detail: str | None = None
    income_type: IncomeType | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        if payload.type == TransactionType.TRANSFER:
            raise ValueError("Use /transfers to move funds between accounts.")
        payload.description = payload.description.strip()
        payload.sub_category = payload.sub_category.strip().upper() if payload.sub_category else None
        payload.detail = payload.detail.strip().upper() if payload.detail else None
        return payload


class TransferPayload(BaseModel):
    from_account_id: str
    to_account_id: str
    amount: Decimal
    date: date
    description: str = ""


class BudgetPayload(BaseModel):
    must_percentage: Decimal | None = None
    wants_percentage: Decimal | None = None
    monthly_income: Decimal | None = None


class BudgetResponse(BaseModel):
    budget: Budget
    must_budget: Decimal
    wants_budget: Decimal
    savings_goal: Decimal


class BudgetProgressResponse(BaseModel):
    category: str
    budgeted: Decimal
    spent: Decimal
    remaining: Decimal
    status: str


class SubCategoryPayload(BaseModel):
    category: CostCategory
    sub_category: str


class DetailPayload(BaseModel):
    category: CostCategory
    sub_category: str
    detail: str


class HoldingPayload(BaseModel):
    name: str
    ticker: str
    investment_type: InvestmentType = InvestmentType.STOCK
    currency: Currency = Currency.USD
    current_price: Decimal | None = None
    isin: str | None = None


class InvestmentTransactionPayload(BaseModel):
    holding_id: str
    account_id: str
    type: InvestmentTransactionType
    date: date
    quantity: Decimal = Decimal("0")
    price_per_unit: Decimal = Decimal("0")
    total_amount: Decimal | None = None

    @classmethod
    def validate_payload(
        cls, payload: "InvestmentTransactionPayload"
    ) -> "InvestmentTransactionPayload":
        if payload.total_amount is None:
            if payload.type == InvestmentTransactionType.DIVIDEND:
                raise ValueError("Dividend amount required.")
            payload.total_amount = payload.quantity * payload.price_per_unit
        return payload


class HoldingSummaryResponse(BaseModel):
    holding: InvestmentHolding
    quantity: Decimal
    cost_basis: Decimal
    proceeds: Decimal
    dividends: Decimal
    market_value: Decimal
    total_return: Decimal
    return_pct: Decimal
    market_value_eur: Decimal
    cost_basis_eur: Decimal
    total_return_eur: Decimal
    return_pct_eur: Decimal
    allocation_pct: Decimal

    @classmethod
    def from_summary(cls, summary: HoldingSummary) -> "HoldingSummaryResponse":
        return cls(
            holding=summary.holding,
            quantity=summary.quantity,
            cost_basis=summary.cost_basis,
            proceeds=summary.proceeds,
            dividends=summary.dividends,
            market_value=summary.market_value,
            total_return=summary.total_return,
            return_pct=summary.return_pct,
            market_value_eur=summary.market_value_eur,
            cost_basis_eur=summary.cost_basis_eur,
            total_return_eur=summary.total_return_eur,
            return_pct_eur=summary.return_pct_eur,
            allocation_pct=summary.allocation_pct,
        )


class PortfolioStatsResponse(BaseModel):
    total_market_value_eur: Decimal
    total_cost_basis_eur: Decimal
    total_return_eur: Decimal
    total_pl_pct: Decimal
    value_by_type: dict[str, Decimal]
    ytd_return_eur: Decimal | None = None
    ytd_return_pct: Decimal | None = None
    ytd_dividends_eur: Decimal
    total_dividends_eur: Decimal
    annual_dividend_yield: Decimal


class PriceRefreshResponse(BaseModel):
    updated: list[InvestmentHolding]
    failed_count: int
    complete: bool


class ReportRequest(BaseModel):
    month: str


class HistoryImportPayload(BaseModel):
    expenses_json: str | None = None
    dividends_json: str | None = None
    month_end_json: str | None = None
    investments_json: str | None = None


class ExportResponse(BaseModel):
    filename: str


def parse_month_query(value: str) -> tuple[int, int]:
    try:
        parsed = parse_month_value(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return parsed.year, parsed.month


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/accounts", response_model=list[Account])
def list_accounts() -> list[Account]:
    return list(finance.ledger.accounts)


@app.get("/accounts/balances", response_model=list[AccountBalanceResponse])
def list_balances() -> list[AccountBalanceResponse]:
    balances = finance.balances()
    return [
        AccountBalanceResponse(
            account_id=account.id,
            name=account.name,
            currency=account.currency,
            balance=balances[account.id],
        )
        for account in finance.ledger.accounts
    ]


@app.post("/accounts", response_model=Account)
def create_account(payload: AccountPayload) -> Account:
    try:
        payload = AccountPayload.validate_payload(payload)
        return finance.add_account(
            Account(
                id=new_id(),
                name=payload.name,
                type=payload.type,
                initial_balance=payload.initial_balance,
                currency=payload.currency,
            )
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.put("/accounts/order")
def reorder_accounts(payload: AccountOrderPayload) -> dict:
    try:
        finance.reorder_accounts(payload.account_ids)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"status": "ok"}


@app.put("/accounts/{account_id}", response_model=Account)
def update_account(account_id: str, payload: AccountPayload) -> Account:
    try:
        payload = AccountPayload.validate_payload(payload)
        return finance.update_account(
            Account(
                id=account_id,
                name=payload.name,
                type=payload.type,
                initial_balance=payload.initial_balance,
                currency=payload.currency,
            )
        )
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.delete("/accounts/{account_id}")
def delete_account(account_id: str) -> dict:
    try:
        finance.delete_account(account_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"status": "deleted"}


@app.get("/transactions", response_model=list[Transaction])
def list_transactions(month: str | None = Query(None)) -> list[Transaction]:
    rows = list(finance.ledger.transactions)
    if month is not None:
        year, month_number = parse_month_query(month)
        rows = [txn for txn in rows if (txn.date.year, txn.date.month) == (year, month_number)]
    return sorted(rows, key=lambda txn: txn.date, reverse=True)


@app.post("/transactions", response_model=Transaction)
def create_transaction(payload: TransactionPayload) -> Transaction:
    try:
        payload = TransactionPayload.validate_payload(payload)
        return finance.add_transaction(
            Transaction(
                id=new_id(),
                type=payload.type,
                amount=payload.amount,
                date=payload.date,
                account_id=payload.account_id,
                description=payload.description,
                category=payload.category,
                sub_category=payload.sub_category,
                detail=payload.detail,
                income_type=payload.income_type,
            )
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/transfers", response_model=Transaction)
def create_transfer(payload: TransferPayload) -> Transaction:
    try:
        return finance.move_funds(
            payload.from_account_id,
            payload.to_account_id,
            payload.amount,
            payload.date,
            payload.description,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/budget", response_model=BudgetResponse)
def get_budget() -> BudgetResponse:
    amounts = budget_amounts(finance.budget)
    return BudgetResponse(
        budget=finance.budget,
        must_budget=amounts.must_budget,
        wants_budget=amounts.wants_budget,
        savings_goal=amounts.savings_goal,
    )


@app.put("/budget", response_model=BudgetResponse)
def update_budget(payload: BudgetPayload) -> BudgetResponse:
    try:
        finance.update_budget(
            must_percentage=payload.must_percentage,
            wants_percentage=payload.wants_percentage,
            monthly_income=payload.monthly_income,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return get_budget()


@app.get("/budget/progress", response_model=list[BudgetProgressResponse])
def get_budget_progress(month: str = Query(...)) -> list[BudgetProgressResponse]:
    year, month_number = parse_month_query(month)
    progress = budget_progress(finance.budget, finance.ledger, finance.converter, year, month_number)
    return [
        BudgetProgressResponse(
            category=entry.category,
            budgeted=entry.budgeted,
            spent=entry.spent,
            remaining=entry.remaining,
            status=entry.status,
        )
        for entry in progress
    ]


@app.get("/categories")
def list_categories() -> dict:
    custom = finance.custom_categories
    return {
        category.value: {
            sub: detail_options(custom, category, sub) for sub in subcategory_options(custom, category)
        }
        for category in CostCategory
    }


@app.post("/categories/subcategories")
def create_subcategory(payload: SubCategoryPayload) -> dict:
    try:
        custom = finance.add_custom_subcategory(payload.category, payload.sub_category)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return custom.to_json()


@app.post("/categories/details")
def create_detail(payload: DetailPayload) -> dict:
    try:
        custom = finance.add_custom_detail(payload.category, payload.sub_category, payload.detail)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return custom.to_json()


@app.get("/holdings", response_model=list[InvestmentHolding])
def list_holdings() -> list[InvestmentHolding]:
    return list(finance.ledger.holdings)


@app.post("/holdings", response_model=InvestmentHolding)
def create_holding(payload: HoldingPayload) -> InvestmentHolding:
    try:
        return finance.add_holding(InvestmentHolding(id=new_id(), **payload.model_dump()))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.put("/holdings/{holding_id}", response_model=InvestmentHolding)
def update_holding(holding_id: str, payload: HoldingPayload) -> InvestmentHolding:
    try:
        return finance.edit_holding(holding_id, **payload.model_dump())
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/investment-transactions", response_model=list[InvestmentTransaction])
def list_investment_transactions(holding_id: str | None = Query(None)) -> list[InvestmentTransaction]:
    rows = list(finance.ledger.investment_transactions)
    if holding_id is not None:
        rows = [txn for txn in rows if txn.holding_id == holding_id]
    return sorted(rows, key=lambda txn: txn.date, reverse=True)


@app.post("/investment-transactions", response_model=InvestmentTransaction)
def create_investment_transaction(payload: InvestmentTransactionPayload) -> InvestmentTransaction:
    try:
        payload = InvestmentTransactionPayload.validate_payload(payload)
        return finance.add_investment_transaction(
            InvestmentTransaction(id=new_id(), **payload.model_dump())
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/portfolio", response_model=list[HoldingSummaryResponse])
async def get_portfolio(sort: str = Query("alphabetical")) -> list[HoldingSummaryResponse]:
    if sort not in SORT_OPTIONS:
        raise HTTPException(status_code=400, detail="Invalid sort option.")
    summaries = await finance.portfolio(sort)
    return [HoldingSummaryResponse.from_summary(summary) for summary in summaries]


@app.get("/portfolio/stats", response_model=PortfolioStatsResponse)
async def get_portfolio_stats(exclude_crypto: bool = Query(False)) -> PortfolioStatsResponse:
    stats = await finance.portfolio_stats(exclude_crypto)
    return PortfolioStatsResponse(
        total_market_value_eur=stats.total_market_value_eur,
        total_cost_basis_eur=stats.total_cost_basis_eur,
        total_return_eur=stats.total_return_eur,
        total_pl_pct=stats.total_pl_pct,
        value_by_type=stats.value_by_type,
        ytd_return_eur=stats.ytd_return_eur,
        ytd_return_pct=stats.ytd_return_pct,
        ytd_dividends_eur=stats.ytd_dividends_eur,
        total_dividends_eur=stats.total_dividends_eur,
        annual_dividend_yield=stats.annual_dividend_yield,
    )


@app.post("/prices/refresh", response_model=PriceRefreshResponse)
async def refresh_prices() -> PriceRefreshResponse:
    try:
        result = await finance.refresh_prices()
    except PriceSourceUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return PriceRefreshResponse(
        updated=result.changed,
        failed_count=result.failed_count,
        complete=result.complete,
    )


@app.get("/exchange-rate", response_model=ExchangeRate)
def get_exchange_rate() -> ExchangeRate:
    return finance.converter.exchange_rate


@app.post("/exchange-rate/refresh", response_model=ExchangeRate)
async def refresh_exchange_rate() -> ExchangeRate:
    await finance.refresh_exchange_rate()
    return finance.converter.exchange_rate


@app.get("/summaries", response_model=list[MonthlySummary])
def list_summaries() -> list[MonthlySummary]:
    return finance.ensure_summaries()


@app.get("/reports", response_model=list[ReportData])
def list_reports() -> list[ReportData]:
    return finance.reports


@app.post("/reports", response_model=ReportData)
async def create_report(payload: ReportRequest) -> ReportData:
    year, month = parse_month_query(payload.month)
    try:
        return await finance.generate_report(year, month)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/reports/{report_id}", response_model=ReportData)
def get_report(report_id: str) -> ReportData:
    report = finance.find_report(report_id)
    if report is None:
        raise HTTPException(status_code=404, detail="Report not found.")
    return report


@app.post("/reports/{report_id}/export", response_model=ExportResponse)
def export_report(report_id: str) -> ExportResponse:
    try:
        filename = finance.export_report(report_id, export_sink)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return ExportResponse(filename=filename)


@app.post("/transactions/export", response_model=ExportResponse)
def export_transactions(month: str = Query(...)) -> ExportResponse:
    year, month_number = parse_month_query(month)
    return ExportResponse(filename=finance.export_transactions(year, month_number, export_sink))


@app.post("/import/history")
def import_history(payload: HistoryImportPayload) -> dict:
    try:
        finance.import_history(
            expenses_json=payload.expenses_json,
            dividends_json=payload.dividends_json,
            month_end_json=payload.month_end_json,
            investments_json=payload.investments_json,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "status": "imported",
        "accounts": len(finance.ledger.accounts),
        "transactions": len(finance.ledger.transactions),
        "summaries": len(finance.summaries),
    }


@app.post("/test-data")
def load_test_data() -> dict:
    finance.load_test_data()
    return {"status": "loaded", "transactions": len(finance.ledger.transactions)}
