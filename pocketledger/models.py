from __future__ import annotations

from datetime import date
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

ZERO = Decimal("0")


class TransactionType(str, Enum):
    COST = "COST"
    INCOME = "INCOME"
    TRANSFER = "TRANSFER"


class IncomeType(str, Enum):
    WORK = "Work"
    EXTRA = "Extra"


class CostCategory(str, Enum):
    MUST = "MUST"
    WANTS = "WANTS"


class Currency(str, Enum):
    EUR = "EUR"
    USD = "USD"


class AccountType(str, Enum):
    BANK = "Bank"
    BROKERAGE = "Brokerage"
    CASH = "Cash"
    CRYPTO = "Crypto"


class InvestmentTransactionType(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    DIVIDEND = "DIVIDEND"


class InvestmentType(str, Enum):
    STOCK = "Stock"
    ETF = "ETF"
    CRYPTO = "Crypto"


CATEGORIES: dict[CostCategory, dict[str, list[str]]] = {
    CostCategory.MUST: {
        "HOME": ["ELECTR_POWER", "RENT", "INTERNET", "PHONE", "SUPERMARKET", "WATER", "OTHER"],
        "MOVEMENT": ["GAS", "WASHING", "OTHER"],
        "HEALTH": ["OTHER"],
        "OTHER": ["OTHER"],
    },
    CostCategory.WANTS: {
        "FUN": ["FOOD", "DRINKS", "CINEMA", "OPAP", "BOWLING", "OTHER"],
        "SHOPPING": ["JUMBO", "HAIRCUT", "OTHER"],
        "SUBSCRIPTIONS": ["OTHER"],
        "TRAVEL": ["OTHER"],
        "GIFTS": ["OTHER"],
        "HOBBY": ["OTHER"],
        "OTHER": ["OTHER"],
    },
}


def parse_day(value: date | str) -> date:
    """Accept plain days and ISO timestamps, keeping only the calendar day."""
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError as exc:
        raise ValueError("Date must be in YYYY-MM-DD format.") from exc


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Account(CamelModel):
    id: str
    name: str
    type: AccountType
    initial_balance: Decimal = ZERO
    currency: Currency = Currency.EUR


class Transaction(CamelModel):
    id: str
    type: TransactionType
    amount: Decimal
    date: date
    description: str = ""
    account_id: str | None = None
    category: CostCategory | None = None
    sub_category: str | None = None
    detail: str | None = None
    income_type: IncomeType | None = None
    from_account_id: str | None = None
    to_account_id: str | None = None
    to_amount: Decimal | None = None

    @field_validator("date", mode="before")
    @classmethod
    def normalize_date(cls, value: date | str) -> date:
        return parse_day(value)


class InvestmentHolding(CamelModel):
    id: str
    name: str
    ticker: str
    investment_type: InvestmentType = InvestmentType.STOCK
    currency: Currency = Currency.USD
    current_price: Decimal | None = None
    start_of_year_price: Decimal | None = None
    isin: str | None = None
    needs_review: bool | None = None


class InvestmentTransaction(CamelModel):
    id: str
    holding_id: str
    type: InvestmentTransactionType
    date: date
    quantity: Decimal = ZERO
    price_per_unit: Decimal = ZERO
    total_amount: Decimal
    account_id: str

    @field_validator("date", mode="before")
    @classmethod
    def normalize_date(cls, value: date | str) -> date:
        return parse_day(value)


class Budget(CamelModel):
    monthly_income: Decimal = Decimal("3000")
    must_percentage: Decimal = Decimal("50")
    wants_percentage: Decimal = Decimal("30")
    savings_percentage: Decimal = Decimal("20")


class ExchangeRate(CamelModel):
    usd_to_eur: Decimal = Field(default=Decimal("0.93"), alias="USDtoEUR")
    last_updated: str = ""


class CategoryExtension(CamelModel):
    new_sub_categories: list[str] = Field(default_factory=list)
    sub_categories: dict[str, list[str]] = Field(default_factory=dict)


class CustomCategories(BaseModel):
    MUST: CategoryExtension | None = None
    WANTS: CategoryExtension | None = None

    def for_category(self, category: CostCategory) -> CategoryExtension | None:
        return getattr(self, category.value)

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class MonthlySummary(CamelModel):
    id: str
    year: int
    month: int
    total_income: Decimal
    total_spending: Decimal
    must_spending: Decimal
    wants_spending: Decimal
    net_savings: Decimal
    end_of_month_cash: Decimal
    end_of_month_investments: Decimal | None = None
    end_of_month_investments_stocks: Decimal | None = None
    end_of_month_investments_etfs: Decimal | None = None
    end_of_month_investments_crypto: Decimal | None = None


class ReportSummary(CamelModel):
    total_income: Decimal
    total_spending: Decimal
    net_savings: Decimal
    net_investments: Decimal
    savings_rate: Decimal
    investment_rate: Decimal
    cash_flow: Decimal
    end_of_month_cash: Decimal
    end_of_month_investments: Decimal
    end_of_month_investments_stocks: Decimal | None = None
    end_of_month_investments_etfs: Decimal | None = None
    end_of_month_investments_crypto: Decimal | None = None


class IncomeDetails(CamelModel):
    work_income: Decimal
    extra_income: list[Transaction]
    dividends: list[InvestmentTransaction]


class SubCategoryTotal(CamelModel):
    total: Decimal
    category: CostCategory


class ExpenseDetails(CamelModel):
    must_spending: Decimal
    wants_spending: Decimal
    transactions: list[Transaction]
    by_sub_category: dict[str, SubCategoryTotal]


class Performance(CamelModel):
    total: Decimal
    stocks: Decimal
    etfs: Decimal
    crypto: Decimal


class InvestmentDetails(CamelModel):
    buys: list[InvestmentTransaction]
    sells: list[InvestmentTransaction]
    performance: Performance
    start_value: Decimal
    end_value: Decimal
    net_inflows: Decimal


class ReportData(CamelModel):
    id: str
    year: int
    month: int
    summary: ReportSummary
    income_details: IncomeDetails
    expense_details: ExpenseDetails
    investment_details: InvestmentDetails


def period_id(year: int, month: int) -> str:
    """Summary/report id for a 1-based month, e.g. ``2024-03``."""
    return f"{year}-{month:02d}"
