from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from pocketledger.currency_conversion import CurrencyConverter
from pocketledger.ledger import Ledger, costs_in_category
from pocketledger.models import ZERO, Budget, CostCategory, TransactionType
from pocketledger.monthly_summary import transaction_amount_eur, transactions_in_month
from pocketledger.periods import validate_year_month

HUNDRED = Decimal("100")


@dataclass(frozen=True)
class BudgetAmounts:
    must_budget: Decimal
    wants_budget: Decimal
    savings_goal: Decimal


@dataclass(frozen=True)
class BudgetProgress:
    category: str
    budgeted: Decimal
    spent: Decimal
    remaining: Decimal
    status: str


def _check_percentage(value: Decimal) -> Decimal:
    if value < ZERO or value > HUNDRED:
        raise ValueError("Percentage must be between 0 and 100.")
    return value


def set_must_percentage(budget: Budget, value: Decimal) -> Budget:
    """Clamp must into what wants leaves free; savings takes the remainder."""
    must = min(_check_percentage(value), HUNDRED - budget.wants_percentage)
    return budget.model_copy(
        update={
            "must_percentage": must,
            "savings_percentage": HUNDRED - must - budget.wants_percentage,
        }
    )


def set_wants_percentage(budget: Budget, value: Decimal) -> Budget:
    wants = min(_check_percentage(value), HUNDRED - budget.must_percentage)
    return budget.model_copy(
        update={
            "wants_percentage": wants,
            "savings_percentage": HUNDRED - budget.must_percentage - wants,
        }
    )


def set_monthly_income(budget: Budget, value: Decimal) -> Budget:
    if value < ZERO:
        raise ValueError("Monthly income cannot be negative.")
    return budget.model_copy(update={"monthly_income": value})


def budget_amounts(budget: Budget) -> BudgetAmounts:
    savings = max(budget.savings_percentage, ZERO)
    return BudgetAmounts(
        must_budget=budget.monthly_income * budget.must_percentage / HUNDRED,
        wants_budget=budget.monthly_income * budget.wants_percentage / HUNDRED,
        savings_goal=budget.monthly_income * savings / HUNDRED,
    )


def budget_progress(
    budget: Budget,
    ledger: Ledger,
    converter: CurrencyConverter,
    year: int,
    month: int,
) -> list[BudgetProgress]:
    validate_year_month(year, month)
    amounts = budget_amounts(budget)
    month_transactions = transactions_in_month(ledger, year, month)

    def spent(category: CostCategory) -> Decimal:
        return sum(
            (
                transaction_amount_eur(ledger, txn, converter)
                for txn in costs_in_category(month_transactions, category)
            ),
            ZERO,
        )

    income = sum(
        (
            transaction_amount_eur(ledger, txn, converter)
            for txn in month_transactions
            if txn.type == TransactionType.INCOME
        ),
        ZERO,
    )
    must_spent = spent(CostCategory.MUST)
    wants_spent = spent(CostCategory.WANTS)
    saved = income - must_spent - wants_spent

    return [
        _progress("MUST", amounts.must_budget, must_spent, cap=True),
        _progress("WANTS", amounts.wants_budget, wants_spent, cap=True),
        _progress("SAVINGS", amounts.savings_goal, saved, cap=False),
    ]


def _progress(category: str, budgeted: Decimal, value: Decimal, cap: bool) -> BudgetProgress:
    if cap:
        status = "ok" if value <= budgeted else "over"
    else:
        status = "met" if value >= budgeted else "short"
    return BudgetProgress(
        category=category,
        budgeted=budgeted,
        spent=value,
        remaining=budgeted - value,
        status=status,
    )
