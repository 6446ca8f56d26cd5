from __future__ import annotations

from datetime import date
from decimal import Decimal

from pocketledger.ledger import Ledger
from pocketledger.models import (
    Account,
    AccountType,
    CostCategory,
    Currency,
    IncomeType,
    InvestmentHolding,
    InvestmentTransaction,
    InvestmentTransactionType,
    InvestmentType,
    Transaction,
    TransactionType,
)
from pocketledger.periods import shift_month

# (day, amount) pairs repeated every month
SUPERMARKET = [(4, "62.40"), (9, "38.15"), (14, "91.70"), (19, "27.35"), (24, "55.80")]
FOOD = [(6, "42.00"), (13, "18.50"), (20, "33.25"), (27, "61.10")]


def _cost(
    txn_id: str, day: date, amount: str, category: CostCategory, sub: str, detail: str
) -> Transaction:
    return Transaction(
        id=txn_id,
        type=TransactionType.COST,
        amount=Decimal(amount),
        date=day,
        account_id="acc-eur-1",
        description=detail,
        category=category,
        sub_category=sub,
        detail=detail,
    )


def demo_ledger(today: date) -> Ledger:
    """Three months of activity ending the month before ``today``."""
    accounts = [
        Account(id="acc-eur-1", name="Main Bank (EUR)", type=AccountType.BANK, initial_balance=Decimal("5000")),
        Account(
            id="acc-usd-1",
            name="Brokerage (USD)",
            type=AccountType.BROKERAGE,
            initial_balance=Decimal("10000"),
            currency=Currency.USD,
        ),
    ]
    holdings = [
        InvestmentHolding(
            id="h-aapl-1",
            name="Apple Inc.",
            ticker="AAPL",
            investment_type=InvestmentType.STOCK,
            current_price=Decimal("175.50"),
        ),
        InvestmentHolding(
            id="h-btc-1",
            name="Bitcoin",
            ticker="BTC",
            investment_type=InvestmentType.CRYPTO,
            current_price=Decimal("68000.00"),
        ),
    ]

    transactions: list[Transaction] = []
    months: dict[int, date] = {}
    for offset in (3, 2, 1):
        first = shift_month(today.replace(day=1), -offset)
        months[offset] = first
        transactions.append(
            Transaction(
                id=f"tx-income-{offset}",
                type=TransactionType.INCOME,
                income_type=IncomeType.WORK,
                amount=Decimal("3200"),
                date=first.replace(day=1),
                account_id="acc-eur-1",
                description="Work Income",
            )
        )
        transactions.append(
            _cost(f"tx-must-rent-{offset}", first.replace(day=2), "850", CostCategory.MUST, "HOME", "RENT")
        )
        for index, (day, amount) in enumerate(SUPERMARKET):
            transactions.append(
                _cost(
                    f"tx-must-food-{offset}-{index}",
                    first.replace(day=day),
                    amount,
                    CostCategory.MUST,
                    "HOME",
                    "SUPERMARKET",
                )
            )
        transactions.append(
            _cost(f"tx-must-gas-{offset}", first.replace(day=12), "48.90", CostCategory.MUST, "MOVEMENT", "GAS")
        )
        for index, (day, amount) in enumerate(FOOD):
            transactions.append(
                _cost(
                    f"tx-wants-fun-{offset}-{index}",
                    first.replace(day=day),
                    amount,
                    CostCategory.WANTS,
                    "FUN",
                    "FOOD",
                )
            )
        transactions.append(
            _cost(
                f"tx-wants-shop-{offset}",
                first.replace(day=17),
                "74.99",
                CostCategory.WANTS,
                "SHOPPING",
                "HAIRCUT",
            )
        )

    def trade(
        txn_id: str,
        holding_id: str,
        kind: InvestmentTransactionType,
        day: date,
        quantity: str,
        price: str,
        total: str,
    ) -> InvestmentTransaction:
        return InvestmentTransaction(
            id=txn_id,
            holding_id=holding_id,
            type=kind,
            date=day,
            quantity=Decimal(quantity),
            price_per_unit=Decimal(price),
            total_amount=Decimal(total),
            account_id="acc-usd-1",
        )

    buy, sell, dividend = (
        InvestmentTransactionType.BUY,
        InvestmentTransactionType.SELL,
        InvestmentTransactionType.DIVIDEND,
    )
    investment_transactions = [
        trade("inv-1", "h-aapl-1", buy, months[3].replace(day=10), "10", "170.12", "1701.20"),
        trade("inv-2", "h-btc-1", buy, months[3].replace(day=16), "0.05", "65000.00", "3250.00"),
        trade("inv-3", "h-aapl-1", buy, months[2].replace(day=8), "5", "172.50", "862.50"),
        trade("inv-4", "h-btc-1", sell, months[2].replace(day=21), "0.02", "68500.00", "1370.00"),
        trade("inv-5", "h-aapl-1", dividend, months[1].replace(day=15), "0", "0", "3.60"),
    ]
    return Ledger.build(accounts, transactions, holdings, investment_transactions)
