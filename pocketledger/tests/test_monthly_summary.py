import unittest
from datetime import date
from decimal import Decimal

from pocketledger.currency_conversion import CurrencyConverter
from pocketledger.ledger import Ledger
from pocketledger.models import (
    Account,
    AccountType,
    CostCategory,
    Currency,
    ExchangeRate,
    Transaction,
    TransactionType,
)
from pocketledger.monthly_summary import (
    ensure_summaries_up_to_date,
    generate_monthly_summary,
    regenerate_all_summaries,
)


def make_ledger() -> Ledger:
    return Ledger.build(
        accounts=[
            Account(id="eur", name="Bank", type=AccountType.BANK, initial_balance=Decimal("1000")),
            Account(
                id="usd",
                name="Card",
                type=AccountType.BANK,
                initial_balance=Decimal("100"),
                currency=Currency.USD,
            ),
        ],
        transactions=[
            Transaction(
                id="salary",
                type=TransactionType.INCOME,
                amount=Decimal("2000"),
                date=date(2024, 4, 1),
                account_id="eur",
            ),
            Transaction(
                id="rent",
                type=TransactionType.COST,
                amount=Decimal("800"),
                date=date(2024, 4, 2),
                account_id="eur",
                category=CostCategory.MUST,
                sub_category="HOME",
                detail="RENT",
            ),
            Transaction(
                id="dinner",
                type=TransactionType.COST,
                amount=Decimal("50"),
                date=date(2024, 4, 30),
                account_id="usd",
                category=CostCategory.WANTS,
                sub_category="FUN",
                detail="FOOD",
            ),
            Transaction(
                id="may",
                type=TransactionType.COST,
                amount=Decimal("10"),
                date=date(2024, 5, 1),
                account_id="eur",
                category=CostCategory.WANTS,
                sub_category="FUN",
                detail="FOOD",
            ),
        ],
    )


class MonthlySummaryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.converter = CurrencyConverter(exchange_rate=ExchangeRate(usd_to_eur=Decimal("0.8")))
        self.ledger = make_ledger()

    def test_summary_figures_in_eur(self) -> None:
        summary = generate_monthly_summary(self.ledger, 2024, 4, self.converter)

        self.assertEqual(summary.id, "2024-04")
        self.assertEqual(summary.month, 3)
        self.assertEqual(summary.total_income, Decimal("2000"))
        self.assertEqual(summary.must_spending, Decimal("800"))
        self.assertEqual(summary.wants_spending, Decimal("40"))
        self.assertEqual(summary.net_savings, Decimal("1160"))
        # 2200 EUR + (100 - 50) USD
        self.assertEqual(summary.end_of_month_cash, Decimal("2240"))

    def test_missing_previous_month_is_added_once(self) -> None:
        today = date(2024, 5, 10)

        first = ensure_summaries_up_to_date(self.ledger, [], self.converter, today)
        second = ensure_summaries_up_to_date(self.ledger, first, self.converter, today)

        self.assertEqual([s.id for s in first], ["2024-04"])
        self.assertEqual(first, second)

    def test_existing_summary_is_not_recomputed(self) -> None:
        today = date(2024, 5, 10)
        stale = generate_monthly_summary(self.ledger, 2024, 4, self.converter).model_copy(
            update={"total_income": Decimal("1")}
        )

        result = ensure_summaries_up_to_date(self.ledger, [stale], self.converter, today)

        self.assertEqual(result, [stale])

    def test_month_without_activity_gets_no_summary(self) -> None:
        result = ensure_summaries_up_to_date(self.ledger, [], self.converter, date(2024, 3, 10))

        self.assertEqual(result, [])

    def test_regenerate_all_sorted_descending(self) -> None:
        summaries = regenerate_all_summaries(self.ledger, self.converter)

        self.assertEqual([s.id for s in summaries], ["2024-05", "2024-04"])


if __name__ == "__main__":
    unittest.main()
