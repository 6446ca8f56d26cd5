import json
import unittest
from datetime import date
from decimal import Decimal

from pocketledger.balances import balance_as_of
from pocketledger.currency_conversion import CurrencyConverter
from pocketledger.historical_import import ImportFormatError, import_history
from pocketledger.models import (
    AccountType,
    CostCategory,
    Currency,
    ExchangeRate,
    InvestmentTransactionType,
    InvestmentType,
    TransactionType,
)

TODAY = date(2024, 6, 10)

EXPENSES = [
    {"month": "2024-04", "group": "Must", "category": "HOME", "sub": "RENT", "amount": 800},
    {"month": "2024-05", "group": "Wants", "category": "PETS", "sub": "VET", "amount": 120},
]
MONTH_END = [
    {
        "month": "2024-04",
        "income": {"work": 2500, "extra": 0},
        "endOfMonth": {"cash": 5000, "investments": {"stocksEtfs": 1000, "crypto": 200, "total": 1200}},
    },
    {
        "month": "2024-06",
        "income": {"work": 9999, "extra": 50},
        "endOfMonth": {"cash": 1, "investments": {"stocksEtfs": 1, "crypto": 1, "total": 2}},
    },
    {"accounts": {"Bank": {"Main Bank": 4200}, "Brokerage": {"IBKR": 300}}},
]
TRADES = [
    {
        "source": "Stock",
        "platform": "IBKR",
        "ticker": "aapl",
        "date": "2024-04-10T00:00:00",
        "price": 100,
        "quantity": 2,
        "currency": "EUR",
        "type": "Buy",
        "TCOST": 1.5,
    }
]
DIVIDENDS = [
    {"stock": "AAPL", "amount": "2.5", "currency": "EUR", "platform": "IBKR", "date": "20/05/2024"}
]


class ImportHistoryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.converter = CurrencyConverter(exchange_rate=ExchangeRate(usd_to_eur=Decimal("0.8")))

    def run_import(self, **overrides):
        payloads = {
            "expenses_json": json.dumps(EXPENSES),
            "dividends_json": json.dumps(DIVIDENDS),
            "month_end_json": json.dumps(MONTH_END),
            "investments_json": json.dumps(TRADES),
        }
        payloads.update(overrides)
        return import_history(**payloads, converter=self.converter, today=TODAY)

    def test_replaying_the_ledger_ends_on_reported_balances(self) -> None:
        result = self.run_import()

        by_name = {acc.name: acc for acc in result.ledger.accounts}
        self.assertEqual(set(by_name), {"Main Bank", "IBKR"})
        self.assertEqual(by_name["IBKR"].type, AccountType.BROKERAGE)
        self.assertEqual(balance_as_of(result.ledger, by_name["Main Bank"].id, TODAY, self.converter), Decimal("4200"))
        self.assertEqual(balance_as_of(result.ledger, by_name["IBKR"].id, TODAY, self.converter), Decimal("300"))

    def test_trade_cost_and_discovered_holding(self) -> None:
        result = self.run_import()

        holding = result.ledger.holdings[0]
        self.assertEqual(holding.ticker, "AAPL")
        self.assertEqual(holding.investment_type, InvestmentType.STOCK)
        self.assertTrue(holding.needs_review)
        buy = next(
            t for t in result.ledger.investment_transactions if t.type == InvestmentTransactionType.BUY
        )
        self.assertEqual(buy.total_amount, Decimal("201.5"))
        self.assertEqual(buy.date, date(2024, 4, 10))
        dividend = next(
            t for t in result.ledger.investment_transactions if t.type == InvestmentTransactionType.DIVIDEND
        )
        self.assertEqual(dividend.date, date(2024, 5, 20))

    def test_summaries_take_month_end_figures(self) -> None:
        result = self.run_import()

        self.assertEqual([s.id for s in result.summaries], ["2024-05", "2024-04"])
        april = result.summaries[1]
        self.assertEqual(april.end_of_month_cash, Decimal("5000"))
        self.assertEqual(april.end_of_month_investments_stocks, Decimal("1000"))
        self.assertEqual(april.end_of_month_investments_etfs, Decimal("0"))
        self.assertEqual(april.end_of_month_investments_crypto, Decimal("200"))
        self.assertEqual(april.total_income, Decimal("2500"))
        self.assertEqual(april.net_savings, Decimal("1700"))

    def test_current_month_snapshot_is_discarded(self) -> None:
        result = self.run_import()

        incomes = [t for t in result.ledger.transactions if t.type == TransactionType.INCOME]
        self.assertEqual([t.date for t in incomes], [date(2024, 4, 5)])
        self.assertNotIn("2024-06", [s.id for s in result.summaries])

    def test_expenses_become_costs_and_custom_categories(self) -> None:
        result = self.run_import()

        costs = sorted(
            (t for t in result.ledger.transactions if t.type == TransactionType.COST), key=lambda t: t.date
        )
        self.assertEqual([t.date for t in costs], [date(2024, 4, 15), date(2024, 5, 15)])
        self.assertEqual(costs[1].category, CostCategory.WANTS)
        self.assertEqual(costs[1].sub_category, "PETS")
        wants = result.custom_categories.WANTS
        self.assertEqual(wants.new_sub_categories, ["PETS"])
        self.assertEqual(wants.sub_categories, {"PETS": ["VET"]})

    def test_reimport_is_deterministic(self) -> None:
        self.assertEqual(self.run_import().ledger, self.run_import().ledger)

    def test_without_balances_log_uses_legacy_and_platform_accounts(self) -> None:
        trades = [
            {
                "platform": "Degiro",
                "ticker": "VUSA.L",
                "date": "2024-03-01",
                "price": 50,
                "quantity": 4,
                "currency": "USD",
                "type": "Buy",
            }
        ]

        result = import_history(
            investments_json=json.dumps(trades), converter=self.converter, today=TODAY
        )

        by_name = {acc.name: acc for acc in result.ledger.accounts}
        self.assertEqual(by_name["Legacy Bank (EUR)"].initial_balance, Decimal("8000"))
        brokerage = by_name["Brokerage (Degiro)"]
        self.assertEqual(brokerage.currency, Currency.USD)
        self.assertEqual(result.ledger.investment_transactions[0].account_id, brokerage.id)
        self.assertEqual(result.ledger.holdings[0].investment_type, InvestmentType.ETF)

    def test_empty_input_is_rejected(self) -> None:
        with self.assertRaises(ImportFormatError) as ctx:
            import_history(expenses_json="[]", converter=self.converter, today=TODAY)

        self.assertEqual(ctx.exception.source, "import")

    def test_format_errors_name_the_source(self) -> None:
        cases = {
            "dividends": {"dividends_json": "{not json"},
            "expenses": {"expenses_json": json.dumps([{**EXPENSES[0], "group": "Maybe"}])},
            "investments": {"investments_json": json.dumps([{**TRADES[0], "type": "Hold"}])},
        }
        for source, overrides in cases.items():
            with self.subTest(source=source):
                with self.assertRaises(ImportFormatError) as ctx:
                    self.run_import(**overrides)
                self.assertEqual(ctx.exception.source, source)

    def test_dividend_date_must_be_day_first(self) -> None:
        bad = [{**DIVIDENDS[0], "date": "2024-05-20"}]

        with self.assertRaises(ImportFormatError) as ctx:
            self.run_import(dividends_json=json.dumps(bad))

        self.assertEqual(ctx.exception.source, "dividends")


if __name__ == "__main__":
    unittest.main()
