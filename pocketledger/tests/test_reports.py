import tempfile
import unittest
from datetime import date
from decimal import Decimal
from pathlib import Path

from pocketledger.currency_conversion import CurrencyConverter
from pocketledger.ledger import Ledger
from pocketledger.models import (
    Account,
    AccountType,
    CostCategory,
    Currency,
    ExchangeRate,
    IncomeType,
    InvestmentHolding,
    InvestmentTransaction,
    InvestmentTransactionType,
    InvestmentType,
    MonthlySummary,
    Transaction,
    TransactionType,
)
from pocketledger.price_sources import HistoricalPriceLookup, PriceSourceUnavailable
from pocketledger.reports import (
    FileExportSink,
    generate_report,
    report_to_csv,
    transactions_to_csv,
    upsert_report,
)


def make_ledger() -> Ledger:
    return Ledger.build(
        accounts=[
            Account(id="bank", name="Bank", type=AccountType.BANK, initial_balance=Decimal("5000")),
            Account(id="broker", name="Broker", type=AccountType.BROKERAGE),
        ],
        transactions=[
            Transaction(
                id="salary",
                type=TransactionType.INCOME,
                income_type=IncomeType.WORK,
                amount=Decimal("3000"),
                date=date(2024, 3, 1),
                account_id="bank",
            ),
            Transaction(
                id="gig",
                type=TransactionType.INCOME,
                income_type=IncomeType.EXTRA,
                amount=Decimal("200"),
                date=date(2024, 3, 20),
                account_id="bank",
                description="Gig",
            ),
            Transaction(
                id="rent",
                type=TransactionType.COST,
                amount=Decimal("1000"),
                date=date(2024, 3, 2),
                account_id="bank",
                category=CostCategory.MUST,
                sub_category="HOME",
                detail="RENT",
            ),
            Transaction(
                id="food",
                type=TransactionType.COST,
                amount=Decimal("300"),
                date=date(2024, 3, 9),
                account_id="bank",
                category=CostCategory.WANTS,
                sub_category="FUN",
                detail="FOOD",
            ),
            Transaction(
                id="move",
                type=TransactionType.TRANSFER,
                amount=Decimal("500"),
                to_amount=Decimal("500"),
                date=date(2024, 3, 14),
                from_account_id="bank",
                to_account_id="broker",
            ),
        ],
        holdings=[
            InvestmentHolding(id="etf", name="World", ticker="IWDA", investment_type=InvestmentType.ETF, currency=Currency.EUR),
            InvestmentHolding(id="stk", name="Stock", ticker="ACME", currency=Currency.EUR),
        ],
        investment_transactions=[
            InvestmentTransaction(
                id="old",
                holding_id="stk",
                account_id="broker",
                type=InvestmentTransactionType.BUY,
                date=date(2024, 2, 10),
                quantity=Decimal("10"),
                price_per_unit=Decimal("10"),
                total_amount=Decimal("100"),
            ),
            InvestmentTransaction(
                id="new",
                holding_id="etf",
                account_id="broker",
                type=InvestmentTransactionType.BUY,
                date=date(2024, 3, 15),
                quantity=Decimal("5"),
                price_per_unit=Decimal("80"),
                total_amount=Decimal("400"),
            ),
            InvestmentTransaction(
                id="div",
                holding_id="stk",
                account_id="broker",
                type=InvestmentTransactionType.DIVIDEND,
                date=date(2024, 3, 28),
                total_amount=Decimal("100"),
            ),
        ],
    )


class FixedPriceSource:
    def __init__(self, closes: dict) -> None:
        self.closes = closes

    def fetch_crypto_prices(self, coin_ids):
        return {}

    def fetch_crypto_history(self, coin_id, day, currency):
        raise PriceSourceUnavailable("Down")

    def fetch_equity_price(self, ticker):
        return self.closes[(ticker, None)]

    def fetch_equity_close(self, ticker, day):
        return self.closes[(ticker, day)]


class ReportGenerationTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.converter = CurrencyConverter(exchange_rate=ExchangeRate(usd_to_eur=Decimal("0.9")))
        self.ledger = make_ledger()
        self.source = FixedPriceSource(
            {
                ("ACME", date(2024, 2, 29)): Decimal("10"),
                ("ACME", date(2024, 3, 31)): Decimal("12"),
                ("IWDA", date(2024, 3, 31)): Decimal("80"),
            }
        )
        self.summaries = [
            MonthlySummary(
                id="2024-03",
                year=2024,
                month=2,
                total_income=Decimal("3300"),
                total_spending=Decimal("1300"),
                must_spending=Decimal("1000"),
                wants_spending=Decimal("300"),
                net_savings=Decimal("2000"),
                end_of_month_cash=Decimal("6700"),
            )
        ]

    async def generate(self):
        lookup = HistoricalPriceLookup(self.ledger.investment_transactions, source=self.source)
        return await generate_report(self.ledger, 2024, 3, self.summaries, self.converter, lookup)

    async def test_cash_figures_and_rates(self) -> None:
        report = await self.generate()

        summary = report.summary
        self.assertEqual(report.id, "2024-03")
        self.assertEqual(report.month, 2)
        self.assertEqual(summary.total_income, Decimal("3300"))
        self.assertEqual(summary.total_spending, Decimal("1300"))
        self.assertEqual(summary.net_savings, Decimal("2000"))
        self.assertEqual(summary.net_investments, Decimal("400"))
        self.assertEqual(summary.savings_rate, Decimal("2000") / Decimal("3300") * 100)
        self.assertEqual(summary.cash_flow, Decimal("1600"))
        self.assertEqual(summary.end_of_month_cash, Decimal("6700"))
        self.assertEqual(report.income_details.work_income, Decimal("3000"))
        self.assertEqual([t.id for t in report.income_details.extra_income], ["gig"])
        self.assertEqual([t.id for t in report.income_details.dividends], ["div"])
        self.assertEqual(report.expense_details.by_sub_category["HOME"].total, Decimal("1000"))
        self.assertEqual(report.expense_details.by_sub_category["FUN"].category, CostCategory.WANTS)

    async def test_portfolio_windows_and_performance(self) -> None:
        report = await self.generate()

        details = report.investment_details
        self.assertEqual(details.start_value, Decimal("100"))
        self.assertEqual(details.end_value, Decimal("520"))
        self.assertEqual(details.net_inflows, Decimal("400"))
        # gain 20 over 100 + 400 / 2
        self.assertEqual(details.performance.total, Decimal("20") / Decimal("300") * 100)
        self.assertEqual(details.performance.stocks, Decimal("20"))
        # ETF window starts empty: denominator 200, no gain
        self.assertEqual(details.performance.etfs, Decimal("0"))
        self.assertEqual(details.performance.crypto, Decimal("0"))
        self.assertEqual(report.summary.end_of_month_investments_etfs, Decimal("400"))

    async def test_generation_is_repeatable(self) -> None:
        first = await self.generate()
        second = await self.generate()

        self.assertEqual(first.model_dump(), second.model_dump())

    async def test_rates_are_zero_without_income(self) -> None:
        lookup = HistoricalPriceLookup([])
        report = await generate_report(Ledger(), 2024, 3, [], self.converter, lookup)

        self.assertEqual(report.summary.savings_rate, Decimal("0"))
        self.assertEqual(report.summary.investment_rate, Decimal("0"))
        self.assertEqual(report.summary.end_of_month_cash, Decimal("0"))

    async def test_upsert_overwrites_by_id(self) -> None:
        report = await self.generate()
        changed = report.model_copy(update={"year": 2024})

        reports = upsert_report([report], changed)

        self.assertEqual(len(reports), 1)
        self.assertIs(reports[0], changed)


class ExportTests(unittest.IsolatedAsyncioTestCase):
    async def test_report_csv_layout(self) -> None:
        ledger = make_ledger()
        converter = CurrencyConverter()
        report = await generate_report(
            ledger, 2024, 3, [], converter, HistoricalPriceLookup(ledger.investment_transactions)
        )

        payload = report_to_csv(report, ledger.holdings)

        lines = payload.splitlines()
        self.assertEqual(lines[0], "Section;Item;Value")
        self.assertIn("Summary;Total Income;3300,00", lines)
        self.assertIn("Income;Dividend (ACME);100,00", lines)
        self.assertIn("Income;Extra (Gig);200,00", lines)
        self.assertIn("Expense Category;HOME;1000,00", lines)
        self.assertIn("", lines)

    def test_transactions_csv_rows(self) -> None:
        payload = transactions_to_csv(make_ledger(), 2024, 3)

        lines = payload.splitlines()
        self.assertEqual(lines[0], "Date,Description,Amount,Currency,Account Name,Details")
        self.assertEqual(lines[1], "2024-03-28,DIVIDEND ACME,100.00,EUR,Broker,Dividend Income")
        self.assertIn("2024-03-15,BUY IWDA,-400.00,EUR,Broker,5.0000 @ 80.00", lines)
        self.assertIn("2024-03-14,,-500.00,EUR,Bank,To: Broker", lines)
        self.assertIn("2024-03-02,,-1000.00,EUR,Bank,MUST > HOME", lines)
        self.assertIn("2024-03-09,,-300.00,EUR,Bank,WANTS > FUN", lines)
        self.assertIn("2024-03-01,,3000.00,EUR,Bank,Work", lines)

    def test_file_sink_writes_bom(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            sink = FileExportSink(Path(tmp) / "exports")

            sink.write("a;b\n", "report-2024-03.csv")

            raw = (Path(tmp) / "exports" / "report-2024-03.csv").read_bytes()
        self.assertTrue(raw.startswith(b"\xef\xbb\xbf"))
        self.assertTrue(raw.endswith(b"a;b\n"))


if __name__ == "__main__":
    unittest.main()
