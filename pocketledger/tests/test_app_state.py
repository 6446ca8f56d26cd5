import json
import threading
import time
import unittest
from datetime import date
from decimal import Decimal
from unittest.mock import patch

from pocketledger.app_state import FinanceApp
from pocketledger.currency_conversion import CurrencyConverter
from pocketledger.ledger import LedgerValidationError
from pocketledger.models import (
    Account,
    AccountType,
    CostCategory,
    Currency,
    ExchangeRate,
    InvestmentHolding,
    Transaction,
    TransactionType,
)
from pocketledger.price_sources import PriceSourceUnavailable
from pocketledger.storage import StateStore
from pocketledger.tests.fakes import FakePriceSource, FakeRateSource, fixed_clock

TODAY = date(2024, 6, 15)


class MemorySink:
    def __init__(self) -> None:
        self.files: dict[str, str] = {}

    def write(self, payload: str, filename: str) -> None:
        self.files[filename] = payload


def make_app(store: StateStore, price_source=None) -> FinanceApp:
    converter = CurrencyConverter(
        exchange_rate=ExchangeRate(usd_to_eur=Decimal("0.8")),
        source=FakeRateSource(),
        clock=fixed_clock(TODAY),
    )
    app = FinanceApp(store, converter=converter, price_source=price_source, clock=fixed_clock(TODAY))
    app.load()
    return app


def salary(day: date, txn_id: str = "pay") -> Transaction:
    return Transaction(
        id=txn_id, type=TransactionType.INCOME, amount=Decimal("2500"), date=day, account_id="bank"
    )


class SlowStore(StateStore):
    """Store whose writes take long enough for concurrent callers to overlap."""

    def save_many(self, values) -> None:
        time.sleep(0.05)
        super().save_many(values)


class FinanceAppTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.store = StateStore.from_url("sqlite://")
        self.store.init_db()
        self.app = make_app(self.store)
        self.app.add_account(Account(id="bank", name="Bank", type=AccountType.BANK, initial_balance=Decimal("100")))

    def test_state_survives_reload(self) -> None:
        self.app.add_transaction(salary(date(2024, 5, 3)))
        self.app.update_budget(must_percentage=Decimal("60"))
        self.app.add_custom_subcategory(CostCategory.WANTS, "pets")

        reloaded = make_app(self.store)

        self.assertEqual(reloaded.ledger, self.app.ledger)
        self.assertEqual(reloaded.budget.savings_percentage, Decimal("10"))
        self.assertEqual(reloaded.custom_categories.WANTS.new_sub_categories, ["PETS"])
        self.assertEqual([s.id for s in reloaded.summaries], ["2024-05"])
        self.assertEqual(reloaded.balances(), {"bank": Decimal("2600")})

    def test_rejected_transaction_changes_nothing(self) -> None:
        before = self.app.ledger
        bad = salary(date(2024, 5, 3)).model_copy(update={"amount": Decimal("0")})

        with self.assertRaises(LedgerValidationError):
            self.app.add_transaction(bad)

        self.assertIs(self.app.ledger, before)
        self.assertEqual(self.store.load("transactions"), [])

    def test_failed_write_keeps_previous_state(self) -> None:
        before = self.app.ledger

        with patch.object(self.store, "save_many", side_effect=RuntimeError("disk full")):
            with self.assertRaises(RuntimeError):
                self.app.add_transaction(salary(date(2024, 5, 3)))

        self.assertIs(self.app.ledger, before)
        self.assertEqual(make_app(self.store).ledger.transactions, ())

    def test_transfer_converts_once(self) -> None:
        self.app.add_account(
            Account(id="usd", name="Card", type=AccountType.BANK, currency=Currency.USD)
        )

        transfer = self.app.move_funds("bank", "usd", Decimal("80"), date(2024, 6, 1))

        self.assertEqual(transfer.to_amount, Decimal("100"))
        self.assertEqual(self.app.balances(), {"bank": Decimal("20"), "usd": Decimal("100")})

    def test_delete_unknown_account(self) -> None:
        with self.assertRaises(LookupError):
            self.app.delete_account("nope")

    async def test_report_generation_and_export(self) -> None:
        self.app.add_transaction(salary(date(2024, 5, 3)))
        sink = MemorySink()

        report = await self.app.generate_report(2024, 5)
        filename = self.app.export_report(report.id, sink)

        self.assertEqual(filename, "report-2024-05.csv")
        self.assertIn("Summary;Total Income;2500,00", sink.files[filename])
        self.assertEqual([r.id for r in make_app(self.store).reports], ["2024-05"])
        with self.assertRaises(LookupError):
            self.app.export_report("2023-01", sink)

    async def test_price_refresh_requires_source(self) -> None:
        with self.assertRaises(PriceSourceUnavailable):
            await self.app.refresh_prices()

    async def test_exchange_rate_refresh_persists(self) -> None:
        self.app.converter.source = FakeRateSource(latest=Decimal("0.95"))

        changed = await self.app.refresh_exchange_rate()

        self.assertTrue(changed)
        self.assertEqual(make_app(self.store).converter.exchange_rate.usd_to_eur, Decimal("0.95"))

    def test_import_replaces_everything(self) -> None:
        self.app.add_transaction(salary(date(2024, 5, 3)))
        expenses = [{"month": "2024-04", "group": "Must", "category": "HOME", "sub": "RENT", "amount": 700}]

        self.app.import_history(expenses_json=json.dumps(expenses))

        self.assertNotIn("bank", {acc.id for acc in self.app.ledger.accounts})
        costs = [t for t in self.app.ledger.transactions if t.type == TransactionType.COST]
        self.assertEqual(len(costs), 1)
        self.assertEqual(self.app.reports, [])
        self.assertEqual(make_app(self.store).ledger, self.app.ledger)

    def test_test_data_only_summarizes_completed_months(self) -> None:
        self.app.load_test_data()

        self.assertEqual([s.id for s in self.app.summaries], ["2024-05", "2024-04", "2024-03"])
        self.assertEqual(len(self.app.ledger.accounts), 2)

    def test_edit_holding_keeps_unedited_fields(self) -> None:
        self.app.add_holding(
            InvestmentHolding(
                id="acme",
                name="Acme",
                ticker="ACME",
                current_price=Decimal("10"),
                start_of_year_price=Decimal("8"),
                needs_review=True,
            )
        )

        edited = self.app.edit_holding("acme", name="Acme Corp", current_price=Decimal("12"))

        self.assertEqual(edited.name, "Acme Corp")
        self.assertEqual(edited.current_price, Decimal("12"))
        self.assertEqual(edited.start_of_year_price, Decimal("8"))
        self.assertTrue(edited.needs_review)
        self.assertEqual(make_app(self.store).ledger.find_holding("acme"), edited)
        with self.assertRaises(LookupError):
            self.app.edit_holding("nope", name="X")


class ConcurrentWriteTests(unittest.TestCase):
    def test_concurrent_transactions_are_all_kept(self) -> None:
        store = SlowStore.from_url("sqlite://")
        store.init_db()
        app = make_app(store)
        app.add_account(Account(id="bank", name="Bank", type=AccountType.BANK))
        barrier = threading.Barrier(2)
        errors: list[BaseException] = []

        def record(txn_id: str) -> None:
            barrier.wait()
            try:
                app.add_transaction(salary(date(2024, 5, 3), txn_id))
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=record, args=(txn_id,)) for txn_id in ("first", "second")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        self.assertEqual({t.id for t in app.ledger.transactions}, {"first", "second"})
        self.assertEqual({t["id"] for t in store.load("transactions")}, {"first", "second"})


if __name__ == "__main__":
    unittest.main()
