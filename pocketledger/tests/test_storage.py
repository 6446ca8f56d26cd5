import unittest

from sqlalchemy.exc import SQLAlchemyError

from pocketledger.storage import StateStore, UnknownStateKey


class StateStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = StateStore.from_url("sqlite://")
        self.store.init_db()

    def test_missing_value_returns_default(self) -> None:
        self.assertEqual(self.store.load("accounts", []), [])
        self.assertIsNone(self.store.load("budget"))

    def test_save_replaces_whole_value(self) -> None:
        self.store.save("accounts", [{"id": "a"}, {"id": "b"}])
        self.store.save("accounts", [{"id": "c"}])

        self.assertEqual(self.store.load("accounts"), [{"id": "c"}])

    def test_unknown_names_are_rejected(self) -> None:
        with self.assertRaises(UnknownStateKey):
            self.store.load("passwords")
        with self.assertRaises(UnknownStateKey):
            self.store.save_many({"accounts": [], "passwords": []})

        self.assertIsNone(self.store.load("accounts"))

    def test_save_many_is_all_or_nothing(self) -> None:
        self.store.save("budget", {"monthlyIncome": "3000"})

        with self.assertRaises(SQLAlchemyError):
            self.store.save_many({"budget": {"monthlyIncome": "1"}, "reports": [object()]})

        self.assertEqual(self.store.load("budget"), {"monthlyIncome": "3000"})
        self.assertIsNone(self.store.load("reports"))


if __name__ == "__main__":
    unittest.main()
