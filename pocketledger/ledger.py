from __future__ import annotations

from dataclasses import dataclass, replace as dataclass_replace
from datetime import date
from decimal import Decimal
from typing import Iterable
from uuid import uuid4

from pocketledger.currency_conversion import CurrencyConverter
from pocketledger.models import (
    ZERO,
    Account,
    CostCategory,
    IncomeType,
    InvestmentHolding,
    InvestmentTransaction,
    InvestmentTransactionType,
    Transaction,
    TransactionType,
)


class LedgerValidationError(ValueError):
    """User supplied data rejected before it reaches the ledger."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field


def new_id() -> str:
    return uuid4().hex


@dataclass(frozen=True)
class Ledger:
    """Snapshot of everything the derived figures are computed from.

    Mutators never touch the receiver; they return a new ``Ledger`` so readers
    holding an older snapshot keep a consistent view.
    """

    accounts: tuple[Account, ...] = ()
    transactions: tuple[Transaction, ...] = ()
    holdings: tuple[InvestmentHolding, ...] = ()
    investment_transactions: tuple[InvestmentTransaction, ...] = ()

    @classmethod
    def build(
        cls,
        accounts: Iterable[Account] = (),
        transactions: Iterable[Transaction] = (),
        holdings: Iterable[InvestmentHolding] = (),
        investment_transactions: Iterable[InvestmentTransaction] = (),
    ) -> "Ledger":
        return cls(
            accounts=tuple(accounts),
            transactions=tuple(transactions),
            holdings=tuple(holdings),
            investment_transactions=tuple(investment_transactions),
        )

    def find_account(self, account_id: str | None) -> Account | None:
        if account_id is None:
            return None
        return next((acc for acc in self.accounts if acc.id == account_id), None)

    def find_holding(self, holding_id: str | None) -> InvestmentHolding | None:
        if holding_id is None:
            return None
        return next((h for h in self.holdings if h.id == holding_id), None)

    def transactions_for_holding(self, holding_id: str) -> list[InvestmentTransaction]:
        return [txn for txn in self.investment_transactions if txn.holding_id == holding_id]

    def has_activity(self) -> bool:
        return bool(self.accounts or self.transactions)

    # Cash transactions

    def add_transaction(self, transaction: Transaction) -> "Ledger":
        validated = self.validate_transaction(transaction)
        return dataclass_replace(self, transactions=self.transactions + (validated,))

    def move_funds(
        self,
        from_account_id: str,
        to_account_id: str,
        amount: Decimal,
        day: date,
        description: str,
        converter: CurrencyConverter,
    ) -> "Ledger":
        from_account = self.find_account(from_account_id)
        to_account = self.find_account(to_account_id)
        if from_account is None or to_account is None:
            raise LedgerValidationError("accountId", "One or both accounts not found for transfer.")
        transfer = Transaction(
            id=new_id(),
            type=TransactionType.TRANSFER,
            amount=amount,
            to_amount=converter.convert(amount, from_account.currency, to_account.currency),
            date=day,
            from_account_id=from_account_id,
            to_account_id=to_account_id,
            description=description.strip(),
        )
        return self.add_transaction(transfer)

    def validate_transaction(self, transaction: Transaction) -> Transaction:
        if transaction.amount <= ZERO:
            raise LedgerValidationError("amount", "Amount must be greater than zero.")
        if transaction.type == TransactionType.TRANSFER:
            return self._validate_transfer(transaction)

        if not transaction.account_id:
            raise LedgerValidationError("accountId", "Account required.")
        if self.find_account(transaction.account_id) is None:
            raise LedgerValidationError("accountId", "Account not found.")

        description = transaction.description.strip()
        if transaction.type == TransactionType.COST:
            if transaction.category is None or not transaction.sub_category:
                raise LedgerValidationError("category", "Category and sub-category required.")
            if not transaction.detail:
                raise LedgerValidationError("detail", "Detail required.")
            if transaction.detail == "OTHER" and not description:
                raise LedgerValidationError("description", "Description required for OTHER.")
        else:
            if transaction.income_type is None:
                transaction = transaction.model_copy(update={"income_type": IncomeType.WORK})
            if transaction.income_type == IncomeType.EXTRA and not description:
                raise LedgerValidationError("description", "Extra income requires a description.")
        return transaction.model_copy(update={"description": description})

    def _validate_transfer(self, transaction: Transaction) -> Transaction:
        if not transaction.from_account_id or not transaction.to_account_id:
            raise LedgerValidationError("accountId", "Transfers require both accounts.")
        if transaction.from_account_id == transaction.to_account_id:
            raise LedgerValidationError("toAccountId", "Cannot move funds to the same account.")
        if self.find_account(transaction.from_account_id) is None:
            raise LedgerValidationError("fromAccountId", "Account not found.")
        if self.find_account(transaction.to_account_id) is None:
            raise LedgerValidationError("toAccountId", "Account not found.")
        if transaction.to_amount is None or transaction.to_amount <= ZERO:
            raise LedgerValidationError("toAmount", "Converted amount must be greater than zero.")
        return transaction

    # Accounts

    def add_account(self, account: Account) -> "Ledger":
        validated = _validate_account(account)
        if self.find_account(validated.id) is not None:
            raise LedgerValidationError("id", "Account already exists.")
        return dataclass_replace(self, accounts=self.accounts + (validated,))

    def update_account(self, account: Account) -> "Ledger":
        validated = _validate_account(account)
        if self.find_account(validated.id) is None:
            raise LookupError("Account not found.")
        accounts = tuple(validated if acc.id == validated.id else acc for acc in self.accounts)
        return dataclass_replace(self, accounts=accounts)

    def delete_account(self, account_id: str) -> "Ledger":
        if self.find_account(account_id) is None:
            raise LookupError("Account not found.")
        accounts = tuple(acc for acc in self.accounts if acc.id != account_id)
        return dataclass_replace(self, accounts=accounts)

    def reorder_accounts(self, account_ids: list[str]) -> "Ledger":
        by_id = {acc.id: acc for acc in self.accounts}
        if sorted(account_ids) != sorted(by_id):
            raise LedgerValidationError("accountIds", "Reorder must list every account exactly once.")
        return dataclass_replace(self, accounts=tuple(by_id[acc_id] for acc_id in account_ids))

    # Investments

    def add_holding(self, holding: InvestmentHolding) -> "Ledger":
        validated = _validate_holding(holding)
        if self.find_holding(validated.id) is not None:
            raise LedgerValidationError("id", "Holding already exists.")
        return dataclass_replace(self, holdings=self.holdings + (validated,))

    def update_holding(self, holding: InvestmentHolding) -> "Ledger":
        validated = _validate_holding(holding)
        if self.find_holding(validated.id) is None:
            raise LookupError("Holding not found.")
        holdings = tuple(validated if h.id == validated.id else h for h in self.holdings)
        return dataclass_replace(self, holdings=holdings)

    def replace_holdings(self, changed: Iterable[InvestmentHolding]) -> "Ledger":
        updates = {h.id: h for h in changed}
        if not updates:
            return self
        holdings = tuple(updates.get(h.id, h) for h in self.holdings)
        return dataclass_replace(self, holdings=holdings)

    def add_investment_transaction(self, transaction: InvestmentTransaction) -> "Ledger":
        if self.find_holding(transaction.holding_id) is None:
            raise LedgerValidationError("holdingId", "Holding not found.")
        if self.find_account(transaction.account_id) is None:
            raise LedgerValidationError("accountId", "Account not found.")
        if transaction.type == InvestmentTransactionType.DIVIDEND:
            if transaction.total_amount <= ZERO:
                raise LedgerValidationError("totalAmount", "Dividend amount must be greater than zero.")
            transaction = transaction.model_copy(update={"quantity": ZERO, "price_per_unit": ZERO})
        else:
            if transaction.quantity <= ZERO:
                raise LedgerValidationError("quantity", "Quantity must be greater than zero.")
            if transaction.price_per_unit < ZERO:
                raise LedgerValidationError("pricePerUnit", "Price cannot be negative.")
            if transaction.total_amount < ZERO:
                raise LedgerValidationError("totalAmount", "Total amount cannot be negative.")
        return dataclass_replace(
            self, investment_transactions=self.investment_transactions + (transaction,)
        )


def _validate_account(account: Account) -> Account:
    name = account.name.strip()
    if not name:
        raise LedgerValidationError("name", "Account name required.")
    return account.model_copy(update={"name": name})


def _validate_holding(holding: InvestmentHolding) -> InvestmentHolding:
    name = holding.name.strip()
    ticker = holding.ticker.strip().upper()
    if not name:
        raise LedgerValidationError("name", "Holding name required.")
    if not ticker:
        raise LedgerValidationError("ticker", "Ticker required.")
    if holding.current_price is not None and holding.current_price < ZERO:
        raise LedgerValidationError("currentPrice", "Price cannot be negative.")
    isin = holding.isin.strip().upper() if holding.isin else None
    return holding.model_copy(update={"name": name, "ticker": ticker, "isin": isin or None})


def costs_in_category(transactions: Iterable[Transaction], category: CostCategory) -> list[Transaction]:
    return [
        txn for txn in transactions if txn.type == TransactionType.COST and txn.category == category
    ]
