from __future__ import annotations

from datetime import date
from decimal import Decimal

from pocketledger.currency_conversion import CurrencyConverter
from pocketledger.ledger import Ledger
from pocketledger.models import (
    ZERO,
    Currency,
    InvestmentTransactionType,
    TransactionType,
)


def balance_as_of(
    ledger: Ledger,
    account_id: str,
    as_of: date,
    converter: CurrencyConverter,
) -> Decimal:
    """Replay the ledger for one account up to and including ``as_of``.

    Investment cash effects are converted at the current rate, not the rate on
    the trade date.
    """
    account = ledger.find_account(account_id)
    if account is None:
        return ZERO

    balance = account.initial_balance
    for txn in ledger.transactions:
        if txn.date > as_of:
            continue
        if txn.type == TransactionType.INCOME and txn.account_id == account_id:
            balance += txn.amount
        elif txn.type == TransactionType.COST and txn.account_id == account_id:
            balance -= txn.amount
        elif txn.type == TransactionType.TRANSFER:
            if txn.from_account_id == account_id:
                balance -= txn.amount
            elif txn.to_account_id == account_id and txn.to_amount is not None:
                balance += txn.to_amount

    for inv in ledger.investment_transactions:
        if inv.account_id != account_id or inv.date > as_of:
            continue
        holding = ledger.find_holding(inv.holding_id)
        if holding is None:
            continue
        amount = converter.convert(inv.total_amount, holding.currency, account.currency)
        if inv.type == InvestmentTransactionType.BUY:
            balance -= amount
        elif inv.type in (InvestmentTransactionType.SELL, InvestmentTransactionType.DIVIDEND):
            balance += amount

    return balance


def current_balance(ledger: Ledger, account_id: str, converter: CurrencyConverter) -> Decimal:
    return balance_as_of(ledger, account_id, date.max, converter)


def total_cash_eur(ledger: Ledger, as_of: date, converter: CurrencyConverter) -> Decimal:
    total = ZERO
    for account in ledger.accounts:
        balance = balance_as_of(ledger, account.id, as_of, converter)
        total += converter.convert(balance, account.currency, Currency.EUR)
    return total
