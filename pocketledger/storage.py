from __future__ import annotations

import logging
from typing import Any, Mapping

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    MetaData,
    String,
    Table,
    create_engine,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

STATE_KEYS = frozenset(
    {
        "transactions",
        "accounts",
        "investmentHoldings",
        "investmentTransactions",
        "budget",
        "exchangeRate",
        "historicalRates",
        "monthlySummaries",
        "reports",
        "customCategories",
    }
)

metadata = MetaData()

app_state = Table(
    "app_state",
    metadata,
    Column("name", String(64), primary_key=True),
    Column("value", JSON, nullable=False),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)


class UnknownStateKey(KeyError):
    pass


def create_state_engine(database_url: str) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
    if database_url in {"sqlite://", "sqlite:///:memory:"}:
        # One shared connection, otherwise every checkout sees an empty database.
        return create_engine(database_url, connect_args=connect_args, poolclass=StaticPool)
    return create_engine(database_url, connect_args=connect_args)


class StateStore:
    """Whole named values; load falls back to a default, save replaces."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @classmethod
    def from_url(cls, database_url: str) -> "StateStore":
        return cls(create_state_engine(database_url))

    def init_db(self) -> None:
        metadata.create_all(self.engine)

    def load(self, name: str, default: Any = None) -> Any:
        _check_key(name)
        with self.engine.begin() as conn:
            row = conn.execute(select(app_state.c.value).where(app_state.c.name == name)).first()
        if row is None:
            return default
        return row[0]

    def save(self, name: str, value: Any) -> None:
        self.save_many({name: value})

    def save_many(self, values: Mapping[str, Any]) -> None:
        for name in values:
            _check_key(name)
        with self.engine.begin() as conn:
            for name, value in values.items():
                exists = conn.execute(
                    select(app_state.c.name).where(app_state.c.name == name)
                ).first()
                if exists:
                    conn.execute(
                        update(app_state)
                        .where(app_state.c.name == name)
                        .values(value=value, updated_at=func.now())
                    )
                else:
                    conn.execute(insert(app_state).values(name=name, value=value))
        logger.debug("Saved %s", ", ".join(values))


def _check_key(name: str) -> None:
    if name not in STATE_KEYS:
        raise UnknownStateKey(name)
