from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine

from wealthwatch.currency_conversion import InvalidRequest, normalize_currency
from wealthwatch.valuation_aggregator import Valuation

logger = logging.getLogger(__name__)

metadata = MetaData()

user_preferences = Table(
    "user_preferences",
    metadata,
    Column("user_id", String(128), primary_key=True),
    Column("preferred_currency", String(3), nullable=False),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)

holdings = Table(
    "holdings",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(128), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("current_value", Float, nullable=False),
    Column("cost_basis", Float),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)


def create_tables(engine: Engine) -> None:
    metadata.create_all(engine)


class PreferenceStore:
    def __init__(self, engine: Engine, default_currency: str = "USD") -> None:
        self.engine = engine
        self.default_currency = default_currency

    def get_preferred_currency(self, user_id: str | None) -> str:
        if not user_id:
            return self.default_currency
        with self.engine.begin() as conn:
            stored = conn.execute(
                select(user_preferences.c.preferred_currency).where(user_preferences.c.user_id == user_id)
            ).scalar_one_or_none()
        if stored:
            try:
                return normalize_currency(stored)
            except InvalidRequest:
                logger.warning("Ignoring invalid stored currency %r for user %s", stored, user_id)
        return self.default_currency

    def set_preferred_currency(self, user_id: str, currency: str) -> str:
        normalized = normalize_currency(currency)
        with self.engine.begin() as conn:
            result = conn.execute(
                update(user_preferences)
                .where(user_preferences.c.user_id == user_id)
                .values(preferred_currency=normalized, updated_at=func.now())
            )
            if result.rowcount == 0:
                conn.execute(insert(user_preferences).values(user_id=user_id, preferred_currency=normalized))
        return normalized


@dataclass(frozen=True)
class Holding:
    id: int
    user_id: str
    name: str
    currency: str
    current_value: float
    cost_basis: float | None = None
    created_at: datetime | None = None

    def to_valuation(self) -> Valuation:
        return Valuation(current_value=self.current_value, currency=self.currency, cost_basis=self.cost_basis)


class HoldingStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def list_holdings(self, user_id: str) -> list[Holding]:
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(holdings).where(holdings.c.user_id == user_id).order_by(holdings.c.id.asc())
            ).mappings().all()
        return [_row_to_holding(row) for row in rows]

    def list_valuations(self, user_id: str) -> list[Valuation]:
        return [holding.to_valuation() for holding in self.list_holdings(user_id)]

    def add_holding(
        self,
        user_id: str,
        name: str,
        currency: str,
        current_value: float,
        cost_basis: float | None = None,
    ) -> Holding:
        name = name.strip()
        if not name:
            raise InvalidRequest("Holding name required.")
        if cost_basis is not None and cost_basis < 0:
            raise InvalidRequest("Cost basis cannot be negative.")
        stmt = (
            insert(holdings)
            .values(
                user_id=user_id,
                name=name,
                currency=normalize_currency(currency),
                current_value=float(current_value),
                cost_basis=None if cost_basis is None else float(cost_basis),
            )
            .returning(*holdings.c)
        )
        with self.engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
        return _row_to_holding(row)

    def delete_holding(self, user_id: str, holding_id: int) -> bool:
        stmt = holdings.delete().where(holdings.c.id == holding_id, holdings.c.user_id == user_id)
        with self.engine.begin() as conn:
            result = conn.execute(stmt)
        return result.rowcount > 0


def _row_to_holding(row) -> Holding:
    return Holding(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        currency=row["currency"],
        current_value=row["current_value"],
        cost_basis=row["cost_basis"],
        created_at=row["created_at"],
    )
