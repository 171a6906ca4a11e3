from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Iterable

from wealthwatch.currency_conversion import (
    ConversionFailed,
    ConversionService,
    InvalidRequest,
    normalize_currency,
)

logger = logging.getLogger(__name__)

ZERO = 0.0


@dataclass(frozen=True)
class Valuation:
    current_value: float
    currency: str
    cost_basis: float | None = None


@dataclass(frozen=True)
class AggregatedTotals:
    currency: str
    total_invested: float
    total_value: float
    total_return: float
    total_return_percent: float
    degraded: bool = False
    unconverted_currencies: tuple[str, ...] = ()


@dataclass
class CurrencyGroup:
    currency: str
    invested: float = ZERO
    value: float = ZERO


@dataclass(frozen=True)
class GroupTotals:
    currency: str
    invested: float
    value: float
    converted: bool = True


class ValuationAggregator:
    """Portfolio totals across holdings priced in different currencies.

    Valuations are grouped by currency first, so N holdings in K foreign
    currencies cost at most 2K conversions rather than one per holding. A
    group that cannot be converted is added at its raw figures and the result
    is flagged as degraded.
    """

    def __init__(self, conversion_service: ConversionService) -> None:
        self.conversion_service = conversion_service

    async def aggregate(self, valuations: Iterable[Valuation], target: str) -> AggregatedTotals:
        target_currency = normalize_currency(target)
        groups = group_by_currency(valuations, target_currency)

        results: list[GroupTotals] = []
        foreign = [group for group in groups.values() if group.currency != target_currency]
        local = groups.get(target_currency)
        if local is not None:
            results.append(GroupTotals(currency=local.currency, invested=local.invested, value=local.value))

        if foreign:
            async with asyncio.TaskGroup() as task_group:
                tasks = [
                    task_group.create_task(self._convert_group(group, target_currency))
                    for group in foreign
                ]
            results.extend(task.result() for task in tasks)

        return reduce_totals(results, target_currency)

    async def _convert_group(self, group: CurrencyGroup, target: str) -> GroupTotals:
        try:
            value = await self.conversion_service.convert(group.currency, target, group.value)
            invested = group.invested
            if group.invested > ZERO:
                # Usually a cache hit: the value conversion above just stored the rate.
                converted = await self.conversion_service.convert(group.currency, target, group.invested)
                invested = converted.converted_amount
        except ConversionFailed as exc:
            logger.warning(
                "Using unconverted %s totals for %s aggregation: %s",
                group.currency,
                target,
                exc,
            )
            return GroupTotals(currency=group.currency, invested=group.invested, value=group.value, converted=False)
        return GroupTotals(currency=group.currency, invested=invested, value=value.converted_amount)


def group_by_currency(valuations: Iterable[Valuation], fallback_currency: str) -> dict[str, CurrencyGroup]:
    groups: dict[str, CurrencyGroup] = {}
    for valuation in valuations:
        currency = safe_normalize_currency(valuation.currency, fallback_currency)
        group = groups.setdefault(currency, CurrencyGroup(currency=currency))
        group.value += float(valuation.current_value or ZERO)
        if valuation.cost_basis is not None and valuation.cost_basis > ZERO:
            group.invested += float(valuation.cost_basis)
    return groups


def reduce_totals(results: Iterable[GroupTotals], target: str) -> AggregatedTotals:
    total_invested = ZERO
    total_value = ZERO
    unconverted: list[str] = []
    for result in results:
        total_invested += result.invested
        total_value += result.value
        if not result.converted:
            unconverted.append(result.currency)

    total_return = total_value - total_invested
    total_return_percent = ZERO
    if total_invested != ZERO:
        total_return_percent = 100 * total_return / total_invested

    return AggregatedTotals(
        currency=target,
        total_invested=total_invested,
        total_value=total_value,
        total_return=total_return,
        total_return_percent=total_return_percent,
        degraded=bool(unconverted),
        unconverted_currencies=tuple(sorted(unconverted)),
    )


def safe_normalize_currency(value: str | None, fallback: str) -> str:
    try:
        return normalize_currency(value)
    except InvalidRequest:
        logger.warning("Invalid valuation currency %r, counting it as %s", value, fallback)
        return fallback
