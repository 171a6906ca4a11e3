from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import math
from typing import Any, Callable

from wealthwatch.rate_cache import FRESHNESS_WINDOW, RateCache
from wealthwatch.rate_providers import (
    DEFAULT_TIMEOUT_SECONDS,
    ProviderError,
    ProviderTransient,
    RateProviderClient,
)

logger = logging.getLogger(__name__)


class InvalidRequest(ValueError):
    """Malformed currency code or amount. Rejected before any cache or network access."""


class ConversionFailed(RuntimeError):
    """The rate provider could not resolve a pair. No fallback rate is applied."""

    def __init__(self, from_currency: str, to_currency: str, cause: ProviderError) -> None:
        super().__init__(f"Conversion {from_currency}->{to_currency} failed: {cause}")
        self.from_currency = from_currency
        self.to_currency = to_currency
        self.status_code = cause.status_code
        self.permanent = cause.permanent
        self.provider_details = cause.details

    def details(self) -> dict[str, Any]:
        return {
            "from": self.from_currency,
            "to": self.to_currency,
            "providerStatus": self.status_code,
            "permanent": self.permanent,
            "provider": self.provider_details,
        }


@dataclass(frozen=True)
class ConversionResult:
    from_currency: str
    to_currency: str
    rate: float
    amount: float | None
    converted_amount: float | None
    resolved_at: datetime

    def to_payload(self) -> dict[str, Any]:
        return {
            "from": self.from_currency,
            "to": self.to_currency,
            "rate": self.rate,
            "amount": self.amount,
            "convertedAmount": self.converted_amount,
            "timestamp": self.resolved_at.isoformat(),
        }


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ConversionService:
    """Resolve (amount, from, to) through the rate cache, then the provider.

    Stateless apart from the injected cache, so one instance can serve any
    number of concurrent requests.
    """

    def __init__(
        self,
        cache: RateCache,
        provider: RateProviderClient,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.cache = cache
        self.provider = provider
        self.timeout = timeout
        self.clock = clock

    async def convert(
        self,
        from_currency: str,
        to_currency: str,
        amount: float | int | str | None = None,
    ) -> ConversionResult:
        source = normalize_currency(from_currency)
        target = normalize_currency(to_currency)
        coerced_amount = coerce_amount(amount)

        if source == target:
            return ConversionResult(
                from_currency=source,
                to_currency=target,
                rate=1.0,
                amount=coerced_amount,
                converted_amount=coerced_amount,
                resolved_at=self.clock(),
            )

        pair = (source, target)
        cached = self.cache.get(pair)
        if cached is not None and cached.is_fresh(self.clock(), FRESHNESS_WINDOW):
            return _build_result(pair, cached.rate, coerced_amount, cached.fetched_at)

        rate = await self._fetch(pair)
        fetched_at = self.clock()
        self.cache.put(pair, rate, fetched_at)
        return _build_result(pair, rate, coerced_amount, fetched_at)

    async def _fetch(self, pair: tuple[str, str]) -> float:
        try:
            try:
                return await asyncio.wait_for(self.provider.fetch(*pair), timeout=self.timeout)
            except asyncio.TimeoutError as exc:
                raise ProviderTransient(
                    f"Rate provider did not answer within {self.timeout}s", pair=pair
                ) from exc
            except OSError as exc:
                raise ProviderTransient(f"Rate provider connection failed: {exc}", pair=pair) from exc
        except ProviderError as exc:
            if exc.permanent:
                logger.error("Rate provider rejected %s->%s: %s", pair[0], pair[1], exc)
            else:
                logger.warning("Rate provider unavailable for %s->%s: %s", pair[0], pair[1], exc)
            raise ConversionFailed(pair[0], pair[1], exc) from exc


def normalize_currency(value: str | None) -> str:
    if value is None:
        raise InvalidRequest("Currency code is required.")
    normalized = str(value).strip().upper()
    if len(normalized) != 3 or not normalized.isascii() or not normalized.isalpha():
        raise InvalidRequest("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def coerce_amount(amount: float | int | str | None) -> float | None:
    if amount is None:
        return None
    if isinstance(amount, bool):
        raise InvalidRequest("Amount must be a number.")
    try:
        coerced = float(amount)
    except (TypeError, ValueError) as exc:
        raise InvalidRequest(f"Amount must be a number, got {amount!r}.") from exc
    if not math.isfinite(coerced):
        raise InvalidRequest("Amount must be finite.")
    return coerced


def _build_result(
    pair: tuple[str, str],
    rate: float,
    amount: float | None,
    resolved_at: datetime,
) -> ConversionResult:
    return ConversionResult(
        from_currency=pair[0],
        to_currency=pair[1],
        rate=rate,
        amount=amount,
        converted_amount=None if amount is None else amount * rate,
        resolved_at=resolved_at,
    )
