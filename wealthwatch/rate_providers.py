from __future__ import annotations

from dataclasses import dataclass
import logging
import math
from typing import Any, Mapping, Protocol

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 8.0

DEFAULT_RATES: dict[str, float] = {
    "USD": 1.0,
    "EUR": 0.92,
    "GBP": 0.79,
    "JPY": 147.50,
    "INR": 83.20,
    "CAD": 1.34,
    "AUD": 1.52,
    "CHF": 0.88,
    "HKD": 7.82,
    "SGD": 1.34,
}


class ProviderError(RuntimeError):
    """Raised when a rate provider cannot answer for a currency pair."""

    permanent = False

    def __init__(
        self,
        message: str,
        *,
        pair: tuple[str, str] | None = None,
        status_code: int | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.pair = pair
        self.status_code = status_code
        self.details = details


class ProviderTransient(ProviderError):
    """Network error, timeout, 5xx or an unusable payload. Retrying later may help."""


class ProviderPermanent(ProviderError):
    """Unknown or unsupported currency code. Retrying cannot help."""

    permanent = True


class RateProviderClient(Protocol):
    async def fetch(self, from_currency: str, to_currency: str) -> float:
        ...


@dataclass(frozen=True)
class StaticRateProvider:
    """Deterministic, in-memory FX rates.

    Rates are expressed as target currency per 1 USD.
    """

    rates: Mapping[str, float] | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", dict(DEFAULT_RATES if self.rates is None else self.rates))

    async def fetch(self, from_currency: str, to_currency: str) -> float:
        pair = (from_currency, to_currency)
        for code in pair:
            if code not in self.rates:
                raise ProviderPermanent(f"Unsupported currency: {code}", pair=pair, status_code=400)
        return self.rates[to_currency] / self.rates[from_currency]


@dataclass
class ExchangeRateApiProvider:
    """exchangerate-api.com client.

    With an API key the v6 pair endpoint answers directly; without one the free
    v4 endpoint returns every rate for the base currency and the target is
    picked out of it.
    """

    api_key: str | None = None
    base_url: str = "https://v6.exchangerate-api.com/v6"
    free_url: str = "https://api.exchangerate-api.com/v4"
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    transport: httpx.AsyncBaseTransport | None = None

    async def fetch(self, from_currency: str, to_currency: str) -> float:
        pair = (from_currency, to_currency)
        if self.api_key:
            url = f"{self.base_url}/{self.api_key}/pair/{from_currency}/{to_currency}"
        else:
            url = f"{self.free_url}/latest/{from_currency}"
        payload = await _get_json(url, pair, timeout=self.timeout, transport=self.transport)

        if payload.get("result") == "error":
            error_type = payload.get("error-type", "unknown")
            if error_type in {"unsupported-code", "malformed-request"}:
                raise ProviderPermanent(f"Unsupported currency pair: {error_type}", pair=pair, status_code=400, details=payload)
            raise ProviderTransient(f"Rate provider error: {error_type}", pair=pair, details=payload)

        if self.api_key:
            value = payload.get("conversion_rate")
        else:
            rates = payload.get("rates")
            if not isinstance(rates, dict):
                raise ProviderTransient("Rate provider response missing rates", pair=pair, details=payload)
            if to_currency not in rates:
                raise ProviderPermanent(f"Unsupported currency: {to_currency}", pair=pair, status_code=400)
            value = rates[to_currency]
        return _positive_rate(value, pair)


@dataclass
class FrankfurterRateProvider:
    base_url: str = "https://api.frankfurter.app"
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    transport: httpx.AsyncBaseTransport | None = None

    async def fetch(self, from_currency: str, to_currency: str) -> float:
        pair = (from_currency, to_currency)
        payload = await _get_json(
            f"{self.base_url}/latest",
            pair,
            params={"from": from_currency, "to": to_currency},
            timeout=self.timeout,
            transport=self.transport,
        )
        rates = payload.get("rates")
        if not isinstance(rates, dict):
            raise ProviderTransient("Frankfurter response missing rates", pair=pair, details=payload)
        if to_currency not in rates:
            raise ProviderPermanent(f"Unsupported currency: {to_currency}", pair=pair, status_code=400)
        return _positive_rate(rates[to_currency], pair)


def build_rate_provider(
    name: str,
    api_key: str | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> RateProviderClient:
    normalized = name.strip().lower()
    if normalized == "exchangerate":
        return ExchangeRateApiProvider(api_key=api_key or None, timeout=timeout)
    if normalized == "frankfurter":
        return FrankfurterRateProvider(timeout=timeout)
    if normalized == "static":
        return StaticRateProvider()
    raise ValueError(f"Unsupported rate provider: {name}")


async def _get_json(
    url: str,
    pair: tuple[str, str],
    *,
    params: dict[str, str] | None = None,
    timeout: float,
    transport: httpx.AsyncBaseTransport | None,
) -> dict[str, Any]:
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            response = await client.get(url, params=params)
    except httpx.TimeoutException as exc:
        raise ProviderTransient("Rate provider timed out", pair=pair) from exc
    except httpx.HTTPError as exc:
        raise ProviderTransient(f"Rate provider unavailable: {exc}", pair=pair) from exc
    except httpx.InvalidURL as exc:
        # Usually a malformed API key spliced into the path.
        raise ProviderPermanent(f"Rate provider URL is invalid: {exc}", pair=pair) from exc

    payload = _decode(response)
    # 429 means rate limited, which clears up on its own.
    if response.status_code >= 500 or response.status_code == 429:
        raise ProviderTransient(
            f"Rate provider returned {response.status_code}",
            pair=pair,
            status_code=response.status_code,
            details=payload,
        )
    if response.status_code >= 400:
        raise ProviderPermanent(
            f"Rate provider rejected {pair[0]}/{pair[1]}",
            pair=pair,
            status_code=response.status_code,
            details=payload,
        )
    if not isinstance(payload, dict):
        raise ProviderTransient("Rate provider returned an unreadable payload", pair=pair)
    return payload


def _decode(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        logger.debug("Non-JSON body from %s", response.request.url)
        return None


def _positive_rate(value: Any, pair: tuple[str, str]) -> float:
    try:
        rate = float(value)
    except (TypeError, ValueError) as exc:
        raise ProviderTransient(f"Rate provider returned a non-numeric rate: {value!r}", pair=pair) from exc
    if not (rate > 0 and math.isfinite(rate)):
        raise ProviderTransient(f"Rate provider returned a non-positive rate: {rate}", pair=pair)
    return rate
