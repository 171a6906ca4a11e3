from __future__ import annotations

import logging
import re
from typing import NamedTuple

from pydantic import BaseModel

from wealthwatch.currency_conversion import InvalidRequest, normalize_currency

logger = logging.getLogger(__name__)

FORMAT_HINT = "Try: USD 100, INR 100, EUR 100"
DEFAULT_PREFERRED_CURRENCY = "USD"


class ParsedAmount(BaseModel):
    amount: float
    currency: str
    symbol: str


class ParseError(ValueError):
    def __init__(self, text: str) -> None:
        super().__init__(f"Invalid currency format: {text!r}. {FORMAT_HINT}")
        self.text = text
        self.hint = FORMAT_HINT


class CurrencyPattern(NamedTuple):
    pattern: re.Pattern[str]
    currency: str
    symbol: str


class SupportedCurrency(NamedTuple):
    code: str
    name: str
    symbol: str


SUPPORTED_CURRENCIES: tuple[SupportedCurrency, ...] = (
    SupportedCurrency("USD", "US Dollar", "$"),
    SupportedCurrency("INR", "Indian Rupee", "₹"),
    SupportedCurrency("EUR", "Euro", "€"),
    SupportedCurrency("GBP", "British Pound", "£"),
    SupportedCurrency("JPY", "Japanese Yen", "¥"),
    SupportedCurrency("CAD", "Canadian Dollar", "C$"),
    SupportedCurrency("AUD", "Australian Dollar", "A$"),
    SupportedCurrency("CHF", "Swiss Franc", "CHF"),
    SupportedCurrency("HKD", "Hong Kong Dollar", "HK$"),
    SupportedCurrency("SGD", "Singapore Dollar", "S$"),
)


def _code_pattern(code: str) -> re.Pattern[str]:
    return re.compile(rf"^{code}\s*(\d+(?:\.\d{{2}})?)$", re.IGNORECASE)


# Evaluated in order, first match wins.
CURRENCY_PATTERNS: tuple[CurrencyPattern, ...] = tuple(
    CurrencyPattern(_code_pattern(entry.code), entry.code, entry.symbol)
    for entry in SUPPORTED_CURRENCIES
)

BARE_DECIMAL = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)")

CURRENCY_SYMBOLS: dict[str, str] = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
    "INR": "₹",
    "CAD": "C$",
    "AUD": "A$",
    "CHF": "CHF",
    "CNY": "¥",
    "HKD": "HK$",
    "SGD": "S$",
    "KRW": "₩",
    "BRL": "R$",
    "MXN": "$",
    "RUB": "₽",
    "ZAR": "R",
    "NOK": "kr",
    "SEK": "kr",
    "DKK": "kr",
    "PLN": "zł",
    "CZK": "Kč",
    "HUF": "Ft",
    "TRY": "₺",
    "ILS": "₪",
    "AED": "د.إ",
    "SAR": "﷼",
    "EGP": "£",
    "KES": "KSh",
    "NGN": "₦",
    "GHS": "₵",
    "BDT": "৳",
    "PKR": "₨",
    "LKR": "₨",
    "NPR": "₨",
    "UAH": "₴",
    "GEL": "₾",
    "KZT": "₸",
    "VND": "₫",
    "THB": "฿",
    "IDR": "Rp",
    "MYR": "RM",
    "PHP": "₱",
    "NZD": "NZ$",
    "ARS": "$",
    "CLP": "$",
    "COP": "$",
    "PEN": "S/",
    "UYU": "$U",
    "CRC": "₡",
    "DOP": "RD$",
}


def get_currency_symbol(currency: str) -> str:
    return CURRENCY_SYMBOLS.get(currency, currency)


class CurrencyAmountParser:
    """Turn text such as "USD 100" or "eur25.50" into a ParsedAmount.

    Resolution order: a currency-prefixed amount from CURRENCY_PATTERNS, then a
    bare number in the preferred currency, then a lone supported code as a zero
    amount. Anything else yields None.
    """

    def __init__(
        self,
        preferred_currency: str = DEFAULT_PREFERRED_CURRENCY,
        patterns: tuple[CurrencyPattern, ...] = CURRENCY_PATTERNS,
    ) -> None:
        self.preferred_currency = normalize_currency(preferred_currency)
        self.patterns = patterns

    def parse(self, text: str | None, preferred_currency: str | None = None) -> ParsedAmount | None:
        cleaned = text.strip() if text else ""
        if not cleaned:
            return None

        for entry in self.patterns:
            match = entry.pattern.match(cleaned)
            if match:
                return ParsedAmount(amount=float(match.group(1)), currency=entry.currency, symbol=entry.symbol)

        if BARE_DECIMAL.fullmatch(cleaned):
            currency = self._resolve_preferred(preferred_currency)
            return ParsedAmount(amount=float(cleaned), currency=currency, symbol=get_currency_symbol(currency))

        code = cleaned.upper()
        for entry in self.patterns:
            if entry.currency == code:
                return ParsedAmount(amount=0.0, currency=entry.currency, symbol=entry.symbol)

        return None

    def _resolve_preferred(self, preferred_currency: str | None) -> str:
        if preferred_currency is None:
            return self.preferred_currency
        try:
            return normalize_currency(preferred_currency)
        except InvalidRequest:
            logger.warning(
                "Ignoring invalid preferred currency %r, using %s", preferred_currency, self.preferred_currency
            )
            return self.preferred_currency

    def parse_or_raise(self, text: str | None, preferred_currency: str | None = None) -> ParsedAmount:
        parsed = self.parse(text, preferred_currency)
        if parsed is None:
            raise ParseError(text or "")
        return parsed
