import logging
import os
from datetime import datetime

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import create_engine

from wealthwatch.amount_parser import (
    SUPPORTED_CURRENCIES,
    CurrencyAmountParser,
    ParsedAmount,
    ParseError,
)
from wealthwatch.currency_conversion import (
    ConversionFailed,
    ConversionService,
    InvalidRequest,
    normalize_currency,
)
from wealthwatch.rate_cache import RateCache
from wealthwatch.rate_providers import DEFAULT_TIMEOUT_SECONDS, build_rate_provider
from wealthwatch.store import HoldingStore, PreferenceStore, create_tables
from wealthwatch.valuation_aggregator import ValuationAggregator

logger = logging.getLogger(__name__)

app = FastAPI()

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = os.getenv("DATABASE_URL", "sqlite:///./wealthwatch.db")
connect_args = {}
if database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(database_url, connect_args=connect_args)


def get_system_default_currency() -> str:
    raw = os.getenv("DEFAULT_CURRENCY", "USD")
    try:
        return normalize_currency(raw)
    except InvalidRequest:
        logger.warning("DEFAULT_CURRENCY=%r is not a currency code, using USD", raw)
        return "USD"


def get_provider_timeout() -> float:
    raw = os.getenv("RATE_PROVIDER_TIMEOUT")
    if not raw:
        return DEFAULT_TIMEOUT_SECONDS
    try:
        return float(raw)
    except ValueError:
        logger.warning("RATE_PROVIDER_TIMEOUT=%r is not a number, using %s", raw, DEFAULT_TIMEOUT_SECONDS)
        return DEFAULT_TIMEOUT_SECONDS


SYSTEM_DEFAULT_CURRENCY = get_system_default_currency()
PROVIDER_TIMEOUT = get_provider_timeout()

# One cache per process, shared by every request.
RATE_CACHE = RateCache()
CONVERSION_SERVICE = ConversionService(
    RATE_CACHE,
    build_rate_provider(
        os.getenv("RATE_PROVIDER", "exchangerate"),
        api_key=os.getenv("EXCHANGERATE_API_KEY"),
        timeout=PROVIDER_TIMEOUT,
    ),
    timeout=PROVIDER_TIMEOUT,
)
PREFERENCE_STORE = PreferenceStore(engine, default_currency=SYSTEM_DEFAULT_CURRENCY)
HOLDING_STORE = HoldingStore(engine)


@app.on_event("startup")
def init_db() -> None:
    create_tables(engine)


def get_conversion_service() -> ConversionService:
    return CONVERSION_SERVICE


def get_aggregator(
    conversion_service: ConversionService = Depends(get_conversion_service),
) -> ValuationAggregator:
    return ValuationAggregator(conversion_service)


def get_preference_store() -> PreferenceStore:
    return PREFERENCE_STORE


def get_holding_store() -> HoldingStore:
    return HOLDING_STORE


def get_user_id(x_user_id: str | None = Header(None, alias="x-user-id")) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing user identity.")
    return x_user_id.strip()


class UserSettingsPayload(BaseModel):
    preferred_currency: str | None = None


class UserSettingsResponse(BaseModel):
    user_id: str | None = None
    preferred_currency: str


class ParseAmountPayload(BaseModel):
    text: str


class CurrencyResponse(BaseModel):
    code: str
    name: str
    symbol: str


class HoldingPayload(BaseModel):
    name: str
    currency: str
    current_value: float
    cost_basis: float | None = None


class HoldingResponse(BaseModel):
    id: int
    name: str
    currency: str
    current_value: float
    cost_basis: float | None = None
    created_at: datetime | None = None


class PortfolioTotalsResponse(BaseModel):
    currency: str
    total_invested: float
    total_value: float
    total_return: float
    total_return_percent: float
    holdings_count: int
    degraded: bool
    unconverted_currencies: list[str]


def error_response(status_code: int, error: str, details=None) -> JSONResponse:
    content = {"error": error}
    if details is not None:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(InvalidRequest)
async def invalid_request_handler(request: Request, exc: InvalidRequest) -> JSONResponse:
    return error_response(400, str(exc))


@app.exception_handler(ParseError)
async def parse_error_handler(request: Request, exc: ParseError) -> JSONResponse:
    return error_response(400, str(exc), {"hint": exc.hint})


@app.exception_handler(ConversionFailed)
async def conversion_failed_handler(request: Request, exc: ConversionFailed) -> JSONResponse:
    return error_response(exc.status_code or 500, "Failed to fetch currency conversion", exc.details())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_response(500, "Internal server error", {"type": type(exc).__name__})


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/convert")
async def convert(
    from_currency: str | None = Query(None, alias="from"),
    to_currency: str | None = Query(None, alias="to"),
    amount: str | None = Query(None),
    conversion_service: ConversionService = Depends(get_conversion_service),
) -> dict:
    if not from_currency or not to_currency:
        return error_response(400, "From and to currencies are required")
    result = await conversion_service.convert(from_currency, to_currency, amount or None)
    return result.to_payload()


@app.get("/currencies", response_model=list[CurrencyResponse])
def list_currencies() -> list[CurrencyResponse]:
    return [
        CurrencyResponse(code=entry.code, name=entry.name, symbol=entry.symbol)
        for entry in SUPPORTED_CURRENCIES
    ]


@app.get("/users/me/settings", response_model=UserSettingsResponse)
def get_user_settings(
    x_user_id: str | None = Header(None, alias="x-user-id"),
    preference_store: PreferenceStore = Depends(get_preference_store),
) -> UserSettingsResponse:
    return UserSettingsResponse(
        user_id=x_user_id,
        preferred_currency=preference_store.get_preferred_currency(x_user_id),
    )


@app.put("/users/me/settings", response_model=UserSettingsResponse)
def update_user_settings(
    payload: UserSettingsPayload,
    user_id: str = Depends(get_user_id),
    preference_store: PreferenceStore = Depends(get_preference_store),
) -> UserSettingsResponse:
    if payload.preferred_currency is None:
        raise HTTPException(status_code=400, detail="Preferred currency required.")
    preferred = preference_store.set_preferred_currency(user_id, payload.preferred_currency)
    return UserSettingsResponse(user_id=user_id, preferred_currency=preferred)


@app.post("/amounts/parse", response_model=ParsedAmount)
def parse_amount(
    payload: ParseAmountPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    preference_store: PreferenceStore = Depends(get_preference_store),
) -> ParsedAmount:
    preferred = preference_store.get_preferred_currency(x_user_id)
    parser = CurrencyAmountParser(preferred_currency=preferred)
    return parser.parse_or_raise(payload.text)


@app.get("/holdings", response_model=list[HoldingResponse])
def list_holdings(
    user_id: str = Depends(get_user_id),
    holding_store: HoldingStore = Depends(get_holding_store),
) -> list[HoldingResponse]:
    return [
        HoldingResponse(
            id=holding.id,
            name=holding.name,
            currency=holding.currency,
            current_value=holding.current_value,
            cost_basis=holding.cost_basis,
            created_at=holding.created_at,
        )
        for holding in holding_store.list_holdings(user_id)
    ]


@app.post("/holdings", response_model=HoldingResponse)
def create_holding(
    payload: HoldingPayload,
    user_id: str = Depends(get_user_id),
    holding_store: HoldingStore = Depends(get_holding_store),
) -> HoldingResponse:
    holding = holding_store.add_holding(
        user_id,
        name=payload.name,
        currency=payload.currency,
        current_value=payload.current_value,
        cost_basis=payload.cost_basis,
    )
    return HoldingResponse(
        id=holding.id,
        name=holding.name,
        currency=holding.currency,
        current_value=holding.current_value,
        cost_basis=holding.cost_basis,
        created_at=holding.created_at,
    )


@app.delete("/holdings/{holding_id}")
def delete_holding(
    holding_id: int,
    user_id: str = Depends(get_user_id),
    holding_store: HoldingStore = Depends(get_holding_store),
) -> dict:
    if not holding_store.delete_holding(user_id, holding_id):
        raise HTTPException(status_code=404, detail="Holding not found.")
    return {"status": "deleted"}


@app.get("/portfolio/totals", response_model=PortfolioTotalsResponse)
async def portfolio_totals(
    currency: str | None = None,
    user_id: str = Depends(get_user_id),
    holding_store: HoldingStore = Depends(get_holding_store),
    preference_store: PreferenceStore = Depends(get_preference_store),
    aggregator: ValuationAggregator = Depends(get_aggregator),
) -> PortfolioTotalsResponse:
    target = currency or preference_store.get_preferred_currency(user_id)
    valuations = holding_store.list_valuations(user_id)
    totals = await aggregator.aggregate(valuations, target)
    return PortfolioTotalsResponse(
        currency=totals.currency,
        total_invested=totals.total_invested,
        total_value=totals.total_value,
        total_return=totals.total_return,
        total_return_percent=totals.total_return_percent,
        holdings_count=len(valuations),
        degraded=totals.degraded,
        unconverted_currencies=list(totals.unconverted_currencies),
    )
