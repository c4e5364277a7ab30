"""Financial Modeling Prep client.

Every call goes through :meth:`MarketDataClient.fetch`, which picks the API
surface, appends the credential, caches the decoded payload and turns any
upstream failure into ``None``.  Callers treat ``None`` as "no data".
"""
from __future__ import annotations

import asyncio
import json
import logging
import math
import os
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import httpx

from supplyscan.cache import SERVER_TTL, TTLCache, make_key
from supplyscan.utils import truncate

log = logging.getLogger(__name__)

STABLE_BASE = "https://financialmodelingprep.com/stable"
V3_BASE = "https://financialmodelingprep.com/api/v3"

_TIMEOUT = 20.0
_BODY_LOG_CHARS = 200
SCAN_TRANSCRIPT_CHARS = 6_000

# Resources only served by the legacy v3 surface
V3_PATHS = frozenset({"/sector-performance"})

# Realtime feeds that must not be served from the client-side mirror
NO_MIRROR_CACHE_PATHS = frozenset({
    "/news/stock-latest",
    "/news/general-latest",
    "/insider-trading/latest",
    "/senate-latest",
    "/house-latest",
})

STOCK_DATA_ENDPOINTS = ("quote", "profile", "income-statement", "balance-sheet-statement", "key-metrics")


def unwrap_single(data: Any) -> Any:
    """Collapse a one-element JSON array to its element."""
    if isinstance(data, list) and len(data) == 1:
        return data[0]
    return data


def first_record(data: Any) -> dict[str, Any] | None:
    """First object of an (already unwrapped) payload, or None."""
    if isinstance(data, dict):
        return data
    if isinstance(data, list) and data and isinstance(data[0], dict):
        return data[0]
    return None


def as_records(data: Any) -> list[dict[str, Any]]:
    """Normalize a payload to a list of objects."""
    if isinstance(data, dict):
        return [data]
    if isinstance(data, list):
        return [d for d in data if isinstance(d, dict)]
    return []


def previous_quarter(now: datetime | None = None) -> tuple[int, int]:
    """(year, quarter) used for the bulk transcript fetch: last completed quarter, floored at Q1."""
    now = now or datetime.now(UTC)
    quarter = max(1, math.ceil((now.month - 1) / 3) - 1)
    return now.year, quarter


def endpoint_params(endpoint: str, ticker: str) -> dict[str, str]:
    """Default query params the dashboard uses per endpoint."""
    params = {"symbol": ticker}
    if endpoint == "key-metrics":
        params["period"] = "ttm"
    if endpoint.endswith("statement"):
        params["limit"] = "1"
    return params


@dataclass
class CompanyFinancials:
    """Per-run snapshot of one company's market data; any field may be None."""
    ticker: str
    company_id: str
    quote: dict[str, Any] | None = None
    key_metrics: dict[str, Any] | None = None
    income_statement: dict[str, Any] | None = None
    transcript: str | None = None
    news: str = field(default="")

    def context_block(self) -> str:
        """Markdown section fed to the analysis model."""
        sections = [f"## {self.ticker} (ID: {self.company_id})"]
        if self.quote:
            sections.append(f"Quote: {json.dumps(self.quote)}")
        if self.key_metrics:
            sections.append(f"Key Metrics: {json.dumps(self.key_metrics)}")
        if self.income_statement:
            sections.append(f"Income Statement: {json.dumps(self.income_statement)}")
        if self.transcript:
            sections.append(f"Earnings Transcript (excerpt):\n{self.transcript}")
        if self.news:
            sections.append(f"Recent News:\n{self.news}")
        return "\n".join(sections)


class MarketDataClient:
    """Async FMP client with a shared TTL response cache."""

    def __init__(
        self,
        api_key: str | None = None,
        cache: TTLCache | None = None,
        base_url: str | None = None,
        v3_base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = _TIMEOUT,
    ):
        self._api_key = (api_key if api_key is not None else os.environ.get("FMP_API_KEY", "")).strip()
        self.cache = cache if cache is not None else TTLCache(SERVER_TTL)
        self.base_url = (base_url or os.environ.get("FMP_BASE_URL") or STABLE_BASE).rstrip("/")
        self.v3_base_url = (v3_base_url or os.environ.get("FMP_V3_BASE_URL") or V3_BASE).rstrip("/")
        self._http = httpx.AsyncClient(timeout=httpx.Timeout(timeout), transport=transport)

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> MarketDataClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    async def fetch(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        *,
        v3: bool = False,
        no_cache: bool = False,
    ) -> Any | None:
        """GET one resource; returns decoded JSON (single-element arrays unwrapped) or None."""
        if not path.startswith("/"):
            path = "/" + path
        v3 = v3 or path in V3_PATHS
        params = {k: str(v) for k, v in (params or {}).items()}
        key = make_key(path, params, v3=v3)

        if not no_cache:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        base = self.v3_base_url if v3 else self.base_url
        try:
            resp = await self._http.get(f"{base}{path}", params={**params, "apikey": self._api_key})
        except httpx.HTTPError as exc:
            log.warning("Market data request failed for %s: %s", path, exc)
            return None

        if not resp.is_success:
            log.warning("Market data %s for %s: %s", resp.status_code, path, resp.text[:_BODY_LOG_CHARS])
            return None
        try:
            data = unwrap_single(resp.json())
        except ValueError:
            log.warning("Market data returned non-JSON body for %s", path)
            return None

        if not no_cache:
            self.cache.set(key, data)
        return data

    # -- single resources -----------------------------------------------------

    async def quote(self, ticker: str) -> dict[str, Any] | None:
        return first_record(await self.fetch("/quote", {"symbol": ticker}))

    async def profile(self, ticker: str) -> dict[str, Any] | None:
        return first_record(await self.fetch("/profile", {"symbol": ticker}))

    async def key_metrics(self, ticker: str) -> dict[str, Any] | None:
        return first_record(await self.fetch("/key-metrics", endpoint_params("key-metrics", ticker)))

    async def income_statement(self, ticker: str) -> dict[str, Any] | None:
        return first_record(await self.fetch("/income-statement", endpoint_params("income-statement", ticker)))

    async def balance_sheet(self, ticker: str) -> dict[str, Any] | None:
        return first_record(
            await self.fetch("/balance-sheet-statement", endpoint_params("balance-sheet-statement", ticker))
        )

    async def earnings_transcript(self, ticker: str, year: int, quarter: int) -> str | None:
        data = await self.fetch(
            "/earning-call-transcript",
            {"symbol": ticker, "year": year, "quarter": quarter},
        )
        record = first_record(data)
        content = record.get("content") if record else None
        return content if isinstance(content, str) and content else None

    async def stock_news(self, tickers: list[str] | None = None, limit: int = 20) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"limit": limit, "page": 0}
        if tickers:
            params["tickers"] = ",".join(tickers)
        return as_records(await self.fetch("/news/stock-latest", params, no_cache=True))

    async def historical_prices(self, ticker: str, start: str, end: str) -> list[dict[str, Any]]:
        return as_records(
            await self.fetch("/historical-price-eod/full", {"symbol": ticker, "from": start, "to": end})
        )

    async def sector_performance(self) -> list[dict[str, Any]]:
        return as_records(await self.fetch("/sector-performance"))

    # -- aggregates -------------------------------------------------------------

    async def fetch_company_financials(
        self, ticker: str, company_id: str, now: datetime | None = None,
    ) -> CompanyFinancials:
        """Fetch the four per-company resources in parallel; misses stay None."""
        year, quarter = previous_quarter(now)
        quote, metrics, income, transcript = await asyncio.gather(
            self.quote(ticker),
            self.key_metrics(ticker),
            self.income_statement(ticker),
            self.earnings_transcript(ticker, year, quarter),
        )
        return CompanyFinancials(
            ticker=ticker,
            company_id=company_id,
            quote=quote,
            key_metrics=metrics,
            income_statement=income,
            transcript=truncate(transcript, SCAN_TRANSCRIPT_CHARS) if transcript else None,
        )

    async def get_stock_data(self, ticker: str) -> dict[str, Any]:
        """Quote, profile, statements and metrics for one ticker; missing endpoints are omitted."""
        ticker = ticker.strip().upper()
        payloads = await asyncio.gather(*(
            self.fetch(f"/{ep}", endpoint_params(ep, ticker)) for ep in STOCK_DATA_ENDPOINTS
        ))
        return {ep: data for ep, data in zip(STOCK_DATA_ENDPOINTS, payloads) if data not in (None, [], {})}

    async def batch_company_data(
        self, tickers: list[str], endpoints: list[str] | None = None,
    ) -> dict[str, dict[str, Any]]:
        """``{TICKER: {endpoint: payload}}`` for the dashboard's bulk view.

        quote/profile accept comma-joined symbols and are fetched once; the
        per-ticker endpoints are fetched concurrently.
        """
        endpoints = endpoints or list(STOCK_DATA_ENDPOINTS)
        results: dict[str, dict[str, Any]] = {}

        async def _multi(endpoint: str) -> None:
            data = await self.fetch(f"/{endpoint}", {"symbol": ",".join(tickers)})
            for item in as_records(data):
                symbol = item.get("symbol")
                if symbol:
                    results.setdefault(symbol, {})[endpoint] = item

        async def _single(endpoint: str, ticker: str) -> None:
            data = await self.fetch(f"/{endpoint}", endpoint_params(endpoint, ticker))
            record = first_record(data)
            if record is not None:
                results.setdefault(ticker, {})[endpoint] = record

        jobs = []
        for endpoint in endpoints:
            if endpoint in ("quote", "profile"):
                jobs.append(_multi(endpoint))
            elif endpoint in ("income-statement", "balance-sheet-statement", "cash-flow-statement", "key-metrics"):
                jobs.extend(_single(endpoint, t) for t in tickers)
            else:
                log.debug("Ignoring unsupported batch endpoint %s", endpoint)
        await asyncio.gather(*jobs)
        return results
