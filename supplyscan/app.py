from __future__ import annotations

import logging
import tempfile
from contextlib import asynccontextmanager
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Generator

from fastapi import Depends, FastAPI, File, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.orm import Session

from supplyscan import services
from supplyscan.agent import LLMCallError, LLMClient, Toolbox, research_chat
from supplyscan.cache import CLIENT_MIRROR_TTL, TTLCache, make_key
from supplyscan.db import get_session, init_db
from supplyscan.importer import import_roster_xlsx
from supplyscan.market_data import NO_MIRROR_CACHE_PATHS, V3_PATHS, MarketDataClient
from supplyscan.scanner import EmptyRosterError, ScanInitError, run_scan
from supplyscan.schemas import (
    ChatRequest,
    ImportResult,
    MarketDataRequest,
    RelationshipOut,
    ScanRequest,
    ScanResponse,
    ScanRunOut,
    ScoreOut,
    SignalOut,
    StatsOut,
)
from supplyscan.search import ScrapeClient, SearchClient

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="SupplyScan",
    version="0.1.0",
    description=(
        "AI infrastructure supply-chain intelligence API. "
        "Runs bottleneck scans over the company roster, serves scores, signals and "
        "relationships, proxies market data and hosts the research chat."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Scan", "description": "Trigger and inspect bottleneck scans. Requires FMP_API_KEY and LLM_API_KEY."},
        {"name": "Chat", "description": "Tool-calling research assistant streamed as server-sent events."},
        {"name": "Market Data", "description": "Cached proxy over the market-data provider."},
        {"name": "Results", "description": "Scores, signals and relationships written by scans."},
        {"name": "Import", "description": "Roster import from XLSX spreadsheets."},
        {"name": "Stats", "description": "Aggregate counts."},
    ],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def scan_session_factory() -> Callable[[], Session]:
    """Sessions for the scan coordinator, which opens and closes its own."""
    return get_session


@lru_cache
def market_client() -> MarketDataClient:
    return MarketDataClient()


@lru_cache
def mirror_cache() -> TTLCache:
    return TTLCache(CLIENT_MIRROR_TTL)


@lru_cache
def search_client() -> SearchClient:
    return SearchClient()


@lru_cache
def scrape_client() -> ScrapeClient:
    return ScrapeClient()


@lru_cache
def llm_client() -> LLMClient:
    return LLMClient()


def toolbox(
    market: MarketDataClient = Depends(market_client),
    search: SearchClient = Depends(search_client),
    scraper: ScrapeClient = Depends(scrape_client),
) -> Toolbox:
    return Toolbox(market, search, scraper)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


# ---------------------------------------------------------------------------
# Routes: Scan
# ---------------------------------------------------------------------------


@app.post("/api/scan", response_model=ScanResponse,
          tags=["Scan"], summary="Run a bottleneck scan over the full roster")
async def trigger_scan(
    body: ScanRequest | None = None,
    session_factory: Callable[[], Session] = Depends(scan_session_factory),
    market: MarketDataClient = Depends(market_client),
    search: SearchClient = Depends(search_client),
    llm: LLMClient = Depends(llm_client),
):
    if not market.configured:
        return _error(500, "FMP_API_KEY not configured")
    if not llm.configured:
        return _error(500, "LLM_API_KEY not configured")
    trigger_type = body.trigger_type if body else "manual"
    try:
        outcome = await run_scan(session_factory, market, search, llm, trigger_type=trigger_type)
    except (ScanInitError, EmptyRosterError) as exc:
        return _error(500, str(exc))
    except Exception as exc:
        log.error("Scan request failed: %s", exc)
        return _error(500, str(exc) or "Scan failed")
    return outcome.as_dict()


@app.get("/api/scans", response_model=list[ScanRunOut],
         tags=["Scan"], summary="List recent scan runs, newest first")
async def list_scans(limit: int = Query(20, ge=1, le=200), session: Session = Depends(db_session)):
    return services.list_scan_runs(session, limit=limit)


@app.get("/api/scans/{scan_id}", response_model=ScanRunOut,
         tags=["Scan"], summary="Get one scan run")
async def get_scan(scan_id: str, session: Session = Depends(db_session)):
    run = services.get_scan_run(session, scan_id)
    if run is None:
        return _error(404, "Scan run not found")
    return run


# ---------------------------------------------------------------------------
# Routes: Chat
# ---------------------------------------------------------------------------


@app.post("/api/chat", tags=["Chat"], summary="Research chat (SSE stream of completion chunks)")
async def chat(
    body: ChatRequest,
    llm: LLMClient = Depends(llm_client),
    tools: Toolbox = Depends(toolbox),
):
    if not llm.configured:
        return _error(500, "LLM_API_KEY not configured")
    messages = [m.model_dump() for m in body.messages]
    try:
        lines = await research_chat(llm, tools, messages)
    except LLMCallError as exc:
        return _error(exc.status_code, str(exc))
    return StreamingResponse(lines, media_type="text/event-stream")


# ---------------------------------------------------------------------------
# Routes: Market data
# ---------------------------------------------------------------------------


@app.post("/api/market-data", tags=["Market Data"],
          summary="Bulk quote/profile/statements/metrics for several tickers")
async def market_data_batch(body: MarketDataRequest, market: MarketDataClient = Depends(market_client)):
    if not market.configured:
        return _error(500, "FMP_API_KEY not configured")
    tickers = [t.strip().upper() for t in body.tickers if t.strip()]
    if not tickers:
        return _error(400, "tickers array required")
    return await market.batch_company_data(tickers, body.endpoints)


@app.get("/api/market-data/{path:path}", tags=["Market Data"],
         summary="Generic cached passthrough to one market-data resource")
async def market_data_passthrough(
    path: str,
    request: Request,
    v3: bool = False,
    no_cache: bool = False,
    market: MarketDataClient = Depends(market_client),
    mirror: TTLCache = Depends(mirror_cache),
):
    if not market.configured:
        return _error(500, "FMP_API_KEY not configured")
    path = "/" + path.lstrip("/")
    params: dict[str, Any] = {
        k: v for k, v in request.query_params.items() if k not in ("v3", "no_cache")
    }
    v3 = v3 or path in V3_PATHS
    use_mirror = not no_cache and path not in NO_MIRROR_CACHE_PATHS
    key = make_key(path, params, v3=v3)
    if use_mirror:
        cached = mirror.get(key)
        if cached is not None:
            return cached

    data = await market.fetch(path, params, v3=v3, no_cache=no_cache)
    if data is None:
        return _error(502, f"No data for {path}")
    if use_mirror:
        mirror.set(key, data)
    return data


# ---------------------------------------------------------------------------
# Routes: Results
# ---------------------------------------------------------------------------


@app.get("/api/scores", response_model=list[ScoreOut],
         tags=["Results"], summary="Company scores, highest bottleneck first")
async def get_scores(session: Session = Depends(db_session)):
    return services.list_scores(session)


@app.get("/api/signals", response_model=list[SignalOut],
         tags=["Results"], summary="Recent supply-chain signals")
async def get_signals(
    company_id: str | None = None,
    limit: int = Query(100, ge=1, le=1000),
    session: Session = Depends(db_session),
):
    return services.list_signals(session, company_id=company_id, limit=limit)


@app.get("/api/relationships", response_model=list[RelationshipOut],
         tags=["Results"], summary="Relationship edges, optionally those touching one company")
async def get_relationships(company_id: str | None = None, session: Session = Depends(db_session)):
    return services.list_relationships(session, company_id=company_id)


# ---------------------------------------------------------------------------
# Routes: Import
# ---------------------------------------------------------------------------


@app.post("/api/import", response_model=ImportResult,
          tags=["Import"], summary="Import the company roster from an XLSX spreadsheet")
async def import_file(file: UploadFile = File(...), session: Session = Depends(db_session)):
    if not file.filename or not file.filename.endswith(".xlsx"):
        return _error(400, "Only .xlsx files are supported")
    content = await file.read()
    tmp_path = None
    try:
        with tempfile.NamedTemporaryFile(suffix=".xlsx", delete=False) as f:
            tmp_path = Path(f.name)
            f.write(content)
        return import_roster_xlsx(tmp_path, session)
    finally:
        if tmp_path:
            tmp_path.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Routes: Stats
# ---------------------------------------------------------------------------


@app.get("/api/stats", response_model=StatsOut,
         tags=["Stats"], summary="Row counts and latest scan status")
async def get_stats(session: Session = Depends(db_session)):
    return services.compute_stats(session)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn

    from supplyscan.cli import configure_logging

    configure_logging()
    uvicorn.run("supplyscan.app:app", host="127.0.0.1", port=8001, log_config=None)


if __name__ == "__main__":
    main()
