"""Bottleneck scan: one end-to-end run from roster to persisted scores.

Phases
------
1. open a ``scan_runs`` row in ``running``
2. load the roster (an empty roster fails the run)
3. fetch market data per company, 3 at a time
4. optionally enrich the first 15 companies with web search, 2 at a time
5. analyze batches of 15 sequentially and persist each batch's result;
   a failing batch is logged and skipped
6. close the run as ``completed`` with totals, or ``failed`` with the error

The run row leaves ``running`` exactly once.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from supplyscan.agent import LLMClient, Toolbox, analyze_batch
from supplyscan.concurrency import run_concurrent
from supplyscan.market_data import CompanyFinancials, MarketDataClient
from supplyscan.models import Company, ScanRun
from supplyscan.persistence import persist_analysis
from supplyscan.search import SearchClient
from supplyscan.utils import chunked

log = logging.getLogger(__name__)

MARKET_CONCURRENCY = 3
SEARCH_CONCURRENCY = 2
SEARCH_SAMPLE_SIZE = 15
BATCH_SIZE = 15

RUNNING, COMPLETED, FAILED = "running", "completed", "failed"


class ScanInitError(Exception):
    """The scan-run record could not be created."""


class EmptyRosterError(Exception):
    """No companies to scan; the run has already been marked failed."""


@dataclass
class ScanOutcome:
    scan_id: str
    status: str
    companies_scanned: int
    signals_found: int
    relationships_found: int

    def as_dict(self) -> dict:
        return asdict(self)


# ---------------------------------------------------------------------------
# Scan-run lifecycle
# ---------------------------------------------------------------------------


def create_scan_run(session: Session, trigger_type: str = "manual") -> ScanRun:
    run = ScanRun(status=RUNNING, trigger_type=trigger_type, started_at=datetime.now(UTC))
    session.add(run)
    session.commit()
    return run


def _close_scan_run(session: Session, run_id: str, status: str, **fields) -> bool:
    run = session.get(ScanRun, run_id)
    if run is None:
        log.error("Scan run %s vanished before it could be closed", run_id)
        return False
    if run.status != RUNNING:
        log.warning("Scan run %s already %s, not moving it to %s", run_id, run.status, status)
        return False
    run.status = status
    run.completed_at = datetime.now(UTC)
    for key, value in fields.items():
        setattr(run, key, value)
    session.commit()
    return True


def complete_scan_run(
    session: Session, run_id: str, companies_scanned: int, signals_found: int, relationships_found: int,
) -> bool:
    return _close_scan_run(
        session, run_id, COMPLETED,
        companies_scanned=companies_scanned,
        signals_found=signals_found,
        relationships_found=relationships_found,
    )


def fail_scan_run(session: Session, run_id: str, error_message: str) -> bool:
    return _close_scan_run(session, run_id, FAILED, error_message=error_message)


# ---------------------------------------------------------------------------
# Phases
# ---------------------------------------------------------------------------


async def fetch_all_financials(market: MarketDataClient, companies: list[Company]) -> list[CompanyFinancials]:
    def _task(company: Company):
        async def _fetch() -> CompanyFinancials:
            try:
                return await market.fetch_company_financials(company.ticker, company.id)
            except Exception as exc:
                log.warning("Market data fetch failed for %s: %s", company.ticker, exc)
                return CompanyFinancials(ticker=company.ticker, company_id=company.id)
        return _fetch

    return await run_concurrent([_task(c) for c in companies], MARKET_CONCURRENCY)


async def fetch_news(search: SearchClient, companies: list[Company]) -> dict[str, str]:
    """Supply-chain news for the first SEARCH_SAMPLE_SIZE companies, keyed by company id."""
    if not search.configured:
        log.info("Search provider not configured, skipping news enrichment")
        return {}
    sample = companies[:SEARCH_SAMPLE_SIZE]
    log.info("Searching supply chain news for %d companies", len(sample))

    def _task(company: Company):
        async def _search() -> str:
            try:
                return await search.search(company.name, company.ticker)
            except Exception as exc:
                log.warning("News search failed for %s: %s", company.ticker, exc)
                return ""
        return _search

    texts = await run_concurrent([_task(c) for c in sample], SEARCH_CONCURRENCY)
    return {c.id: text for c, text in zip(sample, texts) if text}


async def run_scan(
    session_factory: Callable[[], Session],
    market: MarketDataClient,
    search: SearchClient,
    llm: LLMClient,
    *,
    trigger_type: str = "manual",
    toolbox: Toolbox | None = None,
    batch_size: int = BATCH_SIZE,
) -> ScanOutcome:
    """Execute one scan run.

    Raises:
        ScanInitError: the run row could not be created (nothing recorded).
        EmptyRosterError: no companies; the run is recorded as failed.
        Exception: anything else escaping the run, after it is recorded as failed.
    """
    session = session_factory()
    try:
        try:
            run_id = create_scan_run(session, trigger_type).id
        except SQLAlchemyError as exc:
            session.rollback()
            log.error("Failed to create scan run: %s", exc)
            raise ScanInitError("Failed to initialize scan") from exc

        try:
            return await _execute(session, run_id, market, search, llm, toolbox, batch_size)
        except EmptyRosterError:
            raise
        except Exception as exc:
            session.rollback()
            log.exception("Scan %s failed", run_id)
            fail_scan_run(session, run_id, str(exc) or type(exc).__name__)
            raise
    finally:
        session.close()


async def _execute(
    session: Session,
    run_id: str,
    market: MarketDataClient,
    search: SearchClient,
    llm: LLMClient,
    toolbox: Toolbox | None,
    batch_size: int,
) -> ScanOutcome:
    companies = list(session.execute(
        select(Company).order_by(Company.created_at, Company.id)
    ).scalars().all())
    if not companies:
        fail_scan_run(session, run_id, "No companies found")
        raise EmptyRosterError("No companies in database")
    known_ids = [c.id for c in companies]

    log.info("Scan %s: fetching market data for %d companies", run_id, len(companies))
    financials = await fetch_all_financials(market, companies)

    news = await fetch_news(search, companies)
    for item in financials:
        item.news = news.get(item.company_id, "")

    log.info("Scan %s: running AI analysis", run_id)
    total_signals = total_relationships = 0
    for index, batch in enumerate(chunked(financials, batch_size), start=1):
        try:
            analysis = await analyze_batch(llm, batch, known_ids, toolbox=toolbox)
            counts = persist_analysis(session, analysis, known_ids)
        except Exception as exc:
            session.rollback()
            log.warning("Scan %s: batch %d skipped: %s", run_id, index, exc)
            continue
        total_signals += counts.signals
        total_relationships += counts.relationships

    complete_scan_run(session, run_id, len(companies), total_signals, total_relationships)
    log.info(
        "Scan %s completed: %d companies, %d signals, %d relationships",
        run_id, len(companies), total_signals, total_relationships,
    )
    return ScanOutcome(
        scan_id=run_id,
        status=COMPLETED,
        companies_scanned=len(companies),
        signals_found=total_signals,
        relationships_found=total_relationships,
    )
