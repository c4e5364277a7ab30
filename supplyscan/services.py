"""Read-side queries and serialization shared by the API and CLI."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from supplyscan.models import Company, CompanyScore, Relationship, ScanRun, Signal

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def scan_run_dict(run: ScanRun) -> dict:
    return {
        "id": run.id, "status": run.status, "trigger_type": run.trigger_type,
        "started_at": _iso(run.started_at), "completed_at": _iso(run.completed_at),
        "companies_scanned": run.companies_scanned, "signals_found": run.signals_found,
        "relationships_found": run.relationships_found, "error_message": run.error_message,
    }


def score_dict(score: CompanyScore, company: Company) -> dict:
    return {
        "company_id": score.company_id, "ticker": company.ticker, "name": company.name,
        "bottleneck_score": score.bottleneck_score, "beneficiary_score": score.beneficiary_score,
        "breakdown": score.breakdown, "computed_at": _iso(score.computed_at),
    }


def signal_dict(sig: Signal) -> dict:
    return {
        "id": sig.id, "company_id": sig.company_id, "signal_type": sig.signal_type,
        "direction": sig.direction, "magnitude": sig.magnitude, "summary": sig.summary,
        "source": sig.source, "as_of": _iso(sig.as_of),
    }


def relationship_dict(rel: Relationship) -> dict:
    return {
        "id": rel.id, "from_company_id": rel.from_company_id, "to_company_id": rel.to_company_id,
        "rel_type": rel.rel_type, "confidence": rel.confidence, "notes": rel.notes,
        "source": rel.source, "last_seen": _iso(rel.last_seen),
    }


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def list_scan_runs(session: Session, limit: int = 20) -> list[dict]:
    runs = session.execute(
        select(ScanRun).order_by(ScanRun.started_at.desc()).limit(limit)
    ).scalars().all()
    return [scan_run_dict(r) for r in runs]


def get_scan_run(session: Session, run_id: str) -> dict | None:
    run = session.get(ScanRun, run_id)
    return scan_run_dict(run) if run else None


def list_scores(session: Session) -> list[dict]:
    rows = session.execute(
        select(CompanyScore, Company)
        .join(Company, Company.id == CompanyScore.company_id)
        .order_by(CompanyScore.bottleneck_score.desc(), Company.id)
    ).all()
    return [score_dict(score, company) for score, company in rows]


def list_signals(session: Session, company_id: str | None = None, limit: int = 100) -> list[dict]:
    query = select(Signal)
    if company_id:
        query = query.where(Signal.company_id == company_id)
    rows = session.execute(query.order_by(Signal.as_of.desc(), Signal.id.desc()).limit(limit)).scalars().all()
    return [signal_dict(s) for s in rows]


def list_relationships(session: Session, company_id: str | None = None) -> list[dict]:
    query = select(Relationship)
    if company_id:
        query = query.where(or_(
            Relationship.from_company_id == company_id,
            Relationship.to_company_id == company_id,
        ))
    rows = session.execute(query.order_by(Relationship.confidence.desc())).scalars().all()
    return [relationship_dict(r) for r in rows]


def compute_stats(session: Session) -> dict:
    def _count(model) -> int:
        return session.execute(select(func.count()).select_from(model)).scalar_one()

    latest = session.execute(
        select(ScanRun.status).order_by(ScanRun.started_at.desc()).limit(1)
    ).scalar()
    return {
        "companies": _count(Company), "scored": _count(CompanyScore),
        "signals": _count(Signal), "relationships": _count(Relationship),
        "scan_runs": _count(ScanRun), "latest_scan_status": latest,
    }
