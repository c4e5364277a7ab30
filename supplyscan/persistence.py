"""Write one batch's analysis to the store.

Each unit of work commits on its own so a failure rolls back only that unit:

- scores: one upsert per company, keyed on ``company_id`` (full replace)
- signals: one bulk insert per batch, all-or-nothing, never deduplicated
- relationships: one upsert per edge, keyed on ``(from, to, rel_type)``

Entries naming company ids outside the roster are dropped before writing.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from supplyscan.models import CompanyScore, Relationship, Signal
from supplyscan.schemas import AnalysisResult, RelationshipEntry, ScoreEntry, SignalEntry

log = logging.getLogger(__name__)

AI_SCAN_SOURCE = "ai-scan"


@dataclass
class PersistCounts:
    scores: int = 0
    signals: int = 0
    relationships: int = 0


def upsert_score(session: Session, entry: ScoreEntry, computed_at: datetime | None = None) -> CompanyScore:
    """Insert or fully replace the score row for ``entry.company_id`` (caller must commit)."""
    row = session.get(CompanyScore, entry.company_id)
    if row is None:
        row = CompanyScore(company_id=entry.company_id)
        session.add(row)
    row.bottleneck_score = entry.bottleneck_score
    row.beneficiary_score = entry.beneficiary_score
    row.breakdown = entry.breakdown.model_dump()
    row.computed_at = computed_at or datetime.now(UTC)
    return row


def insert_signals(session: Session, entries: Iterable[SignalEntry], as_of: datetime | None = None) -> list[Signal]:
    """Append one row per entry (caller must commit)."""
    stamp = as_of or datetime.now(UTC)
    rows = [
        Signal(
            company_id=s.company_id,
            signal_type=s.signal_type,
            direction=s.direction,
            magnitude=s.magnitude,
            summary=s.summary,
            source=s.source,
            as_of=stamp,
            created_at=stamp,
        )
        for s in entries
    ]
    session.add_all(rows)
    return rows


def upsert_relationship(
    session: Session, entry: RelationshipEntry, source: str = AI_SCAN_SOURCE, seen_at: datetime | None = None,
) -> Relationship:
    """Insert the edge or refresh confidence/notes/source/last_seen (caller must commit)."""
    row = session.execute(
        select(Relationship).where(
            Relationship.from_company_id == entry.from_company_id,
            Relationship.to_company_id == entry.to_company_id,
            Relationship.rel_type == entry.rel_type,
        )
    ).scalars().first()
    if row is None:
        row = Relationship(
            from_company_id=entry.from_company_id,
            to_company_id=entry.to_company_id,
            rel_type=entry.rel_type,
        )
        session.add(row)
    row.confidence = entry.confidence
    row.notes = entry.notes
    row.source = source
    row.last_seen = seen_at or datetime.now(UTC)
    return row


def persist_analysis(
    session: Session, analysis: AnalysisResult, known_company_ids: Iterable[str],
) -> PersistCounts:
    """Write scores, signals and relationships, committing per unit."""
    known = set(known_company_ids)
    counts = PersistCounts()
    now = datetime.now(UTC)

    for entry in analysis.scores:
        if entry.company_id not in known:
            log.warning("Dropping score for unknown company %r", entry.company_id)
            continue
        try:
            upsert_score(session, entry, now)
            session.commit()
            counts.scores += 1
        except SQLAlchemyError as exc:
            session.rollback()
            log.warning("Score upsert failed for %s: %s", entry.company_id, exc)

    signals = [s for s in analysis.signals if s.company_id in known]
    if len(signals) < len(analysis.signals):
        log.warning("Dropping %d signals for unknown companies", len(analysis.signals) - len(signals))
    if signals:
        try:
            insert_signals(session, signals, now)
            session.commit()
            counts.signals = len(signals)
        except SQLAlchemyError as exc:
            session.rollback()
            log.warning("Signal insert failed for batch of %d: %s", len(signals), exc)

    for entry in analysis.new_relationships:
        if entry.from_company_id not in known or entry.to_company_id not in known:
            log.warning(
                "Dropping relationship %s -> %s: unknown company",
                entry.from_company_id, entry.to_company_id,
            )
            continue
        try:
            upsert_relationship(session, entry, seen_at=now)
            session.commit()
            counts.relationships += 1
        except SQLAlchemyError as exc:
            session.rollback()
            log.warning(
                "Relationship upsert failed for %s -> %s (%s): %s",
                entry.from_company_id, entry.to_company_id, entry.rel_type, exc,
            )

    return counts
