from __future__ import annotations

import uuid
from datetime import datetime, UTC
from typing import Any

from sqlalchemy import JSON, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid.uuid4())


class Company(Base):
    __tablename__ = "companies"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    ticker: Mapped[str] = mapped_column(String(20), nullable=False)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    score: Mapped[CompanyScore | None] = relationship("CompanyScore", back_populates="company", uselist=False)


class CompanyScore(Base):
    __tablename__ = "company_scores"

    company_id: Mapped[str] = mapped_column(String(100), ForeignKey("companies.id"), primary_key=True)
    bottleneck_score: Mapped[float] = mapped_column(Float, default=0.0)
    beneficiary_score: Mapped[float] = mapped_column(Float, default=0.0)
    # {concentration_risk, financial_health, signal_strength, reason}
    breakdown: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    computed_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    company: Mapped[Company] = relationship("Company", back_populates="score")


class Signal(Base):
    __tablename__ = "signals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[str] = mapped_column(String(100), ForeignKey("companies.id"), nullable=False)
    signal_type: Mapped[str] = mapped_column(String(100), nullable=False)
    direction: Mapped[str] = mapped_column(String(10), nullable=False)  # up | down | flat | unknown
    magnitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    source: Mapped[str | None] = mapped_column(String(500), nullable=True)
    as_of: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)


class Relationship(Base):
    __tablename__ = "relationships"
    __table_args__ = (
        UniqueConstraint("from_company_id", "to_company_id", "rel_type", name="uq_relationship_edge"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    from_company_id: Mapped[str] = mapped_column(String(100), ForeignKey("companies.id"), nullable=False)
    to_company_id: Mapped[str] = mapped_column(String(100), ForeignKey("companies.id"), nullable=False)
    rel_type: Mapped[str] = mapped_column(String(20), nullable=False)  # supplier | customer | partner | competitor | other
    confidence: Mapped[float] = mapped_column(Float, default=0.5)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    source: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_seen: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)


class ScanRun(Base):
    __tablename__ = "scan_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="running")  # running | completed | failed
    trigger_type: Mapped[str] = mapped_column(String(50), nullable=False, default="manual")
    started_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    companies_scanned: Mapped[int | None] = mapped_column(Integer, nullable=True)
    signals_found: Mapped[int | None] = mapped_column(Integer, nullable=True)
    relationships_found: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
