"""Pydantic schemas: model-output validation and API request/response shapes."""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

VALID_DIRECTIONS = ("up", "down", "flat", "unknown")
VALID_REL_TYPES = ("supplier", "customer", "partner", "competitor", "other")


def _clamp(value: Any, low: float, high: float) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        return low
    return max(low, min(high, v))


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _number_or_none(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


# ---------------------------------------------------------------------------
# submit_analysis payload
# ---------------------------------------------------------------------------


class ScoreBreakdown(BaseModel):
    concentration_risk: float = 0.0
    financial_health: float = 0.0
    signal_strength: float = 0.0
    reason: str = ""

    @field_validator("concentration_risk", "financial_health", "signal_strength", mode="before")
    @classmethod
    def clamp_component(cls, v: Any) -> float:
        return _clamp(v, 0.0, 100.0)

    @field_validator("reason", mode="before")
    @classmethod
    def coerce_reason(cls, v: Any) -> str:
        return _text(v)


class ScoreEntry(BaseModel):
    company_id: str
    bottleneck_score: float
    beneficiary_score: float
    breakdown: ScoreBreakdown = Field(default_factory=ScoreBreakdown)

    @field_validator("bottleneck_score", "beneficiary_score", mode="before")
    @classmethod
    def clamp_score(cls, v: Any) -> float:
        return _clamp(v, 0.0, 100.0)

    @field_validator("breakdown", mode="before")
    @classmethod
    def default_breakdown(cls, v: Any) -> Any:
        return v if isinstance(v, (dict, ScoreBreakdown)) else {}


class SignalEntry(BaseModel):
    company_id: str
    signal_type: str
    direction: Literal["up", "down", "flat", "unknown"] = "unknown"
    magnitude: float | None = None
    summary: str = ""
    source: str = ""

    @field_validator("direction", mode="before")
    @classmethod
    def normalize_direction(cls, v: Any) -> str:
        d = str(v or "").strip().lower()
        return d if d in VALID_DIRECTIONS else "unknown"

    @field_validator("magnitude", mode="before")
    @classmethod
    def numeric_magnitude(cls, v: Any) -> float | None:
        return _number_or_none(v)

    @field_validator("summary", "source", mode="before")
    @classmethod
    def coerce_text(cls, v: Any) -> str:
        return _text(v)


class RelationshipEntry(BaseModel):
    from_company_id: str
    to_company_id: str
    rel_type: Literal["supplier", "customer", "partner", "competitor", "other"] = "other"
    confidence: float = 0.5
    notes: str = ""

    @field_validator("rel_type", mode="before")
    @classmethod
    def normalize_rel_type(cls, v: Any) -> str:
        r = str(v or "").strip().lower()
        return r if r in VALID_REL_TYPES else "other"

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v: Any) -> float:
        return _clamp(v, 0.0, 1.0)

    @field_validator("notes", mode="before")
    @classmethod
    def coerce_notes(cls, v: Any) -> str:
        return _text(v)


class AnalysisResult(BaseModel):
    scores: list[ScoreEntry] = []
    signals: list[SignalEntry] = []
    new_relationships: list[RelationshipEntry] = []


# ---------------------------------------------------------------------------
# API: requests
# ---------------------------------------------------------------------------


class ScanRequest(BaseModel):
    trigger_type: str = "manual"


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    messages: list[ChatMessage]


class MarketDataRequest(BaseModel):
    tickers: list[str]
    endpoints: list[str] | None = None


# ---------------------------------------------------------------------------
# API: responses
# ---------------------------------------------------------------------------


class ScanResponse(BaseModel):
    scan_id: str
    status: str
    companies_scanned: int
    signals_found: int
    relationships_found: int


class ScanRunOut(BaseModel):
    id: str
    status: str
    trigger_type: str
    started_at: str
    completed_at: str | None = None
    companies_scanned: int | None = None
    signals_found: int | None = None
    relationships_found: int | None = None
    error_message: str | None = None


class ScoreOut(BaseModel):
    company_id: str
    ticker: str
    name: str
    bottleneck_score: float
    beneficiary_score: float
    breakdown: dict[str, Any] | None = None
    computed_at: str


class SignalOut(BaseModel):
    id: int
    company_id: str
    signal_type: str
    direction: str
    magnitude: float | None = None
    summary: str | None = None
    source: str | None = None
    as_of: str


class RelationshipOut(BaseModel):
    id: str
    from_company_id: str
    to_company_id: str
    rel_type: str
    confidence: float
    notes: str | None = None
    source: str | None = None
    last_seen: str


class StatsOut(BaseModel):
    companies: int
    scored: int
    signals: int
    relationships: int
    scan_runs: int
    latest_scan_status: str | None = None


class ImportResult(BaseModel):
    imported: int
    updated: int
