"""Scan history models."""

from datetime import datetime

from pydantic import BaseModel, Field


class ScanRecord(BaseModel):
    """One successful identification, as shown in the history tab."""

    id: str
    owner_key: str
    species_name: str
    common_name: str | None = None
    family: str | None = None
    confidence_score: float | None = Field(default=None, ge=0.0, le=1.0)
    scanned_at: datetime


class ScanHistory(BaseModel):
    """Recent scans, newest first, plus the lifetime scan count."""

    total_scans: int = Field(ge=0)
    items: list[ScanRecord]
