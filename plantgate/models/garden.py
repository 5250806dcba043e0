"""Garden collection models."""

from datetime import datetime

from pydantic import BaseModel, Field


class GardenPlant(BaseModel):
    """A plant the user explicitly added to their garden."""

    id: str
    owner_key: str
    species_name: str
    common_name: str | None = None
    confidence_score: float | None = Field(default=None, ge=0.0, le=1.0)
    added_at: datetime
