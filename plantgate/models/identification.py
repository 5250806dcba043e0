"""Models exchanged with the plant identification provider."""

from pydantic import BaseModel, Field


class ImageHandle(BaseModel):
    """Opaque image supplied by the capture layer."""

    content: bytes = Field(repr=False)
    mime_type: str = "image/jpeg"
    filename: str = "plant.jpg"


class SpeciesMatch(BaseModel):
    """One ranked candidate species."""

    species_name: str
    common_names: list[str] = Field(default_factory=list)
    family: str | None = None
    genus: str | None = None
    confidence_score: float = Field(ge=0.0, le=1.0)


class IdentificationResult(BaseModel):
    """Ranked species list, best match first."""

    results: list[SpeciesMatch]
    best_match: str | None = None
    remaining_provider_requests: int | None = None

    @property
    def top(self) -> SpeciesMatch | None:
        return self.results[0] if self.results else None
