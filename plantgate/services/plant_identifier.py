"""
Plant identification provider client (Pl@ntNet v2).

The provider is a metered, rate-limited scoring oracle. This module only
translates its HTTP behaviour into the error taxonomy:

- 429                      -> ExternalServiceRateLimited (provider saturated)
- 404 / empty results      -> NoPlantIdentified
- 5xx, connection errors   -> ExternalServiceUnavailable
- timeouts                 -> IdentificationTimeout
- 401 / 403                -> ExternalServiceUnavailable (bad credentials)

Usage:
    identifier = PlantNetIdentifier(api_key="...")
    result = await identifier.identify(ImageHandle(content=jpeg_bytes))
"""

from typing import Protocol

import httpx
import structlog

from plantgate.config import IdentificationConfig
from plantgate.exceptions import (
    ConfigurationError,
    ExternalServiceRateLimited,
    ExternalServiceUnavailable,
    IdentificationTimeout,
    NoPlantIdentified,
)
from plantgate.models.identification import IdentificationResult, ImageHandle, SpeciesMatch

logger = structlog.get_logger(__name__)


class PlantIdentifier(Protocol):
    """Identification collaborator contract."""

    async def identify(self, image: ImageHandle) -> IdentificationResult:
        """Return a ranked species list for an image."""


class PlantNetIdentifier:
    """Calls the Pl@ntNet `identify/all` endpoint."""

    def __init__(self, api_key: str, config: IdentificationConfig | None = None):
        """
        Initialize the Pl@ntNet client.

        Args:
            api_key: Pl@ntNet API key.
            config:  Endpoint URL, timeout and result cap.

        Raises:
            ConfigurationError: If the API key is empty.
        """
        if not api_key:
            raise ConfigurationError("Pl@ntNet API key is required")
        self.api_key = api_key
        self.config = config or IdentificationConfig()
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.config.timeout_seconds))

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    def _parse_response(self, data: dict) -> IdentificationResult:
        """
        Parse a Pl@ntNet response into an IdentificationResult.

        Args:
            data: Decoded JSON body.

        Returns:
            Ranked results, capped at `max_results`.

        Raises:
            NoPlantIdentified: If the provider returned no candidates.
        """
        matches: list[SpeciesMatch] = []
        for item in data.get("results", []) or []:
            species = item.get("species", {}) or {}
            name = species.get("scientificNameWithoutAuthor") or species.get("scientificName")
            if not name:
                continue
            score = float(item.get("score", 0.0) or 0.0)
            matches.append(
                SpeciesMatch(
                    species_name=name,
                    common_names=list(species.get("commonNames", []) or []),
                    family=(species.get("family", {}) or {}).get("scientificNameWithoutAuthor"),
                    genus=(species.get("genus", {}) or {}).get("scientificNameWithoutAuthor"),
                    confidence_score=min(1.0, max(0.0, score)),
                )
            )

        if not matches:
            raise NoPlantIdentified("No plant identified. Please try a clearer photo.")

        matches.sort(key=lambda m: m.confidence_score, reverse=True)
        return IdentificationResult(
            results=matches[: self.config.max_results],
            best_match=data.get("bestMatch"),
            remaining_provider_requests=data.get("remainingIdentificationRequests"),
        )

    async def identify(self, image: ImageHandle) -> IdentificationResult:
        files = {"images": (image.filename, image.content, image.mime_type)}
        form = {"organs": self.config.organs}
        try:
            response = await self._client.post(
                self.config.api_url,
                params={"api-key": self.api_key},
                files=files,
                data=form,
            )
        except httpx.TimeoutException as exc:
            logger.warning("plantnet_timeout", timeout=self.config.timeout_seconds)
            raise IdentificationTimeout("Plant identification timed out") from exc
        except httpx.TransportError as exc:
            logger.warning("plantnet_transport_error", error=str(exc))
            raise ExternalServiceUnavailable("Plant identification service unreachable") from exc

        logger.info("plantnet_response", status_code=response.status_code)

        if response.status_code == 429:
            raise ExternalServiceRateLimited("Plant identification service is saturated")
        if response.status_code == 404:
            raise NoPlantIdentified("No plant identified. Please try a clearer photo.")
        if response.status_code in (401, 403):
            logger.error("plantnet_auth_failed", status_code=response.status_code)
            raise ExternalServiceUnavailable("Plant identification service rejected credentials")
        if response.status_code >= 400:
            raise ExternalServiceUnavailable(
                f"Plant identification failed with status {response.status_code}"
            )

        return self._parse_response(response.json())
