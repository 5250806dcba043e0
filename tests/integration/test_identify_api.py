"""Integration tests for the guarded identification endpoint."""

from plantgate.constants import GUEST_ID_HEADER
from plantgate.exceptions import (
    ExternalServiceRateLimited,
    ExternalServiceUnavailable,
    IdentificationTimeout,
    NoPlantIdentified,
)

GUEST_HEADERS = {GUEST_ID_HEADER: "device-1"}
UPLOAD = {"image": ("leaf.jpg", b"\xff\xd8fake-jpeg", "image/jpeg")}


def _identify(api):
    return api.client.post("/api/v1/identify", headers=GUEST_HEADERS, files=UPLOAD)


def _used(api) -> int:
    return api.client.get("/api/v1/quota", headers=GUEST_HEADERS).json()["used_count"]


class TestIdentifyEndpoint:
    def test_success_returns_ranked_species(self, api):
        response = _identify(api)

        assert response.status_code == 200
        data = response.json()
        assert data["plan_tier"] == "free"
        assert data["remaining"] == 1
        assert data["counted"] is True
        assert data["result"]["results"][0]["species_name"] == "Monstera deliciosa"
        assert _used(api) == 1

    def test_free_exhausted_returns_402(self, api):
        _identify(api)
        _identify(api)

        response = _identify(api)

        assert response.status_code == 402
        detail = response.json()["detail"]
        assert detail["code"] == "free_exhausted"
        assert detail["can_earn_bonus"] is True
        assert detail["resets_at"].startswith("2025-06-02T00:00:00")
        assert api.identifier.calls == 2

    def test_bonus_unlocks_another_scan(self, api):
        _identify(api)
        _identify(api)
        api.client.post("/api/v1/quota/bonus", headers=GUEST_HEADERS)

        response = _identify(api)

        assert response.status_code == 200
        assert _used(api) == 3

    def test_rate_limit_returns_429_and_consumes_nothing(self, api):
        api.identifier.error = ExternalServiceRateLimited("saturated")

        response = _identify(api)

        assert response.status_code == 429
        assert _used(api) == 0

    def test_provider_down_returns_503(self, api):
        api.identifier.error = ExternalServiceUnavailable("down")

        response = _identify(api)

        assert response.status_code == 503
        assert _used(api) == 0

    def test_timeout_returns_504(self, api):
        api.identifier.error = IdentificationTimeout("slow")

        response = _identify(api)

        assert response.status_code == 504
        assert _used(api) == 0

    def test_no_plant_returns_422(self, api):
        api.identifier.error = NoPlantIdentified("nothing")

        response = _identify(api)

        assert response.status_code == 422
        assert _used(api) == 0

    def test_storage_outage_returns_503_not_402(self, api, monkeypatch):
        async def offline(*_args, **_kwargs):
            raise ConnectionError("offline")

        monkeypatch.setattr(api.stack.store, "get_last_day", offline)

        response = _identify(api)

        assert response.status_code == 503
        assert api.identifier.calls == 0

    def test_empty_upload_rejected(self, api):
        response = api.client.post(
            "/api/v1/identify",
            headers=GUEST_HEADERS,
            files={"image": ("leaf.jpg", b"", "image/jpeg")},
        )

        assert response.status_code == 400

    def test_identifier_not_configured_returns_503(self, api):
        api.client.app.state.plant_identifier = None

        response = _identify(api)

        assert response.status_code == 503

    def test_uncounted_success_still_returns_result(self, api, monkeypatch):
        async def offline(*_args, **_kwargs):
            raise ConnectionError("offline")

        monkeypatch.setattr(api.stack.store, "increment_used", offline)

        response = _identify(api)

        assert response.status_code == 200
        data = response.json()
        assert data["counted"] is False
        assert data["remaining"] == 2
        assert data["result"]["results"][0]["species_name"] == "Monstera deliciosa"


class TestIdentifyHistory:
    def test_success_is_added_to_history(self, api):
        _identify(api)

        history = api.client.get("/api/v1/history", headers=GUEST_HEADERS).json()

        assert history["total_scans"] == 1
        assert history["items"][0]["species_name"] == "Monstera deliciosa"
        assert history["items"][0]["common_name"] == "Swiss cheese plant"

    def test_failed_identification_is_not_added(self, api):
        api.identifier.error = ExternalServiceUnavailable("down")

        _identify(api)

        history = api.client.get("/api/v1/history", headers=GUEST_HEADERS).json()
        assert history == {"total_scans": 0, "items": []}

    def test_history_outage_does_not_fail_identification(self, api, monkeypatch):
        async def offline(*_args, **_kwargs):
            raise ConnectionError("offline")

        monkeypatch.setattr(api.stack.history_repository, "add", offline)

        response = _identify(api)

        assert response.status_code == 200
        assert _used(api) == 1
