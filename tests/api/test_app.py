"""App-level tests: health endpoint and request logging."""

import logging

import pytest
from httpx import AsyncClient


class TestApp:
    @pytest.mark.asyncio
    async def test_health(self, unauth_client: AsyncClient):
        resp = await unauth_client.get("/health")

        assert resp.status_code == 200
        assert resp.json() == {"status": "healthy"}

    @pytest.mark.asyncio
    async def test_cron_calls_are_logged(self, unauth_client: AsyncClient, caplog):
        with caplog.at_level(logging.INFO, logger="creditsync.main"):
            await unauth_client.post("/api/v1/cron/reconcile", headers={"X-Cron-Secret": "x"})

        assert any("/api/v1/cron/reconcile" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_successful_health_check_is_not_logged(
        self, unauth_client: AsyncClient, caplog
    ):
        with caplog.at_level(logging.INFO, logger="creditsync.main"):
            await unauth_client.get("/health")

        assert not [r for r in caplog.records if r.name == "creditsync.main"]
