"""
API tests for the ScanPipe application.

Runs the real application lifespan in process and drives it through
httpx's ASGI transport.
"""

import asyncio

import httpx
import pytest
import pytest_asyncio

from scanpipe.main import create_app

WALLET = "0xcafe"


@pytest_asyncio.fixture
async def client(test_settings, scanner):
    app = create_app(test_settings, scanner=scanner)
    async with app.router.lifespan_context(app):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            yield client
        scanner.gate.set()


async def wait_for_job(client, queue_name, job_id):
    for _ in range(200):
        response = await client.get(f"/api/v1/jobs/{queue_name}/{job_id}")
        body = response.json()
        if response.status_code == 200 and body["status"] in ("completed", "failed"):
            return body
        await asyncio.sleep(0.01)
    raise AssertionError(f"Job {job_id} did not finish")


class TestHealthEndpoints:
    """Test health endpoints."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        """Test liveness."""
        response = await client.get("/health/")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["environment"] == "test"

    @pytest.mark.asyncio
    async def test_ready_without_redis(self, client):
        """Test readiness with the durable tier disabled."""
        response = await client.get("/health/ready")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ready"
        assert body["checks"]["redis"] == {"status": "disabled"}
        assert "wallet-scan" in body["checks"]["queues"]["queues"]


class TestScanEndpoints:
    """Test scan endpoints."""

    @pytest.mark.asyncio
    async def test_scan_queued_then_cached(self, client, scanner):
        """Test 202 for a queued scan, then 200 from cache."""
        response = await client.post(f"/api/v1/scans/{WALLET}")

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "queued"
        assert body["queue_name"] == "wallet-scan"

        job = await wait_for_job(client, body["queue_name"], body["job_id"])
        assert job["status"] == "completed"
        assert job["progress"] == 100

        cached = await client.post(f"/api/v1/scans/{WALLET}")
        assert cached.status_code == 200
        assert cached.json()["status"] == "cached"
        assert len(cached.json()["data"]["positions"]) == 3
        assert scanner.calls == [WALLET]

    @pytest.mark.asyncio
    async def test_quick_scan(self, client):
        """Test the quick path returns data inline."""
        response = await client.post(
            f"/api/v1/scans/{WALLET}",
            params={"quick": "true", "chains": ["ethereum", "base"]},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "completed"
        assert body["data"]["chains"] == ["ethereum", "base"]
        assert body["job_id"] == f"quick-scan-{WALLET}-base,ethereum"

    @pytest.mark.asyncio
    async def test_invalid_wallet(self, client):
        """Test malformed wallets are rejected with 422."""
        response = await client.post("/api/v1/scans/0x%2A")

        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail["error"] == "validation_error"
        assert detail["details"]["field"] == "wallet"

    @pytest.mark.asyncio
    async def test_bulk_scan(self, client):
        """Test bulk submission."""
        response = await client.post(
            "/api/v1/scans/bulk", json={"wallets": ["0x1", "0x2"]}
        )

        assert response.status_code == 202
        body = response.json()
        assert body["queue_name"] == "bulk-scan"

        job = await wait_for_job(client, "bulk-scan", body["job_id"])
        assert len(job["result"]["jobs"]) == 2

    @pytest.mark.asyncio
    async def test_bulk_scan_empty(self, client):
        """Test an empty bulk request."""
        response = await client.post("/api/v1/scans/bulk", json={"wallets": []})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_refresh_and_analytics(self, client):
        """Test refresh and analytics submission."""
        refresh = await client.post(
            f"/api/v1/scans/{WALLET}/refresh", params={"position_id": "p-1"}
        )
        assert refresh.status_code == 202
        assert refresh.json()["queue_name"] == "position-refresh"

        analytics = await client.post(
            f"/api/v1/scans/{WALLET}/analytics", params={"timeframe": "7d"}
        )
        assert analytics.status_code == 202
        job = await wait_for_job(client, "portfolio-analytics", analytics.json()["job_id"])
        assert job["result"]["total_value_usd"] == 2250.0

    @pytest.mark.asyncio
    async def test_analytics_bad_timeframe(self, client):
        """Test malformed timeframes are rejected."""
        response = await client.post(
            f"/api/v1/scans/{WALLET}/analytics", params={"timeframe": "monthly"}
        )
        assert response.status_code == 422


class TestJobEndpoints:
    """Test job endpoints."""

    @pytest.mark.asyncio
    async def test_unknown_job(self, client):
        """Test 404 for unknown jobs."""
        response = await client.get("/api/v1/jobs/wallet-scan/missing")

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "job_not_found"

    @pytest.mark.asyncio
    async def test_stats(self, client):
        """Test registry statistics."""
        response = await client.get("/api/v1/jobs/stats")

        assert response.status_code == 200
        body = response.json()
        assert set(body["queues"]) == {
            "wallet-scan",
            "quick-scan",
            "bulk-scan",
            "position-refresh",
            "portfolio-analytics",
        }
        assert body["publisher"]["subscribers"] >= 1

    @pytest.mark.asyncio
    async def test_activity(self, client):
        """Test tracked activity after a job finishes."""
        await client.post(f"/api/v1/scans/{WALLET}", params={"quick": "true"})
        await asyncio.sleep(0.01)

        response = await client.get("/api/v1/jobs/activity")

        assert response.status_code == 200
        body = response.json()
        assert body["statistics"]["completed"] == 1
        assert body["history"][0]["status"] == "completed"

    @pytest.mark.asyncio
    async def test_stream_unknown_topic(self, client):
        """Test streams for unknown topics are rejected."""
        response = await client.get("/api/v1/jobs/stream", params={"topic": "nope"})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_stream_watched_job(self, client, scanner):
        """Test the stream delivers events until the watched job finishes."""
        scanner.gate.clear()
        submitted = await client.post(f"/api/v1/scans/{WALLET}")
        job_id = submitted.json()["job_id"]

        stream = asyncio.create_task(
            client.get(
                "/api/v1/jobs/stream",
                params={"topic": "wallet-scan", "job_id": job_id},
            )
        )
        await asyncio.sleep(0.05)
        scanner.gate.set()
        response = await asyncio.wait_for(stream, timeout=5)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert "event: job_progress" in response.text
        assert response.text.rstrip().splitlines()[-1].startswith("data: ")
        assert "event: job_completed" in response.text


class TestCacheEndpoints:
    """Test cache endpoints."""

    @pytest.mark.asyncio
    async def test_invalidate(self, client):
        """Test manual invalidation removes cached scans."""
        await client.post(f"/api/v1/scans/{WALLET}", params={"quick": "true"})

        response = await client.post(
            f"/api/v1/cache/invalidate/{WALLET}", params={"dimension": "scan"}
        )

        assert response.status_code == 200
        assert response.json()["removed"] >= 1
        rescan = await client.post(f"/api/v1/scans/{WALLET}")
        assert rescan.status_code == 202

    @pytest.mark.asyncio
    async def test_invalidate_records_reason(self, client):
        """Test free-form reasons show up in invalidation stats."""
        response = await client.post(
            f"/api/v1/cache/invalidate/{WALLET}", params={"reason": "deploy"}
        )
        assert response.status_code == 200

        stats = (await client.get("/api/v1/cache/stats")).json()
        assert stats["invalidation"]["by_reason"] == {"deploy": 1}

    @pytest.mark.asyncio
    async def test_invalidate_rejects_patterns(self, client):
        """Test glob characters in subjects are rejected."""
        response = await client.post("/api/v1/cache/invalidate/0x%2A")
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_stats(self, client):
        """Test cache statistics."""
        await client.post(f"/api/v1/scans/{WALLET}")

        response = await client.get("/api/v1/cache/stats", params={"namespace": "scans"})

        assert response.status_code == 200
        body = response.json()
        assert body["cache"]["lookups"] >= 1
        assert body["tiers"]["durable"] is None
