from uuid import uuid4

from httpx import AsyncClient

from jobs_engine.v1.jobs.models import JobStatus
from tests.conftest import RecordingHandler


async def _submit(async_client: AsyncClient, **body) -> str:
    body.setdefault("type", "send-email")
    response = await async_client.post("/v1/jobs", json=body)
    assert response.status_code == 201
    return response.json()["data"]["jobId"]


class TestJobEndpoints:
    async def test_submit_job(self, async_client: AsyncClient, engine):
        response = await async_client.post(
            "/v1/jobs",
            json={
                "type": "send-email",
                "queue": "mail",
                "payload": {"to": "user@example.com"},
                "options": {"priority": 10, "maxRetries": 1, "delay": 0},
                "metadata": {"source": "signup"},
            },
        )

        assert response.status_code == 201
        body = response.json()
        assert body["ok"] is True
        assert body["data"]["queue"] == "mail"
        assert body["data"]["status"] == JobStatus.WAITING.value
        assert engine.broker.pending("mail") == 1

    async def test_submit_rejects_invalid_job(self, async_client: AsyncClient):
        response = await async_client.post(
            "/v1/jobs", json={"type": "  ", "options": {"priority": 5000}}
        )

        assert response.status_code == 422

    async def test_submit_rejects_timeout_beyond_lease(self, async_client: AsyncClient):
        response = await async_client.post(
            "/v1/jobs", json={"type": "slow", "options": {"timeout": 120000}}
        )

        assert response.status_code == 422
        body = response.json()
        assert body["ok"] is False
        assert body["error"]["code"] == 422
        assert body["error"]["details"]["timeout_ms"] == 120000

    async def test_get_job(self, async_client: AsyncClient):
        job_id = await _submit(async_client, payload={"to": "x"}, tags=["mail"])

        response = await async_client.get(f"/v1/jobs/{job_id}")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["job"]["id"] == job_id
        assert data["job"]["payload"] == {"to": "x"}
        assert data["job"]["tags"] == ["mail"]
        assert data["job"]["metadata"] == {}
        assert data["result"] is None
        assert data["failures"] == []

    async def test_get_unknown_job(self, async_client: AsyncClient):
        response = await async_client.get(f"/v1/jobs/{uuid4()}")

        assert response.status_code == 404
        body = response.json()
        assert body["ok"] is False
        assert body["error"]["message"] == "Job not found"

    async def test_list_jobs_with_filters(self, async_client: AsyncClient):
        await _submit(async_client)
        await _submit(async_client, type="report", queue="reports")

        everything = (await async_client.get("/v1/jobs")).json()["data"]
        reports = (
            await async_client.get("/v1/jobs", params={"queue": "reports"})
        ).json()["data"]
        waiting = (
            await async_client.get("/v1/jobs", params={"status": "waiting"})
        ).json()["data"]

        assert everything["total"] == 2
        assert [j["job_type"] for j in reports["jobs"]] == ["report"]
        assert waiting["total"] == 2

    async def test_list_rejects_unknown_status(self, async_client: AsyncClient):
        response = await async_client.get("/v1/jobs", params={"status": "sleeping"})

        assert response.status_code == 422

    async def test_cancel_job(self, async_client: AsyncClient):
        job_id = await _submit(async_client)

        response = await async_client.post(f"/v1/jobs/{job_id}/cancel")
        assert response.status_code == 200
        assert response.json()["data"]["status"] == JobStatus.CANCELLED.value

        again = await async_client.post(f"/v1/jobs/{job_id}/cancel")
        assert again.status_code == 422

    async def test_cancel_unknown_job(self, async_client: AsyncClient):
        response = await async_client.post(f"/v1/jobs/{uuid4()}/cancel")

        assert response.status_code == 404

    async def test_failed_jobs_and_retry(self, async_client: AsyncClient, engine):
        job_id = await _submit(async_client, type="no-processor")
        await engine.worker_pool().process_next("default")

        failed = (await async_client.get("/v1/jobs/failed")).json()["data"]
        assert [j["id"] for j in failed] == [job_id]

        response = await async_client.post(f"/v1/jobs/{job_id}/retry")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["retryOf"] == job_id
        assert data["status"] == JobStatus.WAITING.value

        again = await async_client.post(f"/v1/jobs/{job_id}/retry")
        assert again.status_code == 409
        assert (await async_client.get("/v1/jobs/failed")).json()["data"] == []

    async def test_retry_waiting_job_rejected(self, async_client: AsyncClient):
        job_id = await _submit(async_client)

        response = await async_client.post(f"/v1/jobs/{job_id}/retry")

        assert response.status_code == 422

    async def test_bulk_retry_by_type(self, async_client: AsyncClient, engine):
        first = await _submit(async_client, type="no-processor")
        second = await _submit(async_client, type="no-processor")
        pool = engine.worker_pool()
        await pool.process_next("default")
        await pool.process_next("default")

        response = await async_client.post("/v1/jobs/retry", json={"type": "no-processor"})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["count"] == 2
        assert set(data["retried"]) == {first, second}

        repeat = await async_client.post("/v1/jobs/retry", json={"type": "no-processor"})
        assert repeat.status_code == 200
        assert repeat.json()["data"]["count"] == 0

    async def test_bulk_retry_needs_selector(self, async_client: AsyncClient):
        response = await async_client.post("/v1/jobs/retry", json={})

        assert response.status_code == 422

    async def test_stats_overview(self, async_client: AsyncClient, engine, registry):
        registry.register("send-email", RecordingHandler())
        await _submit(async_client)
        await _submit(async_client)
        await engine.worker_pool().process_next("default")

        response = await async_client.get("/v1/jobs/stats/overview")

        assert response.status_code == 200
        stats = response.json()["data"]
        assert stats["total_jobs"] == 2
        assert stats["by_status"]["completed"] == 1
        assert stats["queue_depth"] == 1


class TestScheduleEndpoints:
    async def _create(self, async_client: AsyncClient, **body):
        payload = {"name": "nightly", "type": "report", "cron": "0 2 * * *", **body}
        return await async_client.post("/v1/schedules", json=payload)

    async def test_create_schedule(self, async_client: AsyncClient):
        response = await self._create(async_client, maxRuns=3, metadata={"team": "ops"})

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["name"] == "nightly"
        assert data["cron_expression"] == "0 2 * * *"
        assert data["max_runs"] == 3
        assert data["metadata"] == {"team": "ops"}
        assert data["next_run_at"].startswith("2026-01-30T02:00:00")

    async def test_create_invalid_cron(self, async_client: AsyncClient):
        response = await self._create(async_client, cron="61 * * * *")

        assert response.status_code == 422
        assert "Invalid cron expression" in response.json()["error"]["message"]

    async def test_duplicate_schedule(self, async_client: AsyncClient):
        await self._create(async_client)

        response = await self._create(async_client)

        assert response.status_code == 409

    async def test_list_and_get(self, async_client: AsyncClient):
        await self._create(async_client)
        await self._create(async_client, name="hourly", cron="0 * * * *", enabled=False)

        listed = (await async_client.get("/v1/schedules")).json()["data"]
        enabled = (
            await async_client.get("/v1/schedules", params={"enabled": "true"})
        ).json()["data"]
        one = await async_client.get("/v1/schedules/hourly")

        assert [s["name"] for s in listed] == ["hourly", "nightly"]
        assert [s["name"] for s in enabled] == ["nightly"]
        assert one.json()["data"]["enabled"] is False

    async def test_enable_disable_delete(self, async_client: AsyncClient):
        await self._create(async_client)

        disabled = await async_client.post("/v1/schedules/nightly/disable")
        assert disabled.json()["data"]["next_run_at"] is None

        enabled = await async_client.post("/v1/schedules/nightly/enable")
        assert enabled.json()["data"]["enabled"] is True

        deleted = await async_client.delete("/v1/schedules/nightly")
        assert deleted.status_code == 200
        missing = await async_client.get("/v1/schedules/nightly")
        assert missing.status_code == 404
