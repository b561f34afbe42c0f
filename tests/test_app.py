import asyncio

import httpx
import pytest
from conftest import T0, FakeExecutor

from agent_scheduler.config import Settings
from app import create_app


async def _started_app(tmp_path, clock, scheduler, executor=None):
    app = create_app(
        settings=Settings(data_dir=tmp_path / "data", workspace_dir=tmp_path, default_timezone="UTC"),
        executor=executor or FakeExecutor(),
        clock=clock,
        scheduler=scheduler,
    )
    # ASGITransport does not run lifespan events
    await app.state.engine.start()
    return app


def _client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_create_list_and_delete(tmp_path, clock, paused_scheduler):
    app = await _started_app(tmp_path, clock, paused_scheduler)
    async with _client(app) as client:
        health = await client.get("/healthz")
        assert health.json()["status"] == "ok"

        created = await client.post(
            "/v1/jobs",
            json={"prompt": "check CI", "owner_id": "chat-1", "schedule": {"kind": "every", "everyMs": 60_000}},
        )
        assert created.status_code == 201
        job = created.json()
        assert job["ownerId"] == "chat-1"
        assert job["workDir"] == str(tmp_path)
        assert job["state"]["nextRunAtMs"] == T0 + 60_000

        listed = await client.get("/v1/jobs", params={"owner_id": "chat-1"})
        assert [item["id"] for item in listed.json()["jobs"]] == [job["id"]]
        other = await client.get("/v1/jobs", params={"owner_id": "chat-2"})
        assert other.json()["jobs"] == []

        removed = await client.delete(f"/v1/owners/chat-1/jobs/{job['id'][:8]}")
        assert removed.status_code == 204
        missing = await client.delete(f"/v1/owners/chat-1/jobs/{job['id'][:8]}")
        assert missing.status_code == 404
        assert missing.json()["error"] == "job_unknown"

    assert (tmp_path / "data" / "scheduler" / "jobs.json").exists()
    await app.state.engine.stop()


@pytest.mark.asyncio
async def test_create_rejects_bad_payloads(tmp_path, clock, paused_scheduler):
    app = await _started_app(tmp_path, clock, paused_scheduler)
    async with _client(app) as client:
        not_json = await client.post("/v1/jobs", content=b"nope", headers={"Content-Type": "application/json"})
        assert not_json.status_code == 400

        bad_schedule = await client.post(
            "/v1/jobs",
            json={"prompt": "x", "owner_id": "chat-1", "schedule": {"kind": "hourly"}},
        )
        assert bad_schedule.status_code == 400
        assert bad_schedule.json()["error"] == "bad_request"

        bad_owner = await client.get("/v1/jobs", params={"owner_id": "../etc"})
        assert bad_owner.status_code == 400
    await app.state.engine.stop()


@pytest.mark.asyncio
async def test_run_enable_and_disable(tmp_path, clock, paused_scheduler):
    release = asyncio.Event()

    async def _wait(job):
        await release.wait()

    app = await _started_app(tmp_path, clock, paused_scheduler, FakeExecutor(on_execute=_wait))
    async with _client(app) as client:
        created = await client.post(
            "/v1/jobs",
            json={"prompt": "daily digest", "owner_id": "chat-1", "schedule": {"kind": "cron", "expr": "0 9 * * *"}},
        )
        job_id = created.json()["id"]
        assert created.json()["schedule"]["tz"] == "UTC"

        disabled = await client.post(f"/v1/owners/chat-1/jobs/{job_id}/disable")
        assert disabled.status_code == 200
        assert disabled.json()["enabled"] is False

        enabled = await client.post(f"/v1/owners/chat-1/jobs/{job_id}/enable")
        assert enabled.json()["enabled"] is True

        started = await client.post(f"/v1/owners/chat-1/jobs/{job_id}/run")
        assert started.status_code == 202
        assert started.json() == {"status": "started"}

        busy = await client.post(f"/v1/owners/chat-1/jobs/{job_id}/run")
        assert busy.status_code == 409
        assert busy.json() == {"error": "job_running", "job_id": job_id}

        unknown = await client.post(f"/v1/owners/chat-2/jobs/{job_id}/run")
        assert unknown.status_code == 404
        assert (await client.post("/v1/owners/chat-1/jobs/zzz/enable")).status_code == 404

        release.set()
        for _ in range(100):
            listed = await client.get("/v1/jobs", params={"owner_id": "chat-1"})
            if listed.json()["jobs"][0]["state"].get("lastStatus"):
                break
            await asyncio.sleep(0.01)
        assert listed.json()["jobs"][0]["state"]["lastStatus"] == "ok"
    await app.state.engine.stop()


@pytest.mark.asyncio
async def test_owner_timezone_endpoints(tmp_path, clock, paused_scheduler):
    app = await _started_app(tmp_path, clock, paused_scheduler)
    async with _client(app) as client:
        default = await client.get("/v1/owners/chat-1/timezone")
        assert default.json() == {"owner_id": "chat-1", "timezone": "UTC"}

        updated = await client.put("/v1/owners/chat-1/timezone", json={"timezone": "Europe/Berlin"})
        assert updated.status_code == 200
        assert updated.json()["timezone"] == "Europe/Berlin"

        invalid = await client.put("/v1/owners/chat-1/timezone", json={"timezone": "Mars/Base"})
        assert invalid.status_code == 400
        blank = await client.put("/v1/owners/chat-1/timezone", json={"timezone": " "})
        assert blank.status_code == 400

        assert (await client.get("/v1/owners/chat-1/timezone")).json()["timezone"] == "Europe/Berlin"
    await app.state.engine.stop()
