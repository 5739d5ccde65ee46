"""Tests for the HTTP control plane."""

from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from aiohttp import test_utils

from conftest import file_url, write_file
from filesync.endpoints.base import TransientBackendError
from filesync.endpoints.local import LocalEndpoint
from filesync.main import FileSyncApp


@pytest.fixture
def roots(tmp_path):
    src, dst = tmp_path / "src", tmp_path / "dst"
    src.mkdir()
    dst.mkdir()
    return src, dst


@pytest_asyncio.fixture
async def client(connector, roots):
    src, dst = roots
    connector.add_mapping(file_url(src), file_url(dst), name="docs")
    app = FileSyncApp(connector=connector)
    async with test_utils.TestClient(test_utils.TestServer(app.create_web_app())) as client:
        yield client


async def queue_one(client, roots):
    src, _ = roots
    write_file(src / "a.txt", b"abc", 1000)
    resp = await client.post("/sync/docs")
    body = await resp.json()
    return body["result"]["action_ids"][0]


class TestPlanningRoutes:
    """Test /sync endpoints."""

    @pytest.mark.asyncio
    async def test_sync_all(self, client, roots):
        resp = await client.post("/sync")

        assert resp.status == 200
        body = await resp.json()
        assert body["status"] == "ok"
        assert [r["mapping_name"] for r in body["results"]] == ["docs"]

    @pytest.mark.asyncio
    async def test_sync_mapping(self, client, roots):
        action_id = await queue_one(client, roots)

        resp = await client.get("/list_sync_cache")
        body = await resp.json()
        assert body["count"] == 1
        assert body["actions"][0]["id"] == action_id

    @pytest.mark.asyncio
    async def test_sync_unknown_mapping(self, client):
        resp = await client.post("/sync/nope")

        assert resp.status == 404
        body = await resp.json()
        assert body["status"] == "error"
        assert body["error"]["kind"] == "not_found"
        assert body["error"]["identities"] == ["nope"]

    @pytest.mark.asyncio
    async def test_sync_failed_plan(self, client, connector, tmp_path):
        connector.add_mapping(file_url(tmp_path / "absent"), file_url(tmp_path), name="broken")

        resp = await client.post("/sync/broken")

        assert resp.status == 502
        body = await resp.json()
        assert body["error"]["kind"] == "plan_failed"
        assert body["result"]["completed"] is False


class TestExecutionRoutes:
    """Test /proc endpoints."""

    @pytest.mark.asyncio
    async def test_proc(self, client, roots):
        action_id = await queue_one(client, roots)

        resp = await client.post("/proc", params={"id": action_id})

        assert resp.status == 200
        body = await resp.json()
        assert body["result"]["status"] == "success"
        assert (roots[1] / "a.txt").read_bytes() == b"abc"

    @pytest.mark.asyncio
    async def test_proc_transient_failure(self, client, roots):
        action_id = await queue_one(client, roots)

        with patch.object(LocalEndpoint, "write", AsyncMock(side_effect=TransientBackendError("timeout"))):
            resp = await client.post("/proc", params={"id": action_id})

        assert resp.status == 503
        body = await resp.json()
        assert body["error"]["kind"] == "transient"
        assert body["result"]["attempts"] == 1

    @pytest.mark.asyncio
    async def test_proc_requires_id(self, client):
        resp = await client.post("/proc")

        assert resp.status == 400
        assert (await resp.json())["error"]["kind"] == "invalid_request"

    @pytest.mark.asyncio
    async def test_proc_unknown_action(self, client):
        resp = await client.post("/proc", params={"id": "missing"})

        assert resp.status == 404

    @pytest.mark.asyncio
    async def test_proc_all(self, client, roots):
        await queue_one(client, roots)

        resp = await client.post("/proc_all", params={"mapping": "docs"})

        assert resp.status == 200
        report = (await resp.json())["report"]
        assert report["total"] == 1
        assert report["succeeded"] == 1


class TestQueueAndCacheRoutes:
    """Test queue and cache maintenance endpoints."""

    @pytest.mark.asyncio
    async def test_remove(self, client, roots):
        await queue_one(client, roots)
        url = file_url(roots[0] / "a.txt")

        resp = await client.delete("/remove", params={"url": url})
        assert resp.status == 200
        assert (await resp.json())["removed"] == 1

        resp = await client.delete("/remove", params={"url": url})
        assert resp.status == 404

    @pytest.mark.asyncio
    async def test_list_sync_cache_filters(self, client, roots):
        await queue_one(client, roots)

        resp = await client.get("/list_sync_cache", params={"status": "failed"})
        assert (await resp.json())["count"] == 0

        resp = await client.get("/list_sync_cache", params={"status": "bogus"})
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_delete_cache_entry(self, client, connector, roots):
        await queue_one(client, roots)
        record = connector.list_cache_records()[0]

        resp = await client.delete("/delete_cache_entry", params={"id": str(record.id)})
        assert resp.status == 200
        assert (await resp.json())["deleted"] == record.id

        resp = await client.delete("/delete_cache_entry", params={"id": str(record.id)})
        assert resp.status == 404

        resp = await client.delete("/delete_cache_entry", params={"id": "abc"})
        assert resp.status == 400


class TestHealthRoutes:
    """Test health and status endpoints."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/health")

        assert resp.status == 200
        health = await resp.json()
        assert health["status"] == "healthy"
        assert health["database"] is True
        assert health["mappings"] == 1
        assert "uptime_seconds" in health
        assert "process" in health

    @pytest.mark.asyncio
    async def test_status(self, client):
        resp = await client.get("/status")

        assert resp.status == 200
        status = await resp.json()
        assert status["application"]["name"] == "File Sync"
        assert status["config"] == {"loaded": False}
