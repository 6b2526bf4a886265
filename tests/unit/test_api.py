"""Unit tests for the HTTP API."""

import pytest
from unittest.mock import AsyncMock, patch
from aiohttp import test_utils

from volumania.api import create_app
from volumania.errors import ClusterUnreachable

GI = 1024 ** 3


def api_client(engine):
    return test_utils.TestClient(test_utils.TestServer(create_app(engine)))


class TestVolumeRoutes:
    """Tests for the PVC listing routes."""

    @pytest.mark.asyncio
    async def test_health(self, engine):
        """Test the health check."""
        async with api_client(engine) as client:
            resp = await client.get("/api/health")
            assert resp.status == 200
            body = await resp.json()
            assert body["status"] == "starting"
            assert body["timestamp"].endswith("Z")

            await engine.start()
            body = await (await client.get("/api/health")).json()
            assert body["status"] == "healthy"
            await engine.stop()

    @pytest.mark.asyncio
    async def test_list_pvcs(self, engine, cluster, sampler):
        """Test listing PVCs with sampled usage."""
        cluster.add_volume("default", "data", "50Gi")
        cluster.add_volume("default", "logs", "10Gi")
        sampler.set_usage("default", "data", 25 * GI, 50 * GI)

        async with api_client(engine) as client:
            resp = await client.get("/api/pvcs")
            assert resp.status == 200
            body = await resp.json()

        assert [v["name"] for v in body] == ["data", "logs"]
        assert body[0]["size"] == "50Gi"
        assert body[0]["usagePercent"] == 50.0
        assert body[1]["usedBytes"] == 0

    @pytest.mark.asyncio
    async def test_get_pvc(self, engine, cluster):
        """Test fetching one PVC."""
        cluster.add_volume("default", "data", "50Gi")

        async with api_client(engine) as client:
            resp = await client.get("/api/pvcs/default/data")
            assert resp.status == 200
            assert (await resp.json())["id"] == "default/data"

            resp = await client.get("/api/pvcs/default/missing")
            assert resp.status == 404

    @pytest.mark.asyncio
    async def test_cluster_unreachable(self, engine, cluster):
        """Test that an unreachable cluster is a 503."""
        cluster.unreachable = True

        async with api_client(engine) as client:
            resp = await client.get("/api/pvcs")
            assert resp.status == 503
            assert "error" in await resp.json()


class TestAutoScalerRoutes:
    """Tests for the autoscaler routes."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, engine, cluster, policy_request):
        """Test creating, listing and fetching a policy."""
        cluster.add_volume("default", "data", "50Gi")

        async with api_client(engine) as client:
            resp = await client.post("/api/autoscalers", json=policy_request())
            assert resp.status == 201
            body = await resp.json()
            assert body["success"] is True
            created = body["autoScaler"]
            assert created["pvcName"] == "data"
            assert created["status"] == "Active"

            resp = await client.get("/api/autoscalers")
            assert [p["id"] for p in await resp.json()] == [created["id"]]

            resp = await client.get(f"/api/autoscalers/{created['id']}")
            assert resp.status == 200
            assert (await resp.json())["maxSize"] == "100Gi"

            resp = await client.get("/api/autoscalers/missing")
            assert resp.status == 404

    @pytest.mark.asyncio
    async def test_create_errors(self, engine, cluster, policy_request):
        """Test error status codes for bad creation requests."""
        async with api_client(engine) as client:
            resp = await client.post("/api/autoscalers", json=policy_request())
            assert resp.status == 404

            cluster.add_volume("default", "data", "50Gi")
            resp = await client.post(
                "/api/autoscalers", json=policy_request(checkIntervalSeconds=1)
            )
            assert resp.status == 400
            assert "details" in await resp.json()

            resp = await client.post("/api/autoscalers", json=policy_request(stepSize="x"))
            assert resp.status == 400

            resp = await client.post("/api/autoscalers", data="not json")
            assert resp.status == 400

            resp = await client.post("/api/autoscalers", json=policy_request())
            assert resp.status == 201
            resp = await client.post("/api/autoscalers", json=policy_request(name="again"))
            assert resp.status == 409

    @pytest.mark.asyncio
    async def test_enable_disable(self, engine, cluster, policy_request):
        """Test PATCH with an enabled flag."""
        cluster.add_volume("default", "data", "50Gi")
        policy = await engine.create_policy(policy_request())

        async with api_client(engine) as client:
            resp = await client.patch(f"/api/autoscalers/{policy.id}", json={"enabled": False})
            assert resp.status == 200
            assert (await resp.json())["status"] == "Inactive"

            resp = await client.patch(f"/api/autoscalers/{policy.id}", json={"enabled": "no"})
            assert resp.status == 400

            resp = await client.patch("/api/autoscalers/missing", json={"enabled": True})
            assert resp.status == 404

    @pytest.mark.asyncio
    async def test_delete(self, engine, cluster, policy_request):
        """Test deleting a policy."""
        cluster.add_volume("default", "data", "50Gi")
        policy = await engine.create_policy(policy_request())

        async with api_client(engine) as client:
            resp = await client.delete(f"/api/autoscalers/{policy.id}")
            assert resp.status == 200
            assert (await resp.json()) == {"success": True}

            resp = await client.delete(f"/api/autoscalers/{policy.id}")
            assert resp.status == 404

    @pytest.mark.asyncio
    async def test_unexpected_error(self, engine):
        """Test that unexpected errors are a 500."""
        with patch.object(engine, "list_policies", AsyncMock(side_effect=RuntimeError("bug"))):
            async with api_client(engine) as client:
                resp = await client.get("/api/autoscalers")
                assert resp.status == 500

    @pytest.mark.asyncio
    async def test_degraded_listing(self, engine, cluster, policy_request):
        """Test listing while the cluster is unreachable."""
        cluster.add_volume("default", "data", "50Gi")
        await engine.create_policy(policy_request())
        cluster.unreachable = True

        async with api_client(engine) as client:
            resp = await client.get("/api/autoscalers")
            assert resp.status == 200
            assert [p["status"] for p in await resp.json()] == ["Unknown"]

    @pytest.mark.asyncio
    async def test_create_with_cluster_down(self, engine, cluster, policy_request):
        """Test that creation needs the target PVC to be readable."""
        cluster.add_volume("default", "data", "50Gi")

        with patch.object(
            cluster, "read_volume", AsyncMock(side_effect=ClusterUnreachable("down"))
        ):
            async with api_client(engine) as client:
                resp = await client.post("/api/autoscalers", json=policy_request())
                assert resp.status == 503
