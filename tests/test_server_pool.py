"""
Tests for the validation server pool registry.
"""

import random
from collections import Counter
from uuid import uuid4

import httpx
import pytest
from sqlalchemy import select

from app.db.models import AdminActivityLog
from app.exceptions import ServerNotFoundError
from app.models.api import ServerCreateRequest, ServerUpdateRequest
from app.models.domain import PoolServer, ServerStats
from app.services.server_pool import ServerPoolService, check_health, select_weighted


class TestSelectWeighted:
    def test_empty_pool(self):
        assert select_weighted([]) is None

    def test_single_server(self):
        server = PoolServer(server_id=uuid4(), url="http://a", weight=3)
        assert select_weighted([server]) is server

    def test_follows_weights(self):
        heavy = PoolServer(server_id=uuid4(), url="http://heavy", weight=9)
        light = PoolServer(server_id=uuid4(), url="http://light", weight=1)
        rng = random.Random(42)
        picks = Counter(select_weighted([heavy, light], rng).url for _ in range(2000))
        assert picks["http://heavy"] > picks["http://light"] * 4


class TestCheckHealth:
    @pytest.mark.asyncio
    async def test_healthy(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200, json={"ok": True})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            result = await check_health("http://checker/", client)

        assert result.is_healthy
        assert result.error is None
        assert seen == ["http://checker/health"]

    @pytest.mark.asyncio
    async def test_error_status(self):
        async with httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(503))
        ) as client:
            result = await check_health("http://checker", client)
        assert not result.is_healthy
        assert result.error == "HTTP 503"

    @pytest.mark.asyncio
    async def test_unreachable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            result = await check_health("http://checker", client)
        assert not result.is_healthy
        assert result.error


class TestServerPoolService:
    """Tests for ServerPoolService CRUD and health."""

    @pytest.mark.asyncio
    async def test_create_and_list_healthy(self, session, actor):
        service = ServerPoolService(session)
        server = await service.create(
            ServerCreateRequest(name="checker-1", url="http://checker-1/", weight=5), actor
        )

        assert server.url == "http://checker-1"
        healthy = await service.healthy_servers()
        assert [(s.url, s.weight) for s in healthy] == [("http://checker-1", 5)]

        actions = (await session.execute(select(AdminActivityLog.action))).scalars().all()
        assert actions == ["server_created"]

    @pytest.mark.asyncio
    async def test_inactive_or_unhealthy_excluded(self, session, actor):
        service = ServerPoolService(session)
        inactive = await service.create(
            ServerCreateRequest(name="a", url="http://a", isActive=False), actor
        )
        sick = await service.create(ServerCreateRequest(name="b", url="http://b"), actor)
        await service.set_health(sick.id, False, actor)

        assert await service.healthy_servers() == []
        assert len(await service.list_servers()) == 2
        assert inactive.is_active is False

    @pytest.mark.asyncio
    async def test_update(self, session, actor):
        service = ServerPoolService(session)
        server = await service.create(ServerCreateRequest(name="a", url="http://a"), actor)

        updated = await service.update(
            server.id, ServerUpdateRequest(url="http://b/", weight=7), actor
        )

        assert (updated.url, updated.weight, updated.name) == ("http://b", 7, "a")

    @pytest.mark.asyncio
    async def test_test_stores_check_outcome(self, session, actor):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        service = ServerPoolService(session, http_client=client)
        server = await service.create(ServerCreateRequest(name="a", url="http://a"), actor)

        result = await service.test(server.id, actor)

        assert not result.is_healthy
        assert (await service.get(server.id)).is_healthy is False
        assert (await service.get(server.id)).last_health_check is not None
        await client.aclose()

    @pytest.mark.asyncio
    async def test_delete(self, session, actor):
        service = ServerPoolService(session)
        server = await service.create(ServerCreateRequest(name="a", url="http://a"), actor)
        await service.delete(server.id, actor)
        with pytest.raises(ServerNotFoundError):
            await service.get(server.id)

    @pytest.mark.asyncio
    async def test_record_stats_running_average(self, session, actor):
        service = ServerPoolService(session)
        server = await service.create(ServerCreateRequest(name="a", url="http://a"), actor)

        await service.record_stats([ServerStats(server.id, 2, 2, 200)])
        await service.record_stats([ServerStats(server.id, 2, 1, 600)])

        refreshed = await service.get(server.id)
        assert refreshed.total_requests == 4
        assert refreshed.successful_requests == 3
        assert refreshed.avg_response_time_ms == 200
