from __future__ import annotations

import asyncio
import os
from collections.abc import Iterator
from pathlib import Path

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_crm_api.db"
os.environ["CATALOG_AUTO_CREATE_SCHEMA"] = "true"
os.environ["REDIS_URL"] = "redis://127.0.0.1:6399/0"

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app.circuit_breaker import BreakerState, CircuitBreaker, CircuitBreakerError
from app.deps import tenant_http_error
from app.errors import HostCapacityError, TenantNotActiveError
from app.main import app
from app.queue import EnqueueResult, JobInfo, job_id_for, job_kind
from app.security import create_access_token


DB_PATH = Path("./test_crm_api.db")
if DB_PATH.exists():
    DB_PATH.unlink()


class FakeJobQueue:
    def __init__(self) -> None:
        self.jobs: dict[str, JobInfo] = {}

    async def enqueue(self, queue_name: str, payload, opts=None) -> EnqueueResult:
        kind = job_kind(queue_name)
        model = payload if isinstance(payload, kind.payload_model) else kind.payload_model.model_validate(payload)
        job_id = job_id_for(queue_name, kind.key(model))
        current = self.jobs.get(job_id)
        accepted = current is None or current.state in ("completed", "failed")
        if accepted:
            self.jobs[job_id] = JobInfo(job_id=job_id, state="waiting", attempts=0)
        return EnqueueResult(queue=queue_name, job_id=job_id, accepted=accepted)

    async def get_job(self, queue_name: str, key: str) -> JobInfo | None:
        return self.jobs.get(job_id_for(queue_name, key))

    async def close(self) -> None:
        return None


class OfflineAdmin:
    async def database_exists(self, host, database_name: str) -> bool:
        return False


class FakeSignals:
    def __init__(self) -> None:
        self.relayed: list[tuple] = []

    async def find_agent_id(self, organization_id: str, user_id: str) -> str | None:
        if organization_id == "org-down":
            raise TenantNotActiveError(organization_id, "suspended")
        return f"agent-{user_id}"

    async def relay_signal(self, organization_id, user_id, chat_id, signal, action, *, agent_name=None) -> bool:
        self.relayed.append((organization_id, user_id, chat_id, signal, action, agent_name))
        return True


@pytest.fixture
def client() -> Iterator[TestClient]:
    with TestClient(app) as c:
        c.app.state.services.queue = FakeJobQueue()
        c.app.state.services.pipeline.admin = OfflineAdmin()
        c.app.state.signals = FakeSignals()
        yield c


def _auth(*organization_ids: str, user_id: str = "user-1") -> dict:
    token, _ttl = create_access_token(user_id, list(organization_ids))
    return {"Authorization": f"Bearer {token}"}


def _seed_tenant(client: TestClient, organization_id: str) -> str:
    services = client.app.state.services

    async def _seed() -> str:
        await services.catalog.add_host(name=f"pg-{organization_id}", host="db.internal")
        tenant = await services.catalog.create_tenant(
            organization_id=organization_id,
            slug=organization_id,
            name=organization_id.title(),
            database_name="org_" + organization_id.replace("-", ""),
            tier="shared",
            credentials_blob=services.cipher.seal_credentials("u", "p"),
        )
        await services.catalog.set_tenant_status(tenant.id, "active")
        return tenant.id

    return client.portal.call(_seed)


def test_healthz(client: TestClient) -> None:
    assert client.get("/healthz").json() == {"ok": True}


def test_readyz_reports_breakers_and_pools(client: TestClient) -> None:
    body = client.get("/readyz").json()
    assert body["redis"] is False
    assert body["breakers"]["whatsapp-gateway"]["state"] == "CLOSED"
    assert body["tenantPools"] == 0


def test_requests_without_a_token_are_rejected(client: TestClient) -> None:
    resp = client.post("/v1/provisioning", json={"organizationId": "org-a", "name": "Acme", "slug": "acme"})
    assert resp.status_code == 401


def test_provisioning_enqueue_coalesces_duplicates(client: TestClient) -> None:
    body = {"organizationId": "org-new", "name": "New Co", "slug": "new-co", "ownerUserId": "user-1"}

    first = client.post("/v1/provisioning", json=body, headers=_auth("org-new"))
    second = client.post("/v1/provisioning", json=body, headers=_auth("org-new"))

    assert first.status_code == 202
    assert first.json() == {"queue": "tenant-provisioning", "job_id": "tenant-provisioning:org-new", "accepted": True}
    assert second.json()["accepted"] is False

    status = client.get("/v1/provisioning/org-new", headers=_auth("org-new")).json()
    assert status["tenant"] is None
    assert status["job"] == {"job_id": "tenant-provisioning:org-new", "state": "waiting", "attempts": 0}

    queue = client.app.state.services.queue
    queue.jobs["tenant-provisioning:org-new"] = JobInfo(job_id="tenant-provisioning:org-new", state="failed", attempts=3)
    retry = client.post("/v1/provisioning", json=body, headers=_auth("org-new"))
    assert retry.json()["accepted"] is True


def test_provisioning_requires_membership_and_valid_slug(client: TestClient) -> None:
    foreign = client.post(
        "/v1/provisioning", json={"organizationId": "org-b", "name": "B", "slug": "b"}, headers=_auth("org-a")
    )
    assert foreign.status_code == 403

    invalid = client.post(
        "/v1/provisioning", json={"organizationId": "org-a", "name": "A", "slug": "Not A Slug"}, headers=_auth("org-a")
    )
    assert invalid.status_code == 422


def test_provisioning_status_unknown_org_is_404(client: TestClient) -> None:
    assert client.get("/v1/provisioning/org-ghost", headers=_auth("org-ghost")).status_code == 404


def test_active_tenant_is_not_reprovisioned(client: TestClient) -> None:
    _seed_tenant(client, "org-live")
    resp = client.post(
        "/v1/provisioning", json={"organizationId": "org-live", "name": "Live", "slug": "org-live"}, headers=_auth("org-live")
    )
    assert resp.status_code == 409
    assert resp.json()["detail"]["error"] == "tenant_already_active"


def test_tenant_read_health_and_status(client: TestClient) -> None:
    tenant_id = _seed_tenant(client, "org-acme")

    tenant = client.get(f"/v1/tenants/{tenant_id}", headers=_auth("org-acme"))
    assert tenant.status_code == 200
    assert tenant.json()["organization_id"] == "org-acme"
    assert tenant.json()["status"] == "active"

    assert client.get(f"/v1/tenants/{tenant_id}", headers=_auth("org-other")).status_code == 403

    health = client.get(f"/v1/tenants/{tenant_id}/health", headers=_auth("org-acme"))
    assert health.status_code == 200
    assert health.json() == {
        "status": "unhealthy",
        "can_connect": False,
        "database_exists": False,
        "schema_version": None,
    }

    suspended = client.post(f"/v1/tenants/{tenant_id}/status", json={"status": "suspended"}, headers=_auth("org-acme"))
    assert suspended.status_code == 200
    assert suspended.json()["status"] == "suspended"

    provisioning = client.get("/v1/provisioning/org-acme", headers=_auth("org-acme")).json()
    assert provisioning["tenant"]["status"] == "suspended"
    assert provisioning["job"] is None


def test_unknown_tenant_maps_to_404(client: TestClient) -> None:
    resp = client.get("/v1/tenants/does-not-exist/health", headers=_auth("org-acme"))
    assert resp.status_code == 404
    assert resp.json()["detail"]["error"] == "tenant_not_found"


def test_domain_errors_map_to_status_codes() -> None:
    assert tenant_http_error(HostCapacityError()).status_code == 507
    assert tenant_http_error(TenantNotActiveError("org-a", "suspended")).status_code == 503
    breaker = CircuitBreaker("whatsapp-gateway")
    assert tenant_http_error(CircuitBreakerError("whatsapp-gateway", BreakerState.OPEN, breaker.stats())).status_code == 503


def test_job_producer_endpoints(client: TestClient) -> None:
    cleanup = client.post("/v1/jobs/attachment-cleanup", json={"organizationId": "org-a"}, headers=_auth("org-a"))
    assert cleanup.status_code == 202
    assert cleanup.json()["job_id"] == "attachment-cleanup:org-a"

    sync = client.post(
        "/v1/jobs/channel-sync", json={"organizationId": "org-a", "channelId": "ch-1"}, headers=_auth("org-a")
    )
    assert sync.json()["job_id"] == "channel-sync:ch-1"

    logo = client.post(
        "/v1/jobs/cross-org-logo-sync",
        json={"organizationId": "org-a", "logoUrl": "https://cdn.example/a.png"},
        headers=_auth("org-a"),
    )
    assert logo.json() == {"queue": "cross-org-logo-sync", "job_id": "cross-org-logo-sync:org-a", "accepted": True}


def test_system_cleanup_requires_system_scope(client: TestClient) -> None:
    denied = client.post("/v1/jobs/attachment-cleanup", json={"organizationId": "system"}, headers=_auth("org-a"))
    assert denied.status_code == 403

    allowed = client.post(
        "/v1/jobs/attachment-cleanup", json={"organizationId": "system"}, headers=_auth("system", user_id="ops")
    )
    assert allowed.status_code == 202
    assert allowed.json()["job_id"] == "attachment-cleanup:system"


def test_tenant_migration_rollout_requires_system_scope(client: TestClient) -> None:
    single = client.post("/v1/jobs/tenant-migration", json={"organizationId": "org-a"}, headers=_auth("org-a"))
    assert single.status_code == 202
    assert single.json() == {"queue": "tenant-migration", "job_id": "tenant-migration:org-a", "accepted": True}

    denied = client.post("/v1/jobs/tenant-migration", json={"organizationId": "system"}, headers=_auth("org-a"))
    assert denied.status_code == 403

    rollout = client.post(
        "/v1/jobs/tenant-migration",
        json={"organizationId": "system", "continueOnError": False, "maxConcurrency": 2},
        headers=_auth("system", user_id="ops"),
    )
    assert rollout.status_code == 202
    assert rollout.json()["job_id"] == "tenant-migration:system"

    invalid = client.post(
        "/v1/jobs/tenant-migration",
        json={"organizationId": "system", "maxConcurrency": 0},
        headers=_auth("system", user_id="ops"),
    )
    assert invalid.status_code == 422


def test_health_sweep_covers_active_tenants_for_system_scope(client: TestClient) -> None:
    tenant_id = _seed_tenant(client, "org-sweep")

    assert client.get("/v1/tenants/health", headers=_auth("org-sweep")).status_code == 403

    sweep = client.get("/v1/tenants/health", headers=_auth("system", user_id="ops"))
    assert sweep.status_code == 200
    assert sweep.json()[tenant_id] == {
        "status": "unhealthy",
        "can_connect": False,
        "database_exists": False,
        "schema_version": None,
    }


def test_ws_rejects_missing_or_invalid_token(client: TestClient) -> None:
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/v1/realtime/ws") as ws:
            ws.receive_json()
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/v1/realtime/ws?token=garbage") as ws:
            ws.receive_json()


def test_ws_join_relay_and_room_delivery(client: TestClient) -> None:
    token, _ttl = create_access_token("user-1", ["org-a", "org-down"])
    gateway = client.app.state.gateway
    signals = client.app.state.signals

    with client.websocket_connect(f"/v1/realtime/ws?token={token}") as ws:
        assert ws.receive_json() == {"event": "ready", "data": {"userId": "user-1"}}

        ws.send_json({"event": "join:organization", "data": {"organizationId": "org-a"}})
        assert ws.receive_json() == {"event": "joined", "data": {"organizationId": "org-a", "agentId": "agent-user-1"}}
        assert gateway.room_size("org:org-a") == 1
        assert gateway.room_size("agent:agent-user-1") == 1

        ws.send_json({"event": "join:organization", "data": {"organizationId": "org-z"}})
        assert ws.receive_json()["data"]["error"] == "organization_forbidden"

        ws.send_json({"event": "typing:start", "data": {"chatId": "chat-1", "agentName": "Ada"}})
        ws.send_json({"event": "recording:stop", "data": {"chatId": "chat-1", "organizationId": "org-a"}})
        ws.send_json({"event": "typing:start", "data": {"organizationId": "org-a"}})
        ws.send_json({"event": "presence:ping"})
        assert ws.receive_json()["data"]["error"] == "unknown_event"
        assert signals.relayed == [
            ("org-a", "user-1", "chat-1", "typing", "start", "Ada"),
            ("org-a", "user-1", "chat-1", "recording", "stop", None),
        ]

        ws.send_json({"event": "join:organization", "data": {"organizationId": "org-down"}})
        assert ws.receive_json() == {"event": "joined", "data": {"organizationId": "org-down", "agentId": None}}
        assert gateway.room_size("org:org-down") == 1

        delivered = asyncio.run(gateway.emit_to_room("org:org-a", "chat:updated", {"chatId": "chat-1"}))
        assert delivered == 1
        assert ws.receive_json() == {"event": "chat:updated", "data": {"chatId": "chat-1"}}

        ws.send_json({"event": "leave:organization", "data": {"organizationId": "org-a"}})
        assert ws.receive_json() == {"event": "left", "data": {"organizationId": "org-a"}}
        assert gateway.room_size("org:org-a") == 0
        assert gateway.room_size("agent:agent-user-1") == 0
