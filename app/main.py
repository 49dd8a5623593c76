from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from app.config import get_settings
from app.gateway import RealtimeGateway
from app.routers import jobs, provisioning, realtime_ws, tenants
from app.routing import SignalRouter
from app.services import CoreServices


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    services = await CoreServices.create(settings)
    gateway = RealtimeGateway(settings)
    await gateway.start()
    app.state.settings = settings
    app.state.services = services
    app.state.gateway = gateway
    app.state.signals = SignalRouter(services.connections, gateway.emit_to_room)
    try:
        yield
    finally:
        await gateway.stop()
        await services.close()


app = FastAPI(title="CRM Core", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/healthz")
async def healthz() -> dict:
    return {"ok": True}


@app.get("/readyz")
async def readyz(request: Request) -> dict:
    services: CoreServices = request.app.state.services
    return {
        "redis": await services.publisher.is_healthy(),
        "breakers": services.breakers.snapshot(),
        "tenantPools": len(services.connections.cached_organization_ids()),
    }


app.include_router(provisioning.router)
app.include_router(tenants.router)
app.include_router(jobs.router)
app.include_router(realtime_ws.router)
