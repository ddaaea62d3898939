from fastapi import FastAPI, HTTPException
from pydantic import BaseModel
from typing import Any, Dict, List, Optional
import os
import time
import logging

from . import runtime
from .auth_session import AuthSessionController, create_controller
from .config import get_settings
from .logging_setup import configure_logging
from .redis_client import close_redis
from .shared_store import SharedStoreUnavailable

configure_logging()
logger = logging.getLogger("session_sync.app")

app = FastAPI(title="session-sync")

START_TIME = time.time()
VERSION = os.getenv("SERVICE_VERSION", "0.1.0")

settings = get_settings()
logger.info("service_start version=%s storage=%s namespace=%s", VERSION, settings.storage_backend, settings.namespace)
logger.info("redis_mode mode=%s host=%s port=%s tls=%s", "local" if settings.use_local_redis else "cloud", settings.redis_host, settings.redis_port, settings.redis_tls)


class SyncRequest(BaseModel):
    health_check: bool = False


class SyncResponse(BaseModel):
    ok: bool
    status: str
    last_sync: Optional[str] = None
    tab_count: int = 0
    healthy: Optional[bool] = None


class TabsResponse(BaseModel):
    tab_id: str
    active_tabs: List[str]
    tab_count: int
    is_multi_tab: bool


def _controller() -> AuthSessionController:
    if runtime.controller is None:
        raise HTTPException(status_code=503, detail={"ok": False, "error": "controller_not_started"})
    return runtime.controller


@app.on_event("startup")
async def on_startup():
    try:
        runtime.controller = create_controller(settings, user_agent=f"session-sync/{VERSION}")
        await runtime.controller.initialize()
        logger.info("observer_tab status=started tab_id=%s", runtime.controller.current_tab_id)
    except Exception as e:
        runtime.controller = None
        logger.error("observer_tab status=error error=%s", repr(e))


@app.on_event("shutdown")
async def on_shutdown():
    controller, runtime.controller = runtime.controller, None
    try:
        if controller:
            await controller.dispose()
            await controller.api.aclose()
            await controller.storage.store.close()
            logger.info("observer_tab status=stopped")
    except Exception as e:
        logger.error("observer_tab_stop status=error error=%s", repr(e))
    if settings.storage_backend == "redis":
        await close_redis()


@app.get("/healthz")
async def healthz():
    store_status = "disabled"
    controller = runtime.controller
    if controller:
        try:
            await controller.storage.store.ping()
            store_status = "ok"
        except SharedStoreUnavailable as e:
            logger.error("store_ping status=error error=%s", repr(e))
            store_status = "error"
    return {
        "status": "ok",
        "version": VERSION,
        "storage": settings.storage_backend,
        "store": store_status,
        "tab_id": controller.current_tab_id if controller else None,
        "tab_count": controller.tab_count if controller else 0,
        "uptime_s": int(time.time() - START_TIME),
    }


@app.get("/version")
def version():
    return {"version": VERSION}


@app.get("/readyz")
async def readyz():
    controller = _controller()
    try:
        await controller.storage.store.ping()
        return {"ok": True}
    except SharedStoreUnavailable:
        raise HTTPException(status_code=503, detail={"ok": False, "error": "store_unavailable"})


@app.get("/session/health")
async def session_health() -> Dict[str, Any]:
    return _controller().get_session_health().to_dict()


@app.get("/session/tabs", response_model=TabsResponse)
async def session_tabs():
    controller = _controller()
    tabs = await controller.update_active_tabs_list()
    return TabsResponse(
        tab_id=controller.current_tab_id,
        active_tabs=tabs,
        tab_count=controller.tab_count,
        is_multi_tab=controller.is_multi_tab,
    )


@app.post("/session/sync", response_model=SyncResponse)
async def session_sync(req: SyncRequest):
    controller = _controller()
    await controller.sync_with_cross_tab_manager()
    healthy = await controller.perform_health_check() if req.health_check else None
    last_sync = controller.last_cross_tab_sync
    return SyncResponse(
        ok=True,
        status=controller.session_health_status.value,
        last_sync=last_sync.isoformat() if last_sync else None,
        tab_count=controller.tab_count,
        healthy=healthy,
    )
