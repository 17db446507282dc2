import time
from fastapi import FastAPI, Depends, HTTPException, Header
from fastapi.responses import PlainTextResponse
from typing import Optional
from .coordinator import SyncCoordinator
from .config import settings

app = FastAPI(title="PlayOn Sync")
coordinator: Optional[SyncCoordinator] = None

def get_token(x_token: Optional[str] = Header(None, alias="X-Token")):
    if settings.HTTP_SERVER_TOKEN and x_token != settings.HTTP_SERVER_TOKEN:
        raise HTTPException(status_code=401, detail="Invalid token")

def require_coordinator() -> SyncCoordinator:
    if not coordinator:
        raise HTTPException(status_code=503, detail="Not ready")
    return coordinator

@app.get("/healthz")
def healthz():
    if not coordinator:
        return {"status": "starting"}

    # Pending work that has not drained for several intervals while online
    last_drain = coordinator.last_drain_at
    if (
        len(coordinator.queue) > 0
        and coordinator.connectivity.is_online
        and last_drain
        and time.time() - last_drain > (coordinator.interval_seconds * 3 + 60)
    ):
        return {"status": "lagging", "last_drain_age": time.time() - last_drain}

    return {"status": "ok"}

@app.get("/status", dependencies=[Depends(get_token)])
def status():
    if not coordinator:
        return {"status": "not_ready"}

    return {
        **coordinator.status(),
        "config": {
            "interval": coordinator.interval_seconds,
            "item_delay": coordinator.item_delay_seconds,
            "dry_run": settings.DRY_RUN
        }
    }

@app.get("/entries/{entry_id}", dependencies=[Depends(get_token)])
def get_entry(entry_id: str):
    entry = require_coordinator().store.get(entry_id)
    if not entry:
        raise HTTPException(status_code=404, detail="Entry not found")
    return entry.model_dump(mode="json")

@app.post("/sync", dependencies=[Depends(get_token)])
async def trigger_sync():
    result = await require_coordinator().drain()
    if result is None:
        return {"status": "skipped"}
    return {"status": "done", **result.model_dump()}

@app.get("/metrics", response_class=PlainTextResponse)
def metrics():
    # Simple prometheus-style text format
    if not coordinator:
        return ""

    s = coordinator.status()
    lines = [
        f'playon_sync_queue_length {s["queue_length"]}',
        f'playon_sync_entries {s["entries"]}',
        f'playon_sync_unsynced_entries {s["unsynced"]}',
        f'playon_sync_error_entries {s["errors"]}',
        f'playon_sync_online {int(s["online"])}',
        f'playon_sync_last_drain_timestamp {s["last_drain_at"]}'
    ]
    return "\n".join(lines)
