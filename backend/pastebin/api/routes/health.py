from fastapi import APIRouter, Request

from pastebin.services.store import ping_store

router = APIRouter(tags=["health"])


@router.get("/healthz")
async def healthz(request: Request):
    store_state = await ping_store(request.app.state.store)
    return {"ok": True, "service": request.app.state.settings.app_name, "store": store_state}
