from fastapi import Depends, FastAPI, HTTPException
from dotenv import load_dotenv
from .config import settings
from .deps import Services, close_services, get_services, init_services
from .engine.routes import router as engine_router
from .engine.webhooks import router as engine_webhooks_router
from .artifacts.routes import router as artifacts_router

app = FastAPI(title="Opsflow Stage Engine", version="0.1.0")
load_dotenv()
app.include_router(engine_router)
app.include_router(engine_webhooks_router)
app.include_router(artifacts_router)

@app.on_event("startup")
async def _startup():
    await init_services()

@app.on_event("shutdown")
async def _shutdown():
    await close_services()

@app.get("/health")
async def health():
    return {"ok": True, "service": settings.service_name, "env": settings.env, "store": settings.store_backend}

@app.post("/worker/tick")
async def worker_tick(limit: int = 50, services: Services = Depends(get_services)):
    """Fire due automation timers once, inline. The runner does this on a loop."""
    if limit < 1 or limit > 500:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 500")

    result = await services.scheduler.tick(limit=limit)
    return {"ok": True, **result, "worker_id": settings.worker_id}
