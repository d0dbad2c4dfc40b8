import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from serenata.config import get_settings, reload_settings

reload_settings()
from serenata.database import get_pool, close_pool
from serenata.modules.store.postgres import PostgresStore
from serenata.modules.whatsapp.webhook import router as whatsapp_router
from serenata.modules.music.callback import router as music_router
from serenata.admin.api import router as admin_router, whatsapp_api_router
from serenata.services import build_services


@asynccontextmanager
async def lifespan(app: FastAPI):
    pool = await get_pool()
    services = build_services(settings, PostgresStore(pool))
    app.state.services = services
    if settings.tick_interval_seconds > 0:
        services.engine.start()
    yield
    await services.engine.stop()
    await close_pool()


settings = get_settings()

app = FastAPI(
    title="Serenata",
    description="WhatsApp lead nurturing with personalized lyrics and songs",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(whatsapp_router, tags=["whatsapp"])
app.include_router(whatsapp_api_router, prefix="/api/whatsapp", tags=["whatsapp"])
app.include_router(music_router, prefix="/music", tags=["music"])
app.include_router(admin_router, prefix="/admin", tags=["admin"])


@app.get("/health")
async def health():
    return {"status": "ok", "environment": settings.environment}
