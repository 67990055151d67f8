from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from runengine.api.routes_health import router as health_router
from runengine.api.routes_sessions import router as sessions_router
from runengine.api.routes_ws import router as ws_router
from runengine.api.routes_runs import router as runs_router

from runengine.core.config import get_settings
from runengine.core.logging import configure_logging
from runengine.services.orchestrator import orchestrator_manager


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    orchestrator_manager.start()

    yield

    await orchestrator_manager.stop()


app = FastAPI(title="Agent Run Engine", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health_router)
app.include_router(sessions_router)
app.include_router(ws_router)
app.include_router(runs_router)
