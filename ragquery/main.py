from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ragquery.api import deps
from ragquery.api.routes import limits, models, query, sources, threads
from ragquery.config import settings
from ragquery.services import logger as log_service


@asynccontextmanager
async def lifespan(app: FastAPI):
    await deps.get_storage().init()
    # first refresh runs in the background; requests before it completes fall back to the default model
    registry = deps.get_registry()
    registry.start_background_refresh()
    log_service.log_event(event_type="startup", message=f"{settings.app_title} started")
    yield
    await registry.stop_background_refresh()


app = FastAPI(
    title=settings.app_title,
    description="Retrieval-augmented answers over rate-limited LLM and web-search providers",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(query.router)
app.include_router(models.router)
app.include_router(sources.router)
app.include_router(limits.router)
app.include_router(threads.router)


@app.get("/api/health")
async def health():
    registry = deps.get_registry()
    return {
        "status": "ok",
        "service": "ragquery",
        "models": len(registry.list_models()),
        "default_model": registry.default_model,
    }
