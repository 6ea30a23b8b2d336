from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agentkernel.config import settings
from agentkernel.db import init_db
from agentkernel.logging_config import configure_logging
from agentkernel.routers import sessions


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    configure_logging()
    settings.EVENT_DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    await init_db()
    yield
    # Shutdown
    await sessions.close_all_sessions()


app = FastAPI(
    title="agentkernel",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sessions.router)


@app.get("/health")
async def health_check():
    return {"status": "ok", "service": "agentkernel", "provider": settings.LLM_PROVIDER}
