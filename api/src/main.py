from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from api.src.config import get_settings
from api.src.db.database import init_db
from api.src.routes import health_router, pipelines_router, webhooks_router

settings = get_settings()

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    print("🚀 Starting RelayCI API")
    if settings.create_tables:
        await init_db()
    yield
    # Shutdown
    print("👋 Shutting down RelayCI API")

app = FastAPI(
    title="RelayCI",
    description="Build and release pipeline orchestrator",
    version="0.1.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health_router)
app.include_router(pipelines_router, prefix="/api")
app.include_router(webhooks_router, prefix="/api")

@app.get("/")
async def root():
    return {
        "name": "RelayCI",
        "version": "0.1.0",
        "docs": "/docs"
    }

def run():
    """Serve the API with uvicorn."""
    import uvicorn

    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
