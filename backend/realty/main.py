"""
Realty Sales Pipeline - FastAPI Application Entry Point
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from realty.api import health, pipeline
from realty.pipeline.repository import get_pipeline_store
from realty.pipeline.sql_repository import SqlPipelineStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    store = get_pipeline_store()
    if isinstance(store, SqlPipelineStore):
        from realty.db.database import create_tables
        await create_tables()

    logger.info(f"Realty pipeline starting up ({type(store).__name__})")
    yield
    logger.info("Realty pipeline shutting down")


app = FastAPI(
    title="Realty Sales Pipeline",
    description="Lead stage tracking, activity log and sales analytics API",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "http://localhost:3000").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(pipeline.router, prefix="/api/v1/pipeline", tags=["Sales Pipeline"])


def run():
    """Serve the API with uvicorn (HOST / PORT from the environment)."""
    import uvicorn
    uvicorn.run(
        app,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )


if __name__ == "__main__":
    run()
