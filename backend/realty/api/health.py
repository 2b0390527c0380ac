"""
Health Check Endpoints
"""

from fastapi import APIRouter

from realty.pipeline.repository import get_pipeline_store

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint for Docker/Kubernetes"""
    return {
        "status": "healthy",
        "service": "realty-pipeline",
        "store": type(get_pipeline_store()).__name__,
    }
