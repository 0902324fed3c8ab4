"""Health check and system endpoints."""

import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.database import dialect_name, get_db_session
from src.core.settings import get_settings
from src.models.port import Port
from src.schemas.base import HealthCheckResponse
from src.services.events import get_event_publisher

router = APIRouter()
settings = get_settings()

SERVICE_NAME = "port-allocation-service"
SERVICE_VERSION = "1.0.0"


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(session: AsyncSession = Depends(get_db_session)):
    """
    Service health check endpoint.

    Checks the health of the service and its dependencies:
    - Database connectivity
    - Event publishing system
    """
    health_data = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc),
        "version": SERVICE_VERSION,
        "environment": settings.environment,
        "dependencies": {}
    }

    overall_status = "healthy"

    # Check database connectivity
    try:
        started = time.perf_counter()
        result = await session.execute(text("SELECT 1 as health_check"))
        row = result.fetchone()
        if row and row[0] == 1:
            health_data["dependencies"]["database"] = {
                "status": "healthy",
                "response_time_ms": round((time.perf_counter() - started) * 1000, 2),
                "details": "Connection successful"
            }
        else:
            health_data["dependencies"]["database"] = {
                "status": "unhealthy",
                "details": "Unexpected database response"
            }
            overall_status = "unhealthy"
    except SQLAlchemyError as e:
        health_data["dependencies"]["database"] = {
            "status": "unhealthy",
            "error": str(e),
            "details": "Database connection failed"
        }
        overall_status = "unhealthy"

    # Check event publishing system
    event_publisher = get_event_publisher()
    if event_publisher.event_bus_type == "sqs":
        if event_publisher.sqs_client and event_publisher.queue_url:
            health_data["dependencies"]["events"] = {
                "status": "healthy",
                "type": "sqs",
                "details": "SQS client initialized"
            }
        else:
            health_data["dependencies"]["events"] = {
                "status": "degraded",
                "type": "sqs",
                "details": "SQS not properly configured"
            }
            if overall_status == "healthy":
                overall_status = "degraded"
    else:
        health_data["dependencies"]["events"] = {
            "status": "healthy",
            "type": "mock",
            "details": "Mock event publisher active"
        }

    health_data["status"] = overall_status

    if overall_status == "unhealthy":
        raise HTTPException(status_code=503, detail=health_data)

    return HealthCheckResponse(**health_data)


@router.get("/health/database")
async def database_health(session: AsyncSession = Depends(get_db_session)):
    """Detailed database health check, including the port pool size by status."""
    try:
        await session.execute(text("SELECT 1"))
        result = await session.execute(
            select(Port.status, func.count(Port.id)).group_by(Port.status)
        )
        pool = {status: count for status, count in result.all()}

        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "details": {
                "connectivity": "ok",
                "dialect": dialect_name(session),
                "port_pool": pool,
            }
        }
    except SQLAlchemyError as e:
        raise HTTPException(
            status_code=503,
            detail={
                "status": "unhealthy",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "error": str(e)
            }
        )


@router.get("/version")
async def version_info():
    """Get service version information."""
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "environment": settings.environment,
        "api_version": "v1",
    }
