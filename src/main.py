"""Main FastAPI application for the Port Allocation Service."""

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse

from src.api.routes import allocation_logs, allocations, health, ports
from src.api.routes.health import SERVICE_NAME, SERVICE_VERSION
from src.core.database import get_database
from src.core.settings import get_settings
from src.middleware.logging import LoggingMiddleware, configure_logging

# Initialize logging
configure_logging()

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    # Startup
    await get_database().connect()
    yield
    # Shutdown
    await get_database().disconnect()


app = FastAPI(
    title="Port Allocation Service",
    description="Allocation of provisioned backend instances to customer subscriptions",
    version=SERVICE_VERSION,
    lifespan=lifespan,
    docs_url="/docs" if not settings.is_production else None,
    redoc_url="/redoc" if not settings.is_production else None,
    openapi_url="/openapi.json" if not settings.is_production else None,
)

# Security middleware
app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=settings.allowed_hosts
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["*"],
)

app.add_middleware(LoggingMiddleware)


# Exception handlers
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with JSON:API format."""
    return JSONResponse(
        status_code=exc.status_code,
        headers=exc.headers,
        content={
            "errors": [{
                "status": str(exc.status_code),
                "code": exc.detail.get("code", "HTTP_ERROR") if isinstance(exc.detail, dict) else "HTTP_ERROR",
                "title": exc.detail.get("message", "HTTP Error") if isinstance(exc.detail, dict) else str(exc.detail),
                "detail": exc.detail.get("message", str(exc.detail)) if isinstance(exc.detail, dict) else str(exc.detail),
                "source": {"pointer": request.url.path}
            }]
        }
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle request validation errors with JSON:API format."""
    return JSONResponse(
        status_code=422,
        content={
            "errors": [
                {
                    "status": "422",
                    "code": "VALIDATION_ERROR",
                    "title": "Validation Error",
                    "detail": error.get("msg", "Invalid value"),
                    "source": {"pointer": "/" + "/".join(str(part) for part in error.get("loc", ()))}
                }
                for error in exc.errors()
            ]
        }
    )


@app.exception_handler(404)
async def not_found_handler(request: Request, exc):
    """Handle 404 errors with JSON:API format."""
    if isinstance(getattr(exc, "detail", None), dict):
        return await http_exception_handler(request, exc)
    return JSONResponse(
        status_code=404,
        content={
            "errors": [{
                "status": "404",
                "code": "RESOURCE_NOT_FOUND",
                "title": "Resource Not Found",
                "detail": "The requested resource was not found",
                "source": {"pointer": request.url.path}
            }]
        }
    )


@app.exception_handler(500)
async def internal_error_handler(request: Request, exc):
    """Handle 500 errors with JSON:API format."""
    return JSONResponse(
        status_code=500,
        content={
            "errors": [{
                "status": "500",
                "code": "INTERNAL_SERVER_ERROR",
                "title": "Internal Server Error",
                "detail": "An unexpected error occurred"
            }]
        }
    )


# Routes
app.include_router(health.router, prefix="", tags=["system"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "status": "running",
        "api": {
            "docs": "/docs" if not settings.is_production else None,
            "openapi": "/openapi.json" if not settings.is_production else None
        }
    }


# Main API routes
app.include_router(ports.router, prefix=f"{settings.api_v1_prefix}/ports", tags=["ports"])
app.include_router(allocations.router, prefix=f"{settings.api_v1_prefix}/allocations", tags=["allocations"])
app.include_router(
    allocation_logs.router,
    prefix=f"{settings.api_v1_prefix}/port-allocation-logs",
    tags=["port-allocation-logs"],
)


if __name__ == "__main__":
    uvicorn.run(
        "src.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_level=settings.log_level.lower(),
    )
