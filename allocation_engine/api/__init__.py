"""
Case Allocation API Application Factory
"""

from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .allocations import router as allocations_router
from .rules import router as rules_router
from .reallocations import router as reallocations_router
from .failure_analysis import router as failure_analysis_router
from ..exceptions import (
    AllocationError, BusinessRuleError, ConflictError, DataIntegrityError,
    NotFoundError, StorageError, ValidationError
)
from ..config import get_config
from ..logging_config import get_logger, setup_logging


logger = get_logger("allocation_engine.api")

ERROR_STATUS_CODES = {
    ValidationError: 400,
    NotFoundError: 404,
    ConflictError: 409,
    DataIntegrityError: 409,
    BusinessRuleError: 422,
    StorageError: 500,
    AllocationError: 400,
}


async def allocation_error_handler(request: Request, exc: AllocationError) -> JSONResponse:
    status_code = next(code for cls, code in ERROR_STATUS_CODES.items() if isinstance(exc, cls))
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "error_type": exc.error_type, "field_name": exc.field_name}
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Case Allocation Engine API",
        description="Allocation and reallocation of delinquent-loan collection cases",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(AllocationError, allocation_error_handler)

    # Include routers
    app.include_router(rules_router, prefix="/allocations/allocation-rules", tags=["Allocation Rules"])
    app.include_router(allocations_router, prefix="/allocations", tags=["Allocations"])
    app.include_router(reallocations_router, prefix="/reallocations", tags=["Reallocations"])
    app.include_router(failure_analysis_router, prefix="/failure-analysis", tags=["Failure Analysis"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "allocation_engine_api",
            "version": "1.0.0"
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Case Allocation Engine API",
            "version": "1.0.0",
            "description": "Allocation and reallocation of delinquent-loan collection cases",
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "allocations": "/allocations",
                "allocation-rules": "/allocations/allocation-rules",
                "reallocations": "/reallocations",
                "failure-analysis": "/failure-analysis",
            }
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    settings = get_config()
    setup_logging(settings.log_level, log_format=settings.log_format, log_file=settings.log_file)
    uvicorn.run(
        "allocation_engine.api:create_app",
        factory=True,
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=debug,
        log_level="info"
    )
