"""
Arrears API Application Factory
"""

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .agreements import router as agreements_router
from .alerts import router as alerts_router
from .installments import router as installments_router
from .mora import router as mora_router
from .promises import router as promises_router
from ..errors import ComputationError, ConflictError, EntityNotFoundError, ValidationError
from ..logging_config import get_logger

logger = get_logger("arrears.api")


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(
            status_code=422,
            content={"error": "validation_error", "detail": exc.message, "errors": exc.errors}
        )

    @app.exception_handler(ConflictError)
    async def conflict_error_handler(request: Request, exc: ConflictError):
        return JSONResponse(
            status_code=409,
            content={
                "error": "conflict",
                "detail": str(exc),
                "entity_id": exc.entity_id,
                "expected_version": exc.expected_version,
                "actual_version": exc.actual_version,
            }
        )

    @app.exception_handler(EntityNotFoundError)
    async def not_found_handler(request: Request, exc: EntityNotFoundError):
        return JSONResponse(status_code=404, content={"error": "not_found", "detail": str(exc)})

    @app.exception_handler(ComputationError)
    async def computation_error_handler(request: Request, exc: ComputationError):
        logger.error(f"Computation error on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=500,
            content={"error": "computation_error", "detail": exc.message, "entity_id": exc.entity_id}
        )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Arrears & Collections API",
        description="Late fee calculation and automated collections workflow",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _register_error_handlers(app)

    app.include_router(installments_router, prefix="/installments", tags=["Installments"])
    app.include_router(mora_router, prefix="/mora", tags=["Mora"])
    app.include_router(alerts_router, prefix="/alerts", tags=["Alerts"])
    app.include_router(promises_router, prefix="/promises", tags=["Promises"])
    app.include_router(agreements_router, prefix="/agreements", tags=["Agreements"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "arrears_api",
            "version": "1.0.0"
        }

    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Arrears & Collections API",
            "version": "1.0.0",
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "installments": "/installments",
                "mora": "/mora",
                "alerts": "/alerts",
                "promises": "/promises",
                "agreements": "/agreements",
            }
        }

    return app


app = create_app()


def run_server(host: str = "0.0.0.0", port: int = 8090, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "arrears_core.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
