import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from machinegate import __version__
from machinegate.core.config import get_settings
from machinegate.core.errors import GateError
from machinegate.core.logger import configure_from_settings
from machinegate.core.policy import RuleCache
from machinegate.api.routers import approvals, permissions, policy_rules, qc
from machinegate.api.schemas.common import ErrorResponse

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_from_settings(settings)
    logger.info(f"{settings.app_name} {__version__} starting")
    yield


app = FastAPI(
    lifespan=lifespan,
    title=settings.app_name,
    description="Policy evaluation and approval workflows for machine records",
    version=__version__,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.debug else settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# One cache per process, shared by every request's policy engine
app.state.rule_cache = RuleCache(ttl_seconds=settings.rule_cache_ttl_seconds)


@app.exception_handler(GateError)
async def gate_error_handler(request: Request, exc: GateError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc!r}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}")
    return JSONResponse(status_code=exc.status_code, content=ErrorResponse(**exc.to_dict()).model_dump())


# Include routers
app.include_router(permissions.router, prefix="/api")
app.include_router(policy_rules.router, prefix="/api")
app.include_router(approvals.router, prefix="/api")
app.include_router(qc.entries_router, prefix="/api")
app.include_router(qc.approvals_router, prefix="/api")


@app.get("/health")
async def health_check():
    return {"status": "healthy", "version": __version__}


@app.get("/")
async def root():
    return {
        "name": settings.app_name,
        "version": __version__,
        "docs": "/docs" if settings.debug else None,
    }
