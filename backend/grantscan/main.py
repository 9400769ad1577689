import logging

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from grantscan.api import reasoning, scans, sources, system
from grantscan.api.deps import http_status_for, require_api_token
from grantscan.config import get_settings
from grantscan.services.resilience import PipelineError

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, str(settings.log_level).upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Grant Scan API",
    description="Support-program discovery and company fit scoring",
    version="0.1.0",
    debug=settings.debug,
)

# CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[scans.JOB_ID_HEADER],
)


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    status_code = http_status_for(exc)
    if status_code >= 500:
        logger.warning("%s %s failed (%s): %s", request.method, request.url.path, exc.kind.value, exc)
    return JSONResponse(
        status_code=status_code,
        content={"detail": {"error": exc.kind.value, "message": exc.user_message(), "source": exc.source}},
    )


# Include routers - all behind the shared-secret header
protected = [Depends(require_api_token)]
app.include_router(scans.router, prefix="/scans", tags=["scans"], dependencies=protected)
app.include_router(sources.router, prefix="/sources", tags=["sources"], dependencies=protected)
app.include_router(reasoning.router, prefix="/reasoning", tags=["reasoning"], dependencies=protected)
app.include_router(system.router, prefix="/config", tags=["config"], dependencies=protected)


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
