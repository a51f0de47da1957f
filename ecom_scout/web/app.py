"""FastAPI web application for the grocery price scout."""
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader

from ..config_loader import build_automation_config, load_settings, load_sites
from ..jobs import JobManager
from ..models import JobStatus, utc_now

logger = structlog.get_logger()

CONFIG_DIR = Path(__file__).parent.parent.parent / "config"

SCRAPE_EXAMPLE = "/scrape?product=tomato&location=Mumbai"


def build_job_manager() -> JobManager:
    """Build the job manager from the YAML configuration files."""
    settings_path = Path(os.getenv("SCOUT_SETTINGS", str(CONFIG_DIR / "settings.yaml")))
    sites_path = Path(os.getenv("SCOUT_SITES", str(CONFIG_DIR / "sites.yaml")))

    settings = load_settings(settings_path)
    sites = load_sites(sites_path)
    config = build_automation_config(settings)

    logger.info(
        "job_manager_configured",
        sites=[s.key for s in sites],
        max_concurrent=config.max_concurrent,
        max_jobs=settings["max_jobs"],
    )
    return JobManager(sites, config, max_jobs=int(settings["max_jobs"]))


@asynccontextmanager
async def lifespan(app: FastAPI):
    owned = getattr(app.state, "job_manager", None) is None
    if owned:
        app.state.job_manager = build_job_manager()
    try:
        yield
    finally:
        await app.state.job_manager.shutdown()
        if owned:
            app.state.job_manager = None


app = FastAPI(title="Grocery Price Scout", version="1.0.0", lifespan=lifespan)

# CORS configuration
allowed_origins = os.getenv("CORS_ORIGINS", "*").split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials="*" not in allowed_origins,
    allow_methods=["GET", "DELETE"],
    allow_headers=["*"],
)

# API Key authentication
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(api_key: str = Security(api_key_header)):
    """Verify API key for protected endpoints."""
    expected_key = os.getenv("SCOUT_API_KEY")
    if not expected_key:
        # No key configured = auth disabled (for local dev)
        return None
    if api_key != expected_key:
        raise HTTPException(status_code=403, detail="Invalid or missing API key")
    return api_key


def get_job_manager(request: Request) -> JobManager:
    return request.app.state.job_manager


@app.get("/")
async def index():
    """Service information."""
    return {
        "service": "Grocery Price Scout",
        "version": app.version,
        "endpoints": {
            "scrape": "GET /scrape?product=<product>&location=<location>",
            "job": "GET /job/{jobId}",
            "cancel": "DELETE /job/{jobId}",
            "json": "GET /json/{jobId}",
            "health": "GET /health",
        },
    }


@app.get("/health")
async def health():
    return {"status": "ok", "timestamp": utc_now().isoformat()}


@app.get("/scrape", status_code=202)
async def scrape(
    product: Optional[str] = Query(None),
    location: Optional[str] = Query(None),
    manager: JobManager = Depends(get_job_manager),
    user: str = Depends(verify_api_key),
):
    """Submit a scrape job; returns immediately with the job id."""
    if not product or not product.strip() or not location or not location.strip():
        raise HTTPException(
            status_code=400,
            detail={
                "error": "Both 'product' and 'location' query parameters are required",
                "example": SCRAPE_EXAMPLE,
            },
        )

    job_id = await manager.submit(product, location)
    return {
        "jobId": job_id,
        "status": str(JobStatus.QUEUED),
        "message": "Scraping job started",
        "statusUrl": f"/job/{job_id}",
    }


@app.get("/job/{job_id}")
async def get_job(job_id: str, manager: JobManager = Depends(get_job_manager)):
    job = manager.get_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job.to_dict()


@app.delete("/job/{job_id}", status_code=202)
async def cancel_job(
    job_id: str,
    manager: JobManager = Depends(get_job_manager),
    user: str = Depends(verify_api_key),
):
    job = manager.get_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    if not manager.cancel(job_id):
        raise HTTPException(status_code=409, detail=f"Job is already {job.status}")
    return {"jobId": job_id, "message": "Cancellation requested"}


@app.get("/json/{job_id}")
async def get_job_json(job_id: str, manager: JobManager = Depends(get_job_manager)):
    """Clean result document for a finished job."""
    job = manager.get_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")

    if not job.status.is_terminal:
        return JSONResponse(
            status_code=202,
            content={"jobId": job.id, "status": str(job.status), "message": "Job still running"},
        )

    return {
        "product": job.product,
        "location": job.location,
        "status": str(job.status),
        "error": job.error,
        "websites": [
            {
                "website": result.site,
                "location": job.location,
                "success": result.success,
                "error": result.error,
                "products": [p.to_dict() for p in result.products],
            }
            for result in job.site_results
        ],
        "summary": job.summary(),
    }
