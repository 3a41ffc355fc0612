from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from hvac_reports.core.constants import API_VERSION, CORS_ORIGINS
from hvac_reports.reports.routes import router as reports_router
from hvac_reports.reports.service import get_report_service
from hvac_reports.utils.log_utils import get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    service = get_report_service()
    logger.info(f"[API] Report engine {API_VERSION} ready")
    yield
    await service.executor.close()


app = FastAPI(title="HVAC Report Engine API", version=API_VERSION, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(reports_router)


@app.get("/")
def root():
    return {"status": "HVAC Report Engine API is running", "version": API_VERSION}


@app.get("/health")
def health():
    service = get_report_service()
    stats = service.cache.stats()
    return {
        "status": "ok",
        "cache_entries": stats["entries"],
        "redis": stats["redis"],
        "executions_recorded": service.history.get_stats()["total_recorded"],
    }
