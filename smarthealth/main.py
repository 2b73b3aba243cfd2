import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from smarthealth.routers import analysis
from smarthealth.services.analysis import AnalysisSession

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting SmartHealth insight engine...")
    app.state.session = AnalysisSession()
    logger.info("AI provider: %s (available=%s)", app.state.session.llm.provider, app.state.session.llm.available())
    yield
    cleared = app.state.session.cache.clear()
    logger.info("SmartHealth insight engine shut down (%d cached narratives dropped)", cleared)


app = FastAPI(
    title="SmartHealth",
    description="Multi-tier clinical insight engine over reconciled patient records",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(analysis.router)


@app.get("/health")
async def health():
    return {"status": "ok"}
