"""
FastAPI application for the unified market risk service
Thin HTTP glue over the risk engine, performance tracker and aggregator.

This module is the composition root: the odds cache, its sweep scheduler and
the pipeline configuration are built in ``lifespan`` and injected into the
handlers through FastAPI dependencies.  Pipeline jobs are triggered by an
external scheduler; they only show up here through the job history.
"""

from fastapi import FastAPI, Depends, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session
from sqlalchemy import text
from apscheduler.schedulers.background import BackgroundScheduler
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime
from typing import List, Optional
import logging
import os

from backend.core.risk_config import RiskConfig
from backend.models import get_db
from backend.services.decision_tracking import (
    analyze_performance,
    get_active_config_version,
    get_recent_runs,
    get_unvalidated_runs,
    track_decision_run,
    validate_decision_run,
)
from backend.services.game_cache import TTLCache
from backend.services.job_logger import get_recent_job_executions
from backend.services.odds import OddsAPIClient
from backend.services.recommended_bets import RecommendedBetsAggregator
from backend.services.risk_engine import analyze
from backend.schemas import (
    DecisionPerformanceResponse,
    DecisionRunCreate,
    DecisionRunResponse,
    DecisionRunValidate,
    JobExecutionResponse,
    PortfolioAnalyzeRequest,
)

# Logging setup
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

APP_VERSION = "1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("Starting unified market risk service")

    config = RiskConfig.from_env()
    scheduler = BackgroundScheduler()
    cache = TTLCache(
        ttl_seconds=config.odds_cache_ttl_seconds,
        cleanup_interval_seconds=config.odds_cache_cleanup_seconds,
    )
    cache.start(scheduler)

    app.state.config = config
    app.state.scheduler = scheduler
    app.state.odds_cache = cache
    app.state.aggregator = None

    yield

    cache.stop()
    if scheduler.running:
        scheduler.shutdown(wait=False)
    logger.info("Shutdown complete")


app = FastAPI(
    title="Unified Market Risk API",
    description="Cross-venue position normalisation, portfolio risk and decision performance",
    version=APP_VERSION,
    lifespan=lifespan,
)

# CORS (adjust origins for production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "http://localhost:3000").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_config(request: Request) -> RiskConfig:
    return request.app.state.config


def get_odds_cache(request: Request) -> TTLCache:
    return request.app.state.odds_cache


def get_aggregator(request: Request) -> RecommendedBetsAggregator:
    """Built on first use so the service starts without an odds API key."""
    state = request.app.state
    if state.aggregator is None:
        try:
            client = OddsAPIClient()
        except ValueError as exc:
            raise HTTPException(status_code=503, detail=str(exc))
        state.aggregator = RecommendedBetsAggregator(
            client, state.odds_cache, state.config
        )
    return state.aggregator


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

@app.get("/")
async def root():
    """Health check"""
    return {
        "app": "Unified Market Risk",
        "version": APP_VERSION,
        "status": "operational",
        "timestamp": datetime.utcnow().isoformat(),
    }


@app.get("/health")
async def health_check(request: Request, db: Session = Depends(get_db)):
    """Health check endpoint"""
    health = {"status": "healthy", "database": "connected", "cache_sweep": "running"}

    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("Health check database error: %s", e)
        health["status"] = "degraded"
        health["database"] = f"error: {str(e)}"

    if not request.app.state.odds_cache.running:
        health["status"] = "degraded"
        health["cache_sweep"] = "stopped"

    return health


# ============================================================================
# RISK
# ============================================================================

@app.post("/api/risk/analyze")
def analyze_portfolio(
    payload: PortfolioAnalyzeRequest,
    config: RiskConfig = Depends(get_config),
):
    """Portfolio risk report for caller-supplied positions and quotes."""
    if payload.concentration_threshold is not None:
        config = replace(config, concentration_threshold=payload.concentration_threshold)
    try:
        report = analyze(payload.to_domain(), config)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return report.to_dict()


@app.get("/api/recommended-bets")
def recommended_bets(
    sport: str = Query(..., min_length=1, description="Odds API sport key"),
    limit: int = Query(10, ge=1, le=100),
    aggregator: RecommendedBetsAggregator = Depends(get_aggregator),
):
    """Top opportunities ranked by edge against the no-vig consensus."""
    try:
        bets = aggregator.get_recommended_bets(sport, limit)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return {"sport": sport, "count": len(bets), "bets": [b.to_dict() for b in bets]}


@app.get("/api/cache/stats")
async def cache_stats(cache: TTLCache = Depends(get_odds_cache)):
    stats = cache.stats()
    return {"size": stats["size"], "keys": [str(k) for k in stats["keys"]]}


# ============================================================================
# DECISION ENGINE
# ============================================================================

@app.get("/api/decision-engine/performance", response_model=DecisionPerformanceResponse)
def decision_engine_performance(
    version: Optional[int] = Query(None, ge=1, description="Config version (default: active)"),
    days: int = Query(30, ge=1, le=365),
    db: Session = Depends(get_db),
    config: RiskConfig = Depends(get_config),
):
    """Performance of one config version over a sliding window."""
    config_version = version or get_active_config_version(db)
    performance = analyze_performance(
        db, config_version, window_days=days, breakeven_ats=config.breakeven_ats_pct
    )
    return {
        "config_version": config_version,
        "performance": performance,
        "recent_runs": get_recent_runs(db, config_version, window_days=days),
    }


@app.post("/api/decision-engine/runs")
def create_decision_run(payload: DecisionRunCreate, db: Session = Depends(get_db)):
    inputs = payload.model_dump(include={
        "user_id", "bankroll", "sport", "config_version", "candidate_count",
    })
    run_id = track_decision_run(
        db,
        inputs,
        [p.model_dump() for p in payload.positions],
        alternatives=payload.alternatives,
        constraints=payload.constraints,
    )
    return {"id": run_id}


@app.post("/api/decision-engine/runs/{run_id}/validate", response_model=DecisionRunResponse)
def validate_run(run_id: int, payload: DecisionRunValidate, db: Session = Depends(get_db)):
    try:
        return validate_decision_run(
            db, run_id, [o.model_dump() for o in payload.outcomes]
        )
    except ValueError as exc:
        status = 404 if "not found" in str(exc) else 409
        raise HTTPException(status_code=status, detail=str(exc))


@app.get("/api/decision-engine/runs/unvalidated", response_model=List[DecisionRunResponse])
def unvalidated_runs(db: Session = Depends(get_db)):
    return get_unvalidated_runs(db)


# ============================================================================
# JOBS
# ============================================================================

@app.get("/api/jobs", response_model=List[JobExecutionResponse])
def job_history(
    limit: int = Query(50, ge=1, le=500),
    job_name: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    """Recent executions of externally scheduled jobs."""
    return get_recent_job_executions(db, limit=limit, job_name=job_name)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("backend.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
