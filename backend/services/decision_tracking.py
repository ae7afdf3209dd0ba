"""
Decision-engine performance tracking.

Automated slate-selection runs are recorded by ``track_decision_run`` and
annotated with resolved outcomes by ``validate_decision_run``.  Validated
runs are then summarised per configuration version over a sliding window.

Regret convention:
    regret = benchmark_net_units − run.actual_net_units
Positive regret means the engine underperformed the benchmark.  The default
benchmark is the previous config version's mean net units over the same
window (the control); with no control history it is a flat 0.0 (no bets).

All public functions receive a SQLAlchemy Session and return plain dicts so
they can be called from FastAPI endpoints or scheduled jobs without
importing any web-layer code.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from backend.core.risk_config import BREAKEVEN_ATS_PCT_DEFAULT
from backend.models import DecisionEngineOutcome, DecisionEngineRun, ModelConfig

logger = logging.getLogger(__name__)

PIPELINE_CONFIG_KEY = "ats_pipeline_config"
ATS_RESULTS = (1, -1, 0)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _mean(values: List[float]) -> Optional[float]:
    return sum(values) / len(values) if values else None


def _win_rate(wins: int, total: int) -> float:
    return round(wins / total, 4) if total > 0 else 0.0


def _naive_utc(moment: Optional[datetime]) -> datetime:
    """Stored timestamps are naive UTC."""
    if moment is None:
        return datetime.utcnow()
    if moment.tzinfo is not None:
        return moment.astimezone(timezone.utc).replace(tzinfo=None)
    return moment


def _cutoff(window_days: int, now: Optional[datetime]) -> datetime:
    if window_days <= 0:
        raise ValueError(f"window_days must be positive, got {window_days!r}")
    return _naive_utc(now) - timedelta(days=window_days)


def _validated_runs(
    db: Session, config_version: int, cutoff: datetime
) -> List[DecisionEngineRun]:
    return (
        db.query(DecisionEngineRun)
        .filter(
            DecisionEngineRun.config_version == config_version,
            DecisionEngineRun.validated.is_(True),
            DecisionEngineRun.timestamp >= cutoff,
        )
        .order_by(DecisionEngineRun.timestamp.asc())
        .all()
    )


def _serialize_run(run: DecisionEngineRun) -> Dict:
    return {
        "id": run.id,
        "timestamp": run.timestamp.isoformat() if run.timestamp else None,
        "config_version": run.config_version,
        "sport": run.sport,
        "selected_count": run.selected_count,
        "validated": bool(run.validated),
        "actual_ats": run.actual_ats,
        "actual_net_units": run.actual_net_units,
        "max_drawdown": run.max_drawdown,
    }


def max_drawdown_units(net_units: Iterable[float]) -> float:
    """Largest peak-to-trough fall of cumulative units (peak starts at 0)."""
    running = peak = max_dd = 0.0
    for units in net_units:
        running += units
        if running > peak:
            peak = running
        if peak - running > max_dd:
            max_dd = peak - running
    return max_dd


# ---------------------------------------------------------------------------
# Recording
# ---------------------------------------------------------------------------

def track_decision_run(
    db: Session,
    inputs: Dict,
    positions: List[Dict],
    alternatives: Optional[List[Dict]] = None,
    constraints: Optional[Dict] = None,
) -> int:
    """
    Persist a new (unvalidated) run.  Returns the run id.

    ``inputs`` carries ``user_id``, ``bankroll``, ``sport``,
    ``config_version`` and ``candidate_count``; ``positions`` is the selected
    slate (``candidate_id``, ``stake_usd``, ``expected_value`` per entry).
    """
    if inputs.get("config_version") is None:
        raise ValueError("config_version is required to track a decision run")

    run = DecisionEngineRun(
        user_id=inputs.get("user_id"),
        bankroll=inputs.get("bankroll"),
        sport=inputs.get("sport"),
        config_version=int(inputs["config_version"]),
        candidate_count=inputs.get("candidate_count", 0),
        selected_count=len(positions),
        selected_slate=positions,
        alternatives=alternatives or [],
        constraints=constraints or {},
    )
    db.add(run)
    db.commit()
    logger.info(
        "Tracked decision run %s (v%d, %s, %d selected)",
        run.id, run.config_version, run.sport, run.selected_count,
    )
    return run.id


def validate_decision_run(db: Session, run_id: int, outcomes: List[Dict]) -> Dict:
    """
    Record resolved outcomes for a run and mark it validated.

    Each outcome carries ``position_index``, ``prediction_id``,
    ``ats_result`` (1 win / -1 loss / 0 push) and ``net_units``.

    Sets ``actual_ats`` (wins / decided × 100), ``actual_net_units`` and
    ``max_drawdown``.  Validated runs are immutable.

    Raises:
        ValueError: unknown run, already validated, or a bad ats_result.
    """
    run = db.query(DecisionEngineRun).filter(DecisionEngineRun.id == run_id).first()
    if run is None:
        raise ValueError(f"Decision run {run_id} not found")
    if run.validated:
        raise ValueError(f"Decision run {run_id} is already validated")
    for o in outcomes:
        if o.get("ats_result") not in ATS_RESULTS:
            raise ValueError(
                f"ats_result must be one of {ATS_RESULTS}, got {o.get('ats_result')!r}"
            )

    slate = run.selected_slate or []
    for o in outcomes:
        idx = int(o["position_index"])
        position = slate[idx] if 0 <= idx < len(slate) else {}
        db.add(
            DecisionEngineOutcome(
                run_id=run.id,
                position_index=idx,
                candidate_id=position.get("candidate_id") or f"pos_{idx}",
                stake_usd=position.get("stake_usd") or 0.0,
                expected_value=position.get("expected_value") or 0.0,
                prediction_id=o.get("prediction_id"),
                ats_result=o["ats_result"],
                net_units=float(o.get("net_units") or 0.0),
            )
        )

    net = [float(o.get("net_units") or 0.0) for o in outcomes]
    wins = sum(1 for o in outcomes if o["ats_result"] == 1)
    losses = sum(1 for o in outcomes if o["ats_result"] == -1)
    decided = wins + losses

    run.actual_ats = wins / decided * 100.0 if decided else 0.0
    run.actual_net_units = sum(net)
    run.max_drawdown = max_drawdown_units(net)
    run.validated = True
    run.validated_at = datetime.utcnow()
    db.commit()

    logger.info(
        "Validated decision run %s: ATS %.1f%% (%d-%d), net %+.2fu, max DD %.2fu",
        run.id, run.actual_ats, wins, losses, run.actual_net_units, run.max_drawdown,
    )
    return _serialize_run(run)


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------

def calculate_regret(run, benchmark: float) -> float:
    """``benchmark − actual_net_units``; positive means underperformance."""
    return benchmark - (run.actual_net_units or 0.0)


def summarize_runs(
    runs: List[DecisionEngineRun],
    benchmark: float = 0.0,
    breakeven_ats: float = BREAKEVEN_ATS_PCT_DEFAULT,
) -> Dict:
    """Aggregate already-filtered validated runs.  Zero runs → zero metrics."""
    n = len(runs)
    if n == 0:
        return {
            "sample_size": 0,
            "mean_regret": 0.0,
            "win_rate": 0.0,
            "avg_net_units": 0.0,
            "worst_drawdown_observed": 0.0,
            "avg_positions": 0.0,
            "avg_ats": 0.0,
            "by_sport": {},
            "insufficient_data": True,
        }

    winners = sum(1 for r in runs if (r.actual_ats or 0.0) > breakeven_ats)

    by_sport_runs: Dict[str, List[DecisionEngineRun]] = {}
    for r in runs:
        by_sport_runs.setdefault(r.sport or "unknown", []).append(r)

    by_sport = {
        sport: {
            "runs": len(lst),
            "avg_net_units": round(_mean([r.actual_net_units or 0.0 for r in lst]), 4),
            "win_rate": _win_rate(
                sum(1 for r in lst if (r.actual_ats or 0.0) > breakeven_ats), len(lst)
            ),
        }
        for sport, lst in by_sport_runs.items()
    }

    return {
        "sample_size": n,
        "mean_regret": round(_mean([calculate_regret(r, benchmark) for r in runs]), 4),
        "win_rate": _win_rate(winners, n),
        "avg_net_units": round(_mean([r.actual_net_units or 0.0 for r in runs]), 4),
        "worst_drawdown_observed": round(max(r.max_drawdown or 0.0 for r in runs), 4),
        "avg_positions": round(_mean([r.selected_count or 0 for r in runs]), 2),
        "avg_ats": round(_mean([r.actual_ats or 0.0 for r in runs]), 2),
        "by_sport": by_sport,
        "insufficient_data": False,
    }


def analyze_performance(
    db: Session,
    config_version: int,
    window_days: int = 30,
    benchmark: Optional[float] = None,
    now: Optional[datetime] = None,
    breakeven_ats: float = BREAKEVEN_ATS_PCT_DEFAULT,
) -> Dict:
    """
    Performance of ``config_version`` over the last ``window_days``.

    Only validated runs with ``timestamp >= now − window_days`` count.
    Never raises for an empty window; check ``sample_size``.
    """
    cutoff = _cutoff(window_days, now)
    runs = _validated_runs(db, config_version, cutoff)

    control_runs: List[DecisionEngineRun] = []
    if config_version > 1:
        control_runs = _validated_runs(db, config_version - 1, cutoff)
    control_avg = _mean([r.actual_net_units or 0.0 for r in control_runs])

    if benchmark is None:
        benchmark = control_avg if control_avg is not None else 0.0

    report = summarize_runs(runs, benchmark=benchmark, breakeven_ats=breakeven_ats)

    improvement = 0.0
    if runs and control_avg is not None:
        improvement = round(report["avg_net_units"] - control_avg, 4)

    report.update(
        {
            "config_version": config_version,
            "window_days": window_days,
            "benchmark": round(benchmark, 4),
            "vs_control": {
                "improvement": improvement,
                "control_version": config_version - 1 if control_runs else None,
                "control_sample_size": len(control_runs),
            },
        }
    )
    if report["insufficient_data"]:
        logger.info(
            "No validated runs for config v%d in the last %d days",
            config_version, window_days,
        )
    return report


def compare_config_versions(
    db: Session,
    versions: Iterable[int],
    window_days: int = 30,
    now: Optional[datetime] = None,
) -> Dict[int, Dict]:
    """Side-by-side reports, each against its own control."""
    return {
        v: analyze_performance(db, v, window_days=window_days, now=now)
        for v in versions
    }


def get_unvalidated_runs(db: Session) -> List[Dict]:
    """Runs still awaiting outcomes, oldest first."""
    runs = (
        db.query(DecisionEngineRun)
        .filter(DecisionEngineRun.validated.is_(False))
        .order_by(DecisionEngineRun.timestamp.asc())
        .all()
    )
    return [_serialize_run(r) for r in runs]


def get_recent_runs(
    db: Session,
    config_version: int,
    window_days: int = 30,
    limit: int = 20,
    now: Optional[datetime] = None,
) -> List[Dict]:
    """Most recent validated runs for the admin detail view."""
    cutoff = _cutoff(window_days, now)
    runs = (
        db.query(DecisionEngineRun)
        .filter(
            DecisionEngineRun.config_version == config_version,
            DecisionEngineRun.validated.is_(True),
            DecisionEngineRun.timestamp >= cutoff,
        )
        .order_by(DecisionEngineRun.timestamp.desc())
        .limit(limit)
        .all()
    )
    return [_serialize_run(r) for r in runs]


def get_active_config_version(db: Session, default: int = 1) -> int:
    """``ats_pipeline_config.version`` from ModelConfig, else ``default``."""
    row = db.query(ModelConfig).filter(ModelConfig.key == PIPELINE_CONFIG_KEY).first()
    if row is None or not isinstance(row.value, dict):
        return default
    try:
        return int(row.value.get("version", default))
    except (TypeError, ValueError):
        logger.warning("Malformed %s.version: %r", PIPELINE_CONFIG_KEY, row.value)
        return default
