"""
Portfolio risk engine over the unified Position / Contract model.

Consumes a ``Portfolio`` already assembled by the adapters and returns a
``RiskReport``.  Pure computation: no I/O, no clock reads unless ``now`` is
omitted (it is only used for lockup days).

Per position:
    exposure     = size × cost_per_share          (capital at risk)
    mark value   = size × current_price
    pnl (yes)    = size × (current_price − cost_per_share)
    pnl (no)     = −size × (current_price − cost_per_share)

A position whose contract id is missing from ``portfolio.contracts`` is
*stale*: it is priced at its own cost (pnl 0) and listed in ``stale_flags``.

Portfolio:
    total exposure, concentration by source and by game / underlying market,
    exposure by thematic factor (``Contract.factor_ids``),
    worst-case drawdown (every open position resolves against the holder,
    losing its full capital at risk), pairwise correlation heuristics, a
    one-sigma variance curve and exposure-weighted days to resolution.
"""

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from backend.core.contracts import Contract, Portfolio, Position, meta_point
from backend.core.factors import OTHER_FACTOR, factor_name
from backend.core.odds_math import MAX_COST_PER_SHARE, MIN_COST_PER_SHARE
from backend.core.risk_config import RiskConfig
from backend.services.adapters import contract_group_key, parse_contract_id

logger = logging.getLogger(__name__)

# p5 / p95 of a normal P&L distribution
_Z_90 = 1.65

_OPPOSITE_OUTCOMES = {
    frozenset(("away", "home")),
    frozenset(("over", "under")),
}


# ---------------------------------------------------------------------------
# Report structures
# ---------------------------------------------------------------------------

@dataclass
class PositionRisk:
    """Single position marked against its live quote."""

    contract_id: str
    side: str
    size: float
    cost_per_share: float
    current_price: float
    exposure: float
    mark_value: float
    pnl: float
    source: str
    group: str
    stale: bool = False
    point: Optional[float] = None


@dataclass
class ContractCorrelation:
    contract_id_a: str
    contract_id_b: str
    correlation: float
    reason: str


@dataclass
class FactorExposure:
    factor_id: str
    factor_name: str
    notional: float
    fraction: float
    contract_ids: List[str] = field(default_factory=list)


@dataclass
class VarianceCurve:
    volatility: float
    p5_pnl: float
    p95_pnl: float


@dataclass
class RiskReport:
    total_exposure: float
    mark_to_market_pnl: float
    concentration_by_source: Dict[str, float]
    concentration_by_game: Dict[str, float]
    flagged_concentrations: List[Dict]
    concentration_risk: float
    worst_case_drawdown: float
    stale_flags: List[str]
    positions: List[PositionRisk] = field(default_factory=list)
    correlations: List[ContractCorrelation] = field(default_factory=list)
    variance_curve: Optional[VarianceCurve] = None
    avg_lockup_days: Optional[float] = None
    warnings: List[str] = field(default_factory=list)
    factor_exposures: List[FactorExposure] = field(default_factory=list)
    suggested_factor_cap: Optional[float] = None

    def to_dict(self) -> Dict:
        return {
            "total_exposure": round(self.total_exposure, 6),
            "mark_to_market_pnl": round(self.mark_to_market_pnl, 6),
            "concentration_by_source": self.concentration_by_source,
            "concentration_by_game": self.concentration_by_game,
            "flagged_concentrations": self.flagged_concentrations,
            "concentration_risk": self.concentration_risk,
            "worst_case_drawdown": round(self.worst_case_drawdown, 6),
            "stale_flags": list(self.stale_flags),
            "positions": [vars(p).copy() for p in self.positions],
            "correlations": [vars(c).copy() for c in self.correlations],
            "variance_curve": (
                vars(self.variance_curve).copy() if self.variance_curve else None
            ),
            "avg_lockup_days": self.avg_lockup_days,
            "warnings": list(self.warnings),
            "factor_exposures": [vars(f).copy() for f in self.factor_exposures],
            "suggested_factor_cap": self.suggested_factor_cap,
        }


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_positions(positions: List[Position]) -> None:
    """Reject caller input that cannot be analysed.  Raises ValueError."""
    if not positions:
        raise ValueError("Portfolio must contain at least one position")
    for i, pos in enumerate(positions):
        if not pos.contract_id or not str(pos.contract_id).strip():
            raise ValueError(f"Position {i} is missing a contract_id")
        if pos.side not in ("yes", "no"):
            raise ValueError(
                f"Position {i} ({pos.contract_id}) has invalid side {pos.side!r}"
            )
        if not isinstance(pos.size, (int, float)) or not math.isfinite(pos.size) or pos.size <= 0:
            raise ValueError(
                f"Position {i} ({pos.contract_id}) size must be positive, got {pos.size!r}"
            )
        cost = pos.cost_per_share
        if not isinstance(cost, (int, float)) or not (
            MIN_COST_PER_SHARE <= cost <= MAX_COST_PER_SHARE
        ):
            raise ValueError(
                f"Position {i} ({pos.contract_id}) cost_per_share must be in "
                f"[{MIN_COST_PER_SHARE}, {MAX_COST_PER_SHARE}], got {cost!r}"
            )


# ---------------------------------------------------------------------------
# Per-position marking
# ---------------------------------------------------------------------------

def _source_for(position: Position, contract: Optional[Contract]) -> str:
    if contract is not None:
        return contract.source.value
    parsed = parse_contract_id(position.contract_id)
    return parsed.venue if parsed else "unknown"


def mark_to_market(position: Position, contract: Optional[Contract]) -> PositionRisk:
    """
    Mark one position against its contract quote.

    ``contract=None`` means no live quote: the position is priced at its own
    cost and flagged stale.
    """
    stale = contract is None
    current = position.cost_per_share if stale else contract.price
    delta = current - position.cost_per_share
    pnl = position.size * delta if position.side == "yes" else -position.size * delta

    return PositionRisk(
        contract_id=position.contract_id,
        side=position.side,
        size=position.size,
        cost_per_share=position.cost_per_share,
        current_price=current,
        exposure=position.size * position.cost_per_share,
        mark_value=position.size * current,
        pnl=pnl,
        source=_source_for(position, contract),
        group=contract_group_key(position.contract_id),
        stale=stale,
        point=None if stale else meta_point(contract.meta),
    )


# ---------------------------------------------------------------------------
# Portfolio aggregates
# ---------------------------------------------------------------------------

def _fractions(totals: Dict[str, float], total: float) -> Dict[str, float]:
    if total <= 0:
        return {k: 0.0 for k in totals}
    ordered = sorted(totals.items(), key=lambda kv: kv[1], reverse=True)
    return {k: round(v / total, 6) for k, v in ordered}


def _factor_set(factor_ids: Optional[List[str]]) -> frozenset:
    return frozenset(factor_ids or [OTHER_FACTOR])


def estimate_correlation(
    id_a: str,
    id_b: str,
    same_game_correlation: float = 0.5,
    factors_a: Optional[List[str]] = None,
    factors_b: Optional[List[str]] = None,
) -> float:
    """
    Heuristic correlation between two contract ids.

    Same contract → 1.  Opposite sides of one prediction market, or opposite
    outcomes of one sportsbook market → −1.  Different markets on the same
    game → ``same_game_correlation``.  Contracts on different underlyings
    that share thematic factors → 0.3 + 0.5 · min(1, shared / 2), unless
    either side is untagged (``other``).  Anything else → 0.
    """
    if id_a == id_b:
        return 1.0
    a = parse_contract_id(id_a)
    b = parse_contract_id(id_b)
    if (
        a is not None
        and b is not None
        and a.venue == b.venue
        and a.instrument == b.instrument
    ):
        if a.venue == "sportsbook":
            if a.market_type == b.market_type and (
                frozenset((a.outcome_key, b.outcome_key)) in _OPPOSITE_OUTCOMES
            ):
                return -1.0
            return same_game_correlation
        # Same Kalshi ticker / Polymarket condition, different side
        return -1.0

    set_a = _factor_set(factors_a)
    set_b = _factor_set(factors_b)
    if OTHER_FACTOR in set_a or OTHER_FACTOR in set_b:
        return 0.0
    shared = len(set_a & set_b)
    if shared == 0:
        return 0.0
    return 0.3 + 0.5 * min(1.0, shared / 2.0)


def _correlation_reason(id_a: str, id_b: str, rho: float) -> str:
    if rho == -1.0:
        return "same_market_opposite_side"
    if contract_group_key(id_a) == contract_group_key(id_b):
        return "same_game"
    return "same_factor"


def compute_correlations(
    contract_ids: List[str],
    config: RiskConfig,
    factors_by_id: Optional[Dict[str, List[str]]] = None,
) -> List[ContractCorrelation]:
    factors_by_id = factors_by_id or {}
    unique = list(dict.fromkeys(contract_ids))
    pairs: List[ContractCorrelation] = []
    for i in range(len(unique)):
        for j in range(i + 1, len(unique)):
            rho = estimate_correlation(
                unique[i],
                unique[j],
                config.same_game_correlation,
                factors_by_id.get(unique[i]),
                factors_by_id.get(unique[j]),
            )
            if abs(rho) >= config.correlation_report_floor:
                pairs.append(
                    ContractCorrelation(
                        contract_id_a=unique[i],
                        contract_id_b=unique[j],
                        correlation=rho,
                        reason=_correlation_reason(unique[i], unique[j], rho),
                    )
                )
    pairs.sort(key=lambda c: abs(c.correlation), reverse=True)
    return pairs


def compute_variance_curve(
    positions: List[Position],
    config: RiskConfig,
    factors_by_id: Optional[Dict[str, List[str]]] = None,
) -> Optional[VarianceCurve]:
    """
    Binary-outcome variance per position is ``size² · p · (1 − p)`` with
    ``p = cost_per_share``; positions combine through the heuristic
    correlations above.
    """
    factors_by_id = factors_by_id or {}
    sigmas = [
        math.sqrt(p.size * p.size * p.cost_per_share * (1.0 - p.cost_per_share))
        for p in positions
    ]
    variance = 0.0
    for i in range(len(positions)):
        variance += sigmas[i] ** 2
        for j in range(i + 1, len(positions)):
            id_a = positions[i].contract_id
            id_b = positions[j].contract_id
            rho = estimate_correlation(
                id_a,
                id_b,
                config.same_game_correlation,
                factors_by_id.get(id_a),
                factors_by_id.get(id_b),
            )
            variance += 2.0 * rho * sigmas[i] * sigmas[j]

    if variance <= 0:
        return None
    vol = math.sqrt(variance)
    return VarianceCurve(volatility=vol, p5_pnl=-_Z_90 * vol, p95_pnl=_Z_90 * vol)


def compute_factor_exposures(
    marked: List[PositionRisk],
    factors_by_id: Dict[str, List[str]],
    total_exposure: float,
) -> List[FactorExposure]:
    """
    Capital at risk per thematic factor, largest first.

    A position counts in full toward every factor its contract carries, so
    fractions can sum past 1.  Untagged or stale contracts count as ``other``.
    """
    notional: Dict[str, float] = defaultdict(float)
    members: Dict[str, List[str]] = defaultdict(list)
    for m in marked:
        for factor_id in factors_by_id.get(m.contract_id) or [OTHER_FACTOR]:
            notional[factor_id] += m.exposure
            if m.contract_id not in members[factor_id]:
                members[factor_id].append(m.contract_id)

    exposures = [
        FactorExposure(
            factor_id=factor_id,
            factor_name=factor_name(factor_id),
            notional=round(value, 6),
            fraction=round(value / total_exposure, 6) if total_exposure > 0 else 0.0,
            contract_ids=members[factor_id],
        )
        for factor_id, value in notional.items()
    ]
    exposures.sort(key=lambda e: e.notional, reverse=True)
    return exposures


def compute_avg_lockup_days(
    positions: List[Position],
    contracts_by_id: Dict[str, Contract],
    now: datetime,
) -> Optional[float]:
    """Exposure-weighted days until resolution, future resolutions only."""
    total_weight = 0.0
    weighted_days = 0.0
    for pos in positions:
        contract = contracts_by_id.get(pos.contract_id)
        if contract is None or contract.resolution_time is None:
            continue
        resolves = contract.resolution_time
        if resolves.tzinfo is None:
            resolves = resolves.replace(tzinfo=timezone.utc)
        if resolves <= now:
            continue
        days = (resolves - now).total_seconds() / 86400.0
        weight = pos.size * pos.cost_per_share
        weighted_days += weight * days
        total_weight += weight
    if total_weight <= 0:
        return None
    return round(weighted_days / total_weight, 1)


def _warnings(
    by_game: Dict[str, float],
    factor_exposures: List[FactorExposure],
    stale_flags: List[str],
    config: RiskConfig,
) -> List[str]:
    warnings: List[str] = []
    if by_game:
        top_group, top_fraction = max(by_game.items(), key=lambda kv: kv[1])
        if top_fraction >= config.concentration_threshold:
            warnings.append(
                f'High concentration: {top_fraction * 100:.0f}% of portfolio is in '
                f'"{top_group}". Consider diversifying.'
            )
        for group, fraction in by_game.items():
            if fraction >= config.single_group_warning_threshold:
                warnings.append(
                    f'Overexposure to "{group}": {fraction * 100:.0f}% of exposure.'
                )
    for exp in factor_exposures:
        if exp.factor_id != OTHER_FACTOR and (
            exp.fraction >= config.single_group_warning_threshold
        ):
            warnings.append(
                f'Overexposure to factor "{exp.factor_name}": '
                f"{exp.fraction * 100:.0f}% of exposure (${exp.notional:.0f})."
            )
    if stale_flags:
        warnings.append(
            f"{len(stale_flags)} position(s) have no live quote and are priced at cost."
        )
    return warnings


def analyze(
    portfolio: Portfolio,
    config: Optional[RiskConfig] = None,
    now: Optional[datetime] = None,
) -> RiskReport:
    """
    Run the full portfolio risk analysis.

    Raises:
        ValueError: empty position list, blank contract id, bad side,
            non-positive size or cost outside [0.01, 0.99].
    """
    config = config or RiskConfig()
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    validate_positions(portfolio.positions)

    contracts_by_id: Dict[str, Contract] = {}
    for contract in portfolio.contracts:
        if contract.id in contracts_by_id:
            logger.debug("Duplicate contract %s, keeping last quote", contract.id)
        contracts_by_id[contract.id] = contract
    factors_by_id = {
        cid: list(c.factor_ids) for cid, c in contracts_by_id.items() if c.factor_ids
    }

    marked = [
        mark_to_market(pos, contracts_by_id.get(pos.contract_id))
        for pos in portfolio.positions
    ]

    total_exposure = sum(m.exposure for m in marked)
    pnl = sum(m.pnl for m in marked)
    # Every open position can lose at most what was paid for it
    worst_case = sum(m.exposure for m in marked)

    source_totals: Dict[str, float] = defaultdict(float)
    game_totals: Dict[str, float] = defaultdict(float)
    for m in marked:
        source_totals[m.source] += m.exposure
        game_totals[m.group] += m.exposure

    by_source = _fractions(source_totals, total_exposure)
    by_game = _fractions(game_totals, total_exposure)
    factor_exposures = compute_factor_exposures(marked, factors_by_id, total_exposure)

    flagged = [
        {"dimension": dimension, "key": key, "fraction": fraction}
        for dimension, fractions in (("source", by_source), ("game", by_game))
        for key, fraction in fractions.items()
        if fraction > config.concentration_threshold
    ]

    stale_flags = list(dict.fromkeys(m.contract_id for m in marked if m.stale))
    if stale_flags:
        logger.info("Risk analysis: %d stale contract(s)", len(stale_flags))

    return RiskReport(
        total_exposure=total_exposure,
        mark_to_market_pnl=pnl,
        concentration_by_source=by_source,
        concentration_by_game=by_game,
        flagged_concentrations=flagged,
        concentration_risk=max(by_game.values()) if by_game else 0.0,
        worst_case_drawdown=worst_case,
        stale_flags=stale_flags,
        positions=marked,
        correlations=compute_correlations(
            [p.contract_id for p in portfolio.positions], config, factors_by_id
        ),
        variance_curve=compute_variance_curve(
            portfolio.positions, config, factors_by_id
        ),
        avg_lockup_days=compute_avg_lockup_days(
            portfolio.positions, contracts_by_id, now
        ),
        warnings=_warnings(by_game, factor_exposures, stale_flags, config),
        factor_exposures=factor_exposures,
        suggested_factor_cap=config.suggested_factor_cap,
    )
