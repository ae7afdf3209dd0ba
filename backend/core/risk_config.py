"""Pipeline configuration — every tunable threshold in one place.

:class:`RiskConfig` is a frozen dataclass.  :meth:`RiskConfig.from_env`
reads overrides from the environment (after ``load_dotenv``); everything
else in the package receives an injected instance rather than calling
``os.getenv`` itself.

Typical usage::

    from dataclasses import replace
    from backend.core.risk_config import RiskConfig

    cfg = RiskConfig.from_env()
    strict = replace(cfg, concentration_threshold=0.35)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Final

from dotenv import load_dotenv


#: Breakeven ATS win rate (percent) at standard -110 juice: 110 / 210.
BREAKEVEN_ATS_PCT_DEFAULT: Final[float] = 52.38


@dataclass(frozen=True)
class RiskConfig:
    """Immutable configuration bundle.

    Attributes:
        odds_cache_ttl_seconds: Lifetime of a cached odds payload.
        odds_cache_cleanup_seconds: Cadence of the background expiry sweep.
        concentration_threshold: Fraction of total exposure above which a
            single source or game is flagged.
        single_group_warning_threshold: Fraction above which a single game
            or thematic factor gets an explicit overexposure warning.
        correlation_report_floor: Pairwise correlations with smaller
            magnitude are omitted from the report.
        same_game_correlation: Heuristic correlation between different
            outcomes priced off the same game or event.
        breakeven_ats_pct: ATS win percentage a run must exceed to count as
            a win in the performance tracker.
        recommended_notional_size: Shares used to size hypothetical
            positions in the recommended-bets aggregator.
        fetch_max_workers: Thread-pool width for concurrent upstream fetches.
        suggested_factor_cap: Largest share of exposure any one thematic
            factor should carry; reported alongside factor exposures.
    """

    odds_cache_ttl_seconds: float = 60.0
    odds_cache_cleanup_seconds: float = 120.0
    concentration_threshold: float = 0.5
    single_group_warning_threshold: float = 0.6
    correlation_report_floor: float = 0.2
    same_game_correlation: float = 0.5
    breakeven_ats_pct: float = BREAKEVEN_ATS_PCT_DEFAULT
    recommended_notional_size: float = 100.0
    fetch_max_workers: int = 5
    suggested_factor_cap: float = 0.4

    @classmethod
    def from_env(cls) -> "RiskConfig":
        load_dotenv()
        return cls(
            odds_cache_ttl_seconds=float(os.getenv("ODDS_CACHE_TTL_SECONDS", "60")),
            odds_cache_cleanup_seconds=float(
                os.getenv("ODDS_CACHE_CLEANUP_SECONDS", "120")
            ),
            concentration_threshold=float(
                os.getenv("CONCENTRATION_THRESHOLD", "0.5")
            ),
            breakeven_ats_pct=float(
                os.getenv("BREAKEVEN_ATS_PCT", str(BREAKEVEN_ATS_PCT_DEFAULT))
            ),
            recommended_notional_size=float(
                os.getenv("RECOMMENDED_NOTIONAL_SIZE", "100")
            ),
            fetch_max_workers=int(os.getenv("FETCH_MAX_WORKERS", "5")),
            suggested_factor_cap=float(os.getenv("SUGGESTED_FACTOR_CAP", "0.4")),
        )
