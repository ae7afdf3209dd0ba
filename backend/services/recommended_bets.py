"""
Recommended-bets aggregator.

Pipeline for one domain (an Odds API sport key such as ``basketball_ncaab``):

    1. Slate      — ``slate:<domain>`` through the TTL cache; a fresh slate
                    also seeds ``game:<id>`` entries via ``set_many``.
    2. Per game   — ``game:<id>`` through the cache; misses re-fetch that
                    event's odds concurrently on a thread pool.  A failing
                    game is logged and skipped, never fatal to the batch.
    3. Scoring    — every outcome becomes a Position at the best available
                    price (notional size) and a Contract priced at the
                    no-vig consensus probability for the same line.
                    When an outcome is quoted on several lines only the
                    best-scoring line is kept.  Each pair is marked on
                    its own via ``risk_engine.mark_to_market``; the score is
                    the edge per share (fair − cost).
    4. Ranking    — score descending, then sooner resolution first (unknown
                    resolution last), truncated to ``limit``.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, List, Optional

from backend.core.contracts import Contract, Position
from backend.core.odds_math import decimal_to_american
from backend.core.risk_config import RiskConfig
from backend.services.adapters import outcome_to_contract, outcome_to_position
from backend.services.game_cache import TTLCache
from backend.services.odds import OddsAPIClient, fair_prob_for
from backend.services.risk_engine import PositionRisk, mark_to_market

logger = logging.getLogger(__name__)


@dataclass
class RankedOpportunity:
    contract: Contract
    position: Position
    risk: PositionRisk
    score: float
    fair_probability: float
    best_price: float
    bookmaker: Optional[str] = None
    bookmakers: List[str] = field(default_factory=list)
    game_title: str = ""

    @property
    def resolution_time(self) -> Optional[datetime]:
        return self.contract.resolution_time

    def to_dict(self) -> Dict:
        try:
            american = decimal_to_american(self.best_price)
        except ValueError:
            american = None
        return {
            "contract_id": self.contract.id,
            "game_title": self.game_title,
            "title": self.contract.title,
            "market_type": self.contract.subtitle,
            "bookmaker": self.bookmaker,
            "bookmakers": self.bookmakers,
            "best_price": self.best_price,
            "american_odds": american,
            "cost_per_share": round(self.position.cost_per_share, 4),
            "fair_probability": round(self.fair_probability, 4),
            "score": round(self.score, 4),
            "expected_value": round(self.risk.pnl, 4),
            "size": self.position.size,
            "resolution_time": (
                self.resolution_time.isoformat() if self.resolution_time else None
            ),
        }


def rank_opportunities(opportunities: List[RankedOpportunity]) -> List[RankedOpportunity]:
    """Score descending; ties go to the sooner-resolving opportunity."""
    return sorted(
        opportunities,
        key=lambda o: (
            -o.score,
            o.resolution_time is None,
            o.resolution_time.timestamp() if o.resolution_time else 0.0,
        ),
    )


def _best_line_per_contract(
    opportunities: List[RankedOpportunity],
) -> List[RankedOpportunity]:
    best: Dict[str, RankedOpportunity] = {}
    for opp in opportunities:
        current = best.get(opp.contract.id)
        if current is None or opp.score > current.score:
            best[opp.contract.id] = opp
    return list(best.values())


class RecommendedBetsAggregator:
    """
    Cache → odds provider → adapter → mark-to-market → ranked list.

    Usage::

        aggregator = RecommendedBetsAggregator(OddsAPIClient(), cache, config)
        top = aggregator.get_recommended_bets("basketball_ncaab", limit=10)
    """

    def __init__(
        self,
        odds_client: OddsAPIClient,
        cache: TTLCache,
        config: Optional[RiskConfig] = None,
        min_score: float = 0.0,
    ):
        self.odds_client = odds_client
        self.cache = cache
        self.config = config or RiskConfig()
        self.min_score = min_score

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    def _slate(self, domain: str) -> List[Dict]:
        key = f"slate:{domain}"
        slate = self.cache.get(key)
        if slate is not None:
            return slate

        slate = self.odds_client.get_sport_odds(domain)
        # An empty slate may be an upstream failure; leave the key cold
        if slate:
            self.cache.set(key, slate)
            self.cache.set_many(
                (f"game:{g['id']}", g) for g in slate if g.get("id")
            )
        return slate

    def _game(self, domain: str, game_id: str) -> Optional[Dict]:
        return self.cache.get_or_fetch(
            f"game:{game_id}",
            lambda: self.odds_client.get_event_odds(domain, game_id),
        )

    def _fetch_games(self, domain: str, game_ids: List[str]) -> Dict[str, Optional[Dict]]:
        results: Dict[str, Optional[Dict]] = {}
        workers = max(1, min(self.config.fetch_max_workers, len(game_ids)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {gid: pool.submit(self._game, domain, gid) for gid in game_ids}
            for gid, future in futures.items():
                try:
                    results[gid] = future.result()
                except Exception as exc:
                    logger.warning("Odds fetch failed for game %s: %s", gid, exc)
                    results[gid] = None
        return results

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def _score_game(self, game: Dict) -> List[RankedOpportunity]:
        parsed = self.odds_client.parse_odds_for_game(game)
        title = f"{parsed['away_team']} @ {parsed['home_team']}"
        out: List[RankedOpportunity] = []

        for q in parsed["quotes"]:
            fair = fair_prob_for(parsed, q)
            if fair is None:
                continue
            position = outcome_to_position(
                q.game_id, q.market_type, q.outcome_key, q.best_price,
                size=self.config.recommended_notional_size,
            )
            contract = outcome_to_contract(
                q.game_id,
                (q.away_team, q.home_team),
                q.market_type,
                q.outcome_key,
                q.best_price,
                point=q.point,
                resolution_time=q.commence_time,
                bookmaker=q.bookmaker,
            )
            # Mark against the consensus, not the price being taken
            contract = replace(contract, price=fair)
            risk = mark_to_market(position, contract)
            out.append(
                RankedOpportunity(
                    contract=contract,
                    position=position,
                    risk=risk,
                    score=contract.price - position.cost_per_share,
                    fair_probability=fair,
                    best_price=q.best_price,
                    bookmaker=q.bookmaker,
                    bookmakers=sorted(
                        b for b, p in q.prices_by_book.items() if p == q.best_price
                    ),
                    game_title=title,
                )
            )
        return _best_line_per_contract(out)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get_recommended_bets(self, domain: str, limit: int = 10) -> List[RankedOpportunity]:
        """
        Top ``limit`` opportunities for ``domain``.

        Raises:
            ValueError: blank domain or non-positive limit.
        """
        if not domain or not domain.strip():
            raise ValueError("domain is required")
        if limit <= 0:
            raise ValueError(f"limit must be positive, got {limit!r}")

        slate = self._slate(domain)
        game_ids = [g["id"] for g in slate if g.get("id")]
        if not game_ids:
            logger.info("No games on the %s slate", domain)
            return []

        games = self._fetch_games(domain, game_ids)

        opportunities: List[RankedOpportunity] = []
        skipped = 0
        for gid in game_ids:
            game = games.get(gid)
            if not game:
                skipped += 1
                continue
            try:
                opportunities.extend(self._score_game(game))
            except Exception as exc:
                skipped += 1
                logger.warning("Could not score game %s: %s", gid, exc)

        ranked = rank_opportunities(
            [o for o in opportunities if o.score > self.min_score]
        )
        logger.info(
            "Recommended bets for %s: %d candidates from %d games (%d skipped), returning %d",
            domain, len(ranked), len(game_ids), skipped, min(limit, len(ranked)),
        )
        return ranked[:limit]
