"""
The Odds API integration for sportsbook quotes.
https://the-odds-api.com/

All requests ask for **decimal** odds so prices flow straight into
``backend.core.odds_math.to_cost_per_share`` without an American-odds hop.

Two line sets per game
----------------------
  best price (line shopping):
      Highest decimal price per outcome and line across every bookmaker.
      This is the price a position would actually be opened at.

  fair probability (no-vig consensus):
      Shin-devigged probability for each side of a two-outcome market,
      averaged over SHARP_BOOKS when any of them post both sides, otherwise
      over every book that does.  This is what the opportunity is marked
      against when scoring edge.  Each line is its own market: one book's
      -9.5 alternate spread is never averaged with another book's -3.5.
"""

import logging
import os
from typing import Dict, List, Optional, Tuple

import requests

from backend.core.contracts import OUTCOME_PAIRS
from backend.core.odds_math import remove_vig_shin
from backend.services.adapters import OutcomeQuote, extract_outcome_quotes, outcome_line

logger = logging.getLogger(__name__)

API_KEY = os.getenv("THE_ODDS_API_KEY")
BASE_URL = "https://api.the-odds-api.com/v4"

DEFAULT_MARKETS = "h2h,spreads,totals"

# Books whose prices best represent true market consensus.
SHARP_BOOKS: frozenset = frozenset({"pinnacle", "circasports"})


class OddsAPIClient:
    """Client for The Odds API"""

    def __init__(self, api_key: Optional[str] = None, timeout: float = 10):
        self.api_key = api_key or API_KEY
        if not self.api_key:
            raise ValueError("THE_ODDS_API_KEY not set in environment")
        self.timeout = timeout

    def _get(self, path: str, params: Dict):
        response = requests.get(
            f"{BASE_URL}{path}",
            params={"apiKey": self.api_key, **params},
            timeout=self.timeout,
        )
        response.raise_for_status()
        remaining = response.headers.get("x-requests-remaining")
        used = response.headers.get("x-requests-used")
        logger.debug("Odds API %s. Quota: %s used, %s remaining", path, used, remaining)
        return response.json()

    def get_sport_odds(
        self,
        sport_key: str,
        markets: str = DEFAULT_MARKETS,
        regions: Optional[str] = None,
    ) -> List[Dict]:
        """
        Fetch the current slate for ``sport_key`` (e.g. ``basketball_ncaab``).

        Returns list of games with odds from multiple bookmakers, or ``[]``
        when the upstream call fails.
        """
        params = {
            "regions": regions or os.getenv("ODDS_API_REGIONS", "us,eu"),
            "markets": markets,
            "oddsFormat": "decimal",
        }
        try:
            data = self._get(f"/sports/{sport_key}/odds", params)
        except requests.exceptions.RequestException as e:
            logger.error("Odds API error for %s: %s", sport_key, e)
            return []
        except ValueError as e:
            logger.error("Odds API returned invalid JSON for %s: %s", sport_key, e)
            return []

        if not isinstance(data, list):
            logger.error("Odds API returned unexpected payload for %s", sport_key)
            return []
        logger.info("Odds API: %d %s games fetched", len(data), sport_key)
        return data

    def get_event_odds(
        self,
        sport_key: str,
        event_id: str,
        markets: str = DEFAULT_MARKETS,
        regions: Optional[str] = None,
    ) -> Optional[Dict]:
        """Fetch odds for a single event; ``None`` on upstream failure."""
        params = {
            "regions": regions or os.getenv("ODDS_API_REGIONS", "us,eu"),
            "markets": markets,
            "oddsFormat": "decimal",
        }
        try:
            data = self._get(f"/sports/{sport_key}/events/{event_id}/odds", params)
        except requests.exceptions.RequestException as e:
            logger.error("Event odds error for %s/%s: %s", sport_key, event_id, e)
            return None
        except ValueError as e:
            logger.error("Event odds invalid JSON for %s/%s: %s", sport_key, event_id, e)
            return None
        return data if isinstance(data, dict) else None

    def parse_odds_for_game(self, game_data: Dict) -> Dict:
        """
        Parse raw odds data into best prices plus no-vig fair probabilities.

        Returns
        -------
        Dict with keys:
            game_id, commence_time, home_team, away_team
            quotes            — list of OutcomeQuote (best price per outcome)
            fair_probs        — {(market_type, outcome_key, point): probability}
            sharp_books_used  — number of sharp books in the consensus
        """
        quotes = extract_outcome_quotes(game_data)
        fair_probs, sharp_used = consensus_fair_probs(game_data)
        return {
            "game_id": game_data.get("id"),
            "commence_time": game_data.get("commence_time"),
            "home_team": game_data.get("home_team"),
            "away_team": game_data.get("away_team"),
            "quotes": quotes,
            "fair_probs": fair_probs,
            "sharp_books_used": sharp_used,
        }


_LineKey = Tuple[str, Optional[float]]
_FairKey = Tuple[str, str, Optional[float]]


def _book_pairs(game_data: Dict) -> Dict[str, Dict[_LineKey, Dict[str, OutcomeQuote]]]:
    """book → (market_type, line) → {outcome_key: single-book quote}"""
    per_book: Dict[str, Dict[_LineKey, Dict[str, OutcomeQuote]]] = {}
    for book in game_data.get("bookmakers") or []:
        # Re-use the adapter's outcome keying on a one-book slice
        single = dict(game_data, bookmakers=[book])
        for q in extract_outcome_quotes(single):
            line = outcome_line(q.market_type, q.outcome_key, q.point)
            per_book.setdefault(q.bookmaker or "", {}).setdefault(
                (q.market_type, line), {}
            )[q.outcome_key] = q
    return per_book


def consensus_fair_probs(game_data: Dict) -> Tuple[Dict[_FairKey, float], int]:
    """
    Average Shin no-vig probabilities across books posting both sides.

    Consensus is formed per line and keyed by each side's own point, so
    spread keys look like ``("spread", "home", -3.5)``.  Sharp books are
    preferred; retail books are only used when no sharp book has a
    complete pair on that line.
    """
    sharp: Dict[_LineKey, List[float]] = {}
    retail: Dict[_LineKey, List[float]] = {}
    sides: Dict[_LineKey, Tuple[OutcomeQuote, OutcomeQuote]] = {}

    for book_key, lines in _book_pairs(game_data).items():
        for line_key, quotes in lines.items():
            key_a, key_b = OUTCOME_PAIRS[line_key[0]]
            if key_a not in quotes or key_b not in quotes:
                continue
            side_a, side_b = quotes[key_a], quotes[key_b]
            p_a, _ = remove_vig_shin(side_a.best_price, side_b.best_price)
            bucket = sharp if book_key in SHARP_BOOKS else retail
            bucket.setdefault(line_key, []).append(p_a)
            sides[line_key] = (side_a, side_b)

    fair: Dict[_FairKey, float] = {}
    sharp_used = 0
    for line_key, (side_a, side_b) in sides.items():
        chosen = sharp.get(line_key) or retail[line_key]
        sharp_used = max(sharp_used, len(sharp.get(line_key, [])))
        p_a = sum(chosen) / len(chosen)
        market_type = line_key[0]
        fair[(market_type, side_a.outcome_key, side_a.point)] = p_a
        fair[(market_type, side_b.outcome_key, side_b.point)] = 1.0 - p_a

    return fair, sharp_used


def fair_prob_for(parsed: Dict, quote: OutcomeQuote) -> Optional[float]:
    """Consensus probability for ``quote`` on its own line, if one was formed."""
    return parsed["fair_probs"].get(
        (quote.market_type, quote.outcome_key, quote.point)
    )


if __name__ == "__main__":
    client = OddsAPIClient()
    games = client.get_sport_odds("basketball_ncaab")

    print(f"Found {len(games)} games:")
    for game in games[:3]:
        parsed = client.parse_odds_for_game(game)
        print(f"  {parsed['away_team']} @ {parsed['home_team']}")
        for q in parsed["quotes"]:
            print(
                f"    {q.market_type:<9} {q.outcome_key:<5} {q.point if q.point is not None else '':<6} "
                f"best {q.best_price:.3f} ({q.bookmaker}) fair {fair_prob_for(parsed, q)}"
            )
