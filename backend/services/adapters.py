"""
Venue adapters: sportsbook odds, Kalshi and Polymarket → unified records.

Every adapter produces the same two shapes defined in
``backend.core.contracts``:

    Contract  — current quote for one outcome (price in [0, 1])
    Position  — held exposure against a contract id

Contract-id scheme (deterministic, so repeated calls agree):

    sandbox:sports:{gameId}:{marketType}:{outcomeKey}
    kalshi:{ticker}:{yes|no}
    polymarket:{conditionId}:{yes|no}

Kalshi and Polymarket contracts are tagged with thematic ``factor_ids``
(``backend.core.factors``); sportsbook contracts are always ``sports``.

All prices pass through ``backend.core.odds_math`` before they leave this
module, so malformed upstream quotes degrade to a neutral 0.5 rather than
raising.  Malformed *identifiers* supplied by a caller are a ValueError.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from backend.core.contracts import (
    MARKET_TYPES,
    OUTCOME_PAIRS,
    Contract,
    ContractSource,
    KalshiMeta,
    PolymarketMeta,
    Position,
    SportsbookMeta,
)
from backend.core.factors import SPORTS_FACTOR, factor_ids_for_text
from backend.core.odds_math import (
    NEUTRAL_PRICE,
    cents_to_probability,
    clamp_probability,
    to_cost_per_share,
)

logger = logging.getLogger(__name__)

SPORTS_NAMESPACE = "sandbox"
SPORTS_DOMAIN = "sports"

# Odds API market key → unified market type
_ODDS_API_MARKETS = {"h2h": "moneyline", "spreads": "spread", "totals": "total"}

_CONTRACT_ID_RE = re.compile(r"^(kalshi|polymarket):(.+):(yes|no)$")


# ---------------------------------------------------------------------------
# Identity helpers
# ---------------------------------------------------------------------------

def _require_sports_keys(game_id: str, market_type: str, outcome_key: str) -> None:
    if not game_id or not str(game_id).strip():
        raise ValueError("game_id is required to build a sports contract id")
    if market_type not in MARKET_TYPES:
        raise ValueError(
            f"Unknown market type {market_type!r}; expected one of {MARKET_TYPES}"
        )
    allowed = OUTCOME_PAIRS[market_type]
    if outcome_key not in allowed:
        raise ValueError(
            f"Outcome key {outcome_key!r} is not valid for {market_type}; "
            f"expected one of {allowed}"
        )


def build_sports_contract_id(game_id: str, market_type: str, outcome_key: str) -> str:
    _require_sports_keys(game_id, market_type, outcome_key)
    return f"{SPORTS_NAMESPACE}:{SPORTS_DOMAIN}:{game_id}:{market_type}:{outcome_key}"


def kalshi_contract_id(ticker: str, side: str) -> str:
    return f"kalshi:{ticker}:{side}"


def polymarket_contract_id(condition_id: str, side: str) -> str:
    return f"polymarket:{condition_id}:{side}"


@dataclass(frozen=True)
class ParsedContractId:
    venue: str
    instrument: str
    side: Optional[str] = None
    game_id: Optional[str] = None
    market_type: Optional[str] = None
    outcome_key: Optional[str] = None


def parse_contract_id(contract_id: str) -> Optional[ParsedContractId]:
    """
    Recover provenance from a contract id.

    Returns None for ids this module did not produce.
    """
    prefix = f"{SPORTS_NAMESPACE}:{SPORTS_DOMAIN}:"
    if contract_id.startswith(prefix):
        rest = contract_id[len(prefix):]
        # game ids may themselves contain ':', so split from the right
        parts = rest.rsplit(":", 2)
        if len(parts) != 3:
            return None
        game_id, market_type, outcome_key = parts
        return ParsedContractId(
            venue="sportsbook",
            instrument=game_id,
            game_id=game_id,
            market_type=market_type,
            outcome_key=outcome_key,
        )

    match = _CONTRACT_ID_RE.match(contract_id)
    if match:
        return ParsedContractId(
            venue=match.group(1), instrument=match.group(2), side=match.group(3)
        )
    return None


def contract_group_key(contract_id: str) -> str:
    """Game (sportsbook) or underlying market (prediction venues) for a contract id."""
    parsed = parse_contract_id(contract_id)
    if parsed is None:
        return contract_id
    return f"{parsed.venue}:{parsed.instrument}"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """ISO-8601 string (``Z`` suffix allowed) → aware datetime; None on failure."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.debug("Unparseable timestamp %r", value)
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _format_point(point: Optional[float]) -> str:
    if point is None:
        return ""
    text = f"{point:g}"
    return f"+{text}" if point >= 0 else text


# ---------------------------------------------------------------------------
# Sports outcome → Position / Contract
# ---------------------------------------------------------------------------

def outcome_to_position(
    game_id: str,
    market_type: str,
    outcome_key: str,
    price: float,
    size: float = 100,
) -> Position:
    """Build a Position for a sportsbook outcome taken at decimal ``price``."""
    if size <= 0:
        raise ValueError(f"Position size must be positive, got {size!r}")
    return Position(
        contract_id=build_sports_contract_id(game_id, market_type, outcome_key),
        side="yes",
        size=size,
        cost_per_share=to_cost_per_share(price),
    )


def outcome_to_contract(
    game_id: str,
    team_names: Tuple[str, str],
    market_type: str,
    outcome_key: str,
    price: float,
    point: Optional[float] = None,
    resolution_time: Optional[datetime] = None,
    bookmaker: Optional[str] = None,
) -> Contract:
    """
    Build a Contract for a sportsbook outcome.

    ``team_names`` is ``(away, home)``.  Titles:
        moneyline → "Duke ML"
        spread    → "Duke +3.5" / "Duke -3.5"
        total     → "Over 145.5" / "Under 145.5"
    """
    contract_id = build_sports_contract_id(game_id, market_type, outcome_key)
    away_name, home_name = team_names
    team = away_name if outcome_key == "away" else home_name

    if market_type == "moneyline":
        title = f"{team} ML"
    elif market_type == "spread":
        title = f"{team} {_format_point(point)}".strip()
    else:
        label = "Over" if outcome_key == "over" else "Under"
        title = f"{label} {'' if point is None else f'{point:g}'}".strip()

    return Contract(
        id=contract_id,
        source=ContractSource.SPORTSBOOK,
        title=title,
        subtitle=market_type,
        price=to_cost_per_share(price),
        resolution_time=resolution_time,
        meta=SportsbookMeta(point=point, bookmaker=bookmaker),
        factor_ids=[SPORTS_FACTOR],
    )


# ---------------------------------------------------------------------------
# Sportsbook payload parsing
# ---------------------------------------------------------------------------

@dataclass
class OutcomeQuote:
    """Best available decimal price for one outcome across bookmakers."""

    game_id: str
    away_team: str
    home_team: str
    market_type: str
    outcome_key: str
    best_price: float
    bookmaker: Optional[str] = None
    point: Optional[float] = None
    commence_time: Optional[datetime] = None
    prices_by_book: Dict[str, float] = field(default_factory=dict)


def _outcome_key_for(market_type: str, name: str, home: str, away: str) -> Optional[str]:
    if market_type == "total":
        lowered = (name or "").lower()
        if lowered in ("over", "under"):
            return lowered
        return None
    if name == home:
        return "home"
    if name == away:
        return "away"
    return None


def outcome_line(
    market_type: str, outcome_key: str, point: Optional[float]
) -> Optional[float]:
    """
    Key shared by both sides of one line.

    Spreads are keyed by the away handicap (home -3.5 and away +3.5 are both
    ``3.5``), totals by the total itself.  Moneylines have no line.
    """
    if market_type == "moneyline" or point is None:
        return None
    if market_type == "spread" and outcome_key == "home":
        return -float(point)
    return float(point)


def extract_outcome_quotes(game: Dict) -> List[OutcomeQuote]:
    """
    Line-shop an Odds API game payload (decimal odds).

    One quote per (market, outcome, point): books only compete on price
    when they post the same line, so a -9.5 alternate spread never stands
    in for the -3.5 main line.
    """
    game_id = game.get("id")
    home = game.get("home_team") or ""
    away = game.get("away_team") or ""
    if not game_id:
        return []
    commence = parse_timestamp(game.get("commence_time"))

    best: Dict[Tuple[str, str, Optional[float]], OutcomeQuote] = {}
    for book in game.get("bookmakers") or []:
        book_key = (book.get("key") or "").lower()
        for market in book.get("markets") or []:
            market_type = _ODDS_API_MARKETS.get(market.get("key"))
            if market_type is None:
                continue
            for outcome in market.get("outcomes") or []:
                outcome_key = _outcome_key_for(
                    market_type, outcome.get("name"), home, away
                )
                price = outcome.get("price")
                if outcome_key is None or not isinstance(price, (int, float)):
                    continue
                point = outcome.get("point")
                key = (market_type, outcome_key, point)
                quote = best.get(key)
                if quote is None:
                    quote = OutcomeQuote(
                        game_id=game_id,
                        away_team=away,
                        home_team=home,
                        market_type=market_type,
                        outcome_key=outcome_key,
                        best_price=float(price),
                        bookmaker=book_key,
                        point=point,
                        commence_time=commence,
                    )
                    best[key] = quote
                elif price > quote.best_price:
                    quote.best_price = float(price)
                    quote.bookmaker = book_key
                quote.prices_by_book[book_key] = float(price)

    return list(best.values())


def main_line_quotes(quotes: Iterable[OutcomeQuote]) -> List[OutcomeQuote]:
    """
    Keep one line per market: the one posted by the most bookmakers.

    Ties go to the line seen first.  Both sides of the chosen line are kept,
    so the result never has two quotes for the same contract id.
    """
    by_line: Dict[Tuple[str, Optional[float]], List[OutcomeQuote]] = {}
    for q in quotes:
        line = outcome_line(q.market_type, q.outcome_key, q.point)
        by_line.setdefault((q.market_type, line), []).append(q)

    books = {
        key: sum(len(q.prices_by_book) for q in line_quotes)
        for key, line_quotes in by_line.items()
    }
    chosen: Dict[str, Tuple[str, Optional[float]]] = {}
    for key in by_line:
        current = chosen.get(key[0])
        if current is None or books[key] > books[current]:
            chosen[key[0]] = key

    return [q for key in chosen.values() for q in by_line[key]]


# ---------------------------------------------------------------------------
# Polymorphic adapter capability
# ---------------------------------------------------------------------------

class MarketAdapter(ABC):
    """Venue → unified records.  One subclass per venue."""

    source: ContractSource

    @abstractmethod
    def to_contracts(self, payload: Any) -> List[Contract]:
        """Map a venue market payload to contracts."""

    @abstractmethod
    def to_positions(self, payload: Any) -> List[Position]:
        """Map a venue positions payload to positions."""


class SportsbookAdapter(MarketAdapter):
    """Odds API game payloads (decimal odds)."""

    source = ContractSource.SPORTSBOOK

    def __init__(self, default_size: float = 100):
        self.default_size = default_size

    def to_contracts(self, payload: Dict) -> List[Contract]:
        return [
            outcome_to_contract(
                q.game_id,
                (q.away_team, q.home_team),
                q.market_type,
                q.outcome_key,
                q.best_price,
                point=q.point,
                resolution_time=q.commence_time,
                bookmaker=q.bookmaker,
            )
            for q in main_line_quotes(extract_outcome_quotes(payload))
        ]

    def to_positions(self, payload: Iterable[Dict]) -> List[Position]:
        """
        ``payload`` is a list of user selections::

            {"game_id": ..., "market_type": ..., "outcome_key": ...,
             "price": <decimal odds>, "size": <optional>}
        """
        return [
            outcome_to_position(
                item.get("game_id"),
                item.get("market_type"),
                item.get("outcome_key"),
                item.get("price"),
                size=item.get("size") or self.default_size,
            )
            for item in payload
        ]


class KalshiAdapter(MarketAdapter):
    """Kalshi market and ``portfolio/positions`` payloads."""

    source = ContractSource.KALSHI

    def to_contracts(self, payload: Dict) -> List[Contract]:
        market = payload
        ticker = market.get("ticker")
        if not ticker:
            return []
        yes_bid = market.get("yes_bid")
        yes_ask = market.get("yes_ask")
        if yes_bid is not None and yes_ask is not None:
            cents = (yes_bid + yes_ask) / 2.0
        else:
            cents = next(
                (
                    v
                    for v in (market.get("last_price"), yes_bid, yes_ask)
                    if v is not None
                ),
                None,
            )
        yes_price = cents_to_probability(cents)
        meta = KalshiMeta(
            ticker=ticker,
            event_ticker=market.get("event_ticker"),
            market_type=market.get("market_type"),
            volume=market.get("volume"),
            open_interest=market.get("open_interest"),
        )
        resolution = parse_timestamp(
            market.get("close_time") or market.get("expiration_time")
        )
        factor_ids = factor_ids_for_text(
            [market.get("title"), market.get("event_ticker")]
        )
        no_bid = market.get("no_bid")
        no_ask = market.get("no_ask")

        return [
            Contract(
                id=kalshi_contract_id(ticker, "yes"),
                source=self.source,
                title=market.get("title") or ticker,
                subtitle=market.get("yes_sub_title") or "Yes",
                price=yes_price,
                bid=yes_bid / 100 if yes_bid is not None else None,
                ask=yes_ask / 100 if yes_ask is not None else None,
                resolution_time=resolution,
                meta=meta,
                factor_ids=list(factor_ids),
            ),
            Contract(
                id=kalshi_contract_id(ticker, "no"),
                source=self.source,
                title=market.get("title") or ticker,
                subtitle=market.get("no_sub_title") or "No",
                price=1.0 - yes_price,
                bid=no_bid / 100 if no_bid is not None else None,
                ask=no_ask / 100 if no_ask is not None else None,
                resolution_time=resolution,
                meta=meta,
                factor_ids=list(factor_ids),
            ),
        ]

    def to_positions(self, payload: Sequence[Dict]) -> List[Position]:
        """
        ``position > 0`` → yes shares, ``< 0`` → no shares.  Cost per share
        is ``market_exposure_dollars / |position|``.
        """
        out: List[Position] = []
        for mp in payload:
            raw = mp.get("position") or 0
            if raw == 0 or not mp.get("ticker"):
                continue
            side = "yes" if raw > 0 else "no"
            size = abs(raw)
            try:
                exposure = float(mp.get("market_exposure_dollars") or "0")
                cost = clamp_probability(exposure / size)
            except (TypeError, ValueError):
                cost = NEUTRAL_PRICE
            out.append(
                Position(
                    contract_id=kalshi_contract_id(mp["ticker"], side),
                    side=side,
                    size=size,
                    cost_per_share=cost,
                )
            )
        return out


def _parse_outcome_prices(raw: Any) -> Tuple[float, float]:
    """Polymarket ``outcomePrices`` is a JSON-encoded list of strings."""
    if not raw:
        return NEUTRAL_PRICE, NEUTRAL_PRICE
    try:
        values = json.loads(raw) if isinstance(raw, str) else raw
        yes, no = float(values[0]), float(values[1])
    except (ValueError, TypeError, IndexError, KeyError):
        return NEUTRAL_PRICE, NEUTRAL_PRICE
    if yes != yes or no != no:  # NaN
        return NEUTRAL_PRICE, NEUTRAL_PRICE
    return yes, no


def _polymarket_factor_ids(market: Dict, event: Optional[Dict]) -> List[str]:
    event = event or {}
    parts = [market.get("question"), event.get("title")]
    for tag in event.get("tags") or []:
        parts.extend([tag.get("label"), tag.get("slug")])
    return factor_ids_for_text(parts)


class PolymarketAdapter(MarketAdapter):
    """Polymarket Gamma markets / events and Data-API positions."""

    source = ContractSource.POLYMARKET

    def to_contracts(self, payload: Dict) -> List[Contract]:
        # An event wraps several binary markets
        if "markets" in payload and "question" not in payload:
            out: List[Contract] = []
            for market in payload.get("markets") or []:
                out.extend(self._market_contracts(market, payload))
            return out
        return self._market_contracts(payload, None)

    def _market_contracts(self, market: Dict, event: Optional[Dict]) -> List[Contract]:
        condition_id = market.get("conditionId") or market.get("id")
        if not condition_id:
            return []
        yes_price, no_price = _parse_outcome_prices(market.get("outcomePrices"))
        title = market.get("question") or (event or {}).get("title") or "Market"
        resolution = parse_timestamp(
            market.get("endDateIso")
            or market.get("endDate")
            or (event or {}).get("endDate")
        )
        meta = PolymarketMeta(
            condition_id=market.get("conditionId"),
            market_id=market.get("id"),
            slug=market.get("slug"),
            volume=market.get("volumeNum"),
        )
        factor_ids = _polymarket_factor_ids(market, event)
        return [
            Contract(
                id=polymarket_contract_id(condition_id, "yes"),
                source=self.source,
                title=title,
                subtitle="Yes",
                price=yes_price,
                bid=market.get("bestBid"),
                ask=market.get("bestAsk"),
                resolution_time=resolution,
                meta=meta,
                factor_ids=list(factor_ids),
            ),
            Contract(
                id=polymarket_contract_id(condition_id, "no"),
                source=self.source,
                title=title,
                subtitle="No",
                price=no_price,
                resolution_time=resolution,
                meta=meta,
                factor_ids=list(factor_ids),
            ),
        ]

    def to_positions(self, payload: Sequence[Dict]) -> List[Position]:
        out: List[Position] = []
        for p in payload:
            condition_id = p.get("conditionId")
            size = p.get("size") or 0
            if not condition_id or size <= 0:
                continue
            side = "no" if (p.get("outcome") or "").lower() == "no" else "yes"
            out.append(
                Position(
                    contract_id=polymarket_contract_id(condition_id, side),
                    side=side,
                    size=float(size),
                    cost_per_share=clamp_probability(p.get("avgPrice")),
                )
            )
        return out


_ADAPTERS: Dict[ContractSource, MarketAdapter] = {
    ContractSource.SPORTSBOOK: SportsbookAdapter(),
    ContractSource.KALSHI: KalshiAdapter(),
    ContractSource.POLYMARKET: PolymarketAdapter(),
}


def get_adapter(source: ContractSource | str) -> MarketAdapter:
    """Look up the adapter for a venue."""
    return _ADAPTERS[ContractSource(source)]
