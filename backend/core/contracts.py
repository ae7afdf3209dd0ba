"""Unified position / contract model shared by every venue adapter.

Sportsbooks and prediction markets all map into these types; the risk engine
and the recommended-bets aggregator only ever see this module's classes.

Notes
-----
* Records are plain dataclasses rather than pydantic models.  Validation of
  *caller* input happens at the HTTP boundary (``backend.schemas``); the
  adapters are trusted producers and already sanitise prices.
* ``Contract.meta`` is a closed tagged union.  Each known producer has its
  own frozen dataclass carrying a ``kind`` discriminator, and anything else
  lands in :class:`OpaqueMeta`.  The risk engine reads ``point`` only through
  :func:`meta_point`, never by poking at a dict.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

Side = Literal["yes", "no"]
MarketType = Literal["moneyline", "spread", "total"]
OutcomeKey = Literal["away", "home", "over", "under"]

MARKET_TYPES = ("moneyline", "spread", "total")
# Both sides of each two-outcome market, away/over first
OUTCOME_PAIRS: Dict[str, Tuple[str, str]] = {
    "moneyline": ("away", "home"),
    "spread": ("away", "home"),
    "total": ("over", "under"),
}


class ContractSource(str, Enum):
    """Adapter identifier for a contract."""

    SPORTSBOOK = "sportsbook"
    KALSHI = "kalshi"
    POLYMARKET = "polymarket"


# ---------------------------------------------------------------------------
# Meta variants
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SportsbookMeta:
    point: Optional[float] = None
    bookmaker: Optional[str] = None
    kind: Literal["sportsbook"] = "sportsbook"


@dataclass(frozen=True)
class KalshiMeta:
    ticker: str
    event_ticker: Optional[str] = None
    market_type: Optional[str] = None
    volume: Optional[float] = None
    open_interest: Optional[float] = None
    kind: Literal["kalshi"] = "kalshi"


@dataclass(frozen=True)
class PolymarketMeta:
    condition_id: Optional[str] = None
    market_id: Optional[str] = None
    slug: Optional[str] = None
    volume: Optional[float] = None
    kind: Literal["polymarket"] = "polymarket"


@dataclass(frozen=True)
class OpaqueMeta:
    """Fallback for producers this package does not know about."""

    data: Dict[str, Any] = field(default_factory=dict)
    kind: Literal["opaque"] = "opaque"


ContractMeta = Union[SportsbookMeta, KalshiMeta, PolymarketMeta, OpaqueMeta]


def meta_point(meta: Optional[ContractMeta]) -> Optional[float]:
    """Line (spread / total points) carried by a sportsbook contract, if any."""
    if isinstance(meta, SportsbookMeta):
        return meta.point
    return None


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class Position:
    """A held exposure against a contract id."""

    contract_id: str
    side: Side
    size: float
    cost_per_share: float
    opened_at: Optional[datetime] = None


@dataclass
class Contract:
    """Current market quote for a single tradeable outcome."""

    id: str
    source: ContractSource
    title: str
    subtitle: str = ""
    price: float = 0.5
    bid: Optional[float] = None
    ask: Optional[float] = None
    resolution_time: Optional[datetime] = None
    meta: Optional[ContractMeta] = None
    factor_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source.value,
            "title": self.title,
            "subtitle": self.subtitle,
            "price": self.price,
            "bid": self.bid,
            "ask": self.ask,
            "resolution_time": (
                self.resolution_time.isoformat() if self.resolution_time else None
            ),
            "meta": asdict(self.meta) if self.meta is not None else None,
            "factor_ids": list(self.factor_ids),
        }


@dataclass
class Portfolio:
    positions: List[Position] = field(default_factory=list)
    contracts: List[Contract] = field(default_factory=list)
