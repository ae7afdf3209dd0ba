"""
Pydantic request/response schemas for the unified market risk API.

Request models validate caller input at the HTTP boundary and convert into
the plain dataclasses in ``backend.core.contracts`` via ``to_domain()``;
nothing below the HTTP layer depends on pydantic.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

from backend.core.contracts import (
    Contract,
    ContractSource,
    KalshiMeta,
    OpaqueMeta,
    PolymarketMeta,
    Portfolio,
    Position,
    SportsbookMeta,
)
from backend.core.odds_math import MAX_COST_PER_SHARE, MIN_COST_PER_SHARE


# ---------------------------------------------------------------------------
# Portfolio input
# ---------------------------------------------------------------------------

class PositionIn(BaseModel):
    contract_id: str = Field(..., min_length=1, description="e.g. kalshi:KXBTC-25:yes")
    side: Literal["yes", "no"]
    size: float = Field(..., gt=0, description="Shares / units held")
    cost_per_share: float = Field(..., ge=MIN_COST_PER_SHARE, le=MAX_COST_PER_SHARE)
    opened_at: Optional[datetime] = None

    @field_validator("contract_id")
    @classmethod
    def strip_contract_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("contract_id cannot be blank")
        return v

    def to_domain(self) -> Position:
        return Position(
            contract_id=self.contract_id,
            side=self.side,
            size=self.size,
            cost_per_share=self.cost_per_share,
            opened_at=self.opened_at,
        )


class SportsbookMetaIn(BaseModel):
    kind: Literal["sportsbook"] = "sportsbook"
    point: Optional[float] = None
    bookmaker: Optional[str] = None


class KalshiMetaIn(BaseModel):
    kind: Literal["kalshi"] = "kalshi"
    ticker: str
    event_ticker: Optional[str] = None
    market_type: Optional[str] = None
    volume: Optional[float] = None
    open_interest: Optional[float] = None


class PolymarketMetaIn(BaseModel):
    kind: Literal["polymarket"] = "polymarket"
    condition_id: Optional[str] = None
    market_id: Optional[str] = None
    slug: Optional[str] = None
    volume: Optional[float] = None


class OpaqueMetaIn(BaseModel):
    kind: Literal["opaque"] = "opaque"
    data: Dict[str, Any] = Field(default_factory=dict)


MetaIn = Annotated[
    Union[SportsbookMetaIn, KalshiMetaIn, PolymarketMetaIn, OpaqueMetaIn],
    Field(discriminator="kind"),
]

_META_TYPES = {
    "sportsbook": SportsbookMeta,
    "kalshi": KalshiMeta,
    "polymarket": PolymarketMeta,
    "opaque": OpaqueMeta,
}


class ContractIn(BaseModel):
    id: str = Field(..., min_length=1)
    source: ContractSource
    title: str = ""
    subtitle: str = ""
    price: float = Field(..., ge=0.0, le=1.0)
    bid: Optional[float] = Field(None, ge=0.0, le=1.0)
    ask: Optional[float] = Field(None, ge=0.0, le=1.0)
    resolution_time: Optional[datetime] = None
    meta: Optional[MetaIn] = None
    factor_ids: List[str] = Field(default_factory=list)

    def to_domain(self) -> Contract:
        meta = None
        if self.meta is not None:
            fields = self.meta.model_dump(exclude={"kind"})
            meta = _META_TYPES[self.meta.kind](**fields)
        return Contract(
            id=self.id,
            source=self.source,
            title=self.title,
            subtitle=self.subtitle,
            price=self.price,
            bid=self.bid,
            ask=self.ask,
            resolution_time=self.resolution_time,
            meta=meta,
            factor_ids=list(self.factor_ids),
        )


class PortfolioAnalyzeRequest(BaseModel):
    """Payload for POST /api/risk/analyze."""

    positions: List[PositionIn]
    contracts: List[ContractIn] = Field(default_factory=list)
    concentration_threshold: Optional[float] = Field(None, gt=0.0, le=1.0)

    def to_domain(self) -> Portfolio:
        return Portfolio(
            positions=[p.to_domain() for p in self.positions],
            contracts=[c.to_domain() for c in self.contracts],
        )

    model_config = {
        "json_schema_extra": {
            "example": {
                "positions": [
                    {
                        "contract_id": "sandbox:sports:abc123:moneyline:away",
                        "side": "yes",
                        "size": 100,
                        "cost_per_share": 0.5,
                    }
                ],
                "contracts": [
                    {
                        "id": "sandbox:sports:abc123:moneyline:away",
                        "source": "sportsbook",
                        "title": "Duke ML",
                        "subtitle": "moneyline",
                        "price": 0.55,
                    }
                ],
            }
        }
    }


# ---------------------------------------------------------------------------
# Decision engine runs
# ---------------------------------------------------------------------------

class SlatePositionIn(BaseModel):
    candidate_id: str
    stake_usd: float = Field(0.0, ge=0.0)
    expected_value: float = 0.0


class DecisionRunCreate(BaseModel):
    """Payload for POST /api/decision-engine/runs."""

    user_id: Optional[str] = None
    bankroll: Optional[float] = Field(None, gt=0)
    sport: str = Field(..., min_length=1)
    config_version: int = Field(..., ge=1)
    candidate_count: int = Field(0, ge=0)
    positions: List[SlatePositionIn] = Field(default_factory=list)
    alternatives: List[Dict[str, Any]] = Field(default_factory=list)
    constraints: Dict[str, Any] = Field(default_factory=dict)


class DecisionOutcomeIn(BaseModel):
    position_index: int = Field(..., ge=0)
    prediction_id: Optional[str] = None
    ats_result: Literal[1, -1, 0]
    net_units: float


class DecisionRunValidate(BaseModel):
    """Payload for POST /api/decision-engine/runs/{run_id}/validate."""

    outcomes: List[DecisionOutcomeIn] = Field(..., min_length=1)


class DecisionRunResponse(BaseModel):
    id: int
    timestamp: Optional[str] = None
    config_version: int
    sport: Optional[str] = None
    selected_count: Optional[int] = None
    validated: bool
    actual_ats: Optional[float] = None
    actual_net_units: Optional[float] = None
    max_drawdown: Optional[float] = None


class VsControl(BaseModel):
    improvement: float
    control_version: Optional[int] = None
    control_sample_size: int = 0


class PerformanceReportResponse(BaseModel):
    config_version: int
    window_days: int
    sample_size: int
    mean_regret: float
    win_rate: float
    avg_net_units: float
    worst_drawdown_observed: float
    avg_positions: float
    avg_ats: float
    benchmark: float
    vs_control: VsControl
    by_sport: Dict[str, Dict[str, float]]
    insufficient_data: bool


class DecisionPerformanceResponse(BaseModel):
    config_version: int
    performance: PerformanceReportResponse
    recent_runs: List[DecisionRunResponse]


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

class JobExecutionResponse(BaseModel):
    id: int
    job_name: str
    status: Literal["success", "partial", "failed"]
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration_ms: Optional[int] = None
    error: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
