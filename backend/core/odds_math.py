"""Price and probability conversion — the single sanitising choke point.

Every function here is **pure**: no I/O, no logging, no side effects.
Adapters import from this module; never reimplement locally in services.

Venues quote the same idea three different ways:

1. **Sportsbooks** — decimal (European) or American odds.
2. **Kalshi** — cents per contract, 0–100.
3. **Polymarket** — dollars per share, already in [0, 1].

Everything is funnelled into a *cost per share* in ``[0.01, 0.99]``.  A price
of exactly 0 or 1 implies certainty and breaks downstream division and
log-odds, so it is never allowed past this module.

Malformed inputs are never an error: an unknown price is treated as a
coin-flip (``0.5``) so one bad upstream quote cannot crash a batch.

Run tests with::

    pytest tests/test_odds_math.py -v
"""

from __future__ import annotations

import math
from typing import Final

# ---------------------------------------------------------------------------
# Module-level constants
# ---------------------------------------------------------------------------

#: Lowest cost per share allowed into the risk pipeline.
MIN_COST_PER_SHARE: Final[float] = 0.01

#: Highest cost per share allowed into the risk pipeline.
MAX_COST_PER_SHARE: Final[float] = 0.99

#: Neutral price substituted for anything unparseable.
NEUTRAL_PRICE: Final[float] = 0.5

#: American-odds magnitude floor.  |odds| < 100 is not representable.
_MIN_ODDS_MAGNITUDE: Final[int] = 100

#: Convergence tolerance for the Shin bisection.
_SHIN_TOL: Final[float] = 1e-10

_SHIN_MAX_ITER: Final[int] = 200


def _as_finite(value) -> float | None:
    """Coerce to float, returning None for anything non-numeric or non-finite."""
    if isinstance(value, bool):
        return None
    try:
        out = float(value)
    except (TypeError, ValueError):
        return None
    return out if math.isfinite(out) else None


# ---------------------------------------------------------------------------
# Normalisation into cost-per-share
# ---------------------------------------------------------------------------


def clamp_probability(p) -> float:
    """Clamp a probability-like value into ``[0.01, 0.99]``.

    Non-finite input returns :data:`NEUTRAL_PRICE`.
    """
    value = _as_finite(p)
    if value is None:
        return NEUTRAL_PRICE
    return max(MIN_COST_PER_SHARE, min(MAX_COST_PER_SHARE, value))


def to_cost_per_share(decimal_price) -> float:
    """Decimal odds → cost per share (implied probability) in ``[0.01, 0.99]``.

    Examples::

        to_cost_per_share(2.0)          → 0.50
        to_cost_per_share(1.25)         → 0.80
        to_cost_per_share(500.0)        → 0.01   (clamped)
        to_cost_per_share(0)            → 0.50   (invalid → neutral)
        to_cost_per_share(float("nan")) → 0.50

    This function is total: it never raises.
    """
    price = _as_finite(decimal_price)
    if price is None or price <= 0.0:
        return NEUTRAL_PRICE
    return clamp_probability(1.0 / price)


def cents_to_probability(cents) -> float:
    """Kalshi cents (0–100) → probability in ``[0, 1]``.

    Missing or NaN prices return :data:`NEUTRAL_PRICE`.  The result is not
    clamped away from 0 and 1 because contract *quotes* may legitimately sit
    at the boundary; positions built from them go through
    :func:`clamp_probability`.
    """
    value = _as_finite(cents)
    if value is None:
        return NEUTRAL_PRICE
    return max(0.0, min(1.0, value / 100.0))


# ---------------------------------------------------------------------------
# Odds conversion
# ---------------------------------------------------------------------------


def american_to_decimal(american: int | float) -> float:
    """Convert American odds to decimal odds.

    Raises:
        ValueError: If ``|american| < 100``.
    """
    if abs(american) < _MIN_ODDS_MAGNITUDE:
        raise ValueError(
            f"Invalid American odds {american!r}: magnitude must be ≥ 100."
        )
    if american > 0:
        return american / 100.0 + 1.0
    return 100.0 / abs(american) + 1.0


def decimal_to_american(decimal_odds: float) -> int:
    """Convert decimal odds to the nearest American integer (display only).

    Raises:
        ValueError: If ``decimal_odds <= 1.0``.
    """
    if decimal_odds <= 1.0:
        raise ValueError(f"Decimal odds {decimal_odds!r} must be > 1.0.")
    if decimal_odds >= 2.0:
        return round((decimal_odds - 1.0) * 100)
    return round(-100.0 / (decimal_odds - 1.0))


def implied_prob(decimal_odds: float) -> float:
    """Raw (vig-inclusive) implied probability from decimal odds, unclamped."""
    return 1.0 / decimal_odds


# ---------------------------------------------------------------------------
# Vig removal
# ---------------------------------------------------------------------------


def remove_vig_proportional(prob_a: float, prob_b: float) -> tuple[float, float]:
    """Normalise two raw implied probabilities so they sum to one."""
    total = prob_a + prob_b
    if total <= 0:
        return NEUTRAL_PRICE, NEUTRAL_PRICE
    return prob_a / total, prob_b / total


def remove_vig_shin(decimal_a: float, decimal_b: float) -> tuple[float, float]:
    """No-vig probabilities for a two-outcome market via Shin (1993).

    The insider fraction ``z`` is estimated from the overround ``K`` and the
    Herfindahl index of the normalised raw probabilities::

        z = (K − 1) / (1 − Σ q_i²)

    and ``p_a`` is then solved by bisection on::

        (1 − z)·p + z·p² / (p² + (1 − p)²) = q_a

    Near-symmetric markets and markets with no overround fall back to
    proportional normalisation.  Invalid odds (≤ 1.0) return a neutral pair.
    """
    if decimal_a <= 1.0 or decimal_b <= 1.0:
        return NEUTRAL_PRICE, NEUTRAL_PRICE

    raw_a = implied_prob(decimal_a)
    raw_b = implied_prob(decimal_b)
    overround = raw_a + raw_b
    q_a, q_b = remove_vig_proportional(raw_a, raw_b)

    if overround <= 1.0 or abs(q_a - 0.5) < 1e-3:
        return q_a, q_b

    herfindahl = q_a ** 2 + q_b ** 2
    z = (overround - 1.0) / max(1.0 - herfindahl, 1e-10)
    z = max(0.0, min(z, 0.499))

    lo, hi = 1e-9, 1.0 - 1e-9
    for _ in range(_SHIN_MAX_ITER):
        mid = (lo + hi) * 0.5
        denom = mid ** 2 + (1.0 - mid) ** 2
        value = (1.0 - z) * mid + z * mid ** 2 / denom
        if value < q_a:
            lo = mid
        else:
            hi = mid
        if hi - lo < _SHIN_TOL:
            break

    p_a = (lo + hi) * 0.5
    return p_a, 1.0 - p_a
