"""Thematic risk factors for contracts.

A contract carries one or more factor ids so the risk engine can group
exposure by theme (an election, the Fed, crypto) across venues.  Prediction
markets are tagged by keyword matching on their title text; sportsbook
outcomes are always ``sports``.
"""

from __future__ import annotations

from typing import Dict, Final, Iterable, List, Tuple

OTHER_FACTOR: Final[str] = "other"
SPORTS_FACTOR: Final[str] = "sports"

FACTOR_NAMES: Dict[str, str] = {
    "republican_performance": "Republican / GOP performance",
    "democrat_performance": "Democrat performance",
    "presidency": "Presidency",
    "congress": "Congress",
    "fed_policy": "Fed / monetary policy",
    "inflation": "Inflation",
    SPORTS_FACTOR: "Sports",
    "crypto": "Crypto",
    OTHER_FACTOR: "Other",
}

# Lowercase substrings; every matching factor is assigned
KEYWORD_TO_FACTOR: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("republican", "gop", "trump", "maga", "conservative"), "republican_performance"),
    (("democrat", "democratic", "biden", "progressive"), "democrat_performance"),
    (("president", "presidency", "white house", "potus"), "presidency"),
    (("senate", "congress", "house of representatives", "house election"), "congress"),
    (("fed", "interest rate", "rate cut", "rate hike", "fomc"), "fed_policy"),
    (("inflation", "cpi", "pce"), "inflation"),
    (
        ("nfl", "nba", "mlb", "nhl", "super bowl", "world series",
         "championship", "mvp", "sports"),
        SPORTS_FACTOR,
    ),
    (("bitcoin", "crypto", "ethereum", "btc", "eth"), "crypto"),
)


def factor_ids_for_text(parts: Iterable[str]) -> List[str]:
    """
    Factor ids whose keywords appear in the joined ``parts``.

    Blank input or no match yields ``["other"]``.  Order follows
    :data:`KEYWORD_TO_FACTOR` so results are deterministic.
    """
    text = " ".join(p for p in parts if p).lower()
    matched = [
        factor_id
        for keywords, factor_id in KEYWORD_TO_FACTOR
        if any(k in text for k in keywords)
    ]
    return matched or [OTHER_FACTOR]


def factor_name(factor_id: str) -> str:
    return FACTOR_NAMES.get(factor_id, factor_id)
