"""
Tests for venue adapters (sportsbook, Kalshi, Polymarket)
Run with: pytest tests/test_adapters.py -v
"""

from datetime import datetime, timezone

import pytest

from backend.core.contracts import (
    ContractSource,
    KalshiMeta,
    PolymarketMeta,
    SportsbookMeta,
    meta_point,
)
from backend.services.adapters import (
    KalshiAdapter,
    PolymarketAdapter,
    SportsbookAdapter,
    build_sports_contract_id,
    contract_group_key,
    extract_outcome_quotes,
    get_adapter,
    main_line_quotes,
    outcome_to_contract,
    outcome_line,
    outcome_to_position,
    parse_contract_id,
    parse_timestamp,
)


def _odds_api_game():
    return {
        "id": "evt1",
        "commence_time": "2026-03-01T00:00:00Z",
        "home_team": "Duke",
        "away_team": "UNC",
        "bookmakers": [
            {
                "key": "draftkings",
                "markets": [
                    {"key": "h2h", "outcomes": [
                        {"name": "Duke", "price": 1.60},
                        {"name": "UNC", "price": 2.40},
                    ]},
                    {"key": "spreads", "outcomes": [
                        {"name": "Duke", "price": 1.91, "point": -4.5},
                        {"name": "UNC", "price": 1.91, "point": 4.5},
                    ]},
                    {"key": "totals", "outcomes": [
                        {"name": "Over", "price": 1.87, "point": 145.5},
                        {"name": "Under", "price": 1.95, "point": 145.5},
                    ]},
                ],
            },
            {
                "key": "FanDuel",
                "markets": [
                    {"key": "h2h", "outcomes": [
                        {"name": "Duke", "price": 1.55},
                        {"name": "UNC", "price": 2.55},
                    ]},
                    {"key": "spreads", "outcomes": [
                        {"name": "Duke", "price": 1.95, "point": -5.0},
                        {"name": "UNC", "price": 1.87, "point": 5.0},
                    ]},
                ],
            },
        ],
    }


# ---------------------------------------------------------------------------
# Sports outcome → Position / Contract
# ---------------------------------------------------------------------------

class TestOutcomeToPosition:

    def test_moneyline_away_at_even_money(self):
        pos = outcome_to_position("g1", "moneyline", "away", 2.0)
        assert pos.contract_id == "sandbox:sports:g1:moneyline:away"
        assert pos.side == "yes"
        assert pos.size == 100
        assert pos.cost_per_share == pytest.approx(0.50)

    def test_idempotent(self):
        a = outcome_to_position("g1", "spread", "home", 1.91)
        b = outcome_to_position("g1", "spread", "home", 1.91)
        assert a.contract_id == b.contract_id
        assert a.cost_per_share == b.cost_per_share

    def test_bad_price_is_neutral(self):
        pos = outcome_to_position("g1", "total", "over", float("nan"))
        assert pos.cost_per_share == 0.5

    @pytest.mark.parametrize("game_id, market, outcome", [
        ("", "moneyline", "away"),
        ("   ", "moneyline", "away"),
        ("g1", "parlay", "away"),
        ("g1", "moneyline", "draw"),
        ("g1", "moneyline", "over"),
        ("g1", "spread", "under"),
        ("g1", "total", "away"),
    ])
    def test_invalid_identifiers_raise(self, game_id, market, outcome):
        with pytest.raises(ValueError):
            outcome_to_position(game_id, market, outcome, 2.0)

    def test_non_positive_size_raises(self):
        with pytest.raises(ValueError):
            outcome_to_position("g1", "moneyline", "away", 2.0, size=0)


class TestOutcomeToContract:

    def test_moneyline_title(self):
        c = outcome_to_contract("g1", ("UNC", "Duke"), "moneyline", "home", 1.6)
        assert c.title == "Duke ML"
        assert c.subtitle == "moneyline"
        assert c.source == ContractSource.SPORTSBOOK
        assert c.price == pytest.approx(1 / 1.6)

    def test_spread_title_positive_point_gets_plus(self):
        c = outcome_to_contract("g1", ("UNC", "Duke"), "spread", "away", 1.91, point=4.5)
        assert c.title == "UNC +4.5"

    def test_spread_title_negative_point(self):
        c = outcome_to_contract("g1", ("UNC", "Duke"), "spread", "home", 1.91, point=-4.5)
        assert c.title == "Duke -4.5"

    def test_spread_zero_point_is_pick_plus(self):
        c = outcome_to_contract("g1", ("UNC", "Duke"), "spread", "home", 1.91, point=0)
        assert c.title == "Duke +0"

    def test_total_titles(self):
        over = outcome_to_contract("g1", ("UNC", "Duke"), "total", "over", 1.87, point=145.5)
        under = outcome_to_contract("g1", ("UNC", "Duke"), "total", "under", 1.95, point=145.5)
        assert over.title == "Over 145.5"
        assert under.title == "Under 145.5"

    def test_missing_point_renders_empty(self):
        spread = outcome_to_contract("g1", ("UNC", "Duke"), "spread", "away", 1.91)
        total = outcome_to_contract("g1", ("UNC", "Duke"), "total", "over", 1.91)
        assert spread.title == "UNC"
        assert total.title == "Over"

    def test_meta_is_typed(self):
        c = outcome_to_contract("g1", ("UNC", "Duke"), "spread", "away", 1.91, point=3.5)
        assert isinstance(c.meta, SportsbookMeta)
        assert meta_point(c.meta) == 3.5

    def test_same_id_as_position(self):
        c = outcome_to_contract("g1", ("UNC", "Duke"), "total", "under", 1.95, point=140)
        p = outcome_to_position("g1", "total", "under", 1.95)
        assert c.id == p.contract_id


# ---------------------------------------------------------------------------
# Contract ids
# ---------------------------------------------------------------------------

def test_parse_sports_id_with_colon_in_game_id():
    cid = build_sports_contract_id("ns:42", "total", "over")
    parsed = parse_contract_id(cid)
    assert parsed.venue == "sportsbook"
    assert parsed.game_id == "ns:42"
    assert parsed.market_type == "total"
    assert parsed.outcome_key == "over"


@pytest.mark.parametrize("cid, venue, instrument, side", [
    ("kalshi:KXBTC-25:yes", "kalshi", "KXBTC-25", "yes"),
    ("polymarket:0xabc:no", "polymarket", "0xabc", "no"),
])
def test_parse_prediction_market_ids(cid, venue, instrument, side):
    parsed = parse_contract_id(cid)
    assert (parsed.venue, parsed.instrument, parsed.side) == (venue, instrument, side)


def test_parse_unknown_id():
    assert parse_contract_id("something-else") is None
    assert contract_group_key("something-else") == "something-else"


def test_group_key_shared_by_game():
    a = contract_group_key("sandbox:sports:g1:moneyline:away")
    b = contract_group_key("sandbox:sports:g1:total:over")
    assert a == b == "sportsbook:g1"


def test_parse_timestamp_z_suffix():
    ts = parse_timestamp("2026-03-01T00:00:00Z")
    assert ts == datetime(2026, 3, 1, tzinfo=timezone.utc)
    assert parse_timestamp("not a date") is None
    assert parse_timestamp(None) is None


# ---------------------------------------------------------------------------
# Sportsbook payloads
# ---------------------------------------------------------------------------

class TestSportsbookAdapter:

    def _quotes(self, game):
        return {(q.market_type, q.outcome_key, q.point): q for q in extract_outcome_quotes(game)}

    def test_line_shopping_picks_best_price(self):
        quotes = self._quotes(_odds_api_game())
        assert quotes[("moneyline", "away", None)].best_price == 2.55
        assert quotes[("moneyline", "away", None)].bookmaker == "fanduel"
        assert quotes[("moneyline", "home", None)].best_price == 1.60

    def test_different_lines_are_never_merged(self):
        quotes = self._quotes(_odds_api_game())
        assert quotes[("spread", "home", -5.0)].best_price == 1.95
        assert quotes[("spread", "home", -5.0)].bookmaker == "fanduel"
        assert quotes[("spread", "home", -4.5)].best_price == 1.91
        assert quotes[("spread", "home", -4.5)].bookmaker == "draftkings"

    def test_same_line_competes_on_price(self):
        game = _odds_api_game()
        game["bookmakers"][1]["markets"][1]["outcomes"] = [
            {"name": "Duke", "price": 1.95, "point": -4.5},
            {"name": "UNC", "price": 1.87, "point": 4.5},
        ]
        quotes = self._quotes(game)
        home = quotes[("spread", "home", -4.5)]
        assert home.best_price == 1.95
        assert home.prices_by_book == {"draftkings": 1.91, "fanduel": 1.95}
        assert ("spread", "home", -5.0) not in quotes

    @pytest.mark.parametrize("market, outcome, point, line", [
        ("spread", "home", -3.5, 3.5),
        ("spread", "away", 3.5, 3.5),
        ("total", "under", 145.5, 145.5),
        ("moneyline", "home", None, None),
        ("spread", "home", None, None),
    ])
    def test_outcome_line(self, market, outcome, point, line):
        assert outcome_line(market, outcome, point) == line

    def test_main_line_is_most_posted(self):
        game = _odds_api_game()
        game["bookmakers"].append({"key": "betmgm", "markets": [
            {"key": "spreads", "outcomes": [
                {"name": "Duke", "price": 1.90, "point": -5.0},
                {"name": "UNC", "price": 1.90, "point": 5.0},
            ]},
        ]})
        spreads = [
            q for q in main_line_quotes(extract_outcome_quotes(game))
            if q.market_type == "spread"
        ]
        assert sorted((q.outcome_key, q.point) for q in spreads) == [("away", 5.0), ("home", -5.0)]

    def test_to_contracts(self):
        contracts = SportsbookAdapter().to_contracts(_odds_api_game())
        ids = {c.id for c in contracts}
        assert "sandbox:sports:evt1:total:under" in ids
        assert len(contracts) == 6
        titles = {c.title for c in contracts if c.subtitle == "spread"}
        # both books post one line each, so the first-seen line wins
        assert titles == {"UNC +4.5", "Duke -4.5"}
        assert all(c.factor_ids == ["sports"] for c in contracts)
        assert all(c.resolution_time == datetime(2026, 3, 1, tzinfo=timezone.utc) for c in contracts)

    def test_to_positions(self):
        positions = SportsbookAdapter().to_positions([
            {"game_id": "evt1", "market_type": "moneyline", "outcome_key": "away", "price": 2.0},
            {"game_id": "evt1", "market_type": "total", "outcome_key": "over", "price": 1.87, "size": 25},
        ])
        assert positions[0].size == 100
        assert positions[1].size == 25

    def test_missing_game_id_yields_nothing(self):
        game = _odds_api_game()
        game.pop("id")
        assert extract_outcome_quotes(game) == []


# ---------------------------------------------------------------------------
# Kalshi
# ---------------------------------------------------------------------------

class TestKalshiAdapter:

    def test_market_mid_price(self):
        yes, no = KalshiAdapter().to_contracts({
            "ticker": "KXBTC-25",
            "title": "BTC above 100k?",
            "yes_bid": 40,
            "yes_ask": 44,
            "close_time": "2026-12-31T23:59:00Z",
        })
        assert yes.id == "kalshi:KXBTC-25:yes"
        assert yes.price == pytest.approx(0.42)
        assert no.price == pytest.approx(0.58)
        assert yes.bid == pytest.approx(0.40)
        assert isinstance(yes.meta, KalshiMeta)
        assert yes.resolution_time.year == 2026
        assert yes.factor_ids == ["crypto"]
        assert no.factor_ids == ["crypto"]

    def test_market_falls_back_to_last_price(self):
        yes, _ = KalshiAdapter().to_contracts({"ticker": "T", "last_price": 30, "yes_bid": 10})
        assert yes.price == pytest.approx(0.30)

    def test_market_without_prices_is_neutral(self):
        yes, no = KalshiAdapter().to_contracts({"ticker": "T"})
        assert yes.price == 0.5 and no.price == 0.5
        assert yes.factor_ids == ["other"]

    def test_factor_ids_from_event_ticker(self):
        yes, _ = KalshiAdapter().to_contracts({
            "ticker": "KXFEDDECISION-26MAR-C25",
            "event_ticker": "KXFEDDECISION-26MAR",
            "title": "Will there be a rate cut in March?",
        })
        assert yes.factor_ids == ["fed_policy"]

    def test_positions(self):
        positions = KalshiAdapter().to_positions([
            {"ticker": "A", "position": 10, "market_exposure_dollars": "4.00"},
            {"ticker": "B", "position": -5, "market_exposure_dollars": "3.00"},
            {"ticker": "C", "position": 0, "market_exposure_dollars": "0"},
            {"ticker": "D", "position": 4, "market_exposure_dollars": None},
        ])
        assert [p.contract_id for p in positions] == ["kalshi:A:yes", "kalshi:B:no", "kalshi:D:yes"]
        assert positions[0].cost_per_share == pytest.approx(0.40)
        assert positions[1].size == 5
        assert positions[1].cost_per_share == pytest.approx(0.60)
        # zero exposure clamps to the floor
        assert positions[2].cost_per_share == pytest.approx(0.01)

    def test_unparseable_exposure_is_neutral(self):
        [pos] = KalshiAdapter().to_positions(
            [{"ticker": "A", "position": 2, "market_exposure_dollars": "n/a"}]
        )
        assert pos.cost_per_share == 0.5


# ---------------------------------------------------------------------------
# Polymarket
# ---------------------------------------------------------------------------

class TestPolymarketAdapter:

    def test_market_outcome_prices(self):
        yes, no = PolymarketAdapter().to_contracts({
            "conditionId": "0xcond",
            "question": "Will it rain?",
            "outcomePrices": '["0.63", "0.37"]',
            "endDate": "2026-05-01T00:00:00Z",
        })
        assert yes.id == "polymarket:0xcond:yes"
        assert yes.price == pytest.approx(0.63)
        assert no.price == pytest.approx(0.37)
        assert isinstance(yes.meta, PolymarketMeta)

    def test_bad_outcome_prices_default(self):
        yes, no = PolymarketAdapter().to_contracts(
            {"id": "m1", "question": "Q", "outcomePrices": "garbage"}
        )
        assert yes.id == "polymarket:m1:yes"
        assert (yes.price, no.price) == (0.5, 0.5)

    def test_event_flattens_markets(self):
        contracts = PolymarketAdapter().to_contracts({
            "title": "Election",
            "markets": [
                {"conditionId": "c1", "question": "A?", "outcomePrices": '["0.2","0.8"]'},
                {"conditionId": "c2", "question": "B?", "outcomePrices": '["0.7","0.3"]'},
            ],
        })
        assert len(contracts) == 4

    def test_factor_ids_from_event_title_and_tags(self):
        contracts = PolymarketAdapter().to_contracts({
            "title": "Midterms",
            "tags": [{"label": "Politics", "slug": "senate"}],
            "markets": [
                {"conditionId": "c1", "question": "Will the GOP win?", "outcomePrices": '["0.5","0.5"]'},
            ],
        })
        assert [c.factor_ids for c in contracts] == [
            ["republican_performance", "congress"],
            ["republican_performance", "congress"],
        ]

    def test_untagged_market_is_other(self):
        yes, _ = PolymarketAdapter().to_contracts(
            {"conditionId": "c1", "question": "Will it snow in Miami?"}
        )
        assert yes.factor_ids == ["other"]

    def test_positions(self):
        positions = PolymarketAdapter().to_positions([
            {"conditionId": "c1", "outcome": "Yes", "size": 50, "avgPrice": 0.4},
            {"conditionId": "c2", "outcome": "No", "size": 10, "avgPrice": 0.0},
            {"conditionId": "c3", "outcome": "Yes", "size": 0, "avgPrice": 0.5},
        ])
        assert [p.side for p in positions] == ["yes", "no"]
        assert positions[0].cost_per_share == pytest.approx(0.4)
        assert positions[1].cost_per_share == pytest.approx(0.01)


def test_get_adapter_by_source():
    assert isinstance(get_adapter("kalshi"), KalshiAdapter)
    assert isinstance(get_adapter(ContractSource.POLYMARKET), PolymarketAdapter)
    with pytest.raises(ValueError):
        get_adapter("betfair")
