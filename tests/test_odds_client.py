"""Tests for the Odds API client and consensus pricing."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from backend.services.odds import OddsAPIClient, consensus_fair_probs


def _response(payload, status=200):
    resp = MagicMock()
    resp.json.return_value = payload
    resp.headers = {"x-requests-remaining": "480", "x-requests-used": "20"}
    if status >= 400:
        resp.raise_for_status.side_effect = requests.exceptions.HTTPError(f"{status}")
    return resp


def _book(key, away_price, home_price, over=None, under=None):
    markets = [{"key": "h2h", "outcomes": [
        {"name": "UNC", "price": away_price},
        {"name": "Duke", "price": home_price},
    ]}]
    if over is not None:
        markets.append({"key": "totals", "outcomes": [
            {"name": "Over", "price": over, "point": 145.5},
            {"name": "Under", "price": under, "point": 145.5},
        ]})
    return {"key": key, "markets": markets}


def _spreads(key, home_point, home_price, away_price):
    return {"key": key, "markets": [{"key": "spreads", "outcomes": [
        {"name": "Duke", "price": home_price, "point": home_point},
        {"name": "UNC", "price": away_price, "point": -home_point},
    ]}]}


def _game(*books):
    return {
        "id": "evt1",
        "commence_time": "2026-03-01T00:00:00Z",
        "home_team": "Duke",
        "away_team": "UNC",
        "bookmakers": list(books),
    }


@pytest.fixture
def client():
    return OddsAPIClient(api_key="k")


def test_missing_api_key(monkeypatch):
    monkeypatch.setattr("backend.services.odds.API_KEY", None)
    with pytest.raises(ValueError):
        OddsAPIClient()


class TestGetSportOdds:

    @patch("backend.services.odds.requests.get")
    def test_requests_decimal_odds(self, mock_get, client):
        mock_get.return_value = _response([_game()])
        games = client.get_sport_odds("basketball_ncaab")
        assert len(games) == 1
        url = mock_get.call_args.args[0]
        params = mock_get.call_args.kwargs["params"]
        assert url.endswith("/sports/basketball_ncaab/odds")
        assert params["oddsFormat"] == "decimal"
        assert params["apiKey"] == "k"
        assert params["markets"] == "h2h,spreads,totals"

    @patch("backend.services.odds.requests.get")
    def test_http_error_returns_empty(self, mock_get, client):
        mock_get.return_value = _response({}, status=500)
        assert client.get_sport_odds("basketball_ncaab") == []

    @patch("backend.services.odds.requests.get")
    def test_timeout_returns_empty(self, mock_get, client):
        mock_get.side_effect = requests.exceptions.Timeout("slow")
        assert client.get_sport_odds("basketball_ncaab") == []

    @patch("backend.services.odds.requests.get")
    def test_unexpected_payload_returns_empty(self, mock_get, client):
        mock_get.return_value = _response({"message": "quota exceeded"})
        assert client.get_sport_odds("basketball_ncaab") == []


class TestGetEventOdds:

    @patch("backend.services.odds.requests.get")
    def test_event_path(self, mock_get, client):
        mock_get.return_value = _response(_game())
        game = client.get_event_odds("basketball_ncaab", "evt1")
        assert game["id"] == "evt1"
        assert mock_get.call_args.args[0].endswith("/sports/basketball_ncaab/events/evt1/odds")

    @patch("backend.services.odds.requests.get")
    def test_failure_returns_none(self, mock_get, client):
        mock_get.side_effect = requests.exceptions.ConnectionError("down")
        assert client.get_event_odds("basketball_ncaab", "evt1") is None


class TestConsensus:

    def test_sharp_books_preferred(self):
        game = _game(
            _book("pinnacle", 1.90, 1.90),
            _book("draftkings", 3.00, 1.40),
        )
        fair, sharp_used = consensus_fair_probs(game)
        assert sharp_used == 1
        assert fair[("moneyline", "away", None)] == pytest.approx(0.5)
        assert fair[("moneyline", "home", None)] == pytest.approx(0.5)

    def test_retail_fallback_averages_books(self):
        game = _game(
            _book("draftkings", 1.90, 1.90),
            _book("fanduel", 1.91, 1.91),
        )
        fair, sharp_used = consensus_fair_probs(game)
        assert sharp_used == 0
        assert fair[("moneyline", "away", None)] == pytest.approx(0.5)

    def test_incomplete_pair_skipped(self):
        game = _game({"key": "draftkings", "markets": [{"key": "h2h", "outcomes": [
            {"name": "UNC", "price": 2.1},
        ]}]})
        fair, _ = consensus_fair_probs(game)
        assert fair == {}

    def test_pairs_sum_to_one(self):
        game = _game(_book("pinnacle", 2.70, 1.50, over=1.87, under=1.95))
        fair, _ = consensus_fair_probs(game)
        assert fair[("moneyline", "away", None)] + fair[("moneyline", "home", None)] == pytest.approx(1.0)
        assert fair[("total", "over", 145.5)] + fair[("total", "under", 145.5)] == pytest.approx(1.0)

    def test_each_line_is_its_own_market(self):
        game = _game(
            _spreads("pinnacle", -3.5, 1.91, 1.91),
            _spreads("altbook", -9.5, 2.60, 1.50),
        )
        fair, sharp_used = consensus_fair_probs(game)
        assert sharp_used == 1
        assert fair[("spread", "home", -3.5)] == pytest.approx(0.5)
        assert fair[("spread", "away", 3.5)] == pytest.approx(0.5)
        # the alternate line is priced from its own book, not pinnacle's -3.5
        assert fair[("spread", "home", -9.5)] < 0.4
        assert fair[("spread", "home", -9.5)] + fair[("spread", "away", 9.5)] == pytest.approx(1.0)

    def test_sharp_preference_is_per_line(self):
        game = _game(
            _spreads("pinnacle", -3.5, 1.91, 1.91),
            _spreads("draftkings", -3.5, 1.80, 2.00),
            _spreads("fanduel", -4.5, 2.00, 1.80),
        )
        fair, _ = consensus_fair_probs(game)
        assert fair[("spread", "home", -3.5)] == pytest.approx(0.5)
        assert fair[("spread", "home", -4.5)] < 0.5


def test_parse_odds_for_game(client):
    game = _game(
        _book("pinnacle", 2.70, 1.50),
        _book("draftkings", 3.00, 1.45),
    )
    parsed = client.parse_odds_for_game(game)
    assert parsed["game_id"] == "evt1"
    assert parsed["sharp_books_used"] == 1
    by_key = {(q.market_type, q.outcome_key): q for q in parsed["quotes"]}
    assert by_key[("moneyline", "away")].best_price == 3.00
    assert by_key[("moneyline", "away")].bookmaker == "draftkings"
    assert by_key[("moneyline", "home")].bookmaker == "pinnacle"
