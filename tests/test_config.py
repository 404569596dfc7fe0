"""
Unit tests for config.py.
"""

import pytest
from pydantic import ValidationError

from config import Config, load_config, venue_fees


class TestConfig:
    def test_defaults(self, monkeypatch):
        """Defaults applied when nothing is set."""
        monkeypatch.delenv("PRIVATE_KEY", raising=False)
        cfg = Config(_env_file=None)
        assert cfg.private_key == ""
        assert cfg.signature_type == 1
        assert cfg.paper_trading is True
        assert cfg.chain_id == 137
        assert cfg.initial_capital == 10_000.0
        assert cfg.kelly_fraction_cap == 0.25
        assert cfg.leg_max_attempts == 3
        assert cfg.spot_symbols == ["BTC", "ETH", "SOL"]
        assert cfg.watch_markets == []

    def test_credentials_set_when_provided(self):
        cfg = Config(private_key="abc123", polymarket_profile_address="0x1234")
        assert cfg.private_key == "abc123"
        assert cfg.polymarket_profile_address == "0x1234"

    def test_invalid_signature_type(self):
        with pytest.raises(ValidationError):
            Config(signature_type=5)

    def test_non_positive_capital_raises(self):
        with pytest.raises(ValidationError):
            Config(initial_capital=0)

    def test_kelly_probability_must_be_below_one(self):
        with pytest.raises(ValidationError):
            Config(kelly_p_structural=1.0)

    def test_reset_hour_range(self):
        with pytest.raises(ValidationError):
            Config(daily_reset_hour_utc=24)

    def test_frozen(self):
        cfg = Config()
        with pytest.raises(ValidationError):
            cfg.initial_capital = 5.0

    def test_model_copy_override(self):
        cfg = Config().model_copy(update={"state_db": "/tmp/x.db"})
        assert cfg.state_db == "/tmp/x.db"


class TestListParsing:
    def test_comma_separated(self):
        cfg = Config(spot_symbols="BTC, ETH ,,DOGE")
        assert cfg.spot_symbols == ["BTC", "ETH", "DOGE"]

    def test_json_list(self):
        cfg = Config(watch_markets='["0xabc", "0xdef"]')
        assert cfg.watch_markets == ["0xabc", "0xdef"]

    def test_from_environment(self, monkeypatch):
        monkeypatch.setenv("WATCH_MARKETS", "0x1,0x2")
        monkeypatch.setenv("SPOT_SYMBOLS", "BTC")
        monkeypatch.setenv("MIN_EDGE", "0.02")
        cfg = load_config()
        assert cfg.watch_markets == ["0x1", "0x2"]
        assert cfg.spot_symbols == ["BTC"]
        assert cfg.min_edge == 0.02

    def test_invalid_env_value_fails_fast(self, monkeypatch):
        monkeypatch.setenv("MAX_CONCURRENT_POSITIONS", "0")
        with pytest.raises(ValidationError):
            load_config()


class TestVenueFees:
    def test_all_venues(self):
        cfg = Config(binance_taker_fee=0.002, coinbase_maker_fee=0.003)
        fees = venue_fees(cfg)
        assert set(fees) == {"polymarket", "binance", "coinbase"}
        assert fees["binance"][0] == 0.002
        assert fees["coinbase"][1] == 0.003
