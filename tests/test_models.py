"""
Tests for the position data model and snapshot validation.
"""

import pytest


class TestPosition:
    """Tests for the Position dataclass."""

    def test_value_is_average_price_times_liquidity(self, make_position):
        pos = make_position(x=("SOL", 100.0), y=("USDC", 1.0), liquidity=20.0)
        assert pos.value == pytest.approx(1010.0)

    def test_pair_and_tokens(self, make_position):
        pos = make_position(x=("SOL", 100.0), y=("USDC", 1.0))
        assert pos.pair == "SOL/USDC"
        assert pos.tokens == ("SOL", "USDC")

    def test_shares_token_with(self, sample_positions):
        sol_usdc, sol_bonk, eth_usdt = sample_positions
        assert sol_usdc.shares_token_with(sol_bonk)
        # USDC and USDT are distinct tokens
        assert not sol_usdc.shares_token_with(eth_usdt)
        assert not sol_bonk.shares_token_with(eth_usdt)

    def test_from_dict_accepts_camel_case(self):
        from portfolio_engine.models import Position

        pos = Position.from_dict({
            "id": "abc",
            "poolId": "pool-1",
            "tokenX": {"symbol": "SOL", "decimals": 9, "price": 150},
            "tokenY": {"symbol": "USDC", "decimals": 6, "price": 1},
            "liquidityAmount": "4",
            "feesEarned": {"x": 1, "y": 2},
            "createdAt": 100,
            "lastUpdated": 200,
            "isActive": False,
        })

        assert pos.pool_id == "pool-1"
        assert pos.liquidity_amount == 4.0
        assert pos.fees_earned.total == 3.0
        assert pos.is_active is False
        assert Position.from_dict(pos.to_dict()) == pos

    def test_from_dict_rejects_missing_symbol(self):
        from portfolio_engine.models import Position
        from portfolio_engine.errors import ValidationError

        with pytest.raises(ValidationError):
            Position.from_dict({
                "id": "abc", "pool_id": "p",
                "token_x": {"price": 1}, "token_y": {"symbol": "USDC", "price": 1},
            })

    def test_from_dict_rejects_negative_liquidity(self):
        from portfolio_engine.models import Position
        from portfolio_engine.errors import ValidationError

        with pytest.raises(ValidationError):
            Position.from_dict({
                "id": "abc", "pool_id": "p",
                "token_x": {"symbol": "SOL", "price": 1},
                "token_y": {"symbol": "USDC", "price": 1},
                "liquidity_amount": -1,
            })

    def test_from_dict_rejects_non_finite_price(self):
        from portfolio_engine.models import TokenInfo
        from portfolio_engine.errors import ValidationError

        with pytest.raises(ValidationError):
            TokenInfo.from_dict({"symbol": "SOL", "price": float("nan")})


class TestPositionAnalytics:
    """Tests for PositionAnalytics parsing."""

    def test_from_nested_dict(self):
        from portfolio_engine.models import PositionAnalytics

        an = PositionAnalytics.from_dict({
            "totalValue": 1000,
            "pnl": {"amount": 50, "percent": 5},
            "feesEarned": 12,
            "impermanentLoss": {"amount": -10, "percent": -1},
            "apr": 20,
            "durationMs": 5000,
        })

        assert an.total_value == 1000.0
        assert an.pnl_percent == 5.0
        assert an.fee_earnings == 12.0
        assert an.il_percent == -1.0
        assert an.duration_ms == 5000.0

    def test_bool_is_not_numeric(self):
        from portfolio_engine.models import PositionAnalytics
        from portfolio_engine.errors import ValidationError

        with pytest.raises(ValidationError):
            PositionAnalytics.from_dict({"apr": True})


class TestLoadSnapshot:
    """Tests for parallel-list validation."""

    def test_length_mismatch_raises(self, sample_positions, sample_analytics):
        from portfolio_engine.models import load_snapshot
        from portfolio_engine.errors import ValidationError

        with pytest.raises(ValidationError):
            load_snapshot(sample_positions, sample_analytics[:2])

    def test_duplicate_ids_raise(self, make_position):
        from portfolio_engine.models import load_snapshot, PositionAnalytics
        from portfolio_engine.errors import ValidationError

        positions = [make_position("dup"), make_position("dup")]
        with pytest.raises(ValidationError):
            load_snapshot(positions, [PositionAnalytics(), PositionAnalytics()])

    def test_validation_error_is_value_error(self):
        from portfolio_engine.models import load_snapshot

        with pytest.raises(ValueError):
            load_snapshot([], [{}])

    def test_find_position(self, sample_positions):
        from portfolio_engine.models import find_position

        assert find_position(sample_positions, "pos-sol-bonk") == 1
        assert find_position(sample_positions, "missing") is None
