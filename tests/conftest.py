"""
Pytest fixtures for portfolio_engine tests.

Provides sample positions, an in-memory market data provider and a
controllable clock.
"""

import os
import sys
from unittest.mock import MagicMock

import pytest

# Add package to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from portfolio_engine.config import EngineConfig
from portfolio_engine.market_data import StaticMarketData
from portfolio_engine.models import Position, PositionAnalytics, TokenInfo, FeesEarned


# 2026-01-07 12:00:00 UTC, a Wednesday
BASE_TIME = 1767787200.0


class FakeClock:
    """Callable clock advanced by hand."""

    def __init__(self, start: float = BASE_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mock_logger():
    """A logger whose calls can be inspected."""
    logger = MagicMock()
    logger.log = MagicMock()
    return logger


@pytest.fixture
def make_position():
    """Factory for positions with sensible defaults."""
    def _make(
        position_id="pos-1",
        pool_id=None,
        x=("SOL", 100.0),
        y=("USDC", 1.0),
        liquidity=10.0,
        fees=(0.5, 0.5),
        created_at=BASE_TIME - 86400 * 7,
        last_updated=BASE_TIME - 3600,
        is_active=True
    ):
        return Position(
            id=position_id,
            pool_id=pool_id or f"pool-{x[0]}-{y[0]}",
            token_x=TokenInfo(x[0], 9, x[1]),
            token_y=TokenInfo(y[0], 6, y[1]),
            liquidity_amount=liquidity,
            fees_earned=FeesEarned(*fees),
            created_at=created_at,
            last_updated=last_updated,
            is_active=is_active
        )
    return _make


@pytest.fixture
def sample_positions(make_position):
    """Three positions; the first two share SOL."""
    return [
        make_position("pos-sol-usdc", x=("SOL", 100.0), y=("USDC", 1.0), liquidity=20.0),
        make_position("pos-sol-bonk", x=("SOL", 100.0), y=("BONK", 0.00002), liquidity=10.0),
        make_position("pos-eth-usdt", x=("ETH", 3000.0), y=("USDT", 1.0), liquidity=1.0),
    ]


@pytest.fixture
def sample_analytics(sample_positions):
    pnl = [5.0, -2.0, 10.0]
    il = [-1.5, -3.0, -0.5]
    return [
        PositionAnalytics(
            total_value=p.value,
            pnl_amount=p.value * r / 100,
            pnl_percent=r,
            fee_earnings=p.fees_earned.total,
            il_amount=p.value * loss / 100,
            il_percent=loss,
            apr=r * 4,
            duration_ms=7 * 86400 * 1000
        )
        for p, r, loss in zip(sample_positions, pnl, il)
    ]


@pytest.fixture
def market_data(sample_positions, sample_analytics):
    """Provider holding the sample snapshot under owner 'owner'."""
    provider = StaticMarketData(
        returns={"pos-sol-usdc": 0.12, "pos-sol-bonk": 0.25, "pos-eth-usdt": 0.08},
        volatilities={"pos-sol-usdc": 0.3, "pos-sol-bonk": 0.6, "pos-eth-usdt": 0.25},
    )
    provider.set_positions("owner", sample_positions, sample_analytics)
    return provider


@pytest.fixture
def engine_config():
    return EngineConfig()
