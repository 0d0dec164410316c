"""
Market data boundary for portfolio_engine

The engine never sources prices, volatilities or correlations itself.
A MarketDataProvider is injected into every component and is the only
place market statistics come from, which keeps every analysis
deterministic for a given provider state.

StaticMarketData is an in-memory provider fed by the caller. It is used
by tests and by embedders that fetch market data elsewhere and hand it
over before each analysis.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Any, Mapping, Sequence, Tuple

from .errors import NotFoundError, ValidationError
from .models import Position, PositionAnalytics, load_snapshot


@dataclass(frozen=True)
class PositionMarketState:
    """
    Current market view of one position.

    Ratios are fractions (0.05 = 5%) unless the name says score.
    Scores are on a 0-100 scale.
    """
    position_id: str
    efficiency: float = 0.8               # Share of liquidity earning fees
    capital_utilization: float = 0.8
    fee_optimization: float = 0.6
    price_deviation: float = 0.0          # Distance of price from range center
    volatility: float = 0.2               # Annualized market volatility
    volatility_change: float = 0.0
    pool_liquidity: float = 1_000_000.0
    risk_score: float = 30.0
    rebalance_urgency: float = 0.0
    network_congestion: float = 0.0
    custom_metrics: Mapping[str, float] = field(default_factory=dict)

    def metric(self, name: str) -> Optional[float]:
        return self.custom_metrics.get(name)


class MarketDataProvider(ABC):
    """
    Source of positions and market statistics.

    Implementations must be thread-safe: monitoring cycles query the
    provider from worker threads.
    """

    @abstractmethod
    def get_positions(self, owner_key: str) -> Tuple[List[Position], List[PositionAnalytics]]:
        """Current (positions, analytics) snapshot for an owner."""

    @abstractmethod
    def expected_return(self, position: Position) -> float:
        """Annualized expected return as a fraction."""

    @abstractmethod
    def volatility(self, position: Position) -> float:
        """Annualized volatility as a fraction."""

    @abstractmethod
    def position_state(self, position: Position) -> PositionMarketState:
        """Current efficiency/deviation/liquidity view of a position."""

    def price_correlation(self, a: Position, b: Position) -> Optional[float]:
        """Price correlation estimate, or None to use token-overlap baselines."""
        return None

    def fee_yield(self, position: Position) -> float:
        """Fees earned per unit of liquidity."""
        if position.liquidity_amount <= 0:
            return 0.0
        return position.fees_earned.total / position.liquidity_amount


class StaticMarketData(MarketDataProvider):
    """
    Dictionary-backed provider.

    Positions without explicit estimates fall back to default_return and
    default_volatility. Correlations are stored per unordered pair.
    """

    def __init__(
        self,
        returns: Optional[Dict[str, float]] = None,
        volatilities: Optional[Dict[str, float]] = None,
        correlations: Optional[Dict[Tuple[str, str], float]] = None,
        states: Optional[Dict[str, PositionMarketState]] = None,
        default_return: float = 0.1,
        default_volatility: float = 0.2
    ):
        self._lock = threading.Lock()
        self._returns: Dict[str, float] = dict(returns or {})
        self._volatilities: Dict[str, float] = dict(volatilities or {})
        self._correlations: Dict[frozenset, float] = {}
        self._states: Dict[str, PositionMarketState] = dict(states or {})
        self._owners: Dict[str, Tuple[List[Position], List[PositionAnalytics]]] = {}
        self.default_return = default_return
        self.default_volatility = default_volatility

        for (a, b), value in (correlations or {}).items():
            self.set_correlation(a, b, value)

    # =========================================================================
    # FEEDING DATA
    # =========================================================================

    def set_positions(
        self,
        owner_key: str,
        positions: Sequence[Any],
        analytics: Sequence[Any]
    ) -> None:
        parsed = load_snapshot(positions, analytics)
        with self._lock:
            self._owners[owner_key] = parsed

    def set_return(self, position_id: str, value: float) -> None:
        with self._lock:
            self._returns[position_id] = value

    def set_volatility(self, position_id: str, value: float) -> None:
        if value < 0:
            raise ValidationError("volatility must be >= 0")
        with self._lock:
            self._volatilities[position_id] = value

    def set_correlation(self, a: str, b: str, value: float) -> None:
        if not (-1.0 <= value <= 1.0):
            raise ValidationError(f"correlation must be within [-1, 1], got {value}")
        with self._lock:
            self._correlations[frozenset((a, b))] = value

    def set_state(self, state: PositionMarketState) -> None:
        with self._lock:
            self._states[state.position_id] = state

    def update_state(self, position_id: str, **changes: Any) -> PositionMarketState:
        """Replace selected fields of a position's market state."""
        with self._lock:
            current = self._states.get(position_id, PositionMarketState(position_id=position_id))
            updated = replace(current, **changes)
            self._states[position_id] = updated
        return updated

    # =========================================================================
    # PROVIDER INTERFACE
    # =========================================================================

    def get_positions(self, owner_key: str) -> Tuple[List[Position], List[PositionAnalytics]]:
        with self._lock:
            if owner_key not in self._owners:
                raise NotFoundError(f"No positions known for owner {owner_key}")
            positions, analytics = self._owners[owner_key]
            return list(positions), list(analytics)

    def expected_return(self, position: Position) -> float:
        with self._lock:
            return self._returns.get(position.id, self.default_return)

    def volatility(self, position: Position) -> float:
        with self._lock:
            return self._volatilities.get(position.id, self.default_volatility)

    def price_correlation(self, a: Position, b: Position) -> Optional[float]:
        with self._lock:
            return self._correlations.get(frozenset((a.id, b.id)))

    def position_state(self, position: Position) -> PositionMarketState:
        with self._lock:
            state = self._states.get(position.id)
        if state is None:
            return PositionMarketState(
                position_id=position.id,
                volatility=self.volatility(position)
            )
        return state
