"""
Position data model for portfolio_engine

Positions and their analytics are immutable snapshots owned by the caller.
The engine only reads them.

Key Concepts:
- Position: a stake in a liquidity pool (token pair + liquidity amount)
- PositionAnalytics: valuation and performance of one position
- Parallel lists: analytics[i] always describes positions[i]
- Position value: liquidity * (price_x + price_y) / 2

Both snake_case and the camelCase keys of the upstream position feed are
accepted by the from_dict constructors. Malformed input raises
ValidationError at construction time.
"""

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Sequence, Tuple

from .errors import ValidationError


def _pick(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _as_float(value: Any, name: str) -> float:
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be numeric, got bool")
    try:
        result = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be numeric, got {value!r}")
    if math.isnan(result) or math.isinf(result):
        raise ValidationError(f"{name} must be finite, got {value!r}")
    return result


@dataclass(frozen=True)
class TokenInfo:
    """One side of a pool's token pair."""
    symbol: str
    decimals: int = 0
    price: float = 0.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any], name: str = "token") -> 'TokenInfo':
        if isinstance(data, TokenInfo):
            return data
        if not isinstance(data, dict):
            raise ValidationError(f"{name} must be a mapping")
        symbol = data.get("symbol")
        if not symbol or not isinstance(symbol, str):
            raise ValidationError(f"{name}.symbol is required")
        price = _as_float(data.get("price", 0.0), f"{name}.price")
        if price < 0:
            raise ValidationError(f"{name}.price must be >= 0")
        return cls(
            symbol=symbol,
            decimals=int(data.get("decimals", 0)),
            price=price
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"symbol": self.symbol, "decimals": self.decimals, "price": self.price}


@dataclass(frozen=True)
class FeesEarned:
    """Fees accrued per token side."""
    x: float = 0.0
    y: float = 0.0

    @property
    def total(self) -> float:
        return self.x + self.y


@dataclass(frozen=True)
class Position:
    """
    Immutable liquidity position snapshot.

    Timestamps are unix seconds.
    """
    id: str
    pool_id: str
    token_x: TokenInfo
    token_y: TokenInfo
    liquidity_amount: float
    fees_earned: FeesEarned = field(default_factory=FeesEarned)
    created_at: float = 0.0
    last_updated: float = 0.0
    is_active: bool = True

    @property
    def pair(self) -> str:
        return f"{self.token_x.symbol}/{self.token_y.symbol}"

    @property
    def tokens(self) -> Tuple[str, str]:
        return (self.token_x.symbol, self.token_y.symbol)

    @property
    def value(self) -> float:
        """Position value in quote units."""
        return self.liquidity_amount * (self.token_x.price + self.token_y.price) / 2

    def shares_token_with(self, other: 'Position') -> bool:
        return bool(set(self.tokens) & set(other.tokens))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Position':
        if isinstance(data, Position):
            return data
        if not isinstance(data, dict):
            raise ValidationError("position must be a mapping")

        position_id = _pick(data, "id", "position_id", "positionId")
        if not position_id:
            raise ValidationError("position.id is required")
        pool_id = _pick(data, "pool_id", "poolId", "pool")
        if not pool_id:
            raise ValidationError(f"position {position_id}: pool id is required")

        token_x = TokenInfo.from_dict(_pick(data, "token_x", "tokenX"), "tokenX")
        token_y = TokenInfo.from_dict(_pick(data, "token_y", "tokenY"), "tokenY")

        liquidity = _as_float(
            _pick(data, "liquidity_amount", "liquidityAmount", default=0.0),
            "liquidityAmount"
        )
        if liquidity < 0:
            raise ValidationError(f"position {position_id}: liquidity must be >= 0")

        fees = _pick(data, "fees_earned", "feesEarned", default={}) or {}
        if isinstance(fees, FeesEarned):
            fees_earned = fees
        else:
            fees_earned = FeesEarned(
                x=_as_float(fees.get("x", 0.0), "feesEarned.x"),
                y=_as_float(fees.get("y", 0.0), "feesEarned.y")
            )

        return cls(
            id=str(position_id),
            pool_id=str(pool_id),
            token_x=token_x,
            token_y=token_y,
            liquidity_amount=liquidity,
            fees_earned=fees_earned,
            created_at=_as_float(_pick(data, "created_at", "createdAt", default=0.0), "createdAt"),
            last_updated=_as_float(_pick(data, "last_updated", "lastUpdated", default=0.0), "lastUpdated"),
            is_active=bool(_pick(data, "is_active", "isActive", default=True))
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pool_id": self.pool_id,
            "token_x": self.token_x.to_dict(),
            "token_y": self.token_y.to_dict(),
            "liquidity_amount": self.liquidity_amount,
            "fees_earned": {"x": self.fees_earned.x, "y": self.fees_earned.y},
            "created_at": self.created_at,
            "last_updated": self.last_updated,
            "is_active": self.is_active
        }


@dataclass(frozen=True)
class PositionAnalytics:
    """Valuation and performance figures for one position."""
    total_value: float = 0.0
    pnl_amount: float = 0.0
    pnl_percent: float = 0.0
    fee_earnings: float = 0.0
    il_amount: float = 0.0
    il_percent: float = 0.0
    apr: float = 0.0
    duration_ms: float = 0.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PositionAnalytics':
        if isinstance(data, PositionAnalytics):
            return data
        if not isinstance(data, dict):
            raise ValidationError("analytics entry must be a mapping")

        pnl = _pick(data, "pnl", default={}) or {}
        il = _pick(data, "impermanent_loss", "impermanentLoss", default={}) or {}
        if not isinstance(pnl, dict) or not isinstance(il, dict):
            raise ValidationError("pnl and impermanentLoss must be mappings")

        return cls(
            total_value=_as_float(_pick(data, "total_value", "totalValue", default=0.0), "totalValue"),
            pnl_amount=_as_float(pnl.get("amount", 0.0), "pnl.amount"),
            pnl_percent=_as_float(pnl.get("percent", 0.0), "pnl.percent"),
            fee_earnings=_as_float(_pick(data, "fee_earnings", "feesEarned", "feeEarnings", default=0.0), "feesEarned"),
            il_amount=_as_float(il.get("amount", 0.0), "impermanentLoss.amount"),
            il_percent=_as_float(il.get("percent", 0.0), "impermanentLoss.percent"),
            apr=_as_float(_pick(data, "apr", default=0.0), "apr"),
            duration_ms=_as_float(_pick(data, "duration_ms", "durationMs", "duration", default=0.0), "durationMs")
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_value": round(self.total_value, 4),
            "pnl": {"amount": round(self.pnl_amount, 4), "percent": round(self.pnl_percent, 4)},
            "fee_earnings": round(self.fee_earnings, 4),
            "impermanent_loss": {"amount": round(self.il_amount, 4), "percent": round(self.il_percent, 4)},
            "apr": round(self.apr, 4),
            "duration_ms": self.duration_ms
        }


def load_snapshot(
    positions: Sequence[Any],
    analytics: Sequence[Any]
) -> Tuple[List[Position], List[PositionAnalytics]]:
    """
    Validate and normalize a (positions, analytics) snapshot.

    Accepts model instances or plain mappings.

    Raises:
        ValidationError: lists differ in length or position ids repeat
    """
    if positions is None or analytics is None:
        raise ValidationError("positions and analytics are required")
    if len(positions) != len(analytics):
        raise ValidationError(
            f"analytics length {len(analytics)} does not match positions length {len(positions)}"
        )

    parsed_positions = [Position.from_dict(p) for p in positions]
    parsed_analytics = [PositionAnalytics.from_dict(a) for a in analytics]

    seen = set()
    for pos in parsed_positions:
        if pos.id in seen:
            raise ValidationError(f"duplicate position id: {pos.id}")
        seen.add(pos.id)

    return parsed_positions, parsed_analytics


def find_position(positions: Sequence[Position], position_id: str) -> Optional[int]:
    """Index of a position id in a snapshot, or None."""
    for i, pos in enumerate(positions):
        if pos.id == position_id:
            return i
    return None
