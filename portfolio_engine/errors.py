"""
Exception types for portfolio_engine.

Analysis callers see ValidationError and NotFoundError. ExecutionFailure
is recorded inside a RebalancingExecution rather than raised to the caller
that requested the execution.
"""


class EngineError(Exception):
    """Base class for all engine errors."""


class ValidationError(EngineError, ValueError):
    """Malformed, mismatched or out-of-range input."""


class NotFoundError(EngineError, LookupError):
    """Unknown position id or configuration id."""


class ExecutionFailure(EngineError):
    """A rebalancing executor failed or returned an unusable report."""
