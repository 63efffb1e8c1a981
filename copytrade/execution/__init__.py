"""
Execution module.

Turns an admitted signal into a bracketed position.

ARCHITECTURE:
    BracketOrderOrchestrator (entry -> stop -> take profits -> record)
        │
        ├── sltp_calculator (size, stop loss, take profits, overlays)
        │       │
        │       └── symbol_rules (minimum notional, leverage caps)
        │
        └── ExchangeAdapter (copytrade.exchange)
"""
from copytrade.execution.bracket_orchestrator import (
    BracketOrderOrchestrator,
    ExecutionOutcome,
    ExecutionState,
)
from copytrade.execution.sltp_calculator import (
    breakeven_price,
    calculate_levels,
    close_quantities,
    position_size,
)
from copytrade.execution.symbol_rules import (
    adjust_to_minimum,
    max_leverage,
    minimum_notional,
    resolve_leverage,
)

__all__ = [
    # Orchestration
    "BracketOrderOrchestrator",
    "ExecutionOutcome",
    "ExecutionState",

    # Levels and sizing
    "breakeven_price",
    "calculate_levels",
    "close_quantities",
    "position_size",

    # Symbol rules
    "adjust_to_minimum",
    "max_leverage",
    "minimum_notional",
    "resolve_leverage",
]
