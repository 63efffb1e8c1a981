"""
Ledger reconciliation against exchange history, orphan linking and repairs.
"""
from copytrade.reconciliation.alert_linker import AlertLinker
from copytrade.reconciliation.matching import greedy_match, time_distance
from copytrade.reconciliation.reconciler import ReconciliationEngine, fetch_history
from copytrade.reconciliation.repairs import PositionRepairer

__all__ = [
    "AlertLinker",
    "PositionRepairer",
    "ReconciliationEngine",
    "fetch_history",
    "greedy_match",
    "time_distance",
]
