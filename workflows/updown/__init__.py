"""
Up/Down workflow — trading intelligence core for binary crypto up/down markets.

    SignalEngine (signals.py) → DecisionCore (brain.py) → ExitManager (exit_manager.py)
                                     ↑                          │
                                  Memory (memory.py) ◀── TradeRecord (trade_history.py)
                                     │
                                EdgeAnalyzer (edge.py)
"""

from workflows.updown.brain import DecisionCore
from workflows.updown.edge import EdgeAnalyzer, EdgeReport
from workflows.updown.exit_manager import ExitManager, ExitState
from workflows.updown.memory import MemoryStore
from workflows.updown.trade_history import TradeHistory

__all__ = [
    "DecisionCore",
    "EdgeAnalyzer",
    "EdgeReport",
    "ExitManager",
    "ExitState",
    "MemoryStore",
    "TradeHistory",
]
