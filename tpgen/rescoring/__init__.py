"""Per-game rescoring and value oracles."""

from .rescorer import GameRescorer
from .tablebase import TablebaseOracle, SyzygyOracle, open_tablebase
from .evaluator import ContinuationEvaluator, Evaluation

__all__ = [
    "GameRescorer",
    "TablebaseOracle",
    "SyzygyOracle",
    "open_tablebase",
    "ContinuationEvaluator",
    "Evaluation",
]
