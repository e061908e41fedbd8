"""Optional value source for positions that never occurred in a game.

Block mode writes one counterfactual continuation per block. Its value
comes from the tablebase when available, otherwise from an injected
ContinuationEvaluator (e.g. a network inference client).
"""

from dataclasses import dataclass
from typing import Optional, Protocol

import chess

from ..data.game import WDL


@dataclass(frozen=True)
class Evaluation:
    """Value estimate for a position, from the side to move."""
    wdl: WDL
    uncertainty: float = 0.0


class ContinuationEvaluator(Protocol):
    """Protocol for evaluating counterfactual positions."""

    def evaluate(self, board: chess.Board) -> Optional[Evaluation]:
        """Evaluate a position.

        Args:
            board: Position after the counterfactual move

        Returns:
            Evaluation, or None if no estimate is available
        """
        ...
