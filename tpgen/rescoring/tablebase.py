"""Endgame tablebase oracle.

Provides exact outcomes for positions with few pieces. Positions that
are not covered (too many pieces, castling rights, missing table files)
return None.
"""

import logging
import os
import threading
from typing import Optional, Protocol

import chess
import chess.syzygy

from ..data.game import WDL
from ..errors import ConfigurationError


logger = logging.getLogger(__name__)


class TablebaseOracle(Protocol):
    """Protocol for exact endgame outcome lookups."""

    max_pieces: int

    def lookup(self, board: chess.Board) -> Optional[WDL]:
        """Look up a position.

        Args:
            board: Position to probe

        Returns:
            Exact WDL from the side to move, or None if unknown
        """
        ...


class SyzygyOracle:
    """TablebaseOracle backed by Syzygy tables via python-chess."""

    def __init__(self, tablebase: chess.syzygy.Tablebase, max_pieces: int = 7):
        self._tablebase = tablebase
        self.max_pieces = max_pieces
        # Table handles are not safe for concurrent probing
        self._lock = threading.Lock()

    def lookup(self, board: chess.Board) -> Optional[WDL]:
        if chess.popcount(board.occupied) > self.max_pieces or board.castling_rights:
            return None
        try:
            with self._lock:
                wdl = self._tablebase.probe_wdl(board)
        except chess.syzygy.MissingTableError:
            return None

        # Cursed wins and blessed losses (+1/-1) are draws under the 50-move rule
        if wdl > 1:
            return WDL.from_result(1)
        if wdl < -1:
            return WDL.from_result(-1)
        return WDL.from_result(0)

    def close(self) -> None:
        self._tablebase.close()


def open_tablebase(directory: Optional[str], max_pieces: int = 7) -> SyzygyOracle:
    """Open Syzygy tables from a directory.

    Raises:
        ConfigurationError: If the directory is unset or missing
    """
    if not directory:
        raise ConfigurationError("Tablebase rescoring requested but no tablebase directory specified")
    if not os.path.isdir(directory):
        raise ConfigurationError(f"Tablebase directory not found: {directory}")

    tablebase = chess.syzygy.open_tablebase(directory)
    logger.info(f"Opened Syzygy tablebases from {directory}")
    return SyzygyOracle(tablebase, max_pieces=max_pieces)
