"""Board helpers built on python-chess.

Positions are stored as FEN strings in game archives; these helpers turn
them back into boards and compute the deduplication fingerprint.
"""

from typing import Optional

import chess
import chess.polyglot


# Halfmove clock above which the 50-move rule becomes relevant to the outcome
RULE50_HASH_THRESHOLD = 98

# Mixed into the fingerprint when the halfmove clock is above the threshold
_RULE50_KEY = 0x9D39247E33776D41

_MASK64 = (1 << 64) - 1


def board_from_fen(fen: str, chess960: bool = False) -> chess.Board:
    """Create a board from a FEN string."""
    return chess.Board(fen, chess960=chess960)


def position_fingerprint(board: chess.Board) -> int:
    """Deterministic 64-bit fingerprint of a board state.

    Uses the polyglot Zobrist hash, which ignores the move counters. The
    halfmove clock contributes a single bit (above 98 or not) so that
    positions about to be drawn by the 50-move rule are kept apart.
    """
    h = chess.polyglot.zobrist_hash(board)
    if board.halfmove_clock > RULE50_HASH_THRESHOLD:
        h ^= _RULE50_KEY
    return h & _MASK64


def board_after_move(board: chess.Board, uci: str) -> chess.Board:
    """Return a copy of the board with a UCI move applied.

    Raises:
        ValueError: If the move is not legal in the position
    """
    move = chess.Move.from_uci(uci)
    if move not in board.legal_moves:
        raise ValueError(f"Illegal move {uci} in position {board.fen()}")
    child = board.copy(stack=False)
    child.push(move)
    return child


def piece_count(board: chess.Board) -> int:
    """Number of pieces (kings included) on the board."""
    return chess.popcount(board.occupied)


def legal_move_ucis(board: chess.Board, limit: Optional[int] = None):
    """Sorted UCI strings of the legal moves in a position."""
    moves = sorted(move.uci() for move in board.legal_moves)
    return moves if limit is None else moves[:limit]
