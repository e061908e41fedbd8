"""Chess helpers: boards, fingerprints and record encodings."""

from .board import (
    board_from_fen,
    board_after_move,
    position_fingerprint,
    piece_count,
    legal_move_ucis,
)
from .encoding import encode_board, encode_board_packed, unpack_planes, TOTAL_PLANES
from .moves import MoveEncoder, get_encoder, MAX_POLICY_MOVES, NUM_POLICY_INDICES

__all__ = [
    "board_from_fen",
    "board_after_move",
    "position_fingerprint",
    "piece_count",
    "legal_move_ucis",
    "encode_board",
    "encode_board_packed",
    "unpack_planes",
    "TOTAL_PLANES",
    "MoveEncoder",
    "get_encoder",
    "MAX_POLICY_MOVES",
    "NUM_POLICY_INDICES",
]
