"""Board plane encoding for training records.

Encodes a chess position with history into binary planes of shape (119, 8, 8).

Plane layout (119 planes total):
- Planes 0-95: Piece positions for 8 history steps (12 planes each)
  - Order: P, N, B, R, Q, K (side to move), p, n, b, r, q, k (opponent)
- Planes 96-99: Castling rights (us kingside, us queenside, them kingside, them queenside)
- Plane 100: Side to move (all ones, the board is always seen from the mover)
- Planes 101-108: Repetition counter (one-hot)
- Planes 109-118: Move clocks
  - 109-113: Halfmove clock (5 bits)
  - 114-118: Fullmove number (5 bits)

Planes are binary, so records store them bit-packed (952 bytes each).
"""

from typing import List, Optional

import chess
import numpy as np


NUM_PIECE_PLANES = 12
NUM_HISTORY_STEPS = 8
NUM_CASTLING_PLANES = 4
NUM_REPETITION_PLANES = 8
NUM_CLOCK_BITS = 5

TOTAL_PLANES = (
    NUM_PIECE_PLANES * NUM_HISTORY_STEPS +  # 96
    NUM_CASTLING_PLANES +                   # 4
    1 +                                     # side to move
    NUM_REPETITION_PLANES +                 # 8
    2 * NUM_CLOCK_BITS                      # 10
)  # = 119

PACKED_PLANES_BYTES = TOTAL_PLANES * 64 // 8


def encode_piece_planes(board: chess.Board, flip: bool = False) -> np.ndarray:
    """Encode piece positions for a single board state.

    Args:
        board: Board to encode
        flip: Mirror ranks and swap colors (black to move)

    Returns:
        Array of shape (12, 8, 8)
    """
    planes = np.zeros((NUM_PIECE_PLANES, 8, 8), dtype=np.uint8)
    for square, piece in board.piece_map().items():
        ours = piece.color == (chess.BLACK if flip else chess.WHITE)
        plane_idx = piece.piece_type - 1 + (0 if ours else 6)
        row = chess.square_rank(square)
        if flip:
            row = 7 - row
        planes[plane_idx, row, chess.square_file(square)] = 1
    return planes


def encode_castling(board: chess.Board, flip: bool = False) -> np.ndarray:
    """Encode castling rights from the side to move's perspective."""
    us, them = (chess.BLACK, chess.WHITE) if flip else (chess.WHITE, chess.BLACK)
    rights = [
        board.has_kingside_castling_rights(us),
        board.has_queenside_castling_rights(us),
        board.has_kingside_castling_rights(them),
        board.has_queenside_castling_rights(them),
    ]
    planes = np.zeros((NUM_CASTLING_PLANES, 8, 8), dtype=np.uint8)
    for i, has_right in enumerate(rights):
        if has_right:
            planes[i] = 1
    return planes


def encode_repetition(board: chess.Board) -> np.ndarray:
    """Encode how often the position occurred before as one-hot planes."""
    planes = np.zeros((NUM_REPETITION_PLANES, 8, 8), dtype=np.uint8)
    rep_count = min(int(board.is_repetition(2)) + int(board.is_repetition(3)), 7)
    planes[rep_count] = 1
    return planes


def encode_move_clocks(board: chess.Board) -> np.ndarray:
    """Encode halfmove clock and fullmove number as 5-bit binary planes."""
    planes = np.zeros((2 * NUM_CLOCK_BITS, 8, 8), dtype=np.uint8)
    halfmove = min(board.halfmove_clock, 31)
    fullmove = min(board.fullmove_number, 31)
    for i in range(NUM_CLOCK_BITS):
        if halfmove & (1 << i):
            planes[i] = 1
        if fullmove & (1 << i):
            planes[NUM_CLOCK_BITS + i] = 1
    return planes


def encode_board(board: chess.Board, history: Optional[List[chess.Board]] = None) -> np.ndarray:
    """Encode a position into the full 119-plane representation.

    Args:
        board: Current board
        history: Previous boards, most recent first

    Returns:
        Array of shape (119, 8, 8), dtype uint8
    """
    flip = board.turn == chess.BLACK
    all_boards = [board] + list(history or [])[:NUM_HISTORY_STEPS - 1]

    planes_list = []
    for i in range(NUM_HISTORY_STEPS):
        if i < len(all_boards):
            planes_list.append(encode_piece_planes(all_boards[i], flip=flip))
        else:
            planes_list.append(np.zeros((NUM_PIECE_PLANES, 8, 8), dtype=np.uint8))

    planes_list.append(encode_castling(board, flip=flip))
    planes_list.append(np.ones((1, 8, 8), dtype=np.uint8))
    planes_list.append(encode_repetition(board))
    planes_list.append(encode_move_clocks(board))

    observation = np.concatenate(planes_list, axis=0)
    assert observation.shape == (TOTAL_PLANES, 8, 8), \
        f"Expected shape ({TOTAL_PLANES}, 8, 8), got {observation.shape}"
    return observation


def encode_board_packed(board: chess.Board, history: Optional[List[chess.Board]] = None) -> np.ndarray:
    """Encode a position and pack the binary planes into bytes.

    Returns:
        Array of shape (952,), dtype uint8
    """
    return np.packbits(encode_board(board, history).reshape(-1))


def unpack_planes(packed: np.ndarray) -> np.ndarray:
    """Inverse of encode_board_packed."""
    return np.unpackbits(packed)[:TOTAL_PLANES * 64].reshape(TOTAL_PLANES, 8, 8)
