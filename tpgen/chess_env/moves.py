"""Move encoding for training records.

Maps between chess.Move objects and policy indices (0-4671).

Index space (4672 total):
- Queen-like moves: 56 directions x 64 squares = 3584
  - 7 distances x 8 directions (N, NE, E, SE, S, SW, W, NW)
- Knight moves: 8 x 64 = 512
- Underpromotions: 9 x 64 = 576
  - 3 piece types (rook, bishop, knight) x 3 directions x 64 squares
"""

from typing import Dict, Mapping, Optional, Tuple

import chess
import numpy as np


NUM_POLICY_INDICES = 4672

# Policy entries kept per record (remaining slots are padded with -1)
MAX_POLICY_MOVES = 64

# (rank_delta, file_delta)
QUEEN_DIRECTIONS = [
    (1, 0), (1, 1), (0, 1), (-1, 1),
    (-1, 0), (-1, -1), (0, -1), (1, -1),
]

KNIGHT_MOVES = [
    (2, 1), (2, -1), (1, 2), (1, -2),
    (-1, 2), (-1, -2), (-2, 1), (-2, -1),
]

# Queen promotion is encoded as a regular queen-like move
UNDERPROMOTION_PIECES = [chess.ROOK, chess.BISHOP, chess.KNIGHT]

# Left-capture, forward, right-capture (for white; black mirrors the rank step)
PROMOTION_FILE_STEPS = [-1, 0, 1]

_QUEEN_OFFSET = 0
_KNIGHT_OFFSET = 3584
_UNDERPROMO_OFFSET = 4096


class MoveEncoder:
    """Bidirectional mapping between chess.Move and policy indices.

    - Queen-like moves: from_sq * 56 + dir_idx * 7 + (distance - 1)
    - Knight moves: 3584 + from_sq * 8 + move_idx
    - Underpromotions: 4096 + from_sq * 9 + dir_idx * 3 + piece_idx
    """

    def __init__(self):
        self.num_indices = NUM_POLICY_INDICES
        self._encode_table: Dict[Tuple[int, int, Optional[int]], int] = {}
        self._decode_table: Dict[int, Tuple[int, int, Optional[int]]] = {}
        self._build_tables()

    def _add(self, index: int, from_sq: int, to_sq: int, promotion: Optional[int] = None):
        self._encode_table[(from_sq, to_sq, promotion)] = index
        self._decode_table[index] = (from_sq, to_sq, promotion)

    def _build_tables(self):
        for from_sq in chess.SQUARES:
            rank, file = chess.square_rank(from_sq), chess.square_file(from_sq)

            for dir_idx, (dr, df) in enumerate(QUEEN_DIRECTIONS):
                for dist in range(1, 8):
                    to_rank, to_file = rank + dr * dist, file + df * dist
                    if 0 <= to_rank < 8 and 0 <= to_file < 8:
                        index = _QUEEN_OFFSET + from_sq * 56 + dir_idx * 7 + (dist - 1)
                        self._add(index, from_sq, chess.square(to_file, to_rank))

            for move_idx, (dr, df) in enumerate(KNIGHT_MOVES):
                to_rank, to_file = rank + dr, file + df
                if 0 <= to_rank < 8 and 0 <= to_file < 8:
                    index = _KNIGHT_OFFSET + from_sq * 8 + move_idx
                    self._add(index, from_sq, chess.square(to_file, to_rank))

            # White pawns promote from rank 7, black pawns from rank 2
            if rank in (6, 1):
                to_rank = 7 if rank == 6 else 0
                for dir_idx, df in enumerate(PROMOTION_FILE_STEPS):
                    to_file = file + df
                    if not 0 <= to_file < 8:
                        continue
                    for piece_idx, piece in enumerate(UNDERPROMOTION_PIECES):
                        index = _UNDERPROMO_OFFSET + from_sq * 9 + dir_idx * 3 + piece_idx
                        self._add(index, from_sq, chess.square(to_file, to_rank), piece)

    def encode(self, move: chess.Move) -> int:
        """Convert a chess.Move to a policy index."""
        promotion = None if move.promotion == chess.QUEEN else move.promotion
        key = (move.from_square, move.to_square, promotion)
        if key not in self._encode_table:
            raise ValueError(f"Cannot encode move {move.uci()}: not in encoding table")
        return self._encode_table[key]

    def decode(self, index: int, board: chess.Board) -> chess.Move:
        """Convert a policy index to a chess.Move (board resolves queen promotions)."""
        if index not in self._decode_table:
            raise ValueError(f"Invalid policy index: {index}")

        from_sq, to_sq, promotion = self._decode_table[index]
        if promotion is None:
            piece = board.piece_at(from_sq)
            if piece and piece.piece_type == chess.PAWN and chess.square_rank(to_sq) in (0, 7):
                promotion = chess.QUEEN
        return chess.Move(from_sq, to_sq, promotion=promotion)

    def encode_uci(self, uci: str) -> int:
        return self.encode(chess.Move.from_uci(uci))

    def encode_policy(
        self,
        policy: Mapping[str, float],
        min_probability: float = 0.0,
        max_moves: int = MAX_POLICY_MOVES
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Encode a policy {uci: probability} into fixed-size sparse arrays.

        Every listed (legal) move gets at least min_probability before
        renormalization. The max_moves most probable moves are kept.

        Returns:
            Tuple of (indices int16, probabilities float32), padded with -1
        """
        indices = np.full(max_moves, -1, dtype=np.int16)
        probs = np.full(max_moves, -1.0, dtype=np.float32)
        if not policy:
            return indices, probs

        ranked = sorted(policy.items(), key=lambda item: item[1], reverse=True)[:max_moves]
        values = np.array([max(p, min_probability) for _, p in ranked], dtype=np.float64)
        total = values.sum()
        if total > 0:
            values /= total

        for slot, ((uci, _), p) in enumerate(zip(ranked, values)):
            indices[slot] = self.encode_uci(uci)
            probs[slot] = p
        return indices, probs


_encoder = None


def get_encoder() -> MoveEncoder:
    """Get the shared MoveEncoder instance (tables are read-only after build)."""
    global _encoder
    if _encoder is None:
        _encoder = MoveEncoder()
    return _encoder
