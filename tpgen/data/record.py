"""Rescored training positions and their fixed-size array encoding."""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, Optional, Tuple

import numpy as np

from ..chess_env.board import board_from_fen
from ..chess_env.encoding import encode_board_packed, PACKED_PLANES_BYTES
from ..chess_env.moves import get_encoder, MAX_POLICY_MOVES
from .game import WDL


class TargetSource(IntEnum):
    """Where the value target of a record came from."""
    TRAINING = 0
    TABLEBASE = 1
    DEBLUNDERED = 2
    ACTION_HEAD_DUMMY_MOVE = 3


@dataclass(frozen=True)
class RescoredPosition:
    """A position together with all of its training targets.

    Values are from the perspective of the side to move in `fen`.
    `parent_move` is the move that led to this position (None at the
    start of a game).
    """
    game_id: str
    ply: int
    fen: str
    history_fens: Tuple[str, ...]
    policy: Dict[str, float]
    played_move: Optional[str]
    parent_move: Optional[str]
    result_wdl: WDL
    deblundered_wdl: WDL
    best_wdl: WDL
    intermediate_wdl: WDL
    prior_wdl: WDL = WDL()  # all zero when unavailable
    plies_left: float = 0.0
    uncertainty: float = 0.0
    kld_policy: float = 0.0
    played_move_q_suboptimality: float = 0.0
    num_visits: int = 0
    delta_q_forward_abs: float = 0.0
    source: TargetSource = TargetSource.TRAINING
    forward_sum_positive_blunders: float = 0.0
    forward_sum_negative_blunders: float = 0.0
    forward_min_q_deviation: float = 0.0
    forward_max_q_deviation: float = 0.0
    tb_lookup: bool = False
    tb_found: bool = False
    tb_rescored: bool = False
    block_slot: int = field(default=0, compare=False)

    @property
    def best_q(self) -> float:
        return self.best_wdl.q

    @property
    def policy_index_in_parent(self) -> int:
        if self.parent_move is None:
            return -1
        return get_encoder().encode_uci(self.parent_move)


# Scalar targets stored as float32 columns
SCALAR_FIELDS = (
    "plies_left",
    "uncertainty",
    "kld_policy",
    "played_move_q_suboptimality",
    "delta_q_forward_abs",
    "forward_sum_positive_blunders",
    "forward_sum_negative_blunders",
    "forward_min_q_deviation",
    "forward_max_q_deviation",
)

WDL_FIELDS = ("result_wdl", "deblundered_wdl", "best_wdl", "intermediate_wdl", "prior_wdl")


def record_dtypes() -> Dict[str, Tuple[tuple, np.dtype]]:
    """Per-record shape and dtype of every output column."""
    columns = {
        "planes": ((PACKED_PLANES_BYTES,), np.uint8),
        "policy_index": ((MAX_POLICY_MOVES,), np.int16),
        "policy_prob": ((MAX_POLICY_MOVES,), np.float32),
        "block_slot": ((), np.int8),
        "num_visits": ((), np.int32),
        "policy_index_in_parent": ((), np.int16),
        "source": ((), np.int8),
    }
    for name in WDL_FIELDS:
        columns[name] = ((3,), np.float32)
    for name in SCALAR_FIELDS:
        columns[name] = ((), np.float32)
    return columns


def encode_training_record(
    position: RescoredPosition,
    min_legal_move_probability: float = 0.0
) -> Dict[str, np.ndarray]:
    """Encode a rescored position into fixed-size arrays.

    Args:
        position: Position to encode
        min_legal_move_probability: Floor applied to every policy move

    Returns:
        Dict mapping column name to a numpy value (see record_dtypes)
    """
    board = board_from_fen(position.fen)
    history = [board_from_fen(fen) for fen in position.history_fens]
    indices, probs = get_encoder().encode_policy(position.policy, min_legal_move_probability)

    record = {
        "planes": encode_board_packed(board, history),
        "policy_index": indices,
        "policy_prob": probs,
        "block_slot": np.int8(position.block_slot),
        "num_visits": np.int32(position.num_visits),
        "policy_index_in_parent": np.int16(position.policy_index_in_parent),
        "source": np.int8(int(position.source)),
    }
    for name in WDL_FIELDS:
        record[name] = np.array(getattr(position, name).as_tuple(), dtype=np.float32)
    for name in SCALAR_FIELDS:
        record[name] = np.float32(getattr(position, name))
    return record
